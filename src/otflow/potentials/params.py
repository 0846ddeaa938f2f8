from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Tuple

import torch

from otflow.errors import ShapeError

logger = logging.getLogger(__name__)

PARAM_NAMES: Tuple[str, ...] = ("w", "A", "b", "c", "K0", "K1", "b0", "b1")


@dataclass(frozen=True)
class KernelDims:
    """Architecture dimensions, fixed for the lifetime of a kernel.

    - d: spatial input dimension
    - m: hidden width
    - r: rank of the quadratic factor A (defaults to min(10, d))
    """

    d: int
    m: int
    r: Optional[int] = None

    def __post_init__(self) -> None:
        if self.r is None:
            object.__setattr__(self, "r", min(10, self.d))
        for name in ("d", "m", "r"):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool):
                raise TypeError(f"{name} must be an int, got {type(value).__name__}")
            if value < 1:
                raise ValueError(f"{name} must be >= 1, got {value}")

    @property
    def augmented(self) -> int:
        """Length of the space-time vector s = [x; t]."""
        return self.d + 1

    def expected_shapes(self) -> Dict[str, Tuple[int, ...]]:
        d1, m, r = self.augmented, self.m, self.r
        return {
            "w": (m,),
            "A": (r, d1),
            "b": (d1,),
            "c": (),
            "K0": (m, d1),
            "K1": (m, m),
            "b0": (m,),
            "b1": (m,),
        }


@dataclass(frozen=True, eq=False)
class ParameterBundle:
    """Trained coefficients of the OT-Flow potential.

    Φ(x, t) = wᵀ N(s) + ½ sᵀ(AᵀA)s + bᵀs + c with s = [x; t] and
    N(s) = u0 + σ(K1 u0 + b1), u0 = σ(K0 s + b0).

    Bundles are never mutated; use `replace` to derive an updated one.
    """

    w: torch.Tensor  # [m]
    A: torch.Tensor  # [r, d+1]
    b: torch.Tensor  # [d+1]
    c: torch.Tensor  # []
    K0: torch.Tensor  # [m, d+1]
    K1: torch.Tensor  # [m, m]
    b0: torch.Tensor  # [m]
    b1: torch.Tensor  # [m]

    @classmethod
    def from_mapping(
        cls,
        mapping: Mapping[str, object],
        *,
        dtype: torch.dtype = torch.float64,
        device: Optional[torch.device] = None,
    ) -> "ParameterBundle":
        missing = [k for k in PARAM_NAMES if k not in mapping]
        if missing:
            raise ShapeError(f"Parameter mapping is missing fields: {missing}")
        extra = sorted(set(mapping) - set(PARAM_NAMES))
        if extra:
            raise ShapeError(f"Parameter mapping has unknown fields: {extra}")
        tensors = {k: torch.as_tensor(mapping[k], dtype=dtype, device=device) for k in PARAM_NAMES}
        return cls(**tensors)

    def as_dict(self) -> Dict[str, torch.Tensor]:
        return {k: getattr(self, k) for k in PARAM_NAMES}

    def replace(self, **changes: torch.Tensor) -> "ParameterBundle":
        """Return a new bundle with `changes` applied, validated against the current dims."""
        dims = self.infer_dims()
        new = dataclasses.replace(self, **changes)
        new.validate(dims)
        return new

    def detach(self) -> "ParameterBundle":
        """Return a snapshot of detached copies, safe to share with concurrent readers."""
        return ParameterBundle(**{k: v.detach().clone() for k, v in self.as_dict().items()})

    @property
    def dtype(self) -> torch.dtype:
        return self.w.dtype

    def infer_dims(self) -> KernelDims:
        """Read (d, m, r) off K0 and A, then validate every other field against them."""
        if not isinstance(self.K0, torch.Tensor) or self.K0.ndim != 2:
            raise ShapeError(f"K0 must be a 2-D tensor [m, d+1], got {_describe(self.K0)}")
        if not isinstance(self.A, torch.Tensor) or self.A.ndim != 2:
            raise ShapeError(f"A must be a 2-D tensor [r, d+1], got {_describe(self.A)}")
        m, d1 = self.K0.shape
        if d1 < 2 or m < 1:
            raise ShapeError(f"K0 must be [m >= 1, d+1 >= 2], got shape {tuple(self.K0.shape)}")
        if self.A.shape[0] < 1:
            raise ShapeError(f"A must have at least one row, got shape {tuple(self.A.shape)}")
        dims = KernelDims(d=int(d1) - 1, m=int(m), r=int(self.A.shape[0]))
        self.validate(dims)
        return dims

    def validate(self, dims: KernelDims) -> None:
        """Raise ShapeError naming every field that disagrees with `dims`."""
        problems: List[str] = []
        dtypes = set()
        for name, expected in dims.expected_shapes().items():
            value = getattr(self, name)
            if not isinstance(value, torch.Tensor):
                problems.append(f"{name}: expected tensor of shape {expected}, got {type(value).__name__}")
                continue
            if tuple(value.shape) != expected:
                problems.append(f"{name}: expected shape {expected}, got {tuple(value.shape)}")
            if not value.is_floating_point():
                problems.append(f"{name}: expected floating dtype, got {value.dtype}")
            dtypes.add(value.dtype)
        if len(dtypes) > 1:
            problems.append(f"mixed dtypes across fields: {sorted(str(t) for t in dtypes)}")
        if problems:
            logger.debug("Rejected parameter bundle for %s: %s", dims, problems)
            raise ShapeError(f"Parameter bundle does not match {dims}: " + "; ".join(problems))


def _describe(value: object) -> str:
    if isinstance(value, torch.Tensor):
        return f"shape {tuple(value.shape)}"
    return type(value).__name__


def init_parameters(
    dims: KernelDims,
    *,
    generator: Optional[torch.Generator] = None,
    dtype: torch.dtype = torch.float64,
    device: Optional[torch.device] = None,
    scale: float = 0.01,
) -> ParameterBundle:
    """Small Gaussian weights (std `scale`) and zero biases/offset."""
    d1, m, r = dims.augmented, dims.m, dims.r

    def _randn(*shape: int) -> torch.Tensor:
        return torch.randn(*shape, generator=generator, dtype=dtype, device=device) * scale

    return ParameterBundle(
        w=_randn(m),
        A=_randn(r, d1),
        b=torch.zeros(d1, dtype=dtype, device=device),
        c=torch.zeros((), dtype=dtype, device=device),
        K0=_randn(m, d1),
        K1=_randn(m, m),
        b0=torch.zeros(m, dtype=dtype, device=device),
        b1=torch.zeros(m, dtype=dtype, device=device),
    )
