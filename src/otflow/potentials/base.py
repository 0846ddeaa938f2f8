from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Final, Tuple, Union

import torch

from otflow.errors import ShapeError

TimeLike = Union[float, int, torch.Tensor]


@dataclass(frozen=True)
class PotentialOutputSpec:
    """Shape conventions for space-time potentials.

    Points are either a single vector x in R^d or a batch x in R^{B x d};
    time is a scalar shared by the batch or one value per example.
    - phi(x, t) returns shape [] or [B]
    - grad(x, t) returns shape [d] or [B, d]
    - trace(x, t) returns shape [] or [B]
    """

    space_dim: Final[int] = -1


def prepare_inputs(
    x: torch.Tensor, t: TimeLike, d: int, *, dtype: torch.dtype
) -> Tuple[torch.Tensor, torch.Tensor, bool]:
    """Normalize (x, t) to ([B, d], [B]) and report whether x was batched."""
    if not isinstance(x, torch.Tensor):
        raise TypeError(f"Expected x to be a torch.Tensor, got {type(x).__name__}")
    if not x.is_floating_point():
        raise TypeError(f"Expected floating x tensor, got dtype={x.dtype}")
    if x.dtype != dtype:
        raise TypeError(f"x has dtype={x.dtype} but parameters have dtype={dtype}")
    if x.ndim not in (1, 2) or x.shape[-1] != d:
        raise ShapeError(f"Expected x with shape [{d}] or [B, {d}], got {tuple(x.shape)}")

    batched = x.ndim == 2
    xb = x if batched else x.unsqueeze(0)
    bsz = xb.shape[0]

    tt = torch.as_tensor(t, dtype=dtype, device=x.device)
    if tt.ndim == 0:
        tt = tt.expand(bsz)
    elif not (tt.ndim == 1 and batched and tt.shape[0] == bsz):
        expect = f"a scalar or shape [{bsz}]" if batched else "a scalar"
        raise ShapeError(f"Expected t to be {expect}, got shape {tuple(tt.shape)}")
    return xb, tt, batched


class SpaceTimePotential(ABC):
    """Scalar potential Φ(x, t) with closed-form spatial derivatives.

    The induced flow has velocity v = -∇ₓΦ and divergence ∇·v = -tr(∇²ₓΦ).
    """

    spec: PotentialOutputSpec = PotentialOutputSpec()

    @property
    @abstractmethod
    def d(self) -> int:
        """Spatial dimension."""

    @abstractmethod
    def phi(self, x: torch.Tensor, t: TimeLike) -> torch.Tensor:
        """Compute Φ(x, t). Returns shape [] or [B]."""

    @abstractmethod
    def grad(self, x: torch.Tensor, t: TimeLike) -> torch.Tensor:
        """Compute ∇ₓΦ(x, t). Returns shape [d] or [B, d]."""

    @abstractmethod
    def trace(self, x: torch.Tensor, t: TimeLike) -> torch.Tensor:
        """Compute tr(∇²ₓΦ(x, t)). Returns shape [] or [B]."""

    def evaluate(self, x: torch.Tensor, t: TimeLike) -> Tuple[torch.Tensor, torch.Tensor]:
        """Return (velocity, divergence) = (-∇ₓΦ, -tr ∇²ₓΦ)."""
        return -self.grad(x, t), -self.trace(x, t)
