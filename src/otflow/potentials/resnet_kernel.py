from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import torch

from otflow.errors import NumericError, ShapeError

from .activations import sigma, sigma_prime, sigma_second
from .base import SpaceTimePotential, TimeLike, prepare_inputs
from .params import KernelDims, ParameterBundle

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class ActivationTrace:
    """Intermediates of the residual block for one evaluation (always batched internally).

    s = [x; t], pre0 = K0 s + b0, u0 = σ(pre0), pre1 = K1 u0 + b1, u1 = u0 + σ(pre1).
    """

    s: torch.Tensor  # [B, d+1]
    pre0: torch.Tensor  # [B, m]
    u0: torch.Tensor  # [B, m]
    pre1: torch.Tensor  # [B, m]
    u1: torch.Tensor  # [B, m]
    batched: bool

    @property
    def d(self) -> int:
        return self.s.shape[-1] - 1


def _resolve_dims(params: ParameterBundle, d: Optional[int]) -> KernelDims:
    dims = params.infer_dims()
    if d is not None and d != dims.d:
        raise ShapeError(f"Requested d={d} but parameters were built for d={dims.d}")
    return dims


def _unbatch(value: torch.Tensor, batched: bool) -> torch.Tensor:
    return value if batched else value.squeeze(0)


def _ensure_finite(name: str, value: torch.Tensor) -> torch.Tensor:
    if not bool(torch.isfinite(value).all()):
        raise NumericError(f"{name} evaluated to a non-finite value; the input is outside the model's valid range")
    return value


def _check_acts(acts: ActivationTrace, dims: KernelDims) -> ActivationTrace:
    if acts.d != dims.d or acts.pre0.shape[-1] != dims.m:
        raise ShapeError(
            f"Activation trace has d={acts.d}, m={acts.pre0.shape[-1]} but parameters have d={dims.d}, m={dims.m}"
        )
    return acts


def _activation_trace(x: torch.Tensor, t: TimeLike, params: ParameterBundle, dims: KernelDims) -> ActivationTrace:
    xb, tt, batched = prepare_inputs(x, t, dims.d, dtype=params.dtype)
    s = torch.cat([xb, tt.unsqueeze(-1)], dim=-1)
    pre0 = s @ params.K0.T + params.b0
    u0 = sigma(pre0)
    pre1 = u0 @ params.K1.T + params.b1
    u1 = u0 + sigma(pre1)
    return ActivationTrace(s=s, pre0=pre0, u0=u0, pre1=pre1, u1=u1, batched=batched)


def activation_trace(x: torch.Tensor, t: TimeLike, params: ParameterBundle) -> ActivationTrace:
    """Run the residual block once; the result can be passed to gradient/trace as `acts`."""
    return _activation_trace(x, t, params, params.infer_dims())


def resnet_forward(x: torch.Tensor, t: TimeLike, params: ParameterBundle) -> torch.Tensor:
    """Return u1 = u0 + σ(K1 u0 + b1), shape [m] or [B, m]."""
    acts = activation_trace(x, t, params)
    return _unbatch(acts.u1, acts.batched)


def potential(x: torch.Tensor, t: TimeLike, params: ParameterBundle) -> torch.Tensor:
    """Φ(x, t) = wᵀu1 + ½‖A s‖² + bᵀs + c. Returns shape [] or [B]."""
    acts = activation_trace(x, t, params)
    As = acts.s @ params.A.T
    phi = acts.u1 @ params.w + 0.5 * (As * As).sum(dim=-1) + acts.s @ params.b + params.c
    return _unbatch(_ensure_finite("potential", phi), acts.batched)


def _hidden_sensitivity(acts: ActivationTrace, params: ParameterBundle) -> torch.Tensor:
    # z1 = w + K1ᵀ(σ'(pre1) ⊙ w): dΦ/du0, shape [B, m]
    return params.w + (sigma_prime(acts.pre1) * params.w) @ params.K1


def _gradient(acts: ActivationTrace, params: ParameterBundle, d: int, z1: torch.Tensor) -> torch.Tensor:
    z0 = (sigma_prime(acts.pre0) * z1) @ params.K0
    full = z0 + (acts.s @ params.A.T) @ params.A + params.b
    return _ensure_finite("gradient", full[:, :d])


def _trace(acts: ActivationTrace, params: ParameterBundle, d: int, z1: torch.Tensor) -> torch.Tensor:
    K0_E = params.K0[:, :d]
    A_E = params.A[:, :d]

    # First layer curvature: Σ_i σ''(pre0_i) z1_i ‖K0_E[i]‖²
    t0 = (sigma_second(acts.pre0) * z1) @ (K0_E * K0_E).sum(dim=1)

    # Second layer curvature through J = diag(σ'(pre0)) K0_E, shape [B, m, d].
    J = sigma_prime(acts.pre0).unsqueeze(-1) * K0_E
    K1J = torch.matmul(params.K1, J)
    t1 = ((sigma_second(acts.pre1) * params.w).unsqueeze(-1) * K1J * K1J).sum(dim=(-2, -1))

    trace_A = (A_E * A_E).sum()
    return _ensure_finite("trace", t0 + t1 + trace_A)


def gradient(
    x: torch.Tensor,
    t: TimeLike,
    params: ParameterBundle,
    d: int,
    *,
    acts: Optional[ActivationTrace] = None,
) -> torch.Tensor:
    """Closed-form ∇ₓΦ, the first d coordinates of ∇ₛΦ. Returns shape [d] or [B, d].

    If `acts` is given it must come from activation_trace(x, t, params).
    """
    dims = _resolve_dims(params, d)
    acts = _check_acts(acts, dims) if acts is not None else _activation_trace(x, t, params, dims)
    g = _gradient(acts, params, dims.d, _hidden_sensitivity(acts, params))
    return _unbatch(g, acts.batched)


def trace(
    x: torch.Tensor,
    t: TimeLike,
    params: ParameterBundle,
    d: int,
    *,
    acts: Optional[ActivationTrace] = None,
) -> torch.Tensor:
    """Closed-form tr(∇²ₓΦ) over the spatial block. Returns shape [] or [B].

    Costs O(m·d + m²·d) per example; no Hessian is formed.
    """
    dims = _resolve_dims(params, d)
    acts = _check_acts(acts, dims) if acts is not None else _activation_trace(x, t, params, dims)
    tr = _trace(acts, params, dims.d, _hidden_sensitivity(acts, params))
    return _unbatch(tr, acts.batched)


def evaluate(
    x: torch.Tensor,
    t: TimeLike,
    params: ParameterBundle,
    d: int,
    *,
    acts: Optional[ActivationTrace] = None,
) -> Tuple[torch.Tensor, torch.Tensor]:
    """Return (velocity, divergence) = (-∇ₓΦ, -tr ∇²ₓΦ), sharing one forward pass."""
    dims = _resolve_dims(params, d)
    acts = _check_acts(acts, dims) if acts is not None else _activation_trace(x, t, params, dims)
    z1 = _hidden_sensitivity(acts, params)
    g = _gradient(acts, params, dims.d, z1)
    tr = _trace(acts, params, dims.d, z1)
    return _unbatch(-g, acts.batched), _unbatch(-tr, acts.batched)


class OTFlowKernel:
    """Handle for a fixed (d, m, r) architecture; every bundle is checked against it."""

    def __init__(self, dims: KernelDims):
        self.dims = dims

    def __repr__(self) -> str:
        return f"OTFlowKernel(d={self.dims.d}, m={self.dims.m}, r={self.dims.r})"

    def check_params(self, params: ParameterBundle) -> ParameterBundle:
        params.validate(self.dims)
        return params

    def potential(self, x: torch.Tensor, t: TimeLike, params: ParameterBundle) -> torch.Tensor:
        return potential(x, t, self.check_params(params))

    def gradient(self, x: torch.Tensor, t: TimeLike, params: ParameterBundle) -> torch.Tensor:
        return gradient(x, t, self.check_params(params), self.dims.d)

    def trace(self, x: torch.Tensor, t: TimeLike, params: ParameterBundle) -> torch.Tensor:
        return trace(x, t, self.check_params(params), self.dims.d)

    def evaluate(
        self, x: torch.Tensor, t: TimeLike, params: ParameterBundle
    ) -> Tuple[torch.Tensor, torch.Tensor]:
        return evaluate(x, t, self.check_params(params), self.dims.d)

    def bind(self, params: ParameterBundle) -> "OTFlowPotential":
        return OTFlowPotential(self.check_params(params), dims=self.dims)


def make_kernel(d: int, m: int, r: Optional[int] = None) -> OTFlowKernel:
    """Build a kernel handle; r defaults to min(10, d)."""
    dims = KernelDims(d=d, m=m, r=r)
    logger.debug("Built OT-Flow kernel %s", dims)
    return OTFlowKernel(dims)


class OTFlowPotential(SpaceTimePotential):
    r"""OT-Flow potential bound to one parameter bundle.

    Φ(x, t) = wᵀ N(s) + ½ sᵀ(AᵀA)s + bᵀs + c, with N a two-layer residual
    network using σ(z) = log(e^z + e^{-z}).

    - grad(x, t) back-propagates through the residual block by hand.
    - trace(x, t) sums the diagonal curvature terms of both layers plus ‖A_E‖_F².
    """

    def __init__(self, params: ParameterBundle, *, dims: Optional[KernelDims] = None):
        if dims is None:
            dims = params.infer_dims()
        else:
            params.validate(dims)
        self.params = params
        self.dims = dims

    @property
    def d(self) -> int:
        return self.dims.d

    def phi(self, x: torch.Tensor, t: TimeLike) -> torch.Tensor:
        return potential(x, t, self.params)

    def grad(self, x: torch.Tensor, t: TimeLike) -> torch.Tensor:
        return gradient(x, t, self.params, self.d)

    def trace(self, x: torch.Tensor, t: TimeLike) -> torch.Tensor:
        return trace(x, t, self.params, self.d)

    def evaluate(self, x: torch.Tensor, t: TimeLike) -> Tuple[torch.Tensor, torch.Tensor]:
        return evaluate(x, t, self.params, self.d)
