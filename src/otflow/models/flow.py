from __future__ import annotations

import logging
from typing import Optional, Tuple

import torch
from torch import nn

from otflow.potentials.base import TimeLike
from otflow.potentials.params import PARAM_NAMES, KernelDims, ParameterBundle, init_parameters
from otflow.potentials.resnet_kernel import OTFlowPotential, evaluate, potential

logger = logging.getLogger(__name__)


class OTFlow(nn.Module):
    """Layer mapping (x, t) to (velocity, divergence) = (-∇ₓΦ, -tr ∇²ₓΦ).

    Parameters are nn.Parameters, so autograd differentiates the closed-form
    velocity and divergence with respect to them.
    """

    def __init__(
        self,
        d: int,
        m: int,
        r: Optional[int] = None,
        *,
        dtype: torch.dtype = torch.float64,
        generator: Optional[torch.Generator] = None,
        scale: float = 0.01,
        device: Optional[torch.device] = None,
    ):
        super().__init__()
        self.dims = KernelDims(d=d, m=m, r=r)
        init = init_parameters(self.dims, generator=generator, dtype=dtype, device=device, scale=scale)
        for name, value in init.as_dict().items():
            self.register_parameter(name, nn.Parameter(value))
        logger.debug("Initialized OTFlow layer %s (dtype=%s)", self.dims, dtype)

    @classmethod
    def from_bundle(cls, params: ParameterBundle) -> "OTFlow":
        """Build a layer whose parameters are copies of `params`."""
        dims = params.infer_dims()
        layer = cls(dims.d, dims.m, dims.r, dtype=params.dtype, device=params.w.device)
        layer.load_bundle(params)
        return layer

    @torch.no_grad()
    def load_bundle(self, params: ParameterBundle) -> None:
        params.validate(self.dims)
        for name, value in params.as_dict().items():
            getattr(self, name).copy_(value)

    def bundle(self) -> ParameterBundle:
        """Live view of the parameters (autograd flows through it)."""
        return ParameterBundle(**{name: getattr(self, name) for name in PARAM_NAMES})

    def snapshot(self) -> ParameterBundle:
        """Detached copy of the parameters, unaffected by later optimizer steps."""
        return self.bundle().detach()

    def as_potential(self) -> OTFlowPotential:
        return OTFlowPotential(self.bundle(), dims=self.dims)

    def forward(self, x: torch.Tensor, t: TimeLike) -> Tuple[torch.Tensor, torch.Tensor]:
        """Return (velocity [.., d], divergence [..])."""
        return evaluate(x, t, self.bundle(), self.dims.d)

    def potential(self, x: torch.Tensor, t: TimeLike) -> torch.Tensor:
        """Return Φ(x, t), shape [] or [B]."""
        return potential(x, t, self.bundle())
