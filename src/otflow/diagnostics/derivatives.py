"""Reference derivatives of the OT-Flow potential.

These go through torch.autograd or finite differences of `potential` and are
used to check the closed-form gradient and trace. They are much slower than
the closed forms and are not meant for integration or training.
"""

from __future__ import annotations

import torch

from otflow.potentials.base import TimeLike
from otflow.potentials.params import ParameterBundle
from otflow.potentials.resnet_kernel import potential


def autograd_gradient(
    x: torch.Tensor,
    t: TimeLike,
    params: ParameterBundle,
    *,
    create_graph: bool = False,
) -> torch.Tensor:
    """∇ₓΦ via autograd. Same shape as x."""
    x_req = x.detach().clone().requires_grad_(True)
    phi = potential(x_req, t, params)
    (grad,) = torch.autograd.grad(phi.sum(), x_req, create_graph=create_graph)
    return grad


def autograd_trace(x: torch.Tensor, t: TimeLike, params: ParameterBundle) -> torch.Tensor:
    """tr(∇²ₓΦ) via one extra backward pass per spatial coordinate. Shape [] or [B]."""
    x_req = x.detach().clone().requires_grad_(True)
    phi = potential(x_req, t, params)
    (grad,) = torch.autograd.grad(phi.sum(), x_req, create_graph=True)

    total = torch.zeros_like(phi)
    if not grad.requires_grad:
        # Φ is affine in x; the Hessian vanishes.
        return total.detach()
    for i in range(x.shape[-1]):
        (row,) = torch.autograd.grad(grad[..., i].sum(), x_req, retain_graph=True, allow_unused=True)
        if row is not None:
            total = total + row[..., i]
    return total.detach()


@torch.no_grad()
def finite_difference_gradient(
    x: torch.Tensor,
    t: TimeLike,
    params: ParameterBundle,
    *,
    step: float = 1e-5,
) -> torch.Tensor:
    """Central differences (Φ(x + h eᵢ) - Φ(x - h eᵢ)) / 2h. Same shape as x."""
    out = torch.empty_like(x)
    for i in range(x.shape[-1]):
        e = torch.zeros_like(x)
        e[..., i] = step
        out[..., i] = (potential(x + e, t, params) - potential(x - e, t, params)) / (2.0 * step)
    return out


@torch.no_grad()
def finite_difference_trace(
    x: torch.Tensor,
    t: TimeLike,
    params: ParameterBundle,
    *,
    step: float = 1e-4,
) -> torch.Tensor:
    """Σᵢ (Φ(x + h eᵢ) - 2Φ(x) + Φ(x - h eᵢ)) / h². Shape [] or [B]."""
    center = potential(x, t, params)
    total = torch.zeros_like(center)
    for i in range(x.shape[-1]):
        e = torch.zeros_like(x)
        e[..., i] = step
        total += (potential(x + e, t, params) - 2.0 * center + potential(x - e, t, params)) / (step * step)
    return total
