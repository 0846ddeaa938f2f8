from __future__ import annotations

from typing import Dict, Optional

import torch

from otflow.potentials.base import SpaceTimePotential, TimeLike


def velocity_divergence_loss(
    potential: SpaceTimePotential,
    x: torch.Tensor,
    t: TimeLike,
    *,
    reduction: str = "mean",
) -> torch.Tensor:
    """Compute ½‖v‖² - ∇·v with v = -∇ₓΦ, i.e. ½‖∇ₓΦ‖² + tr(∇²ₓΦ).

    Args:
        potential: Space-time potential Φ.
        x: Tensor of shape [d] or [B, d].
        t: Scalar time or tensor of shape [B].
        reduction: "mean" or "sum" or "none".

    Returns:
        Scalar tensor if reduction != "none", else shape [] or [B].
    """
    v, div = potential.evaluate(x, t)
    per_example = 0.5 * (v * v).sum(dim=potential.spec.space_dim) - div

    if reduction == "none":
        return per_example
    if reduction == "sum":
        return per_example.sum()
    if reduction == "mean":
        return per_example.mean()
    raise ValueError(f"Unknown reduction={reduction!r} (expected 'mean', 'sum', or 'none')")


def parameter_gradients(
    model,
    x: torch.Tensor,
    t: TimeLike,
    *,
    reduction: str = "mean",
) -> Dict[str, torch.Tensor]:
    """Gradients of velocity_divergence_loss w.r.t. every parameter of an OTFlow layer.

    Computed by autograd through the closed-form velocity and divergence.
    Parameters the loss does not depend on (e.g. c) get zeros.
    """
    if reduction == "none":
        raise ValueError("parameter_gradients needs a scalar loss; use reduction='mean' or 'sum'")
    names = [name for name, _ in model.named_parameters()]
    params = [p for _, p in model.named_parameters()]

    loss = velocity_divergence_loss(model.as_potential(), x, t, reduction=reduction)
    grads = torch.autograd.grad(loss, params, allow_unused=True)
    return {
        name: (torch.zeros_like(p) if g is None else g)
        for name, p, g in zip(names, params, grads)
    }


def _self_check_against_autograd(
    *,
    d: int = 3,
    m: int = 8,
    seed: int = 0,
    device: Optional[str] = None,
) -> None:
    """Sanity check: closed-form (v, div) equals autograd on Φ.

    Not used by library code; handy for debugging.
    """
    from otflow.diagnostics.derivatives import autograd_gradient, autograd_trace
    from otflow.potentials.params import KernelDims, ParameterBundle, init_parameters
    from otflow.potentials.resnet_kernel import OTFlowPotential

    if device is None:
        device = "cuda" if torch.cuda.is_available() else "cpu"

    g = torch.Generator(device="cpu")
    g.manual_seed(seed)

    cpu_params = init_parameters(KernelDims(d=d, m=m), generator=g, scale=0.5)
    params = ParameterBundle.from_mapping(cpu_params.as_dict(), device=torch.device(device))
    x = torch.randn(16, d, generator=g, dtype=torch.float64).to(device)
    t = torch.rand(16, generator=g, dtype=torch.float64).to(device)

    pot = OTFlowPotential(params)
    v, div = pot.evaluate(x, t)
    torch.testing.assert_close(-v, autograd_gradient(x, t, params), rtol=1e-8, atol=1e-10)
    torch.testing.assert_close(-div, autograd_trace(x, t, params), rtol=1e-8, atol=1e-10)
