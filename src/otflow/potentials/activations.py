from __future__ import annotations

import torch


def sigma(z: torch.Tensor) -> torch.Tensor:
    r"""σ(z) = log(e^z + e^{-z}), elementwise.

    Evaluated as logaddexp(z, -z) so large |z| does not overflow.
    """
    return torch.logaddexp(z, -z)


def sigma_prime(z: torch.Tensor) -> torch.Tensor:
    """σ'(z) = tanh(z)."""
    return torch.tanh(z)


def sigma_second(z: torch.Tensor) -> torch.Tensor:
    """σ''(z) = 1 - tanh(z)^2."""
    th = torch.tanh(z)
    return 1.0 - th * th
