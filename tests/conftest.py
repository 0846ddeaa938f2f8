from __future__ import annotations

from typing import Optional

import pytest
import torch

from otflow.potentials.params import KernelDims, ParameterBundle, init_parameters


def random_params(
    d: int,
    m: int,
    r: Optional[int] = None,
    *,
    seed: int = 0,
    scale: float = 0.5,
    biases: bool = True,
) -> ParameterBundle:
    g = torch.Generator().manual_seed(seed)
    dims = KernelDims(d=d, m=m, r=r)
    params = init_parameters(dims, generator=g, scale=scale)
    if not biases:
        return params
    return params.replace(
        b=torch.randn(dims.augmented, generator=g, dtype=torch.float64) * scale,
        c=torch.tensor(0.7, dtype=torch.float64),
        b0=torch.randn(m, generator=g, dtype=torch.float64) * scale,
        b1=torch.randn(m, generator=g, dtype=torch.float64) * scale,
    )


@pytest.fixture
def params() -> ParameterBundle:
    return random_params(3, 6)


@pytest.fixture
def points() -> torch.Tensor:
    g = torch.Generator().manual_seed(123)
    return torch.randn(5, 3, generator=g, dtype=torch.float64)


@pytest.fixture
def times() -> torch.Tensor:
    return torch.tensor([0.0, 0.25, 1.0, -0.5, 0.1], dtype=torch.float64)
