"""Autograd and finite-difference references for the closed-form derivatives."""

from .derivatives import (
    autograd_gradient,
    autograd_trace,
    finite_difference_gradient,
    finite_difference_trace,
)

__all__ = [
    "autograd_gradient",
    "autograd_trace",
    "finite_difference_gradient",
    "finite_difference_trace",
]
