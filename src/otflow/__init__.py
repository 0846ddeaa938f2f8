"""OT-Flow potential kernel.

The package is small and split by concern:
- potentials: the residual-network potential with closed-form gradient and Hessian trace
- models: torch.nn layer exposing (velocity, divergence)
- losses: flow losses and autograd parameter gradients
- diagnostics: autograd / finite-difference references for the closed forms
- experiments: runnable entrypoints
"""

from .errors import NumericError, OTFlowError, ShapeError

__all__ = ["NumericError", "OTFlowError", "ShapeError"]
