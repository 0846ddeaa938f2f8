from __future__ import annotations


class OTFlowError(Exception):
    """Base class for kernel errors."""


class ShapeError(OTFlowError, ValueError):
    """Raised when inputs or parameters disagree with the declared (d, m, r)."""


class NumericError(OTFlowError, ArithmeticError):
    """Raised when an evaluation produces a non-finite value."""
