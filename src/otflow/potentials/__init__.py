"""OT-Flow potential with closed-form gradient and Hessian trace."""

from .base import SpaceTimePotential
from .params import KernelDims, ParameterBundle, init_parameters
from .resnet_kernel import (
    ActivationTrace,
    OTFlowKernel,
    OTFlowPotential,
    activation_trace,
    evaluate,
    gradient,
    make_kernel,
    potential,
    resnet_forward,
    trace,
)

__all__ = [
    "SpaceTimePotential",
    "KernelDims",
    "ParameterBundle",
    "init_parameters",
    "ActivationTrace",
    "OTFlowKernel",
    "OTFlowPotential",
    "activation_trace",
    "evaluate",
    "gradient",
    "make_kernel",
    "potential",
    "resnet_forward",
    "trace",
]
