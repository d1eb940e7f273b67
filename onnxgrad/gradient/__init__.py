# Copyright 2019-2025 ETH Zurich and the DaCe authors. All rights reserved.
"""
Gradient builders for ONNX graphs.

For every differentiable forward node, a gradient builder emits the fragment of the backward graph that maps the
gradients of the node's outputs to the gradients of its inputs.

Main Components
---------------
- **GradientBuilderBase**: the builder contract and the helpers shared by all builders
- **find_gradient_builder**: looks up the registered builder for a forward node
- **BackwardContext**: state shared by the builders of one backward pass
- **GradientDefinitionRegistry**: custom gradient definitions expanded by the generic builder
- **compute_broadcast_backward_axes**: reduce axes of broadcast elementwise operands
"""

from .exceptions import GradientBuilderException, ContractViolation, BroadcastError, UnsupportedGradientError
from .broadcast import compute_broadcast_backward_axes, compute_broadcast_backward_axes_dynamic
from .definitions import GradientDefinitionRegistry, GradientNodeAttributeDefinition, GradientNodeDefinition
from .base_abc import BackwardContext, GradientBuilderBase, find_gradient_builder, get_shape

__all__ = [
    "GradientBuilderException",
    "ContractViolation",
    "BroadcastError",
    "UnsupportedGradientError",
    "compute_broadcast_backward_axes",
    "compute_broadcast_backward_axes_dynamic",
    "GradientDefinitionRegistry",
    "GradientNodeAttributeDefinition",
    "GradientNodeDefinition",
    "BackwardContext",
    "GradientBuilderBase",
    "find_gradient_builder",
    "get_shape",
]
