# Copyright 2019-2025 ETH Zurich and the DaCe authors. All rights reserved.
"""
Gradient Builder Implementations for ONNX Operators.

Each implementation defines the backward fragment of specific operators and registers itself with
:class:`onnxgrad.gradient.base_abc.GradientBuilderBase`.

Implementation Categories
-------------------------
1. **Degenerate builders** (degenerate.py):
   - Operators without a gradient (Shape, Size, ConstantOfShape)
   - Operators that must never be differentiated (Loop, If, Scan)

2. **ONNX Operations** (onnx_ops.py):
   - Elementwise arithmetic with broadcasting: Add, Sub, Mul
   - Contrib activations: BiasGelu, FastGelu

3. **Generic builder** (generic.py):
   - Expands custom gradient definitions registered in the GradientDefinitionRegistry
"""

import onnxgrad.gradient.implementations.degenerate
import onnxgrad.gradient.implementations.onnx_ops
from onnxgrad.gradient.implementations.generic import GenericGradientBuilder

__all__ = [
    "GenericGradientBuilder",
]
