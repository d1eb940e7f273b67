# Copyright 2019-2025 ETH Zurich and the DaCe authors. All rights reserved.
"""
Graph-element model consumed and produced by the gradient builders.
"""

from .arg_def import ArgDef, OpDef, NodeDef, GradientDef, MS_DOMAIN, ONNX_DOMAIN
from .forward_graph import ForwardGraph, ForwardNode, recompute_name

__all__ = [
    "ArgDef",
    "OpDef",
    "NodeDef",
    "GradientDef",
    "ForwardGraph",
    "ForwardNode",
    "recompute_name",
    "MS_DOMAIN",
    "ONNX_DOMAIN",
]
