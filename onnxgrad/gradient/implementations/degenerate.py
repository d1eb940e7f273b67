# Copyright 2019-2025 ETH Zurich and the DaCe authors. All rights reserved.
from typing import List

from onnxgrad.gradient.base_abc import GradientBuilderBase
from onnxgrad.gradient.exceptions import UnsupportedGradientError
from onnxgrad.graph import NodeDef
from onnxgrad.registry import autoregister_params


@autoregister_params(op=("Shape", "Size", "ConstantOfShape"), name="empty")
class EmptyGradientBuilder(GradientBuilderBase):
    """ Builder for operators whose outputs do not depend differentiably on their inputs.

        The fragment is empty and no forward tensor is stashed.
    """

    def get_gradient_defs_impl(self) -> List[NodeDef]:
        return []


@autoregister_params(op=("Loop", "If", "Scan"), name="unsupported")
class UnSupportedGradientBuilder(GradientBuilderBase):
    """Builder for operators whose gradient must never be requested."""

    def get_gradient_defs_impl(self) -> List[NodeDef]:
        raise UnsupportedGradientError(f"Gradient should not be requested for {self.src_node_op_type()} nodes",
                                       self.node_name())
