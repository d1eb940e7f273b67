# Copyright 2019-2025 ETH Zurich and the DaCe authors. All rights reserved.
"""
Gradient builders for ONNX operators.

The elementwise builders reduce the incoming gradient over the broadcast axes of each operand. When the shapes
of both operands are statically known, the axes are computed while building; otherwise nodes computing them at
runtime are emitted.

If both operands are the same forward tensor, its gradient is the sum of the two contributions.
"""
import logging
from typing import List, Optional, Tuple

from onnxgrad.gradient.base_abc import GradientBuilderBase, get_shape
from onnxgrad.gradient.broadcast import compute_broadcast_backward_axes_dynamic
from onnxgrad.graph import ArgDef, NodeDef, OpDef, MS_DOMAIN
from onnxgrad.registry import autoregister_params

log = logging.getLogger(__name__)


def _dynamic_broadcast_axes(builder: GradientBuilderBase, a: ArgDef, b: ArgDef,
                            output: List[NodeDef]) -> Tuple[ArgDef, ArgDef, Optional[ArgDef], Optional[ArgDef]]:
    """ Emit the runtime shapes and reduce axes of the two operands of ``builder``'s node.

        Axes are only computed for operands that require a gradient.

        :return: the shape of A, the shape of B, the reduce axes of A and the reduce axes of B.
    """
    a_shape = builder.IA("Shape_" + a.name)
    b_shape = builder.IA("Shape_" + b.name)
    a_axes = builder.IA("ReduceAxes_" + a.name) if builder.is_gradient_required_for_src_node_input(0) else None
    b_axes = builder.IA("ReduceAxes_" + b.name) if builder.is_gradient_required_for_src_node_input(1) else None

    if a.name == b.name:
        # Same tensor on both sides, the axes of A serve both operands
        a_axes = a_axes or b_axes
        compute_broadcast_backward_axes_dynamic(a, b, a_shape, b_shape, a_axes, None, output)
        return a_shape, b_shape, a_axes, a_axes

    compute_broadcast_backward_axes_dynamic(a, b, a_shape, b_shape, a_axes, b_axes, output)
    return a_shape, b_shape, a_axes, b_axes


def _gradient_targets(builder: GradientBuilderBase) -> Tuple[ArgDef, ArgDef, bool]:
    """ The tensors receiving the gradient contributions of A and B.

        :return: both targets, and whether they are partial gradients of one shared tensor.
    """
    if builder.node.proto.input[0] == builder.node.proto.input[1]:
        return builder.IA("PartialGrad0", builder.IType(0)), builder.IA("PartialGrad1", builder.IType(1)), True
    return builder.GI(0), builder.GI(1), False


@autoregister_params(op=("Add", "Sub"), name="default")
class AddSubGradientBuilder(GradientBuilderBase):
    """ Gradient of ``Y = A + B`` and ``Y = A - B``.

        dA is dY reduced to the shape of A. dB is dY, negated for Sub, reduced to the shape of B.
    """

    def get_gradient_defs_impl(self) -> List[NodeDef]:
        if not (self.is_gradient_required_for_src_node_input(0) or self.is_gradient_required_for_src_node_input(1)):
            return []

        is_sub = self.src_node_op_type() == "Sub"
        grad_a, grad_b, shared = _gradient_targets(self)
        output = []

        # only the shapes of the operands are needed when they are statically known
        a, b = self.I(0, record_stashing=False), self.I(1, record_stashing=False)
        a_dims, b_dims = get_shape(a), get_shape(b)

        if a_dims is not None and b_dims is not None:
            a_axes, b_axes = self.compute_broadcast_backward_axes(a_dims, b_dims)

            if self.is_gradient_required_for_src_node_input(0):
                self.handle_broadcasting(self.GO(0), a, grad_a, a_axes, output)

            if self.is_gradient_required_for_src_node_input(1):
                grad = self.GO(0)
                if is_sub:
                    grad = self.IA("PreReduceGrad1", self.OType(0))
                    output.append(NodeDef("Neg", [self.GO(0)], [grad]))
                self.handle_broadcasting(grad, b, grad_b, b_axes, output)
        else:
            log.debug(f"Computing the broadcast axes of {self.node_name() or self.src_node_op_type()} at runtime")
            a, b = self.I(0), self.I(1)
            a_shape, b_shape, a_axes, b_axes = _dynamic_broadcast_axes(self, a, b, output)

            if self.is_gradient_required_for_src_node_input(0):
                self.handle_broadcasting_dynamic(self.GO(0), a, a_shape, grad_a, a_axes, output)

            if self.is_gradient_required_for_src_node_input(1):
                grad = self.GO(0)
                if is_sub:
                    grad = self.IA("PreReduceGrad1", self.OType(0))
                    output.append(NodeDef("Neg", [self.GO(0)], [grad]))
                self.handle_broadcasting_dynamic(grad, b, b_shape, grad_b, b_axes, output)

        if shared:
            self.sum_gradients([grad_a, grad_b], self.GI(0), output)
        return output


@autoregister_params(op="Mul", name="default")
class MulGradientBuilder(GradientBuilderBase):
    """ Gradient of ``Y = A * B``.

        dA is ``dY * B`` reduced to the shape of A, and dB is ``dY * A`` reduced to the shape of B.
    """

    def get_gradient_defs_impl(self) -> List[NodeDef]:
        requires_a = self.is_gradient_required_for_src_node_input(0)
        requires_b = self.is_gradient_required_for_src_node_input(1)
        if not (requires_a or requires_b):
            return []

        grad_a, grad_b, shared = _gradient_targets(self)
        output = []
        a, b = self.I(0, record_stashing=False), self.I(1, record_stashing=False)
        a_dims, b_dims = get_shape(a), get_shape(b)

        if a_dims is not None and b_dims is not None:
            a_axes, b_axes = self.compute_broadcast_backward_axes(a_dims, b_dims)

            if requires_a:
                pre_reduce_grad = self.IA("PreReduceGrad0", self.OType(0))
                output.append(NodeDef("Mul", [self.GO(0), self.I(1)], [pre_reduce_grad]))
                self.handle_broadcasting(pre_reduce_grad, a, grad_a, a_axes, output)

            if requires_b:
                pre_reduce_grad = self.IA("PreReduceGrad1", self.OType(0))
                output.append(NodeDef("Mul", [self.GO(0), self.I(0)], [pre_reduce_grad]))
                self.handle_broadcasting(pre_reduce_grad, b, grad_b, b_axes, output)
        else:
            a, b = self.I(0), self.I(1)
            a_shape, b_shape, a_axes, b_axes = _dynamic_broadcast_axes(self, a, b, output)

            if requires_a:
                pre_reduce_grad = self.IA("PreReduceGrad0", self.OType(0))
                output.append(NodeDef("Mul", [self.GO(0), b], [pre_reduce_grad]))
                self.handle_broadcasting_dynamic(pre_reduce_grad, a, a_shape, grad_a, a_axes, output)

            if requires_b:
                pre_reduce_grad = self.IA("PreReduceGrad1", self.OType(0))
                output.append(NodeDef("Mul", [self.GO(0), a], [pre_reduce_grad]))
                self.handle_broadcasting_dynamic(pre_reduce_grad, b, b_shape, grad_b, b_axes, output)

        if shared:
            self.sum_gradients([grad_a, grad_b], self.GI(0), output)
        return output


def _bias_gelu_grad_outputs(builder: GradientBuilderBase) -> Tuple[ArgDef, ArgDef]:
    dX = builder.GI(0) if builder.is_gradient_required_for_src_node_input(0) else builder.IA("dX", builder.IType(0))
    dB = builder.GI(1) if builder.is_gradient_required_for_src_node_input(1) else builder.IA("dB", builder.IType(1))
    return dX, dB


@autoregister_params(op="BiasGelu", domain=MS_DOMAIN, name="default")
class BiasGeluGradientBuilder(GradientBuilderBase):
    """Gradient of the fused ``Y = gelu(X + B)`` contrib op."""

    def get_gradient_defs_impl(self) -> List[NodeDef]:
        dX, dB = _bias_gelu_grad_outputs(self)
        return self.get_bias_gelu_grad_nodes(False, self.GO(0), self.I(0), self.I(1), dX, dB)


@autoregister_params(op="FastGelu", domain=MS_DOMAIN, name="default")
class FastGeluGradientBuilder(GradientBuilderBase):
    """ Gradient of the tanh approximated gelu contrib op.

        With a bias input, the op computes ``Y = fastgelu(X + B)`` and both gradients are produced by the bias-gelu
        nodes. Without one, a single ``FastGeluGrad`` node computes dX.
    """

    def get_gradient_defs_impl(self) -> List[NodeDef]:
        if self.get_src_node_input_size() >= 2 and self.node.proto.input[1]:
            dX, dB = _bias_gelu_grad_outputs(self)
            return self.get_bias_gelu_grad_nodes(True, self.GO(0), self.I(0), self.I(1), dX, dB)

        return [NodeDef(OpDef("FastGeluGrad", MS_DOMAIN, 1), [self.GO(0), self.I(0)], [self.GI(0)])]
