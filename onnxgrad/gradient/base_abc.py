# Copyright 2019-2025 ETH Zurich and the DaCe authors. All rights reserved.
"""
Abstract Base Classes for Gradient Builders
"""
import abc
import copy
import dataclasses
import json
import logging
import re
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence, Set, Tuple, Type

import onnx
from onnx import TensorProto, helper

from onnxgrad.config import GradientGraphConfiguration
from onnxgrad.gradient import constants
from onnxgrad.gradient.broadcast import (DimensionKind, compute_broadcast_backward_axes,
                                         compute_broadcast_backward_axes_dynamic, dimension_kind)
from onnxgrad.gradient.definitions import GradientNodeAttributeDefinition
from onnxgrad.gradient.exceptions import ContractViolation
from onnxgrad.graph import (ArgDef, ForwardGraph, ForwardNode, GradientDef, NodeDef, OpDef, MS_DOMAIN, ONNX_DOMAIN,
                            recompute_name)
from onnxgrad.registry import make_registry

log = logging.getLogger(__name__)


@dataclasses.dataclass
class BackwardContext:
    """ The state shared by all gradient builders of one backward-graph pass.

        The stashed tensors and the PythonOp gradient requirements are only ever added to during a pass.
    """
    graph: ForwardGraph  #: The forward graph
    config: GradientGraphConfiguration = dataclasses.field(
        default_factory=GradientGraphConfiguration.from_config)  #: Pass-wide options

    #: Forward tensors that have to stay materialized because a gradient fragment reads them.
    stashed_tensors: Set[str] = dataclasses.field(default_factory=set)

    #: Per PythonOp node, whether each of its inputs requires a gradient.
    python_op_input_requires_grads: Dict[str, List[int]] = dataclasses.field(default_factory=dict)


def get_shape(arg_def: ArgDef) -> Optional[List[onnx.TensorShapeProto.Dimension]]:
    """ Return the static dimensions of ``arg_def``.

        :return: the dimensions, or None if the type, the shape or any of the dimensions is unknown.
    """
    type_proto = arg_def.type_proto
    if type_proto is None or not type_proto.HasField('tensor_type') or not type_proto.tensor_type.HasField('shape'):
        return None
    dims = list(type_proto.tensor_type.shape.dim)
    for dim in dims:
        if dimension_kind(dim)[0] == DimensionKind.Unknown:
            return None
    return dims


def get_gradient_definition_key_by_node(node: ForwardNode) -> str:
    """ The key under which custom gradient definitions for ``node`` are registered.

        PythonOp nodes of the ``com.microsoft`` domain are distinguished by the function they call.
    """
    key = f"{node.domain}::{node.op_type}"
    if node.op_type == "PythonOp" and node.domain == MS_DOMAIN:
        func_name = node.attributes.get("func_name")
        if func_name is not None:
            key += "::" + helper.get_attribute_value(func_name).decode('utf-8')
    return key


_ELEM_TYPE_EXPRESSION = re.compile(r'\s*(I|O)ElemType\((\d+)\)\s*')


@make_registry
class GradientBuilderBase(abc.ABC):
    """ABC for per-operator gradient builders.

    This registry expects an argument ``op=OP`` where ``OP`` is the operator type (or a collection of operator
    types) that the builder supports. It can also take ``domain=DOMAIN`` (defaults to the ONNX domain) and
    ``min_opset=VERSION``, the first schema version of the operator the builder applies to.

    A builder is constructed for one forward node and produces the backward fragment of that node through
    :meth:`get_gradient_defs`.

    :param node: the forward node to differentiate.
    :param context: the state shared by all builders of this backward pass.
    :param gradient_inputs: names of forward outputs for which an incoming gradient exists.
    :param gradient_outputs: names of forward inputs for which a gradient must be produced.
    """

    def __init__(self, node: ForwardNode, context: BackwardContext, gradient_inputs: Iterable[str],
                 gradient_outputs: Iterable[str]):
        if node is None:
            raise ContractViolation("Gradient builders require a forward node")
        self.node = node
        self.context = context
        self.gradient_inputs: FrozenSet[str] = frozenset(gradient_inputs)
        self.gradient_outputs: FrozenSet[str] = frozenset(gradient_outputs)
        self._aliases: Dict[str, str] = {}
        self._unique_node_prefix = self._create_unique_node_prefix()

    @staticmethod
    def can_be_applied(node: ForwardNode) -> bool:
        """Return whether this builder can differentiate ``node``.

        :param node: The candidate node.
        :return: True if the builder can be applied, False otherwise.
        """
        return True

    def get_gradient_defs(self) -> GradientDef:
        """ Build the backward fragment of the forward node.

            Nodes that the concrete builder left unnamed are named ``<op_type>_<index>`` under the unique prefix of
            this builder.
        """
        self._aliases = {}
        node_defs = self.get_gradient_defs_impl()
        names = set()
        for i, node_def in enumerate(node_defs):
            if not node_def.name:
                node_def.name = self.name(f"{node_def.op_type}_{i}")
            if node_def.name in names:
                raise ContractViolation(f"Gradient node name {node_def.name} is used more than once",
                                        self.node_name())
            names.add(node_def.name)
        return GradientDef(node_defs, self._aliases)

    @abc.abstractmethod
    def get_gradient_defs_impl(self) -> List[NodeDef]:
        """Return the nodes of the backward fragment, in an order in which each node only consumes defined tensors.
        """
        ...

    @staticmethod
    def gradient_name(name: str) -> str:
        return name + "_grad"

    @staticmethod
    def external_output_name(name: str) -> str:
        return name + "_external"

    @property
    def graph(self) -> ForwardGraph:
        return self.context.graph

    def get_gradient_graph_configuration(self) -> GradientGraphConfiguration:
        return self.context.config

    def record_stashed_tensor(self, name: str):
        self.context.stashed_tensors.add(name)

    def is_tensor_stashed(self, name: str) -> bool:
        return name in self.context.stashed_tensors

    def _check_index(self, i: int, args: Sequence[ArgDef], kind: str):
        if not 0 <= i < len(args):
            raise ContractViolation(
                f"{kind} index {i} is out of range, {self.src_node_op_type()} has {len(args)} {kind}s",
                self.node_name())

    def _resolve_forward_arg(self, arg: ArgDef, record_stashing: bool) -> ArgDef:
        if arg.name:
            recomputed = self.graph.get_node_arg(recompute_name(arg.name))
            if recomputed is not None:
                producer = self.graph.get_producer_node(arg.name)
                log.info(f"Recomputed node arg found for {producer.name if producer is not None else arg.name}")
                return ArgDef(recomputed.name, recomputed.type_proto or arg.type_proto)
            if record_stashing:
                self.record_stashed_tensor(arg.name)
        return arg

    def I(self, i: int, record_stashing: bool = True) -> ArgDef:
        """The ``i``-th input of the forward node, or its recomputed alias if one exists."""
        input_defs = self.node.input_defs
        self._check_index(i, input_defs, "input")
        return self._resolve_forward_arg(input_defs[i], record_stashing)

    def O(self, i: int, record_stashing: bool = True) -> ArgDef:
        """The ``i``-th output of the forward node, or its recomputed alias if one exists."""
        output_defs = self.node.output_defs
        self._check_index(i, output_defs, "output")
        return self._resolve_forward_arg(output_defs[i], record_stashing)

    def GI(self, i: int, type_proto: Optional[onnx.TypeProto] = None) -> ArgDef:
        """The gradient of the ``i``-th forward input. ``type_proto`` overrides the type of the forward input."""
        input_defs = self.node.input_defs
        self._check_index(i, input_defs, "input")
        arg = input_defs[i]
        return ArgDef(self.gradient_name(arg.name), type_proto if type_proto is not None else arg.type_proto)

    def GO(self, i: int) -> ArgDef:
        """The gradient of the ``i``-th forward output."""
        output_defs = self.node.output_defs
        self._check_index(i, output_defs, "output")
        arg = output_defs[i]
        return ArgDef(self.gradient_name(arg.name), arg.type_proto)

    def IA(self, arg_suffix: str, type_proto: Optional[onnx.TypeProto] = None) -> ArgDef:
        """An intermediate argument, unique to this builder."""
        return ArgDef(self.name(arg_suffix), type_proto)

    def IType(self, i: int) -> Optional[onnx.TypeProto]:
        input_defs = self.node.input_defs
        self._check_index(i, input_defs, "input")
        return input_defs[i].type_proto

    def OType(self, i: int) -> Optional[onnx.TypeProto]:
        output_defs = self.node.output_defs
        self._check_index(i, output_defs, "output")
        return output_defs[i].type_proto

    def IElemType(self, i: int) -> Optional[int]:
        input_defs = self.node.input_defs
        self._check_index(i, input_defs, "input")
        return input_defs[i].elem_type

    def OElemType(self, i: int) -> Optional[int]:
        output_defs = self.node.output_defs
        self._check_index(i, output_defs, "output")
        return output_defs[i].elem_type

    def get_src_node_input_size(self) -> int:
        return len(self.node.proto.input)

    def get_src_node_output_size(self) -> int:
        return len(self.node.proto.output)

    def is_gradient_required_for_src_node_input(self, i: int) -> bool:
        inputs = self.node.proto.input
        return 0 <= i < len(inputs) and inputs[i] in self.gradient_outputs

    def is_gradient_available_for_src_node_output(self, i: int) -> bool:
        outputs = self.node.proto.output
        return 0 <= i < len(outputs) and outputs[i] in self.gradient_inputs

    def name(self, name: str) -> str:
        return self._unique_node_prefix + name

    def node_name(self) -> str:
        return self.node.name

    def src_node_attributes(self) -> Dict[str, onnx.AttributeProto]:
        return self.node.attributes

    def src_node_op_type(self) -> str:
        return self.node.op_type

    def src_node_domain(self) -> str:
        return self.node.domain

    def src_node_opset_version(self) -> int:
        return self.node.since_version

    def onnx_opset_version(self) -> int:
        return self.graph.domain_to_version.get(ONNX_DOMAIN, -1)

    def get_gradient_definition_key(self) -> str:
        return get_gradient_definition_key_by_node(self.node)

    def set_python_op_require_grad_info(self, node_name: str, input_requires_grad_info: Sequence[int]):
        self.context.python_op_input_requires_grads[node_name] = list(input_requires_grad_info)

    # Typed constants, encoded with the options of this pass. See onnxgrad.gradient.constants
    def constant_scalar_node(self, value: float, arg_name: str, elem_type: int,
                             shape: Sequence[int] = (1, )) -> NodeDef:
        return constants.constant_scalar_node(value, arg_name, elem_type, shape, self.context.config.float8_types)

    def constant_vector_node(self, values: Sequence, arg_name: str, elem_type: Optional[int] = None) -> NodeDef:
        return constants.constant_vector_node(values, arg_name, elem_type, self.context.config.float8_types)

    def scalar_tensor_proto(self, value: float, elem_type: int, shape: Sequence[int] = (1, )) -> onnx.TensorProto:
        return constants.scalar_tensor_proto(value, elem_type, shape, self.context.config.float8_types)

    def zero_constant_node(self, elem_type: int) -> NodeDef:
        return constants.zero_constant_node(elem_type, self.context.config.float8_types)

    def half_constant_node(self, elem_type: int) -> NodeDef:
        return constants.half_constant_node(elem_type, self.context.config.float8_types)

    def one_constant_node(self, elem_type: int) -> NodeDef:
        return constants.one_constant_node(elem_type, self.context.config.float8_types)

    def compute_broadcast_backward_axes(self, a_dims: Sequence, b_dims: Sequence,
                                        node_name: Optional[str] = None) -> Tuple[List[int], List[int]]:
        """Static broadcast backward axes, see :func:`onnxgrad.gradient.broadcast.compute_broadcast_backward_axes`."""
        node_name = self.node_name() if node_name is None else node_name
        return compute_broadcast_backward_axes(a_dims, b_dims, node_name,
                                               self.context.config.strict_symbolic_broadcast)

    def sum_gradients(self, partial_grads: Sequence[ArgDef], output_grad: ArgDef, output: List[NodeDef]) -> ArgDef:
        """ Emit ``output_grad`` as the sum of ``partial_grads``.

            A forward tensor that feeds several inputs of the node receives one gradient contribution per input.
            Partial gradients that were recorded as aliases are summed in place of their alias target.

            :return: ``output_grad``.
        """
        inputs = [ArgDef(self._aliases.pop(grad.name, grad.name), grad.type_proto) for grad in partial_grads]
        output.append(NodeDef("Sum", inputs, [output_grad]))
        return output_grad

    def _is_forward_arg(self, name: str) -> bool:
        return name in self.node.proto.input or name in self.node.proto.output

    def add_reduce_sum_node(self, input_arg: ArgDef, output_arg: ArgDef, reduce_axes: Sequence[int], keep_dims: bool,
                            output: List[NodeDef]):
        """Emit a ``ReduceSum`` of ``input_arg`` over ``reduce_axes``, passing the axes the way the opset expects."""
        attributes = [helper.make_attribute("keepdims", int(keep_dims))]
        if self.onnx_opset_version() >= 13:
            axes_arg = self.IA("ReduceAxes_for_" + output_arg.name)
            output.append(self.constant_vector_node(list(reduce_axes), axes_arg.name))
            output.append(NodeDef(OpDef("ReduceSum", ONNX_DOMAIN, 13), [input_arg, axes_arg], [output_arg], attributes))
        else:
            attributes.append(helper.make_attribute("axes", list(reduce_axes)))
            output.append(NodeDef("ReduceSum", [input_arg], [output_arg], attributes))

    def handle_broadcasting(self, input_grad: ArgDef, target: ArgDef, output_grad: ArgDef, reduce_axes: Sequence[int],
                            output: List[NodeDef]) -> ArgDef:
        """ Reduce ``input_grad`` over ``reduce_axes`` into ``output_grad``, which takes the shape of ``target``.

            If there is nothing to reduce, no node is emitted: ``output_grad`` becomes an alias of ``input_grad`` in
            the returned :class:`GradientDef`.

            :return: the argument that holds the gradient.
        """
        if not reduce_axes:
            self._aliases[output_grad.name] = input_grad.name
            return input_grad

        target_dims = get_shape(target)
        if target_dims is None:
            raise ContractViolation(f"The static shape of {target.name} is required to handle broadcasting",
                                    self.node_name())

        grad_dims = get_shape(input_grad)
        if grad_dims is not None and len(grad_dims) == len(target_dims):
            self.add_reduce_sum_node(input_grad, output_grad, reduce_axes, True, output)
            return output_grad

        reduce_grad = self.IA(f"ReduceSum_{input_grad.name}_for_{target.name}")
        self.add_reduce_sum_node(input_grad, reduce_grad, reduce_axes, True, output)

        target_shape = self.IA(target.name + "_shape")
        kinds = [dimension_kind(dim) for dim in target_dims]
        if all(kind == DimensionKind.Concrete for kind, _ in kinds):
            output.append(self.constant_vector_node([value for _, value in kinds], target_shape.name))
        else:
            if self._is_forward_arg(target.name):
                self.record_stashed_tensor(target.name)
            output.append(NodeDef("Shape", [target], [target_shape]))
        output.append(NodeDef("Reshape", [reduce_grad, target_shape], [output_grad]))
        return output_grad

    def handle_broadcasting_dynamic(self, input_grad: ArgDef, target: ArgDef, target_shape: ArgDef,
                                    output_grad: ArgDef, reduce_axes: ArgDef, output: List[NodeDef]) -> ArgDef:
        """ Reduce ``input_grad`` over the runtime axes ``reduce_axes`` and reshape it to ``target_shape``.

            :return: the argument that holds the gradient.
        """
        if 0 < self.onnx_opset_version() < 13:
            raise ContractViolation("Broadcasting with runtime shapes requires ONNX opset 13 or newer",
                                    self.node_name())
        reduce_grad = self.IA(f"ReduceSum_{input_grad.name}_for_{output_grad.name}")
        output.append(
            NodeDef(OpDef("ReduceSum", ONNX_DOMAIN, 13), [input_grad, reduce_axes], [reduce_grad],
                    [helper.make_attribute("keepdims", 1),
                     helper.make_attribute("noop_with_empty_axes", 1)]))
        output.append(NodeDef("Reshape", [reduce_grad, target_shape], [output_grad]))
        return output_grad

    def get_bias_gelu_grad_nodes(self,
                                 use_approximation: bool,
                                 dY: ArgDef,
                                 X: ArgDef,
                                 B: ArgDef,
                                 dX: ArgDef,
                                 dB: ArgDef,
                                 b_axes: Optional[ArgDef] = None,
                                 b_shape: Optional[ArgDef] = None,
                                 x_shape: Optional[ArgDef] = None,
                                 node_name: Optional[str] = None) -> List[NodeDef]:
        """ Nodes computing the gradients of ``Y = gelu(X + B)`` with respect to ``X`` and ``B``.

            ``dX`` is computed by a fused contrib op, either the exact or the tanh approximated form. ``dB`` is
            ``dX`` summed over the axes along which ``B`` was broadcast; they are computed at runtime, from the
            shapes of ``B`` and ``X``, if either shape is not statically known.

            :param use_approximation: use the tanh approximation of gelu.
            :param dY: the gradient of the output.
            :param X: the pre-activation input.
            :param B: the bias, which must be one dimensional.
            :param dX: receives the gradient of ``X``.
            :param dB: receives the gradient of ``B``.
            :param b_axes: intermediate receiving the runtime reduce axes of ``B``.
            :param b_shape: intermediate receiving the runtime shape of ``B``.
            :param x_shape: intermediate receiving the runtime shape of ``X``.
            :param node_name: the node name used in diagnostics.
        """
        node_name = self.node_name() if node_name is None else node_name
        grad_op = OpDef("BiasFastGeluGrad_dX" if use_approximation else "BiasGeluGrad_dX", MS_DOMAIN, 1)

        b_dims, x_dims = get_shape(B), get_shape(X)
        if b_dims is not None and x_dims is not None:
            if len(b_dims) != 1:
                raise ContractViolation("B must have exactly one dimension.", node_name)
            b_reduce_axes, _ = self.compute_broadcast_backward_axes(b_dims, x_dims, node_name)
            result = [NodeDef(grad_op, [dY, X, B], [dX])]
            if b_reduce_axes:
                self.add_reduce_sum_node(dX, dB, b_reduce_axes, False, result)
            else:
                # X has the shape of B
                self._aliases[dB.name] = dX.name
            return result

        b_axes = b_axes or self.IA("ReduceAxes_" + B.name)
        b_shape = b_shape or self.IA("Shape_" + B.name)
        x_shape = x_shape or self.IA("Shape_" + X.name)
        result = []
        compute_broadcast_backward_axes_dynamic(B, X, b_shape, x_shape, b_axes, None, result)
        result.append(NodeDef(grad_op, [dY, X, B], [dX]))
        result.append(
            NodeDef(OpDef("ReduceSum", ONNX_DOMAIN, 13), [dX, b_axes], [dB],
                    [helper.make_attribute("keepdims", 0),
                     helper.make_attribute("noop_with_empty_axes", 1)]))
        return result

    def attribute_definition_to_attribute_proto(self,
                                                attr_def: GradientNodeAttributeDefinition) -> onnx.AttributeProto:
        """ Translate a custom gradient attribute definition into an ``AttributeProto``.

            The JSON value is either a number or a list of numbers, or an object ``{"value": expr}`` where ``expr``
            is ``IElemType(i)``, ``OElemType(i)`` or the name of a forward node attribute to copy.
        """
        elem_type = attr_def.elem_type
        if elem_type not in (TensorProto.FLOAT, TensorProto.INT64):
            raise ContractViolation(
                f"Unsupported element type {elem_type} for gradient attribute {attr_def.name}, "
                "only FLOAT and INT64 are supported", self.node_name())

        try:
            value = json.loads(attr_def.value_json)
        except json.JSONDecodeError as ex:
            raise ContractViolation(f"Invalid JSON for gradient attribute {attr_def.name}: {attr_def.value_json}",
                                    self.node_name()) from ex

        if isinstance(value, dict):
            if not isinstance(value.get("value"), str):
                raise ContractViolation(
                    f"Expected a 'value' expression for gradient attribute {attr_def.name}: {attr_def.value_json}",
                    self.node_name())
            expression = value["value"]
            match = _ELEM_TYPE_EXPRESSION.fullmatch(expression)
            if match:
                index = int(match.group(2))
                value = self.IElemType(index) if match.group(1) == "I" else self.OElemType(index)
            else:
                src_attributes = self.src_node_attributes()
                if expression not in src_attributes:
                    raise ContractViolation(f"{self.src_node_op_type()} has no attribute {expression}",
                                            self.node_name())
                attribute = copy.deepcopy(src_attributes[expression])
                attribute.name = attr_def.name
                return attribute

        cast = float if elem_type == TensorProto.FLOAT else int
        if isinstance(value, list):
            if not value:
                raise ContractViolation(f"Gradient attribute {attr_def.name} has an empty list value",
                                        self.node_name())
            values = [cast(v) for v in value]
            dims = [len(values)]
        else:
            values = [cast(value)]
            dims = []

        if attr_def.is_tensor:
            return helper.make_attribute(attr_def.name, helper.make_tensor(attr_def.name, elem_type, dims, values))
        return helper.make_attribute(attr_def.name, values if dims else values[0])

    def _create_unique_node_prefix(self) -> str:
        name = self.node.name
        if not name:
            name = self.graph.generate_node_name(self.node.op_type)
        return name + "_Grad/"


# Register the implementations
import onnxgrad.gradient.implementations


def find_gradient_builder(node: ForwardNode) -> Optional[Type[GradientBuilderBase]]:
    """Find the gradient builder for ``node``.

    Custom gradient definitions registered for the node take precedence over the registered builders. Among the
    registered builders, the one with the highest applicable ``min_opset`` is selected.

    :param node: The node to find the builder for.
    :return: The builder class if one is registered and can be applied, else None.
    """
    from onnxgrad.gradient.definitions import GradientDefinitionRegistry
    from onnxgrad.gradient.implementations.generic import GenericGradientBuilder

    if GradientDefinitionRegistry.contains(get_gradient_definition_key_by_node(node)):
        return GenericGradientBuilder

    since_version = node.since_version
    valid_impls = []
    for impl, args in GradientBuilderBase.extensions().items():
        if "op" not in args:
            raise ValueError(f"Expected op in arguments of gradient builder {impl}.")

        ops = (args["op"], ) if isinstance(args["op"], str) else tuple(args["op"])
        domain = args.get("domain", ONNX_DOMAIN)
        min_opset = args.get("min_opset", 1)
        if node.op_type not in ops or domain != node.domain:
            continue
        if since_version >= 0 and since_version < min_opset:
            continue
        if impl.can_be_applied(node):
            valid_impls.append((min_opset, impl))

    if not valid_impls:
        return None

    valid_impls.sort(key=lambda entry: entry[0], reverse=True)
    log.debug(f"Selected gradient builder {valid_impls[0][1].__name__} for {node}")
    return valid_impls[0][1]
