# Copyright 2019-2025 ETH Zurich and the DaCe authors. All rights reserved.
import logging

import numpy as np
import pytest
from onnx import TensorProto, helper, numpy_helper

from onnxgrad.config import GradientGraphConfiguration
from onnxgrad.config import set_temporary
from onnxgrad.gradient import (BackwardContext, BroadcastError, ContractViolation, GradientBuilderBase,
                               GradientNodeAttributeDefinition, find_gradient_builder, get_shape)
from onnxgrad.gradient.base_abc import get_gradient_definition_key_by_node
from onnxgrad.gradient.implementations.onnx_ops import AddSubGradientBuilder, BiasGeluGradientBuilder
from onnxgrad.graph import ArgDef, ForwardGraph, NodeDef, MS_DOMAIN

from graph_builders import binary_op_graph, make_builder, make_forward_graph


class PassThroughGradientBuilder(GradientBuilderBase):
    """Unregistered builder used to exercise the base class directly."""

    def get_gradient_defs_impl(self):
        return [NodeDef("Identity", [self.GO(0)], [self.GI(0)])]


class DuplicateNameGradientBuilder(GradientBuilderBase):
    """Unregistered builder that names two of its nodes alike."""

    def get_gradient_defs_impl(self):
        return [
            NodeDef("Identity", [self.GO(0)], [self.IA("copy")], name=self.name("copy")),
            NodeDef("Identity", [self.IA("copy")], [self.GI(0)], name=self.name("copy")),
        ]


def _leaky_relu_builder(context=None, **attributes):
    node = helper.make_node("LeakyRelu", ["X"], ["Y"], name="leaky", alpha=0.1, **attributes)
    graph = make_forward_graph([node], {"X": (TensorProto.FLOAT, [2, 3])}, {"Y": (TensorProto.FLOAT, [2, 3])})
    return PassThroughGradientBuilder(graph.node("leaky"), context or BackwardContext(graph), {"Y"}, {"X"})


@pytest.fixture
def add_builder():
    graph = binary_op_graph("Add", [2, 3], [3], [2, 3], name="add")
    return make_builder(graph, "add", {"Y"}, {"A", "B"})


def test_requires_node():
    graph = binary_op_graph("Add", [2, 3], [3], [2, 3])
    with pytest.raises(ContractViolation):
        AddSubGradientBuilder(None, BackwardContext(graph), {"Y"}, {"A"})


def test_input_accessors(add_builder):
    a = add_builder.I(0)
    assert a.name == "A"
    assert a.elem_type == TensorProto.FLOAT
    assert add_builder.is_tensor_stashed("A")

    b = add_builder.I(1, record_stashing=False)
    assert b.name == "B"
    assert not add_builder.is_tensor_stashed("B")

    assert add_builder.O(0).name == "Y"
    assert add_builder.IElemType(1) == TensorProto.FLOAT
    assert add_builder.OElemType(0) == TensorProto.FLOAT
    assert [d.dim_value for d in get_shape(add_builder.I(1))] == [3]


def test_gradient_accessors(add_builder):
    assert add_builder.GI(0).name == "A_grad"
    assert add_builder.GI(0).type_proto == add_builder.IType(0)
    assert add_builder.GO(0).name == "Y_grad"
    assert add_builder.GO(0).type_proto == add_builder.OType(0)

    override = helper.make_tensor_type_proto(TensorProto.FLOAT16, [3])
    assert add_builder.GI(1, override).type_proto == override

    assert add_builder.IA("tmp").name == "add_Grad/tmp"
    assert add_builder.IA("tmp").type_proto is None
    assert add_builder.IA("typed", override).type_proto == override


@pytest.mark.parametrize("accessor, index", [
    ("I", 2),
    ("I", -1),
    ("O", 1),
    ("GI", 2),
    ("GO", 1),
    ("IType", 5),
    ("OType", 1),
    ("IElemType", 2),
    ("OElemType", 1),
])
def test_out_of_range(add_builder, accessor, index):
    with pytest.raises(ContractViolation, match="out of range"):
        getattr(add_builder, accessor)(index)


def test_gradient_requirements():
    graph = binary_op_graph("Add", [2, 3], [3], [2, 3], name="add")
    builder = make_builder(graph, "add", {"Y"}, {"B"})
    assert not builder.is_gradient_required_for_src_node_input(0)
    assert builder.is_gradient_required_for_src_node_input(1)
    assert not builder.is_gradient_required_for_src_node_input(2)
    assert not builder.is_gradient_required_for_src_node_input(-1)
    assert builder.is_gradient_available_for_src_node_output(0)
    assert not builder.is_gradient_available_for_src_node_output(1)
    assert builder.get_src_node_input_size() == 2
    assert builder.get_src_node_output_size() == 1


def test_source_node_properties(add_builder):
    assert add_builder.src_node_op_type() == "Add"
    assert add_builder.src_node_domain() == ""
    assert add_builder.src_node_opset_version() == 14
    assert add_builder.onnx_opset_version() == 17
    assert add_builder.node_name() == "add"
    assert add_builder.src_node_attributes() == {}


def test_stashing_is_idempotent(add_builder):
    stashed = add_builder.context.stashed_tensors
    add_builder.record_stashed_tensor("A")
    add_builder.record_stashed_tensor("A")
    add_builder.I(0)
    assert stashed == {"A"}
    assert add_builder.is_tensor_stashed("A")
    assert not add_builder.is_tensor_stashed("B")


def test_stashing_is_shared_across_builders():
    nodes = [
        helper.make_node("Mul", ["X", "W1"], ["Y1"], name="mul_1"),
        helper.make_node("Mul", ["X", "W2"], ["Y2"], name="mul_2"),
    ]
    graph = make_forward_graph(nodes, {
        "X": (TensorProto.FLOAT, [2, 3]),
        "W1": (TensorProto.FLOAT, [2, 3]),
        "W2": (TensorProto.FLOAT, [2, 3])
    }, {
        "Y1": (TensorProto.FLOAT, [2, 3]),
        "Y2": (TensorProto.FLOAT, [2, 3])
    })
    context = BackwardContext(graph)
    first = make_builder(graph, "mul_1", {"Y1"}, {"X", "W1"}, context)
    second = make_builder(graph, "mul_2", {"Y2"}, {"X", "W2"}, context)

    first.get_gradient_defs()
    assert second.is_tensor_stashed("X")
    assert not second.is_tensor_stashed("W2")

    second.get_gradient_defs()
    assert context.stashed_tensors == {"X", "W1", "W2"}
    assert first.is_tensor_stashed("W2")


def test_recomputed_inputs(caplog):
    caplog.set_level(logging.INFO, logger="onnxgrad.gradient.base_abc")
    relu = helper.make_node("Relu", ["X"], ["A"], name="relu")
    add = helper.make_node("Add", ["A", "B"], ["Y"], name="add")
    graph = make_forward_graph([relu, add], {
        "X": (TensorProto.FLOAT, [2, 3]),
        "B": (TensorProto.FLOAT, [2, 3])
    }, {"Y": (TensorProto.FLOAT, [2, 3])},
                               value_infos={"A": (TensorProto.FLOAT, [2, 3])})
    graph.add_node(helper.make_node("Relu", ["X"], ["A_recompute"], name="relu_recompute"),
                   [helper.make_tensor_value_info("A_recompute", TensorProto.FLOAT, [2, 3])])

    builder = make_builder(graph, "add", {"Y"}, {"A", "B"})
    a = builder.I(0)
    assert a.name == "A_recompute"
    assert a.elem_type == TensorProto.FLOAT
    assert not builder.is_tensor_stashed("A")
    assert not builder.is_tensor_stashed("A_recompute")
    assert "Recomputed node arg found for relu" in caplog.text

    # inputs without a recomputed alias are stashed as usual
    assert builder.I(1).name == "B"
    assert builder.is_tensor_stashed("B")


def test_unique_prefixes():
    nodes = [
        helper.make_node("Add", ["A", "B"], ["Y"]),
        helper.make_node("Add", ["Y", "B"], ["Z"]),
    ]
    graph = make_forward_graph(nodes, {
        "A": (TensorProto.FLOAT, [3]),
        "B": (TensorProto.FLOAT, [3])
    }, {"Z": (TensorProto.FLOAT, [3])})
    context = BackwardContext(graph)
    first, second = (AddSubGradientBuilder(node, context, set(node.proto.output), set(node.proto.input))
                     for node in graph.nodes)

    assert first.name("x") != second.name("x")
    assert first.name("x").endswith("_Grad/x")
    assert second.name("x").startswith("Add")


def test_generated_prefix_skips_existing_names():
    nodes = [
        helper.make_node("Add", ["A", "B"], ["Y"], name="Add"),
        helper.make_node("Add", ["Y", "B"], ["Z"]),
    ]
    graph = make_forward_graph(nodes, {
        "A": (TensorProto.FLOAT, [3]),
        "B": (TensorProto.FLOAT, [3])
    }, {"Z": (TensorProto.FLOAT, [3])})
    context = BackwardContext(graph)
    named, unnamed = graph.nodes
    assert AddSubGradientBuilder(named, context, {"Y"}, {"A"}).name("") == "Add_Grad/"
    assert AddSubGradientBuilder(unnamed, context, {"Z"}, {"Y"}).name("") == "Add_token_0_Grad/"


def test_node_names_are_finalized():
    graph = binary_op_graph("Sub", [2, 3], [3], [2, 3], name="sub")
    fragment = make_builder(graph, "sub", {"Y"}, {"A", "B"}).get_gradient_defs()

    names = [node.name for node in fragment]
    assert names == [f"sub_Grad/{node.op_type}_{i}" for i, node in enumerate(fragment)]
    assert len(set(names)) == len(names)


def test_static_helpers():
    assert GradientBuilderBase.gradient_name("X") == "X_grad"
    assert GradientBuilderBase.external_output_name("X") == "X_external"
    assert _leaky_relu_builder().one_constant_node(TensorProto.FLOAT).op_type == "Constant"


def test_gradient_graph_configuration():
    graph = binary_op_graph("Add", [3], [3], [3], name="add")
    config = GradientGraphConfiguration(use_memory_efficient_gradient=True)
    builder = make_builder(graph, "add", {"Y"}, {"A"}, BackwardContext(graph, config))
    assert builder.get_gradient_graph_configuration().use_memory_efficient_gradient


def test_constants_follow_pass_configuration():
    graph = binary_op_graph("Add", [3], [3], [3], name="add")
    context = BackwardContext(graph, GradientGraphConfiguration(float8_types=False))
    builder = make_builder(graph, "add", {"Y"}, {"A"}, context)
    assert builder.one_constant_node(TensorProto.FLOAT8E4M3FN).attributes["value"].t.data_type == TensorProto.FLOAT

    # the configuration is captured when the pass starts
    with set_temporary("gradient", "float8_types", value=True):
        assert builder.zero_constant_node(TensorProto.FLOAT8E5M2).attributes["value"].t.data_type \
            == TensorProto.FLOAT


def test_strict_broadcast_follows_pass_configuration():
    graph = binary_op_graph("Add", ["N", 4], ["M", 4], ["N", 4], name="add")
    strict = BackwardContext(graph, GradientGraphConfiguration(strict_symbolic_broadcast=True))
    with pytest.raises(BroadcastError, match="add"):
        make_builder(graph, "add", {"Y"}, {"A", "B"}, strict).get_gradient_defs()

    relaxed = BackwardContext(graph, GradientGraphConfiguration(strict_symbolic_broadcast=False))
    with set_temporary("gradient", "strict_symbolic_broadcast", value=True):
        fragment = make_builder(graph, "add", {"Y"}, {"A", "B"}, relaxed).get_gradient_defs()
    assert fragment.aliases == {"A_grad": "Y_grad", "B_grad": "Y_grad"}


def test_duplicate_node_names_are_rejected():
    graph = make_forward_graph([helper.make_node("Relu", ["X"], ["Y"], name="relu")], {"X": (TensorProto.FLOAT, [3])},
                               {"Y": (TensorProto.FLOAT, [3])})
    builder = DuplicateNameGradientBuilder(graph.node("relu"), BackwardContext(graph), {"Y"}, {"X"})
    with pytest.raises(ContractViolation, match="relu_Grad/copy"):
        builder.get_gradient_defs()


def test_python_op_requirements(add_builder):
    add_builder.set_python_op_require_grad_info("python_op_1", [1, 0])
    assert add_builder.context.python_op_input_requires_grads == {"python_op_1": [1, 0]}


def test_gradient_definition_key():
    python_op = helper.make_node("PythonOp", ["X"], ["Y"],
                                 name="py",
                                 domain=MS_DOMAIN,
                                 func_name="my_module.MyFunction")
    add = helper.make_node("Add", ["X", "X"], ["Z"], name="add")
    graph = make_forward_graph([python_op, add], {"X": (TensorProto.FLOAT, [3])}, {
        "Y": (TensorProto.FLOAT, [3]),
        "Z": (TensorProto.FLOAT, [3])
    })
    assert get_gradient_definition_key_by_node(graph.node("py")) == "com.microsoft::PythonOp::my_module.MyFunction"
    assert get_gradient_definition_key_by_node(graph.node("add")) == "::Add"


@pytest.mark.parametrize("value_json, elem_type, expected", [
    ("0.5", TensorProto.FLOAT, 0.5),
    ("3", TensorProto.INT64, 3),
    ("true", TensorProto.INT64, 1),
    ("[1, 2]", TensorProto.INT64, [1, 2]),
    ("[1, 2]", TensorProto.FLOAT, [1.0, 2.0]),
    ('{"value": "IElemType(0)"}', TensorProto.INT64, TensorProto.FLOAT),
    ('{"value": "OElemType(0)"}', TensorProto.INT64, TensorProto.FLOAT),
])
def test_attribute_values(value_json, elem_type, expected):
    builder = _leaky_relu_builder()
    attribute = builder.attribute_definition_to_attribute_proto(
        GradientNodeAttributeDefinition("attr", value_json, elem_type))
    assert attribute.name == "attr"
    assert helper.get_attribute_value(attribute) == expected


def test_attribute_tensor():
    builder = _leaky_relu_builder()
    attribute = builder.attribute_definition_to_attribute_proto(
        GradientNodeAttributeDefinition("value", "[1.0, 2.5]", TensorProto.FLOAT, is_tensor=True))
    tensor = helper.get_attribute_value(attribute)
    assert tensor.data_type == TensorProto.FLOAT
    np.testing.assert_array_equal(numpy_helper.to_array(tensor), [1.0, 2.5])

    attribute = builder.attribute_definition_to_attribute_proto(
        GradientNodeAttributeDefinition("value", "7", TensorProto.INT64, is_tensor=True))
    tensor = helper.get_attribute_value(attribute)
    assert list(tensor.dims) == []
    assert numpy_helper.to_array(tensor) == 7


def test_attribute_copied_from_forward_node():
    builder = _leaky_relu_builder()
    attribute = builder.attribute_definition_to_attribute_proto(
        GradientNodeAttributeDefinition("slope", '{"value": "alpha"}', TensorProto.FLOAT))
    assert attribute.name == "slope"
    assert helper.get_attribute_value(attribute) == pytest.approx(0.1)
    # the forward attribute is untouched
    assert "alpha" in builder.src_node_attributes()
    assert "slope" not in builder.src_node_attributes()


@pytest.mark.parametrize("value_json, elem_type", [
    ("1.0", TensorProto.DOUBLE),
    ('{"value": "beta"}', TensorProto.FLOAT),
    ('{"other": "alpha"}', TensorProto.FLOAT),
    ("not json", TensorProto.FLOAT),
    ("[]", TensorProto.INT64),
])
def test_invalid_attributes(value_json, elem_type):
    builder = _leaky_relu_builder()
    with pytest.raises(ContractViolation):
        builder.attribute_definition_to_attribute_proto(GradientNodeAttributeDefinition("attr", value_json, elem_type))


def test_pass_through_builder():
    fragment = _leaky_relu_builder().get_gradient_defs()
    assert len(fragment) == 1
    assert fragment[0].name == "leaky_Grad/Identity_0"
    assert fragment[0].input_args == [ArgDef("Y_grad")]
    assert fragment[0].output_args == [ArgDef("X_grad")]


def test_find_gradient_builder():
    graph = binary_op_graph("Add", [3], [3], [3], name="add")
    assert find_gradient_builder(graph.node("add")) is AddSubGradientBuilder

    relu = helper.make_node("Relu", ["X"], ["Y"], name="relu")
    bias_gelu = helper.make_node("BiasGelu", ["X", "B"], ["Z"], name="bias_gelu", domain=MS_DOMAIN)
    graph = make_forward_graph([relu, bias_gelu], {
        "X": (TensorProto.FLOAT, [3]),
        "B": (TensorProto.FLOAT, [3])
    }, {
        "Y": (TensorProto.FLOAT, [3]),
        "Z": (TensorProto.FLOAT, [3])
    })
    assert find_gradient_builder(graph.node("relu")) is None
    assert find_gradient_builder(graph.node("bias_gelu")) is BiasGeluGradientBuilder


def test_find_gradient_builder_by_opset():

    class OldFrobnicateGradientBuilder(PassThroughGradientBuilder):
        pass

    class NewFrobnicateGradientBuilder(PassThroughGradientBuilder):
        pass

    GradientBuilderBase.register(OldFrobnicateGradientBuilder, op="Frobnicate", domain="test.domain")
    GradientBuilderBase.register(NewFrobnicateGradientBuilder, op="Frobnicate", domain="test.domain", min_opset=13)
    try:
        node = helper.make_node("Frobnicate", ["X"], ["Y"], name="frob", domain="test.domain")
        graph = helper.make_graph([node], "forward", [helper.make_tensor_value_info("X", TensorProto.FLOAT, [3])],
                                  [helper.make_tensor_value_info("Y", TensorProto.FLOAT, [3])])

        recent = ForwardGraph(graph, {"": 17, "test.domain": 15})
        assert find_gradient_builder(recent.node("frob")) is NewFrobnicateGradientBuilder

        old = ForwardGraph(graph, {"": 17, "test.domain": 5})
        assert find_gradient_builder(old.node("frob")) is OldFrobnicateGradientBuilder
    finally:
        GradientBuilderBase.unregister(OldFrobnicateGradientBuilder)
        GradientBuilderBase.unregister(NewFrobnicateGradientBuilder)
