# Copyright 2019-2025 ETH Zurich and the DaCe authors. All rights reserved.
import logging

import numpy as np
import pytest
from onnx import TensorProto, numpy_helper

from onnxgrad.config import set_temporary
from onnxgrad.gradient import ContractViolation
from onnxgrad.gradient.constants import (FLOAT8_ELEMENT_TYPES, SUPPORTED_ELEMENT_TYPES, UNSUPPORTED_FLOAT_ELEMENT_TYPES,
                                         constant_scalar_node, constant_vector_node, half_constant_node,
                                         one_constant_node, scalar_tensor_proto, zero_constant_node)


def _decode(node):
    tensor = node.attributes["value"].t
    return tensor, numpy_helper.to_array(tensor).astype(np.float32)


@pytest.mark.parametrize("elem_type", sorted(SUPPORTED_ELEMENT_TYPES), ids=TensorProto.DataType.Name)
def test_one_constant(elem_type):
    node = one_constant_node(elem_type)
    tensor, value = _decode(node)

    assert node.op_type == "Constant"
    assert node.output_args[0].name == f"OneConstant_Type{elem_type}"
    assert tensor.data_type == elem_type
    assert value.shape == (1, )
    assert value[0] == 1.0


@pytest.mark.parametrize("elem_type", [TensorProto.FLOAT, TensorProto.FLOAT16, TensorProto.BFLOAT16])
def test_zero_and_half_constants(elem_type):
    _, zero = _decode(zero_constant_node(elem_type))
    _, half = _decode(half_constant_node(elem_type))
    assert zero[0] == 0.0
    assert half[0] == 0.5


def test_element_types_are_exhaustive():
    float_types = {
        value
        for name, value in TensorProto.DataType.items() if "FLOAT" in name or "DOUBLE" in name
    }
    unhandled = float_types - SUPPORTED_ELEMENT_TYPES - UNSUPPORTED_FLOAT_ELEMENT_TYPES
    assert not unhandled, f"Unhandled float element types: {[TensorProto.DataType.Name(t) for t in unhandled]}"


@pytest.mark.parametrize("elem_type, limit", [
    (TensorProto.FLOAT8E4M3FN, 448.0),
    (TensorProto.FLOAT8E4M3FNUZ, 240.0),
    (TensorProto.FLOAT8E5M2, 57344.0),
    (TensorProto.FLOAT8E5M2FNUZ, 57344.0),
])
def test_float8_saturates(elem_type, limit):
    _, value = _decode(constant_scalar_node(1e6, "big", elem_type))
    assert value[0] == limit
    _, value = _decode(constant_scalar_node(-1e6, "small", elem_type))
    assert value[0] == -limit


@pytest.mark.parametrize("elem_type", sorted(FLOAT8_ELEMENT_TYPES))
def test_float8_disabled(elem_type):
    with set_temporary("gradient", "float8_types", value=False):
        tensor, value = _decode(one_constant_node(elem_type))
    assert tensor.data_type == TensorProto.FLOAT
    assert value[0] == 1.0


def test_float8_argument_overrides_configuration():
    elem_type = TensorProto.FLOAT8E4M3FN
    tensor, _ = _decode(one_constant_node(elem_type, float8_types=False))
    assert tensor.data_type == TensorProto.FLOAT

    with set_temporary("gradient", "float8_types", value=False):
        tensor, _ = _decode(one_constant_node(elem_type, float8_types=True))
    assert tensor.data_type == elem_type


@pytest.mark.parametrize("name", ["FLOAT4E2M1", "FLOAT6E2M3", "FLOAT6E3M2", "FLOAT8E8M0"])
def test_narrow_float_types_fall_back(name):
    if not hasattr(TensorProto, name):
        pytest.skip(f"onnx does not define {name}")
    elem_type = getattr(TensorProto, name)
    assert elem_type in UNSUPPORTED_FLOAT_ELEMENT_TYPES

    tensor, value = _decode(one_constant_node(elem_type))
    assert tensor.data_type == TensorProto.FLOAT
    assert value[0] == 1.0


def test_unsupported_type_falls_back(caplog):
    caplog.set_level(logging.WARNING, logger="onnxgrad.gradient.constants")
    tensor, value = _decode(one_constant_node(TensorProto.DOUBLE))
    assert tensor.data_type == TensorProto.FLOAT
    assert value[0] == 1.0
    assert "DOUBLE" in caplog.text


def test_scalar_shapes():
    assert list(scalar_tensor_proto(2.0, TensorProto.FLOAT, shape=[]).dims) == []
    assert list(scalar_tensor_proto(2.0, TensorProto.FLOAT).dims) == [1]
    with pytest.raises(ContractViolation):
        scalar_tensor_proto(2.0, TensorProto.FLOAT, shape=[2])


def test_vector_constants():
    axes = constant_vector_node([0, 1], "axes")
    tensor = axes.attributes["value"].t
    assert tensor.data_type == TensorProto.INT64
    np.testing.assert_array_equal(numpy_helper.to_array(tensor), [0, 1])

    scales = constant_vector_node([0.5, 2], "scales")
    tensor = scales.attributes["value"].t
    assert tensor.data_type == TensorProto.FLOAT
    np.testing.assert_array_equal(numpy_helper.to_array(tensor), [0.5, 2.0])

    halves = constant_vector_node([0.5], "halves", TensorProto.FLOAT16)
    assert halves.attributes["value"].t.data_type == TensorProto.FLOAT16
