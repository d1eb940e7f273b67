# Copyright 2019-2025 ETH Zurich and the DaCe authors. All rights reserved.
"""
Typed constant nodes for backward graph fragments.

Constants are encoded for the element type of the tensors they are combined with. The supported floating point
encodings are FLOAT, FLOAT16, BFLOAT16 and, unless ``gradient.float8_types`` is disabled, the four 8-bit float
encodings. Any other element type falls back to a FLOAT constant and logs a warning.
"""

import logging
import numbers
from typing import Callable, Dict, List, Optional, Sequence

import numpy as np
import onnx
from onnx import TensorProto, helper

from onnxgrad.config import Config
from onnxgrad.gradient.exceptions import ContractViolation
from onnxgrad.graph.arg_def import ArgDef, NodeDef

log = logging.getLogger(__name__)

FLOAT8_ELEMENT_TYPES = frozenset({
    TensorProto.FLOAT8E4M3FN,
    TensorProto.FLOAT8E4M3FNUZ,
    TensorProto.FLOAT8E5M2,
    TensorProto.FLOAT8E5M2FNUZ,
})

#: Largest finite value of each 8-bit float encoding. Values beyond it saturate.
FLOAT8_MAX = {
    TensorProto.FLOAT8E4M3FN: 448.0,
    TensorProto.FLOAT8E4M3FNUZ: 240.0,
    TensorProto.FLOAT8E5M2: 57344.0,
    TensorProto.FLOAT8E5M2FNUZ: 57344.0,
}

INTEGER_ELEMENT_TYPES = frozenset({
    TensorProto.INT8,
    TensorProto.INT16,
    TensorProto.INT32,
    TensorProto.INT64,
    TensorProto.UINT8,
    TensorProto.UINT16,
    TensorProto.UINT32,
    TensorProto.UINT64,
})


def _as_floats(values: Sequence[float], elem_type: int) -> List[float]:
    return [float(v) for v in values]


def _saturate(values: Sequence[float], elem_type: int) -> List[float]:
    limit = FLOAT8_MAX[elem_type]
    return [float(v) for v in np.clip(np.asarray(values, dtype=np.float32), -limit, limit)]


#: One encoder per supported floating point element type.
_ENCODERS: Dict[int, Callable[[Sequence[float], int], List[float]]] = {
    TensorProto.FLOAT: _as_floats,
    TensorProto.FLOAT16: _as_floats,
    TensorProto.BFLOAT16: _as_floats,
    TensorProto.FLOAT8E4M3FN: _saturate,
    TensorProto.FLOAT8E4M3FNUZ: _saturate,
    TensorProto.FLOAT8E5M2: _saturate,
    TensorProto.FLOAT8E5M2FNUZ: _saturate,
}

SUPPORTED_ELEMENT_TYPES = frozenset(_ENCODERS)

#: Floating point element types that deliberately use the FLOAT fallback.
UNSUPPORTED_FLOAT_ELEMENT_TYPES = frozenset(
    getattr(TensorProto, name) for name in ('DOUBLE', 'FLOAT4E2M1', 'FLOAT6E2M3', 'FLOAT6E3M2', 'FLOAT8E8M0')
    if hasattr(TensorProto, name))


def _element_type_name(elem_type: int) -> str:
    try:
        return TensorProto.DataType.Name(elem_type)
    except (ValueError, TypeError):
        return str(elem_type)


def resolve_element_type(elem_type: Optional[int], float8_types: Optional[bool] = None) -> int:
    """ Return the element type a floating point constant for ``elem_type`` is encoded with.

        :param elem_type: the requested ONNX element type.
        :param float8_types: encode 8-bit float constants natively. Defaults to ``gradient.float8_types``.
        :return: ``elem_type`` itself if it is supported, FLOAT otherwise.
    """
    if float8_types is None:
        float8_types = Config.get_bool('gradient', 'float8_types')
    if elem_type in FLOAT8_ELEMENT_TYPES and not float8_types:
        log.debug(f"8-bit float constants are disabled, encoding {_element_type_name(elem_type)} as FLOAT")
        return TensorProto.FLOAT
    if elem_type in _ENCODERS:
        return elem_type
    log.warning(f"Constant nodes do not support element type {_element_type_name(elem_type)}, "
                "falling back to FLOAT")
    return TensorProto.FLOAT


def scalar_tensor_proto(value: float,
                        elem_type: int,
                        shape: Sequence[int] = (1, ),
                        float8_types: Optional[bool] = None) -> onnx.TensorProto:
    """ Create a tensor holding a single floating point ``value``.

        :param value: the value to encode.
        :param elem_type: the ONNX element type to encode the value with.
        :param shape: either ``[]`` or ``[1]``.
        :param float8_types: see :func:`resolve_element_type`.
    """
    shape = list(shape)
    if not (len(shape) == 0 or shape == [1]):
        raise ContractViolation(f"Scalar tensors must have shape [] or [1], got {shape}")
    elem_type = resolve_element_type(elem_type, float8_types)
    return helper.make_tensor('', elem_type, shape, _ENCODERS[elem_type]([value], elem_type))


def constant_scalar_node(value: float,
                         arg_name: str,
                         elem_type: int,
                         shape: Sequence[int] = (1, ),
                         float8_types: Optional[bool] = None) -> NodeDef:
    """Create a ``Constant`` node producing ``value`` as a tensor of ``elem_type`` named ``arg_name``."""
    return NodeDef("Constant", [], [ArgDef(arg_name)],
                   [helper.make_attribute("value", scalar_tensor_proto(value, elem_type, shape, float8_types))])


def constant_vector_node(values: Sequence,
                         arg_name: str,
                         elem_type: Optional[int] = None,
                         float8_types: Optional[bool] = None) -> NodeDef:
    """ Create a ``Constant`` node producing the 1-D tensor ``values``.

        :param values: the values of the vector.
        :param arg_name: the name of the produced tensor.
        :param elem_type: the ONNX element type. Defaults to INT64 for integer values and FLOAT otherwise.
        :param float8_types: see :func:`resolve_element_type`.
    """
    values = list(values)
    if elem_type is None:
        is_integral = all(isinstance(v, numbers.Integral) and not isinstance(v, bool) for v in values)
        elem_type = TensorProto.INT64 if is_integral else TensorProto.FLOAT

    if elem_type in INTEGER_ELEMENT_TYPES:
        tensor = helper.make_tensor('', elem_type, [len(values)], [int(v) for v in values])
    else:
        elem_type = resolve_element_type(elem_type, float8_types)
        tensor = helper.make_tensor('', elem_type, [len(values)], _ENCODERS[elem_type](values, elem_type))

    return NodeDef("Constant", [], [ArgDef(arg_name)], [helper.make_attribute("value", tensor)])


def zero_constant_node(elem_type: int, float8_types: Optional[bool] = None) -> NodeDef:
    return constant_scalar_node(0.0, f"ZeroConstant_Type{elem_type}", elem_type, float8_types=float8_types)


def half_constant_node(elem_type: int, float8_types: Optional[bool] = None) -> NodeDef:
    return constant_scalar_node(0.5, f"HalfConstant_Type{elem_type}", elem_type, float8_types=float8_types)


def one_constant_node(elem_type: int, float8_types: Optional[bool] = None) -> NodeDef:
    return constant_scalar_node(1.0, f"OneConstant_Type{elem_type}", elem_type, float8_types=float8_types)
