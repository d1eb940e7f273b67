# Copyright 2019-2025 ETH Zurich and the DaCe authors. All rights reserved.
"""
Broadcast backward axes.

An elementwise operator broadcasts its operands numpy-style: shapes are right-aligned, missing leading dimensions
and dimensions of extent 1 expand to the extent of the other operand. The gradient flowing back into an operand has
the broadcast shape, so it has to be summed over every axis along which that operand was expanded.

The axes computed here index the broadcast (gradient) shape, i.e. the rank of the longer operand, and are sorted
in ascending order.
"""

import logging
import re
from typing import List, Optional, Sequence, Tuple, Union

import aenum
import onnx
import sympy
from onnx import TensorProto, helper

from onnxgrad.config import Config
from onnxgrad.gradient.constants import constant_vector_node
from onnxgrad.gradient.exceptions import BroadcastError
from onnxgrad.graph.arg_def import ArgDef, NodeDef

log = logging.getLogger(__name__)

#: A dimension given as concrete extent, symbolic name, ONNX dimension proto, or None if unknown.
Dimension = Union[int, str, None, onnx.TensorShapeProto.Dimension]


class DimensionKind(aenum.AutoNumberEnum):
    Concrete = ()  #: A known extent
    Symbolic = ()  #: A named, unresolved extent
    Unknown = ()  #: Neither extent nor name is known


def dimension_kind(dim: Dimension) -> Tuple[DimensionKind, Union[int, str, None]]:
    """Classify ``dim`` and return its concrete value or symbol name."""
    if isinstance(dim, onnx.TensorShapeProto.Dimension):
        if dim.HasField('dim_value'):
            return DimensionKind.Concrete, dim.dim_value
        if dim.HasField('dim_param') and dim.dim_param:
            return DimensionKind.Symbolic, dim.dim_param
        return DimensionKind.Unknown, None
    if isinstance(dim, bool) or dim is None:
        return DimensionKind.Unknown, None
    if isinstance(dim, int):
        return DimensionKind.Concrete, dim
    if isinstance(dim, str) and dim:
        return DimensionKind.Symbolic, dim
    return DimensionKind.Unknown, None


def _to_symbolic(name: str) -> sympy.Expr:
    # Every identifier is a plain symbol, so names like N, E or I are not mistaken for sympy builtins
    identifiers = {ident: sympy.Symbol(ident) for ident in re.findall(r'[A-Za-z_]\w*', name)}
    try:
        return sympy.sympify(name, locals=identifiers)
    except (TypeError, SyntaxError, sympy.SympifyError):
        return sympy.Symbol(name)


def symbolic_dims_equal(a: str, b: str) -> bool:
    """Return True if two symbolic dimensions are provably equal, e.g. ``2*N`` and ``N*2``."""
    if a == b:
        return True
    return sympy.simplify(_to_symbolic(a) - _to_symbolic(b)) == 0


def _format_dims(dims: Sequence[Dimension]) -> str:
    values = []
    for dim in dims:
        kind, value = dimension_kind(dim)
        values.append("?" if kind == DimensionKind.Unknown else str(value))
    return "[" + ",".join(values) + "]"


def _ambiguous(message: str, a_dims: Sequence[Dimension], b_dims: Sequence[Dimension], node_name: str,
               strict: bool):
    details = (f"Gradient building for node {node_name}: {message}. A_dims: {_format_dims(a_dims)}, "
               f"B_dims: {_format_dims(b_dims)}")
    if strict:
        raise BroadcastError(details, node_name)
    log.info(details + ". This is a relaxing case, and the kernel might run into problems later if A_dims and "
             "B_dims turn out not to be broadcastable.")


def compute_broadcast_backward_axes(a_dims: Sequence[Dimension],
                                    b_dims: Sequence[Dimension],
                                    node_name: str = "",
                                    strict: Optional[bool] = None) -> Tuple[List[int], List[int]]:
    """ Compute the axes over which the gradients of two broadcast operands have to be reduced.

        :param a_dims: dimensions of operand A.
        :param b_dims: dimensions of operand B.
        :param node_name: name of the node the axes are computed for, used in diagnostics.
        :param strict: raise on dimensions that are not provably broadcastable instead of logging them. Defaults
                       to ``gradient.strict_symbolic_broadcast``.
        :return: the reduce axes of A and the reduce axes of B, both indexing the broadcast shape.
        :raises BroadcastError: if the shapes are not broadcastable or contain unknown dimensions.
    """
    if strict is None:
        strict = Config.get_bool('gradient', 'strict_symbolic_broadcast')
    a_axes: List[int] = []
    b_axes: List[int] = []

    ndim = max(len(a_dims), len(b_dims))
    i = len(a_dims) - 1
    j = len(b_dims) - 1
    k = ndim - 1

    while i >= 0 and j >= 0:
        a_kind, a_dim = dimension_kind(a_dims[i])
        b_kind, b_dim = dimension_kind(b_dims[j])

        if a_kind == DimensionKind.Concrete and b_kind == DimensionKind.Concrete:
            if a_dim != b_dim:
                if a_dim == 1:
                    a_axes.append(k)
                elif b_dim == 1:
                    b_axes.append(k)
                else:
                    raise BroadcastError(
                        f"Dimension {k} of A and B shapes are not broadcastable. A_dims: {_format_dims(a_dims)}, "
                        f"B_dims: {_format_dims(b_dims)}", node_name)
        elif a_kind == DimensionKind.Symbolic and b_kind == DimensionKind.Symbolic:
            if not symbolic_dims_equal(a_dim, b_dim):
                _ambiguous(f"symbolic dimensions {a_dim} and {b_dim} are expected to match", a_dims, b_dims,
                           node_name, strict)
        elif a_kind == DimensionKind.Symbolic and b_kind == DimensionKind.Concrete:
            if b_dim == 1:
                b_axes.append(k)
            else:
                _ambiguous(f"symbolic dimension {a_dim} is expected to match {b_dim}", a_dims, b_dims, node_name,
                           strict)
        elif a_kind == DimensionKind.Concrete and b_kind == DimensionKind.Symbolic:
            if a_dim == 1:
                a_axes.append(k)
            else:
                _ambiguous(f"symbolic dimension {b_dim} is expected to match {a_dim}", a_dims, b_dims, node_name,
                           strict)
        else:
            raise BroadcastError(
                f"Unknown dimension type. A_dims: {_format_dims(a_dims)}, B_dims: {_format_dims(b_dims)}",
                node_name)

        i -= 1
        j -= 1
        k -= 1

    # Leading axes that only exist on the longer operand
    if i < 0:
        a_axes.extend(range(k + 1))
    else:
        b_axes.extend(range(k + 1))

    return sorted(a_axes), sorted(b_axes)


def _padded_shape(shape: ArgDef, rank: ArgDef, out_rank: ArgDef, prefix: str,
                  output: List[NodeDef]) -> Tuple[ArgDef, ArgDef]:
    """ Emit nodes left-padding the runtime shape ``shape`` with ones up to ``out_rank``.

        :return: the padded shape and the number of leading positions that were padded.
    """
    pad_len = ArgDef(prefix + "_pad_len")
    ones = ArgDef(prefix + "_pad")
    padded = ArgDef(prefix + "_padded")
    output.append(NodeDef("Sub", [out_rank, rank], [pad_len]))
    output.append(
        NodeDef("ConstantOfShape", [pad_len], [ones],
                [helper.make_attribute("value", helper.make_tensor('', TensorProto.INT64, [1], [1]))]))
    output.append(NodeDef("Concat", [ones, shape], [padded], [helper.make_attribute("axis", 0)]))
    return padded, pad_len


def _int64_scalar_node(value: int, arg: ArgDef) -> NodeDef:
    return NodeDef("Constant", [], [arg],
                   [helper.make_attribute("value", helper.make_tensor('', TensorProto.INT64, [], [value]))])


def _broadcast_positions(out_rank: ArgDef, prefix: str, output: List[NodeDef]) -> ArgDef:
    """Emit nodes producing the vector ``[0, 1, ..., out_rank - 1]``."""
    scalar_shape = ArgDef(prefix + "_scalar_shape")
    rank_scalar = ArgDef(prefix + "_rank_scalar")
    start = ArgDef(prefix + "_range_start")
    delta = ArgDef(prefix + "_range_delta")
    positions = ArgDef(prefix + "_positions")
    output.append(constant_vector_node([], scalar_shape.name, TensorProto.INT64))
    output.append(NodeDef("Reshape", [out_rank, scalar_shape], [rank_scalar]))
    output.append(_int64_scalar_node(0, start))
    output.append(_int64_scalar_node(1, delta))
    output.append(NodeDef("Range", [start, rank_scalar, delta], [positions]))
    return positions


def _reduce_axes(padded: ArgDef, pad_len: ArgDef, broadcast_shape: ArgDef, positions: ArgDef, axes: ArgDef,
                 output: List[NodeDef]):
    """ Emit nodes selecting the axes an operand was expanded along.

        These are the padded leading positions and the positions where ``padded`` differs from
        ``broadcast_shape``.
    """
    equal = ArgDef(axes.name + "_equal")
    not_equal = ArgDef(axes.name + "_not_equal")
    is_pad = ArgDef(axes.name + "_is_pad")
    expanded = ArgDef(axes.name + "_expanded")
    indices = ArgDef(axes.name + "_indices")
    flat = ArgDef(axes.name + "_flat_shape")
    output.append(NodeDef("Equal", [padded, broadcast_shape], [equal]))
    output.append(NodeDef("Not", [equal], [not_equal]))
    output.append(NodeDef("Less", [positions, pad_len], [is_pad]))
    output.append(NodeDef("Or", [not_equal, is_pad], [expanded]))
    output.append(NodeDef("NonZero", [expanded], [indices]))
    output.append(constant_vector_node([-1], flat.name))
    output.append(NodeDef("Reshape", [indices, flat], [axes]))


def compute_broadcast_backward_axes_dynamic(a: ArgDef, b: ArgDef, a_shape: ArgDef, b_shape: ArgDef,
                                            a_axes: Optional[ArgDef], b_axes: Optional[ArgDef],
                                            output: List[NodeDef]):
    """ Emit nodes that compute the broadcast backward axes of ``a`` and ``b`` at graph execution time.

        The emitted axes are the same as the ones :func:`compute_broadcast_backward_axes` computes for the runtime
        shapes. If ``a_shape`` and ``b_shape`` share a name, the shape is computed once.

        :param a: operand A.
        :param b: operand B.
        :param a_shape: the tensor receiving the runtime shape of A.
        :param b_shape: the tensor receiving the runtime shape of B.
        :param a_axes: the tensor receiving the reduce axes of A, or None if they are not needed.
        :param b_axes: the tensor receiving the reduce axes of B, or None if they are not needed.
        :param output: the node list the emitted nodes are appended to.
    """
    output.append(NodeDef("Shape", [a], [a_shape]))
    if b_shape.name != a_shape.name:
        output.append(NodeDef("Shape", [b], [b_shape]))

    if a_axes is None and b_axes is None:
        return

    prefix = (a_axes or b_axes).name
    a_rank = ArgDef(prefix + "_a_rank")
    b_rank = ArgDef(prefix + "_b_rank")
    out_rank = ArgDef(prefix + "_rank")
    output.append(NodeDef("Shape", [a_shape], [a_rank]))
    output.append(NodeDef("Shape", [b_shape], [b_rank]))
    output.append(NodeDef("Max", [a_rank, b_rank], [out_rank]))

    a_padded, a_pad_len = _padded_shape(a_shape, a_rank, out_rank, prefix + "_a", output)
    b_padded, b_pad_len = _padded_shape(b_shape, b_rank, out_rank, prefix + "_b", output)
    broadcast_shape = ArgDef(prefix + "_broadcast_shape")
    output.append(NodeDef("Max", [a_padded, b_padded], [broadcast_shape]))
    positions = _broadcast_positions(out_rank, prefix, output)

    if a_axes is not None:
        _reduce_axes(a_padded, a_pad_len, broadcast_shape, positions, a_axes, output)
    if b_axes is not None:
        _reduce_axes(b_padded, b_pad_len, broadcast_shape, positions, b_axes, output)
