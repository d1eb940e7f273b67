# Copyright 2019-2025 ETH Zurich and the DaCe authors. All rights reserved.
"""
Value types describing the graph fragments produced by gradient builders.

- :class:`ArgDef`: a tensor reference (name plus optional ONNX type).
- :class:`OpDef`: operator type, domain and opset version of an emitted node.
- :class:`NodeDef`: one node of a backward fragment.
- :class:`GradientDef`: the ordered fragment returned for one forward node.
"""

import dataclasses
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Union

import onnx
from onnx import helper

#: Domain of the contrib operators emitted by some builders.
MS_DOMAIN = 'com.microsoft'

#: The default ONNX operator domain.
ONNX_DOMAIN = ''


class ArgDef:
    """A reference to a graph tensor. Two ArgDefs are equal iff their names are equal."""

    def __init__(self, name: str, type_proto: Optional[onnx.TypeProto] = None):
        self.name = name
        self.type_proto = type_proto

    @property
    def elem_type(self) -> Optional[int]:
        """The ONNX element type of the tensor, or None if the type is unknown."""
        if self.type_proto is None or not self.type_proto.HasField('tensor_type'):
            return None
        return self.type_proto.tensor_type.elem_type

    def __eq__(self, other):
        return isinstance(other, ArgDef) and self.name == other.name

    def __hash__(self):
        return hash(self.name)

    def __repr__(self):
        return f"ArgDef({self.name!r})"


@dataclasses.dataclass(frozen=True)
class OpDef:
    """Operator identity of an emitted node."""
    op_type: str
    domain: str = ONNX_DOMAIN
    opset_version: int = 1


class NodeDef:
    """ A node of a backward graph fragment.

        :param op_def: the operator, either an :class:`OpDef` or an op type in the default domain.
        :param input_args: the ordered inputs of the node.
        :param output_args: the ordered outputs of the node.
        :param attributes: the attributes, either as a mapping from name or as a list of protos.
        :param name: the node name. Left empty, it is assigned when the fragment is finalized.
    """

    def __init__(self,
                 op_def: Union[str, OpDef],
                 input_args: Sequence[ArgDef] = (),
                 output_args: Sequence[ArgDef] = (),
                 attributes: Union[None, Mapping[str, onnx.AttributeProto], Iterable[onnx.AttributeProto]] = None,
                 name: str = ''):
        if isinstance(op_def, str):
            op_def = OpDef(op_def)
        self.op_def = op_def
        self.input_args: List[ArgDef] = list(input_args)
        self.output_args: List[ArgDef] = list(output_args)
        if attributes is None:
            attributes = {}
        elif not isinstance(attributes, Mapping):
            attributes = {attr.name: attr for attr in attributes}
        self.attributes: Dict[str, onnx.AttributeProto] = dict(attributes)
        self.name = name

    @property
    def op_type(self) -> str:
        return self.op_def.op_type

    @property
    def domain(self) -> str:
        return self.op_def.domain

    def to_onnx(self) -> onnx.NodeProto:
        """Convert this node into an ONNX ``NodeProto``."""
        node = helper.make_node(self.op_type, [arg.name for arg in self.input_args],
                                [arg.name for arg in self.output_args],
                                name=self.name or None,
                                domain=self.domain or None)
        node.attribute.extend(self.attributes.values())
        return node

    def __repr__(self):
        inputs = ", ".join(arg.name for arg in self.input_args)
        outputs = ", ".join(arg.name for arg in self.output_args)
        return f"NodeDef({self.name or '<unnamed>'}: {self.op_type}({inputs}) -> ({outputs}))"


class GradientDef(list):
    """ The backward fragment for one forward node: an ordered list of :class:`NodeDef`.

        Later nodes may consume outputs of earlier ones. ``aliases`` maps a gradient name that no node of the
        fragment produces to the already defined tensor that holds its value; this happens when a gradient
        passes through unchanged.
    """

    def __init__(self, nodes: Iterable[NodeDef] = (), aliases: Optional[Dict[str, str]] = None):
        super().__init__(nodes)
        self.aliases: Dict[str, str] = dict(aliases or {})

    def resolve(self, name: str) -> str:
        """Return the tensor name that holds the value of ``name`` in this fragment."""
        return self.aliases.get(name, name)

    def output_names(self) -> List[str]:
        return [arg.name for node in self for arg in node.output_args if arg.name]
