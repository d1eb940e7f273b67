# Copyright 2019-2025 ETH Zurich and the DaCe authors. All rights reserved.
"""
Read-mostly view over the forward ONNX graph that gradient builders consume.

The view indexes every tensor name of the graph together with its type (when known), the producer of each
tensor, and the opset imports of the model. Producer/consumer relations are kept in a bipartite
``networkx`` graph of node and tensor vertices.
"""

import logging
from typing import Dict, Iterable, List, Optional, Union

import networkx as nx
import onnx
from onnx import helper

from onnxgrad.graph.arg_def import ArgDef, ONNX_DOMAIN

log = logging.getLogger(__name__)


def recompute_name(name: str) -> str:
    """The name under which a recomputation pass publishes the recomputed alias of tensor ``name``."""
    return name + "_recompute"


def _normalize_domain(domain: str) -> str:
    return ONNX_DOMAIN if domain in ('', 'ai.onnx') else domain


class ForwardNode:
    """ One operator instance of the forward graph.

        :param proto: the ONNX node.
        :param graph: the graph that owns the node.
    """

    def __init__(self, proto: onnx.NodeProto, graph: 'ForwardGraph'):
        self.proto = proto
        self.graph = graph

    @property
    def name(self) -> str:
        return self.proto.name

    @property
    def op_type(self) -> str:
        return self.proto.op_type

    @property
    def domain(self) -> str:
        return _normalize_domain(self.proto.domain)

    @property
    def input_defs(self) -> List[ArgDef]:
        return [self.graph.get_node_arg(name) or ArgDef(name) for name in self.proto.input]

    @property
    def output_defs(self) -> List[ArgDef]:
        return [self.graph.get_node_arg(name) or ArgDef(name) for name in self.proto.output]

    @property
    def attributes(self) -> Dict[str, onnx.AttributeProto]:
        return {attr.name: attr for attr in self.proto.attribute}

    @property
    def since_version(self) -> int:
        """ The opset version in which the schema of this operator was introduced.

            Falls back to the opset imported for the node's domain if no schema is known, and to -1 if the domain
            is not imported either.
        """
        opset = self.graph.domain_to_version.get(self.domain)
        try:
            if opset is None:
                schema = onnx.defs.get_schema(self.op_type, domain=self.domain)
            else:
                schema = onnx.defs.get_schema(self.op_type, opset, self.domain)
        except onnx.defs.SchemaError:
            return -1 if opset is None else opset
        return schema.since_version

    def __repr__(self):
        return f"ForwardNode({self.name or '<unnamed>'}: {self.op_type})"


class ForwardGraph:
    """ Indexed view over an ONNX ``GraphProto``.

        :param graph: the forward graph.
        :param opset_imports: the opset imports of the model, either as a mapping from domain to version or as
                              ``OperatorSetIdProto`` entries.
    """

    def __init__(self,
                 graph: onnx.GraphProto,
                 opset_imports: Union[None, Dict[str, int], Iterable[onnx.OperatorSetIdProto]] = None):
        self.proto = graph

        self._domain_to_version: Dict[str, int] = {}
        if isinstance(opset_imports, dict):
            for domain, version in opset_imports.items():
                self._domain_to_version[_normalize_domain(domain)] = version
        elif opset_imports is not None:
            for opset in opset_imports:
                self._domain_to_version[_normalize_domain(opset.domain)] = opset.version

        self._arg_types: Dict[str, Optional[onnx.TypeProto]] = {}
        self._nodes: List[ForwardNode] = []
        self._node_names = set()
        self._name_generator = 0
        self._connectivity = nx.DiGraph()

        for value_info in [*graph.input, *graph.output, *graph.value_info]:
            self._arg_types[value_info.name] = value_info.type if value_info.HasField('type') else None
        for init in graph.initializer:
            if self._arg_types.get(init.name) is None:
                self._arg_types[init.name] = helper.make_tensor_type_proto(init.data_type, list(init.dims))

        for proto in graph.node:
            self._index_node(proto)

    @staticmethod
    def from_model(model: onnx.ModelProto, infer_shapes: bool = False) -> 'ForwardGraph':
        """ Create a view over the graph of ``model``.

            :param model: the forward model.
            :param infer_shapes: run ONNX shape inference first, so that intermediate tensors are typed.
        """
        if infer_shapes:
            model = onnx.shape_inference.infer_shapes(model)
        return ForwardGraph(model.graph, model.opset_import)

    def _index_node(self, proto: onnx.NodeProto) -> ForwardNode:
        node = ForwardNode(proto, self)
        self._nodes.append(node)
        if proto.name:
            self._node_names.add(proto.name)

        self._connectivity.add_node(node)
        for name in proto.input:
            if name:
                self._arg_types.setdefault(name, None)
                self._connectivity.add_edge(name, node)
        for name in proto.output:
            if name:
                self._arg_types.setdefault(name, None)
                self._connectivity.add_edge(node, name)
        return node

    def add_node(self, proto: onnx.NodeProto, value_infos: Iterable[onnx.ValueInfoProto] = ()) -> ForwardNode:
        """ Append a node to the graph, e.g. a node that recomputes a forward tensor.

            :param proto: the node to add.
            :param value_infos: types of the tensors the node produces.
            :return: the view of the added node.
        """
        self.proto.node.append(proto)
        for value_info in value_infos:
            self.proto.value_info.append(value_info)
            self._arg_types[value_info.name] = value_info.type
        return self._index_node(proto)

    @property
    def nodes(self) -> List[ForwardNode]:
        return list(self._nodes)

    def node(self, name: str) -> ForwardNode:
        for node in self._nodes:
            if node.name == name:
                return node
        raise KeyError(f"No node named '{name}' in the forward graph")

    @property
    def domain_to_version(self) -> Dict[str, int]:
        return dict(self._domain_to_version)

    def has_node_arg(self, name: str) -> bool:
        return bool(name) and name in self._arg_types

    def get_node_arg(self, name: str) -> Optional[ArgDef]:
        """Return the ArgDef of tensor ``name``, or None if no such tensor exists in the graph."""
        if not self.has_node_arg(name):
            return None
        return ArgDef(name, self._arg_types[name])

    def get_producer_node(self, name: str) -> Optional[ForwardNode]:
        """Return the node that produces tensor ``name``, or None for graph inputs and initializers."""
        if name not in self._connectivity:
            return None
        producers = list(self._connectivity.predecessors(name))
        return producers[0] if producers else None

    def get_consumer_nodes(self, name: str) -> List[ForwardNode]:
        if name not in self._connectivity:
            return []
        return list(self._connectivity.successors(name))

    def generate_node_name(self, base_name: str) -> str:
        """Generate a node name, derived from ``base_name``, that is not used by any node of the graph."""
        new_name = base_name
        while not new_name or new_name in self._node_names:
            new_name = f"{base_name}_token_{self._name_generator}"
            self._name_generator += 1
        self._node_names.add(new_name)
        return new_name
