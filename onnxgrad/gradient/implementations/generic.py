# Copyright 2019-2025 ETH Zurich and the DaCe authors. All rights reserved.
import logging
import re
from typing import List

from onnxgrad.gradient.base_abc import GradientBuilderBase, get_gradient_definition_key_by_node
from onnxgrad.gradient.definitions import GradientDefinitionRegistry
from onnxgrad.gradient.exceptions import ContractViolation
from onnxgrad.graph import ArgDef, NodeDef, OpDef

log = logging.getLogger(__name__)

_ACCESSOR = re.compile(r'(I|O|GI|GO)\((\d+)\)')


class GenericGradientBuilder(GradientBuilderBase):
    """ Builder expanding the custom gradient definition registered for the forward node.

        Arguments of the definition are resolved as follows: ``I(i)``, ``O(i)`` and ``GO(i)`` map to the
        corresponding accessors, ``GI(i)`` maps to the input gradient if it is required and to an unused (empty)
        argument otherwise. An empty name stays empty, and any other name denotes an intermediate argument.

        The builder is not registered by operator type; it is selected by
        :func:`onnxgrad.gradient.base_abc.find_gradient_builder` whenever a definition exists for the node.
    """

    @staticmethod
    def can_be_applied(node) -> bool:
        return GradientDefinitionRegistry.contains(get_gradient_definition_key_by_node(node))

    def _resolve_arg(self, name: str) -> ArgDef:
        if not name:
            return ArgDef("")

        match = _ACCESSOR.fullmatch(name.strip())
        if match is None:
            return self.IA(name)

        accessor, index = match.group(1), int(match.group(2))
        if accessor == "I":
            return self.I(index)
        if accessor == "O":
            return self.O(index)
        if accessor == "GO":
            return self.GO(index)
        if self.is_gradient_required_for_src_node_input(index):
            return self.GI(index)
        return ArgDef("")

    def get_gradient_defs_impl(self) -> List[NodeDef]:
        key = self.get_gradient_definition_key()
        definitions = GradientDefinitionRegistry.get(key)
        if definitions is None:
            raise ContractViolation(f"No custom gradient definition is registered for {key}", self.node_name())

        log.debug(f"Expanding custom gradient definition {key} with {len(definitions)} nodes")
        result = []
        for definition in definitions:
            inputs = [self._resolve_arg(name) for name in definition.inputs]
            outputs = [self._resolve_arg(name) for name in definition.outputs]
            attributes = [self.attribute_definition_to_attribute_proto(attr) for attr in definition.attributes]
            result.append(
                NodeDef(OpDef(definition.op_type, definition.domain, definition.opset_version), inputs, outputs,
                        attributes))
        return result
