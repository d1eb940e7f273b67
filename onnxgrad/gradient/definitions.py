# Copyright 2019-2025 ETH Zurich and the DaCe authors. All rights reserved.
"""
Custom gradient definitions.

A custom gradient definition describes the backward fragment of an operator as data: a list of node definitions
whose arguments refer to the forward node through the accessor notation ``I(i)``, ``O(i)``, ``GI(i)`` and
``GO(i)``. Definitions are registered under the gradient definition key of the forward operator (see
:func:`onnxgrad.gradient.base_abc.get_gradient_definition_key_by_node`) and expanded by
:class:`onnxgrad.gradient.implementations.generic.GenericGradientBuilder`.
"""

import dataclasses
import logging
from typing import Dict, List, Optional

from onnx import TensorProto

from onnxgrad.graph.arg_def import ONNX_DOMAIN

log = logging.getLogger(__name__)


@dataclasses.dataclass
class GradientNodeAttributeDefinition:
    """An attribute of a custom gradient node, with its value given as JSON."""
    name: str
    value_json: str
    elem_type: int = TensorProto.FLOAT
    is_tensor: bool = False


@dataclasses.dataclass
class GradientNodeDefinition:
    """One node of a custom gradient definition."""
    op_type: str
    inputs: List[str]
    outputs: List[str]
    attributes: List[GradientNodeAttributeDefinition] = dataclasses.field(default_factory=list)
    domain: str = ONNX_DOMAIN
    opset_version: int = 1


class GradientDefinitionRegistry:
    """Process-wide registry of custom gradient definitions, keyed by gradient definition key."""

    _definitions: Dict[str, List[GradientNodeDefinition]] = {}

    @staticmethod
    def register(key: str, definitions: List[GradientNodeDefinition]):
        if key in GradientDefinitionRegistry._definitions:
            log.warning(f"Overwriting the custom gradient definition registered for {key}")
        GradientDefinitionRegistry._definitions[key] = list(definitions)

    @staticmethod
    def unregister(key: str):
        del GradientDefinitionRegistry._definitions[key]

    @staticmethod
    def contains(key: str) -> bool:
        return key in GradientDefinitionRegistry._definitions

    @staticmethod
    def get(key: str) -> Optional[List[GradientNodeDefinition]]:
        return GradientDefinitionRegistry._definitions.get(key)
