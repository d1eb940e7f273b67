# Copyright 2019-2025 ETH Zurich and the DaCe authors. All rights reserved.
"""
Exceptions raised while building gradient graph fragments.

Every error aborts construction of the whole backward graph; none of them is recoverable mid-build.
"""

from typing import Optional


class GradientBuilderException(Exception):
    """Base class for all exceptions related to gradient graph construction."""

    def __init__(self, message: str, node_name: Optional[str] = None):
        if node_name:
            message = f"{message} (node: {node_name})"
        super().__init__(message)
        self.node_name = node_name


class ContractViolation(GradientBuilderException):
    """A builder was used outside of its contract, e.g. with an out-of-range argument index."""
    pass


class BroadcastError(ContractViolation):
    """The broadcast backward axes of two shapes could not be determined."""
    pass


class UnsupportedGradientError(ContractViolation):
    """A gradient was requested for an operator that must never be differentiated."""
    pass
