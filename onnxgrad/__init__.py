# Copyright 2019-2025 ETH Zurich and the DaCe authors. All rights reserved.
from .version import __version__
from .config import Config, GradientGraphConfiguration
from .graph import ArgDef, ForwardGraph, ForwardNode, GradientDef, NodeDef, OpDef
from .gradient import BackwardContext, GradientBuilderBase, find_gradient_builder
