# Copyright 2019-2025 ETH Zurich and the DaCe authors. All rights reserved.
__version__ = '0.3.0'
