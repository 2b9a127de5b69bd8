# Self-Improving Coding Agent
# Copyright (c) 2025 Maxime Robeyns
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.
"""
Incremental byte sources and the line-oriented stream decoder
"""

from .cancellation import CancelToken
from .byte_sources import ByteSource, HttpByteSource, iter_chunks, iter_file
from .stream_decoder import StreamDecoder, decode_stream
