"""
basecall_lite: A lightweight batched basecalling inference engine.

This package provides:
- Caller: per-device model owner with memory budget, exclusive access and a
  FIFO execution queue behind a synchronous call boundary
- ModelRunner: per-thread batch buffers with chunk-granular accept/call
- Transformer basecall model (conv stack, windowed attention, CRF head)
- Greedy CRF decoding into sequence, qualities and move table
- ChunkWorker: timeout-flushing pipeline stage with OOM back-off
"""

__version__ = "0.1.0"
__author__ = "basecall-lite contributors"

from basecall_lite.errors import (
    BasecallError,
    ConfigError,
    InvalidInput,
    ResourceExhausted,
    Terminated,
)
from basecall_lite.models.tx import BatchShape, ModelConfig
from basecall_lite.decode import DecodedChunk, Decoder, GreedyDecoder
from basecall_lite.basecall import Caller, CallerState, ModelRunner
from basecall_lite.pipeline import CalledChunk, ChunkWorker, SignalChunk

__all__ = [
    "BasecallError",
    "ConfigError",
    "InvalidInput",
    "ResourceExhausted",
    "Terminated",
    "BatchShape",
    "ModelConfig",
    "DecodedChunk",
    "Decoder",
    "GreedyDecoder",
    "Caller",
    "CallerState",
    "ModelRunner",
    "CalledChunk",
    "ChunkWorker",
    "SignalChunk",
]
