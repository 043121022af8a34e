"""
Upstream pipeline stage.

Provides:
- SignalChunk: One chunk of a read's signal
- CalledChunk: A decoded chunk with its read identity
- ChunkWorker: Thread batching chunks through a ModelRunner
"""

from basecall_lite.pipeline.chunk_worker import CalledChunk, ChunkWorker, SignalChunk

__all__ = ["SignalChunk", "CalledChunk", "ChunkWorker"]
