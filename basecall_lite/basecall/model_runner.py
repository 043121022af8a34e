"""
ModelRunner: the per-thread batching facade over a shared Caller.
"""

import itertools
import logging
from typing import Any, List

import torch

from basecall_lite.basecall.caller import Caller
from basecall_lite.basecall.device import stream_context
from basecall_lite.basecall.stats import NamedStats, merge_stats
from basecall_lite.decode import DecodedChunk
from basecall_lite.errors import InvalidInput, Terminated
from basecall_lite.models.tx import ModelConfig

log = logging.getLogger("basecall_lite.model_runner")

_runner_ids = itertools.count()


class ModelRunner:
    """Holds a private input/output batch and submits it to a Caller.

    A ModelRunner is owned by exactly one worker thread. Several Runners may
    share one Caller; they never touch each other's buffers.

    Attributes:
        caller: The shared Caller this Runner submits to
        batch_dims_idx: Which of the Caller's batch shapes this Runner uses
    """

    def __init__(self, caller: Caller, batch_dims_idx: int = 0):
        """Initialize a ModelRunner.

        Args:
            caller: Shared Caller handle
            batch_dims_idx: Batch shape selector

        Raises:
            ConfigError: If ``batch_dims_idx`` is out of range
            ResourceExhausted: If the buffers do not fit in the Caller's budget
        """
        self.caller = caller
        self.batch_dims_idx = batch_dims_idx
        self._name = f"ModelRunner_{next(_runner_ids)}"

        self._input = caller.create_input_buffer(batch_dims_idx)
        try:
            self._output = caller.create_output_buffer(batch_dims_idx)
        except Exception:
            caller.release_buffer(self._input)
            raise
        self._stream = caller.create_stream()
        shape = caller.batch_dims[batch_dims_idx]

        # Captured once; constant for the Runner's lifetime.
        self._batch_size = shape.batch_size
        self._chunk_size = shape.chunk_size
        self._num_features = caller.config.num_features
        self._closed = False

        # Metrics
        self._batches_called = 0
        self._chunks_called = 0

        log.debug(
            f"{self._name} attached to {caller.name} with shape "
            f"({self._batch_size}, {self._chunk_size})"
        )

    def accept_chunk(self, slot_index: int, chunk_data: Any) -> None:
        """Copy one chunk of signal into the input buffer at ``slot_index``.

        Args:
            slot_index: Row of the batch, in [0, batch_size)
            chunk_data: Tensor or array of shape [channels, chunk_size] or
                flat with channels * chunk_size samples

        Raises:
            InvalidInput: If the index or the chunk length is wrong
        """
        if self._closed:
            raise Terminated(f"{self._name} has been closed")
        if not 0 <= slot_index < self._batch_size:
            raise InvalidInput(
                f"{self._name}: slot_index {slot_index} out of range for batch size "
                f"{self._batch_size}"
            )

        chunk = torch.as_tensor(chunk_data)
        expected = self._num_features * self._chunk_size
        if (
            chunk.dim() > 2
            or chunk.numel() != expected
            or (chunk.dim() == 2 and tuple(chunk.shape) != (self._num_features, self._chunk_size))
        ):
            raise InvalidInput(
                f"{self._name}: chunk of shape {tuple(chunk.shape)} does not match "
                f"[{self._num_features}, {self._chunk_size}]"
            )

        with stream_context(self._stream):
            self._input[slot_index].copy_(chunk.reshape(self._num_features, self._chunk_size))

    def call_chunks(self, num_chunks: int) -> List[DecodedChunk]:
        """Run the first ``num_chunks`` slots through the model.

        Slots at or beyond ``num_chunks`` never influence the result.

        Returns:
            Decoded chunks for slots [0, num_chunks), in slot order
        """
        if self._closed:
            raise Terminated(f"{self._name} has been closed")
        results = self.caller.call_chunks(self._input, self._output, num_chunks, self._stream)
        self._batches_called += 1
        self._chunks_called += num_chunks
        return results

    def batch_size(self) -> int:
        return self._batch_size

    def chunk_size(self) -> int:
        return self._chunk_size

    def model_stride(self) -> int:
        return self.caller.config.stride

    def batch_timeout_ms(self) -> int:
        return self.caller.config.batch_timeout_ms

    def config(self) -> ModelConfig:
        return self.caller.config

    def get_name(self) -> str:
        return self._name

    def terminate(self) -> None:
        self.caller.terminate()

    def restart(self) -> None:
        self.caller.restart()

    def sample_stats(self) -> NamedStats:
        """Caller stats merged with this Runner's counters."""
        return merge_stats(
            self.caller.sample_stats(),
            {
                "batches_called": float(self._batches_called),
                "chunks_called": float(self._chunks_called),
            },
        )

    def close(self) -> None:
        """Return the buffers to the Caller's memory budget."""
        if self._closed:
            return
        self._closed = True
        self.caller.release_buffer(self._input)
        self.caller.release_buffer(self._output)
        log.debug(f"{self._name} closed")

    def __repr__(self) -> str:
        return (
            f"ModelRunner(name={self._name}, caller={self.caller.name}, "
            f"batch_size={self._batch_size}, chunk_size={self._chunk_size})"
        )
