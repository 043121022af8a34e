"""
Tests for ChunkWorker - batching signal chunks through a Runner.
"""

import queue
import time
from typing import List

import pytest

from basecall_lite.basecall import ModelRunner
from basecall_lite.decode import DecodedChunk
from basecall_lite.errors import ResourceExhausted, Terminated
from basecall_lite.pipeline import CalledChunk, ChunkWorker, SignalChunk
from tests.data import make_signal, make_signals
from tests.utils.comparison import fingerprints


class FakeRunner:
    """Runner stand-in that echoes slot contents and can refuse large batches."""

    def __init__(self, batch_size: int = 4, timeout_ms: int = 50, max_ok_chunks: int = None, error=None):
        self._batch_size = batch_size
        self._timeout_ms = timeout_ms
        self.max_ok_chunks = max_ok_chunks
        self.error = error
        self.slots = [None] * batch_size
        self.calls: List[int] = []

    def batch_size(self) -> int:
        return self._batch_size

    def batch_timeout_ms(self) -> int:
        return self._timeout_ms

    def get_name(self) -> str:
        return "FakeRunner"

    def accept_chunk(self, slot_index: int, chunk_data) -> None:
        self.slots[slot_index] = chunk_data

    def call_chunks(self, num_chunks: int) -> List[DecodedChunk]:
        self.calls.append(num_chunks)
        if self.error is not None:
            raise self.error
        if self.max_ok_chunks is not None and num_chunks > self.max_ok_chunks:
            raise ResourceExhausted(f"{num_chunks} chunks do not fit")
        return [DecodedChunk(str(self.slots[i]), "", []) for i in range(num_chunks)]


def _drain(output_queue: "queue.Queue[CalledChunk]", count: int, timeout: float = 10.0) -> List[CalledChunk]:
    results = []
    deadline = time.monotonic() + timeout
    while len(results) < count:
        results.append(output_queue.get(timeout=max(0.01, deadline - time.monotonic())))
    return results


@pytest.mark.unit
def test_full_batches_are_flushed() -> None:
    """Test that a full Runner buffer is called and results keep read identity."""
    runner = FakeRunner(batch_size=4, timeout_ms=10_000)
    inputs, outputs = queue.Queue(), queue.Queue()
    worker = ChunkWorker(runner, inputs, outputs)
    worker.start()

    for i in range(8):
        inputs.put(SignalChunk(f"read{i // 3}", i % 3, f"signal{i}"))
    results = _drain(outputs, 8)
    worker.stop()

    assert runner.calls == [4, 4]
    assert [(r.read_id, r.chunk_index) for r in results] == [
        (f"read{i // 3}", i % 3) for i in range(8)
    ]
    assert [r.decoded.sequence for r in results] == [f"signal{i}" for i in range(8)]
    assert worker.chunks_called == 8


@pytest.mark.unit
def test_partial_batch_flushed_on_timeout() -> None:
    """Test that a partial batch is called once batch_timeout_ms elapses."""
    runner = FakeRunner(batch_size=4, timeout_ms=50)
    inputs, outputs = queue.Queue(), queue.Queue()
    worker = ChunkWorker(runner, inputs, outputs)
    worker.start()

    for i in range(3):
        inputs.put(SignalChunk("read", i, i))
    results = _drain(outputs, 3, timeout=5.0)

    assert runner.calls == [3]
    assert [r.chunk_index for r in results] == [0, 1, 2]
    worker.stop()
    assert not worker.is_alive()


@pytest.mark.unit
def test_stop_flushes_pending_chunks() -> None:
    """Test that stop() calls whatever is still queued or pending."""
    runner = FakeRunner(batch_size=4, timeout_ms=60_000)
    inputs, outputs = queue.Queue(), queue.Queue()
    for i in range(6):
        inputs.put(SignalChunk("read", i, i))

    worker = ChunkWorker(runner, inputs, outputs)
    worker.start()
    worker.stop(timeout=10)

    assert not worker.is_alive()
    assert sum(runner.calls) == 6
    assert outputs.qsize() == 6


@pytest.mark.unit
def test_resource_exhausted_retries_smaller_batches() -> None:
    """Test that an out-of-memory batch is resubmitted in halves."""
    runner = FakeRunner(batch_size=4, timeout_ms=10_000, max_ok_chunks=1)
    inputs, outputs = queue.Queue(), queue.Queue()
    worker = ChunkWorker(runner, inputs, outputs, max_retries=2)
    worker.start()

    for i in range(4):
        inputs.put(SignalChunk("read", i, f"s{i}"))
    results = _drain(outputs, 4)
    worker.stop()

    assert runner.calls == [4, 2, 1, 1, 1, 1]
    assert [r.decoded.sequence for r in results] == ["s0", "s1", "s2", "s3"]
    assert worker.retries == 2
    assert worker.error is None


@pytest.mark.unit
def test_resource_exhausted_escalates_after_max_retries() -> None:
    """Test that the error is kept once the retry allowance is spent."""
    runner = FakeRunner(batch_size=4, timeout_ms=10_000, max_ok_chunks=0)
    inputs, outputs = queue.Queue(), queue.Queue()
    worker = ChunkWorker(runner, inputs, outputs, max_retries=1)
    worker.start()

    for i in range(4):
        inputs.put(SignalChunk("read", i, i))
    worker.join(timeout=10)

    assert not worker.is_alive()
    assert isinstance(worker.error, ResourceExhausted)
    assert runner.calls == [4, 2]
    assert outputs.empty()


@pytest.mark.unit
def test_terminated_ends_worker_quietly() -> None:
    """Test that Terminated ends the worker without recording an error."""
    runner = FakeRunner(batch_size=2, timeout_ms=10_000, error=Terminated("caller terminated"))
    inputs, outputs = queue.Queue(), queue.Queue()
    worker = ChunkWorker(runner, inputs, outputs)
    worker.start()

    inputs.put(SignalChunk("read", 0, 0))
    inputs.put(SignalChunk("read", 1, 1))
    worker.join(timeout=10)

    assert not worker.is_alive()
    assert worker.error is None


@pytest.mark.unit
def test_negative_retries_rejected() -> None:
    """Test that max_retries must be non-negative."""
    with pytest.raises(ValueError):
        ChunkWorker(FakeRunner(), queue.Queue(), queue.Queue(), max_retries=-1)


@pytest.mark.integration
def test_worker_with_real_runner(caller) -> None:
    """Test a ChunkWorker driving a real Runner and Caller."""
    runner = ModelRunner(caller)
    inputs, outputs = queue.Queue(), queue.Queue()
    worker = ChunkWorker(runner, inputs, outputs)
    worker.start()

    signals = make_signals(6)
    for i, signal in enumerate(signals):
        inputs.put(SignalChunk(f"read{i % 2}", i // 2, signal))
    results = _drain(outputs, 6, timeout=60.0)
    worker.stop()

    reference = ModelRunner(caller)
    for slot, signal in enumerate(signals[:4]):
        reference.accept_chunk(slot, signal)
    expected = fingerprints(reference.call_chunks(4))
    reference.accept_chunk(0, signals[4])
    reference.accept_chunk(1, signals[5])
    expected += fingerprints(reference.call_chunks(2))

    assert [(r.read_id, r.chunk_index) for r in results] == [
        (f"read{i % 2}", i // 2) for i in range(6)
    ]
    assert fingerprints([r.decoded for r in results]) == expected
    assert worker.error is None


@pytest.mark.integration
def test_worker_stops_when_caller_terminates(caller) -> None:
    """Test that terminating the Caller ends the worker without an error."""
    runner = ModelRunner(caller)
    inputs, outputs = queue.Queue(), queue.Queue()
    worker = ChunkWorker(runner, inputs, outputs)
    worker.start()

    caller.terminate()
    inputs.put(SignalChunk("read", 0, make_signal(0)))
    worker.join(timeout=10)

    assert not worker.is_alive()
    assert worker.error is None
    assert outputs.empty()
