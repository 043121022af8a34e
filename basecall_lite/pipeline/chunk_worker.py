"""Worker thread that batches signal chunks through a ModelRunner."""

import logging
import queue
import threading
import time
from dataclasses import dataclass
from typing import Any, List, Optional

from basecall_lite.basecall.model_runner import ModelRunner
from basecall_lite.decode import DecodedChunk
from basecall_lite.errors import ResourceExhausted, Terminated

log = logging.getLogger("basecall_lite.pipeline")


@dataclass
class SignalChunk:
    """One chunk of a read's signal, as pushed by the upstream pipeline."""

    read_id: str
    chunk_index: int
    signal: Any


@dataclass
class CalledChunk:
    """A decoded chunk correlated back to its read."""

    read_id: str
    chunk_index: int
    decoded: DecodedChunk


class ChunkWorker(threading.Thread):
    """Fill a Runner from an input queue and emit called chunks.

    A batch is flushed when the Runner's buffer is full, or when
    ``batch_timeout_ms`` has elapsed since the first chunk of a partial
    batch arrived. Slot positions are mapped back to (read_id, chunk_index)
    here, never in the Runner.

    On ResourceExhausted the pending chunks are resubmitted in batches of
    half the size, at most ``max_retries`` times, before the error is
    escalated. Terminated ends the worker quietly.

    Attributes:
        runner: ModelRunner owned by this worker
        error: Fatal error that ended the worker, if any
        retries: Number of ResourceExhausted retries performed
    """

    def __init__(
        self,
        runner: ModelRunner,
        input_queue: "queue.Queue[SignalChunk]",
        output_queue: "queue.Queue[CalledChunk]",
        max_retries: int = 2,
        poll_interval_s: float = 0.01,
        name: Optional[str] = None,
    ):
        super().__init__(daemon=True, name=name or f"{runner.get_name()}-worker")
        if max_retries < 0:
            raise ValueError(f"max_retries must be non-negative, got {max_retries}")
        self.runner = runner
        self.input_queue = input_queue
        self.output_queue = output_queue
        self.max_retries = max_retries
        self.poll_interval_s = poll_interval_s
        self.error: Optional[BaseException] = None
        self.retries = 0
        self.chunks_called = 0

        self._stop_event = threading.Event()
        self._pending: List[SignalChunk] = []
        self._batch_started_s: Optional[float] = None

    def stop(self, timeout: Optional[float] = None) -> None:
        """Flush everything already queued, then end the thread."""
        self._stop_event.set()
        if self.is_alive():
            self.join(timeout)

    def run(self):
        timeout_s = self.runner.batch_timeout_ms() / 1000.0
        batch_size = self.runner.batch_size()
        try:
            while True:
                if self._stop_event.is_set() and self.input_queue.empty():
                    break
                try:
                    chunk = self.input_queue.get(timeout=self._wait_s(timeout_s))
                except queue.Empty:
                    chunk = None

                if chunk is not None:
                    self.runner.accept_chunk(len(self._pending), chunk.signal)
                    self._pending.append(chunk)
                    if self._batch_started_s is None:
                        self._batch_started_s = time.perf_counter()

                if len(self._pending) == batch_size:
                    self._flush()
                elif self._pending and time.perf_counter() - self._batch_started_s >= timeout_s:
                    log.debug(f"{self.name}: timeout flush of {len(self._pending)} chunk(s)")
                    self._flush()
            self._flush()
        except Terminated:
            log.info(f"{self.name}: caller terminated, worker exiting")
        except Exception as e:
            self.error = e
            log.error(f"{self.name}: fatal error: {e}")

    def _wait_s(self, timeout_s: float) -> float:
        if self._batch_started_s is None:
            return self.poll_interval_s
        remaining = timeout_s - (time.perf_counter() - self._batch_started_s)
        return max(0.0, min(self.poll_interval_s, remaining))

    def _flush(self) -> None:
        if not self._pending:
            return
        chunks, self._pending = self._pending, []
        self._batch_started_s = None
        self._call(chunks)

    def _call(self, chunks: List[SignalChunk]) -> None:
        """Call ``chunks`` (already loaded into slots 0..n-1), splitting on OOM."""
        group_size = len(chunks)
        attempts = 0
        start = 0
        reload = False
        while start < len(chunks):
            group = chunks[start : start + group_size]
            if reload:
                for slot, chunk in enumerate(group):
                    self.runner.accept_chunk(slot, chunk.signal)
            try:
                decoded = self.runner.call_chunks(len(group))
            except ResourceExhausted:
                attempts += 1
                if attempts > self.max_retries or group_size == 1:
                    raise
                group_size = max(1, group_size // 2)
                reload = True
                self.retries += 1
                log.warning(
                    f"{self.name}: out of memory, retrying with batches of {group_size} "
                    f"(attempt {attempts}/{self.max_retries})"
                )
                continue

            for chunk, result in zip(group, decoded):
                self.output_queue.put(CalledChunk(chunk.read_id, chunk.chunk_index, result))
            self.chunks_called += len(group)
            start += len(group)
            reload = True
