"""
Caller: the per-device owner of a basecall model.

A Caller is the single point of serialization for one compute device. It owns
the model weights, the device memory budget, an exclusive-access claim and a
FIFO execution queue drained by one dedicated executor thread. Any number of
ModelRunners, each on its own worker thread, share a Caller and submit filled
batches to it; every submission blocks until its own batch has been executed
and decoded.

Lifecycle is a two-state machine, RUNNING and TERMINATED. ``terminate()``
drains every admitted batch to completion and releases the model from the
device; ``restart()`` rebuilds it from the retained host copy of the weights
(or from new weights, for a hot model swap). Runners keep their Caller handle
and their buffers across a restart.
"""

import gc
import itertools
import logging
import queue
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

import torch

from basecall_lite.basecall.device import (
    DeviceRegistry,
    create_stream,
    default_registry,
    parse_device,
    stream_context,
)
from basecall_lite.basecall.memory import MemoryBudget, device_total_memory
from basecall_lite.basecall.stats import NamedStats, Timer
from basecall_lite.decode import DecodedChunk, Decoder, GreedyDecoder
from basecall_lite.errors import (
    ConfigError,
    InvalidInput,
    ResourceExhausted,
    Terminated,
    is_device_oom,
)
from basecall_lite.models.tx import (
    BatchShape,
    ModelConfig,
    build_model,
    estimate_workspace_bytes,
    parameter_bytes,
    validate_weight_shapes,
)

log = logging.getLogger("basecall_lite.caller")


class CallerState(Enum):
    """Lifecycle state of a Caller."""

    RUNNING = "running"
    TERMINATED = "terminated"


@dataclass
class _Batch:
    """A batch admitted to the execution queue."""

    input: torch.Tensor
    output: torch.Tensor
    num_chunks: int
    stream: Optional["torch.cuda.Stream"]
    future: Future
    enqueued_at_s: float = field(default_factory=time.perf_counter)


# Queue sentinel telling the executor to exit once everything before it is done.
_STOP = object()


class Caller:
    """Per-device model owner and execution serializer.

    Attributes:
        name: Identifier used in logs and thread names.
    """

    _ids = itertools.count()

    def __init__(
        self,
        model_config: ModelConfig,
        chunk_size: Optional[int] = None,
        batch_size: Optional[int] = None,
        device: str = "cpu",
        memory_limit_fraction: float = 1.0,
        exclusive_gpu_access: bool = False,
        *,
        decoder: Optional[Decoder] = None,
        state_dict: Optional[Dict[str, torch.Tensor]] = None,
        dtype: Optional[torch.dtype] = None,
        device_memory_bytes: Optional[int] = None,
        registry: Optional[DeviceRegistry] = None,
        seed: int = 0,
    ) -> None:
        """Initialize a Caller and load its model onto the device.

        Args:
            model_config: Shared model configuration.
            chunk_size: Samples per chunk. Defaults to the config's; rounded
                down to a multiple of the model's downsampling.
            batch_size: Chunks per batch. ``None`` uses the config's batch
                shapes (or default batch size), ``0`` picks the largest batch
                whose workspace fits in the memory budget.
            device: Device string, e.g. ``"cpu"`` or ``"cuda:0"``.
            memory_limit_fraction: Fraction of device memory this Caller may
                ever reserve, in (0, 1].
            exclusive_gpu_access: Claim sole use of the device.
            decoder: Decoder for raw model output. Defaults to GreedyDecoder.
            state_dict: Model weights. Defaults to a reproducible
                initialisation from ``seed``.
            dtype: Compute dtype. Defaults to float16 on CUDA, float32 elsewhere.
            device_memory_bytes: Override for the device's total memory.
            registry: Device claim registry. Defaults to the process registry.
            seed: Seed for weight initialisation when no weights are given.

        Raises:
            ConfigError: If the device, shapes, weights or budget are invalid,
                or the device is already claimed.
        """
        if not 0.0 < memory_limit_fraction <= 1.0:
            raise ConfigError(
                f"memory_limit_fraction must be in (0, 1], got {memory_limit_fraction}"
            )
        if chunk_size is not None and chunk_size <= 0:
            raise ConfigError(f"chunk_size must be positive, got {chunk_size}")
        if batch_size is not None and batch_size < 0:
            raise ConfigError(f"batch_size must be non-negative, got {batch_size}")

        self._id = next(Caller._ids)
        self._config = model_config
        self._device = parse_device(device)
        self.name = f"Caller_{self._id}"
        self._dtype = dtype or (torch.float16 if self._device.type == "cuda" else torch.float32)
        self._exclusive = exclusive_gpu_access
        self._memory_limit_fraction = memory_limit_fraction

        self._registry = registry if registry is not None else default_registry()
        self._registry.claim(self._device, self._id, exclusive_gpu_access)

        self._lock = threading.Lock()  # state, admission and buffers
        self._lifecycle_lock = threading.Lock()  # serializes terminate/restart/close
        self._stats_lock = threading.Lock()
        self._state = CallerState.TERMINATED
        self._closed = False
        self._model: Optional[torch.nn.Module] = None
        self._weights_reservation: Optional[int] = None
        self._workspace_reservation: Optional[int] = None
        self._buffer_reservations: Dict[int, int] = {}
        self._queue: "queue.Queue" = queue.Queue()
        self._executor: Optional[threading.Thread] = None
        self._stats: Dict[str, float] = {
            "batches": 0,
            "chunks": 0,
            "model_ms": 0.0,
            "decode_ms": 0.0,
            "queue_wait_ms": 0.0,
            "max_queue_depth": 0,
            "failed_batches": 0,
            "oom_errors": 0,
            "restarts": 0,
        }

        try:
            total = (
                device_memory_bytes
                if device_memory_bytes is not None
                else device_total_memory(self._device)
            )
            self._budget = MemoryBudget(int(total * memory_limit_fraction), str(self._device))

            if state_dict is None:
                state_dict = build_model(model_config, seed=seed).state_dict()
            self._host_state_dict = self._host_copy(state_dict)

            try:
                self._load_model()
            except ResourceExhausted as e:
                raise ConfigError(
                    f"Model '{model_config.name}' does not fit in the memory budget of "
                    f"{self._device}: {e}"
                ) from e

            self._batch_dims = self._resolve_batch_dims(chunk_size, batch_size)
            self._reserve_workspace()
            self._decoder = decoder if decoder is not None else GreedyDecoder(model_config)
        except BaseException:
            self._model = None
            self._registry.release(self._device, self._id)
            raise

        self._start_executor()
        log.info(
            f"{self.name} ready on {self._device}: model={model_config.name} "
            f"shapes={[(s.batch_size, s.chunk_size) for s in self._batch_dims]} "
            f"budget={self._budget.total_bytes} bytes exclusive={exclusive_gpu_access}"
        )

    # ── construction helpers ─────────────────────────────────────────────────

    def _host_copy(self, state_dict: Dict[str, torch.Tensor]) -> Dict[str, torch.Tensor]:
        validate_weight_shapes(state_dict, self._config)
        return {k: v.detach().to("cpu", copy=True) for k, v in state_dict.items()}

    def _load_model(self) -> None:
        """Build the model from the host weights and move it to the device."""
        model = build_model(self._config, self._host_state_dict).to(dtype=self._dtype)
        reservation = self._budget.reserve(parameter_bytes(model), "weights")
        try:
            self._model = model.to(self._device)
        except Exception as e:
            self._budget.release(reservation)
            if is_device_oom(e):
                raise ResourceExhausted(f"Out of memory loading weights on {self._device}") from e
            raise
        self._weights_reservation = reservation

    def _unload_model(self) -> None:
        """Release the model from the device and the budget."""
        self._model = None
        if self._weights_reservation is not None:
            self._budget.release(self._weights_reservation)
            self._weights_reservation = None
        gc.collect()
        if self._device.type == "cuda":
            torch.cuda.empty_cache()

    def _adjust_chunk_size(self, chunk_size: int) -> int:
        granularity = self._config.conv_stride
        adjusted = (chunk_size // granularity) * granularity
        if adjusted <= 0:
            raise ConfigError(
                f"chunk_size {chunk_size} on {self._device} is smaller than the model "
                f"downsampling ({granularity})"
            )
        if adjusted != chunk_size:
            log.warning(
                f"Adjusted chunk size {chunk_size} to {adjusted} to match model stride "
                f"{granularity}"
            )
        return adjusted

    def _io_bytes(self, shape: BatchShape) -> int:
        itemsize = torch.empty((), dtype=self._dtype).element_size()
        input_elems = shape.batch_size * self._config.num_features * shape.chunk_size
        output_elems = (
            shape.batch_size
            * self._config.output_length(shape.chunk_size)
            * self._config.outsize
        )
        return itemsize * (input_elems + output_elems)

    def _auto_batch_size(self, chunk_size: int) -> int:
        """Largest batch size whose workspace and buffers fit the free budget."""
        granularity = self._config.batch_granularity
        free = self._budget.free_bytes
        for candidate in range(self._config.max_batch_size, 0, -granularity):
            candidate -= candidate % granularity
            if candidate <= 0:
                break
            shape = BatchShape(candidate, chunk_size)
            needed = estimate_workspace_bytes(self._config, shape, self._dtype) + self._io_bytes(shape)
            if needed <= free:
                log.info(f"Auto batch size for {self._device}: {candidate} (chunk size {chunk_size})")
                return candidate
        raise ConfigError(
            f"No batch size fits in the memory budget of {self._device} "
            f"({free} bytes free) for chunk size {chunk_size}"
        )

    def _resolve_batch_dims(
        self, chunk_size: Optional[int], batch_size: Optional[int]
    ) -> List[BatchShape]:
        if chunk_size is None and batch_size is None and self._config.batch_shapes:
            return list(self._config.batch_shapes)

        chunk = self._adjust_chunk_size(chunk_size or self._config.chunk_size)
        if batch_size is None:
            batch_size = self._config.batch_size
        if batch_size == 0:
            batch_size = self._auto_batch_size(chunk)
        return [BatchShape(batch_size, chunk)]

    def _reserve_workspace(self) -> None:
        # Batches execute one at a time, so one workspace of the largest shape suffices.
        workspace = max(
            estimate_workspace_bytes(self._config, shape, self._dtype) for shape in self._batch_dims
        )
        try:
            self._workspace_reservation = self._budget.reserve(workspace, "workspace")
        except ResourceExhausted as e:
            largest = max(self._batch_dims, key=lambda s: s.batch_size * s.chunk_size)
            raise ConfigError(
                f"Batch shape ({largest.batch_size}, {largest.chunk_size}) does not fit in the "
                f"memory budget of {self._device}: {e}"
            ) from e

    # ── accessors ────────────────────────────────────────────────────────────

    @property
    def config(self) -> ModelConfig:
        return self._config

    @property
    def device(self) -> torch.device:
        return self._device

    @property
    def dtype(self) -> torch.dtype:
        return self._dtype

    @property
    def batch_dims(self) -> List[BatchShape]:
        """Supported (batch_size, chunk_size) shapes, indexed by batch_dims_idx."""
        return list(self._batch_dims)

    @property
    def budget(self) -> MemoryBudget:
        return self._budget

    @property
    def decoder(self) -> Decoder:
        return self._decoder

    @property
    def exclusive_gpu_access(self) -> bool:
        return self._exclusive

    @property
    def memory_limit_fraction(self) -> float:
        return self._memory_limit_fraction

    @property
    def state(self) -> CallerState:
        with self._lock:
            return self._state

    @property
    def is_running(self) -> bool:
        return self.state is CallerState.RUNNING

    def create_stream(self) -> Optional["torch.cuda.Stream"]:
        """A new execution context for a Runner on this Caller's device."""
        return create_stream(self._device)

    # ── buffers ──────────────────────────────────────────────────────────────

    def _shape(self, batch_dims_idx: int) -> BatchShape:
        if not 0 <= batch_dims_idx < len(self._batch_dims):
            raise ConfigError(
                f"batch_dims_idx {batch_dims_idx} out of range; {self.name} supports "
                f"{len(self._batch_dims)} shape(s)"
            )
        return self._batch_dims[batch_dims_idx]

    def _allocate(self, size, tag: str) -> torch.Tensor:
        itemsize = torch.empty((), dtype=self._dtype).element_size()
        nbytes = itemsize
        for dim in size:
            nbytes *= dim
        reservation = self._budget.reserve(nbytes, tag)
        try:
            tensor = torch.zeros(size, dtype=self._dtype, device=self._device)
        except Exception as e:
            self._budget.release(reservation)
            if is_device_oom(e):
                raise ResourceExhausted(f"Out of memory allocating {tag} on {self._device}") from e
            raise
        with self._lock:
            self._buffer_reservations[tensor.data_ptr()] = reservation
        return tensor

    def create_input_buffer(self, batch_dims_idx: int = 0) -> torch.Tensor:
        """Allocate an input batch [batch_size, num_features, chunk_size].

        Raises:
            ResourceExhausted: If the memory budget is saturated.
            ConfigError: If ``batch_dims_idx`` is out of range.
        """
        shape = self._shape(batch_dims_idx)
        size = (shape.batch_size, self._config.num_features, shape.chunk_size)
        return self._allocate(size, f"input[{batch_dims_idx}]")

    def create_output_buffer(self, batch_dims_idx: int = 0) -> torch.Tensor:
        """Allocate an output batch [batch_size, chunk_size // stride, outsize].

        Raises:
            ResourceExhausted: If the memory budget is saturated.
            ConfigError: If ``batch_dims_idx`` is out of range.
        """
        shape = self._shape(batch_dims_idx)
        size = (
            shape.batch_size,
            self._config.output_length(shape.chunk_size),
            self._config.outsize,
        )
        return self._allocate(size, f"output[{batch_dims_idx}]")

    def release_buffer(self, tensor: torch.Tensor) -> None:
        """Return a buffer created by this Caller to the memory budget."""
        with self._lock:
            reservation = self._buffer_reservations.pop(tensor.data_ptr(), None)
        if reservation is not None:
            self._budget.release(reservation)

    # ── execution ────────────────────────────────────────────────────────────

    def _validate_batch(self, input: torch.Tensor, output: torch.Tensor, num_chunks: int) -> None:
        for shape in self._batch_dims:
            expected_in = (shape.batch_size, self._config.num_features, shape.chunk_size)
            expected_out = (
                shape.batch_size,
                self._config.output_length(shape.chunk_size),
                self._config.outsize,
            )
            if tuple(input.shape) == expected_in:
                if tuple(output.shape) != expected_out:
                    raise InvalidInput(
                        f"{self.name} on {self._device}: output shape {tuple(output.shape)} "
                        f"does not match {expected_out} for input shape {expected_in}"
                    )
                break
        else:
            raise InvalidInput(
                f"{self.name} on {self._device}: input shape {tuple(input.shape)} matches none "
                f"of the supported batch shapes {[(s.batch_size, s.chunk_size) for s in self._batch_dims]}"
            )

        if input.device != self._device or output.device != self._device:
            raise InvalidInput(
                f"{self.name}: buffers must live on {self._device}, got {input.device}/{output.device}"
            )
        if not 0 <= num_chunks <= input.shape[0]:
            raise InvalidInput(
                f"{self.name}: num_valid_chunks ({num_chunks}) must be in [0, {input.shape[0]}]"
            )

    def call_chunks(
        self,
        input: torch.Tensor,
        output: torch.Tensor,
        num_chunks: int,
        execution_context: Optional["torch.cuda.Stream"] = None,
    ) -> List[DecodedChunk]:
        """Execute and decode the first ``num_chunks`` rows of a filled batch.

        Blocks the calling thread until the batch has been executed by this
        Caller's executor and decoded.

        Args:
            input: Input batch created by ``create_input_buffer``.
            output: Matching output batch created by ``create_output_buffer``.
            num_chunks: Number of leading valid rows.
            execution_context: The submitting Runner's stream (None on CPU).

        Returns:
            Exactly ``num_chunks`` decoded chunks, in row order.

        Raises:
            Terminated: If the Caller has been terminated.
            InvalidInput: If buffer shapes or ``num_chunks`` are invalid.
            ResourceExhausted: If the device ran out of memory.
        """
        self._validate_batch(input, output, num_chunks)
        future: Future = Future()
        with self._lock:
            if self._state is not CallerState.RUNNING:
                raise Terminated(f"{self.name} on {self._device} has been terminated")
            if num_chunks == 0:
                return []
            self._queue.put(_Batch(input, output, num_chunks, execution_context, future))
            depth = self._queue.qsize()
        with self._stats_lock:
            self._stats["max_queue_depth"] = max(self._stats["max_queue_depth"], depth)
        return future.result()

    def _start_executor(self) -> None:
        self._queue = queue.Queue()
        self._executor = threading.Thread(
            target=self._run,
            args=(self._queue,),
            name=f"{self.name}-executor",
            daemon=True,
        )
        self._state = CallerState.RUNNING
        self._executor.start()

    def _run(self, work_queue: "queue.Queue") -> None:
        """Executor loop: drain the queue one batch at a time until the sentinel."""
        while True:
            batch = work_queue.get()
            if batch is _STOP:
                return
            if not batch.future.set_running_or_notify_cancel():
                continue
            try:
                result = self._execute(batch)
            except Exception as e:
                with self._stats_lock:
                    self._stats["failed_batches"] += 1
                if is_device_oom(e):
                    with self._stats_lock:
                        self._stats["oom_errors"] += 1
                    log.warning(
                        f"{self.name}: out of memory on {self._device} executing "
                        f"{batch.num_chunks} chunks"
                    )
                    error = ResourceExhausted(
                        f"Out of memory on {self._device} executing {batch.num_chunks} chunks"
                    )
                    error.__cause__ = e
                    batch.future.set_exception(error)
                else:
                    log.error(f"{self.name}: batch failed on {self._device}: {e}")
                    batch.future.set_exception(e)
            else:
                batch.future.set_result(result)

    def _execute(self, batch: _Batch) -> List[DecodedChunk]:
        started_s = time.perf_counter()
        num_chunks = batch.num_chunks

        with torch.inference_mode(), stream_context(batch.stream):
            with Timer() as model_timer:
                # Rows >= num_chunks are never read by the model.
                scores = self._model(batch.input[:num_chunks])
                batch.output[:num_chunks].copy_(scores)
            with Timer() as decode_timer:
                decoded = self._decoder.decode(batch.output, num_chunks)
            if batch.stream is not None:
                batch.stream.synchronize()

        if len(decoded) != num_chunks:
            raise RuntimeError(
                f"{self._decoder.name} decoder returned {len(decoded)} results for {num_chunks} chunks"
            )

        with self._stats_lock:
            self._stats["batches"] += 1
            self._stats["chunks"] += num_chunks
            self._stats["model_ms"] += model_timer.elapsed_ms
            self._stats["decode_ms"] += decode_timer.elapsed_ms
            self._stats["queue_wait_ms"] += (started_s - batch.enqueued_at_s) * 1000.0
        log.debug(
            f"{self.name}: {num_chunks} chunks model={model_timer.elapsed_ms:.2f}ms "
            f"decode={decode_timer.elapsed_ms:.2f}ms"
        )
        return decoded

    # ── lifecycle ────────────────────────────────────────────────────────────

    def terminate(self) -> None:
        """Stop accepting batches, finish admitted ones, release the model.

        Idempotent. Calls made after this return fail with Terminated.
        """
        with self._lifecycle_lock:
            with self._lock:
                if self._state is CallerState.TERMINATED:
                    return
                self._state = CallerState.TERMINATED
                # Everything admitted before this point is ahead of the sentinel.
                self._queue.put(_STOP)
                executor = self._executor
            executor.join()
            self._executor = None
            self._unload_model()
        log.info(f"{self.name} on {self._device} terminated")

    def restart(self, state_dict: Optional[Dict[str, torch.Tensor]] = None) -> None:
        """Reload the model and resume accepting batches.

        Args:
            state_dict: New weights for a hot model swap. Defaults to the
                weights the Caller was last running with.

        Raises:
            Terminated: If the Caller has been closed.
            ConfigError: If ``state_dict`` does not match the architecture.
            ResourceExhausted: If the weights no longer fit on the device.
        """
        with self._lifecycle_lock:
            if self._closed:
                raise Terminated(f"{self.name} on {self._device} has been closed")
            with self._lock:
                if self._state is CallerState.RUNNING:
                    log.debug(f"{self.name} already running; restart ignored")
                    return
            if state_dict is not None:
                self._host_state_dict = self._host_copy(state_dict)
            self._load_model()
            with self._lock:
                self._start_executor()
            with self._stats_lock:
                self._stats["restarts"] += 1
        log.info(f"{self.name} on {self._device} restarted")

    def close(self) -> None:
        """Terminate and release the workspace and the device claim."""
        self.terminate()
        with self._lifecycle_lock:
            if self._closed:
                return
            self._closed = True
            if self._workspace_reservation is not None:
                self._budget.release(self._workspace_reservation)
                self._workspace_reservation = None
            self._registry.release(self._device, self._id)
        log.info(f"{self.name} on {self._device} closed")

    def __enter__(self) -> "Caller":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ── stats ────────────────────────────────────────────────────────────────

    def sample_stats(self) -> NamedStats:
        """Point-in-time snapshot of this Caller's counters."""
        with self._stats_lock:
            stats: NamedStats = dict(self._stats)
        memory = self._budget.get_stats()
        stats["memory_total_bytes"] = memory["total"]
        stats["memory_used_bytes"] = memory["used"]
        stats["memory_utilization"] = memory["utilization"]
        stats["running"] = 1.0 if self.is_running else 0.0
        return stats

    def __repr__(self) -> str:
        return (
            f"Caller(name={self.name}, device={self._device}, model={self._config.name}, "
            f"shapes={[(s.batch_size, s.chunk_size) for s in self._batch_dims]}, "
            f"state={self.state.value})"
        )
