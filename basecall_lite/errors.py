"""
Error taxonomy for the basecall engine.

Provides:
- ConfigError: invalid model/device/shape at construction
- ResourceExhausted: memory budget saturated or device allocation failed
- Terminated: call issued after the Caller was terminated
- InvalidInput: shape/length/index mismatch on a call
"""

import torch


class BasecallError(Exception):
    """Base class for all engine errors."""


class ConfigError(BasecallError, ValueError):
    """Invalid model, device or batch shape at construction time."""


class ResourceExhausted(BasecallError, RuntimeError):
    """Memory budget saturated or device allocation failure.

    The surrounding pipeline may retry with a smaller batch.
    """


class Terminated(BasecallError, RuntimeError):
    """Call issued after ``terminate()``. An expected shutdown signal."""


class InvalidInput(BasecallError, ValueError):
    """Shape, length or slot index mismatch. A programmer error."""


def is_device_oom(e: BaseException) -> bool:
    """
    Check if an exception is a device out-of-memory error.

    Args:
        e: Exception to inspect

    Returns:
        True if the error is a torch allocator OOM (CUDA or MPS)
    """
    oom_type = getattr(torch.cuda, "OutOfMemoryError", None)
    if oom_type is not None and isinstance(e, oom_type):
        return True
    msg = repr(e).lower()
    return "out of memory" in msg and ("cuda" in msg or "mps" in msg)
