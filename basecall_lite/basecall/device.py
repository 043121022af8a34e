"""
Device parsing, exclusive-access claims and stream helpers.

A DeviceRegistry records which Callers use which physical device. A Caller
asking for exclusive access fails fast if any other Caller already uses the
device, and no Caller can join a device that is exclusively owned.
"""

import contextlib
import logging
import threading
from typing import Dict, Optional

import torch

from basecall_lite.errors import ConfigError

log = logging.getLogger("basecall_lite.device")


def parse_device(device: str) -> torch.device:
    """Parse and validate a device string.

    ``"cuda"`` is normalised to ``"cuda:0"`` so that claims are keyed by the
    physical device.

    Raises:
        ConfigError: If the string is malformed or the device is unavailable.
    """
    try:
        parsed = torch.device(device)
    except (RuntimeError, TypeError) as e:
        raise ConfigError(f"Invalid device '{device}': {e}") from e

    if parsed.type == "cpu":
        return torch.device("cpu")

    if parsed.type == "cuda":
        if not torch.cuda.is_available():
            raise ConfigError(f"Device '{device}' requested but CUDA is not available")
        index = parsed.index if parsed.index is not None else 0
        if index >= torch.cuda.device_count():
            raise ConfigError(
                f"Device '{device}' requested but only {torch.cuda.device_count()} CUDA device(s) exist"
            )
        return torch.device("cuda", index)

    if parsed.type == "mps":
        if not (hasattr(torch.backends, "mps") and torch.backends.mps.is_available()):
            raise ConfigError(f"Device '{device}' requested but MPS is not available")
        return torch.device("mps")

    raise ConfigError(f"Unsupported device type '{parsed.type}'")


def create_stream(device: torch.device) -> Optional["torch.cuda.Stream"]:
    """A fresh execution stream for ``device``, or None where streams do not apply."""
    if device.type == "cuda":
        return torch.cuda.Stream(device=device)
    return None


def stream_context(stream: Optional["torch.cuda.Stream"]):
    """Context manager making ``stream`` current on the calling thread."""
    if stream is None:
        return contextlib.nullcontext()
    return torch.cuda.stream(stream)


class DeviceRegistry:
    """Process-wide record of device claims.

    Attributes:
        claims: device key -> {owner id: exclusive flag}
    """

    def __init__(self) -> None:
        self.claims: Dict[str, Dict[int, bool]] = {}
        self.lock = threading.Lock()

    def claim(self, device: torch.device, owner_id: int, exclusive: bool) -> None:
        """Register ``owner_id`` as a user of ``device``.

        Raises:
            ConfigError: If the claim conflicts with an existing one.
        """
        key = str(device)
        with self.lock:
            owners = self.claims.setdefault(key, {})
            if any(owners.values()):
                raise ConfigError(f"Device {key} is exclusively owned by another caller")
            if exclusive and owners:
                raise ConfigError(
                    f"Exclusive access to {key} requested but it is already used by "
                    f"{len(owners)} caller(s)"
                )
            owners[owner_id] = exclusive
        log.debug(f"Claimed {key} for caller {owner_id} (exclusive={exclusive})")

    def release(self, device: torch.device, owner_id: int) -> None:
        key = str(device)
        with self.lock:
            owners = self.claims.get(key)
            if owners is None:
                return
            owners.pop(owner_id, None)
            if not owners:
                del self.claims[key]

    def owners(self, device: torch.device) -> Dict[int, bool]:
        with self.lock:
            return dict(self.claims.get(str(device), {}))


_DEFAULT_REGISTRY = DeviceRegistry()


def default_registry() -> DeviceRegistry:
    """The registry shared by Callers that are not given one explicitly."""
    return _DEFAULT_REGISTRY
