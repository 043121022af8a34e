"""
Memory budget for a single compute device.

A Caller may reserve at most ``memory_limit_fraction`` of its device's memory
for its whole lifetime. The MemoryBudget is the ledger of that allowance:
model weights, per-batch workspace and every Runner buffer take a named
reservation, and any reservation that would exceed the budget is refused.

The budget supports:
- Named reservations and releases
- Memory statistics tracking
- Thread-safe operations
- ResourceExhausted when the budget is saturated
"""

import itertools
import os
import threading
from typing import Dict, Tuple

import torch

from basecall_lite.errors import ResourceExhausted


def device_total_memory(device: torch.device) -> int:
    """Total memory of ``device`` in bytes.

    CUDA devices report their own total memory; for the CPU the physical
    memory of the host is used.
    """
    if device.type == "cuda":
        _, total = torch.cuda.mem_get_info(device)
        return total
    return os.sysconf("SC_PAGE_SIZE") * os.sysconf("SC_PHYS_PAGES")


class MemoryBudget:
    """Byte budget with named reservations.

    Attributes:
        total_bytes: Size of the budget in bytes. Fixed for the lifetime of
            the budget.
        device: Device the budget describes (diagnostics only).
    """

    def __init__(self, total_bytes: int, device: str = "cpu") -> None:
        """Initialize MemoryBudget.

        Args:
            total_bytes: Size of the budget in bytes.
            device: Device the budget describes.
        """
        if total_bytes < 0:
            raise ValueError(f"total_bytes must be non-negative, got {total_bytes}")
        self.total_bytes = int(total_bytes)
        self.device = device

        # reservation id -> (tag, nbytes)
        self.reservations: Dict[int, Tuple[str, int]] = {}
        self._used = 0
        self._ids = itertools.count()

        self.lock = threading.Lock()

    def reserve(self, nbytes: int, tag: str = "") -> int:
        """Reserve ``nbytes`` from the budget.

        Args:
            nbytes: Number of bytes to reserve.
            tag: Label used in diagnostics.

        Returns:
            Reservation id to pass to ``release``.

        Raises:
            ResourceExhausted: If the reservation does not fit.
        """
        with self.lock:
            if self._used + nbytes > self.total_bytes:
                raise ResourceExhausted(
                    f"Memory budget on {self.device} exhausted: cannot reserve "
                    f"{nbytes} bytes for '{tag}' ({self._used}/{self.total_bytes} bytes in use)"
                )
            reservation_id = next(self._ids)
            self.reservations[reservation_id] = (tag, int(nbytes))
            self._used += int(nbytes)
            return reservation_id

    def release(self, reservation_id: int) -> None:
        """Release a reservation. Unknown ids are ignored."""
        with self.lock:
            entry = self.reservations.pop(reservation_id, None)
            if entry is not None:
                self._used -= entry[1]

    def fits(self, nbytes: int) -> bool:
        """Whether ``nbytes`` could currently be reserved."""
        with self.lock:
            return self._used + nbytes <= self.total_bytes

    @property
    def used_bytes(self) -> int:
        with self.lock:
            return self._used

    @property
    def free_bytes(self) -> int:
        with self.lock:
            return self.total_bytes - self._used

    def get_stats(self) -> Dict[str, float]:
        """Get budget statistics.

        Returns:
            Dictionary with keys:
            - total: Budget size in bytes
            - used: Reserved bytes
            - free: Unreserved bytes
            - utilization: Fraction of the budget in use (0.0 to 1.0)
            - reservations: Number of live reservations
        """
        with self.lock:
            used = self._used
            utilization = used / self.total_bytes if self.total_bytes > 0 else 0.0
            return {
                "total": self.total_bytes,
                "used": used,
                "free": self.total_bytes - used,
                "utilization": utilization,
                "reservations": len(self.reservations),
            }

    def reset(self) -> None:
        """Drop all reservations."""
        with self.lock:
            self.reservations.clear()
            self._used = 0
