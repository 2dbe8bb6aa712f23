"""Exception types raised by the allocation core.

Per-order outcomes inside a batch (no capacity requirement, insufficient
stock, unavailable containers, failed writes, lock timeouts) are reported as
skip reasons, not raised. The classes below cover failures a caller has to
act on.
"""
from __future__ import annotations

from typing import Optional


class AllocationError(Exception):
    """Base class for allocation core errors."""


class OrderNotFoundError(AllocationError, LookupError):
    def __init__(self, order_id: str) -> None:
        super().__init__(f"Order not found: {order_id}")
        self.order_id = order_id


class ContainerNotFoundError(AllocationError, LookupError):
    def __init__(self, container_id: str) -> None:
        super().__init__(f"Container not found: {container_id}")
        self.container_id = container_id


class LedgerWriteError(AllocationError):
    """Persisting an order link (or removal) failed."""

    def __init__(self, message: str, order_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.order_id = order_id


class ConcurrentModificationError(AllocationError):
    """A container lock could not be acquired within the configured timeout."""

    def __init__(self, container_id: str, timeout: float) -> None:
        super().__init__(f"Container {container_id} is locked by another allocation (waited {timeout:.1f}s)")
        self.container_id = container_id
        self.timeout = timeout


class NothingToDisplaceError(AllocationError, ValueError):
    """The displacement advisor was asked about a container that fits its capacity."""
