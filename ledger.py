"""
Ledger: persisted containers, capacity entries, orders and order links.

The allocation core reads everything through a ``Ledger`` and writes only
``container_id`` / ``delivery_eta`` of orders (plus the deletions and line
item removals requested by removal triggers). Containers and capacity
entries are owned by external collaborators; the ``add_*`` methods exist for
loading snapshots and seeding tests.

``ContainerLocks`` provides the per-container mutual exclusion that guards
every read -> decide -> write placement sequence.
"""
from __future__ import annotations

import abc
import copy
import logging
import threading
from contextlib import contextmanager
from datetime import date
from typing import Dict, Iterable, Iterator, List, Optional

from domain_types import CapacityEntry, Container, LineItem, Order
from allocation_errors import (
    ConcurrentModificationError,
    ContainerNotFoundError,
    LedgerWriteError,
    OrderNotFoundError,
)

logger = logging.getLogger(__name__)

__all__ = ["ContainerLocks", "Ledger", "MemoryLedger"]


class ContainerLocks:
    """One lock per container id, created on first use.

    Holding a container's lock serializes placements into that container only;
    allocations into other containers proceed in parallel.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def _lock_for(self, container_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(container_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[container_id] = lock
            return lock

    @contextmanager
    def hold(self, container_id: str, timeout: float) -> Iterator[None]:
        lock = self._lock_for(container_id)
        if not lock.acquire(timeout=timeout):
            raise ConcurrentModificationError(container_id, timeout)
        try:
            yield
        finally:
            lock.release()


class Ledger(abc.ABC):
    """Storage interface consumed by the allocation core."""

    def __init__(self) -> None:
        self.locks = ContainerLocks()

    def container_lock(self, container_id: str, timeout: float):
        return self.locks.hold(container_id, timeout)

    # --- reads -------------------------------------------------------------
    @abc.abstractmethod
    def containers(self) -> List[Container]:
        ...

    @abc.abstractmethod
    def capacity_entries(self) -> List[CapacityEntry]:
        ...

    @abc.abstractmethod
    def orders(self) -> List[Order]:
        """All orders in arrival order (the stable FIFO tie-break)."""

    @abc.abstractmethod
    def get_order(self, order_id: str) -> Order:
        ...

    @abc.abstractmethod
    def find_order_by_number(self, external_number: str) -> Order:
        ...

    def get_container(self, container_id: str) -> Container:
        for c in self.containers():
            if c["id"] == container_id:
                return c
        raise ContainerNotFoundError(container_id)

    def linked_orders(self, container_id: str) -> List[Order]:
        return [o for o in self.orders() if o.get("container_id") == container_id]

    def capacity_for(self, container_id: str) -> List[CapacityEntry]:
        return [e for e in self.capacity_entries() if e["container_id"] == container_id]

    # --- writes owned by the core -------------------------------------------
    @abc.abstractmethod
    def set_order_link(self, order_id: str, container_id: Optional[str], delivery_eta: Optional[date]) -> None:
        ...

    @abc.abstractmethod
    def delete_order(self, order_id: str) -> Order:
        """Remove the order and its line items; returns the removed order."""

    @abc.abstractmethod
    def remove_line_items(self, order_id: str, line_item_ids: Iterable[str]) -> Order:
        """Drop the given line items; returns the updated order."""

    # --- writes owned by external collaborators -----------------------------
    @abc.abstractmethod
    def add_container(self, container: Container) -> None:
        ...

    @abc.abstractmethod
    def add_capacity_entry(self, entry: CapacityEntry) -> None:
        ...

    @abc.abstractmethod
    def add_order(self, order: Order) -> None:
        ...


class MemoryLedger(Ledger):
    """In-process ledger; the backing store for JSON snapshots and tests.

    Every read returns deep copies so callers can never mutate ledger state
    behind the lock discipline.
    """

    def __init__(
        self,
        containers: Iterable[Container] = (),
        capacity_entries: Iterable[CapacityEntry] = (),
        orders: Iterable[Order] = (),
    ) -> None:
        super().__init__()
        self._data_lock = threading.RLock()
        self._containers: Dict[str, Container] = {}
        self._capacity: List[CapacityEntry] = []
        self._orders: Dict[str, Order] = {}
        for c in containers:
            self.add_container(c)
        for e in capacity_entries:
            self.add_capacity_entry(e)
        for o in orders:
            self.add_order(o)

    def containers(self) -> List[Container]:
        with self._data_lock:
            return copy.deepcopy(list(self._containers.values()))

    def capacity_entries(self) -> List[CapacityEntry]:
        with self._data_lock:
            return copy.deepcopy(self._capacity)

    def orders(self) -> List[Order]:
        with self._data_lock:
            return copy.deepcopy(list(self._orders.values()))

    def get_order(self, order_id: str) -> Order:
        with self._data_lock:
            order = self._orders.get(order_id)
            if order is None:
                raise OrderNotFoundError(order_id)
            return copy.deepcopy(order)

    def find_order_by_number(self, external_number: str) -> Order:
        with self._data_lock:
            for order in self._orders.values():
                if order["external_number"] == external_number:
                    return copy.deepcopy(order)
        raise OrderNotFoundError(external_number)

    def linked_orders(self, container_id: str) -> List[Order]:
        with self._data_lock:
            return copy.deepcopy([o for o in self._orders.values() if o.get("container_id") == container_id])

    def capacity_for(self, container_id: str) -> List[CapacityEntry]:
        with self._data_lock:
            return copy.deepcopy([e for e in self._capacity if e["container_id"] == container_id])

    def get_container(self, container_id: str) -> Container:
        with self._data_lock:
            c = self._containers.get(container_id)
            if c is None:
                raise ContainerNotFoundError(container_id)
            return copy.deepcopy(c)

    def set_order_link(self, order_id: str, container_id: Optional[str], delivery_eta: Optional[date]) -> None:
        with self._data_lock:
            order = self._orders.get(order_id)
            if order is None:
                raise LedgerWriteError(f"Cannot link missing order {order_id}", order_id=order_id)
            order["container_id"] = container_id
            order["delivery_eta"] = delivery_eta

    def delete_order(self, order_id: str) -> Order:
        with self._data_lock:
            order = self._orders.pop(order_id, None)
            if order is None:
                raise OrderNotFoundError(order_id)
            return order

    def remove_line_items(self, order_id: str, line_item_ids: Iterable[str]) -> Order:
        drop = set(line_item_ids)
        with self._data_lock:
            order = self._orders.get(order_id)
            if order is None:
                raise OrderNotFoundError(order_id)
            order["line_items"] = [it for it in order["line_items"] if it["id"] not in drop]
            return copy.deepcopy(order)

    def add_container(self, container: Container) -> None:
        with self._data_lock:
            self._containers[container["id"]] = copy.deepcopy(container)

    def add_capacity_entry(self, entry: CapacityEntry) -> None:
        with self._data_lock:
            self._capacity.append(copy.deepcopy(entry))

    def add_order(self, order: Order) -> None:
        with self._data_lock:
            if order["id"] in self._orders:
                raise ValueError(f"Duplicate order id: {order['id']}")
            stored = copy.deepcopy(order)
            stored.setdefault("container_id", None)
            stored.setdefault("delivery_eta", None)
            items: List[LineItem] = stored.setdefault("line_items", [])
            for it in items:
                it.setdefault("order_id", stored["id"])
            self._orders[stored["id"]] = stored
