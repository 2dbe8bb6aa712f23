"""
SQLAlchemy-backed ledger.

Tables mirror the tracker's relational layout (containers, container_products,
orders, order_items). Orders carry an insertion sequence number used as the
stable FIFO tie-break when two orders share a ``created_at``.

Container locks hold across processes: ``container_lock`` opens a
transaction, locks the container row (``SELECT ... FOR UPDATE``; on SQLite,
which ignores row locks, a no-op ``UPDATE`` takes the database write lock)
and binds that session to the calling thread. Every read and write issued
while the lock is held runs in the same transaction, so the in-lock capacity
re-read and the link write commit together, and a second process placing
into the same container waits for the commit.
"""
from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import date, datetime
from typing import Iterable, Iterator, List, Optional, Union

from sqlalchemy import Date, DateTime, ForeignKey, Integer, String, create_engine, func, select, text, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, relationship, selectinload, sessionmaker

from domain_types import CapacityEntry, Container, LineItem, Order
from allocation_errors import ConcurrentModificationError, ContainerNotFoundError, LedgerWriteError, OrderNotFoundError
from ledger import Ledger

logger = logging.getLogger(__name__)

__all__ = ["Base", "ContainerRow", "CapacityRow", "OrderRow", "LineItemRow", "SqlLedger"]


class Base(DeclarativeBase):
    pass


class ContainerRow(Base):
    __tablename__ = "containers"
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    code: Mapped[str] = mapped_column(String(128), nullable=False)
    eta: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")


class CapacityRow(Base):
    __tablename__ = "container_products"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    container_id: Mapped[str] = mapped_column(ForeignKey("containers.id"), nullable=False, index=True)
    product_key: Mapped[str] = mapped_column(String(255), nullable=False)
    total_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    product_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)


class OrderRow(Base):
    __tablename__ = "orders"
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    seq: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    external_number: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    container_id: Mapped[Optional[str]] = mapped_column(ForeignKey("containers.id"), nullable=True, index=True)
    delivery_eta: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

    line_items: Mapped[List["LineItemRow"]] = relationship(
        back_populates="order", cascade="all, delete-orphan", order_by="LineItemRow.position"
    )


class LineItemRow(Base):
    __tablename__ = "order_items"
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.id"), nullable=False, index=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    product_key: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    quantity: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    product_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    order: Mapped[OrderRow] = relationship(back_populates="line_items")


def _container(row: ContainerRow) -> Container:
    return {"id": row.id, "code": row.code, "eta": row.eta, "status": row.status}  # type: ignore[typeddict-item]


def _capacity(row: CapacityRow) -> CapacityEntry:
    return {
        "container_id": row.container_id,
        "product_key": row.product_key,
        "total_quantity": row.total_quantity,
        "product_id": row.product_id,
    }


def _line_item(row: LineItemRow) -> LineItem:
    return {
        "id": row.id,
        "order_id": row.order_id,
        "product_key": row.product_key,
        "quantity": row.quantity,
        "product_id": row.product_id,
    }


def _order(row: OrderRow) -> Order:
    return {
        "id": row.id,
        "external_number": row.external_number,
        "created_at": row.created_at,
        "container_id": row.container_id,
        "delivery_eta": row.delivery_eta,
        "line_items": [_line_item(it) for it in row.line_items],
    }


class SqlLedger(Ledger):
    """Ledger persisted through SQLAlchemy (any dialect; SQLite in tests)."""

    def __init__(self, engine: Union[Engine, str], create_schema: bool = True) -> None:
        super().__init__()
        self.engine = create_engine(engine) if isinstance(engine, str) else engine
        if create_schema:
            Base.metadata.create_all(self.engine)
        self._sessions = sessionmaker(self.engine, expire_on_commit=False)
        self._local = threading.local()

    # --- sessions and locking ---------------------------------------------
    def _active(self) -> Optional[Session]:
        return getattr(self._local, "session", None)

    @contextmanager
    def _read(self) -> Iterator[Session]:
        active = self._active()
        if active is not None:
            yield active
            return
        with self._sessions() as s:
            yield s

    @contextmanager
    def _write(self) -> Iterator[Session]:
        active = self._active()
        if active is not None:
            yield active
            active.flush()
            return
        with self._sessions.begin() as s:
            yield s

    def _lock_container_row(self, s: Session, container_id: str, timeout: float) -> None:
        dialect = self.engine.dialect.name
        wait_ms = max(1, int(timeout * 1000))
        previous_busy = None
        try:
            if dialect == "sqlite":
                previous_busy = s.execute(text("PRAGMA busy_timeout")).scalar()
                s.execute(text(f"PRAGMA busy_timeout = {wait_ms}"))
                locked = s.execute(
                    update(ContainerRow).where(ContainerRow.id == container_id).values(status=ContainerRow.status)
                ).rowcount
            else:
                if dialect == "postgresql":
                    s.execute(text(f"SET LOCAL lock_timeout = '{wait_ms}ms'"))
                locked = len(s.scalars(select(ContainerRow).where(ContainerRow.id == container_id).with_for_update()).all())
        except OperationalError as exc:
            logger.warning("Container %s row lock not acquired within %.1fs: %s", container_id, timeout, exc.orig)
            raise ConcurrentModificationError(container_id, timeout) from exc
        finally:
            if previous_busy is not None:
                s.execute(text(f"PRAGMA busy_timeout = {int(previous_busy)}"))
        if not locked:
            raise ContainerNotFoundError(container_id)

    @contextmanager
    def container_lock(self, container_id: str, timeout: float) -> Iterator[None]:
        """In-process lock plus a database row lock on the container.

        Raises:
            ConcurrentModificationError: If either lock is not acquired within ``timeout``.
            ContainerNotFoundError: If the container row does not exist.
        """
        with self.locks.hold(container_id, timeout):
            outer = self._active()
            if outer is not None:
                self._lock_container_row(outer, container_id, timeout)
                yield
                return
            with self._sessions() as s:
                with s.begin():
                    self._lock_container_row(s, container_id, timeout)
                    self._local.session = s
                    try:
                        yield
                    finally:
                        self._local.session = None

    def _orders_query(self):
        return select(OrderRow).options(selectinload(OrderRow.line_items)).order_by(OrderRow.seq)

    # --- reads -------------------------------------------------------------
    def containers(self) -> List[Container]:
        with self._read() as s:
            return [_container(r) for r in s.scalars(select(ContainerRow).order_by(ContainerRow.id))]

    def capacity_entries(self) -> List[CapacityEntry]:
        with self._read() as s:
            return [_capacity(r) for r in s.scalars(select(CapacityRow).order_by(CapacityRow.id))]

    def capacity_for(self, container_id: str) -> List[CapacityEntry]:
        with self._read() as s:
            q = select(CapacityRow).where(CapacityRow.container_id == container_id).order_by(CapacityRow.id)
            return [_capacity(r) for r in s.scalars(q)]

    def orders(self) -> List[Order]:
        with self._read() as s:
            return [_order(r) for r in s.scalars(self._orders_query())]

    def linked_orders(self, container_id: str) -> List[Order]:
        with self._read() as s:
            q = self._orders_query().where(OrderRow.container_id == container_id)
            return [_order(r) for r in s.scalars(q)]

    def get_order(self, order_id: str) -> Order:
        with self._read() as s:
            row = s.scalars(self._orders_query().where(OrderRow.id == order_id)).first()
            if row is None:
                raise OrderNotFoundError(order_id)
            return _order(row)

    def find_order_by_number(self, external_number: str) -> Order:
        with self._read() as s:
            row = s.scalars(self._orders_query().where(OrderRow.external_number == external_number)).first()
            if row is None:
                raise OrderNotFoundError(external_number)
            return _order(row)

    def get_container(self, container_id: str) -> Container:
        with self._read() as s:
            row = s.get(ContainerRow, container_id)
            if row is None:
                raise ContainerNotFoundError(container_id)
            return _container(row)

    # --- writes owned by the core -------------------------------------------
    def set_order_link(self, order_id: str, container_id: Optional[str], delivery_eta: Optional[date]) -> None:
        try:
            with self._write() as s:
                row = s.get(OrderRow, order_id, with_for_update=True)
                if row is None:
                    raise LedgerWriteError(f"Cannot link missing order {order_id}", order_id=order_id)
                row.container_id = container_id
                row.delivery_eta = delivery_eta
        except SQLAlchemyError as exc:
            raise LedgerWriteError(f"Writing link for order {order_id} failed: {exc}", order_id=order_id) from exc

    def delete_order(self, order_id: str) -> Order:
        try:
            with self._write() as s:
                row = s.scalars(self._orders_query().where(OrderRow.id == order_id)).first()
                if row is None:
                    raise OrderNotFoundError(order_id)
                removed = _order(row)
                s.delete(row)
            return removed
        except SQLAlchemyError as exc:
            raise LedgerWriteError(f"Deleting order {order_id} failed: {exc}", order_id=order_id) from exc

    def remove_line_items(self, order_id: str, line_item_ids: Iterable[str]) -> Order:
        drop = set(line_item_ids)
        try:
            with self._write() as s:
                row = s.scalars(self._orders_query().where(OrderRow.id == order_id)).first()
                if row is None:
                    raise OrderNotFoundError(order_id)
                for item in list(row.line_items):
                    if item.id in drop:
                        row.line_items.remove(item)
                s.flush()
                return _order(row)
        except SQLAlchemyError as exc:
            raise LedgerWriteError(f"Removing items of order {order_id} failed: {exc}", order_id=order_id) from exc

    # --- writes owned by external collaborators -----------------------------
    def add_container(self, container: Container) -> None:
        with self._write() as s:
            s.merge(ContainerRow(
                id=container["id"],
                code=container["code"],
                eta=container.get("eta"),
                status=container.get("status", "pending"),
            ))

    def add_capacity_entry(self, entry: CapacityEntry) -> None:
        with self._write() as s:
            s.add(CapacityRow(
                container_id=entry["container_id"],
                product_key=entry["product_key"],
                total_quantity=int(entry.get("total_quantity") or 0),
                product_id=entry.get("product_id"),
            ))

    def add_order(self, order: Order) -> None:
        with self._write() as s:
            if s.get(OrderRow, order["id"]) is not None:
                raise ValueError(f"Duplicate order id: {order['id']}")
            next_seq = (s.scalar(select(func.max(OrderRow.seq))) or 0) + 1
            row = OrderRow(
                id=order["id"],
                seq=next_seq,
                external_number=order["external_number"],
                created_at=order["created_at"],
                container_id=order.get("container_id"),
                delivery_eta=order.get("delivery_eta"),
            )
            for pos, it in enumerate(order.get("line_items") or []):
                row.line_items.append(LineItemRow(
                    id=str(it["id"]),
                    position=pos,
                    product_key=it.get("product_key"),
                    quantity=it.get("quantity"),
                    product_id=it.get("product_id"),
                ))
            s.add(row)
