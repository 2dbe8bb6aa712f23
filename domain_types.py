"""
Domain type definitions for container order allocation.
"""
from __future__ import annotations

from datetime import date, datetime
from typing import List, Literal, Optional, TypedDict, NotRequired


ContainerStatus = Literal["pending", "in_transit", "arrived", "delayed", "delivered"]

CONTAINER_STATUSES: tuple[str, ...] = ("pending", "in_transit", "arrived", "delayed", "delivered")


class Container(TypedDict):
    id: str
    code: str
    eta: Optional[date]
    status: ContainerStatus


class CapacityEntry(TypedDict):
    container_id: str
    product_key: str
    total_quantity: int
    product_id: NotRequired[Optional[str]]


class LineItem(TypedDict):
    id: str
    order_id: str
    product_key: Optional[str]  # raw product name; normalized on use
    quantity: NotRequired[Optional[int]]
    product_id: NotRequired[Optional[str]]


class Order(TypedDict):
    id: str
    external_number: str
    created_at: datetime
    container_id: Optional[str]
    delivery_eta: Optional[date]
    line_items: List[LineItem]
