"""
Purpose: Domain models for the Orders capability.
What it does:
- Defines core data structures:
- Order (id, lifecycle status, routing fields, commercial fields, opaque payload)
- Quote (one pharmacy's priced answer to one order)
- PrescriptionItem (a single line of a prescription, with optional pricing)

Defines enums/constants:
- OrderStatus = PENDING_ANALYSIS | AWAITING_QUOTES | PREPARING | READY_FOR_PICKUP
                | OUT_FOR_DELIVERY | DELIVERED | CANCELLED
- RoutingMode = round-robin | broadcast
- ItemAvailability = AVAILABLE | UNAVAILABLE | GENERIC_AVAILABLE | PENDING

Rule: No store calls, no routing logic. Models only.
"""
from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple

ORDER_ID_PREFIX = "CMD-"


class OrderStatus(str, Enum):
    PENDING_ANALYSIS = "PENDING_ANALYSIS"
    AWAITING_QUOTES = "AWAITING_QUOTES"
    PREPARING = "PREPARING"
    READY_FOR_PICKUP = "READY_FOR_PICKUP"
    OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class RoutingMode(str, Enum):
    """
    Dispatch strategy. Snapshotted onto every order at creation time.
    """
    ROUND_ROBIN = "round-robin"
    BROADCAST = "broadcast"


class ItemAvailability(str, Enum):
    AVAILABLE = "AVAILABLE"
    UNAVAILABLE = "UNAVAILABLE"
    GENERIC_AVAILABLE = "GENERIC_AVAILABLE"
    PENDING = "PENDING"


@dataclass(frozen=True)
class PrescriptionItem:
    """
    One line of a prescription. Pricing fields are only filled in by a pharmacy quote.
    """
    name: str
    dosage: str = ""
    quantity: int = 1
    is_psychotropic: bool = False
    is_cold_chain: bool = False
    availability: ItemAvailability = ItemAvailability.PENDING
    price: Optional[float] = None
    is_generic: bool = False
    packaging: Optional[str] = None

    @property
    def is_billable(self) -> bool:
        return self.availability != ItemAvailability.UNAVAILABLE


@dataclass(frozen=True)
class Quote:
    """
    Immutable once appended to an order. At most one per pharmacy per order.
    """
    pharmacy_id: str
    pharmacy_name: str
    items: Tuple[PrescriptionItem, ...]
    total_amount: float
    delivery_fee: float
    estimated_time: int  # minutes


@dataclass(frozen=True)
class Order:
    """
    Represents a single prescription order as persisted in the Order Store.

    Routing fields are a closed set; anything the engine never inspects
    (patient name, address, prescription image...) travels in `payload`.
    `revision` is the store's concurrency token and takes no part in equality.
    """

    id: str
    status: OrderStatus
    routing_mode: RoutingMode

    # routing
    targeted_pharmacy_ids: Tuple[str, ...] = ()
    refused_by_pharmacy_ids: Tuple[str, ...] = ()
    accepted_by_pharmacy_ids: Tuple[str, ...] = ()
    deadline: Optional[datetime] = None

    # commercial
    pharmacy_id: Optional[str] = None
    pharmacy_name: Optional[str] = None
    quotes: Tuple[Quote, ...] = ()
    items: Tuple[PrescriptionItem, ...] = ()
    total_amount: Optional[float] = None
    delivery_fee: Optional[float] = None

    payload: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    revision: Optional[str] = field(default=None, compare=False)

    @property
    def is_locked(self) -> bool:
        return self.pharmacy_id is not None

    @property
    def is_open_for_routing(self) -> bool:
        return self.status == OrderStatus.AWAITING_QUOTES and not self.is_locked

    @property
    def current_target(self) -> Optional[str]:
        return self.targeted_pharmacy_ids[0] if self.targeted_pharmacy_ids else None

    def quote_from(self, pharmacy_id: str) -> Optional[Quote]:
        for quote in self.quotes:
            if quote.pharmacy_id == pharmacy_id:
                return quote
        return None

    def changes_since(self, previous: Order) -> Dict[str, Any]:
        """
        Field-level diff against an earlier version of the same order,
        shaped as the partial update a store expects.
        """
        changes: Dict[str, Any] = {}
        for model_field in fields(self):
            if model_field.name in ("id", "revision"):
                continue
            new_value = getattr(self, model_field.name)
            if new_value != getattr(previous, model_field.name):
                changes[model_field.name] = new_value
        return changes


def format_order_id(order_number: int) -> str:
    return f"{ORDER_ID_PREFIX}{order_number}"
