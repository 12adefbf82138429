"""
Orders domain package.

Public API:
- Domain models: Order, Quote, PrescriptionItem, OrderStatus, RoutingMode, ItemAvailability
- Store contract: OrderStore, OrderCounter, OrderQuery and the store errors
- Quote helpers: build_quote, validate_quote_items

Should not contain business logic.
"""
from .models import (
    ItemAvailability,
    Order,
    OrderStatus,
    PrescriptionItem,
    Quote,
    RoutingMode,
    format_order_id,
)
from .quotes import QuoteValidationError, build_quote, validate_quote_items
from .store import (
    ConcurrentUpdateError,
    DuplicateOrderError,
    OrderCounter,
    OrderNotFoundError,
    OrderQuery,
    OrderStore,
    StoreError,
    StoreUnavailableError,
    overdue_orders_query,
    pharmacy_inbox_query,
)

__all__ = [
    "Order",
    "Quote",
    "PrescriptionItem",
    "OrderStatus",
    "RoutingMode",
    "ItemAvailability",
    "format_order_id",
    "build_quote",
    "validate_quote_items",
    "QuoteValidationError",
    "OrderStore",
    "OrderCounter",
    "OrderQuery",
    "overdue_orders_query",
    "pharmacy_inbox_query",
    "StoreError",
    "StoreUnavailableError",
    "OrderNotFoundError",
    "DuplicateOrderError",
    "ConcurrentUpdateError",
]
