"""
Purpose: Build and validate pharmacy quotes before they touch the store.
What it does:
- validate_quote_items: local-only checks (name, price, quantity)
- build_quote: computes the total over billable items and freezes the Quote

Rule: Nothing here writes; invalid quotes never get persisted.
"""

from __future__ import annotations

from typing import List, Sequence

from .models import PrescriptionItem, Quote


class QuoteValidationError(ValueError):
    """Raised when a quote draft is incomplete. Carries every problem found."""

    def __init__(self, errors: List[str]):
        super().__init__("; ".join(errors))
        self.errors = errors


def validate_quote_items(items: Sequence[PrescriptionItem]) -> None:
    errors: List[str] = []

    if not items:
        errors.append("A quote needs at least one item")

    for index, item in enumerate(items):
        if not item.name or not item.name.strip():
            errors.append(f"Item #{index + 1}: a name is required")
            continue

        # Unavailable lines are informational only, they carry no price.
        if not item.is_billable:
            continue

        if item.price is None or item.price <= 0:
            errors.append(f"Item '{item.name}': price must be > 0")
        if item.quantity is None or item.quantity < 1:
            errors.append(f"Item '{item.name}': quantity must be >= 1")

    if errors:
        raise QuoteValidationError(errors)


def quote_total(items: Sequence[PrescriptionItem]) -> float:
    return sum((item.price or 0) * (item.quantity or 1) for item in items if item.is_billable)


def build_quote(
    pharmacy_id: str,
    pharmacy_name: str,
    items: Sequence[PrescriptionItem],
    *,
    delivery_fee: float,
    estimated_time: int,
) -> Quote:
    validate_quote_items(items)
    return Quote(
        pharmacy_id=pharmacy_id,
        pharmacy_name=pharmacy_name,
        items=tuple(items),
        total_amount=quote_total(items),
        delivery_fee=delivery_fee,
        estimated_time=estimated_time,
    )
