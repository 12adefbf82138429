"""
Purpose: Race resolver for pharmacy and patient responses.
What it does:
Turns concurrent responses to the same order into exactly one outcome.

- refuse: proactive decline, same effect as the deadline lapsing for that pharmacy
- accept (round-robin): locks the order to one pharmacy
- accept (broadcast): opts the pharmacy in to draft a quote; no lock
- submit_quote: appends one quote per pharmacy
- select_quote: the patient's commit point; locks the winner and starts preparation
- mark_ready: the winning pharmacy hands the order over to the driver flow

Every write is a conditional update on the revision read (see dispatch.commit),
so two pharmacies racing to lock the same order cannot both win.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Sequence

from orders.models import Order, OrderStatus, PrescriptionItem, RoutingMode
from orders.quotes import build_quote
from orders.store import OrderStore
from pharmacies.directory import PharmacyDirectory

from .commit import apply_order_update
from .errors import StaleActionError
from .notifications import LoggingNotifier, Notification, Severity, safe_notify
from .policy import DispatchPolicy, RoutingConfigSource, default_dispatch_policy
from .reassignment import Reassignment, handle_refusal
from .state_machines.order_state import transition_order, transition_to_preparing

logger = logging.getLogger(__name__)


class PharmacyAction(str, Enum):
    ACCEPT = "accept"
    REFUSE = "refuse"


def _require_open(order: Order) -> None:
    if order.status != OrderStatus.AWAITING_QUOTES:
        raise StaleActionError(order.id, f"order is {order.status.value}")
    if order.is_locked:
        raise StaleActionError(order.id, f"order already locked by {order.pharmacy_id}")


def _require_invited(order: Order, pharmacy_id: str) -> None:
    if pharmacy_id in order.refused_by_pharmacy_ids:
        raise StaleActionError(order.id, f"{pharmacy_id} already refused this order")
    if pharmacy_id not in order.targeted_pharmacy_ids:
        raise StaleActionError(order.id, f"{pharmacy_id} is not a current target")


class ResponseResolver:

    def __init__(
        self,
        store: OrderStore,
        directory: PharmacyDirectory,
        config_source: RoutingConfigSource,
        notifier=None,
        policy: Optional[DispatchPolicy] = None,
    ):
        self.store = store
        self.directory = directory
        self.config_source = config_source
        self.notifier = notifier or LoggingNotifier()
        self.policy = policy or default_dispatch_policy()

    def _commit(self, order_id: str, mutate) -> Order:
        return apply_order_update(
            self.store, order_id, mutate, max_attempts=self.policy.max_commit_attempts,
        )

    # ------------------------------------------------------------------
    # Pharmacy responses
    # ------------------------------------------------------------------

    def respond(self, order_id: str, pharmacy_id: str, action: PharmacyAction) -> Optional[Order]:
        """
        Terminal entry point. A stale response is a logged no-op: returns None
        and the terminal should refresh from its subscription.
        """
        try:
            if PharmacyAction(action) == PharmacyAction.ACCEPT:
                return self.accept(order_id, pharmacy_id)
            return self.refuse(order_id, pharmacy_id)
        except StaleActionError as stale:
            logger.warning("Ignored %s from %s: %s", action, pharmacy_id, stale)
            return None

    def accept(self, order_id: str, pharmacy_id: str) -> Order:
        pharmacy_name = self.directory.name_of(pharmacy_id)

        def mutate(current: Order) -> Order:
            _require_open(current)
            _require_invited(current, pharmacy_id)

            if current.routing_mode == RoutingMode.BROADCAST:
                if pharmacy_id in current.accepted_by_pharmacy_ids:
                    return current
                return replace(
                    current,
                    accepted_by_pharmacy_ids=current.accepted_by_pharmacy_ids + (pharmacy_id,),
                )

            # round-robin: this write is the lock
            return replace(
                current,
                pharmacy_id=pharmacy_id,
                pharmacy_name=pharmacy_name,
                accepted_by_pharmacy_ids=(pharmacy_id,),
            )

        order = self._commit(order_id, mutate)
        if order.is_locked:
            logger.info("Order %s locked by %s", order_id, pharmacy_id)
            safe_notify(self.notifier, Notification(
                message=f"Order {order_id} accepted by {pharmacy_name}",
                severity=Severity.INFO,
                order_id=order_id,
            ))
        else:
            logger.info("Pharmacy %s drafting a quote for order %s", pharmacy_id, order_id)
        return order

    def refuse(self, order_id: str, pharmacy_id: str, *, now: Optional[datetime] = None) -> Order:
        now = now or datetime.now(timezone.utc)
        outcome: Dict[str, Reassignment] = {}

        def mutate(current: Order) -> Order:
            _require_open(current)
            _require_invited(current, pharmacy_id)
            if current.quote_from(pharmacy_id) is not None:
                raise StaleActionError(order_id, f"{pharmacy_id} already submitted a quote")

            outcome["result"] = handle_refusal(
                current,
                self.directory.list(),
                pharmacy_id,
                broadcast_count=self.config_source.current().broadcast_count,
                policy=self.policy,
                now=now,
            )
            return outcome["result"].order

        order = self._commit(order_id, mutate)
        logger.info("Pharmacy %s refused order %s", pharmacy_id, order_id)
        if outcome["result"].cancelled:
            logger.warning("Order %s cancelled: no pharmacy left to ask", order_id)
        safe_notify(self.notifier, outcome["result"].notification)
        return order

    # ------------------------------------------------------------------
    # Quotes
    # ------------------------------------------------------------------

    def submit_quote(
        self,
        order_id: str,
        pharmacy_id: str,
        items: Sequence[PrescriptionItem],
        *,
        delivery_fee: Optional[float] = None,
        estimated_time: Optional[int] = None,
    ) -> Order:
        """
        Validation happens before any store access; an invalid draft raises
        QuoteValidationError and nothing is written.
        """
        quote = build_quote(
            pharmacy_id,
            self.directory.name_of(pharmacy_id),
            items,
            delivery_fee=self.policy.default_delivery_fee if delivery_fee is None else delivery_fee,
            estimated_time=(
                self.policy.default_estimated_time_minutes if estimated_time is None else estimated_time
            ),
        )

        def mutate(current: Order) -> Order:
            if current.status != OrderStatus.AWAITING_QUOTES:
                raise StaleActionError(order_id, f"order is {current.status.value}")
            if current.quote_from(pharmacy_id) is not None:
                raise StaleActionError(order_id, f"{pharmacy_id} already submitted a quote")

            if current.routing_mode == RoutingMode.BROADCAST:
                if current.is_locked:
                    raise StaleActionError(order_id, "a quote was already selected")
                if pharmacy_id not in current.accepted_by_pharmacy_ids:
                    raise StaleActionError(order_id, f"{pharmacy_id} has not accepted this order")
            elif current.pharmacy_id != pharmacy_id:
                raise StaleActionError(order_id, f"order is not locked by {pharmacy_id}")

            return replace(current, quotes=current.quotes + (quote,))

        order = self._commit(order_id, mutate)
        logger.info(
            "Quote from %s on order %s (total %.2f + %.2f delivery)",
            pharmacy_id, order_id, quote.total_amount, quote.delivery_fee,
        )
        safe_notify(self.notifier, Notification(
            message=f"New quote from {quote.pharmacy_name} for order {order_id}",
            severity=Severity.INFO,
            order_id=order_id,
        ))
        return order

    def select_quote(
        self,
        order_id: str,
        pharmacy_id: str,
        *,
        payment_method: Optional[str] = None,
        payment_type: Optional[str] = None,
    ) -> Order:
        """
        Patient picks a quote. One conditional write sets the winner and the
        PREPARING status together, so a late second selection is stale.
        """

        def mutate(current: Order) -> Order:
            if current.status != OrderStatus.AWAITING_QUOTES:
                raise StaleActionError(order_id, f"order is {current.status.value}")
            if current.is_locked and current.pharmacy_id != pharmacy_id:
                raise StaleActionError(order_id, f"order is locked by {current.pharmacy_id}")

            quote = current.quote_from(pharmacy_id)
            if quote is None:
                raise StaleActionError(order_id, f"no quote from {pharmacy_id}")

            payload: Dict[str, Any] = dict(current.payload)
            if payment_method is not None:
                payload["paymentMethod"] = payment_method
            if payment_type is not None:
                payload["paymentType"] = payment_type

            preparing = transition_to_preparing(current)
            return replace(
                preparing,
                pharmacy_id=quote.pharmacy_id,
                pharmacy_name=quote.pharmacy_name,
                total_amount=quote.total_amount,
                delivery_fee=quote.delivery_fee,
                items=quote.items,
                payload=payload,
            )

        order = self._commit(order_id, mutate)
        logger.info("Order %s committed to %s, preparing", order_id, pharmacy_id)
        safe_notify(self.notifier, Notification(
            message=f"Payment confirmed for order {order_id}, preparation in progress",
            severity=Severity.INFO,
            order_id=order_id,
        ))
        return order

    def mark_ready(self, order_id: str, pharmacy_id: str) -> Order:

        def mutate(current: Order) -> Order:
            if current.pharmacy_id != pharmacy_id:
                raise StaleActionError(order_id, f"order is not served by {pharmacy_id}")
            if current.status != OrderStatus.PREPARING:
                raise StaleActionError(order_id, f"order is {current.status.value}")
            return transition_order(current, OrderStatus.READY_FOR_PICKUP)

        order = self._commit(order_id, mutate)
        logger.info("Order %s ready for pickup at %s", order_id, pharmacy_id)
        return order
