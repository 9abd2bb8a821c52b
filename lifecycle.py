"""
Order Lifecycle
===============
Formal status transitions for orders.

State invariants:
- Status only moves forward; no backward transition is exposed
- Every transition is a conditional write on the expected current status,
  so an operator acting on a stale view fails instead of overwriting
- CONFIRMED and later orders are read-only
"""

import logging
from collections import OrderedDict, deque
from datetime import datetime
from typing import Any, Deque, Dict, Optional, Sequence, Tuple

from prometheus_client import Counter

from checkout import Readiness, order_total
from errors import NotFound, PreconditionFailed
from models import Order, OrderLine, OrderStatus
from store import DataStore


logger = logging.getLogger(__name__)


# In-process diagnostics only; the store is the source of truth
HISTORY_MAX_ORDERS = 1000
HISTORY_MAX_ENTRIES = 16


order_transitions = Counter(
    'sale_order_transitions_total',
    'Order status transitions',
    ['from_state', 'to_state']
)
order_transition_rejections = Counter(
    'sale_order_transition_rejections_total',
    'Rejected order transitions',
    ['rule']
)


class OrderLifecycle:
    """
    Manages order status transitions with validation.

    State flow:
        CREATED -> CHECKOUT_IN_PROGRESS -> CONFIRMED -> IN_PREPARATION -> DELIVERED
        any non-terminal state -> CANCELLED
    """

    VALID_TRANSITIONS = {
        OrderStatus.CREATED: {OrderStatus.CHECKOUT_IN_PROGRESS, OrderStatus.CANCELLED},
        OrderStatus.CHECKOUT_IN_PROGRESS: {OrderStatus.CONFIRMED, OrderStatus.CANCELLED},
        OrderStatus.CONFIRMED: {OrderStatus.IN_PREPARATION, OrderStatus.CANCELLED},
        OrderStatus.IN_PREPARATION: {OrderStatus.DELIVERED, OrderStatus.CANCELLED},
        OrderStatus.DELIVERED: set(),  # Terminal
        OrderStatus.CANCELLED: set()   # Terminal
    }

    LOCKED_STATES = {
        OrderStatus.CONFIRMED,
        OrderStatus.IN_PREPARATION,
        OrderStatus.DELIVERED,
        OrderStatus.CANCELLED
    }

    TIMESTAMP_COLUMNS = {
        OrderStatus.CHECKOUT_IN_PROGRESS: "checkout_started_at",
        OrderStatus.CONFIRMED: "confirmed_at",
        OrderStatus.CANCELLED: "cancelled_at"
    }

    def __init__(self, store: DataStore):
        self.store = store
        self._history: "OrderedDict[str, Deque[Tuple[OrderStatus, datetime, Optional[str]]]]" = OrderedDict()

    async def load(self, order_id: str) -> Order:
        row = await self.store.get("orders", order_id)
        if row is None:
            raise NotFound("order", order_id)
        return Order.from_record(row)

    @classmethod
    def can_transition_to(cls, current: OrderStatus, target: OrderStatus) -> bool:
        return target in cls.VALID_TRANSITIONS.get(current, set())

    @classmethod
    def is_terminal(cls, status: OrderStatus) -> bool:
        return not cls.VALID_TRANSITIONS.get(status)

    def ensure_editable(self, order: Order):
        """
        Raises:
            PreconditionFailed: order is CONFIRMED or later
        """
        if order.status in self.LOCKED_STATES:
            order_transition_rejections.labels(rule="order_locked").inc()
            logger.warning(
                f"Edit rejected on {order.status.value} order",
                extra={"order_id": order.id, "status": order.status.value}
            )
            raise PreconditionFailed(
                "order_locked",
                f"Order {order.order_number} is {order.status.value} and can no longer be edited"
            )

    async def transition(
        self,
        order: Order,
        target: OrderStatus,
        reason: Optional[str] = None,
        expected: Optional[Dict[str, Any]] = None,
        changes: Optional[Dict[str, Any]] = None
    ) -> Order:
        """
        Move an order to ``target`` if its stored status still matches.

        ``expected`` adds column values the stored row must still have;
        ``changes`` are written together with the new status.

        Raises:
            PreconditionFailed: invalid_transition, or stale_status when
                another operator moved the order first
        """
        if not self.can_transition_to(order.status, target):
            order_transition_rejections.labels(rule="invalid_transition").inc()
            error_msg = f"Invalid transition: {order.status.value} -> {target.value}"
            logger.error(
                error_msg,
                extra={
                    "order_id": order.id,
                    "from_state": order.status.value,
                    "to_state": target.value,
                    "reason": reason
                }
            )
            raise PreconditionFailed("invalid_transition", error_msg)

        now = datetime.utcnow()
        patch = {**(changes or {}), "status": target.value, "updated_at": now.isoformat()}
        column = self.TIMESTAMP_COLUMNS.get(target)
        if column:
            patch[column] = now.isoformat()

        rows = await self.store.update_where(
            "orders",
            {**(expected or {}), "id": order.id, "status": order.status.value},
            patch
        )

        if not rows:
            current = await self.load(order.id)
            order_transition_rejections.labels(rule="stale_status").inc()
            logger.warning(
                f"Stale transition: expected {order.status.value}, found {current.status.value}",
                extra={"order_id": order.id, "to_state": target.value}
            )
            if current.status is order.status:
                message = "Order was edited in the meantime"
            else:
                message = f"Order status changed to {current.status.value} in the meantime"
            raise PreconditionFailed("stale_status", message)

        old_state = order.status
        self._record(order.id, target, now, reason)
        order_transitions.labels(from_state=old_state.value, to_state=target.value).inc()

        logger.info(
            f"Order transition: {old_state.value} -> {target.value}",
            extra={
                "order_id": order.id,
                "from_state": old_state.value,
                "to_state": target.value,
                "reason": reason
            }
        )
        return Order.from_record(rows[0])

    async def open_checkout(self, order: Order) -> Order:
        """Implicit CREATED -> CHECKOUT_IN_PROGRESS; other states are returned as-is."""
        if order.status is not OrderStatus.CREATED:
            return order

        try:
            return await self.transition(order, OrderStatus.CHECKOUT_IN_PROGRESS, "checkout_opened")
        except PreconditionFailed as e:
            if e.rule != "stale_status":
                raise
            # Opened concurrently by another operator
            return await self.load(order.id)

    async def confirm(
        self,
        order: Order,
        readiness: Readiness,
        lines: Sequence[OrderLine]
    ) -> Order:
        """
        CHECKOUT_IN_PROGRESS -> CONFIRMED, gated by readiness.

        The write also requires the stored updated_at to equal the one
        readiness was computed from, and caches the line-sum as the total.

        Raises:
            PreconditionFailed: order_has_no_lines, checkout_incomplete
                (with missing_fields), invalid_transition or stale_status
        """
        if not lines:
            order_transition_rejections.labels(rule="order_has_no_lines").inc()
            raise PreconditionFailed("order_has_no_lines", "An order without lines cannot be confirmed")

        if not readiness.can_finalize:
            order_transition_rejections.labels(rule="checkout_incomplete").inc()
            logger.info(
                "Confirmation refused: checkout incomplete",
                extra={"order_id": order.id, "missing_fields": readiness.missing_fields}
            )
            raise PreconditionFailed(
                "checkout_incomplete",
                f"Missing or invalid: {', '.join(readiness.missing_fields)}",
                missing_fields=readiness.missing_fields
            )

        expected = {"updated_at": order.updated_at} if order.updated_at else None
        return await self.transition(
            order,
            OrderStatus.CONFIRMED,
            "checkout_finalized",
            expected=expected,
            changes={"total_amount": order_total(lines)}
        )

    async def start_preparation(self, order: Order) -> Order:
        return await self.transition(order, OrderStatus.IN_PREPARATION, "preparation_started")

    async def mark_delivered(self, order: Order) -> Order:
        return await self.transition(order, OrderStatus.DELIVERED, "delivered")

    async def cancel(self, order: Order, reason: Optional[str] = None) -> Order:
        return await self.transition(order, OrderStatus.CANCELLED, reason or "cancelled")

    def _record(self, order_id: str, state: OrderStatus, timestamp: datetime, reason: Optional[str]):
        history = self._history.get(order_id)
        if history is None:
            history = self._history[order_id] = deque(maxlen=HISTORY_MAX_ENTRIES)
        else:
            self._history.move_to_end(order_id)
        history.append((state, timestamp, reason))

        while len(self._history) > HISTORY_MAX_ORDERS:
            self._history.popitem(last=False)

    def get_history(self, order_id: str) -> list:
        """Recent transitions seen by this process for an order."""
        return [
            {"state": state.value, "timestamp": ts.isoformat(), "reason": reason}
            for state, ts, reason in self._history.get(order_id, [])
        ]
