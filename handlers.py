"""
Sale Handlers (Business Logic Layer)
====================================
Operations called by the HTTP layer and the checkout controller.

This layer:
- Wires the engine components over one data store
- Loads and saves checkout state
- Builds the pending and confirmed-order feeds

Every handler raises a SaleError subclass on failure; nothing is swallowed.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from checkout import (
    ORDER_COLUMNS,
    Readiness,
    completion_step,
    compute_readiness,
    is_fully_paid,
    meets_minimum_deposit,
    order_total,
    paid_toggle_deposit,
    parse_checkout_patch,
)
from config import Config, get_config
from contacts import ContactRegistry
from customers import CustomerDirectory
from errors import NotFound, PreconditionFailed, ValidationError
from lifecycle import OrderLifecycle
from models import CheckoutContext, ContactKind, Order, OrderLine, OrderStatus, Session, parse_enum
from reconciler import (
    CaptureResult,
    ConfirmationProvider,
    OrderLineReconciler,
    RegularSaleResult,
)
from sessions import SessionManager
from store import DataStore


logger = logging.getLogger(__name__)


PENDING_STATUSES = (OrderStatus.CREATED, OrderStatus.CHECKOUT_IN_PROGRESS)
PREPARATION_STATUSES = (OrderStatus.CONFIRMED, OrderStatus.IN_PREPARATION)


def describe_checkout(context: CheckoutContext, readiness: Optional[Readiness] = None) -> Dict[str, Any]:
    """Checkout context plus the derived values the form displays."""
    readiness = readiness or compute_readiness(
        context.order, context.customer, context.contacts, context.lines
    )
    total = context.total
    return {
        **context.to_dict(),
        "readiness": readiness.to_dict(),
        "completion_step": completion_step(context.order, context.customer, context.contacts),
        "is_fully_paid": is_fully_paid(context.order.deposit_amount, total),
        "locked": context.order.status in OrderLifecycle.LOCKED_STATES
    }


class SaleHandlers:
    """Facade over the sale engine."""

    def __init__(self, store: DataStore, config: Optional[Config] = None):
        self.config = config or get_config()
        self.store = store

        self.contacts = ContactRegistry(store)
        self.customers = CustomerDirectory(store, self.contacts)
        self.sessions = SessionManager(
            store,
            enforce_unique_codes=self.config.features.enforce_session_code_uniqueness
        )
        self.reconciler = OrderLineReconciler(
            store,
            self.customers,
            self.contacts,
            default_line_code=self.config.checkout.default_line_code,
            order_number_prefix=self.config.checkout.order_number_prefix
        )
        self.lifecycle = OrderLifecycle(store)

    # ========================================================================
    # SESSIONS
    # ========================================================================

    async def open_session(self, session_type: str, name: Optional[str] = None) -> Session:
        return await self.sessions.open_session(session_type, name)

    async def close_session(self, session_id: str) -> Session:
        return await self.sessions.close_session(session_id)

    async def current_session(self) -> Optional[Session]:
        return await self.sessions.current_open()

    async def list_sessions(self, limit: Optional[int] = None) -> List[Session]:
        return await self.sessions.list_sessions(limit)


    # ========================================================================
    # CAPTURE
    # ========================================================================

    async def capture_line(
        self,
        session_id: str,
        identity: str,
        code: Optional[str],
        description: str,
        unit_price: Any,
        quantity: Any,
        confirmation: Optional[ConfirmationProvider] = None
    ) -> CaptureResult:
        session = await self.sessions.capture_session(session_id)
        return await self.reconciler.capture_line(
            session,
            identity,
            code,
            description,
            unit_price,
            quantity,
            confirmation=confirmation
        )

    async def capture_regular_sale(
        self,
        session_id: str,
        real_name: str,
        phone: Optional[str],
        articles: List[Dict[str, Any]]
    ) -> RegularSaleResult:
        """Record a regular sale and open its checkout straight away."""
        session = await self.sessions.capture_session(session_id)
        result = await self.reconciler.capture_regular_sale(session, real_name, phone, articles)
        result.order = await self.lifecycle.open_checkout(result.order)
        return result

    async def session_codes(self, session_id: str) -> List[str]:
        return await self.reconciler.session_codes(session_id)

    # ========================================================================
    # CHECKOUT
    # ========================================================================

    async def _context(self, order: Order) -> CheckoutContext:
        contacts = await self.customers.load_with_contacts(order.customer_id)
        lines = await self.reconciler.order_lines(order.id)
        return CheckoutContext(order=order, contacts=contacts, lines=lines)

    async def load_checkout_context(self, order_id: str, open_checkout: bool = True) -> CheckoutContext:
        """
        Everything the checkout form shows for an order.

        Opening the form moves a CREATED order to CHECKOUT_IN_PROGRESS.
        Locked orders load read-only.
        """
        order = await self.lifecycle.load(order_id)
        if open_checkout:
            order = await self.lifecycle.open_checkout(order)
        return await self._context(order)

    async def readiness(self, order_id: str) -> Readiness:
        context = await self.load_checkout_context(order_id, open_checkout=False)
        return compute_readiness(context.order, context.customer, context.contacts, context.lines)

    async def update_checkout_field(self, order_id: str, field: str, value: Any) -> CheckoutContext:
        return await self.update_checkout_fields(order_id, {field: value})

    async def update_checkout_fields(self, order_id: str, patch: Dict[str, Any]) -> CheckoutContext:
        """
        Validate and persist checkout edits.

        All fields are validated before anything is written.

        Raises:
            PreconditionFailed: order_locked once CONFIRMED or later
            ValidationError: every invalid field, including
                deposit_exceeds_total when the deposit is above the line-sum
        """
        order = await self.lifecycle.load(order_id)
        self.lifecycle.ensure_editable(order)

        values, invalid = parse_checkout_patch(patch)

        lines = await self.reconciler.order_lines(order.id)
        if "deposit_amount" in values and values["deposit_amount"] > order_total(lines):
            invalid.append("deposit_exceeds_total")

        if invalid:
            logger.info(
                "Checkout edit rejected",
                extra={"order_id": order_id, "invalid_fields": invalid}
            )
            raise ValidationError(invalid)

        order = await self.lifecycle.open_checkout(order)

        order_patch: Dict[str, Any] = {}
        for name in ORDER_COLUMNS:
            if name in values:
                value = values[name]
                order_patch[name] = value.value if isinstance(value, Enum) else value

        # Status-guarded order write first: a concurrent confirmation stops
        # the edit before the customer or contacts are touched
        order = await self._write_order(order, order_patch)

        if "real_name" in values:
            await self.customers.update_profile(order.customer_id, real_name=values["real_name"] or "")

        contact_patch: Dict[str, Any] = {}
        for kind, column in ((ContactKind.PHONE, "customer_phone_id"), (ContactKind.ADDRESS, "customer_address_id")):
            if kind.value in values:
                entry = await self.contacts.add_or_reuse(
                    order.customer_id, kind, values[kind.value], make_primary=True
                )
                contact_patch[column] = entry.id if entry else None

        if contact_patch:
            order = await self._write_order(order, contact_patch)

        logger.info(
            f"Checkout updated: {', '.join(sorted(values))}",
            extra={"order_id": order_id}
        )
        return await self._context(order)

    async def _write_order(self, order: Order, patch: Dict[str, Any]) -> Order:
        """
        Patch the order row only while it is CHECKOUT_IN_PROGRESS.

        Always bumps updated_at, even for an empty patch, so a finalize
        working from an older read notices the edit.

        Raises:
            PreconditionFailed: order_locked, or stale_status
        """
        patch = {**patch, "updated_at": datetime.utcnow().isoformat()}
        rows = await self.store.update_where(
            "orders",
            {"id": order.id, "status": OrderStatus.CHECKOUT_IN_PROGRESS.value},
            patch
        )
        if not rows:
            current = await self.lifecycle.load(order.id)
            self.lifecycle.ensure_editable(current)
            raise PreconditionFailed("stale_status", "Order changed while saving")
        return Order.from_record(rows[0])

    async def set_fully_paid(self, order_id: str, checked: bool) -> CheckoutContext:
        """Paid checkbox: deposit becomes the total (checked) or zero."""
        lines = await self.reconciler.order_lines(order_id)
        deposit = paid_toggle_deposit(checked, order_total(lines))
        return await self.update_checkout_fields(order_id, {"deposit_amount": deposit})

    async def finalize_checkout(self, order_id: str) -> Order:
        """
        Confirm an order.

        Readiness is computed from one read; the confirm write only lands
        if the order was not edited since that read.

        Raises:
            PreconditionFailed: checkout_incomplete (with missing_fields),
                order_has_no_lines, invalid_transition, or stale_status
                when the order changed after readiness was computed
        """
        order = await self.lifecycle.load(order_id)
        if order.status is OrderStatus.CREATED:
            order = await self.lifecycle.open_checkout(order)

        context = await self._context(order)
        readiness = compute_readiness(order, context.customer, context.contacts, context.lines)

        confirmed = await self.lifecycle.confirm(order, readiness, context.lines)
        logger.info(
            f"Order confirmed: {confirmed.order_number}",
            extra={"order_id": order_id, "total": context.total}
        )
        return confirmed

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    async def cancel_order(self, order_id: str, reason: Optional[str] = None) -> Order:
        order = await self.lifecycle.load(order_id)
        return await self.lifecycle.cancel(order, reason)

    async def start_preparation(self, order_id: str) -> Order:
        order = await self.lifecycle.load(order_id)
        return await self.lifecycle.start_preparation(order)

    async def mark_delivered(self, order_id: str) -> Order:
        order = await self.lifecycle.load(order_id)
        return await self.lifecycle.mark_delivered(order)

    # ========================================================================
    # FEEDS
    # ========================================================================

    async def _orders_with_lines(self, filters: Dict[str, Any], order_by=None) -> List[Dict[str, Any]]:
        rows = await self.store.find("orders", filters, order=order_by)
        if not rows:
            return []

        line_rows = await self.store.find(
            "order_lines",
            {"order_id": ("in", [row["id"] for row in rows])},
            order=[("created_at", False)]
        )
        by_order: Dict[str, List[OrderLine]] = {}
        for line_row in line_rows:
            by_order.setdefault(line_row["order_id"], []).append(OrderLine.from_record(line_row))

        # Orders without lines are not real orders yet
        return [
            {"order": Order.from_record(row), "lines": by_order[row["id"]]}
            for row in rows
            if by_order.get(row["id"])
        ]

    async def pending_orders(self, session_id: str, query: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Session orders not yet confirmed, grouped by customer.

        Groups are sorted by subtotal, largest first.
        """
        await self.sessions.get(session_id)

        entries = await self._orders_with_lines(
            {
                "session_id": session_id,
                "status": ("in", [s.value for s in PENDING_STATUSES])
            },
            order_by=[("created_at", False)]
        )

        needle = (query or "").strip().lower()
        ratio = self.config.checkout.min_deposit_ratio
        groups: Dict[str, Dict[str, Any]] = {}

        for entry in entries:
            order: Order = entry["order"]
            lines: Sequence[OrderLine] = entry["lines"]

            group = groups.get(order.customer_id)
            if group is None:
                customer = await self.customers.get(order.customer_id)
                group = {"customer": customer.to_dict(), "orders": [], "subtotal": 0.0}
                groups[order.customer_id] = group

            total = order_total(lines)
            group["orders"].append({
                "order": order.to_dict(),
                "lines": [line.to_dict() for line in lines],
                "total": total,
                "can_finalize": meets_minimum_deposit(order, lines, ratio)
            })
            group["subtotal"] += total

        result = list(groups.values())
        if needle:
            result = [
                g for g in result
                if needle in (g["customer"]["alias"] or "").lower()
                or needle in (g["customer"]["real_name"] or "").lower()
            ]

        result.sort(key=lambda g: g["subtotal"], reverse=True)
        return result

    async def confirmed_orders(self, statuses: Sequence[OrderStatus] = PREPARATION_STATUSES) -> List[Dict[str, Any]]:
        """
        Preparation feed.

        Totals are recomputed from the lines; a stale cached total is
        written back.
        """
        entries = await self._orders_with_lines(
            {"status": ("in", [s.value for s in statuses])},
            order_by=[("confirmed_at", False)]
        )

        feed = []
        for entry in entries:
            order: Order = entry["order"]
            lines: Sequence[OrderLine] = entry["lines"]
            total = order_total(lines)

            if order.total_amount != total:
                logger.warning(
                    f"Resyncing total of {order.order_number}: {order.total_amount} -> {total}",
                    extra={"order_id": order.id}
                )
                await self.store.update("orders", order.id, {"total_amount": total})
                order.total_amount = total

            contacts = await self.customers.load_with_contacts(order.customer_id)
            feed.append({
                "order": order.to_dict(),
                "customer": contacts.to_dict(),
                "lines": [line.to_dict() for line in lines],
                "total": total
            })

        return feed

    # ========================================================================
    # CUSTOMERS
    # ========================================================================

    async def search_customers(self, query: str, limit: int = 20) -> List[Dict[str, Any]]:
        return [c.to_dict() for c in await self.customers.search(query, limit)]

    async def delete_customer(self, customer_id: str):
        await self.customers.delete(customer_id)

    def _contact_kind(self, kind: str) -> ContactKind:
        try:
            contact_kind = parse_enum(ContactKind, kind)
        except ValueError:
            contact_kind = None
        if contact_kind is None:
            raise ValidationError(["kind"])
        return contact_kind

    async def set_primary_contact(self, customer_id: str, kind: str, entry_id: str) -> Dict[str, Any]:
        entry = await self.contacts.set_primary(customer_id, self._contact_kind(kind), entry_id)
        return entry.to_dict()

    async def update_contact(self, customer_id: str, kind: str, entry_id: str, value: str) -> Dict[str, Any]:
        """
        Correct a phone number or address in place.

        Raises:
            NotFound: the entry does not exist or belongs to another customer
            ValidationError: blank value or unknown kind
        """
        contact_kind = self._contact_kind(kind)
        entry = await self.contacts.get_entry(contact_kind, entry_id)
        if entry.customer_id != customer_id:
            raise NotFound(contact_kind.table, entry_id)
        entry = await self.contacts.update_value(contact_kind, entry_id, value)
        return entry.to_dict()


    def get_stats(self) -> Dict[str, Any]:
        get_stats = getattr(self.store, "get_stats", None)
        return get_stats() if get_stats else {}

    def is_healthy(self) -> bool:
        is_healthy = getattr(self.store, "is_healthy", None)
        return is_healthy() if is_healthy else True
