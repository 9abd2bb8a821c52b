"""
Checkout Controller
===================
Orchestration for one open checkout form.

Responsibilities:
- Keep the operator's draft edits in memory
- Debounce saves so rapid keystrokes become one write
- Flush pending edits before finalize
- NO validation rules or store access of its own
"""

import uuid
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, Optional

import structlog

from checkout import (
    EDITABLE_FIELDS,
    ORDER_COLUMNS,
    Readiness,
    completion_step,
    compute_readiness,
    is_fully_paid,
    paid_toggle_deposit,
    parse_checkout_value,
)
from debounce import DebouncedWriter
from errors import PreconditionFailed, ValidationError
from handlers import SaleHandlers
from lifecycle import OrderLifecycle
from models import CheckoutContext, ContactEntry, ContactKind, CustomerContacts, Order

# Structured logging
logger = structlog.get_logger(__name__)


class CheckoutController:
    """
    Checkout controller - orchestrates a single checkout form.

    This class does NOT:
    - Decide readiness rules (checkout.py)
    - Write to the store directly (handlers.py)
    """

    def __init__(
        self,
        handlers: SaleHandlers,
        order_id: str,
        save_delay: Optional[float] = None
    ):
        self.handlers = handlers
        self.order_id = order_id
        self.request_id = str(uuid.uuid4())

        if save_delay is None:
            save_delay = handlers.config.checkout.save_delay_seconds

        self.writer = DebouncedWriter(order_id, self._save, delay=save_delay)
        self.context: Optional[CheckoutContext] = None
        self._draft: Dict[str, Any] = {}

        self.start_time = datetime.utcnow()
        self._closed = False

        logger.info(
            "checkout_controller_created",
            order_id=order_id,
            request_id=self.request_id
        )

    @property
    def last_error(self) -> Optional[Exception]:
        return self.writer.last_error

    @property
    def is_locked(self) -> bool:
        return self.context is not None and self.context.order.status in OrderLifecycle.LOCKED_STATES

    def _require_context(self) -> CheckoutContext:
        if self.context is None:
            raise PreconditionFailed("checkout_not_open", "Checkout form is not open")
        return self.context

    async def _save(self, patch: Dict[str, Any]) -> CheckoutContext:
        context = await self.handlers.update_checkout_fields(self.order_id, patch)
        self.context = context
        for name, value in patch.items():
            if self._draft.get(name) == value:
                self._draft.pop(name, None)

        logger.info(
            "checkout_saved",
            order_id=self.order_id,
            fields=sorted(patch)
        )
        return context

    async def open(self) -> CheckoutContext:
        """Load the order; a CREATED order moves to CHECKOUT_IN_PROGRESS."""
        self.context = await self.handlers.load_checkout_context(self.order_id)

        logger.info(
            "checkout_opened",
            order_id=self.order_id,
            request_id=self.request_id,
            status=self.context.order.status.value
        )
        return self.context

    def edit(self, field: str, value: Any):
        """
        Record an edit and schedule a save.

        Raises:
            PreconditionFailed: the order is locked
            ValidationError: unknown field
        """
        context = self._require_context()
        self.handlers.lifecycle.ensure_editable(context.order)

        if field not in EDITABLE_FIELDS:
            logger.warning("checkout_unknown_field", order_id=self.order_id, field=field)
            raise ValidationError([field])

        self._draft[field] = value
        self.writer.schedule(field, value)

    def edit_many(self, patch: Dict[str, Any]):
        """
        Record several edits as one pending save, e.g. a delivery preset.

        Nothing is recorded when any field is unknown.

        Raises:
            PreconditionFailed: the order is locked
            ValidationError: every unknown field
        """
        context = self._require_context()
        self.handlers.lifecycle.ensure_editable(context.order)

        unknown = sorted(name for name in patch if name not in EDITABLE_FIELDS)
        if unknown:
            logger.warning("checkout_unknown_field", order_id=self.order_id, fields=unknown)
            raise ValidationError(unknown)

        self._draft.update(patch)
        self.writer.schedule_many(patch)


    def set_paid(self, checked: bool):
        """Paid checkbox sugar over the deposit field."""
        context = self._require_context()
        self.edit("deposit_amount", paid_toggle_deposit(checked, context.total))

    def _draft_snapshot(self) -> CheckoutContext:
        """Stored context with unsaved edits applied. Unparseable edits are skipped."""
        context = self._require_context()
        values = {}
        for name, raw in self._draft.items():
            try:
                values[name] = parse_checkout_value(name, raw)
            except (TypeError, ValueError):
                continue

        order: Order = replace(
            context.order,
            **{name: values[name] for name in ORDER_COLUMNS if name in values}
        )

        customer = context.customer
        if "real_name" in values:
            customer = replace(customer, real_name=values["real_name"])

        phones = list(context.contacts.phones)
        addresses = list(context.contacts.addresses)
        for kind, entries in ((ContactKind.PHONE, phones), (ContactKind.ADDRESS, addresses)):
            if kind.value in values:
                draft_entry = ContactEntry(
                    id="draft",
                    customer_id=customer.id,
                    kind=kind,
                    value=values[kind.value],
                    is_primary=True
                )
                entries[:] = [draft_entry] + [replace(e, is_primary=False) for e in entries]

        contacts = CustomerContacts(customer=customer, phones=phones, addresses=addresses)
        return CheckoutContext(order=order, contacts=contacts, lines=context.lines)

    def readiness(self) -> Readiness:
        """Readiness of the form as the operator currently sees it."""
        snapshot = self._draft_snapshot()
        return compute_readiness(snapshot.order, snapshot.customer, snapshot.contacts, snapshot.lines)

    def progress(self) -> Dict[str, Any]:
        snapshot = self._draft_snapshot()
        return {
            "completion_step": completion_step(snapshot.order, snapshot.customer, snapshot.contacts),
            "is_fully_paid": is_fully_paid(snapshot.order.deposit_amount, snapshot.total),
            "readiness": self.readiness().to_dict(),
            "saving": self.writer.has_pending,
            "last_error": str(self.last_error) if self.last_error else None
        }

    async def save(self) -> CheckoutContext:
        """Write pending edits now."""
        await self.writer.flush()
        return self._require_context()

    async def finalize(self) -> Order:
        """
        Flush pending edits, then confirm the order.

        Raises:
            ValidationError: a pending edit could not be saved
            PreconditionFailed: the order is not ready
        """
        self._require_context()

        logger.info("checkout_finalizing", order_id=self.order_id, pending=sorted(self.writer.pending))

        try:
            await self.writer.flush()
            order = await self.handlers.finalize_checkout(self.order_id)
        except Exception as e:
            logger.error(
                "checkout_finalize_failed",
                order_id=self.order_id,
                error=str(e),
                error_type=type(e).__name__
            )
            raise

        self.context = await self.handlers.load_checkout_context(self.order_id, open_checkout=False)

        logger.info(
            "checkout_finalized",
            order_id=self.order_id,
            order_number=order.order_number,
            duration_seconds=(datetime.utcnow() - self.start_time).total_seconds()
        )
        return order

    async def close(self, discard: bool = False) -> Dict[str, Any]:
        """
        Leave the form. Pending edits are saved unless discarded.

        Returns:
            Summary with the fields that were dropped, if any
        """
        if self._closed:
            return {"status": "already_closed"}
        self._closed = True

        dropped: Dict[str, Any] = {}
        if discard or self.is_locked:
            dropped = self.writer.cancel()
        else:
            await self.writer.flush()

        logger.info(
            "checkout_closed",
            order_id=self.order_id,
            dropped=sorted(dropped),
            saves=self.writer.write_count
        )
        return {"status": "closed", "dropped_fields": sorted(dropped), **self.writer.get_status()}
