"""
Order Line Reconciler
=====================
Turns captured lines into orders without duplicating lines.

Per captured line:
    resolve customer -> reuse the (session, customer) order still CREATED
    -> match (code, description) -> ask MERGE / DUPLICATE / ABORT
    -> merge quantities or append a new line -> refresh the order total

Write ordering:
- Amounts, the session code check and the merge decision all happen before
  the first write, so a rejected or aborted capture leaves the store untouched.
- Merges are compare-and-swap on the old quantity, so two operators merging
  into the same line both land.
- An order is created only once the line is certain to be written. A failure
  between order insert and line insert leaves a zero-line order, which the
  feeds ignore.
"""

import math
import time
import random
import string
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Union

from prometheus_client import Counter

from contacts import ContactRegistry
from customers import CustomerDirectory
from errors import (
    CaptureAborted,
    Conflict,
    DecisionRequired,
    DuplicateCode,
    InvalidAmount,
    NotFound,
    UniqueViolation,
    ValidationError,
)
from models import ContactKind, Customer, Order, OrderLine, OrderStatus, parse_enum
from sessions import CaptureSession
from store import DataStore


logger = logging.getLogger(__name__)


MAX_ORDER_NUMBER_ATTEMPTS = 3
MAX_MERGE_ATTEMPTS = 3


# ============================================================================
# METRICS
# ============================================================================

lines_captured = Counter(
    'sale_lines_captured_total',
    'Captured order lines',
    ['outcome']
)
capture_rejections = Counter(
    'sale_capture_rejections_total',
    'Captures rejected before any write',
    ['reason']
)
orders_created = Counter(
    'sale_orders_created_total',
    'Orders created by capture',
    ['session_type']
)


# ============================================================================
# CONFIRMATION
# ============================================================================

class MergeDecision(Enum):
    """Operator answer when a captured line matches an existing one."""
    MERGE = "merge"          # Add quantities to the existing line
    DUPLICATE = "duplicate"  # Keep both lines
    ABORT = "abort"          # Dismissed, nothing is written


Answer = Union[MergeDecision, bool, str, None]


class ConfirmationProvider(Protocol):
    async def confirm(self, message: str) -> Answer:
        ...


class StaticDecision:
    """Confirmation answered up front, e.g. from a request body."""

    def __init__(self, decision: Answer = None):
        self.decision = decision

    async def confirm(self, message: str) -> Answer:
        if self.decision is None:
            raise DecisionRequired(message)
        return self.decision


def as_decision(answer: Answer) -> MergeDecision:
    """Normalize a confirmation answer. True merges, False duplicates."""
    if isinstance(answer, MergeDecision):
        return answer
    if answer is None:
        return MergeDecision.ABORT
    if isinstance(answer, bool):
        return MergeDecision.MERGE if answer else MergeDecision.DUPLICATE
    return parse_enum(MergeDecision, answer) or MergeDecision.ABORT


# ============================================================================
# VALIDATION
# ============================================================================

def parse_unit_price(value: Any) -> float:
    """Finite number >= 0."""
    if isinstance(value, bool):
        raise InvalidAmount("unit_price", value)
    try:
        price = float(value)
    except (TypeError, ValueError):
        raise InvalidAmount("unit_price", value)
    if not math.isfinite(price) or price < 0:
        raise InvalidAmount("unit_price", value)
    return price


def parse_quantity(value: Any) -> int:
    """Integer > 0. Integral floats and digit strings are accepted."""
    if isinstance(value, bool):
        raise InvalidAmount("quantity", value)
    if isinstance(value, float):
        if not value.is_integer():
            raise InvalidAmount("quantity", value)
        value = int(value)
    try:
        quantity = int(value.strip()) if isinstance(value, str) else int(value)
    except (TypeError, ValueError):
        raise InvalidAmount("quantity", value)
    if quantity <= 0:
        raise InvalidAmount("quantity", value)
    return quantity


def generate_order_number(prefix: str = "CMD") -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"{prefix}-{int(time.time() * 1000)}-{suffix}"


# ============================================================================
# RESULTS
# ============================================================================

@dataclass
class CaptureResult:
    line: OrderLine
    order: Order
    outcome: str  # appended | merged | duplicated
    order_created: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "line": self.line.to_dict(),
            "order": self.order.to_dict(),
            "outcome": self.outcome,
            "order_created": self.order_created
        }


@dataclass
class RegularSaleResult:
    order: Order
    customer: Customer
    lines: List[OrderLine] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order": self.order.to_dict(),
            "customer": self.customer.to_dict(),
            "lines": [line.to_dict() for line in self.lines]
        }


@dataclass
class _Article:
    code: str
    description: str
    unit_price: float
    quantity: int


# ============================================================================
# RECONCILER
# ============================================================================

class OrderLineReconciler:
    """Merges captured lines into (session, customer) orders."""

    def __init__(
        self,
        store: DataStore,
        customers: CustomerDirectory,
        contacts: ContactRegistry,
        confirmation: Optional[ConfirmationProvider] = None,
        default_line_code: str = "JP",
        order_number_prefix: str = "CMD"
    ):
        self.store = store
        self.customers = customers
        self.contacts = contacts
        self.confirmation = confirmation
        self.default_line_code = default_line_code
        self.order_number_prefix = order_number_prefix

    # ========================================================================
    # READS
    # ========================================================================

    async def order_lines(self, order_id: str) -> List[OrderLine]:
        rows = await self.store.find(
            "order_lines",
            {"order_id": order_id},
            order=[("created_at", False)]
        )
        return [OrderLine.from_record(row) for row in rows]

    async def session_codes(self, session_id: str) -> List[str]:
        """Distinct line codes already used anywhere in the session."""
        orders = await self.store.find("orders", {"session_id": session_id})
        if not orders:
            return []

        rows = await self.store.find(
            "order_lines",
            {"order_id": ("in", [o["id"] for o in orders])}
        )
        return sorted({row["code"] for row in rows if row.get("code")})

    async def _open_order_for(self, session_id: str, customer_id: str) -> Optional[Order]:
        rows = await self.store.find(
            "orders",
            {
                "session_id": session_id,
                "customer_id": customer_id,
                "status": OrderStatus.CREATED.value
            },
            order=[("created_at", False)],
            limit=1
        )
        return Order.from_record(rows[0]) if rows else None

    async def _lookup_customer(self, session: CaptureSession, identity: str) -> Optional[Customer]:
        if session.is_live:
            return await self.customers.get_by_alias(identity)
        return await self.customers.get_by_real_name(identity)

    async def _resolve_customer(self, session: CaptureSession, identity: str) -> Customer:
        if session.is_live:
            return await self.customers.resolve_or_create_by_alias(identity)
        return await self.customers.resolve_or_create_by_real_name(identity)

    # ========================================================================
    # WRITES
    # ========================================================================

    async def refresh_total(self, order_id: str) -> float:
        """Recompute the line-sum and cache it on the order."""
        lines = await self.order_lines(order_id)
        total = sum(line.line_total for line in lines)
        await self.store.update(
            "orders",
            order_id,
            {"total_amount": total, "updated_at": datetime.utcnow().isoformat()}
        )
        return total

    async def _create_order(self, session: CaptureSession, customer_id: str) -> Order:
        now = datetime.utcnow().isoformat()

        for attempt in range(MAX_ORDER_NUMBER_ATTEMPTS):
            record = {
                "session_id": session.session_id,
                "customer_id": customer_id,
                "order_number": generate_order_number(self.order_number_prefix),
                "status": OrderStatus.CREATED.value,
                "deposit_amount": 0,
                "total_amount": 0,
                "is_province": False,
                "created_at": now,
                "updated_at": now
            }
            try:
                row = await self.store.insert("orders", record)
            except UniqueViolation:
                logger.warning(f"Order number collision, retrying (attempt {attempt + 1})")
                continue

            orders_created.labels(session_type=session.session_type.value).inc()
            logger.info(
                f"Order created: {row['order_number']}",
                extra={"order_id": row["id"], "session_id": session.session_id}
            )
            return Order.from_record(row)

        raise Conflict("Could not allocate a unique order number")

    async def _append_line(self, order_id: str, article: _Article) -> OrderLine:
        row = await self.store.insert(
            "order_lines",
            {
                "order_id": order_id,
                "code": article.code,
                "description": article.description,
                "unit_price": article.unit_price,
                "quantity": article.quantity,
                "line_total": article.unit_price * article.quantity
            }
        )
        return OrderLine.from_record(row)

    async def _merge_into(self, line: OrderLine, extra_quantity: int) -> OrderLine:
        """
        Add quantity to an existing line, keeping its unit price.

        Compare-and-swap on the quantity read; re-read and retry on a race.
        """
        current = line
        for attempt in range(MAX_MERGE_ATTEMPTS):
            new_quantity = current.quantity + extra_quantity
            rows = await self.store.update_where(
                "order_lines",
                {"id": current.id, "quantity": current.quantity},
                {"quantity": new_quantity, "line_total": current.unit_price * new_quantity}
            )
            if rows:
                return OrderLine.from_record(rows[0])

            row = await self.store.get("order_lines", current.id)
            if row is None:
                raise NotFound("order_line", current.id)
            current = OrderLine.from_record(row)
            logger.info(
                "Concurrent merge detected, retrying",
                extra={"line_id": current.id, "attempt": attempt + 1}
            )

        raise Conflict("Line kept changing during merge", line_id=line.id)

    # ========================================================================
    # CAPTURE
    # ========================================================================

    def _article(self, code: Optional[str], description: Optional[str], unit_price: Any, quantity: Any) -> _Article:
        return _Article(
            code=(code or "").strip() or self.default_line_code,
            description=(description or "").strip(),
            unit_price=parse_unit_price(unit_price),
            quantity=parse_quantity(quantity)
        )

    async def _ask(self, provider: Optional[ConfirmationProvider], message: str) -> MergeDecision:
        if provider is None:
            raise DecisionRequired(message)
        return as_decision(await provider.confirm(message))

    async def capture_line(
        self,
        session: CaptureSession,
        identity: str,
        code: Optional[str],
        description: Optional[str],
        unit_price: Any,
        quantity: Any,
        confirmation: Optional[ConfirmationProvider] = None
    ) -> CaptureResult:
        """
        Record one line for the customer named by ``identity``.

        ``identity`` is the platform alias in LIVE sessions and the real
        name in REGULAR sessions.

        Raises:
            InvalidAmount: bad price or quantity
            ValidationError: blank identity or description
            DuplicateCode: code already used in the live session
            DecisionRequired: the line matches and nobody can be asked
            CaptureAborted: the operator dismissed the merge prompt
        """
        try:
            article = self._article(code, description, unit_price, quantity)
        except InvalidAmount as e:
            capture_rejections.labels(reason="invalid_amount").inc()
            logger.warning(f"Capture rejected: {e.message}", extra={"session_id": session.session_id})
            raise

        missing = []
        if not (identity or "").strip():
            missing.append("alias" if session.is_live else "real_name")
        if not article.description:
            missing.append("description")
        if missing:
            capture_rejections.labels(reason="validation").inc()
            raise ValidationError(missing)

        # Read-only phase
        customer = await self._lookup_customer(session, identity)
        order = await self._open_order_for(session.session_id, customer.id) if customer else None
        lines = await self.order_lines(order.id) if order else []

        match = next(
            (
                existing for existing in lines
                if existing.code == article.code and existing.description == article.description
            ),
            None
        )

        enforce_codes = session.is_live and session.enforce_unique_codes

        if match is None and enforce_codes:
            if article.code in await self.session_codes(session.session_id):
                capture_rejections.labels(reason="duplicate_code").inc()
                logger.warning(
                    f"Duplicate code {article.code} in session",
                    extra={"session_id": session.session_id}
                )
                raise DuplicateCode(article.code, session.session_id)

        decision = None
        if match is not None:
            message = (
                f"{article.code} - {article.description} is already in order "
                f"{order.order_number} (quantity {match.quantity}). Merge quantities?"
            )
            decision = await self._ask(confirmation or self.confirmation, message)

            if decision is MergeDecision.ABORT:
                capture_rejections.labels(reason="aborted").inc()
                logger.info("Capture aborted by operator", extra={"order_id": order.id})
                raise CaptureAborted("Capture dismissed, nothing recorded")

            if decision is MergeDecision.DUPLICATE and enforce_codes:
                # A second line with the code would break per-session uniqueness
                capture_rejections.labels(reason="duplicate_code").inc()
                raise DuplicateCode(article.code, session.session_id)

        # Write phase
        if customer is None:
            customer = await self._resolve_customer(session, identity)

        order_created = False
        if order is None:
            order = await self._create_order(session, customer.id)
            order_created = True

        if decision is MergeDecision.MERGE:
            line = await self._merge_into(match, article.quantity)
            outcome = "merged"
        else:
            line = await self._append_line(order.id, article)
            outcome = "duplicated" if decision is MergeDecision.DUPLICATE else "appended"

        total = await self.refresh_total(order.id)
        order.total_amount = total

        lines_captured.labels(outcome=outcome).inc()
        logger.info(
            f"Line {outcome}: {line.code} x{line.quantity}",
            extra={"order_id": order.id, "line_id": line.id, "total": total}
        )

        return CaptureResult(line=line, order=order, outcome=outcome, order_created=order_created)

    async def capture_regular_sale(
        self,
        session: CaptureSession,
        real_name: str,
        phone: Optional[str],
        articles: List[Dict[str, Any]]
    ) -> RegularSaleResult:
        """
        Record an in-person sale as one new order.

        Every article is validated before anything is written. Blank
        descriptions become ``Article <n>``.
        """
        if not articles:
            raise ValidationError(["articles"])
        if not (real_name or "").strip():
            raise ValidationError(["real_name"])

        parsed = []
        for index, raw in enumerate(articles):
            article = self._article(
                raw.get("code"),
                raw.get("description"),
                raw.get("unit_price"),
                raw.get("quantity", 1)
            )
            if not article.description:
                article.description = f"Article {index + 1}"
            parsed.append(article)

        customer = await self.customers.resolve_or_create_by_real_name(real_name)
        await self.contacts.add_or_reuse(customer.id, ContactKind.PHONE, phone)

        order = await self._create_order(session, customer.id)
        lines = [await self._append_line(order.id, article) for article in parsed]

        order.total_amount = await self.refresh_total(order.id)
        lines_captured.labels(outcome="appended").inc(len(lines))

        logger.info(
            f"Regular sale recorded: {order.order_number}",
            extra={"order_id": order.id, "line_count": len(lines), "total": order.total_amount}
        )
        return RegularSaleResult(order=order, customer=customer, lines=lines)
