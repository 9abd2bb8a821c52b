"""
Sale Records
============
Typed views over the rows kept in the data store.

Records are plain dataclasses built from store rows (``from_record``) and
exported back with ``to_dict``. Enum columns are stored by value.
"""

import logging
from typing import Dict, List, Any, Optional, Type, TypeVar
from dataclasses import dataclass, field, asdict
from enum import Enum


logger = logging.getLogger(__name__)


# ============================================================================
# ENUMS
# ============================================================================

class SessionType(Enum):
    """Kind of sale event; selects the capture form and identity field."""
    LIVE = "LIVE"          # Live broadcast, identity is the platform alias
    REGULAR = "REGULAR"    # In-person sale, identity is the real name


class SessionStatus(Enum):
    OPEN = "open"
    CLOSED = "closed"


class ContactKind(Enum):
    """Contact entry kinds, one table each."""
    PHONE = "phone"
    ADDRESS = "address"

    @property
    def table(self) -> str:
        return "customer_phones" if self is ContactKind.PHONE else "customer_addresses"

    @property
    def column(self) -> str:
        return self.value


class OrderStatus(Enum):
    """
    Order lifecycle states.

    State flow:
        CREATED -> CHECKOUT_IN_PROGRESS -> CONFIRMED -> IN_PREPARATION -> DELIVERED
        any non-terminal state -> CANCELLED
    """
    CREATED = "CREATED"
    CHECKOUT_IN_PROGRESS = "CHECKOUT_IN_PROGRESS"
    CONFIRMED = "CONFIRMED"
    IN_PREPARATION = "IN_PREPARATION"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class DeliveryMode(Enum):
    PICKUP = "PICKUP"
    CARRIER_DELIVERY = "CARRIER_DELIVERY"


class PaymentMethod(Enum):
    CASH = "CASH"
    MVOLA = "MVOLA"
    ORANGE_MONEY = "ORANGE_MONEY"
    AIRTEL_MONEY = "AIRTEL_MONEY"

    @property
    def is_mobile_money(self) -> bool:
        return self is not PaymentMethod.CASH


MOBILE_MONEY_METHODS = tuple(m for m in PaymentMethod if m.is_mobile_money)


E = TypeVar("E", bound=Enum)


def parse_enum(enum_cls: Type[E], value: Any) -> Optional[E]:
    """
    Parse an enum from its value or name (case-insensitive).

    Returns None for empty input, raises ValueError for unknown values.
    """
    if value is None or value == "":
        return None
    if isinstance(value, enum_cls):
        return value

    text = str(value).strip()
    for member in enum_cls:
        if text.upper() in (member.name, str(member.value).upper()):
            return member

    raise ValueError(f"Unknown {enum_cls.__name__}: {value!r}")


def _enum_or_none(enum_cls: Type[E], value: Any) -> Optional[E]:
    """Lenient parse used when reading rows; unknown values become None."""
    try:
        return parse_enum(enum_cls, value)
    except ValueError:
        logger.warning(f"Ignoring unknown {enum_cls.__name__} value in row: {value!r}")
        return None


def _to_float(value: Any) -> float:
    if value is None or value == "":
        return 0.0
    return float(value)


# ============================================================================
# RECORDS
# ============================================================================

@dataclass
class Customer:
    id: str
    alias: str
    real_name: Optional[str] = None
    photo_url: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_record(cls, row: Dict[str, Any]) -> "Customer":
        return cls(
            id=row["id"],
            alias=row["alias"],
            real_name=row.get("real_name"),
            photo_url=row.get("photo_url"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at")
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ContactEntry:
    """A phone number or an address owned by a customer."""
    id: str
    customer_id: str
    kind: ContactKind
    value: str
    is_primary: bool = False
    created_at: Optional[str] = None

    @classmethod
    def from_record(cls, kind: ContactKind, row: Dict[str, Any]) -> "ContactEntry":
        return cls(
            id=row["id"],
            customer_id=row["customer_id"],
            kind=kind,
            value=row[kind.column],
            is_primary=bool(row.get("is_primary")),
            created_at=row.get("created_at")
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "kind": self.kind.value,
            "value": self.value,
            "is_primary": self.is_primary,
            "created_at": self.created_at
        }


@dataclass
class Session:
    id: str
    name: str
    session_type: SessionType
    status: SessionStatus
    start_at: Optional[str] = None
    closed_at: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.status is SessionStatus.OPEN

    @classmethod
    def from_record(cls, row: Dict[str, Any]) -> "Session":
        return cls(
            id=row["id"],
            name=row.get("name") or "",
            session_type=parse_enum(SessionType, row.get("session_type")) or SessionType.LIVE,
            status=parse_enum(SessionStatus, row.get("status")) or SessionStatus.OPEN,
            start_at=row.get("start_at"),
            closed_at=row.get("closed_at")
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "session_type": self.session_type.value,
            "status": self.status.value,
            "start_at": self.start_at,
            "closed_at": self.closed_at
        }


@dataclass
class OrderLine:
    id: str
    order_id: str
    code: str
    description: str
    unit_price: float
    quantity: int
    line_total: float
    created_at: Optional[str] = None

    @classmethod
    def from_record(cls, row: Dict[str, Any]) -> "OrderLine":
        unit_price = _to_float(row.get("unit_price"))
        quantity = int(row.get("quantity") or 0)
        line_total = row.get("line_total")
        return cls(
            id=row["id"],
            order_id=row["order_id"],
            code=row.get("code") or "",
            description=row.get("description") or "",
            unit_price=unit_price,
            quantity=quantity,
            line_total=_to_float(line_total) if line_total is not None else unit_price * quantity,
            created_at=row.get("created_at")
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Order:
    id: str
    session_id: str
    customer_id: str
    order_number: str
    status: OrderStatus = OrderStatus.CREATED
    delivery_mode: Optional[DeliveryMode] = None
    delivery_date: Optional[str] = None
    is_province: bool = False
    transport: Optional[str] = None
    payment_method: Optional[PaymentMethod] = None
    payment_reference: Optional[str] = None
    deposit_amount: float = 0.0
    total_amount: float = 0.0
    customer_phone_id: Optional[str] = None
    customer_address_id: Optional[str] = None
    checkout_started_at: Optional[str] = None
    confirmed_at: Optional[str] = None
    cancelled_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_record(cls, row: Dict[str, Any]) -> "Order":
        return cls(
            id=row["id"],
            session_id=row["session_id"],
            customer_id=row["customer_id"],
            order_number=row["order_number"],
            status=_enum_or_none(OrderStatus, row.get("status")) or OrderStatus.CREATED,
            delivery_mode=_enum_or_none(DeliveryMode, row.get("delivery_mode")),
            delivery_date=row.get("delivery_date"),
            is_province=bool(row.get("is_province")),
            transport=row.get("transport"),
            payment_method=_enum_or_none(PaymentMethod, row.get("payment_method")),
            payment_reference=row.get("payment_reference"),
            deposit_amount=_to_float(row.get("deposit_amount")),
            total_amount=_to_float(row.get("total_amount")),
            customer_phone_id=row.get("customer_phone_id"),
            customer_address_id=row.get("customer_address_id"),
            checkout_started_at=row.get("checkout_started_at"),
            confirmed_at=row.get("confirmed_at"),
            cancelled_at=row.get("cancelled_at"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at")
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["delivery_mode"] = self.delivery_mode.value if self.delivery_mode else None
        data["payment_method"] = self.payment_method.value if self.payment_method else None
        return data


@dataclass
class CustomerContacts:
    """Customer with every phone and address, primary entries first."""
    customer: Customer
    phones: List[ContactEntry] = field(default_factory=list)
    addresses: List[ContactEntry] = field(default_factory=list)

    @property
    def primary_phone(self) -> Optional[ContactEntry]:
        return next((p for p in self.phones if p.is_primary), None)

    @property
    def primary_address(self) -> Optional[ContactEntry]:
        return next((a for a in self.addresses if a.is_primary), None)

    def to_dict(self) -> Dict[str, Any]:
        primary_phone = self.primary_phone
        primary_address = self.primary_address
        return {
            **self.customer.to_dict(),
            "phones": [p.to_dict() for p in self.phones],
            "addresses": [a.to_dict() for a in self.addresses],
            "primary_phone": primary_phone.value if primary_phone else None,
            "primary_address": primary_address.value if primary_address else None
        }


@dataclass
class CheckoutContext:
    """Everything the checkout form reads for one order."""
    order: Order
    contacts: CustomerContacts
    lines: List[OrderLine] = field(default_factory=list)

    @property
    def customer(self) -> Customer:
        return self.contacts.customer

    @property
    def total(self) -> float:
        return sum(line.line_total for line in self.lines)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order": self.order.to_dict(),
            "customer": self.contacts.to_dict(),
            "lines": [line.to_dict() for line in self.lines],
            "total": self.total
        }
