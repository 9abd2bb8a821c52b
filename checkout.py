"""
Checkout Validator
==================
Pure readiness rules for the checkout form.

compute_readiness() reports EVERY missing or invalid field, in a fixed order,
never just the first. Nothing in this module touches the store.

Two deposit checks live here on purpose and are used in different places:
- the per-payment-method rules inside compute_readiness (checkout form)
- meets_minimum_deposit, deposit >= 50% of total (pending view)
"""

import math
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from prometheus_client import Counter

from models import (
    Customer,
    CustomerContacts,
    MOBILE_MONEY_METHODS,
    DeliveryMode,
    Order,
    OrderLine,
    PaymentMethod,
    parse_enum,
)


logger = logging.getLogger(__name__)


checkout_missing_fields = Counter(
    'sale_checkout_missing_fields_total',
    'Fields reported missing by readiness checks',
    ['field']
)


class CheckoutField(Enum):
    """Field ids reported in missing_fields, in evaluation order."""
    REAL_NAME = "real_name"
    PHONE = "phone"
    ADDRESS = "address"
    DELIVERY_MODE = "delivery_mode"
    DELIVERY_DATE = "delivery_date"
    PAYMENT_METHOD = "payment_method"
    TRANSPORT = "transport"
    DEPOSIT_AMOUNT = "deposit_amount"
    PAYMENT_REFERENCE = "payment_reference"
    DEPOSIT_EXCEEDS_TOTAL = "deposit_exceeds_total"


# Fields the checkout form may edit
EDITABLE_FIELDS: Tuple[str, ...] = (
    "real_name",
    "phone",
    "address",
    "delivery_mode",
    "delivery_date",
    "is_province",
    "transport",
    "payment_method",
    "payment_reference",
    "deposit_amount",
)


# Editable fields stored on the order row itself
ORDER_COLUMNS: Tuple[str, ...] = (
    "delivery_mode",
    "delivery_date",
    "is_province",
    "transport",
    "payment_method",
    "payment_reference",
    "deposit_amount",
)

# Values written by the earlier French-labelled forms
_LEGACY_PAYMENT_METHODS = {"especes": PaymentMethod.CASH, "espèces": PaymentMethod.CASH}
_LEGACY_DELIVERY_MODES = {
    "recuperation": DeliveryMode.PICKUP,
    "récupération": DeliveryMode.PICKUP,
    "via service de livraison": DeliveryMode.CARRIER_DELIVERY,
}

_TRUE = ("true", "1", "yes", "on")
_FALSE = ("false", "0", "no", "off", "")


def _text(raw: Any) -> Optional[str]:
    if raw is None:
        return None
    return str(raw).strip() or None


def _parse_bool(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, int) and raw in (0, 1):
        return bool(raw)
    if isinstance(raw, str) and raw.strip().lower() in _TRUE + _FALSE:
        return raw.strip().lower() in _TRUE
    raise ValueError(f"Not a boolean: {raw!r}")


def _parse_date(raw: Any) -> Optional[str]:
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return raw.date().isoformat()
    if isinstance(raw, date):
        return raw.isoformat()
    text = str(raw).strip()
    if len(text) == 10:
        return date.fromisoformat(text).isoformat()
    # Full ISO timestamp
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text).date().isoformat()


def _parse_deposit(raw: Any) -> float:
    if raw is None or raw == "":
        return 0.0
    if isinstance(raw, bool):
        raise ValueError("Deposit cannot be a boolean")
    amount = float(raw)
    if not math.isfinite(amount) or amount < 0:
        raise ValueError(f"Invalid deposit: {raw!r}")
    return amount


def _parse_choice(enum_cls, legacy: Dict[str, Enum], raw: Any):
    if isinstance(raw, str) and raw.strip().lower() in legacy:
        return legacy[raw.strip().lower()]
    return parse_enum(enum_cls, raw)


def parse_checkout_value(field_name: str, raw: Any) -> Any:
    """
    Normalize one form value for storage.

    Raises:
        ValueError: unknown field or unparseable value
    """
    if field_name not in EDITABLE_FIELDS:
        raise ValueError(f"Unknown checkout field: {field_name}")

    if field_name in ("phone", "address"):
        value = _text(raw)
        if value is None:
            raise ValueError(f"{field_name} cannot be blank")
        return value
    if field_name == "delivery_mode":
        return _parse_choice(DeliveryMode, _LEGACY_DELIVERY_MODES, raw)
    if field_name == "payment_method":
        return _parse_choice(PaymentMethod, _LEGACY_PAYMENT_METHODS, raw)
    if field_name == "delivery_date":
        return _parse_date(raw)
    if field_name == "is_province":
        return _parse_bool(raw)
    if field_name == "deposit_amount":
        return _parse_deposit(raw)

    return _text(raw)


def parse_checkout_patch(patch: Dict[str, Any]) -> Tuple[Dict[str, Any], List[str]]:
    """Parse every field of a patch; returns (values, invalid field ids)."""
    values: Dict[str, Any] = {}
    invalid: List[str] = []

    for name, raw in patch.items():
        try:
            values[name] = parse_checkout_value(name, raw)
        except (TypeError, ValueError) as e:
            logger.info(f"Rejected checkout value for {name}: {e}")
            invalid.append(name)

    return values, invalid


@dataclass
class Readiness:
    missing_fields: List[str] = field(default_factory=list)

    @property
    def can_finalize(self) -> bool:
        return not self.missing_fields

    def to_dict(self) -> Dict[str, Any]:
        return {"missing_fields": list(self.missing_fields), "can_finalize": self.can_finalize}


def _blank(value: Optional[str]) -> bool:
    return value is None or str(value).strip() == ""


def order_total(lines: Sequence[OrderLine]) -> float:
    return sum(line.line_total for line in lines)


def allowed_payment_methods(is_province: bool) -> Tuple[PaymentMethod, ...]:
    """Province orders are paid by mobile money only."""
    if is_province:
        return MOBILE_MONEY_METHODS
    return tuple(PaymentMethod)


def compute_readiness(
    order: Order,
    customer: Optional[Customer],
    contacts: CustomerContacts,
    lines: Optional[Sequence[OrderLine]] = None
) -> Readiness:
    """
    Evaluate every checkout rule against an order snapshot.

    ``lines`` gives the authoritative total; without it the order's cached
    total_amount is used. Primary phone and address must be flagged
    primary, the oldest-entry display fallback does not count.
    """
    customer = customer or contacts.customer
    total = order_total(lines) if lines is not None else order.total_amount
    deposit = order.deposit_amount or 0.0
    method = order.payment_method

    missing: List[CheckoutField] = []

    if customer is None or _blank(customer.real_name):
        missing.append(CheckoutField.REAL_NAME)
    if contacts.primary_phone is None:
        missing.append(CheckoutField.PHONE)
    if contacts.primary_address is None:
        missing.append(CheckoutField.ADDRESS)

    if order.delivery_mode not in (DeliveryMode.PICKUP, DeliveryMode.CARRIER_DELIVERY):
        missing.append(CheckoutField.DELIVERY_MODE)
    if _blank(order.delivery_date):
        missing.append(CheckoutField.DELIVERY_DATE)

    if method is None or method not in allowed_payment_methods(order.is_province):
        missing.append(CheckoutField.PAYMENT_METHOD)

    if order.is_province:
        if _blank(order.transport):
            missing.append(CheckoutField.TRANSPORT)
        if deposit <= 0:
            missing.append(CheckoutField.DEPOSIT_AMOUNT)
    elif method is not PaymentMethod.CASH and deposit <= 0:
        # Unset method counts as not cash
        missing.append(CheckoutField.DEPOSIT_AMOUNT)

    if method is not None and method.is_mobile_money and _blank(order.payment_reference):
        missing.append(CheckoutField.PAYMENT_REFERENCE)

    if deposit > total:
        missing.append(CheckoutField.DEPOSIT_EXCEEDS_TOTAL)

    for item in missing:
        checkout_missing_fields.labels(field=item.value).inc()

    return Readiness(missing_fields=[item.value for item in missing])


def meets_minimum_deposit(order: Order, lines: Sequence[OrderLine], ratio: float = 0.5) -> bool:
    """Pending-view check: the order has lines and deposit >= ratio * total."""
    if not lines:
        return False
    return (order.deposit_amount or 0.0) >= order_total(lines) * ratio


def is_fully_paid(deposit: float, total: float) -> bool:
    return total > 0 and deposit == total


def paid_toggle_deposit(checked: bool, total: float) -> float:
    """The "paid" checkbox sets the deposit, it is not stored itself."""
    return total if checked else 0.0


def completion_step(
    order: Order,
    customer: Optional[Customer],
    contacts: CustomerContacts
) -> int:
    """
    Progress indicator position.

    0 personal info, 1 delivery and payment, 2 deposit, 3 complete.
    """
    customer = customer or contacts.customer
    if (
        customer is None
        or _blank(customer.real_name)
        or contacts.primary_phone is None
        or contacts.primary_address is None
    ):
        return 0

    if order.delivery_mode is None or _blank(order.delivery_date) or order.payment_method is None:
        return 1

    deposit = order.deposit_amount or 0.0
    if order.is_province and deposit <= 0:
        return 2
    if not order.is_province and order.payment_method is not PaymentMethod.CASH and deposit <= 0:
        return 2

    return 3
