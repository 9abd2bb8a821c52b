"""
Customer Directory
==================
Resolves the handle typed by an operator into a stable customer record.

- Live sales identify customers by platform alias (unique, case-normalized).
  Resolution is a single upsert on the unique alias, so concurrent captures
  for the same new alias converge on one customer.
- Regular sales identify customers by real name. Real names are not unique,
  so two concurrent captures for the same new name can create two customers.
"""

import re
import time
import uuid
import logging
from datetime import datetime
from typing import List, Optional

from contacts import ContactRegistry
from errors import Conflict, NotFound, StoreError, UniqueViolation, ValidationError
from models import ContactKind, Customer, CustomerContacts
from store import DataStore


logger = logging.getLogger(__name__)


MAX_ALIAS_ATTEMPTS = 3


def normalize_alias(alias: Optional[str]) -> str:
    """Aliases are compared trimmed and lower-cased."""
    return (alias or "").strip().lower()


def synthesize_alias(real_name: str, suffix: Optional[str] = None) -> str:
    """Internal alias for a customer known only by real name."""
    slug = re.sub(r"\s+", "_", real_name.strip().lower())
    suffix = suffix or str(int(time.time() * 1000))[-6:]
    return f"@{slug}_{suffix}"


class CustomerDirectory:
    """Customer identity lookups and profile maintenance."""

    def __init__(self, store: DataStore, contacts: ContactRegistry):
        self.store = store
        self.contacts = contacts

    # ========================================================================
    # LOOKUPS
    # ========================================================================

    async def get(self, customer_id: str) -> Customer:
        row = await self.store.get("customers", customer_id)
        if row is None:
            raise NotFound("customer", customer_id)
        return Customer.from_record(row)

    async def get_by_alias(self, alias: str) -> Optional[Customer]:
        normalized = normalize_alias(alias)
        if not normalized:
            return None
        rows = await self.store.find("customers", {"alias": normalized}, limit=1)
        return Customer.from_record(rows[0]) if rows else None

    async def get_by_real_name(self, real_name: str) -> Optional[Customer]:
        name = (real_name or "").strip()
        if not name:
            return None
        rows = await self.store.find(
            "customers",
            {"real_name": name},
            order=[("created_at", False)],
            limit=1
        )
        return Customer.from_record(rows[0]) if rows else None

    async def search(self, query: str, limit: int = 20) -> List[Customer]:
        """Case-insensitive substring match on alias or real name."""
        text = (query or "").strip()
        if not text:
            return []

        pattern = f"%{text}%"
        by_alias = await self.store.find("customers", {"alias": ("ilike", pattern)})
        by_name = await self.store.find("customers", {"real_name": ("ilike", pattern)})

        merged = {row["id"]: row for row in by_alias + by_name}
        rows = sorted(
            merged.values(),
            key=lambda r: r.get("updated_at") or r.get("created_at") or "",
            reverse=True
        )
        return [Customer.from_record(row) for row in rows[:limit]]

    async def load_with_contacts(self, customer_id: str) -> CustomerContacts:
        customer = await self.get(customer_id)
        phones = await self.contacts.list_entries(customer_id, ContactKind.PHONE)
        addresses = await self.contacts.list_entries(customer_id, ContactKind.ADDRESS)
        return CustomerContacts(customer=customer, phones=phones, addresses=addresses)

    # ========================================================================
    # RESOLUTION
    # ========================================================================

    async def resolve_or_create_by_alias(self, alias: str) -> Customer:
        """
        Find or create the customer for a live-platform alias.

        Idempotent: the upsert is keyed on the unique alias and ignores an
        existing row, then the row is read back by alias.
        """
        normalized = normalize_alias(alias)
        if not normalized:
            raise ValidationError(["alias"])

        now = datetime.utcnow().isoformat()
        await self.store.upsert(
            "customers",
            {"alias": normalized, "created_at": now, "updated_at": now},
            on_conflict="alias",
            ignore_duplicates=True
        )

        customer = await self.get_by_alias(normalized)
        if customer is None:
            raise StoreError(f"Customer upsert for {normalized!r} returned nothing")

        logger.debug(f"Resolved alias {normalized} -> {customer.id}")
        return customer

    async def resolve_or_create_by_real_name(self, real_name: str) -> Customer:
        """
        Find the oldest customer with exactly this real name, or create one
        with a synthesized alias.

        Not safe against two operators creating the same new name at once.
        """
        name = (real_name or "").strip()
        if not name:
            raise ValidationError(["real_name"])

        existing = await self.get_by_real_name(name)
        if existing:
            logger.info("Existing customer found for real name", extra={"customer_id": existing.id})
            return existing

        now = datetime.utcnow().isoformat()
        suffix = None
        for attempt in range(MAX_ALIAS_ATTEMPTS):
            alias = synthesize_alias(name, suffix)
            try:
                row = await self.store.insert(
                    "customers",
                    {"alias": alias, "real_name": name, "created_at": now, "updated_at": now}
                )
            except UniqueViolation:
                logger.info(f"Synthesized alias {alias} taken, retrying")
                suffix = uuid.uuid4().hex[:6]
                continue

            logger.info(
                "Customer created for regular sale",
                extra={"customer_id": row["id"], "alias": alias}
            )
            return Customer.from_record(row)

        raise Conflict(f"Could not allocate an alias for {name!r}", real_name=name)

    # ========================================================================
    # PROFILE
    # ========================================================================

    async def update_profile(
        self,
        customer_id: str,
        real_name: Optional[str] = None,
        photo_url: Optional[str] = None,
        alias: Optional[str] = None
    ) -> Customer:
        """Patch the provided profile fields; None leaves a field unchanged."""
        patch = {}
        if real_name is not None:
            patch["real_name"] = real_name.strip() or None
        if photo_url is not None:
            patch["photo_url"] = photo_url.strip() or None
        if alias is not None:
            normalized = normalize_alias(alias)
            if not normalized:
                raise ValidationError(["alias"])
            patch["alias"] = normalized

        if not patch:
            return await self.get(customer_id)

        patch["updated_at"] = datetime.utcnow().isoformat()

        try:
            row = await self.store.update("customers", customer_id, patch)
        except UniqueViolation:
            raise Conflict(f"Alias already used: {patch.get('alias')}", alias=patch.get("alias"))

        return Customer.from_record(row)

    async def delete(self, customer_id: str) -> None:
        """
        Delete a customer with its phones and addresses.

        Raises:
            Conflict: the customer still has orders
        """
        await self.get(customer_id)

        orders = await self.store.find("orders", {"customer_id": customer_id}, limit=1)
        if orders:
            logger.warning(
                "Refusing to delete customer with orders",
                extra={"customer_id": customer_id}
            )
            raise Conflict("Cannot delete a customer who has orders", customer_id=customer_id)

        await self.contacts.remove_all(customer_id)
        await self.store.delete("customers", customer_id)
        logger.info("Customer deleted", extra={"customer_id": customer_id})
