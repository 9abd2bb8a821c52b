"""
Contact Registry
================
Phones and addresses owned by customers.

Invariant: at most one primary entry per (customer, kind) at any time.
Promotion goes through the store's ``set_primary_contact`` procedure, which
clears the siblings and sets the target in one atomic step. The store also
carries a partial unique index on (customer_id) where is_primary, so a racing
insert of a second primary is rejected rather than accepted.
"""

import logging
from typing import List, Optional

from errors import NotFound, UniqueViolation, ValidationError
from models import ContactEntry, ContactKind
from store import DataStore, SET_PRIMARY_CONTACT


logger = logging.getLogger(__name__)


def normalize_contact_value(value: Optional[str]) -> str:
    return (value or "").strip()


class ContactRegistry:
    """Owns the one-primary-per-kind invariant."""

    def __init__(self, store: DataStore):
        self.store = store

    async def list_entries(self, customer_id: str, kind: ContactKind) -> List[ContactEntry]:
        """All entries of a kind, primary first, then oldest first."""
        rows = await self.store.find(
            kind.table,
            {"customer_id": customer_id},
            order=[("is_primary", True), ("created_at", False)]
        )
        return [ContactEntry.from_record(kind, row) for row in rows]

    async def primary_entry(
        self,
        customer_id: str,
        kind: ContactKind,
        fallback_to_oldest: bool = False
    ) -> Optional[ContactEntry]:
        """
        Primary entry of a kind.

        With fallback_to_oldest, a customer with no primary gets their
        oldest entry instead (display use only, never for validation).
        """
        entries = await self.list_entries(customer_id, kind)
        primary = next((e for e in entries if e.is_primary), None)
        if primary is None and fallback_to_oldest and entries:
            return entries[0]
        return primary

    async def get_entry(self, kind: ContactKind, entry_id: str) -> ContactEntry:
        row = await self.store.get(kind.table, entry_id)
        if row is None:
            raise NotFound(kind.table, entry_id)
        return ContactEntry.from_record(kind, row)

    async def set_primary(self, customer_id: str, kind: ContactKind, entry_id: str) -> ContactEntry:
        """
        Make ``entry_id`` the customer's only primary entry of ``kind``.

        Raises:
            NotFound: entry missing or owned by another customer
        """
        row = await self.store.rpc(
            SET_PRIMARY_CONTACT,
            {
                "p_table": kind.table,
                "p_customer_id": customer_id,
                "p_entry_id": entry_id
            }
        )

        if not row:
            logger.warning(
                f"Cannot set primary {kind.value}: entry not owned by customer",
                extra={"customer_id": customer_id, "entry_id": entry_id}
            )
            raise NotFound(kind.table, entry_id)

        logger.info(
            f"Primary {kind.value} set",
            extra={"customer_id": customer_id, "entry_id": entry_id}
        )
        return ContactEntry.from_record(kind, row)

    async def add_or_reuse(
        self,
        customer_id: str,
        kind: ContactKind,
        value: Optional[str],
        make_primary: bool = False
    ) -> Optional[ContactEntry]:
        """
        Record a contact value without duplicating it.

        An existing entry with the same trimmed value is reused (and promoted
        when make_primary). A new entry is primary when it is the customer's
        first of that kind or when make_primary is requested. A customer whose
        primary was removed stays without one until an entry is promoted.

        Returns:
            The entry, or None for a blank value
        """
        normalized = normalize_contact_value(value)
        if not normalized:
            return None

        existing = await self.store.find(
            kind.table,
            {"customer_id": customer_id, kind.column: normalized},
            limit=1
        )

        if existing:
            entry = ContactEntry.from_record(kind, existing[0])
            if make_primary and not entry.is_primary:
                return await self.set_primary(customer_id, kind, entry.id)
            return entry

        siblings = await self.list_entries(customer_id, kind)

        # Only a first entry goes in as primary; the partial unique index
        # rejects it if another operator inserted a primary meanwhile.
        insert_as_primary = not siblings
        record = {
            "customer_id": customer_id,
            kind.column: normalized,
            "is_primary": insert_as_primary
        }

        try:
            row = await self.store.insert(kind.table, record)
        except UniqueViolation:
            logger.info(
                f"Concurrent primary {kind.value} detected, inserting as secondary",
                extra={"customer_id": customer_id}
            )
            row = await self.store.insert(kind.table, {**record, "is_primary": False})

        entry = ContactEntry.from_record(kind, row)

        if make_primary and not entry.is_primary:
            entry = await self.set_primary(customer_id, kind, entry.id)

        logger.info(
            f"Added {kind.value} for customer",
            extra={"customer_id": customer_id, "entry_id": entry.id, "is_primary": entry.is_primary}
        )
        return entry

    async def update_value(self, kind: ContactKind, entry_id: str, value: str) -> ContactEntry:
        """Edit an entry's value in place (primary flag untouched)."""
        normalized = normalize_contact_value(value)
        if not normalized:
            raise ValidationError([kind.value])

        row = await self.store.update(kind.table, entry_id, {kind.column: normalized})
        return ContactEntry.from_record(kind, row)

    async def remove(self, kind: ContactKind, entry_id: str) -> ContactEntry:
        """
        Delete an entry.

        Removing the primary entry is allowed and leaves the customer without
        a primary of that kind until another entry is promoted. Checkout then
        reports the field as missing.
        """
        entry = await self.get_entry(kind, entry_id)
        await self.store.delete(kind.table, entry_id)

        if entry.is_primary:
            logger.warning(
                f"Primary {kind.value} removed; customer has no primary {kind.value}",
                extra={"customer_id": entry.customer_id, "entry_id": entry_id}
            )
        else:
            logger.info(f"Removed {kind.value}", extra={"entry_id": entry_id})

        return entry

    async def remove_all(self, customer_id: str) -> int:
        """Delete every phone and address of a customer."""
        removed = 0
        for kind in ContactKind:
            removed += await self.store.delete_where(kind.table, {"customer_id": customer_id})
        return removed
