"""
Data Store Contract
===================
Generic async query/update API the sale engine runs against.

Two backends implement it:
- InMemoryStore (this module): local development and tests
- SupabaseStore (db.py): production

Filters are ``{column: value}`` for equality or ``{column: (op, value)}``
with op one of: eq, neq, in, ilike, is.
Ordering is a list of ``(column, descending)`` pairs.
"""

import re
import uuid
import logging
import threading
from abc import ABC, abstractmethod
from copy import deepcopy
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Any, Optional, Tuple, Callable

from errors import NotFound, StoreError, UniqueViolation


logger = logging.getLogger(__name__)


Filters = Dict[str, Any]
Ordering = List[Tuple[str, bool]]

SET_PRIMARY_CONTACT = "set_primary_contact"
CONTACT_TABLES = ("customer_phones", "customer_addresses")


class DataStore(ABC):
    """Async store used by every engine component."""

    @abstractmethod
    async def get(self, table: str, key: str) -> Optional[Dict[str, Any]]:
        """Fetch one row by primary key, None if missing."""

    @abstractmethod
    async def find(
        self,
        table: str,
        filters: Optional[Filters] = None,
        order: Optional[Ordering] = None,
        limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """Fetch rows matching every filter."""

    @abstractmethod
    async def insert(self, table: str, record: Dict[str, Any]) -> Dict[str, Any]:
        """Insert one row and return it with generated columns."""

    @abstractmethod
    async def update(self, table: str, key: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        """Patch one row by key. Raises NotFound if missing."""

    @abstractmethod
    async def update_where(
        self,
        table: str,
        filters: Filters,
        patch: Dict[str, Any]
    ) -> List[Dict[str, Any]]:
        """
        Conditional update.

        Patches every row matching the filters in one store operation and
        returns the updated rows (empty when nothing matched).
        """

    @abstractmethod
    async def delete(self, table: str, key: str) -> None:
        """Delete one row by key."""

    @abstractmethod
    async def delete_where(self, table: str, filters: Filters) -> int:
        """Delete every matching row, returning the count."""

    @abstractmethod
    async def upsert(
        self,
        table: str,
        record: Dict[str, Any],
        on_conflict: str,
        ignore_duplicates: bool = True
    ) -> List[Dict[str, Any]]:
        """
        Insert keyed on a unique column.

        With ignore_duplicates an existing row is left untouched and the
        result is empty; otherwise the existing row is patched.
        """

    @abstractmethod
    async def rpc(self, name: str, params: Dict[str, Any]) -> Any:
        """Call a server-side atomic procedure."""


# ============================================================================
# FILTER MATCHING (shared by in-memory backend)
# ============================================================================

def _ilike(pattern: str, value: Any) -> bool:
    if value is None:
        return False
    regex = "^" + re.escape(str(pattern)).replace("%", ".*").replace("_", ".") + "$"
    return re.match(regex, str(value), flags=re.IGNORECASE | re.DOTALL) is not None


def matches(row: Dict[str, Any], filters: Optional[Filters]) -> bool:
    """Check a row against store filters."""
    for column, condition in (filters or {}).items():
        if isinstance(condition, tuple):
            op, expected = condition
        else:
            op, expected = "eq", condition

        actual = row.get(column)

        if op in ("eq", "is"):
            if actual != expected:
                return False
        elif op == "neq":
            if actual == expected:
                return False
        elif op == "in":
            if actual not in expected:
                return False
        elif op == "ilike":
            if not _ilike(expected, actual):
                return False
        else:
            raise StoreError(f"Unsupported filter operator: {op}")

    return True


def sort_rows(rows: List[Dict[str, Any]], order: Optional[Ordering]) -> List[Dict[str, Any]]:
    """Stable multi-column sort; None sorts first ascending."""
    for column, descending in reversed(order or []):
        rows.sort(
            key=lambda r: (r.get(column) is not None, r.get(column) if r.get(column) is not None else 0),
            reverse=descending
        )
    return rows


# ============================================================================
# IN-MEMORY BACKEND
# ============================================================================

@dataclass(frozen=True)
class UniqueConstraint:
    """Unique index, optionally partial (only rows matching ``where``)."""
    name: str
    columns: Tuple[str, ...]
    where: Optional[Filters] = None

    def key(self, row: Dict[str, Any]) -> Optional[Tuple[Any, ...]]:
        if self.where and not matches(row, self.where):
            return None
        values = tuple(row.get(c) for c in self.columns)
        if any(v is None for v in values):
            return None
        return values


DEFAULT_CONSTRAINTS: Dict[str, List[UniqueConstraint]] = {
    "customers": [UniqueConstraint("customers_alias_key", ("alias",))],
    "orders": [UniqueConstraint("orders_order_number_key", ("order_number",))],
    "sessions": [
        UniqueConstraint("sessions_single_open", ("status",), where={"status": "open"})
    ],
    "customer_phones": [
        UniqueConstraint(
            "customer_phones_one_primary",
            ("customer_id",),
            where={"is_primary": True}
        )
    ],
    "customer_addresses": [
        UniqueConstraint(
            "customer_addresses_one_primary",
            ("customer_id",),
            where={"is_primary": True}
        )
    ],
}


class InMemoryStore(DataStore):
    """
    Process-local store with the same constraints as the Supabase schema.

    Every operation runs under one lock, so a multi-row update is observed
    either fully applied or not at all.
    """

    def __init__(
        self,
        constraints: Optional[Dict[str, List[UniqueConstraint]]] = None,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self._tables: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._constraints = constraints if constraints is not None else DEFAULT_CONSTRAINTS
        self._clock = clock
        self._lock = threading.RLock()

        self.read_count = 0
        self.write_count = 0

        self._procedures: Dict[str, Callable[[Dict[str, Any]], Any]] = {
            SET_PRIMARY_CONTACT: self._set_primary_contact
        }

    def _table(self, table: str) -> Dict[str, Dict[str, Any]]:
        return self._tables.setdefault(table, {})

    def _now(self) -> str:
        return self._clock().isoformat()

    def _check_unique(self, table: str, candidate: Dict[str, Any], ignore_id: Optional[str] = None):
        for constraint in self._constraints.get(table, []):
            key = constraint.key(candidate)
            if key is None:
                continue
            for row_id, row in self._table(table).items():
                if row_id == ignore_id:
                    continue
                if constraint.key(row) == key:
                    raise UniqueViolation(table, constraint.name)

    def _find_conflict(self, table: str, column: str, value: Any) -> Optional[Dict[str, Any]]:
        for row in self._table(table).values():
            if row.get(column) == value:
                return row
        return None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, table: str, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self.read_count += 1
            row = self._table(table).get(key)
            return deepcopy(row) if row else None

    async def find(
        self,
        table: str,
        filters: Optional[Filters] = None,
        order: Optional[Ordering] = None,
        limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        with self._lock:
            self.read_count += 1
            rows = [deepcopy(r) for r in self._table(table).values() if matches(r, filters)]

        rows = sort_rows(rows, order)
        if limit is not None:
            rows = rows[:limit]
        return rows

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def insert(self, table: str, record: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            row = dict(record)
            row.setdefault("id", str(uuid.uuid4()))
            row.setdefault("created_at", self._now())

            if row["id"] in self._table(table):
                raise UniqueViolation(table, f"{table}_pkey")

            self._check_unique(table, row)
            self._table(table)[row["id"]] = row
            self.write_count += 1
            return deepcopy(row)

    async def update(self, table: str, key: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            current = self._table(table).get(key)
            if current is None:
                raise NotFound(table, key)

            updated = {**current, **patch}
            self._check_unique(table, updated, ignore_id=key)
            self._table(table)[key] = updated
            self.write_count += 1
            return deepcopy(updated)

    async def update_where(
        self,
        table: str,
        filters: Filters,
        patch: Dict[str, Any]
    ) -> List[Dict[str, Any]]:
        with self._lock:
            targets = [r for r in self._table(table).values() if matches(r, filters)]
            staged = {r["id"]: {**r, **patch} for r in targets}

            # Validate the whole batch before applying any row
            for row_id, row in staged.items():
                self._check_unique_batch(table, row, staged)

            for row_id, row in staged.items():
                self._table(table)[row_id] = row

            self.write_count += 1
            return [deepcopy(r) for r in staged.values()]

    def _check_unique_batch(self, table: str, row: Dict[str, Any], staged: Dict[str, Dict[str, Any]]):
        for constraint in self._constraints.get(table, []):
            key = constraint.key(row)
            if key is None:
                continue
            for other_id, other in self._table(table).items():
                if other_id == row["id"]:
                    continue
                other = staged.get(other_id, other)
                if constraint.key(other) == key:
                    raise UniqueViolation(table, constraint.name)

    async def delete(self, table: str, key: str) -> None:
        with self._lock:
            if self._table(table).pop(key, None) is None:
                raise NotFound(table, key)
            self.write_count += 1

    async def delete_where(self, table: str, filters: Filters) -> int:
        with self._lock:
            doomed = [row_id for row_id, r in self._table(table).items() if matches(r, filters)]
            for row_id in doomed:
                del self._table(table)[row_id]
            self.write_count += 1
            return len(doomed)

    async def upsert(
        self,
        table: str,
        record: Dict[str, Any],
        on_conflict: str,
        ignore_duplicates: bool = True
    ) -> List[Dict[str, Any]]:
        with self._lock:
            existing = self._find_conflict(table, on_conflict, record.get(on_conflict))

            if existing is None:
                return [await self.insert(table, record)]

            if ignore_duplicates:
                return []

            return [await self.update(table, existing["id"], record)]

    async def rpc(self, name: str, params: Dict[str, Any]) -> Any:
        procedure = self._procedures.get(name)
        if procedure is None:
            raise StoreError(f"Unknown procedure: {name}")

        with self._lock:
            result = procedure(params)
            self.write_count += 1
            return deepcopy(result)

    # ------------------------------------------------------------------
    # Procedures
    # ------------------------------------------------------------------

    def _set_primary_contact(self, params: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Clear siblings and promote one entry in a single locked step."""
        table = params["p_table"]
        if table not in CONTACT_TABLES:
            raise StoreError(f"Not a contact table: {table}")

        customer_id = params["p_customer_id"]
        entry_id = params["p_entry_id"]

        rows = self._table(table)
        target = rows.get(entry_id)
        if target is None or target.get("customer_id") != customer_id:
            return None

        for row in rows.values():
            if row.get("customer_id") == customer_id:
                row["is_primary"] = row["id"] == entry_id

        return target

    def get_stats(self) -> Dict[str, Any]:
        return {
            "backend": "memory",
            "reads": self.read_count,
            "writes": self.write_count,
            "tables": {name: len(rows) for name, rows in self._tables.items()}
        }

    def is_healthy(self) -> bool:
        return True
