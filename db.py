"""
Database Module (Production)
=============================
Supabase-backed implementation of the data store contract.
Timeouts, bounded retries and a circuit breaker around every call.
Uniqueness and the primary-contact swap are delegated to the database
(see schema.sql), never checked client-side.
"""

import asyncio
import logging
from typing import Dict, List, Any, Optional, Callable
from datetime import datetime
from enum import Enum

from supabase import create_client, Client
from postgrest.exceptions import APIError
from prometheus_client import Counter, Gauge

from config import Config, SupabaseConfig, get_config
from errors import NotFound, StoreError, UniqueViolation
from store import DataStore, Filters, Ordering, InMemoryStore


logger = logging.getLogger(__name__)


# Configuration
MAX_RETRIES = 3
RETRY_DELAY = 0.5  # seconds
CIRCUIT_BREAKER_THRESHOLD = 5
CIRCUIT_BREAKER_TIMEOUT = 30  # seconds

UNIQUE_VIOLATION_CODE = "23505"


# ============================================================================
# METRICS
# ============================================================================

store_calls = Counter(
    'sale_store_calls_total',
    'Store calls by operation and result',
    ['operation', 'result']
)
store_circuit_open = Gauge(
    'sale_store_circuit_open',
    'Whether the store circuit breaker is open'
)


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"    # Normal operation
    OPEN = "open"        # Failing, reject requests
    HALF_OPEN = "half_open"  # Testing recovery


class CircuitBreaker:
    """Circuit breaker for database operations."""

    def __init__(
        self,
        threshold: int = CIRCUIT_BREAKER_THRESHOLD,
        timeout: int = CIRCUIT_BREAKER_TIMEOUT
    ):
        self.threshold = threshold
        self.timeout = timeout
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.last_failure_time: Optional[datetime] = None
        self.success_count = 0

    def record_success(self):
        """Record successful operation."""
        self.failure_count = 0

        if self.state == CircuitState.HALF_OPEN:
            self.success_count += 1
            if self.success_count >= 2:
                self.state = CircuitState.CLOSED
                self.success_count = 0
                store_circuit_open.set(0)
                logger.info("Circuit breaker closed (recovered)")

    def record_failure(self):
        """Record failed operation."""
        self.failure_count += 1
        self.last_failure_time = datetime.utcnow()

        if self.failure_count >= self.threshold and self.state != CircuitState.OPEN:
            self.state = CircuitState.OPEN
            store_circuit_open.set(1)
            logger.error(
                f"Circuit breaker opened "
                f"(failures: {self.failure_count})"
            )

    def can_execute(self) -> bool:
        """Check if operation can execute."""
        if self.state == CircuitState.CLOSED:
            return True

        if self.state == CircuitState.OPEN:
            if self.last_failure_time:
                elapsed = (datetime.utcnow() - self.last_failure_time).total_seconds()
                if elapsed >= self.timeout:
                    self.state = CircuitState.HALF_OPEN
                    self.success_count = 0
                    logger.info("Circuit breaker half-open (testing)")
                    return True
            return False

        # HALF_OPEN - allow test requests
        return True

    def get_state(self) -> str:
        """Get current state."""
        return self.state.value


def _apply_filters(query, filters: Optional[Filters]):
    """Translate store filters into postgrest builder calls."""
    for column, condition in (filters or {}).items():
        if isinstance(condition, tuple):
            op, value = condition
        else:
            op, value = "eq", condition

        if op == "eq":
            query = query.eq(column, value)
        elif op == "neq":
            query = query.neq(column, value)
        elif op == "in":
            query = query.in_(column, list(value))
        elif op == "ilike":
            query = query.ilike(column, value)
        elif op == "is":
            query = query.is_(column, "null" if value is None else str(value).lower())
        else:
            raise StoreError(f"Unsupported filter operator: {op}")

    return query


class SupabaseStore(DataStore):
    """
    Production store with resilience features.
    Blocking supabase-py calls run in the default executor.
    """

    def __init__(self, config: SupabaseConfig, client: Optional[Client] = None):
        self.config = config
        self.timeout = float(config.connection_timeout)
        self.client: Client = client or create_client(config.url, config.key)
        self.circuit_breaker = CircuitBreaker()

        # Stats
        self.read_count = 0
        self.write_count = 0
        self.error_count = 0
        self.retry_count = 0

        logger.info("SupabaseStore initialized")

    async def _execute(
        self,
        operation: str,
        table: str,
        build: Callable[[], Any],
        retry: bool = True
    ) -> Any:
        """
        Run one postgrest call with timeout, retry and circuit breaker.

        Non-idempotent calls (insert) pass retry=False.
        """
        if not self.circuit_breaker.can_execute():
            store_calls.labels(operation=operation, result='circuit_open').inc()
            raise StoreError("Store unavailable (circuit open)", table=table)

        attempts = MAX_RETRIES + 1 if retry else 1

        for attempt in range(attempts):
            try:
                loop = asyncio.get_running_loop()
                result = await asyncio.wait_for(
                    loop.run_in_executor(None, lambda: build().execute()),
                    timeout=self.timeout
                )

                self.circuit_breaker.record_success()
                store_calls.labels(operation=operation, result='ok').inc()
                return result

            except APIError as e:
                if e.code == UNIQUE_VIOLATION_CODE:
                    # Constraint answer, not a backend failure
                    self.circuit_breaker.record_success()
                    store_calls.labels(operation=operation, result='unique_violation').inc()
                    raise UniqueViolation(table, e.details or e.message or "unique") from e

                self.error_count += 1
                store_calls.labels(operation=operation, result='api_error').inc()
                logger.error(
                    f"Store {operation} on {table} failed: {e.message}",
                    extra={"table": table, "code": e.code, "attempt": attempt + 1}
                )
                self.circuit_breaker.record_failure()
                raise StoreError(f"{operation} on {table} failed: {e.message}", table=table) from e

            except Exception as e:
                # Timeouts and transport errors are retried
                reason = "timeout" if isinstance(e, asyncio.TimeoutError) else str(e)
                self.error_count += 1
                self.circuit_breaker.record_failure()
                logger.error(
                    f"Store {operation} on {table} failed (attempt {attempt + 1}): {reason}"
                )

                if attempt + 1 < attempts:
                    self.retry_count += 1
                    await asyncio.sleep(RETRY_DELAY * (attempt + 1))
                    continue

                store_calls.labels(operation=operation, result='error').inc()
                raise StoreError(f"{operation} on {table} failed: {reason}", table=table) from e

    # ========================================================================
    # READ OPERATIONS
    # ========================================================================

    async def get(self, table: str, key: str) -> Optional[Dict[str, Any]]:
        result = await self._execute(
            "get",
            table,
            lambda: self.client.table(table).select("*").eq("id", key).limit(1)
        )
        self.read_count += 1
        return result.data[0] if result.data else None

    async def find(
        self,
        table: str,
        filters: Optional[Filters] = None,
        order: Optional[Ordering] = None,
        limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        def build():
            query = _apply_filters(self.client.table(table).select("*"), filters)
            for column, descending in order or []:
                query = query.order(column, desc=descending)
            if limit is not None:
                query = query.limit(limit)
            return query

        result = await self._execute("find", table, build)
        self.read_count += 1
        return result.data or []

    # ========================================================================
    # WRITE OPERATIONS
    # ========================================================================

    async def insert(self, table: str, record: Dict[str, Any]) -> Dict[str, Any]:
        result = await self._execute(
            "insert",
            table,
            lambda: self.client.table(table).insert(record),
            retry=False
        )
        self.write_count += 1
        if not result.data:
            raise StoreError(f"Insert into {table} returned no row", table=table)
        return result.data[0]

    async def update(self, table: str, key: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        rows = await self.update_where(table, {"id": key}, patch)
        if not rows:
            raise NotFound(table, key)
        return rows[0]

    async def update_where(
        self,
        table: str,
        filters: Filters,
        patch: Dict[str, Any]
    ) -> List[Dict[str, Any]]:
        result = await self._execute(
            "update",
            table,
            lambda: _apply_filters(self.client.table(table).update(patch), filters)
        )
        self.write_count += 1
        return result.data or []

    async def delete(self, table: str, key: str) -> None:
        deleted = await self.delete_where(table, {"id": key})
        if deleted == 0:
            raise NotFound(table, key)

    async def delete_where(self, table: str, filters: Filters) -> int:
        result = await self._execute(
            "delete",
            table,
            lambda: _apply_filters(self.client.table(table).delete(), filters)
        )
        self.write_count += 1
        return len(result.data or [])

    async def upsert(
        self,
        table: str,
        record: Dict[str, Any],
        on_conflict: str,
        ignore_duplicates: bool = True
    ) -> List[Dict[str, Any]]:
        result = await self._execute(
            "upsert",
            table,
            lambda: self.client.table(table).upsert(
                record,
                on_conflict=on_conflict,
                ignore_duplicates=ignore_duplicates
            )
        )
        self.write_count += 1
        return result.data or []

    async def rpc(self, name: str, params: Dict[str, Any]) -> Any:
        result = await self._execute(
            "rpc",
            name,
            lambda: self.client.rpc(name, params)
        )
        self.write_count += 1
        data = result.data
        if isinstance(data, list):
            return data[0] if data else None
        return data

    # ========================================================================
    # STATS & MONITORING
    # ========================================================================

    def get_stats(self) -> Dict[str, Any]:
        """Get database statistics."""
        return {
            "backend": "supabase",
            "reads": self.read_count,
            "writes": self.write_count,
            "errors": self.error_count,
            "retries": self.retry_count,
            "circuit_breaker": self.circuit_breaker.get_state(),
            "circuit_failures": self.circuit_breaker.failure_count
        }

    def is_healthy(self) -> bool:
        """Check if database is healthy."""
        return self.circuit_breaker.state != CircuitState.OPEN


# ============================================================================
# FACTORY
# ============================================================================

def create_store(config: Optional[Config] = None) -> DataStore:
    """Build the store selected by STORE_BACKEND."""
    config = config or get_config()

    if config.store.backend == "supabase":
        return SupabaseStore(config.supabase)

    logger.warning("Using in-memory store (data is not persisted)")
    return InMemoryStore()
