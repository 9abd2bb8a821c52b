"""
Debounced Writes
================
Coalesces rapid checkout edits into one store write.

Each edit restarts an idle timer. When the timer fires, every field edited
since the last write goes out as one patch. flush() writes immediately and
is called before finalize, so finalize never sees a stale stored value.

A failed write keeps its fields pending (newer edits win) and is reported
through ``last_error``; flush() re-raises it to the caller.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional
from datetime import datetime

logger = logging.getLogger(__name__)


PatchWriter = Callable[[Dict[str, Any]], Awaitable[Any]]


class DebouncedWriter:
    """Per-order pending patch with an asyncio idle timer."""

    def __init__(self, key: str, write: PatchWriter, delay: float = 0.5):
        self.key = key
        self.delay = delay
        self._write = write
        self._pending: Dict[str, Any] = {}
        self._timer: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()

        self.last_error: Optional[Exception] = None
        self.last_saved_at: Optional[datetime] = None
        self.write_count = 0

    @property
    def pending(self) -> Dict[str, Any]:
        return dict(self._pending)

    @property
    def has_pending(self) -> bool:
        return bool(self._pending)

    def schedule(self, field: str, value: Any):
        """Record an edit and restart the idle timer. Needs a running loop."""
        self._pending[field] = value
        self._restart_timer()

    def schedule_many(self, patch: Dict[str, Any]):
        self._pending.update(patch)
        self._restart_timer()

    def _restart_timer(self):
        self._cancel_timer()
        self._timer = asyncio.get_running_loop().create_task(self._fire_after_delay())

    def _cancel_timer(self):
        timer = self._timer
        self._timer = None
        if timer is not None and timer is not asyncio.current_task() and not timer.done():
            timer.cancel()

    async def _fire_after_delay(self):
        try:
            await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            return

        # Past the idle delay the write must not be cancelled midway
        if self._timer is asyncio.current_task():
            self._timer = None

        try:
            await self._write_pending()
        except Exception as e:
            # Kept pending; surfaced via last_error and re-raised by flush()
            logger.error(
                f"Debounced save failed: {e}",
                extra={"key": self.key, "fields": sorted(self._pending)}
            )

    async def _write_pending(self) -> Optional[Any]:
        async with self._lock:
            patch = self._pending
            self._pending = {}
            if not patch:
                return None

            try:
                result = await self._write(patch)
            except Exception as e:
                self._pending = {**patch, **self._pending}
                self.last_error = e
                raise

            self.last_error = None
            self.last_saved_at = datetime.utcnow()
            self.write_count += 1

            logger.debug(
                f"Saved {len(patch)} field(s)",
                extra={"key": self.key, "fields": sorted(patch)}
            )
            return result

    async def flush(self) -> Optional[Any]:
        """
        Write pending edits now.

        Returns:
            The writer's result, or None when nothing was pending

        Raises:
            Whatever the writer raised; the edits stay pending
        """
        self._cancel_timer()
        return await self._write_pending()

    def cancel(self) -> Dict[str, Any]:
        """Drop pending edits without writing them."""
        self._cancel_timer()
        dropped, self._pending = self._pending, {}
        if dropped:
            logger.info(
                "Pending edits discarded",
                extra={"key": self.key, "fields": sorted(dropped)}
            )
        return dropped

    def get_status(self) -> dict:
        return {
            "key": self.key,
            "pending_fields": sorted(self._pending),
            "write_count": self.write_count,
            "last_error": str(self.last_error) if self.last_error else None,
            "last_saved_at": self.last_saved_at.isoformat() if self.last_saved_at else None
        }
