"""
Sale Sessions
=============
Opening and closing sale events.

At most one session is open at a time; the store's partial unique index on
open sessions rejects a second one. Captures run against an explicit
CaptureSession built from an open session, never against ambient state.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from errors import Conflict, NotFound, PreconditionFailed, UniqueViolation
from models import Session, SessionStatus, SessionType, parse_enum
from store import DataStore


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CaptureSession:
    """Context handed to the reconciler for one capture."""
    session_id: str
    session_type: SessionType
    name: str = ""
    enforce_unique_codes: bool = True

    @property
    def is_live(self) -> bool:
        return self.session_type is SessionType.LIVE


def default_session_name(session_type: SessionType, now: Optional[datetime] = None) -> str:
    now = now or datetime.utcnow()
    label = "Live" if session_type is SessionType.LIVE else "Vente"
    return f"{label} {now.strftime('%d/%m/%Y %H:%M')}"


class SessionManager:
    """Session bookkeeping over the data store."""

    def __init__(self, store: DataStore, enforce_unique_codes: bool = True):
        self.store = store
        self.enforce_unique_codes = enforce_unique_codes

    async def get(self, session_id: str) -> Session:
        row = await self.store.get("sessions", session_id)
        if row is None:
            raise NotFound("session", session_id)
        return Session.from_record(row)

    async def current_open(self) -> Optional[Session]:
        rows = await self.store.find(
            "sessions",
            {"status": SessionStatus.OPEN.value},
            order=[("start_at", True)],
            limit=1
        )
        return Session.from_record(rows[0]) if rows else None

    async def list_sessions(self, limit: Optional[int] = None) -> List[Session]:
        rows = await self.store.find("sessions", order=[("start_at", True)], limit=limit)
        return [Session.from_record(row) for row in rows]

    async def open_session(self, session_type, name: Optional[str] = None) -> Session:
        """
        Start a sale session.

        Raises:
            ValueError: unknown session type
            Conflict: another session is already open
        """
        kind = parse_enum(SessionType, session_type)
        if kind is None:
            raise ValueError("session_type is required")

        now = datetime.utcnow()
        record = {
            "name": (name or "").strip() or default_session_name(kind, now),
            "session_type": kind.value,
            "status": SessionStatus.OPEN.value,
            "start_at": now.isoformat()
        }

        try:
            row = await self.store.insert("sessions", record)
        except UniqueViolation:
            logger.warning("Refusing to open a second session")
            raise Conflict("A session is already open")

        session = Session.from_record(row)
        logger.info(
            f"Session opened: {session.name}",
            extra={"session_id": session.id, "session_type": kind.value}
        )
        return session

    async def close_session(self, session_id: str) -> Session:
        """Close a session. Closing an already-closed session is a no-op."""
        session = await self.get(session_id)
        if not session.is_open:
            return session

        rows = await self.store.update_where(
            "sessions",
            {"id": session_id, "status": SessionStatus.OPEN.value},
            {"status": SessionStatus.CLOSED.value, "closed_at": datetime.utcnow().isoformat()}
        )
        if not rows:
            # Closed by another operator in between
            return await self.get(session_id)

        logger.info("Session closed", extra={"session_id": session_id})
        return Session.from_record(rows[0])

    async def capture_session(self, session_id: str) -> CaptureSession:
        """
        Build the capture context for an open session.

        Raises:
            NotFound: unknown session
            PreconditionFailed: session is closed
        """
        session = await self.get(session_id)
        if not session.is_open:
            raise PreconditionFailed("session_closed", f"Session {session.name!r} is closed")

        return CaptureSession(
            session_id=session.id,
            session_type=session.session_type,
            name=session.name,
            enforce_unique_codes=self.enforce_unique_codes
        )
