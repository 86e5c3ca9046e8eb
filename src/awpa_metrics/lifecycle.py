"""
Session lifecycle controller.

Holds the single "current session" slot of a store and guards every
transition through it: a session is begun, ended once (completed or
aborted), and only then may be deleted. Rejected requests never write.
"""

import asyncio
import logging
from enum import Enum
from typing import TYPE_CHECKING, Callable, List, Optional, Sequence

from .storage_interface import (
    CannotDeleteActiveSession,
    DeleteResult,
    Session,
    SessionAlreadyActive,
    SessionDescriptor,
    SessionNotActive,
    SessionNotFound,
    SessionStatus,
    StorageError,
    StorageOperation,
    normalize_tags,
    now_ms,
)

if TYPE_CHECKING:
    from .sqlite_storage import SQLiteSessionStore


logger = logging.getLogger(__name__)


class EndReason(Enum):
    NORMAL = "normal"
    ERROR = "error"
    DISCONNECT = "disconnect"

    @property
    def status(self) -> SessionStatus:
        if self is EndReason.NORMAL:
            return SessionStatus.COMPLETED
        return SessionStatus.ABORTED


class SessionLifecycleController:
    """Owns the at-most-one-active-session rule for a store."""

    def __init__(self, store: "SQLiteSessionStore", clock: Callable[[], int] = now_ms):
        self.store = store
        self.clock = clock
        self._current: Optional[str] = None
        self._lock = asyncio.Lock()

    @property
    def current(self) -> Optional[str]:
        """Id of the active session, if any."""
        return self._current

    async def recover(self) -> List[str]:
        """
        Abort sessions left active by a process that did not shut down.

        Call once at startup, before the first ``begin``.
        """
        recovered = []
        async with self._lock:
            for session in await self.store.find_sessions_by_status(SessionStatus.ACTIVE):
                if session.id == self._current:
                    continue
                ended_at = max(self.clock(), session.started_at)
                await self.store.update_session_status(
                    session.id, SessionStatus.ABORTED, ended_at
                )
                recovered.append(session.id)
                logger.warning(f"Aborted orphaned active session {session.id}")
        return recovered

    async def begin(self, descriptor: SessionDescriptor) -> str:
        """Create and activate a new session; refused while one is active."""
        if not descriptor.device_id:
            raise StorageError("device_id is required to begin a session", StorageOperation.CREATE)

        async with self._lock:
            if self._current is not None:
                raise SessionAlreadyActive(self._current)
            stale = await self.store.find_sessions_by_status(SessionStatus.ACTIVE)
            if stale:
                raise SessionAlreadyActive(stale[0].id)

            session = Session(
                device_id=descriptor.device_id,
                device_name=descriptor.device_name,
                webview_url=descriptor.webview_url,
                package_name=descriptor.package_name,
                target_title=descriptor.target_title,
                display_name=descriptor.display_name,
                tags=normalize_tags(descriptor.tags),
                metadata=descriptor.metadata,
                status=SessionStatus.ACTIVE,
                started_at=self.clock(),
            )
            await self.store.create_session(session)
            self._current = session.id

        logger.info(f"Session {session.id} begun on device {session.device_id}")
        return session.id

    async def end(self, session_id: str, reason: EndReason = EndReason.NORMAL) -> Session:
        """
        End the current session.

        Ending a session that has already ended is a no-op that returns the
        stored session unchanged.
        """
        async with self._lock:
            session = await self.store.get_session(session_id)
            if session is None:
                raise SessionNotFound(session_id, StorageOperation.UPDATE)
            if session.status is not SessionStatus.ACTIVE:
                logger.debug(f"Session {session_id} already {session.status.value}")
                return session
            if session_id != self._current:
                raise SessionNotActive(session_id, self._current)

            ended_at = max(self.clock(), session.started_at)
            await self.store.update_session_status(session_id, reason.status, ended_at)
            self._current = None

        session.status = reason.status
        session.ended_at = ended_at
        logger.info(f"Session {session_id} ended ({reason.value} -> {reason.status.value})")
        return session

    async def delete(self, session_id: str) -> DeleteResult:
        async with self._lock:
            if session_id == self._current:
                raise CannotDeleteActiveSession(session_id)
            session = await self.store.get_session(session_id)
            if session is None:
                raise SessionNotFound(session_id, StorageOperation.DELETE)
            if session.status is SessionStatus.ACTIVE:
                raise CannotDeleteActiveSession(session_id)
            result = await self.store.delete_session(session_id)

        logger.info(
            f"Session {session_id} deleted "
            f"({result.metrics_deleted} metrics, {result.requests_deleted} requests)"
        )
        return result

    async def rename(self, session_id: str, name: Optional[str]) -> None:
        await self.store.update_session_name(session_id, name)

    async def set_tags(self, session_id: str, tags: Sequence[str]) -> List[str]:
        return await self.store.update_session_tags(session_id, tags)
