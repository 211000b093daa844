"""Recording sessions: one record-and-deliver cycle between a tablet and a phone."""

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from config import RECORDING_SESSION_TIMEOUT, SESSION_HISTORY_TTL

logger = logging.getLogger("relay.sessions")


class SessionState(str, Enum):
    IDLE = "idle"
    AWAITING_RECORDING = "awaiting-recording"
    DELIVERED = "delivered"
    ERROR = "error"


class InvalidTransition(ValueError):
    pass


@dataclass
class Session:
    session_id: str
    initiator_id: str
    phone_id: str
    initiator_handle: Optional[str] = None
    state: SessionState = SessionState.AWAITING_RECORDING
    started_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    video_url: Optional[str] = None
    reason: Optional[str] = None

    @property
    def active(self) -> bool:
        return self.state is SessionState.AWAITING_RECORDING

    def involves(self, device_id: str) -> bool:
        return device_id in (self.initiator_id, self.phone_id)

    def peer_of(self, device_id: str) -> str:
        return self.phone_id if device_id == self.initiator_id else self.initiator_id

    def to_dict(self) -> dict:
        return {
            "sessionId": self.session_id,
            "initiatorDeviceId": self.initiator_id,
            "phoneDeviceId": self.phone_id,
            "state": self.state.value,
            "startedAt": self.started_at,
            "updatedAt": self.updated_at,
            "videoUrl": self.video_url,
            "reason": self.reason,
        }


class SessionTracker:
    """In-memory store of sessions, keyed by session token.

    Only sessions in awaiting-recording are active; terminal sessions
    are kept for `history_ttl` seconds so they can still be inspected.
    """

    def __init__(self, timeout: float = RECORDING_SESSION_TIMEOUT, history_ttl: float = SESSION_HISTORY_TTL):
        self.timeout = timeout
        self.history_ttl = history_ttl
        self._sessions: dict[str, Session] = {}
        self._lock = asyncio.Lock()

    async def open(self, initiator_id: str, phone_id: str, initiator_handle: Optional[str] = None) -> Session:
        session = Session(
            session_id=secrets.token_hex(16),
            initiator_id=initiator_id,
            phone_id=phone_id,
            initiator_handle=initiator_handle,
        )
        async with self._lock:
            self._sessions[session.session_id] = session
        logger.info(f"Session {session.session_id} opened: {initiator_id} -> {phone_id}")
        return session

    async def discard(self, session_id: str):
        """Drop a session that never got going (forward to the phone failed)."""
        async with self._lock:
            self._sessions.pop(session_id, None)

    async def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    async def active_for(self, device_id: str) -> list[Session]:
        async with self._lock:
            return [s for s in self._sessions.values() if s.active and s.involves(device_id)]

    async def deliver(self, session_id: str, video_url: str) -> Session:
        async with self._lock:
            session = self._require(session_id)
            if not session.active:
                raise InvalidTransition(
                    f"Session {session_id} cannot be delivered from state {session.state.value}"
                )
            session.state = SessionState.DELIVERED
            session.video_url = video_url
            session.updated_at = time.time()
        logger.info(f"Session {session_id} delivered: {video_url}")
        return session

    async def fail(self, session_id: str, reason: str) -> Session:
        async with self._lock:
            session = self._require(session_id)
            self._mark_error(session, reason)
        return session

    async def fail_for_device(self, device_id: str, reason: str) -> list[Session]:
        """Move every active session involving a device to error."""
        async with self._lock:
            failed = [s for s in self._sessions.values() if s.active and s.involves(device_id)]
            for session in failed:
                self._mark_error(session, reason)
        return failed

    async def expire(self, now: Optional[float] = None) -> list[Session]:
        """Time out stale active sessions and prune old terminal ones.

        Returns the sessions that timed out on this pass.
        """
        now = now or time.time()
        async with self._lock:
            expired = [s for s in self._sessions.values() if s.active and now - s.started_at > self.timeout]
            for session in expired:
                self._mark_error(session, "Recording session timed out", now)
            stale = [
                sid for sid, s in self._sessions.items()
                if not s.active and now - s.updated_at > self.history_ttl
            ]
            for sid in stale:
                del self._sessions[sid]
        return expired

    async def list_sessions(self) -> list[dict]:
        async with self._lock:
            return [s.to_dict() for s in self._sessions.values()]

    @property
    def active_count(self) -> int:
        return sum(1 for s in self._sessions.values() if s.active)

    def _require(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise KeyError(session_id)
        return session

    def _mark_error(self, session: Session, reason: str, now: Optional[float] = None):
        if session.state is SessionState.ERROR:
            return
        session.state = SessionState.ERROR
        session.reason = reason
        session.updated_at = now or time.time()
        logger.warning(f"Session {session.session_id} failed: {reason}")
