"""Thread-safe registry of chat sessions and their members."""

from __future__ import annotations

import logging
import secrets
import threading
import time
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Callable, Optional

MAX_CONNECTIONS = 20
MAX_SESSIONS = 10
MAX_CLIENTS = 4
BACKLOG = 20

log = logging.getLogger(__name__)


class JoinStatus(IntEnum):
    """Answer the server gives a client asking to join a session."""

    INVALID = 0
    OK = 1
    FULL = 2


def _random_session_id() -> int:
    return secrets.randbelow(999999) + 100000


@dataclass(eq=False)
class Session:
    """One chat room: its id and the connected clients in join order."""

    session_id: int
    clients: list[Any] = field(default_factory=list)
    created: float = field(default_factory=time.time)
    active: bool = True

    @property
    def client_count(self) -> int:
        return len(self.clients)

    def index_of(self, client: Any) -> int:
        """Position of ``client`` in the session; ValueError if absent."""
        for index, member in enumerate(self.clients):
            if member is client:
                return index
        raise ValueError(f"client {client!r} not in session {self.session_id}")


class SessionRegistry:
    """A fixed number of session slots shared between client threads."""

    def __init__(
        self,
        max_sessions: int = MAX_SESSIONS,
        max_clients: int = MAX_CLIENTS,
        id_source: Optional[Callable[[], int]] = None,
    ) -> None:
        self.max_sessions = max_sessions
        self.max_clients = max_clients
        self._id_source = id_source or _random_session_id
        self._slots: list[Optional[Session]] = [None] * max_sessions
        self._lock = threading.Lock()

    def _active_ids(self) -> set[int]:
        return {s.session_id for s in self._slots if s is not None and s.active}

    def _find_locked(self, session_id: int) -> Optional[Session]:
        for session in self._slots:
            if session is not None and session.active and session.session_id == session_id:
                return session
        return None

    def create(self, client: Any) -> Optional[Session]:
        """Open a session hosted by ``client``; None when every slot is taken."""
        with self._lock:
            for slot, existing in enumerate(self._slots):
                if existing is not None and existing.active:
                    continue
                taken = self._active_ids()
                session_id = self._id_source()
                while session_id in taken:
                    session_id = self._id_source()
                session = Session(session_id=session_id, clients=[client])
                self._slots[slot] = session
                return session
        return None

    def find(self, session_id: int) -> Optional[Session]:
        with self._lock:
            return self._find_locked(session_id)

    def validate(self, session_id: int) -> JoinStatus:
        with self._lock:
            session = self._find_locked(session_id)
            if session is None:
                return JoinStatus.INVALID
            if session.client_count >= self.max_clients:
                return JoinStatus.FULL
            return JoinStatus.OK

    def add(self, client: Any, session_id: int) -> Optional[Session]:
        """Add ``client`` to an active session; None if missing or full."""
        with self._lock:
            session = self._find_locked(session_id)
            if session is None or session.client_count >= self.max_clients:
                return None
            session.clients.append(client)
            return session

    def leave(self, client: Any, session: Session) -> None:
        """Remove ``client``; a session left empty is closed."""
        with self._lock:
            try:
                index = session.index_of(client)
            except ValueError:
                log.error("client %r is not in session %s", client, session.session_id)
                return
            del session.clients[index]
            if not session.clients:
                log.info("wiping session %s", session.session_id)
                session.active = False
                session.session_id = -1

    def active_sessions(self) -> list[Session]:
        with self._lock:
            return [s for s in self._slots if s is not None and s.active]