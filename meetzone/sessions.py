import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Tuple

from .config import DEFAULT_SESSION_IDLE_TIMEOUT
from .orchestrator import MeetingZoneOrchestrator

logger = logging.getLogger(__name__)


@dataclass
class _Session:
    orchestrator: MeetingZoneOrchestrator
    last_used: float
    lock: threading.Lock = field(default_factory=threading.Lock)


class SessionRegistry:
    """
    Orchestrators keyed by session id. Each session has its own lock so
    requests against one session are applied one at a time.

    Sessions untouched for `idle_timeout` seconds are dropped the next time
    the registry is used. A timeout of None or <= 0 keeps them until deleted.
    """

    def __init__(
        self,
        factory: Callable[[], MeetingZoneOrchestrator],
        idle_timeout: Optional[float] = DEFAULT_SESSION_IDLE_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._factory = factory
        self._idle_timeout = idle_timeout if idle_timeout and idle_timeout > 0 else None
        self._clock = clock
        self._sessions: Dict[str, _Session] = {}
        self._lock = threading.Lock()

    def _expire(self, now: float):
        # caller holds self._lock
        if self._idle_timeout is None:
            return
        expired = [sid for sid, s in self._sessions.items() if now - s.last_used > self._idle_timeout]
        for sid in expired:
            del self._sessions[sid]
        if expired:
            logger.info("Expired %d idle session(s)", len(expired))

    def create(self) -> str:
        session_id = uuid.uuid4().hex
        orchestrator = self._factory()
        with self._lock:
            now = self._clock()
            self._expire(now)
            self._sessions[session_id] = _Session(orchestrator=orchestrator, last_used=now)
        return session_id

    def get(self, session_id: str) -> Optional[Tuple[MeetingZoneOrchestrator, threading.Lock]]:
        with self._lock:
            now = self._clock()
            self._expire(now)
            session = self._sessions.get(session_id)
            if session is None:
                return None
            session.last_used = now
            return session.orchestrator, session.lock

    def delete(self, session_id: str) -> bool:
        with self._lock:
            return self._sessions.pop(session_id, None) is not None

    def __len__(self) -> int:
        with self._lock:
            self._expire(self._clock())
            return len(self._sessions)
