from __future__ import annotations

from collections import OrderedDict
from typing import Optional

from researchflow.models.research import ResearchSession
from researchflow.services.logger import logger


class InMemorySessionStore:
    """Latest snapshot per session id, oldest evicted past ``max_sessions``."""

    def __init__(self, max_sessions: int = 500):
        self.max_sessions = max(int(max_sessions), 1)
        self._sessions: OrderedDict[str, ResearchSession] = OrderedDict()

    def save(self, session: ResearchSession) -> None:
        self._sessions[session.id] = session
        self._sessions.move_to_end(session.id)
        while len(self._sessions) > self.max_sessions:
            evicted, _ = self._sessions.popitem(last=False)
            logger.debug(f"Evicted research session {evicted} from store")

    def get(self, session_id: str) -> Optional[ResearchSession]:
        return self._sessions.get(session_id)

    def list_ids(self) -> list[str]:
        return list(self._sessions.keys())

    def __len__(self) -> int:
        return len(self._sessions)


_store: InMemorySessionStore | None = None


def get_session_store() -> InMemorySessionStore:
    global _store
    if _store is None:
        _store = InMemorySessionStore()
    return _store
