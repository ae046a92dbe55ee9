from __future__ import annotations

from functools import lru_cache

from researchflow.agents.orchestrator import ResearchOrchestrator
from researchflow.services.session_store import InMemorySessionStore, get_session_store


@lru_cache(maxsize=1)
def get_orchestrator() -> ResearchOrchestrator:
    """Process-wide orchestrator; tests override this dependency."""
    return ResearchOrchestrator()


def get_store() -> InMemorySessionStore:
    return get_session_store()
