from __future__ import annotations

import json as _json

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from sse_starlette.sse import EventSourceResponse

from researchflow.agents.orchestrator import ResearchOrchestrator
from researchflow.api.deps import get_orchestrator, get_store
from researchflow.errors import ErrorCode, InvalidQueryError, NotConfiguredError
from researchflow.models.schemas import HealthResponse, ResearchRequest, SessionResponse
from researchflow.services import logger as log_service
from researchflow.services import streaming
from researchflow.services.cancellation import CancellationToken
from researchflow.services.session_store import InMemorySessionStore

router = APIRouter(prefix="/api/research", tags=["research"])


@router.post("")
async def start_research(
    request: ResearchRequest,
    orchestrator: ResearchOrchestrator = Depends(get_orchestrator),
):
    """Run a research session and stream its progress as SSE."""
    token = CancellationToken()
    try:
        events = orchestrator.research(request.query, request.options, token)
    except InvalidQueryError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except NotConfiguredError as e:
        log_service.log_event(
            event_type="research_rejected",
            message="Research providers not configured",
            missing=e.missing,
        )
        return JSONResponse(
            status_code=503,
            content={"detail": str(e), "code": ErrorCode.NOT_CONFIGURED.value},
        )

    async def event_generator():
        try:
            async for event in events:
                yield {
                    "event": event.type.value,
                    "data": _json.dumps(event.to_dict()),
                }
        except Exception as e:
            # The orchestrator reports its own failures; this covers the stream itself.
            log_service.logger.exception(f"Research stream failed: {e}")
            event_type, data = streaming.error(ErrorCode.UNKNOWN, detail=str(e))
            yield {"event": event_type.value, "data": _json.dumps(data)}
        finally:
            await events.aclose()
        yield {"event": "done", "data": "[DONE]"}

    return EventSourceResponse(event_generator())


@router.get("/health", response_model=HealthResponse)
async def research_health(orchestrator: ResearchOrchestrator = Depends(get_orchestrator)):
    readiness = orchestrator.readiness()
    return HealthResponse(status="ok", service="researchflow", **readiness)


@router.get("/sessions/{session_id}", response_model=SessionResponse)
async def get_research_session(
    session_id: str,
    store: InMemorySessionStore = Depends(get_store),
):
    session = store.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")

    sub_questions = []
    for plan in (session.plan, session.round2_plan):
        if plan is not None:
            sub_questions.extend(streaming.sub_question_payload(sq) for sq in plan.sub_questions)

    return SessionResponse(
        id=session.id,
        query=session.query,
        status=session.status,
        complexity=session.complexity,
        current_round=session.current_round,
        final_answer=session.final_answer,
        sub_questions=sub_questions,
        citations=[citation.model_dump(mode="json") for citation in session.citations],
        started_at=session.started_at,
        completed_at=session.completed_at,
        error=session.error,
    )
