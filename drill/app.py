from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Generator

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from drill import services
from drill.db import get_session, init_db
from drill.decisions import DecisionEngine
from drill.errors import DrillError
from drill.evaluation import ReevaluationQueue
from drill.injects import create_incident
from drill.llm import LLMClient, llm_configured
from drill.models import User
from drill.objectives import ObjectiveTracker
from drill.schemas import (
    DecisionApprove,
    DecisionCreate,
    DecisionOut,
    ObjectiveProgressOut,
    ObjectiveUpdate,
    ResolutionOut,
    SessionScoreOut,
    SessionUpdate,
)
from drill.sinks import Broadcaster, DatabaseEventSink

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    app.state.broadcaster = Broadcaster()
    app.state.llm = LLMClient() if llm_configured() else None
    if app.state.llm is None:
        log.info("No LLM credentials configured; AI classification and evaluation disabled")
    app.state.reevaluation = ReevaluationQueue(
        get_session, services.evaluator_factory(app.state.llm, app.state.broadcaster),
    )
    yield
    await app.state.reevaluation.drain()


app = FastAPI(
    title="Drill",
    version="0.1.0",
    description=(
        "Decision and objective engine for multi-agency crisis response exercises. "
        "Participants propose and approve decisions, objectives are tracked and scored, "
        "and injects, incidents and timeline events are filtered by role and team scope. "
        "Callers identify themselves with the X-User-Id header."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Decisions", "description": "Propose, approve, and execute multi-approver decisions."},
        {"name": "Objectives", "description": "Objective progress, trainer overrides, and session scoring."},
        {"name": "Sessions", "description": "Session lifecycle and scope-filtered narrative content."},
        {"name": "Admin", "description": "Health and diagnostics."},
    ],
)


@app.exception_handler(DrillError)
async def drill_error_handler(request: Request, exc: DrillError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def current_user(
    x_user_id: int | None = Header(None, description="Id of the calling user"),
    session: Session = Depends(db_session),
) -> User:
    if x_user_id is None:
        raise HTTPException(401, "X-User-Id header required")
    user = session.get(User, x_user_id)
    if user is None:
        raise HTTPException(401, "Unknown user")
    return user


def decision_engine(request: Request, session: Session = Depends(db_session)) -> DecisionEngine:
    state = request.app.state
    return services.build_engine(session, state.llm, state.broadcaster, state.reevaluation)


def objective_tracker(request: Request, session: Session = Depends(db_session)) -> ObjectiveTracker:
    return services.build_tracker(session, request.app.state.broadcaster)


# ---------------------------------------------------------------------------
# Routes: Decisions
# ---------------------------------------------------------------------------


@app.post("/api/decisions", response_model=DecisionOut, status_code=201,
          tags=["Decisions"], summary="Propose a decision for named approvers")
async def propose_decision(
    body: DecisionCreate,
    session: Session = Depends(db_session),
    user: User = Depends(current_user),
    engine: DecisionEngine = Depends(decision_engine),
):
    exercise = services.get_exercise(session, body.session_id)
    services.require_access(session, exercise, user)
    decision = engine.propose(
        session, body.session_id, user.id, body.title, body.description,
        body.required_approvers, decision_type=body.decision_type,
        resources_needed=body.resources_needed,
    )
    return services.decision_detail(decision)


@app.get("/api/decisions/session/{session_id}/available-participants",
         tags=["Decisions"], summary="List session participants who can be named as approvers")
async def list_available_participants(
    session_id: int,
    session: Session = Depends(db_session),
    user: User = Depends(current_user),
):
    exercise = services.get_exercise(session, session_id)
    services.require_access(session, exercise, user)
    return services.available_participants(session, session_id)


@app.get("/api/decisions/session/{session_id}", response_model=list[DecisionOut],
         tags=["Decisions"], summary="List decisions visible to the caller")
async def list_decisions(
    session_id: int,
    session: Session = Depends(db_session),
    user: User = Depends(current_user),
    engine: DecisionEngine = Depends(decision_engine),
):
    exercise = services.get_exercise(session, session_id)
    services.require_access(session, exercise, user)
    viewer = services.viewer_for(session, exercise, user)
    return [services.decision_detail(d) for d in engine.list_for_viewer(session, session_id, viewer)]


@app.post("/api/decisions/{decision_id}/approve",
          tags=["Decisions"], summary="Approve or reject your pending step on a decision")
async def approve_decision(
    decision_id: int,
    body: DecisionApprove,
    session: Session = Depends(db_session),
    user: User = Depends(current_user),
    engine: DecisionEngine = Depends(decision_engine),
):
    decision = engine.approve(session, decision_id, user.id, body.approved, body.comment)
    return {"success": True, "status": decision.status}


@app.post("/api/decisions/{decision_id}/execute", response_model=DecisionOut,
          tags=["Decisions"], summary="Execute an approved decision")
async def execute_decision(
    decision_id: int,
    session: Session = Depends(db_session),
    user: User = Depends(current_user),
    engine: DecisionEngine = Depends(decision_engine),
):
    decision = await engine.execute(session, decision_id, user)
    return services.decision_detail(decision)


# ---------------------------------------------------------------------------
# Routes: Objectives
# ---------------------------------------------------------------------------


@app.get("/api/objectives/{session_id}", response_model=list[ObjectiveProgressOut],
         tags=["Objectives"], summary="List objective progress for a session")
async def list_objectives(
    session_id: int,
    session: Session = Depends(db_session),
    user: User = Depends(current_user),
    tracker: ObjectiveTracker = Depends(objective_tracker),
):
    exercise = services.get_exercise(session, session_id)
    services.require_access(session, exercise, user)
    return [services.progress_detail(r) for r in tracker.list_progress(session, session_id)]


@app.get("/api/objectives/{session_id}/score", response_model=SessionScoreOut,
         tags=["Objectives"], summary="Weighted session score and success level")
async def session_score(
    session_id: int,
    session: Session = Depends(db_session),
    user: User = Depends(current_user),
    tracker: ObjectiveTracker = Depends(objective_tracker),
):
    exercise = services.get_exercise(session, session_id)
    services.require_access(session, exercise, user)
    return tracker.calculate_session_score(session, session_id)


@app.post("/api/objectives/{session_id}/initialize", response_model=list[ObjectiveProgressOut],
          tags=["Objectives"], summary="Create progress rows for the scenario's objectives")
async def initialize_objectives(
    session_id: int,
    session: Session = Depends(db_session),
    user: User = Depends(current_user),
    tracker: ObjectiveTracker = Depends(objective_tracker),
):
    services.require_trainer(services.get_exercise(session, session_id), user)
    return [services.progress_detail(r) for r in tracker.initialize(session, session_id)]


@app.post("/api/objectives/{session_id}/update", response_model=ObjectiveProgressOut,
          tags=["Objectives"], summary="Trainer override of one objective's progress, penalties, or bonuses")
async def update_objective(
    session_id: int,
    body: ObjectiveUpdate,
    session: Session = Depends(db_session),
    user: User = Depends(current_user),
    tracker: ObjectiveTracker = Depends(objective_tracker),
):
    services.require_trainer(services.get_exercise(session, session_id), user)
    if body.progress_percentage is not None or body.status is not None or body.metrics is not None:
        percentage = body.progress_percentage
        if percentage is None:
            percentage = tracker.get_progress(session, session_id, body.objective_id).progress_percentage
        tracker.update_progress(session, session_id, body.objective_id, percentage,
                                status=body.status, metrics=body.metrics)
    if body.penalty is not None:
        tracker.add_penalty(session, session_id, body.objective_id, body.penalty.reason, body.penalty.points)
    if body.bonus is not None:
        tracker.add_bonus(session, session_id, body.objective_id, body.bonus.reason, body.bonus.points)
    return services.progress_detail(tracker.get_progress(session, session_id, body.objective_id))


# ---------------------------------------------------------------------------
# Routes: Sessions
# ---------------------------------------------------------------------------


@app.patch("/api/sessions/{session_id}", tags=["Sessions"],
           summary="Change session status or toggle auto-completion on objectives")
async def update_session(
    session_id: int,
    body: SessionUpdate,
    request: Request,
    session: Session = Depends(db_session),
    user: User = Depends(current_user),
    tracker: ObjectiveTracker = Depends(objective_tracker),
):
    exercise = services.get_exercise(session, session_id)
    events = DatabaseEventSink(session, request.app.state.broadcaster)
    updated = services.update_session(
        session, exercise, user, tracker, events,
        status=body.status, auto_complete_on_objectives=body.auto_complete_on_objectives,
    )
    return services.session_summary(updated)


@app.get("/api/sessions/{session_id}/resolution", response_model=ResolutionOut,
         tags=["Sessions"], summary="Whether every objective is completed or failed")
async def session_resolution(
    session_id: int,
    session: Session = Depends(db_session),
    user: User = Depends(current_user),
    tracker: ObjectiveTracker = Depends(objective_tracker),
):
    services.require_access(session, services.get_exercise(session, session_id), user)
    return services.resolution(session, session_id, tracker)


@app.get("/api/sessions/{session_id}/injects", tags=["Sessions"],
         summary="Published injects visible to the caller")
async def list_session_injects(
    session_id: int,
    session: Session = Depends(db_session),
    user: User = Depends(current_user),
):
    exercise = services.get_exercise(session, session_id)
    services.require_access(session, exercise, user)
    return services.list_injects(session, session_id, services.viewer_for(session, exercise, user))


@app.get("/api/sessions/{session_id}/incidents", tags=["Sessions"],
         summary="Incidents visible to the caller")
async def list_session_incidents(
    session_id: int,
    session: Session = Depends(db_session),
    user: User = Depends(current_user),
):
    exercise = services.get_exercise(session, session_id)
    services.require_access(session, exercise, user)
    return services.list_incidents(session, session_id, services.viewer_for(session, exercise, user))


class IncidentCreate(BaseModel):
    title: str = Field(min_length=1, max_length=300)
    description: str = ""
    severity: str = "medium"
    inject_id: int | None = None


@app.post("/api/sessions/{session_id}/incidents", status_code=201, tags=["Sessions"],
          summary="Report an incident, optionally raised from a published inject")
async def report_incident(
    session_id: int,
    body: IncidentCreate,
    request: Request,
    session: Session = Depends(db_session),
    user: User = Depends(current_user),
):
    exercise = services.get_exercise(session, session_id)
    services.require_access(session, exercise, user)
    incident = create_incident(
        session, session_id, body.title, body.description,
        DatabaseEventSink(session, request.app.state.broadcaster),
        inject_id=body.inject_id, severity=body.severity, reported_by=user.id,
    )
    return services.incident_summary(incident)


@app.get("/api/sessions/{session_id}/events", tags=["Sessions"],
         summary="Session timeline visible to the caller")
async def list_session_events(
    session_id: int,
    limit: int = Query(200, ge=1, le=1000),
    session: Session = Depends(db_session),
    user: User = Depends(current_user),
):
    exercise = services.get_exercise(session, session_id)
    services.require_access(session, exercise, user)
    return services.list_events(session, session_id, services.viewer_for(session, exercise, user), limit=limit)


# ---------------------------------------------------------------------------
# Routes: Admin
# ---------------------------------------------------------------------------


@app.get("/health", tags=["Admin"], summary="Liveness check")
async def health() -> dict[str, Any]:
    return {"ok": True, "ai_enabled": llm_configured()}


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    uvicorn.run("drill.app:app", host="127.0.0.1", port=8001, reload=True)


if __name__ == "__main__":
    main()
