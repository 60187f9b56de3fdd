"""Shared business logic for the Drill API and MCP server."""
from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from drill.classifier import DecisionClassifier
from drill.decisions import DecisionEngine
from drill.errors import Forbidden, InvalidState, NotFound
from drill.evaluation import ObjectiveEvaluator, ObjectiveJudge, ReevaluationQueue
from drill.injects import InjectGenerator
from drill.llm import LLMClient, ai_timeout
from drill.models import (
    Decision, ExerciseSession, Incident, Inject, ObjectiveProgress, SessionEvent, SessionParticipant, User,
)
from drill.objectives import ObjectiveTracker
from drill.scope import (
    PRIVILEGED_ROLES, Viewer, filter_visible, from_event, from_incident, from_inject, load_viewer,
)
from drill.sinks import Broadcaster, DatabaseEventSink, DatabaseNotificationSink, EventSink
from drill.utils import isoformat, json_parse, utcnow

log = logging.getLogger(__name__)

# Allowed session status transitions for the lifecycle controller
SESSION_TRANSITIONS: dict[str, frozenset[str]] = {
    "scheduled": frozenset({"in_progress", "cancelled"}),
    "in_progress": frozenset({"paused", "completed", "cancelled"}),
    "paused": frozenset({"in_progress", "completed", "cancelled"}),
    "completed": frozenset(),
    "cancelled": frozenset(),
}

# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def decision_detail(d: Decision) -> dict[str, Any]:
    classification = json_parse(d.ai_classification_json, None) if d.ai_classification_json else None
    return {
        "id": d.id, "session_id": d.session_id, "proposer_id": d.proposer_id,
        "title": d.title, "description": d.description, "type": d.type, "status": d.status,
        "resources_needed": json_parse(d.resources_needed_json, {}),
        "ai_classification": classification,
        "created_at": isoformat(d.created_at), "executed_at": isoformat(d.executed_at),
        "steps": [
            {
                "id": s.id, "user_id": s.user_id, "role": s.role, "step_order": s.step_order,
                "status": s.status, "responder_id": s.responder_id,
                "responded_at": isoformat(s.responded_at), "comment": s.comment,
            }
            for s in d.steps
        ],
    }


def progress_detail(row: ObjectiveProgress) -> dict[str, Any]:
    def entries(kind: str) -> list[dict[str, Any]]:
        return [
            {"reason": a.reason, "points": a.points, "timestamp": isoformat(a.created_at)}
            for a in row.adjustments if a.kind == kind
        ]

    return {
        "objective_id": row.objective_id, "objective_name": row.objective_name,
        "progress_percentage": row.progress_percentage, "status": row.status,
        "weight": row.weight, "metrics": json_parse(row.metrics_json, {}),
        "penalties": entries("penalty"), "bonuses": entries("bonus"), "score": row.score,
    }


def inject_summary(inj: Inject) -> dict[str, Any]:
    return {
        "id": inj.id, "title": inj.title, "content": inj.content, "type": inj.inject_type,
        "severity": inj.severity, "scope": inj.scope or "universal",
        "affected_roles": json_parse(inj.affected_roles_json, []),
        "target_teams": json_parse(inj.target_teams_json, []),
        "ai_generated": inj.ai_generated, "published_at": isoformat(inj.published_at),
    }


def incident_summary(inc: Incident) -> dict[str, Any]:
    return {
        "id": inc.id, "title": inc.title, "description": inc.description,
        "severity": inc.severity, "inject_id": inc.inject_id,
        "reported_by": inc.reported_by, "created_at": isoformat(inc.created_at),
    }


def event_summary(ev: SessionEvent) -> dict[str, Any]:
    return {
        "id": ev.id, "event_type": ev.event_type, "metadata": json_parse(ev.metadata_json, {}),
        "actor_id": ev.actor_id, "created_at": isoformat(ev.created_at),
    }


def session_summary(ex: ExerciseSession) -> dict[str, Any]:
    return {
        "id": ex.id, "scenario_id": ex.scenario_id, "trainer_id": ex.trainer_id,
        "status": ex.status, "auto_complete_on_objectives": ex.auto_complete_on_objectives,
        "start_time": isoformat(ex.start_time), "end_time": isoformat(ex.end_time),
        "current_state": json_parse(ex.current_state_json, {}),
    }


# ---------------------------------------------------------------------------
# Access checks
# ---------------------------------------------------------------------------


def get_exercise(session: Session, session_id: int) -> ExerciseSession:
    exercise = session.execute(
        select(ExerciseSession).where(ExerciseSession.id == session_id)
        .execution_options(populate_existing=True)
    ).scalars().first()
    if exercise is None:
        raise NotFound("Session", session_id)
    return exercise


def is_trainer(exercise: ExerciseSession, user: User) -> bool:
    return user.role in PRIVILEGED_ROLES or exercise.trainer_id == user.id


def require_trainer(exercise: ExerciseSession, user: User) -> None:
    if not is_trainer(exercise, user):
        raise Forbidden("Only the session trainer or an admin can do this")


def require_access(session: Session, exercise: ExerciseSession, user: User) -> None:
    if is_trainer(exercise, user):
        return
    participant = session.execute(
        select(SessionParticipant.id).where(
            SessionParticipant.session_id == exercise.id, SessionParticipant.user_id == user.id,
        )
    ).scalar()
    if participant is None:
        raise Forbidden("You are not a participant in this session")


def viewer_for(session: Session, exercise: ExerciseSession, user: User) -> Viewer:
    """Trainer of the session counts as privileged even without a global trainer role."""
    if exercise.trainer_id == user.id:
        return Viewer(user_id=user.id, role=user.role, is_privileged=True)
    return load_viewer(session, exercise.id, user)


# ---------------------------------------------------------------------------
# Scoped listings
# ---------------------------------------------------------------------------


def list_injects(session: Session, session_id: int, viewer: Viewer) -> list[dict[str, Any]]:
    rows = session.execute(
        select(Inject).where(Inject.session_id == session_id).order_by(Inject.published_at.desc(), Inject.id.desc())
    ).scalars().all()
    return [inject_summary(r) for r in filter_visible(session, viewer, rows, from_inject)]


def list_incidents(session: Session, session_id: int, viewer: Viewer) -> list[dict[str, Any]]:
    rows = session.execute(
        select(Incident).where(Incident.session_id == session_id)
        .order_by(Incident.created_at.desc(), Incident.id.desc())
    ).scalars().all()
    return [incident_summary(r) for r in filter_visible(session, viewer, rows, from_incident)]


def list_events(session: Session, session_id: int, viewer: Viewer, limit: int = 200) -> list[dict[str, Any]]:
    rows = session.execute(
        select(SessionEvent).where(SessionEvent.session_id == session_id)
        .order_by(SessionEvent.created_at.desc(), SessionEvent.id.desc()).limit(limit)
    ).scalars().all()
    return [event_summary(r) for r in filter_visible(session, viewer, rows, from_event)]


def available_participants(session: Session, session_id: int) -> list[dict[str, Any]]:
    rows = session.execute(
        select(SessionParticipant.user_id, SessionParticipant.role, User.full_name)
        .join(User, User.id == SessionParticipant.user_id)
        .where(SessionParticipant.session_id == session_id)
        .order_by(User.full_name)
    ).all()
    return [{"user_id": uid, "role": role, "full_name": name} for uid, role, name in rows]


# ---------------------------------------------------------------------------
# Session lifecycle
# ---------------------------------------------------------------------------


def update_session(
    session: Session,
    exercise: ExerciseSession,
    user: User,
    tracker: ObjectiveTracker,
    events: EventSink,
    status: str | None = None,
    auto_complete_on_objectives: bool | None = None,
) -> ExerciseSession:
    require_trainer(exercise, user)
    previous = exercise.status
    first_start = False
    if status is not None and status != previous:
        if status not in SESSION_TRANSITIONS.get(previous, frozenset()):
            raise InvalidState(f"Cannot move session from {previous} to {status}", current_status=previous)
        exercise.status = status
        if status == "in_progress" and exercise.start_time is None:
            exercise.start_time = utcnow()
            first_start = True
        if status in ("completed", "cancelled"):
            exercise.end_time = utcnow()
    if auto_complete_on_objectives is not None:
        exercise.auto_complete_on_objectives = auto_complete_on_objectives
    session.commit()

    if first_start:
        try:
            tracker.initialize(session, exercise.id)
        except Exception as exc:
            session.rollback()
            log.warning("Failed to initialize objectives for session %s: %s", exercise.id, exc)
    if status is not None and status != previous:
        log.info("Session %s moved from %s to %s by user %s", exercise.id, previous, status, user.id)
        try:
            events.emit(exercise.id, "session.status_changed", {"from": previous, "to": status}, user.id)
        except Exception as exc:
            log.warning("Failed to emit status change for session %s: %s", exercise.id, exc)
    elif exercise.status == "in_progress":
        # enabling auto-complete on a session whose objectives are already resolved
        tracker.check_auto_complete(session, exercise.id)
    return get_exercise(session, exercise.id)


def resolution(session: Session, session_id: int, tracker: ObjectiveTracker) -> dict[str, Any]:
    exercise = get_exercise(session, session_id)
    return {
        "session_id": session_id,
        "status": exercise.status,
        "all_resolved": tracker.all_resolved(session, session_id),
    }


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def build_tracker(session: Session, broadcaster: Broadcaster | None = None) -> ObjectiveTracker:
    return ObjectiveTracker(events=DatabaseEventSink(session, broadcaster))


def build_engine(
    session: Session,
    llm: LLMClient | None = None,
    broadcaster: Broadcaster | None = None,
    reevaluation: ReevaluationQueue | None = None,
) -> DecisionEngine:
    events = DatabaseEventSink(session, broadcaster)
    return DecisionEngine(
        events=events,
        notifications=DatabaseNotificationSink(session),
        tracker=ObjectiveTracker(events=events),
        classifier=DecisionClassifier(llm) if llm else None,
        inject_generator=InjectGenerator(llm) if llm else None,
        reevaluation=reevaluation,
        step_timeout=ai_timeout(),
    )


def evaluator_factory(
    llm: LLMClient | None, broadcaster: Broadcaster | None = None,
) -> Callable[[Session], ObjectiveEvaluator]:
    def make(session: Session) -> ObjectiveEvaluator:
        return ObjectiveEvaluator(
            judge=ObjectiveJudge(llm) if llm else None,
            tracker=build_tracker(session, broadcaster),
        )
    return make
