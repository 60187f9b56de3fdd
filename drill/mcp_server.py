from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, contextmanager

from mcp.server.fastmcp import FastMCP
from sqlalchemy import select

from drill import services
from drill.db import get_session, init_db
from drill.errors import DrillError
from drill.models import Decision, ExerciseSession
from drill.objectives import IMPACT_RULES, ObjectiveTracker, SuccessThresholds
from drill.utils import json_parse

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def drill_lifespan(server: FastMCP) -> AsyncIterator[None]:
    init_db()
    yield


mcp = FastMCP(
    "Drill",
    instructions=(
        "Drill runs multi-agency crisis response training exercises. "
        "Use these tools to inspect objective progress, session scores, and decisions, "
        "and to apply trainer adjustments. Start with list_objectives(session_id), "
        "then get_session_score(session_id) for the weighted outcome."
    ),
    lifespan=drill_lifespan,
    json_response=True,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@contextmanager
def _session():
    session = get_session()
    try:
        yield session
    finally:
        session.close()


def _get_or_error(session, model, entity_id, label="Entity"):
    obj = session.execute(select(model).where(model.id == entity_id)).scalars().first()
    if not obj:
        return None, {"error": f"{label} {entity_id} not found"}
    return obj, None


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("drill://overview")
def drill_overview() -> str:
    """Overview of Drill: data model, decision workflow, and scoring."""
    thresholds = SuccessThresholds.from_env()
    return json.dumps({
        "system": "Drill: Exercise Decision & Objective Engine",
        "data_model": {
            "session": "One run of a scenario, led by a trainer. scheduled -> in_progress -> completed.",
            "decision": "Proposed by a participant, approved by every named approver, then executed.",
            "objective": "Scored goal of the scenario. Progress 0-100, plus bonuses, minus penalties.",
            "inject": "Narrative update, visible universally, to named roles, or to named teams.",
        },
        "decision_states": ["proposed", "approved", "rejected", "executed"],
        "objective_statuses": ["not_started", "in_progress", "completed", "failed"],
        "success_levels": {
            "Excellent": f">= {thresholds.excellent}",
            "Good": f">= {thresholds.good}",
            "Adequate": f">= {thresholds.adequate}",
            "Needs Improvement": f"< {thresholds.adequate}",
        },
        "impact_rules": [rule.name for rule in IMPACT_RULES],
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools: Objectives
# ---------------------------------------------------------------------------


@mcp.tool()
def list_objectives(session_id: int) -> list[dict] | dict:
    """List objective progress, penalties, and bonuses for an exercise session."""
    with _session() as session:
        _, err = _get_or_error(session, ExerciseSession, session_id, "Session")
        if err:
            return err
        return [services.progress_detail(r) for r in ObjectiveTracker().list_progress(session, session_id)]


@mcp.tool()
def get_session_score(session_id: int) -> dict:
    """Weighted overall score and success level for a session, with per-objective scores."""
    with _session() as session:
        _, err = _get_or_error(session, ExerciseSession, session_id, "Session")
        if err:
            return err
        return ObjectiveTracker().calculate_session_score(session, session_id)


@mcp.tool()
def objective_resolution(session_id: int) -> dict:
    """Whether every objective of the session is completed or failed."""
    with _session() as session:
        try:
            return services.resolution(session, session_id, ObjectiveTracker())
        except DrillError as exc:
            return {"error": exc.message}


@mcp.tool()
def adjust_objective(
    session_id: int,
    objective_id: str,
    progress_percentage: float | None = None,
    status: str | None = None,
    penalty_points: float | None = None,
    bonus_points: float | None = None,
    reason: str = "Trainer adjustment",
) -> dict:
    """Apply a trainer adjustment to one objective.

    Args:
        session_id: Exercise session id.
        objective_id: Objective key, e.g. "evacuation", "media".
        progress_percentage: New progress (clamped to 0-100).
        status: One of not_started, in_progress, completed, failed.
        penalty_points: Points to deduct (recorded as a penalty entry).
        bonus_points: Points to add (recorded as a bonus entry).
        reason: Reason stored with penalty/bonus entries.
    """
    with _session() as session:
        _, err = _get_or_error(session, ExerciseSession, session_id, "Session")
        if err:
            return err
        tracker = services.build_tracker(session)
        try:
            if progress_percentage is not None or status is not None:
                pct = progress_percentage
                if pct is None:
                    pct = tracker.get_progress(session, session_id, objective_id).progress_percentage
                tracker.update_progress(session, session_id, objective_id, pct, status=status)
            if penalty_points:
                tracker.add_penalty(session, session_id, objective_id, reason, penalty_points)
            if bonus_points:
                tracker.add_bonus(session, session_id, objective_id, reason, bonus_points)
            return services.progress_detail(tracker.get_progress(session, session_id, objective_id))
        except DrillError as exc:
            return {"error": exc.message}
        except ValueError as exc:
            return {"error": str(exc)}


# ---------------------------------------------------------------------------
# Tools: Decisions
# ---------------------------------------------------------------------------


@mcp.tool()
def list_decisions(session_id: int, status: str | None = None) -> list[dict] | dict:
    """List all decisions of a session, newest first.

    Args:
        session_id: Exercise session id.
        status: Optional filter: proposed, approved, rejected, or executed.
    """
    with _session() as session:
        _, err = _get_or_error(session, ExerciseSession, session_id, "Session")
        if err:
            return err
        stmt = select(Decision).where(Decision.session_id == session_id)
        if status:
            stmt = stmt.where(Decision.status == status)
        rows = session.execute(stmt.order_by(Decision.created_at.desc(), Decision.id.desc())).scalars().all()
        return [
            {
                "id": d.id, "title": d.title, "type": d.type, "status": d.status,
                "proposer_id": d.proposer_id,
                "approvals": f"{sum(s.status == 'approved' for s in d.steps)}/{len(d.steps)}",
                "ai_classification": json_parse(d.ai_classification_json, None),
            }
            for d in rows
        ]


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the Drill MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()
