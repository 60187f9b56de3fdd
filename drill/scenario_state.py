"""Derived scenario state updated by executed decisions."""
from __future__ import annotations

import copy
import json
import logging
import re
from typing import Any

from sqlalchemy.orm import Session

from drill.errors import NotFound
from drill.models import Decision, ExerciseSession, StateSnapshot
from drill.sinks import EventSink
from drill.utils import clamp, json_parse, utcnow

log = logging.getLogger(__name__)

RADIUS_RE = re.compile(r"(\d+)\s*m(?:eter)?s?", re.IGNORECASE)
DEFAULT_RADIUS_METERS = 500
# Default zone centre for the seeded scenario venue
DEFAULT_ZONE_CENTER = (1.2931, 103.8558)
NEUTRAL_SENTIMENT = 50


def derive_state(state: dict[str, Any], decision: Decision) -> dict[str, Any]:
    """Return a new state dict with *decision*'s effects applied."""
    new = copy.deepcopy(state)
    text = f"{decision.title} {decision.description}".lower()
    decision_type = decision.type or "operational_action"

    if decision_type == "operational_action" and "evacuation" in text:
        m = RADIUS_RE.search(decision.description or "")
        lat, lng = DEFAULT_ZONE_CENTER
        new.setdefault("evacuation_zones", []).append({
            "id": f"evac-{decision.id}",
            "center_lat": lat,
            "center_lng": lng,
            "radius_meters": int(m.group(1)) if m else DEFAULT_RADIUS_METERS,
            "title": decision.title,
            "created_at": utcnow().isoformat(),
        })
    elif decision_type == "resource_allocation":
        resources = json_parse(decision.resources_needed_json, {})
        if resources:
            new.setdefault("resource_allocations", {}).update(resources)
    elif decision_type == "public_statement":
        sentiment = new.get("public_sentiment") or NEUTRAL_SENTIMENT
        change = 5 if "reassur" in (decision.description or "").lower() else -2
        new["public_sentiment"] = int(clamp(sentiment + change))
    return new


def apply_decision_effects(
    session: Session, session_id: int, decision: Decision, events: EventSink | None = None,
) -> dict[str, Any]:
    exercise = session.get(ExerciseSession, session_id)
    if exercise is None:
        raise NotFound("Session", session_id)
    before = json_parse(exercise.current_state_json, {})
    after = derive_state(before, decision)
    if after == before:
        log.debug("Decision %s (%s) leaves scenario state unchanged", decision.id, decision.type)
        return after
    exercise.current_state_json = json.dumps(after)
    session.add(StateSnapshot(session_id=session_id, decision_id=decision.id, state_json=exercise.current_state_json))
    session.commit()
    log.info("Scenario state for session %s updated by decision %s", session_id, decision.id)
    if events is not None:
        events.emit(session_id, "state.updated", {"decision_id": decision.id, "state": after}, None)
    return after
