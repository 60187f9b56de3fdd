"""Inject generation, publication and inject-derived incidents.

Published injects are recorded twice: as an ``Inject`` row and as an
``inject`` session event whose metadata carries the inject's scope, so the
timeline can be filtered without joining back to the inject.
"""
from __future__ import annotations

import json
import logging
from typing import Any

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from drill.errors import DependencyDegraded, NotFound
from drill.llm import LLMCallError, LLMClient
from drill.models import Decision, Incident, Inject, ObjectiveProgress, SessionParticipant, SessionTeam
from drill.schemas import DecisionClassification, GeneratedInject
from drill.sinks import EventSink, NotificationMessage, NotificationSink
from drill.utils import json_parse

log = logging.getLogger(__name__)

INJECT_PROMPT = """\
You are the exercise controller for a multi-agency crisis response training \
exercise. A participant decision has just been executed. Write ONE short, \
realistic inject (news report, field update, citizen call, intel brief) that \
shows the consequence of that decision in the unfolding scenario.

The inject is shown only to the participant who proposed the decision, so \
write it from the point of view of the information that would reach them.

Respond with ONLY valid JSON:
{
  "title": "<short headline>",
  "content": "<2-4 sentences>",
  "type": "<media_report|field_update|citizen_call|intel_brief|resource_shortage|political_pressure>",
  "severity": "<low|medium|high|critical>",
  "scope": "<universal|role_specific|team_specific>",
  "affected_roles": ["<role>", ...],
  "target_teams": ["<team>", ...]
}
"""


class InjectGenerator:
    """``(decision, classification) -> GeneratedInject`` backed by an LLM."""

    def __init__(self, client: LLMClient):
        self.client = client

    async def generate(
        self,
        decision: Decision,
        classification: DecisionClassification,
        context: dict[str, Any] | None = None,
    ) -> GeneratedInject:
        user = "\n".join([
            f"DECISION: {decision.title}",
            f"DESCRIPTION: {decision.description}",
            f"CATEGORY: {classification.primary_category}",
            f"KEYWORDS: {', '.join(classification.keywords)}",
            f"TAGS: {', '.join(classification.semantic_tags)}",
            f"SCENARIO CONTEXT: {json.dumps(context or {}, default=str)}",
        ])
        try:
            data = await self.client.call(INJECT_PROMPT, user)
            return GeneratedInject.model_validate(data)
        except LLMCallError as exc:
            raise DependencyDegraded("inject_generator", str(exc), retryable=exc.retryable) from exc
        except ValidationError as exc:
            raise DependencyDegraded("inject_generator", f"invalid inject: {exc}") from exc


def generation_context(session: Session, session_id: int, state: dict[str, Any]) -> dict[str, Any]:
    objectives = session.execute(
        select(ObjectiveProgress.objective_id, ObjectiveProgress.status, ObjectiveProgress.progress_percentage)
        .where(ObjectiveProgress.session_id == session_id)
    ).all()
    return {
        "state": state,
        "objectives": [
            {"objective_id": oid, "status": status, "progress": pct} for oid, status, pct in objectives
        ],
    }


def recipients(session: Session, session_id: int, inject: Inject) -> list[int]:
    """Participants who should be told about *inject*."""
    if inject.ai_generated and inject.triggered_by_user_id is not None:
        return [inject.triggered_by_user_id]
    if inject.scope == "role_specific":
        roles = json_parse(inject.affected_roles_json, [])
        if not roles:
            return []
        stmt = select(SessionParticipant.user_id).where(
            SessionParticipant.session_id == session_id, SessionParticipant.role.in_(roles),
        )
    elif inject.scope == "team_specific":
        teams = json_parse(inject.target_teams_json, [])
        if not teams:
            return []
        stmt = select(SessionTeam.user_id).where(
            SessionTeam.session_id == session_id, SessionTeam.team_name.in_(teams),
        )
    else:
        stmt = select(SessionParticipant.user_id).where(SessionParticipant.session_id == session_id)
    return list(dict.fromkeys(session.execute(stmt).scalars().all()))


def publish_inject(
    session: Session,
    session_id: int,
    generated: GeneratedInject,
    events: EventSink,
    notifications: NotificationSink | None = None,
    ai_generated: bool = False,
    triggered_by: int | None = None,
    source_decision_id: int | None = None,
) -> Inject:
    inject = Inject(
        session_id=session_id, title=generated.title, content=generated.content,
        inject_type=generated.inject_type, severity=generated.severity, scope=generated.scope,
        affected_roles_json=json.dumps(generated.affected_roles),
        target_teams_json=json.dumps(generated.target_teams),
        ai_generated=ai_generated, triggered_by_user_id=triggered_by,
        source_decision_id=source_decision_id,
    )
    session.add(inject)
    session.commit()
    log.info("Published inject %s (%s) into session %s", inject.id, generated.scope, session_id)

    events.emit(session_id, "inject", {
        "inject_id": inject.id, "title": inject.title, "type": inject.inject_type,
        "severity": inject.severity, "scope": inject.scope,
        "affected_roles": generated.affected_roles, "target_teams": generated.target_teams,
        "ai_generated": ai_generated, "triggered_by_user_id": triggered_by,
        "source_decision_id": source_decision_id,
    }, triggered_by)

    if notifications is not None:
        user_ids = recipients(session, session_id, inject)
        if user_ids:
            notifications.notify(session_id, user_ids, NotificationMessage(
                type="inject_published", title=inject.title, message=inject.content[:280],
                priority="high" if inject.severity in ("high", "critical") else "medium",
                action_ref=f"/sessions/{session_id}#inject-{inject.id}",
                metadata={"inject_id": inject.id},
            ))
    return inject


def create_incident(
    session: Session,
    session_id: int,
    title: str,
    description: str,
    events: EventSink,
    inject_id: int | None = None,
    severity: str = "medium",
    reported_by: int | None = None,
) -> Incident:
    """Record an incident. Incidents raised from an inject inherit its scope."""
    incident = Incident(
        session_id=session_id, title=title, description=description,
        severity=severity, reported_by=reported_by, inject_id=inject_id,
    )
    if inject_id is not None:
        inject = session.get(Inject, inject_id)
        if inject is None or inject.session_id != session_id:
            raise NotFound("Inject", inject_id)
        incident.scope = inject.scope or "universal"
        incident.affected_roles_json = inject.affected_roles_json
        incident.target_teams_json = inject.target_teams_json
    session.add(incident)
    session.commit()
    payload: dict[str, Any] = {"incident_id": incident.id, "title": title, "severity": severity}
    if inject_id is not None:
        payload.update({"created_from_inject": True, "inject_id": inject_id})
    events.emit(session_id, "incident", payload, reported_by)
    return incident
