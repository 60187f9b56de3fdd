"""Objective progress, scoring and session auto-completion.

Scoring
-------
Each objective gets a score in [0, 100]:

- base: 100 if ``completed``, 0 if ``failed``, otherwise ``progress_percentage``
- plus the sum of bonus points, minus the sum of penalty points
- clamped to [0, 100]

The session's ``overall_score`` is the weight-averaged objective score, and
``success_level`` is bucketed by ``SuccessThresholds``.

Writes are keyed by ``(session_id, objective_id)``: progress changes are one
UPDATE (INSERT if the row is missing) and penalties/bonuses are one INSERT
each, so concurrent writers never overwrite each other's history.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from drill.errors import NotFound
from drill.models import (
    Decision, ExerciseSession, ObjectiveAdjustment, ObjectiveProgress, ScenarioObjective,
)
from drill.schemas import OBJECTIVE_STATUSES, ObjectiveMetrics
from drill.sinks import EventSink
from drill.utils import clamp, utcnow

log = logging.getLogger(__name__)

DEFAULT_SCENARIO_TITLE = "C2E Bombing at Community Event"

# Seeded objectives for the default scenario: {objective_id: (name, weight)}
DEFAULT_OBJECTIVES: dict[str, tuple[str, float]] = {
    "evacuation": ("Evacuate 1,000 Participants", 30.0),
    "triage": ("Establish Medical Triage System", 25.0),
    "media": ("Manage Media and Mitigate Communal Tension", 30.0),
    "coordination": ("Coordinate with Emergency Services", 15.0),
}
DEFAULT_WEIGHT = 25.0

RESOLVED_STATUSES = frozenset({"completed", "failed"})


# ---------------------------------------------------------------------------
# Success levels
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SuccessThresholds:
    excellent: float = 90.0
    good: float = 75.0
    adequate: float = 60.0

    def level(self, overall_score: float) -> str:
        if overall_score >= self.excellent:
            return "Excellent"
        if overall_score >= self.good:
            return "Good"
        if overall_score >= self.adequate:
            return "Adequate"
        return "Needs Improvement"

    @classmethod
    def from_env(cls) -> SuccessThresholds:
        """Read ``DRILL_SUCCESS_THRESHOLDS="90,75,60"``; defaults on absence or junk."""
        raw = os.environ.get("DRILL_SUCCESS_THRESHOLDS", "").strip()
        if not raw:
            return cls()
        try:
            excellent, good, adequate = (float(p) for p in raw.split(","))
        except ValueError:
            log.warning("Ignoring malformed DRILL_SUCCESS_THRESHOLDS=%r", raw)
            return cls()
        return cls(excellent=excellent, good=good, adequate=adequate)


def objective_score(row: ObjectiveProgress) -> float:
    if row.status == "completed":
        base = 100.0
    elif row.status == "failed":
        base = 0.0
    else:
        base = row.progress_percentage or 0.0
    net = sum(a.points for a in row.adjustments if a.kind == "bonus") - sum(
        a.points for a in row.adjustments if a.kind == "penalty"
    )
    return round(clamp(base + net), 2)


def derive_status(percentage: float) -> str:
    if percentage <= 0:
        return "not_started"
    if percentage >= 100:
        return "completed"
    return "in_progress"


# ---------------------------------------------------------------------------
# Decision impact rules
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ImpactEffect:
    objective_id: str
    kind: str  # "progress" | "penalty" | "bonus"
    points: float = 0.0
    reason: str = ""
    status: str | None = None
    metrics: tuple[tuple[str, Any], ...] = ()


@dataclass(frozen=True)
class ImpactRule:
    """``(decision type, keyword predicate) -> effects``.

    ``requires`` is a tuple of keyword groups: every group must have at least
    one keyword present in the text. Any keyword in ``excludes`` vetoes the rule.
    An empty ``decision_types`` matches every type.
    """
    name: str
    effects: tuple[ImpactEffect, ...]
    decision_types: frozenset[str] = frozenset()
    requires: tuple[tuple[str, ...], ...] = ()
    excludes: tuple[str, ...] = ()

    def __post_init__(self):
        targets = [e.objective_id for e in self.effects]
        if len(targets) != len(set(targets)):
            raise ValueError(f"Rule {self.name!r} has more than one effect on the same objective")

    def matches(self, decision_type: str | None, text: str) -> bool:
        if self.decision_types and decision_type not in self.decision_types:
            return False
        if any(word in text for word in self.excludes):
            return False
        return all(any(word in text for word in group) for group in self.requires)


_EVACUATE = ("evacuate", "evacuation")
_SEGREGATE = ("separate", "segregate")
_COUNTERS_MISINFORMATION = ("misinformation", "false", "deny")
_REFUSES_COMMENT = ("refuse", "no comment")

IMPACT_RULES: tuple[ImpactRule, ...] = (
    ImpactRule(
        name="segregated_evacuation",
        decision_types=frozenset({"emergency_declaration"}),
        requires=(_EVACUATE, _SEGREGATE),
        effects=(
            ImpactEffect("evacuation", "penalty", 30, "Discriminatory segregation decision"),
            ImpactEffect("media", "penalty", 40, "Discriminatory actions observed"),
        ),
    ),
    ImpactRule(
        name="inclusive_evacuation",
        decision_types=frozenset({"emergency_declaration"}),
        requires=(_EVACUATE, ("together", "everyone")),
        excludes=_SEGREGATE,
        effects=(
            ImpactEffect("evacuation", "progress", 30, status="in_progress",
                         metrics=(("evacuation_plan_executed", True),)),
        ),
    ),
    ImpactRule(
        name="statement_counters_misinformation",
        decision_types=frozenset({"public_statement"}),
        requires=(_COUNTERS_MISINFORMATION,),
        effects=(
            ImpactEffect("media", "bonus", 20, "Statement addresses misinformation"),
        ),
    ),
    # progress half of the misinformation rule above
    ImpactRule(
        name="statement_counters_misinformation_progress",
        decision_types=frozenset({"public_statement"}),
        requires=(_COUNTERS_MISINFORMATION,),
        effects=(
            ImpactEffect("media", "progress", 50, status="in_progress"),
        ),
    ),
    ImpactRule(
        name="statement_refuses_comment",
        decision_types=frozenset({"public_statement"}),
        requires=(_REFUSES_COMMENT,),
        excludes=_COUNTERS_MISINFORMATION,
        effects=(
            ImpactEffect("media", "penalty", 30, "Refusal to comment creates information vacuum"),
        ),
    ),
    ImpactRule(
        name="statement_ignores_misinformation",
        decision_types=frozenset({"public_statement"}),
        excludes=_COUNTERS_MISINFORMATION + _REFUSES_COMMENT,
        effects=(
            ImpactEffect("media", "penalty", 25, "Statement fails to counter misinformation"),
        ),
    ),
    ImpactRule(
        name="triage_established",
        decision_types=frozenset({"resource_allocation"}),
        requires=(("triage",),),
        effects=(
            ImpactEffect("triage", "progress", 50, status="in_progress",
                         metrics=(("triage_system_established", True),)),
        ),
    ),
    ImpactRule(
        name="coordination_order",
        decision_types=frozenset({"coordination_order"}),
        effects=(
            ImpactEffect("coordination", "progress", 40, status="in_progress",
                         metrics=(("coordination_efforts", True),)),
        ),
    ),
)


def decision_text(decision: Decision) -> str:
    return f"{decision.title or ''} {decision.description or ''}".lower()


def matching_rules(decision: Decision, rules: tuple[ImpactRule, ...] = IMPACT_RULES) -> list[ImpactRule]:
    text = decision_text(decision)
    return [rule for rule in rules if rule.matches(decision.type, text)]


# ---------------------------------------------------------------------------
# Tracker
# ---------------------------------------------------------------------------


class ObjectiveTracker:
    def __init__(
        self,
        events: EventSink | None = None,
        thresholds: SuccessThresholds | None = None,
        rules: tuple[ImpactRule, ...] = IMPACT_RULES,
    ):
        self.events = events
        self.thresholds = thresholds or SuccessThresholds.from_env()
        self.rules = rules

    # -- reads ---------------------------------------------------------------

    def list_progress(self, session: Session, session_id: int) -> list[ObjectiveProgress]:
        return list(session.execute(
            select(ObjectiveProgress)
            .where(ObjectiveProgress.session_id == session_id)
            .options(selectinload(ObjectiveProgress.adjustments))
            .order_by(ObjectiveProgress.objective_id)
            .execution_options(populate_existing=True)
        ).scalars().all())

    def get_progress(self, session: Session, session_id: int, objective_id: str) -> ObjectiveProgress:
        row = session.execute(
            select(ObjectiveProgress)
            .where(ObjectiveProgress.session_id == session_id,
                   ObjectiveProgress.objective_id == objective_id)
            .options(selectinload(ObjectiveProgress.adjustments))
            .execution_options(populate_existing=True)
        ).scalars().first()
        if row is None:
            raise NotFound("Objective", objective_id)
        return row

    def all_resolved(self, session: Session, session_id: int) -> bool:
        """True when the session has objectives and every one is completed or failed."""
        statuses = session.execute(
            select(ObjectiveProgress.status).where(ObjectiveProgress.session_id == session_id)
        ).scalars().all()
        return bool(statuses) and all(s in RESOLVED_STATUSES for s in statuses)

    # -- writes --------------------------------------------------------------

    def initialize(self, session: Session, session_id: int) -> list[ObjectiveProgress]:
        """Create a 0% row per scenario objective. Existing rows are left as they are."""
        exercise = session.get(ExerciseSession, session_id)
        if exercise is None:
            raise NotFound("Session", session_id)
        definitions = session.execute(
            select(ScenarioObjective).where(ScenarioObjective.scenario_id == exercise.scenario_id)
        ).scalars().all()
        if not definitions:
            log.warning("No objectives defined for scenario %s (session %s)", exercise.scenario_id, session_id)
            return []
        existing = set(session.execute(
            select(ObjectiveProgress.objective_id).where(ObjectiveProgress.session_id == session_id)
        ).scalars().all())
        for obj in definitions:
            if obj.objective_id in existing:
                continue
            session.add(ObjectiveProgress(
                session_id=session_id, objective_id=obj.objective_id,
                objective_name=obj.objective_name, progress_percentage=0.0,
                status="not_started", weight=obj.weight if obj.weight is not None else DEFAULT_WEIGHT,
                metrics_json="{}",
            ))
        try:
            session.commit()
        except IntegrityError:
            # a concurrent initialize inserted the same rows first
            session.rollback()
        log.info("Initialized %d objectives for session %s", len(definitions), session_id)
        return self.list_progress(session, session_id)

    def update_progress(
        self,
        session: Session,
        session_id: int,
        objective_id: str,
        percentage: float,
        status: str | None = None,
        metrics: dict[str, Any] | ObjectiveMetrics | None = None,
        objective_name: str | None = None,
        only_unresolved: bool = False,
    ) -> ObjectiveProgress:
        """Upsert progress for one objective, then run the auto-completion check.

        Omitted ``status``/``metrics`` keep their stored values. With
        ``only_unresolved`` the write is skipped for completed/failed rows.
        """
        if status is not None and status not in OBJECTIVE_STATUSES:
            raise ValueError(f"Invalid objective status: {status!r}")
        pct = clamp(float(percentage))
        values: dict[str, Any] = {"progress_percentage": pct, "updated_at": utcnow()}
        if status is not None:
            values["status"] = status
        if metrics is not None:
            if not isinstance(metrics, ObjectiveMetrics):
                metrics = ObjectiveMetrics.model_validate(metrics)
            values["metrics_json"] = metrics.to_json()
        if objective_name:
            values["objective_name"] = objective_name

        if not self._update_row(session, session_id, objective_id, values, only_unresolved):
            exists = session.execute(
                select(ObjectiveProgress.id).where(
                    ObjectiveProgress.session_id == session_id,
                    ObjectiveProgress.objective_id == objective_id,
                )
            ).scalar()
            if exists is None:
                self._insert_row(session, session_id, objective_id, values, status)
        session.commit()
        self.check_auto_complete(session, session_id)
        return self.get_progress(session, session_id, objective_id)

    def _update_row(self, session, session_id, objective_id, values, only_unresolved) -> bool:
        stmt = update(ObjectiveProgress).where(
            ObjectiveProgress.session_id == session_id,
            ObjectiveProgress.objective_id == objective_id,
        )
        if only_unresolved:
            stmt = stmt.where(ObjectiveProgress.status.not_in(tuple(RESOLVED_STATUSES)))
        result = session.execute(stmt.values(**values).execution_options(synchronize_session=False))
        return result.rowcount > 0

    def _insert_row(self, session, session_id, objective_id, values, status) -> None:
        definition = self._definition(session, session_id, objective_id)
        row = ObjectiveProgress(
            session_id=session_id,
            objective_id=objective_id,
            objective_name=values.get("objective_name") or (definition.objective_name if definition else objective_id),
            progress_percentage=values["progress_percentage"],
            status=status or derive_status(values["progress_percentage"]),
            weight=definition.weight if definition else DEFAULT_WEIGHT,
            metrics_json=values.get("metrics_json", "{}"),
        )
        session.add(row)
        try:
            session.commit()
        except IntegrityError:
            # lost an insert race for the same key; apply as an update instead
            session.rollback()
            self._update_row(session, session_id, objective_id, values, only_unresolved=False)

    def _definition(self, session: Session, session_id: int, objective_id: str) -> ScenarioObjective | None:
        return session.execute(
            select(ScenarioObjective)
            .join(ExerciseSession, ExerciseSession.scenario_id == ScenarioObjective.scenario_id)
            .where(ExerciseSession.id == session_id, ScenarioObjective.objective_id == objective_id)
        ).scalars().first()

    def add_penalty(self, session: Session, session_id: int, objective_id: str,
                    reason: str, points: float) -> ObjectiveAdjustment:
        return self._add_adjustment(session, session_id, objective_id, "penalty", reason, points)

    def add_bonus(self, session: Session, session_id: int, objective_id: str,
                  reason: str, points: float) -> ObjectiveAdjustment:
        return self._add_adjustment(session, session_id, objective_id, "bonus", reason, points)

    def _add_adjustment(self, session, session_id, objective_id, kind, reason, points) -> ObjectiveAdjustment:
        if points < 0:
            raise ValueError(f"{kind} points must be non-negative")
        progress_id = session.execute(
            select(ObjectiveProgress.id).where(
                ObjectiveProgress.session_id == session_id,
                ObjectiveProgress.objective_id == objective_id,
            )
        ).scalar()
        if progress_id is None:
            raise NotFound("Objective", objective_id)
        adjustment = ObjectiveAdjustment(
            progress_id=progress_id, kind=kind, reason=reason, points=float(points), created_at=utcnow(),
        )
        session.add(adjustment)
        session.commit()
        log.info("Session %s: %s of %s on %s (%s)", session_id, kind, points, objective_id, reason)
        return adjustment

    # -- decision impact -----------------------------------------------------

    def track_decision_impact(self, session: Session, session_id: int, decision: Decision) -> list[str]:
        """Apply every matching impact rule. Returns the names of rules that fired."""
        fired = []
        for rule in matching_rules(decision, self.rules):
            for effect in rule.effects:
                try:
                    self._apply_effect(session, session_id, effect)
                except NotFound:
                    log.warning("Rule %s skipped: objective %s not initialized for session %s",
                                rule.name, effect.objective_id, session_id)
            fired.append(rule.name)
        if fired:
            log.info("Decision %s fired impact rules: %s", decision.id, ", ".join(fired))
        self.check_auto_complete(session, session_id)
        return fired

    def _apply_effect(self, session: Session, session_id: int, effect: ImpactEffect) -> None:
        if effect.kind == "penalty":
            self.add_penalty(session, session_id, effect.objective_id, effect.reason, effect.points)
        elif effect.kind == "bonus":
            self.add_bonus(session, session_id, effect.objective_id, effect.reason, effect.points)
        elif effect.kind == "progress":
            self.get_progress(session, session_id, effect.objective_id)
            self.update_progress(
                session, session_id, effect.objective_id, effect.points,
                status=effect.status, metrics=dict(effect.metrics) if effect.metrics else None,
                only_unresolved=True,
            )
        else:
            raise ValueError(f"Unknown effect kind: {effect.kind!r}")

    # -- scoring -------------------------------------------------------------

    def calculate_session_score(self, session: Session, session_id: int) -> dict[str, Any]:
        rows = self.list_progress(session, session_id)
        breakdown = []
        weighted = total_weight = 0.0
        for row in rows:
            row.score = objective_score(row)
            weight = row.weight or 0.0
            weighted += row.score * weight
            total_weight += weight
            breakdown.append({
                "objective_id": row.objective_id, "objective_name": row.objective_name,
                "status": row.status, "weight": weight, "score": row.score,
            })
        session.commit()
        overall = round(weighted / total_weight, 2) if total_weight else 0.0
        return {
            "session_id": session_id,
            "overall_score": overall,
            "success_level": self.thresholds.level(overall),
            "objectives": breakdown,
        }

    # -- auto-completion -----------------------------------------------------

    def check_auto_complete(self, session: Session, session_id: int) -> bool:
        """Complete the session if every objective is resolved.

        Returns True only for the call that performed the transition.
        """
        exercise = session.execute(
            select(ExerciseSession).where(ExerciseSession.id == session_id)
            .execution_options(populate_existing=True)
        ).scalars().first()
        if exercise is None or exercise.status != "in_progress" or not exercise.auto_complete_on_objectives:
            return False
        if not self.all_resolved(session, session_id):
            return False
        end_time = utcnow()
        result = session.execute(
            update(ExerciseSession)
            .where(ExerciseSession.id == session_id, ExerciseSession.status == "in_progress")
            .values(status="completed", end_time=end_time)
            .execution_options(synchronize_session=False)
        )
        session.commit()
        if result.rowcount != 1:
            return False
        session.refresh(exercise)
        log.info("Session %s auto-completed: all objectives resolved", session_id)
        if self.events is not None:
            try:
                self.events.emit(session_id, "session.completed",
                                 {"reason": "objectives_resolved", "end_time": end_time.isoformat()}, None)
            except Exception as exc:
                log.warning("Failed to emit auto-completion event for session %s: %s", session_id, exc)
        return True

