"""Multi-approver decision workflow: propose, approve, execute.

State machine::

    proposed --(every step approved)--> approved --(execute, CAS)--> executed
        \\--(any step rejected)--> rejected

``rejected`` and ``executed`` are terminal. Approval is a flat quorum: all
named approvers must approve and a single rejection vetoes. Steps carry a
``step_order`` but every step is actionable at once.

``execute`` commits the status change with one conditional UPDATE and only
then runs its side effects. Each side effect is wrapped on its own; a failure
is logged and the next step still runs. The execution is never rolled back.
"""
from __future__ import annotations

import asyncio
import inspect
import json
import logging
from collections.abc import Iterable
from typing import Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session, selectinload

from drill.classifier import DecisionClassifier
from drill.errors import ConcurrencyConflict, Forbidden, InvalidState, NoPendingStep, NotFound
from drill.evaluation import ReevaluationQueue
from drill.injects import InjectGenerator, generation_context, publish_inject
from drill.models import Decision, DecisionStep, ExerciseSession, SessionParticipant, User
from drill.objectives import ObjectiveTracker
from drill.scenario_state import apply_decision_effects
from drill.schemas import DecisionClassification
from drill.scope import PRIVILEGED_ROLES, Viewer
from drill.sinks import EventSink, NotificationMessage, NotificationSink
from drill.utils import utcnow

log = logging.getLogger(__name__)

DEFAULT_STEP_TIMEOUT = 20.0


class DecisionEngine:
    def __init__(
        self,
        events: EventSink,
        notifications: NotificationSink,
        tracker: ObjectiveTracker,
        classifier: DecisionClassifier | None = None,
        inject_generator: InjectGenerator | None = None,
        reevaluation: ReevaluationQueue | None = None,
        step_timeout: float = DEFAULT_STEP_TIMEOUT,
    ):
        self.events = events
        self.notifications = notifications
        self.tracker = tracker
        self.classifier = classifier
        self.inject_generator = inject_generator
        self.reevaluation = reevaluation
        self.step_timeout = step_timeout

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, session: Session, decision_id: int) -> Decision:
        decision = session.execute(
            select(Decision).where(Decision.id == decision_id)
            .options(selectinload(Decision.steps))
            .execution_options(populate_existing=True)
        ).scalars().first()
        if decision is None:
            raise NotFound("Decision", decision_id)
        return decision

    def list_for_viewer(self, session: Session, session_id: int, viewer: Viewer) -> list[Decision]:
        """All decisions for trainers/admins; otherwise those the user proposed or approves."""
        stmt = (
            select(Decision)
            .where(Decision.session_id == session_id)
            .options(selectinload(Decision.steps))
            .order_by(Decision.created_at.desc(), Decision.id.desc())
        )
        if not viewer.is_privileged:
            has_step = select(DecisionStep.id).where(
                DecisionStep.decision_id == Decision.id, DecisionStep.user_id == viewer.user_id,
            ).exists()
            stmt = stmt.where(or_(Decision.proposer_id == viewer.user_id, has_step))
        return list(session.execute(stmt).scalars().all())

    # ------------------------------------------------------------------
    # Propose
    # ------------------------------------------------------------------

    def propose(
        self,
        session: Session,
        session_id: int,
        proposer_id: int,
        title: str,
        description: str,
        required_approvers: Iterable[int],
        decision_type: str | None = None,
        resources_needed: dict[str, Any] | None = None,
    ) -> Decision:
        exercise = session.get(ExerciseSession, session_id)
        if exercise is None:
            raise NotFound("Session", session_id)
        if exercise.status != "in_progress":
            raise InvalidState("Session is not active", current_status=exercise.status)
        approvers = list(dict.fromkeys(required_approvers))
        if not approvers:
            raise ValueError("At least one approver is required")

        roles = dict(session.execute(
            select(SessionParticipant.user_id, SessionParticipant.role).where(
                SessionParticipant.session_id == session_id,
                SessionParticipant.user_id.in_(approvers),
            )
        ).all())

        decision = Decision(
            session_id=session_id, proposer_id=proposer_id, title=title, description=description,
            type=decision_type, status="proposed",
            resources_needed_json=json.dumps(resources_needed or {}),
        )
        session.add(decision)
        session.flush()
        for order, user_id in enumerate(approvers, start=1):
            session.add(DecisionStep(
                decision_id=decision.id, user_id=user_id, role=roles.get(user_id, "unknown"),
                step_order=order, status="pending",
            ))
        session.commit()
        decision = self.get(session, decision.id)
        log.info("Decision %s proposed in session %s by user %s (%d approvers)",
                 decision.id, session_id, proposer_id, len(approvers))

        self._notify(session_id, approvers, NotificationMessage(
            type="decision_approval_required",
            title="Decision Requires Your Approval",
            message=f'"{title}" requires your approval',
            priority="high",
            action_ref=f"/sessions/{session_id}#decisions",
            metadata={"decision_id": decision.id},
        ))
        self._emit(session_id, "decision.proposed", {
            "decision_id": decision.id, "title": title, "approvers": approvers,
        }, proposer_id)
        return decision

    # ------------------------------------------------------------------
    # Approve / reject
    # ------------------------------------------------------------------

    def approve(
        self,
        session: Session,
        decision_id: int,
        caller_id: int,
        approved: bool,
        comment: str | None = None,
    ) -> Decision:
        decision = self.get(session, decision_id)
        if decision.status != "proposed":
            raise InvalidState(f"Decision is already {decision.status}", current_status=decision.status)

        step_status = "approved" if approved else "rejected"
        result = session.execute(
            update(DecisionStep)
            .where(
                DecisionStep.decision_id == decision_id,
                DecisionStep.user_id == caller_id,
                DecisionStep.status == "pending",
            )
            .values(status=step_status, responder_id=caller_id, responded_at=utcnow(), comment=comment)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            session.rollback()
            raise NoPendingStep("No pending approval step for you")

        if not approved:
            session.execute(
                update(Decision)
                .where(Decision.id == decision_id, Decision.status == "proposed")
                .values(status="rejected")
                .execution_options(synchronize_session=False)
            )
        else:
            remaining = session.execute(
                select(func.count(DecisionStep.id)).where(
                    DecisionStep.decision_id == decision_id, DecisionStep.status != "approved",
                )
            ).scalar()
            if remaining == 0:
                # concurrent final approvers converge on the same write
                session.execute(
                    update(Decision)
                    .where(Decision.id == decision_id, Decision.status == "proposed")
                    .values(status="approved")
                    .execution_options(synchronize_session=False)
                )
        session.commit()
        decision = self.get(session, decision_id)
        log.info("Decision %s %s by user %s; decision is %s",
                 decision_id, step_status, caller_id, decision.status)

        if not approved:
            suffix = f": {comment}" if comment else ""
            self._notify(decision.session_id, [decision.proposer_id], NotificationMessage(
                type="decision_rejected", title="Decision Rejected",
                message=f'Your decision "{decision.title}" was rejected{suffix}',
                priority="high", action_ref=f"/sessions/{decision.session_id}#decisions",
                metadata={"decision_id": decision_id, "responder_id": caller_id},
            ))
            self._emit(decision.session_id, "decision.rejected",
                       {"decision_id": decision_id, "comment": comment}, caller_id)
        elif decision.status == "approved":
            self._notify(decision.session_id, [decision.proposer_id], NotificationMessage(
                type="decision_approved", title="Decision Approved",
                message=f'Your decision "{decision.title}" has been fully approved',
                priority="medium", action_ref=f"/sessions/{decision.session_id}#decisions",
                metadata={"decision_id": decision_id},
            ))
            self._emit(decision.session_id, "decision.approved", {"decision_id": decision_id}, caller_id)
        else:
            self._emit(decision.session_id, "decision.step_approved",
                       {"decision_id": decision_id, "comment": comment}, caller_id)
        return decision

    # ------------------------------------------------------------------
    # Execute
    # ------------------------------------------------------------------

    async def execute(self, session: Session, decision_id: int, caller: User) -> Decision:
        decision = self.get(session, decision_id)
        self._check_may_execute(session, decision, caller)

        executed_at = utcnow()
        result = session.execute(
            update(Decision)
            .where(Decision.id == decision_id, Decision.status == "approved")
            .values(status="executed", executed_at=executed_at)
            .execution_options(synchronize_session=False)
        )
        session.commit()
        if result.rowcount == 0:
            current = session.execute(select(Decision.status).where(Decision.id == decision_id)).scalar()
            session.rollback()
            if current == "executed":
                raise ConcurrencyConflict("Decision has already been executed", current_status=current)
            raise InvalidState(f"Decision must be approved before execution (is {current})",
                               current_status=current)

        decision = self.get(session, decision_id)
        session_id = decision.session_id
        log.info("Decision %s executed in session %s by user %s", decision_id, session_id, caller.id)

        state = await self._step(session, decision_id, "scenario state",
                                 apply_decision_effects, session, session_id, decision, self.events)
        classification = await self._step(session, decision_id, "classification",
                                          self._classify, session, decision)
        if classification is not None:
            await self._step(session, decision_id, "inject generation",
                             self._generate_inject, session, decision, classification, state or {})
        await self._step(session, decision_id, "impact tracking",
                         self.tracker.track_decision_impact, session, session_id, decision)
        await self._step(session, decision_id, "re-evaluation enqueue", self._enqueue_reevaluation, session_id)
        await self._step(session, decision_id, "proposer notification", self._notify,
                         session_id, [decision.proposer_id], NotificationMessage(
                             type="decision_executed", title="Decision Executed",
                             message=f'Your decision "{decision.title}" has been executed',
                             priority="medium", action_ref=f"/sessions/{session_id}#decisions",
                             metadata={"decision_id": decision_id},
                         ))
        await self._step(session, decision_id, "broadcast", self._emit, session_id, "decision.executed", {
            "decision_id": decision_id, "title": decision.title, "type": decision.type,
        }, caller.id)
        return self.get(session, decision_id)

    def _check_may_execute(self, session: Session, decision: Decision, caller: User) -> None:
        if caller.role in PRIVILEGED_ROLES or caller.id == decision.proposer_id:
            return
        if any(step.user_id == caller.id for step in decision.steps):
            return
        trainer_id = session.execute(
            select(ExerciseSession.trainer_id).where(ExerciseSession.id == decision.session_id)
        ).scalar()
        if caller.id != trainer_id:
            raise Forbidden("Only the proposer, an approver or the session trainer may execute this decision")

    async def _step(self, session: Session, decision_id: int, label: str, fn, *args):
        """Run one post-execution side effect; log and swallow its failure."""
        try:
            result = fn(*args)
            if inspect.isawaitable(result):
                result = await asyncio.wait_for(result, timeout=self.step_timeout)
            return result
        except asyncio.TimeoutError:
            log.warning("Decision %s: %s timed out after %.1fs", decision_id, label, self.step_timeout)
        except Exception as exc:
            log.warning("Decision %s: %s failed: %s", decision_id, label, exc)
        session.rollback()
        return None

    async def _classify(self, session: Session, decision: Decision) -> DecisionClassification | None:
        if self.classifier is None:
            log.debug("No classifier configured; decision %s stays %s", decision.id, decision.type)
            return None
        classification = await self.classifier.classify(decision.title, decision.description)
        values: dict[str, Any] = {"ai_classification_json": classification.to_json()}
        if decision.type is None:
            values["type"] = classification.primary_category
        session.execute(
            update(Decision).where(Decision.id == decision.id).values(**values)
            .execution_options(synchronize_session=False)
        )
        session.commit()
        session.refresh(decision)
        log.info("Decision %s classified as %s (confidence %.2f)",
                 decision.id, classification.primary_category, classification.confidence)
        return classification

    async def _generate_inject(self, session: Session, decision: Decision,
                               classification: DecisionClassification, state: dict[str, Any]) -> None:
        if self.inject_generator is None:
            return
        context = generation_context(session, decision.session_id, state)
        generated = await self.inject_generator.generate(decision, classification, context)
        publish_inject(
            session, decision.session_id, generated, self.events, self.notifications,
            ai_generated=True, triggered_by=decision.proposer_id, source_decision_id=decision.id,
        )

    def _enqueue_reevaluation(self, session_id: int) -> None:
        if self.reevaluation is None:
            return
        self.reevaluation.enqueue(session_id)

    # ------------------------------------------------------------------
    # Sinks
    # ------------------------------------------------------------------

    def _notify(self, session_id: int, user_ids: list[int], message: NotificationMessage) -> None:
        try:
            self.notifications.notify(session_id, user_ids, message)
        except Exception as exc:
            log.warning("Notification %s for session %s failed: %s", message.type, session_id, exc)

    def _emit(self, session_id: int, event_type: str, payload: dict[str, Any], actor_id: int | None) -> None:
        try:
            self.events.emit(session_id, event_type, payload, actor_id)
        except Exception as exc:
            log.warning("Event %s for session %s failed: %s", event_type, session_id, exc)

