"""Background AI re-evaluation of objective completion.

After a decision executes, the session's unresolved objectives are re-judged
against every executed decision so far. This runs outside the request: the
engine enqueues a ``ReevaluationJob`` and returns. Each job runs as a detached
asyncio task with its own database session and retries with exponential
backoff under ``RetryPolicy``. ``drain()`` waits for outstanding jobs (tests,
shutdown).
"""
from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from drill.errors import DependencyDegraded
from drill.llm import LLMCallError, LLMClient
from drill.models import Decision, ExerciseSession, ObjectiveProgress, ScenarioObjective
from drill.objectives import RESOLVED_STATUSES, ObjectiveTracker
from drill.schemas import ObjectiveEvaluation
from drill.utils import isoformat, json_parse, utcnow

log = logging.getLogger(__name__)

COMPLETION_CONFIDENCE = 0.75

EVALUATION_PROMPT = """\
You are assessing a crisis response training exercise. Decide whether the \
objective below has been achieved by the decisions the participants have \
executed so far.

Judge strictly against the success criteria. Partial progress counts toward \
progress_percentage but not toward is_complete.

Respond with ONLY valid JSON:
{
  "is_complete": <true|false>,
  "confidence": <0.0-1.0>,
  "progress_percentage": <0-100>,
  "reasoning": "<1-3 sentences>"
}
"""


class ObjectiveJudge:
    def __init__(self, client: LLMClient):
        self.client = client

    async def evaluate(
        self,
        objective: ObjectiveProgress,
        definition: ScenarioObjective | None,
        decisions: list[Decision],
        started_at: datetime | None,
    ) -> ObjectiveEvaluation:
        lines = [
            f"OBJECTIVE: {objective.objective_name} ({objective.objective_id})",
            f"CURRENT PROGRESS: {objective.progress_percentage:.0f}% ({objective.status})",
        ]
        if definition is not None:
            if definition.description:
                lines.append(f"DESCRIPTION: {definition.description}")
            criteria = json_parse(definition.success_criteria_json, {})
            if criteria:
                lines.append(f"SUCCESS CRITERIA: {json.dumps(criteria)}")
        lines.append(f"SESSION STARTED: {isoformat(started_at) or 'unknown'}")
        lines.append("\n--- EXECUTED DECISIONS ---")
        for d in decisions:
            lines.append(f"[{isoformat(d.executed_at)}] ({d.type or 'operational_action'}) {d.title}: {d.description}")
        try:
            data = await self.client.call(EVALUATION_PROMPT, "\n".join(lines))
            return ObjectiveEvaluation.model_validate(data)
        except LLMCallError as exc:
            raise DependencyDegraded("objective_judge", str(exc), retryable=exc.retryable) from exc
        except ValidationError as exc:
            raise DependencyDegraded("objective_judge", f"invalid evaluation: {exc}") from exc


class ObjectiveEvaluator:
    def __init__(self, judge: ObjectiveJudge | None, tracker: ObjectiveTracker):
        self.judge = judge
        self.tracker = tracker

    async def evaluate_session(self, session: Session, session_id: int) -> dict[str, ObjectiveEvaluation]:
        """Judge every unresolved objective and record the outcome.

        Raises ``DependencyDegraded`` (retryable) if any judgement failed with a
        retryable error, after applying the ones that succeeded.
        """
        if self.judge is None:
            log.debug("No LLM configured; skipping objective evaluation for session %s", session_id)
            return {}
        exercise = session.get(ExerciseSession, session_id)
        if exercise is None or exercise.status != "in_progress":
            log.debug("Session %s not in progress; skipping objective evaluation", session_id)
            return {}
        decisions = session.execute(
            select(Decision)
            .where(Decision.session_id == session_id, Decision.status == "executed")
            .order_by(Decision.executed_at, Decision.id)
        ).scalars().all()
        if not decisions:
            return {}
        rows = [r for r in self.tracker.list_progress(session, session_id) if r.status not in RESOLVED_STATUSES]
        if not rows:
            return {}
        definitions = {
            d.objective_id: d for d in session.execute(
                select(ScenarioObjective).where(ScenarioObjective.scenario_id == exercise.scenario_id)
            ).scalars().all()
        }

        results = await asyncio.gather(
            *(self.judge.evaluate(r, definitions.get(r.objective_id), list(decisions), exercise.start_time)
              for r in rows),
            return_exceptions=True,
        )

        outcomes: dict[str, ObjectiveEvaluation] = {}
        retryable_failures = 0
        for row, result in zip(rows, results):
            if isinstance(result, BaseException):
                log.warning("Evaluation of %s for session %s failed: %s", row.objective_id, session_id, result)
                if getattr(result, "retryable", False):
                    retryable_failures += 1
                continue
            outcomes[row.objective_id] = result
            self._record(session, session_id, row, result)
        if retryable_failures:
            raise DependencyDegraded(
                "objective_judge", f"{retryable_failures} evaluation(s) failed", retryable=True,
            )
        return outcomes

    def _record(self, session: Session, session_id: int, row: ObjectiveProgress,
                result: ObjectiveEvaluation) -> None:
        metrics = {
            **json_parse(row.metrics_json, {}),
            "ai_evaluation": True,
            "confidence": result.confidence,
            "reasoning": result.reasoning,
            "evaluated_at": utcnow().isoformat(),
        }
        if result.is_complete and result.confidence >= COMPLETION_CONFIDENCE:
            log.info("Objective %s judged complete for session %s (confidence %.2f)",
                     row.objective_id, session_id, result.confidence)
            self.tracker.update_progress(session, session_id, row.objective_id, 100,
                                         status="completed", metrics=metrics, only_unresolved=True)
        elif result.progress_percentage > (row.progress_percentage or 0):
            self.tracker.update_progress(session, session_id, row.objective_id, result.progress_percentage,
                                         metrics=metrics, only_unresolved=True)


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0

    def delay(self, attempt: int) -> float:
        """Backoff before retry number *attempt* (1-based)."""
        return min(self.max_delay, self.base_delay * 2 ** (attempt - 1))


@dataclass(frozen=True)
class ReevaluationJob:
    session_id: int
    attempt: int = 1
    enqueued_at: datetime = field(default_factory=utcnow)


class ReevaluationQueue:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        evaluator_factory: Callable[[Session], ObjectiveEvaluator],
        policy: RetryPolicy | None = None,
    ):
        self.session_factory = session_factory
        self.evaluator_factory = evaluator_factory
        self.policy = policy or RetryPolicy()
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def enqueue(self, session_id: int) -> asyncio.Task:
        """Schedule a re-evaluation on the running loop without awaiting it."""
        job = ReevaluationJob(session_id=session_id)
        task = asyncio.get_running_loop().create_task(self._run(job), name=f"reevaluate-session-{session_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, job: ReevaluationJob) -> None:
        while True:
            try:
                await self._run_once(job.session_id)
                return
            except Exception as exc:
                if job.attempt >= self.policy.max_attempts:
                    log.exception("Re-evaluation of session %s gave up after %d attempts: %s",
                                  job.session_id, job.attempt, exc)
                    return
                delay = self.policy.delay(job.attempt)
                log.warning("Re-evaluation of session %s failed (attempt %d), retrying in %.1fs: %s",
                            job.session_id, job.attempt, delay, exc)
                job = replace(job, attempt=job.attempt + 1)
                await asyncio.sleep(delay)

    async def _run_once(self, session_id: int) -> None:
        session = self.session_factory()
        try:
            await self.evaluator_factory(session).evaluate_session(session, session_id)
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
