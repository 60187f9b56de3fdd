"""Tests for AI objective evaluation and the background re-evaluation queue."""
from __future__ import annotations

import json
import logging
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from drill import services
from drill.errors import DependencyDegraded
from drill.evaluation import ObjectiveEvaluator, ObjectiveJudge, ReevaluationQueue, RetryPolicy
from drill.llm import LLMCallError
from drill.models import Base, Decision
from drill.objectives import ObjectiveTracker
from drill.schemas import ObjectiveEvaluation
from drill.utils import utcnow

NO_WAIT = RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0)


def add_executed_decision(session, world, title="Evacuate everyone together"):
    session.add(Decision(
        session_id=world.exercise.id, proposer_id=world.alice.id, title=title,
        description="Open all gates", type="emergency_declaration", status="executed",
        executed_at=utcnow(),
    ))
    session.commit()


@pytest.fixture()
def tracker():
    return ObjectiveTracker()


@pytest.fixture()
def ready(session, world, tracker):
    tracker.initialize(session, world.exercise.id)
    add_executed_decision(session, world)
    return world


def judge_returning(results: dict):
    """Judge mock answering per objective_id; values may be exceptions."""
    async def evaluate(objective, definition, decisions, started_at):
        result = results[objective.objective_id]
        if isinstance(result, Exception):
            raise result
        return result

    judge = MagicMock()
    judge.evaluate = AsyncMock(side_effect=evaluate)
    return judge


OPEN = ObjectiveEvaluation(is_complete=False, confidence=0.2, progress_percentage=0, reasoning="Nothing yet")


# =========================================================================
# Evaluator
# =========================================================================

class TestObjectiveEvaluator:
    @pytest.mark.asyncio
    async def test_confident_completion_completes_objective(self, session, ready, tracker):
        sid = ready.exercise.id
        tracker.update_progress(session, sid, "evacuation", 30, metrics={"evacuation_plan_executed": True})
        judge = judge_returning({
            "evacuation": ObjectiveEvaluation(is_complete=True, confidence=0.9, progress_percentage=100,
                                              reasoning="All attendees evacuated"),
            "triage": OPEN, "media": OPEN, "coordination": OPEN,
        })

        outcomes = await ObjectiveEvaluator(judge, tracker).evaluate_session(session, sid)

        assert set(outcomes) == {"evacuation", "triage", "media", "coordination"}
        row = tracker.get_progress(session, sid, "evacuation")
        assert row.status == "completed"
        assert row.progress_percentage == 100
        metrics = json.loads(row.metrics_json)
        assert metrics["evacuation_plan_executed"] is True
        assert metrics["ai_evaluation"] is True
        assert metrics["reasoning"] == "All attendees evacuated"

    @pytest.mark.asyncio
    async def test_low_confidence_only_raises_progress(self, session, ready, tracker):
        sid = ready.exercise.id
        tracker.update_progress(session, sid, "triage", 20, status="in_progress")
        judge = judge_returning({
            "triage": ObjectiveEvaluation(is_complete=True, confidence=0.5, progress_percentage=60),
            "evacuation": OPEN, "media": OPEN, "coordination": OPEN,
        })
        await ObjectiveEvaluator(judge, tracker).evaluate_session(session, sid)
        row = tracker.get_progress(session, sid, "triage")
        assert row.status == "in_progress"
        assert row.progress_percentage == 60

    @pytest.mark.asyncio
    async def test_never_lowers_progress(self, session, ready, tracker):
        sid = ready.exercise.id
        tracker.update_progress(session, sid, "media", 70, status="in_progress")
        judge = judge_returning({
            "media": ObjectiveEvaluation(progress_percentage=40, confidence=0.9),
            "evacuation": OPEN, "triage": OPEN, "coordination": OPEN,
        })
        await ObjectiveEvaluator(judge, tracker).evaluate_session(session, sid)
        assert tracker.get_progress(session, sid, "media").progress_percentage == 70

    @pytest.mark.asyncio
    async def test_resolved_objectives_not_judged(self, session, ready, tracker):
        sid = ready.exercise.id
        tracker.update_progress(session, sid, "media", 0, status="failed")
        judge = judge_returning({"evacuation": OPEN, "triage": OPEN, "coordination": OPEN})
        outcomes = await ObjectiveEvaluator(judge, tracker).evaluate_session(session, sid)
        assert "media" not in outcomes
        assert judge.evaluate.await_count == 3

    @pytest.mark.asyncio
    async def test_skipped_without_judge(self, session, ready, tracker):
        assert await ObjectiveEvaluator(None, tracker).evaluate_session(session, ready.exercise.id) == {}

    @pytest.mark.asyncio
    async def test_skipped_when_session_not_running(self, session, ready, tracker):
        ready.exercise.status = "paused"
        session.commit()
        judge = judge_returning({})
        assert await ObjectiveEvaluator(judge, tracker).evaluate_session(session, ready.exercise.id) == {}
        judge.evaluate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_skipped_without_executed_decisions(self, session, world, tracker):
        tracker.initialize(session, world.exercise.id)
        judge = judge_returning({})
        assert await ObjectiveEvaluator(judge, tracker).evaluate_session(session, world.exercise.id) == {}
        judge.evaluate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_retryable_failure_raised_after_applying_successes(self, session, ready, tracker):
        sid = ready.exercise.id
        judge = judge_returning({
            "evacuation": DependencyDegraded("objective_judge", "overloaded", retryable=True),
            "triage": ObjectiveEvaluation(progress_percentage=35, confidence=0.6),
            "media": OPEN, "coordination": OPEN,
        })
        with pytest.raises(DependencyDegraded) as exc:
            await ObjectiveEvaluator(judge, tracker).evaluate_session(session, sid)
        assert exc.value.retryable
        assert tracker.get_progress(session, sid, "triage").progress_percentage == 35

    @pytest.mark.asyncio
    async def test_permanent_failure_is_logged_not_raised(self, session, ready, tracker):
        judge = judge_returning({
            "evacuation": DependencyDegraded("objective_judge", "bad payload"),
            "triage": OPEN, "media": OPEN, "coordination": OPEN,
        })
        outcomes = await ObjectiveEvaluator(judge, tracker).evaluate_session(session, ready.exercise.id)
        assert "evacuation" not in outcomes


class TestObjectiveJudge:
    @pytest.mark.asyncio
    async def test_wraps_llm_errors(self, session, ready, tracker):
        client = MagicMock()
        client.call = AsyncMock(side_effect=LLMCallError("timeout", retryable=True))
        row = tracker.get_progress(session, ready.exercise.id, "triage")
        with pytest.raises(DependencyDegraded) as exc:
            await ObjectiveJudge(client).evaluate(row, None, [], None)
        assert exc.value.retryable
        assert exc.value.dependency == "objective_judge"

    @pytest.mark.asyncio
    async def test_invalid_payload_is_not_retryable(self, session, ready, tracker):
        client = MagicMock()
        client.call = AsyncMock(return_value={"is_complete": "perhaps"})
        row = tracker.get_progress(session, ready.exercise.id, "triage")
        with pytest.raises(DependencyDegraded) as exc:
            await ObjectiveJudge(client).evaluate(row, None, [], None)
        assert not exc.value.retryable

    @pytest.mark.asyncio
    async def test_prompt_lists_executed_decisions(self, session, ready, tracker):
        client = MagicMock()
        client.call = AsyncMock(return_value={"is_complete": False, "confidence": 0.4,
                                              "progress_percentage": 10, "reasoning": "early"})
        row = tracker.get_progress(session, ready.exercise.id, "evacuation")
        decision = Decision(title="Evacuate everyone together", description="Open all gates",
                            type="emergency_declaration", executed_at=utcnow())
        result = await ObjectiveJudge(client).evaluate(row, None, [decision], None)
        assert result.progress_percentage == 10
        _, user_prompt = client.call.await_args.args
        assert "Evacuate everyone together" in user_prompt
        assert "evacuation" in user_prompt


# =========================================================================
# Queue
# =========================================================================

class TestRetryPolicy:
    def test_exponential_backoff_capped(self):
        policy = RetryPolicy(max_attempts=5, base_delay=1.0, max_delay=5.0)
        assert [policy.delay(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]


class TestReevaluationQueue:
    def _queue(self, outcomes):
        evaluator = MagicMock()
        evaluator.evaluate_session = AsyncMock(side_effect=outcomes)
        session_factory = MagicMock()
        return ReevaluationQueue(session_factory, lambda session: evaluator, policy=NO_WAIT), evaluator, session_factory

    @pytest.mark.asyncio
    async def test_runs_job_in_its_own_session(self):
        queue, evaluator, session_factory = self._queue([{}])
        queue.enqueue(7)
        assert queue.pending == 1
        await queue.drain()
        assert queue.pending == 0
        evaluator.evaluate_session.assert_awaited_once_with(session_factory.return_value, 7)
        session_factory.return_value.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_retries_until_success(self):
        failure = DependencyDegraded("objective_judge", "overloaded", retryable=True)
        queue, evaluator, session_factory = self._queue([failure, failure, {}])
        queue.enqueue(7)
        await queue.drain()
        assert evaluator.evaluate_session.await_count == 3
        assert session_factory.return_value.rollback.call_count == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, caplog):
        failure = DependencyDegraded("objective_judge", "overloaded", retryable=True)
        queue, evaluator, _ = self._queue([failure] * 5)
        with caplog.at_level(logging.WARNING, logger="drill.evaluation"):
            queue.enqueue(7)
            await queue.drain()
        assert evaluator.evaluate_session.await_count == NO_WAIT.max_attempts
        assert "gave up after 3 attempts" in caplog.text

    @pytest.mark.asyncio
    async def test_end_to_end_with_llm(self, tmp_path, make_world):
        engine = create_engine(f"sqlite:///{tmp_path / 'eval.db'}", connect_args={"check_same_thread": False})
        Base.metadata.create_all(engine)
        SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
        setup = SessionLocal()
        world = make_world(setup)
        world.exercise.auto_complete_on_objectives = True
        setup.commit()
        ObjectiveTracker().initialize(setup, world.exercise.id)
        add_executed_decision(setup, world)
        setup.close()

        llm = MagicMock()
        llm.call = AsyncMock(return_value={
            "is_complete": True, "confidence": 0.95, "progress_percentage": 100, "reasoning": "Done",
        })
        queue = ReevaluationQueue(SessionLocal, services.evaluator_factory(llm), policy=NO_WAIT)
        queue.enqueue(world.exercise.id)
        await queue.drain()

        check = SessionLocal()
        try:
            tracker = ObjectiveTracker()
            assert tracker.all_resolved(check, world.exercise.id)
            assert services.get_exercise(check, world.exercise.id).status == "completed"
        finally:
            check.close()
            engine.dispose()
