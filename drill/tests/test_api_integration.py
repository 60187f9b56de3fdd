"""Integration tests for the FastAPI endpoints.

Uses TestClient against an in-memory database; identity comes from the
X-User-Id header.
"""
from __future__ import annotations

import json

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from drill.models import Base, Inject, SessionEvent


@pytest.fixture()
def test_db():
    """Create a temporary SQLite in-memory database for testing.

    Uses StaticPool so all connections share the same in-memory database.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    TestSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return engine, TestSession


@pytest.fixture()
def client(test_db, tmp_path, monkeypatch):
    """FastAPI TestClient using in-memory database, with AI features disabled."""
    monkeypatch.setenv("DRILL_DB_PATH", str(tmp_path / "lifespan.db"))
    for key in ("ANTHROPIC_API_KEY", "OPENAI_API_KEY", "OPENAI_BASE_URL", "LLM_PROVIDER"):
        monkeypatch.delenv(key, raising=False)
    engine, TestSession = test_db
    from drill.app import app, db_session

    def override_db_session():
        session = TestSession()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    app.dependency_overrides[db_session] = override_db_session
    with TestClient(app, raise_server_exceptions=True) as c:
        yield c, TestSession
    app.dependency_overrides.clear()


@pytest.fixture()
def seeded(client, make_world):
    c, TestSession = client
    session = TestSession()
    world = make_world(session)
    session.close()
    return c, TestSession, world


def as_user(user):
    return {"X-User-Id": str(user.id)}


def propose(c, world, approvers=None, **body):
    payload = {
        "session_id": world.exercise.id, "title": "Close the bridge",
        "description": "Close the north bridge to all traffic",
        "required_approvers": approvers or [world.bob.id, world.carol.id],
        **body,
    }
    return c.post("/api/decisions", json=payload, headers=as_user(world.alice))


class TestHealthAndIdentity:
    def test_health(self, client):
        c, _ = client
        resp = c.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"ok": True, "ai_enabled": False}

    def test_missing_user_header(self, seeded):
        c, _, world = seeded
        assert c.get(f"/api/objectives/{world.exercise.id}").status_code == 401

    def test_unknown_user(self, seeded):
        c, _, world = seeded
        resp = c.get(f"/api/objectives/{world.exercise.id}", headers={"X-User-Id": "9999"})
        assert resp.status_code == 401

    def test_unknown_session(self, seeded):
        c, _, world = seeded
        resp = c.get("/api/objectives/9999", headers=as_user(world.trainer))
        assert resp.status_code == 404
        assert resp.json()["error"] == "NotFound"

    def test_outsider_forbidden(self, seeded):
        c, _, world = seeded
        resp = c.get(f"/api/sessions/{world.exercise.id}/injects", headers=as_user(world.outsider))
        assert resp.status_code == 403


# =========================================================================
# Decisions
# =========================================================================

class TestDecisionEndpoints:
    def test_propose(self, seeded):
        c, _, world = seeded
        resp = propose(c, world)
        assert resp.status_code == 201
        data = resp.json()
        assert data["status"] == "proposed"
        assert [s["role"] for s in data["steps"]] == ["health", "media"]

    def test_propose_requires_approvers(self, seeded):
        c, _, world = seeded
        resp = c.post("/api/decisions", headers=as_user(world.alice), json={
            "session_id": world.exercise.id, "title": "t", "description": "d", "required_approvers": [],
        })
        assert resp.status_code == 422

    def test_propose_by_outsider_forbidden(self, seeded):
        c, _, world = seeded
        resp = c.post("/api/decisions", headers=as_user(world.outsider), json={
            "session_id": world.exercise.id, "title": "t", "description": "d",
            "required_approvers": [world.bob.id],
        })
        assert resp.status_code == 403

    def test_full_lifecycle(self, seeded):
        c, _, world = seeded
        decision_id = propose(c, world, decision_type="coordination_order").json()["id"]

        first = c.post(f"/api/decisions/{decision_id}/approve", json={"approved": True},
                       headers=as_user(world.bob))
        assert first.json() == {"success": True, "status": "proposed"}
        second = c.post(f"/api/decisions/{decision_id}/approve", json={"approved": True, "comment": "Go"},
                        headers=as_user(world.carol))
        assert second.json()["status"] == "approved"

        executed = c.post(f"/api/decisions/{decision_id}/execute", headers=as_user(world.alice))
        assert executed.status_code == 200
        assert executed.json()["status"] == "executed"
        assert executed.json()["executed_at"] is not None

        again = c.post(f"/api/decisions/{decision_id}/execute", headers=as_user(world.bob))
        assert again.status_code == 409
        assert again.json()["current_status"] == "executed"
        assert again.json()["error"] == "ConcurrencyConflict"

    def test_execute_before_approval_conflicts(self, seeded):
        c, _, world = seeded
        decision_id = propose(c, world).json()["id"]
        resp = c.post(f"/api/decisions/{decision_id}/execute", headers=as_user(world.alice))
        assert resp.status_code == 409
        assert resp.json()["current_status"] == "proposed"

    def test_approve_without_step(self, seeded):
        c, _, world = seeded
        decision_id = propose(c, world).json()["id"]
        resp = c.post(f"/api/decisions/{decision_id}/approve", json={"approved": True},
                      headers=as_user(world.alice))
        assert resp.status_code == 400
        assert resp.json()["detail"] == "No pending approval step for you"

    def test_reject_is_terminal(self, seeded):
        c, _, world = seeded
        decision_id = propose(c, world).json()["id"]
        c.post(f"/api/decisions/{decision_id}/approve", json={"approved": False, "comment": "No"},
               headers=as_user(world.bob))
        resp = c.post(f"/api/decisions/{decision_id}/approve", json={"approved": True},
                      headers=as_user(world.carol))
        assert resp.status_code == 409
        assert resp.json()["current_status"] == "rejected"

    def test_list_is_viewer_filtered(self, seeded):
        c, _, world = seeded
        propose(c, world, approvers=[world.bob.id])
        url = f"/api/decisions/session/{world.exercise.id}"
        assert len(c.get(url, headers=as_user(world.alice)).json()) == 1
        assert len(c.get(url, headers=as_user(world.bob)).json()) == 1
        assert c.get(url, headers=as_user(world.carol)).json() == []
        assert len(c.get(url, headers=as_user(world.trainer)).json()) == 1

    def test_available_participants(self, seeded):
        c, _, world = seeded
        resp = c.get(f"/api/decisions/session/{world.exercise.id}/available-participants",
                     headers=as_user(world.alice))
        assert {p["role"] for p in resp.json()} == {"police", "health", "media"}


# =========================================================================
# Sessions and objectives
# =========================================================================

class TestSessionLifecycle:
    @pytest.fixture()
    def scheduled(self, client, make_world):
        c, TestSession = client
        session = TestSession()
        world = make_world(session, status="scheduled")
        session.close()
        return c, TestSession, world

    def test_start_initializes_objectives(self, scheduled):
        c, TestSession, world = scheduled
        resp = c.patch(f"/api/sessions/{world.exercise.id}", json={"status": "in_progress"},
                       headers=as_user(world.trainer))
        assert resp.status_code == 200
        assert resp.json()["status"] == "in_progress"
        assert resp.json()["start_time"] is not None

        objectives = c.get(f"/api/objectives/{world.exercise.id}", headers=as_user(world.alice)).json()
        assert {o["objective_id"] for o in objectives} == {"evacuation", "triage", "media", "coordination"}

        session = TestSession()
        events = session.execute(select(SessionEvent.event_type)).scalars().all()
        session.close()
        assert "session.status_changed" in events

    def test_participant_cannot_change_status(self, scheduled):
        c, _, world = scheduled
        resp = c.patch(f"/api/sessions/{world.exercise.id}", json={"status": "in_progress"},
                       headers=as_user(world.alice))
        assert resp.status_code == 403

    def test_invalid_transition(self, scheduled):
        c, _, world = scheduled
        resp = c.patch(f"/api/sessions/{world.exercise.id}", json={"status": "paused"},
                       headers=as_user(world.trainer))
        assert resp.status_code == 409
        assert resp.json()["current_status"] == "scheduled"

    def test_completion_stamps_end_time(self, seeded):
        c, _, world = seeded
        resp = c.patch(f"/api/sessions/{world.exercise.id}", json={"status": "completed"},
                       headers=as_user(world.trainer))
        assert resp.json()["end_time"] is not None


class TestObjectiveEndpoints:
    @pytest.fixture()
    def started(self, seeded):
        c, TestSession, world = seeded
        resp = c.post(f"/api/objectives/{world.exercise.id}/initialize", headers=as_user(world.trainer))
        assert resp.status_code == 200
        return c, TestSession, world

    def update(self, c, world, **body):
        return c.post(f"/api/objectives/{world.exercise.id}/update", json=body, headers=as_user(world.trainer))

    def test_initialize_is_trainer_only(self, seeded):
        c, _, world = seeded
        resp = c.post(f"/api/objectives/{world.exercise.id}/initialize", headers=as_user(world.alice))
        assert resp.status_code == 403

    def test_update_with_penalty_and_bonus(self, started):
        c, _, world = started
        self.update(c, world, objective_id="media", progress_percentage=40,
                    penalty={"reason": "Leaked casualty numbers", "points": 10})
        resp = self.update(c, world, objective_id="media", bonus={"reason": "Calm briefing", "points": 5})
        data = resp.json()
        assert data["progress_percentage"] == 40
        assert [p["reason"] for p in data["penalties"]] == ["Leaked casualty numbers"]
        assert [b["points"] for b in data["bonuses"]] == [5]

    def test_update_unknown_objective_penalty(self, started):
        c, _, world = started
        resp = self.update(c, world, objective_id="nope", penalty={"reason": "x", "points": 1})
        assert resp.status_code == 404

    def test_participant_cannot_update(self, started):
        c, _, world = started
        resp = c.post(f"/api/objectives/{world.exercise.id}/update", json={"objective_id": "media"},
                      headers=as_user(world.alice))
        assert resp.status_code == 403

    def test_score(self, started):
        c, _, world = started
        self.update(c, world, objective_id="evacuation", progress_percentage=100, status="completed")
        resp = c.get(f"/api/objectives/{world.exercise.id}/score", headers=as_user(world.alice))
        data = resp.json()
        assert data["overall_score"] == 30.0
        assert data["success_level"] == "Needs Improvement"

    def test_auto_complete_through_api(self, started):
        c, TestSession, world = started
        sid = world.exercise.id
        c.patch(f"/api/sessions/{sid}", json={"auto_complete_on_objectives": True}, headers=as_user(world.trainer))
        for objective_id in ("evacuation", "triage", "coordination"):
            self.update(c, world, objective_id=objective_id, progress_percentage=100, status="completed")
        resolution = c.get(f"/api/sessions/{sid}/resolution", headers=as_user(world.alice)).json()
        assert resolution == {"session_id": sid, "status": "in_progress", "all_resolved": False}

        self.update(c, world, objective_id="media", status="failed")
        resolution = c.get(f"/api/sessions/{sid}/resolution", headers=as_user(world.alice)).json()
        assert resolution == {"session_id": sid, "status": "completed", "all_resolved": True}


# =========================================================================
# Scoped content
# =========================================================================

class TestScopedContent:
    @pytest.fixture()
    def content(self, seeded):
        c, TestSession, world = seeded
        session = TestSession()
        sid = world.exercise.id
        health = Inject(session_id=sid, title="Hospital capacity", scope="role_specific",
                        affected_roles_json='["health"]', target_teams_json="[]")
        legacy = Inject(session_id=sid, title="Old bulletin", scope=None,
                        affected_roles_json="[]", target_teams_json="[]")
        private = Inject(session_id=sid, title="Your decision backfired", scope="universal",
                         affected_roles_json="[]", target_teams_json="[]",
                         ai_generated=True, triggered_by_user_id=world.alice.id)
        session.add_all([health, legacy, private])
        session.flush()
        session.add_all([
            SessionEvent(session_id=sid, event_type="inject", metadata_json=json.dumps({
                "inject_id": health.id, "scope": "role_specific", "affected_roles": ["health"],
            })),
            SessionEvent(session_id=sid, event_type="inject", metadata_json=json.dumps({
                "inject_id": private.id, "scope": "universal", "ai_generated": True,
                "triggered_by_user_id": world.alice.id,
            })),
            SessionEvent(session_id=sid, event_type="decision.executed", metadata_json='{"decision_id": 1}'),
        ])
        session.commit()
        ids = {"health": health.id}
        session.close()
        return c, world, ids

    def titles(self, c, world, user):
        resp = c.get(f"/api/sessions/{world.exercise.id}/injects", headers=as_user(user))
        assert resp.status_code == 200
        return {i["title"] for i in resp.json()}

    def test_injects_per_viewer(self, content):
        c, world, _ = content
        assert self.titles(c, world, world.alice) == {"Old bulletin", "Your decision backfired"}
        assert self.titles(c, world, world.bob) == {"Old bulletin", "Hospital capacity"}
        assert self.titles(c, world, world.trainer) == {
            "Old bulletin", "Hospital capacity", "Your decision backfired",
        }

    def test_events_per_viewer(self, content):
        c, world, _ = content
        url = f"/api/sessions/{world.exercise.id}/events"
        carol = [e["event_type"] for e in c.get(url, headers=as_user(world.carol)).json()]
        assert carol == ["decision.executed"]
        assert len(c.get(url, headers=as_user(world.trainer)).json()) == 3

    def test_incident_from_inject_inherits_scope(self, content):
        c, world, ids = content
        resp = c.post(f"/api/sessions/{world.exercise.id}/incidents", headers=as_user(world.bob), json={
            "title": "Ward evacuated", "inject_id": ids["health"],
        })
        assert resp.status_code == 201
        url = f"/api/sessions/{world.exercise.id}/incidents"
        assert [i["title"] for i in c.get(url, headers=as_user(world.bob)).json()] == ["Ward evacuated"]
        assert c.get(url, headers=as_user(world.alice)).json() == []

    def test_incident_from_unknown_inject(self, content):
        c, world, _ = content
        resp = c.post(f"/api/sessions/{world.exercise.id}/incidents", headers=as_user(world.bob), json={
            "title": "Ghost", "inject_id": 9999,
        })
        assert resp.status_code == 404
