"""Tests for the database-backed sinks and the in-process broadcaster."""
from __future__ import annotations

import json

from sqlalchemy import select

from drill.models import Notification, SessionEvent
from drill.sinks import (
    Broadcaster, DatabaseEventSink, DatabaseNotificationSink, NotificationMessage, session_channel,
)


# =========================================================================
# DatabaseEventSink + Broadcaster
# =========================================================================

class TestEventFanOut:
    def test_emit_persists_and_reaches_subscriber(self, session, world):
        broadcaster = Broadcaster()
        received = []
        broadcaster.subscribe(session_channel(world.exercise.id),
                              lambda event_type, payload: received.append((event_type, payload)))

        DatabaseEventSink(session, broadcaster).emit(
            world.exercise.id, "decision.executed", {"decision_id": 5}, world.alice.id,
        )

        assert received == [("decision.executed", {"decision_id": 5})]
        row = session.execute(select(SessionEvent)).scalars().one()
        assert row.event_type == "decision.executed"
        assert json.loads(row.metadata_json) == {"decision_id": 5}
        assert row.actor_id == world.alice.id

    def test_other_sessions_are_not_notified(self, session, world):
        broadcaster = Broadcaster()
        received = []
        broadcaster.subscribe(session_channel(world.exercise.id + 1),
                              lambda event_type, payload: received.append(event_type))
        DatabaseEventSink(session, broadcaster).emit(world.exercise.id, "inject", {}, None)
        assert received == []

    def test_unsubscribe_stops_delivery(self, session, world):
        broadcaster = Broadcaster()
        received = []
        unsubscribe = broadcaster.subscribe(session_channel(world.exercise.id),
                                            lambda event_type, payload: received.append(event_type))
        sink = DatabaseEventSink(session, broadcaster)
        sink.emit(world.exercise.id, "incident", {}, None)
        unsubscribe()
        unsubscribe()
        sink.emit(world.exercise.id, "incident", {}, None)
        assert received == ["incident"]

    def test_failing_listener_does_not_block_others(self, session, world):
        broadcaster = Broadcaster()
        received = []

        def broken(event_type, payload):
            raise RuntimeError("socket closed")

        channel = session_channel(world.exercise.id)
        broadcaster.subscribe(channel, broken)
        broadcaster.subscribe(channel, lambda event_type, payload: received.append(event_type))
        DatabaseEventSink(session, broadcaster).emit(world.exercise.id, "state.updated", {}, None)
        assert received == ["state.updated"]
        assert len(session.execute(select(SessionEvent)).scalars().all()) == 1


# =========================================================================
# DatabaseNotificationSink
# =========================================================================

class TestNotificationSink:
    def test_one_row_per_distinct_user(self, session, world):
        message = NotificationMessage(type="decision_rejected", title="Rejected", message="No",
                                      priority="high", metadata={"decision_id": 3})
        DatabaseNotificationSink(session).notify(
            world.exercise.id, [world.alice.id, world.bob.id, world.alice.id], message,
        )
        rows = session.execute(select(Notification).order_by(Notification.id)).scalars().all()
        assert [r.user_id for r in rows] == [world.alice.id, world.bob.id]
        assert rows[0].priority == "high"
        assert json.loads(rows[0].metadata_json) == {"decision_id": 3}
