"""Event and notification sinks injected into the engines.

The engines only see the two protocols below. The database-backed sinks
persist a ``SessionEvent`` / ``Notification`` row on the caller's session and
forward events to an in-process ``Broadcaster``; the recording sinks keep
everything in memory for tests.
"""
from __future__ import annotations

import json
import logging
from collections import defaultdict
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, Protocol

from sqlalchemy.orm import Session

from drill.models import Notification, SessionEvent

log = logging.getLogger(__name__)


@dataclass
class NotificationMessage:
    type: str
    title: str
    message: str
    priority: str = "medium"
    action_ref: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class EventSink(Protocol):
    def emit(self, session_id: int, event_type: str, payload: dict[str, Any], actor_id: int | None) -> None: ...


class NotificationSink(Protocol):
    def notify(self, session_id: int, user_ids: Iterable[int], message: NotificationMessage) -> None: ...


# ---------------------------------------------------------------------------
# Broadcast
# ---------------------------------------------------------------------------


Listener = Callable[[str, dict[str, Any]], None]


class Broadcaster:
    """Fan-out of session events to in-process listeners, keyed by channel."""

    def __init__(self):
        self._listeners: dict[str, list[Listener]] = defaultdict(list)

    def subscribe(self, channel: str, listener: Listener) -> Callable[[], None]:
        self._listeners[channel].append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners.get(channel, []):
                self._listeners[channel].remove(listener)

        return unsubscribe

    def publish(self, channel: str, event_type: str, payload: dict[str, Any]) -> None:
        for listener in list(self._listeners.get(channel, [])):
            try:
                listener(event_type, payload)
            except Exception as exc:
                log.warning("Listener on %s failed for %s: %s", channel, event_type, exc)


def session_channel(session_id: int) -> str:
    return f"session:{session_id}"


# ---------------------------------------------------------------------------
# Database-backed sinks
# ---------------------------------------------------------------------------


def _commit(db: Session) -> None:
    try:
        db.commit()
    except Exception:
        db.rollback()
        raise


class DatabaseEventSink:
    def __init__(self, db: Session, broadcaster: Broadcaster | None = None):
        self.db = db
        self.broadcaster = broadcaster

    def emit(self, session_id: int, event_type: str, payload: dict[str, Any], actor_id: int | None) -> None:
        self.db.add(SessionEvent(
            session_id=session_id, event_type=event_type,
            metadata_json=json.dumps(payload, default=str), actor_id=actor_id,
        ))
        _commit(self.db)
        if self.broadcaster is not None:
            self.broadcaster.publish(session_channel(session_id), event_type, payload)


class DatabaseNotificationSink:
    def __init__(self, db: Session):
        self.db = db

    def notify(self, session_id: int, user_ids: Iterable[int], message: NotificationMessage) -> None:
        for user_id in dict.fromkeys(user_ids):
            self.db.add(Notification(
                session_id=session_id, user_id=user_id, type=message.type,
                title=message.title, message=message.message, priority=message.priority,
                action_ref=message.action_ref, metadata_json=json.dumps(message.metadata, default=str),
            ))
        _commit(self.db)


# ---------------------------------------------------------------------------
# In-memory sinks
# ---------------------------------------------------------------------------


class RecordingEventSink:
    def __init__(self):
        self.events: list[tuple[int, str, dict[str, Any], int | None]] = []

    def emit(self, session_id, event_type, payload, actor_id):
        self.events.append((session_id, event_type, payload, actor_id))

    def types(self) -> list[str]:
        return [e[1] for e in self.events]


class RecordingNotificationSink:
    def __init__(self):
        self.sent: list[tuple[int, list[int], NotificationMessage]] = []

    def notify(self, session_id, user_ids, message):
        self.sent.append((session_id, list(user_ids), message))

    def of_type(self, notification_type: str) -> list[tuple[int, list[int], NotificationMessage]]:
        return [s for s in self.sent if s[2].type == notification_type]
