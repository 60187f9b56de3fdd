"""Scope-based visibility for injects, incidents and timeline events.

``visible`` is a pure function over a ``ScopedEntity`` and a ``Viewer``:

============== =========================================================
scope          rule
============== =========================================================
universal      always visible
role_specific  visible iff affected_roles is non-empty and holds the viewer's role
team_specific  visible iff target_teams is non-empty and intersects the viewer's teams
missing/other  hidden
============== =========================================================

Trainers and admins bypass every rule. An AI inject triggered by a decision
is private to its proposer regardless of its scope. Rows written before scope
metadata was denormalized onto them carry no scope but an ``origin_inject_id``;
those are resolved through the originating inject. When that inject can no
longer be found the row is shown: this fail-open case is the only place where
missing information resolves to *allow*, and is kept as-is pending product
sign-off.

``filter_visible`` applies the predicate to a materialized batch, loading the
viewer's team memberships once per request and all fallback injects in one
query.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import TypeVar

from sqlalchemy import select
from sqlalchemy.orm import Session

from drill.models import Incident, Inject, SessionEvent, SessionParticipant, SessionTeam, User
from drill.utils import json_parse

log = logging.getLogger(__name__)

PRIVILEGED_ROLES = frozenset({"trainer", "admin"})

T = TypeVar("T")


@dataclass(frozen=True)
class Viewer:
    user_id: int
    role: str
    is_privileged: bool = False
    teams: frozenset[str] = frozenset()


@dataclass(frozen=True)
class ScopedEntity:
    scope: str | None
    affected_roles: frozenset[str] = frozenset()
    target_teams: frozenset[str] = frozenset()
    origin_inject_id: int | None = None
    owner_id: int | None = None  # AI injects triggered by a decision are private to its proposer


UNIVERSAL = ScopedEntity(scope="universal")


def _scope_allows(entity: ScopedEntity, viewer: Viewer) -> bool:
    if entity.scope == "universal":
        return True
    if entity.scope == "role_specific":
        return bool(entity.affected_roles) and viewer.role in entity.affected_roles
    if entity.scope == "team_specific":
        return bool(entity.target_teams) and not entity.target_teams.isdisjoint(viewer.teams)
    return False


def visible(
    entity: ScopedEntity,
    viewer: Viewer,
    resolve_inject: Callable[[int], ScopedEntity | None] | None = None,
) -> bool:
    """Return whether *viewer* may see *entity*.

    *resolve_inject* maps an inject id to the inject's ``ScopedEntity`` and is
    only consulted for rows without scope metadata.
    """
    if viewer.is_privileged:
        return True
    if entity.owner_id is not None:
        return entity.owner_id == viewer.user_id
    if entity.scope is None and entity.origin_inject_id is not None:
        origin = resolve_inject(entity.origin_inject_id) if resolve_inject else None
        if origin is None:
            log.debug("Origin inject %s not found; allowing legacy row", entity.origin_inject_id)
            return True
        return visible(origin, viewer)
    return _scope_allows(entity, viewer)


# ---------------------------------------------------------------------------
# Row adapters
# ---------------------------------------------------------------------------


def _tags(value) -> frozenset[str]:
    if isinstance(value, str):
        value = json_parse(value, [])
    if not isinstance(value, (list, tuple, set, frozenset)):
        return frozenset()
    return frozenset(str(v) for v in value if v)


def from_inject(inject: Inject) -> ScopedEntity:
    owner = inject.triggered_by_user_id if inject.ai_generated else None
    return ScopedEntity(
        scope=inject.scope or "universal",
        affected_roles=_tags(inject.affected_roles_json),
        target_teams=_tags(inject.target_teams_json),
        owner_id=owner,
    )


def from_incident(incident: Incident) -> ScopedEntity:
    if incident.inject_id is None:
        return UNIVERSAL
    if incident.scope is None:
        return ScopedEntity(scope=None, origin_inject_id=incident.inject_id)
    return ScopedEntity(
        scope=incident.scope,
        affected_roles=_tags(incident.affected_roles_json),
        target_teams=_tags(incident.target_teams_json),
        origin_inject_id=incident.inject_id,
    )


def from_event(event: SessionEvent) -> ScopedEntity:
    meta = json_parse(event.metadata_json, {})
    if not isinstance(meta, dict):
        meta = {}
    inject_id = meta.get("inject_id")
    if event.event_type == "inject":
        owner = meta.get("triggered_by_user_id") if meta.get("ai_generated") else None
        if meta.get("scope"):
            return ScopedEntity(
                scope=meta["scope"],
                affected_roles=_tags(meta.get("affected_roles")),
                target_teams=_tags(meta.get("target_teams")),
                origin_inject_id=inject_id,
                owner_id=owner,
            )
        return ScopedEntity(scope=None, origin_inject_id=inject_id, owner_id=owner)
    if event.event_type == "incident" and meta.get("created_from_inject") and inject_id:
        return ScopedEntity(scope=None, origin_inject_id=inject_id)
    return UNIVERSAL


# ---------------------------------------------------------------------------
# Request-level helpers
# ---------------------------------------------------------------------------


def load_viewer(session: Session, session_id: int, user: User) -> Viewer:
    """Build the viewer for one request: session role plus team memberships."""
    if user.role in PRIVILEGED_ROLES:
        return Viewer(user_id=user.id, role=user.role, is_privileged=True)
    session_role = session.execute(
        select(SessionParticipant.role).where(
            SessionParticipant.session_id == session_id,
            SessionParticipant.user_id == user.id,
        )
    ).scalar()
    teams = session.execute(
        select(SessionTeam.team_name).where(
            SessionTeam.session_id == session_id,
            SessionTeam.user_id == user.id,
        )
    ).scalars().all()
    return Viewer(user_id=user.id, role=session_role or user.role, teams=frozenset(teams))


def filter_visible(
    session: Session,
    viewer: Viewer,
    rows: Sequence[T],
    adapt: Callable[[T], ScopedEntity],
) -> list[T]:
    """Filter a fully materialized batch of rows for *viewer*."""
    if viewer.is_privileged:
        return list(rows)
    scoped = [(row, adapt(row)) for row in rows]
    origins = _load_origins(
        session,
        {s.origin_inject_id for _, s in scoped if s.scope is None and s.origin_inject_id is not None},
    )
    return [row for row, entity in scoped if visible(entity, viewer, origins.get)]


def _load_origins(session: Session, inject_ids: Iterable[int]) -> dict[int, ScopedEntity]:
    ids = set(inject_ids)
    if not ids:
        return {}
    injects = session.execute(select(Inject).where(Inject.id.in_(ids))).scalars().all()
    return {inj.id: from_inject(inj) for inj in injects}
