from __future__ import annotations

from dataclasses import dataclass

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from drill.models import (
    Base, ExerciseSession, Scenario, ScenarioObjective, SessionParticipant, SessionTeam, User,
)
from drill.objectives import DEFAULT_OBJECTIVES, DEFAULT_SCENARIO_TITLE

# ---------------------------------------------------------------------------
# Fixtures: in-memory SQLite database
# ---------------------------------------------------------------------------


@pytest.fixture()
def engine():
    eng = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture()
def session(engine):
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    sess = SessionLocal()
    try:
        yield sess
    finally:
        sess.close()


@dataclass
class World:
    exercise: ExerciseSession
    trainer: User
    alice: User  # police, team alpha
    bob: User  # health, team bravo
    carol: User  # media, no team
    outsider: User  # not a participant


def build_world(session: Session, status: str = "in_progress") -> World:
    scenario = Scenario(title=DEFAULT_SCENARIO_TITLE, description="")
    session.add(scenario)
    session.flush()
    for objective_id, (name, weight) in DEFAULT_OBJECTIVES.items():
        session.add(ScenarioObjective(
            scenario_id=scenario.id, objective_id=objective_id, objective_name=name, weight=weight,
        ))

    trainer = User(full_name="Tara Trainer", email="tara@example.org", role="trainer")
    alice = User(full_name="Alice Police", email="alice@example.org", role="participant")
    bob = User(full_name="Bob Health", email="bob@example.org", role="participant")
    carol = User(full_name="Carol Media", email="carol@example.org", role="participant")
    outsider = User(full_name="Oscar Outsider", email="oscar@example.org", role="participant")
    session.add_all([trainer, alice, bob, carol, outsider])
    session.flush()

    exercise = ExerciseSession(scenario_id=scenario.id, trainer_id=trainer.id, status=status)
    session.add(exercise)
    session.flush()
    session.add_all([
        SessionParticipant(session_id=exercise.id, user_id=alice.id, role="police"),
        SessionParticipant(session_id=exercise.id, user_id=bob.id, role="health"),
        SessionParticipant(session_id=exercise.id, user_id=carol.id, role="media"),
        SessionTeam(session_id=exercise.id, user_id=alice.id, team_name="alpha"),
        SessionTeam(session_id=exercise.id, user_id=bob.id, team_name="bravo"),
    ])
    session.commit()
    return World(exercise=exercise, trainer=trainer, alice=alice, bob=bob, carol=carol, outsider=outsider)


@pytest.fixture()
def world(session: Session) -> World:
    return build_world(session)


@pytest.fixture()
def make_world():
    return build_world
