from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Boolean, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint, func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    full_name: Mapped[str] = mapped_column(String(200), default="")
    email: Mapped[str] = mapped_column(String(300), default="")
    role: Mapped[str] = mapped_column(String(50), default="participant")  # trainer | admin | agency role
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class Scenario(Base):
    __tablename__ = "scenarios"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(300), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    objectives: Mapped[list[ScenarioObjective]] = relationship(
        "ScenarioObjective", back_populates="scenario", cascade="all, delete-orphan",
        order_by="ScenarioObjective.id",
    )


class ScenarioObjective(Base):
    __tablename__ = "scenario_objectives"
    __table_args__ = (UniqueConstraint("scenario_id", "objective_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    scenario_id: Mapped[int] = mapped_column(Integer, ForeignKey("scenarios.id"), nullable=False)
    objective_id: Mapped[str] = mapped_column(String(100), nullable=False)  # e.g. "evacuation"
    objective_name: Mapped[str] = mapped_column(String(300), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    success_criteria_json: Mapped[str] = mapped_column(Text, default="{}")
    weight: Mapped[float] = mapped_column(Float, default=25.0)

    scenario: Mapped[Scenario] = relationship("Scenario", back_populates="objectives")


class ExerciseSession(Base):
    __tablename__ = "sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    scenario_id: Mapped[int] = mapped_column(Integer, ForeignKey("scenarios.id"), nullable=False)
    trainer_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    # scheduled | in_progress | paused | completed | cancelled
    status: Mapped[str] = mapped_column(String(30), default="scheduled")
    auto_complete_on_objectives: Mapped[bool] = mapped_column(Boolean, default=False)
    start_time: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    end_time: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    current_state_json: Mapped[str] = mapped_column(Text, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    scenario: Mapped[Scenario] = relationship("Scenario")
    participants: Mapped[list[SessionParticipant]] = relationship(
        "SessionParticipant", back_populates="session", cascade="all, delete-orphan",
    )


class SessionParticipant(Base):
    __tablename__ = "session_participants"
    __table_args__ = (UniqueConstraint("session_id", "user_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[int] = mapped_column(Integer, ForeignKey("sessions.id"), nullable=False)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    role: Mapped[str] = mapped_column(String(50), nullable=False)  # session role, e.g. "health"

    session: Mapped[ExerciseSession] = relationship("ExerciseSession", back_populates="participants")
    user: Mapped[User] = relationship("User")


class SessionTeam(Base):
    __tablename__ = "session_teams"
    __table_args__ = (UniqueConstraint("session_id", "user_id", "team_name"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[int] = mapped_column(Integer, ForeignKey("sessions.id"), nullable=False)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    team_name: Mapped[str] = mapped_column(String(100), nullable=False)


# ---------------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------------


class Decision(Base):
    __tablename__ = "decisions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[int] = mapped_column(Integer, ForeignKey("sessions.id"), nullable=False)
    proposer_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    type: Mapped[str | None] = mapped_column(String(50), nullable=True)  # set by classifier if absent
    # proposed | approved | rejected | executed
    status: Mapped[str] = mapped_column(String(20), default="proposed")
    resources_needed_json: Mapped[str] = mapped_column(Text, default="{}")
    ai_classification_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    executed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    steps: Mapped[list[DecisionStep]] = relationship(
        "DecisionStep", back_populates="decision", cascade="all, delete-orphan",
        order_by="DecisionStep.step_order",
    )


class DecisionStep(Base):
    __tablename__ = "decision_steps"
    __table_args__ = (UniqueConstraint("decision_id", "user_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    decision_id: Mapped[int] = mapped_column(Integer, ForeignKey("decisions.id"), nullable=False)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    role: Mapped[str] = mapped_column(String(50), default="unknown")  # snapshot at proposal time
    step_order: Mapped[int] = mapped_column(Integer, default=1)
    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending | approved | rejected
    responder_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("users.id"), nullable=True)
    responded_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)

    decision: Mapped[Decision] = relationship("Decision", back_populates="steps")


# ---------------------------------------------------------------------------
# Objectives
# ---------------------------------------------------------------------------


class ObjectiveProgress(Base):
    __tablename__ = "objective_progress"
    __table_args__ = (UniqueConstraint("session_id", "objective_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[int] = mapped_column(Integer, ForeignKey("sessions.id"), nullable=False)
    objective_id: Mapped[str] = mapped_column(String(100), nullable=False)
    objective_name: Mapped[str] = mapped_column(String(300), default="")
    progress_percentage: Mapped[float] = mapped_column(Float, default=0.0)
    # not_started | in_progress | completed | failed
    status: Mapped[str] = mapped_column(String(20), default="not_started")
    weight: Mapped[float] = mapped_column(Float, default=25.0)
    metrics_json: Mapped[str] = mapped_column(Text, default="{}")
    score: Mapped[float | None] = mapped_column(Float, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    adjustments: Mapped[list[ObjectiveAdjustment]] = relationship(
        "ObjectiveAdjustment", back_populates="progress", cascade="all, delete-orphan",
        order_by="ObjectiveAdjustment.id",
    )


class ObjectiveAdjustment(Base):
    """One penalty or bonus entry. Rows are only ever inserted."""
    __tablename__ = "objective_adjustments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    progress_id: Mapped[int] = mapped_column(Integer, ForeignKey("objective_progress.id"), nullable=False)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)  # penalty | bonus
    reason: Mapped[str] = mapped_column(Text, default="")
    points: Mapped[float] = mapped_column(Float, default=0.0)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    progress: Mapped[ObjectiveProgress] = relationship("ObjectiveProgress", back_populates="adjustments")


# ---------------------------------------------------------------------------
# Scoped narrative content
# ---------------------------------------------------------------------------


class Inject(Base):
    __tablename__ = "injects"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[int] = mapped_column(Integer, ForeignKey("sessions.id"), nullable=False)
    title: Mapped[str] = mapped_column(String(300), nullable=False)
    content: Mapped[str] = mapped_column(Text, default="")
    inject_type: Mapped[str] = mapped_column(String(50), default="field_update")  # media_report | field_update | ...
    severity: Mapped[str] = mapped_column(String(20), default="medium")
    # universal | role_specific | team_specific; NULL on rows predating scoping
    scope: Mapped[str | None] = mapped_column(String(30), nullable=True, default="universal")
    affected_roles_json: Mapped[str] = mapped_column(Text, default="[]")
    target_teams_json: Mapped[str] = mapped_column(Text, default="[]")
    ai_generated: Mapped[bool] = mapped_column(Boolean, default=False)
    triggered_by_user_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("users.id"), nullable=True)
    source_decision_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("decisions.id"), nullable=True)
    published_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class Incident(Base):
    __tablename__ = "incidents"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[int] = mapped_column(Integer, ForeignKey("sessions.id"), nullable=False)
    title: Mapped[str] = mapped_column(String(300), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    severity: Mapped[str] = mapped_column(String(20), default="medium")
    inject_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("injects.id"), nullable=True)
    scope: Mapped[str | None] = mapped_column(String(30), nullable=True)
    affected_roles_json: Mapped[str] = mapped_column(Text, default="[]")
    target_teams_json: Mapped[str] = mapped_column(Text, default="[]")
    reported_by: Mapped[int | None] = mapped_column(Integer, ForeignKey("users.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class SessionEvent(Base):
    __tablename__ = "session_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[int] = mapped_column(Integer, ForeignKey("sessions.id"), nullable=False)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    metadata_json: Mapped[str] = mapped_column(Text, default="{}")
    actor_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("users.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class Notification(Base):
    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("sessions.id"), nullable=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    title: Mapped[str] = mapped_column(String(300), default="")
    message: Mapped[str] = mapped_column(Text, default="")
    priority: Mapped[str] = mapped_column(String(20), default="medium")  # low | medium | high | critical
    action_ref: Mapped[str | None] = mapped_column(String(300), nullable=True)
    metadata_json: Mapped[str] = mapped_column(Text, default="{}")
    read: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class StateSnapshot(Base):
    __tablename__ = "scenario_state_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[int] = mapped_column(Integer, ForeignKey("sessions.id"), nullable=False)
    decision_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("decisions.id"), nullable=True)
    state_json: Mapped[str] = mapped_column(Text, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
