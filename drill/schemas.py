"""Pydantic request/response schemas for the Drill API.

Freeform JSON coming back from the AI collaborators (decision classification,
objective evaluation, generated injects) and free-form objective metrics are
validated here at the boundary: known keys become typed fields, anything else
lands in an explicit ``extensions`` bag instead of flowing through untyped.
"""
from __future__ import annotations

import json
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

DECISION_CATEGORIES = (
    "emergency_declaration",
    "resource_allocation",
    "public_statement",
    "policy_change",
    "coordination_order",
    "operational_action",
)
DEFAULT_CATEGORY = "operational_action"

SCOPES = ("universal", "role_specific", "team_specific")
OBJECTIVE_STATUSES = ("not_started", "in_progress", "completed", "failed")
SESSION_STATUSES = ("scheduled", "in_progress", "paused", "completed", "cancelled")
PRIORITIES = ("low", "medium", "high", "critical")


class _ExtensibleModel(BaseModel):
    """Known fields are typed; unrecognised keys are collected into ``extensions``."""

    extensions: dict[str, Any] = {}

    @model_validator(mode="before")
    @classmethod
    def _collect_extensions(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        known = set(cls.model_fields)
        extensions = dict(data.get("extensions") or {})
        cleaned = {}
        for key, value in data.items():
            if key == "extensions":
                continue
            if key in known:
                cleaned[key] = value
            else:
                extensions[key] = value
        cleaned["extensions"] = extensions
        return cleaned

    def flatten(self) -> dict[str, Any]:
        """Known fields (non-null) merged with extensions, for storage."""
        data = self.model_dump(exclude={"extensions"}, exclude_none=True)
        return {**self.extensions, **data}

    def to_json(self) -> str:
        return json.dumps(self.flatten(), default=str)


# ---------------------------------------------------------------------------
# AI payloads
# ---------------------------------------------------------------------------


class DecisionClassification(_ExtensibleModel):
    primary_category: str = DEFAULT_CATEGORY
    categories: list[str] = []
    keywords: list[str] = []
    semantic_tags: list[str] = []
    confidence: float = 0.8

    @field_validator("primary_category", mode="before")
    @classmethod
    def _known_category(cls, v: Any) -> str:
        v = str(v or "").strip().lower()
        return v if v in DECISION_CATEGORIES else DEFAULT_CATEGORY

    @field_validator("categories", "keywords", "semantic_tags", mode="before")
    @classmethod
    def _string_list(cls, v: Any) -> list[str]:
        if not v:
            return []
        if isinstance(v, str):
            return [v]
        return [str(x) for x in v]

    @field_validator("confidence", mode="before")
    @classmethod
    def _unit_interval(cls, v: Any) -> float:
        try:
            return max(0.0, min(1.0, float(v)))
        except (TypeError, ValueError):
            return 0.8


class ObjectiveEvaluation(BaseModel):
    is_complete: bool = False
    confidence: float = 0.0
    progress_percentage: float = 0.0
    reasoning: str = ""

    @field_validator("confidence", mode="before")
    @classmethod
    def _unit_interval(cls, v: Any) -> float:
        try:
            return max(0.0, min(1.0, float(v)))
        except (TypeError, ValueError):
            return 0.0

    @field_validator("progress_percentage", mode="before")
    @classmethod
    def _percentage(cls, v: Any) -> float:
        try:
            return max(0.0, min(100.0, float(v)))
        except (TypeError, ValueError):
            return 0.0


class GeneratedInject(BaseModel):
    title: str
    content: str = ""
    inject_type: str = Field("field_update", validation_alias="type")
    severity: Literal["low", "medium", "high", "critical"] = "medium"
    scope: Literal["universal", "role_specific", "team_specific"] = "universal"
    affected_roles: list[str] = []
    target_teams: list[str] = []

    model_config = {"populate_by_name": True}

    @field_validator("severity", mode="before")
    @classmethod
    def _severity(cls, v: Any) -> str:
        v = str(v or "medium").lower()
        return v if v in PRIORITIES else "medium"


class ObjectiveMetrics(_ExtensibleModel):
    evacuation_plan_executed: bool | None = None
    triage_system_established: bool | None = None
    coordination_efforts: bool | None = None
    ai_evaluation: bool | None = None
    confidence: float | None = None
    reasoning: str | None = None
    evaluated_at: str | None = None


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class DecisionCreate(BaseModel):
    session_id: int
    title: str = Field(min_length=1, max_length=200)
    description: str = Field(min_length=1)
    decision_type: str | None = None
    required_approvers: list[int] = Field(min_length=1)
    resources_needed: dict[str, Any] = {}

    @field_validator("decision_type")
    @classmethod
    def _known_type(cls, v: str | None) -> str | None:
        if v is not None and v not in DECISION_CATEGORIES:
            raise ValueError(f"decision_type must be one of: {', '.join(DECISION_CATEGORIES)}")
        return v


class DecisionApprove(BaseModel):
    approved: bool
    comment: str | None = None


class AdjustmentIn(BaseModel):
    reason: str = Field(min_length=1)
    points: float = Field(ge=0)


class ObjectiveUpdate(BaseModel):
    objective_id: str = Field(min_length=1)
    progress_percentage: float | None = None
    status: Literal["not_started", "in_progress", "completed", "failed"] | None = None
    metrics: dict[str, Any] | None = None
    penalty: AdjustmentIn | None = None
    bonus: AdjustmentIn | None = None


class SessionUpdate(BaseModel):
    status: Literal["scheduled", "in_progress", "paused", "completed", "cancelled"] | None = None
    auto_complete_on_objectives: bool | None = None


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class DecisionStepOut(BaseModel):
    id: int
    user_id: int
    role: str
    step_order: int
    status: str
    responder_id: int | None = None
    responded_at: str | None = None
    comment: str | None = None


class DecisionOut(BaseModel):
    id: int
    session_id: int
    proposer_id: int
    title: str
    description: str
    type: str | None = None
    status: str
    resources_needed: dict[str, Any] = {}
    ai_classification: dict[str, Any] | None = None
    created_at: str | None = None
    executed_at: str | None = None
    steps: list[DecisionStepOut] = []


class AdjustmentOut(BaseModel):
    reason: str
    points: float
    timestamp: str | None = None


class ObjectiveProgressOut(BaseModel):
    objective_id: str
    objective_name: str
    progress_percentage: float
    status: str
    weight: float
    metrics: dict[str, Any] = {}
    penalties: list[AdjustmentOut] = []
    bonuses: list[AdjustmentOut] = []
    score: float | None = None


class ObjectiveScoreOut(BaseModel):
    objective_id: str
    objective_name: str
    status: str
    weight: float
    score: float


class SessionScoreOut(BaseModel):
    session_id: int
    overall_score: float
    success_level: str
    objectives: list[ObjectiveScoreOut]


class ResolutionOut(BaseModel):
    session_id: int
    status: str
    all_resolved: bool
