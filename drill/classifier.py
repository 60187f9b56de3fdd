"""AI classification of executed decisions.

The classifier maps a decision's free text onto one primary category (plus
secondary categories, keywords and semantic tags). Its output is validated by
``DecisionClassification``: unknown categories fall back to
``operational_action`` and unrecognised keys are kept as extensions.
"""
from __future__ import annotations

import logging

from pydantic import ValidationError

from drill.errors import DependencyDegraded
from drill.llm import LLMCallError, LLMClient
from drill.schemas import DecisionClassification

log = logging.getLogger(__name__)

CLASSIFY_PROMPT = """\
You are an expert crisis management analyst. Your task is to classify decisions \
made during multi-agency emergency response exercises.

Classify the decision into one or more of these categories:
- emergency_declaration: Declarations of emergency, evacuation orders, safety measures
- resource_allocation: Allocation of personnel, equipment, or resources
- public_statement: Public communications, press releases, official statements
- policy_change: Changes to policies, procedures, or protocols
- coordination_order: Inter-agency coordination, joint operations
- operational_action: Tactical operations, field actions, direct interventions

Extract the primary (most relevant) category, all applicable categories, key \
keywords from the decision, and semantic tags describing what it means.

Respond with ONLY valid JSON:
{
  "primary_category": "<category>",
  "categories": ["<category>", ...],
  "keywords": ["<keyword>", ...],
  "semantic_tags": ["<tag>", ...],
  "confidence": <0.0-1.0>
}
"""


class DecisionClassifier:
    """``(title, description) -> DecisionClassification`` backed by an LLM."""

    def __init__(self, client: LLMClient):
        self.client = client

    async def classify(self, title: str, description: str) -> DecisionClassification:
        user = f"Classify this decision:\n\nTitle: {title}\nDescription: {description}"
        try:
            data = await self.client.call(CLASSIFY_PROMPT, user)
            return DecisionClassification.model_validate(data)
        except LLMCallError as exc:
            raise DependencyDegraded("classifier", str(exc), retryable=exc.retryable) from exc
        except ValidationError as exc:
            raise DependencyDegraded("classifier", f"invalid classification: {exc}") from exc
