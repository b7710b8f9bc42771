from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from coupon_insights.services.domain import EventType


class ConditionOperator(str, Enum):
    EQ = "eq"
    NE = "ne"
    GT = "gt"
    LT = "lt"
    GTE = "gte"
    LTE = "lte"
    IN = "in"
    CONTAINS = "contains"


class RuleActionType(str, Enum):
    ENRICH = "enrich"
    FILTER = "filter"
    TRANSFORM = "transform"
    ROUTE = "route"
    ALERT = "alert"


class RuleCondition(BaseModel):
    """Single field comparison evaluated against an event."""

    field: str = Field(..., min_length=1, description="Dotted path, e.g. 'properties.amount'.")
    operator: ConditionOperator
    value: Any = None


class RuleAction(BaseModel):
    type: RuleActionType
    parameters: dict[str, Any] = Field(default_factory=dict)


class ProcessingRule(BaseModel):
    """Condition/action pair applied to events before buffering."""

    id: str = Field(..., min_length=1, max_length=64)
    name: str = Field(..., min_length=1, max_length=120)
    event_type: EventType | None = None
    conditions: list[RuleCondition] = Field(default_factory=list)
    actions: list[RuleAction] = Field(..., min_length=1)
    priority: int = 0
    is_active: bool = True


class RuleSet(BaseModel):
    rules: list[ProcessingRule] = Field(default_factory=list)
