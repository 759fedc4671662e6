"""Rule definitions evaluated by the classification and duplicate stages."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import Field, model_validator

from .base import Direction, FrozenModel


class RuleKind(str, Enum):
    """What a rule is used for."""

    CLASSIFICATION = "classification"
    DUPLICATE_DETECTION = "duplicate_detection"
    DESCRIPTION_NORMALIZATION = "description_normalization"
    AMOUNT_VALIDATION = "amount_validation"


class AmountRange(FrozenModel):
    """Inclusive magnitude bounds; a missing bound is open."""

    min: Optional[float] = None
    max: Optional[float] = None

    @model_validator(mode="after")
    def _check_bounds(self) -> "AmountRange":
        if self.min is not None and self.max is not None and self.min > self.max:
            raise ValueError("amount_range.min must not exceed amount_range.max")
        return self

    def contains(self, value: float) -> bool:
        if self.min is not None and value < self.min:
            return False
        if self.max is not None and value > self.max:
            return False
        return True


class RuleConditions(FrozenModel):
    """Condition set; which fields apply depends on the rule kind."""

    keywords: list[str] = Field(default_factory=list)
    amount_range: Optional[AmountRange] = None
    patterns: list[str] = Field(default_factory=list)
    time_window_days: Optional[int] = Field(default=None, ge=0)
    amount_tolerance: Optional[float] = Field(default=None, ge=0.0)
    description_similarity: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class RuleAction(FrozenModel):
    """Outcome applied when a rule matches."""

    category: Optional[str] = None
    account: Optional[str] = None
    direction: Optional[Direction] = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    flag_as_duplicate: bool = False
    strip: bool = False


class Rule(FrozenModel):
    """A stored rule. ``owner`` is ``None`` for global rules."""

    id: int
    name: str
    owner: Optional[str] = None
    kind: RuleKind
    description: Optional[str] = None
    conditions: RuleConditions
    action: RuleAction
    priority: int = 100
    is_active: bool = True
    is_system: bool = False
    usage_count: int = 0
    success_rate: float = 0.0
    feedback_count: int = 0
    created_at: datetime
    updated_at: datetime


class RuleCreateRequest(FrozenModel):
    """Request payload for creating a user rule."""

    owner: str
    name: str
    kind: RuleKind = RuleKind.CLASSIFICATION
    description: Optional[str] = None
    conditions: RuleConditions
    action: RuleAction
    priority: int = 50
    is_active: bool = True


class RuleUpdateRequest(FrozenModel):
    """Partial update for a user rule; unset fields are left untouched."""

    description: Optional[str] = None
    conditions: Optional[RuleConditions] = None
    action: Optional[RuleAction] = None
    priority: Optional[int] = None
    is_active: Optional[bool] = None


class RuleListResponse(FrozenModel):
    """Collection response for rule listing."""

    rules: list[Rule]


__all__ = [
    "AmountRange",
    "Rule",
    "RuleAction",
    "RuleConditions",
    "RuleCreateRequest",
    "RuleKind",
    "RuleListResponse",
    "RuleUpdateRequest",
]
