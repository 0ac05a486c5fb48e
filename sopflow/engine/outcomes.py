"""Structured results returned by step handlers."""

from __future__ import annotations

import enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from ..contracts import Directive
from ..decision import DecisionResult


class OutcomeKind(str, enum.Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    UNCERTAIN = "uncertain"
    SUSPENDED = "suspended"


class SuspensionKind(str, enum.Enum):
    HUMAN = "human"
    TIMER = "timer"


class Suspension(BaseModel):
    kind: SuspensionKind
    delay_seconds: float = 0
    resume_position: Optional[int] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class StepOutcome(BaseModel):
    """What a handler observed; the engine decides what it means."""

    kind: OutcomeKind
    output: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    directive: Optional[Directive] = None
    suspension: Optional[Suspension] = None
    decision: Optional[DecisionResult] = None
    thread_handle: Optional[str] = None

    @classmethod
    def success(cls, output: Optional[Dict[str, Any]] = None, **kwargs: Any) -> "StepOutcome":
        return cls(kind=OutcomeKind.SUCCESS, output=output or {}, **kwargs)

    @classmethod
    def failure(cls, error: str, **kwargs: Any) -> "StepOutcome":
        return cls(kind=OutcomeKind.FAILURE, error=error, **kwargs)

    @classmethod
    def uncertain(
        cls, output: Dict[str, Any], decision: DecisionResult, **kwargs: Any
    ) -> "StepOutcome":
        error = (
            f"Low confidence ({decision.confidence:.2f}) after max tier "
            f"({decision.tier_used})"
        )
        return cls(
            kind=OutcomeKind.UNCERTAIN,
            output=output,
            decision=decision,
            error=error,
            **kwargs,
        )

    @classmethod
    def suspended(cls, suspension: Suspension, **kwargs: Any) -> "StepOutcome":
        return cls(kind=OutcomeKind.SUSPENDED, suspension=suspension, **kwargs)
