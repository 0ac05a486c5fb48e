"""Core contracts for sopflow: process definitions, outcome directives and jobs."""

from __future__ import annotations

import enum
import re
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from .constants import MAX_TIER, MIN_TIER

_SLUG_RE = re.compile(r"^[a-z0-9_]+$")


class StepType(str, enum.Enum):
    """Closed set of step kinds understood by the execution engine."""

    CONDITIONAL_QUERY = "conditional_query"
    EXTERNAL_CALL = "external_call"
    CLASSIFY = "classify"
    DRAFT_CONTENT = "draft_content"
    DECIDE = "decide"
    ANALYZE = "analyze"
    NOTIFY = "notify"
    REQUEST_HUMAN_INPUT = "request_human_input"
    SCHEDULE_FOLLOWUP = "schedule_followup"
    WAIT = "wait"

    @property
    def uses_decision_router(self) -> bool:
        return self in DECISION_STEP_TYPES


DECISION_STEP_TYPES = frozenset(
    {StepType.CLASSIFY, StepType.DRAFT_CONTENT, StepType.DECIDE, StepType.ANALYZE}
)


class DirectiveKind(str, enum.Enum):
    ADVANCE = "advance"
    COMPLETE = "complete"
    RETRY = "retry"
    ESCALATE = "escalate"
    FAIL = "fail"
    ESCALATE_TIER = "escalate_tier"
    GOTO = "goto"


_SENTINEL_ALIASES = {
    "advance": DirectiveKind.ADVANCE,
    "next": DirectiveKind.ADVANCE,
    "complete": DirectiveKind.COMPLETE,
    "retry": DirectiveKind.RETRY,
    "escalate": DirectiveKind.ESCALATE,
    "fail": DirectiveKind.FAIL,
    "escalate_tier": DirectiveKind.ESCALATE_TIER,
}


class Directive(BaseModel):
    """Outcome directive: either a sentinel or an explicit target position.

    Raw values from definitions (``"advance"``, ``"retry"``, ``4``, ``"4"``) are
    converted once, when the definition is loaded; the engine only ever sees
    the tagged form.
    """

    kind: DirectiveKind
    position: Optional[int] = None

    model_config = {"frozen": True}

    @model_validator(mode="before")
    @classmethod
    def _coerce(cls, value: Any) -> Any:
        if isinstance(value, Directive):
            return value
        if isinstance(value, bool):
            raise ValueError(f"Invalid directive: {value!r}")
        if isinstance(value, int):
            return {"kind": DirectiveKind.GOTO, "position": value}
        if isinstance(value, str):
            text = value.strip().lower()
            if text in _SENTINEL_ALIASES:
                return {"kind": _SENTINEL_ALIASES[text]}
            if text.isdigit():
                return {"kind": DirectiveKind.GOTO, "position": int(text)}
            raise ValueError(f"Invalid directive: {value!r}")
        if isinstance(value, dict) and "goto" in value:
            return {"kind": DirectiveKind.GOTO, "position": value["goto"]}
        return value

    @model_validator(mode="after")
    def _check_position(self) -> "Directive":
        if self.kind is DirectiveKind.GOTO:
            if self.position is None or self.position < 0:
                raise ValueError("goto directive requires a non-negative position")
        elif self.position is not None:
            raise ValueError(f"{self.kind.value} directive does not take a position")
        return self

    @classmethod
    def parse(cls, value: Any) -> "Directive":
        return cls.model_validate(value)

    @classmethod
    def goto(cls, position: int) -> "Directive":
        return cls(kind=DirectiveKind.GOTO, position=position)

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        if self.kind is DirectiveKind.GOTO:
            return f"goto {self.position}"
        return self.kind.value


ADVANCE = Directive(kind=DirectiveKind.ADVANCE)
COMPLETE = Directive(kind=DirectiveKind.COMPLETE)

_ON_SUCCESS_KINDS = {DirectiveKind.ADVANCE, DirectiveKind.COMPLETE, DirectiveKind.GOTO}
_ON_FAILURE_KINDS = {
    DirectiveKind.RETRY,
    DirectiveKind.ESCALATE,
    DirectiveKind.FAIL,
    DirectiveKind.GOTO,
}
_ON_UNCERTAIN_KINDS = _ON_FAILURE_KINDS | {DirectiveKind.ESCALATE_TIER}


class StepDefinition(BaseModel):
    """One ordered unit of work within a process definition."""

    position: int = Field(..., ge=0)
    name: str
    step_type: StepType
    config: Dict[str, Any] = Field(default_factory=dict)
    min_tier: int = Field(default=1, ge=MIN_TIER, le=MAX_TIER)
    max_tier: int = Field(default=1, ge=MIN_TIER, le=MAX_TIER)
    on_success: Directive = ADVANCE
    on_failure: Directive = Directive(kind=DirectiveKind.FAIL)
    on_uncertain: Directive = Directive(kind=DirectiveKind.ESCALATE_TIER)
    on_empty: Optional[Directive] = None
    max_retries: int = Field(default=3, ge=0)
    timeout_seconds: Optional[float] = Field(default=None, gt=0)

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _validate(self) -> "StepDefinition":
        if self.max_tier < self.min_tier:
            raise ValueError("max_tier cannot be less than min_tier")
        if self.on_success.kind not in _ON_SUCCESS_KINDS:
            raise ValueError(f"on_success cannot be {self.on_success.kind.value}")
        if self.on_failure.kind not in _ON_FAILURE_KINDS:
            raise ValueError(f"on_failure cannot be {self.on_failure.kind.value}")
        if self.on_uncertain.kind not in _ON_UNCERTAIN_KINDS:
            raise ValueError(f"on_uncertain cannot be {self.on_uncertain.kind.value}")
        if self.on_empty is not None and self.on_empty.kind not in _ON_SUCCESS_KINDS:
            raise ValueError(f"on_empty cannot be {self.on_empty.kind.value}")
        return self

    @property
    def prompt_template(self) -> str:
        return self.config.get("prompt_template") or ""

    def next_position(self, directive: Directive) -> Optional[int]:
        """Position an advancing directive leads to, ``None`` for complete."""
        if directive.kind is DirectiveKind.ADVANCE:
            return self.position + 1
        if directive.kind is DirectiveKind.GOTO:
            return directive.position
        return None


class DefinitionStatus(str, enum.Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    DISABLED = "disabled"


class ProcessDefinition(BaseModel):
    """Immutable, versioned description of a workflow."""

    slug: str
    name: str
    version: int = Field(default=1, ge=1)
    role: Optional[str] = None
    description: Optional[str] = None
    steps: List[StepDefinition] = Field(default_factory=list)
    max_tier: int = Field(default=MAX_TIER, ge=MIN_TIER, le=MAX_TIER)
    required_capabilities: List[str] = Field(default_factory=list)
    status: DefinitionStatus = DefinitionStatus.DRAFT

    model_config = {"frozen": True}

    @field_validator("slug")
    @classmethod
    def _slug_format(cls, v: str) -> str:
        if not _SLUG_RE.match(v):
            raise ValueError("slug must contain only lowercase letters, digits and '_'")
        return v

    @field_validator("steps")
    @classmethod
    def _ordered_unique(cls, steps: List[StepDefinition]) -> List[StepDefinition]:
        positions = [s.position for s in steps]
        if len(set(positions)) != len(positions):
            raise ValueError("step positions must be unique")
        return sorted(steps, key=lambda s: s.position)

    @model_validator(mode="after")
    def _tiers_within_process(self) -> "ProcessDefinition":
        for step in self.steps:
            if step.step_type.uses_decision_router and step.min_tier > self.max_tier:
                raise ValueError(
                    f"step {step.position} min_tier {step.min_tier} exceeds "
                    f"process max_tier {self.max_tier}"
                )
        return self

    @property
    def is_active(self) -> bool:
        return self.status is DefinitionStatus.ACTIVE

    @property
    def first_position(self) -> int:
        return self.steps[0].position if self.steps else 0

    def step_at(self, position: int) -> Optional[StepDefinition]:
        return next((s for s in self.steps if s.position == position), None)

    def allows_tier(self, tier: int) -> bool:
        return tier <= self.max_tier

    def effective_max_tier(self, step: StepDefinition) -> int:
        return min(step.max_tier, self.max_tier)


class JobKind(str, enum.Enum):
    ADVANCE = "advance"
    RESUME = "resume"
    HUMAN_TIMEOUT = "human_timeout"
    SCHEDULER_CYCLE = "scheduler_cycle"
    DAILY_SUMMARY = "daily_summary"


class JobMessage(BaseModel):
    """Envelope exchanged over the job queue."""

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    job_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    kind: JobKind
    instance_id: Optional[str] = None
    role: Optional[str] = None
    step_position: Optional[int] = None
    expected_version: Optional[int] = None
    attempt: int = 1
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    not_before: Optional[datetime] = None

    def to_json(self) -> str:
        """Serialize message to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "JobMessage":
        """Deserialize message from JSON."""
        return cls.model_validate_json(data)

    def bump_attempt(self) -> "JobMessage":
        """Return a redelivery copy with a new message id and incremented attempt.

        ``job_id`` is preserved so the engine recognises the redelivery as the
        same unit of work.
        """
        return self.model_copy(
            update={"message_id": str(uuid.uuid4()), "attempt": self.attempt + 1}
        )

    def is_due(self, now: Optional[datetime] = None) -> bool:
        if self.not_before is None:
            return True
        return self.not_before <= (now or datetime.now(timezone.utc))
