"""Task execution engine."""

from .engine import GIVE_UP_STAGE, REMINDER_STAGE, TaskExecutionEngine
from .handlers import STEP_HANDLERS, StepContext
from .outcomes import OutcomeKind, StepOutcome, Suspension, SuspensionKind

__all__ = [
    "GIVE_UP_STAGE",
    "OutcomeKind",
    "REMINDER_STAGE",
    "STEP_HANDLERS",
    "StepContext",
    "StepOutcome",
    "Suspension",
    "SuspensionKind",
    "TaskExecutionEngine",
]
