"""sopflow: durable, resumable automation of standard operating procedures."""

from .config import SopflowConfig, load_config
from .contracts import (
    Directive,
    DirectiveKind,
    JobKind,
    JobMessage,
    ProcessDefinition,
    StepDefinition,
    StepType,
)
from .decision import TieredDecisionRouter
from .engine import TaskExecutionEngine
from .execute import JobWorker
from .persistence import get_repository
from .runtime import build_runtime
from .scheduler import AgentLoopScheduler, SchedulerBeat
from .transports import get_transport
from .triggers import TriggerRunner

__version__ = "0.1.0"
__all__ = [
    "AgentLoopScheduler",
    "Directive",
    "DirectiveKind",
    "JobKind",
    "JobMessage",
    "JobWorker",
    "ProcessDefinition",
    "SchedulerBeat",
    "SopflowConfig",
    "StepDefinition",
    "StepType",
    "TaskExecutionEngine",
    "TieredDecisionRouter",
    "TriggerRunner",
    "build_runtime",
    "get_repository",
    "get_transport",
    "load_config",
]
