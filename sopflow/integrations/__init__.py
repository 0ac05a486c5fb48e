"""External collaborators consumed by the engine and scheduler."""

from .data import ExternalDataService, StaticDataService
from .memory import InMemoryMemoryStore, MemoryNote, MemoryStore
from .messaging import RecordingMessagingService, TransactionalMessagingService
from .notifications import (
    DEFAULT_APPROVAL_OPTIONS,
    InteractiveOption,
    NotificationService,
    RecordingNotificationService,
    SlackNotificationService,
    callback_id_for,
    format_escalation,
    parse_interactive_callback,
    resume_job_from_callback,
)

__all__ = [
    "DEFAULT_APPROVAL_OPTIONS",
    "ExternalDataService",
    "InMemoryMemoryStore",
    "InteractiveOption",
    "MemoryNote",
    "MemoryStore",
    "NotificationService",
    "RecordingMessagingService",
    "RecordingNotificationService",
    "SlackNotificationService",
    "StaticDataService",
    "TransactionalMessagingService",
    "callback_id_for",
    "format_escalation",
    "parse_interactive_callback",
    "resume_job_from_callback",
]
