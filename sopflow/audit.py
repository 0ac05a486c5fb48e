"""Append-only audit trail and cost accounting."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Iterable, Optional

from .config import DecisionConfig
from .persistence import AuditEvent, AuditEventType, ProcessRepository
from .persistence.models import DECISION_EVENT_TYPES

logger = logging.getLogger(__name__)


def summarize(value: Any, limit: int = 500) -> Optional[str]:
    """Render ``value`` as text no longer than ``limit`` characters."""
    if value is None:
        return None
    if isinstance(value, str):
        text = value
    else:
        text = json.dumps(value, default=str, sort_keys=True)
    if len(text) <= limit:
        return text
    return text[: max(limit - 3, 0)] + "..."


class AuditLog:
    """Records step transitions, decision calls and external actions."""

    def __init__(self, repository: ProcessRepository, summary_limit: int = 500) -> None:
        self._repository = repository
        self._summary_limit = summary_limit

    async def record(
        self,
        instance_id: str,
        event_type: AuditEventType,
        *,
        step_position: Optional[int] = None,
        input: Any = None,
        output: Any = None,
        data: Optional[Dict[str, Any]] = None,
        **metrics: Any,
    ) -> AuditEvent:
        """Persist an audit log entry.

        ``metrics`` carries the decision fields (tier, model, tokens_in,
        tokens_out, latency_ms, confidence) when applicable.
        """
        event = AuditEvent(
            instance_id=instance_id,
            event_type=event_type,
            step_position=step_position,
            input_summary=summarize(input, self._summary_limit),
            output_summary=summarize(output, self._summary_limit),
            data=data or {},
            **metrics,
        )
        await self._repository.append_event(event)
        logger.debug(
            f"Audit {event_type.value} instance={instance_id} step={step_position}"
        )
        return event

    async def events_for(self, instance_id: str) -> list[AuditEvent]:
        return await self._repository.list_events(instance_id)


def estimate_cost(events: Iterable[AuditEvent], config: DecisionConfig) -> float:
    """Sum the per-call price of every decision call by tier."""
    total = 0.0
    for event in events:
        if event.event_type is AuditEventType.DECISION_CALL:
            total += config.cost_for(event.tier)
    return round(total, 6)


def token_totals(events: Iterable[AuditEvent]) -> Dict[str, int]:
    totals = {"tokens_in": 0, "tokens_out": 0}
    for event in events:
        if event.event_type not in DECISION_EVENT_TYPES:
            continue
        totals["tokens_in"] += event.tokens_in or 0
        totals["tokens_out"] += event.tokens_out or 0
    return totals
