"""Transactional messaging boundary."""

from __future__ import annotations

import uuid
from typing import Any, Dict, List, Mapping, Protocol

from pydantic import BaseModel


class TransactionalMessagingService(Protocol):
    async def send_templated(
        self, recipient: str, template_id: str, variables: Mapping[str, Any]
    ) -> str:
        """Send a templated message and return its message id."""
        ...


class SentMessage(BaseModel):
    message_id: str
    recipient: str
    template_id: str
    variables: Dict[str, Any]


class RecordingMessagingService:
    def __init__(self) -> None:
        self.sent: List[SentMessage] = []

    async def send_templated(
        self, recipient: str, template_id: str, variables: Mapping[str, Any]
    ) -> str:
        message_id = f"msg-{uuid.uuid4().hex[:12]}"
        self.sent.append(
            SentMessage(
                message_id=message_id,
                recipient=recipient,
                template_id=template_id,
                variables=dict(variables),
            )
        )
        return message_id
