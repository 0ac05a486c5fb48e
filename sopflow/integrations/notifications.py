"""Notification boundary: plain and interactive messages, callback parsing."""

from __future__ import annotations

import json
import logging
import re
import uuid
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

import httpx
from pydantic import BaseModel

from ..contracts import JobKind, JobMessage
from ..errors import NotificationError

logger = logging.getLogger(__name__)

_CALLBACK_RE = re.compile(r"^task_(?P<instance>[\w-]+?)(?:_step_(?P<step>\d+))?$")


class InteractiveOption(BaseModel):
    value: str
    label: str
    style: str = "default"


DEFAULT_APPROVAL_OPTIONS = [
    InteractiveOption(value="approve", label="Approve", style="primary"),
    InteractiveOption(value="reject", label="Reject"),
]


class NotificationService(Protocol):
    """Posts messages and returns the posted message's handle.

    Failures raise :class:`NotificationError`.
    """

    async def post_message(
        self, channel: str, text: str, thread_handle: Optional[str] = None
    ) -> str:
        ...

    async def post_interactive(
        self,
        channel: str,
        text: str,
        options: Sequence[InteractiveOption],
        thread_handle: Optional[str] = None,
        callback_id: Optional[str] = None,
    ) -> str:
        ...


class PostedMessage(BaseModel):
    handle: str
    channel: str
    text: str
    thread_handle: Optional[str] = None
    options: List[InteractiveOption] = []
    callback_id: Optional[str] = None


class RecordingNotificationService:
    """Keeps posted messages in memory; channels in ``failing_channels`` raise."""

    def __init__(self, failing_channels: Optional[set[str]] = None) -> None:
        self.messages: List[PostedMessage] = []
        self.failing_channels = failing_channels or set()

    def _post(self, **fields: Any) -> str:
        if fields["channel"] in self.failing_channels:
            raise NotificationError(f"channel_not_found: {fields['channel']}")
        handle = uuid.uuid4().hex
        self.messages.append(PostedMessage(handle=handle, **fields))
        return handle

    async def post_message(
        self, channel: str, text: str, thread_handle: Optional[str] = None
    ) -> str:
        return self._post(channel=channel, text=text, thread_handle=thread_handle)

    async def post_interactive(
        self,
        channel: str,
        text: str,
        options: Sequence[InteractiveOption],
        thread_handle: Optional[str] = None,
        callback_id: Optional[str] = None,
    ) -> str:
        return self._post(
            channel=channel,
            text=text,
            thread_handle=thread_handle,
            options=list(options),
            callback_id=callback_id,
        )

    def in_channel(self, channel: str) -> List[PostedMessage]:
        return [m for m in self.messages if m.channel == channel]


class SlackNotificationService:
    """Slack Web API client built on ``httpx``."""

    def __init__(
        self,
        token: str,
        base_url: str = "https://slack.com/api",
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._token = token
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def close(self) -> None:
        await self._client.aclose()

    async def _call(self, method: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = await self._client.post(
                f"/{method}",
                json=payload,
                headers={"Authorization": f"Bearer {self._token}"},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise NotificationError(f"Slack {method} failed: {e}") from e
        body = response.json()
        if not body.get("ok"):
            raise NotificationError(f"Slack {method} failed: {body.get('error')}")
        return body

    async def post_message(
        self, channel: str, text: str, thread_handle: Optional[str] = None
    ) -> str:
        payload: Dict[str, Any] = {"channel": channel, "text": text}
        if thread_handle:
            payload["thread_ts"] = thread_handle
        body = await self._call("chat.postMessage", payload)
        return body["ts"]

    async def post_interactive(
        self,
        channel: str,
        text: str,
        options: Sequence[InteractiveOption],
        thread_handle: Optional[str] = None,
        callback_id: Optional[str] = None,
    ) -> str:
        elements = []
        for option in options:
            element: Dict[str, Any] = {
                "type": "button",
                "text": {"type": "plain_text", "text": option.label, "emoji": True},
                "value": option.value,
                "action_id": f"approval_{option.value}",
            }
            if option.style == "primary":
                element["style"] = "primary"
            elements.append(element)
        payload: Dict[str, Any] = {
            "channel": channel,
            "text": text,
            "blocks": [
                {"type": "section", "text": {"type": "mrkdwn", "text": text}},
                {"type": "actions", "block_id": callback_id, "elements": elements},
            ],
        }
        if thread_handle:
            payload["thread_ts"] = thread_handle
        body = await self._call("chat.postMessage", payload)
        return body["ts"]


def callback_id_for(instance_id: str, position: int) -> str:
    return f"task_{instance_id}_step_{position}"


def parse_interactive_callback(
    payload: Mapping[str, Any],
) -> Optional[Tuple[str, Dict[str, Any]]]:
    """Reduce an interactive-message callback to ``(instance_id, response_data)``.

    The action value may be JSON (``{"action": ..., "task_id": ..., "text": ...}``)
    or a bare action string, in which case the instance id comes from the
    callback id. Returns ``None`` for payloads that carry no usable action.
    """
    actions = payload.get("actions") or []
    raw_value = actions[0].get("value") if actions else None
    if not raw_value:
        return None

    callback_id = payload.get("callback_id") or (actions[0].get("block_id") or "")
    try:
        value = json.loads(raw_value)
    except json.JSONDecodeError:
        value = None
    if not isinstance(value, dict):
        match = _CALLBACK_RE.match(callback_id)
        value = {"action": raw_value, "task_id": match.group("instance") if match else None}

    instance_id = value.get("task_id") or value.get("instance_id")
    action = value.get("action")
    if not instance_id or not action:
        return None

    response_data = {
        "action": action,
        "text": value.get("text"),
        "user_id": (payload.get("user") or {}).get("id"),
        "user_name": (payload.get("user") or {}).get("name"),
        "channel": (payload.get("channel") or {}).get("id"),
        "callback_id": callback_id or None,
    }
    return instance_id, response_data


def resume_job_from_callback(payload: Mapping[str, Any]) -> Optional[JobMessage]:
    """Build the ``resume`` job for an inbound interactive callback."""
    parsed = parse_interactive_callback(payload)
    if parsed is None:
        logger.warning("Ignoring interactive callback without an action")
        return None
    instance_id, response_data = parsed
    logger.info(f"Human response for instance {instance_id}: {response_data['action']}")
    return JobMessage(kind=JobKind.RESUME, instance_id=instance_id, payload=response_data)


def format_escalation(
    instance_id: str,
    process_name: str,
    role: Optional[str],
    reason: str,
    working_data: Mapping[str, Any],
) -> str:
    return (
        ":rotating_light: *Escalation Required*\n\n"
        f"Task: {instance_id}\n"
        f"Agent: {role or 'Unknown'}\n"
        f"SOP: {process_name}\n\n"
        f"Reason: {reason}\n\n"
        f"Context: {json.dumps(dict(working_data), default=str, sort_keys=True)}"
    )
