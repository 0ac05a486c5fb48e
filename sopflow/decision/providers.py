"""Decision provider boundary and the pydantic-ai backed implementation."""

from __future__ import annotations

import logging
from typing import Dict, Optional, Protocol

import httpx
from pydantic import BaseModel
from pydantic_ai import Agent
from pydantic_ai.exceptions import (
    AgentRunError,
    ModelHTTPError,
    UnexpectedModelBehavior,
    UserError,
)

from ..errors import ProviderContentError, ProviderTransportError

logger = logging.getLogger(__name__)

# Status codes worth another attempt at a higher tier
_TRANSIENT_STATUS = {408, 409, 425, 429}


class ProviderUsage(BaseModel):
    tokens_in: int = 0
    tokens_out: int = 0


class ProviderResponse(BaseModel):
    """Raw provider answer before confidence parsing."""

    response_text: str
    usage: ProviderUsage = ProviderUsage()


class DecisionProvider(Protocol):
    """Invokes one model. Implementations raise ``ProviderTransportError`` for
    network, rate-limit and server failures and ``ProviderContentError`` for
    unusable answers."""

    async def invoke(
        self, model_id: str, system_context: str, prompt: str
    ) -> ProviderResponse:
        ...


def _usage_tokens(usage: object) -> ProviderUsage:
    tokens_in = getattr(usage, "input_tokens", None)
    if tokens_in is None:
        tokens_in = getattr(usage, "request_tokens", None)
    tokens_out = getattr(usage, "output_tokens", None)
    if tokens_out is None:
        tokens_out = getattr(usage, "response_tokens", None)
    return ProviderUsage(tokens_in=tokens_in or 0, tokens_out=tokens_out or 0)


class PydanticAIDecisionProvider:
    """Run decisions through ``pydantic_ai.Agent`` instances, one per model/system pair."""

    def __init__(self, retries: int = 0) -> None:
        self._retries = retries
        self._agents: Dict[tuple[str, str], Agent] = {}

    def _agent_for(self, model_id: str, system_context: str) -> Agent:
        key = (model_id, system_context)
        agent = self._agents.get(key)
        if agent is None:
            agent = Agent(model_id, system_prompt=system_context, retries=self._retries)
            self._agents[key] = agent
        return agent

    async def invoke(
        self, model_id: str, system_context: str, prompt: str
    ) -> ProviderResponse:
        try:
            agent = self._agent_for(model_id, system_context)
            result = await agent.run(prompt)
        except ModelHTTPError as e:
            if e.status_code in _TRANSIENT_STATUS or e.status_code >= 500:
                raise ProviderTransportError(
                    f"{model_id} returned HTTP {e.status_code}"
                ) from e
            raise ProviderContentError(f"{model_id} rejected request: {e}") from e
        except httpx.TransportError as e:
            raise ProviderTransportError(f"{model_id} unreachable: {e}") from e
        except UserError as e:
            # Missing credentials or an unknown model id
            raise ProviderTransportError(f"{model_id} unavailable: {e}") from e
        except (UnexpectedModelBehavior, AgentRunError) as e:
            raise ProviderContentError(f"{model_id} answered unusably: {e}") from e

        output = result.output
        text = output if isinstance(output, str) else str(output)
        logger.debug(f"Decision model {model_id} answered {len(text)} chars")
        return ProviderResponse(response_text=text, usage=_usage_tokens(result.usage()))


class StaticDecisionProvider:
    """Answers every call with a fixed response, keyed by model when given.

    Used when no model credentials are configured, e.g. local development.
    """

    def __init__(
        self,
        default: str = '{"response": "ok", "confidence": 0.85}',
        by_model: Optional[Dict[str, str]] = None,
    ) -> None:
        self._default = default
        self._by_model = by_model or {}
        self.calls: list[tuple[str, str]] = []

    async def invoke(
        self, model_id: str, system_context: str, prompt: str
    ) -> ProviderResponse:
        self.calls.append((model_id, prompt))
        text = self._by_model.get(model_id, self._default)
        return ProviderResponse(
            response_text=text, usage=ProviderUsage(tokens_in=100, tokens_out=50)
        )
