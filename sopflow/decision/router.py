"""Tiered decision router.

Starts at the cheapest tier allowed for a call and climbs one tier at a time
while the provider errors or reports a confidence below the threshold. The
last tier's answer is returned even when still unsure, flagged so the engine
can hand the instance to a human.
"""

from __future__ import annotations

import json
import logging
import re
import time
from typing import Any, List, Mapping, Optional

from pydantic import BaseModel

from ..audit import AuditLog
from ..config import DecisionConfig
from ..errors import DecisionExhaustedError, DecisionProviderError, ProviderContentError
from ..persistence import AuditEventType
from ..templating import interpolate
from .providers import DecisionProvider, ProviderResponse

logger = logging.getLogger(__name__)

_FENCE_START = re.compile(r"\A\s*```(?:json)?\s*\n?")
_FENCE_END = re.compile(r"\n?\s*```\s*\Z")

DEFAULT_CONFIDENCE = 0.5


class ParsedDecision(BaseModel):
    output: Any = None
    confidence: float = DEFAULT_CONFIDENCE
    reasoning: Optional[str] = None


class DecisionResult(BaseModel):
    """Outcome of one routed decision call."""

    output: Any = None
    confidence: float
    tier_used: int
    model: Optional[str] = None
    escalation_chain: List[int]
    escalated: bool = False
    reasoning: Optional[str] = None
    tokens_in: int = 0
    tokens_out: int = 0
    threshold: float

    @property
    def uncertain(self) -> bool:
        """The highest tier still answered below the threshold."""
        return self.escalated and self.confidence < self.threshold


def _clamp_confidence(value: Any) -> float:
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return DEFAULT_CONFIDENCE
    return min(max(confidence, 0.0), 1.0)


def parse_decision(text: str) -> ParsedDecision:
    """Parse a provider answer into output, confidence and reasoning.

    Markdown code fences are stripped. Answers that are not a JSON object are
    used verbatim with the default confidence.
    """
    cleaned = _FENCE_END.sub("", _FENCE_START.sub("", text or "")).strip()
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError:
        return ParsedDecision(output=text)
    if not isinstance(parsed, dict):
        return ParsedDecision(output=parsed)
    return ParsedDecision(
        output=parsed.get("response", parsed),
        confidence=_clamp_confidence(parsed.get("confidence", DEFAULT_CONFIDENCE)),
        reasoning=parsed.get("reasoning"),
    )


class TieredDecisionRouter:
    """Route prompts through increasingly capable tiers."""

    def __init__(
        self,
        provider: DecisionProvider,
        config: Optional[DecisionConfig] = None,
        audit: Optional[AuditLog] = None,
    ) -> None:
        self._provider = provider
        self._config = config or DecisionConfig()
        self._audit = audit

    @property
    def threshold(self) -> float:
        return self._config.confidence_threshold

    async def decide(
        self,
        prompt: str,
        working_data: Mapping[str, Any],
        min_tier: int,
        max_tier: int,
        *,
        system_prompt: Optional[str] = None,
        instance_id: Optional[str] = None,
        step_position: Optional[int] = None,
    ) -> DecisionResult:
        if max_tier < min_tier:
            raise ValueError(f"max_tier {max_tier} is below min_tier {min_tier}")

        rendered = interpolate(prompt, working_data)
        system = system_prompt or self._config.system_prompt
        chain: List[int] = []
        tier = min_tier

        while True:
            chain.append(tier)
            model = self._config.model_for(tier)
            started = time.perf_counter()
            try:
                if model is None:
                    raise ProviderContentError(f"No decision model configured for tier {tier}")
                response = await self._provider.invoke(model, system, rendered)
            except DecisionProviderError as e:
                latency = int((time.perf_counter() - started) * 1000)
                logger.warning(f"Decision call failed at tier {tier}: {e}")
                await self._record_call(
                    instance_id, step_position, tier, model, rendered, latency,
                    error=str(e),
                )
                if tier >= max_tier:
                    raise DecisionExhaustedError(tier, list(chain), e) from e
                await self._record_escalation(
                    instance_id, step_position, tier, tier + 1, f"provider error: {e}"
                )
                tier += 1
                continue

            latency = int((time.perf_counter() - started) * 1000)
            parsed = parse_decision(response.response_text)
            await self._record_call(
                instance_id, step_position, tier, model, rendered, latency,
                response=response, parsed=parsed,
            )

            if parsed.confidence >= self.threshold or tier >= max_tier:
                escalated = len(chain) > 1 or parsed.confidence < self.threshold
                if parsed.confidence < self.threshold:
                    logger.info(
                        f"Decision still below threshold at max tier {tier} "
                        f"(confidence={parsed.confidence:.2f})"
                    )
                return DecisionResult(
                    output=parsed.output,
                    confidence=parsed.confidence,
                    tier_used=tier,
                    model=model,
                    escalation_chain=chain,
                    escalated=escalated,
                    reasoning=parsed.reasoning,
                    tokens_in=response.usage.tokens_in,
                    tokens_out=response.usage.tokens_out,
                    threshold=self.threshold,
                )

            await self._record_escalation(
                instance_id,
                step_position,
                tier,
                tier + 1,
                f"confidence {parsed.confidence:.2f} below {self.threshold:.2f}",
            )
            tier += 1

    async def _record_call(
        self,
        instance_id: Optional[str],
        step_position: Optional[int],
        tier: int,
        model: Optional[str],
        prompt: str,
        latency_ms: int,
        response: Optional[ProviderResponse] = None,
        parsed: Optional[ParsedDecision] = None,
        error: Optional[str] = None,
    ) -> None:
        if self._audit is None or instance_id is None:
            return
        await self._audit.record(
            instance_id,
            AuditEventType.DECISION_CALL,
            step_position=step_position,
            input=prompt,
            output=parsed.output if parsed else None,
            data={"error": error} if error else {},
            tier=tier,
            model=model,
            tokens_in=response.usage.tokens_in if response else None,
            tokens_out=response.usage.tokens_out if response else None,
            latency_ms=latency_ms,
            confidence=parsed.confidence if parsed else None,
        )

    async def _record_escalation(
        self,
        instance_id: Optional[str],
        step_position: Optional[int],
        from_tier: int,
        to_tier: int,
        reason: str,
    ) -> None:
        logger.info(f"Escalating decision from tier {from_tier} to {to_tier}: {reason}")
        if self._audit is None or instance_id is None:
            return
        await self._audit.record(
            instance_id,
            AuditEventType.DECISION_ESCALATED,
            step_position=step_position,
            data={"from_tier": from_tier, "to_tier": to_tier, "reason": reason},
            tier=from_tier,
        )
