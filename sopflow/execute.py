"""Job worker: consumes queue messages and routes them to the engine or scheduler."""

from __future__ import annotations

import logging
from typing import Any, Optional

from .config import SopflowConfig
from .constants import DEADLETTER_SUFFIX, ENGINE_TOPIC
from .contracts import JobKind, JobMessage
from .engine import REMINDER_STAGE, TaskExecutionEngine
from .scheduler import AgentLoopScheduler
from .summary import DailySummary
from .transports import BaseTransport
from .utils.retry import compute_backoff

logger = logging.getLogger(__name__)


class JobWorker:
    """Executes jobs by listening to transport messages.

    A job that raises is published again with a bumped attempt counter after
    an exponential backoff; once ``max_delivery_attempts`` is exceeded it is
    moved to the ``<topic>.deadletter`` topic for manual inspection.
    """

    def __init__(
        self,
        transport: BaseTransport,
        engine: TaskExecutionEngine,
        scheduler: Optional[AgentLoopScheduler] = None,
        topic: str = ENGINE_TOPIC,
        config: Optional[SopflowConfig] = None,
        summary: Optional[DailySummary] = None,
    ) -> None:
        self._transport = transport
        self._engine = engine
        self._scheduler = scheduler
        self._summary = summary
        self._topic = topic
        self._config = config or engine.config
        self.processed = 0

    @property
    def deadletter_topic(self) -> str:
        return f"{self._topic}{DEADLETTER_SUFFIX}"

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Start listening for jobs on the worker's topic."""
        logger.info(f"Worker listening on '{self._topic}'")
        async for raw_message, message in self._transport.subscribe(
            self._topic, lifespan=lifespan
        ):
            await self.process(raw_message, message)

    async def process(self, raw_message: Any, message: JobMessage) -> None:
        try:
            await self.handle(message)
        except Exception as e:
            logger.error(
                f"Job {message.job_id} ({message.kind.value}) failed on attempt "
                f"{message.attempt}: {e}"
            )
            await self._redeliver(message, e)
        finally:
            await self._transport.ack(raw_message)
            self.processed += 1

    async def handle(self, message: JobMessage) -> Any:
        if message.kind is JobKind.ADVANCE:
            return await self._engine.advance(
                message.instance_id,
                message.step_position,
                job_id=message.job_id,
                expected_version=message.expected_version,
            )
        if message.kind is JobKind.RESUME:
            return await self._engine.resume(message.instance_id, message.payload)
        if message.kind is JobKind.HUMAN_TIMEOUT:
            return await self._engine.human_timeout(
                message.instance_id,
                message.expected_version,
                stage=message.payload.get("stage", REMINDER_STAGE),
            )
        if message.kind is JobKind.SCHEDULER_CYCLE:
            if self._scheduler is None:
                raise RuntimeError("Worker has no scheduler for scheduler_cycle jobs")
            return await self._scheduler.run_cycle(message.role)
        if message.kind is JobKind.DAILY_SUMMARY:
            if self._summary is None:
                raise RuntimeError("Worker has no daily summary for daily_summary jobs")
            return await self._summary.run()
        raise ValueError(f"Unknown job kind: {message.kind}")

    async def _redeliver(self, message: JobMessage, error: Exception) -> None:
        cfg = self._config.engine
        retry = message.bump_attempt()
        if retry.attempt > cfg.max_delivery_attempts:
            dead = retry.model_copy(
                update={"payload": {**message.payload, "last_error": str(error)}}
            )
            await self._transport.publish(self.deadletter_topic, dead)
            logger.error(
                f"Job {message.job_id} dead-lettered after {message.attempt} attempts"
            )
            return
        delay = compute_backoff(message.attempt, base=cfg.backoff_base)
        await self._transport.publish(self._topic, retry, delay=delay)
        logger.info(f"Job {message.job_id} scheduled for attempt {retry.attempt} in {delay:.0f}s")
