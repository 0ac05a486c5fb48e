"""Daily operations summary and decision budget checks."""

from __future__ import annotations

import enum
import logging
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from .audit import estimate_cost
from .config import SopflowConfig
from .integrations import NotificationService
from .persistence import AuditEventType, InstanceStatus, ProcessRepository, RoleStatus
from .persistence.models import DECISION_EVENT_TYPES, utcnow

logger = logging.getLogger(__name__)

HUMAN_EVENT_TYPES = frozenset(
    {AuditEventType.HUMAN_INPUT_REQUESTED, AuditEventType.HUMAN_INPUT_RECEIVED}
)


class BudgetLevel(str, enum.Enum):
    OK = "ok"
    WARNING = "warning"
    ALERT = "alert"
    CRITICAL = "critical"


class DailyMetrics(BaseModel):
    instances_created: int = 0
    instances_completed: int = 0
    instances_failed: int = 0
    waiting_on_human: int = 0
    decision_calls: int = 0
    human_interactions: int = 0
    active_roles: int = 0
    active_watchers: int = 0
    cost_today: float = 0.0
    cost_month: float = 0.0


class SummaryReport(BaseModel):
    day: datetime
    metrics: DailyMetrics
    budget: BudgetLevel = BudgetLevel.OK
    paused_roles: List[str] = Field(default_factory=list)
    text: str = ""


def _start_of_day(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


class DailySummary:
    """Posts the daily operations digest and raises budget alerts.

    Spend is the tier price of every decision call since midnight UTC. At the
    warning threshold a note goes to the ops channel; alert and critical go to
    the escalation channel, and critical pauses the roles listed in
    ``budget.pause_on_critical``.
    """

    def __init__(
        self,
        repository: ProcessRepository,
        notifier: NotificationService,
        config: Optional[SopflowConfig] = None,
    ) -> None:
        self._repository = repository
        self._notifier = notifier
        self._config = config or SopflowConfig()

    async def gather(self, now: Optional[datetime] = None) -> DailyMetrics:
        now = now or utcnow()
        today = _start_of_day(now)
        month = today.replace(day=1)

        instances = await self._repository.list_instances()
        month_events = await self._repository.list_events_since(month)
        today_events = [e for e in month_events if e.created_at >= today]
        decision = self._config.decision

        return DailyMetrics(
            instances_created=sum(1 for i in instances if i.created_at >= today),
            instances_completed=sum(
                1
                for i in instances
                if i.status is InstanceStatus.COMPLETED
                and i.completed_at is not None
                and i.completed_at >= today
            ),
            instances_failed=sum(
                1 for i in instances if i.status.is_failed and i.updated_at >= today
            ),
            waiting_on_human=sum(
                1 for i in instances if i.status is InstanceStatus.PAUSED_FOR_HUMAN
            ),
            decision_calls=sum(1 for e in today_events if e.event_type in DECISION_EVENT_TYPES),
            human_interactions=sum(1 for e in today_events if e.event_type in HUMAN_EVENT_TYPES),
            active_roles=sum(
                1 for r in await self._repository.list_roles() if r.status is RoleStatus.ACTIVE
            ),
            active_watchers=sum(
                1
                for w in await self._repository.list_watchers()
                if w.status is RoleStatus.ACTIVE
            ),
            cost_today=estimate_cost(today_events, decision),
            cost_month=estimate_cost(month_events, decision),
        )

    def budget_level(self, cost: float) -> BudgetLevel:
        budget = self._config.budget
        if cost >= budget.critical_threshold:
            return BudgetLevel.CRITICAL
        if cost >= budget.alert_threshold:
            return BudgetLevel.ALERT
        if cost >= budget.warning_threshold:
            return BudgetLevel.WARNING
        return BudgetLevel.OK

    async def run(self, now: Optional[datetime] = None) -> SummaryReport:
        now = now or utcnow()
        logger.info(f"Daily summary starting for {now:%Y-%m-%d}")
        metrics = await self.gather(now)
        report = SummaryReport(
            day=_start_of_day(now),
            metrics=metrics,
            budget=self.budget_level(metrics.cost_today),
            text=format_summary(metrics, now),
        )
        channels = self._config.notifications
        await self._notifier.post_message(channels.ops_channel, report.text)

        if report.budget is not BudgetLevel.OK:
            if report.budget is BudgetLevel.CRITICAL:
                report.paused_roles = await self._pause_roles()
            channel = (
                channels.ops_channel
                if report.budget is BudgetLevel.WARNING
                else channels.escalation_channel
            )
            await self._notifier.post_message(
                channel, self._budget_message(report.budget, metrics.cost_today)
            )
            for slug in report.paused_roles:
                await self._notifier.post_message(
                    channels.escalation_channel,
                    f":pause_button: Role {slug} has been paused due to budget constraints",
                )
            logger.warning(
                f"Decision spend ${metrics.cost_today:.2f} reached budget {report.budget.value}"
            )

        logger.info("Daily summary completed")
        return report

    async def _pause_roles(self) -> List[str]:
        paused = []
        for slug in self._config.budget.pause_on_critical:
            role = await self._repository.get_role(slug)
            if role is None or role.status is not RoleStatus.ACTIVE:
                continue
            await self._repository.save_role(role.model_copy(update={"status": RoleStatus.PAUSED}))
            paused.append(slug)
        return paused

    def _budget_message(self, level: BudgetLevel, cost: float) -> str:
        budget = self._config.budget
        if level is BudgetLevel.CRITICAL:
            return (
                f":fire: Budget Critical: Daily decision cost (${cost:.2f}) exceeded critical "
                f"threshold (${budget.critical_threshold:.2f})"
            )
        if level is BudgetLevel.ALERT:
            return (
                f":rotating_light: Budget Alert: Daily decision cost (${cost:.2f}) exceeded "
                f"alert threshold (${budget.alert_threshold:.2f})"
            )
        return (
            f":warning: Budget Warning: Daily decision cost (${cost:.2f}) exceeded warning "
            f"threshold (${budget.warning_threshold:.2f})"
        )


def format_summary(metrics: DailyMetrics, now: datetime) -> str:
    return (
        f":chart_with_upwards_trend: *Daily Operations Summary* - {now:%B %d, %Y}\n\n"
        "*Task Activity:*\n"
        f"• Created today: {metrics.instances_created}\n"
        f"• Completed today: {metrics.instances_completed}\n"
        f"• Failed today: {metrics.instances_failed}\n"
        f"• Waiting on human: {metrics.waiting_on_human}\n\n"
        "*Interactions:*\n"
        f"• Decision calls today: {metrics.decision_calls}\n"
        f"• Human interactions today: {metrics.human_interactions}\n\n"
        "*System Status:*\n"
        f"• Active roles: {metrics.active_roles}\n"
        f"• Active watchers: {metrics.active_watchers}\n\n"
        "*Costs:*\n"
        f"• Today: ${metrics.cost_today:.4f}\n"
        f"• Month to date: ${metrics.cost_month:.2f}"
    )
