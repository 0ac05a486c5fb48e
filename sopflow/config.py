from __future__ import annotations

import os
from typing import Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

from .constants import (
    CONFIDENCE_THRESHOLD,
    DEFAULT_ESCALATION_CHANNEL,
    DEFAULT_OPS_CHANNEL,
    DEFAULT_SYSTEM_PROMPT,
)


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    key_prefix: str = "sopflow"


class TransportConfig(BaseModel):
    """Transport configuration settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = Field(default_factory=RedisConfig)


class DecisionConfig(BaseModel):
    """Tier table handed to the decision router at construction."""

    provider: Literal["pydantic_ai", "static"] = "pydantic_ai"
    models: Dict[int, str] = Field(
        default_factory=lambda: {
            1: "anthropic:claude-3-5-haiku-latest",
            2: "anthropic:claude-sonnet-4-0",
            3: "anthropic:claude-opus-4-0",
        }
    )
    pricing: Dict[int, float] = Field(
        default_factory=lambda: {1: 0.001, 2: 0.01, 3: 0.10}
    )
    confidence_threshold: float = CONFIDENCE_THRESHOLD
    system_prompt: str = DEFAULT_SYSTEM_PROMPT

    @field_validator("confidence_threshold")
    @classmethod
    def _threshold_range(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError("confidence_threshold must be between 0.0 and 1.0")
        return v

    def model_for(self, tier: int) -> Optional[str]:
        return self.models.get(tier)

    def cost_for(self, tier: Optional[int]) -> float:
        if not tier:
            return 0.0
        return self.pricing.get(tier, 0.0)


class EngineConfig(BaseModel):
    """Execution engine timing and retry settings."""

    default_timeout_seconds: float = 300
    backoff_base: float = 2.0
    backoff_unit_seconds: float = 60
    claim_lease_seconds: float = 900
    human_reminder_after_seconds: float = 4 * 3600
    human_give_up_after_seconds: float = 4 * 3600
    max_delivery_attempts: int = 3
    summary_limit: int = 500


class SchedulerConfig(BaseModel):
    """Agent loop settings."""

    interval_seconds: float = 300
    lock_ttl_seconds: float = 360
    failure_lookback_seconds: float = 3600
    human_grace_seconds: float = 7200
    high_priority_threshold: int = 7
    memory_limit: int = 10
    daily_summary_hour: int = 23


class NotificationConfig(BaseModel):
    """Notification backend and channel names."""

    backend: Literal["recording", "slack"] = "recording"
    slack_token: Optional[str] = None
    base_url: str = "https://slack.com/api"
    ops_channel: str = DEFAULT_OPS_CHANNEL
    escalation_channel: str = DEFAULT_ESCALATION_CHANNEL


class BudgetConfig(BaseModel):
    """Daily decision-spend thresholds checked by the daily summary."""

    warning_threshold: float = 10.0
    alert_threshold: float = 25.0
    critical_threshold: float = 50.0
    pause_on_critical: List[str] = Field(default_factory=list)

    @field_validator("critical_threshold")
    @classmethod
    def _ordered(cls, v: float, info) -> float:
        warning = info.data.get("warning_threshold", 0.0)
        alert = info.data.get("alert_threshold", 0.0)
        if not warning <= alert <= v:
            raise ValueError("budget thresholds must be warning <= alert <= critical")
        return v


class SopflowConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = Field(default_factory=TransportConfig)
    database_url: Optional[str] = None
    decision: DecisionConfig = Field(default_factory=DecisionConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)
    budget: BudgetConfig = Field(default_factory=BudgetConfig)


def load_config(path: Optional[str] = None) -> SopflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to SOPFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("SOPFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = SopflowConfig(**data)
    else:
        config = SopflowConfig()

    env_transport = os.getenv("SOPFLOW_TRANSPORT")
    if env_transport:
        config.transport.backend = env_transport.lower()

    env_db_url = os.getenv("SOPFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
