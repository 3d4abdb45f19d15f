"""Runtime configuration powered by Pydantic settings."""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Centralized configuration object with environment fallbacks."""

    model_config = SettingsConfigDict(env_prefix="CONTROLNET_", env_file=".env", extra="allow")

    # App
    app_name: str = "controlnet"
    debug: bool = False
    log_level: str = Field(default="info")
    seed_defaults: bool = Field(default=True)

    # Node registry
    max_nodes: int = Field(default=1000, ge=1)
    rate_limit_max: int = Field(default=100, ge=1)
    rate_limit_window_s: float = Field(default=60.0, gt=0)
    stale_node_threshold_s: float = Field(default=600.0, gt=0)
    stale_sweep_interval_s: float = Field(default=300.0, gt=0)

    # Network health
    health_check_interval_s: float = Field(default=30.0, gt=0)
    health_degraded_error_ratio: float = Field(default=0.05, ge=0, le=1)
    health_critical_error_ratio: float = Field(default=0.25, ge=0, le=1)

    # Automation rules
    rule_tick_interval_s: float = Field(default=0.1, gt=0)
    default_rule_cooldown_s: float = Field(default=1.0, ge=0)
    default_rule_evaluation_interval_s: float = Field(default=0.1, ge=0)

    # Control loops
    loop_tick_interval_s: float = Field(default=0.01, gt=0)
    default_loop_execution_rate_s: float = Field(default=0.1, gt=0)
    loop_history_length: int = Field(default=100, ge=1)

    # Event bus
    event_history_length: int = Field(default=200, ge=0)

    # Safety system
    safety_monitor_interval_s: float = Field(default=5.0, gt=0)
    permit_check_interval_s: float = Field(default=60.0, gt=0)
    max_active_alarms: int = Field(default=1000, ge=1)
    escalate_critical_alarms: bool = Field(default=True)
    escalation_estop_id: str = Field(default="SOFTWARE_ESTOP")

    # Remote sites
    site_health_interval_s: float = Field(default=30.0, gt=0)
    site_degraded_after_s: float = Field(default=60.0, gt=0)
    site_timeout_after_s: float = Field(default=300.0, gt=0)

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, v: str) -> str:
        """Accept ``INFO``/``info``/`` Info `` alike."""
        if isinstance(v, str):
            return v.strip().lower() or "info"
        return v


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance."""

    return Settings()


__all__ = ["Settings", "get_settings"]
