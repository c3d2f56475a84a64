"""Settings loader for the pay-per-view billing core."""
from __future__ import annotations

from decimal import Decimal
from typing import Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MICROS_PER_UNIT = Decimal("1000000")


class BillingSettings(BaseSettings):
    redis_url: str = Field(default="redis://localhost:6379/0")
    database_url: str = Field(default="sqlite:///./billing.db")

    cost_per_request: Decimal = Field(default=Decimal("0.0002"))
    creator_share: Decimal = Field(default=Decimal("1"))

    settlement_interval_seconds: int = Field(default=600)
    heartbeat_timeout_seconds: int = Field(default=120)
    reaper_interval_seconds: int = Field(default=30)
    session_ttl_seconds: int = Field(default=24 * 60 * 60)
    heartbeat_ttl_seconds: int = Field(default=600)
    video_cache_ttl_seconds: int = Field(default=600)

    settlement_lock_seconds: int = Field(default=30)
    settlement_lock_wait_seconds: float = Field(default=5.0)
    teardown_timeout_seconds: float = Field(default=5.0)
    notification_queue_size: int = Field(default=1000)

    pause_detection_enabled: bool = Field(default=True)

    billable_segment_prefix: str = Field(default="chunk-")
    billable_segment_suffix: str = Field(default=".m4s")

    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=8082)
    api_root_path: str = Field(default="")
    api_admin_token: Optional[str] = Field(default=None)

    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(
        env_prefix="BILLING_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("cost_per_request", "creator_share", mode="before")
    def coerce_decimal(cls, value):  # type: ignore[override]
        if isinstance(value, Decimal):
            return value
        try:
            return Decimal(str(value))
        except Exception as exc:
            raise ValueError(f"Invalid decimal value: {value}") from exc

    @field_validator("cost_per_request")
    def validate_cost(cls, value: Decimal) -> Decimal:
        if value <= 0:
            raise ValueError("cost_per_request must be positive")
        if (value * MICROS_PER_UNIT) != (value * MICROS_PER_UNIT).to_integral_value():
            raise ValueError("cost_per_request must be a whole number of micro-units")
        return value

    @field_validator("creator_share")
    def validate_share(cls, value: Decimal) -> Decimal:
        if value < 0 or value > 1:
            raise ValueError("creator_share must be between 0 and 1")
        return value

    @field_validator(
        "settlement_interval_seconds",
        "heartbeat_timeout_seconds",
        "reaper_interval_seconds",
        "session_ttl_seconds",
        "heartbeat_ttl_seconds",
        "video_cache_ttl_seconds",
        "settlement_lock_seconds",
        "notification_queue_size",
        "api_port",
    )
    def validate_positive_int(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("Value must be positive")
        return value

    @field_validator("settlement_lock_wait_seconds", "teardown_timeout_seconds")
    def validate_positive_float(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("Value must be positive")
        return value

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, value: str) -> str:
        candidate = (value or "INFO").strip().upper()
        if candidate not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError("log_level must be a standard logging level name")
        return candidate

    @model_validator(mode="after")
    def validate_timeouts(self) -> "BillingSettings":
        if self.heartbeat_ttl_seconds < self.heartbeat_timeout_seconds:
            raise ValueError(
                "BILLING_HEARTBEAT_TTL_SECONDS must be >= BILLING_HEARTBEAT_TIMEOUT_SECONDS"
            )
        return self
