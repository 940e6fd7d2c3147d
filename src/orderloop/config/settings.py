"""Engine settings loaded from the environment.

Every field can be overridden with an ``ORDERLOOP_`` prefixed variable
or a ``.env`` file in the working directory, e.g.
``ORDERLOOP_DATABASE_PATH=/var/lib/orderloop/orders.db``.
"""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from orderloop.execution.retry import RetryPolicy


class EngineSettings(BaseSettings):
    """Runtime configuration for the scheduler, gateway, and CLI."""

    model_config = SettingsConfigDict(
        env_prefix="ORDERLOOP_",
        env_file=".env",
        extra="ignore",
    )

    database_path: str = Field(
        default="orderloop.db",
        description="SQLite database holding strategies, orders, and audit rows",
    )
    credentials_path: str = Field(
        default="credentials.json",
        description="JSON file mapping owner id to broker app key/secret/account",
    )
    trading_mode: Literal["paper", "live"] = Field(
        default="paper",
        description="'paper' routes every call to the broker's mock server",
    )

    log_level: str = Field(default="INFO")
    log_json: bool = Field(
        default=True, description="JSON lines when True, console renderer otherwise"
    )

    execution_interval_minutes: float = Field(
        default=9,
        description="Dedup fence: minimum minutes between two runs of one strategy",
    )
    closing_debounce_minutes: int = Field(
        default=10,
        description="Minutes after the regular open before closing-side logic runs",
    )
    immediate_execution_timeout_seconds: float = Field(default=10.0)
    default_target_return_rate: float = Field(default=10.0)
    order_history_days: int = Field(default=7)

    batch_size: int = Field(
        default=0, description="Owners per tick window; 0 processes every owner"
    )
    execution_cron: str = Field(default="*/10", description="Cron minute field")
    reconcile_cron: str = Field(default="*/5", description="Cron minute field")
    schedule_timezone: str = Field(default="Asia/Seoul")

    retry_max_retries: int = Field(default=3)
    retry_initial_delay_ms: int = Field(default=2000)
    retry_max_delay_ms: int = Field(default=8000)
    retry_multiplier: float = Field(default=2.0)

    token_min_refresh_interval_seconds: float = Field(default=61.0)
    token_expiry_margin_seconds: float = Field(default=300.0)
    quote_throttle_ms: int = Field(default=300)
    http_timeout_seconds: float = Field(default=10.0)

    @property
    def is_paper(self) -> bool:
        return self.trading_mode == "paper"

    def retry_policy(self) -> RetryPolicy:
        """Build the broker retry policy from the ``retry_*`` fields."""
        return RetryPolicy(
            max_retries=self.retry_max_retries,
            initial_delay_ms=self.retry_initial_delay_ms,
            max_delay_ms=self.retry_max_delay_ms,
            multiplier=self.retry_multiplier,
        )
