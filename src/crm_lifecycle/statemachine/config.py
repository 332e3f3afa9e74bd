"""Configuration for the lifecycle engine.

Configuration is loaded from:
- environment variables
- and a local `.env` file (if present)
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LifecycleSettings(BaseSettings):
    """Settings for the lifecycle engine.

    Notes:
        Pydantic-settings supports overriding the env file in tests via:
        `LifecycleSettings(_env_file=path_to_env)`.
    """

    log_level: str = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
        description="Root logging level",
    )

    state_path: Path = Field(
        default=Path("lifecycle_state"),
        validation_alias="LIFECYCLE_STATE_PATH",
        description="Directory where instances and action records are persisted",
    )

    definitions_path: Path | None = Field(
        default=None,
        validation_alias="LIFECYCLE_DEFINITIONS_PATH",
        description=(
            "File or directory of JSON state machine definitions. "
            "The built-in case lifecycle is always loaded."
        ),
    )

    lane_count: int = Field(
        default=8,
        validation_alias="LIFECYCLE_LANE_COUNT",
        description="Number of per-instance serialization lanes (worker threads)",
        ge=1,
        le=256,
    )
    action_workers: int = Field(
        default=4,
        validation_alias="LIFECYCLE_ACTION_WORKERS",
        description="Threads dispatching post-commit side effects (0 dispatches inline)",
        ge=0,
        le=64,
    )

    max_conflict_retries: int = Field(
        default=3,
        validation_alias="LIFECYCLE_MAX_CONFLICT_RETRIES",
        description="Optimistic concurrency retries before an event is answered with Busy",
        ge=0,
        le=50,
    )

    action_max_attempts: int = Field(
        default=3,
        validation_alias="LIFECYCLE_ACTION_MAX_ATTEMPTS",
        description="Attempts per external side effect before it is marked degraded",
        ge=1,
        le=20,
    )
    action_backoff_base_seconds: float = Field(
        default=0.5,
        validation_alias="LIFECYCLE_ACTION_BACKOFF_BASE_SECONDS",
        description="Base delay for exponential backoff between side effect attempts",
        ge=0,
    )
    action_backoff_max_seconds: float = Field(
        default=30.0,
        validation_alias="LIFECYCLE_ACTION_BACKOFF_MAX_SECONDS",
        description="Upper bound on a single backoff delay",
        ge=0,
    )
    abandon_superseded_actions: bool = Field(
        default=False,
        validation_alias="LIFECYCLE_ABANDON_SUPERSEDED_ACTIONS",
        description=(
            "If true, trailing side effects of a transition are skipped (marked degraded) "
            "once a newer transition has committed for the same instance."
        ),
    )

    sweep_interval_seconds: float = Field(
        default=30.0,
        validation_alias="LIFECYCLE_SWEEP_INTERVAL_SECONDS",
        description="Polling interval (seconds) of the timeout sweep",
        gt=0,
    )
    submit_timeout_seconds: float = Field(
        default=30.0,
        validation_alias="LIFECYCLE_SUBMIT_TIMEOUT_SECONDS",
        description="How long a synchronous submission waits for its lane",
        gt=0,
    )

    notify_webhook_url: str = Field(
        default="",
        validation_alias="LIFECYCLE_NOTIFY_WEBHOOK_URL",
        description="If set, email alerts are POSTed to this URL instead of only being logged",
    )

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @model_validator(mode="after")
    def _check_backoff_bounds(self) -> LifecycleSettings:
        if self.action_backoff_max_seconds < self.action_backoff_base_seconds:
            raise ValueError(
                "LIFECYCLE_ACTION_BACKOFF_MAX_SECONDS must be >= LIFECYCLE_ACTION_BACKOFF_BASE_SECONDS"
            )
        return self

    @property
    def instances_state_file(self) -> Path:
        """Path where lifecycle instances are persisted."""

        return self.state_path / "instances.json"

    @property
    def actions_state_file(self) -> Path:
        """Path where action execution records are persisted."""

        return self.state_path / "actions.json"
