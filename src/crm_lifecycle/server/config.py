"""Configuration for the REST server."""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ServerSettings(BaseSettings):
    """Settings for the REST API.

    Notes:
        Engine settings (state path, lanes, retries) are read separately by
        :class:`crm_lifecycle.statemachine.config.LifecycleSettings`.
    """

    scheduler_enabled: bool = Field(
        default=True,
        validation_alias="LIFECYCLE_SCHEDULER_ENABLED",
        description=(
            "If true, the server runs the background timeout sweep. Disable it when an "
            "external job calls POST /api/v1/sweep instead."
        ),
    )

    # Dev-friendly CORS. Override via LIFECYCLE_CORS_ORIGINS=...
    cors_origins: str = Field(
        default="http://localhost:5173,http://127.0.0.1:5173",
        validation_alias="LIFECYCLE_CORS_ORIGINS",
        description="Comma-separated list of allowed CORS origins.",
    )

    model_config = SettingsConfigDict(env_prefix="", env_file=".env", extra="ignore")

    def parsed_cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]
