"""Preview gateway configuration."""

import json
from typing import Any, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Service
    environment: Literal["development", "staging", "production"] = "development"
    debug: bool = False
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 4000

    # Externally reachable origin (scheme://host[:port]) used when rewriting
    # live-reload socket URLs. Derived from forwarded headers when unset.
    public_base_url: str | None = None

    # CORS - allowed origins for API access
    cors_origins: list[str] = ["http://localhost:3000"]

    # Local directory holding one synced workspace per owner/project
    preview_root: str = "/tmp/preview-gateway"  # noqa: S108

    # Upstream fetch bounds (seconds)
    upstream_timeout: float = 30.0
    upstream_connect_timeout: float = 10.0
    inspection_timeout: float = 15.0
    launch_timeout: float = 120.0
    shutdown_timeout: int = 30

    # Inspection overlay
    inspection_max_elements: int = 500
    selector_depth: int = 4

    # Request classification: additional path prefixes treated as assets
    extra_asset_prefixes: list[str] = Field(default_factory=list)

    # Directory listing fallback bounds
    listing_max_entries: int = 500
    listing_max_depth: int = 4

    # Auth verifier: remote endpoint, or a static token map for development
    # PREVIEW_STATIC_TOKENS='{"dev-token": "user-1"}'
    auth_verify_url: str | None = None
    static_tokens_json: str = Field(default="{}", validation_alias="PREVIEW_STATIC_TOKENS")

    # Project file store (live-edit overrides)
    file_store_url: str | None = None
    internal_service_token: str | None = None

    # Local process launcher
    launch_command: str = "npm run dev"
    install_command: str = "npm install"
    launch_host: str = "127.0.0.1"
    port_range_start: int = 3100
    port_range_end: int = 3200

    # Sentry (reads from SENTRY_ env vars, not PREVIEW_)
    sentry_dsn: str | None = Field(default=None, validation_alias="SENTRY_DSN")
    sentry_traces_sample_rate: float = Field(
        default=0.2, validation_alias="SENTRY_TRACES_SAMPLE_RATE"
    )
    sentry_profiles_sample_rate: float = Field(
        default=0.1, validation_alias="SENTRY_PROFILES_SAMPLE_RATE"
    )

    @field_validator("static_tokens_json", mode="before")
    @classmethod
    def parse_static_tokens(cls, v: Any) -> str:
        """Ensure static tokens are kept as a JSON string."""
        if isinstance(v, dict):
            return json.dumps(v)
        return v or "{}"

    @property
    def static_tokens(self) -> dict[str, str]:
        """Parse the development token map from JSON config."""
        try:
            data = json.loads(self.static_tokens_json)
        except (json.JSONDecodeError, TypeError):
            return {}
        if not isinstance(data, dict):
            return {}
        return {str(k): str(v) for k, v in data.items()}

    model_config = {"env_prefix": "PREVIEW_", "case_sensitive": False, "populate_by_name": True}


settings = Settings()
