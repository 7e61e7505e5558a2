from __future__ import annotations

import os
from pathlib import Path

from pydantic import BaseModel, Field


class RuntimeSettings(BaseModel):
    environment: str = "dev"
    project_id: str | None = None
    blocking_timeout_ms: int = Field(default=10_000, ge=0)
    blocking_retry_budget: int = Field(default=2, ge=0)
    retry_delay_ms: int = Field(default=200, ge=0)
    rql_endpoint: str | None = None
    graphql_endpoint: str = "/api/graphql"
    api_base_url: str | None = None
    http_timeout_s: float = 10.0
    error_topic: str = "render-errors"
    mock_latency_ms: int = Field(default=0, ge=0)
    mock_fixtures_dir: Path | None = None

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        """Build settings from ``ENVIRONMENT``, ``PROJECT_ID`` and ``OSDL_*`` variables."""
        values: dict[str, object] = {
            "environment": os.getenv("ENVIRONMENT", "dev"),
            "project_id": os.getenv("PROJECT_ID"),
        }
        for name in cls.model_fields:
            if name in values:
                continue
            raw = os.getenv(f"OSDL_{name.upper()}")
            if raw is not None and raw != "":
                values[name] = raw
        return cls.model_validate(values)


__all__ = ["RuntimeSettings"]
