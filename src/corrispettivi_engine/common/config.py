"""Corrispettivi-Engine configuration via pydantic-settings."""

import warnings
from decimal import Decimal
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

_INSECURE_DEFAULTS = {
    "api_key": "insecure-admin-key-change-me",
}


class CorrispettiviSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CORRISPETTIVI_")

    environment: str = "development"
    log_level: str = "INFO"

    # Database
    db_url: str = "sqlite+aiosqlite:///./data/corrispettivi.db"

    # Blob storage: "filesystem" or "memory"
    storage_backend: str = "filesystem"
    storage_dir: str = "./data/blobs"

    # API
    api_title: str = "Corrispettivi-Engine"
    api_version: str = "0.1.0"
    api_key: str = "insecure-admin-key-change-me"
    host: str = "0.0.0.0"
    port: int = 4000
    api_prefix: str = ""
    cors_origins: list[str] = ["http://localhost:3000"]

    # Tax authority
    authority_base_url: str = "https://corrispettivi.agenziaentrate.gov.it/api/v1"
    authority_token: str = ""
    authority_timeout: float = 30.0

    # Outcome reconciliation
    outcome_poll_interval: int = 300  # seconds
    outcome_max_retries: int = 288  # 24 hours of 5-minute polls

    # Audit jobs
    audit_job_retention: int = 86400  # seconds
    audit_sweep_interval: int = 3600  # seconds

    # Ingestion
    seed_length: int = 32
    amount_tolerance: Decimal = Decimal("0.01")

    # PEM side
    pel_url: str = "http://localhost:4000"
    pel_timeout: float = 10.0

    def validate_for_production(self) -> None:
        """Raise if insecure defaults are used in non-development environments."""
        insecure_fields = [
            field
            for field, default in _INSECURE_DEFAULTS.items()
            if getattr(self, field) == default
        ]

        if self.environment != "development" and insecure_fields:
            env_vars = ", ".join(f"CORRISPETTIVI_{f.upper()}" for f in insecure_fields)
            raise RuntimeError(
                f"Insecure default values detected in '{self.environment}' environment. "
                f"Set these environment variables to secure values: {env_vars}."
            )

        if insecure_fields:
            warnings.warn(
                "Using insecure default API key, set CORRISPETTIVI_API_KEY for production",
                UserWarning,
                stacklevel=2,
            )


@lru_cache
def get_settings() -> CorrispettiviSettings:
    settings = CorrispettiviSettings()
    settings.validate_for_production()
    return settings
