from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Engine settings.

    Notes:
    - Defaults are local and deterministic (sqlite file next to the package).
    - Override via SCOPEGUARD_* env vars when embedding into a platform.
    """

    model_config = SettingsConfigDict(env_prefix="SCOPEGUARD_", extra="ignore")

    db_url: str | None = None
    capabilities_path: str | None = None
    log_level: str = "INFO"

    authorization_header: str = "Authorization"
    bearer_prefix: str = "Bearer"
    # Carries only the id of a server-issued test mode session.
    test_mode_header: str = "X-Test-Mode-Session"

    # Test mode sessions are fixed-length and never renewed.
    impersonation_ttl_seconds: int = 300

    def resolved_db_url(self) -> str:
        if self.db_url:
            return self.db_url

        repo_root = Path(__file__).resolve().parents[1]
        db_path = repo_root / "scopeguard.db"
        return f"sqlite:///{db_path}"

    def resolved_capabilities_path(self) -> Path:
        if self.capabilities_path:
            return Path(self.capabilities_path)

        return Path(__file__).resolve().parent / "config" / "capabilities.yaml"


@lru_cache
def get_settings() -> Settings:
    return Settings()
