from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


BASE_DIR = Path(__file__).resolve().parent.parent
DEFAULT_SQLITE_PATH = BASE_DIR / "fitsync.db"
DEFAULT_SQLITE_URL = f"sqlite:///{DEFAULT_SQLITE_PATH}"


def _split_csv(value: Optional[str]) -> List[str]:
    return [part.strip() for part in (value or "").split(",") if part.strip()]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=BASE_DIR / ".env", env_prefix="APP_", case_sensitive=False)

    database_url: str = Field(default=DEFAULT_SQLITE_URL, description="SQLAlchemy database URL")
    # Comma-separated token:user_id pairs, e.g. "tok-a:user-a,tok-b:user-b"
    api_tokens: str = Field(default="dev-token:dev-user")
    admin_user_ids: str = Field(default="")
    cors_origins: str = Field(default="*")
    environment: str = Field(default="development")

    # Rate limiting (fixed one-minute windows)
    rate_limit_enabled: bool = Field(default=True)
    rate_limit_per_minute: int = Field(default=600, description="Per client IP")
    sync_rate_limit_per_minute: int = Field(default=120, description="Per user on /api/fitness/sync")
    changes_rate_limit_per_minute: int = Field(default=120, description="Per user on /api/fitness/changes")
    qr_verify_rate_limit_per_minute: int = Field(default=10, description="Per user+gym+type")

    # QR tokens
    qr_master_key: str = Field(default="fitsync-dev-qr-master")
    qr_token_ttl_seconds: int = Field(default=45)
    qr_offline_grace_seconds: int = Field(default=300)
    qr_require_location: bool = Field(default=False)
    qr_gps_hook_url: Optional[str] = Field(default=None)
    qr_device_binding_hook_url: Optional[str] = Field(default=None)
    qr_hook_timeout_seconds: float = Field(default=3.0)

    # QR key rotation
    qr_key_rotation_interval_seconds: int = Field(default=6 * 60 * 60, description="Max key age before rotation")
    qr_rotation_scheduler_enabled: bool = Field(default=True)
    qr_rotation_scheduler_interval_seconds: int = Field(default=15 * 60)
    qr_rotation_system_actor_id: Optional[str] = Field(default=None)
    qr_rotation_cron_secret: str = Field(default="")

    # Sessions
    min_valid_session_minutes: int = Field(default=20)

    @property
    def cors_origins_list(self) -> List[str]:
        s = (self.cors_origins or "").strip()
        if not s or s == "*":
            return ["*"]
        return _split_csv(s)

    @property
    def api_token_map(self) -> Dict[str, str]:
        tokens: Dict[str, str] = {}
        for pair in _split_csv(self.api_tokens):
            token, sep, user_id = pair.partition(":")
            if sep and token.strip() and user_id.strip():
                tokens[token.strip()] = user_id.strip()
        return tokens

    @property
    def admin_user_id_set(self) -> set[str]:
        return set(_split_csv(self.admin_user_ids))


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]
