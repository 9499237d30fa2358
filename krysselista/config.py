"""Application configuration utilities."""
from __future__ import annotations

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

ENV_OVERRIDES = {
    "SUPABASE_URL": "supabase_url",
    "NEXT_PUBLIC_SUPABASE_URL": "supabase_url",
    "SUPABASE_ANON_KEY": "supabase_anon_key",
    "NEXT_PUBLIC_SUPABASE_ANON_KEY": "supabase_anon_key",
    "SUPABASE_SERVICE_ROLE_KEY": "supabase_service_role_key",
    "SUPABASE_JWT_SECRET": "supabase_jwt_secret",
    "SUPABASE_JWT_AUD": "supabase_jwt_aud",
    "SUPABASE_JWKS_URL": "supabase_jwks_url",
    "KRYSSELISTA_CORS_ORIGINS": "cors_origins",
    "LOG_LEVEL": "log_level",
    "KRYSSELISTA_HTTP_TIMEOUT": "http_timeout",
    "KRYSSELISTA_REALTIME_QUEUE_SIZE": "realtime_queue_size",
    "KRYSSELISTA_REALTIME_RELAY": "realtime_relay",
    "KRYSSELISTA_REALTIME_HEARTBEAT": "realtime_heartbeat_interval",
    "KRYSSELISTA_REALTIME_MAX_BACKOFF": "realtime_max_backoff",
}


class AppConfig(BaseModel):
    """Strongly typed configuration loaded from config.json and the environment."""

    supabase_url: Optional[str] = None
    supabase_anon_key: Optional[str] = None
    supabase_service_role_key: Optional[str] = None
    supabase_jwt_secret: Optional[str] = None
    supabase_jwt_aud: str = Field(default="authenticated")
    supabase_jwks_url: Optional[str] = None
    cors_origins: List[str] = Field(
        default_factory=lambda: [
            "http://localhost:5173",
            "http://127.0.0.1:5173",
            "http://localhost:8080",
        ]
    )
    log_level: str = Field(default="INFO")
    http_timeout: float = Field(default=15.0, gt=0)
    realtime_queue_size: int = Field(default=100, ge=1)
    realtime_relay: bool = Field(default=True, description="Relay Supabase postgres_changes into the change feed")
    realtime_heartbeat_interval: float = Field(default=25.0, gt=0)
    realtime_max_backoff: float = Field(default=30.0, gt=0)
    approved_history_limit: int = Field(default=10, ge=1, le=100)

    @property
    def rest_base_url(self) -> str:
        """Return the Supabase project URL without a trailing slash."""
        if not self.supabase_url or not self.supabase_anon_key:
            raise RuntimeError("Missing SUPABASE_URL/SUPABASE_ANON_KEY for API access.")
        return self.supabase_url.rstrip("/")

    @property
    def realtime_url(self) -> str:
        """Supabase Realtime websocket endpoint for this project."""
        base = self.rest_base_url
        if base.startswith("https://"):
            base = "wss://" + base[len("https://") :]
        elif base.startswith("http://"):
            base = "ws://" + base[len("http://") :]
        return f"{base}/realtime/v1/websocket"

    @property
    def jwks_url(self) -> str:
        return self.supabase_jwks_url or f"{self.rest_base_url}/auth/v1/keys"


def _config_path() -> Path:
    return Path(__file__).resolve().parents[1] / "config.json"


def _env_overrides() -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for env_name, field_name in ENV_OVERRIDES.items():
        value = os.getenv(env_name)
        if not value:
            continue
        if field_name == "cors_origins":
            overrides[field_name] = [item.strip() for item in value.split(",") if item.strip()]
        elif field_name not in overrides:
            overrides[field_name] = value
    return overrides


def load_config() -> AppConfig:
    """Load config.json when present, then apply environment overrides."""

    contents: Dict[str, Any] = {}
    config_file = _config_path()
    if config_file.exists():
        contents = json.loads(config_file.read_text())
    contents.update(_env_overrides())
    return AppConfig(**contents)


@lru_cache
def get_config() -> AppConfig:
    return load_config()
