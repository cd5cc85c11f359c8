"""Environment-driven settings."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]

DEV_JWT_SECRET = "recordbase-dev-secret"


def _load_env_file(path: Path) -> None:
    if not path.exists():
        return
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes")


def _env_list(name: str, default: list[str]) -> list[str]:
    raw = os.getenv(name)
    if raw is None:
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass(frozen=True)
class Settings:
    app_env: str = "dev"
    database_url: str = "sqlite:///database.db"
    jwt_secret: str = DEV_JWT_SECRET
    jwt_algorithm: str = "HS256"
    token_ttl_s: int = 7 * 24 * 3600
    upload_dir: str = "uploads"
    upload_url_prefix: str = "/uploads"
    upload_field: str = "image"
    max_upload_bytes: int = 5 * 1024 * 1024
    schema_dir: str = "schemas"
    extensions: list[str] = field(default_factory=lambda: ["extensions.hello"])
    auth_rate_limit_enabled: bool = True
    auth_rate_limit_max: int = 5
    auth_rate_limit_window_s: float = 15 * 60
    trust_proxy: bool = False
    cors_origins: list[str] = field(default_factory=lambda: ["*"])
    query_slow_ms: float = 200.0
    query_log_all: bool = False
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 1337

    @property
    def is_dev(self) -> bool:
        return self.app_env == "dev"


def load_settings() -> Settings:
    _load_env_file(ROOT / "recordbase" / ".env")
    app_env = os.getenv("APP_ENV", os.getenv("ENV", "dev")).strip().lower() or "dev"
    secret = os.getenv("RECORDBASE_JWT_SECRET", "").strip()
    if not secret:
        if app_env != "dev":
            raise RuntimeError("RECORDBASE_JWT_SECRET is required when APP_ENV is not dev")
        secret = DEV_JWT_SECRET
    return Settings(
        app_env=app_env,
        database_url=os.getenv("DATABASE_URL", "").strip() or "sqlite:///database.db",
        jwt_secret=secret,
        token_ttl_s=int(os.getenv("RECORDBASE_TOKEN_TTL_S", str(7 * 24 * 3600))),
        upload_dir=os.getenv("RECORDBASE_UPLOAD_DIR", "").strip() or "uploads",
        max_upload_bytes=int(os.getenv("RECORDBASE_MAX_UPLOAD_BYTES", str(5 * 1024 * 1024))),
        schema_dir=os.getenv("RECORDBASE_SCHEMA_DIR", "").strip() or "schemas",
        extensions=_env_list("RECORDBASE_EXTENSIONS", ["extensions.hello"]),
        auth_rate_limit_enabled=_env_flag("RECORDBASE_AUTH_RATE_LIMIT", True),
        auth_rate_limit_max=int(os.getenv("RECORDBASE_AUTH_RATE_LIMIT_MAX", "5")),
        auth_rate_limit_window_s=float(os.getenv("RECORDBASE_AUTH_RATE_LIMIT_WINDOW_S", "900")),
        trust_proxy=_env_flag("RECORDBASE_TRUST_PROXY"),
        cors_origins=_env_list("RECORDBASE_CORS_ORIGINS", ["*"]),
        query_slow_ms=float(os.getenv("RECORDBASE_QUERY_SLOW_MS", "200")),
        query_log_all=_env_flag("RECORDBASE_QUERY_LOG"),
        log_level=(os.getenv("RECORDBASE_LOG_LEVEL", "INFO").strip().upper() or "INFO"),
        host=os.getenv("HOST", "0.0.0.0").strip() or "0.0.0.0",
        port=int(os.getenv("PORT", "1337")),
    )
