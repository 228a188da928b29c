from __future__ import annotations

import json
import os
from dataclasses import dataclass

from dotenv import load_dotenv


@dataclass(frozen=True)
class Settings:
    app_name: str
    environment: str
    log_level: str
    cors_allow_origins: list[str]
    database_url: str
    jwt_secret: str
    jwt_algorithm: str
    access_token_expire_minutes: int

    # "db" reads the control_points table, anything else is a YAML file path.
    control_points_source: str
    audit_trajectory_points: bool

    broadcast_topic: str
    event_webhook_url: str | None

    # 0 disables the idle session reaper.
    idle_session_timeout_minutes: int
    idle_reaper_interval_seconds: int


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def _load_settings() -> Settings:
    load_dotenv()

    cors = os.getenv("CORS_ALLOW_ORIGINS")
    cors_allow_origins = [
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]
    if cors:
        try:
            cors_allow_origins = list(json.loads(cors))
        except ValueError:
            cors_allow_origins = [x.strip() for x in cors.split(",") if x.strip()]

    database_url = os.getenv("DATABASE_URL")
    jwt_secret = os.getenv("JWT_SECRET")
    if not database_url:
        raise RuntimeError("DATABASE_URL env var is required")
    if not jwt_secret:
        raise RuntimeError("JWT_SECRET env var is required")

    return Settings(
        app_name=os.getenv("APP_NAME", "Guard Patrol API"),
        environment=os.getenv("ENVIRONMENT", "dev"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        cors_allow_origins=cors_allow_origins,
        database_url=database_url,
        jwt_secret=jwt_secret,
        jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256"),
        access_token_expire_minutes=int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "60")),
        control_points_source=os.getenv("CONTROL_POINTS_SOURCE", "db").strip() or "db",
        audit_trajectory_points=_env_flag("AUDIT_TRAJECTORY_POINTS", "1"),
        broadcast_topic=os.getenv("BROADCAST_TOPIC", "patrols"),
        event_webhook_url=os.getenv("EVENT_WEBHOOK_URL") or None,
        idle_session_timeout_minutes=int(os.getenv("IDLE_SESSION_TIMEOUT_MINUTES", "0")),
        idle_reaper_interval_seconds=int(os.getenv("IDLE_REAPER_INTERVAL_SECONDS", "60")),
    )


settings = _load_settings()
