# dashcore/config.py
"""Runtime settings read from the environment."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from dashcore.errors import ValidationError


@dataclass(frozen=True)
class Settings:
    store_backend: str = "memory"
    table_name: str = "dashboard"
    storage_connection_string: Optional[str] = None
    servicebus_connection_string: Optional[str] = None
    servicebus_queue_name: str = "store-changes"
    jwt_secret: str = "change-me"
    jwt_alg: str = "HS256"
    scopes: Tuple[str, ...] = ("electronics", "furniture")
    admin_role: str = "admin"
    lookahead_days: int = 7
    complaint_lookahead_days: int = 0
    refresh_seconds: float = 30.0
    generation_interval_seconds: float = 0.0
    generation_targets: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)
    timezone: str = "UTC"
    log_level: str = "INFO"
    cors_origins: Tuple[str, ...] = ("*",)

    @property
    def relay_enabled(self) -> bool:
        return bool(self.servicebus_connection_string)


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an integer, got '{raw}'")


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValidationError(f"{name} must be a number, got '{raw}'")


def _targets(raw: str) -> Tuple[Tuple[str, str], ...]:
    """Parse 'electronics:uid1,furniture:uid2' into pairs."""
    pairs = []
    for chunk in raw.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        scope, sep, user_id = chunk.partition(":")
        if not sep or not scope or not user_id:
            raise ValidationError(f"GENERATION_TARGETS entry '{chunk}' is not scope:userId")
        pairs.append((scope.strip(), user_id.strip()))
    return tuple(pairs)


def load_settings() -> Settings:
    """Load settings from environment variables with sane defaults."""
    backend = os.getenv("STORE_BACKEND", "memory").strip().lower()
    if backend not in ("memory", "table"):
        raise ValidationError(f"STORE_BACKEND must be 'memory' or 'table', got '{backend}'")

    scopes = tuple(
        s.strip() for s in os.getenv("SCOPES", "electronics,furniture").split(",") if s.strip()
    )
    if not scopes:
        raise ValidationError("SCOPES must name at least one business vertical")

    return Settings(
        store_backend=backend,
        table_name=os.getenv("TABLE_NAME", "dashboard"),
        storage_connection_string=os.getenv("AZURE_STORAGE_CONNECTION_STRING"),
        servicebus_connection_string=os.getenv("AZURE_SERVICE_BUS_CONNECTION_STRING"),
        servicebus_queue_name=os.getenv("AZURE_SERVICE_BUS_QUEUE_NAME", "store-changes"),
        jwt_secret=os.getenv("JWT_SECRET", "change-me"),
        jwt_alg=os.getenv("JWT_ALG", "HS256"),
        scopes=scopes,
        admin_role=os.getenv("ADMIN_ROLE", "admin"),
        lookahead_days=_int_env("NOTIFICATION_LOOKAHEAD_DAYS", 7),
        complaint_lookahead_days=_int_env("COMPLAINT_LOOKAHEAD_DAYS", 0),
        refresh_seconds=_float_env("NOTIFICATION_REFRESH_SECONDS", 30.0),
        generation_interval_seconds=_float_env("GENERATION_INTERVAL_SECONDS", 0.0),
        generation_targets=_targets(os.getenv("GENERATION_TARGETS", "")),
        timezone=os.getenv("TIMEZONE", "UTC"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        cors_origins=tuple(o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()) or ("*",),
    )


def lookahead_policy(settings: Settings) -> Dict[str, int]:
    return {
        "installment": settings.lookahead_days,
        "delivery": settings.lookahead_days,
        "complaint": settings.complaint_lookahead_days,
    }
