# enclave/config.py

import os
import logging
import secrets
from typing import Any, Dict, Optional

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger("enclave.config")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r, using %s", name, raw, default)
        return default


def _secret(name: str) -> str:
    value = os.environ.get(name)
    if value:
        return value
    # tokens signed with a per-process secret do not survive a restart
    logger.warning("%s not set; generated a random one for this process", name)
    return secrets.token_urlsafe(48)


def load_config(overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Build the application config from the environment (and .env)."""
    cfg: Dict[str, Any] = {
        "ENV": os.environ.get("ENV") or os.environ.get("FLASK_ENV", "production"),
        "LOG_LEVEL": os.environ.get("LOG_LEVEL", "INFO").upper(),
        "SECRET_KEY": os.environ.get("SECRET_KEY") or secrets.token_hex(24),
        "API_PREFIX": os.environ.get("API_PREFIX", "/api"),

        # tokens
        "JWT_SECRET": _secret("JWT_SECRET"),
        "JWT_REFRESH_SECRET": _secret("JWT_REFRESH_SECRET"),
        "JWT_ALGORITHM": os.environ.get("JWT_ALGORITHM", "HS256"),
        "JWT_ISSUER": os.environ.get("JWT_ISSUER", "phoenix-industries"),
        "JWT_AUDIENCE": os.environ.get("JWT_AUDIENCE", "phoenix-terminal"),
        "JWT_ACCESS_EXPIRES_MINUTES": _env_int("JWT_ACCESS_EXPIRES_MINUTES", 15),
        "JWT_REFRESH_EXPIRES_DAYS": _env_int("JWT_REFRESH_EXPIRES_DAYS", 7),
        "BCRYPT_ROUNDS": _env_int("BCRYPT_ROUNDS", 12),

        # storage
        "DATABASE_URL": None,  # resolved by enclave.db.get_database_url()
        "DATABASE_ECHO": _env_bool("DATABASE_ECHO", False),
        "SEED_ON_STARTUP": _env_bool("SEED_ON_STARTUP", False),

        # http surface
        "FRONTEND_ORIGIN": os.environ.get("FRONTEND_ORIGIN", "http://localhost:8000"),
        "TRUST_PROXY": _env_bool("TRUST_PROXY", False),
        "MAX_CONTENT_LENGTH": _env_int("MAX_CONTENT_LENGTH", 2 * 1024 * 1024),

        # rate limiting / blocking
        "RATELIMIT_ENABLED": _env_bool("RATELIMIT_ENABLED", True),
        "RATELIMIT_STORAGE_URI": os.environ.get("RATELIMIT_STORAGE_URI", "memory://"),
        "RATE_LIMIT": os.environ.get("RATE_LIMIT", "100 per 15 minutes"),
        "AUTH_RATE_LIMIT": os.environ.get("AUTH_RATE_LIMIT", "10 per 15 minutes"),
        "BLOCK_TTL": _env_int("BLOCK_TTL", 3600),
        "BLOCKLIST_SWEEP_SECONDS": _env_int("BLOCKLIST_SWEEP_SECONDS", 60),

        # terminal
        "TERMINAL_HISTORY_LIMIT": _env_int("TERMINAL_HISTORY_LIMIT", 100),
        "TERMINAL_IDLE_TIMEOUT_MINUTES": _env_int("TERMINAL_IDLE_TIMEOUT_MINUTES", 60),

        # outbound alerts
        "SECURITY_WEBHOOK_URL": os.environ.get("SECURITY_WEBHOOK_URL") or None,
        "WEBHOOK_TIMEOUT": float(os.environ.get("WEBHOOK_TIMEOUT", 5.0)),
    }
    if os.environ.get("DATABASE_URL"):
        cfg["DATABASE_URL"] = os.environ["DATABASE_URL"]
    if overrides:
        cfg.update(overrides)
    return cfg


def is_development(cfg: Dict[str, Any]) -> bool:
    return str(cfg.get("ENV", "")).lower() == "development"
