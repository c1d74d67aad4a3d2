"""Startup-time helpers for safe config logging."""

import os

from giftflow.common.logging import logger

SECRET_MARKERS = ("KEY", "SECRET", "PASSWORD", "TOKEN")


def _safe_env(name: str) -> str:
    """Return env value with redaction for secret-like names and DSN credentials."""

    value = os.getenv(name)
    if value is None:
        return "<unset>"
    if any(marker in name for marker in SECRET_MARKERS):
        return "<redacted>"
    if "://" in value and "@" in value:
        scheme, rest = value.split("://", 1)
        return f"{scheme}://<redacted>@{rest.rsplit('@', 1)[1]}"
    return value


def log_startup_config(service_name: str, keys: list[str]) -> None:
    """Log selected startup config keys for quick troubleshooting."""

    config = {"service": service_name}
    for key in keys:
        config[key] = _safe_env(key)
    logger.info("startup_config=%s", config)
