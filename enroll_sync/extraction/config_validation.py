from __future__ import annotations

from typing import Literal

from . import config
from .errors import ConfigurationError
from .logging_utils import _extraction_event
from .utils import log_line

Entrypoint = Literal["cli", "worker", "service", "health", "tests"]


def _raise_config_error(message: str, *, entrypoint: Entrypoint, error: str) -> None:
    _extraction_event(
        "error",
        phase="config",
        context="runtime_validation",
        error=error,
        entrypoint=entrypoint,
    )
    log_line(f"[CONFIG] {message} (entrypoint={entrypoint})")
    raise ConfigurationError(message)


def _clamp(field: str, value: int, adjusted: int, *, entrypoint: Entrypoint) -> None:
    _extraction_event(
        "state",
        phase="config",
        context="runtime_validation",
        kind="config_adjustment",
        field=field,
        value=value,
        adjusted=adjusted,
        entrypoint=entrypoint,
    )
    log_line(f"[CONFIG] {field}={value} is out of range; clamping to {adjusted}.")
    setattr(config, field, adjusted)


def validate_runtime_config(entrypoint: Entrypoint, *, require_key: bool = True) -> None:
    """Validate runtime configuration for the given entrypoint.

    Raises ``ConfigurationError`` when a blocking misconfiguration is detected.
    Out-of-range retry knobs are clamped and logged but do not raise.
    """

    if require_key and not config.SCE_SESSION_ENCRYPTION_KEY.strip():
        _raise_config_error(
            "SCE_SESSION_ENCRYPTION_KEY is required for cloud extraction sessions.",
            entrypoint=entrypoint,
            error="missing_encryption_key",
        )

    if not config.SCE_BASE_URL.lower().startswith(("http://", "https://")):
        _raise_config_error(
            f"SCE_BASE_URL must be an http(s) URL, got {config.SCE_BASE_URL!r}.",
            entrypoint=entrypoint,
            error="invalid_base_url",
        )

    if config.SCE_AUTOMATION_TIMEOUT_MS <= 0:
        _raise_config_error(
            "SCE_AUTOMATION_TIMEOUT_MS must be positive.",
            entrypoint=entrypoint,
            error="invalid_automation_timeout",
        )

    for field in ("FILL_MAX_ATTEMPTS", "SSO_BRIDGE_MAX_ATTEMPTS", "NAVIGATION_MAX_ATTEMPTS"):
        value = getattr(config, field)
        if value < 1:
            _clamp(field, value, 1, entrypoint=entrypoint)

    if config.FILL_RETRY_BASE_DELAY_SECONDS < 0:
        _clamp(
            "FILL_RETRY_BASE_DELAY_SECONDS",
            config.FILL_RETRY_BASE_DELAY_SECONDS,
            0,
            entrypoint=entrypoint,
        )


__all__ = ["Entrypoint", "validate_runtime_config"]
