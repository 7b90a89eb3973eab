from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from . import config, db
from .config_validation import validate_runtime_config
from .errors import ExtractionError
from .logging_utils import _extraction_event
from .session_vault import decrypt_json, encrypt_json
from .utils import ensure_dirs, log_line

_PROBE_PAYLOAD = '{"cookies":[],"origins":[]}'


@dataclass
class HealthResult:
    ok: bool
    checks: dict[str, dict[str, Any]]


def _data_dir_writable() -> bool:
    marker = config.DATA_DIR / ".healthcheck"
    try:
        marker.write_text("ok", encoding="utf-8")
        marker.unlink()
        return True
    except OSError:
        return False


def run_health_checks(entrypoint: str = "cli") -> HealthResult:
    checks: dict[str, dict[str, Any]] = {}

    try:
        validate_runtime_config("health")
        checks["config"] = {"ok": True, "automation_enabled": config.automation_enabled()}
    except ExtractionError as exc:
        checks["config"] = {"ok": False, "error": str(exc)}

    ensure_dirs()
    checks["filesystem"] = {
        "ok": _data_dir_writable(),
        "data_dir": str(config.DATA_DIR),
    }

    try:
        db.initialize_schema()
        conn = db.get_connection()
        conn.execute("SELECT COUNT(*) FROM extraction_runs")
        checks["database"] = {"ok": True}
    except Exception as exc:  # noqa: BLE001
        checks["database"] = {"ok": False, "error": str(exc)}

    try:
        sealed = encrypt_json(_PROBE_PAYLOAD, config.SCE_SESSION_ENCRYPTION_KEY)
        checks["encryption"] = {"ok": decrypt_json(sealed, config.SCE_SESSION_ENCRYPTION_KEY) == _PROBE_PAYLOAD}
    except ExtractionError as exc:
        checks["encryption"] = {"ok": False, "error": str(exc)}

    overall_ok = all(check.get("ok", False) for check in checks.values())

    _extraction_event(
        "state" if overall_ok else "error",
        phase="health",
        context="healthcheck",
        entrypoint=entrypoint,
        ok=overall_ok,
        checks=checks,
    )

    return HealthResult(ok=overall_ok, checks=checks)


def print_health(result: HealthResult) -> None:
    for name, info in result.checks.items():
        status = "OK" if info.get("ok") else "FAIL"
        log_line(f"[HEALTH] {name}: {status} {info}")


if __name__ == "__main__":  # pragma: no cover
    health = run_health_checks(entrypoint="cli")
    print_health(health)
    raise SystemExit(0 if health.ok else 1)
