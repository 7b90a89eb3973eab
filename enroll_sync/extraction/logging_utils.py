from __future__ import annotations

from typing import Any

from .utils import log_line


def _extraction_event(event: str = "", *, phase: str | None = None, **fields: Any) -> None:
    """Log one ``[EXTRACTION][EVENT] key='value', ...`` line.

    ``event`` names the subsystem (``nav``, ``login``, ``selector``...). Callers
    that only pass ``phase`` get it as the tag instead; with both, ``phase``
    moves into the sorted key/value payload. Field names are free-form, so
    ``label`` or ``url`` can be logged like any other field.
    """

    tag = (event or phase or "").upper()
    if event and phase:
        fields.setdefault("phase", phase)
    try:
        payload = ", ".join(f"{key}={value!r}" for key, value in sorted(fields.items()))
        log_line(f"[EXTRACTION][{tag}] {payload}")
    except Exception:  # noqa: BLE001
        # A broken repr or log handler must not fail the item being extracted.
        return


__all__ = ["_extraction_event"]
