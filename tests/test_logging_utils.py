from enroll_sync.extraction import logging_utils


def _capture(monkeypatch) -> list[str]:
    lines: list[str] = []
    monkeypatch.setattr(logging_utils, "log_line", lambda msg: lines.append(msg))
    return lines


def test_extraction_event_tag_and_phase(monkeypatch):
    lines = _capture(monkeypatch)

    logging_utils._extraction_event("selector", phase="fill", field="Zip Code")

    assert lines == ["[EXTRACTION][SELECTOR] field='Zip Code', phase='fill'"]


def test_extraction_event_accepts_label_and_event_named_fields(monkeypatch):
    lines = _capture(monkeypatch)

    logging_utils._extraction_event("nav", step="goto", label="customer_search", url="https://x")
    logging_utils._extraction_event(phase="resolve", label="Zip Code")

    assert lines[0] == "[EXTRACTION][NAV] label='customer_search', step='goto', url='https://x'"
    assert lines[1] == "[EXTRACTION][RESOLVE] label='Zip Code'"


def test_extraction_event_swallows_broken_reprs(monkeypatch):
    lines = _capture(monkeypatch)

    class _Unprintable:
        def __repr__(self) -> str:
            raise RuntimeError("boom")

    logging_utils._extraction_event("item", value=_Unprintable())

    assert lines == []
