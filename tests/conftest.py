from __future__ import annotations

from pathlib import Path

import pytest

from tests.test_db_extraction import _configure_temp_paths


@pytest.fixture(autouse=True)
def _isolated_data_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep logs, exports and the database of every test under ``tmp_path``."""

    _configure_temp_paths(tmp_path, monkeypatch)
