from __future__ import annotations

import os

import pytest


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch) -> None:
    for name in list(os.environ):
        if name.startswith("PROJECTS_UX_"):
            monkeypatch.delenv(name, raising=False)
