from __future__ import annotations

from pathlib import Path
from typing import Iterator, List

import pytest

from autograder.config import Settings, get_settings
from autograder.db.base import Base
from autograder.db.session import configure_engine, dispose_engine
from autograder.telemetry import TelemetryEvent, clear_listeners, register_listener


@pytest.fixture
def grading_settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[Settings]:
    db_path = tmp_path / "grading.db"
    monkeypatch.setenv("AUTOGRADER_DATABASE_URL", f"sqlite:///{db_path}")
    monkeypatch.delenv("AUTOGRADER_GATEWAY_KEY", raising=False)
    monkeypatch.delenv("AUTOGRADER_ENABLED", raising=False)
    get_settings.cache_clear()
    dispose_engine()
    settings = get_settings()
    engine = configure_engine(settings)
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)
    yield settings
    clear_listeners()
    dispose_engine()
    get_settings.cache_clear()


@pytest.fixture
def captured_events() -> Iterator[List[TelemetryEvent]]:
    events: List[TelemetryEvent] = []
    register_listener(events.append)
    yield events
    clear_listeners()
