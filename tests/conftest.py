from pathlib import Path

import pytest

from position_guard.events import EventBus
from position_guard.storage import Database, TradeRepository


@pytest.fixture(scope="session")
def repo_root() -> Path:
    return Path(__file__).resolve().parents[1]


@pytest.fixture
def store() -> TradeRepository:
    db = Database("sqlite://")
    db.create_all()
    return TradeRepository(db)


@pytest.fixture
def events() -> EventBus:
    return EventBus()


@pytest.fixture
def decision_log_path(tmp_path) -> str:
    return str(tmp_path / "decision_conclusions.txt")
