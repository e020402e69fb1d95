"""Pytest configuration and shared fixtures."""

import itertools
from typing import Any, Dict, List, Optional

import pytest

from protocol_app.config.defaults import TimerParams
from protocol_app.config.event_delivery import get_default_delivery_config
from protocol_app.delivery.display import DisplayStateCache
from protocol_app.delivery.timer import TimerClient, TimerEventDelivery
from protocol_app.engine import ProtocolRunEngine
from protocol_app.persistence import Database, DefinitionStore, RunStore
from protocol_app.state.runtime import EventEmitter


class RecordingTimerClient(TimerClient):
    """Timer client that remembers requests instead of calling a platform."""

    def __init__(self):
        self.created: List[Dict[str, Any]] = []
        self.cancelled: List[str] = []
        self._ids = itertools.count(1)

    def create_timer(self, owner_id: str, request: Dict[str, Any]) -> Optional[str]:
        timer_id = f"timer-{next(self._ids)}"
        self.created.append({"owner_id": owner_id, "timer_id": timer_id, "request": request})
        return timer_id

    def cancel_timer(self, owner_id: str, timer_id: str) -> None:
        self.cancelled.append(timer_id)


@pytest.fixture
def red_light_steps() -> List[Dict[str, Any]]:
    """Red light therapy protocol used throughout the examples."""
    return [
        {"label": "neck", "duration_minutes": 3},
        {"label": "left cheek", "duration_minutes": 3},
        {"label": "right cheek", "duration_minutes": 3},
        {"label": "chest", "duration_minutes": 5},
    ]


@pytest.fixture
def database(tmp_path) -> Database:
    return Database(tmp_path / "protocols.db", timeout=30.0)


@pytest.fixture
def definitions(database) -> DefinitionStore:
    return DefinitionStore(database)


@pytest.fixture
def runs(database, definitions) -> RunStore:
    return RunStore(database, definitions)


@pytest.fixture
def display_messages() -> List[Dict[str, Any]]:
    """Payloads forwarded to the real-time display channel."""
    return []


@pytest.fixture
def timer_client() -> RecordingTimerClient:
    return RecordingTimerClient()


@pytest.fixture
def emitter(display_messages, timer_client) -> EventEmitter:
    return EventEmitter(
        get_default_delivery_config(),
        display_cache=DisplayStateCache(),
        display_publisher=display_messages.append,
        extra_handlers=[TimerEventDelivery("timer", TimerParams(), timer_client)],
    )


@pytest.fixture
def engine(definitions, runs, emitter) -> ProtocolRunEngine:
    return ProtocolRunEngine(definitions, runs, emitter)


@pytest.fixture
def red_light(engine, red_light_steps):
    """The red light protocol saved for owner kelly."""
    return engine.create_protocol("kelly", "red light", red_light_steps, tags=["therapy"])
