"""
Global pytest configuration and fixtures for subathon timer tests

Provides:
- Fake monotonic and wall clocks
- Controllable sleeps for the ticker
- A recording broadcast transport
- Engine factory wired to the fakes
"""

import asyncio
import pytest
from typing import Any, Dict, List

from lib.timer import TimerEngine


# ============================================================================
# Pytest Configuration
# ============================================================================

def pytest_configure(config):
    """Configure pytest with custom settings"""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "plugin: Plugin tests")
    config.addinivalue_line("markers", "core: Core infrastructure tests")


# ============================================================================
# Time Fakes
# ============================================================================

class FakeClock:
    """Manually advanced clock, callable like time.monotonic"""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    """Fake monotonic clock"""
    return FakeClock()


@pytest.fixture
def wall_clock():
    """Fake epoch clock (seconds)"""
    return FakeClock(start=1_700_000_000.0)


async def never_sleep(delay: float) -> None:
    """Sleep that only ends by cancellation, so ticks are driven by hand"""
    await asyncio.Event().wait()


@pytest.fixture
def instant_sleep(clock):
    """Sleep that advances the fake clock and yields once to the loop"""
    async def _sleep(delay: float) -> None:
        clock.advance(delay)
        await asyncio.sleep(0)
    return _sleep


# ============================================================================
# Broadcast Recording
# ============================================================================

class BroadcastRecorder:
    """Synchronous transport that keeps every message it is given"""

    def __init__(self):
        self.messages: List[Dict[str, Any]] = []

    def __call__(self, message: Dict[str, Any]) -> None:
        self.messages.append(message)

    def types(self) -> List[str]:
        return [m["type"] for m in self.messages]

    def of_type(self, message_type: str) -> List[Dict[str, Any]]:
        return [m for m in self.messages if m["type"] == message_type]

    def last(self) -> Dict[str, Any]:
        return self.messages[-1]

    def clear(self) -> None:
        self.messages.clear()


@pytest.fixture
def recorder():
    """Recording broadcast transport"""
    return BroadcastRecorder()


@pytest.fixture
def make_engine(clock, wall_clock, recorder):
    """
    Factory for engines on fake time.

    Ticks never fire on their own; tests advance the clock and call
    engine._on_tick() to simulate one.
    """
    def _make(**kwargs) -> TimerEngine:
        kwargs.setdefault("broadcast", recorder)
        kwargs.setdefault("clock", clock)
        kwargs.setdefault("wall_clock", wall_clock)
        kwargs.setdefault("sleep", never_sleep)
        return TimerEngine(**kwargs)
    return _make
