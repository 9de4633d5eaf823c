"""Shared pytest fixtures."""

from __future__ import annotations

from collections.abc import Callable

import pytest

from trackedits.config import Settings
from trackedits.session import EditSession


class FakeClock:
    """Monotonic clock in seconds, advanced by hand or by fake_sleep."""

    def __init__(self, start: float = 100.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance_ms(self, ms: float) -> None:
        self.now += ms / 1000.0

    async def sleep(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def make_settings() -> Callable[..., Settings]:
    """Settings isolated from the environment and any .env file."""

    def _make(**overrides) -> Settings:
        return Settings(_env_file=None, **overrides)

    return _make


@pytest.fixture
def settings(make_settings) -> Settings:
    return make_settings()


@pytest.fixture
def session(settings) -> EditSession:
    return EditSession(settings=settings)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
