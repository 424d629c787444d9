"""Shared test fixtures for the dialog_migrator test suite."""

from __future__ import annotations

import logging

import pytest

from dialog_migrator.constants import LOGGER_NAME


class FakeClock:
    """Monotonic clock whose ``sleep`` advances time instead of waiting."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture()
def clock():
    """Return a fresh FakeClock."""
    return FakeClock()


@pytest.fixture(autouse=True)
def _quiet_logger():
    """Keep the dialog_migrator logger free of handlers left by other tests."""
    logger = logging.getLogger(LOGGER_NAME)
    saved = logger.handlers[:]
    yield
    for handler in logger.handlers[:]:
        if handler not in saved:
            logger.removeHandler(handler)
            handler.close()
