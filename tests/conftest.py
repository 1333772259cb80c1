"""Pytest configuration and shared fixtures."""

import asyncio
from collections.abc import Awaitable, Callable

import pytest


@pytest.fixture(scope="module")
def anyio_backend():
    """Configure anyio to use asyncio backend."""
    return "asyncio"


class RecordingObserver:
    """Connection observer that records callbacks in order."""

    def __init__(self) -> None:
        self.events: list[str] = []
        self.errors: list[Exception] = []

    def on_connect(self) -> None:
        self.events.append("connect")

    def on_error(self, error: Exception) -> None:
        self.events.append("error")
        self.errors.append(error)

    def on_disconnect(self) -> None:
        self.events.append("disconnect")


@pytest.fixture
def observer() -> RecordingObserver:
    return RecordingObserver()


async def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(0.001)


@pytest.fixture
def wait_until() -> Callable[..., Awaitable[None]]:
    """Poll a predicate on the event loop until it holds."""
    return _wait_until
