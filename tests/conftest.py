# tests/conftest.py
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import List, Optional

import pytest
from httpx import AsyncClient, ASGITransport
from asgi_lifespan import LifespanManager

from executors.base import OutcomeRecord, TaskRunner, TaskSpec
from utils.watchdog_config import WatchdogConfig


class RecordingRunner(TaskRunner):
    """Двойник исполнителя: ничего не запускает, считает вызовы."""

    name = "recording"

    def __init__(self, output: str = "done\n", failure: Optional[str] = None, delay: float = 0.0):
        self.output = output
        self.failure = failure
        self.delay = delay
        self.calls: List[str] = []

    async def run(self, task: TaskSpec) -> OutcomeRecord:
        self.calls.append(task.command_line)
        if self.delay:
            await asyncio.sleep(self.delay)
        return OutcomeRecord(output=self.output, failure=self.failure, command=task.command_line)


@pytest.fixture
def runner() -> RecordingRunner:
    return RecordingRunner()


@pytest.fixture
def make_config():
    def _make(**overrides) -> WatchdogConfig:
        params = {"task": "echo hello", "duration": 60.0}
        params.update(overrides)
        return WatchdogConfig(**params).validate()

    return _make


@asynccontextmanager
async def _running_app(config: WatchdogConfig, **kwargs):
    """
    Приложение с прогнанным lifespan (startup/shutdown) и httpx-клиентом поверх ASGI.
    https://github.com/florimondmanca/asgi-lifespan
    """
    from src.main import create_app  # импорт здесь, чтобы не тащить app в глобал

    app = create_app(config, **kwargs)
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            yield app, ac


@pytest.fixture
def running_app():
    return _running_app


async def wait_for(predicate, timeout: float = 2.0, interval: float = 0.01) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)
