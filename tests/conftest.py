import asyncio

import pytest

from stepwise.engine import WorkflowEngine
from stepwise.persistence import InMemoryWorkflowRepository
from stepwise.processors import ProcessorRegistry


class RecordingSleep:
    """Async sleep replacement that records requested delays and returns at once."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        await asyncio.sleep(0)


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def repo() -> InMemoryWorkflowRepository:
    return InMemoryWorkflowRepository()


@pytest.fixture
def registry(sleep) -> ProcessorRegistry:
    return ProcessorRegistry.default(sleep=sleep)


@pytest.fixture
def engine(repo, registry, sleep) -> WorkflowEngine:
    return WorkflowEngine(repo, registry, sleep=sleep)
