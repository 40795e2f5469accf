import asyncio
from typing import Callable, List, Optional

import pytest

from genworker.circuit import CircuitBreakerRegistry
from genworker.config import Settings
from genworker.engine import ExecutionEngine
from genworker.models import JobStatus, ToolType
from genworker.providers.base import (
    GenerationParams,
    GenerationResult,
    MediaProvider,
    PollResult,
    ProviderCapabilities,
)
from genworker.providers.registry import AdapterResolver
from genworker.results import LocalResultStorage
from genworker.storage import JobStore

WORKER_ID = "w-test"


@pytest.fixture
def anyio_backend():
    return "asyncio"


class RefundRecorder:
    def __init__(self):
        self.calls = []

    def __call__(self, workspace_id: str, amount: int, job_id: str) -> None:
        self.calls.append((workspace_id, amount, job_id))


class SleepRecorder:
    """Stands in for asyncio.sleep; remembers the delays and only yields to the loop."""

    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        await asyncio.sleep(0)


class ScriptedAdapter(MediaProvider):
    """Sync adapter returning (or raising) queued results in order."""

    tool_type = ToolType.SCRIPT

    def __init__(self, name: str, results=()):
        self.name = name
        self.results = list(results)
        self.calls: List[GenerationParams] = []
        self.gate: Optional[asyncio.Event] = None

    async def generate(self, params: GenerationParams) -> GenerationResult:
        self.calls.append(params)
        if self.gate is not None:
            await self.gate.wait()
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


class PollingAdapter(ScriptedAdapter):
    tool_type = ToolType.VIDEO

    def __init__(self, name: str, results=(), polls=(), on_poll: Optional[Callable[[], None]] = None):
        super().__init__(name, results)
        self.polls = list(polls)
        self.on_poll = on_poll
        self.poll_calls = 0

    async def poll_status(self, external_job_id: str) -> PollResult:
        self.poll_calls += 1
        if self.on_poll is not None:
            self.on_poll()
        if self.polls:
            return self.polls.pop(0)
        return PollResult(status="processing")


class WebhookAdapter(ScriptedAdapter):
    tool_type = ToolType.VIDEO
    capabilities = ProviderCapabilities(webhooks=True)


def ok_text(text: str, cost: int = 1) -> GenerationResult:
    return GenerationResult(success=True, metadata={"text": text}, cost_cents=cost)


@pytest.fixture
def refunds():
    return RefundRecorder()


@pytest.fixture
def store(tmp_path, refunds):
    s = JobStore(tmp_path / "jobs.db", refund=refunds)
    yield s
    s.close()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        home=tmp_path,
        db_path=tmp_path / "jobs.db",
        tool_type=None,
        poll_interval=0.01,
        max_concurrent=5,
        reap_every=1,
        drain_timeout=1.0,
        heartbeat_file=None,
        providers=[],
        heartbeat_interval=0.05,
        lease_ttl=60,
        async_poll_interval=0.01,
        async_poll_timeout=2.0,
        backoff_base_ms=1000,
        backoff_max_ms=30000,
        storage="local",
        public_base_url="",
    )


@pytest.fixture
def sleeps():
    return SleepRecorder()


@pytest.fixture
def make_engine(store, settings, sleeps):
    def _make(*adapters, circuits=None, fetch=None, storage=None):
        async def fake_fetch(url: str) -> bytes:
            return b"result-bytes"

        return ExecutionEngine(
            store,
            AdapterResolver(adapters),
            circuits or CircuitBreakerRegistry(),
            storage or LocalResultStorage(settings.results_dir),
            settings,
            WORKER_ID,
            sleep=sleeps,
            fetch=fetch or fake_fetch,
        )

    return _make


def claim_one(store: JobStore, status: JobStatus = JobStatus.QUEUED):
    jobs = store.claim(WORKER_ID, [status], 1)
    assert len(jobs) == 1
    return jobs[0]
