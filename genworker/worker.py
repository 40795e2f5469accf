# genworker/worker.py
import asyncio
import logging
import os
import signal
import time
import uuid
from multiprocessing import Process
from pathlib import Path
from typing import List, Optional, Set

from .batches import update_batch_statuses
from .circuit import CircuitBreakerRegistry
from .config import Settings, get_settings
from .engine import ExecutionEngine
from .logs import setup_logging
from .models import Job, JobStatus
from .providers.registry import AdapterResolver
from .reaper import reap_stale_jobs
from .results import build_storage, describe
from .storage import JobStore

log = logging.getLogger(__name__)


def new_worker_id() -> str:
    return f"w-{uuid.uuid4().hex[:8]}"


class Worker:
    """
    One worker process:
      - claims preview work first, then final work, up to max_concurrent in flight
      - hands each job to the execution engine as its own task
      - every reap_every cycles runs the stale-lease reaper and batch aggregator
      - stops claiming on SIGINT/SIGTERM or the shared 'shutdown' flag, then drains
    """

    def __init__(
        self,
        store: JobStore,
        settings: Settings,
        resolver: Optional[AdapterResolver] = None,
        circuits: Optional[CircuitBreakerRegistry] = None,
        storage=None,
        worker_id: Optional[str] = None,
        engine: Optional[ExecutionEngine] = None,
    ):
        self.store = store
        self.settings = settings
        self.worker_id = worker_id or new_worker_id()
        self.resolver = resolver or AdapterResolver()
        self.engine = engine or ExecutionEngine(
            store,
            self.resolver,
            circuits or CircuitBreakerRegistry(settings.circuit_threshold, settings.circuit_reset),
            storage or build_storage(settings),
            settings,
            self.worker_id,
        )
        self.tasks: Set[asyncio.Task] = set()
        self.cycles = 0
        self._stop = asyncio.Event()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def request_stop(self) -> None:
        if not self._stop.is_set():
            log.info("Stop requested, no new jobs will be claimed")
        self._stop.set()

    def should_stop(self) -> bool:
        return self._stop.is_set() or self.store.config_get("shutdown", "false") == "true"

    async def run(self, install_signals: bool = True) -> None:
        self.resolver.validate(self.settings.providers)
        self.store.register_worker(self.worker_id, os.getpid())
        log.info(
            "Worker started: providers=%s tool_type=%s max_concurrent=%s results=%s",
            ",".join(self.resolver.keys()),
            self.settings.tool_type or "any",
            self.settings.max_concurrent,
            describe(self.engine.storage),
        )
        if install_signals:
            self._install_signal_handlers()
        try:
            while not self.should_stop():
                try:
                    await self.run_once()
                except Exception:
                    log.exception("Poll cycle error")
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=self.settings.poll_interval)
                except asyncio.TimeoutError:
                    pass
            await self.drain()
        finally:
            if install_signals:
                self._remove_signal_handlers()
            self.store.stop_worker_record(self.worker_id)
            log.info("Worker stopped")

    async def drain(self) -> None:
        if not self.tasks:
            return
        log.info("Draining %s in-flight job(s), up to %ss", len(self.tasks), self.settings.drain_timeout)
        _, pending = await asyncio.wait(set(self.tasks), timeout=self.settings.drain_timeout)
        if pending:
            log.warning("Abandoning %s job(s) to the stale-lease reaper", len(pending))
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self.request_stop)

    def _remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def run_once(self) -> List[Job]:
        jobs = self.claim_batch()
        for job in jobs:
            self.dispatch(job)
        self.cycles += 1
        self.write_heartbeat_file()
        if self.cycles % max(1, self.settings.reap_every) == 0:
            self.housekeeping()
        return jobs

    def claim_batch(self) -> List[Job]:
        free = self.settings.max_concurrent - len(self.tasks)
        if free <= 0:
            return []
        tool_type = self.settings.tool_type
        jobs = self.store.claim(self.worker_id, [JobStatus.QUEUED], free, tool_type)
        if len(jobs) < free:
            jobs += self.store.claim(self.worker_id, [JobStatus.QUEUED_FINAL], free - len(jobs), tool_type)
        return jobs

    def dispatch(self, job: Job) -> asyncio.Task:
        log.info("Claimed %s (%s %s via %s)", job.id, job.quality.value, job.type.value, job.provider)
        task = asyncio.create_task(self.engine.process(job), name=f"job-{job.id}")
        self.tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self.tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error("%s crashed", task.get_name(), exc_info=exc)

    def housekeeping(self) -> None:
        reap_stale_jobs(self.store, self.engine.in_flight, self.settings)
        update_batch_statuses(self.store, self.settings.batch_limit)

    def write_heartbeat_file(self) -> None:
        if not self.settings.heartbeat_file:
            return
        try:
            Path(self.settings.heartbeat_file).write_text(str(int(time.time())))
        except OSError as e:
            log.warning("Could not write heartbeat file %s: %s", self.settings.heartbeat_file, e)


def worker_loop(worker_id: str, settings: Optional[Settings] = None):
    """Process entry point: one event loop, one Worker, always deregistered on exit."""
    settings = settings or get_settings()
    setup_logging(settings.log_level, worker_id)
    store = JobStore(settings.database)
    try:
        asyncio.run(Worker(store, settings, worker_id=worker_id).run())
    except KeyboardInterrupt:
        # quiet exit on Ctrl+C
        pass
    finally:
        store.close()


def start_workers(count: int, settings: Optional[Settings] = None):
    """
    Spawn N worker processes and join them. If Ctrl+C reaches the parent,
    set shutdown=true so every child drains and exits.
    """
    settings = settings or get_settings()
    procs = []
    for _ in range(count):
        p = Process(target=worker_loop, args=(new_worker_id(), settings), daemon=False)
        p.start()
        procs.append(p)

    try:
        for p in procs:
            p.join()
    except KeyboardInterrupt:
        JobStore(settings.database).config_set("shutdown", "true")
        for p in procs:
            p.join()
