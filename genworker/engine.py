import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Tuple

import httpx

from .circuit import CircuitBreakerRegistry
from .config import Settings
from .models import READY_FOR, REQUEUE_FOR, RUNNING_FOR, Job, JobStatus, Quality
from .providers.base import GenerationParams, GenerationResult, MediaProvider, PollResult, ProviderError
from .providers.registry import AdapterResolver
from .results import ResultStorageError, fetch_bytes
from .storage import JobStore

log = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]
Fetch = Callable[[str], Awaitable[bytes]]


def running_status(quality: Quality) -> JobStatus:
    return RUNNING_FOR[REQUEUE_FOR[Quality(quality)]]


class ExecutionEngine:
    """Drives one claimed job through its adapter until it is ready, requeued, failed or released.

    Every store write is conditional on the job still being running under this worker's lease, so a
    webhook, a cancel, the reaper or a worker that re-claimed the job turns our write into a no-op.
    """

    def __init__(
        self,
        store: JobStore,
        resolver: AdapterResolver,
        circuits: CircuitBreakerRegistry,
        storage,
        settings: Settings,
        worker_id: str,
        sleep: Sleep = asyncio.sleep,
        fetch: Fetch = fetch_bytes,
    ):
        self.store = store
        self.resolver = resolver
        self.circuits = circuits
        self.storage = storage
        self.settings = settings
        self.worker_id = worker_id
        self.sleep = sleep
        self.fetch = fetch
        self.in_flight: Set[str] = set()

    async def process(self, job: Job) -> None:
        self.in_flight.add(job.id)
        renewal: Optional[asyncio.Task] = None
        try:
            if not self.circuits.allow(job.provider):
                if self.store.release(job.id, self.worker_id):
                    log.info("Circuit open for %s, released %s", job.provider, job.id)
                return

            adapter = self.resolver.resolve(job.provider)
            if adapter is None:
                self._fail(job, f"No adapter found for provider: {job.provider}")
                return

            renewal = asyncio.create_task(self._renew_lease(job.id))
            params = GenerationParams.from_job(job, job.quality)
            if self.is_async(job, adapter):
                await self._run_async(job, adapter, params)
            else:
                await self._run_sync(job, adapter, params)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.exception("Unhandled error processing %s", job.id)
            await self._handle_failure(job, ProviderError(code="WORKER_ERROR", message=str(e) or type(e).__name__, retryable=True))
        finally:
            if renewal is not None:
                renewal.cancel()
            self.in_flight.discard(job.id)

    @staticmethod
    def is_async(job: Job, adapter: MediaProvider) -> bool:
        return (adapter.can_poll or adapter.capabilities.webhooks) and job.is_video_class

    async def _renew_lease(self, job_id: str) -> None:
        while True:
            await asyncio.sleep(self.settings.heartbeat_interval)
            if not self.store.heartbeat(job_id, self.worker_id):
                log.debug("Heartbeat for %s found no lease", job_id)

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    async def _run_sync(self, job: Job, adapter: MediaProvider, params: GenerationParams) -> None:
        result = await adapter.generate(params)
        if not result.success:
            await self._handle_failure(job, result.error or _unknown_failure(), backoff=True)
            return
        self.circuits.record_success(job.provider)
        await self._finish(job, result)

    async def _run_async(self, job: Job, adapter: MediaProvider, params: GenerationParams) -> None:
        external_job_id = job.external_job_id
        if external_job_id:
            log.info("Resuming %s at %s job %s", job.id, adapter.name, external_job_id)
        else:
            result = await adapter.generate(params)
            if not result.success:
                await self._handle_failure(job, result.error or _unknown_failure())
                return
            self.circuits.record_success(job.provider)
            if not result.external_job_id:
                # vendor answered inline after all
                await self._finish(job, result)
                return
            external_job_id = result.external_job_id
            saved = self.store.set_external_job_id(job.id, external_job_id, result.cost_cents, worker_id=self.worker_id)
            if not saved:
                log.info("Job %s left %s before its vendor id was saved", job.id, running_status(job.quality).value)
                return
            self.store.set_progress(job.id, 10, worker_id=self.worker_id)
            log.info("Submitted %s to %s as %s", job.id, adapter.name, external_job_id)

        if not adapter.can_poll:
            self.store.release_lease(job.id, self.worker_id)
            log.info("Released %s, waiting on webhook for %s", job.id, external_job_id)
            return
        await self._poll_until_done(job, adapter, external_job_id)

    async def _poll_until_done(self, job: Job, adapter: MediaProvider, external_job_id: str) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.async_poll_timeout
        running = running_status(job.quality)

        while loop.time() < deadline:
            await self.sleep(self.settings.async_poll_interval)
            renewed = self.store.heartbeat(job.id, self.worker_id)

            status = self.store.get_status(job.id)
            if not renewed or status != running:
                log.info("Lost lease on %s (now %s), stopped polling", job.id, status.value if status else "gone")
                return

            try:
                poll = await adapter.poll_status(external_job_id)
            except Exception:
                log.warning("Poll of %s for %s raised, will retry", external_job_id, job.id, exc_info=True)
                continue

            if poll.progress is not None:
                self.store.set_progress(job.id, poll.progress, worker_id=self.worker_id)
            if poll.status == "completed":
                try:
                    result = await self._collect(job, adapter, external_job_id, poll)
                except ResultStorageError as e:
                    await self._handle_failure(
                        job, ProviderError(code="STORAGE_ERROR", message=str(e), retryable=e.retryable), count_circuit=False
                    )
                    return
                await self._finish(job, result)
                return
            if poll.status == "failed":
                # the vendor job is dead; the retry submits a new one
                await self._handle_failure(
                    job,
                    ProviderError(code="POLL_FAILED", message=poll.error or "Provider poll returned failed", retryable=True),
                    clear_external=True,
                )
                return

        await self._handle_failure(
            job, ProviderError(code="POLL_TIMEOUT", message="timed out waiting for completion", retryable=True)
        )

    async def _collect(self, job: Job, adapter: MediaProvider, external_job_id: str, poll: PollResult) -> GenerationResult:
        data = None
        if adapter.can_download:
            # poll URLs of downloading adapters need vendor credentials to fetch
            try:
                data = await adapter.download_result(external_job_id)
            except httpx.HTTPError as e:
                message = f"Download of {external_job_id} from {adapter.name} failed: {e}"
                raise ResultStorageError(message, retryable=True) from e
        return GenerationResult(
            success=True,
            external_job_id=external_job_id,
            result_bytes=data,
            result_url=poll.result_url,
            format="mp4",
        )

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    async def _finish(self, job: Job, result: GenerationResult) -> None:
        try:
            stored = await self._persist_result(job, result)
        except ResultStorageError as e:
            log.error("Could not store result for %s: %s", job.id, e)
            await self._handle_failure(
                job, ProviderError(code="STORAGE_ERROR", message=str(e), retryable=e.retryable), count_circuit=False
            )
            return
        if stored is None:
            log.error("Adapter %s returned no result URL or job ID for %s", job.provider, job.id)
            self._fail(job, "Provider returned no result URL or job ID")
            return

        result_ref, patch = stored
        metadata = {k: v for k, v in result.metadata.items() if k != "text"}
        metadata.update({"format": result.format, "duration_ms": result.duration_ms})
        # async submissions already booked their cost with the vendor id
        cost = 0 if result.external_job_id else result.cost_cents
        if self.store.complete(job.id, job.quality, result_ref, cost, metadata, patch, worker_id=self.worker_id):
            log.info("Job %s %s (cost %s)", job.id, READY_FOR[job.quality].value, cost)
        else:
            log.info("Job %s changed status before completion, result not written", job.id)

    async def _persist_result(self, job: Job, result: GenerationResult) -> Optional[Tuple[Optional[str], Dict[str, Any]]]:
        text = result.text
        if text is not None:
            return None, {"script_text": text, "word_count": result.metadata.get("word_count", len(text.split()))}

        fmt = result.format or "bin"
        data = result.inline_bytes()
        if data is not None:
            return await self.storage.save(job.id, job.quality, data, fmt), {}

        if result.result_url:
            try:
                data = await self.fetch(result.result_url)
            except httpx.HTTPError as e:
                log.warning("Could not fetch %s for %s, keeping provider URL: %s", result.result_url, job.id, e)
                return result.result_url, {}
            return await self.storage.save(job.id, job.quality, data, fmt), {}
        return None

    # ------------------------------------------------------------------
    # Failure policy
    # ------------------------------------------------------------------

    async def _handle_failure(
        self,
        job: Job,
        error: ProviderError,
        backoff: bool = False,
        count_circuit: bool = True,
        clear_external: bool = False,
    ) -> None:
        if count_circuit:
            self.circuits.record_failure(job.provider)

        if error.retryable and job.retry_count < job.max_retries:
            attempt = job.retry_count + 1
            delay = self.settings.backoff_seconds(job.retry_count)
            if self.store.requeue(
                job.id,
                REQUEUE_FOR[job.quality],
                f"Retry {attempt}: {error.message}",
                worker_id=self.worker_id,
                clear_external=clear_external,
            ):
                log.warning(
                    "Retryable %s for %s (attempt %s/%s): %s", error.code, job.id, attempt, job.max_retries, error.message
                )
                if backoff and delay > 0:
                    log.info("Backing off %.1fs after %s", delay, job.id)
                    await self.sleep(delay)
                return

        reason = error.message
        if error.retryable:
            reason = f"Max retries exceeded. Last error: {error.message}"
        self._fail(job, reason)

    def _fail(self, job: Job, reason: str) -> None:
        failed = self.store.fail(job.id, reason, worker_id=self.worker_id)
        if failed is None:
            log.info("Job %s was no longer running, failure not recorded", job.id)
        else:
            log.error("Job %s failed: %s", job.id, reason)


def _unknown_failure() -> ProviderError:
    return ProviderError(code="PROVIDER_ERROR", message="Provider returned failure")


def apply_webhook(
    store: JobStore,
    external_job_id: str,
    result_url: Optional[str] = None,
    error: Optional[str] = None,
) -> Optional[Job]:
    """Apply an out-of-band vendor callback. Only a job still running_* is touched."""
    job = store.find_by_external_job_id(external_job_id)
    if job is None or job.status != running_status(job.quality):
        return None
    if error is not None or not result_url:
        return store.fail(job.id, error or "Provider reported failure")
    if not store.complete(job.id, job.quality, result_url, metadata_patch={"completed_by": "webhook"}):
        return None
    return store.get_job(job.id)
