import logging
from typing import Collection, List

from .config import Settings
from .models import QUEUED_FOR
from .storage import JobStore
from .utils import iso_ago

log = logging.getLogger(__name__)


def reap_stale_jobs(store: JobStore, active_ids: Collection[str], settings: Settings) -> List[str]:
    """Requeue or fail running jobs whose lease heartbeat went stale.

    Jobs this process is still working on are skipped. Each write repeats the staleness check, so
    a lease renewed between the scan and the write survives. Returns the ids that were acted on.
    """
    threshold = settings.stale_threshold
    stale_before = iso_ago(threshold)
    reaped: List[str] = []
    for job in store.find_stale(threshold, limit=settings.reap_limit):
        if job.id in active_ids:
            continue
        holder = job.worker_id or "unknown"
        if job.retry_count < job.max_retries:
            reason = f"Reaped: worker {holder} went stale. Retry {job.retry_count + 1}/{job.max_retries}"
            if store.requeue(job.id, QUEUED_FOR[job.status], reason, stale_before=stale_before):
                log.warning("Requeued stale job %s from %s", job.id, holder)
                reaped.append(job.id)
        else:
            reason = f"Worker {holder} went stale. Max retries ({job.max_retries}) exceeded."
            if store.fail(job.id, reason, stale_before=stale_before) is not None:
                log.error("Failed stale job %s from %s, retries exhausted", job.id, holder)
                reaped.append(job.id)
    if reaped:
        log.info("Reaped %s stale job(s)", len(reaped))
    return reaped
