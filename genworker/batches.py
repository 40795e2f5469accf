import logging
from typing import Dict, Iterable, Optional

from .models import BatchStatus, JobStatus
from .storage import JobStore

log = logging.getLogger(__name__)

FINISHED = {JobStatus.FINAL_READY, JobStatus.FAILED, JobStatus.CANCELLED}
PREVIEW_REACHED = FINISHED | {JobStatus.PREVIEW_READY, JobStatus.QUEUED_FINAL, JobStatus.RUNNING_FINAL}


def compute_batch_status(statuses: Iterable[JobStatus]) -> Optional[BatchStatus]:
    """Aggregate status implied by the children, or None when it should stay as it is."""
    statuses = [JobStatus(s) for s in statuses]
    if not statuses:
        return None
    if all(s in FINISHED for s in statuses):
        if any(s == JobStatus.FAILED for s in statuses):
            return BatchStatus.PARTIAL_FAILURE
        return BatchStatus.COMPLETED
    if all(s in PREVIEW_REACHED for s in statuses):
        return BatchStatus.ALL_PREVIEWS_READY
    return None


def update_batch_statuses(store: JobStore, limit: int = 20) -> Dict[str, BatchStatus]:
    changed: Dict[str, BatchStatus] = {}
    for batch in store.open_batches(limit):
        status = compute_batch_status(store.batch_child_statuses(batch.id))
        if status is None or status == batch.status:
            continue
        if store.set_batch_status(batch.id, status):
            log.info("Batch %s -> %s", batch.id, status.value)
            changed[batch.id] = status
    return changed
