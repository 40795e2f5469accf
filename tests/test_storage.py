import logging
import threading

import pytest

from conftest import claim_one
from genworker.models import BatchStatus, JobStatus, Quality
from genworker.storage import JobStore
from genworker.utils import iso_ago


def _age_heartbeat(store: JobStore, job_id: str, seconds: float) -> None:
    store.get_conn().execute("UPDATE jobs SET lease_heartbeat_at=? WHERE id=?", (iso_ago(seconds), job_id))


def test_create_job_defaults(store):
    job = store.create_job(workspace_id="ws", type="image-to-video", provider="kling-i2v", prompt="pan left",
                           reference_image_url="https://img/1.png", metadata={"seed": 7})
    assert job.status == JobStatus.QUEUED
    assert job.quality == Quality.PREVIEW
    assert job.max_retries == 3
    assert job.retry_count == 0
    assert job.reference_image_url == "https://img/1.png"
    assert job.metadata == {"seed": 7}
    assert job.is_video_class


def test_create_job_rejects_unknown_parameters(store):
    with pytest.raises(ValueError):
        store.create_job(workspace_id="ws", type="image", provider="p", colour="red")


def test_max_retries_default_comes_from_config(store):
    store.config_set("max_retries", "5")
    assert store.create_job(workspace_id="ws", type="image", provider="p").max_retries == 5


def test_concurrent_claims_hand_a_job_to_exactly_one_worker(store):
    job = store.create_job(workspace_id="ws", type="image", provider="p")
    workers = 8
    barrier = threading.Barrier(workers)
    winners = []

    def claimer(i):
        barrier.wait()
        got = store.claim(f"w-{i}", [JobStatus.QUEUED], 1)
        winners.extend((f"w-{i}", j.id) for j in got)
        store.close()

    threads = [threading.Thread(target=claimer, args=(i,)) for i in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(winners) == 1
    claimed = store.get_job(job.id)
    assert claimed.status == JobStatus.RUNNING_PREVIEW
    assert claimed.worker_id == winners[0][0]
    assert claimed.lease_heartbeat_at is not None


def test_claim_prefers_preview_and_respects_tool_type(store):
    final = store.create_job(workspace_id="ws", type="video", provider="p")
    store.get_conn().execute("UPDATE jobs SET status='queued_final' WHERE id=?", (final.id,))
    preview = store.create_job(workspace_id="ws", type="video", provider="p")
    store.create_job(workspace_id="ws", type="voice", provider="p")

    got = store.claim("w-1", [JobStatus.QUEUED, JobStatus.QUEUED_FINAL], 2, tool_type="video")

    assert [j.id for j in got] == [preview.id, final.id]
    assert got[1].status == JobStatus.RUNNING_FINAL
    assert got[1].quality == Quality.FINAL


def test_heartbeat_only_for_the_lease_holder(store):
    store.create_job(workspace_id="ws", type="image", provider="p")
    job = claim_one(store)
    assert store.heartbeat(job.id, "w-test")
    assert not store.heartbeat(job.id, "w-other")


def test_requeue_spends_retry_budget_until_exhausted(store):
    store.create_job(workspace_id="ws", type="image", provider="p", max_retries=1)
    job = claim_one(store)
    assert store.requeue(job.id, JobStatus.QUEUED, "Retry 1: flaky")

    requeued = store.get_job(job.id)
    assert requeued.status == JobStatus.QUEUED
    assert requeued.retry_count == 1
    assert requeued.worker_id is None and requeued.lease_heartbeat_at is None

    claim_one(store)
    assert not store.requeue(job.id, JobStatus.QUEUED, "Retry 2: flaky")
    assert store.get_job(job.id).status == JobStatus.RUNNING_PREVIEW


def test_lease_holder_writes_are_refused_for_other_workers(store, refunds):
    store.create_job(workspace_id="ws", type="video", provider="p", preview_cost_credits=4)
    job = claim_one(store)

    assert not store.set_external_job_id(job.id, "ext", cost=30, worker_id="w-other")
    assert not store.set_progress(job.id, 50, worker_id="w-other")
    assert not store.requeue(job.id, JobStatus.QUEUED, "Retry 1: late", worker_id="w-other")
    assert store.fail(job.id, "late", worker_id="w-other") is None
    assert not store.complete(job.id, Quality.PREVIEW, "https://cdn/x.mp4", worker_id="w-other")

    untouched = store.get_job(job.id)
    assert untouched.status == JobStatus.RUNNING_PREVIEW
    assert untouched.external_job_id is None and untouched.cost_cents == 0
    assert refunds.calls == []

    assert store.set_external_job_id(job.id, "ext", cost=30, worker_id="w-test")
    assert store.requeue(job.id, JobStatus.QUEUED, "Retry 1: vendor failed", worker_id="w-test", clear_external=True)
    assert store.get_job(job.id).external_job_id is None


def test_fail_refunds_the_failed_tier_once(store, refunds):
    store.create_job(workspace_id="ws", type="video", provider="p", preview_cost_credits=4, final_cost_credits=40)
    job = claim_one(store)
    assert store.complete(job.id, Quality.PREVIEW, "https://cdn/p.mp4")
    store.finalize(job.id)
    claim_one(store, JobStatus.QUEUED_FINAL)

    failed = store.fail(job.id, "vendor said no")
    assert failed.status == JobStatus.FAILED
    assert store.fail(job.id, "again") is None
    assert refunds.calls == [("ws", 40, job.id)]


def test_refund_errors_are_logged_not_raised(tmp_path, caplog):
    def broken_ledger(workspace_id, amount, job_id):
        raise RuntimeError("ledger down")

    store = JobStore(tmp_path / "jobs.db", refund=broken_ledger)
    store.create_job(workspace_id="ws", type="image", provider="p", preview_cost_credits=1)
    job = claim_one(store)
    with caplog.at_level(logging.ERROR):
        assert store.fail(job.id, "nope") is not None
    assert "Refund of 1 credits" in caplog.text
    store.close()


def test_default_refund_ledger_records_rows(tmp_path):
    store = JobStore(tmp_path / "jobs.db")
    store.create_job(workspace_id="ws", type="image", provider="p", preview_cost_credits=6)
    job = claim_one(store)
    store.fail(job.id, "nope")
    rows = store.list_refunds(job.id)
    assert [(r["workspace_id"], r["amount"]) for r in rows] == [("ws", 6)]
    store.close()


def test_complete_requires_running_status(store):
    job = store.create_job(workspace_id="ws", type="image", provider="p")
    assert not store.complete(job.id, Quality.PREVIEW, "https://cdn/x.png")
    assert store.get_job(job.id).status == JobStatus.QUEUED


def test_complete_merges_metadata_and_accumulates_cost(store):
    store.create_job(workspace_id="ws", type="video", provider="p", metadata={"seed": 1})
    job = claim_one(store)
    store.set_external_job_id(job.id, "ext", cost=30)
    assert store.complete(job.id, Quality.PREVIEW, "https://cdn/x.mp4", cost=5,
                          result_metadata={"format": "mp4"}, metadata_patch={"note": "ok"})
    done = store.get_job(job.id)
    assert done.cost_cents == 35
    assert done.metadata == {"seed": 1, "note": "ok"}
    assert done.preview_metadata == {"format": "mp4"}
    assert store.find_by_external_job_id("ext").id == job.id


def test_cancel_from_queued_refunds_preview(store, refunds):
    job = store.create_job(workspace_id="ws", type="image", provider="p", preview_cost_credits=3)
    cancelled = store.cancel(job.id)
    assert cancelled.status == JobStatus.CANCELLED
    assert refunds.calls == [("ws", 3, job.id)]


def test_cancel_is_refused_while_running(store):
    store.create_job(workspace_id="ws", type="image", provider="p")
    job = claim_one(store)
    assert store.cancel(job.id) is None
    assert store.get_job(job.id).status == JobStatus.RUNNING_PREVIEW


def test_cancel_from_preview_ready_keeps_credits(store, refunds):
    store.create_job(workspace_id="ws", type="image", provider="p", preview_cost_credits=3)
    job = claim_one(store)
    store.complete(job.id, Quality.PREVIEW, "https://cdn/x.png")
    assert store.cancel(job.id).status == JobStatus.CANCELLED
    assert refunds.calls == []


def test_finalize_only_from_preview_ready(store):
    job = store.create_job(workspace_id="ws", type="image", provider="p")
    assert not store.finalize(job.id)
    claim_one(store)
    store.complete(job.id, Quality.PREVIEW, "https://cdn/x.png")
    assert store.finalize(job.id)
    queued = store.get_job(job.id)
    assert queued.status == JobStatus.QUEUED_FINAL
    assert queued.quality == Quality.FINAL


def test_release_restores_queued_status(store):
    store.create_job(workspace_id="ws", type="image", provider="p")
    job = claim_one(store)
    assert store.release(job.id, "w-test")
    released = store.get_job(job.id)
    assert released.status == JobStatus.QUEUED
    assert released.retry_count == 0
    assert released.worker_id is None


def test_find_stale_ignores_holder_fresh_and_unleased_jobs(store):
    for _ in range(3):
        store.create_job(workspace_id="ws", type="video", provider="p")
    stale, fresh, unleased = store.claim("w-someone", [JobStatus.QUEUED], 3)
    _age_heartbeat(store, stale.id, 500)
    store.release_lease(unleased.id, "w-someone")

    found = store.find_stale(120)
    assert [j.id for j in found] == [stale.id]
    assert [r["id"] for r in store.active_leases(120)] == [fresh.id]


def test_batch_status_written_only_on_change(store):
    batch, children = store.create_batch("ws", [
        {"type": "image", "provider": "p"},
        {"type": "image", "provider": "p", "prompt": "two"},
    ])
    assert batch.total_generations == 2
    assert [c.batch_id for c in children] == [batch.id, batch.id]
    assert store.set_batch_status(batch.id, BatchStatus.ALL_PREVIEWS_READY)
    assert not store.set_batch_status(batch.id, BatchStatus.ALL_PREVIEWS_READY)


def test_config_defaults_and_worker_registry(store):
    assert store.config_get("max_retries") == "3"
    assert store.config_get("shutdown") == "false"
    store.register_worker("w-1", 123)
    assert [w["id"] for w in store.list_workers()] == ["w-1"]
    store.stop_worker_record("w-1")
    assert store.list_workers() == []
