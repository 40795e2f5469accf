import json
import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from functools import wraps
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from .models import (
    DEFAULTS,
    OPEN_BATCH_STATUSES,
    QUALITY_FOR,
    READY_FOR,
    RUNNING_FOR,
    Batch,
    BatchStatus,
    Job,
    JobStatus,
    Quality,
    ToolType,
)
from .utils import iso_ago, now_iso

log = logging.getLogger(__name__)

RefundFn = Callable[[str, int, str], None]

PARAM_COLUMNS = (
    "negative_prompt",
    "aspect_ratio",
    "duration",
    "resolution",
    "style",
    "voice_id",
    "language",
    "reference_image_url",
    "reference_video_url",
    "reference_audio_url",
)

_IN_RUNNING = "status IN ('running_preview','running_final')"

SCHEMA = """
PRAGMA journal_mode=WAL;
CREATE TABLE IF NOT EXISTS jobs(
  id TEXT PRIMARY KEY,
  workspace_id TEXT NOT NULL,
  batch_id TEXT,
  type TEXT NOT NULL,
  provider TEXT NOT NULL,
  quality TEXT NOT NULL DEFAULT 'preview',
  status TEXT NOT NULL,
  prompt TEXT NOT NULL DEFAULT '',
  negative_prompt TEXT,
  aspect_ratio TEXT,
  duration REAL,
  resolution TEXT,
  style TEXT,
  voice_id TEXT,
  language TEXT,
  reference_image_url TEXT,
  reference_video_url TEXT,
  reference_audio_url TEXT,
  metadata TEXT,
  retry_count INTEGER NOT NULL DEFAULT 0,
  max_retries INTEGER NOT NULL DEFAULT 3,
  external_job_id TEXT,
  worker_id TEXT,
  lease_heartbeat_at TEXT,
  preview_cost_credits INTEGER NOT NULL DEFAULT 0,
  final_cost_credits INTEGER NOT NULL DEFAULT 0,
  cost_cents INTEGER NOT NULL DEFAULT 0,
  preview_url TEXT,
  final_url TEXT,
  preview_metadata TEXT,
  final_metadata TEXT,
  progress INTEGER NOT NULL DEFAULT 0,
  error_message TEXT,
  created_at TEXT NOT NULL,
  started_at TEXT,
  preview_completed_at TEXT,
  completed_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_jobs_status_created ON jobs(status,created_at);
CREATE INDEX IF NOT EXISTS idx_jobs_external ON jobs(external_job_id);
CREATE INDEX IF NOT EXISTS idx_jobs_batch ON jobs(batch_id);
CREATE TABLE IF NOT EXISTS batches(
  id TEXT PRIMARY KEY,
  workspace_id TEXT NOT NULL,
  total_generations INTEGER NOT NULL,
  status TEXT NOT NULL,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS config(
  key TEXT PRIMARY KEY,
  value TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS workers(
  id TEXT PRIMARY KEY,
  pid INTEGER NOT NULL,
  started_at TEXT NOT NULL,
  stopped_at TEXT
);
CREATE TABLE IF NOT EXISTS credit_refunds(
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  workspace_id TEXT NOT NULL,
  amount INTEGER NOT NULL,
  job_id TEXT NOT NULL,
  created_at TEXT NOT NULL
);
"""


def with_conn(fn):
    @wraps(fn)
    def wrapper(self, *args, **kwargs):
        return fn(self, self.get_conn(), *args, **kwargs)
    return wrapper


@contextmanager
def transaction(conn: sqlite3.Connection):
    """BEGIN IMMEDIATE takes the write lock up front so read-then-write stays atomic."""
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    conn.execute("COMMIT")


def _dumps(value: Optional[Dict[str, Any]]) -> Optional[str]:
    return json.dumps(value) if value is not None else None


def _guard(sql: str, args: List[Any], stale_before: Optional[str], worker_id: Optional[str]) -> Tuple[str, List[Any]]:
    """Narrow a running-job write to a stale lease (reaper) or to the lease holder (engine)."""
    if stale_before:
        sql += " AND lease_heartbeat_at < ?"
        args = [*args, stale_before]
    if worker_id:
        sql += " AND worker_id=?"
        args = [*args, worker_id]
    return sql, args


class JobStore:
    """Shared job table. Every state change is one conditional UPDATE; a zero-row result means another
    writer got there first and is reported as False/None rather than raised."""

    def __init__(self, db_path, refund: Optional[RefundFn] = None):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._local = threading.local()
        self.refund_fn: RefundFn = refund or self.record_refund

    def get_conn(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(self.db_path, timeout=30, isolation_level=None)
            conn.row_factory = sqlite3.Row
            self._local.conn = conn
            self.init_db(conn)
        return conn

    def close(self) -> None:
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None

    def init_db(self, conn: sqlite3.Connection):
        conn.executescript(SCHEMA)
        # defaults
        for k, v in DEFAULTS.items():
            conn.execute(
                "INSERT INTO config(key,value) VALUES(?,?) ON CONFLICT(key) DO NOTHING",
                (k, str(v)),
            )
        conn.execute("INSERT INTO config(key,value) VALUES('shutdown','false') ON CONFLICT(key) DO NOTHING")

    # ------------------------------------------------------------------
    # Creation / reads
    # ------------------------------------------------------------------

    @with_conn
    def create_job(
        self,
        conn,
        *,
        workspace_id: str,
        type: str,
        provider: str,
        prompt: str = "",
        batch_id: Optional[str] = None,
        max_retries: Optional[int] = None,
        preview_cost_credits: int = 0,
        final_cost_credits: int = 0,
        metadata: Optional[Dict[str, Any]] = None,
        job_id: Optional[str] = None,
        **params: Any,
    ) -> Job:
        unknown = set(params) - set(PARAM_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown generation parameters: {', '.join(sorted(unknown))}")
        if max_retries is None:
            max_retries = int(self.config_get("max_retries", str(DEFAULTS["max_retries"])))
        row = {
            "id": job_id or uuid.uuid4().hex,
            "workspace_id": workspace_id,
            "batch_id": batch_id,
            "type": ToolType(type).value,
            "provider": provider,
            "quality": Quality.PREVIEW.value,
            "status": JobStatus.QUEUED.value,
            "prompt": prompt,
            "metadata": _dumps(metadata or {}),
            "max_retries": max_retries,
            "preview_cost_credits": preview_cost_credits,
            "final_cost_credits": final_cost_credits,
            "created_at": now_iso(),
        }
        for col in PARAM_COLUMNS:
            row[col] = params.get(col)
        cols = ",".join(row)
        marks = ",".join(f":{c}" for c in row)
        conn.execute(f"INSERT INTO jobs({cols}) VALUES({marks})", row)
        return self.get_job(row["id"])

    def create_batch(self, workspace_id: str, jobs: Sequence[Dict[str, Any]]) -> Tuple[Batch, List[Job]]:
        """Create a batch row plus one queued child job per entry in `jobs`."""
        batch_id = uuid.uuid4().hex
        now = now_iso()
        conn = self.get_conn()
        conn.execute(
            "INSERT INTO batches(id,workspace_id,total_generations,status,created_at,updated_at) VALUES(?,?,?,?,?,?)",
            (batch_id, workspace_id, len(jobs), BatchStatus.IN_PROGRESS.value, now, now),
        )
        children = [self.create_job(workspace_id=workspace_id, batch_id=batch_id, **fields) for fields in jobs]
        return self.get_batch(batch_id), children

    @with_conn
    def get_job(self, conn, job_id: str) -> Optional[Job]:
        row = conn.execute("SELECT * FROM jobs WHERE id=?", (job_id,)).fetchone()
        return Job.from_row(row) if row else None

    @with_conn
    def get_status(self, conn, job_id: str) -> Optional[JobStatus]:
        row = conn.execute("SELECT status FROM jobs WHERE id=?", (job_id,)).fetchone()
        return JobStatus(row["status"]) if row else None

    @with_conn
    def find_by_external_job_id(self, conn, external_job_id: str) -> Optional[Job]:
        row = conn.execute("SELECT * FROM jobs WHERE external_job_id=?", (external_job_id,)).fetchone()
        return Job.from_row(row) if row else None

    @with_conn
    def list_jobs(self, conn, status: Optional[str] = None, limit: Optional[int] = None) -> List[Job]:
        sql = "SELECT * FROM jobs"
        args: List[Any] = []
        if status:
            sql += " WHERE status=?"
            args.append(status)
        sql += " ORDER BY created_at"
        if limit:
            sql += " LIMIT ?"
            args.append(limit)
        return [Job.from_row(r) for r in conn.execute(sql, args).fetchall()]

    @with_conn
    def counts_by_status(self, conn) -> List[Tuple[str, int]]:
        cur = conn.execute("SELECT status, COUNT(*) FROM jobs GROUP BY status")
        return [(r[0], r[1]) for r in cur.fetchall()]

    @with_conn
    def queue_depth(self, conn) -> Dict[str, Dict[str, int]]:
        depth: Dict[str, Dict[str, int]] = {}
        cur = conn.execute(
            "SELECT type, status, COUNT(*) FROM jobs WHERE status IN ('queued','queued_final') GROUP BY type, status"
        )
        for tool_type, status, count in cur.fetchall():
            slot = depth.setdefault(tool_type, {"preview": 0, "final": 0})
            slot["preview" if status == JobStatus.QUEUED.value else "final"] = count
        return depth

    # ------------------------------------------------------------------
    # Lease operations
    # ------------------------------------------------------------------

    @with_conn
    def claim(
        self,
        conn,
        worker_id: str,
        statuses: Iterable[JobStatus],
        limit: int,
        tool_type: Optional[str] = None,
    ) -> List[Job]:
        """Move up to `limit` jobs from a queued status to its running status, stamping the lease in
        the same UPDATE. The `AND status=?` guard makes a concurrent claimant's write a no-op."""
        statuses = [JobStatus(s) for s in statuses]
        if limit <= 0 or not statuses:
            return []
        marks = ",".join("?" for _ in statuses)
        sql = (
            f"SELECT id, status FROM jobs WHERE status IN ({marks})"
            + (" AND type=?" if tool_type else "")
            + " ORDER BY CASE status WHEN 'queued' THEN 0 ELSE 1 END, created_at LIMIT ?"
        )
        args: List[Any] = [s.value for s in statuses]
        if tool_type:
            args.append(tool_type)
        args.append(limit)
        candidates = conn.execute(sql, args).fetchall()

        claimed: List[Job] = []
        for cand in candidates:
            current = JobStatus(cand["status"])
            now = now_iso()
            cur = conn.execute(
                """
                UPDATE jobs
                   SET status=?, quality=?, worker_id=?, lease_heartbeat_at=?, started_at=COALESCE(started_at, ?)
                 WHERE id=? AND status=?
                """,
                (RUNNING_FOR[current].value, QUALITY_FOR[current].value, worker_id, now, now, cand["id"], current.value),
            )
            if cur.rowcount == 1:
                claimed.append(self.get_job(cand["id"]))
        return claimed

    @with_conn
    def heartbeat(self, conn, job_id: str, worker_id: str) -> bool:
        cur = conn.execute(
            f"UPDATE jobs SET lease_heartbeat_at=? WHERE id=? AND worker_id=? AND {_IN_RUNNING}",
            (now_iso(), job_id, worker_id),
        )
        return cur.rowcount == 1

    @with_conn
    def release(self, conn, job_id: str, worker_id: str) -> bool:
        """Hand a claimed job back untouched: pre-claim queued status, no lease, retry budget unchanged."""
        cur = conn.execute(
            f"""
            UPDATE jobs
               SET status=CASE status WHEN 'running_preview' THEN 'queued' ELSE 'queued_final' END,
                   worker_id=NULL, lease_heartbeat_at=NULL
             WHERE id=? AND worker_id=? AND {_IN_RUNNING}
            """,
            (job_id, worker_id),
        )
        return cur.rowcount == 1

    @with_conn
    def release_lease(self, conn, job_id: str, worker_id: str) -> bool:
        """Drop the lease but keep the running status; completion is left to an out-of-band webhook."""
        cur = conn.execute(
            f"UPDATE jobs SET worker_id=NULL, lease_heartbeat_at=NULL WHERE id=? AND worker_id=? AND {_IN_RUNNING}",
            (job_id, worker_id),
        )
        return cur.rowcount == 1

    @with_conn
    def requeue(
        self,
        conn,
        job_id: str,
        next_status: JobStatus,
        reason: str,
        stale_before: Optional[str] = None,
        worker_id: Optional[str] = None,
        clear_external: bool = False,
    ) -> bool:
        """Back to `next_status` with one more retry spent. `clear_external` drops the vendor job id
        so the next attempt submits afresh instead of resuming a dead vendor job."""
        clear = ", external_job_id=NULL" if clear_external else ""
        sql = f"""
            UPDATE jobs
               SET status=?, retry_count=retry_count+1, worker_id=NULL, lease_heartbeat_at=NULL, error_message=?
                   {clear}
             WHERE id=? AND {_IN_RUNNING} AND retry_count < max_retries
        """
        args: List[Any] = [JobStatus(next_status).value, reason[:2000], job_id]
        sql, args = _guard(sql, args, stale_before, worker_id)
        return conn.execute(sql, args).rowcount == 1

    def fail(
        self, job_id: str, reason: str, stale_before: Optional[str] = None, worker_id: Optional[str] = None
    ) -> Optional[Job]:
        """Terminal failure. Refunds the failed tier's credits, only when this call made the transition."""
        conn = self.get_conn()
        sql = f"""
            UPDATE jobs
               SET status='failed', error_message=?, completed_at=?, worker_id=NULL, lease_heartbeat_at=NULL
             WHERE id=? AND {_IN_RUNNING}
        """
        args: List[Any] = [reason[:2000], now_iso(), job_id]
        sql, args = _guard(sql, args, stale_before, worker_id)
        with transaction(conn):
            if conn.execute(sql, args).rowcount != 1:
                return None
            job = Job.from_row(conn.execute("SELECT * FROM jobs WHERE id=?", (job_id,)).fetchone())
        self.issue_refund(job, job.quality)
        return job

    def complete(
        self,
        job_id: str,
        quality: Quality,
        result_ref: Optional[str],
        cost: int = 0,
        result_metadata: Optional[Dict[str, Any]] = None,
        metadata_patch: Optional[Dict[str, Any]] = None,
        worker_id: Optional[str] = None,
    ) -> bool:
        quality = Quality(quality)
        running = RUNNING_FOR[JobStatus.QUEUED if quality == Quality.PREVIEW else JobStatus.QUEUED_FINAL]
        url_col = "preview_url" if quality == Quality.PREVIEW else "final_url"
        meta_col = "preview_metadata" if quality == Quality.PREVIEW else "final_metadata"
        time_col = "preview_completed_at" if quality == Quality.PREVIEW else "completed_at"

        where, where_args = _guard("id=? AND status=?", [job_id, running.value], None, worker_id)
        conn = self.get_conn()
        with transaction(conn):
            row = conn.execute(f"SELECT metadata FROM jobs WHERE {where}", where_args).fetchone()
            if row is None:
                return False
            metadata = json.loads(row["metadata"] or "{}")
            metadata.update(metadata_patch or {})
            conn.execute(
                f"""
                UPDATE jobs
                   SET status=?, progress=100, {url_col}=?, {meta_col}=?, {time_col}=?,
                       cost_cents=cost_cents+?, metadata=?, worker_id=NULL, lease_heartbeat_at=NULL
                 WHERE {where}
                """,
                [
                    READY_FOR[quality].value,
                    result_ref,
                    _dumps(result_metadata),
                    now_iso(),
                    int(cost or 0),
                    _dumps(metadata),
                    *where_args,
                ],
            )
        return True

    @with_conn
    def set_external_job_id(
        self, conn, job_id: str, external_job_id: str, cost: int = 0, worker_id: Optional[str] = None
    ) -> bool:
        sql, args = _guard(
            f"UPDATE jobs SET external_job_id=?, cost_cents=cost_cents+? WHERE id=? AND {_IN_RUNNING}",
            [external_job_id, int(cost or 0), job_id],
            None,
            worker_id,
        )
        return conn.execute(sql, args).rowcount == 1

    @with_conn
    def set_progress(self, conn, job_id: str, progress: int, worker_id: Optional[str] = None) -> bool:
        progress = max(0, min(100, int(progress)))
        sql, args = _guard(
            f"UPDATE jobs SET progress=? WHERE id=? AND {_IN_RUNNING}", [progress, job_id], None, worker_id
        )
        return conn.execute(sql, args).rowcount == 1

    @with_conn
    def find_stale(self, conn, older_than: float, limit: int = 20) -> List[Job]:
        """Running jobs whose heartbeat is older than `older_than` seconds, whoever holds them.
        A NULL heartbeat (webhook-awaiting job) never compares as stale."""
        cur = conn.execute(
            f"""
            SELECT * FROM jobs
             WHERE {_IN_RUNNING} AND lease_heartbeat_at IS NOT NULL AND lease_heartbeat_at < ?
             ORDER BY lease_heartbeat_at
             LIMIT ?
            """,
            (iso_ago(older_than), limit),
        )
        return [Job.from_row(r) for r in cur.fetchall()]

    @with_conn
    def active_leases(self, conn, fresh_within: float) -> List[sqlite3.Row]:
        return conn.execute(
            f"""
            SELECT id, worker_id, type, status, lease_heartbeat_at FROM jobs
             WHERE {_IN_RUNNING} AND lease_heartbeat_at >= ?
             ORDER BY worker_id
            """,
            (iso_ago(fresh_within),),
        ).fetchall()

    # ------------------------------------------------------------------
    # External actions
    # ------------------------------------------------------------------

    def cancel(self, job_id: str) -> Optional[Job]:
        """queued | preview_ready -> cancelled. Cancelling before the preview ran refunds its credits."""
        conn = self.get_conn()
        with transaction(conn):
            row = conn.execute("SELECT status FROM jobs WHERE id=?", (job_id,)).fetchone()
            if row is None or row["status"] not in (JobStatus.QUEUED.value, JobStatus.PREVIEW_READY.value):
                return None
            conn.execute(
                "UPDATE jobs SET status='cancelled', completed_at=? WHERE id=? AND status=?",
                (now_iso(), job_id, row["status"]),
            )
            job = Job.from_row(conn.execute("SELECT * FROM jobs WHERE id=?", (job_id,)).fetchone())
        if row["status"] == JobStatus.QUEUED.value:
            self.issue_refund(job, Quality.PREVIEW)
        return job

    @with_conn
    def finalize(self, conn, job_id: str) -> bool:
        cur = conn.execute(
            "UPDATE jobs SET status='queued_final', quality='final', progress=0 WHERE id=? AND status='preview_ready'",
            (job_id,),
        )
        return cur.rowcount == 1

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    @with_conn
    def get_batch(self, conn, batch_id: str) -> Optional[Batch]:
        row = conn.execute("SELECT * FROM batches WHERE id=?", (batch_id,)).fetchone()
        return Batch(**dict(row)) if row else None

    @with_conn
    def open_batches(self, conn, limit: int = 20) -> List[Batch]:
        marks = ",".join("?" for _ in OPEN_BATCH_STATUSES)
        cur = conn.execute(
            f"SELECT * FROM batches WHERE status IN ({marks}) ORDER BY created_at LIMIT ?",
            [s.value for s in OPEN_BATCH_STATUSES] + [limit],
        )
        return [Batch(**dict(r)) for r in cur.fetchall()]

    @with_conn
    def batch_child_statuses(self, conn, batch_id: str) -> List[JobStatus]:
        cur = conn.execute("SELECT status FROM jobs WHERE batch_id=?", (batch_id,))
        return [JobStatus(r["status"]) for r in cur.fetchall()]

    @with_conn
    def set_batch_status(self, conn, batch_id: str, status: BatchStatus) -> bool:
        cur = conn.execute(
            "UPDATE batches SET status=?, updated_at=? WHERE id=? AND status<>?",
            (BatchStatus(status).value, now_iso(), batch_id, BatchStatus(status).value),
        )
        return cur.rowcount == 1

    # ------------------------------------------------------------------
    # Credits
    # ------------------------------------------------------------------

    @with_conn
    def record_refund(self, conn, workspace_id: str, amount: int, job_id: str) -> None:
        conn.execute(
            "INSERT INTO credit_refunds(workspace_id,amount,job_id,created_at) VALUES(?,?,?,?)",
            (workspace_id, amount, job_id, now_iso()),
        )

    @with_conn
    def list_refunds(self, conn, job_id: Optional[str] = None) -> List[sqlite3.Row]:
        if job_id:
            return conn.execute("SELECT * FROM credit_refunds WHERE job_id=? ORDER BY id", (job_id,)).fetchall()
        return conn.execute("SELECT * FROM credit_refunds ORDER BY id").fetchall()

    def issue_refund(self, job: Job, quality: Quality) -> None:
        amount = job.refund_amount(quality)
        if amount <= 0:
            return
        try:
            self.refund_fn(job.workspace_id, amount, job.id)
            log.info("Refunded %s credits for %s", amount, job.id)
        except Exception:
            # a lost refund is monitorable, not a job failure
            log.exception("Refund of %s credits for %s failed", amount, job.id)

    # ------------------------------------------------------------------
    # Config / workers
    # ------------------------------------------------------------------

    @with_conn
    def config_get(self, conn, key: str, default: Optional[str] = None) -> Optional[str]:
        row = conn.execute("SELECT value FROM config WHERE key=?", (key,)).fetchone()
        return row[0] if row else default

    @with_conn
    def config_set(self, conn, key: str, value: str):
        conn.execute(
            "INSERT INTO config(key,value) VALUES(?,?) ON CONFLICT(key) DO UPDATE SET value=excluded.value",
            (key, value),
        )

    @with_conn
    def register_worker(self, conn, wid: str, pid: int):
        conn.execute("INSERT INTO workers(id,pid,started_at) VALUES(?,?,?)", (wid, pid, now_iso()))

    @with_conn
    def stop_worker_record(self, conn, wid: str):
        conn.execute("UPDATE workers SET stopped_at=? WHERE id=?", (now_iso(), wid))

    @with_conn
    def list_workers(self, conn) -> List[sqlite3.Row]:
        return conn.execute("SELECT * FROM workers WHERE stopped_at IS NULL").fetchall()
