import json
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
from rich import print
from rich.console import Console
from rich.table import Table

from .batches import update_batch_statuses
from .config import get_settings
from .engine import apply_webhook
from .providers.registry import AdapterResolver
from .reaper import reap_stale_jobs
from .storage import JobStore
from .worker import start_workers

app = typer.Typer(help="genworker - multi-process AI generation job worker with leases, retries and circuit breakers.")

# Sub-apps so the CLI supports commands like:
#   genworker worker start --count 3
#   genworker config set max_retries 5
worker_app = typer.Typer()
config_app = typer.Typer()

app.add_typer(worker_app, name="worker")
app.add_typer(config_app, name="config")


def _store() -> JobStore:
    return JobStore(get_settings().database)


def _load_payload(payload: Optional[str], json_file: Optional[Path]) -> Optional[Any]:
    if json_file:
        payload = json_file.read_text(encoding="utf-8").strip()
    if not payload:
        return None
    try:
        return json.loads(payload)
    except json.JSONDecodeError as e:
        raise typer.BadParameter(f"Invalid JSON: {e.msg}")


def _parse_params(params: List[str]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for item in params:
        key, sep, value = item.partition("=")
        if not sep:
            raise typer.BadParameter(f"Expected key=value, got {item!r}")
        out[key.strip().replace("-", "_")] = value
    return out


# -----------------------------
# Submission
# -----------------------------
@app.command()
def enqueue(
    payload: Optional[str] = typer.Argument(
        None,
        help="Job JSON e.g. '{\"workspace_id\":\"ws1\",\"type\":\"script\",\"provider\":\"anthropic-haiku\",\"prompt\":\"hi\"}'.",
    ),
    type: Optional[str] = typer.Option(None, "--type", "-t", help="Tool type (image, video, voice, script, ...)"),
    provider: Optional[str] = typer.Option(None, "--provider", "-p", help="Provider key"),
    prompt: str = typer.Option("", "--prompt", help="Prompt text"),
    workspace: str = typer.Option("default", "--workspace", "-w", help="Owning workspace id"),
    json_file: Optional[Path] = typer.Option(None, "--json-file", help="Read JSON payload from a file"),
    max_retries: Optional[int] = typer.Option(None, help="Override job max_retries"),
    preview_credits: int = typer.Option(0, help="Credits debited for the preview pass"),
    final_credits: int = typer.Option(0, help="Credits debited for the final pass"),
    param: List[str] = typer.Option([], "--param", help="Generation parameter key=value (repeatable)"),
):
    """Queue a new generation job for its preview pass."""
    data = _load_payload(payload, json_file)
    if data is None:
        if not (type and provider):
            raise typer.BadParameter("Provide JSON payload OR both --type and --provider (or use --json-file).")
        data = {"type": type, "provider": provider, "prompt": prompt}
        data.update(_parse_params(param))
    data.setdefault("workspace_id", workspace)
    data.setdefault("max_retries", max_retries)
    data.setdefault("preview_cost_credits", preview_credits)
    data.setdefault("final_cost_credits", final_credits)
    if "id" in data:
        data["job_id"] = data.pop("id")
    try:
        job = _store().create_job(**data)
    except (TypeError, ValueError) as e:
        print(f"[red]Invalid job:[/red] {e}")
        raise typer.Exit(1)
    print(f"[green]Enqueued[/green] job [bold]{job.id}[/bold] ({job.type.value} via {job.provider})")


@app.command()
def batch(
    payload: Optional[str] = typer.Argument(None, help="Batch JSON: {\"workspace_id\": ..., \"jobs\": [{...}, ...]}"),
    json_file: Optional[Path] = typer.Option(None, "--json-file", help="Read JSON payload from a file"),
):
    """Queue several jobs under one batch."""
    data = _load_payload(payload, json_file)
    if not isinstance(data, dict) or not data.get("jobs"):
        raise typer.BadParameter("Batch payload needs a non-empty 'jobs' list.")
    try:
        b, jobs = _store().create_batch(data.get("workspace_id", "default"), data["jobs"])
    except (TypeError, ValueError) as e:
        print(f"[red]Invalid batch:[/red] {e}")
        raise typer.Exit(1)
    print(f"[green]Enqueued[/green] batch [bold]{b.id}[/bold] with {len(jobs)} job(s)")


# -----------------------------
# Worker controls
# -----------------------------
@worker_app.command("start")
def worker_start_cmd(
    count: int = typer.Option(1, "--count", "-c", help="Number of worker processes"),
    reset_shutdown: bool = typer.Option(True, help="Set shutdown=false before start"),
):
    """Start worker processes. Ctrl+C drains and stops them."""
    settings = get_settings()
    # fail fast on a bad GENWORKER_PROVIDERS before forking
    AdapterResolver().validate(settings.providers)
    if reset_shutdown:
        JobStore(settings.database).config_set("shutdown", "false")
    print(f"Starting {count} worker(s). Ctrl+C to stop.")
    start_workers(count, settings)


@worker_app.command("stop")
def worker_stop_cmd():
    """Signal workers to stop gracefully (drain in-flight jobs)."""
    stop()


@app.command()
def stop():
    """Signal workers to stop gracefully (drain in-flight jobs)."""
    _store().config_set("shutdown", "true")
    print("[yellow]Set shutdown=true. Workers will drain in-flight jobs and exit.[/yellow]")


# -----------------------------
# Status & listing
# -----------------------------
@app.command()
def status():
    """Show job counts, queue depth, active workers and stale jobs."""
    settings = get_settings()
    store = JobStore(settings.database)
    console = Console()

    tbl = Table(title="Jobs")
    tbl.add_column("Status")
    tbl.add_column("Count")
    for st, n in store.counts_by_status():
        tbl.add_row(st, str(n))
    console.print(tbl)

    qt = Table(title="Queue depth")
    qt.add_column("type")
    qt.add_column("preview")
    qt.add_column("final")
    for tool_type, depth in sorted(store.queue_depth().items()):
        qt.add_row(tool_type, str(depth["preview"]), str(depth["final"]))
    console.print(qt)

    leases: Dict[str, int] = {}
    for row in store.active_leases(settings.stale_threshold):
        leases[row["worker_id"]] = leases.get(row["worker_id"], 0) + 1
    wt = Table(title="Active Workers")
    wt.add_column("worker_id")
    wt.add_column("pid")
    wt.add_column("started_at")
    wt.add_column("jobs")
    for w in store.list_workers():
        wt.add_row(w["id"], str(w["pid"]), w["started_at"], str(leases.get(w["id"], 0)))
    console.print(wt)

    stale = store.find_stale(settings.stale_threshold, limit=50)
    if stale:
        stt = Table(title="Stale jobs")
        for c in ["id", "status", "worker_id", "heartbeat", "retries"]:
            stt.add_column(c)
        for j in stale:
            stt.add_row(j.id, j.status.value, j.worker_id or "", str(j.lease_heartbeat_at), f"{j.retry_count}/{j.max_retries}")
        console.print(stt)


@app.command("list")
def list_cmd(
    status: Optional[str] = typer.Option(None, "--status", help="Filter by status"),
    limit: int = typer.Option(50, "--limit", help="Max rows"),
):
    """List jobs, optionally by status."""
    rows = _store().list_jobs(status, limit)
    t = Table(title=f"Jobs{'' if not status else f' ({status})'}")
    for c in ["id", "type", "provider", "status", "retries", "progress", "cost", "error"]:
        t.add_column(c)
    for j in rows:
        t.add_row(
            j.id,
            j.type.value,
            j.provider,
            j.status.value,
            f"{j.retry_count}/{j.max_retries}",
            str(j.progress),
            str(j.cost_cents),
            (j.error_message or "")[:60],
        )
    Console().print(t)


@app.command()
def show(job_id: str):
    """Print one job as JSON."""
    job = _store().get_job(job_id)
    if not job:
        print(f"[red]Not found:[/red] {job_id}")
        raise typer.Exit(1)
    Console().print_json(job.model_dump_json())


@app.command("batch-show")
def batch_show(batch_id: str):
    """Show a batch and its children."""
    store = _store()
    b = store.get_batch(batch_id)
    if not b:
        print(f"[red]Not found:[/red] {batch_id}")
        raise typer.Exit(1)
    print(f"Batch [bold]{b.id}[/bold]: {b.status.value} ({b.total_generations} job(s))")
    counts: Dict[str, int] = {}
    for st in store.batch_child_statuses(batch_id):
        counts[st.value] = counts.get(st.value, 0) + 1
    for st, n in sorted(counts.items()):
        print(f"  {st}: {n}")


# -----------------------------
# External actions
# -----------------------------
@app.command()
def cancel(job_id: str):
    """Cancel a job that is queued or preview-ready."""
    job = _store().cancel(job_id)
    if job is None:
        print(f"[red]Cannot cancel[/red] {job_id} (not found, or not queued / preview_ready)")
        raise typer.Exit(1)
    print(f"[yellow]Cancelled[/yellow] {job_id}")


@app.command()
def finalize(job_id: str):
    """Queue the final pass for a preview-ready job."""
    if not _store().finalize(job_id):
        print(f"[red]Cannot finalize[/red] {job_id} (not preview_ready)")
        raise typer.Exit(1)
    print(f"[green]Queued final pass[/green] for {job_id}")


@app.command()
def webhook(
    external_job_id: str,
    result_url: Optional[str] = typer.Option(None, "--result-url", help="Completed result URL"),
    error: Optional[str] = typer.Option(None, "--error", help="Vendor failure message"),
):
    """Apply a vendor completion (or failure) for a running job by its vendor job id."""
    if not result_url and error is None:
        raise typer.BadParameter("Provide --result-url or --error.")
    job = apply_webhook(_store(), external_job_id, result_url=result_url, error=error)
    if job is None:
        print(f"[yellow]Ignored[/yellow]: no running job for {external_job_id}")
        raise typer.Exit(1)
    print(f"Job [bold]{job.id}[/bold] -> {job.status.value}")


@app.command()
def reap():
    """Run the stale-lease reaper and batch aggregator once."""
    settings = get_settings()
    store = JobStore(settings.database)
    reaped = reap_stale_jobs(store, set(), settings)
    changed = update_batch_statuses(store, settings.batch_limit)
    print(f"Reaped {len(reaped)} job(s); updated {len(changed)} batch(es)")


@app.command()
def providers():
    """List registered provider adapters."""
    t = Table(title="Providers")
    for c in ["key", "tool type", "mode", "api key"]:
        t.add_column(c)
    for adapter in AdapterResolver():
        if adapter.can_poll:
            mode = "poll"
        elif adapter.capabilities.webhooks:
            mode = "webhook"
        else:
            mode = "sync"
        has_key = bool(getattr(adapter, "api_key", ""))
        t.add_row(adapter.name, adapter.tool_type.value, mode, "set" if has_key else "[red]missing[/red]")
    Console().print(t)


@app.command()
def refunds(job_id: Optional[str] = typer.Option(None, "--job", help="Only refunds for this job")):
    """Show the credit refund ledger."""
    t = Table(title="Credit refunds")
    for c in ["workspace_id", "job_id", "amount", "created_at"]:
        t.add_column(c)
    for r in _store().list_refunds(job_id):
        t.add_row(r["workspace_id"], r["job_id"], str(r["amount"]), r["created_at"])
    Console().print(t)


# -----------------------------
# Config
# -----------------------------
@config_app.command("set")
def config_set_cmd(key: str = typer.Argument(..., help="Config key"), value: str = typer.Argument(..., help="Value")):
    """Write a shared runtime setting (max_retries, shutdown)."""
    _store().config_set(key.replace("-", "_"), value)
    print(f"set {key}={value}")


@config_app.command("get")
def config_get_cmd(key: str = typer.Argument(..., help="Config key")):
    print(_store().config_get(key.replace("-", "_"), ""))


if __name__ == "__main__":
    app()
