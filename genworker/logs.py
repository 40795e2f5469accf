import logging
from typing import Optional

from rich.logging import RichHandler


class WorkerIdFilter(logging.Filter):
    """Stamps every record with the worker id so interleaved process logs stay readable."""

    def __init__(self, worker_id: str):
        super().__init__()
        self.worker_id = worker_id

    def filter(self, record: logging.LogRecord) -> bool:
        record.worker_id = self.worker_id
        return True


def setup_logging(level: str = "INFO", worker_id: Optional[str] = None) -> None:
    handler = RichHandler(rich_tracebacks=True, show_path=False)
    handler.addFilter(WorkerIdFilter(worker_id or "-"))
    handler.setFormatter(logging.Formatter("[%(worker_id)s] %(message)s"))

    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
    root.addHandler(handler)
    root.setLevel(level.upper())
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
