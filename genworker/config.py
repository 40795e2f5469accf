import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

# Load variables from .env at import time
load_dotenv()


def _env(name: str, default: str = "") -> str:
    return os.getenv(name, default)


def _home() -> Path:
    return Path(_env("GENWORKER_HOME", str(Path.home() / ".genworker")))


def _providers() -> List[str]:
    raw = _env("GENWORKER_PROVIDERS")
    return [p.strip() for p in raw.split(",") if p.strip()]


class Settings(BaseModel):
    home: Path = Field(default_factory=_home)
    db_path: Optional[Path] = Field(default_factory=lambda: _env("GENWORKER_DB_PATH") or None)
    log_level: str = Field(default_factory=lambda: _env("GENWORKER_LOG_LEVEL", "INFO"))

    # worker loop
    tool_type: Optional[str] = Field(default_factory=lambda: _env("GENWORKER_TOOL_TYPE") or None)
    poll_interval: float = Field(default_factory=lambda: float(_env("GENWORKER_POLL_INTERVAL", "2")))
    max_concurrent: int = Field(default_factory=lambda: int(_env("GENWORKER_MAX_CONCURRENT", "5")))
    reap_every: int = Field(default_factory=lambda: int(_env("GENWORKER_REAP_EVERY", "30")))
    reap_limit: int = Field(default_factory=lambda: int(_env("GENWORKER_REAP_LIMIT", "20")))
    batch_limit: int = Field(default_factory=lambda: int(_env("GENWORKER_BATCH_LIMIT", "20")))
    drain_timeout: float = Field(default_factory=lambda: float(_env("GENWORKER_DRAIN_TIMEOUT", "60")))
    heartbeat_file: Optional[Path] = Field(
        default_factory=lambda: _env("GENWORKER_HEARTBEAT_FILE", "/tmp/genworker-heartbeat") or None
    )
    providers: List[str] = Field(default_factory=_providers)

    # leases
    heartbeat_interval: float = Field(default_factory=lambda: float(_env("GENWORKER_HEARTBEAT_INTERVAL", "10")))
    lease_ttl: float = Field(default_factory=lambda: float(_env("GENWORKER_LEASE_TTL", "60")))

    # async jobs
    async_poll_interval: float = Field(default_factory=lambda: float(_env("GENWORKER_ASYNC_POLL_INTERVAL", "15")))
    async_poll_timeout: float = Field(default_factory=lambda: float(_env("GENWORKER_ASYNC_POLL_TIMEOUT", "600")))

    # retries / circuits
    backoff_base_ms: int = Field(default_factory=lambda: int(_env("GENWORKER_BACKOFF_BASE_MS", "1000")))
    backoff_max_ms: int = Field(default_factory=lambda: int(_env("GENWORKER_BACKOFF_MAX_MS", "30000")))
    circuit_threshold: int = Field(default_factory=lambda: int(_env("GENWORKER_CIRCUIT_THRESHOLD", "5")))
    circuit_reset: float = Field(default_factory=lambda: float(_env("GENWORKER_CIRCUIT_RESET", "30")))

    # result storage
    storage: str = Field(default_factory=lambda: _env("GENWORKER_STORAGE", "local").lower())  # "local" or "r2"
    public_base_url: str = Field(default_factory=lambda: _env("GENWORKER_PUBLIC_BASE_URL").rstrip("/"))
    r2_access_key_id: str = Field(default_factory=lambda: _env("R2_ACCESS_KEY_ID"))
    r2_secret_access_key: str = Field(default_factory=lambda: _env("R2_SECRET_ACCESS_KEY"))
    r2_endpoint_url: str = Field(default_factory=lambda: _env("R2_ENDPOINT_URL"))
    r2_bucket: str = Field(default_factory=lambda: _env("R2_BUCKET", "generations"))
    r2_public_base: str = Field(default_factory=lambda: _env("R2_PUBLIC_BASE"))

    @property
    def database(self) -> Path:
        return Path(self.db_path) if self.db_path else self.home / "jobs.db"

    @property
    def results_dir(self) -> Path:
        return self.home / "results"

    @property
    def stale_threshold(self) -> float:
        # a lease is stale after two missed TTLs
        return self.lease_ttl * 2

    def backoff_seconds(self, retry_count: int) -> float:
        return min(self.backoff_base_ms * (2 ** retry_count), self.backoff_max_ms) / 1000.0


def get_settings() -> Settings:
    return Settings()
