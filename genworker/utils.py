from datetime import datetime, timedelta, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def iso(dt: datetime) -> str:
    # fixed width so stored timestamps compare correctly as text
    return dt.isoformat(timespec="microseconds")


def now_iso() -> str:
    return iso(utcnow())


def iso_ago(seconds: float) -> str:
    return iso(utcnow() - timedelta(seconds=seconds))
