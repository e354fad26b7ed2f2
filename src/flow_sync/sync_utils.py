from __future__ import annotations

from datetime import datetime, timezone


def now_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def format_local_timestamp(ms: int) -> str:
    # "YYYY-MM-DD HH:MM:SS" in UTC; used in human-facing titles.
    dt = datetime.fromtimestamp(ms / 1000, tz=timezone.utc)
    return dt.strftime("%Y-%m-%d %H:%M:%S")
