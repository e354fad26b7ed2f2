from __future__ import annotations

from pathlib import Path
from urllib.parse import unquote


def normalize_database_url_for_async(database_url: str) -> str:
    """Rewrite a SQLite DATABASE_URL to use the aiosqlite driver."""
    url = (database_url or "").strip()
    if not url:
        return url

    if url.startswith("sqlite://") and "+aiosqlite" not in url:
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)

    return url


def sqlite_url_for_path(path: Path) -> str:
    return f"sqlite:///{path}"


def extract_sqlite_db_file_path(database_url: str) -> Path | None:
    """Best-effort local file path of a SQLite DATABASE_URL.

    Returns None for in-memory databases and non-sqlite URLs.
    """

    url = (database_url or "").strip()
    if not url:
        return None

    # Ignore query/fragment (e.g. ?check_same_thread=false).
    url = url.split("#", 1)[0].split("?", 1)[0]
    lower = url.lower()
    if not lower.startswith("sqlite") or lower.endswith(":memory:"):
        return None

    sep = url.find("://")
    if sep == -1:
        return None

    rest = url[sep + 3 :]
    # sqlite:///./.data/a.db -> "/./.data/a.db"; sqlite:////tmp/a.db -> "//tmp/a.db"
    if rest.startswith("//"):
        file_path = rest[1:]
    elif rest.startswith("/"):
        file_path = rest[1:]
    else:
        file_path = rest

    file_path = unquote(file_path)
    if not file_path or file_path == ":memory:":
        return None
    return Path(file_path)


def ensure_sqlite_parent_dir(database_url: str) -> None:
    path = extract_sqlite_db_file_path(database_url)
    if path is None:
        return

    parent = path.parent
    if str(parent) in {"", "."}:
        return
    parent.mkdir(parents=True, exist_ok=True)
