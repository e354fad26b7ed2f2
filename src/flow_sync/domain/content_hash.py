from __future__ import annotations

import hashlib
import json

from flow_sync.schemas_notes import Note


CONTENT_HASH_LENGTH = 16


def sha256_hex(data: str) -> str:
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def _semantic_fields(note: Note) -> dict[str, object]:
    # id, timestamps, sync metadata and unknown extras never affect the hash.
    return {
        "title": note.title,
        "content": note.content,
        "tags": list(note.tags),
        "metadata": note.metadata,
    }


def compute_content_hash(note: Note) -> str:
    """Deterministic digest of a note's user-visible content.

    Keys are sorted so dict ordering in `content`/`metadata` does not matter;
    tag order does.
    """

    canonical = json.dumps(
        _semantic_fields(note),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )
    return sha256_hex(canonical)[:CONTENT_HASH_LENGTH]


def has_content_changed(a: Note, b: Note) -> bool:
    return compute_content_hash(a) != compute_content_hash(b)


def matches_hash(note: Note, content_hash: str) -> bool:
    return compute_content_hash(note) == content_hash
