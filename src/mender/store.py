"""Durable JSON documents — atomic replace, lazy load, single writer.

Each store owns exactly one JsonStore. The document is loaded on first
access and cached; every mutation happens inside ``mutate()``, which
holds the store's lock for the whole read-modify-write and rewrites the
file atomically (write ``<name>.tmp`` then ``os.replace``). A leftover
``.tmp`` from an interrupted write is used when the main file is
missing or unreadable.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


def atomic_write(path: Path, content: str) -> None:
    """Write content to path via a temp file + rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    with open(tmp, "w") as f:
        f.write(content)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp, path)


def read_with_fallback(path: Path) -> str | None:
    """Read path, falling back to its .tmp sibling. None if neither parses."""
    tmp = path.with_name(path.name + ".tmp")
    for candidate in (path, tmp):
        if not candidate.exists():
            continue
        try:
            text = candidate.read_text()
            json.loads(text)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Unreadable store file %s: %s", candidate, exc)
            continue
        if candidate is tmp:
            logger.warning("Recovered %s from interrupted write", path.name)
        return text
    return None


def append_jsonl(path: Path, record: dict) -> None:
    """Append one JSON record to a JSONL history file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "a") as f:
        f.write(json.dumps(record) + "\n")


def read_jsonl(path: Path, limit: int | None = None) -> list[dict]:
    """Read records from a JSONL file, newest last. Skips corrupt lines."""
    if not path.exists():
        return []
    records = []
    for line in path.read_text().splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            records.append(json.loads(line))
        except json.JSONDecodeError:
            logger.warning("Skipping corrupt line in %s", path.name)
    if limit is not None:
        records = records[-limit:]
    return records


class JsonStore:
    """One JSON document on disk with a single writer.

    ``path=None`` keeps the document in memory only, which is what the
    tests and in-memory stores use.
    """

    def __init__(
        self,
        path: str | Path | None,
        default: Callable[[], Any] = dict,
    ) -> None:
        self._path = Path(path) if path is not None else None
        self._default = default
        self._data: Any = None
        self._loaded = False
        self._lock = threading.RLock()

    @property
    def path(self) -> Path | None:
        return self._path

    def _load(self) -> None:
        if self._loaded:
            return
        text = read_with_fallback(self._path) if self._path else None
        self._data = json.loads(text) if text is not None else self._default()
        self._loaded = True

    def read(self) -> Any:
        """Return the cached document (loaded lazily). Do not mutate it."""
        with self._lock:
            self._load()
            return self._data

    @contextmanager
    def mutate(self) -> Iterator[Any]:
        """Yield the document for modification, then persist it.

        The document is written only if the body completes without
        raising; an exception leaves the file untouched and reloads the
        cache from disk on next access.
        """
        with self._lock:
            self._load()
            try:
                yield self._data
            except BaseException:
                if self._path is not None:
                    self._loaded = False
                raise
            self._flush()

    def replace(self, data: Any) -> None:
        with self._lock:
            self._data = data
            self._loaded = True
            self._flush()

    def _flush(self) -> None:
        if self._path is None:
            return
        atomic_write(self._path, json.dumps(self._data, indent=2))
