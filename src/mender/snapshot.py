"""Snapshot + rollback of the project's source and test trees.

  workspace/snapshots/
  └── snap_<millis>_<hex>/
      ├── meta.json
      └── files/<copy of every tracked file, relative to the project root>

Tracked files are those under the included directories with an
allowed extension, skipping VCS, cache and virtualenv directories, plus
any files named explicitly when the snapshot is taken. Rollback restores
every saved file and removes tracked or named files that did not exist
when the snapshot was taken.
"""

from __future__ import annotations

import json
import logging
import shutil
import time
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Protocol
from uuid import uuid4

logger = logging.getLogger(__name__)

SKIP_DIRS = {".git", "__pycache__", ".venv", "venv", "node_modules", ".mypy_cache", ".pytest_cache"}
META_FILE = "meta.json"


class SnapshotError(Exception):
    """Unknown or invalid snapshot id."""


class Snapshotter(Protocol):
    """Snapshot/rollback boundary used by the implement and verify phases."""

    def create_snapshot(self, label: str, files: list[str] | None = None) -> str:
        ...

    def rollback(self, snapshot_id: str, reason: str) -> None:
        ...


class DirectorySnapshotter:
    """Copies tracked files aside and restores them on demand."""

    def __init__(
        self,
        root: str | Path,
        snapshot_dir: str | Path,
        include: list[str] | None = None,
        extensions: list[str] | None = None,
        max_snapshots: int = 20,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._root = Path(root)
        self._snapshots = Path(snapshot_dir)
        self._include = include or ["src"]
        self._extensions = set(extensions or [".py"])
        self._max = max_snapshots
        self._clock = clock

    def _tracked_files(self) -> Iterator[Path]:
        for directory in self._include:
            base = self._root / directory
            if not base.is_dir():
                continue
            for path in sorted(base.rglob("*")):
                rel = path.relative_to(self._root)
                if any(part in SKIP_DIRS for part in rel.parts):
                    continue
                if path.is_file() and path.suffix in self._extensions:
                    yield rel

    def _named_files(self, files: list[str]) -> Iterator[Path]:
        root = self._root.resolve()
        for name in files:
            path = (root / name).resolve()
            if path.is_relative_to(root):
                yield path.relative_to(root)
            else:
                logger.warning("Not snapshotting %s: outside the project", name)

    def _path_for(self, snapshot_id: str) -> Path:
        if not snapshot_id or any(c in snapshot_id for c in ("/", "\\")) or ".." in snapshot_id:
            raise SnapshotError(f"Invalid snapshot id: {snapshot_id!r}")
        path = self._snapshots / snapshot_id
        if not (path / META_FILE).exists():
            raise SnapshotError(f"Unknown snapshot: {snapshot_id}")
        return path

    def create_snapshot(self, label: str, files: list[str] | None = None) -> str:
        """Snapshot the tracked files plus `files` (paths relative to the root)."""
        snapshot_id = f"snap_{int(self._clock() * 1000)}_{uuid4().hex[:4]}"
        target = self._snapshots / snapshot_id
        target.mkdir(parents=True)
        saved: list[str] = []
        absent: list[str] = []
        for rel in dict.fromkeys([*self._tracked_files(), *self._named_files(files or [])]):
            if not (self._root / rel).is_file():
                absent.append(rel.as_posix())
                continue
            dest = target / "files" / rel
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(self._root / rel, dest)
            saved.append(rel.as_posix())
        meta = {
            "id": snapshot_id,
            "label": label,
            "timestamp": self._clock(),
            "files": saved,
            "absent": absent,
        }
        (target / META_FILE).write_text(json.dumps(meta, indent=2))
        logger.info("Created snapshot %s (%d files): %s", snapshot_id, len(saved), label)
        self._prune(keep=snapshot_id)
        return snapshot_id

    def rollback(self, snapshot_id: str, reason: str) -> None:
        path = self._path_for(snapshot_id)
        meta = json.loads((path / META_FILE).read_text())
        saved = set(meta["files"])

        created = {rel.as_posix() for rel in self._tracked_files()} - saved
        created.update(name for name in meta.get("absent", []) if (self._root / name).is_file())
        for rel in sorted(created):
            (self._root / rel).unlink()
            logger.debug("Removed %s (created after snapshot)", rel)
        for rel in saved:
            dest = self._root / rel
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(path / "files" / rel, dest)
        logger.warning("Rolled back to %s (%d files): %s", snapshot_id, len(saved), reason)

    def list_snapshots(self) -> list[dict]:
        if not self._snapshots.is_dir():
            return []
        metas = []
        for meta_path in self._snapshots.glob(f"*/{META_FILE}"):
            try:
                meta = json.loads(meta_path.read_text())
            except (OSError, json.JSONDecodeError):
                continue
            metas.append({
                "id": meta.get("id"),
                "label": meta.get("label", ""),
                "timestamp": meta.get("timestamp") or 0,
                "file_count": len(meta.get("files", [])),
            })
        return sorted(metas, key=lambda m: m["timestamp"])

    def _prune(self, keep: str) -> None:
        snapshots = [m for m in self.list_snapshots() if m["id"] != keep]
        excess = len(snapshots) + 1 - self._max
        for meta in snapshots[: max(0, excess)]:
            shutil.rmtree(self._snapshots / meta["id"], ignore_errors=True)
            logger.debug("Pruned snapshot %s", meta["id"])
