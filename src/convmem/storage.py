"""On-disk layout and atomic file helpers."""

from __future__ import annotations

import json
import logging
import os
import shutil
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .errors import StorageError

_log = logging.getLogger(__name__)

DEFAULT_HOME = Path.home() / ".convmem"
TMP_SUFFIX = ".tmp"


def utc_now() -> str:
    """Current time as an ISO-8601 UTC string."""
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


def display_name(project_id: str) -> str:
    """Human label for an encoded project id (``-home-user-proj`` → ``proj``)."""
    parts = [p for p in project_id.split("-") if p]
    return parts[-1] if parts else project_id


# ---------------------------------------------------------------------------
# Atomic writes
# ---------------------------------------------------------------------------


def atomic_write_text(path: Path, text: str) -> Path:
    """Write *text* to a sibling temp file, then rename it over *path*.

    Readers only ever see the previous content or the new content.
    """
    tmp = path.with_name(path.name + TMP_SUFFIX)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp.write_text(text, encoding="utf-8")
        os.replace(tmp, path)
    except OSError as exc:
        tmp.unlink(missing_ok=True)
        raise StorageError("write", str(path), str(exc)) from exc
    return path


def atomic_write_json(path: Path, data: Any) -> Path:
    return atomic_write_text(path, json.dumps(data, indent=2, ensure_ascii=False) + "\n")


def remove_path(path: Path) -> bool:
    """Remove a file, symlink or directory tree. Returns False if nothing existed."""
    try:
        if path.is_symlink() or path.is_file():
            path.unlink()
            return True
        if path.is_dir():
            shutil.rmtree(path)
            return True
    except OSError as exc:
        raise StorageError("remove", str(path), str(exc)) from exc
    return False


# ---------------------------------------------------------------------------
# Layout
# ---------------------------------------------------------------------------


class StorageLayout:
    """Path arithmetic for the convmem data directory.

    ::

        <home>/config.json
        <home>/projects/<project>/manifest.json
        <home>/projects/<project>/originals/<session>.jsonl
        <home>/projects/<project>/summaries/<session>/<version>.{md,jsonl}
        <home>/projects/<project>/composed/<name>/...
        <home>/cache/
    """

    def __init__(self, home: Path | str | None = None) -> None:
        self._home = Path(home).expanduser() if home else DEFAULT_HOME

    @property
    def home(self) -> Path:
        return self._home

    @property
    def config_path(self) -> Path:
        return self._home / "config.json"

    @property
    def projects_dir(self) -> Path:
        return self._home / "projects"

    @property
    def cache_dir(self) -> Path:
        return self._home / "cache"

    def project_dir(self, project_id: str) -> Path:
        return self.projects_dir / project_id

    def manifest_path(self, project_id: str) -> Path:
        return self.project_dir(project_id) / "manifest.json"

    def originals_dir(self, project_id: str) -> Path:
        return self.project_dir(project_id) / "originals"

    def original_link(self, project_id: str, session_id: str) -> Path:
        return self.originals_dir(project_id) / f"{session_id}.jsonl"

    def summaries_dir(self, project_id: str, session_id: str | None = None) -> Path:
        base = self.project_dir(project_id) / "summaries"
        return base / session_id if session_id else base

    def version_file(self, project_id: str, session_id: str, version_id: str, fmt: str) -> Path:
        return self.summaries_dir(project_id, session_id) / f"{version_id}.{fmt}"

    def composed_dir(self, project_id: str) -> Path:
        return self.project_dir(project_id) / "composed"

    def composition_dir(self, project_id: str, sanitized_name: str) -> Path:
        return self.composed_dir(project_id) / sanitized_name

    def ensure_root(self) -> None:
        for d in (self.projects_dir, self.cache_dir):
            d.mkdir(parents=True, exist_ok=True)

    def ensure_project(self, project_id: str) -> Path:
        self.ensure_root()
        for d in (
            self.originals_dir(project_id),
            self.summaries_dir(project_id),
            self.composed_dir(project_id),
        ):
            d.mkdir(parents=True, exist_ok=True)
        return self.project_dir(project_id)

    def list_project_ids(self) -> list[str]:
        if not self.projects_dir.is_dir():
            return []
        return sorted(
            p.name for p in self.projects_dir.iterdir() if (p / "manifest.json").is_file()
        )

    def link_original(
        self,
        source: Path,
        project_id: str,
        session_id: str,
        use_symlinks: bool = True,
    ) -> tuple[str, Path]:
        """Expose *source* under ``originals/``; returns ``(link_type, path)``.

        Falls back to a copy when the platform refuses symlinks.
        """
        dest = self.original_link(project_id, session_id)
        dest.parent.mkdir(parents=True, exist_ok=True)
        remove_path(dest)
        if use_symlinks:
            try:
                dest.symlink_to(source.resolve())
                return "symlink", dest
            except (NotImplementedError, OSError) as exc:
                _log.warning("Symlink refused (%s), copying %s instead", exc, source)
        try:
            shutil.copy2(source, dest)
        except OSError as exc:
            raise StorageError("copy", str(source), str(exc)) from exc
        return "copy", dest
