"""Session registry — register original logs with a project and keep them in sync."""

from __future__ import annotations

import contextlib
import logging
from collections.abc import Generator
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from .config import MemoryConfig
from .errors import (
    CompressionInProgress,
    ConvMemError,
    LockBusy,
    OriginalFileNotFound,
    SessionAlreadyRegistered,
)
from .locks import LockManager, OperationKind
from .log_reader import LogMessage, ParsedLog, read_log
from .manifest import ManifestStore, SessionEntry
from .markers import find_markers, merge_markers
from .storage import remove_path, utc_now

_log = logging.getLogger(__name__)

DEFAULT_STALE_DAYS = 30


@dataclass
class BatchFailure:
    id: str
    code: str
    message: str


@dataclass
class BatchReport:
    """Per-item outcome of a batch; one failure never aborts the others."""

    succeeded: list[str] = field(default_factory=list)
    failed: list[BatchFailure] = field(default_factory=list)

    @property
    def all_succeeded(self) -> bool:
        return not self.failed

    def to_dict(self) -> dict[str, Any]:
        return {
            "succeeded": self.succeeded,
            "failed": [{"id": f.id, "code": f.code, "message": f.message} for f in self.failed],
        }


@dataclass
class UnregisteredSession:
    session_id: str
    path: Path
    size_bytes: int
    modified_at: str


@dataclass
class NewMessages:
    session_id: str
    messages: list[LogMessage]
    last_synced_message_id: str | None

    @property
    def count(self) -> int:
        return len(self.messages)


@dataclass
class SyncResult:
    session_id: str
    new_messages: int
    total_messages: int
    last_synced_message_id: str | None


def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _apply_log(entry: SessionEntry, log: ParsedLog) -> None:
    """Copy counts, timestamps, metadata and markers from a fresh parse."""
    entry.original_messages = len(log.messages)
    entry.original_tokens = log.total_tokens
    entry.first_timestamp = log.first_timestamp
    entry.last_timestamp = log.last_timestamp
    entry.metadata = log.metadata()
    entry.keepit_markers = merge_markers(entry.keepit_markers, find_markers(log.messages))
    if log.messages:
        entry.last_synced_message_id = log.messages[-1].uuid
        entry.last_synced_timestamp = log.messages[-1].timestamp


class SessionRegistry:
    """Adds, refreshes and removes sessions in project manifests."""

    def __init__(
        self,
        store: ManifestStore,
        locks: LockManager,
        config: MemoryConfig | None = None,
    ) -> None:
        self._store = store
        self._locks = locks
        self._config = config or MemoryConfig()

    @property
    def logs_dir(self) -> Path:
        return Path(self._config.storage.logs_dir).expanduser()

    def default_log_path(self, project_id: str, session_id: str) -> Path:
        return self.logs_dir / project_id / f"{session_id}.jsonl"

    @contextlib.contextmanager
    def _guard(
        self, project_id: str, session_id: str, operation: OperationKind
    ) -> Generator[None, None, None]:
        try:
            token = self._locks.acquire(project_id, session_id, operation, holder="sessions")
        except LockBusy as exc:
            raise CompressionInProgress(session_id, operation.value) from exc
        try:
            yield
        finally:
            self._locks.release(token)

    # -- registration --------------------------------------------------------

    def register_session(
        self,
        project_id: str,
        session_id: str,
        original_file: Path | str | None = None,
    ) -> SessionEntry:
        """Parse the session's log, link it under ``originals/`` and record it."""
        path = (
            Path(original_file) if original_file else self.default_log_path(project_id, session_id)
        )
        if not path.is_file():
            raise OriginalFileNotFound(str(path))

        with self._guard(project_id, session_id, OperationKind.IMPORT):
            manifest = self._store.load_or_create(
                project_id, original_path=str(self.logs_dir / project_id)
            )
            if session_id in manifest.sessions:
                raise SessionAlreadyRegistered(session_id, project_id)

            log = read_log(path)
            link_type, link = self._store.layout.link_original(
                path, project_id, session_id, self._config.storage.use_symlinks
            )
            entry = SessionEntry(
                session_id=session_id,
                original_file=str(path.resolve()),
                linked_file=str(link),
                link_type=link_type,
            )
            _apply_log(entry, log)
            self._store.upsert_session(project_id, entry)

        _log.info(
            "Registered %s in %s: %d message(s), %d token(s), %d pinned marker(s)",
            session_id, project_id, entry.original_messages, entry.original_tokens,
            len(entry.keepit_markers),
        )
        return entry

    def register_sessions(self, project_id: str, session_ids: list[str]) -> BatchReport:
        report = BatchReport()
        for session_id in session_ids:
            try:
                self.register_session(project_id, session_id)
            except ConvMemError as exc:
                _log.warning("Could not register %s: %s", session_id, exc.message)
                report.failed.append(BatchFailure(session_id, exc.code, exc.message))
            else:
                report.succeeded.append(session_id)
        return report

    def unregister_session(
        self, project_id: str, session_id: str, delete_files: bool = False
    ) -> SessionEntry:
        """Forget a session; with *delete_files* its link and derivatives go too."""
        with self._guard(project_id, session_id, OperationKind.COMPRESSION):
            entry = self._store.remove_session(project_id, session_id)
            if delete_files:
                layout = self._store.layout
                remove_path(layout.original_link(project_id, session_id))
                remove_path(layout.summaries_dir(project_id, session_id))
        _log.info("Unregistered %s from %s", session_id, project_id)
        return entry

    def refresh_session(self, project_id: str, session_id: str) -> SessionEntry:
        """Re-parse the original log and update counts, metadata and markers."""
        with self._guard(project_id, session_id, OperationKind.IMPORT):
            entry = self._store.require_session(project_id, session_id)
            log = read_log(entry.original_file)
            with self._store.edit(project_id) as manifest:
                entry = manifest.sessions[session_id]
                _apply_log(entry, log)
                entry.last_accessed = utc_now()
        return entry

    # -- queries -------------------------------------------------------------

    def get_session(
        self, project_id: str, session_id: str, update_last_accessed: bool = True
    ) -> SessionEntry:
        if update_last_accessed:
            self._store.require_session(project_id, session_id)
            return self._store.touch_session(project_id, session_id)
        return self._store.require_session(project_id, session_id)

    def list_sessions(self, project_id: str) -> list[SessionEntry]:
        """Most recent activity first."""
        return sorted(
            self._store.list_sessions(project_id),
            key=lambda e: e.last_timestamp or e.registered_at,
            reverse=True,
        )

    def find_unregistered_sessions(self, project_id: str) -> list[UnregisteredSession]:
        """Logs under ``<logs_dir>/<project>`` not yet in the manifest, newest first."""
        directory = self.logs_dir / project_id
        if not directory.is_dir():
            return []
        known: set[str] = set()
        if self._store.exists(project_id):
            known = set(self._store.load(project_id).sessions)
        found: list[tuple[float, UnregisteredSession]] = []
        for path in directory.glob("*.jsonl"):
            if path.stem in known or not path.is_file():
                continue
            stat = path.stat()
            modified = datetime.fromtimestamp(stat.st_mtime, UTC)
            found.append((
                stat.st_mtime,
                UnregisteredSession(
                    session_id=path.stem,
                    path=path,
                    size_bytes=stat.st_size,
                    modified_at=modified.isoformat().replace("+00:00", "Z"),
                ),
            ))
        found.sort(key=lambda item: item[0], reverse=True)
        return [session for _, session in found]

    def auto_register_enabled(self, project_id: str) -> bool:
        """Either the global default or the project's own setting switches it on."""
        if self._config.defaults.auto_register_sessions:
            return True
        if not self._store.exists(project_id):
            return False
        return self._store.get_settings(project_id).auto_register_new_sessions

    def auto_register(self, project_id: str) -> BatchReport:
        """Register every discovered log when auto-registration is on; else a no-op."""
        if not self.auto_register_enabled(project_id):
            return BatchReport()
        found = [s.session_id for s in self.find_unregistered_sessions(project_id)]
        if found:
            _log.info("Auto-registering %d session(s) in %s", len(found), project_id)
        return self.register_sessions(project_id, found)

    def stale_sessions(
        self, project_id: str, days: int = DEFAULT_STALE_DAYS, now: datetime | None = None
    ) -> list[SessionEntry]:
        """Sessions not accessed for at least *days* days."""
        cutoff = (now or datetime.now(UTC)) - timedelta(days=days)
        stale: list[SessionEntry] = []
        for entry in self._store.list_sessions(project_id):
            accessed = _parse_time(entry.last_accessed)
            if accessed is not None and accessed <= cutoff:
                stale.append(entry)
        return stale

    def project_stats(self, project_id: str) -> dict[str, Any]:
        manifest = self._store.load(project_id)
        sessions = list(manifest.sessions.values())
        records = [r for e in sessions for r in e.compressions]
        first = [e.first_timestamp for e in sessions if e.first_timestamp]
        last = [e.last_timestamp for e in sessions if e.last_timestamp]
        return {
            "project_id": project_id,
            "display_name": manifest.display_name,
            "session_count": len(sessions),
            "total_messages": sum(e.original_messages for e in sessions),
            "total_original_tokens": sum(e.original_tokens for e in sessions),
            "derivative_count": len(records),
            "total_compressed_tokens": sum(r.output_tokens for r in records),
            "composition_count": len(manifest.compositions),
            "pinned_marker_count": sum(len(e.keepit_markers) for e in sessions),
            "first_timestamp": min(first) if first else None,
            "last_timestamp": max(last) if last else None,
        }

    # -- sync ----------------------------------------------------------------

    def detect_new_messages(self, project_id: str, session_id: str) -> NewMessages:
        """Messages after the sync high-water mark (by id, else by timestamp)."""
        entry = self._store.require_session(project_id, session_id)
        messages = read_log(entry.original_file).messages
        new = messages
        if entry.last_synced_message_id:
            index = next(
                (i for i, m in enumerate(messages) if m.uuid == entry.last_synced_message_id),
                None,
            )
            if index is not None:
                new = messages[index + 1 :]
            elif entry.last_synced_timestamp:
                new = [
                    m for m in messages
                    if m.timestamp and m.timestamp > entry.last_synced_timestamp
                ]
        elif entry.last_synced_timestamp:
            new = [m for m in messages if m.timestamp and m.timestamp > entry.last_synced_timestamp]
        return NewMessages(
            session_id=session_id,
            messages=new,
            last_synced_message_id=entry.last_synced_message_id,
        )

    def sync_session(self, project_id: str, session_id: str) -> SyncResult:
        """Advance the high-water mark over newly appended messages."""
        with self._guard(project_id, session_id, OperationKind.IMPORT):
            detected = self.detect_new_messages(project_id, session_id)
            if detected.count:
                entry = self._store.require_session(project_id, session_id)
                log = read_log(entry.original_file)
                with self._store.edit(project_id) as manifest:
                    entry = manifest.sessions[session_id]
                    _apply_log(entry, log)
                _log.info("Synced %d new message(s) into %s", detected.count, session_id)
            else:
                entry = self._store.require_session(project_id, session_id)
        return SyncResult(
            session_id=session_id,
            new_messages=detected.count,
            total_messages=entry.original_messages,
            last_synced_message_id=entry.last_synced_message_id,
        )

    def sync_all(self, project_id: str) -> BatchReport:
        """Sync every session, registering new logs first when auto-registration is on."""
        report = BatchReport(failed=self.auto_register(project_id).failed)
        for entry in self._store.list_sessions(project_id):
            try:
                self.sync_session(project_id, entry.session_id)
            except ConvMemError as exc:
                report.failed.append(BatchFailure(entry.session_id, exc.code, exc.message))
            else:
                report.succeeded.append(entry.session_id)
        return report
