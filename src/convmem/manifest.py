"""Manifest Store — durable per-project registry of sessions and derivatives.

One ``manifest.json`` per project.  Every mutation is read-modify-write on
the in-memory model followed by an atomic save (temp file + rename), so a
crash mid-write leaves the previous manifest intact.  The store does not
serialize concurrent writers itself; callers hold a lock from
:mod:`convmem.locks` around multi-step operations.
"""

from __future__ import annotations

import contextlib
import logging
import re
from collections.abc import Generator
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from .allocation import AllocationStrategy
from .errors import (
    CompositionNotFound,
    ManifestCorruption,
    ProjectNotFound,
    SessionNotFound,
    StorageError,
    ValidationFailed,
    VersionNotFound,
)
from .settings import CompressionLevel, CompressionSettings, TierPreset
from .storage import StorageLayout, atomic_write_text, display_name, remove_path, utc_now

_log = logging.getLogger(__name__)

MANIFEST_VERSION = "1.0.0"
ORIGINAL_VERSION_ID = "original"
PARTS_VERSION_ID = "auto-parts"

_VERSION_ID = re.compile(r"^part(\d+)_v(\d+)$")


def version_number(version_id: str) -> int | None:
    """Running number of a ``part{N}_v{MMM}`` id, or None for other ids."""
    match = _VERSION_ID.match(version_id)
    return int(match.group(2)) if match else None


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class MessageRange(BaseModel):
    """Inclusive slice ``[start_index, end_index]`` of the original log."""

    start_index: int = Field(ge=0)
    end_index: int = Field(ge=0)
    start_message_id: str | None = None
    end_message_id: str | None = None
    start_timestamp: str | None = None
    end_timestamp: str | None = None

    @property
    def message_count(self) -> int:
        return self.end_index - self.start_index + 1

    def same_span(self, other: MessageRange) -> bool:
        return (
            self.start_index == other.start_index
            and self.end_index == other.end_index
            and self.start_message_id == other.start_message_id
            and self.end_message_id == other.end_message_id
        )


class TierResult(BaseModel):
    end_percent: int
    compaction_ratio: float
    aggressiveness: str
    input_messages: int
    output_messages: int
    input_tokens: int
    output_tokens: int


class KeepitStats(BaseModel):
    total: int = 0
    surviving: int = 0
    summarized: int = 0


class DerivativeRecord(BaseModel):
    """One compression result.  Only ``used_in_compositions`` changes after creation."""

    version_id: str
    part_number: int = Field(ge=1)
    compression_level: CompressionLevel
    settings: CompressionSettings
    message_range: MessageRange
    file: str
    created_at: str = Field(default_factory=utc_now)
    input_tokens: int = Field(ge=0)
    input_messages: int = Field(ge=0)
    output_tokens: int = Field(ge=0)
    output_messages: int = Field(ge=0)
    compression_ratio: float
    processing_time_ms: int = 0
    keepit_stats: KeepitStats = Field(default_factory=KeepitStats)
    file_sizes: dict[str, int] = Field(default_factory=dict)
    tier_results: list[TierResult] = Field(default_factory=list)
    used_in_compositions: int = Field(default=0, ge=0)


class WeightChange(BaseModel):
    old_weight: float
    new_weight: float
    changed_at: str = Field(default_factory=utc_now)


class PinnedMarker(BaseModel):
    marker_id: str
    message_id: str | None
    weight: float = Field(ge=0, le=1)
    content: str
    position_start: int = 0
    position_end: int = 0
    created_at: str = Field(default_factory=utc_now)
    history: list[WeightChange] = Field(default_factory=list)


class SessionMetadata(BaseModel):
    cwd: str | None = None
    git_branch: str | None = None
    project_name: str | None = None
    client_version: str | None = None


class SessionEntry(BaseModel):
    session_id: str
    original_file: str
    linked_file: str | None = None
    link_type: str | None = None
    original_tokens: int = Field(default=0, ge=0)
    original_messages: int = Field(default=0, ge=0)
    first_timestamp: str | None = None
    last_timestamp: str | None = None
    registered_at: str = Field(default_factory=utc_now)
    last_accessed: str = Field(default_factory=utc_now)
    last_synced_message_id: str | None = None
    last_synced_timestamp: str | None = None
    metadata: SessionMetadata = Field(default_factory=SessionMetadata)
    keepit_markers: list[PinnedMarker] = Field(default_factory=list)
    compressions: list[DerivativeRecord] = Field(default_factory=list)
    # Highest version number ever issued per part; survives deletions.
    version_counters: dict[int, int] = Field(default_factory=dict)

    def find_version(self, version_id: str) -> DerivativeRecord | None:
        for record in self.compressions:
            if record.version_id == version_id:
                return record
        return None

    def find_marker(self, marker_id: str) -> PinnedMarker | None:
        for marker in self.keepit_markers:
            if marker.marker_id == marker_id:
                return marker
        return None


class PartChoice(BaseModel):
    """One slice of a part-wise component: a part's derivative, or the uncompressed tail."""

    part_number: int | None = None
    version_id: str
    start_index: int = Field(ge=0)
    end_index: int = Field(ge=0)
    tokens: int = Field(default=0, ge=0)
    message_count: int = Field(default=0, ge=0)

    @property
    def is_tail(self) -> bool:
        return self.version_id == ORIGINAL_VERSION_ID


class ComponentRecord(BaseModel):
    session_id: str
    requested_version: str = "auto"
    version_id: str
    order: int
    token_allocation: int
    actual_tokens: int
    message_count: int = 0
    overflow: bool = False
    parts: list[PartChoice] = Field(default_factory=list)

    def cited_versions(self) -> list[str]:
        """Derivative ids this component renders; the original log is not counted."""
        if self.parts:
            return [p.version_id for p in self.parts if not p.is_tail]
        if self.version_id == ORIGINAL_VERSION_ID:
            return []
        return [self.version_id]


class CompositionRecord(BaseModel):
    composition_id: str
    name: str
    sanitized_name: str
    budget: int = Field(gt=0)
    strategy: AllocationStrategy
    components: list[ComponentRecord]
    total_tokens: int = 0
    formats: list[str] = Field(default_factory=list)
    files: dict[str, str] = Field(default_factory=dict)
    warnings: list[str] = Field(default_factory=list)
    created_at: str = Field(default_factory=utc_now)
    use_count: int = 0
    last_used_at: str | None = None

    def cites(self, session_id: str, version_id: str) -> bool:
        return any(
            c.session_id == session_id and version_id in c.cited_versions()
            for c in self.components
        )


class ProjectSettings(BaseModel):
    default_compression_preset: TierPreset = TierPreset.STANDARD
    auto_register_new_sessions: bool = False
    keepit_decay_enabled: bool = True


class Manifest(BaseModel):
    version: str = MANIFEST_VERSION
    project_id: str
    original_path: str | None = None
    display_name: str = ""
    created_at: str = Field(default_factory=utc_now)
    last_modified: str = Field(default_factory=utc_now)
    sessions: dict[str, SessionEntry] = Field(default_factory=dict)
    compositions: dict[str, CompositionRecord] = Field(default_factory=dict)
    settings: ProjectSettings = Field(default_factory=ProjectSettings)

    def compositions_citing(self, session_id: str, version_id: str) -> list[str]:
        return [
            cid for cid, comp in self.compositions.items() if comp.cites(session_id, version_id)
        ]


def _check_consistency(manifest: Manifest) -> None:
    for key, entry in manifest.sessions.items():
        if key != entry.session_id:
            msg = f"session key {key!r} does not match session_id {entry.session_id!r}"
            raise ManifestCorruption(manifest.project_id, msg)
        seen: set[str] = set()
        for record in entry.compressions:
            if record.version_id in seen:
                msg = f"duplicate version {record.version_id!r} in session {key!r}"
                raise ManifestCorruption(manifest.project_id, msg)
            seen.add(record.version_id)
    for key, comp in manifest.compositions.items():
        if key != comp.composition_id:
            msg = f"composition key {key!r} does not match composition_id"
            raise ManifestCorruption(manifest.project_id, msg)


def check_partition(entry: SessionEntry, record: DerivativeRecord) -> None:
    """Reject a record that would break the contiguous part layout of *entry*."""
    same_part = [r for r in entry.compressions if r.part_number == record.part_number]
    if same_part:
        if not same_part[0].message_range.same_span(record.message_range):
            msg = f"part {record.part_number} already covers a different message range"
            raise ValidationFailed("message_range", msg)
        return
    highest = max((r.part_number for r in entry.compressions), default=0)
    if record.part_number != highest + 1:
        msg = f"next part must be {highest + 1}, got {record.part_number}"
        raise ValidationFailed("part_number", msg)
    expected_start = 0
    if highest:
        last = next(r for r in entry.compressions if r.part_number == highest)
        expected_start = last.message_range.end_index + 1
    rng = record.message_range
    if rng.start_index != expected_start or rng.end_index < rng.start_index:
        msg = f"part {record.part_number} must start at index {expected_start}"
        raise ValidationFailed("message_range", msg)


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class ManifestStore:
    """Loads and atomically saves project manifests under a :class:`StorageLayout`."""

    def __init__(self, layout: StorageLayout) -> None:
        self._layout = layout

    @property
    def layout(self) -> StorageLayout:
        return self._layout

    # -- whole-document operations ------------------------------------------

    def exists(self, project_id: str) -> bool:
        return self._layout.manifest_path(project_id).is_file()

    def load(self, project_id: str) -> Manifest:
        path = self._layout.manifest_path(project_id)
        if not path.is_file():
            raise ProjectNotFound(project_id)
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise StorageError("read", str(path), str(exc)) from exc
        try:
            manifest = Manifest.model_validate_json(text)
        except ValidationError as exc:
            raise ManifestCorruption(project_id, str(exc.errors()[0]["msg"])) from exc
        _check_consistency(manifest)
        return manifest

    def load_or_create(self, project_id: str, original_path: str | None = None) -> Manifest:
        if self.exists(project_id):
            return self.load(project_id)
        self._layout.ensure_project(project_id)
        manifest = Manifest(
            project_id=project_id,
            original_path=original_path,
            display_name=display_name(project_id),
        )
        self.save(project_id, manifest)
        _log.info("Created manifest for project %s", project_id)
        return manifest

    def save(self, project_id: str, manifest: Manifest) -> None:
        if manifest.project_id != project_id:
            msg = f"manifest belongs to {manifest.project_id!r}"
            raise ManifestCorruption(project_id, msg)
        _check_consistency(manifest)
        manifest.last_modified = utc_now()
        atomic_write_text(
            self._layout.manifest_path(project_id), manifest.model_dump_json(indent=2) + "\n"
        )

    def delete(self, project_id: str) -> bool:
        return remove_path(self._layout.manifest_path(project_id))

    def list_projects(self) -> list[str]:
        return self._layout.list_project_ids()

    @contextlib.contextmanager
    def edit(self, project_id: str) -> Generator[Manifest, None, None]:
        """Read-modify-write: the manifest is saved only if the block succeeds."""
        manifest = self.load(project_id)
        yield manifest
        self.save(project_id, manifest)

    # -- sessions ------------------------------------------------------------

    def get_session(self, project_id: str, session_id: str) -> SessionEntry | None:
        if not self.exists(project_id):
            return None
        return self.load(project_id).sessions.get(session_id)

    def require_session(self, project_id: str, session_id: str) -> SessionEntry:
        entry = self.get_session(project_id, session_id)
        if entry is None:
            raise SessionNotFound(session_id, project_id)
        return entry

    def upsert_session(self, project_id: str, entry: SessionEntry) -> SessionEntry:
        with self.edit(project_id) as manifest:
            manifest.sessions[entry.session_id] = entry
        return entry

    def remove_session(self, project_id: str, session_id: str) -> SessionEntry:
        with self.edit(project_id) as manifest:
            entry = manifest.sessions.pop(session_id, None)
            if entry is None:
                raise SessionNotFound(session_id, project_id)
        return entry

    def list_sessions(self, project_id: str) -> list[SessionEntry]:
        return list(self.load(project_id).sessions.values())

    def touch_session(self, project_id: str, session_id: str) -> SessionEntry:
        with self.edit(project_id) as manifest:
            entry = _session(manifest, session_id)
            entry.last_accessed = utc_now()
        return entry

    # -- derivatives ---------------------------------------------------------

    def append_derivative(
        self, project_id: str, session_id: str, record: DerivativeRecord
    ) -> DerivativeRecord:
        with self.edit(project_id) as manifest:
            entry = _session(manifest, session_id)
            if entry.find_version(record.version_id) is not None:
                msg = f"version {record.version_id} already recorded"
                raise ValidationFailed("version_id", msg)
            check_partition(entry, record)
            entry.compressions.append(record)
            number = version_number(record.version_id)
            if number is not None:
                issued = entry.version_counters.get(record.part_number, 0)
                entry.version_counters[record.part_number] = max(issued, number)
            entry.last_accessed = utc_now()
        return record

    def remove_derivative(
        self, project_id: str, session_id: str, version_id: str
    ) -> DerivativeRecord:
        with self.edit(project_id) as manifest:
            entry = _session(manifest, session_id)
            record = entry.find_version(version_id)
            if record is None:
                raise VersionNotFound(version_id, session_id)
            entry.compressions.remove(record)
        return record

    def increment_usage(
        self, project_id: str, refs: list[tuple[str, str]], delta: int = 1
    ) -> None:
        """Adjust ``used_in_compositions`` on each cited real record."""
        with self.edit(project_id) as manifest:
            _apply_usage(manifest, refs, delta)

    # -- compositions --------------------------------------------------------

    def put_composition(self, project_id: str, record: CompositionRecord) -> None:
        """Store *record* and count one use on every derivative it cites."""
        with self.edit(project_id) as manifest:
            manifest.compositions[record.composition_id] = record
            _apply_usage(manifest, _refs(record), 1)

    def remove_composition(self, project_id: str, composition_id: str) -> CompositionRecord:
        with self.edit(project_id) as manifest:
            record = manifest.compositions.pop(composition_id, None)
            if record is None:
                raise CompositionNotFound(composition_id)
            _apply_usage(manifest, _refs(record), -1)
        return record

    def record_composition_use(self, project_id: str, composition_id: str) -> CompositionRecord:
        with self.edit(project_id) as manifest:
            record = manifest.compositions.get(composition_id)
            if record is None:
                raise CompositionNotFound(composition_id)
            record.use_count += 1
            record.last_used_at = utc_now()
        return record

    # -- settings ------------------------------------------------------------

    def get_settings(self, project_id: str) -> ProjectSettings:
        return self.load(project_id).settings

    def update_settings(self, project_id: str, **changes: Any) -> ProjectSettings:
        with self.edit(project_id) as manifest:
            data = manifest.settings.model_dump()
            data.update(changes)
            try:
                manifest.settings = ProjectSettings.model_validate(data)
            except ValidationError as exc:
                raise ValidationFailed("settings", str(exc.errors()[0]["msg"])) from exc
        return manifest.settings


def _session(manifest: Manifest, session_id: str) -> SessionEntry:
    entry = manifest.sessions.get(session_id)
    if entry is None:
        raise SessionNotFound(session_id, manifest.project_id)
    return entry


def _apply_usage(manifest: Manifest, refs: list[tuple[str, str]], delta: int) -> None:
    for session_id, version_id in refs:
        entry = manifest.sessions.get(session_id)
        record = entry.find_version(version_id) if entry else None
        if record is not None:
            record.used_in_compositions = max(0, record.used_in_compositions + delta)


def _refs(record: CompositionRecord) -> list[tuple[str, str]]:
    return [(c.session_id, v) for c in record.components for v in c.cited_versions()]
