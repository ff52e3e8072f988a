"""Version/Compression Orchestrator.

Every compression runs as one guarded transaction::

    Requested -> LockAcquired -> DeltaComputed -> Compressed -> Validated
              -> Persisted -> Released

with a ``Rejected`` branch at each gate.  The lock is released on every
exit path and a derivative record is only appended once the collaborator
output has been parsed, validated and written to disk.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import AsyncGenerator, Generator
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any

from .compressor import (
    CompressionOutput,
    CompressionRequest,
    Compressor,
    CompressorError,
    PinnedInstruction,
)
from .config import MemoryConfig
from .decay import DecayParams, DecayScenario, survives
from .delta import (
    DeltaStatus,
    compute_delta,
    delta_status,
    find_duplicate,
    next_version_id,
    part_range,
    part_versions,
    parts_by_number,
)
from .errors import (
    CannotDeleteOriginal,
    CompressionFailed,
    CompressionInProgress,
    CompressionTimeout,
    InsufficientMessages,
    InvalidFormat,
    InvalidPart,
    LockBusy,
    LogParseRejected,
    NoDelta,
    ValidationFailed,
    VersionFileNotFound,
    VersionExists,
    VersionInUse,
    VersionNotFound,
)
from .locks import LockManager, LockToken, OperationKind
from .log_reader import LogMessage, ParsedLog, read_log
from .manifest import (
    ORIGINAL_VERSION_ID,
    DerivativeRecord,
    KeepitStats,
    ManifestStore,
    MessageRange,
    SessionEntry,
)
from .markers import find_markers
from .rendering import RenderedMessage, original_markdown, version_jsonl, version_markdown
from .settings import (
    KeepitMode,
    TieredSettings,
    UniformSettings,
    compression_level,
    describe,
    effective_ratio,
    parse_settings,
)
from .storage import atomic_write_text, remove_path
from .telemetry import get_tracer, trace_compression

_log = logging.getLogger(__name__)

VERSION_FORMATS = ["md", "jsonl"]


# ---------------------------------------------------------------------------
# Transaction phases
# ---------------------------------------------------------------------------


class TxPhase(StrEnum):
    REQUESTED = "requested"
    LOCK_ACQUIRED = "lock_acquired"
    DELTA_COMPUTED = "delta_computed"
    COMPRESSED = "compressed"
    VALIDATED = "validated"
    PERSISTED = "persisted"
    REJECTED = "rejected"
    RELEASED = "released"


# The lock is released from any phase once it was acquired.
_TRANSITIONS: dict[TxPhase, list[TxPhase]] = {
    TxPhase.REQUESTED: [TxPhase.LOCK_ACQUIRED, TxPhase.REJECTED],
    TxPhase.LOCK_ACQUIRED: [TxPhase.DELTA_COMPUTED, TxPhase.REJECTED, TxPhase.RELEASED],
    TxPhase.DELTA_COMPUTED: [TxPhase.COMPRESSED, TxPhase.REJECTED, TxPhase.RELEASED],
    TxPhase.COMPRESSED: [TxPhase.VALIDATED, TxPhase.REJECTED, TxPhase.RELEASED],
    TxPhase.VALIDATED: [TxPhase.PERSISTED, TxPhase.REJECTED, TxPhase.RELEASED],
    TxPhase.PERSISTED: [TxPhase.RELEASED],
    TxPhase.REJECTED: [TxPhase.RELEASED],
    TxPhase.RELEASED: [],
}


@dataclass
class Transaction:
    project_id: str
    session_id: str
    operation: str
    phase: TxPhase = TxPhase.REQUESTED
    history: list[TxPhase] = field(default_factory=lambda: [TxPhase.REQUESTED])
    token: LockToken | None = None
    error: str | None = None

    def can_advance(self, target: TxPhase) -> bool:
        return target in _TRANSITIONS[self.phase]

    def advance(self, target: TxPhase) -> None:
        if not self.can_advance(target):
            raise ValueError(f"Invalid transition: {self.phase} -> {target}")
        self.phase = target
        self.history.append(target)
        get_tracer().record_event(f"tx.{target.value}", {"convmem.session_id": self.session_id})
        _log.debug("%s %s:%s -> %s", self.operation, self.project_id, self.session_id, target)

    def reject(self, reason: str) -> None:
        self.error = reason
        self.advance(TxPhase.REJECTED)


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass
class VersionSummary:
    """One row of :meth:`VersionManager.list_versions`; the original log included."""

    version_id: str
    part_number: int
    compression_level: str
    message_count: int
    input_tokens: int
    output_tokens: int
    compression_ratio: float
    created_at: str | None
    file: str | None
    used_in_compositions: int = 0
    record: DerivativeRecord | None = None

    @property
    def is_original(self) -> bool:
        return self.version_id == ORIGINAL_VERSION_ID

    def to_dict(self) -> dict[str, Any]:
        return {
            "version_id": self.version_id,
            "part_number": self.part_number,
            "compression_level": self.compression_level,
            "message_count": self.message_count,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "compression_ratio": self.compression_ratio,
            "created_at": self.created_at,
            "file": self.file,
            "used_in_compositions": self.used_in_compositions,
            "is_original": self.is_original,
        }


@dataclass
class PartSummary:
    part_number: int
    message_range: MessageRange
    versions: list[str]
    levels: list[str]
    smallest_output_tokens: int


@dataclass
class VersionDeletion:
    version_id: str
    deleted_files: list[str]
    affected_compositions: list[str]
    forced: bool = False


def original_summary(entry: SessionEntry) -> VersionSummary:
    return VersionSummary(
        version_id=ORIGINAL_VERSION_ID,
        part_number=0,
        compression_level=ORIGINAL_VERSION_ID,
        message_count=entry.original_messages,
        input_tokens=entry.original_tokens,
        output_tokens=entry.original_tokens,
        compression_ratio=1.0,
        created_at=entry.registered_at,
        file=entry.linked_file or entry.original_file,
    )


def record_summary(record: DerivativeRecord) -> VersionSummary:
    return VersionSummary(
        version_id=record.version_id,
        part_number=record.part_number,
        compression_level=record.compression_level.value,
        message_count=record.output_messages,
        input_tokens=record.input_tokens,
        output_tokens=record.output_tokens,
        compression_ratio=record.compression_ratio,
        created_at=record.created_at,
        file=record.file,
        used_in_compositions=record.used_in_compositions,
        record=record,
    )


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class VersionManager:
    """Creates, lists and deletes derivative versions of registered sessions."""

    def __init__(
        self,
        store: ManifestStore,
        locks: LockManager,
        compressor: Compressor,
        config: MemoryConfig | None = None,
    ) -> None:
        self._store = store
        self._locks = locks
        self._compressor = compressor
        self._config = config or MemoryConfig()
        self._decay = DecayParams.from_config(self._config.keepit_decay)

    @property
    def compressor(self) -> Compressor:
        return self._compressor

    # -- settings ------------------------------------------------------------

    def resolve_settings(self, raw: Any = None) -> UniformSettings | TieredSettings:
        """Fill configured defaults into a raw payload, then validate it."""
        if raw is None:
            raw = {}
        if isinstance(raw, dict):
            defaults = self._config.defaults
            data = dict(raw)
            data.setdefault("model", defaults.model.value)
            if "keepit_mode" not in data and "keepitMode" not in data:
                decay = defaults.keepit_decay_enabled
                data["keepit_mode"] = (KeepitMode.DECAY if decay else KeepitMode.PRESERVE_ALL).value
            tiered = data.get("mode", "tiered") == "tiered"
            if tiered and not {"tier_preset", "tierPreset"} & data.keys():
                data["tier_preset"] = defaults.compression_preset.value
            raw = data
        return parse_settings(raw)

    # -- transaction ---------------------------------------------------------

    @contextlib.asynccontextmanager
    async def _transaction(
        self, project_id: str, session_id: str, operation: str
    ) -> AsyncGenerator[Transaction, None]:
        """Hold the session's compression lock for the block; always released."""
        tx = Transaction(project_id=project_id, session_id=session_id, operation=operation)
        with trace_compression(session_id, operation):
            try:
                tx.token = self._locks.acquire(
                    project_id, session_id, OperationKind.COMPRESSION, holder=operation
                )
            except LockBusy as exc:
                tx.reject(exc.message)
                _log.info("Rejected %s for %s: lock busy", operation, session_id)
                raise CompressionInProgress(session_id) from exc
            tx.advance(TxPhase.LOCK_ACQUIRED)
            try:
                yield tx
            except Exception as exc:
                # Nothing to reject once persisted; the error still propagates.
                if tx.can_advance(TxPhase.REJECTED):
                    tx.reject(str(exc))
                _log.warning("%s of %s rejected: %s", operation, session_id, exc)
                raise
            finally:
                self._locks.release(tx.token)
                tx.advance(TxPhase.RELEASED)

    def _read_original(self, entry: SessionEntry) -> ParsedLog:
        path = Path(entry.original_file)
        if not path.is_file() and entry.linked_file:
            path = Path(entry.linked_file)
        log = read_log(path)
        threshold = self._config.compression.max_skip_rate
        report = log.report
        if report.skipped_count and report.skip_rate > threshold:
            total = report.valid_count + report.skipped_count
            raise LogParseRejected(str(path), report.skipped_count, total, threshold)
        return log

    # -- entry points ----------------------------------------------------------

    async def create_delta_compression(
        self, project_id: str, session_id: str, raw_settings: Any = None
    ) -> DerivativeRecord:
        """Compress every message after the highest existing part into a new part."""
        settings = self.resolve_settings(raw_settings)
        async with self._transaction(project_id, session_id, "compress") as tx:
            entry = self._store.require_session(project_id, session_id)
            log = self._read_original(entry)
            delta = compute_delta(entry, log.messages)
            if not delta.has_delta:
                raise NoDelta(session_id, delta.previous_part_number)
            minimum = self._config.compression.min_messages
            if delta.delta_count < minimum:
                raise InsufficientMessages(session_id, delta.delta_count, minimum)
            tx.advance(TxPhase.DELTA_COMPUTED)
            _log.info(
                "Compressing part %d of %s: %d message(s), %s",
                delta.next_part_number, session_id, delta.delta_count, describe(settings),
            )
            return await self._compress_and_persist(
                tx, entry, settings, delta.delta_messages,
                delta.next_part_number, delta.message_range(),
            )

    async def recompress_part(
        self,
        project_id: str,
        session_id: str,
        part_number: int,
        raw_settings: Any = None,
    ) -> DerivativeRecord:
        """Compress an existing part's exact range again at different settings."""
        settings = self.resolve_settings(raw_settings)
        async with self._transaction(project_id, session_id, "recompress") as tx:
            entry = self._store.require_session(project_id, session_id)
            part_versions(entry, part_number)
            rng = part_range(entry, part_number)
            duplicate = find_duplicate(entry, part_number, settings)
            if duplicate is not None:
                raise VersionExists(part_number, duplicate.version_id)

            messages = self._read_original(entry).messages
            if rng.end_index >= len(messages):
                raise InvalidPart(part_number, "the original log is shorter than the part")
            chunk = messages[rng.start_index : rng.end_index + 1]
            if (rng.start_message_id and chunk[0].uuid != rng.start_message_id) or (
                rng.end_message_id and chunk[-1].uuid != rng.end_message_id
            ):
                raise InvalidPart(part_number, "the original log no longer matches the part")
            tx.advance(TxPhase.DELTA_COMPUTED)
            _log.info(
                "Recompressing part %d of %s at %s", part_number, session_id, describe(settings)
            )
            return await self._compress_and_persist(tx, entry, settings, chunk, part_number, rng)

    # -- compression pipeline ------------------------------------------------

    def _pinned(
        self,
        entry: SessionEntry,
        messages: list[LogMessage],
        settings: UniformSettings | TieredSettings,
    ) -> tuple[list[PinnedInstruction], KeepitStats]:
        found = find_markers(messages)
        stats = KeepitStats(total=len(found))
        if settings.keepit_mode is KeepitMode.IGNORE:
            stats.summarized = stats.total
            return [], stats

        scenario = DecayScenario(settings.session_distance, effective_ratio(settings))
        pinned: list[PinnedInstruction] = []
        for marker in found:
            stored = entry.find_marker(marker.marker_id)
            weight = stored.weight if stored is not None else marker.weight
            keep = settings.keepit_mode is KeepitMode.PRESERVE_ALL or survives(
                weight, scenario, self._decay
            )
            pinned.append(PinnedInstruction(content=marker.content, weight=weight, survives=keep))
            stats.surviving += int(keep)
        stats.summarized = stats.total - stats.surviving
        return pinned, stats

    async def _run_compressor(self, request: CompressionRequest) -> CompressionOutput:
        timeout = self._config.compression.timeout_sec
        try:
            return await asyncio.wait_for(self._compressor.compress(request), timeout=timeout)
        except TimeoutError as exc:
            raise CompressionTimeout(request.session_id, timeout) from exc
        except CompressorError as exc:
            raise CompressionFailed(request.session_id, str(exc)) from exc

    @staticmethod
    def _validate_output(session_id: str, output: CompressionOutput) -> None:
        if not output.messages:
            raise CompressionFailed(session_id, "compressor returned no messages")
        if output.output_tokens <= 0:
            raise CompressionFailed(session_id, "compressor returned empty content")
        for message in output.messages:
            if message.role not in ("user", "assistant"):
                raise CompressionFailed(session_id, f"unexpected message role {message.role!r}")

    async def _compress_and_persist(
        self,
        tx: Transaction,
        entry: SessionEntry,
        settings: UniformSettings | TieredSettings,
        messages: list[LogMessage],
        part_number: int,
        rng: MessageRange,
    ) -> DerivativeRecord:
        pinned, keepit_stats = self._pinned(entry, messages, settings)
        request = CompressionRequest(
            session_id=entry.session_id, messages=messages, settings=settings, pinned=pinned
        )
        started = time.perf_counter()
        output = await self._run_compressor(request)
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        tx.advance(TxPhase.COMPRESSED)

        self._validate_output(entry.session_id, output)
        tx.advance(TxPhase.VALIDATED)

        layout = self._store.layout
        version_id = next_version_id(entry, part_number)
        md_path = layout.version_file(tx.project_id, entry.session_id, version_id, "md")
        input_tokens = sum(m.tokens for m in messages)
        output_tokens = output.output_tokens
        record = DerivativeRecord(
            version_id=version_id,
            part_number=part_number,
            compression_level=compression_level(settings),
            settings=settings,
            message_range=rng,
            file=md_path.relative_to(layout.project_dir(tx.project_id)).as_posix(),
            input_tokens=input_tokens,
            input_messages=len(messages),
            output_tokens=output_tokens,
            output_messages=len(output.messages),
            compression_ratio=round(input_tokens / output_tokens, 2),
            processing_time_ms=elapsed_ms,
            keepit_stats=keepit_stats,
            tier_results=output.tier_results,
        )

        rendered = [RenderedMessage(m.role, m.content, m.tokens) for m in output.messages]
        written = self._write_version_files(tx.project_id, entry.session_id, record, rendered)
        try:
            self._store.append_derivative(tx.project_id, entry.session_id, record)
        except Exception:
            for path in written:
                remove_path(path)
            raise
        tx.advance(TxPhase.PERSISTED)
        _log.info(
            "Created %s for %s: %d -> %d tokens (%.2f:1) in %d ms",
            version_id, entry.session_id, input_tokens, output_tokens,
            record.compression_ratio, elapsed_ms,
        )
        return record

    def _write_version_files(
        self,
        project_id: str,
        session_id: str,
        record: DerivativeRecord,
        messages: list[RenderedMessage],
    ) -> list[Path]:
        layout = self._store.layout
        contents = {
            "md": version_markdown(session_id, record, messages),
            "jsonl": version_jsonl(record, messages),
        }
        written: list[Path] = []
        try:
            for fmt, text in contents.items():
                path = layout.version_file(project_id, session_id, record.version_id, fmt)
                atomic_write_text(path, text)
                written.append(path)
                record.file_sizes[fmt] = len(text.encode("utf-8"))
        except Exception:
            for path in written:
                remove_path(path)
            raise
        return written

    # -- queries -------------------------------------------------------------

    def list_versions(self, project_id: str, session_id: str) -> list[VersionSummary]:
        entry = self._store.require_session(project_id, session_id)
        return [original_summary(entry), *(record_summary(r) for r in entry.compressions)]

    def get_version(self, project_id: str, session_id: str, version_id: str) -> VersionSummary:
        entry = self._store.require_session(project_id, session_id)
        if version_id == ORIGINAL_VERSION_ID:
            return original_summary(entry)
        record = entry.find_version(version_id)
        if record is None:
            raise VersionNotFound(version_id, session_id)
        return record_summary(record)

    def get_version_content(
        self, project_id: str, session_id: str, version_id: str, fmt: str = "md"
    ) -> str:
        if fmt not in VERSION_FORMATS:
            raise InvalidFormat(fmt, VERSION_FORMATS)
        entry = self._store.require_session(project_id, session_id)
        if version_id == ORIGINAL_VERSION_ID:
            log = read_log(entry.original_file)
            if fmt == "md":
                return original_markdown(session_id, log.messages)
            return Path(entry.original_file).read_text(encoding="utf-8", errors="replace")
        if entry.find_version(version_id) is None:
            raise VersionNotFound(version_id, session_id)
        path = self._store.layout.version_file(project_id, session_id, version_id, fmt)
        if not path.is_file():
            raise VersionFileNotFound(version_id, str(path))
        return path.read_text(encoding="utf-8")

    def part_summary(self, project_id: str, session_id: str) -> list[PartSummary]:
        entry = self._store.require_session(project_id, session_id)
        return [
            PartSummary(
                part_number=number,
                message_range=records[0].message_range,
                versions=[r.version_id for r in records],
                levels=[r.compression_level.value for r in records],
                smallest_output_tokens=min(r.output_tokens for r in records),
            )
            for number, records in parts_by_number(entry).items()
        ]

    def status(self, project_id: str, session_id: str) -> DeltaStatus:
        """How much of the session is already covered by parts."""
        entry = self._store.require_session(project_id, session_id)
        return delta_status(entry, self._read_original(entry).messages)

    # -- deletion ------------------------------------------------------------

    @contextlib.contextmanager
    def _guard(self, project_id: str, session_id: str) -> Generator[LockToken, None, None]:
        try:
            token = self._locks.acquire(
                project_id, session_id, OperationKind.COMPRESSION, holder="delete"
            )
        except LockBusy as exc:
            raise CompressionInProgress(session_id) from exc
        try:
            yield token
        finally:
            self._locks.release(token)

    def delete_version(
        self, project_id: str, session_id: str, version_id: str, force: bool = False
    ) -> VersionDeletion:
        """Remove a derivative and its files.

        Raises:
            CannotDeleteOriginal: for the ``original`` pseudo-version.
            VersionInUse: when a composition cites the version and *force* is off.
            ValidationFailed: when removing the record would leave a gap
                between parts.
        """
        if version_id == ORIGINAL_VERSION_ID:
            raise CannotDeleteOriginal()
        with self._guard(project_id, session_id):
            manifest = self._store.load(project_id)
            entry = self._store.require_session(project_id, session_id)
            record = entry.find_version(version_id)
            if record is None:
                raise VersionNotFound(version_id, session_id)

            citing = manifest.compositions_citing(session_id, version_id)
            if citing and not force:
                raise VersionInUse(version_id, session_id, citing)

            siblings = [r for r in entry.compressions if r.part_number == record.part_number]
            highest = max(r.part_number for r in entry.compressions)
            if len(siblings) == 1 and record.part_number < highest:
                msg = (
                    f"{version_id} is the only version of part {record.part_number} "
                    "and later parts follow it"
                )
                raise ValidationFailed("version_id", msg)

            self._store.remove_derivative(project_id, session_id, version_id)
            deleted: list[str] = []
            for fmt in VERSION_FORMATS:
                path = self._store.layout.version_file(project_id, session_id, version_id, fmt)
                if remove_path(path):
                    deleted.append(str(path))

        if citing:
            _log.warning(
                "Force-deleted %s of %s; compositions %s fall back to the original log",
                version_id, session_id, ", ".join(citing),
            )
        else:
            _log.info("Deleted %s of %s", version_id, session_id)
        return VersionDeletion(
            version_id=version_id,
            deleted_files=deleted,
            affected_compositions=citing,
            forced=bool(citing),
        )
