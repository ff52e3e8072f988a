"""Composition Engine — budget-constrained bundles of derivatives across sessions.

A composition allocates a token budget across components (one per session),
picks for each the largest version that fits its quota and renders the
chosen content in declared order.  Apart from storing the composition
record, the only manifest change is the usage count on each cited
derivative.
"""

from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass, field
from typing import Any

from .allocation import Allocation, AllocationInput, AllocationStrategy, allocate
from .decay import REFERENCE_RATIO, DecayParams, DecayScenario, SurvivalPreview, preview_survival
from .delta import parts_by_number
from .errors import (
    CompositionExists,
    CompositionFileNotFound,
    CompositionNotFound,
    CompressionInProgress,
    InvalidFormat,
    LockBusy,
    SessionNotFound,
    ValidationFailed,
    VersionFileNotFound,
    VersionNotFound,
)
from .locks import LockManager, OperationKind
from .log_reader import read_log
from .manifest import (
    ORIGINAL_VERSION_ID,
    PARTS_VERSION_ID,
    ComponentRecord,
    CompositionRecord,
    DerivativeRecord,
    Manifest,
    ManifestStore,
    PartChoice,
    SessionEntry,
)
from .rendering import (
    ComponentContent,
    RenderedMessage,
    composition_jsonl,
    composition_markdown,
    from_log,
    read_version_jsonl,
)
from .storage import atomic_write_text, remove_path
from .telemetry import trace_composition

_log = logging.getLogger(__name__)

OUTPUT_FORMATS = ["md", "jsonl"]
CONTENT_FORMATS = [*OUTPUT_FORMATS, "metadata"]
AUTO = "auto"
MAX_NAME_LENGTH = 64

_UNSAFE = re.compile(r"[^a-z0-9_-]+")
_DASHES = re.compile(r"-{2,}")


def sanitize_name(name: str) -> str:
    """Lowercase, unsafe characters to ``-``, runs collapsed, at most 64 chars."""
    cleaned = _DASHES.sub("-", _UNSAFE.sub("-", name.strip().lower())).strip("-")
    return cleaned[:MAX_NAME_LENGTH].rstrip("-")


# ---------------------------------------------------------------------------
# Requests and selections
# ---------------------------------------------------------------------------


@dataclass
class ComponentRequest:
    session_id: str
    version_id: str = AUTO
    token_allocation: int | None = None
    order: int | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ComponentRequest:
        """Accepts snake_case or camelCase keys."""
        session_id = data.get("session_id") or data.get("sessionId")
        if not session_id:
            raise ValidationFailed("components", "every component needs a session_id")
        allocation = data.get("token_allocation", data.get("tokenAllocation"))
        return cls(
            session_id=session_id,
            version_id=data.get("version_id") or data.get("versionId") or AUTO,
            token_allocation=int(allocation) if allocation is not None else None,
            order=data.get("order"),
        )


@dataclass
class Selection:
    version_id: str
    tokens: int
    message_count: int
    overflow: bool = False
    record: DerivativeRecord | None = None
    parts: list[PartChoice] = field(default_factory=list)
    # A single derivative chosen for a session whose parts cover more than it.
    partial: bool = False


def _candidates(entry: SessionEntry) -> list[Selection]:
    options = [
        Selection(
            version_id=ORIGINAL_VERSION_ID,
            tokens=entry.original_tokens,
            message_count=entry.original_messages,
        )
    ]
    options.extend(
        Selection(
            version_id=r.version_id,
            tokens=r.output_tokens,
            message_count=r.output_messages,
            record=r,
        )
        for r in entry.compressions
    )
    return options


def _choice(record: DerivativeRecord) -> PartChoice:
    rng = record.message_range
    return PartChoice(
        part_number=record.part_number,
        version_id=record.version_id,
        start_index=rng.start_index,
        end_index=rng.end_index,
        tokens=record.output_tokens,
        message_count=record.output_messages,
    )


def part_selection(entry: SessionEntry, quota: int) -> Selection | None:
    """One derivative per part in part order, then the uncompressed tail.

    Every part starts at its smallest version; parts are then upgraded in
    order to the largest version the remaining quota allows.  Messages past
    the last part come from the original log at full size.  ``None`` when
    the session has no derivatives.
    """
    grouped = parts_by_number(entry)
    if not grouped:
        return None
    covered_end = max(r.message_range.end_index for r in entry.compressions)
    covered_tokens = sum(records[0].input_tokens for records in grouped.values())
    tail_messages = max(0, entry.original_messages - covered_end - 1)
    tail_tokens = max(0, entry.original_tokens - covered_tokens) if tail_messages else 0

    chosen = {n: min(records, key=lambda r: r.output_tokens) for n, records in grouped.items()}
    spare = quota - tail_tokens - sum(r.output_tokens for r in chosen.values())
    for number, records in grouped.items():
        current = chosen[number]
        upgrades = [
            r for r in records
            if current.output_tokens < r.output_tokens <= current.output_tokens + spare
        ]
        if upgrades:
            best = max(upgrades, key=lambda r: r.output_tokens)
            spare -= best.output_tokens - current.output_tokens
            chosen[number] = best

    choices = [_choice(chosen[n]) for n in grouped]
    if tail_messages:
        choices.append(
            PartChoice(
                version_id=ORIGINAL_VERSION_ID,
                start_index=covered_end + 1,
                end_index=entry.original_messages - 1,
                tokens=tail_tokens,
                message_count=tail_messages,
            )
        )
    return Selection(
        version_id=PARTS_VERSION_ID,
        tokens=sum(c.tokens for c in choices),
        message_count=sum(c.message_count for c in choices),
        parts=choices,
    )


def select_version(entry: SessionEntry, quota: int, requested: str = AUTO) -> Selection:
    """Pick the version for one component.

    ``auto`` takes the largest candidate within *quota*, or the smallest
    overall (flagged ``overflow``) when nothing fits.  A session with
    several parts, or messages past its last part, is weighed as the
    original log against the part-wise candidate; a single derivative
    would drop the rest of the session.  An explicit id is honoured even
    when it overflows.
    """
    whole = part_selection(entry, quota)
    spans_more = whole is not None and len(whole.parts) > 1
    if requested == PARTS_VERSION_ID:
        if whole is None:
            raise VersionNotFound(requested, entry.session_id)
        whole.overflow = whole.tokens > quota
        return whole
    if requested != AUTO:
        for option in _candidates(entry):
            if option.version_id == requested:
                option.overflow = option.tokens > quota
                option.partial = spans_more and option.record is not None
                return option
        raise VersionNotFound(requested, entry.session_id)

    options = _candidates(entry)
    if whole is not None and spans_more:
        options = [options[0], whole]
    fitting = [o for o in options if o.tokens <= quota]
    if fitting:
        return max(fitting, key=lambda o: o.tokens)
    smallest = min(options, key=lambda o: o.tokens)
    smallest.overflow = True
    return smallest


def _cited(selection: Selection) -> list[str]:
    if selection.parts:
        return [p.version_id for p in selection.parts if not p.is_tail]
    return [selection.record.version_id] if selection.record is not None else []


@dataclass
class ComponentPreview:
    session_id: str
    order: int
    quota: int
    version_id: str
    tokens: int
    overflow: bool
    survival: SurvivalPreview | None = None
    parts: list[PartChoice] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "order": self.order,
            "quota": self.quota,
            "version_id": self.version_id,
            "tokens": self.tokens,
            "overflow": self.overflow,
            "survival": self.survival.to_dict() if self.survival else None,
            "parts": [p.model_dump(mode="json") for p in self.parts],
        }


@dataclass
class CompositionPreview:
    name: str
    budget: int
    strategy: AllocationStrategy
    components: list[ComponentPreview] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def total_tokens(self) -> int:
        return sum(c.tokens for c in self.components)

    @property
    def fits(self) -> bool:
        return self.total_tokens <= self.budget

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "budget": self.budget,
            "strategy": self.strategy.value,
            "total_tokens": self.total_tokens,
            "fits": self.fits,
            "components": [c.to_dict() for c in self.components],
            "warnings": self.warnings,
        }


@dataclass
class _Plan:
    allocation: Allocation
    entries: list[SessionEntry]
    requests: list[ComponentRequest]
    selections: list[Selection]
    warnings: list[str]


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class CompositionEngine:
    """Builds, previews, reads and deletes compositions for one data directory."""

    def __init__(
        self,
        store: ManifestStore,
        locks: LockManager,
        decay: DecayParams | None = None,
    ) -> None:
        self._store = store
        self._locks = locks
        self._decay = decay or DecayParams()

    # -- planning ------------------------------------------------------------

    def _plan(
        self,
        manifest: Manifest,
        budget: int,
        strategy: AllocationStrategy | str,
        components: list[ComponentRequest | dict[str, Any]],
    ) -> _Plan:
        requests = [
            c if isinstance(c, ComponentRequest) else ComponentRequest.from_dict(c)
            for c in components
        ]
        # Explicit order first; unordered components keep declared position.
        requests = [
            r for _, r in sorted(
                enumerate(requests),
                key=lambda p: (p[1].order if p[1].order is not None else p[0], p[0]),
            )
        ]
        entries: list[SessionEntry] = []
        for request in requests:
            entry = manifest.sessions.get(request.session_id)
            if entry is None:
                raise SessionNotFound(request.session_id, manifest.project_id)
            entries.append(entry)

        allocation = allocate(
            budget,
            [
                AllocationInput(
                    session_id=e.session_id,
                    original_tokens=e.original_tokens,
                    timestamp=e.last_timestamp,
                    requested_tokens=r.token_allocation,
                )
                for e, r in zip(entries, requests, strict=True)
            ],
            strategy,
        )

        warnings = list(allocation.warnings)
        selections: list[Selection] = []
        for entry, request, quota in zip(entries, requests, allocation.quotas, strict=True):
            selection = select_version(entry, quota, request.version_id)
            if selection.overflow:
                warnings.append(
                    f"{entry.session_id}: {selection.version_id} uses {selection.tokens} "
                    f"tokens, over its {quota} token allocation"
                )
            if selection.partial and selection.record is not None:
                rng = selection.record.message_range
                warnings.append(
                    f"{entry.session_id}: {selection.version_id} covers only messages "
                    f"{rng.start_index}-{rng.end_index} of {entry.original_messages}"
                )
            selections.append(selection)
        return _Plan(allocation, entries, requests, selections, warnings)

    def _survival(self, entry: SessionEntry, selection: Selection) -> SurvivalPreview | None:
        records = [
            r for r in (entry.find_version(v) for v in _cited(selection)) if r is not None
        ]
        if not records or not entry.keepit_markers:
            return None
        ratio = records[0].compression_ratio
        output = sum(r.output_tokens for r in records)
        if len(records) > 1 and output:
            ratio = round(sum(r.input_tokens for r in records) / output, 2)
        scenario = DecayScenario(
            distance=records[0].settings.session_distance,
            compression_ratio=ratio or REFERENCE_RATIO,
        )
        return preview_survival(entry.keepit_markers, scenario, self._decay)

    # -- operations ----------------------------------------------------------

    def preview(
        self,
        project_id: str,
        name: str,
        budget: int,
        strategy: AllocationStrategy | str = AllocationStrategy.EQUAL,
        components: list[ComponentRequest | dict[str, Any]] | None = None,
    ) -> CompositionPreview:
        """Allocation and version choice for a composition, without writing anything."""
        manifest = self._store.load(project_id)
        plan = self._plan(manifest, budget, strategy, components or [])
        result = CompositionPreview(
            name=name, budget=budget, strategy=plan.allocation.strategy, warnings=plan.warnings
        )
        for order, (entry, selection, quota) in enumerate(
            zip(plan.entries, plan.selections, plan.allocation.quotas, strict=True)
        ):
            result.components.append(
                ComponentPreview(
                    session_id=entry.session_id,
                    order=order,
                    quota=quota,
                    version_id=selection.version_id,
                    tokens=selection.tokens,
                    overflow=selection.overflow,
                    survival=self._survival(entry, selection),
                    parts=selection.parts,
                )
            )
        return result

    def compose(
        self,
        project_id: str,
        name: str,
        budget: int,
        strategy: AllocationStrategy | str = AllocationStrategy.EQUAL,
        components: list[ComponentRequest | dict[str, Any]] | None = None,
        formats: list[str] | None = None,
    ) -> CompositionRecord:
        """Allocate, select, render and persist a composition.

        Raises:
            ValidationFailed: empty name, non-positive budget or no components.
            CompositionExists: another composition already uses the name.
            SessionNotFound / VersionNotFound: unknown component references.
            InvalidFormat: an output format other than ``md`` or ``jsonl``.
        """
        if not name or not name.strip():
            raise ValidationFailed("name", "must not be empty")
        sanitized = sanitize_name(name)
        if not sanitized:
            raise ValidationFailed("name", "must contain at least one letter or digit")
        formats = list(dict.fromkeys(formats or OUTPUT_FORMATS))
        for fmt in formats:
            if fmt not in OUTPUT_FORMATS:
                raise InvalidFormat(fmt, OUTPUT_FORMATS)

        try:
            token = self._locks.acquire(
                project_id, sanitized, OperationKind.COMPOSITION, holder="compose"
            )
        except LockBusy as exc:
            raise CompressionInProgress(sanitized, "composition") from exc
        try:
            with trace_composition(name):
                return self._compose(project_id, name, sanitized, budget, strategy,
                                     components or [], formats)
        finally:
            self._locks.release(token)

    def _compose(
        self,
        project_id: str,
        name: str,
        sanitized: str,
        budget: int,
        strategy: AllocationStrategy | str,
        components: list[ComponentRequest | dict[str, Any]],
        formats: list[str],
    ) -> CompositionRecord:
        manifest = self._store.load(project_id)
        _check_unique(manifest, name, sanitized)
        plan = self._plan(manifest, budget, strategy, components)

        sections: list[ComponentContent] = []
        for order, (entry, request, selection, quota) in enumerate(
            zip(plan.entries, plan.requests, plan.selections, plan.allocation.quotas, strict=True)
        ):
            component = ComponentRecord(
                session_id=entry.session_id,
                requested_version=request.version_id,
                version_id=selection.version_id,
                order=order,
                token_allocation=quota,
                actual_tokens=selection.tokens,
                message_count=selection.message_count,
                overflow=selection.overflow,
                parts=selection.parts,
            )
            if selection.parts:
                messages, _ = self._load_parts(project_id, entry, selection.parts)
            else:
                messages = self._load_messages(project_id, entry, selection.record)
            sections.append(ComponentContent(component=component, messages=messages))

        record = CompositionRecord(
            composition_id=f"comp_{uuid.uuid4().hex[:12]}",
            name=name.strip(),
            sanitized_name=sanitized,
            budget=budget,
            strategy=plan.allocation.strategy,
            components=[s.component for s in sections],
            total_tokens=sum(s.component.actual_tokens for s in sections),
            formats=formats,
            warnings=plan.warnings,
        )

        directory = self._store.layout.composition_dir(project_id, sanitized)
        project_dir = self._store.layout.project_dir(project_id)
        try:
            for fmt in formats:
                path = directory / f"{sanitized}.{fmt}"
                atomic_write_text(path, _render(record, sections, fmt))
                record.files[fmt] = path.relative_to(project_dir).as_posix()
            self._store.put_composition(project_id, record)
        except Exception:
            remove_path(directory)
            raise

        for warning in record.warnings:
            _log.warning("Composition %s: %s", name, warning)
        _log.info(
            "Composed %s (%s) from %d session(s): %d of %d tokens",
            name, record.composition_id, len(sections), record.total_tokens, budget,
        )
        return record

    def _load_messages(
        self, project_id: str, entry: SessionEntry, record: DerivativeRecord | None
    ) -> list[RenderedMessage]:
        if record is None:
            return from_log(read_log(entry.original_file).messages)
        path = self._store.layout.version_file(
            project_id, entry.session_id, record.version_id, "jsonl"
        )
        if not path.is_file():
            raise VersionFileNotFound(record.version_id, str(path))
        return read_version_jsonl(path.read_text(encoding="utf-8"))

    def _load_parts(
        self, project_id: str, entry: SessionEntry, parts: list[PartChoice]
    ) -> tuple[list[RenderedMessage], list[str]]:
        """Concatenated part contents and the ids of parts no longer on record.

        The tail, and any part whose derivative was deleted, is read from the
        original log over the same message range.
        """
        messages: list[RenderedMessage] = []
        missing: list[str] = []
        original = None
        for part in parts:
            record = None if part.is_tail else entry.find_version(part.version_id)
            if record is not None:
                messages.extend(self._load_messages(project_id, entry, record))
                continue
            if not part.is_tail:
                missing.append(part.version_id)
            if original is None:
                original = read_log(entry.original_file).messages
            messages.extend(from_log(original[part.start_index : part.end_index + 1]))
        return messages, missing

    # -- queries -------------------------------------------------------------

    def list_compositions(self, project_id: str) -> list[CompositionRecord]:
        """Newest first."""
        manifest = self._store.load(project_id)
        return sorted(manifest.compositions.values(), key=lambda c: c.created_at, reverse=True)

    def get_composition(self, project_id: str, composition_id: str) -> CompositionRecord:
        record = self._store.load(project_id).compositions.get(composition_id)
        if record is None:
            raise CompositionNotFound(composition_id)
        return record

    def get_content(self, project_id: str, composition_id: str, fmt: str = "md") -> str:
        """Rendered content of a composition.

        When a cited version has since been force-deleted, the content is
        re-rendered with the original log standing in for that component, or
        for the deleted part alone in a part-wise component.
        """
        if fmt not in CONTENT_FORMATS:
            raise InvalidFormat(fmt, CONTENT_FORMATS)
        record = self._store.record_composition_use(project_id, composition_id)
        if fmt == "metadata":
            return record.model_dump_json(indent=2)

        manifest = self._store.load(project_id)
        missing = [
            (c.session_id, v) for c in record.components for v in c.cited_versions()
            if c.session_id not in manifest.sessions
            or manifest.sessions[c.session_id].find_version(v) is None
        ]
        if missing:
            return _render(record, self._fallback_sections(project_id, manifest, record), fmt)

        relative = record.files.get(fmt)
        if relative is None:
            raise InvalidFormat(fmt, record.formats)
        path = self._store.layout.project_dir(project_id) / relative
        if not path.is_file():
            raise CompositionFileNotFound(composition_id, str(path))
        return path.read_text(encoding="utf-8")

    def _fallback_sections(
        self, project_id: str, manifest: Manifest, record: CompositionRecord
    ) -> list[ComponentContent]:
        sections: list[ComponentContent] = []
        for component in sorted(record.components, key=lambda c: c.order):
            entry = manifest.sessions.get(component.session_id)
            if entry is None:
                note = f"Session {component.session_id} is no longer registered."
                _log.warning("Composition %s: %s", record.composition_id, note)
                sections.append(ComponentContent(component=component, note=note))
                continue
            if component.parts:
                messages, gone = self._load_parts(project_id, entry, component.parts)
                note = None
                if gone:
                    note = (
                        f"Version {', '.join(gone)} was deleted; "
                        "showing the original messages for that part instead."
                    )
                    _log.warning(
                        "Composition %s cites deleted %s of %s, using the original log",
                        record.composition_id, ", ".join(gone), component.session_id,
                    )
                sections.append(
                    ComponentContent(component=component, messages=messages, note=note)
                )
                continue
            version = (
                None
                if component.version_id == ORIGINAL_VERSION_ID
                else entry.find_version(component.version_id)
            )
            note = None
            if version is None and component.version_id != ORIGINAL_VERSION_ID:
                note = (
                    f"Version {component.version_id} was deleted; "
                    "showing the original session instead."
                )
                _log.warning(
                    "Composition %s cites deleted %s of %s, using the original log",
                    record.composition_id, component.version_id, component.session_id,
                )
            messages = self._load_messages(project_id, entry, version)
            sections.append(ComponentContent(component=component, messages=messages, note=note))
        return sections

    # -- deletion ------------------------------------------------------------

    def delete_composition(self, project_id: str, composition_id: str) -> CompositionRecord:
        """Remove the record and its files; usage counts of cited versions drop by one."""
        record = self._store.remove_composition(project_id, composition_id)
        directory = self._store.layout.composition_dir(project_id, record.sanitized_name)
        remove_path(directory)
        _log.info("Deleted composition %s (%s)", record.name, composition_id)
        return record


def _check_unique(manifest: Manifest, name: str, sanitized: str) -> None:
    for existing in manifest.compositions.values():
        if existing.name == name.strip() or existing.sanitized_name == sanitized:
            raise CompositionExists(name)


def _render(record: CompositionRecord, sections: list[ComponentContent], fmt: str) -> str:
    if fmt == "md":
        return composition_markdown(record, sections)
    return composition_jsonl(record, sections)

