"""Delta Tracker — the unprocessed suffix of a session and part numbering."""

from __future__ import annotations

from dataclasses import dataclass, field

from .errors import DeltaAnchorMissing, InvalidPart, PartNotFound
from .log_reader import LogMessage
from .manifest import DerivativeRecord, MessageRange, SessionEntry, version_number
from .settings import LEVEL_ORDER, TieredSettings, UniformSettings, settings_fingerprint


@dataclass
class DeltaResult:
    has_delta: bool
    next_part_number: int
    start_index: int
    previous_part_number: int
    delta_messages: list[LogMessage] = field(default_factory=list)

    @property
    def delta_count(self) -> int:
        return len(self.delta_messages)

    @property
    def end_index(self) -> int:
        return self.start_index + self.delta_count - 1

    @property
    def is_first_part(self) -> bool:
        return self.previous_part_number == 0

    def message_range(self) -> MessageRange:
        """Range covered by this delta; only meaningful when ``has_delta``."""
        first = self.delta_messages[0]
        last = self.delta_messages[-1]
        return MessageRange(
            start_index=self.start_index,
            end_index=self.end_index,
            start_message_id=first.uuid,
            end_message_id=last.uuid,
            start_timestamp=first.timestamp,
            end_timestamp=last.timestamp,
        )


@dataclass
class DeltaStatus:
    has_delta: bool
    delta_count: int
    total_messages: int
    covered_messages: int
    part_count: int
    next_part_number: int


def highest_part_number(entry: SessionEntry) -> int:
    return max((r.part_number for r in entry.compressions), default=0)


def latest_part(entry: SessionEntry) -> DerivativeRecord | None:
    """Newest record of the highest part."""
    highest = highest_part_number(entry)
    if not highest:
        return None
    return [r for r in entry.compressions if r.part_number == highest][-1]


def compute_delta(entry: SessionEntry, messages: list[LogMessage]) -> DeltaResult:
    """Messages strictly after the end of the highest part.

    Raises:
        DeltaAnchorMissing: the message that ended the highest part is no
            longer where the manifest recorded it (upstream deletion).
    """
    latest = latest_part(entry)
    if latest is None:
        return DeltaResult(
            has_delta=bool(messages),
            next_part_number=1,
            start_index=0,
            previous_part_number=0,
            delta_messages=list(messages),
        )

    rng = latest.message_range
    anchor_ok = rng.end_index < len(messages) and (
        rng.end_message_id is None or messages[rng.end_index].uuid == rng.end_message_id
    )
    if not anchor_ok:
        raise DeltaAnchorMissing(
            entry.session_id, latest.part_number, rng.end_message_id, rng.end_index
        )

    start = rng.end_index + 1
    delta = list(messages[start:])
    return DeltaResult(
        has_delta=bool(delta),
        next_part_number=latest.part_number + 1,
        start_index=start,
        previous_part_number=latest.part_number,
        delta_messages=delta,
    )


def delta_status(entry: SessionEntry, messages: list[LogMessage]) -> DeltaStatus:
    delta = compute_delta(entry, messages)
    return DeltaStatus(
        has_delta=delta.has_delta,
        delta_count=delta.delta_count,
        total_messages=len(messages),
        covered_messages=delta.start_index,
        part_count=highest_part_number(entry),
        next_part_number=delta.next_part_number,
    )


# ---------------------------------------------------------------------------
# Part queries
# ---------------------------------------------------------------------------


def parts_by_number(entry: SessionEntry) -> dict[int, list[DerivativeRecord]]:
    """Records grouped by part, each group ordered light → aggressive → custom."""
    grouped: dict[int, list[DerivativeRecord]] = {}
    for record in entry.compressions:
        grouped.setdefault(record.part_number, []).append(record)
    for records in grouped.values():
        records.sort(key=lambda r: (LEVEL_ORDER[r.compression_level], r.created_at))
    return dict(sorted(grouped.items()))


def part_versions(entry: SessionEntry, part_number: int) -> list[DerivativeRecord]:
    records = parts_by_number(entry).get(part_number)
    if not records:
        raise PartNotFound(part_number, entry.session_id)
    return records


def part_range(entry: SessionEntry, part_number: int) -> MessageRange:
    records = part_versions(entry, part_number)
    rng = records[0].message_range
    if rng.end_index < rng.start_index:
        raise InvalidPart(part_number, "recorded message range is empty")
    return rng


def partition(entry: SessionEntry) -> list[MessageRange]:
    """One range per part, in part order."""
    return [records[0].message_range for records in parts_by_number(entry).values()]


def find_duplicate(
    entry: SessionEntry,
    part_number: int,
    settings: UniformSettings | TieredSettings,
) -> DerivativeRecord | None:
    wanted = settings_fingerprint(settings)
    for record in entry.compressions:
        if record.part_number == part_number and settings_fingerprint(record.settings) == wanted:
            return record
    return None


def can_recompress(
    entry: SessionEntry,
    part_number: int,
    settings: UniformSettings | TieredSettings,
) -> bool:
    if not any(r.part_number == part_number for r in entry.compressions):
        return False
    return find_duplicate(entry, part_number, settings) is None


def next_version_id(entry: SessionEntry, part_number: int) -> str:
    """``part{N}_v{MMM}``; numbers are never reused within a part, even after deletion."""
    numbers = [
        version_number(r.version_id) or 0
        for r in entry.compressions
        if r.part_number == part_number
    ]
    count = max([entry.version_counters.get(part_number, 0), *numbers])
    return f"part{part_number}_v{count + 1:03d}"
