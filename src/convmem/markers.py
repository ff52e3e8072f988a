"""Pinned-content markers — inline ``##keepitX.XX##content`` spans.

Markers live in the original log.  The manifest keeps a copy of each
marker (with its weight history) so decay previews need no re-parse;
weight edits are written through to the original log first.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .errors import MarkerNotFound, OriginalFileNotFound, StorageError
from .log_reader import LogMessage
from .manifest import ManifestStore, PinnedMarker, WeightChange
from .storage import atomic_write_text

_log = logging.getLogger(__name__)

# Content runs until the next marker, a blank line or the end of the text.
MARKER_PATTERN = re.compile(r"##keepit(\d+\.\d{2})##(.*?)(?=##keepit|\n\n|\Z)", re.I | re.S)
_TAG_PATTERN = re.compile(r"##keepit\d+\.\d{2}##", re.I)
_MALFORMED_PATTERN = re.compile(r"##keepit(?!\d+\.\d{2}##)([^#]*?)(?:##|\Z)", re.I)

BACKUP_SUFFIX = ".backup"

WEIGHT_PRESETS: dict[str, float] = {
    "PINNED": 1.00,
    "CRITICAL": 0.90,
    "IMPORTANT": 0.75,
    "NOTABLE": 0.50,
    "MINOR": 0.25,
    "HINT": 0.10,
}


def normalize_weight(weight: float | str | None) -> float:
    """Clamp to [0, 1] and round to two decimals; unparseable input gives 0.5."""
    try:
        value = float(weight)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return 0.5
    if value != value:  # NaN
        return 0.5
    return round(max(0.0, min(1.0, value)), 2)


def is_pinned(weight: float) -> bool:
    return normalize_weight(weight) >= 1.0


def preset_name(weight: float) -> str | None:
    normalized = normalize_weight(weight)
    for name, value in WEIGHT_PRESETS.items():
        if abs(normalized - value) < 0.01:
            return name
    return None


def format_marker(weight: float, content: str) -> str:
    return f"##keepit{normalize_weight(weight):.2f}##{content}"


def strip_markers(text: str) -> str:
    """Remove marker tags, keeping the marked content."""
    return _TAG_PATTERN.sub("", text)


@dataclass
class RawMarker:
    weight: float
    content: str
    start: int
    end: int


def extract_markers(text: str) -> list[RawMarker]:
    if not text:
        return []
    found: list[RawMarker] = []
    for match in MARKER_PATTERN.finditer(text):
        content = match.group(2).strip()
        if not content:
            continue
        found.append(
            RawMarker(
                weight=normalize_weight(match.group(1)),
                content=content,
                start=match.start(),
                end=match.end(),
            )
        )
    return found


def validate_marker_syntax(text: str) -> list[dict[str, Any]]:
    """Report malformed tags and out-of-range weights; empty list means valid."""
    issues: list[dict[str, Any]] = []
    for match in _MALFORMED_PATTERN.finditer(text):
        issues.append({
            "type": "malformed",
            "position": match.start(),
            "found": match.group(0),
            "suggestion": "Use format ##keepit0.XX## with two decimal places",
        })
    for match in MARKER_PATTERN.finditer(text):
        weight = float(match.group(1))
        if weight > 1:
            issues.append({
                "type": "out_of_range",
                "position": match.start(),
                "weight": weight,
                "suggestion": "Weight must be between 0.00 and 1.00",
            })
    return issues


def make_marker_id(message_id: str | None, start: int, content: str) -> str:
    """Stable id so re-scans of an unchanged log keep marker identity."""
    digest = hashlib.sha1(f"{message_id}:{start}:{content}".encode()).hexdigest()
    return f"keepit_{digest[:12]}"


def find_markers(messages: list[LogMessage]) -> list[PinnedMarker]:
    markers: list[PinnedMarker] = []
    for msg in messages:
        text = msg.text
        for raw in extract_markers(text):
            markers.append(
                PinnedMarker(
                    marker_id=make_marker_id(msg.uuid, raw.start, raw.content),
                    message_id=msg.uuid,
                    weight=raw.weight,
                    content=raw.content,
                    position_start=raw.start,
                    position_end=raw.end,
                )
            )
    return markers


def merge_markers(existing: list[PinnedMarker], found: list[PinnedMarker]) -> list[PinnedMarker]:
    """Carry ``created_at`` and history over to re-scanned markers with the same id."""
    previous = {m.marker_id: m for m in existing}
    merged: list[PinnedMarker] = []
    for marker in found:
        old = previous.get(marker.marker_id)
        if old is not None:
            marker.created_at = old.created_at
            marker.history = list(old.history)
        merged.append(marker)
    return merged


# ---------------------------------------------------------------------------
# Write-through weight updates
# ---------------------------------------------------------------------------


@dataclass
class MarkerUpdate:
    marker: PinnedMarker
    changed: bool
    backup_path: Path | None = None


def _retag(text: str, content: str, weight: float) -> tuple[str, bool]:
    pattern = re.compile(_TAG_PATTERN.pattern + r"(?=\s*" + re.escape(content) + ")", re.I)
    new_text, count = pattern.subn(f"##keepit{weight:.2f}##", text, count=1)
    return new_text, count > 0


def _retag_record(record: dict[str, Any], content: str, weight: float) -> bool:
    body = record.get("message")
    if not isinstance(body, dict):
        return False
    blocks = body.get("content")
    if isinstance(blocks, str):
        new_text, hit = _retag(blocks, content, weight)
        if hit:
            body["content"] = new_text
        return hit
    if isinstance(blocks, list):
        for block in blocks:
            if isinstance(block, dict) and block.get("type") == "text" and block.get("text"):
                new_text, hit = _retag(block["text"], content, weight)
                if hit:
                    block["text"] = new_text
                    return True
    return False


def rewrite_marker_weight(path: Path, marker: PinnedMarker, weight: float) -> bool:
    """Retag *marker* inside the log at *path*; other lines stay byte-identical."""
    try:
        lines = path.read_text(encoding="utf-8").split("\n")
    except (OSError, UnicodeDecodeError) as exc:
        raise StorageError("read", str(path), str(exc)) from exc
    for i, line in enumerate(lines):
        if not line.strip() or marker.message_id is None or marker.message_id not in line:
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(record, dict) or record.get("uuid") != marker.message_id:
            continue
        if _retag_record(record, marker.content, weight):
            lines[i] = json.dumps(record, ensure_ascii=False, separators=(",", ":"))
            atomic_write_text(path, "\n".join(lines))
            return True
        return False
    return False


def update_marker_weight(
    store: ManifestStore,
    project_id: str,
    session_id: str,
    marker_id: str,
    new_weight: float,
    backup: bool = True,
) -> MarkerUpdate:
    """Change a marker's weight in the original log, then in the manifest."""
    entry = store.require_session(project_id, session_id)
    marker = entry.find_marker(marker_id)
    if marker is None:
        raise MarkerNotFound(marker_id, session_id)

    weight = normalize_weight(new_weight)
    if abs(marker.weight - weight) < 0.001:
        return MarkerUpdate(marker=marker, changed=False)

    path = Path(entry.original_file)
    if not path.is_file():
        raise OriginalFileNotFound(str(path))

    backup_path: Path | None = None
    if backup:
        backup_path = path.with_name(path.name + BACKUP_SUFFIX)
        try:
            shutil.copy2(path, backup_path)
        except OSError as exc:
            raise StorageError("back up", str(path), str(exc)) from exc

    if not rewrite_marker_weight(path, marker, weight):
        raise MarkerNotFound(marker_id, session_id)

    with store.edit(project_id) as manifest:
        stored = manifest.sessions[session_id].find_marker(marker_id)
        if stored is None:
            raise MarkerNotFound(marker_id, session_id)
        stored.history.append(WeightChange(old_weight=stored.weight, new_weight=weight))
        stored.weight = weight
        marker = stored

    _log.info(
        "Pinned marker %s in %s set to %.2f", marker_id, session_id, weight
    )
    return MarkerUpdate(marker=marker, changed=True, backup_path=backup_path)
