"""Tests for pinned-content markers and write-through weight edits."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from conftest import write_log

from convmem.errors import MarkerNotFound, StorageError
from convmem.log_reader import read_log
from convmem.manifest import ManifestStore, SessionEntry
from convmem.markers import (
    BACKUP_SUFFIX,
    extract_markers,
    find_markers,
    format_marker,
    is_pinned,
    merge_markers,
    normalize_weight,
    preset_name,
    strip_markers,
    update_marker_weight,
    validate_marker_syntax,
)
from convmem.storage import StorageLayout

# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def test_extract_single_marker() -> None:
    markers = extract_markers("Remember ##keepit0.80##use port 8080\n\nthen move on")
    assert len(markers) == 1
    assert markers[0].weight == 0.8
    assert markers[0].content == "use port 8080"


def test_extract_adjacent_markers() -> None:
    markers = extract_markers("##keepit1.00##alpha ##keepit0.30##beta")
    assert [(m.weight, m.content) for m in markers] == [(1.0, "alpha"), (0.3, "beta")]


def test_empty_marker_ignored() -> None:
    assert extract_markers("##keepit0.50##\n\nrest") == []
    assert extract_markers("") == []


def test_out_of_range_weight_is_clamped_and_reported() -> None:
    text = "##keepit1.50##too strong"
    assert extract_markers(text)[0].weight == 1.0
    issues = validate_marker_syntax(text)
    assert [i["type"] for i in issues] == ["out_of_range"]


def test_malformed_tag_reported() -> None:
    issues = validate_marker_syntax("##keepit.5##oops")
    assert issues[0]["type"] == "malformed"


@pytest.mark.parametrize(
    ("raw", "expected"),
    [("0.756", 0.76), (-1, 0.0), (3, 1.0), ("abc", 0.5), (None, 0.5), (float("nan"), 0.5)],
)
def test_normalize_weight(raw: object, expected: float) -> None:
    assert normalize_weight(raw) == expected  # type: ignore[arg-type]


def test_helpers() -> None:
    assert is_pinned(1.0)
    assert not is_pinned(0.99)
    assert preset_name(0.75) == "IMPORTANT"
    assert preset_name(0.42) is None
    assert format_marker(0.5, "x") == "##keepit0.50##x"
    assert strip_markers("a ##keepit0.50##b") == "a b"


# ---------------------------------------------------------------------------
# Identity across re-scans
# ---------------------------------------------------------------------------


def test_marker_ids_are_stable(tmp_path: Path) -> None:
    path = write_log(tmp_path / "s.jsonl", 4, texts={1: "keep ##keepit0.90##the schema"})
    first = find_markers(read_log(path).messages)
    second = find_markers(read_log(path).messages)
    assert len(first) == 1
    assert first[0].message_id == "msg-0001"
    assert first[0].marker_id == second[0].marker_id


def test_merge_carries_history(tmp_path: Path) -> None:
    path = write_log(tmp_path / "s.jsonl", 2, texts={0: "##keepit0.90##x"})
    old = find_markers(read_log(path).messages)
    old[0].created_at = "2020-01-01T00:00:00Z"
    merged = merge_markers(old, find_markers(read_log(path).messages))
    assert merged[0].created_at == "2020-01-01T00:00:00Z"


# ---------------------------------------------------------------------------
# Write-through updates
# ---------------------------------------------------------------------------


def _store_with_marker(tmp_path: Path) -> tuple[ManifestStore, Path, str]:
    path = write_log(tmp_path / "s.jsonl", 4, texts={2: "note ##keepit0.80##use port 8080"})
    store = ManifestStore(StorageLayout(tmp_path / "home"))
    store.load_or_create("p")
    markers = find_markers(read_log(path).messages)
    store.upsert_session(
        "p", SessionEntry(session_id="s", original_file=str(path), keepit_markers=markers)
    )
    return store, path, markers[0].marker_id


def test_update_weight_writes_through(tmp_path: Path) -> None:
    store, path, marker_id = _store_with_marker(tmp_path)
    before = path.read_text(encoding="utf-8").split("\n")

    result = update_marker_weight(store, "p", "s", marker_id, 0.3)

    assert result.changed
    assert result.backup_path == path.with_name(path.name + BACKUP_SUFFIX)
    assert result.backup_path.read_text(encoding="utf-8").split("\n") == before
    after = path.read_text(encoding="utf-8").split("\n")
    assert "##keepit0.30##use port 8080" in after[2]
    # Only the marked line changes.
    assert [a for i, a in enumerate(after) if i != 2] == [b for i, b in enumerate(before) if i != 2]

    stored = store.require_session("p", "s").find_marker(marker_id)
    assert stored is not None
    assert stored.weight == 0.3
    assert (stored.history[0].old_weight, stored.history[0].new_weight) == (0.8, 0.3)
    assert find_markers(read_log(path).messages)[0].weight == 0.3


def test_update_same_weight_is_noop(tmp_path: Path) -> None:
    store, path, marker_id = _store_with_marker(tmp_path)
    result = update_marker_weight(store, "p", "s", marker_id, 0.8)
    assert not result.changed
    assert not path.with_name(path.name + BACKUP_SUFFIX).exists()


def test_update_unknown_marker(tmp_path: Path) -> None:
    store, _, _ = _store_with_marker(tmp_path)
    with pytest.raises(MarkerNotFound):
        update_marker_weight(store, "p", "s", "keepit_nope", 0.3)


def test_rewritten_line_stays_compact(tmp_path: Path) -> None:
    store, path, marker_id = _store_with_marker(tmp_path)
    update_marker_weight(store, "p", "s", marker_id, 0.3)
    line = path.read_text(encoding="utf-8").split("\n")[2]
    assert line == json.dumps(json.loads(line), ensure_ascii=False, separators=(",", ":"))


def test_undecodable_log_is_a_storage_error(tmp_path: Path) -> None:
    store, path, marker_id = _store_with_marker(tmp_path)
    path.write_bytes(path.read_bytes() + b"\xff\xfe\n")
    with pytest.raises(StorageError, match="Failed to read"):
        update_marker_weight(store, "p", "s", marker_id, 0.3, backup=False)
    stored = store.require_session("p", "s").find_marker(marker_id)
    assert stored is not None
    assert stored.weight == 0.8
