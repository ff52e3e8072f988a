"""Tests for the version/compression orchestrator."""

from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path

import pytest
from conftest import PROJECT, SESSION, FakeClock, append_log

from convmem.compressor import (
    CompressionRequest,
    Compressor,
    CompressorError,
    CondensedMessage,
    StubCompressor,
)
from convmem.config import MemoryConfig
from convmem.errors import (
    CannotDeleteOriginal,
    CompressionFailed,
    CompressionInProgress,
    CompressionTimeout,
    InsufficientMessages,
    InvalidFormat,
    LogParseRejected,
    NoDelta,
    PartNotFound,
    ValidationFailed,
    VersionExists,
    VersionInUse,
    VersionNotFound,
)
from convmem.locks import InProcessLockManager
from convmem.log_reader import LogMessage
from convmem.service import MemoryService
from convmem.settings import Aggressiveness, KeepitMode, TieredSettings, UniformSettings
from convmem.versions import Transaction, TxPhase

UNIFORM_10 = {"mode": "uniform", "compaction_ratio": 10}
UNIFORM_20 = {"mode": "uniform", "compaction_ratio": 20}

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class _FailingCompressor(Compressor):
    def name(self) -> str:
        return "failing"

    async def _condense(
        self,
        messages: list[LogMessage],
        ratio: float,
        aggressiveness: Aggressiveness,
        request: CompressionRequest,
    ) -> list[CondensedMessage]:
        raise CompressorError("model refused")


class _BadRoleCompressor(Compressor):
    def name(self) -> str:
        return "bad-role"

    async def _condense(
        self,
        messages: list[LogMessage],
        ratio: float,
        aggressiveness: Aggressiveness,
        request: CompressionRequest,
    ) -> list[CondensedMessage]:
        return [CondensedMessage(role="system", content="summary")]


def _service(config: MemoryConfig, clock: FakeClock, compressor: Compressor) -> MemoryService:
    return MemoryService(
        config, locks=InProcessLockManager(stale_after=300, clock=clock), compressor=compressor
    )


def _log_path(service: MemoryService) -> Path:
    return Path(service.get_session(PROJECT, SESSION).original_file)


# ---------------------------------------------------------------------------
# Settings resolution
# ---------------------------------------------------------------------------


def test_resolve_settings_defaults(service: MemoryService) -> None:
    settings = service.versions.resolve_settings(None)
    assert isinstance(settings, TieredSettings)
    assert settings.tier_preset == "standard"
    assert settings.keepit_mode is KeepitMode.DECAY


def test_resolve_settings_without_decay(config: MemoryConfig, clock: FakeClock) -> None:
    config.defaults.keepit_decay_enabled = False
    config.defaults.model = "haiku"  # type: ignore[assignment]
    settings = _service(config, clock, StubCompressor()).versions.resolve_settings(UNIFORM_10)
    assert isinstance(settings, UniformSettings)
    assert settings.keepit_mode is KeepitMode.PRESERVE_ALL
    assert settings.model == "haiku"


# ---------------------------------------------------------------------------
# Delta compression
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_first_part(registered: MemoryService) -> None:
    record = await registered.create_derivative(PROJECT, SESSION, UNIFORM_10)

    assert record.version_id == "part1_v001"
    assert record.part_number == 1
    rng = record.message_range
    assert (rng.start_index, rng.end_index) == (0, 19)
    assert (rng.start_message_id, rng.end_message_id) == ("msg-0000", "msg-0019")
    assert record.input_messages == 20
    assert record.output_messages == 2
    assert record.compression_ratio == round(record.input_tokens / record.output_tokens, 2)
    assert record.file == f"summaries/{SESSION}/part1_v001.md"
    for fmt in ("md", "jsonl"):
        path = registered.layout.version_file(PROJECT, SESSION, "part1_v001", fmt)
        assert path.is_file()
        assert record.file_sizes[fmt] == len(path.read_bytes())

    versions = registered.list_derivatives(PROJECT, SESSION)
    assert [v.version_id for v in versions] == ["original", "part1_v001"]
    assert versions[0].is_original
    assert not registered.locks.is_locked(PROJECT, SESSION)


@pytest.mark.asyncio
async def test_no_delta_after_full_coverage(registered: MemoryService) -> None:
    await registered.create_derivative(PROJECT, SESSION, UNIFORM_10)
    with pytest.raises(NoDelta):
        await registered.create_derivative(PROJECT, SESSION, UNIFORM_10)
    assert not registered.locks.is_locked(PROJECT, SESSION)


@pytest.mark.asyncio
async def test_second_part_covers_appended_messages(registered: MemoryService) -> None:
    await registered.create_derivative(PROJECT, SESSION, UNIFORM_10)
    append_log(_log_path(registered), 20, 10)

    record = await registered.create_derivative(PROJECT, SESSION, UNIFORM_10)

    assert record.version_id == "part2_v001"
    assert (record.message_range.start_index, record.message_range.end_index) == (20, 29)
    assert record.message_range.start_message_id == "msg-0020"
    status = registered.delta_status(PROJECT, SESSION)
    assert not status.has_delta
    assert status.covered_messages == 30
    assert status.part_count == 2


@pytest.mark.asyncio
async def test_insufficient_messages(registered: MemoryService) -> None:
    await registered.create_derivative(PROJECT, SESSION, UNIFORM_10)
    append_log(_log_path(registered), 20, 1)
    with pytest.raises(InsufficientMessages):
        await registered.create_derivative(PROJECT, SESSION, UNIFORM_10)


@pytest.mark.asyncio
async def test_thousand_messages_at_ratio_ten(
    service: MemoryService, make_log: Callable[..., Path]
) -> None:
    make_log(count=1000)
    service.register_session(PROJECT, SESSION)

    record = await service.create_derivative(PROJECT, SESSION, UNIFORM_10)

    assert record.input_messages == 1000
    assert record.output_messages == 100
    assert record.compression_ratio > 1


@pytest.mark.asyncio
async def test_tiered_defaults_record_tier_results(registered: MemoryService) -> None:
    record = await registered.create_derivative(PROJECT, SESSION)
    assert record.compression_level == "moderate"
    assert [t.end_percent for t in record.tier_results] == [25, 50, 75, 90, 100]


# ---------------------------------------------------------------------------
# Pinned content
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_pinned_content_follows_decay(
    service: MemoryService, make_log: Callable[..., Path]
) -> None:
    make_log(texts={3: "##keepit1.00##always use port 8080", 5: "##keepit0.10##maybe try redis"})
    service.register_session(PROJECT, SESSION)

    record = await service.create_derivative(PROJECT, SESSION, UNIFORM_10)

    assert (record.keepit_stats.total, record.keepit_stats.surviving) == (2, 1)
    content = service.get_derivative_content(PROJECT, SESSION, record.version_id)
    assert "always use port 8080" in content
    assert "maybe try redis" not in content


@pytest.mark.asyncio
@pytest.mark.parametrize(("mode", "surviving"), [("ignore", 0), ("preserve-all", 2)])
async def test_pinned_modes(
    service: MemoryService, make_log: Callable[..., Path], mode: str, surviving: int
) -> None:
    make_log(texts={3: "##keepit1.00##always use port 8080", 5: "##keepit0.10##maybe try redis"})
    service.register_session(PROJECT, SESSION)

    record = await service.create_derivative(
        PROJECT, SESSION, {**UNIFORM_10, "keepit_mode": mode}
    )

    assert record.keepit_stats.surviving == surviving
    assert record.keepit_stats.summarized == 2 - surviving


# ---------------------------------------------------------------------------
# Recompression
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_recompress_part_adds_sibling(registered: MemoryService) -> None:
    first = await registered.create_derivative(PROJECT, SESSION, UNIFORM_10)
    before = registered.get_derivative_content(PROJECT, SESSION, first.version_id)

    second = await registered.recompress_part(PROJECT, SESSION, 1, UNIFORM_20)

    assert second.version_id == "part1_v002"
    assert second.part_number == 1
    assert second.message_range.same_span(first.message_range)
    # Existing versions are immutable.
    assert registered.get_derivative_content(PROJECT, SESSION, first.version_id) == before
    summary = registered.part_summary(PROJECT, SESSION)
    assert len(summary) == 1
    assert sorted(summary[0].versions) == ["part1_v001", "part1_v002"]


@pytest.mark.asyncio
async def test_recompress_same_settings_rejected(registered: MemoryService) -> None:
    await registered.create_derivative(PROJECT, SESSION, UNIFORM_10)
    with pytest.raises(VersionExists) as info:
        await registered.recompress_part(PROJECT, SESSION, 1, UNIFORM_10)
    assert info.value.details["existing_version_id"] == "part1_v001"


@pytest.mark.asyncio
async def test_recompress_missing_part(registered: MemoryService) -> None:
    with pytest.raises(PartNotFound):
        await registered.recompress_part(PROJECT, SESSION, 1, UNIFORM_10)


# ---------------------------------------------------------------------------
# Guarded transaction failures
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_concurrent_compression_rejected(registered: MemoryService) -> None:
    token = registered.locks.acquire(PROJECT, SESSION, "compression", holder="other")
    with pytest.raises(CompressionInProgress):
        await registered.create_derivative(PROJECT, SESSION, UNIFORM_10)
    # The other holder keeps its lock.
    assert registered.locks.active_operations(PROJECT, SESSION)[0].holder == "other"
    registered.locks.release(token)
    await registered.create_derivative(PROJECT, SESSION, UNIFORM_10)


@pytest.mark.asyncio
async def test_timeout_leaves_no_record(
    config: MemoryConfig, clock: FakeClock, make_log: Callable[..., Path]
) -> None:
    config.compression.timeout_sec = 0.05
    service = _service(config, clock, StubCompressor(delay=5))
    make_log()
    service.register_session(PROJECT, SESSION)

    with pytest.raises(CompressionTimeout):
        await service.create_derivative(PROJECT, SESSION, UNIFORM_10)

    assert service.get_session(PROJECT, SESSION).compressions == []
    assert not service.locks.is_locked(PROJECT, SESSION)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("compressor", "reason"),
    [(_FailingCompressor(), "model refused"), (_BadRoleCompressor(), "unexpected message role")],
)
async def test_compressor_failures_leave_no_record(
    config: MemoryConfig,
    clock: FakeClock,
    make_log: Callable[..., Path],
    compressor: Compressor,
    reason: str,
) -> None:
    service = _service(config, clock, compressor)
    make_log()
    service.register_session(PROJECT, SESSION)

    with pytest.raises(CompressionFailed, match=reason):
        await service.create_derivative(PROJECT, SESSION, UNIFORM_10)

    assert service.get_session(PROJECT, SESSION).compressions == []
    assert not service.layout.summaries_dir(PROJECT, SESSION).exists()
    assert not service.locks.is_locked(PROJECT, SESSION)


@pytest.mark.asyncio
async def test_unreadable_log_rejected(
    service: MemoryService, make_log: Callable[..., Path]
) -> None:
    make_log(extra_lines=["{broken"] * 10)
    entry = service.register_session(PROJECT, SESSION)
    assert entry.original_messages == 20

    with pytest.raises(LogParseRejected):
        await service.create_derivative(PROJECT, SESSION, UNIFORM_10)


def test_transaction_transitions() -> None:
    tx = Transaction(project_id="p", session_id="s", operation="compress")
    with pytest.raises(ValueError, match="Invalid transition"):
        tx.advance(TxPhase.PERSISTED)
    tx.advance(TxPhase.LOCK_ACQUIRED)
    tx.reject("boom")
    tx.advance(TxPhase.RELEASED)
    assert tx.history == [
        TxPhase.REQUESTED, TxPhase.LOCK_ACQUIRED, TxPhase.REJECTED, TxPhase.RELEASED
    ]
    assert tx.error == "boom"
    assert not tx.can_advance(TxPhase.LOCK_ACQUIRED)


@pytest.mark.asyncio
async def test_failure_after_persist_keeps_its_error(registered: MemoryService) -> None:
    phases = [TxPhase.DELTA_COMPUTED, TxPhase.COMPRESSED, TxPhase.VALIDATED, TxPhase.PERSISTED]
    engine = registered.versions
    with pytest.raises(RuntimeError, match="index rebuild failed"):
        async with engine._transaction(PROJECT, SESSION, "compress") as tx:  # noqa: SLF001
            for phase in phases:
                tx.advance(phase)
            raise RuntimeError("index rebuild failed")
    assert tx.history[-2:] == [TxPhase.PERSISTED, TxPhase.RELEASED]
    assert not registered.locks.is_locked(PROJECT, SESSION)


# ---------------------------------------------------------------------------
# Content and queries
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_version_content(registered: MemoryService) -> None:
    await registered.create_derivative(PROJECT, SESSION, UNIFORM_10)

    md = registered.get_derivative_content(PROJECT, SESSION, "part1_v001")
    assert md.startswith("# Compressed Session")
    assert "## User [SUMMARIZED]" in md

    lines = registered.get_derivative_content(PROJECT, SESSION, "part1_v001", "jsonl").splitlines()
    header = json.loads(lines[0])
    assert header["type"] == "compression-metadata"
    assert header["settings"]["mode"] == "uniform"
    assert len(lines) == 3

    original = registered.get_derivative_content(PROJECT, SESSION, "original")
    assert original.startswith("# Original Session")
    raw = registered.get_derivative_content(PROJECT, SESSION, "original", "jsonl")
    assert raw.count("\n") == 20


def test_content_errors(registered: MemoryService) -> None:
    with pytest.raises(InvalidFormat):
        registered.get_derivative_content(PROJECT, SESSION, "original", "pdf")
    with pytest.raises(VersionNotFound):
        registered.get_derivative_content(PROJECT, SESSION, "part9_v001")
    with pytest.raises(VersionNotFound):
        registered.get_derivative(PROJECT, SESSION, "part9_v001")


def test_original_summary(registered: MemoryService) -> None:
    original = registered.get_derivative(PROJECT, SESSION, "original")
    assert original.part_number == 0
    assert original.compression_ratio == 1.0
    assert original.message_count == 20
    assert original.to_dict()["is_original"] is True


# ---------------------------------------------------------------------------
# Deletion
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_delete_version(registered: MemoryService) -> None:
    await registered.create_derivative(PROJECT, SESSION, UNIFORM_10)
    result = registered.delete_derivative(PROJECT, SESSION, "part1_v001")
    assert not result.forced
    assert len(result.deleted_files) == 2
    assert registered.get_session(PROJECT, SESSION).compressions == []
    # The part can be compressed again from scratch.
    record = await registered.create_derivative(PROJECT, SESSION, UNIFORM_10)
    assert record.version_id == "part1_v001"


def test_cannot_delete_original(registered: MemoryService) -> None:
    with pytest.raises(CannotDeleteOriginal):
        registered.delete_derivative(PROJECT, SESSION, "original")


@pytest.mark.asyncio
async def test_delete_cited_version_needs_force(registered: MemoryService) -> None:
    await registered.create_derivative(PROJECT, SESSION, UNIFORM_10)
    comp = registered.create_composition(
        PROJECT, "ctx", 100_000, components=[{"session_id": SESSION, "version_id": "part1_v001"}]
    )

    with pytest.raises(VersionInUse):
        registered.delete_derivative(PROJECT, SESSION, "part1_v001")

    result = registered.delete_derivative(PROJECT, SESSION, "part1_v001", force=True)
    assert result.forced
    assert result.affected_compositions == [comp.composition_id]


@pytest.mark.asyncio
async def test_delete_would_leave_gap(registered: MemoryService) -> None:
    await registered.create_derivative(PROJECT, SESSION, UNIFORM_10)
    append_log(_log_path(registered), 20, 10)
    await registered.create_derivative(PROJECT, SESSION, UNIFORM_10)

    with pytest.raises(ValidationFailed, match="only version of part 1"):
        registered.delete_derivative(PROJECT, SESSION, "part1_v001")

    registered.delete_derivative(PROJECT, SESSION, "part2_v001")
    registered.delete_derivative(PROJECT, SESSION, "part1_v001")
