"""Shared fixtures: synthetic conversation logs and a wired MemoryService."""

from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from convmem.compressor import StubCompressor
from convmem.config import CompressionConfig, MemoryConfig, StorageConfig
from convmem.locks import InProcessLockManager
from convmem.service import MemoryService

PROJECT = "-home-dev-demo"
SESSION = "sess-0001"


class FakeClock:
    """Settable wall clock for lock staleness tests."""

    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def log_record(
    index: int,
    text: str | None = None,
    session_id: str = SESSION,
    kind: str | None = None,
) -> dict[str, Any]:
    kind = kind or ("user" if index % 2 == 0 else "assistant")
    body = text if text is not None else f"message {index} " + "word " * 8
    return {
        "type": kind,
        "uuid": f"msg-{index:04d}",
        "parentUuid": f"msg-{index - 1:04d}" if index else None,
        "sessionId": session_id,
        "timestamp": f"2026-01-01T{index // 3600:02d}:{index // 60 % 60:02d}:{index % 60:02d}Z",
        "cwd": "/home/dev/demo",
        "gitBranch": "main",
        "version": "1.0.0",
        "message": {"role": kind, "content": [{"type": "text", "text": body.strip()}]},
    }


def write_log(
    path: Path,
    count: int,
    texts: dict[int, str] | None = None,
    extra_lines: list[str] | None = None,
) -> Path:
    texts = texts or {}
    lines = [json.dumps(log_record(i, texts.get(i))) for i in range(count)]
    lines.extend(extra_lines or [])
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


def append_log(path: Path, start: int, count: int) -> None:
    with path.open("a", encoding="utf-8") as fh:
        for i in range(start, start + count):
            fh.write(json.dumps(log_record(i)) + "\n")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config(tmp_path: Path) -> MemoryConfig:
    return MemoryConfig(
        storage=StorageConfig(home=tmp_path / "home", logs_dir=tmp_path / "logs"),
        compression=CompressionConfig(compressor="stub", timeout_sec=5),
    )


@pytest.fixture
def logs_dir(config: MemoryConfig) -> Path:
    return Path(config.storage.logs_dir) / PROJECT


@pytest.fixture
def make_log(logs_dir: Path) -> Callable[..., Path]:
    def _make(
        session_id: str = SESSION,
        count: int = 20,
        texts: dict[int, str] | None = None,
        extra_lines: list[str] | None = None,
    ) -> Path:
        return write_log(logs_dir / f"{session_id}.jsonl", count, texts, extra_lines)

    return _make


@pytest.fixture
def service(config: MemoryConfig, clock: FakeClock) -> MemoryService:
    locks = InProcessLockManager(stale_after=300, clock=clock)
    return MemoryService(config, locks=locks, compressor=StubCompressor())


@pytest.fixture
def registered(service: MemoryService, make_log: Callable[..., Path]) -> MemoryService:
    """Service with one 20-message session registered."""
    make_log()
    service.register_session(PROJECT, SESSION)
    return service
