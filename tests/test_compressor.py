"""Tests for compressors — mocked subprocess, no real claude CLI required."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from conftest import log_record

from convmem.compressor import (
    ClaudeCliCompressor,
    CompressionRequest,
    Compressor,
    CompressorError,
    PinnedInstruction,
    StubCompressor,
    create_compressor,
)
from convmem.log_reader import LogMessage, parse_lines
from convmem.settings import TieredSettings, UniformSettings

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _messages(count: int, texts: dict[int, str] | None = None) -> list[LogMessage]:
    texts = texts or {}
    lines = (json.dumps(log_record(i, texts.get(i))) for i in range(count))
    return parse_lines(lines).messages


def _request(
    count: int = 20,
    settings: UniformSettings | TieredSettings | None = None,
    pinned: list[PinnedInstruction] | None = None,
    texts: dict[int, str] | None = None,
) -> CompressionRequest:
    return CompressionRequest(
        session_id="s",
        messages=_messages(count, texts),
        settings=settings or UniformSettings(),
        pinned=pinned or [],
    )


def _mock_process(stdout: str = "", stderr: str = "", returncode: int = 0) -> MagicMock:
    """Create a mock asyncio.subprocess.Process."""
    proc = MagicMock()
    proc.returncode = returncode
    proc.sent = None

    async def communicate(data: bytes | None = None) -> tuple[bytes, bytes]:
        proc.sent = data
        return stdout.encode(), stderr.encode()

    proc.communicate = communicate  # type: ignore[assignment]
    return proc


def _envelope(items: object) -> str:
    return json.dumps({"type": "result", "result": json.dumps(items)})


# ---------------------------------------------------------------------------
# StubCompressor
# ---------------------------------------------------------------------------


def test_stub_is_compressor() -> None:
    assert isinstance(StubCompressor(), Compressor)
    assert StubCompressor().name() == "stub"


@pytest.mark.asyncio
async def test_stub_uniform_ratio() -> None:
    out = await StubCompressor().compress(_request(1000, UniformSettings(compaction_ratio=10)))
    assert len(out.messages) == 100
    assert len(out.tier_results) == 1
    assert out.tier_results[0].input_messages == 1000
    assert out.output_tokens < sum(m.tokens for m in _messages(1000))


@pytest.mark.asyncio
async def test_stub_tiered_standard() -> None:
    out = await StubCompressor().compress(_request(20, TieredSettings()))
    assert [t.end_percent for t in out.tier_results] == [25, 50, 75, 90, 100]
    assert sum(t.input_messages for t in out.tier_results) == 20
    assert len(out.messages) == 5


@pytest.mark.asyncio
async def test_stub_skip_first_messages_kept_verbatim() -> None:
    out = await StubCompressor().compress(_request(20, UniformSettings(skip_first_messages=2)))
    assert out.messages[0].content == _messages(1)[0].text
    assert out.tier_results[0].input_messages == 18


@pytest.mark.asyncio
async def test_stub_keeps_surviving_pinned_content() -> None:
    request = _request(
        10,
        UniformSettings(compaction_ratio=10),
        pinned=[
            PinnedInstruction("port 8080", 1.0, True),
            PinnedInstruction("the old idea", 0.1, False),
        ],
        texts={4: "##keepit1.00##port 8080", 6: "##keepit0.10##the old idea"},
    )
    out = await StubCompressor().compress(request)
    assert len(out.messages) == 1
    assert "port 8080" in out.messages[0].content
    assert "the old idea" not in out.messages[0].content


# ---------------------------------------------------------------------------
# ClaudeCliCompressor — success
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@patch("shutil.which", return_value="/usr/bin/claude")
@patch("asyncio.create_subprocess_exec")
async def test_cli_compress_success(mock_exec: AsyncMock, mock_which: MagicMock) -> None:
    proc = _mock_process(
        stdout=_envelope([
            {"role": "user", "content": "asked about ports"},
            {"role": "assistant", "content": "chose 8080"},
        ])
    )
    mock_exec.return_value = proc

    out = await ClaudeCliCompressor().compress(_request(20))

    assert [m.role for m in out.messages] == ["user", "assistant"]
    assert out.messages[1].content == "chose 8080"
    call_args = mock_exec.call_args[0]
    assert "-p" in call_args
    assert "opus" in call_args
    assert b"<conversation>" in proc.sent


@pytest.mark.asyncio
@patch("shutil.which", return_value="/usr/bin/claude")
@patch("asyncio.create_subprocess_exec")
async def test_cli_prompt_lists_pinned(mock_exec: AsyncMock, mock_which: MagicMock) -> None:
    proc = _mock_process(stdout=_envelope([{"role": "assistant", "content": "ok"}]))
    mock_exec.return_value = proc
    request = _request(4, pinned=[PinnedInstruction("keep me", 1.0, True)])

    await ClaudeCliCompressor().compress(request)

    assert "Preserve these passages verbatim:\n- keep me" in proc.sent.decode()


@pytest.mark.asyncio
@patch("shutil.which", return_value="/usr/bin/claude")
@patch("asyncio.create_subprocess_exec")
async def test_cli_fenced_result(mock_exec: AsyncMock, mock_which: MagicMock) -> None:
    result = 'Here you go:\n```json\n[{"role": "bot", "content": "x"}]\n```'
    mock_exec.return_value = _mock_process(stdout=json.dumps({"result": result}))

    out = await ClaudeCliCompressor().compress(_request(4))

    # Unknown roles fall back to assistant.
    assert out.messages[0].role == "assistant"


# ---------------------------------------------------------------------------
# ClaudeCliCompressor — errors
# ---------------------------------------------------------------------------


@patch("shutil.which", return_value=None)
def test_cli_is_available_false(mock_which: MagicMock) -> None:
    assert not ClaudeCliCompressor().is_available()


@patch("shutil.which", return_value="/usr/bin/claude")
def test_cli_is_available_true(mock_which: MagicMock) -> None:
    assert ClaudeCliCompressor().is_available()


@pytest.mark.asyncio
@patch("shutil.which", return_value=None)
async def test_cli_binary_not_found(mock_which: MagicMock) -> None:
    with pytest.raises(CompressorError, match="claude CLI not found"):
        await ClaudeCliCompressor().compress(_request(4))


@pytest.mark.asyncio
@patch("shutil.which", return_value="/usr/bin/claude")
@patch("asyncio.create_subprocess_exec")
async def test_cli_nonzero_exit(mock_exec: AsyncMock, mock_which: MagicMock) -> None:
    mock_exec.return_value = _mock_process(stderr="rate limit exceeded", returncode=1)
    with pytest.raises(CompressorError, match="exit 1.*rate limit") as info:
        await ClaudeCliCompressor().compress(_request(4))
    assert info.value.returncode == 1


@pytest.mark.asyncio
@patch("shutil.which", return_value="/usr/bin/claude")
@patch("asyncio.create_subprocess_exec")
async def test_cli_empty_array(mock_exec: AsyncMock, mock_which: MagicMock) -> None:
    mock_exec.return_value = _mock_process(stdout=_envelope([]))
    with pytest.raises(CompressorError, match="no messages"):
        await ClaudeCliCompressor().compress(_request(4))


@pytest.mark.parametrize(
    ("stdout", "match"),
    [
        ("not json", "unparseable"),
        (json.dumps({"result": ""}), "no result"),
        (json.dumps({"result": "no array here"}), "not a JSON array"),
        (json.dumps({"result": '{"role": "user"}'}), "not a JSON array"),
        (json.dumps({"result": "[42]"}), "malformed"),
    ],
)
def test_parse_response_errors(stdout: str, match: str) -> None:
    with pytest.raises(CompressorError, match=match):
        ClaudeCliCompressor._parse_response(stdout)  # noqa: SLF001


def test_parse_response_plain_strings() -> None:
    out = ClaudeCliCompressor._parse_response(json.dumps({"result": '["a", "b"]'}))  # noqa: SLF001
    assert [m.content for m in out] == ["a", "b"]


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def test_create_compressor_by_name() -> None:
    assert isinstance(create_compressor("stub"), StubCompressor)
    assert isinstance(create_compressor("CLAUDE"), ClaudeCliCompressor)


def test_create_compressor_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CONVMEM_COMPRESSOR", "stub")
    assert isinstance(create_compressor(), StubCompressor)


def test_create_compressor_unknown() -> None:
    with pytest.raises(ValueError, match="Unknown compressor"):
        create_compressor("gpt")


def test_command_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CONVMEM_COMPRESSOR_CMD", "/opt/claude")
    assert ClaudeCliCompressor()._command == "/opt/claude"  # noqa: SLF001
