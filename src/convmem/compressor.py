"""Compression collaborators — turn a slice of messages into a condensed one.

:class:`ClaudeCliCompressor` runs the ``claude`` CLI as a subprocess;
:class:`StubCompressor` is deterministic and needs nothing installed.
Wall-clock timeouts are enforced by the caller (the orchestrator).
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import os
import re
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from .log_reader import LogMessage, estimate_tokens
from .manifest import TierResult
from .markers import strip_markers
from .settings import (
    Aggressiveness,
    TieredSettings,
    UniformSettings,
    split_tiers,
)

_log = logging.getLogger(__name__)

_DEFAULT_COMMAND = "claude"
_FENCE = re.compile(r"```(?:json)?\s*(.*?)```", re.S)


class CompressorError(Exception):
    """Raised when the compression collaborator fails or returns garbage."""

    def __init__(self, message: str, returncode: int | None = None) -> None:
        self.returncode = returncode
        super().__init__(message)


@dataclass
class PinnedInstruction:
    content: str
    weight: float
    survives: bool


@dataclass
class CompressionRequest:
    session_id: str
    messages: list[LogMessage]
    settings: UniformSettings | TieredSettings
    pinned: list[PinnedInstruction] = field(default_factory=list)


@dataclass
class CondensedMessage:
    role: str
    content: str
    tokens: int = 0

    def __post_init__(self) -> None:
        if not self.tokens:
            self.tokens = estimate_tokens(self.content)


@dataclass
class CompressionOutput:
    messages: list[CondensedMessage]
    tier_results: list[TierResult] = field(default_factory=list)

    @property
    def output_tokens(self) -> int:
        return sum(m.tokens for m in self.messages)


def _tokens(messages: list[LogMessage]) -> int:
    return sum(m.tokens for m in messages)


class Compressor(ABC):
    """Base class: handles skipped prefixes and tier slicing, delegates condensing."""

    @abstractmethod
    def name(self) -> str:
        """Short identifier for logs and records."""

    @abstractmethod
    async def _condense(
        self,
        messages: list[LogMessage],
        ratio: float,
        aggressiveness: Aggressiveness,
        request: CompressionRequest,
    ) -> list[CondensedMessage]:
        """Condense one slice of messages to roughly ``1/ratio`` of its size."""

    async def compress(self, request: CompressionRequest) -> CompressionOutput:
        settings = request.settings
        skip = min(settings.skip_first_messages, len(request.messages))
        kept = [
            CondensedMessage(role=m.type, content=m.text) for m in request.messages[:skip] if m.text
        ]
        rest = request.messages[skip:]

        if isinstance(settings, UniformSettings):
            slices = [(0, len(rest), 100, settings.compaction_ratio, settings.aggressiveness)]
        else:
            slices = [
                (start, end, t.end_percent, t.compaction_ratio, t.aggressiveness)
                for start, end, t in split_tiers(len(rest), settings.tiers())
            ]

        output = CompressionOutput(messages=kept)
        for start, end, end_percent, ratio, aggressiveness in slices:
            chunk = rest[start:end]
            if not chunk:
                continue
            condensed = await self._condense(chunk, ratio, aggressiveness, request)
            if not condensed:
                msg = f"{self.name()} returned no messages for {len(chunk)} input message(s)"
                raise CompressorError(msg)
            output.messages.extend(condensed)
            output.tier_results.append(
                TierResult(
                    end_percent=end_percent,
                    compaction_ratio=ratio,
                    aggressiveness=aggressiveness.value,
                    input_messages=len(chunk),
                    output_messages=len(condensed),
                    input_tokens=_tokens(chunk),
                    output_tokens=sum(m.tokens for m in condensed),
                )
            )
        return output


# ---------------------------------------------------------------------------
# Stub
# ---------------------------------------------------------------------------


class StubCompressor(Compressor):
    """Deterministic compressor: keeps every Nth message, shortened.

    Surviving pinned spans are appended verbatim to the first kept message
    of the slice that contains them.
    """

    def __init__(self, delay: float = 0.0) -> None:
        self._delay = delay

    def name(self) -> str:
        return "stub"

    async def _condense(
        self,
        messages: list[LogMessage],
        ratio: float,
        aggressiveness: Aggressiveness,
        request: CompressionRequest,
    ) -> list[CondensedMessage]:
        if self._delay:
            await asyncio.sleep(self._delay)
        step = max(1, round(ratio))
        survivors = [p for p in request.pinned if p.survives]
        out: list[CondensedMessage] = []
        for i in range(0, len(messages), step):
            group = messages[i : i + step]
            words = strip_markers(group[0].text).split()
            keep = max(1, math.ceil(len(words) / step)) if words else 0
            text = " ".join(words[:keep]) or f"[{len(group)} message(s) condensed]"
            pinned = [
                p.content for p in survivors if any(p.content in m.text for m in group)
            ]
            if pinned:
                text += "\n" + "\n".join(pinned)
            out.append(CondensedMessage(role=group[0].type, content=text))
        return out


# ---------------------------------------------------------------------------
# Claude CLI
# ---------------------------------------------------------------------------


class ClaudeCliCompressor(Compressor):
    """Delegates condensing to the ``claude`` CLI in print mode.

    Configuration via environment variables:
        - ``CONVMEM_COMPRESSOR_CMD``: executable (default ``claude``)
    """

    def __init__(self, command: str | None = None) -> None:
        self._command = command or os.environ.get("CONVMEM_COMPRESSOR_CMD", _DEFAULT_COMMAND)

    def name(self) -> str:
        return "claude"

    def is_available(self) -> bool:
        return shutil.which(self._command) is not None

    async def _condense(
        self,
        messages: list[LogMessage],
        ratio: float,
        aggressiveness: Aggressiveness,
        request: CompressionRequest,
    ) -> list[CondensedMessage]:
        binary = shutil.which(self._command)
        if binary is None:
            msg = (
                f"{self._command} CLI not found on PATH. "
                "Install it or set CONVMEM_COMPRESSOR=stub."
            )
            raise CompressorError(msg)

        args = [binary, "-p", "--model", request.settings.model.value, "--output-format", "json"]
        prompt = self._build_prompt(messages, ratio, aggressiveness, request.pinned)
        _log.info(
            "Condensing %d message(s) of %s at %gx via %s",
            len(messages), request.session_id, ratio, self._command,
        )

        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            msg = f"failed to spawn {self._command}: {exc}"
            raise CompressorError(msg) from exc
        try:
            stdout_bytes, stderr_bytes = await proc.communicate(prompt.encode("utf-8"))
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
            raise

        stdout = stdout_bytes.decode("utf-8", errors="replace").strip()
        stderr = stderr_bytes.decode("utf-8", errors="replace").strip()
        if proc.returncode != 0:
            detail = stderr or stdout or "unknown error"
            msg = f"{self._command} failed (exit {proc.returncode}): {detail}"
            raise CompressorError(msg, returncode=proc.returncode)

        return self._parse_response(stdout)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _build_prompt(
        messages: list[LogMessage],
        ratio: float,
        aggressiveness: Aggressiveness,
        pinned: list[PinnedInstruction],
    ) -> str:
        target = max(1, math.ceil(len(messages) / ratio))
        parts = [
            f"Condense the conversation excerpt below to about {target} message(s) "
            f"(compaction {ratio:g}:1, {aggressiveness.value} aggressiveness). "
            "Keep decisions, code references, errors and open questions.",
            'Respond with ONLY a JSON array of {"role": "user"|"assistant", "content": "..."} '
            "objects in chronological order.",
        ]
        keep = [p for p in pinned if p.survives]
        fold = [p for p in pinned if not p.survives]
        if keep:
            parts.append(
                "Preserve these passages verbatim:\n" + "\n".join(f"- {p.content}" for p in keep)
            )
        if fold:
            parts.append(
                "These passages may be summarized:\n" + "\n".join(f"- {p.content}" for p in fold)
            )
        transcript = "\n\n".join(
            f"[{m.type}] {strip_markers(m.text)}" for m in messages if m.text
        )
        parts.append(f"<conversation>\n{transcript}\n</conversation>")
        return "\n\n".join(parts)

    @staticmethod
    def _parse_response(stdout: str) -> list[CondensedMessage]:
        """Extract the JSON array of condensed messages from ``--output-format json``."""
        try:
            envelope = json.loads(stdout)
        except json.JSONDecodeError as exc:
            msg = f"unparseable CLI output: {stdout[:200]}"
            raise CompressorError(msg) from exc
        result = envelope.get("result") if isinstance(envelope, dict) else None
        if not isinstance(result, str) or not result.strip():
            msg = "no result field in CLI output"
            raise CompressorError(msg)

        text = result.strip()
        fenced = _FENCE.search(text)
        if fenced:
            text = fenced.group(1).strip()
        if not text.startswith("["):
            start, end = text.find("["), text.rfind("]")
            if start != -1 and end > start:
                text = text[start : end + 1]
        try:
            items: Any = json.loads(text)
        except json.JSONDecodeError as exc:
            msg = f"result is not a JSON array: {text[:200]}"
            raise CompressorError(msg) from exc
        if not isinstance(items, list):
            msg = "result is not a JSON array"
            raise CompressorError(msg)

        condensed: list[CondensedMessage] = []
        for item in items:
            if isinstance(item, str):
                condensed.append(CondensedMessage(role="assistant", content=item))
            elif isinstance(item, dict) and isinstance(item.get("content"), str):
                role = item.get("role")
                if role not in ("user", "assistant"):
                    role = "assistant"
                condensed.append(CondensedMessage(role=role, content=item["content"]))
            else:
                msg = f"malformed condensed message: {item!r}"
                raise CompressorError(msg)
        return condensed


def create_compressor(kind: str | None = None, command: str | None = None) -> Compressor:
    """Build a compressor by name (``claude`` | ``stub``), defaulting to ``CONVMEM_COMPRESSOR``."""
    name = (kind or os.environ.get("CONVMEM_COMPRESSOR", "claude")).strip().lower()
    if name == "claude":
        return ClaudeCliCompressor(command=command)
    if name == "stub":
        return StubCompressor()
    msg = f"Unknown compressor '{name}'. Valid values for CONVMEM_COMPRESSOR: claude, stub"
    raise ValueError(msg)
