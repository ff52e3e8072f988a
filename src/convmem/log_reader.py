"""Raw log reader — one JSON record per line, user/assistant messages kept.

Unreadable lines are never dropped silently: every skip is tallied in a
:class:`ParseReport` so callers can refuse to work on a shrunken log.
"""

from __future__ import annotations

import json
import logging
import math
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .errors import OriginalFileNotFound, StorageError
from .manifest import SessionMetadata

_log = logging.getLogger(__name__)

MESSAGE_TYPES = frozenset({"user", "assistant"})


def estimate_tokens(text: str) -> int:
    """Estimate token count from text. Rough heuristic: words * 1.3."""
    if not text:
        return 0
    words = len(text.split())
    return math.ceil(words * 1.3)


def _block_text(block: Any, include_tools: bool) -> str:
    if isinstance(block, str):
        return block
    if not isinstance(block, dict):
        return ""
    kind = block.get("type")
    if kind == "text":
        return str(block.get("text") or "")
    if not include_tools:
        return ""
    if kind == "tool_use":
        return f"[tool_use {block.get('name', '')}] {json.dumps(block.get('input', {}))}"
    if kind == "tool_result":
        inner = block.get("content")
        if isinstance(inner, list):
            return "\n".join(_block_text(b, include_tools) for b in inner)
        return str(inner or "")
    return ""


def message_text(content: list[Any] | str | None, include_tools: bool = False) -> str:
    """Join the text blocks of a message (tool blocks too when *include_tools*)."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    parts = [_block_text(b, include_tools) for b in content]
    return "\n".join(p for p in parts if p)


# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------


@dataclass
class TokenUsage:
    input: int = 0
    output: int = 0
    cache_read: int = 0
    cache_creation: int = 0

    @property
    def total(self) -> int:
        return self.input + self.output + self.cache_read + self.cache_creation

    @classmethod
    def from_usage(cls, usage: dict[str, Any] | None) -> TokenUsage:
        usage = usage or {}
        return cls(
            input=int(usage.get("input_tokens") or 0),
            output=int(usage.get("output_tokens") or 0),
            cache_read=int(usage.get("cache_read_input_tokens") or 0),
            cache_creation=int(usage.get("cache_creation_input_tokens") or 0),
        )


@dataclass
class LogMessage:
    uuid: str
    type: str
    content: list[Any] = field(default_factory=list)
    parent_uuid: str | None = None
    timestamp: str | None = None
    session_id: str | None = None
    model: str | None = None
    cwd: str | None = None
    git_branch: str | None = None
    client_version: str | None = None
    usage: TokenUsage = field(default_factory=TokenUsage)
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def text(self) -> str:
        return message_text(self.content)

    @property
    def tokens(self) -> int:
        """Content size in tokens; API usage counts include context and are not used."""
        return estimate_tokens(message_text(self.content, include_tools=True))


@dataclass
class ParseIssue:
    line_number: int
    reason: str


@dataclass
class ParseReport:
    valid_count: int = 0
    skipped_count: int = 0
    ignored_count: int = 0
    errors: list[ParseIssue] = field(default_factory=list)

    @property
    def skip_rate(self) -> float:
        considered = self.valid_count + self.skipped_count
        return self.skipped_count / considered if considered else 0.0

    def skip(self, line_number: int, reason: str) -> None:
        self.skipped_count += 1
        self.errors.append(ParseIssue(line_number, reason))


@dataclass
class ParsedLog:
    source: str
    messages: list[LogMessage]
    report: ParseReport
    summary: str | None = None

    @property
    def session_id(self) -> str | None:
        return self.messages[0].session_id if self.messages else None

    @property
    def total_tokens(self) -> int:
        return sum(m.tokens for m in self.messages)

    @property
    def first_timestamp(self) -> str | None:
        stamps = [m.timestamp for m in self.messages if m.timestamp]
        return min(stamps) if stamps else None

    @property
    def last_timestamp(self) -> str | None:
        stamps = [m.timestamp for m in self.messages if m.timestamp]
        return max(stamps) if stamps else None

    def metadata(self) -> SessionMetadata:
        meta = SessionMetadata()
        for msg in self.messages:
            meta.cwd = meta.cwd or msg.cwd
            meta.git_branch = meta.git_branch or msg.git_branch
            meta.client_version = meta.client_version or msg.client_version
        if meta.cwd:
            meta.project_name = Path(meta.cwd).name or None
        return meta

    def index_of(self, message_id: str) -> int | None:
        for i, msg in enumerate(self.messages):
            if msg.uuid == message_id:
                return i
        return None


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _to_message(record: dict[str, Any]) -> LogMessage:
    body = record.get("message")
    if not isinstance(body, dict):
        msg = "missing message body"
        raise ValueError(msg)
    uuid = record.get("uuid")
    if not isinstance(uuid, str) or not uuid:
        msg = "missing uuid"
        raise ValueError(msg)
    content = body.get("content")
    if isinstance(content, str):
        blocks: list[Any] = [{"type": "text", "text": content}]
    elif isinstance(content, list):
        blocks = [b for b in content if b is not None]
    elif content is None:
        blocks = []
    else:
        blocks = [content]
    return LogMessage(
        uuid=uuid,
        type=record["type"],
        content=blocks,
        parent_uuid=record.get("parentUuid"),
        timestamp=record.get("timestamp"),
        session_id=record.get("sessionId"),
        model=body.get("model"),
        cwd=record.get("cwd"),
        git_branch=record.get("gitBranch") or None,
        client_version=record.get("version"),
        usage=TokenUsage.from_usage(body.get("usage")),
        raw=record,
    )


def parse_lines(lines: Iterable[str], source: str = "<memory>") -> ParsedLog:
    report = ParseReport()
    messages: list[LogMessage] = []
    seen: set[str] = set()
    summary: str | None = None

    for number, line in enumerate(lines, start=1):
        if not line.strip():
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError as exc:
            report.skip(number, f"invalid JSON: {exc.msg}")
            continue
        if not isinstance(record, dict):
            report.skip(number, "record is not an object")
            continue
        kind = record.get("type")
        if kind == "summary":
            summary = record.get("summary") or summary
            report.ignored_count += 1
            continue
        if kind not in MESSAGE_TYPES:
            report.ignored_count += 1
            continue
        try:
            message = _to_message(record)
        except ValueError as exc:
            report.skip(number, str(exc))
            continue
        if message.uuid in seen:
            report.skip(number, f"duplicate uuid {message.uuid}")
            continue
        seen.add(message.uuid)
        messages.append(message)
        report.valid_count += 1

    if report.skipped_count:
        _log.warning(
            "Skipped %d unreadable line(s) in %s", report.skipped_count, source
        )
    return ParsedLog(source=source, messages=messages, report=report, summary=summary)


def read_log(path: Path | str) -> ParsedLog:
    """Parse the log at *path*."""
    path = Path(path)
    if not path.is_file():
        raise OriginalFileNotFound(str(path))
    try:
        with path.open(encoding="utf-8", errors="replace") as fh:
            return parse_lines(fh, source=str(path))
    except OSError as exc:
        raise StorageError("read", str(path), str(exc)) from exc
