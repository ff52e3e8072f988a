"""Markdown and JSONL renderings for derivatives and compositions."""

from __future__ import annotations

import json
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from .log_reader import LogMessage
from .manifest import ComponentRecord, CompositionRecord, DerivativeRecord
from .storage import utc_now


@dataclass
class RenderedMessage:
    role: str
    content: str
    tokens: int = 0


def _jsonl(records: Iterable[dict[str, Any]]) -> str:
    return "\n".join(json.dumps(r, ensure_ascii=False) for r in records) + "\n"


def _title(role: str) -> str:
    return "User" if role == "user" else "Assistant"


# ---------------------------------------------------------------------------
# Derivatives
# ---------------------------------------------------------------------------


def version_markdown(
    session_id: str, record: DerivativeRecord, messages: list[RenderedMessage]
) -> str:
    rng = record.message_range
    lines = [
        "# Compressed Session",
        "",
        f"- **Session**: {session_id}",
        f"- **Version**: {record.version_id} (part {record.part_number}, "
        f"{record.compression_level.value})",
        f"- **Messages**: {rng.start_index}–{rng.end_index} "
        f"({record.input_messages} → {record.output_messages})",
        f"- **Tokens**: {record.input_tokens} → {record.output_tokens} "
        f"({record.compression_ratio}:1)",
        f"- **Created**: {record.created_at}",
        "",
        "---",
        "",
    ]
    for msg in messages:
        lines.extend([f"## {_title(msg.role)} [SUMMARIZED]", "", msg.content.strip(), ""])
    return "\n".join(lines)


def version_jsonl(record: DerivativeRecord, messages: list[RenderedMessage]) -> str:
    header = {
        "type": "compression-metadata",
        "version": record.version_id,
        "part_number": record.part_number,
        "created_at": record.created_at,
        "settings": record.settings.model_dump(mode="json"),
        "message_range": record.message_range.model_dump(mode="json"),
        "changes": {
            "input_messages": record.input_messages,
            "output_messages": record.output_messages,
            "input_tokens": record.input_tokens,
            "output_tokens": record.output_tokens,
            "compression_ratio": record.compression_ratio,
        },
        "tier_results": [t.model_dump(mode="json") for t in record.tier_results],
    }
    body = (
        {"type": m.role, "role": m.role, "content": m.content, "tokens": m.tokens}
        for m in messages
    )
    return _jsonl([header, *body])


def read_version_jsonl(text: str) -> list[RenderedMessage]:
    """Messages from a derivative ``.jsonl`` (metadata header skipped)."""
    out: list[RenderedMessage] = []
    for line in text.splitlines():
        if not line.strip():
            continue
        record = json.loads(line)
        if record.get("type") == "compression-metadata":
            continue
        out.append(
            RenderedMessage(
                role=record.get("role", record.get("type", "assistant")),
                content=record.get("content", ""),
                tokens=int(record.get("tokens", 0)),
            )
        )
    return out


def from_log(messages: list[LogMessage]) -> list[RenderedMessage]:
    return [
        RenderedMessage(role=m.type, content=m.text, tokens=m.tokens)
        for m in messages
        if m.text
    ]


def original_markdown(session_id: str, messages: list[LogMessage]) -> str:
    lines = ["# Original Session", "", f"- **Session**: {session_id}",
             f"- **Messages**: {len(messages)}", "", "---", ""]
    for msg in from_log(messages):
        lines.extend([f"## {_title(msg.role)}", "", msg.content.strip(), ""])
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Compositions
# ---------------------------------------------------------------------------


@dataclass
class ComponentContent:
    component: ComponentRecord
    messages: list[RenderedMessage] = field(default_factory=list)
    note: str | None = None


def _anchor(order: int, session_id: str) -> str:
    return f"session-{order + 1}-{session_id.lower()}"


def _parts_label(component: ComponentRecord) -> str:
    return " + ".join(
        f"original[{p.start_index}–{p.end_index}]" if p.is_tail else p.version_id
        for p in component.parts
    )


def _provenance(component: ComponentRecord) -> str:
    line = f"- {component.session_id} → {component.version_id}"
    return f"{line} ({_parts_label(component)})" if component.parts else line


def composition_markdown(record: CompositionRecord, sections: list[ComponentContent]) -> str:
    lines = [
        f"# Composition: {record.name}",
        "",
        "| Property | Value |",
        "|---|---|",
        f"| Created | {record.created_at} |",
        f"| Budget | {record.budget} tokens |",
        f"| Strategy | {record.strategy.value} |",
        f"| Total tokens | {record.total_tokens} |",
        f"| Sessions | {len(sections)} |",
        "",
    ]
    if record.warnings:
        lines.extend(["> **Warnings**", *[f"> - {w}" for w in record.warnings], ""])

    lines.extend(["## Table of Contents", ""])
    for section in sections:
        c = section.component
        lines.append(
            f"{c.order + 1}. [Session {c.session_id}](#{_anchor(c.order, c.session_id)}) "
            f"({c.version_id}, {c.actual_tokens} tokens)"
        )
    lines.extend(["", "---", ""])

    for section in sections:
        c = section.component
        lines.extend([
            f'<a id="{_anchor(c.order, c.session_id)}"></a>',
            f"## Session {c.order + 1}: {c.session_id}",
            "",
            "| Property | Value |",
            "|---|---|",
            f"| Version | {c.version_id} |",
            *([f"| Parts | {_parts_label(c)} |"] if c.parts else []),
            f"| Requested | {c.requested_version} |",
            f"| Allocation | {c.token_allocation} tokens |",
            f"| Actual | {c.actual_tokens} tokens |",
            f"| Messages | {c.message_count} |",
            "",
        ])
        if section.note:
            lines.extend([f"> {section.note}", ""])
        for msg in section.messages:
            lines.extend([f"### {_title(msg.role)}", "", msg.content.strip(), ""])
        lines.extend(["---", ""])

    lines.extend([
        "## Provenance",
        "",
        f"Composition `{record.composition_id}` rendered {utc_now()}.",
        "",
        *[_provenance(s.component) for s in sections],
        "",
    ])
    return "\n".join(lines)


def _lineage(component: ComponentRecord) -> dict[str, Any]:
    entry: dict[str, Any] = {
        "session_id": component.session_id,
        "version_id": component.version_id,
        "order": component.order,
        "token_allocation": component.token_allocation,
        "actual_tokens": component.actual_tokens,
    }
    if component.parts:
        entry["parts"] = [p.model_dump(mode="json") for p in component.parts]
    return entry


def composition_jsonl(record: CompositionRecord, sections: list[ComponentContent]) -> str:
    header = {
        "type": "composition-metadata",
        "composition_id": record.composition_id,
        "name": record.name,
        "created_at": record.created_at,
        "budget": record.budget,
        "strategy": record.strategy.value,
        "total_tokens": record.total_tokens,
        "lineage": [_lineage(s.component) for s in sections],
    }
    records: list[dict[str, Any]] = [header]
    for section in sections:
        c = section.component
        boundary: dict[str, Any] = {
            "type": "session-boundary",
            "session_id": c.session_id,
            "version_id": c.version_id,
            "order": c.order,
        }
        if section.note:
            boundary["note"] = section.note
        records.append(boundary)
        records.extend(
            {"type": m.role, "role": m.role, "content": m.content, "session_id": c.session_id}
            for m in section.messages
        )
    return _jsonl(records)
