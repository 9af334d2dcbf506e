"""Shared data models — the contract between probes, the store, and readers.

Probes produce SessionMetadata objects. The store persists them. Message text
is never carried here: each message only holds a ContentRef telling the probe
where to find the text again.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path


@dataclass
class SessionRef:
    """A discovered conversation, before extraction."""

    id: str  # source-native id, e.g. the JSONL file stem
    source_path: Path


@dataclass(frozen=True)
class ContentRef:
    """Address of a message's full text inside its original source.

    Three shapes are valid:
    - line-addressed: byte_offset + line_number (append-only JSONL logs)
    - file-addressed: content_path (one JSON file per message part)
    - index-addressed: line_number only (position inside a thread payload)
    """

    source_path: Path
    byte_offset: int | None = None
    line_number: int | None = None
    content_path: Path | None = None

    @classmethod
    def line(cls, source_path: Path, byte_offset: int, line_number: int) -> ContentRef:
        return cls(
            source_path=Path(source_path),
            byte_offset=byte_offset,
            line_number=line_number,
        )

    @classmethod
    def file(cls, source_path: Path, content_path: Path) -> ContentRef:
        return cls(source_path=Path(source_path), content_path=Path(content_path))

    @classmethod
    def index(cls, source_path: Path, index: int) -> ContentRef:
        return cls(source_path=Path(source_path), line_number=index)

    @classmethod
    def from_row(cls, row) -> ContentRef:
        """Rebuild a reference from a stored messages row (dict or sqlite3.Row)."""
        content_path = row["content_ref"]
        return cls(
            source_path=Path(row["source_path"]),
            byte_offset=row["byte_offset"],
            line_number=row["line_number"],
            content_path=Path(content_path) if content_path else None,
        )

    @property
    def kind(self) -> str:
        if self.content_path is not None:
            return "file"
        if self.byte_offset is not None:
            return "line"
        return "index"


@dataclass
class ToolUseMetadata:
    tool_name: str
    tool_id: str | None = None
    has_result: bool = False


@dataclass
class TokenUsage:
    input_tokens: int | None = None
    output_tokens: int | None = None
    cache_read_tokens: int | None = None
    cache_creation_tokens: int | None = None

    @property
    def total(self) -> int:
        return sum(
            v or 0
            for v in (
                self.input_tokens,
                self.output_tokens,
                self.cache_read_tokens,
                self.cache_creation_tokens,
            )
        )


@dataclass
class MessageMetadata:
    """One message as indexed: who, when, which model, and where its text lives."""

    role: str  # user, assistant, system, or a source-specific record type
    content_ref: ContentRef
    uuid: str | None = None
    provider_id: str | None = None
    model: str | None = None
    timestamp: datetime | None = None
    has_tool_use: bool = False
    has_thinking: bool = False
    tool_uses: list[ToolUseMetadata] = field(default_factory=list)
    token_usage: TokenUsage | None = None


@dataclass
class SessionMetadata:
    """Everything extracted from one SessionRef.

    Produced by Probe.extract_metadata, consumed by MetadataStore.
    Messages keep the source's native order.
    """

    external_id: str
    title: str | None = None
    project_path: str | None = None
    git_remote: str | None = None
    primary_provider: str | None = None
    primary_model: str | None = None
    first_timestamp: datetime | None = None
    last_timestamp: datetime | None = None
    messages: list[MessageMetadata] = field(default_factory=list)
    skipped_records: int = 0  # malformed records dropped during extraction

    @property
    def message_count(self) -> int:
        return len(self.messages)
