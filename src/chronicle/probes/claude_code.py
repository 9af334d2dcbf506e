"""Claude Code probe — reads ~/.claude/projects/<project>/<session>.jsonl logs.

Every non-blank line is one record. A message's content reference is the
byte offset and 1-based line number of its record, so the text can be
re-read later with a single seek.
"""

from __future__ import annotations

import json
import logging

from chronicle.errors import ContentUnavailableError, ExtractionError, RecordParseError
from chronicle.models import (
    ContentRef,
    MessageMetadata,
    SessionMetadata,
    SessionRef,
    TokenUsage,
    ToolUseMetadata,
)

from . import register_probe
from .base import (
    Probe,
    check_text_fields,
    count_field,
    make_title,
    most_used,
    parse_timestamp,
    read_git_remote,
    text_field,
)

logger = logging.getLogger(__name__)

PROVIDER_ID = "anthropic"

# Bookkeeping records that are not part of the conversation
_SKIPPED_TYPES = ("queue-operation", "file-history-snapshot")


def _parse_record(raw: bytes) -> dict:
    try:
        data = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as err:
        raise RecordParseError(str(err)) from err
    if not isinstance(data, dict):
        raise RecordParseError(f"expected a JSON object, got {type(data).__name__}")
    return data


def _check_record(data: dict) -> None:
    """Reject records whose known fields have the wrong type."""
    check_text_fields(data, "type", "uuid", "cwd")
    message = data.get("message")
    if not isinstance(message, dict):
        return
    check_text_fields(message, "role", "model")
    content = message.get("content")
    if not isinstance(content, list):
        return
    for item in content:
        if not isinstance(item, dict):
            continue
        if item.get("type") == "tool_use":
            check_text_fields(item, "id", "name")
        elif item.get("type") == "tool_result":
            check_text_fields(item, "tool_use_id")


def _first_text(content: object) -> str | None:
    """First text segment of a message's content (string or list of items)."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        for item in content:
            if isinstance(item, dict) and item.get("type") == "text":
                text = item.get("text")
                if isinstance(text, str) and text.strip():
                    return text
    return None


def _token_usage(usage: object) -> TokenUsage | None:
    if not isinstance(usage, dict):
        return None
    return TokenUsage(
        input_tokens=count_field(usage.get("input_tokens")),
        output_tokens=count_field(usage.get("output_tokens")),
        cache_read_tokens=count_field(usage.get("cache_read_input_tokens")),
        cache_creation_tokens=count_field(usage.get("cache_creation_input_tokens")),
    )


def render_record(data: dict) -> str:
    """Render one JSONL record as readable text."""
    message = data.get("message")
    content = message.get("content") if isinstance(message, dict) else data.get("content")
    if content is None and isinstance(data.get("summary"), str):
        return data["summary"]
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return json.dumps(data, indent=2)

    parts: list[str] = []
    for item in content:
        if not isinstance(item, dict):
            continue
        item_type = item.get("type")
        if item_type == "text":
            parts.append(text_field(item.get("text")) or "")
        elif item_type == "tool_use":
            parts.append(f"[Tool: {text_field(item.get('name')) or 'unknown'}]")
        elif item_type == "thinking":
            parts.append(f"[Thinking]\n{text_field(item.get('thinking')) or ''}")
        elif item_type == "tool_result":
            result = item.get("content")
            if isinstance(result, list):
                result = "\n".join(
                    text_field(r.get("text")) or "" for r in result if isinstance(r, dict)
                )
            parts.append(f"[Tool result]\n{result or ''}")
    return "\n".join(parts)


@register_probe
class ClaudeCodeProbe(Probe):
    """Probe for Claude Code CLI sessions."""

    id = "claude:ClaudeCode"
    provider = "claude"
    source = "ClaudeCode"
    source_type = "single"
    description = "Claude Code CLI (Anthropic)"

    def discover(self) -> list[SessionRef]:
        if not self.base_path.is_dir():
            return []

        refs: list[SessionRef] = []
        try:
            for project_dir in sorted(self.base_path.iterdir()):
                if not project_dir.is_dir():
                    continue
                for jsonl_file in sorted(project_dir.glob("*.jsonl")):
                    refs.append(SessionRef(id=jsonl_file.stem, source_path=jsonl_file))
        except OSError as err:
            raise ExtractionError(f"Failed to scan {self.base_path}: {err}") from err
        return refs

    def extract_metadata(self, session: SessionRef) -> SessionMetadata:
        messages: list[MessageMetadata] = []
        first_ts = None
        last_ts = None
        project_path: str | None = None
        title: str | None = None
        models: list[str] = []
        providers: list[str] = []
        # Tool uses by id, to flag the ones answered by a later tool_result
        tool_uses_by_id: dict[str, ToolUseMetadata] = {}
        result_ids: set[str] = set()
        record_count = 0
        skipped = 0

        try:
            with open(session.source_path, "rb") as f:
                byte_offset = 0
                for line_number, raw in enumerate(f, start=1):
                    record_offset = byte_offset
                    byte_offset += len(raw)
                    if not raw.strip():
                        continue
                    record_count += 1

                    try:
                        data = _parse_record(raw)
                        _check_record(data)
                    except RecordParseError as err:
                        skipped += 1
                        logger.debug(
                            "Skipping line %d of %s: %s", line_number, session.source_path, err
                        )
                        continue

                    msg_type = data.get("type") or ""
                    if msg_type in _SKIPPED_TYPES:
                        continue

                    if project_path is None:
                        cwd = data.get("cwd")
                        if isinstance(cwd, str) and cwd:
                            project_path = cwd

                    timestamp = parse_timestamp(data.get("timestamp"))
                    if timestamp is not None:
                        if first_ts is None:
                            first_ts = timestamp
                        last_ts = timestamp

                    message_data = data.get("message")
                    if not isinstance(message_data, dict):
                        message_data = {}

                    role = message_data.get("role") or msg_type or "unknown"

                    model = text_field(message_data.get("model"))
                    if model:
                        models.append(model)
                        providers.append(PROVIDER_ID)

                    content = message_data.get("content")
                    if title is None and role == "user":
                        title = make_title(_first_text(content))

                    tool_uses: list[ToolUseMetadata] = []
                    has_thinking = False
                    if isinstance(content, list):
                        for item in content:
                            if not isinstance(item, dict):
                                continue
                            item_type = item.get("type")
                            if item_type == "tool_use":
                                tool = ToolUseMetadata(
                                    tool_name=text_field(item.get("name")) or "unknown",
                                    tool_id=text_field(item.get("id")),
                                )
                                tool_uses.append(tool)
                                if tool.tool_id:
                                    tool_uses_by_id[tool.tool_id] = tool
                            elif item_type in ("thinking", "redacted_thinking"):
                                has_thinking = True
                            elif item_type == "tool_result" and text_field(item.get("tool_use_id")):
                                result_ids.add(item["tool_use_id"])

                    messages.append(
                        MessageMetadata(
                            role=role,
                            content_ref=ContentRef.line(
                                session.source_path, record_offset, line_number
                            ),
                            uuid=text_field(data.get("uuid")),
                            provider_id=PROVIDER_ID,
                            model=model,
                            timestamp=timestamp,
                            has_tool_use=bool(tool_uses),
                            has_thinking=has_thinking,
                            tool_uses=tool_uses,
                            token_usage=_token_usage(message_data.get("usage")),
                        )
                    )
        except OSError as err:
            raise ExtractionError(
                f"Failed to read session file {session.source_path}: {err}"
            ) from err

        if record_count and skipped == record_count:
            raise ExtractionError(f"No parseable records in {session.source_path}")

        for tool_id in result_ids:
            if tool_id in tool_uses_by_id:
                tool_uses_by_id[tool_id].has_result = True

        return SessionMetadata(
            external_id=session.id,
            title=title,
            project_path=project_path,
            git_remote=read_git_remote(project_path),
            primary_provider=most_used(providers),
            primary_model=most_used(models),
            first_timestamp=first_ts,
            last_timestamp=last_ts,
            messages=messages,
            skipped_records=skipped,
        )

    def get_content(self, reference: ContentRef) -> str:
        offset = reference.byte_offset or 0
        try:
            with open(reference.source_path, "rb") as f:
                if offset > 0:
                    # The offset must still start a line, or the file was rewritten
                    f.seek(offset - 1)
                    if f.read(1) != b"\n":
                        raise ContentUnavailableError(
                            f"Byte offset {offset} is no longer a record boundary "
                            f"in {reference.source_path}"
                        )
                raw = f.readline()
        except OSError as err:
            raise ContentUnavailableError(
                f"Cannot read {reference.source_path}: {err}"
            ) from err

        if not raw.strip():
            raise ContentUnavailableError(
                f"No record at byte offset {offset} in {reference.source_path}"
            )
        try:
            data = _parse_record(raw)
        except RecordParseError as err:
            raise ContentUnavailableError(
                f"Record at byte offset {offset} in {reference.source_path} "
                f"is unreadable: {err}"
            ) from err
        return render_record(data)
