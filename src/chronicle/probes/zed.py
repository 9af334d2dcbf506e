"""Zed probe — reads the agent panel's threads.db.

Each row of the `threads` table holds one conversation as a JSON document,
zstd-compressed when data_type is "zstd". Messages have no file of their own,
so a content reference is the message's index inside the thread payload,
addressed through the virtual path <threads.db>/<thread_id>.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from pathlib import Path

import zstandard

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

RESUME_MARKER = "Resume"


def _decode_payload(data_type: str | None, data: bytes | str | None) -> dict:
    """Decompress and parse a thread payload."""
    if data is None:
        raise RecordParseError("thread has no data")
    try:
        if data_type == "zstd":
            raw = zstandard.ZstdDecompressor().decompressobj().decompress(bytes(data))
        elif isinstance(data, str):
            raw = data.encode("utf-8")
        else:
            raw = bytes(data)
        thread = json.loads(raw.decode("utf-8"))
    except (zstandard.ZstdError, UnicodeDecodeError, json.JSONDecodeError) as err:
        raise RecordParseError(f"undecodable thread payload: {err}") from err
    if not isinstance(thread, dict):
        raise RecordParseError("thread payload is not a JSON object")
    return thread


def _message_body(message: object) -> tuple[str, dict] | None:
    """Split a thread message into (role, body); None for markers and junk."""
    if not isinstance(message, dict):
        return None
    if isinstance(message.get("User"), dict):
        return "user", message["User"]
    if isinstance(message.get("Agent"), dict):
        return "assistant", message["Agent"]
    return None


def _content_items(body: dict) -> list[dict]:
    content = body.get("content")
    if not isinstance(content, list):
        return []
    return [item for item in content if isinstance(item, dict)]


def _check_message(body: dict) -> None:
    """Reject messages whose ids or tool uses have the wrong type."""
    check_text_fields(body, "id")
    for item in _content_items(body):
        if isinstance(item.get("ToolUse"), dict):
            check_text_fields(item["ToolUse"], "id", "name")


def _first_text(body: dict) -> str | None:
    for item in _content_items(body):
        if isinstance(item.get("Text"), str):
            return item["Text"]
    return None


def render_message(message: object) -> str:
    """Render one thread message as readable text."""
    if message == RESUME_MARKER:
        return "[Resume]"
    split = _message_body(message)
    if split is None:
        return json.dumps(message, indent=2)
    _, body = split
    parts: list[str] = []
    for item in _content_items(body):
        if isinstance(item.get("Text"), str):
            parts.append(item["Text"])
        elif isinstance(item.get("ToolUse"), dict):
            parts.append(f"[Tool: {item['ToolUse'].get('name', 'unknown')}]")
        elif isinstance(item.get("Thinking"), dict):
            parts.append(f"[Thinking]\n{item['Thinking'].get('text', '')}")
    return "\n".join(parts)


def _cumulative_usage(usage: object) -> TokenUsage | None:
    if not isinstance(usage, dict) or not usage:
        return None
    return TokenUsage(
        input_tokens=count_field(usage.get("input_tokens")),
        output_tokens=count_field(usage.get("output_tokens")),
        cache_read_tokens=count_field(usage.get("cache_read_input_tokens")),
        cache_creation_tokens=count_field(usage.get("cache_creation_input_tokens")),
    )


@register_probe
class ZedProbe(Probe):
    """Probe for Zed's agent panel threads."""

    id = "zed:Zed"
    provider = "zed"
    source = "Zed"
    source_type = "multi"
    description = "Zed Editor AI Assistant (multi-provider)"

    def _connect(self, db_path: Path | None = None) -> sqlite3.Connection:
        """Open the threads database read-only."""
        db_path = Path(db_path or self.base_path).resolve()
        return sqlite3.connect(f"{db_path.as_uri()}?mode=ro", uri=True)

    def _fetch_thread(self, conn: sqlite3.Connection, thread_id: str) -> tuple | None:
        return conn.execute(
            "SELECT summary, updated_at, data_type, data FROM threads WHERE id = ?",
            (thread_id,),
        ).fetchone()

    def discover(self) -> list[SessionRef]:
        if not self.base_path.is_file():
            return []

        try:
            conn = self._connect()
            try:
                rows = conn.execute("SELECT id FROM threads ORDER BY updated_at, id").fetchall()
            finally:
                conn.close()
        except sqlite3.Error as err:
            raise ExtractionError(f"Failed to read Zed threads from {self.base_path}: {err}") from err

        return [SessionRef(id=str(row[0]), source_path=self.base_path) for row in rows]

    def extract_metadata(self, session: SessionRef) -> SessionMetadata:
        try:
            conn = self._connect(session.source_path)
            try:
                row = self._fetch_thread(conn, session.id)
            finally:
                conn.close()
        except sqlite3.Error as err:
            raise ExtractionError(f"Failed to query thread {session.id}: {err}") from err

        if row is None:
            raise ExtractionError(f"Thread {session.id} not found in {session.source_path}")
        summary, row_updated_at, data_type, data = row

        try:
            thread = _decode_payload(data_type, data)
        except RecordParseError as err:
            raise ExtractionError(f"Thread {session.id}: {err}") from err

        raw_messages = thread.get("messages")
        if not isinstance(raw_messages, list):
            raise ExtractionError(f"Thread {session.id} has no message list")

        updated_at = parse_timestamp(thread.get("updated_at")) or parse_timestamp(row_updated_at)

        project_path = None
        git_remote = None
        snapshot = thread.get("initial_project_snapshot")
        worktrees = snapshot.get("worktree_snapshots") if isinstance(snapshot, dict) else None
        if isinstance(worktrees, list) and worktrees and isinstance(worktrees[0], dict):
            project_path = text_field(worktrees[0].get("worktree_path"))
            git_state = worktrees[0].get("git_state")
            if isinstance(git_state, dict):
                git_remote = text_field(git_state.get("remote_url"))
        if git_remote is None:
            git_remote = read_git_remote(project_path)

        thread_model = thread.get("model")
        if not isinstance(thread_model, dict):
            thread_model = {}
        session_provider = thread_model.get("provider")
        session_model = thread_model.get("model")
        try:
            check_text_fields(thread, "title")
            check_text_fields(thread_model, "provider", "model")
        except RecordParseError as err:
            raise ExtractionError(f"Thread {session.id}: {err}") from err

        thread_ref = session.source_path / session.id
        messages: list[MessageMetadata] = []
        derived_title: str | None = None
        skipped = 0

        for idx, raw_message in enumerate(raw_messages):
            if raw_message == RESUME_MARKER:
                continue
            split = _message_body(raw_message)
            if split is None:
                skipped += 1
                logger.debug("Skipping unrecognized message %d in thread %s", idx, session.id)
                continue
            role, body = split
            try:
                _check_message(body)
            except RecordParseError as err:
                skipped += 1
                logger.debug("Skipping message %d in thread %s: %s", idx, session.id, err)
                continue

            if role == "user":
                if derived_title is None:
                    derived_title = make_title(_first_text(body))
                messages.append(
                    MessageMetadata(
                        role=role,
                        content_ref=ContentRef.index(thread_ref, idx),
                        uuid=body.get("id"),
                    )
                )
                continue

            tool_results = body.get("tool_results")
            if not isinstance(tool_results, dict):
                tool_results = {}
            tool_uses: list[ToolUseMetadata] = []
            has_thinking = False
            for item in _content_items(body):
                tool_use = item.get("ToolUse")
                if isinstance(tool_use, dict):
                    tool_id = tool_use.get("id")
                    tool_uses.append(
                        ToolUseMetadata(
                            tool_name=tool_use.get("name") or "unknown",
                            tool_id=tool_id,
                            has_result=tool_id in tool_results,
                        )
                    )
                elif "Thinking" in item or "RedactedThinking" in item:
                    has_thinking = True

            messages.append(
                MessageMetadata(
                    role=role,
                    content_ref=ContentRef.index(thread_ref, idx),
                    provider_id=session_provider,
                    model=session_model,
                    has_tool_use=bool(tool_uses),
                    has_thinking=has_thinking,
                    tool_uses=tool_uses,
                )
            )

        # Zed only tracks usage per thread; book it on the last agent message
        usage = _cumulative_usage(thread.get("cumulative_token_usage"))
        if usage is not None:
            for message in reversed(messages):
                if message.role == "assistant":
                    message.token_usage = usage
                    break

        return SessionMetadata(
            external_id=session.id,
            title=thread.get("title") or text_field(summary) or derived_title,
            project_path=project_path,
            git_remote=git_remote,
            primary_provider=most_used(m.provider_id for m in messages) or session_provider,
            primary_model=most_used(m.model for m in messages) or session_model,
            # the thread only records when it was last updated
            first_timestamp=updated_at,
            last_timestamp=updated_at,
            messages=messages,
            skipped_records=skipped,
        )

    def get_content(self, reference: ContentRef) -> str:
        db_path = reference.source_path.parent
        thread_id = reference.source_path.name
        if not db_path.is_file():
            raise ContentUnavailableError(f"Zed database {db_path} no longer exists")

        try:
            conn = self._connect(db_path)
            try:
                row = self._fetch_thread(conn, thread_id)
            finally:
                conn.close()
        except sqlite3.Error as err:
            raise ContentUnavailableError(f"Cannot read thread {thread_id}: {err}") from err

        if row is None:
            raise ContentUnavailableError(f"Thread {thread_id} no longer exists")
        try:
            thread = _decode_payload(row[2], row[3])
        except RecordParseError as err:
            raise ContentUnavailableError(f"Thread {thread_id}: {err}") from err

        messages = thread.get("messages")
        index = reference.line_number
        if not isinstance(messages, list) or index is None or not 0 <= index < len(messages):
            raise ContentUnavailableError(
                f"Message {index} no longer exists in thread {thread_id}"
            )
        return render_message(messages[index])
