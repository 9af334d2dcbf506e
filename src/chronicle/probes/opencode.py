"""OpenCode probe — reads the JSON file tree under ~/.local/share/opencode/storage.

Layout:
    session/{project_hash}/ses_*.json   session metadata
    message/{session_id}/msg_*.json     message metadata
    part/{message_id}/prt_*.json        message content parts

OpenCode is multi-provider: each message names its own provider and model.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

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
)

logger = logging.getLogger(__name__)


def _load_json(path: Path) -> dict:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as err:
        raise RecordParseError(f"{path}: {err}") from err
    if not isinstance(data, dict):
        raise RecordParseError(f"{path}: expected a JSON object")
    return data


def _load_message(path: Path) -> dict:
    data = _load_json(path)
    check_text_fields(data, "id", "role", "providerID", "modelID")
    if isinstance(data.get("model"), dict):
        check_text_fields(data["model"], "providerID", "modelID")
    return data


def _load_part(path: Path) -> dict:
    data = _load_json(path)
    check_text_fields(data, "type", "text", "tool", "callID")
    return data


def _add_usage(total: TokenUsage | None, step: TokenUsage) -> TokenUsage:
    if total is None:
        return step

    def _sum(a: int | None, b: int | None) -> int | None:
        if a is None and b is None:
            return None
        return (a or 0) + (b or 0)

    return TokenUsage(
        input_tokens=_sum(total.input_tokens, step.input_tokens),
        output_tokens=_sum(total.output_tokens, step.output_tokens),
        cache_read_tokens=_sum(total.cache_read_tokens, step.cache_read_tokens),
        cache_creation_tokens=_sum(total.cache_creation_tokens, step.cache_creation_tokens),
    )


@register_probe
class OpenCodeProbe(Probe):
    """Probe for OpenCode CLI sessions."""

    id = "opencode:OpenCode"
    provider = "opencode"
    source = "OpenCode"
    source_type = "multi"
    description = "OpenCode CLI (multi-provider)"

    @property
    def session_dir(self) -> Path:
        return self.base_path / "session"

    @property
    def message_dir(self) -> Path:
        return self.base_path / "message"

    @property
    def part_dir(self) -> Path:
        return self.base_path / "part"

    def is_available(self) -> bool:
        return self.base_path.exists() and self.session_dir.exists()

    def discover(self) -> list[SessionRef]:
        if not self.session_dir.is_dir():
            return []

        refs: list[SessionRef] = []
        try:
            # One directory per project hash, plus "global"
            for project_dir in sorted(self.session_dir.iterdir()):
                if not project_dir.is_dir():
                    continue
                for session_file in sorted(project_dir.glob("ses_*.json")):
                    refs.append(SessionRef(id=session_file.stem, source_path=session_file))
        except OSError as err:
            raise ExtractionError(f"Failed to scan {self.session_dir}: {err}") from err
        return refs

    def extract_metadata(self, session: SessionRef) -> SessionMetadata:
        try:
            session_data = _load_json(session.source_path)
            check_text_fields(session_data, "id", "title", "directory")
        except RecordParseError as err:
            raise ExtractionError(f"Unreadable session file: {err}") from err

        time_data = session_data.get("time")
        if not isinstance(time_data, dict):
            time_data = {}
        first_ts = parse_timestamp(time_data.get("created"))
        last_ts = parse_timestamp(time_data.get("updated"))

        project_path = session_data.get("directory") or None

        messages: list[MessageMetadata] = []
        providers: list[str] = []
        models: list[str] = []
        derived_title: str | None = None
        skipped = 0

        msg_files: list[Path] = []
        session_msg_dir = self.message_dir / session.id
        if session_msg_dir.is_dir():
            # Message ids are time-ordered, so filename order is chronological
            msg_files = sorted(session_msg_dir.glob("msg_*.json"))

        for msg_path in msg_files:
            try:
                msg_data = _load_message(msg_path)
            except RecordParseError as err:
                skipped += 1
                logger.debug("Skipping message file: %s", err)
                continue

            nested_model = msg_data.get("model")
            if not isinstance(nested_model, dict):
                nested_model = {}
            provider_id = msg_data.get("providerID") or nested_model.get("providerID")
            model_id = msg_data.get("modelID") or nested_model.get("modelID")
            if provider_id:
                providers.append(provider_id)
            if model_id:
                models.append(model_id)

            msg_time = msg_data.get("time")
            timestamp = parse_timestamp(
                msg_time.get("created") if isinstance(msg_time, dict) else None
            )

            role = msg_data.get("role") or ("assistant" if provider_id else "user")
            msg_id = msg_data.get("id") or msg_path.stem

            tool_uses: list[ToolUseMetadata] = []
            has_thinking = False
            token_usage: TokenUsage | None = None
            first_text_part: Path | None = None

            part_msg_dir = self.part_dir / msg_id
            part_files = sorted(part_msg_dir.glob("prt_*.json")) if part_msg_dir.is_dir() else []
            for part_path in part_files:
                try:
                    part = _load_part(part_path)
                except RecordParseError as err:
                    skipped += 1
                    logger.debug("Skipping part file: %s", err)
                    continue

                part_type = part.get("type")
                if part_type == "text":
                    if first_text_part is None:
                        first_text_part = part_path
                        if derived_title is None and role == "user":
                            derived_title = make_title(part.get("text"))
                elif part_type == "tool":
                    state = part.get("state")
                    status = state.get("status") if isinstance(state, dict) else None
                    tool_uses.append(
                        ToolUseMetadata(
                            tool_name=part.get("tool") or "unknown",
                            tool_id=part.get("callID"),
                            has_result=status == "completed",
                        )
                    )
                elif part_type in ("reasoning", "thinking"):
                    has_thinking = True
                elif part_type == "step-finish":
                    tokens = part.get("tokens")
                    if isinstance(tokens, dict):
                        cache = tokens.get("cache")
                        if not isinstance(cache, dict):
                            cache = {}
                        token_usage = _add_usage(
                            token_usage,
                            TokenUsage(
                                input_tokens=count_field(tokens.get("input")),
                                output_tokens=count_field(tokens.get("output")),
                                cache_read_tokens=count_field(cache.get("read")),
                                cache_creation_tokens=count_field(cache.get("write")),
                            ),
                        )

            if timestamp is not None:
                if first_ts is None:
                    first_ts = timestamp
                if last_ts is None or timestamp > last_ts:
                    last_ts = timestamp

            messages.append(
                MessageMetadata(
                    role=role,
                    content_ref=ContentRef.file(msg_path, first_text_part or msg_path),
                    uuid=msg_id,
                    provider_id=provider_id,
                    model=model_id,
                    timestamp=timestamp,
                    has_tool_use=bool(tool_uses),
                    has_thinking=has_thinking,
                    tool_uses=tool_uses,
                    token_usage=token_usage,
                )
            )

        return SessionMetadata(
            external_id=session.id,
            title=session_data.get("title") or derived_title,
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
        path = reference.content_path or reference.source_path
        try:
            raw = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as err:
            raise ContentUnavailableError(f"Cannot read {path}: {err}") from err

        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            return raw

        if isinstance(data, dict):
            text = data.get("text")
            if isinstance(text, str):
                return text
            # Tool parts keep their output in state
            state = data.get("state")
            if isinstance(state, dict) and isinstance(state.get("output"), str):
                return state["output"]
        return raw
