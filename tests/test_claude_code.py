"""Tests for the Claude Code probe."""

from datetime import datetime, timezone

import pytest

from chronicle.errors import ContentUnavailableError, ExtractionError
from chronicle.models import ContentRef, SessionRef
from chronicle.probes.claude_code import ClaudeCodeProbe

SESSION_ID = "abcdef12-3456-7890-abcd-ef1234567890"


def _session_file(base):
    return base / "-home-user-myapp" / f"{SESSION_ID}.jsonl"


def test_discover(claude_source):
    (claude_source / "-home-user-myapp" / "notes.txt").write_text("ignored")
    (claude_source / "stray.jsonl").write_text("{}\n")  # not inside a project dir

    refs = ClaudeCodeProbe(claude_source).discover()
    assert refs == [SessionRef(id=SESSION_ID, source_path=_session_file(claude_source))]


def test_discover_missing_root(tmp_path):
    probe = ClaudeCodeProbe(tmp_path / "nope")
    assert probe.is_available() is False
    assert probe.discover() == []


def test_extract_metadata(claude_source):
    probe = ClaudeCodeProbe(claude_source)
    meta = probe.extract_metadata(probe.discover()[0])

    assert meta.external_id == SESSION_ID
    assert meta.title == "Fix the login bug"
    assert meta.project_path == "/home/user/myapp"
    assert meta.primary_provider == "anthropic"
    assert meta.primary_model == "claude-sonnet-4-5"
    assert meta.first_timestamp == datetime(2026, 1, 10, 9, 0, 0, tzinfo=timezone.utc)
    assert meta.last_timestamp == datetime(2026, 1, 10, 9, 1, 0, tzinfo=timezone.utc)
    # snapshot record ignored, bad line counted
    assert meta.message_count == 4
    assert meta.skipped_records == 1
    assert [m.role for m in meta.messages] == ["user", "assistant", "user", "assistant"]
    assert all(m.provider_id == "anthropic" for m in meta.messages)


def test_extract_content_refs_point_at_lines(claude_source):
    probe = ClaudeCodeProbe(claude_source)
    meta = probe.extract_metadata(probe.discover()[0])

    raw = _session_file(claude_source).read_bytes()
    lines = raw.split(b"\n")
    assert [m.content_ref.line_number for m in meta.messages] == [2, 3, 4, 6]
    first = meta.messages[0].content_ref
    assert first.kind == "line"
    assert first.byte_offset == len(lines[0]) + 1
    assert raw[first.byte_offset:].startswith(b'{"type": "user"')


def test_extract_tool_uses_and_thinking(claude_source):
    probe = ClaudeCodeProbe(claude_source)
    meta = probe.extract_metadata(probe.discover()[0])
    first_reply, last_reply = meta.messages[1], meta.messages[3]

    assert first_reply.has_thinking is True
    assert first_reply.has_tool_use is True
    assert [(t.tool_name, t.tool_id, t.has_result) for t in first_reply.tool_uses] == [
        ("Read", "toolu_01", True)
    ]
    assert [(t.tool_name, t.has_result) for t in last_reply.tool_uses] == [("Edit", False)]
    assert last_reply.has_thinking is False

    usage = first_reply.token_usage
    assert (usage.input_tokens, usage.output_tokens) == (100, 20)
    assert (usage.cache_read_tokens, usage.cache_creation_tokens) == (50, 10)
    assert last_reply.token_usage is None


def test_extract_all_records_malformed(tmp_path, write_jsonl):
    path = tmp_path / "claude" / "proj" / "broken.jsonl"
    write_jsonl(path, ["not json", "[1, 2]"])

    with pytest.raises(ExtractionError):
        ClaudeCodeProbe(tmp_path / "claude").extract_metadata(SessionRef("broken", path))


def test_extract_missing_file(tmp_path):
    with pytest.raises(ExtractionError):
        ClaudeCodeProbe(tmp_path).extract_metadata(SessionRef("gone", tmp_path / "gone.jsonl"))


def test_title_truncated(tmp_path, write_jsonl):
    path = tmp_path / "claude" / "proj" / "long.jsonl"
    write_jsonl(path, [{"type": "user", "message": {"role": "user", "content": "z" * 140}}])

    meta = ClaudeCodeProbe(tmp_path / "claude").extract_metadata(SessionRef("long", path))
    assert meta.title == "z" * 97 + "..."


def test_get_content(claude_source):
    probe = ClaudeCodeProbe(claude_source)
    meta = probe.extract_metadata(probe.discover()[0])

    assert probe.get_content(meta.messages[0].content_ref) == "Fix the login bug\nDetails follow"
    assert probe.get_content(meta.messages[1].content_ref) == (
        "[Thinking]\nLook at auth.py\nReading the file.\n[Tool: Read]"
    )
    assert probe.get_content(meta.messages[2].content_ref) == "[Tool result]\nfile body"


def test_get_content_offset_not_on_record_boundary(claude_source):
    probe = ClaudeCodeProbe(claude_source)
    meta = probe.extract_metadata(probe.discover()[0])
    ref = meta.messages[0].content_ref
    shifted = ContentRef.line(ref.source_path, ref.byte_offset + 5, ref.line_number)

    with pytest.raises(ContentUnavailableError):
        probe.get_content(shifted)


def test_get_content_after_truncation(claude_source):
    probe = ClaudeCodeProbe(claude_source)
    meta = probe.extract_metadata(probe.discover()[0])
    _session_file(claude_source).write_text("")

    with pytest.raises(ContentUnavailableError):
        probe.get_content(meta.messages[3].content_ref)


def test_get_content_deleted_file(claude_source):
    probe = ClaudeCodeProbe(claude_source)
    meta = probe.extract_metadata(probe.discover()[0])
    _session_file(claude_source).unlink()

    with pytest.raises(ContentUnavailableError):
        probe.get_content(meta.messages[0].content_ref)


def test_wrong_typed_records_skipped(tmp_path, write_jsonl):
    path = tmp_path / "claude" / "proj" / "mixed.jsonl"
    write_jsonl(
        path,
        [
            {"type": "user", "uuid": "u1", "message": {"role": "user", "content": "Hello"}},
            {
                "type": "user",
                "uuid": "u2",
                "message": {
                    "role": "user",
                    "content": [{"type": "tool_result", "tool_use_id": ["x"], "content": "?"}],
                },
            },
            {"type": "assistant", "uuid": "a1", "message": {"role": {"x": 1}, "content": "Hi"}},
            {
                "type": "assistant",
                "uuid": "a2",
                "message": {
                    "role": "assistant",
                    "model": "claude-sonnet-4-5",
                    "content": [{"type": "tool_use", "id": "toolu_09", "name": "Read"}],
                    "usage": {"input_tokens": "many", "output_tokens": 3.0},
                },
            },
        ],
    )

    meta = ClaudeCodeProbe(tmp_path / "claude").extract_metadata(SessionRef("mixed", path))
    assert meta.skipped_records == 2
    assert [m.uuid for m in meta.messages] == ["u1", "a2"]
    usage = meta.messages[1].token_usage
    assert usage.input_tokens is None
    assert usage.output_tokens == 3
