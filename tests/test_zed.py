"""Tests for the Zed probe."""

import json
import sqlite3
from datetime import datetime, timezone

import pytest

from chronicle.errors import ContentUnavailableError, ExtractionError
from chronicle.models import ContentRef, SessionRef
from chronicle.probes.zed import ZedProbe


def _by_id(probe):
    return {ref.id: ref for ref in probe.discover()}


def test_discover(zed_source):
    refs = ZedProbe(zed_source).discover()
    assert [r.id for r in refs] == ["thread-one", "thread-two"]
    assert all(r.source_path == zed_source for r in refs)


def test_discover_missing_db(tmp_path):
    probe = ZedProbe(tmp_path / "threads.db")
    assert probe.is_available() is False
    assert probe.discover() == []


def test_discover_not_a_zed_db(tmp_path):
    db_path = tmp_path / "threads.db"
    conn = sqlite3.connect(db_path)
    conn.execute("CREATE TABLE notes (body TEXT)")
    conn.commit()
    conn.close()

    with pytest.raises(ExtractionError):
        ZedProbe(db_path).discover()


def test_extract_compressed_thread(zed_source):
    probe = ZedProbe(zed_source)
    meta = probe.extract_metadata(_by_id(probe)["thread-one"])

    assert meta.external_id == "thread-one"
    assert meta.title == "Explain the build"
    assert meta.project_path == "/home/user/myapp"
    assert meta.git_remote == "git@github.com:user/myapp.git"
    assert meta.primary_provider == "anthropic"
    assert meta.primary_model == "claude-sonnet-4-5"
    updated = datetime(2026, 1, 11, 12, 0, tzinfo=timezone.utc)
    assert meta.first_timestamp == updated
    assert meta.last_timestamp == updated
    # the Resume marker is not a message
    assert [m.role for m in meta.messages] == ["user", "assistant", "assistant"]
    assert meta.skipped_records == 0


def test_extract_index_refs_and_flags(zed_source):
    probe = ZedProbe(zed_source)
    meta = probe.extract_metadata(_by_id(probe)["thread-one"])

    refs = [m.content_ref for m in meta.messages]
    assert [r.kind for r in refs] == ["index", "index", "index"]
    assert [r.line_number for r in refs] == [0, 1, 3]
    assert refs[0].source_path == zed_source / "thread-one"

    reply = meta.messages[1]
    assert reply.has_thinking is True
    assert [(t.tool_name, t.has_result) for t in reply.tool_uses] == [
        ("read_file", True),
        ("grep", False),
    ]
    # Thread-level usage lands on the last agent message
    assert reply.token_usage is None
    usage = meta.messages[2].token_usage
    assert (usage.input_tokens, usage.output_tokens) == (300, 40)


def test_extract_uncompressed_thread_falls_back_to_summary(zed_source):
    probe = ZedProbe(zed_source)
    meta = probe.extract_metadata(_by_id(probe)["thread-two"])

    assert meta.title == "Greeting"
    assert meta.message_count == 1
    # only a user message: the thread's model still names the session
    assert meta.primary_provider == "openai"
    assert meta.primary_model == "gpt-5"
    assert meta.project_path is None


def test_extract_undecodable_payload(zed_source):
    conn = sqlite3.connect(zed_source)
    conn.execute("UPDATE threads SET data = ? WHERE id = 'thread-two'", (b"\x00garbage",))
    conn.commit()
    conn.close()

    probe = ZedProbe(zed_source)
    with pytest.raises(ExtractionError):
        probe.extract_metadata(SessionRef("thread-two", zed_source))


def test_get_content(zed_source):
    probe = ZedProbe(zed_source)
    meta = probe.extract_metadata(_by_id(probe)["thread-one"])

    assert probe.get_content(meta.messages[0].content_ref) == "Explain the build\nplease"
    assert probe.get_content(meta.messages[1].content_ref) == (
        "[Thinking]\ncheck the Makefile\nIt uses make.\n[Tool: read_file]\n[Tool: grep]"
    )
    assert probe.get_content(meta.messages[2].content_ref) == "Done."


def test_get_content_index_out_of_range(zed_source):
    probe = ZedProbe(zed_source)
    with pytest.raises(ContentUnavailableError):
        probe.get_content(ContentRef.index(zed_source / "thread-two", 5))


def test_get_content_thread_deleted(zed_source):
    probe = ZedProbe(zed_source)
    conn = sqlite3.connect(zed_source)
    conn.execute("DELETE FROM threads WHERE id = 'thread-two'")
    conn.commit()
    conn.close()

    with pytest.raises(ContentUnavailableError):
        probe.get_content(ContentRef.index(zed_source / "thread-two", 0))


def test_get_content_database_gone(tmp_path):
    probe = ZedProbe(tmp_path / "threads.db")
    with pytest.raises(ContentUnavailableError):
        probe.get_content(ContentRef.index(tmp_path / "threads.db" / "t1", 0))


def test_unknown_message_shapes_skipped(zed_source):
    thread = {
        "updated_at": "2026-01-13T00:00:00Z",
        "messages": [{"System": {}}, {"User": {"content": [{"Text": "hello"}]}}],
    }
    conn = sqlite3.connect(zed_source)
    conn.execute(
        "INSERT INTO threads VALUES (?, ?, ?, ?, ?)",
        ("thread-three", None, "2026-01-13T00:00:00Z", "json", json.dumps(thread)),
    )
    conn.commit()
    conn.close()

    probe = ZedProbe(zed_source)
    meta = probe.extract_metadata(SessionRef("thread-three", zed_source))
    assert meta.skipped_records == 1
    assert meta.title == "hello"
    assert meta.messages[0].content_ref.line_number == 1


def _insert_thread(db_path, thread_id, thread):
    conn = sqlite3.connect(db_path)
    conn.execute(
        "INSERT INTO threads VALUES (?, ?, ?, ?, ?)",
        (thread_id, None, "2026-01-13T00:00:00Z", "json", json.dumps(thread)),
    )
    conn.commit()
    conn.close()


def test_wrong_typed_message_skipped(zed_source):
    _insert_thread(
        zed_source,
        "thread-four",
        {
            "updated_at": "2026-01-13T00:00:00Z",
            "messages": [
                {"User": {"content": [{"Text": "hello"}]}},
                {"Agent": {"content": [{"ToolUse": {"id": ["tool_9"], "name": "grep"}}]}},
                {"Agent": {"content": [{"Text": "hi"}], "tool_results": {}}},
            ],
            "cumulative_token_usage": {"input_tokens": "lots", "output_tokens": 7},
        },
    )

    meta = ZedProbe(zed_source).extract_metadata(SessionRef("thread-four", zed_source))
    assert meta.skipped_records == 1
    assert [m.role for m in meta.messages] == ["user", "assistant"]
    usage = meta.messages[-1].token_usage
    assert usage.input_tokens is None
    assert usage.output_tokens == 7


def test_wrong_typed_thread_title(zed_source):
    _insert_thread(
        zed_source,
        "thread-five",
        {"title": {"text": "x"}, "updated_at": "2026-01-13T00:00:00Z", "messages": []},
    )

    with pytest.raises(ExtractionError):
        ZedProbe(zed_source).extract_metadata(SessionRef("thread-five", zed_source))
