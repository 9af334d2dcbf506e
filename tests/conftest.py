"""Shared test fixtures for chronicle tests."""

import json
import sqlite3

import pytest
import zstandard

from chronicle.store import MetadataStore


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    """Keep ~ and ./chronicle.yaml lookups inside the test's tmp dir."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.chdir(tmp_path)
    return home


@pytest.fixture
def tmp_db(tmp_path):
    """Path to a temporary SQLite database file."""
    return tmp_path / "test-chronicle.db"


@pytest.fixture
def store(tmp_db):
    """An open MetadataStore on a fresh database."""
    s = MetadataStore(tmp_db)
    yield s
    s.close()


def _write_jsonl(path, records):
    """Write dicts as JSON lines; strings are written verbatim (for bad lines)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    lines = [r if isinstance(r, str) else json.dumps(r) for r in records]
    path.write_text("\n".join(lines) + "\n")


def _write_json(path, data):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data))


@pytest.fixture
def write_jsonl():
    return _write_jsonl


@pytest.fixture
def write_json():
    return _write_json


@pytest.fixture
def claude_source(tmp_path):
    """A Claude Code projects dir with one session in /home/user/myapp.

    Session abcdef12-3456-7890-abcd-ef1234567890: a snapshot record (ignored),
    four messages, and one malformed line.
    """
    base = tmp_path / "claude"
    _write_jsonl(
        base / "-home-user-myapp" / "abcdef12-3456-7890-abcd-ef1234567890.jsonl",
        [
            {"type": "file-history-snapshot", "messageId": "x", "snapshot": {}},
            {
                "type": "user",
                "uuid": "u1",
                "cwd": "/home/user/myapp",
                "timestamp": "2026-01-10T09:00:00Z",
                "message": {"role": "user", "content": "Fix the login bug\nDetails follow"},
            },
            {
                "type": "assistant",
                "uuid": "a1",
                "timestamp": "2026-01-10T09:00:05Z",
                "message": {
                    "role": "assistant",
                    "model": "claude-sonnet-4-5",
                    "content": [
                        {"type": "thinking", "thinking": "Look at auth.py"},
                        {"type": "text", "text": "Reading the file."},
                        {"type": "tool_use", "id": "toolu_01", "name": "Read", "input": {}},
                    ],
                    "usage": {
                        "input_tokens": 100,
                        "output_tokens": 20,
                        "cache_read_input_tokens": 50,
                        "cache_creation_input_tokens": 10,
                    },
                },
            },
            {
                "type": "user",
                "uuid": "u2",
                "timestamp": "2026-01-10T09:00:06Z",
                "message": {
                    "role": "user",
                    "content": [
                        {"type": "tool_result", "tool_use_id": "toolu_01", "content": "file body"}
                    ],
                },
            },
            "{not valid json",
            {
                "type": "assistant",
                "uuid": "a2",
                "timestamp": "2026-01-10T09:01:00Z",
                "message": {
                    "role": "assistant",
                    "model": "claude-sonnet-4-5",
                    "content": [
                        {"type": "text", "text": "Fixed."},
                        {"type": "tool_use", "id": "toolu_02", "name": "Edit", "input": {}},
                    ],
                },
            },
        ],
    )
    return base


@pytest.fixture
def opencode_source(tmp_path):
    """An OpenCode storage dir with session ses_abc123def456 (three messages)."""
    base = tmp_path / "opencode"
    sid = "ses_abc123def456"
    _write_json(
        base / "session" / "proj1" / f"{sid}.json",
        {
            "id": sid,
            "title": "Refactor parser",
            "directory": "/home/user/myapp",
            "time": {"created": 1767949200000, "updated": 1767949500000},
        },
    )

    msg_dir = base / "message" / sid
    part_dir = base / "part"
    _write_json(msg_dir / "msg_001.json", {"id": "msg_001", "role": "user", "time": {"created": 1767949200000}})
    _write_json(part_dir / "msg_001" / "prt_001.json", {"type": "text", "text": "Refactor the parser module"})

    _write_json(
        msg_dir / "msg_002.json",
        {
            "id": "msg_002",
            "role": "assistant",
            "providerID": "openai",
            "modelID": "gpt-5",
            "time": {"created": 1767949260000},
        },
    )
    _write_json(part_dir / "msg_002" / "prt_001.json", {"type": "reasoning", "text": "plan"})
    _write_json(part_dir / "msg_002" / "prt_002.json", {"type": "text", "text": "Done refactoring."})
    _write_json(
        part_dir / "msg_002" / "prt_003.json",
        {"type": "tool", "tool": "bash", "callID": "call_1", "state": {"status": "completed", "output": "ok"}},
    )
    _write_json(
        part_dir / "msg_002" / "prt_004.json",
        {"type": "step-finish", "tokens": {"input": 10, "output": 5, "cache": {"read": 2, "write": 1}}},
    )
    _write_json(
        part_dir / "msg_002" / "prt_005.json",
        {"type": "step-finish", "tokens": {"input": 20, "output": 5, "cache": {"read": 0, "write": 0}}},
    )

    _write_json(
        msg_dir / "msg_003.json",
        {
            "id": "msg_003",
            "role": "assistant",
            "providerID": "anthropic",
            "modelID": "claude-sonnet-4-5",
            "time": {"created": 1767949320000},
        },
    )
    _write_json(
        part_dir / "msg_003" / "prt_001.json",
        {"type": "tool", "tool": "edit", "callID": "call_2", "state": {"status": "running"}},
    )
    return base


def _compress(thread):
    return zstandard.ZstdCompressor().compress(json.dumps(thread).encode("utf-8"))


@pytest.fixture
def zed_source(tmp_path):
    """A Zed threads.db with a zstd thread and a plain JSON thread."""
    db_path = tmp_path / "zed" / "threads.db"
    db_path.parent.mkdir(parents=True)

    thread_one = {
        "title": "Explain the build",
        "updated_at": "2026-01-11T12:00:00Z",
        "model": {"provider": "anthropic", "model": "claude-sonnet-4-5"},
        "messages": [
            {"User": {"id": "m1", "content": [{"Text": "Explain the build\nplease"}]}},
            {
                "Agent": {
                    "content": [
                        {"Thinking": {"text": "check the Makefile"}},
                        {"Text": "It uses make."},
                        {"ToolUse": {"id": "tool_1", "name": "read_file"}},
                        {"ToolUse": {"id": "tool_2", "name": "grep"}},
                    ],
                    "tool_results": {"tool_1": {"content": "all:"}},
                }
            },
            "Resume",
            {"Agent": {"content": [{"Text": "Done."}], "tool_results": {}}},
        ],
        "cumulative_token_usage": {"input_tokens": 300, "output_tokens": 40},
        "initial_project_snapshot": {
            "worktree_snapshots": [
                {
                    "worktree_path": "/home/user/myapp",
                    "git_state": {"remote_url": "git@github.com:user/myapp.git"},
                }
            ]
        },
    }
    thread_two = {
        "updated_at": "2026-01-12T08:00:00Z",
        "model": {"provider": "openai", "model": "gpt-5"},
        "messages": [{"User": {"content": [{"Text": "hi"}]}}],
    }

    conn = sqlite3.connect(db_path)
    conn.execute(
        "CREATE TABLE threads (id TEXT PRIMARY KEY, summary TEXT, updated_at TEXT, "
        "data_type TEXT, data BLOB)"
    )
    conn.execute(
        "INSERT INTO threads VALUES (?, ?, ?, ?, ?)",
        ("thread-one", "Build summary", "2026-01-11T12:00:00Z", "zstd", _compress(thread_one)),
    )
    conn.execute(
        "INSERT INTO threads VALUES (?, ?, ?, ?, ?)",
        ("thread-two", "Greeting", "2026-01-12T08:00:00Z", "json", json.dumps(thread_two).encode()),
    )
    conn.commit()
    conn.close()
    return db_path
