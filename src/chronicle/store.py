"""SQLite metadata store — the persisted index of projects, sessions and messages.

The store owns a single connection and serializes every write behind one
lock, each write running in its own BEGIN IMMEDIATE transaction. Short hash
assignment reads existing hashes and may rename one, so it only ever runs
inside such a transaction.

No message text is stored, only the content reference needed to re-read it.
"""

from __future__ import annotations

import logging
import os
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime
from itertools import combinations
from pathlib import Path
from typing import Iterator

from chronicle.config import LinkingConfig
from chronicle.errors import StoreError
from chronicle.models import ContentRef, MessageMetadata, SessionMetadata, SessionRef

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

SHORT_HASH_LENGTH = 8
# Source-specific id prefixes that carry no information for display
SHORT_HASH_PREFIXES = ("agent-", "ses_")

PROJECT_TYPES = ("code", "research", "general")
DUPLICATE_RESOLUTIONS = ("merged", "kept_both", "false_positive")

_SCHEMA = """
-- Model providers (anthropic, openai, google, ...)
CREATE TABLE IF NOT EXISTS providers (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT
);

-- Tools that capture AI conversations
CREATE TABLE IF NOT EXISTS probe_sources (
    id TEXT PRIMARY KEY,                    -- 'claude:ClaudeCode', 'zed:Zed', ...
    provider_id TEXT,                       -- NULL for multi-provider sources
    source_name TEXT NOT NULL,
    source_type TEXT DEFAULT 'single' CHECK (source_type IN ('single', 'multi')),
    base_path TEXT,
    status TEXT DEFAULT 'active',
    last_indexed TEXT,
    FOREIGN KEY (provider_id) REFERENCES providers(id)
);

CREATE TABLE IF NOT EXISTS projects (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    type TEXT DEFAULT 'code' CHECK (type IN ('code', 'research', 'general')),
    primary_path TEXT,
    metadata TEXT,
    created_at TEXT DEFAULT (datetime('now')),
    last_activity TEXT
);

-- Several paths can map to one project (symlinks, mounts, renamed folders)
CREATE TABLE IF NOT EXISTS project_paths (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id TEXT NOT NULL,
    path TEXT NOT NULL UNIQUE,
    is_primary INTEGER DEFAULT 0,
    added_at TEXT DEFAULT (datetime('now')),
    FOREIGN KEY (project_id) REFERENCES projects(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS project_identifiers (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id TEXT NOT NULL,
    identifier_type TEXT NOT NULL,          -- 'git_remote', 'git_worktree', 'custom'
    identifier_value TEXT NOT NULL,
    UNIQUE (identifier_type, identifier_value),
    FOREIGN KEY (project_id) REFERENCES projects(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,                    -- '{probe_source_id}:{external_id}'
    probe_source_id TEXT NOT NULL,
    project_id TEXT,
    project_assignment TEXT DEFAULT 'auto'
        CHECK (project_assignment IN ('auto', 'user', 'unassigned')),
    external_id TEXT,
    short_hash TEXT NOT NULL UNIQUE,
    title TEXT,
    primary_provider TEXT,
    primary_model TEXT,
    message_count INTEGER DEFAULT 0,
    first_timestamp TEXT,
    last_timestamp TEXT,
    source_path TEXT NOT NULL,
    raw_project_path TEXT,
    raw_git_remote TEXT,
    indexed_at TEXT,
    FOREIGN KEY (probe_source_id) REFERENCES probe_sources(id),
    FOREIGN KEY (project_id) REFERENCES projects(id) ON DELETE SET NULL
);

-- Message index: metadata and a content reference, never the text
CREATE TABLE IF NOT EXISTS messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL,
    uuid TEXT,
    role TEXT NOT NULL,
    provider_id TEXT,
    model TEXT,
    timestamp TEXT,
    source_path TEXT NOT NULL,
    byte_offset INTEGER,
    line_number INTEGER,
    content_ref TEXT,
    has_tool_use INTEGER DEFAULT 0,
    has_thinking INTEGER DEFAULT 0,
    FOREIGN KEY (session_id) REFERENCES sessions(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS tool_uses (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    message_id INTEGER NOT NULL,
    tool_id TEXT,
    tool_name TEXT NOT NULL,
    has_result INTEGER DEFAULT 0,
    FOREIGN KEY (message_id) REFERENCES messages(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS token_usage (
    message_id INTEGER PRIMARY KEY,
    input_tokens INTEGER,
    output_tokens INTEGER,
    cache_read_tokens INTEGER,
    cache_creation_tokens INTEGER,
    FOREIGN KEY (message_id) REFERENCES messages(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS session_duplicates (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_a TEXT NOT NULL,
    session_b TEXT NOT NULL,
    confidence REAL,
    detection_method TEXT,                  -- 'content_hash', 'timestamp', 'tool_ids'
    detected_at TEXT DEFAULT (datetime('now')),
    resolved INTEGER DEFAULT 0,
    resolution TEXT CHECK (resolution IN ('merged', 'kept_both', 'false_positive')),
    resolved_at TEXT,
    UNIQUE (session_a, session_b),
    FOREIGN KEY (session_a) REFERENCES sessions(id) ON DELETE CASCADE,
    FOREIGN KEY (session_b) REFERENCES sessions(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS schema_meta (
    version INTEGER PRIMARY KEY,
    applied_at TEXT DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_sessions_project ON sessions(project_id);
CREATE INDEX IF NOT EXISTS idx_sessions_assignment ON sessions(project_assignment);
CREATE INDEX IF NOT EXISTS idx_sessions_timestamp ON sessions(last_timestamp DESC);
CREATE INDEX IF NOT EXISTS idx_sessions_probe ON sessions(probe_source_id);
CREATE INDEX IF NOT EXISTS idx_messages_session ON messages(session_id);
CREATE INDEX IF NOT EXISTS idx_messages_provider ON messages(provider_id);
CREATE INDEX IF NOT EXISTS idx_tool_uses_message ON tool_uses(message_id);
CREATE INDEX IF NOT EXISTS idx_tool_uses_name ON tool_uses(tool_name);
CREATE INDEX IF NOT EXISTS idx_tool_uses_tool_id ON tool_uses(tool_id);
CREATE INDEX IF NOT EXISTS idx_project_ids_value ON project_identifiers(identifier_value);
CREATE INDEX IF NOT EXISTS idx_duplicates_unresolved ON session_duplicates(resolved)
    WHERE resolved = 0;
"""

_SESSION_SELECT = """
    SELECT s.id, s.probe_source_id, s.external_id, s.short_hash,
           s.project_id, s.project_assignment, s.title, s.primary_provider,
           s.primary_model, s.message_count, s.first_timestamp, s.last_timestamp,
           s.source_path, s.raw_project_path AS project_path,
           s.raw_git_remote AS git_remote, s.indexed_at,
           ps.source_name,
           COALESCE(p.name, ps.provider_id, s.primary_provider, 'multi') AS provider_name,
           proj.name AS project_name
    FROM sessions s
    JOIN probe_sources ps ON s.probe_source_id = ps.id
    LEFT JOIN providers p ON ps.provider_id = p.id
    LEFT JOIN projects proj ON s.project_id = proj.id
"""


def short_hash_base(external_id: str) -> str:
    """Strip a known source prefix and keep the first 8 characters."""
    for prefix in SHORT_HASH_PREFIXES:
        if external_id.startswith(prefix):
            external_id = external_id[len(prefix):]
            break
    return external_id[:SHORT_HASH_LENGTH]


def _iso(dt: datetime | None) -> str | None:
    return dt.isoformat() if dt else None


def _check_text(value: object, name: str, required: bool = False) -> None:
    if value is None and not required:
        return
    if not isinstance(value, str):
        raise ValueError(f"{name} must be a string, got {type(value).__name__}")


def _check_count(value: object, name: str) -> None:
    if value is not None and (isinstance(value, bool) or not isinstance(value, int)):
        raise ValueError(f"{name} must be an int, got {type(value).__name__}")


def _check_time(value: object, name: str) -> None:
    if value is not None and not isinstance(value, datetime):
        raise ValueError(f"{name} must be a datetime, got {type(value).__name__}")


def check_session_metadata(metadata: SessionMetadata) -> None:
    """Raise ValueError if any field can't be stored as the schema expects."""
    _check_text(metadata.external_id, "external_id", required=True)
    for name in ("title", "project_path", "git_remote", "primary_provider", "primary_model"):
        _check_text(getattr(metadata, name), name)
    _check_time(metadata.first_timestamp, "first_timestamp")
    _check_time(metadata.last_timestamp, "last_timestamp")
    check_messages(metadata.messages)


def check_messages(messages: list[MessageMetadata]) -> None:
    for i, m in enumerate(messages):
        where = f"message {i}"
        _check_text(m.role, f"{where} role", required=True)
        for name in ("uuid", "provider_id", "model"):
            _check_text(getattr(m, name), f"{where} {name}")
        _check_time(m.timestamp, f"{where} timestamp")
        ref = m.content_ref
        if not isinstance(ref, ContentRef):
            raise ValueError(f"{where} content_ref must be a ContentRef")
        _check_count(ref.byte_offset, f"{where} byte_offset")
        _check_count(ref.line_number, f"{where} line_number")
        for tool in m.tool_uses:
            _check_text(tool.tool_name, f"{where} tool_name", required=True)
            _check_text(tool.tool_id, f"{where} tool_id")
        usage = m.token_usage
        if usage is not None:
            for name in (
                "input_tokens",
                "output_tokens",
                "cache_read_tokens",
                "cache_creation_tokens",
            ):
                _check_count(getattr(usage, name), f"{where} {name}")


class MetadataStore:
    """The persisted index, behind one connection and one writer lock."""

    def __init__(self, db_path: Path | str, linking: LinkingConfig | None = None):
        self.db_path = Path(db_path)
        self.linking = linking or LinkingConfig()
        self._lock = threading.RLock()
        try:
            if str(db_path) != ":memory:":
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._con = sqlite3.connect(
                str(db_path),
                check_same_thread=False,
                isolation_level=None,
            )
            self._con.row_factory = sqlite3.Row
            self._con.execute("PRAGMA foreign_keys = ON")
            self._con.executescript(_SCHEMA)
            self._con.execute(
                "INSERT OR IGNORE INTO schema_meta (version) VALUES (?)", (SCHEMA_VERSION,)
            )
        except (OSError, sqlite3.Error) as err:
            raise StoreError(f"Cannot open metadata store at {db_path}: {err}") from err

    def close(self) -> None:
        with self._lock:
            self._con.close()

    def __enter__(self) -> MetadataStore:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block as one atomic write; sqlite errors become StoreError."""
        with self._lock:
            try:
                self._con.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as err:
                raise StoreError(f"Cannot start transaction: {err}") from err
            try:
                yield self._con
            except sqlite3.Error as err:
                self._rollback()
                raise StoreError(str(err)) from err
            except BaseException:
                self._rollback()
                raise
            try:
                self._con.execute("COMMIT")
            except sqlite3.Error as err:
                self._rollback()
                raise StoreError(f"Commit failed: {err}") from err

    def _rollback(self) -> None:
        if self._con.in_transaction:
            self._con.execute("ROLLBACK")

    @contextmanager
    def _reading(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                yield self._con
            except sqlite3.Error as err:
                raise StoreError(str(err)) from err

    def _normalize_path(self, path: str) -> str:
        if self.linking.normalize_paths:
            return os.path.normpath(os.path.expanduser(path))
        return path

    # ------------------------------------------------------------------
    # Providers & sources
    # ------------------------------------------------------------------

    def ensure_provider(self, provider_id: str, name: str, description: str | None = None) -> None:
        with self._transaction() as con:
            con.execute(
                "INSERT OR IGNORE INTO providers (id, name, description) VALUES (?, ?, ?)",
                (provider_id, name, description),
            )

    def ensure_probe_source(
        self,
        probe_source_id: str,
        provider_id: str | None,
        source_name: str,
        source_type: str = "single",
        base_path: str | None = None,
        status: str = "active",
    ) -> None:
        with self._transaction() as con:
            con.execute(
                """INSERT OR IGNORE INTO probe_sources
                    (id, provider_id, source_name, source_type, base_path, status)
                VALUES (?, ?, ?, ?, ?, ?)""",
                (probe_source_id, provider_id, source_name, source_type, base_path, status),
            )

    def update_probe_indexed(self, probe_source_id: str) -> None:
        with self._transaction() as con:
            con.execute(
                "UPDATE probe_sources SET last_indexed = datetime('now') WHERE id = ?",
                (probe_source_id,),
            )

    def get_probe_source(self, probe_source_id: str) -> dict | None:
        with self._reading() as con:
            row = con.execute(
                "SELECT * FROM probe_sources WHERE id = ?", (probe_source_id,)
            ).fetchone()
            return dict(row) if row else None

    # ------------------------------------------------------------------
    # Identity resolution
    # ------------------------------------------------------------------

    def compute_short_hash(self, external_id: str) -> str:
        """Pick a unique display hash for a new session.

        May rename the one existing session holding the bare base hash to
        '<base>-1', so it runs in its own transaction.
        """
        with self._transaction() as con:
            return self._compute_short_hash(con, external_id)

    def _compute_short_hash(self, con: sqlite3.Connection, external_id: str) -> str:
        base = short_hash_base(external_id)
        rows = con.execute(
            """SELECT id, short_hash FROM sessions
            WHERE short_hash = ? OR substr(short_hash, 1, ?) = ?""",
            (base, len(base) + 1, base + "-"),
        ).fetchall()

        bare_holder = None
        suffixes: list[int] = []
        for row in rows:
            if row["short_hash"] == base:
                bare_holder = row["id"]
                continue
            tail = row["short_hash"][len(base) + 1:]
            if tail.isascii() and tail.isdigit():
                suffixes.append(int(tail))

        if bare_holder is None and not suffixes:
            return base

        highest = max(suffixes, default=0)
        if bare_holder is not None and not suffixes:
            # First collision: suffix the earlier session too
            con.execute(
                "UPDATE sessions SET short_hash = ? WHERE id = ?",
                (f"{base}-1", bare_holder),
            )
            logger.debug("Short hash %s collided; renamed %s to %s-1", base, bare_holder, base)
            highest = 1

        suffix = highest + 1
        while con.execute(
            "SELECT 1 FROM sessions WHERE short_hash = ?", (f"{base}-{suffix}",)
        ).fetchone():
            suffix += 1
        return f"{base}-{suffix}"

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def upsert_session(
        self,
        probe_source_id: str,
        session: SessionRef,
        metadata: SessionMetadata,
    ) -> str:
        """Insert or refresh a session; returns its key.

        Re-extraction keeps the short hash and never rewrites project_id or
        project_assignment; only descriptive fields are refreshed.
        """
        check_session_metadata(metadata)
        with self._transaction() as con:
            return self._upsert_session(con, probe_source_id, session, metadata)

    def _upsert_session(
        self,
        con: sqlite3.Connection,
        probe_source_id: str,
        session: SessionRef,
        metadata: SessionMetadata,
    ) -> str:
        session_id = f"{probe_source_id}:{metadata.external_id}"

        existing = con.execute(
            "SELECT short_hash, project_id FROM sessions WHERE id = ?", (session_id,)
        ).fetchone()
        if existing is not None:
            short_hash = existing["short_hash"]
        else:
            short_hash = self._compute_short_hash(con, metadata.external_id)

        project_id = self._match_project(con, metadata.project_path, metadata.git_remote)

        con.execute(
            """INSERT INTO sessions (
                id, probe_source_id, project_id, project_assignment, external_id,
                short_hash, title, primary_provider, primary_model, message_count,
                first_timestamp, last_timestamp, source_path, raw_project_path,
                raw_git_remote, indexed_at
            ) VALUES (?, ?, ?, 'auto', ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, datetime('now'))
            ON CONFLICT(id) DO UPDATE SET
                title = excluded.title,
                primary_provider = excluded.primary_provider,
                primary_model = excluded.primary_model,
                message_count = excluded.message_count,
                last_timestamp = excluded.last_timestamp,
                indexed_at = excluded.indexed_at""",
            (
                session_id,
                probe_source_id,
                project_id,
                metadata.external_id,
                short_hash,
                metadata.title,
                metadata.primary_provider,
                metadata.primary_model,
                metadata.message_count,
                _iso(metadata.first_timestamp),
                _iso(metadata.last_timestamp),
                str(session.source_path),
                metadata.project_path,
                metadata.git_remote,
            ),
        )

        linked = existing["project_id"] if existing is not None else project_id
        if linked:
            self._touch_project(con, linked)
        return session_id

    def insert_messages(self, session_id: str, messages: list[MessageMetadata]) -> None:
        """Replace a session's message set (delete, then reinsert)."""
        check_messages(messages)
        with self._transaction() as con:
            self._insert_messages(con, session_id, messages)

    def _insert_messages(
        self,
        con: sqlite3.Connection,
        session_id: str,
        messages: list[MessageMetadata],
    ) -> None:
        # tool_uses and token_usage go with their messages (ON DELETE CASCADE)
        con.execute("DELETE FROM messages WHERE session_id = ?", (session_id,))

        for m in messages:
            ref = m.content_ref
            cur = con.execute(
                """INSERT INTO messages (
                    session_id, uuid, role, provider_id, model, timestamp,
                    source_path, byte_offset, line_number, content_ref,
                    has_tool_use, has_thinking
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    session_id,
                    m.uuid,
                    m.role,
                    m.provider_id,
                    m.model,
                    _iso(m.timestamp),
                    str(ref.source_path),
                    ref.byte_offset,
                    ref.line_number,
                    str(ref.content_path) if ref.content_path else None,
                    1 if m.has_tool_use else 0,
                    1 if m.has_thinking else 0,
                ),
            )
            message_id = cur.lastrowid

            for tool in m.tool_uses:
                con.execute(
                    """INSERT INTO tool_uses (message_id, tool_id, tool_name, has_result)
                    VALUES (?, ?, ?, ?)""",
                    (message_id, tool.tool_id, tool.tool_name, 1 if tool.has_result else 0),
                )

            if m.token_usage is not None:
                usage = m.token_usage
                con.execute(
                    """INSERT INTO token_usage (
                        message_id, input_tokens, output_tokens,
                        cache_read_tokens, cache_creation_tokens
                    ) VALUES (?, ?, ?, ?, ?)""",
                    (
                        message_id,
                        usage.input_tokens,
                        usage.output_tokens,
                        usage.cache_read_tokens,
                        usage.cache_creation_tokens,
                    ),
                )

    def save_session(
        self,
        probe_source_id: str,
        session: SessionRef,
        metadata: SessionMetadata,
    ) -> str:
        """Upsert a session and replace its messages in a single transaction."""
        check_session_metadata(metadata)
        with self._transaction() as con:
            session_id = self._upsert_session(con, probe_source_id, session, metadata)
            self._insert_messages(con, session_id, metadata.messages)
        return session_id

    def delete_session(self, session_id: str) -> bool:
        with self._transaction() as con:
            cur = con.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
            return cur.rowcount > 0

    # ------------------------------------------------------------------
    # Project linking
    # ------------------------------------------------------------------

    def auto_link_project(self, metadata: SessionMetadata) -> str | None:
        """Project a session would be linked to: path match first, then git remote."""
        with self._reading() as con:
            return self._match_project(con, metadata.project_path, metadata.git_remote)

    def _match_project(
        self,
        con: sqlite3.Connection,
        project_path: str | None,
        git_remote: str | None,
    ) -> str | None:
        if not self.linking.auto_link:
            return None
        if project_path:
            project_id = self._find_project_by_path(con, project_path)
            if project_id:
                return project_id
        if git_remote and self.linking.use_git_remote:
            return self._find_project_by_git_remote(con, git_remote)
        return None

    def _find_project_by_path(self, con: sqlite3.Connection, path: str) -> str | None:
        row = con.execute(
            "SELECT project_id FROM project_paths WHERE path = ?",
            (self._normalize_path(path),),
        ).fetchone()
        return row["project_id"] if row else None

    def _find_project_by_git_remote(self, con: sqlite3.Connection, remote: str) -> str | None:
        row = con.execute(
            """SELECT project_id FROM project_identifiers
            WHERE identifier_type = 'git_remote' AND identifier_value = ?""",
            (remote,),
        ).fetchone()
        return row["project_id"] if row else None

    def find_project_by_path(self, path: str) -> str | None:
        with self._reading() as con:
            return self._find_project_by_path(con, path)

    def find_project_by_git_remote(self, remote: str) -> str | None:
        with self._reading() as con:
            return self._find_project_by_git_remote(con, remote)

    def link_pending_sessions(self) -> int:
        """Auto-link sessions still pending a project. Returns how many were linked.

        Only sessions with project_assignment 'auto' and no project are
        considered; user decisions are never revisited.
        """
        linked = 0
        with self._transaction() as con:
            rows = con.execute(
                """SELECT id, raw_project_path, raw_git_remote FROM sessions
                WHERE project_assignment = 'auto' AND project_id IS NULL"""
            ).fetchall()
            for row in rows:
                project_id = self._match_project(
                    con, row["raw_project_path"], row["raw_git_remote"]
                )
                if project_id is None:
                    continue
                con.execute(
                    "UPDATE sessions SET project_id = ? WHERE id = ?", (project_id, row["id"])
                )
                self._touch_project(con, project_id)
                linked += 1
        if linked:
            logger.info("Linked %d pending sessions to projects", linked)
        return linked

    def assign_session_to_project(self, session_id: str, project_id: str | None) -> None:
        """Explicit user assignment; None records an explicit 'unassigned'."""
        if project_id is None:
            self.unassign_session(session_id)
            return
        with self._transaction() as con:
            cur = con.execute(
                """UPDATE sessions SET project_id = ?, project_assignment = 'user'
                WHERE id = ?""",
                (project_id, session_id),
            )
            if cur.rowcount == 0:
                raise StoreError(f"Session not found: {session_id}")
            self._touch_project(con, project_id)

    def unassign_session(self, session_id: str) -> None:
        with self._transaction() as con:
            cur = con.execute(
                """UPDATE sessions SET project_id = NULL, project_assignment = 'unassigned'
                WHERE id = ?""",
                (session_id,),
            )
            if cur.rowcount == 0:
                raise StoreError(f"Session not found: {session_id}")

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    def create_project(
        self,
        name: str,
        project_type: str = "code",
        primary_path: str | None = None,
        metadata: str | None = None,
    ) -> str:
        """Create a project and return its id."""
        if project_type not in PROJECT_TYPES:
            raise StoreError(
                f"Invalid project type {project_type!r}; expected one of {', '.join(PROJECT_TYPES)}"
            )
        project_id = str(uuid.uuid4())
        with self._transaction() as con:
            con.execute(
                """INSERT INTO projects (id, name, type, primary_path, metadata, last_activity)
                VALUES (?, ?, ?, ?, ?, datetime('now'))""",
                (
                    project_id,
                    name,
                    project_type,
                    self._normalize_path(primary_path) if primary_path else None,
                    metadata,
                ),
            )
            if primary_path:
                self._add_project_path(con, project_id, primary_path, is_primary=True)
        return project_id

    def add_project_path(self, project_id: str, path: str, is_primary: bool = False) -> None:
        with self._transaction() as con:
            self._add_project_path(con, project_id, path, is_primary)

    def _add_project_path(
        self,
        con: sqlite3.Connection,
        project_id: str,
        path: str,
        is_primary: bool,
    ) -> None:
        path = self._normalize_path(path)
        owner = con.execute(
            "SELECT project_id FROM project_paths WHERE path = ?", (path,)
        ).fetchone()
        if owner is not None and owner["project_id"] != project_id:
            raise StoreError(f"Path {path} already belongs to project {owner['project_id']}")

        if is_primary:
            con.execute(
                "UPDATE project_paths SET is_primary = 0 WHERE project_id = ?", (project_id,)
            )
            con.execute(
                "UPDATE projects SET primary_path = ? WHERE id = ?", (path, project_id)
            )
        if owner is None:
            con.execute(
                "INSERT INTO project_paths (project_id, path, is_primary) VALUES (?, ?, ?)",
                (project_id, path, 1 if is_primary else 0),
            )
        elif is_primary:
            con.execute("UPDATE project_paths SET is_primary = 1 WHERE path = ?", (path,))

    def add_project_identifier(
        self,
        project_id: str,
        identifier_type: str,
        identifier_value: str,
    ) -> None:
        with self._transaction() as con:
            owner = con.execute(
                """SELECT project_id FROM project_identifiers
                WHERE identifier_type = ? AND identifier_value = ?""",
                (identifier_type, identifier_value),
            ).fetchone()
            if owner is not None:
                if owner["project_id"] != project_id:
                    raise StoreError(
                        f"{identifier_type} {identifier_value} already belongs to "
                        f"project {owner['project_id']}"
                    )
                return
            con.execute(
                """INSERT INTO project_identifiers (project_id, identifier_type, identifier_value)
                VALUES (?, ?, ?)""",
                (project_id, identifier_type, identifier_value),
            )

    def _touch_project(self, con: sqlite3.Connection, project_id: str) -> None:
        con.execute(
            "UPDATE projects SET last_activity = datetime('now') WHERE id = ?", (project_id,)
        )

    def touch_project(self, project_id: str) -> None:
        with self._transaction() as con:
            self._touch_project(con, project_id)

    def delete_project(self, project_id: str) -> bool:
        """Delete a project. Its sessions survive with project_id set to NULL."""
        with self._transaction() as con:
            cur = con.execute("DELETE FROM projects WHERE id = ?", (project_id,))
            return cur.rowcount > 0

    def find_project(self, query: str) -> dict | None:
        """Find a project by exact id, exact name, or id prefix."""
        with self._reading() as con:
            row = con.execute(
                """SELECT * FROM projects
                WHERE id = ? OR name = ? OR substr(id, 1, ?) = ?
                ORDER BY CASE WHEN id = ? THEN 0 WHEN name = ? THEN 1 ELSE 2 END
                LIMIT 1""",
                (query, query, len(query), query, query, query),
            ).fetchone()
            return dict(row) if row else None

    def get_project(self, project_id: str) -> dict | None:
        """A project with its paths and identifiers."""
        with self._reading() as con:
            row = con.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
            if row is None:
                return None
            project = dict(row)
            project["paths"] = [
                dict(r)
                for r in con.execute(
                    """SELECT path, is_primary FROM project_paths
                    WHERE project_id = ? ORDER BY is_primary DESC, id""",
                    (project_id,),
                ).fetchall()
            ]
            project["identifiers"] = [
                dict(r)
                for r in con.execute(
                    """SELECT identifier_type, identifier_value FROM project_identifiers
                    WHERE project_id = ? ORDER BY id""",
                    (project_id,),
                ).fetchall()
            ]
            return project

    def list_projects(self) -> list[dict]:
        with self._reading() as con:
            rows = con.execute(
                """SELECT p.id, p.name, p.type, p.primary_path, p.metadata,
                    p.created_at, p.last_activity,
                    (SELECT COUNT(*) FROM sessions s WHERE s.project_id = p.id) AS session_count
                FROM projects p
                ORDER BY p.last_activity DESC, p.name"""
            ).fetchall()
            return [dict(r) for r in rows]

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_sessions(
        self,
        provider: str | None = None,
        source: str | None = None,
        project: str | None = None,
        limit: int | None = None,
    ) -> list[dict]:
        clauses: list[str] = []
        params: list = []
        if provider:
            clauses.append("(ps.provider_id = ? OR s.primary_provider = ?)")
            params.extend([provider, provider])
        if source:
            clauses.append("(ps.source_name = ? OR s.probe_source_id = ?)")
            params.extend([source, source])
        if project:
            clauses.append("(proj.name = ? OR s.project_id = ?)")
            params.extend([project, project])

        sql = _SESSION_SELECT
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY s.last_timestamp DESC, s.short_hash"
        if limit:
            sql += " LIMIT ?"
            params.append(int(limit))

        with self._reading() as con:
            return [dict(r) for r in con.execute(sql, params).fetchall()]

    def get_session(self, query: str) -> dict | None:
        """Look a session up by short hash, falling back to id/external id prefixes."""
        with self._reading() as con:
            row = con.execute(
                _SESSION_SELECT
                + """ WHERE s.short_hash = ?1 OR s.id = ?1
                    OR substr(s.short_hash, 1, ?2) = ?1
                    OR substr(s.id, 1, ?2) = ?1
                    OR substr(s.external_id, 1, ?2) = ?1
                ORDER BY CASE
                    WHEN s.short_hash = ?1 THEN 0
                    WHEN s.id = ?1 THEN 1
                    ELSE 2 END,
                    s.short_hash
                LIMIT 1""",
                (query, len(query)),
            ).fetchone()
            return dict(row) if row else None

    def get_messages(self, session_id: str) -> list[dict]:
        """Messages of a session in source order, with token usage."""
        with self._reading() as con:
            rows = con.execute(
                """SELECT m.*, t.input_tokens, t.output_tokens,
                    t.cache_read_tokens, t.cache_creation_tokens
                FROM messages m
                LEFT JOIN token_usage t ON t.message_id = m.id
                WHERE m.session_id = ?
                ORDER BY m.id""",
                (session_id,),
            ).fetchall()
            return [dict(r) for r in rows]

    def get_tool_uses(self, message_id: int) -> list[dict]:
        with self._reading() as con:
            rows = con.execute(
                "SELECT * FROM tool_uses WHERE message_id = ? ORDER BY id", (message_id,)
            ).fetchall()
            return [dict(r) for r in rows]

    def get_summary_stats(self) -> dict:
        """Return summary statistics across the whole index.

        Returns: total_sessions, total_messages, total_projects,
        pending_sessions, date_range, sessions_by_source,
        sessions_by_provider, top_tools, tokens.
        """
        with self._reading() as con:
            row = con.execute(
                """SELECT
                    COUNT(*) AS total_sessions,
                    COALESCE(SUM(message_count), 0) AS total_messages,
                    SUM(CASE WHEN project_id IS NULL AND project_assignment = 'auto'
                        THEN 1 ELSE 0 END) AS pending_sessions,
                    MIN(first_timestamp) AS min_date,
                    MAX(last_timestamp) AS max_date
                FROM sessions"""
            ).fetchone()
            total_projects = con.execute("SELECT COUNT(*) AS c FROM projects").fetchone()["c"]

            by_source = con.execute(
                """SELECT ps.source_name, COUNT(s.id) AS session_count,
                    COALESCE(SUM(s.message_count), 0) AS message_count,
                    ps.last_indexed
                FROM probe_sources ps
                LEFT JOIN sessions s ON s.probe_source_id = ps.id
                GROUP BY ps.id
                ORDER BY session_count DESC, ps.source_name"""
            ).fetchall()

            by_provider = con.execute(
                """SELECT COALESCE(primary_provider, 'unknown') AS provider,
                    COUNT(*) AS session_count
                FROM sessions
                GROUP BY provider
                ORDER BY session_count DESC, provider"""
            ).fetchall()

            top_tools = con.execute(
                """SELECT tool_name, COUNT(*) AS count FROM tool_uses
                GROUP BY tool_name ORDER BY count DESC, tool_name LIMIT 10"""
            ).fetchall()

            tokens = con.execute(
                """SELECT
                    COALESCE(SUM(input_tokens), 0) AS input_tokens,
                    COALESCE(SUM(output_tokens), 0) AS output_tokens,
                    COALESCE(SUM(cache_read_tokens), 0) AS cache_read_tokens,
                    COALESCE(SUM(cache_creation_tokens), 0) AS cache_creation_tokens
                FROM token_usage"""
            ).fetchone()

            return {
                "total_sessions": row["total_sessions"],
                "total_messages": row["total_messages"],
                "total_projects": total_projects,
                "pending_sessions": row["pending_sessions"] or 0,
                "date_range": {"min": row["min_date"], "max": row["max_date"]},
                "sessions_by_source": [dict(r) for r in by_source],
                "sessions_by_provider": [dict(r) for r in by_provider],
                "top_tools": [dict(r) for r in top_tools],
                "tokens": dict(tokens),
            }

    # ------------------------------------------------------------------
    # Deduplication ledger
    # ------------------------------------------------------------------

    def detect_duplicates(self, min_confidence: float = 0.8) -> int:
        """Record session pairs that share tool-use ids. Returns new pairs recorded.

        Tool-use ids are minted by the model API, so two sessions from
        different sources holding the same ids replay the same conversation.
        Confidence is the shared count over the smaller session's id count.
        """
        recorded = 0
        with self._transaction() as con:
            rows = con.execute(
                """SELECT DISTINCT m.session_id, s.probe_source_id, t.tool_id
                FROM tool_uses t
                JOIN messages m ON t.message_id = m.id
                JOIN sessions s ON m.session_id = s.id
                WHERE t.tool_id IS NOT NULL AND t.tool_id != ''"""
            ).fetchall()

            ids_by_session: dict[str, set[str]] = {}
            sessions_by_id: dict[str, set[str]] = {}
            source_of: dict[str, str] = {}
            for row in rows:
                ids_by_session.setdefault(row["session_id"], set()).add(row["tool_id"])
                sessions_by_id.setdefault(row["tool_id"], set()).add(row["session_id"])
                source_of[row["session_id"]] = row["probe_source_id"]

            candidates: set[tuple[str, str]] = set()
            for session_ids in sessions_by_id.values():
                if len(session_ids) > 1:
                    candidates.update(combinations(sorted(session_ids), 2))

            for session_a, session_b in sorted(candidates):
                # The same conversation captured by two different tools
                if source_of[session_a] == source_of[session_b]:
                    continue
                ids_a = ids_by_session[session_a]
                ids_b = ids_by_session[session_b]
                confidence = len(ids_a & ids_b) / min(len(ids_a), len(ids_b))
                if confidence < min_confidence:
                    continue
                cur = con.execute(
                    """INSERT OR IGNORE INTO session_duplicates
                        (session_a, session_b, confidence, detection_method)
                    VALUES (?, ?, ?, 'tool_ids')""",
                    (session_a, session_b, round(confidence, 4)),
                )
                recorded += cur.rowcount
        return recorded

    def list_duplicates(self, unresolved_only: bool = True) -> list[dict]:
        sql = """SELECT d.*, sa.short_hash AS short_hash_a, sb.short_hash AS short_hash_b
            FROM session_duplicates d
            JOIN sessions sa ON d.session_a = sa.id
            JOIN sessions sb ON d.session_b = sb.id"""
        if unresolved_only:
            sql += " WHERE d.resolved = 0"
        sql += " ORDER BY d.confidence DESC, d.id"
        with self._reading() as con:
            return [dict(r) for r in con.execute(sql).fetchall()]

    def resolve_duplicate(self, duplicate_id: int, resolution: str) -> None:
        if resolution not in DUPLICATE_RESOLUTIONS:
            raise StoreError(
                f"Invalid resolution {resolution!r}; expected one of "
                f"{', '.join(DUPLICATE_RESOLUTIONS)}"
            )
        with self._transaction() as con:
            cur = con.execute(
                """UPDATE session_duplicates
                SET resolved = 1, resolution = ?, resolved_at = datetime('now')
                WHERE id = ?""",
                (resolution, duplicate_id),
            )
            if cur.rowcount == 0:
                raise StoreError(f"Duplicate record not found: {duplicate_id}")
