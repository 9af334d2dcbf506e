"""Base class for ingestion probes and the derived-field helpers they share."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable

from chronicle.errors import RecordParseError
from chronicle.models import ContentRef, SessionMetadata, SessionRef

TITLE_MAX_CHARS = 100


class Probe(ABC):
    """Abstract base class for ingestion probes.

    Each AI tool (Claude Code, OpenCode, Zed) implements this interface to
    discover its sessions, extract their metadata, and resolve content
    references back to text. A probe holds no state besides its root path.
    """

    # Probe identity
    id: str = ""  # "{provider}:{source}", e.g. "claude:ClaudeCode"
    provider: str = ""
    source: str = ""
    source_type: str = "single"  # single or multi provider
    description: str = ""

    def __init__(self, base_path: Path):
        self.base_path = Path(base_path)

    def is_available(self) -> bool:
        """Check if this probe's source root exists."""
        return self.base_path.exists()

    @abstractmethod
    def discover(self) -> list[SessionRef]:
        """Enumerate sessions without reading message bodies."""
        ...

    @abstractmethod
    def extract_metadata(self, session: SessionRef) -> SessionMetadata:
        """Extract session and message metadata.

        Raises ExtractionError when the session as a whole can't be read.
        Individual bad records are skipped and counted.
        """
        ...

    @abstractmethod
    def get_content(self, reference: ContentRef) -> str:
        """Resolve a content reference to text.

        Raises ContentUnavailableError if the source no longer has it.
        """
        ...

    def __repr__(self) -> str:
        return f"{type(self).__name__}({str(self.base_path)!r})"


def most_used(values: Iterable[str | None]) -> str | None:
    """Return the most frequent value; ties go to the value seen first."""
    counts: dict[str, int] = {}
    for value in values:
        if value:
            counts[value] = counts.get(value, 0) + 1
    if not counts:
        return None
    # dicts keep insertion order and max() keeps the first maximum
    return max(counts, key=counts.__getitem__)


def text_field(value: object) -> str | None:
    """The value if it is a non-empty string, else None."""
    if isinstance(value, str) and value:
        return value
    return None


def count_field(value: object) -> int | None:
    """A token count as int; anything that isn't a number becomes None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def check_text_fields(obj: dict, *keys: str) -> None:
    """Raise RecordParseError if any of keys holds something other than a string."""
    for key in keys:
        value = obj.get(key)
        if value is not None and not isinstance(value, str):
            raise RecordParseError(
                f"field {key!r} is {type(value).__name__}, expected a string"
            )


def make_title(text: object) -> str | None:
    """First line of text, cut to 100 characters with '...' when longer."""
    if not isinstance(text, str) or not text:
        return None
    stripped = text.strip()
    if not stripped:
        return None
    first_line = stripped.splitlines()[0].strip()
    if len(first_line) > TITLE_MAX_CHARS:
        return first_line[: TITLE_MAX_CHARS - 3] + "..."
    return first_line


def parse_timestamp(value: object) -> datetime | None:
    """Parse an ISO 8601 string or epoch milliseconds into an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if not isinstance(value, str):
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _git_dir(project_path: Path) -> Path | None:
    dot_git = project_path / ".git"
    if dot_git.is_dir():
        return dot_git
    if dot_git.is_file():
        # worktrees and submodules: ".git" is a file pointing at the real dir
        content = dot_git.read_text().strip()
        if content.startswith("gitdir:"):
            git_dir = Path(content[len("gitdir:"):].strip())
            if not git_dir.is_absolute():
                git_dir = project_path / git_dir
            commondir = git_dir / "commondir"
            if commondir.is_file():
                git_dir = git_dir / commondir.read_text().strip()
            return git_dir
    return None


def read_git_remote(project_path: str | Path | None) -> str | None:
    """Read the origin remote URL from a project's git config, best-effort."""
    if not project_path or not isinstance(project_path, (str, Path)):
        return None
    try:
        git_dir = _git_dir(Path(project_path))
        if git_dir is None:
            return None
        config_file = git_dir / "config"
        if not config_file.is_file():
            return None
        lines = config_file.read_text().splitlines()
    except (OSError, UnicodeDecodeError):
        return None

    in_origin = False
    for line in lines:
        stripped = line.strip()
        if stripped.startswith("["):
            in_origin = stripped.replace(" ", "") == '[remote"origin"]'
            continue
        if in_origin and "=" in stripped:
            key, _, value = stripped.partition("=")
            if key.strip() == "url":
                return value.strip() or None
    return None
