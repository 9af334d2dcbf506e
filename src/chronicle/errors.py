"""Exception taxonomy.

A missing source root is not an error: probes report it through
is_available() and return empty discovery results.
"""

from __future__ import annotations


class ChronicleError(Exception):
    """Base class for all chronicle errors."""


class RecordParseError(ChronicleError):
    """One malformed record inside a session. Skipped; extraction continues."""


class ExtractionError(ChronicleError):
    """A whole session (or a probe's source) could not be read.

    The pipeline skips the session and moves on to the next one.
    """


class ContentUnavailableError(ChronicleError):
    """A content reference no longer resolves (source deleted, rotated, truncated).

    The indexed metadata stays valid; only the lazy read fails.
    """


class StoreError(ChronicleError):
    """Schema, constraint, or connection failure in the metadata store.

    Fatal for the operation in progress. Committed sessions are unaffected.
    """
