"""Error types and helpers for the review workflow."""

from __future__ import annotations

import re

import click


class ValidationError(ValueError):
    """Raised for malformed input (missing fields, out-of-range values)."""

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or [message]


class StateViolationError(RuntimeError):
    """Raised when an operation is not allowed in the item's current phase."""


class NotInitializedError(click.ClickException):
    """Raised when the store has not been initialized or its schema is missing."""


class StorageCorruptionError(RuntimeError):
    """Raised when an unreadable database file could not be recovered."""


_SQLITE_MISSING_TABLE_RE = re.compile(r"no such table:\s*(?P<table>[A-Za-z0-9_]+)", re.IGNORECASE)
_SQLITE_CORRUPTION_RE = re.compile(
    r"file is not a database|database disk image is malformed", re.IGNORECASE
)


def _unwrap_exception_chain(exc: BaseException) -> list[BaseException]:
    chain: list[BaseException] = []
    current: BaseException | None = exc
    while current is not None and current not in chain:
        chain.append(current)
        current = current.__cause__ or current.__context__
    return chain


def missing_table_name(exc: BaseException) -> str | None:
    """Best-effort extraction of the missing table name from a DB exception."""
    for e in _unwrap_exception_chain(exc):
        match = _SQLITE_MISSING_TABLE_RE.search(str(e))
        if match:
            return match.group("table")
    return None


def is_schema_missing_error(exc: BaseException) -> bool:
    """Return True if the exception looks like a missing-table error."""
    return missing_table_name(exc) is not None


def is_corruption_error(exc: BaseException) -> bool:
    """Return True if the exception carries SQLite's corrupt-file signature."""
    return any(_SQLITE_CORRUPTION_RE.search(str(e)) for e in _unwrap_exception_chain(exc))


def not_initialized_message() -> str:
    return "Review store is not initialized. Call `await store.initialize()` first."


def schema_not_initialized_message(exc: BaseException) -> str:
    table = missing_table_name(exc)
    table_hint = f" (missing table `{table}`)" if table else ""

    lines: list[str] = [
        f"Database schema is not initialized{table_hint}.",
        "Run: `quorum init-db`",
        "Or validate with: `quorum db-info`",
    ]
    return "\n".join(lines)
