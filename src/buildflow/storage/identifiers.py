"""Validation of PostgreSQL database names taken from tokens and headers."""

from __future__ import annotations

import re

from buildflow.errors import InvalidDatabaseNameError

MAX_IDENTIFIER_LENGTH = 63

_DATABASE_NAME_RE = re.compile(r"^[a-z_][a-z0-9_-]*$", re.IGNORECASE)

RESERVED_KEYWORDS: frozenset[str] = frozenset(
    {
        "all", "analyse", "analyze", "and", "any", "array", "as", "asc",
        "asymmetric", "authorization", "binary", "both", "case", "cast",
        "check", "collate", "column", "constraint", "create", "cross",
        "current_catalog", "current_date", "current_role", "current_schema",
        "current_time", "current_timestamp", "current_user", "default",
        "deferrable", "desc", "distinct", "do", "else", "end", "except",
        "false", "fetch", "for", "foreign", "from", "grant", "group", "having",
        "in", "initially", "intersect", "into", "lateral", "leading", "left",
        "like", "limit", "localtime", "localtimestamp", "not", "null",
        "offset", "on", "only", "or", "order", "outer", "over", "overlaps",
        "placing", "primary", "references", "returning", "right", "select",
        "session_user", "similar", "some", "symmetric", "table", "then", "to",
        "trailing", "true", "union", "unique", "user", "using", "variadic",
        "verbose", "when", "where", "window", "with",
    }
)  # fmt: skip


def validate_database_name(name: object) -> str:
    """Return the trimmed database name or raise.

    PostgreSQL identifiers are limited to 63 bytes. Names must start with
    a letter or underscore and contain only letters, digits, underscores
    and hyphens; reserved keywords are refused.

    Raises:
        InvalidDatabaseNameError: if the name fails any of the checks.
    """
    if not isinstance(name, str) or not name.strip():
        raise InvalidDatabaseNameError(
            "Database name must be a non-empty string", name=name
        )

    trimmed = name.strip()
    if len(trimmed.encode()) > MAX_IDENTIFIER_LENGTH:
        raise InvalidDatabaseNameError(
            f"Database name must be at most {MAX_IDENTIFIER_LENGTH} bytes",
            name=trimmed,
        )
    if not _DATABASE_NAME_RE.match(trimmed):
        raise InvalidDatabaseNameError(
            "Database name may only contain letters, digits, underscores and "
            "hyphens, and must start with a letter or underscore",
            name=trimmed,
        )
    if trimmed.lower() in RESERVED_KEYWORDS:
        raise InvalidDatabaseNameError(
            f"Database name cannot be a reserved keyword: {trimmed}",
            name=trimmed,
        )
    return trimmed
