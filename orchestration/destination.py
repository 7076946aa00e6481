"""Destination resolution and resource errors.

A platform resource path is either ``table`` (default schema) or
``schema/table``. Anything else is rejected before touching the database.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import config


class ResourceError(Exception):
    """Raised for a problem tied to a specific destination resource path."""

    def __init__(self, path: str, detail: str) -> None:
        self.path = path
        self.detail = detail
        super().__init__(f"{path}: {detail}")


class AccessDeniedError(ResourceError):
    """The push is not allowed against the destination in its current state."""


class InvalidPathError(ResourceError):
    """The resource path does not name a schema-qualified table."""


@dataclass(frozen=True)
class Destination:
    """Resolved destination table. ``schema`` and ``table`` are raw names."""

    path: str
    schema: str
    table: str


def resolve_destination(
    path: str | Sequence[str],
    default_schema: str | None = None,
) -> Destination:
    """Resolve a resource path into (schema, table).

    Args:
        path: ``"orders"``, ``"sales/orders"`` or the equivalent segment list.
        default_schema: Schema for single-segment paths (config.DEFAULT_SCHEMA).

    Raises:
        InvalidPathError: Empty segments, or not exactly 1 or 2 segments.
    """
    if isinstance(path, str):
        display = path
        stripped = path.strip("/")
        segments = stripped.split("/") if stripped else []
    else:
        segments = list(path)
        display = "/".join(segments)

    if any(not s for s in segments):
        raise InvalidPathError(display, "Path contains an empty segment")

    if len(segments) == 1:
        return Destination(display, default_schema or config.DEFAULT_SCHEMA, segments[0])
    if len(segments) == 2:
        return Destination(display, segments[0], segments[1])
    raise InvalidPathError(
        display,
        f"Expected 'table' or 'schema/table', got {len(segments)} segment(s)",
    )
