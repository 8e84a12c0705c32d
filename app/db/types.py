"""
Column types that work on both Postgres (production) and SQLite (tests).
"""

from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.types import CHAR, JSON, TypeDecorator


class GUID(TypeDecorator):
    """
    UUID column.

    - Postgres: native UUID
    - SQLite and others: CHAR(36)

    Always returns `uuid.UUID`; accepts either `uuid.UUID` or its string form.
    """

    impl = CHAR
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(CHAR(36))

    def process_bind_param(self, value: Any, dialect):
        if value is None:
            return None
        if not isinstance(value, uuid.UUID):
            try:
                value = uuid.UUID(str(value))
            except ValueError as exc:
                raise ValueError(f"Invalid UUID value: {value!r}") from exc
        return value if dialect.name == "postgresql" else str(value)

    def process_result_value(self, value: Any, dialect):
        if value is None or isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(str(value))


# Scene outlines and story structures: JSONB on Postgres, JSON text elsewhere
JSONDocument = JSON().with_variant(JSONB(), "postgresql")
