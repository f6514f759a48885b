from __future__ import annotations

from typing import Any

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession


def dialect_name(session: AsyncSession) -> str:
    bind = session.get_bind()
    return bind.dialect.name


def upsert_insert(session: AsyncSession, model: Any):
    # Both dialects expose INSERT ... ON CONFLICT with the same builder API.
    if dialect_name(session) == "sqlite":
        return sqlite.insert(model)
    return postgresql.insert(model)
