"""
Dialect-aware INSERT constructs.

The ledger relies on INSERT ... ON CONFLICT for lazy wallet creation, counter
increments and event de-duplication. PostgreSQL and SQLite both support it but
through dialect-specific constructs.
"""

from typing import Any

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession


def upsert_insert(session: AsyncSession, model: Any) -> Any:
    """Return an INSERT for `model` supporting on_conflict_do_nothing/do_update."""
    if session.get_bind().dialect.name == "sqlite":
        return sqlite.insert(model)
    return postgresql.insert(model)
