"""Dialect-aware DML helpers.

INSERT ... ON CONFLICT lives in the dialect packages; pick the right one
for the bound connection so services stay portable between PostgreSQL
and the SQLite test backend.
"""

from sqlalchemy import Table
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session


def upsert_insert(db: Session, table: Table):
    """Return an insert() construct that supports on_conflict_do_nothing/do_update."""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(table)
    if dialect == "sqlite":
        return sqlite.insert(table)
    raise NotImplementedError(f"upsert not supported for dialect {dialect!r}")
