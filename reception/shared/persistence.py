"""
INSERT ... ON CONFLICT helpers.

Every retried mutation is keyed on a natural key (booking id, booking and
reminder type, gateway message id). These helpers build the dialect-specific
statement so repositories can stay dialect agnostic.
"""

from typing import Iterable, Optional

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session


def _insert_for(db: Session, table):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(table)
    if dialect == "sqlite":
        return sqlite.insert(table)
    raise NotImplementedError(f"Upsert is not supported for dialect '{dialect}'")


def upsert(
    db: Session,
    model,
    values: dict,
    conflict_columns: Iterable[str],
    update_columns: Optional[Iterable[str]] = None,
    where=None,
) -> int:
    """
    Insert a row or update it in place when the natural key already exists.

    ``values`` is keyed by column name. ``update_columns`` defaults to every
    supplied column outside the conflict key. ``where`` restricts which
    existing rows may be overwritten; a row failing it is left untouched.
    Returns the number of rows written.
    """
    table = model.__table__
    conflict_columns = list(conflict_columns)
    if update_columns is None:
        update_columns = [name for name in values if name not in conflict_columns]

    stmt = _insert_for(db, table).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=conflict_columns,
        set_={name: stmt.excluded[name] for name in update_columns},
        where=where,
    )
    return db.execute(stmt).rowcount


def insert_ignore(db: Session, model, values: dict, conflict_columns: Iterable[str]) -> int:
    """Insert a row unless its natural key exists. Returns 1 if inserted, else 0."""
    table = model.__table__
    stmt = _insert_for(db, table).values(**values)
    stmt = stmt.on_conflict_do_nothing(index_elements=list(conflict_columns))
    return db.execute(stmt).rowcount
