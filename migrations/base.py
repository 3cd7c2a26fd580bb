"""
Building blocks for the migration runner.

A migration is an opaque unit with an integer id and an apply(conn) method;
the runner never looks inside it. Three kinds cover everything the app
needs:

- SqlMigration: raw statements, one variant per dialect
- AddColumnMigration: ALTER TABLE ADD COLUMN guarded by an existence probe
- SeedMigration: insert-if-absent rows keyed by a unique constraint
"""

from typing import Any, Dict, List, NamedTuple, Optional, Sequence

import db
from security import validate_identifier


class SchemaError(Exception):
    """Base class for repair pass failures."""
    pass


class SchemaProbeError(SchemaError):
    """Raised when table/column metadata can't be read."""
    pass


class RepairApplyError(SchemaError):
    """Raised when a repair ALTER TABLE fails."""
    pass


class MigrationError(Exception):
    """Base class for migration sequence failures."""
    pass


class MigrationApplyError(MigrationError):
    """Raised when a migration's statements fail to apply."""

    def __init__(self, migration_id: int, cause: Exception):
        super().__init__(f"Migration {migration_id} failed: {cause}")
        self.migration_id = migration_id
        self.cause = cause


def split_statements(sql: str) -> List[str]:
    """Split a script on ';' and drop blanks and comment-only chunks."""
    statements = []
    for stmt in sql.split(';'):
        lines = [ln for ln in stmt.strip().splitlines() if not ln.strip().startswith('--')]
        stmt = "\n".join(lines).strip()
        if stmt:
            statements.append(stmt)
    return statements


class RepairRule(NamedTuple):
    """Add `column` to `table` when the table exists and the column doesn't."""
    table: str
    column: str
    definition: str

    def ddl(self) -> str:
        table = validate_identifier(self.table, "table")
        column = validate_identifier(self.column, "column")
        return f"ALTER TABLE {table} ADD COLUMN {column} {self.definition}"


class Migration:
    """A numbered, one-time schema or data change."""

    def __init__(self, id: int, name: str):
        self.id = id
        self.name = name

    def apply(self, conn) -> None:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.id:03d}_{self.name}>"


class SqlMigration(Migration):
    """
    Runs a SQL script. `postgres_sql` defaults to the SQLite script when the
    statement is portable.
    """

    def __init__(self, id: int, name: str, sqlite_sql: str, postgres_sql: Optional[str] = None):
        super().__init__(id, name)
        self.sqlite_sql = sqlite_sql
        self.postgres_sql = postgres_sql

    def statements(self) -> List[str]:
        if db.is_postgres() and self.postgres_sql is not None:
            return split_statements(self.postgres_sql)
        return split_statements(self.sqlite_sql)

    def apply(self, conn) -> None:
        cur = conn.cursor()
        for stmt in self.statements():
            cur.execute(stmt)


class AddColumnMigration(Migration):
    """ALTER TABLE ADD COLUMN, skipped when the column is already there."""

    def __init__(self, id: int, name: str, table: str, column: str, definition: str):
        super().__init__(id, name)
        self.rule = RepairRule(table, column, definition)

    def apply(self, conn) -> None:
        if db.column_exists(self.rule.table, self.rule.column, conn=conn):
            return
        conn.cursor().execute(self.rule.ddl())


class SeedMigration(Migration):
    """
    Inserts rows unless a row with the same unique key already exists.
    Existing rows are never overwritten.
    """

    def __init__(self, id: int, name: str, table: str, rows: Sequence[Dict[str, Any]]):
        super().__init__(id, name)
        self.table = validate_identifier(table, "table")
        self.rows = list(rows)

    def insert_sql(self, columns: Sequence[str]) -> str:
        names = ", ".join(validate_identifier(c, "column") for c in columns)
        placeholders = ", ".join("?" for _ in columns)
        if db.is_postgres():
            return (f"INSERT INTO {self.table} ({names}) VALUES ({placeholders}) "
                    f"ON CONFLICT DO NOTHING")
        return f"INSERT OR IGNORE INTO {self.table} ({names}) VALUES ({placeholders})"

    def apply(self, conn) -> None:
        cur = conn.cursor()
        for row in self.rows:
            columns = list(row.keys())
            cur.execute(db.adapt_query(self.insert_sql(columns)), tuple(row[c] for c in columns))
