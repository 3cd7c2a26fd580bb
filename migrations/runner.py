"""
Migration runner with critical schema repair.

Startup sequence (one borrowed connection for the whole pass):
1. Critical schema repair - add missing columns, fix incompatible legacy
   column definitions. Re-checked on every start, never recorded.
2. Ensure the `migrations` bookkeeping table exists.
3. Apply every migration whose id isn't recorded yet, in list order.

Nothing in here raises to the caller. Failed repairs and failed migrations
are logged and retried on the next start; a migration id is recorded only
after its statements succeed.
"""

import sys
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

import db
from migrations.base import (
    Migration, MigrationApplyError, RepairApplyError, RepairRule,
    SchemaError, SchemaProbeError,
)
from migrations.definitions import EXPECTED_SCHEMA, REPAIR_RULES, build_migrations
from security import validate_identifier


def _log(message: str):
    print(f"[migrations] {message}", file=sys.stderr)

# ============ SCHEMA REPAIR ============

def _probe_missing_column(conn, table: str, column: str) -> bool:
    """True when `table` exists but has no `column`."""
    try:
        if not db.table_exists(table, conn=conn):
            return False
        return not db.column_exists(table, column, conn=conn)
    except Exception as e:
        raise SchemaProbeError(f"cannot read columns of {table}: {e}") from e


def _probe_column_present(conn, table: str, column: str) -> bool:
    try:
        return db.column_exists(table, column, conn=conn)
    except Exception as e:
        raise SchemaProbeError(f"cannot read columns of {table}: {e}") from e


def apply_repair_rule(conn, rule: RepairRule) -> bool:
    """
    Add the rule's column if its table exists and the column is missing.

    A missing table is skipped silently; creating it is a migration's job.
    Returns True if the column was added. Errors are logged, not raised.
    """
    try:
        if not _probe_missing_column(conn, rule.table, rule.column):
            return False

        _log(f"Auto-repair: Adding '{rule.column}' to {rule.table}")
        try:
            conn.cursor().execute(rule.ddl())
            conn.commit()
        except Exception as e:
            raise RepairApplyError(str(e)) from e
        return True

    except SchemaError as e:
        conn.rollback()
        _log(f"Error checking column {rule.column} in {rule.table}: {e}")
        return False


# ---- SQLite table rebuild ----
# SQLite can't change a column's NOT NULL or DEFAULT in place, so the table
# is recreated from its stored CREATE statement with only the target
# column's definition amended, and the rows copied across. Every other
# column and table constraint keeps its original text.

_QUOTES = {"'": "'", '"': '"', "`": "`", "[": "]"}
_TABLE_CONSTRAINTS = {"CONSTRAINT", "PRIMARY", "UNIQUE", "CHECK", "FOREIGN"}


def _skip_literal(sql: str, i: int) -> int:
    """Index just past the quoted string or comment starting at i (i if none)."""
    if sql.startswith("--", i):
        end = sql.find("\n", i)
        return len(sql) if end < 0 else end + 1
    if sql.startswith("/*", i):
        end = sql.find("*/", i + 2)
        return len(sql) if end < 0 else end + 2
    close = _QUOTES.get(sql[i])
    if close is None:
        return i
    j = i + 1
    while True:
        j = sql.find(close, j)
        if j < 0:
            return len(sql)
        if close != "]" and sql.startswith(close * 2, j):
            j += 2
            continue
        return j + 1


def _is_comment(sql: str, i: int) -> bool:
    return sql.startswith("--", i) or sql.startswith("/*", i)


def _table_body(sql: str) -> Tuple[int, int]:
    """Positions of the parentheses around the column definitions."""
    depth, start, i = 0, None, 0
    while i < len(sql):
        skipped = _skip_literal(sql, i)
        if skipped != i:
            i = skipped
            continue
        if sql[i] == "(":
            if depth == 0 and start is None:
                start = i
            depth += 1
        elif sql[i] == ")":
            depth -= 1
            if depth == 0 and start is not None:
                return start, i
        i += 1
    raise ValueError("cannot find column definitions in table SQL")


def _split_items(body: str) -> List[str]:
    """Split column/constraint definitions on top-level commas."""
    items, depth, last, i = [], 0, 0, 0
    while i < len(body):
        skipped = _skip_literal(body, i)
        if skipped != i:
            i = skipped
            continue
        if body[i] == "(":
            depth += 1
        elif body[i] == ")":
            depth -= 1
        elif body[i] == "," and depth == 0:
            items.append(body[last:i])
            last = i + 1
        i += 1
    items.append(body[last:])
    return items


def _column_tokens(item: str) -> List[str]:
    """Top-level words of one definition; comments are dropped."""
    tokens, current, depth, i = [], "", 0, 0
    while i < len(item):
        if _is_comment(item, i):
            i = _skip_literal(item, i)
            if depth == 0 and current:
                tokens.append(current)
                current = ""
            continue
        skipped = _skip_literal(item, i)
        if skipped != i:
            current += item[i:skipped]
            i = skipped
            continue
        ch = item[i]
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        if ch.isspace() and depth == 0:
            if current:
                tokens.append(current)
                current = ""
        else:
            current += ch
        i += 1
    if current:
        tokens.append(current)
    return tokens


def _unquote(token: str) -> str:
    if token[:1] in _QUOTES:
        return token[1:-1]
    return token


def _find_words(tokens: List[str], words: List[str]) -> Optional[int]:
    upper = [t.upper() for t in tokens]
    # Position 0 is the column name
    for i in range(1, len(upper) - len(words) + 1):
        if upper[i:i + len(words)] == words:
            return i
    return None


def _cut_clause(tokens: List[str], start: int, stop: int) -> List[str]:
    """Remove tokens[start:stop] with its CONSTRAINT name and ON CONFLICT clause."""
    upper = [t.upper() for t in tokens]
    if start >= 3 and upper[start - 2] == "CONSTRAINT":
        start -= 2
    if upper[stop:stop + 2] == ["ON", "CONFLICT"]:
        stop += 3
    return tokens[:start] + tokens[stop:]


def _amend_column(tokens: List[str], change: Dict[str, Any]) -> str:
    if "notnull" in change:
        i = _find_words(tokens, ["NOT", "NULL"])
        while i is not None:
            tokens = _cut_clause(tokens, i, i + 2)
            i = _find_words(tokens, ["NOT", "NULL"])
        if change["notnull"]:
            tokens = tokens + ["NOT", "NULL"]

    if "default" in change:
        while True:
            i = next((n for n, t in enumerate(tokens) if n and t.upper().startswith("DEFAULT")), None)
            if i is None:
                break
            if tokens[i].upper() != "DEFAULT":
                width = 1  # DEFAULT(expr) written without a space
            elif i + 1 < len(tokens) and tokens[i + 1] in ("+", "-"):
                width = 3
            else:
                width = 2
            tokens = _cut_clause(tokens, i, i + width)
        if change["default"] is not None:
            tokens = tokens + ["DEFAULT", change["default"]]

    return "\n    " + " ".join(tokens)


def _amend_table_sql(sql: str, overrides: Dict[str, Dict[str, Any]]) -> str:
    """
    Return the parenthesized body (plus any table options) of a stored
    CREATE TABLE statement with the overridden columns rewritten.
    """
    start, end = _table_body(sql)
    pending = {name.lower(): change for name, change in overrides.items()}

    items = []
    for item in _split_items(sql[start + 1:end]):
        tokens = _column_tokens(item)
        if tokens and tokens[0].upper() not in _TABLE_CONSTRAINTS:
            change = pending.pop(_unquote(tokens[0]).lower(), None)
            if change is not None:
                item = _amend_column(tokens, change)
        items.append(item)

    if pending:
        raise ValueError(f"column(s) not in table definition: {sorted(pending)}")
    return "(" + ",".join(items) + ")" + sql[end + 1:]


def _sqlite_column_info(conn, table: str, column: str) -> Optional[Tuple]:
    table = validate_identifier(table, "table")
    for row in conn.execute(f"PRAGMA table_info({table})").fetchall():
        if row[1] == column:
            return row
    return None


def rebuild_sqlite_table(conn, table: str, overrides: Dict[str, Dict[str, Any]]):
    """
    Recreate `table` with per-column overrides ({"notnull": bool} and/or
    {"default": sql_expr}), keeping rows, constraints, indexes and triggers.
    """
    table = validate_identifier(table, "table")
    temp = f"{table}__rebuild"
    row = conn.execute(
        "SELECT sql FROM sqlite_master WHERE type='table' AND name=?", (table,)
    ).fetchone()
    if row is None or not row[0]:
        raise ValueError(f"no stored definition for table {table}")
    create_sql = f'CREATE TABLE "{temp}" ' + _amend_table_sql(row[0], overrides)

    column_list = ", ".join(
        f'"{c[1]}"' for c in conn.execute(f"PRAGMA table_info({table})").fetchall()
    )
    # Implicit UNIQUE/PK indexes have no sql and come back with the table body
    dependent_sql = [
        r[0] for r in conn.execute(
            """SELECT sql FROM sqlite_master
               WHERE type IN ('index', 'trigger') AND tbl_name=? AND sql IS NOT NULL
               ORDER BY type = 'trigger'""",
            (table,),
        ).fetchall()
    ]

    conn.commit()
    # Must be toggled outside a transaction
    conn.execute("PRAGMA foreign_keys = OFF")
    # Rename without re-resolving views and triggers against the dropped table
    conn.execute("PRAGMA legacy_alter_table = ON")
    try:
        conn.execute("BEGIN")
        conn.execute(f'DROP TABLE IF EXISTS "{temp}"')
        conn.execute(create_sql)
        conn.execute(f'INSERT INTO "{temp}" ({column_list}) SELECT {column_list} FROM "{table}"')
        conn.execute(f'DROP TABLE "{table}"')
        conn.execute(f'ALTER TABLE "{temp}" RENAME TO "{table}"')
        for sql in dependent_sql:
            conn.execute(sql)
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.execute("PRAGMA legacy_alter_table = OFF")
        conn.execute("PRAGMA foreign_keys = ON")


def _pg_column_info(conn, table: str, column: str) -> Optional[Tuple]:
    """(column_name, is_nullable, column_default), matching the name case-insensitively."""
    return db.fetchone(
        """SELECT column_name, is_nullable, column_default FROM information_schema.columns
           WHERE table_schema = current_schema() AND table_name = %s
             AND lower(column_name) = lower(%s)""",
        (table.lower(), column),
        conn=conn,
    )


_TIMESTAMP_DEFAULTS = {"CURRENT_TIMESTAMP", "NOW()"}


def _drop_not_null(conn, table: str, column: str) -> bool:
    if db.is_postgres():
        info = _pg_column_info(conn, table, column)
        if info is None or info[1] == "YES":
            return False
        conn.cursor().execute(f'ALTER TABLE {table} ALTER COLUMN "{info[0]}" DROP NOT NULL')
        conn.commit()
        return True

    info = _sqlite_column_info(conn, table, column)
    if info is None or not info[3]:
        return False
    rebuild_sqlite_table(conn, table, {column: {"notnull": 0}})
    return True


def _default_current_timestamp(conn, table: str, column: str) -> bool:
    if db.is_postgres():
        info = _pg_column_info(conn, table, column)
        if info is None or (info[2] or "").strip().upper() in _TIMESTAMP_DEFAULTS:
            return False
        conn.cursor().execute(
            f'ALTER TABLE {table} ALTER COLUMN "{info[0]}" SET DEFAULT CURRENT_TIMESTAMP'
        )
        conn.commit()
        return True

    info = _sqlite_column_info(conn, table, column)
    if info is None or (info[4] or "").upper() == "CURRENT_TIMESTAMP":
        return False
    rebuild_sqlite_table(conn, table, {column: {"default": "CURRENT_TIMESTAMP"}})
    return True


# (table, column, fix, log message) - checked whenever the column exists
COLUMN_FIXES: List[Tuple[str, str, Callable, str]] = [
    ("equipment_history", "equipmentId", _drop_not_null,
     "Making legacy column 'equipmentId' NULLABLE to fix insert errors."),
    ("equipment_history", "timestamp", _default_current_timestamp,
     "Ensuring 'timestamp' has DEFAULT CURRENT_TIMESTAMP."),
    ("audit_log", "timestamp", _default_current_timestamp,
     "Ensuring audit_log 'timestamp' has DEFAULT CURRENT_TIMESTAMP."),
]


def apply_column_fix(conn, table: str, column: str, fix: Callable, message: str) -> bool:
    """
    Run `fix` if `table.column` exists. Returns True if the schema changed.
    Errors are logged, not raised.
    """
    try:
        if not _probe_column_present(conn, table, validate_identifier(column, "column")):
            return False
        try:
            changed = fix(conn, validate_identifier(table, "table"), column)
        except Exception as e:
            raise RepairApplyError(str(e)) from e
        if changed:
            _log(f"Auto-repair: {message}")
        return changed

    except SchemaError as e:
        conn.rollback()
        _log(f"Auto-repair warning for {table}.{column}: {e}")
        return False


def ensure_critical_schema(conn, rules: Optional[Iterable[RepairRule]] = None) -> Dict[str, List[str]]:
    """
    Bring an existing (possibly outdated) schema into a shape the app and
    the migrations can work with. Safe to run any number of times.

    Returns dict of {table: [columns_added_or_fixed]}.
    """
    _log("Running critical schema check...")
    repaired: Dict[str, List[str]] = {}

    for rule in (REPAIR_RULES if rules is None else rules):
        if apply_repair_rule(conn, rule):
            repaired.setdefault(rule.table, []).append(rule.column)

    for table, column, fix, message in COLUMN_FIXES:
        if apply_column_fix(conn, table, column, fix, message):
            repaired.setdefault(table, []).append(column)

    _log("Critical schema check complete.")
    return repaired

# ============ MIGRATIONS ============

def ensure_migrations_table(conn):
    """Create the migrations bookkeeping table if it doesn't exist."""
    conn.cursor().execute("CREATE TABLE IF NOT EXISTS migrations (id INTEGER PRIMARY KEY)")
    conn.commit()


def get_applied_migrations(conn) -> Set[int]:
    """Ids of every migration recorded as applied."""
    rows = db.fetchall("SELECT id FROM migrations ORDER BY id", conn=conn)
    return {row[0] for row in rows}


def get_pending_migrations(conn, migrations: Iterable[Migration]) -> List[Migration]:
    """Migrations not yet recorded, in list order."""
    applied = get_applied_migrations(conn)
    return [m for m in migrations if m.id not in applied]


def _mark_migration_applied(migration_id: int, conn):
    """Record that a migration has been applied."""
    if db.is_postgres():
        sql = "INSERT INTO migrations (id) VALUES (?) ON CONFLICT (id) DO NOTHING"
    else:
        sql = "INSERT OR IGNORE INTO migrations (id) VALUES (?)"
    db.execute(sql, (migration_id,), conn=conn)


def apply_migration(conn, migration: Migration):
    """
    Apply one migration and record its id in the same commit.
    Raises MigrationApplyError (after rolling back) if anything fails.
    """
    try:
        migration.apply(conn)
        _mark_migration_applied(migration.id, conn)
        conn.commit()
    except Exception as e:
        conn.rollback()
        raise MigrationApplyError(migration.id, e) from e


def run_pending(conn, migrations: Iterable[Migration], verbose: bool = True) -> Tuple[List[int], List[int]]:
    """
    Apply pending migrations in list order.

    A failed migration is logged and left unrecorded (so it is retried on
    the next start), and the sequence moves on to the next one.

    Returns (applied_ids, failed_ids).
    """
    applied: List[int] = []
    failed: List[int] = []

    for migration in get_pending_migrations(conn, migrations):
        if verbose:
            _log(f"Running migration {migration.id} ({migration.name})...")
        try:
            apply_migration(conn, migration)
        except MigrationApplyError as e:
            _log(str(e))
            failed.append(migration.id)
            continue
        applied.append(migration.id)
        if verbose:
            _log(f"Migration {migration.id} completed.")

    return applied, failed


def run_migrations(verbose: bool = True, migrations: Optional[List[Migration]] = None) -> Dict[str, Any]:
    """
    Full startup pass: schema repair, then pending migrations.

    Never raises. If no connection can be obtained the pass is logged as
    aborted and the caller carries on (degraded).

    Returns:
        {"repaired": {table: [columns]}, "applied": [ids], "failed": [ids],
         "ok": True if the pass ran to the end}
    """
    _log("Checking database migrations...")
    report: Dict[str, Any] = {"repaired": {}, "applied": [], "failed": [], "ok": False}

    try:
        if migrations is None:
            migrations = build_migrations()

        with db.get_conn() as conn:
            report["repaired"] = ensure_critical_schema(conn)
            ensure_migrations_table(conn)
            report["applied"], report["failed"] = run_pending(conn, migrations, verbose=verbose)

        report["ok"] = True

    except db.ConnectionAcquisitionError as e:
        _log(f"FATAL: no database connection, skipping migrations: {e}")
    except Exception as e:
        _log(f"Migration pass aborted: {e}")

    if report["ok"]:
        if report["applied"]:
            _log(f"Applied {len(report['applied'])} migration(s): {report['applied']}")
        if report["failed"]:
            _log(f"{len(report['failed'])} migration(s) failed and will be retried: {report['failed']}")
        _log("Migrations check complete.")

    return report


def validate_schema(raise_on_error: bool = False) -> Dict[str, List[str]]:
    """
    Report expected tables/columns that are still missing.
    Read-only; repairs happen in run_migrations.

    Returns:
        Dict of {table: [missing_columns]} (["TABLE_MISSING"] for absent tables)

    Raises:
        SchemaError: If raise_on_error=True and anything is missing
    """
    issues: Dict[str, List[str]] = {}

    with db.get_conn() as conn:
        for table, expected_columns in EXPECTED_SCHEMA.items():
            if not db.table_exists(table, conn=conn):
                issues[table] = ["TABLE_MISSING"]
                continue
            present = db.get_columns(table, conn=conn)
            if db.is_postgres():
                missing = [c for c in expected_columns if c.lower() not in present]
            else:
                missing = [c for c in expected_columns if c not in present]
            if missing:
                issues[table] = missing

    for table, cols in issues.items():
        _log(f"ISSUE: {table}: {cols}")

    if issues and raise_on_error:
        raise SchemaError(f"Schema validation failed: {issues}")

    return issues


# CLI interface for running migrations directly
if __name__ == "__main__":
    if len(sys.argv) > 1 and sys.argv[1] == "validate":
        found = validate_schema()
        if found:
            sys.exit(1)
        print("[migrations] Schema valid")
    else:
        result = run_migrations(verbose=True)
        print(f"[migrations] Done. Applied: {result['applied']} Failed: {result['failed']}")
        sys.exit(0 if result["ok"] else 1)
