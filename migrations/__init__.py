"""
Database migrations for SQLite and PostgreSQL.

This module provides:
- A critical schema repair pass, re-checked on every start
- A `migrations` table recording which numbered migrations have run
- Auto-apply of pending migrations at startup, in list order
- A read-only schema report for diagnostics

Usage:
    from migrations import run_migrations, validate_schema

    # Repair schema, then apply all pending migrations (never raises)
    report = run_migrations()

    # List expected columns that are still missing
    validate_schema()
"""

from .base import (
    Migration,
    SqlMigration,
    AddColumnMigration,
    SeedMigration,
    RepairRule,
    SchemaError,
    SchemaProbeError,
    RepairApplyError,
    MigrationError,
    MigrationApplyError,
)
from .definitions import EXPECTED_SCHEMA, REPAIR_RULES, build_migrations
from .runner import (
    run_migrations,
    run_pending,
    apply_migration,
    ensure_critical_schema,
    ensure_migrations_table,
    apply_repair_rule,
    get_applied_migrations,
    get_pending_migrations,
    rebuild_sqlite_table,
    validate_schema,
)
