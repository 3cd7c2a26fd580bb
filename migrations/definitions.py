"""
Schema definitions: the fixed migration list, the repair rules that are
re-checked on every start, and the columns the rest of the app relies on.

Migration ids are permanent. Once an id is recorded in the `migrations`
table its definition is never run again, so changes to an applied
migration must ship as a new id.
"""

from typing import Any, Dict, List, Optional

import db
from migrations.base import (
    Migration, SqlMigration, AddColumnMigration, SeedMigration, RepairRule,
)

# Expected schema - what services.py and app.py read and write
# Format: {table_name: [column_names]}
EXPECTED_SCHEMA: Dict[str, List[str]] = {
    "users": ["id", "username", "real_name", "email", "password", "role", "last_login",
              "is_2fa_enabled", "two_fa_secret", "sso_provider", "avatar_url"],
    "equipment": ["id", "name", "serial", "asset_tag", "assigned_user", "status",
                  "approval_status", "notes", "collaborator_email", "created_by_id"],
    "licenses": ["id", "product", "serial_key", "assigned_user", "approval_status",
                 "notes", "company", "created_by_id"],
    "equipment_history": ["id", "equipment_id", "timestamp", "changed_by", "change_type",
                          "from_value", "to_value"],
    "audit_log": ["id", "timestamp", "username", "action_type", "target_type",
                  "target_id", "details"],
    "app_config": ["id", "config_key", "config_value"],
}

# Columns added to pre-existing tables on every start.
# Definitions must be valid for both SQLite and Postgres.
REPAIR_RULES: List[RepairRule] = [
    RepairRule("licenses", "company", "VARCHAR(255)"),
    RepairRule("licenses", "notes", "TEXT"),
    RepairRule("licenses", "approval_status", "VARCHAR(50) DEFAULT 'approved'"),
    RepairRule("licenses", "rejection_reason", "TEXT"),
    RepairRule("licenses", "created_by_id", "INTEGER"),

    RepairRule("equipment", "notes", "TEXT"),
    RepairRule("equipment", "approval_status", "VARCHAR(50) DEFAULT 'approved'"),
    RepairRule("equipment", "rejection_reason", "TEXT"),
    RepairRule("equipment", "created_by_id", "INTEGER"),
    RepairRule("equipment", "collaborator_email", "VARCHAR(255)"),

    # Endpoint-management report fields
    RepairRule("equipment", "brand", "VARCHAR(100)"),
    RepairRule("equipment", "model", "VARCHAR(100)"),
    RepairRule("equipment", "identifier", "VARCHAR(255)"),
    RepairRule("equipment", "os_name", "VARCHAR(255)"),
    RepairRule("equipment", "total_memory", "VARCHAR(100)"),
    RepairRule("equipment", "policy_group", "VARCHAR(100)"),
    RepairRule("equipment", "country", "VARCHAR(100)"),
    RepairRule("equipment", "city", "VARCHAR(100)"),
    RepairRule("equipment", "state_province", "VARCHAR(100)"),
    RepairRule("equipment", "term_condition", "VARCHAR(50) DEFAULT 'N/A'"),

    RepairRule("users", "two_fa_secret", "VARCHAR(255)"),
    RepairRule("users", "is_2fa_enabled", "BOOLEAN DEFAULT FALSE"),
    RepairRule("users", "avatar_url", "TEXT"),

    # Snake-case columns that replaced the legacy camel-case ones
    RepairRule("equipment_history", "equipment_id", "INTEGER"),
    RepairRule("equipment_history", "changed_by", "VARCHAR(255)"),
    RepairRule("equipment_history", "change_type", "VARCHAR(255)"),
    RepairRule("equipment_history", "from_value", "TEXT"),
    RepairRule("equipment_history", "to_value", "TEXT"),

    RepairRule("audit_log", "action_type", "VARCHAR(255)"),
    RepairRule("audit_log", "target_type", "VARCHAR(255)"),
    RepairRule("audit_log", "target_id", "VARCHAR(255)"),
]


_CREATE_USERS = """
CREATE TABLE IF NOT EXISTS users (
    id {pk},
    username VARCHAR(255) NOT NULL UNIQUE,
    real_name VARCHAR(255) NOT NULL,
    email VARCHAR(255) NOT NULL UNIQUE,
    password VARCHAR(255) NOT NULL,
    role VARCHAR(20) NOT NULL CHECK (role IN ('Admin', 'User Manager', 'User')),
    last_login TIMESTAMP,
    is_2fa_enabled BOOLEAN DEFAULT FALSE,
    two_fa_secret VARCHAR(255),
    sso_provider VARCHAR(50),
    avatar_url TEXT
)
"""

_CREATE_EQUIPMENT = """
CREATE TABLE IF NOT EXISTS equipment (
    id {pk},
    name VARCHAR(255) NOT NULL,
    warranty VARCHAR(255),
    asset_tag VARCHAR(255) UNIQUE,
    serial VARCHAR(255) UNIQUE,
    assigned_user VARCHAR(255),
    previous_user VARCHAR(255),
    location VARCHAR(255),
    department VARCHAR(255),
    handover_date VARCHAR(255),
    status VARCHAR(255),
    return_date VARCHAR(255),
    equipment_type VARCHAR(255),
    purchase_invoice VARCHAR(255),
    responsibility_term VARCHAR(255),
    photo TEXT,
    qr_code TEXT,
    notes TEXT,
    approval_status VARCHAR(50) DEFAULT 'approved',
    rejection_reason TEXT,
    brand VARCHAR(100),
    model VARCHAR(100),
    identifier VARCHAR(255),
    os_name VARCHAR(255),
    total_memory VARCHAR(100),
    policy_group VARCHAR(100),
    country VARCHAR(100),
    city VARCHAR(100),
    state_province VARCHAR(100),
    term_condition VARCHAR(50) DEFAULT 'N/A'
)
"""

_CREATE_LICENSES = """
CREATE TABLE IF NOT EXISTS licenses (
    id {pk},
    product VARCHAR(255) NOT NULL,
    license_type VARCHAR(255),
    serial_key VARCHAR(255) NOT NULL,
    expiration_date VARCHAR(255),
    assigned_user VARCHAR(255) NOT NULL,
    job_title VARCHAR(255),
    department VARCHAR(255),
    manager VARCHAR(255),
    cost_center VARCHAR(255),
    ledger_account VARCHAR(255),
    computer_name VARCHAR(255),
    ticket_number VARCHAR(255),
    notes TEXT,
    approval_status VARCHAR(50) DEFAULT 'approved',
    rejection_reason TEXT,
    company VARCHAR(255)
)
"""

_CREATE_EQUIPMENT_HISTORY = """
CREATE TABLE IF NOT EXISTS equipment_history (
    id {pk},
    equipment_id INTEGER REFERENCES equipment(id) ON DELETE CASCADE,
    timestamp TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    changed_by VARCHAR(255),
    change_type VARCHAR(255),
    from_value TEXT,
    to_value TEXT
)
"""

_CREATE_AUDIT_LOG = """
CREATE TABLE IF NOT EXISTS audit_log (
    id {pk},
    timestamp TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    username VARCHAR(255),
    action_type VARCHAR(255),
    target_type VARCHAR(255),
    target_id VARCHAR(255),
    details TEXT
)
"""

_CREATE_APP_CONFIG = """
CREATE TABLE IF NOT EXISTS app_config (
    id {pk},
    config_key VARCHAR(255) NOT NULL UNIQUE,
    config_value TEXT
)
"""

_SQLITE_PK = "INTEGER PRIMARY KEY AUTOINCREMENT"
_POSTGRES_PK = "SERIAL PRIMARY KEY"


def _create_table(id: int, name: str, template: str) -> SqlMigration:
    return SqlMigration(
        id, name,
        template.format(pk=_SQLITE_PK),
        template.format(pk=_POSTGRES_PK),
    )


def _admin_password_hash(settings: Dict[str, Any]) -> str:
    if settings.get("admin_password_hash"):
        return settings["admin_password_hash"]
    return db.hash_password(settings["admin_password"], rounds=settings["salt_rounds"])


def build_migrations(settings: Optional[Dict[str, Any]] = None) -> List[Migration]:
    """
    Build the fixed, ordered migration list.

    The seeded admin's password hash is computed here, once per build, not
    when the seed runs. The seed is insert-if-absent on username/email, so a
    later build with a different hash never touches an existing account.
    """
    if settings is None:
        settings = db.get_settings()

    return [
        _create_table(1, "create_users", _CREATE_USERS),
        _create_table(2, "create_equipment", _CREATE_EQUIPMENT),
        _create_table(3, "create_licenses", _CREATE_LICENSES),
        _create_table(4, "create_equipment_history", _CREATE_EQUIPMENT_HISTORY),
        _create_table(5, "create_audit_log", _CREATE_AUDIT_LOG),
        _create_table(6, "create_app_config", _CREATE_APP_CONFIG),
        SeedMigration(7, "seed_admin_user", "users", [{
            "username": settings["admin_username"],
            "real_name": "Admin",
            "email": settings["admin_email"],
            "password": _admin_password_hash(settings),
            "role": "Admin",
        }]),
        SeedMigration(8, "seed_company_settings", "app_config", [
            {"config_key": "companyName", "config_value": settings["company_name"]},
            {"config_key": "isSsoEnabled", "config_value": "false"},
        ]),
        AddColumnMigration(9, "equipment_collaborator_email",
                           "equipment", "collaborator_email", "VARCHAR(255)"),
        SeedMigration(10, "seed_term_templates", "app_config", [
            {"config_key": "handover_term_template", "config_value": None},
            {"config_key": "return_term_template", "config_value": None},
        ]),
        AddColumnMigration(11, "users_avatar_url", "users", "avatar_url", "TEXT"),
        SqlMigration(12, "index_equipment_history",
                     "CREATE INDEX IF NOT EXISTS idx_equipment_history_equipment "
                     "ON equipment_history(equipment_id)"),
        AddColumnMigration(13, "licenses_created_by", "licenses", "created_by_id", "INTEGER"),
        AddColumnMigration(14, "equipment_created_by", "equipment", "created_by_id", "INTEGER"),
        SeedMigration(15, "seed_2fa_setting", "app_config", [
            {"config_key": "is2faEnabled", "config_value": "false"},
        ]),
    ]
