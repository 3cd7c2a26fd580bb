"""
Services layer - pure Python business logic with NO Streamlit dependencies.

All functions accept explicit parameters and return plain dicts/lists.
The schema they rely on is created by migrations.run_migrations(), which
must have run (via db.init_db()) before any of them is called.
"""

from services.core import (
    AuthenticationError,
    # Sign-in
    authenticate,
    # Equipment
    list_equipment,
    get_equipment,
    create_equipment,
    update_equipment,
    delete_equipment,
    get_equipment_history,
    periodic_update,
    # Licenses
    list_licenses,
    create_license,
    # Audit log
    log_audit,
    list_audit_log,
    # App config
    get_config,
    get_all_config,
    set_config,
)
