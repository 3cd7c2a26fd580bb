"""
Core service functions for the IT asset inventory.

These functions are designed to be:
- Pure Python (NO Streamlit dependencies)
- Explicit inputs (acting username passed in, no session state)
- JSON-serializable outputs (dict/list/str/int/bool)

Every write to equipment leaves a row in equipment_history and audit_log.

Usage:
    from services.core import create_equipment, periodic_update, authenticate
"""

import json
from typing import Optional, List, Dict, Any, Iterable

from db import (
    execute, execute_returning, fetchone, fetch_dicts, get_conn, verify_password,
)
from security import validate_columns, sanitize_string

SENSITIVE_USER_FIELDS = ("password", "two_fa_secret")


class AuthenticationError(Exception):
    """Raised when a sign-in attempt is rejected."""
    pass


def _to_json(value: Any) -> str:
    return json.dumps(value, default=str, ensure_ascii=False)


# ============================================================================
# AUDIT LOG
# ============================================================================

def log_audit(
    username: Optional[str],
    action_type: str,
    target_type: str,
    target_id: Any,
    details: str,
    conn=None
) -> None:
    """
    Append an audit entry. `timestamp` is left to the column default.

    When a connection is passed in, the entry joins the caller's transaction.
    """
    execute(
        """INSERT INTO audit_log (username, action_type, target_type, target_id, details)
           VALUES (?, ?, ?, ?, ?)""",
        (username, action_type, target_type, str(target_id) if target_id is not None else None, details),
        conn=conn,
    )


def list_audit_log(limit: int = 200) -> List[Dict[str, Any]]:
    """Most recent audit entries first."""
    return fetch_dicts(
        """SELECT id, timestamp, username, action_type, target_type, target_id, details
           FROM audit_log ORDER BY id DESC LIMIT ?""",
        (int(limit),),
    )


# ============================================================================
# AUTHENTICATION
# ============================================================================

def authenticate(username: str, password: str) -> Dict[str, Any]:
    """
    Check a username/password pair.

    Args:
        username: Login name
        password: Plaintext password

    Returns:
        User dict without password or 2FA secret. Includes
        requires_2fa_setup=True when the `require2fa` setting is on and the
        user has not enabled 2FA yet.

    Raises:
        AuthenticationError: Unknown user, SSO-managed account, or wrong password
    """
    username = sanitize_string(username, max_length=255)
    users = fetch_dicts("SELECT * FROM users WHERE username = ?", (username,))
    if not users:
        raise AuthenticationError("User not found")
    user = users[0]

    if user.get("sso_provider"):
        raise AuthenticationError("Please sign in through SSO.")

    if not verify_password(password, user.get("password")):
        raise AuthenticationError("Incorrect password")

    require_2fa = get_config("require2fa") == "true"

    execute("UPDATE users SET last_login = CURRENT_TIMESTAMP WHERE id = ?", (user["id"],))
    log_audit(username, "LOGIN", "USER", user["id"], "User logged in")

    public = {k: v for k, v in user.items() if k not in SENSITIVE_USER_FIELDS}
    if require_2fa and not user.get("is_2fa_enabled"):
        public["requires_2fa_setup"] = True
    return public


# ============================================================================
# EQUIPMENT
# ============================================================================

def list_equipment() -> List[Dict[str, Any]]:
    """Approved equipment, newest first."""
    return fetch_dicts(
        "SELECT * FROM equipment WHERE approval_status = ? ORDER BY id DESC",
        ("approved",),
    )


def get_equipment(equipment_id: int) -> Optional[Dict[str, Any]]:
    rows = fetch_dicts("SELECT * FROM equipment WHERE id = ?", (equipment_id,))
    return rows[0] if rows else None


def create_equipment(data: Dict[str, Any], username: str) -> Dict[str, Any]:
    """
    Insert an equipment record.

    Args:
        data: Column values (keys must be known equipment columns)
        username: Acting user, recorded in history and audit log

    Returns:
        The inserted values plus the new id

    Raises:
        ValueError: Unknown column or missing name
    """
    columns = validate_columns("equipment", data.keys())
    if not data.get("name"):
        raise ValueError("Equipment name is required")

    placeholders = ", ".join("?" for _ in columns)
    with get_conn() as conn:
        try:
            new_id = execute_returning(
                f"INSERT INTO equipment ({', '.join(columns)}) VALUES ({placeholders})",
                tuple(data[c] for c in columns),
                conn=conn,
            )
            execute(
                """INSERT INTO equipment_history (equipment_id, changed_by, change_type, to_value)
                   VALUES (?, ?, ?, ?)""",
                (new_id, username, "CREATE", _to_json(data)),
                conn=conn,
            )
            log_audit(username, "CREATE", "EQUIPMENT", new_id,
                      f"Created equipment: {data['name']}", conn=conn)
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    return {"id": new_id, **data}


def update_equipment(equipment_id: int, data: Dict[str, Any], username: str) -> Dict[str, Any]:
    """
    Update an equipment record, keeping the previous values in history.

    Raises:
        ValueError: Unknown column or empty update
        LookupError: No equipment with that id
    """
    data = {k: v for k, v in data.items() if k != "id"}
    columns = validate_columns("equipment", data.keys())
    if not columns:
        raise ValueError("Nothing to update")

    with get_conn() as conn:
        try:
            old = fetch_dicts("SELECT * FROM equipment WHERE id = ?", (equipment_id,), conn=conn)
            if not old:
                raise LookupError(f"Equipment {equipment_id} not found")

            assignments = ", ".join(f"{c} = ?" for c in columns)
            execute(
                f"UPDATE equipment SET {assignments} WHERE id = ?",
                tuple(data[c] for c in columns) + (equipment_id,),
                conn=conn,
            )
            execute(
                """INSERT INTO equipment_history
                   (equipment_id, changed_by, change_type, from_value, to_value)
                   VALUES (?, ?, ?, ?, ?)""",
                (equipment_id, username, "UPDATE", _to_json(old[0]), _to_json(data)),
                conn=conn,
            )
            name = data.get("name", old[0].get("name"))
            log_audit(username, "UPDATE", "EQUIPMENT", equipment_id,
                      f"Updated equipment: {name}", conn=conn)
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    return {"id": equipment_id, **data}


def delete_equipment(equipment_id: int, username: str) -> bool:
    """
    Delete an equipment record (its history goes with it).
    Returns True if a row was deleted.
    """
    with get_conn() as conn:
        try:
            cur = execute("DELETE FROM equipment WHERE id = ?", (equipment_id,), conn=conn)
            deleted = cur.rowcount > 0
            if deleted:
                log_audit(username, "DELETE", "EQUIPMENT", equipment_id,
                          "Deleted equipment", conn=conn)
            conn.commit()
        except Exception:
            conn.rollback()
            raise
    return deleted


def get_equipment_history(equipment_id: int) -> List[Dict[str, Any]]:
    """History entries for one equipment record, newest first."""
    return fetch_dicts(
        """SELECT * FROM equipment_history WHERE equipment_id = ?
           ORDER BY timestamp DESC, id DESC""",
        (equipment_id,),
    )


def periodic_update(items: Iterable[Dict[str, Any]], username: str) -> Dict[str, int]:
    """
    Bulk upsert equipment by serial number in a single transaction.

    - Known serial: each changed, non-null field is updated and gets its own
      'UPDATE (AUTO)' history entry.
    - Unknown serial: inserted as approved with a 'CREATE (IMPORT)' entry.
    - Items without a serial are skipped.

    Any failure rolls back the whole batch.

    Returns:
        {"updated": n, "inserted": n, "skipped": n}

    Raises:
        ValueError: If items is not a list or contains unknown columns
    """
    if not isinstance(items, list):
        raise ValueError("Invalid equipment list")
    for item in items:
        validate_columns("equipment", (k for k in item.keys() if k != "id"))

    counts = {"updated": 0, "inserted": 0, "skipped": 0}

    with get_conn() as conn:
        try:
            for item in items:
                serial = item.get("serial")
                if not serial:
                    counts["skipped"] += 1
                    continue

                existing = fetch_dicts(
                    "SELECT * FROM equipment WHERE serial = ?", (serial,), conn=conn
                )

                if existing:
                    current = existing[0]
                    changes = {
                        key: value for key, value in item.items()
                        if key != "id" and value is not None and str(value) != str(current.get(key))
                    }
                    if not changes:
                        continue

                    assignments = ", ".join(f"{c} = ?" for c in changes)
                    execute(
                        f"UPDATE equipment SET {assignments} WHERE id = ?",
                        tuple(changes.values()) + (current["id"],),
                        conn=conn,
                    )
                    for key, value in changes.items():
                        previous = current.get(key)
                        execute(
                            """INSERT INTO equipment_history
                               (equipment_id, changed_by, change_type, from_value, to_value)
                               VALUES (?, ?, ?, ?, ?)""",
                            (current["id"], username, "UPDATE (AUTO)",
                             str(previous) if previous is not None else "", str(value)),
                            conn=conn,
                        )
                    counts["updated"] += 1
                else:
                    row = {k: v for k, v in item.items() if k != "id" and v is not None}
                    row.setdefault("approval_status", "approved")
                    row.setdefault("name", serial)
                    columns = list(row.keys())
                    new_id = execute_returning(
                        f"INSERT INTO equipment ({', '.join(columns)}) "
                        f"VALUES ({', '.join('?' for _ in columns)})",
                        tuple(row[c] for c in columns),
                        conn=conn,
                    )
                    execute(
                        """INSERT INTO equipment_history
                           (equipment_id, changed_by, change_type, from_value, to_value)
                           VALUES (?, ?, ?, ?, ?)""",
                        (new_id, username, "CREATE (IMPORT)", None, "Imported via periodic update"),
                        conn=conn,
                    )
                    counts["inserted"] += 1

            log_audit(username, "PERIODIC_UPDATE", "EQUIPMENT", None,
                      f"Periodic update: {counts['updated']} updated, {counts['inserted']} inserted",
                      conn=conn)
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    return counts


# ============================================================================
# LICENSES
# ============================================================================

def list_licenses() -> List[Dict[str, Any]]:
    """Approved licenses, newest first."""
    return fetch_dicts(
        "SELECT * FROM licenses WHERE approval_status = ? ORDER BY id DESC",
        ("approved",),
    )


def create_license(data: Dict[str, Any], username: str) -> Dict[str, Any]:
    """
    Insert a software license.

    Raises:
        ValueError: Unknown column or missing product/serial_key/assigned_user
    """
    columns = validate_columns("licenses", data.keys())
    for required in ("product", "serial_key", "assigned_user"):
        if not data.get(required):
            raise ValueError(f"{required} is required")

    with get_conn() as conn:
        try:
            new_id = execute_returning(
                f"INSERT INTO licenses ({', '.join(columns)}) "
                f"VALUES ({', '.join('?' for _ in columns)})",
                tuple(data[c] for c in columns),
                conn=conn,
            )
            log_audit(username, "CREATE", "LICENSE", new_id,
                      f"Created license: {data['product']}", conn=conn)
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    return {"id": new_id, **data}


# ============================================================================
# APP CONFIG
# ============================================================================

def get_config(key: str, default: Optional[str] = None) -> Optional[str]:
    row = fetchone("SELECT config_value FROM app_config WHERE config_key = ?", (key,))
    if row is None or row[0] is None:
        return default
    return row[0]


def get_all_config() -> Dict[str, Optional[str]]:
    rows = fetch_dicts("SELECT config_key, config_value FROM app_config ORDER BY config_key")
    return {r["config_key"]: r["config_value"] for r in rows}


def set_config(key: str, value: Optional[str], username: str) -> None:
    """Create or overwrite a setting and audit the change."""
    with get_conn() as conn:
        try:
            execute(
                """INSERT INTO app_config (config_key, config_value) VALUES (?, ?)
                   ON CONFLICT (config_key) DO UPDATE SET config_value = excluded.config_value""",
                (key, value),
                conn=conn,
            )
            log_audit(username, "UPDATE", "CONFIG", key, f"Set {key}", conn=conn)
            conn.commit()
        except Exception:
            conn.rollback()
            raise
