"""
Security module for the IT asset inventory.
Provides identifier validation and input sanitization helpers.
"""

import re
from typing import Dict, FrozenSet, Iterable, List

# ============ COLUMN ALLOWLISTS ============
# Only these columns may appear in dynamically built INSERT/UPDATE statements

EQUIPMENT_COLUMNS: FrozenSet[str] = frozenset({
    "name", "warranty", "asset_tag", "serial",
    "assigned_user", "previous_user", "location", "department",
    "handover_date", "status", "return_date", "equipment_type",
    "purchase_invoice", "responsibility_term", "photo", "qr_code",
    "notes", "approval_status", "rejection_reason",
    "collaborator_email", "created_by_id",
    "brand", "model", "identifier", "os_name", "total_memory",
    "policy_group", "country", "city", "state_province", "term_condition",
})

LICENSE_COLUMNS: FrozenSet[str] = frozenset({
    "product", "license_type", "serial_key", "expiration_date",
    "assigned_user", "job_title", "department", "manager",
    "cost_center", "ledger_account", "computer_name", "ticket_number",
    "notes", "approval_status", "rejection_reason", "company", "created_by_id",
})

ALLOWED_COLUMNS: Dict[str, FrozenSet[str]] = {
    "equipment": EQUIPMENT_COLUMNS,
    "licenses": LICENSE_COLUMNS,
}


def validate_identifier(name: str, identifier_type: str = "identifier") -> str:
    """
    Validate a SQL identifier (table/column name) using strict pattern.
    Only allows alphanumeric characters and underscores.

    Args:
        name: The identifier to validate
        identifier_type: Type for error message (e.g., "table", "column")

    Returns:
        The validated identifier

    Raises:
        ValueError: If identifier contains invalid characters
    """
    if not name or not isinstance(name, str):
        raise ValueError(f"{identifier_type} must be a non-empty string")

    # Only allow alphanumeric and underscore, must start with letter
    if not re.match(r'^[a-zA-Z][a-zA-Z0-9_]*$', name):
        raise ValueError(f"Invalid {identifier_type}: {name}")

    return name


def validate_columns(table: str, columns: Iterable[str]) -> List[str]:
    """
    Check every column against the table's allowlist.

    Raises:
        ValueError: On an unknown table or any column not in the allowlist
    """
    allowed = ALLOWED_COLUMNS.get(table)
    if allowed is None:
        raise ValueError(f"Invalid table name: {table}")

    columns = list(columns)
    unknown = [c for c in columns if c not in allowed]
    if unknown:
        raise ValueError(f"Invalid column(s) for {table}: {', '.join(sorted(unknown))}")

    return columns


# ============ INPUT SANITIZATION ============

def sanitize_string(value: str, max_length: int = 1000, allow_newlines: bool = False) -> str:
    """
    Sanitize a string input by stripping whitespace and limiting length.

    Args:
        value: String to sanitize
        max_length: Maximum allowed length (default 1000)
        allow_newlines: If False, replace newlines with spaces

    Returns:
        Sanitized string
    """
    if not isinstance(value, str):
        return ""

    result = value.strip()

    if not allow_newlines:
        result = re.sub(r'[\r\n]+', ' ', result)

    if len(result) > max_length:
        result = result[:max_length]

    return result
