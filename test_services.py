"""
Tests for the services layer.
Run against a temporary, fully migrated SQLite database (no Streamlit required).
"""

import json
import sqlite3

import pytest

import db
from services import (
    AuthenticationError,
    authenticate,
    list_equipment, get_equipment, create_equipment, update_equipment,
    delete_equipment, get_equipment_history, periodic_update,
    list_licenses, create_license,
    list_audit_log,
    get_config, get_all_config, set_config,
)


def _audit_actions():
    return [(e["action_type"], e["target_type"]) for e in list_audit_log()]


class TestAuthenticate:

    def test_seeded_admin_signs_in(self, migrated_db):
        user = authenticate("admin", "changeme")

        assert user["username"] == "admin"
        assert user["role"] == "Admin"
        assert "password" not in user
        assert "two_fa_secret" not in user
        assert "requires_2fa_setup" not in user
        assert ("LOGIN", "USER") in _audit_actions()
        row = db.fetchone("SELECT last_login FROM users WHERE username = ?", ("admin",))
        assert row[0] is not None

    def test_wrong_password(self, migrated_db):
        with pytest.raises(AuthenticationError):
            authenticate("admin", "wrong")
        assert _audit_actions() == []

    def test_unknown_user(self, migrated_db):
        with pytest.raises(AuthenticationError):
            authenticate("nobody", "changeme")

    def test_sso_account_cannot_use_password(self, migrated_db):
        db.execute(
            """INSERT INTO users (username, real_name, email, password, role, sso_provider)
               VALUES (?, ?, ?, ?, ?, ?)""",
            ("sso.user", "SSO User", "sso@example.com",
             db.hash_password("pw", rounds=4), "User", "google"),
        )
        with pytest.raises(AuthenticationError, match="SSO"):
            authenticate("sso.user", "pw")

    def test_require_2fa_flags_setup(self, migrated_db):
        set_config("require2fa", "true", "admin")
        user = authenticate("admin", "changeme")
        assert user["requires_2fa_setup"] is True


class TestEquipment:

    def test_create_records_history_and_audit(self, migrated_db):
        created = create_equipment(
            {"name": "Laptop 01", "serial": "SN-1", "asset_tag": "AT-1", "status": "In use"},
            "admin",
        )

        assert get_equipment(created["id"])["serial"] == "SN-1"
        assert [e["id"] for e in list_equipment()] == [created["id"]]
        history = get_equipment_history(created["id"])
        assert len(history) == 1
        assert history[0]["change_type"] == "CREATE"
        assert json.loads(history[0]["to_value"])["name"] == "Laptop 01"
        assert ("CREATE", "EQUIPMENT") in _audit_actions()

    def test_update_keeps_previous_values(self, migrated_db):
        created = create_equipment({"name": "Laptop 01", "serial": "SN-1"}, "admin")

        update_equipment(created["id"], {"assigned_user": "maria", "id": 999}, "admin")

        assert get_equipment(created["id"])["assigned_user"] == "maria"
        latest = get_equipment_history(created["id"])[0]
        assert latest["change_type"] == "UPDATE"
        assert json.loads(latest["from_value"])["assigned_user"] is None
        assert json.loads(latest["to_value"]) == {"assigned_user": "maria"}

    def test_update_missing_record(self, migrated_db):
        with pytest.raises(LookupError):
            update_equipment(12345, {"status": "Lost"}, "admin")

    def test_delete_cascades_history(self, migrated_db):
        created = create_equipment({"name": "Printer", "serial": "SN-P"}, "admin")

        assert delete_equipment(created["id"], "admin") is True
        assert get_equipment(created["id"]) is None
        assert get_equipment_history(created["id"]) == []
        assert delete_equipment(created["id"], "admin") is False

    def test_unknown_column_rejected(self, migrated_db):
        with pytest.raises(ValueError):
            create_equipment({"name": "X", "name; DROP TABLE users": "1"}, "admin")
        assert list_equipment() == []

    def test_name_required(self, migrated_db):
        with pytest.raises(ValueError):
            create_equipment({"serial": "SN-2"}, "admin")


class TestPeriodicUpdate:

    def test_updates_inserts_and_skips(self, migrated_db):
        existing = create_equipment(
            {"name": "Laptop 01", "serial": "SN-1", "status": "In use"}, "admin"
        )

        counts = periodic_update([
            {"serial": "SN-1", "status": "Stock", "os_name": "Windows 11", "brand": None},
            {"serial": "SN-2", "name": "Desktop 02", "brand": "Dell"},
            {"name": "No serial"},
        ], "agent")

        assert counts == {"updated": 1, "inserted": 1, "skipped": 1}

        history = get_equipment_history(existing["id"])
        auto = [h for h in history if h["change_type"] == "UPDATE (AUTO)"]
        assert sorted((h["from_value"], h["to_value"]) for h in auto) == [
            ("", "Windows 11"),
            ("In use", "Stock"),
        ]

        inserted = [e for e in list_equipment() if e["serial"] == "SN-2"][0]
        assert inserted["approval_status"] == "approved"
        assert inserted["brand"] == "Dell"
        assert get_equipment_history(inserted["id"])[0]["change_type"] == "CREATE (IMPORT)"
        assert ("PERIODIC_UPDATE", "EQUIPMENT") in _audit_actions()

    def test_unchanged_item_is_not_counted(self, migrated_db):
        create_equipment({"name": "Laptop 01", "serial": "SN-1"}, "admin")
        counts = periodic_update([{"serial": "SN-1", "name": "Laptop 01"}], "agent")
        assert counts == {"updated": 0, "inserted": 0, "skipped": 0}

    def test_failure_rolls_back_whole_batch(self, migrated_db):
        with pytest.raises(sqlite3.IntegrityError):
            periodic_update([
                {"serial": "SN-A", "asset_tag": "DUP"},
                {"serial": "SN-B", "asset_tag": "DUP"},
            ], "agent")

        assert list_equipment() == []
        assert ("PERIODIC_UPDATE", "EQUIPMENT") not in _audit_actions()

    def test_rejects_non_list(self, migrated_db):
        with pytest.raises(ValueError):
            periodic_update({"serial": "SN-1"}, "agent")


class TestLicenses:

    def test_create_and_list(self, migrated_db):
        created = create_license(
            {"product": "Office", "serial_key": "KEY-1", "assigned_user": "maria",
             "company": "ACME"},
            "admin",
        )

        licenses = list_licenses()
        assert [l["id"] for l in licenses] == [created["id"]]
        assert licenses[0]["approval_status"] == "approved"
        assert ("CREATE", "LICENSE") in _audit_actions()

    def test_required_fields(self, migrated_db):
        with pytest.raises(ValueError):
            create_license({"product": "Office", "serial_key": "KEY-1"}, "admin")


class TestConfig:

    def test_seeded_values(self, migrated_db):
        config = get_all_config()
        assert config["companyName"] == "MRR INFORMATICA"
        assert config["isSsoEnabled"] == "false"
        assert config["is2faEnabled"] == "false"
        assert config["handover_term_template"] is None
        assert get_config("handover_term_template", "none") == "none"

    def test_set_overwrites(self, migrated_db):
        set_config("companyName", "ACME", "admin")
        set_config("newKey", "1", "admin")

        assert get_config("companyName") == "ACME"
        assert get_config("newKey") == "1"
        assert get_config("missing") is None
        assert ("UPDATE", "CONFIG") in _audit_actions()
