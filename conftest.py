import pytest

import db


@pytest.fixture
def temp_db(tmp_path, monkeypatch):
    """Point the app at a fresh SQLite file for one test."""
    path = tmp_path / "inventory_test.db"
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{path}")
    # Cheapest cost factor bcrypt accepts
    monkeypatch.setenv("BCRYPT_SALT_ROUNDS", "4")
    for name in ("ADMIN_USERNAME", "ADMIN_EMAIL", "ADMIN_PASSWORD",
                 "ADMIN_PASSWORD_HASH", "DEFAULT_COMPANY_NAME"):
        monkeypatch.delenv(name, raising=False)
    db.reset_config()
    yield path
    db.reset_config()


@pytest.fixture
def migrated_db(temp_db):
    """A fresh database with every migration applied."""
    report = db.init_db()
    assert report["ok"] and not report["failed"]
    return temp_db
