import json

import pandas as pd
import streamlit as st
from dotenv import load_dotenv

load_dotenv()

# Import database module (after .env so DATABASE_URL is picked up)
from db import init_db, is_postgres, get_database_url, fetchall
from migrations import validate_schema
from services import (
    AuthenticationError, authenticate,
    list_equipment, create_equipment, update_equipment, delete_equipment,
    get_equipment_history, periodic_update,
    list_licenses, create_license,
    list_audit_log, get_all_config, set_config,
)

# ============ STREAMLIT APP ============

st.set_page_config(page_title="IT Asset Inventory", page_icon="🖥️", layout="wide")


@st.cache_resource
def _startup():
    # Once per process: schema repair + migrations before any page reads tables
    return init_db(verbose=True)


startup_report = _startup()

if not startup_report["ok"]:
    st.warning("Database schema check did not complete. Some pages may fail until the database is reachable.")

# ============ SESSION STATE INITIALIZATION ============
if "user" not in st.session_state:
    st.session_state.user = None


# ============ AUTHENTICATION GATE ============
def show_login():
    st.title("IT Asset Inventory")
    with st.form("login_form"):
        username = st.text_input("Username")
        password = st.text_input("Password", type="password")
        submitted = st.form_submit_button("Sign in", type="primary")

    if submitted:
        if not username or not password:
            st.error("Please enter username and password.")
            return
        try:
            st.session_state.user = authenticate(username, password)
        except AuthenticationError as e:
            st.error(str(e))
            return
        st.rerun()


def _username() -> str:
    return st.session_state.user["username"]


def _is_manager() -> bool:
    return st.session_state.user.get("role") in ("Admin", "User Manager")


# ============ PAGES ============
def page_equipment():
    st.header("Equipment")
    rows = list_equipment()
    st.dataframe(pd.DataFrame(rows), use_container_width=True, hide_index=True)

    if not _is_manager():
        return

    with st.expander("Add equipment"):
        with st.form("add_equipment"):
            name = st.text_input("Name *")
            serial = st.text_input("Serial")
            asset_tag = st.text_input("Asset tag")
            assigned_user = st.text_input("Assigned user")
            status = st.selectbox("Status", ["In use", "In stock", "Maintenance", "Retired"])
            if st.form_submit_button("Save"):
                data = {"name": name, "serial": serial or None, "asset_tag": asset_tag or None,
                        "assigned_user": assigned_user or None, "status": status}
                try:
                    created = create_equipment(data, _username())
                    st.success(f"Created equipment #{created['id']}")
                except ValueError as e:
                    st.error(str(e))

    ids = [r["id"] for r in rows]
    if not ids:
        return

    selected = st.selectbox("Equipment", ids, format_func=lambda i: next(
        f"#{r['id']} {r['name']}" for r in rows if r["id"] == i))

    col_edit, col_history = st.columns(2)
    with col_edit:
        current = next(r for r in rows if r["id"] == selected)
        with st.form("edit_equipment"):
            assigned_user = st.text_input("Assigned user", value=current.get("assigned_user") or "")
            status = st.text_input("Status", value=current.get("status") or "")
            notes = st.text_area("Notes", value=current.get("notes") or "")
            if st.form_submit_button("Update"):
                update_equipment(selected, {"assigned_user": assigned_user or None,
                                            "status": status or None,
                                            "notes": notes or None}, _username())
                st.rerun()
        if st.button("Delete", type="secondary"):
            delete_equipment(selected, _username())
            st.rerun()
    with col_history:
        st.subheader("History")
        st.dataframe(pd.DataFrame(get_equipment_history(selected)),
                     use_container_width=True, hide_index=True)

    with st.expander("Periodic update (JSON list keyed by serial)"):
        raw = st.text_area("Items", value="[]", height=150)
        if st.button("Apply periodic update"):
            try:
                counts = periodic_update(json.loads(raw), _username())
                st.success(f"{counts['updated']} updated, {counts['inserted']} inserted")
            except (ValueError, json.JSONDecodeError) as e:
                st.error(str(e))


def page_licenses():
    st.header("Licenses")
    st.dataframe(pd.DataFrame(list_licenses()), use_container_width=True, hide_index=True)

    if not _is_manager():
        return

    with st.expander("Add license"):
        with st.form("add_license"):
            product = st.text_input("Product *")
            serial_key = st.text_input("Serial key *")
            assigned_user = st.text_input("Assigned user *")
            expiration = st.text_input("Expiration date")
            if st.form_submit_button("Save"):
                try:
                    create_license({"product": product, "serial_key": serial_key,
                                    "assigned_user": assigned_user,
                                    "expiration_date": expiration or None}, _username())
                    st.rerun()
                except ValueError as e:
                    st.error(str(e))


def page_audit_log():
    st.header("Audit log")
    st.dataframe(pd.DataFrame(list_audit_log()), use_container_width=True, hide_index=True)


def page_settings():
    st.header("Settings")
    config = get_all_config()
    with st.form("settings"):
        company = st.text_input("Company name", value=config.get("companyName") or "")
        require_2fa = st.checkbox("Require 2FA for all users", value=config.get("require2fa") == "true")
        if st.form_submit_button("Save"):
            set_config("companyName", company, _username())
            set_config("require2fa", "true" if require_2fa else "false", _username())
            st.success("Settings saved")


def page_diagnostics():
    st.header("Diagnostics")
    st.caption("**Database:**")
    st.code(get_database_url(), language=None)
    st.caption("🐘 Postgres" if is_postgres() else "📁 SQLite")

    st.subheader("Startup")
    st.json(startup_report)

    st.subheader("Applied migrations")
    st.write([r[0] for r in fetchall("SELECT id FROM migrations ORDER BY id")])

    st.subheader("Schema report")
    issues = validate_schema()
    if issues:
        st.error(issues)
    else:
        st.success("All expected tables and columns are present.")


# ============ MAIN ============
if st.session_state.user is None:
    show_login()
    st.stop()

user = st.session_state.user
with st.sidebar:
    st.write(f"Signed in as **{user['username']}** ({user['role']})")
    if user.get("requires_2fa_setup"):
        st.info("Two-factor authentication is required for your account.")
    pages = {"Equipment": page_equipment, "Licenses": page_licenses, "Audit log": page_audit_log}
    if user.get("role") == "Admin":
        pages["Settings"] = page_settings
        pages["Diagnostics"] = page_diagnostics
    choice = st.radio("Page", list(pages.keys()))
    if st.button("Sign out"):
        st.session_state.user = None
        st.rerun()

pages[choice]()
