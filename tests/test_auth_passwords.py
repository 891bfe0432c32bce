import hmac
import os

import pytest
from fastapi import HTTPException
from pydantic import ValidationError

import app
import db


def test_register_stores_salted_hash(temp_db):
    password = "S3cur3!Pass"
    body = app.RegisterBody(user_id="new_user", email="new@example.com", password=password)
    app.auth_register(body)

    row = db.get_user_auth("new_user")
    assert row is not None
    assert row["pw_salt"]
    assert len(row["pw_salt"]) == 32
    # Hash should not match the deterministic legacy hash format.
    legacy_hash = hmac.new(
        os.getenv("AUTH_SALT", "local_salt").encode("utf-8"),
        password.encode("utf-8"),
        digestmod="sha256",
    ).hexdigest()
    assert row["pw_hash"] != legacy_hash


def test_login_verifies_pbkdf2_password(temp_db):
    password = "Another#Pass1"
    pw_hash, pw_salt = app._hash_password(password)
    db.create_user("pbkdf2_user", "pb@example.com", pw_hash, pw_salt)

    result = app.auth_login(app.LoginBody(user_id="pbkdf2_user", password=password))
    assert result["user_id"] == "pbkdf2_user"
    assert result["token"]


def test_login_upgrades_legacy_password(temp_db, monkeypatch):
    user_id = "legacy_user"
    password = "LegacyPass!"
    monkeypatch.setenv("AUTH_SALT", "legacy_salt")
    legacy_hash = hmac.new(
        b"legacy_salt",
        password.encode("utf-8"),
        digestmod="sha256",
    ).hexdigest()
    db.create_user(user_id, "legacy@example.com", legacy_hash, None)

    result = app.auth_login(app.LoginBody(user_id=user_id, password=password))
    assert result["user_id"] == user_id

    upgraded = db.get_user_auth(user_id)
    assert upgraded["pw_salt"]
    assert upgraded["pw_hash"] != legacy_hash


def test_login_reports_role_and_organization(temp_db):
    org = db.create_organization("Riverside Tutors")
    pw_hash, pw_salt = app._hash_password("Tutor#Pass1")
    db.create_user("tutor_priya", "priya@example.com", pw_hash, pw_salt, role="tutor", organization_id=org["id"])

    result = app.auth_login(app.LoginBody(user_id="tutor_priya", password="Tutor#Pass1"))
    assert result["role"] == "tutor"
    assert result["organization_id"] == org["id"]
    assert app.TOKENS[result["token"]] == "tutor_priya"


def test_register_rejects_duplicate_email(temp_db):
    app.auth_register(app.RegisterBody(user_id="first", email="Same@Example.com", password="pw"))

    with pytest.raises(HTTPException) as excinfo:
        app.auth_register(app.RegisterBody(user_id="second", email="same@example.com", password="pw"))
    assert excinfo.value.detail == "email exists"


def test_self_registration_never_joins_an_organization(temp_db):
    org = db.create_organization("Riverside Tutors")
    with pytest.raises(ValidationError):
        app.RegisterBody(user_id="intruder", password="pw", role="tutor")

    body = app.RegisterBody.model_validate({"user_id": "intruder", "password": "pw", "organization_id": org["id"]})
    app.auth_register(body)
    row = db.get_user_auth("intruder")
    assert row["organization_id"] is None
    assert row["role"] == "student"


def test_wrong_password_is_rejected(temp_db):
    app.auth_register(app.RegisterBody(user_id="pupil", password="right"))
    with pytest.raises(HTTPException) as excinfo:
        app.auth_login(app.LoginBody(user_id="pupil", password="wrong"))
    assert excinfo.value.status_code == 401
