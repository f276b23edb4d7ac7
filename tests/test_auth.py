from datetime import timedelta

import pytest
from pydantic import TypeAdapter

from auth import AdminSession, Anonymous, AuthSession, UserSession, hash_password, require_admin, require_user
from database import utcnow
from errors import NotAuthenticated, NotAuthorized


def test_sign_up_and_sign_in(auth, feed):
    events = []
    result = auth.sign_up("Asha@DayKart.in", "secret123", full_name="Asha")
    user_id = result.data["user"]["id"]
    feed.subscribe("auth", user_id, events.append)

    assert result.success
    assert result.data["user"]["email"] == "asha@daykart.in"
    assert result.data["referral_code"].startswith("DK")

    login = auth.sign_in("asha@daykart.in", "secret123")
    assert login.success
    assert login.data["user"]["id"] == user_id
    assert [e.event for e in events] == ["sign_in"]


def test_duplicate_email_is_rejected(db, auth):
    auth.sign_up("asha@daykart.in", "secret123")
    result = auth.sign_up("ASHA@daykart.in", "another1")

    assert result.error == "Email already registered"
    assert db["user"].count_documents({}) == 1


def test_short_password_and_bad_credentials(auth):
    assert auth.sign_up("asha@daykart.in", "123").code == "validation_error"
    auth.sign_up("asha@daykart.in", "secret123")
    assert auth.sign_in("asha@daykart.in", "wrong-pass").code == "not_authenticated"
    assert auth.sign_in("nobody@daykart.in", "secret123").error == "Invalid credentials"


def test_hash_password_is_salted():
    first, salt = hash_password("secret123")
    again, _ = hash_password("secret123", salt)
    other, _ = hash_password("secret123")
    assert first == again
    assert first != other


def test_resolve_tokens(db, auth, make_user):
    user_id = make_user()
    token = auth.sign_in("asha@daykart.in", "secret123").data["token"]

    session = auth.resolve(token)
    assert isinstance(session, UserSession)
    assert session.user_id == user_id

    assert isinstance(auth.resolve(None), Anonymous)
    assert isinstance(auth.resolve("made-up"), Anonymous)

    db["session"].update_one({"token": token}, {"$set": {"expires_at": utcnow() - timedelta(minutes=1)}})
    assert isinstance(auth.resolve(token), Anonymous)


def test_sign_out_revokes_token(auth, make_user):
    make_user()
    token = auth.sign_in("asha@daykart.in", "secret123").data["token"]

    assert auth.sign_out(token).data["signed_out"] is True
    assert isinstance(auth.resolve(token), Anonymous)
    assert auth.sign_out(token).data["signed_out"] is False


def test_admin_login_uses_configured_credentials(auth, settings):
    assert auth.admin_login(settings.admin_email, "nope").code == "not_authenticated"

    token = auth.admin_login(settings.admin_email, settings.admin_password).data["token"]
    session = auth.resolve(token)

    assert isinstance(session, AdminSession)
    assert require_admin(session) is session


def test_session_gates(auth, make_user):
    make_user()
    user_session = auth.resolve(auth.sign_in("asha@daykart.in", "secret123").data["token"])

    with pytest.raises(NotAuthenticated):
        require_user(Anonymous())
    with pytest.raises(NotAuthenticated):
        require_admin(Anonymous())
    with pytest.raises(NotAuthorized):
        require_admin(user_session)
    assert require_user(user_session) is user_session


def test_auth_session_union_discriminates_on_kind():
    adapter = TypeAdapter(AuthSession)
    assert isinstance(adapter.validate_python({"kind": "anonymous"}), Anonymous)
    assert isinstance(adapter.validate_python({"kind": "admin", "token": "t", "email": "a@daykart.com"}), AdminSession)


def test_update_profile(auth, make_user):
    user_id = make_user()

    result = auth.update_profile(user_id, phone="9876543210", address="Hostel B, Room 12")

    assert result.success
    assert result.data["profile"]["phone"] == "9876543210"
    assert auth.get_profile(user_id)["address"] == "Hostel B, Room 12"
