import jwt
import pytest
from fastapi import HTTPException

from marketplace.core.auth import CurrentUser, get_current_user, require_roles
from marketplace.core.config import get_settings


def _make_token(secret: str, aud: str, *, app_role: str | None = "ENGINEER", user_role: str | None = None) -> str:
    app_meta = {}
    if app_role is not None:
        app_meta["role"] = app_role
    user_meta = {}
    if user_role is not None:
        user_meta["role"] = user_role

    payload = {
        "sub": "eng-42",
        "email": "eng@test.local",
        "app_metadata": app_meta,
        "user_metadata": user_meta,
        "aud": aud,
    }
    return jwt.encode(payload, secret, algorithm="HS256")


@pytest.fixture
def jwt_env(monkeypatch):
    monkeypatch.setenv("JWT_SECRET", "test-secret")
    monkeypatch.setenv("JWT_AUDIENCE", "authenticated")
    get_settings.cache_clear()


def test_accepts_matching_audience(jwt_env):
    token = _make_token("test-secret", "authenticated")
    user = get_current_user(authorization=f"Bearer {token}")
    assert user == CurrentUser(id="eng-42", role="ENGINEER", email="eng@test.local")


def test_role_is_normalised(jwt_env):
    token = _make_token("test-secret", "authenticated", app_role=" customer ")
    assert get_current_user(authorization=f"Bearer {token}").role == "CUSTOMER"


def test_rejects_wrong_audience(jwt_env):
    token = _make_token("test-secret", "other")
    with pytest.raises(HTTPException) as exc:
        get_current_user(authorization=f"Bearer {token}")
    assert exc.value.status_code == 401


def test_rejects_wrong_secret(jwt_env):
    token = _make_token("another-secret-value", "authenticated")
    with pytest.raises(HTTPException) as exc:
        get_current_user(authorization=f"Bearer {token}")
    assert exc.value.status_code == 401


def test_missing_bearer_is_unauthorized(jwt_env):
    with pytest.raises(HTTPException) as exc:
        get_current_user(authorization=None)
    assert exc.value.status_code == 401


def test_ignores_user_metadata_role(jwt_env):
    token = _make_token("test-secret", "authenticated", app_role=None, user_role="ADMIN")
    with pytest.raises(HTTPException) as exc:
        get_current_user(authorization=f"Bearer {token}")
    assert exc.value.status_code == 403


def test_unknown_role_is_forbidden(jwt_env):
    token = _make_token("test-secret", "authenticated", app_role="SUPERUSER")
    with pytest.raises(HTTPException) as exc:
        get_current_user(authorization=f"Bearer {token}")
    assert exc.value.status_code == 403


def test_require_roles():
    check = require_roles("ADMIN")
    admin = CurrentUser(id="a", role="ADMIN")
    assert check(user=admin) is admin
    with pytest.raises(HTTPException) as exc:
        check(user=CurrentUser(id="c", role="CUSTOMER"))
    assert exc.value.status_code == 403
