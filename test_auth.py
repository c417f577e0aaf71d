from datetime import datetime, timedelta, UTC

import pytest
from jose import jwt

import config
from auth import LoginRateLimiter, create_access_token, decode_access_token
from errors import InvalidTokenError
from main import db


def login(client, identifier, password):
    return client.post("/auth/login", json={"identifier": identifier, "password": password})


def test_register_user(client):
    response = client.post("/auth/register", json={
        "username": "new_user",
        "email": "New.User@Corvo.pe",
        "password": "password_1"
    })
    assert response.status_code == 201
    data = response.json()["data"]
    assert data["user"]["email"] == "new.user@corvo.pe"
    assert data["user"]["role"] == "user"
    assert decode_access_token(data["token"]).username == "new_user"


@pytest.mark.parametrize("payload", [
    {"username": "ab", "email": "a@corvo.pe", "password": "password_1"},
    {"username": "bad name", "email": "a@corvo.pe", "password": "password_1"},
    {"username": "someone", "email": "a@corvo.pe", "password": "password1"},
    {"username": "someone", "email": "a@corvo.pe", "password": "a_1"},
])
def test_register_validation(client, payload):
    assert client.post("/auth/register", json=payload).status_code == 400


def test_register_duplicate_is_case_insensitive(client, user_headers):
    response = client.post("/auth/register", json={
        "username": "ANA_TORRES",
        "email": "other@corvo.pe",
        "password": "secret_1"
    })
    assert response.status_code == 409
    response = client.post("/auth/register", json={
        "username": "someone_else",
        "email": "ANA@corvo.pe",
        "password": "secret_1"
    })
    assert response.status_code == 409


def test_login_by_username_or_email(client, user_headers):
    assert login(client, "ana_torres", "secret_1").status_code == 200
    response = login(client, "ANA@CORVO.PE", "secret_1")
    assert response.status_code == 200
    assert response.json()["data"]["user"]["username"] == "ana_torres"


def test_login_wrong_password(client, user_headers):
    response = login(client, "ana_torres", "wrong_1")
    assert response.status_code == 401
    assert response.json()["message"] == "Credenciales incorrectas"
    assert login(client, "nobody", "secret_1").status_code == 401


def test_login_rate_limited(client):
    for _ in range(5):
        assert login(client, "admin", "wrong_1").status_code == 401
    response = login(client, "admin", "admin_123")
    assert response.status_code == 429
    assert int(response.headers["Retry-After"]) > 0


def test_rate_limiter_keys_are_independent():
    limiter = LoginRateLimiter(max_attempts=2, window_seconds=60)
    assert limiter.hit("1.1.1.1")[0]
    assert limiter.hit("1.1.1.1")[0]
    assert not limiter.hit("1.1.1.1")[0]
    assert limiter.hit("2.2.2.2")[0]
    limiter.reset("1.1.1.1")
    assert limiter.hit("1.1.1.1")[0]


def test_rate_limiter_window_expires():
    limiter = LoginRateLimiter(max_attempts=1, window_seconds=0)
    assert limiter.hit("1.1.1.1")[0]
    assert limiter.hit("1.1.1.1")[0]


def test_me_returns_claims(client, user_headers):
    response = client.get("/auth/me", headers=user_headers)
    assert response.status_code == 200
    user = response.json()["data"]["user"]
    assert user["username"] == "ana_torres"
    assert user["role"] == "user"


def test_me_requires_token(client):
    response = client.get("/auth/me")
    assert response.status_code == 401
    response = client.get("/auth/me", headers={"Authorization": "Bearer not-a-token"})
    assert response.status_code == 403


def test_token_valid_for_a_day():
    token = create_access_token(db.get_user(1))
    claims = decode_access_token(token)
    remaining = claims.expires_at - datetime.now(UTC)
    assert timedelta(hours=23) < remaining <= timedelta(hours=24)
    assert claims.is_admin


def test_expired_token_is_invalid():
    past = datetime.now(UTC) - timedelta(hours=25)
    token = jwt.encode({
        "sub": "1", "id": 1, "username": "admin", "email": "admin@corvoevent.com", "role": "admin",
        "iat": past, "exp": past + timedelta(hours=24),
    }, config.SECRET_KEY, algorithm=config.ALGORITHM)
    with pytest.raises(InvalidTokenError):
        decode_access_token(token)


def test_token_signed_with_other_key_is_invalid():
    token = jwt.encode({"id": 1}, "another-secret", algorithm="HS256")
    with pytest.raises(InvalidTokenError):
        decode_access_token(token)


def test_logout_is_stateless(client, user_headers):
    assert client.post("/auth/logout", headers=user_headers).status_code == 200
    assert client.get("/auth/me", headers=user_headers).status_code == 200


def test_profile_roundtrip(client, user_headers):
    response = client.put("/users/profile", json={"profile": {"firstName": "Ana", "phone": "912345678"}},
                          headers=user_headers)
    assert response.status_code == 200
    response = client.put("/users/profile", json={"profile": {"lastName": "Torres"}}, headers=user_headers)
    profile = response.json()["data"]["profile"]
    assert profile == {"firstName": "Ana", "lastName": "Torres", "phone": "912345678", "avatar": None}
    assert client.get("/users/profile", headers=user_headers).json()["data"]["profile"]["lastName"] == "Torres"


def test_profile_email_taken(client, user_headers):
    response = client.put("/users/profile", json={"email": "ADMIN@corvoevent.com"}, headers=user_headers)
    assert response.status_code == 409


def test_change_password(client, user_headers):
    response = client.put("/users/password", json={"currentPassword": "wrong_1", "newPassword": "newpass_2"},
                          headers=user_headers)
    assert response.status_code == 401
    response = client.put("/users/password", json={"currentPassword": "secret_1", "newPassword": "newpass_2"},
                          headers=user_headers)
    assert response.status_code == 200
    assert login(client, "ana_torres", "newpass_2").status_code == 200


def test_users_read_permissions(client, user_headers, admin_headers):
    me = client.get("/auth/me", headers=user_headers).json()["data"]["user"]
    assert client.get(f"/users/{me['id']}", headers=user_headers).status_code == 200
    assert client.get("/users/1", headers=user_headers).status_code == 403
    assert client.get("/users", headers=user_headers).status_code == 403
    assert client.get(f"/users/{me['id']}", headers=admin_headers).status_code == 200
    assert client.get("/users/999", headers=admin_headers).status_code == 404


def test_list_users_paginates_and_filters(client, admin_headers):
    for i in range(3):
        client.post("/auth/register", json={
            "username": f"member_{i}",
            "email": f"member{i}@corvo.pe",
            "password": "secret_1"
        })
    response = client.get("/users", params={"page": 2, "limit": 2}, headers=admin_headers)
    body = response.json()
    assert body["pagination"] == {"current": 2, "pages": 2, "total": 4, "limit": 2}
    assert [u["username"] for u in body["data"]] == ["member_1", "member_2"]
    assert "password_hash" not in body["data"][0]

    response = client.get("/users", params={"role": "admin"}, headers=admin_headers)
    assert [u["id"] for u in response.json()["data"]] == [1]
    response = client.get("/users", params={"search": "MEMBER_2"}, headers=admin_headers)
    assert response.json()["pagination"]["total"] == 1


def test_primary_admin_is_protected(client, admin_headers):
    assert client.delete("/users/1", headers=admin_headers).status_code == 403
    assert client.post("/users/1/toggle-status", headers=admin_headers).status_code == 403
    assert client.put("/users/1", json={"isActive": False}, headers=admin_headers).status_code == 403


def test_toggle_status_blocks_login(client, admin_headers, user_headers):
    me = client.get("/auth/me", headers=user_headers).json()["data"]["user"]
    response = client.post(f"/users/{me['id']}/toggle-status", headers=admin_headers)
    assert response.json()["data"]["isActive"] is False
    assert login(client, "ana_torres", "secret_1").status_code == 403
    stats = client.get("/users/stats/overview", headers=admin_headers).json()["data"]
    assert stats["total"] == 2
    assert stats["inactive"] == 1
    assert stats["admins"] == 1


def test_admin_updates_and_deletes_user(client, admin_headers, user_headers):
    me = client.get("/auth/me", headers=user_headers).json()["data"]["user"]
    response = client.put(f"/users/{me['id']}", json={"role": "admin", "username": "ana_admin"},
                          headers=admin_headers)
    assert response.status_code == 200
    assert response.json()["data"]["role"] == "admin"
    response = client.delete(f"/users/{me['id']}", headers=admin_headers)
    assert response.status_code == 200
    assert response.json()["data"]["username"] == "ana_admin"
    assert client.get(f"/users/{me['id']}", headers=admin_headers).status_code == 404


def test_rate_limiter_forgets_idle_clients():
    limiter = LoginRateLimiter(max_attempts=5, window_seconds=0)
    for i in range(50):
        limiter.hit(f"10.0.0.{i}")
    assert limiter.tracked_keys() == 1
    limiter.reset()
    assert limiter.tracked_keys() == 0


def test_profile_phone_must_be_nine_ascii_digits(client, user_headers):
    for phone in (" 912345678 ", "٩١٢٣٤٥٦٧٨", "91234567"):
        response = client.put("/users/profile", json={"profile": {"phone": phone}}, headers=user_headers)
        assert response.status_code == 400
    response = client.put("/users/profile", json={"profile": {"phone": "912345678"}}, headers=user_headers)
    assert response.json()["data"]["profile"]["phone"] == "912345678"
