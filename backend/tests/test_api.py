"""API tests with TestClient: health, me, items and storage administration."""

import time

from fastapi.testclient import TestClient


def test_health(client: TestClient) -> None:
    """GET /health returns 200 and status ok."""
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


def test_security_headers(client: TestClient) -> None:
    r = client.get("/health")
    assert r.headers["X-Content-Type-Options"] == "nosniff"
    assert r.headers["X-Frame-Options"] == "DENY"


def test_me_requires_auth(client: TestClient) -> None:
    """GET /users/me without Bearer returns 401."""
    assert client.get("/users/me").status_code == 401


def test_me_rejects_garbage_token(client: TestClient) -> None:
    r = client.get("/users/me", headers={"Authorization": "Bearer nonsense"})
    assert r.status_code == 401


def test_me_with_token(client: TestClient, make_user) -> None:
    user_id, headers = make_user()
    r = client.get("/users/me", headers=headers)
    assert r.status_code == 200
    data = r.json()
    assert data["id"] == user_id
    assert data["is_admin"] is False


def test_create_and_get_item(client: TestClient, make_user) -> None:
    user_id, headers = make_user()
    r = client.post(
        f"/users/{user_id}/items",
        json={"linkMode": "imported_file", "title": "Paper", "contentType": "application/pdf"},
        headers=headers,
    )
    assert r.status_code == 201
    created = r.json()
    assert len(created["key"]) == 8
    assert created["linkMode"] == "imported_file"
    assert created["md5"] is None
    assert r.headers["Last-Modified-Version"] == str(created["version"])

    r = client.get(f"/users/{user_id}/items/{created['key']}", headers=headers)
    assert r.status_code == 200
    assert r.json()["contentType"] == "application/pdf"


def test_create_item_invalid_link_mode(client: TestClient, make_user) -> None:
    user_id, headers = make_user()
    r = client.post(f"/users/{user_id}/items", json={"linkMode": "embedded"}, headers=headers)
    assert r.status_code == 400


def test_update_item_bumps_version(client: TestClient, make_user) -> None:
    user_id, headers = make_user()
    created = client.post(f"/users/{user_id}/items", json={"linkMode": "imported_file"}, headers=headers).json()
    r = client.patch(f"/users/{user_id}/items/{created['key']}", json={"title": "New title"}, headers=headers)
    assert r.status_code == 200
    assert r.json()["title"] == "New title"
    assert r.json()["version"] > created["version"]


def test_update_item_rejects_bad_md5(client: TestClient, make_user) -> None:
    user_id, headers = make_user()
    created = client.post(f"/users/{user_id}/items", json={"linkMode": "imported_file"}, headers=headers).json()
    r = client.patch(f"/users/{user_id}/items/{created['key']}", json={"md5": "xyz"}, headers=headers)
    assert r.status_code == 400


def test_missing_item_is_404(client: TestClient, make_user) -> None:
    user_id, headers = make_user()
    assert client.get(f"/users/{user_id}/items/ZZZZZZZZ", headers=headers).status_code == 404


def test_unknown_library_is_404(client: TestClient, make_user) -> None:
    _, headers = make_user()
    assert client.get("/groups/999999999999/laststoragesync", headers=headers).status_code == 404


# Storage administration


def test_storageadmin_hidden_from_non_admin(client: TestClient, make_user) -> None:
    user_id, headers = make_user()
    assert client.get(f"/users/{user_id}/storageadmin", headers=headers).status_code == 404


def test_storageadmin_reports_default_quota(client: TestClient, make_user) -> None:
    _, admin_headers = make_user(is_admin=True)
    user_id, _ = make_user()
    r = client.get(f"/users/{user_id}/storageadmin", headers=admin_headers)
    assert r.status_code == 200
    data = r.json()
    assert data["quota"] == 300
    assert data["expiration"] is None
    assert data["usage"] == {"total": 0.0, "library": 0.0, "groups": []}


def test_storageadmin_set_unlimited(client: TestClient, make_user) -> None:
    _, admin_headers = make_user(is_admin=True)
    user_id, _ = make_user()
    expiration = int(time.time()) + 86400
    r = client.post(
        f"/users/{user_id}/storageadmin",
        data={"quota": "unlimited", "expiration": str(expiration)},
        headers=admin_headers,
    )
    assert r.status_code == 200
    assert r.json()["quota"] == "unlimited"
    assert r.json()["expiration"] == expiration


def test_storageadmin_set_quota_mb(client: TestClient, make_user) -> None:
    _, admin_headers = make_user(is_admin=True)
    user_id, _ = make_user()
    r = client.post(
        f"/users/{user_id}/storageadmin",
        data={"quota": "2000", "expiration": "0"},
        headers=admin_headers,
    )
    assert r.status_code == 200
    assert r.json()["quota"] == 2000
    assert r.json()["expiration"] is None


def test_storageadmin_validation(client: TestClient, make_user) -> None:
    _, admin_headers = make_user(is_admin=True)
    user_id, _ = make_user()
    url = f"/users/{user_id}/storageadmin"
    assert client.post(url, data={"expiration": "0"}, headers=admin_headers).status_code == 400
    assert client.post(url, data={"quota": "lots", "expiration": "0"}, headers=admin_headers).status_code == 400
    assert client.post(url, data={"quota": "100"}, headers=admin_headers).status_code == 400
    assert client.post(url, data={"quota": "100", "expiration": "1000"}, headers=admin_headers).status_code == 400


def test_storageadmin_quota_below_usage_is_409(client: TestClient, make_user) -> None:
    _, admin_headers = make_user(is_admin=True)
    user_id, headers = make_user()
    key = client.post(f"/users/{user_id}/items", json={"linkMode": "imported_file"}, headers=headers).json()["key"]
    # The reservation made by the authorization counts as usage
    r = client.post(
        f"/users/{user_id}/items/{key}/file",
        data={"md5": "0" * 32, "filename": "big.bin", "filesize": str(3 * 1024 * 1024), "mtime": "1700000000000"},
        headers={**headers, "If-None-Match": "*"},
    )
    assert r.status_code == 200
    r = client.post(
        f"/users/{user_id}/storageadmin",
        data={"quota": "1", "expiration": "0"},
        headers=admin_headers,
    )
    assert r.status_code == 409


def _request(headers: dict):
    from starlette.requests import Request

    raw = [(k.lower().encode(), v.encode()) for k, v in headers.items()]
    return Request({"type": "http", "headers": raw, "client": ("10.0.0.7", 5123)})


def test_rate_limit_key_per_user_with_token() -> None:
    from app.auth.jwt import create_access_token
    from app.limiter import rate_limit_key

    request = _request({"Authorization": f"Bearer {create_access_token('42')}"})
    assert rate_limit_key(request) == "user:42"


def test_rate_limit_key_falls_back_to_address() -> None:
    from app.limiter import rate_limit_key

    assert rate_limit_key(_request({})) == "10.0.0.7"
    assert rate_limit_key(_request({"Authorization": "Bearer nonsense"})) == "10.0.0.7"


def test_api_responses_are_not_cached(client: TestClient) -> None:
    r = client.get("/health")
    assert r.headers["Cache-Control"] == "no-store"
    assert r.headers["Referrer-Policy"] == "no-referrer"
