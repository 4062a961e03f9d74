"""Tests for the HTTP API: issuance, diagnostics, edge validation and health."""
import pytest

from singleuse.models import GrantState
from singleuse.services import grant_store
from singleuse.store import StoreUnavailable


@pytest.fixture
def issuer_key(app):
    app.config["ISSUER_API_KEY"] = "issuer-key-123"
    return "issuer-key-123"


@pytest.fixture
def auth_headers(issuer_key):
    return {"Authorization": f"Bearer {issuer_key}"}


def _issue(client, path="reports/q3.pdf", ttl=300, headers=None):
    return client.post(
        "/api/grants", json={"resourcePath": path, "ttl": ttl}, headers=headers or {}
    )


class TestHealth:
    def test_health_check(self, client):
        response = client.get("/api/health")

        assert response.status_code == 200
        assert response.get_json()["status"] == "healthy"

    def test_request_id_is_echoed(self, client):
        response = client.get("/api/health", headers={"X-Request-ID": "req-42"})
        assert response.headers["X-Request-ID"] == "req-42"

    def test_unknown_route_returns_json_404(self, client):
        response = client.get("/api/nope")

        assert response.status_code == 404
        assert response.get_json()["error"] == "NotFound"


class TestIssueEndpoint:
    def test_post_issues_grant(self, app, client):
        response = _issue(client)

        assert response.status_code == 201
        data = response.get_json()
        assert set(data) == {"signedUrl", "id", "resourcePath", "expiresAt"}
        assert data["resourcePath"] == "reports/q3.pdf"
        assert data["expiresAt"] == 1_700_000_000 + 300
        assert data["signedUrl"].startswith("https://cdn.example.com/reports/q3.pdf?id=")
        assert grant_store(app).get(data["id"]).state is GrantState.ACTIVE

    def test_post_uses_default_ttl(self, app, client):
        app.config["GRANT_DEFAULT_TTL"] = 120

        response = client.post("/api/grants", json={"resourcePath": "a.txt"})

        assert response.status_code == 201
        assert response.get_json()["expiresAt"] == 1_700_000_000 + 120

    @pytest.mark.parametrize("ttl", [0, -5, 86401, "300", 2.5])
    def test_post_rejects_invalid_ttl(self, client, ttl):
        response = _issue(client, ttl=ttl)

        assert response.status_code == 400
        assert response.get_json()["error"] == "InvalidTtlError"

    @pytest.mark.parametrize("path", ["", "../secret", None])
    def test_post_rejects_invalid_path(self, client, path):
        response = _issue(client, path=path)

        assert response.status_code == 400
        assert response.get_json()["error"] == "InvalidResourcePathError"

    def test_post_rejects_non_object_body(self, client):
        response = client.post("/api/grants", json=["a.txt", 300])

        assert response.status_code == 400
        assert response.get_json()["error"] == "BadRequest"

    def test_get_form_issues_grant(self, client):
        response = client.get("/api/grants?file=reports/q3.pdf&timeout=60")

        assert response.status_code == 201
        assert response.get_json()["expiresAt"] == 1_700_000_000 + 60

    def test_get_form_rejects_non_integer_timeout(self, client):
        response = client.get("/api/grants?file=a.txt&timeout=soon")

        assert response.status_code == 400
        assert response.get_json()["error"] == "InvalidTtlError"

    def test_store_outage_returns_503(self, client, monkeypatch):
        def _down(self, grant):
            raise StoreUnavailable("down")

        monkeypatch.setattr("singleuse.store.GrantStore.create", _down)

        response = _issue(client)

        assert response.status_code == 503
        assert response.get_json()["error"] == "IssuanceFailedError"


class TestIssuerAuth:
    def test_missing_key_is_rejected(self, client, issuer_key):
        response = _issue(client)
        assert response.status_code == 401

    def test_wrong_key_is_rejected(self, client, issuer_key):
        response = _issue(client, headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401

    def test_correct_key_is_accepted(self, client, auth_headers):
        response = _issue(client, headers=auth_headers)
        assert response.status_code == 201


class TestGrantDiagnostics:
    def test_lookup_disabled_without_issuer_key(self, client):
        grant_id = _issue(client).get_json()["id"]

        assert client.get(f"/api/grants/{grant_id}").status_code == 404

    def test_lookup_returns_record_without_consuming(self, client, auth_headers):
        grant_id = _issue(client, headers=auth_headers).get_json()["id"]

        response = client.get(f"/api/grants/{grant_id}", headers=auth_headers)

        assert response.status_code == 200
        assert response.get_json()["state"] == "ACTIVE"
        assert response.get_json()["id"] == grant_id

    def test_lookup_unknown_grant(self, client, auth_headers):
        response = client.get("/api/grants/missing", headers=auth_headers)
        assert response.status_code == 404


class TestEdgeValidate:
    def test_first_use_allowed_then_denied(self, client):
        issued = _issue(client).get_json()

        first = client.post("/api/edge/validate", json={"url": issued["signedUrl"]})
        second = client.post("/api/edge/validate", json={"url": issued["signedUrl"]})

        assert first.status_code == 200
        assert first.get_json() == {"decision": "allow", "id": issued["id"]}
        assert second.status_code == 403
        assert second.get_json() == {"decision": "deny", "reason": "denied"}
        assert second.headers["Cache-Control"] == "no-store"

    def test_expired_is_indistinguishable_from_reused(self, client, clock):
        issued = _issue(client, ttl=10).get_json()
        clock.advance(11)

        response = client.post("/api/edge/validate", json={"url": issued["signedUrl"]})

        assert response.status_code == 403
        assert response.get_json()["reason"] == "denied"

    def test_exposed_reasons(self, app, client, clock):
        app.config["EXPOSE_DENY_REASONS"] = True
        issued = _issue(client, ttl=10).get_json()
        clock.advance(11)

        response = client.post("/api/edge/validate", json={"url": issued["signedUrl"]})

        assert response.get_json()["reason"] == "Expired"

    def test_store_outage_returns_503(self, client, monkeypatch):
        issued = _issue(client).get_json()

        def _down(self, grant_id):
            raise StoreUnavailable("down")

        monkeypatch.setattr("singleuse.store.GrantStore.try_consume", _down)

        response = client.post("/api/edge/validate", json={"url": issued["signedUrl"]})

        assert response.status_code == 503
        assert response.get_json()["reason"] == "unavailable"

    def test_missing_url_is_bad_request(self, client):
        response = client.post("/api/edge/validate", json={})
        assert response.status_code == 400


def test_unhandled_error_returns_generic_json(app, client):
    app.config["PROPAGATE_EXCEPTIONS"] = False

    def _boom():
        raise RuntimeError("database password is hunter2")

    app.add_url_rule("/api/boom", "boom", _boom)

    response = client.get("/api/boom")

    assert response.status_code == 500
    body = response.get_json()
    assert body["error"] == "InternalError"
    assert "hunter2" not in body["message"]
