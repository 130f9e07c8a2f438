"""
tests/test_api_routes.py -- Integration tests for the AdminGate HTTP surface.

These tests exercise the full stack: FastAPI routing -> request pipeline
(rate limit, authenticate, authorize, audit) -> stores -> response model
serialization -> error envelope. Unit tests of the stages alone would miss
middleware ordering, dependency injection and the exception handlers.

Coverage:
  - Login: tokens + cookies, uniform 401, 423 for a locked account, MFA admin login
  - Error envelope: {"error": {"code", "message", "requestId"}} and X-Request-ID echo
  - Sessions: list, terminate (own and other), terminate-all, IDOR 404
  - Users: status change revokes sessions, rank and self guards, overrides, unlock
  - Audit: permission gate, listing with cursor, export bounds and ordering
  - Rate limiting: 429 with Retry-After, bulk export ceiling
  - Security reporting: suspicious sources, rate-limit denials

Fixtures used (from conftest.py):
  - client: TestClient with seeded identities (<role>@example.com / PASSWORD)
  - services, seeded, clock
"""

from __future__ import annotations

import csv
import io

from conftest import PASSWORD, bearer, create_identity, login
from fastapi.testclient import TestClient

from audit.models import AuditAction
from auth.models import IdentityStatus, Permission, Role
from auth.ratelimit import AdaptiveRateLimiter
from auth.tokens import generate_mfa_secret, totp_code


def _token(client: TestClient, role: Role) -> str:
    return login(client, f"{role.value}@example.com")["access_token"]


def _error(resp) -> dict:
    body = resp.json()
    assert set(body) == {"error"}, body
    return body["error"]


# ---------------------------------------------------------------------------
# Login and tokens
# ---------------------------------------------------------------------------


class TestLogin:
    def test_login_returns_tokens_and_identity(self, client: TestClient, seeded) -> None:
        resp = client.post("/api/v1/auth/login", json={"email": "admin@example.com", "password": PASSWORD})
        assert resp.status_code == 200
        data = resp.json()
        assert data["token_type"] == "bearer"
        assert data["expires_in"] == 3600
        assert data["identity"]["id"] == seeded[Role.ADMIN].id
        assert "hashed_password" not in data["identity"]
        assert "mfa_secret" not in data["identity"]
        assert resp.headers["Cache-Control"] == "no-store"
        assert "access_token" in resp.cookies

    def test_bad_password_and_unknown_email_look_the_same(self, client: TestClient) -> None:
        wrong = client.post("/api/v1/auth/login", json={"email": "admin@example.com", "password": "nope"})
        unknown = client.post("/api/v1/auth/login", json={"email": "ghost@example.com", "password": "nope"})
        assert wrong.status_code == unknown.status_code == 401
        assert _error(wrong)["message"] == _error(unknown)["message"]
        assert _error(wrong)["code"] == "unauthenticated"
        assert wrong.headers["WWW-Authenticate"] == "Bearer"

    def test_locked_account_returns_423_with_correct_password(self, client: TestClient) -> None:
        for _ in range(5):
            resp = client.post("/api/v1/auth/login", json={"email": "support@example.com", "password": "bad"})
            assert resp.status_code == 401
        resp = client.post("/api/v1/auth/login", json={"email": "support@example.com", "password": PASSWORD})
        assert resp.status_code == 423
        assert _error(resp)["code"] == "account_locked"
        assert "access_token" not in resp.json()

    def test_suspended_identity_gets_uniform_401(self, client: TestClient, services, seeded) -> None:
        services.identities.update_identity(seeded[Role.MODERATOR].id, status=IdentityStatus.SUSPENDED)
        resp = client.post("/api/v1/auth/login", json={"email": "moderator@example.com", "password": PASSWORD})
        assert resp.status_code == 401
        assert _error(resp)["message"] == "Invalid email or password."

    def test_malformed_body_is_422(self, client: TestClient) -> None:
        resp = client.post("/api/v1/auth/login", json={"email": "no-at-sign", "password": "x"})
        assert resp.status_code == 422
        assert _error(resp)["code"] == "validation_error"

    def test_admin_login_with_mfa_is_audited(self, client: TestClient, services, clock) -> None:
        secret = generate_mfa_secret()
        create_identity(services, "ops@example.com", Role.SUPER_ADMIN, mfa_enabled=True, mfa_secret=secret)
        body = {"email": "ops@example.com", "password": PASSWORD, "device_id": "console"}
        assert client.post("/api/v1/auth/admin/login", json=body).status_code == 401
        data = login(client, "ops@example.com", path="/api/v1/auth/admin/login", device_id="console", mfa_code=totp_code(secret, clock.now))
        records, _ = services.audit_store.query(action=AuditAction.AUTH_ADMIN_LOGIN)
        assert len(records) == 1
        assert records[0].resource_id == data["session_id"]
        assert records[0].details == {"device_id": "console"}

    def test_refresh_issues_new_access_token(self, client: TestClient, clock) -> None:
        data = login(client, "admin@example.com")
        clock.advance(minutes=5)
        resp = client.post("/api/v1/auth/refresh", json={"refresh_token": data["refresh_token"]})
        assert resp.status_code == 200
        client.cookies.clear()
        new_token = resp.json()["access_token"]
        assert new_token != data["access_token"]
        assert client.get("/api/v1/auth/me", headers=bearer(new_token)).status_code == 200

    def test_refresh_rejects_an_access_token(self, client: TestClient) -> None:
        data = login(client, "admin@example.com")
        resp = client.post("/api/v1/auth/refresh", json={"refresh_token": data["access_token"]})
        assert resp.status_code == 401

    def test_me_reports_effective_permissions(self, client: TestClient) -> None:
        resp = client.get("/api/v1/auth/me", headers=bearer(_token(client, Role.MODERATOR)))
        assert resp.status_code == 200
        data = resp.json()
        assert data["identity"]["permissions"] == ["content_moderation"]
        assert data["session"]["is_current"] is True

    def test_me_shows_the_session_as_active_on_first_use(self, client: TestClient, clock) -> None:
        token = _token(client, Role.ADMIN)
        clock.advance(seconds=10)
        resp = client.get("/api/v1/auth/me", headers=bearer(token))
        assert resp.status_code == 200
        assert resp.json()["session"]["state"] == "active"

    def test_cookie_authenticates_browser_clients(self, client: TestClient) -> None:
        client.post("/api/v1/auth/login", json={"email": "admin@example.com", "password": PASSWORD})
        assert client.get("/api/v1/auth/me").status_code == 200
        client.cookies.clear()
        assert client.get("/api/v1/auth/me").status_code == 401

    def test_logout_revokes_the_token(self, client: TestClient, services) -> None:
        token = _token(client, Role.ADMIN)
        assert client.post("/api/v1/auth/logout", headers=bearer(token)).status_code == 200
        assert client.get("/api/v1/auth/me", headers=bearer(token)).status_code == 401
        records, _ = services.audit_store.query(action=AuditAction.AUTH_LOGOUT)
        assert len(records) == 1


# ---------------------------------------------------------------------------
# Error envelope
# ---------------------------------------------------------------------------


class TestEnvelope:
    def test_unauthenticated_envelope_carries_request_id(self, client: TestClient) -> None:
        resp = client.get("/api/v1/admin/sessions")
        assert resp.status_code == 401
        error = _error(resp)
        assert error["code"] == "unauthenticated"
        assert error["requestId"] == resp.headers["X-Request-ID"]

    def test_inbound_request_id_is_honoured(self, client: TestClient) -> None:
        resp = client.get("/api/v1/admin/sessions", headers={"X-Request-ID": "proxy-req-0001"})
        assert resp.headers["X-Request-ID"] == "proxy-req-0001"
        assert _error(resp)["requestId"] == "proxy-req-0001"

    def test_malformed_request_id_is_replaced(self, client: TestClient) -> None:
        resp = client.get("/api/v1/health", headers={"X-Request-ID": "bad id!"})
        assert resp.headers["X-Request-ID"] != "bad id!"

    def test_unknown_route_uses_the_envelope(self, client: TestClient) -> None:
        resp = client.get("/api/v1/no-such-route")
        assert resp.status_code == 404
        assert _error(resp)["code"] == "http_404"

    def test_forbidden_envelope_lists_missing_permissions(self, client: TestClient) -> None:
        resp = client.get("/api/v1/admin/users", headers=bearer(_token(client, Role.SUPPORT)))
        assert resp.status_code == 403
        error = _error(resp)
        assert error["code"] == "forbidden"
        assert error["detail"] == {"missing": ["user_management"]}


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


class TestSessions:
    def test_list_own_sessions(self, client: TestClient) -> None:
        token = _token(client, Role.SUPPORT)
        _token(client, Role.SUPPORT)
        resp = client.get("/api/v1/admin/sessions", headers=bearer(token))
        assert resp.status_code == 200
        sessions = resp.json()
        assert len(sessions) == 2
        assert sum(s["is_current"] for s in sessions) == 1

    def test_terminate_other_users_session_revokes_it(self, client: TestClient, services) -> None:
        support_token = _token(client, Role.SUPPORT)
        session_id = services.tokens.peek(support_token).session_id
        admin_token = _token(client, Role.ADMIN)
        resp = client.post(f"/api/v1/admin/sessions/{session_id}/terminate", headers=bearer(admin_token))
        assert resp.status_code == 200
        assert resp.json() == {"terminated": 1}
        assert client.get("/api/v1/auth/me", headers=bearer(support_token)).status_code == 401
        again = client.post(f"/api/v1/admin/sessions/{session_id}/terminate", headers=bearer(admin_token))
        assert again.json() == {"terminated": 0}

    def test_cannot_terminate_someone_elses_session_without_permission(self, client: TestClient, services) -> None:
        admin_token = _token(client, Role.ADMIN)
        session_id = services.tokens.peek(admin_token).session_id
        resp = client.post(f"/api/v1/admin/sessions/{session_id}/terminate", headers=bearer(_token(client, Role.SUPPORT)))
        assert resp.status_code == 404
        assert client.get("/api/v1/auth/me", headers=bearer(admin_token)).status_code == 200

    def test_listing_another_users_sessions_needs_user_management(self, client: TestClient, seeded) -> None:
        admin_id = seeded[Role.ADMIN].id
        resp = client.get(f"/api/v1/admin/sessions?user_id={admin_id}", headers=bearer(_token(client, Role.SUPPORT)))
        assert resp.status_code == 403

    def test_terminate_all_keeps_the_current_session(self, client: TestClient) -> None:
        old = _token(client, Role.MODERATOR)
        current = _token(client, Role.MODERATOR)
        resp = client.post("/api/v1/admin/sessions/terminate-all", headers=bearer(current))
        assert resp.json() == {"terminated": 1}
        assert client.get("/api/v1/auth/me", headers=bearer(old)).status_code == 401
        assert client.get("/api/v1/auth/me", headers=bearer(current)).status_code == 200

    def test_session_actions_are_audited(self, client: TestClient, services) -> None:
        token = _token(client, Role.ADMIN)
        client.get("/api/v1/admin/sessions", headers=bearer(token))
        records, _ = services.audit_store.query(action=AuditAction.SESSION_LIST)
        assert len(records) == 1
        assert records[0].request_id is not None
        assert records[0].status_code == 200


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class TestUsers:
    def test_list_users(self, client: TestClient) -> None:
        resp = client.get("/api/v1/admin/users", headers=bearer(_token(client, Role.ADMIN)))
        assert resp.status_code == 200
        assert sorted(u["role"] for u in resp.json()) == sorted(r.value for r in Role)

    def test_suspending_revokes_every_session(self, client: TestClient, services, seeded) -> None:
        support_token = _token(client, Role.SUPPORT)
        admin_token = _token(client, Role.ADMIN)
        target = seeded[Role.SUPPORT].id
        resp = client.patch(
            f"/api/v1/admin/users/{target}/status",
            json={"status": "suspended", "reason": "policy violation"},
            headers=bearer(admin_token),
        )
        assert resp.status_code == 200
        assert resp.json()["status"] == "suspended"
        assert client.get("/api/v1/auth/me", headers=bearer(support_token)).status_code == 401
        records, _ = services.audit_store.query(action=AuditAction.USER_STATUS_CHANGE)
        assert records[0].details["before"] == "active"
        assert records[0].details["after"] == "suspended"
        assert records[0].details["sessions_revoked"] == 1

    def test_cannot_change_own_status(self, client: TestClient, seeded) -> None:
        resp = client.patch(
            f"/api/v1/admin/users/{seeded[Role.ADMIN].id}/status",
            json={"status": "banned"},
            headers=bearer(_token(client, Role.ADMIN)),
        )
        assert resp.status_code == 400

    def test_admin_cannot_modify_a_super_admin(self, client: TestClient, seeded) -> None:
        resp = client.patch(
            f"/api/v1/admin/users/{seeded[Role.SUPER_ADMIN].id}/status",
            json={"status": "suspended"},
            headers=bearer(_token(client, Role.ADMIN)),
        )
        assert resp.status_code == 403

    def test_moderator_with_user_management_cannot_touch_an_admin(self, client: TestClient, services, seeded) -> None:
        services.identities.set_permission_overrides(seeded[Role.MODERATOR].id, frozenset({Permission.USER_MANAGEMENT}))
        headers = bearer(_token(client, Role.MODERATOR))
        admin_id = seeded[Role.ADMIN].id
        resp = client.patch(f"/api/v1/admin/users/{admin_id}/status", json={"status": "banned"}, headers=headers)
        assert resp.status_code == 403
        assert _error(resp)["detail"] == {"actor_role": "moderator", "target_role": "admin"}
        resp = client.put(f"/api/v1/admin/users/{admin_id}/permissions", json={"overrides": []}, headers=headers)
        assert resp.status_code == 403
        assert services.identities.get_by_id(admin_id).status is IdentityStatus.ACTIVE

    def test_moderator_with_user_management_can_manage_support(self, client: TestClient, services, seeded) -> None:
        services.identities.set_permission_overrides(seeded[Role.MODERATOR].id, frozenset({Permission.USER_MANAGEMENT}))
        resp = client.patch(
            f"/api/v1/admin/users/{seeded[Role.SUPPORT].id}/status",
            json={"status": "suspended"},
            headers=bearer(_token(client, Role.MODERATOR)),
        )
        assert resp.status_code == 200
        assert resp.json()["status"] == "suspended"

    def test_unknown_identity_is_404(self, client: TestClient) -> None:
        resp = client.patch(
            "/api/v1/admin/users/9999/status", json={"status": "active"}, headers=bearer(_token(client, Role.ADMIN))
        )
        assert resp.status_code == 404

    def test_grant_partial_permission(self, client: TestClient, seeded) -> None:
        target = seeded[Role.SUPPORT].id
        resp = client.put(
            f"/api/v1/admin/users/{target}/permissions",
            json={"overrides": ["audit_log_view"]},
            headers=bearer(_token(client, Role.ADMIN)),
        )
        assert resp.status_code == 200
        assert resp.json()["permissions"] == ["audit_log_view"]
        support = bearer(_token(client, Role.SUPPORT))
        assert client.get("/api/v1/admin/audit-logs", headers=support).status_code == 200

    def test_denied_cell_cannot_be_granted(self, client: TestClient, seeded) -> None:
        resp = client.put(
            f"/api/v1/admin/users/{seeded[Role.SUPPORT].id}/permissions",
            json={"overrides": ["financial_access"]},
            headers=bearer(_token(client, Role.ADMIN)),
        )
        assert resp.status_code == 400
        assert _error(resp)["detail"] == {"denied": ["financial_access"]}

    def test_cannot_grant_a_permission_the_actor_lacks(self, client: TestClient, services) -> None:
        other = create_identity(services, "admin2@example.com", Role.ADMIN)
        resp = client.put(
            f"/api/v1/admin/users/{other.id}/permissions",
            json={"overrides": ["system_config"]},
            headers=bearer(_token(client, Role.ADMIN)),
        )
        assert resp.status_code == 403

    def test_unlock_clears_a_lockout(self, client: TestClient, services) -> None:
        admin_token = _token(client, Role.ADMIN)
        target = create_identity(services, "locked@example.com", Role.SUPPORT)
        for _ in range(5):
            client.post("/api/v1/auth/login", json={"email": "locked@example.com", "password": "bad"})
        assert services.attempts.is_locked("locked@example.com")
        resp = client.post(f"/api/v1/admin/users/{target.id}/unlock", headers=bearer(admin_token))
        assert resp.status_code == 200
        assert resp.json()["failed_attempt_count"] == 0
        assert not services.attempts.is_locked("locked@example.com")
        login(client, "locked@example.com")


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------


class TestAuditLogs:
    def test_support_without_override_is_forbidden(self, client: TestClient) -> None:
        resp = client.get("/api/v1/admin/audit-logs", headers=bearer(_token(client, Role.SUPPORT)))
        assert resp.status_code == 403

    def test_listing_pages_with_a_cursor(self, client: TestClient, clock) -> None:
        headers = bearer(_token(client, Role.ADMIN))
        for _ in range(4):
            client.get("/api/v1/admin/users", headers=headers)
            clock.advance(seconds=1)
        first = client.get("/api/v1/admin/audit-logs?limit=3&action=user.list", headers=headers).json()
        assert len(first["items"]) == 3
        assert first["next_cursor"]
        second = client.get(
            "/api/v1/admin/audit-logs", params={"limit": 3, "action": "user.list", "cursor": first["next_cursor"]}, headers=headers
        ).json()
        assert len(second["items"]) == 1
        assert second["next_cursor"] is None
        timestamps = [i["timestamp"] for i in first["items"] + second["items"]]
        assert timestamps == sorted(timestamps, reverse=True)

    def test_cursor_can_be_pasted_into_a_url(self, client: TestClient, clock) -> None:
        headers = bearer(_token(client, Role.ADMIN))
        for _ in range(3):
            client.get("/api/v1/admin/users", headers=headers)
            clock.advance(seconds=1)
        first = client.get("/api/v1/admin/audit-logs?limit=2&action=user.list", headers=headers).json()
        resp = client.get(
            f"/api/v1/admin/audit-logs?limit=2&action=user.list&cursor={first['next_cursor']}", headers=headers
        )
        assert resp.status_code == 200
        assert len(resp.json()["items"]) == 1

    def test_page_size_is_bounded(self, client: TestClient) -> None:
        resp = client.get("/api/v1/admin/audit-logs?limit=1000", headers=bearer(_token(client, Role.ADMIN)))
        assert resp.status_code == 400

    def test_bad_cursor_is_400(self, client: TestClient) -> None:
        resp = client.get("/api/v1/admin/audit-logs?cursor=garbage", headers=bearer(_token(client, Role.ADMIN)))
        assert resp.status_code == 400
        assert _error(resp)["code"] == "validation_error"

    def test_export_rejects_120_days(self, client: TestClient) -> None:
        resp = client.post(
            "/api/v1/admin/audit-logs/export",
            json={"start": "2024-02-01T00:00:00Z", "end": "2024-05-31T00:00:00Z", "format": "csv"},
            headers=bearer(_token(client, Role.ADMIN)),
        )
        assert resp.status_code == 400
        assert _error(resp)["code"] == "validation_error"

    def test_export_30_days_newest_first(self, client: TestClient, clock) -> None:
        headers = bearer(_token(client, Role.ADMIN))
        for _ in range(3):
            client.get("/api/v1/admin/users", headers=headers)
            clock.advance(minutes=10)
        resp = client.post(
            "/api/v1/admin/audit-logs/export",
            json={"start": "2024-05-15T00:00:00Z", "end": "2024-06-14T00:00:00Z", "format": "csv"},
            headers=headers,
        )
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/csv")
        assert "attachment" in resp.headers["content-disposition"]
        rows = list(csv.DictReader(io.StringIO(resp.text)))
        assert len(rows) == 3
        assert [r["action"] for r in rows] == ["user.list"] * 3
        timestamps = [r["timestamp"] for r in rows]
        assert timestamps == sorted(timestamps, reverse=True)

    def test_export_json(self, client: TestClient) -> None:
        headers = bearer(_token(client, Role.ADMIN))
        client.get("/api/v1/admin/users", headers=headers)
        resp = client.post(
            "/api/v1/admin/audit-logs/export",
            json={"start": "2024-05-15T00:00:00Z", "end": "2024-06-14T00:00:00Z", "format": "json"},
            headers=headers,
        )
        assert resp.status_code == 200
        assert resp.json()[0]["action"] == "user.list"

    def test_export_end_before_start_is_422(self, client: TestClient) -> None:
        resp = client.post(
            "/api/v1/admin/audit-logs/export",
            json={"start": "2024-06-14T00:00:00Z", "end": "2024-05-15T00:00:00Z"},
            headers=bearer(_token(client, Role.ADMIN)),
        )
        assert resp.status_code == 422


# ---------------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------------


class TestRateLimiting:
    def test_exceeding_the_ceiling_returns_429(self, client: TestClient, services) -> None:
        services.rate_limiter = AdaptiveRateLimiter("memory://", ceilings={role: 2 for role in Role})
        headers = bearer(_token(client, Role.MODERATOR))
        assert client.get("/api/v1/auth/me", headers=headers).status_code == 200
        assert client.get("/api/v1/auth/me", headers=headers).status_code == 200
        resp = client.get("/api/v1/auth/me", headers=headers)
        assert resp.status_code == 429
        assert int(resp.headers["Retry-After"]) > 0
        error = _error(resp)
        assert error["code"] == "rate_limited"
        assert error["detail"]["retry_after"] == int(resp.headers["Retry-After"])

    def test_bulk_export_has_its_own_low_ceiling(self, client: TestClient) -> None:
        headers = bearer(_token(client, Role.SUPER_ADMIN))
        body = {"start": "2024-05-15T00:00:00Z", "end": "2024-06-14T00:00:00Z", "format": "json"}
        statuses = [client.post("/api/v1/admin/audit-logs/export", json=body, headers=headers).status_code for _ in range(6)]
        assert statuses == [200] * 5 + [429]
        # Other endpoints keep their own budget.
        assert client.get("/api/v1/admin/audit-logs", headers=headers).status_code == 200


# ---------------------------------------------------------------------------
# Security reporting
# ---------------------------------------------------------------------------


class TestSecurityReporting:
    def test_suspicious_sources(self, client: TestClient) -> None:
        headers = bearer(_token(client, Role.ADMIN))
        for n in range(3):
            client.post("/api/v1/auth/login", json={"email": f"target{n}@example.com", "password": "guess"})
        resp = client.get("/api/v1/admin/security/suspicious-sources?min_accounts=3", headers=headers)
        assert resp.status_code == 200
        data = resp.json()
        assert len(data) == 1
        assert data[0]["distinct_accounts"] == 3

    def test_rate_limit_denials_are_reported(self, client: TestClient, services, seeded) -> None:
        ceilings = {role: 10 for role in Role}
        ceilings[Role.SUPPORT] = 1
        services.rate_limiter = AdaptiveRateLimiter("memory://", ceilings=ceilings)
        support = bearer(_token(client, Role.SUPPORT))
        assert client.get("/api/v1/auth/me", headers=support).status_code == 200
        assert client.get("/api/v1/auth/me", headers=support).status_code == 429
        resp = client.get("/api/v1/admin/security/rate-limit-denials", headers=bearer(_token(client, Role.ADMIN)))
        assert resp.status_code == 200
        assert resp.json() == [{"subject": f"user:{seeded[Role.SUPPORT].id}", "denials": 1}]
