"""
tests/test_session_guard.py -- Integration tests for auth/dependencies.py.

The guard is exercised through GET /api/v1/auth/me (any authenticated
principal) and GET /api/v1/users (admin or moderator), because unit testing
the dependency alone would miss the exception handler that shapes the
force-logout envelope.

Coverage:
  - Missing header, wrong scheme, garbage token, deleted principal -> 401 without force_logout
  - Inactive principal -> 403 with force_logout and the recorded reason
  - Epoch bumped after issuance -> 401 with force_logout, while verify_token() alone still accepts
  - Role gate -> plain 403, never force_logout
  - Successful request refreshes presence in the background

Fixtures used (from conftest.py):
  - api_client: ApiContext with seeded admin, moderator, alice and bob
"""

from __future__ import annotations

import time

from auth.tokens import issue_token, verify_token
from tests.conftest import ApiContext, add_principal, bearer

ME = "/api/v1/auth/me"


def _fresh(ctx: ApiContext, username: str, role: str = "user"):
    """A principal private to one test, so mutations don't leak across tests."""
    return add_principal(ctx.store, username, role, "Fr3sh!password")


class TestUnauthenticated:
    def test_missing_header(self, api_client: ApiContext) -> None:
        resp = api_client.client.get(ME)
        assert resp.status_code == 401
        body = resp.json()
        assert body["error"]["code"] == "unauthorized"
        assert "force_logout" not in body, "Plain auth failures must not ask the client to force logout"

    def test_wrong_scheme(self, api_client: ApiContext) -> None:
        token = api_client.token_for(api_client.admin.id)
        resp = api_client.client.get(ME, headers={"Authorization": f"Basic {token}"})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "invalid_scheme"

    def test_bearer_without_token(self, api_client: ApiContext) -> None:
        resp = api_client.client.get(ME, headers={"Authorization": "Bearer "})
        assert resp.status_code == 401

    def test_garbage_token(self, api_client: ApiContext) -> None:
        resp = api_client.client.get(ME, headers=bearer("definitely.not.ajwt"))
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "invalid_token"
        assert "force_logout" not in resp.json()

    def test_deleted_principal(self, api_client: ApiContext) -> None:
        p = _fresh(api_client, "ghost")
        token = issue_token(p)
        api_client.store.delete_principal(p.id)
        resp = api_client.client.get(ME, headers=bearer(token))
        assert resp.status_code == 401
        assert "force_logout" not in resp.json()


class TestForceLogout:
    def test_blocked_principal(self, api_client: ApiContext) -> None:
        p = _fresh(api_client, "blockme")
        token = issue_token(p)
        api_client.store.update_principal(p.id, {"is_active": False, "blocked_reason": "Security review"})

        resp = api_client.client.get(ME, headers=bearer(token))
        assert resp.status_code == 403
        body = resp.json()
        assert body["force_logout"] is True
        assert body["reason"] == "Security review"
        assert body["error"]["code"] == "account_blocked"

    def test_blocked_without_reason_gets_default(self, api_client: ApiContext) -> None:
        p = _fresh(api_client, "blockme2")
        token = issue_token(p)
        api_client.store.update_principal(p.id, {"is_active": False})
        body = api_client.client.get(ME, headers=bearer(token)).json()
        assert body["force_logout"] is True
        assert body["reason"] == "Your account is blocked."

    def test_epoch_bump_revokes_at_guard_not_codec(self, api_client: ApiContext) -> None:
        """A token survives verify_token() after an epoch bump but not the session guard."""
        p = _fresh(api_client, "revokeme")
        token = issue_token(p)
        assert api_client.client.get(ME, headers=bearer(token)).status_code == 200

        api_client.store.increment_epoch(p.id)

        assert verify_token(token) is not None, "Codec in isolation must still accept the token"
        resp = api_client.client.get(ME, headers=bearer(token))
        assert resp.status_code == 401
        body = resp.json()
        assert body["force_logout"] is True
        assert body["error"]["code"] == "token_revoked"
        assert body["reason"]

        # A token issued after the bump works.
        assert api_client.client.get(ME, headers=api_client.headers_for(p.id)).status_code == 200


class TestRoleGate:
    def test_standard_principal_cannot_list(self, api_client: ApiContext) -> None:
        resp = api_client.client.get("/api/v1/users", headers=api_client.headers_for(api_client.bob.id))
        assert resp.status_code == 403
        assert "force_logout" not in resp.json(), "Role failures are plain forbidden"

    def test_moderator_passes_admin_or_moderator_gate(self, api_client: ApiContext) -> None:
        resp = api_client.client.get("/api/v1/users", headers=api_client.headers_for(api_client.moderator.id))
        assert resp.status_code == 200

    def test_moderator_fails_admin_gate(self, api_client: ApiContext) -> None:
        resp = api_client.client.post(
            "/api/v1/users",
            json={"username": "sneaky", "full_name": "Sneaky"},
            headers=api_client.headers_for(api_client.moderator.id),
        )
        assert resp.status_code == 403

    def test_role_is_read_from_store_not_token(self, api_client: ApiContext) -> None:
        """A demotion takes effect on the next request, even for a still-valid epoch."""
        p = _fresh(api_client, "demoted", "moderator")
        token = issue_token(p)
        # Change the role without bumping the epoch: the guard must still see the new role.
        api_client.store.update_principal(p.id, {"role": "user"})
        assert api_client.client.get("/api/v1/users", headers=bearer(token)).status_code == 403


class TestPresenceRefresh:
    def test_authenticated_request_marks_online(self, api_client: ApiContext) -> None:
        p = _fresh(api_client, "presence")
        assert not api_client.store.get_by_id(p.id).is_online
        assert api_client.client.get(ME, headers=bearer(issue_token(p))).status_code == 200

        deadline = time.monotonic() + 5
        while time.monotonic() < deadline and not api_client.store.get_by_id(p.id).is_online:
            time.sleep(0.05)
        after = api_client.store.get_by_id(p.id)
        assert after.is_online, "Presence refresh should land shortly after the request"
        assert after.token_version == p.token_version
