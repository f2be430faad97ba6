"""Unit tests for auth/policy.py -- role rules for reads and writes.

Covers:
- Admin updates pass unchanged, including on self
- Moderator on self: role/username/password rejected with distinct codes
- Moderator on others: allow-list membership checked before any field;
  only available_organizations survives; admin role assignment rejected
- Standard principal: self-edit restrictions, others rejected
- Neither role may touch its own password state or account status
- can_view / listing_scope / authorize_create / authorize_delete
"""

from __future__ import annotations

import pytest

from auth.errors import Forbidden
from auth.models import AuthenticatedPrincipal, PrincipalUpdate
from auth.policy import authorize_create, authorize_delete, authorize_update, can_view, listing_scope

ADMIN = AuthenticatedPrincipal(id=1, role="admin")
MODERATOR = AuthenticatedPrincipal(id=7, role="moderator")
USER = AuthenticatedPrincipal(id=20, role="user")


def upd(**fields) -> PrincipalUpdate:
    return PrincipalUpdate.from_mapping(fields)


def _code(exc_info: pytest.ExceptionInfo) -> str:
    return exc_info.value.code


class TestAdmin:
    def test_every_field_passes_for_other(self) -> None:
        update = upd(role="moderator", username="renamed", password="N3w!password", comment="x")
        assert authorize_update(ADMIN, 5, update) is update

    def test_every_field_passes_for_self(self) -> None:
        update = upd(role="user", username="root")
        assert authorize_update(ADMIN, ADMIN.id, update) is update


class TestModeratorSelf:
    @pytest.mark.parametrize(
        "field,value,code",
        [
            ("role", "admin", "role_forbidden"),
            ("username", "mod2", "username_forbidden"),
            ("password", "N3w!password", "password_forbidden"),
            ("accessible_users", [1, 2, 3], "accessible_users_forbidden"),
        ],
    )
    def test_restricted_fields_rejected_with_distinct_codes(self, field, value, code) -> None:
        with pytest.raises(Forbidden) as exc_info:
            authorize_update(MODERATOR, MODERATOR.id, upd(**{field: value}))
        assert _code(exc_info) == code

    def test_other_fields_pass(self) -> None:
        update = upd(full_name="New Name", comment="", available_organizations=[3])
        result = authorize_update(MODERATOR, MODERATOR.id, update)
        assert result.present == {"full_name", "comment", "available_organizations"}


class TestModeratorOther:
    def test_target_outside_allow_list_rejected_before_fields(self) -> None:
        """Even an empty update is rejected when the target is not on the list."""
        with pytest.raises(Forbidden) as exc_info:
            authorize_update(MODERATOR, 12, upd(), accessible_users=[11])
        assert _code(exc_info) == "no_access"

    def test_outside_allow_list_wins_over_admin_role(self) -> None:
        with pytest.raises(Forbidden) as exc_info:
            authorize_update(MODERATOR, 12, upd(role="admin"), accessible_users=[11])
        assert _code(exc_info) == "no_access"

    def test_only_available_organizations_survives(self) -> None:
        update = upd(full_name="Mallory", available_organizations=[4, 5], role="user")
        result = authorize_update(MODERATOR, 11, update, accessible_users=[11])
        assert result.present == {"available_organizations"}
        assert result.available_organizations == [4, 5]
        assert result.full_name is None and result.role is None

    def test_everything_dropped_yields_empty_update(self) -> None:
        result = authorize_update(MODERATOR, 11, upd(comment="hi", is_active=False), accessible_users=[11])
        assert result.is_empty()

    def test_admin_role_assignment_rejected_for_accessible_target(self) -> None:
        """Moderator 7 with accessible [11] may not make 11 an admin."""
        with pytest.raises(Forbidden) as exc_info:
            authorize_update(MODERATOR, 11, upd(role="admin"), accessible_users=[11])
        assert _code(exc_info) == "admin_role_forbidden"


class TestStandard:
    @pytest.mark.parametrize(
        "field,value,code",
        [
            ("role", "moderator", "role_forbidden"),
            ("username", "newname", "username_forbidden"),
            ("password", "N3w!password", "password_forbidden"),
            ("available_organizations", [1], "organizations_forbidden"),
            ("accessible_users", [1], "accessible_users_forbidden"),
        ],
    )
    def test_restricted_self_fields(self, field, value, code) -> None:
        with pytest.raises(Forbidden) as exc_info:
            authorize_update(USER, USER.id, upd(**{field: value}))
        assert _code(exc_info) == code

    def test_profile_fields_pass_on_self(self) -> None:
        update = upd(full_name="Alice A.", phones=["+15551234567"], comment="")
        assert authorize_update(USER, USER.id, update) is update

    def test_other_target_rejected_regardless_of_fields(self) -> None:
        with pytest.raises(Forbidden) as exc_info:
            authorize_update(USER, 21, upd())
        assert _code(exc_info) == "no_access"


class TestPasswordAndStatusSelfEdit:
    """Password state and account status belong to administrators.

    Sending reset_password on self would drop the hash and re-enter the
    provisioned state, where any credential logs in.
    """

    CASES = [
        ("reset_password", True, "reset_password_forbidden"),
        ("reset_password", False, "reset_password_forbidden"),
        ("require_password_change", True, "require_password_change_forbidden"),
        ("disable_password_change", False, "disable_password_change_forbidden"),
        ("is_active", True, "status_forbidden"),
        ("blocked_reason", "", "blocked_reason_forbidden"),
    ]

    @pytest.mark.parametrize("actor", [MODERATOR, USER], ids=["moderator", "user"])
    @pytest.mark.parametrize("field,value,code", CASES)
    def test_rejected_on_self(self, actor, field, value, code) -> None:
        with pytest.raises(Forbidden) as exc_info:
            authorize_update(actor, actor.id, upd(**{field: value}))
        assert _code(exc_info) == code

    def test_rejected_alongside_allowed_fields(self) -> None:
        with pytest.raises(Forbidden) as exc_info:
            authorize_update(USER, USER.id, upd(city="Lisbon", reset_password=True))
        assert _code(exc_info) == "reset_password_forbidden"

    def test_admin_may_set_them_on_self(self) -> None:
        update = upd(require_password_change=False, disable_password_change=True)
        assert authorize_update(ADMIN, ADMIN.id, update) is update


class TestVisibility:
    def test_can_view(self) -> None:
        assert can_view(ADMIN, 99)
        assert can_view(MODERATOR, 11, [11])
        assert not can_view(MODERATOR, 12, [11])
        assert can_view(MODERATOR, MODERATOR.id, [])
        assert can_view(USER, USER.id)
        assert not can_view(USER, 21)

    def test_listing_scope(self) -> None:
        assert listing_scope(ADMIN) == "all"
        assert listing_scope(MODERATOR) == "accessible"
        with pytest.raises(Forbidden):
            listing_scope(USER)


class TestCreateDelete:
    def test_only_admin_creates(self) -> None:
        authorize_create(ADMIN)
        for actor in (MODERATOR, USER):
            with pytest.raises(Forbidden):
                authorize_create(actor)

    def test_admin_deletes_others_but_not_self(self) -> None:
        authorize_delete(ADMIN, 5)
        with pytest.raises(Forbidden) as exc_info:
            authorize_delete(ADMIN, ADMIN.id)
        assert _code(exc_info) == "self_delete"

    def test_non_admin_cannot_delete(self) -> None:
        with pytest.raises(Forbidden):
            authorize_delete(MODERATOR, 11)
