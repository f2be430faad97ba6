"""Unit tests for auth/store.py -- PrincipalStore persistence.

Covers:
- Case-insensitive username lookup and duplicate detection
- list_page(): defaults, out-of-range page size fallback, sort allow-list
- update_principal(): rejects token_version and unknown columns;
  bump_epoch increments exactly once in the same statement
- increment_epoch() under concurrent callers loses no increments
- set_password() leaves the first-login state and bumps the epoch
- Presence writes and the idle sweep never touch token_version
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import IntegrityError

from auth.models import Principal
from auth.store import PrincipalStore, _principals
from tests.conftest import add_principal


class TestLookups:
    def test_get_by_username_is_case_insensitive(self, store: PrincipalStore) -> None:
        created = add_principal(store, "Alice", password="Us3r!password")
        assert store.get_by_username("alice").id == created.id
        assert store.get_by_username(" ALICE ").id == created.id
        assert store.get_by_username("nobody") is None

    def test_username_taken_excludes_self(self, store: PrincipalStore) -> None:
        created = add_principal(store, "alice")
        assert store.username_taken("ALICE")
        assert not store.username_taken("alice", exclude_id=created.id)

    def test_duplicate_username_raises_integrity_error(self, store: PrincipalStore) -> None:
        add_principal(store, "alice")
        with pytest.raises(IntegrityError):
            store.create_principal(Principal(username="alice", full_name="Again", role="user"))

    def test_username_unique_regardless_of_case(self, store: PrincipalStore) -> None:
        add_principal(store, "alice")
        with pytest.raises(IntegrityError):
            store.create_principal(Principal(username="ALICE", full_name="X", role="user"))

    def test_rename_to_other_case_collides(self, store: PrincipalStore) -> None:
        add_principal(store, "alice")
        bob = add_principal(store, "bob")
        with pytest.raises(IntegrityError):
            store.update_principal(bob.id, {"username": "Alice"})

    def test_new_principal_defaults(self, store: PrincipalStore) -> None:
        p = add_principal(store, "fresh")
        assert p.token_version == 1
        assert p.is_active
        assert p.is_first_login
        assert p.hashed_password is None
        assert p.created_at is not None

    def test_json_columns_round_trip(self, store: PrincipalStore) -> None:
        p = add_principal(
            store,
            "jsonuser",
            emails=["a@example.com"],
            social_links={"telegram": "@a"},
            custom_fields={"shift": 2},
            accessible_users=[3, 4],
        )
        assert p.emails == ["a@example.com"]
        assert p.social_links == {"telegram": "@a"}
        assert p.custom_fields == {"shift": 2}
        assert p.accessible_users == [3, 4]


class TestListing:
    @pytest.fixture
    def populated(self, store: PrincipalStore) -> PrincipalStore:
        for name in ("charlie", "alpha", "bravo"):
            add_principal(store, name)
        return store

    def test_defaults(self, populated: PrincipalStore) -> None:
        page = populated.list_page()
        assert page.page == 1
        assert page.page_size == 20
        assert page.total == 3
        assert page.total_pages == 1
        # Default sort: created_at ascending (insertion order)
        assert [p.username for p in page.items] == ["charlie", "alpha", "bravo"]

    @pytest.mark.parametrize("size", [0, -5, 101, 10_000])
    def test_out_of_range_page_size_falls_back(self, populated: PrincipalStore, size: int) -> None:
        assert populated.list_page(page_size=size).page_size == 20

    def test_page_below_one_becomes_one(self, populated: PrincipalStore) -> None:
        assert populated.list_page(page=0).page == 1

    def test_pagination(self, populated: PrincipalStore) -> None:
        first = populated.list_page(page=1, page_size=2)
        second = populated.list_page(page=2, page_size=2)
        assert first.total_pages == 2
        assert len(first.items) == 2
        assert len(second.items) == 1

    def test_sort_by_allowed_column(self, populated: PrincipalStore) -> None:
        page = populated.list_page(sort_by="username", sort_desc=True)
        assert [p.username for p in page.items] == ["charlie", "bravo", "alpha"]

    def test_unknown_sort_falls_back_to_created_at(self, populated: PrincipalStore) -> None:
        """Free-text sort input never reaches the query; it selects the default column."""
        page = populated.list_page(sort_by="username; DROP TABLE principals")
        assert [p.username for p in page.items] == ["charlie", "alpha", "bravo"]
        assert populated.has_principals()

    def test_list_by_ids(self, populated: PrincipalStore) -> None:
        ids = [p.id for p in populated.list_page().items][:2]
        assert {p.id for p in populated.list_by_ids(ids)} == set(ids)
        assert populated.list_by_ids([]) == []


class TestEpoch:
    def test_update_without_bump_keeps_epoch(self, store: PrincipalStore) -> None:
        p = add_principal(store, "alice")
        assert store.update_principal(p.id, {"comment": "note"}, updated_by=99)
        after = store.get_by_id(p.id)
        assert after.comment == "note"
        assert after.updated_by == 99
        assert after.token_version == p.token_version

    def test_update_with_bump_increments_once(self, store: PrincipalStore) -> None:
        p = add_principal(store, "alice")
        store.update_principal(p.id, {"role": "moderator"}, bump_epoch=True)
        after = store.get_by_id(p.id)
        assert after.role == "moderator"
        assert after.token_version == p.token_version + 1

    def test_epoch_column_not_settable(self, store: PrincipalStore) -> None:
        p = add_principal(store, "alice")
        with pytest.raises(ValueError):
            store.update_principal(p.id, {"token_version": 1})
        with pytest.raises(ValueError):
            store.update_principal(p.id, {"no_such_column": 1})

    def test_update_missing_principal_returns_false(self, store: PrincipalStore) -> None:
        assert not store.update_principal(9999, {"comment": "x"})
        assert not store.increment_epoch(9999)

    def test_concurrent_increments_are_not_lost(self, store: PrincipalStore) -> None:
        p = add_principal(store, "alice")
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda _: store.increment_epoch(p.id), range(40)))
        assert all(results)
        assert store.get_by_id(p.id).token_version == p.token_version + 40

    def test_set_password_clears_flags_and_bumps(self, store: PrincipalStore) -> None:
        p = add_principal(store, "alice", require_password_change=True)
        assert store.set_password(p.id, "$2b$12$fakehashfakehashfakehash")
        after = store.get_by_id(p.id)
        assert after.hashed_password == "$2b$12$fakehashfakehashfakehash"
        assert not after.require_password_change
        assert not after.is_first_login
        assert after.token_version == p.token_version + 1


class TestPresence:
    def test_touch_and_offline_leave_epoch_alone(self, store: PrincipalStore) -> None:
        p = add_principal(store, "alice")
        store.touch_presence(p.id)
        online = store.get_by_id(p.id)
        assert online.is_online and online.last_seen is not None
        store.set_offline(p.id)
        offline = store.get_by_id(p.id)
        assert not offline.is_online
        assert offline.token_version == p.token_version

    def test_idle_sweep(self, store: PrincipalStore) -> None:
        idle = add_principal(store, "idle")
        active = add_principal(store, "active")
        stale = (datetime.now(timezone.utc) - timedelta(minutes=30)).isoformat()
        with store.engine.connect() as conn:
            conn.execute(
                _principals.update().where(_principals.c.id == idle.id).values(is_online=True, last_seen=stale)
            )
            conn.commit()
        store.touch_presence(active.id)

        assert store.mark_idle_offline(timedelta(minutes=10)) == 1
        assert not store.get_by_id(idle.id).is_online
        assert store.get_by_id(active.id).is_online
        assert store.get_by_id(idle.id).token_version == idle.token_version

    def test_count_active_admins(self, store: PrincipalStore) -> None:
        add_principal(store, "root", "admin")
        add_principal(store, "root2", "admin", is_active=False)
        add_principal(store, "someone", "user")
        assert store.count_active_admins() == 1

    def test_delete(self, store: PrincipalStore) -> None:
        p = add_principal(store, "gone")
        assert store.delete_principal(p.id)
        assert store.get_by_id(p.id) is None
        assert not store.delete_principal(p.id)
