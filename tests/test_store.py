"""Unit tests for auth/store.py -- IdentityStore persistence and its atomic operations.

Covers:
- create / lookup / uniqueness (Conflict on duplicate email or username)
- registration with a staff code: consume + insert in one transaction
- set_role validation, verify_credential failure modes
- first-write-wins provider stamping
- backup-code compare-and-set, 2FA enable guard
- verification token upsert and single consumption
- staff code insert / consume / listing
"""

from __future__ import annotations

import time

import pytest

from auth.errors import Conflict, InvalidArgument, InvalidOrExpired, NotFound
from auth.models import Identity
from conftest import code_is_available

# ---------------------------------------------------------------------------
# Identities
# ---------------------------------------------------------------------------


def test_create_and_lookup(store, make_identity):
    assert not store.has_identities()
    alice = make_identity("alice", email="a@x.com")
    assert alice.id is not None
    assert alice.email_verified is False
    assert alice.role == "employer"
    assert alice.created_at
    assert store.get_by_email("a@x.com").id == alice.id
    assert store.get_by_username("alice").id == alice.id
    assert store.has_identities()


def test_duplicate_email_conflicts(store, make_identity):
    make_identity("alice", email="a@x.com")
    with pytest.raises(Conflict):
        make_identity("alice2", email="a@x.com")


def test_duplicate_username_conflicts(store, make_identity):
    make_identity("alice", email="a@x.com")
    with pytest.raises(Conflict):
        make_identity("alice", email="other@x.com")


def test_find_by_email_or_username_matches_either(store, make_identity):
    alice = make_identity("alice", email="a@x.com")
    assert store.find_by_email_or_username("a@x.com", "nobody").id == alice.id
    assert store.find_by_email_or_username("nobody@x.com", "alice").id == alice.id
    assert store.find_by_email_or_username("nobody@x.com", "nobody") is None


def test_list_identities_in_id_order(store, make_identity):
    make_identity("b")
    make_identity("a")
    assert [i.username for i in store.list_identities()] == ["b", "a"]


def test_set_role(store, make_identity):
    alice = make_identity("alice")
    assert store.set_role(alice.id, "staff").role == "staff"
    with pytest.raises(InvalidArgument):
        store.set_role(alice.id, "superuser")
    with pytest.raises(NotFound):
        store.set_role(9999, "staff")


def test_targeted_mutation_of_missing_identity_is_not_found(store):
    with pytest.raises(NotFound):
        store.mark_email_verified(9999)
    with pytest.raises(NotFound):
        store.set_two_factor(9999, enabled=False)


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


def test_verify_credential(store, make_identity):
    alice = make_identity("alice", email="a@x.com", password="pw123456")
    assert store.verify_credential("a@x.com", "pw123456").id == alice.id
    assert store.verify_credential("a@x.com", "wrong-password") is None
    assert store.verify_credential("nobody@x.com", "pw123456") is None


def test_verify_credential_for_federated_only_account_is_none(store, make_identity):
    make_identity("fed", email="fed@x.com", password=None, provider="google", email_verified=True)
    assert store.verify_credential("fed@x.com", "") is None
    assert store.verify_credential("fed@x.com", "anything") is None


# ---------------------------------------------------------------------------
# Staff codes and registration
# ---------------------------------------------------------------------------


def test_staff_code_consumed_once(store):
    assert store.insert_staff_code("1234-ENG", "Engineering")
    assert not store.insert_staff_code("1234-ENG", "Engineering")
    assert store.consume_staff_code("1234-ENG", "Engineering")
    assert not store.consume_staff_code("1234-ENG", "Engineering")
    assert not code_is_available(store, "1234-ENG")


def test_staff_code_bound_to_department(store):
    store.insert_staff_code("1234-ENG", "Engineering")
    assert not store.consume_staff_code("1234-ENG", "Finance")
    assert code_is_available(store, "1234-ENG")


def test_create_identity_consumes_staff_code(store):
    store.insert_staff_code("5555-ENG", "Engineering")
    uid = store.create_identity(
        Identity(username="sam", email="sam@x.com", role="staff"),
        staff_code="5555-ENG",
        department="Engineering",
    )
    created = store.get_by_id(uid)
    assert created.staff_code == "5555-ENG"
    assert created.department == "Engineering"
    assert not code_is_available(store, "5555-ENG")


def test_create_identity_with_used_code_inserts_nothing(store):
    store.insert_staff_code("5555-ENG", "Engineering")
    store.consume_staff_code("5555-ENG", "Engineering")
    with pytest.raises(InvalidOrExpired):
        store.create_identity(
            Identity(username="sam", email="sam@x.com", role="staff"),
            staff_code="5555-ENG",
            department="Engineering",
        )
    assert store.get_by_email("sam@x.com") is None


def test_failed_insert_rolls_back_code_consumption(store, make_identity):
    make_identity("taken", email="taken@x.com")
    store.insert_staff_code("7777-ENG", "Engineering")
    with pytest.raises(Conflict):
        store.create_identity(
            Identity(username="newname", email="taken@x.com", role="staff"),
            staff_code="7777-ENG",
            department="Engineering",
        )
    assert code_is_available(store, "7777-ENG")


def test_available_code_listings(store):
    store.insert_staff_code("1111-ENG", "Engineering")
    store.insert_staff_code("2222-FIN", "Finance")
    store.insert_staff_code("3333-FIN", "Finance")
    store.consume_staff_code("1111-ENG", "Engineering")
    assert store.list_departments_with_available_codes() == ["Finance"]
    assert [c.code for c in store.list_available_codes()] == ["2222-FIN", "3333-FIN"]
    assert store.list_available_codes("Engineering") == []


# ---------------------------------------------------------------------------
# Federation provider
# ---------------------------------------------------------------------------


def test_set_provider_first_write_wins(store, make_identity):
    alice = make_identity("alice")
    assert store.set_provider(alice.id, "github")
    assert not store.set_provider(alice.id, "google")
    assert store.get_by_id(alice.id).provider == "github"


# ---------------------------------------------------------------------------
# Two-factor columns
# ---------------------------------------------------------------------------


def test_set_two_factor_writes_only_given_fields(store, make_identity):
    alice = make_identity("alice")
    store.set_two_factor(alice.id, secret="JBSWY3DPEHPK3PXP", backup_codes=["d1", "d2"], enabled=False)
    store.set_two_factor(alice.id, enabled=True)
    reloaded = store.get_by_id(alice.id)
    assert reloaded.two_factor_secret == "JBSWY3DPEHPK3PXP"
    assert reloaded.two_factor_backup_codes == ["d1", "d2"]
    assert reloaded.two_factor_enabled is True


def test_enable_two_factor_requires_matching_secret(store, make_identity):
    alice = make_identity("alice")
    store.set_two_factor(alice.id, secret="NEWSECRET", enabled=False)
    assert not store.enable_two_factor(alice.id, "OLDSECRET")
    assert store.get_by_id(alice.id).two_factor_enabled is False
    assert store.enable_two_factor(alice.id, "NEWSECRET")
    assert store.get_by_id(alice.id).two_factor_enabled is True


def test_consume_backup_code_removes_exactly_one(store, make_identity):
    alice = make_identity("alice")
    store.set_two_factor(alice.id, backup_codes=["d1", "d2", "d3"])
    assert store.consume_backup_code(alice.id, "d2")
    assert not store.consume_backup_code(alice.id, "d2")
    assert store.get_by_id(alice.id).two_factor_backup_codes == ["d1", "d3"]
    assert not store.consume_backup_code(9999, "d1")


# ---------------------------------------------------------------------------
# Verification tokens
# ---------------------------------------------------------------------------


def test_verification_token_upsert_replaces_prior(store, make_identity):
    alice = make_identity("alice")
    store.upsert_verification_token(alice.id, "hash-1", time.time() + 60)
    store.upsert_verification_token(alice.id, "hash-2", time.time() + 60)
    assert not store.confirm_email_verification(alice.id, "hash-1")
    assert store.confirm_email_verification(alice.id, "hash-2")


def test_confirm_email_verification_is_single_use(store, make_identity):
    alice = make_identity("alice")
    store.upsert_verification_token(alice.id, "hash-1", time.time() + 60)
    assert store.confirm_email_verification(alice.id, "hash-1")
    assert store.get_by_id(alice.id).email_verified is True
    assert not store.confirm_email_verification(alice.id, "hash-1")


def test_expired_verification_token_changes_nothing(store, make_identity):
    alice = make_identity("alice")
    store.upsert_verification_token(alice.id, "hash-1", 1_000.0)
    assert not store.confirm_email_verification(alice.id, "hash-1", now=2_000.0)
    assert store.get_by_id(alice.id).email_verified is False
    # Still unconsumed: the same token works before its expiry.
    assert store.confirm_email_verification(alice.id, "hash-1", now=500.0)


def test_ping(store):
    assert store.ping() is True
