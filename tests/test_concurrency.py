"""Concurrency tests for the store's one-time consumption operations.

Each test releases N threads at once against a file-backed SQLite database
in WAL mode. Every thread checks out its own pooled connection, so the race
happens in the database rather than on a shared handle. Whatever the
interleaving, exactly one caller may win.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Generator
from concurrent.futures import ThreadPoolExecutor

import pytest

from auth.errors import InvalidOrExpired
from auth.models import Identity
from auth.staff_codes import StaffCodeGate
from auth.store import IdentityStore
from conftest import code_is_available

RACERS = 8


@pytest.fixture
def file_store(tmp_path) -> Generator[IdentityStore, None, None]:
    s = IdentityStore(f"sqlite:///{tmp_path / 'race.db'}", bcrypt_rounds=4)
    yield s
    s.close()


def _race(attempt: Callable[[int], bool]) -> list[bool]:
    """Run attempt(i) for i in range(RACERS), all released by one barrier."""
    barrier = threading.Barrier(RACERS)

    def run(i: int) -> bool:
        barrier.wait()
        return attempt(i)

    with ThreadPoolExecutor(max_workers=RACERS) as pool:
        return list(pool.map(run, range(RACERS)))


def _identity(store: IdentityStore, username: str) -> int:
    return store.create_identity(
        Identity(username=username, email=f"{username}@x.com", role="employer", hashed_password="unused")
    )


def test_staff_code_consumed_by_one_racer(file_store):
    file_store.insert_staff_code("1234-ENG", "Engineering")
    results = _race(lambda _: file_store.consume_staff_code("1234-ENG", "Engineering"))
    assert sum(results) == 1
    assert not code_is_available(file_store, "1234-ENG")


def test_staff_code_validated_by_one_racer(file_store):
    gate = StaffCodeGate(file_store)
    code = gate.generate("Engineering", 1)[0]
    results = _race(lambda _: gate.validate(code, "Engineering").valid)
    assert sum(results) == 1


def test_registrations_racing_on_one_code(file_store):
    file_store.insert_staff_code("5555-ENG", "Engineering")

    def register(i: int) -> bool:
        try:
            file_store.create_identity(
                Identity(username=f"staff{i}", email=f"staff{i}@x.com", role="staff", hashed_password="unused"),
                staff_code="5555-ENG",
                department="Engineering",
            )
        except InvalidOrExpired:
            return False
        return True

    assert sum(_race(register)) == 1
    assert len(file_store.list_identities()) == 1


def test_verification_token_confirmed_by_one_racer(file_store):
    uid = _identity(file_store, "alice")
    file_store.upsert_verification_token(uid, "hash-1", time.time() + 60)
    results = _race(lambda _: file_store.confirm_email_verification(uid, "hash-1"))
    assert sum(results) == 1
    assert file_store.get_by_id(uid).email_verified is True


def test_backup_code_redeemed_by_one_racer(file_store):
    uid = _identity(file_store, "alice")
    file_store.set_two_factor(uid, backup_codes=["d1", "d2", "d3"])
    results = _race(lambda _: file_store.consume_backup_code(uid, "d2"))
    assert sum(results) == 1
    assert file_store.get_by_id(uid).two_factor_backup_codes == ["d1", "d3"]
