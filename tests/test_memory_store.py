"""Tests for the in-memory credential store.

Covers uniqueness, the atomic lockout and recovery-code operations, thread
safety of the failed-attempt counter and JSON snapshot persistence.
"""

import threading
from datetime import timedelta

import pytest

from gatekeep.storage.errors import ConstraintViolation, RecordNotFound
from gatekeep.storage.memory import MemoryStore
from gatekeep.storage.models import Account


def _account(clock, username="alice", email="alice@x.com"):
    return Account.new(username, email, "digest", phone="1234567890", now=clock.now)


class TestUniqueness:
    def test_duplicate_email(self, memory_store, clock):
        memory_store.create_account(_account(clock))

        with pytest.raises(ConstraintViolation) as exc_info:
            memory_store.create_account(_account(clock, username="bob"))
        assert exc_info.value.field == "email"

    def test_duplicate_username_any_case(self, memory_store, clock):
        memory_store.create_account(_account(clock))

        with pytest.raises(ConstraintViolation) as exc_info:
            memory_store.create_account(_account(clock, username="ALICE", email="b@x.com"))
        assert exc_info.value.field == "username"

    def test_lookup_by_username_is_case_insensitive(self, memory_store, clock):
        created = memory_store.create_account(_account(clock))

        assert memory_store.get_account_by_username("Alice").id == created.id
        assert memory_store.get_account_by_email(" ALICE@x.com ").id == created.id

    def test_update_moves_indexes(self, memory_store, clock):
        created = memory_store.create_account(_account(clock))

        memory_store.update_account(created.id, now=clock.now, email="new@x.com", username="alice2")

        assert memory_store.get_account_by_email("alice@x.com") is None
        assert memory_store.get_account_by_username("alice") is None
        assert memory_store.get_account_by_email("new@x.com").id == created.id
        assert memory_store.get_account_by_username("alice2").id == created.id

    def test_update_rejects_unknown_fields(self, memory_store, clock):
        created = memory_store.create_account(_account(clock))

        with pytest.raises(ValueError):
            memory_store.update_account(created.id, now=clock.now, password_hash="x")

    def test_missing_account(self, memory_store, clock):
        with pytest.raises(RecordNotFound):
            memory_store.set_password("missing", "digest", clock.now)

    def test_deactivation_frees_identifiers(self, memory_store, clock):
        created = memory_store.create_account(_account(clock))

        defaced = memory_store.deactivate_account(created.id, clock.now)

        assert defaced.is_active is False
        assert defaced.email == f"deleted+{created.id}@invalid"
        assert defaced.username == f"deleted:{created.id}"
        assert memory_store.get_account_by_username(f"deleted:{created.id}").id == created.id
        memory_store.create_account(_account(clock))

    def test_deactivation_leaves_lookalike_username_alone(self, memory_store, clock):
        victim = memory_store.create_account(_account(clock))
        lookalike = f"deleted_{victim.id[:8]}_{int(clock.now.timestamp())}"
        other = memory_store.create_account(
            _account(clock, username=lookalike, email="bob@x.com")
        )

        memory_store.deactivate_account(victim.id, clock.now)

        assert memory_store.get_account_by_username(lookalike).id == other.id
        assert memory_store.get_account_by_email("bob@x.com").id == other.id

    def test_deactivation_refuses_taken_defaced_identifier(self, memory_store, clock):
        victim = memory_store.create_account(_account(clock))
        # The store does not validate, so a raw insert can hold the defaced name
        holder = memory_store.create_account(
            _account(clock, username=f"deleted:{victim.id}", email="bob@x.com")
        )

        with pytest.raises(ConstraintViolation) as exc_info:
            memory_store.deactivate_account(victim.id, clock.now)

        assert exc_info.value.field == "username"
        assert memory_store.get_account_by_username(f"deleted:{victim.id}").id == holder.id
        assert memory_store.get_account(victim.id).is_active is True
        assert memory_store.get_account_by_email("alice@x.com").id == victim.id

    def test_reads_return_copies(self, memory_store, clock):
        created = memory_store.create_account(_account(clock))

        copy = memory_store.get_account(created.id)
        copy.failed_attempts = 99

        assert memory_store.get_account(created.id).failed_attempts == 0


class TestAtomicOperations:
    def test_concurrent_failures_reach_the_threshold(self, clock):
        store = MemoryStore()
        created = store.create_account(_account(clock))
        barrier = threading.Barrier(10)
        results = []

        def _attempt():
            barrier.wait()
            results.append(store.register_failed_attempt(created.id, 5, 600, clock.now))

        threads = [threading.Thread(target=_attempt) for _ in range(10)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        counts = sorted(state.failed_attempts for state in results)
        assert counts == list(range(1, 11))
        stored = store.get_account(created.id)
        assert stored.lock_until == clock.now + timedelta(seconds=600)

    def test_complete_reset_requires_matching_code(self, memory_store, clock):
        created = memory_store.create_account(_account(clock))
        memory_store.set_reset_code(created.id, "code-hash", clock.now + timedelta(minutes=10))

        assert memory_store.complete_password_reset(created.id, "other", "new", clock.now) is False
        assert memory_store.complete_password_reset(created.id, "code-hash", "new", clock.now) is True
        assert memory_store.complete_password_reset(created.id, "code-hash", "new", clock.now) is False

        stored = memory_store.get_account(created.id)
        assert stored.password_hash == "new"
        assert stored.password_changed_at == clock.now

    def test_complete_reset_rejects_expired_code(self, memory_store, clock):
        created = memory_store.create_account(_account(clock))
        memory_store.set_reset_code(created.id, "code-hash", clock.now)

        assert memory_store.complete_password_reset(created.id, "code-hash", "new", clock.now) is False

    def test_cleanup_expired_reset_codes(self, memory_store, clock):
        alice = memory_store.create_account(_account(clock))
        bob = memory_store.create_account(_account(clock, username="bob", email="bob@x.com"))
        memory_store.set_reset_code(alice.id, "a", clock.now - timedelta(seconds=1))
        memory_store.set_reset_code(bob.id, "b", clock.now + timedelta(minutes=5))

        assert memory_store.cleanup_expired_reset_codes(clock.now) == 1
        assert memory_store.get_account(alice.id).reset_code_hash is None
        assert memory_store.get_account(bob.id).reset_code_hash == "b"

    def test_release_expired_lock_leaves_active_lock(self, memory_store, clock):
        created = memory_store.create_account(_account(clock))
        for _ in range(5):
            memory_store.register_failed_attempt(created.id, 5, 600, clock.now)

        still_locked = memory_store.release_expired_lock(created.id, clock.now)
        released = memory_store.release_expired_lock(
            created.id, clock.now + timedelta(seconds=600)
        )

        assert still_locked.lock_until is not None
        assert released.lock_until is None
        assert released.failed_attempts == 0
        assert memory_store.release_expired_lock("missing", clock.now) is None


class TestPersistence:
    def test_state_survives_reload(self, tmp_path, clock):
        store = MemoryStore(fs_root=str(tmp_path))
        created = store.create_account(_account(clock))
        store.register_failed_attempt(created.id, 5, 600, clock.now)
        store.set_reset_code(created.id, "code-hash", clock.now + timedelta(minutes=10))

        reloaded = MemoryStore(fs_root=str(tmp_path))

        account = reloaded.get_account_by_username("alice")
        assert account is not None
        assert account.id == created.id
        assert account.failed_attempts == 1
        assert account.reset_code_hash == "code-hash"
        assert account.reset_code_expires_at == clock.now + timedelta(minutes=10)
        assert account.password_changed_at == clock.now
        assert (tmp_path / "state" / "accounts.json").exists()

    def test_no_snapshot_without_fs_root(self, tmp_path, clock):
        store = MemoryStore()
        store.create_account(_account(clock))

        assert not (tmp_path / "state").exists()
