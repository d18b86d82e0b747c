from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, Optional

from gatekeep.logging import get_logger
from gatekeep.storage.errors import ConstraintViolation, RecordNotFound
from gatekeep.storage.models import Account, LockState, defaced_identifiers

_MUTABLE_PROFILE_FIELDS = frozenset(
    {"username", "email", "phone", "role", "last_login_at", "is_active"}
)


class MemoryStore:
    """Thread-safe in-memory credential store.

    Every read returns a copy and every mutation runs under ``_data_lock``, so
    the compound operations (increment-and-lock, compare-and-clear) are atomic
    with respect to each other. When ``fs_root`` is given the accounts are
    snapshotted to ``<fs_root>/state/accounts.json`` after each write and
    reloaded on construction.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self._email_index: Dict[str, str] = {}
        self._username_index: Dict[str, str] = {}
        # RLock so helpers can re-enter while a public method holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "accounts.json"

    @staticmethod
    def _username_key(username: str) -> str:
        return username.lower()

    def _get(self, account_id: str) -> Account:
        account = self.accounts.get(account_id)
        if account is None:
            raise RecordNotFound(account_id)
        return account

    # -- reads -------------------------------------------------------------

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return replace(account) if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._data_lock:
            account_id = self._email_index.get(email.strip().lower())
            return self.get_account(account_id) if account_id else None

    def get_account_by_username(self, username: str) -> Optional[Account]:
        with self._data_lock:
            account_id = self._username_index.get(self._username_key(username))
            return self.get_account(account_id) if account_id else None

    def ping(self) -> bool:
        return True

    # -- account lifecycle -------------------------------------------------

    def create_account(self, account: Account) -> Account:
        with self._data_lock:
            if account.email in self._email_index:
                raise ConstraintViolation("email already exists", {"field": "email"})
            username_key = self._username_key(account.username)
            if username_key in self._username_index:
                raise ConstraintViolation(
                    "username already exists", {"field": "username"}
                )
            stored = replace(account)
            self.accounts[stored.id] = stored
            self._email_index[stored.email] = stored.id
            self._username_index[username_key] = stored.id
            self._persist_state()
            return replace(stored)

    def update_account(self, account_id: str, *, now: datetime, **changes) -> Account:
        unknown = set(changes) - _MUTABLE_PROFILE_FIELDS
        if unknown:
            raise ValueError(f"unsupported account fields: {sorted(unknown)}")
        with self._data_lock:
            account = self._get(account_id)
            new_email = changes.get("email")
            if new_email is not None:
                new_email = new_email.strip().lower()
                changes["email"] = new_email
                owner = self._email_index.get(new_email)
                if owner is not None and owner != account_id:
                    raise ConstraintViolation("email already exists", {"field": "email"})
            new_username = changes.get("username")
            if new_username is not None:
                owner = self._username_index.get(self._username_key(new_username))
                if owner is not None and owner != account_id:
                    raise ConstraintViolation(
                        "username already exists", {"field": "username"}
                    )
            if new_email is not None and new_email != account.email:
                self._email_index.pop(account.email, None)
                self._email_index[new_email] = account_id
            if new_username is not None and new_username != account.username:
                self._username_index.pop(self._username_key(account.username), None)
                self._username_index[self._username_key(new_username)] = account_id
            updated = replace(account, **changes, updated_at=now)
            self.accounts[account_id] = updated
            self._persist_state()
            return replace(updated)

    def set_password(
        self,
        account_id: str,
        password_hash: str,
        now: datetime,
        *,
        clear_lockout: bool = False,
    ) -> Account:
        with self._data_lock:
            account = self._get(account_id)
            changes = {
                "password_hash": password_hash,
                "password_changed_at": now,
                "updated_at": now,
            }
            if clear_lockout:
                changes.update(failed_attempts=0, lock_until=None)
            updated = replace(account, **changes)
            self.accounts[account_id] = updated
            self._persist_state()
            return replace(updated)

    def deactivate_account(self, account_id: str, now: datetime) -> Account:
        """Soft delete: deface identifiers so they can be registered again."""
        with self._data_lock:
            account = self._get(account_id)
            username, email = defaced_identifiers(account.id)
            for index, key, field_name in (
                (self._email_index, email, "email"),
                (self._username_index, self._username_key(username), "username"),
            ):
                owner = index.get(key)
                if owner is not None and owner != account_id:
                    raise ConstraintViolation(
                        f"{field_name} already exists", {"field": field_name}
                    )
            self._email_index.pop(account.email, None)
            self._username_index.pop(self._username_key(account.username), None)
            updated = replace(
                account,
                username=username,
                email=email,
                is_active=False,
                reset_code_hash=None,
                reset_code_expires_at=None,
                updated_at=now,
            )
            self.accounts[account_id] = updated
            self._email_index[email] = account_id
            self._username_index[self._username_key(username)] = account_id
            self._persist_state()
            return replace(updated)

    # -- lockout -----------------------------------------------------------

    def register_failed_attempt(
        self, account_id: str, threshold: int, lock_seconds: int, now: datetime
    ) -> LockState:
        with self._data_lock:
            account = self._get(account_id)
            attempts = account.failed_attempts
            if account.lock_until is not None and account.lock_until <= now:
                # Stale lock: the window restarts with this failure
                attempts = 0
            attempts += 1
            lock_until = account.lock_until if account.is_locked(now) else None
            if attempts >= threshold and lock_until is None:
                lock_until = now + timedelta(seconds=lock_seconds)
            self.accounts[account_id] = replace(
                account, failed_attempts=attempts, lock_until=lock_until, updated_at=now
            )
            self._persist_state()
            return LockState(failed_attempts=attempts, lock_until=lock_until)

    def release_expired_lock(self, account_id: str, now: datetime) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account is None:
                return None
            if account.lock_until is not None and account.lock_until <= now:
                account = replace(
                    account, failed_attempts=0, lock_until=None, updated_at=now
                )
                self.accounts[account_id] = account
                self._persist_state()
            return replace(account)

    def reset_failed_attempts(self, account_id: str) -> None:
        with self._data_lock:
            account = self._get(account_id)
            if account.failed_attempts == 0 and account.lock_until is None:
                return
            self.accounts[account_id] = replace(
                account, failed_attempts=0, lock_until=None
            )
            self._persist_state()

    # -- recovery codes ----------------------------------------------------

    def set_reset_code(
        self, account_id: str, code_hash: str, expires_at: datetime
    ) -> None:
        with self._data_lock:
            account = self._get(account_id)
            self.accounts[account_id] = replace(
                account, reset_code_hash=code_hash, reset_code_expires_at=expires_at
            )
            self._persist_state()

    def clear_reset_code(
        self, account_id: str, expected_hash: Optional[str] = None
    ) -> bool:
        """Remove the pending code; with ``expected_hash`` only if it still matches."""
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account is None or account.reset_code_hash is None:
                return False
            if expected_hash is not None and account.reset_code_hash != expected_hash:
                return False
            self.accounts[account_id] = replace(
                account, reset_code_hash=None, reset_code_expires_at=None
            )
            self._persist_state()
            return True

    def complete_password_reset(
        self,
        account_id: str,
        expected_code_hash: str,
        password_hash: str,
        now: datetime,
    ) -> bool:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account is None or account.reset_code_hash != expected_code_hash:
                return False
            if account.reset_code_expires_at is None or account.reset_code_expires_at <= now:
                return False
            self.accounts[account_id] = replace(
                account,
                password_hash=password_hash,
                password_changed_at=now,
                reset_code_hash=None,
                reset_code_expires_at=None,
                failed_attempts=0,
                lock_until=None,
                updated_at=now,
            )
            self._persist_state()
            return True

    def cleanup_expired_reset_codes(self, now: datetime) -> int:
        with self._data_lock:
            expired = [
                account
                for account in self.accounts.values()
                if account.reset_code_expires_at is not None
                and account.reset_code_expires_at <= now
            ]
            for account in expired:
                self.accounts[account.id] = replace(
                    account, reset_code_hash=None, reset_code_expires_at=None
                )
            if expired:
                self._persist_state()
            return len(expired)

    # -- snapshot ----------------------------------------------------------

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {"accounts": [a.to_record() for a in self.accounts.values()]}
        path = self._state_path()
        tmp_path = path.with_suffix(".json.tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            tmp_path.replace(path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            record["id"]: Account.from_record(record)
            for record in data.get("accounts", [])
        }
        self._email_index = {a.email: a.id for a in self.accounts.values()}
        self._username_index = {
            self._username_key(a.username): a.id for a in self.accounts.values()
        }
        self.logger.info("memory_store_loaded", accounts=len(self.accounts))
        return True
