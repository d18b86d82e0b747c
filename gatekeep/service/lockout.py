from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable, Optional

from gatekeep.logging import get_logger
from gatekeep.service.blocking import call_store
from gatekeep.service.errors import AccountLocked, SubjectUnavailable
from gatekeep.storage.models import Account, LockState, utcnow

if TYPE_CHECKING:
    from gatekeep.service.auth import CredentialStore

logger = get_logger(__name__)

LOCK_OPEN = "open"
LOCK_LOCKED = "locked"


class LockoutGuard:
    """Failed-login accounting with a time-bounded lock.

    Lock expiry is evaluated lazily: an elapsed ``lock_until`` already counts
    as unlocked and is cleared the next time the account is checked.
    """

    def __init__(
        self,
        store: "CredentialStore",
        *,
        threshold: int = 5,
        lock_duration: timedelta = timedelta(minutes=10),
        clock: Callable[[], datetime] = utcnow,
        store_timeout: float = 5.0,
    ) -> None:
        self.store = store
        self.threshold = threshold
        self.lock_duration = lock_duration
        self._clock = clock
        self.store_timeout = store_timeout

    def _bound(self, timeout: float | None) -> float:
        return self.store_timeout if timeout is None else timeout

    def lock_state(self, account: Account, now: Optional[datetime] = None) -> str:
        return LOCK_LOCKED if account.is_locked(now or self._clock()) else LOCK_OPEN

    def remaining_seconds(self, account: Account, now: Optional[datetime] = None) -> int:
        if account.lock_until is None:
            return 0
        delta = (account.lock_until - (now or self._clock())).total_seconds()
        return max(0, math.ceil(delta))

    async def check(self, account: Account, *, timeout: float | None = None) -> Account:
        """Raise :class:`AccountLocked` while the lock holds; release it once elapsed."""
        now = self._clock()
        if account.is_locked(now):
            remaining = self.remaining_seconds(account, now)
            logger.info("login_blocked_locked", user_id=account.id, remaining_seconds=remaining)
            raise AccountLocked(remaining_seconds=remaining)
        if account.lock_until is None:
            return account
        refreshed = await call_store(
            self.store.release_expired_lock,
            account.id,
            now,
            timeout=self._bound(timeout),
        )
        if refreshed is None:
            raise SubjectUnavailable()
        logger.info("account_lock_expired", user_id=account.id)
        # A concurrent request may have re-locked the account in between
        if refreshed.is_locked(now):
            raise AccountLocked(remaining_seconds=self.remaining_seconds(refreshed, now))
        return refreshed

    async def record_failure(
        self, account: Account, *, timeout: float | None = None
    ) -> LockState:
        now = self._clock()
        state = await call_store(
            self.store.register_failed_attempt,
            account.id,
            self.threshold,
            int(self.lock_duration.total_seconds()),
            now,
            timeout=self._bound(timeout),
        )
        if state.locked and state.failed_attempts == self.threshold:
            logger.warning(
                "account_locked",
                user_id=account.id,
                failed_attempts=state.failed_attempts,
                lock_until=state.lock_until.isoformat(),
            )
        else:
            logger.info(
                "login_failed", user_id=account.id, failed_attempts=state.failed_attempts
            )
        return state

    async def record_success(self, account: Account, *, timeout: float | None = None) -> None:
        if account.failed_attempts == 0 and account.lock_until is None:
            return
        await call_store(
            self.store.reset_failed_attempts,
            account.id,
            timeout=self._bound(timeout),
        )
