from __future__ import annotations

import secrets
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable, Optional, Protocol, Tuple

from gatekeep.logging import get_logger, hash_identifier
from gatekeep.service.blocking import call_notifier, call_store
from gatekeep.service.errors import DeliveryFailed, InvalidOrExpiredCode
from gatekeep.service.passwords import SecretHasher
from gatekeep.service.validation import validate_password
from gatekeep.storage.models import Account, utcnow

if TYPE_CHECKING:
    from gatekeep.service.auth import CredentialStore

logger = get_logger(__name__)

CODE_DIGITS = 6


class Notifier(Protocol):
    def deliver(self, destination: str, subject: str, payload: str) -> bool: ...


def generate_code(digits: int = CODE_DIGITS) -> str:
    """Uniform, zero-padded numeric code from the OS CSPRNG."""
    return f"{secrets.randbelow(10 ** digits):0{digits}d}"


def render_reset_message(app_name: str, code: str, ttl_minutes: int) -> Tuple[str, str]:
    subject = f"Your {app_name} password reset code"
    body = f"""We received a request to reset your {app_name} password.

Your reset code is: {code}

The code expires in {ttl_minutes} minutes and can be used once.

If you didn't request this, you can safely ignore this email.

---
{app_name}
"""
    return subject, body


class RecoveryFlow:
    """One-time numeric codes for password recovery.

    Codes are stored only as salted hashes, one per account; issuing a new
    code replaces the previous one. Requests for unknown or deactivated
    addresses complete exactly like real ones so callers cannot probe which
    emails are registered.
    """

    def __init__(
        self,
        store: "CredentialStore",
        hasher: SecretHasher,
        notifier: Notifier,
        *,
        code_ttl: timedelta = timedelta(minutes=10),
        min_password_length: int = 6,
        app_name: str = "Gatekeep",
        clock: Callable[[], datetime] = utcnow,
        store_timeout: float = 5.0,
        notifier_timeout: float = 30.0,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.notifier = notifier
        self.code_ttl = code_ttl
        self.min_password_length = min_password_length
        self.app_name = app_name
        self._clock = clock
        self.store_timeout = store_timeout
        self.notifier_timeout = notifier_timeout

    def _bound(self, timeout: float | None) -> float:
        return self.store_timeout if timeout is None else timeout

    async def _find_active(self, email: str, timeout: float | None) -> Optional[Account]:
        account = await call_store(
            self.store.get_account_by_email,
            email.strip().lower(),
            timeout=self._bound(timeout),
        )
        if account is None or not account.is_active:
            return None
        return account

    async def request_code(self, email: str, *, timeout: float | None = None) -> None:
        account = await self._find_active(email, timeout)
        if account is None:
            logger.info("password_reset_unknown_email", email_hash=hash_identifier(email))
            return

        code = generate_code()
        code_hash = self.hasher.hash(code)
        expires_at = self._clock() + self.code_ttl
        await call_store(
            self.store.set_reset_code,
            account.id,
            code_hash,
            expires_at,
            timeout=self._bound(timeout),
        )

        subject, body = render_reset_message(
            self.app_name, code, int(self.code_ttl.total_seconds() // 60)
        )
        delivered = await call_notifier(
            self.notifier.deliver,
            account.email,
            subject,
            body,
            timeout=self.notifier_timeout if timeout is None else timeout,
        )
        if not delivered:
            # Only withdraw our own code; a newer request may have superseded it
            await call_store(
                self.store.clear_reset_code,
                account.id,
                code_hash,
                timeout=self._bound(timeout),
            )
            logger.error("reset_code_delivery_failed", user_id=account.id)
            raise DeliveryFailed()
        logger.info(
            "reset_code_issued", user_id=account.id, expires_at=expires_at.isoformat()
        )

    async def _verified(
        self, email: str, code: str, timeout: float | None
    ) -> Tuple[Account, str]:
        account = await self._find_active(email, timeout)
        if account is None or account.reset_code_hash is None:
            raise InvalidOrExpiredCode()
        if account.reset_code_expires_at is None or account.reset_code_expires_at <= self._clock():
            raise InvalidOrExpiredCode()
        candidate = (code or "").strip()
        if len(candidate) != CODE_DIGITS or not candidate.isdigit():
            raise InvalidOrExpiredCode()
        if not self.hasher.verify(candidate, account.reset_code_hash):
            logger.info("reset_code_mismatch", user_id=account.id)
            raise InvalidOrExpiredCode()
        return account, account.reset_code_hash

    async def verify_code(
        self, email: str, code: str, *, timeout: float | None = None
    ) -> Account:
        """Check a code without consuming it."""
        account, _ = await self._verified(email, code, timeout)
        return account

    async def reset_password(
        self,
        email: str,
        code: str,
        new_password: str,
        *,
        timeout: float | None = None,
    ) -> Account:
        validate_password(new_password, self.min_password_length)
        account, code_hash = await self._verified(email, code, timeout)
        new_hash = self.hasher.hash(new_password)
        now = self._clock()
        consumed = await call_store(
            self.store.complete_password_reset,
            account.id,
            code_hash,
            new_hash,
            now,
            timeout=self._bound(timeout),
        )
        if not consumed:
            # Lost the race to a concurrent reset or a newer code
            logger.info("reset_code_consumed_concurrently", user_id=account.id)
            raise InvalidOrExpiredCode()
        logger.info("password_reset_completed", user_id=account.id)
        refreshed = await call_store(
            self.store.get_account, account.id, timeout=self._bound(timeout)
        )
        return refreshed or account
