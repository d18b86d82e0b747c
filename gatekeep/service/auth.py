from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import datetime
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Generic,
    Optional,
    Protocol,
    TypeVar,
)

from gatekeep.logging import get_logger, hash_identifier, sanitize_error_message
from gatekeep.service.blocking import call_store
from gatekeep.service.errors import (
    AccountDeactivated,
    DependencyError,
    DuplicateEmail,
    DuplicateUsername,
    ErrorKind,
    InsufficientRole,
    InternalError,
    InvalidCredentials,
    InvalidToken,
    NotFoundError,
    ServiceError,
    SubjectUnavailable,
    ValidationFailed,
)
from gatekeep.service.lockout import LockoutGuard
from gatekeep.service.passwords import SecretHasher
from gatekeep.service.recovery import RecoveryFlow
from gatekeep.service.tokens import IssuedToken, TokenIssuer
from gatekeep.service.validation import (
    normalize_email,
    validate_email,
    validate_password,
    validate_phone,
    validate_username,
)
from gatekeep.storage.errors import ConstraintViolation, RecordNotFound
from gatekeep.storage.models import ROLES, Account, LockState, utcnow

logger = get_logger(__name__)

T = TypeVar("T")


class CredentialStore(Protocol):
    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def get_account_by_username(self, username: str) -> Optional[Account]: ...

    def create_account(self, account: Account) -> Account: ...

    def update_account(self, account_id: str, *, now: datetime, **changes) -> Account: ...

    def set_password(
        self,
        account_id: str,
        password_hash: str,
        now: datetime,
        *,
        clear_lockout: bool = False,
    ) -> Account: ...

    def deactivate_account(self, account_id: str, now: datetime) -> Account: ...

    def register_failed_attempt(
        self, account_id: str, threshold: int, lock_seconds: int, now: datetime
    ) -> LockState: ...

    def release_expired_lock(self, account_id: str, now: datetime) -> Optional[Account]: ...

    def reset_failed_attempts(self, account_id: str) -> None: ...

    def set_reset_code(
        self, account_id: str, code_hash: str, expires_at: datetime
    ) -> None: ...

    def clear_reset_code(
        self, account_id: str, expected_hash: Optional[str] = None
    ) -> bool: ...

    def complete_password_reset(
        self,
        account_id: str,
        expected_code_hash: str,
        password_hash: str,
        now: datetime,
    ) -> bool: ...

    def cleanup_expired_reset_codes(self, now: datetime) -> int: ...

    def ping(self) -> bool: ...


@dataclass(frozen=True)
class AuthFailure:
    kind: ErrorKind
    code: str
    status_code: int
    message: str
    detail: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AuthResult(Generic[T]):
    ok: bool
    value: Optional[T] = None
    error: Optional[AuthFailure] = None

    @classmethod
    def success(cls, value: Optional[T] = None) -> "AuthResult[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: AuthFailure) -> "AuthResult[T]":
        return cls(ok=False, error=error)

    @property
    def kind(self) -> Optional[ErrorKind]:
        return self.error.kind if self.error else None


@dataclass(frozen=True)
class LoginGrant:
    token: str
    expires_at: datetime
    account: Account


@dataclass(frozen=True)
class TokenCheck:
    subject_id: str
    issued_at: datetime
    expires_at: datetime
    account: Account
    reissued: Optional[IssuedToken] = None


@dataclass(frozen=True)
class ProfileUpdate:
    account: Account
    token: Optional[IssuedToken] = None


class AuthService:
    """Registration, login, bearer-token verification and password recovery.

    Every public coroutine returns an :class:`AuthResult`; errors raised by the
    components below are converted at this boundary and never escape.
    """

    def __init__(
        self,
        store: CredentialStore,
        hasher: SecretHasher,
        tokens: TokenIssuer,
        lockout: LockoutGuard,
        recovery: RecoveryFlow,
        *,
        min_password_length: int = 6,
        store_timeout: float = 5.0,
        diagnostic_errors: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.tokens = tokens
        self.lockout = lockout
        self.recovery = recovery
        self.min_password_length = min_password_length
        self.store_timeout = store_timeout
        self.diagnostic_errors = diagnostic_errors
        self._clock = clock
        self.logger = logger
        # Unknown identifiers are checked against this so both login paths pay one verify
        self._absent_digest = hasher.hash(secrets.token_urlsafe(16))

    # -- boundary ----------------------------------------------------------

    def _to_failure(self, exc: ServiceError) -> AuthFailure:
        message = exc.message
        detail = dict(exc.detail)
        if exc.status_code >= 500 and not self.diagnostic_errors:
            if isinstance(exc, DependencyError):
                message = (
                    exc.message
                    if exc.kind == ErrorKind.DELIVERY_FAILED
                    else "service temporarily unavailable"
                )
            else:
                message = "internal server error"
            detail = {}
        return AuthFailure(
            kind=exc.kind,
            code=exc.error_code,
            status_code=exc.status_code,
            message=message,
            detail=detail,
        )

    async def _run(
        self, operation: str, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any
    ) -> AuthResult[T]:
        try:
            value = await fn(*args, **kwargs)
        except ServiceError as exc:
            log_fn = self.logger.error if exc.status_code >= 500 else self.logger.info
            log_fn(
                "auth_operation_rejected",
                operation=operation,
                error_code=exc.error_code,
                kind=exc.kind.value,
            )
            return AuthResult.failure(self._to_failure(exc))
        except Exception as exc:
            self.logger.exception(
                "auth_operation_failed",
                operation=operation,
                error_type=type(exc).__name__,
            )
            internal = InternalError(
                "internal server error",
                detail={"error": sanitize_error_message(str(exc))},
            )
            return AuthResult.failure(self._to_failure(internal))
        return AuthResult.success(value)

    async def _store(
        self, fn: Callable[..., T], *args: Any, timeout: float | None = None, **kwargs: Any
    ) -> T:
        return await call_store(
            fn,
            *args,
            timeout=self.store_timeout if timeout is None else timeout,
            **kwargs,
        )

    @staticmethod
    def _duplicate(exc: ConstraintViolation) -> ServiceError:
        if exc.field == "username":
            return DuplicateUsername()
        return DuplicateEmail()

    async def _active_account(self, account_id: str) -> Account:
        account = await self._store(self.store.get_account, account_id)
        if account is None or not account.is_active:
            raise NotFoundError("account not found")
        return account

    # -- registration and login -------------------------------------------

    async def _register(
        self,
        username: str,
        email: str,
        password: str,
        phone: Optional[str],
        timeout: float | None,
    ) -> Account:
        username = validate_username(username)
        email = validate_email(email)
        validate_password(password, self.min_password_length)
        phone = validate_phone(phone)
        account = Account.new(
            username,
            email,
            self.hasher.hash(password),
            phone=phone,
            now=self._clock(),
        )
        try:
            created = await self._store(self.store.create_account, account, timeout=timeout)
        except ConstraintViolation as exc:
            self.logger.info("registration_conflict", field=exc.field)
            raise self._duplicate(exc) from exc
        self.logger.info("account_registered", user_id=created.id)
        return created

    async def register(
        self,
        username: str,
        email: str,
        password: str,
        phone: Optional[str] = None,
        *,
        timeout: float | None = None,
    ) -> AuthResult[Account]:
        return await self._run(
            "register", self._register, username, email, password, phone, timeout
        )

    async def _lookup(self, identifier: str, timeout: float | None) -> Optional[Account]:
        ident = (identifier or "").strip()
        if not ident:
            return None
        if "@" in ident:
            return await self._store(
                self.store.get_account_by_email, normalize_email(ident), timeout=timeout
            )
        return await self._store(self.store.get_account_by_username, ident, timeout=timeout)

    async def _login(self, identifier: str, password: str, timeout: float | None) -> LoginGrant:
        account = await self._lookup(identifier, timeout)
        if account is None:
            self.hasher.verify(password or "", self._absent_digest)
            self.logger.info(
                "login_unknown_identifier", identifier_hash=hash_identifier(identifier or "")
            )
            raise InvalidCredentials()
        # Lock check precedes any hashing
        account = await self.lockout.check(account, timeout=timeout)
        if not self.hasher.verify(password or "", account.password_hash):
            await self.lockout.record_failure(account, timeout=timeout)
            raise InvalidCredentials()
        if not account.is_active:
            self.logger.info("login_deactivated_account", user_id=account.id)
            raise AccountDeactivated()
        await self.lockout.record_success(account, timeout=timeout)
        now = self._clock()
        try:
            account = await self._store(
                self.store.update_account,
                account.id,
                now=now,
                last_login_at=now,
                timeout=timeout,
            )
        except RecordNotFound as exc:
            raise SubjectUnavailable() from exc
        issued = self.tokens.issue(account.id)
        self.logger.info("login_succeeded", user_id=account.id, token_id=issued.token_id)
        return LoginGrant(token=issued.token, expires_at=issued.expires_at, account=account)

    async def login(
        self, identifier: str, password: str, *, timeout: float | None = None
    ) -> AuthResult[LoginGrant]:
        return await self._run("login", self._login, identifier, password, timeout)

    # -- tokens ------------------------------------------------------------

    async def _verify_token(self, token: str, timeout: float | None) -> TokenCheck:
        claims = self.tokens.decode(token)
        account = await self._store(self.store.get_account, claims.subject_id, timeout=timeout)
        if account is None or not account.is_active:
            raise SubjectUnavailable()
        if (
            account.password_changed_at is not None
            and claims.issued_at < account.password_changed_at
        ):
            raise InvalidToken(
                "password changed, please log in again", reason="password_changed"
            )
        reissued = None
        if self.tokens.needs_refresh(claims):
            reissued = self.tokens.issue(account.id)
            self.logger.info("token_refreshed", user_id=account.id, token_id=reissued.token_id)
        return TokenCheck(
            subject_id=account.id,
            issued_at=claims.issued_at,
            expires_at=claims.expires_at,
            account=account,
            reissued=reissued,
        )

    async def verify_token(
        self, token: str, *, timeout: float | None = None
    ) -> AuthResult[TokenCheck]:
        return await self._run("verify_token", self._verify_token, token, timeout)

    async def _issue_token(self, account: Account) -> IssuedToken:
        return self.tokens.issue(account.id)

    async def issue_token(self, account: Account) -> AuthResult[IssuedToken]:
        return await self._run("issue_token", self._issue_token, account)

    async def _authorize(self, account: Account, roles: tuple[str, ...]) -> Account:
        if roles and account.role not in roles:
            self.logger.warning(
                "authorization_denied", user_id=account.id, role=account.role, required=list(roles)
            )
            raise InsufficientRole(account.role, roles)
        return account

    async def authorize(self, account: Account, *roles: str) -> AuthResult[Account]:
        return await self._run("authorize", self._authorize, account, roles)

    # -- recovery ----------------------------------------------------------

    async def _request_password_reset(self, email: str, timeout: float | None) -> None:
        await self.recovery.request_code(email or "", timeout=timeout)

    async def request_password_reset(
        self, email: str, *, timeout: float | None = None
    ) -> AuthResult[None]:
        return await self._run(
            "request_password_reset", self._request_password_reset, email, timeout
        )

    async def _verify_reset_code(self, email: str, code: str, timeout: float | None) -> None:
        await self.recovery.verify_code(email or "", code, timeout=timeout)

    async def verify_reset_code(
        self, email: str, code: str, *, timeout: float | None = None
    ) -> AuthResult[None]:
        return await self._run(
            "verify_reset_code", self._verify_reset_code, email, code, timeout
        )

    async def _reset_password(
        self, email: str, code: str, new_password: str, timeout: float | None
    ) -> None:
        await self.recovery.reset_password(email or "", code, new_password, timeout=timeout)

    async def reset_password(
        self,
        email: str,
        code: str,
        new_password: str,
        *,
        timeout: float | None = None,
    ) -> AuthResult[None]:
        return await self._run(
            "reset_password", self._reset_password, email, code, new_password, timeout
        )

    async def _purge_expired_reset_codes(self) -> int:
        cleared = await self._store(self.store.cleanup_expired_reset_codes, self._clock())
        if cleared:
            self.logger.info("expired_reset_codes_purged", count=cleared)
        return cleared

    async def purge_expired_reset_codes(self) -> AuthResult[int]:
        return await self._run("purge_expired_reset_codes", self._purge_expired_reset_codes)

    # -- profile -----------------------------------------------------------

    async def _get_profile(self, account_id: str) -> Account:
        return await self._active_account(account_id)

    async def get_profile(self, account_id: str) -> AuthResult[Account]:
        return await self._run("get_profile", self._get_profile, account_id)

    async def _update_profile(
        self,
        account_id: str,
        *,
        username: Optional[str] = None,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        current_password: Optional[str] = None,
        new_password: Optional[str] = None,
    ) -> ProfileUpdate:
        account = await self._active_account(account_id)
        changes: Dict[str, Any] = {}
        if username is not None and username != account.username:
            changes["username"] = validate_username(username)
        if email is not None and normalize_email(email) != account.email:
            changes["email"] = validate_email(email)
        if phone is not None:
            changes["phone"] = validate_phone(phone)
        if new_password is not None:
            if not current_password or not self.hasher.verify(
                current_password, account.password_hash
            ):
                raise ValidationFailed(
                    "current password is incorrect",
                    detail={"field": "current_password"},
                )
            validate_password(new_password, self.min_password_length)

        now = self._clock()
        if changes:
            try:
                account = await self._store(
                    self.store.update_account, account.id, now=now, **changes
                )
            except ConstraintViolation as exc:
                raise self._duplicate(exc) from exc
            self.logger.info("profile_updated", user_id=account.id, fields=sorted(changes))

        token = None
        if new_password is not None:
            account = await self._store(
                self.store.set_password, account.id, self.hasher.hash(new_password), now
            )
            # Every token issued before the change is now dead; hand out a fresh one
            token = self.tokens.issue(account.id)
            self.logger.info("password_changed", user_id=account.id)
        return ProfileUpdate(account=account, token=token)

    async def update_profile(
        self,
        account_id: str,
        *,
        username: Optional[str] = None,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        current_password: Optional[str] = None,
        new_password: Optional[str] = None,
    ) -> AuthResult[ProfileUpdate]:
        return await self._run(
            "update_profile",
            self._update_profile,
            account_id,
            username=username,
            email=email,
            phone=phone,
            current_password=current_password,
            new_password=new_password,
        )

    async def _deactivate_account(self, account_id: str, password: str) -> Account:
        account = await self._active_account(account_id)
        if not self.hasher.verify(password or "", account.password_hash):
            raise ValidationFailed(
                "password is incorrect", detail={"field": "password"}
            )
        try:
            account = await self._store(
                self.store.deactivate_account, account.id, self._clock()
            )
        except ConstraintViolation as exc:
            self.logger.error(
                "deactivation_identifier_taken", user_id=account.id, field=exc.field
            )
            raise self._duplicate(exc) from exc
        self.logger.info("account_deactivated", user_id=account.id)
        return account

    async def deactivate_account(self, account_id: str, password: str) -> AuthResult[Account]:
        return await self._run(
            "deactivate_account", self._deactivate_account, account_id, password
        )

    async def _logout(self, account_id: str) -> None:
        # Bearer tokens are stateless; the client discards its copy
        self.logger.info("user_logged_out", user_id=account_id)

    async def logout(self, account_id: str) -> AuthResult[None]:
        return await self._run("logout", self._logout, account_id)

    async def _set_role(self, account_id: str, role: str) -> Account:
        if role not in ROLES:
            raise ValidationFailed(
                f"role must be one of {', '.join(ROLES)}", detail={"field": "role"}
            )
        await self._active_account(account_id)
        account = await self._store(
            self.store.update_account, account_id, now=self._clock(), role=role
        )
        self.logger.info("role_changed", user_id=account_id, role=role)
        return account

    async def set_role(self, account_id: str, role: str) -> AuthResult[Account]:
        return await self._run("set_role", self._set_role, account_id, role)

    async def ping(self, *, timeout: float | None = None) -> bool:
        return bool(await self._store(self.store.ping, timeout=timeout))
