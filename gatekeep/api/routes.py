from __future__ import annotations

from typing import Callable, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Response

from gatekeep.api.schemas import (
    AccountResponse,
    DeactivateAccountRequest,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    ProfileUpdateRequest,
    ProfileUpdateResponse,
    RegisterRequest,
    ResetPasswordRequest,
    RoleUpdateRequest,
    TokenResponse,
    VerifyResetCodeRequest,
)
from gatekeep.service.auth import AuthFailure, AuthResult
from gatekeep.service.errors import ErrorKind
from gatekeep.service.runtime import get_runtime
from gatekeep.storage.models import Account

router = APIRouter(prefix="/api")

NEW_TOKEN_HEADER = "X-New-Token"

# Same reply whether or not the address belongs to an account
FORGOT_PASSWORD_MESSAGE = "If that email is registered, a reset code has been sent"


def _http_error(
    code: str,
    message: str,
    status_code: int,
    details: Optional[dict | str] = None,
    headers: Optional[dict[str, str]] = None,
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


def _failure(error: AuthFailure) -> HTTPException:
    headers = None
    if error.kind == ErrorKind.ACCOUNT_LOCKED:
        headers = {"Retry-After": str(error.detail.get("remaining_seconds", 0))}
    return _http_error(
        error.code,
        error.message,
        status_code=error.status_code,
        details=error.detail or None,
        headers=headers,
    )


def _unwrap(result: AuthResult):
    if not result.ok:
        raise _failure(result.error)
    return result.value


def _account_response(account: Account) -> AccountResponse:
    return AccountResponse(
        id=account.id,
        username=account.username,
        email=account.email,
        phone=account.phone,
        role=account.role,
        is_active=account.is_active,
        created_at=account.created_at,
        last_login_at=account.last_login_at,
    )


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_current_account(
    response: Response,
    authorization: Optional[str] = Header(None),
) -> Account:
    token = _extract_bearer(authorization)
    if not token:
        raise _http_error(
            "unauthorized",
            "missing bearer token",
            status_code=401,
            headers={"WWW-Authenticate": "Bearer"},
        )
    check = _unwrap(await get_runtime().auth.verify_token(token))
    if check.reissued is not None:
        response.headers[NEW_TOKEN_HEADER] = check.reissued.token
    return check.account


def require_roles(*roles: str) -> Callable:
    async def _dependency(account: Account = Depends(get_current_account)) -> Account:
        return _unwrap(await get_runtime().auth.authorize(account, *roles))

    return _dependency


# -- auth -------------------------------------------------------------------


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create an account and return its first bearer token.

    Raises:
        400: malformed field or password below the minimum length
        409: email or username already registered
    """
    auth = get_runtime().auth
    account = _unwrap(
        await auth.register(body.username, body.email, body.password, phone=body.phone)
    )
    issued = _unwrap(await auth.issue_token(account))
    return Envelope(
        status="ok",
        data=TokenResponse(
            token=issued.token,
            expires_at=issued.expires_at,
            account=_account_response(account),
        ),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Exchange email or username plus password for a bearer token.

    Raises:
        401: invalid credentials
        403: account deactivated
        423: account temporarily locked after repeated failures
    """
    grant = _unwrap(await get_runtime().auth.login(body.identifier, body.password))
    return Envelope(
        status="ok",
        data=TokenResponse(
            token=grant.token,
            expires_at=grant.expires_at,
            account=_account_response(grant.account),
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(account: Account = Depends(get_current_account)):
    _unwrap(await get_runtime().auth.logout(account.id))
    return Envelope(status="ok", data={"message": "logged out"})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(account: Account = Depends(get_current_account)):
    return Envelope(status="ok", data=_account_response(account))


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest):
    _unwrap(await get_runtime().auth.request_password_reset(body.email))
    return Envelope(status="ok", data={"message": FORGOT_PASSWORD_MESSAGE})


@router.post("/auth/verify-reset-code", response_model=Envelope, tags=["auth"])
async def verify_reset_code(body: VerifyResetCodeRequest):
    _unwrap(await get_runtime().auth.verify_reset_code(body.email, body.code))
    return Envelope(status="ok", data={"valid": True})


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest):
    _unwrap(
        await get_runtime().auth.reset_password(body.email, body.code, body.new_password)
    )
    return Envelope(
        status="ok", data={"message": "password updated, please log in again"}
    )


# -- profile ----------------------------------------------------------------


@router.get("/user/profile", response_model=Envelope, tags=["user"])
async def get_profile(account: Account = Depends(get_current_account)):
    profile = _unwrap(await get_runtime().auth.get_profile(account.id))
    return Envelope(status="ok", data=_account_response(profile))


@router.put("/user/profile", response_model=Envelope, tags=["user"])
async def update_profile(
    body: ProfileUpdateRequest,
    response: Response,
    account: Account = Depends(get_current_account),
):
    """Update profile fields; changing the password requires the current one.

    A password change invalidates every earlier token, so the fresh one is
    returned in the body and the ``X-New-Token`` header.
    """
    update = _unwrap(
        await get_runtime().auth.update_profile(
            account.id,
            username=body.username,
            email=body.email,
            phone=body.phone,
            current_password=body.current_password,
            new_password=body.new_password,
        )
    )
    data = ProfileUpdateResponse(account=_account_response(update.account))
    if update.token is not None:
        data.token = update.token.token
        data.expires_at = update.token.expires_at
        response.headers[NEW_TOKEN_HEADER] = update.token.token
    return Envelope(status="ok", data=data)


@router.post("/user/account", response_model=Envelope, tags=["user"])
async def deactivate_account(
    body: DeactivateAccountRequest,
    account: Account = Depends(get_current_account),
):
    _unwrap(await get_runtime().auth.deactivate_account(account.id, body.password))
    return Envelope(status="ok", data={"message": "account deactivated"})


# -- admin ------------------------------------------------------------------


@router.put("/admin/users/{account_id}/role", response_model=Envelope, tags=["admin"])
async def set_role(
    body: RoleUpdateRequest,
    account_id: str = Path(..., max_length=64),
    admin: Account = Depends(require_roles("admin")),
):
    updated = _unwrap(await get_runtime().auth.set_role(account_id, body.role))
    return Envelope(status="ok", data=_account_response(updated))
