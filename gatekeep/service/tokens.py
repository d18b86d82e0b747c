from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from gatekeep.logging import get_logger
from gatekeep.service.errors import (
    InternalError,
    InvalidToken,
    TokenExpired,
    TokenNotActive,
)
from gatekeep.storage.models import from_epoch, utcnow

logger = get_logger(__name__)

Clock = Callable[[], datetime]

_REQUIRED_CLAIMS = ("sub", "iat", "exp", "iss", "aud")


@dataclass(frozen=True)
class IssuedToken:
    token: str
    subject_id: str
    issued_at: datetime
    expires_at: datetime
    token_id: str


@dataclass(frozen=True)
class TokenClaims:
    subject_id: str
    issued_at: datetime
    expires_at: datetime
    not_before: Optional[datetime]
    token_id: Optional[str]


class TokenIssuer:
    """HS256 bearer tokens with a sliding refresh window.

    ``refresh_ratio`` is the share of the total lifetime that, once it is all
    that remains, makes :meth:`needs_refresh` report a reissue is due.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        ttl: timedelta = timedelta(days=7),
        refresh_ratio: float = 2 / 7,
        leeway_seconds: int = 0,
        clock: Clock = utcnow,
    ) -> None:
        if not secret:
            raise ValueError("token signing secret must not be empty")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.ttl = ttl
        self.refresh_ratio = refresh_ratio
        self.leeway_seconds = leeway_seconds
        self._clock = clock

    def __repr__(self) -> str:
        return f"TokenIssuer(issuer={self.issuer!r}, audience={self.audience!r})"

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def issue(self, subject_id: str) -> IssuedToken:
        now = self._clock()
        iat = now.timestamp()
        exp = iat + self.ttl.total_seconds()
        jti = str(uuid.uuid4())
        payload = {
            "sub": subject_id,
            "iat": iat,
            "nbf": iat,
            "exp": exp,
            "iss": self.issuer,
            "aud": self.audience,
            "jti": jti,
        }
        header = {"alg": "HS256", "typ": "JWT"}
        try:
            header_enc = self._encode_segment(
                json.dumps(header, separators=(",", ":")).encode()
            )
            payload_enc = self._encode_segment(
                json.dumps(payload, separators=(",", ":")).encode()
            )
            signing_input = f"{header_enc}.{payload_enc}"
            token = f"{signing_input}.{self._sign(signing_input)}"
        except (TypeError, ValueError) as exc:
            logger.error("token_sign_failed", error_type=type(exc).__name__)
            raise InternalError("unable to sign token") from exc
        return IssuedToken(
            token=token,
            subject_id=subject_id,
            issued_at=from_epoch(iat),
            expires_at=from_epoch(exp),
            token_id=jti,
        )

    def decode(self, token: str) -> TokenClaims:
        """Validate signature and time claims.

        Raises :class:`InvalidToken`, :class:`TokenExpired` or
        :class:`TokenNotActive`. Subject checks belong to the caller.
        """
        if not token or not isinstance(token, str):
            raise InvalidToken()
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidToken() from None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise InvalidToken() from None
        # Only HS256 is accepted; anything else is an algorithm confusion attempt
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidToken(reason="algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not sig_b64.isascii() or not hmac.compare_digest(expected_sig, sig_b64):
            raise InvalidToken(reason="signature")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_payload_decode_failed")
            raise InvalidToken() from None
        if not isinstance(payload, dict):
            raise InvalidToken()
        return self._validate_claims(payload)

    def _validate_claims(self, payload: dict[str, Any]) -> TokenClaims:
        if any(payload.get(claim) in (None, "") for claim in _REQUIRED_CLAIMS):
            raise InvalidToken(reason="claims")
        if payload.get("iss") != self.issuer:
            raise InvalidToken(reason="issuer")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise InvalidToken(reason="audience")
        try:
            iat = float(payload["iat"])
            exp = float(payload["exp"])
            nbf = float(payload["nbf"]) if payload.get("nbf") is not None else None
        except (TypeError, ValueError):
            raise InvalidToken(reason="claims") from None

        now = self._clock().timestamp()
        if exp <= now - self.leeway_seconds:
            raise TokenExpired(expired_at=exp)
        if nbf is not None and nbf > now + self.leeway_seconds:
            raise TokenNotActive(not_before=nbf)
        return TokenClaims(
            subject_id=str(payload["sub"]),
            issued_at=from_epoch(iat),
            expires_at=from_epoch(exp),
            not_before=from_epoch(nbf),
            token_id=payload.get("jti"),
        )

    def needs_refresh(self, claims: TokenClaims, now: Optional[datetime] = None) -> bool:
        current = (now or self._clock()).timestamp()
        remaining = claims.expires_at.timestamp() - current
        total = claims.expires_at.timestamp() - claims.issued_at.timestamp()
        if total <= 0 or remaining <= 0:
            return False
        return remaining < self.refresh_ratio * total
