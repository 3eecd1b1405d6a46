"""RS256 access token issuance and verification.

The verification algorithm is pinned: a token header naming anything other
than RS256 is rejected before any key is touched, so ``none`` and HS256
tokens signed with the public key as an HMAC secret never verify.
Expiry is checked here rather than by PyJWT so that ``exp == now`` counts
as expired and no leeway applies.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

import jwt

from tokenwarden.logging import get_logger
from tokenwarden.service.errors import (
    MalformedTokenError,
    SignatureInvalidError,
    TokenExpiredError,
    UnsupportedTokenError,
)
from tokenwarden.service.keys import SIGNING_ALGORITHM, KeyStore

logger = get_logger(__name__)

ACCESS_KIND = "access"
REFRESH_KIND = "refresh"
_REQUIRED_CLAIMS = ["sub", "iat", "exp"]


@dataclass(frozen=True)
class TokenClaims:
    subject: str
    user_id: Optional[int]
    role: Optional[str]
    kind: Optional[str]
    issued_at: datetime
    expires_at: datetime
    raw: Dict[str, Any] = field(default_factory=dict)

    def claim(self, name: str, default: Any = None) -> Any:
        return self.raw.get(name, default)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


class TokenIssuer:
    def __init__(
        self,
        key_store: KeyStore,
        *,
        access_ttl: timedelta = timedelta(minutes=30),
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if access_ttl.total_seconds() <= 0:
            raise ValueError("access token ttl must be positive")
        self.key_store = key_store
        self.access_ttl = access_ttl
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def issue_access_token(
        self,
        user_id: int,
        subject: str,
        role: str,
        ttl: Optional[timedelta] = None,
        *,
        kind: str = ACCESS_KIND,
    ) -> str:
        lifetime = ttl if ttl is not None else self.access_ttl
        seconds = int(lifetime.total_seconds())
        if seconds <= 0:
            raise ValueError("token ttl must be at least one second")
        issued_at = int(self._clock().timestamp())
        pair = self.key_store.current_key_pair()
        payload = {
            "sub": subject,
            "iat": issued_at,
            "exp": issued_at + seconds,
            "user_id": user_id,
            "role": role,
            "type": kind,
        }
        return jwt.encode(
            payload,
            pair.private_key,
            algorithm=SIGNING_ALGORITHM,
            headers={"kid": pair.key_id},
        )

    def verify(self, token: str) -> TokenClaims:
        if not token or not isinstance(token, str):
            raise MalformedTokenError()
        try:
            header = jwt.get_unverified_header(token)
        except jwt.PyJWTError as exc:
            raise MalformedTokenError() from exc

        if header.get("alg") != SIGNING_ALGORITHM:
            logger.info("token_rejected", reason="unsupported_algorithm", alg=header.get("alg"))
            raise UnsupportedTokenError()
        public_key = self.key_store.public_key_for(header.get("kid"))
        if public_key is None:
            logger.info("token_rejected", reason="unknown_kid", kid=header.get("kid"))
            raise UnsupportedTokenError()

        try:
            payload = jwt.decode(
                token,
                public_key,
                algorithms=[SIGNING_ALGORITHM],
                options={
                    "verify_exp": False,
                    "verify_iat": False,
                    "require": _REQUIRED_CLAIMS,
                },
            )
        except jwt.InvalidSignatureError as exc:
            logger.info("token_rejected", reason="signature_invalid")
            raise SignatureInvalidError() from exc
        except jwt.InvalidAlgorithmError as exc:
            raise UnsupportedTokenError() from exc
        except jwt.PyJWTError as exc:
            raise MalformedTokenError() from exc

        iat, exp = payload.get("iat"), payload.get("exp")
        if not _is_int(iat) or not _is_int(exp) or not isinstance(payload.get("sub"), str):
            raise MalformedTokenError()
        expires_at = datetime.fromtimestamp(exp, tz=timezone.utc)
        if self._clock() >= expires_at:
            raise TokenExpiredError()

        user_id = payload.get("user_id")
        return TokenClaims(
            subject=payload["sub"],
            user_id=user_id if _is_int(user_id) else None,
            role=payload.get("role"),
            kind=payload.get("type"),
            issued_at=datetime.fromtimestamp(iat, tz=timezone.utc),
            expires_at=expires_at,
            raw=payload,
        )

    def verify_access_token(self, token: str) -> TokenClaims:
        claims = self.verify(token)
        if claims.kind != ACCESS_KIND:
            raise UnsupportedTokenError("wrong_token_type")
        if claims.user_id is None:
            raise MalformedTokenError()
        return claims
