from __future__ import annotations

import base64
from typing import Any, Dict, List

from tokenwarden.service.keys import SIGNING_ALGORITHM, KeyStore


def int_to_base64url(value: int) -> str:
    """Minimal big-endian bytes (no sign byte), base64url without padding."""
    if value < 0:
        raise ValueError("JWK integers must be non-negative")
    length = max(1, (value.bit_length() + 7) // 8)
    raw = value.to_bytes(length, "big")
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def base64url_to_int(value: str) -> int:
    padded = value + "=" * (-len(value) % 4)
    return int.from_bytes(base64.urlsafe_b64decode(padded), "big")


class PublicKeyPublisher:
    """Renders the active public key as a JWKS document for external verifiers."""

    def __init__(self, key_store: KeyStore) -> None:
        self.key_store = key_store

    def jwk(self) -> Dict[str, str]:
        numbers = self.key_store.public_key.public_numbers()
        return {
            "kty": "RSA",
            "use": "sig",
            "alg": SIGNING_ALGORITHM,
            "kid": self.key_store.key_id,
            "n": int_to_base64url(numbers.n),
            "e": int_to_base64url(numbers.e),
        }

    def publish(self) -> Dict[str, List[Dict[str, Any]]]:
        return {"keys": [self.jwk()]}
