"""RSA signing key lifecycle.

``KeyStore`` loads the configured key pair (or generates an ephemeral one)
and refuses to finish construction unless the pair passes a sign/verify
self-test and a full RS256 token round trip.

Private keys may arrive as PKCS#8 or as legacy PKCS#1 ``RSAPrivateKey``
structures. PKCS#1 input is wrapped into a PKCS#8 envelope by
``pkcs1_to_pkcs8`` before loading.
"""

from __future__ import annotations

import base64
import binascii
import re
import time
from dataclasses import dataclass
from typing import Optional, Tuple

import jwt
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from tokenwarden.logging import get_logger
from tokenwarden.service.errors import KeyConfigurationError, KeySelfTestError

logger = get_logger(__name__)

SIGNING_ALGORITHM = "RS256"
MIN_KEY_SIZE = 2048
GENERATED_KEY_SIZE = 2048
SELF_TEST_PAYLOAD = b"tokenwarden-rsa-self-test"

# AlgorithmIdentifier for rsaEncryption (1.2.840.113549.1.1.1) with NULL params
_RSA_ALGORITHM_IDENTIFIER = bytes.fromhex("300d06092a864886f70d0101010500")
_VERSION_ZERO = bytes.fromhex("020100")

_PEM_ARMOR = re.compile(r"-----(BEGIN|END) [A-Z ]+-----")


def _der_length(length: int) -> bytes:
    if length < 0x80:
        return bytes([length])
    body = length.to_bytes((length.bit_length() + 7) // 8, "big")
    return bytes([0x80 | len(body)]) + body


def _read_length(data: bytes, offset: int) -> Tuple[int, int]:
    """Decode a DER length at ``offset``; return (length, offset of content)."""
    if offset >= len(data):
        raise ValueError("truncated DER length")
    first = data[offset]
    if first < 0x80:
        return first, offset + 1
    count = first & 0x7F
    if count == 0 or count > 4 or offset + 1 + count > len(data):
        raise ValueError("unsupported DER length encoding")
    return int.from_bytes(data[offset + 1 : offset + 1 + count], "big"), offset + 1 + count


def pkcs1_to_pkcs8(pkcs1_der: bytes) -> bytes:
    """Wrap a PKCS#1 RSAPrivateKey DER blob in a PKCS#8 PrivateKeyInfo.

    PrivateKeyInfo ::= SEQUENCE {
        version             INTEGER (0),
        privateKeyAlgorithm AlgorithmIdentifier (rsaEncryption, NULL),
        privateKey          OCTET STRING (the PKCS#1 bytes)
    }
    """
    if not pkcs1_der:
        raise ValueError("empty key material")
    octet_string = b"\x04" + _der_length(len(pkcs1_der)) + pkcs1_der
    body = _VERSION_ZERO + _RSA_ALGORITHM_IDENTIFIER + octet_string
    return b"\x30" + _der_length(len(body)) + body


def is_pkcs1_private_key(der: bytes) -> bool:
    """Tell PKCS#1 from PKCS#8 by the element following the version INTEGER.

    Both start ``SEQUENCE { INTEGER 0, ... }``. PKCS#1 continues with the
    modulus (INTEGER, tag 0x02); PKCS#8 continues with the
    AlgorithmIdentifier (SEQUENCE, tag 0x30).
    """
    try:
        if not der or der[0] != 0x30:
            return False
        _, offset = _read_length(der, 1)
        if der[offset : offset + 3] != _VERSION_ZERO:
            return False
        return der[offset + 3] == 0x02
    except (ValueError, IndexError):
        return False


def clean_pem(material: str) -> bytes:
    """Strip PEM armor and whitespace and return the DER bytes.

    Accepts full PEM text, a bare base64 body, and environment values where
    newlines were written as a literal ``\\n``.
    """
    text = material.replace("\\n", "\n")
    text = _PEM_ARMOR.sub("", text)
    text = "".join(text.split())
    if not text:
        raise KeyConfigurationError("key material is empty")
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise KeyConfigurationError("key material is not valid base64/PEM") from exc


def load_private_key(material: str) -> rsa.RSAPrivateKey:
    der = clean_pem(material)
    if is_pkcs1_private_key(der):
        logger.info("signing_key_pkcs1_converted")
        der = pkcs1_to_pkcs8(der)
    try:
        key = serialization.load_der_private_key(der, password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise KeyConfigurationError("private key could not be parsed") from exc
    if not isinstance(key, rsa.RSAPrivateKey):
        raise KeyConfigurationError("private key must be an RSA key")
    return key


def load_public_key(material: str) -> rsa.RSAPublicKey:
    der = clean_pem(material)
    try:
        key = serialization.load_der_public_key(der)
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise KeyConfigurationError("public key could not be parsed") from exc
    if not isinstance(key, rsa.RSAPublicKey):
        raise KeyConfigurationError("public key must be an RSA key")
    return key


@dataclass(frozen=True)
class SigningKeyPair:
    private_key: rsa.RSAPrivateKey
    public_key: rsa.RSAPublicKey
    key_id: str


class KeyStore:
    """Owns the process's signing key pair.

    Construct it once in the composition root and inject it. ``is_ephemeral``
    is True when no key material was configured and a throwaway pair was
    generated; tokens signed with such a key stop verifying on restart.
    """

    def __init__(
        self,
        private_key_material: Optional[str] = None,
        public_key_material: Optional[str] = None,
        *,
        key_id: str,
        allow_ephemeral: bool = True,
        log_generated_public_key: bool = False,
    ) -> None:
        if not key_id:
            raise KeyConfigurationError("key id must not be empty")
        has_private = bool(private_key_material and private_key_material.strip())
        has_public = bool(public_key_material and public_key_material.strip())
        if has_private != has_public:
            raise KeyConfigurationError(
                "JWT_PRIVATE_KEY and JWT_PUBLIC_KEY must be configured together"
            )

        if has_private:
            private_key = load_private_key(private_key_material)
            public_key = load_public_key(public_key_material)
            self.is_ephemeral = False
        else:
            if not allow_ephemeral:
                raise KeyConfigurationError(
                    "no signing key configured and ephemeral keys are disabled"
                )
            private_key = rsa.generate_private_key(
                public_exponent=65537, key_size=GENERATED_KEY_SIZE
            )
            public_key = private_key.public_key()
            self.is_ephemeral = True
            logger.warning(
                "ephemeral_signing_key_generated",
                key_id=key_id,
                key_size=GENERATED_KEY_SIZE,
                message=(
                    "No JWT_PRIVATE_KEY/JWT_PUBLIC_KEY configured; generated a key pair "
                    "for this process only. Tokens will not verify after restart. "
                    "Do not run like this in production."
                ),
            )
            if log_generated_public_key:
                logger.warning(
                    "ephemeral_signing_key_public",
                    key_id=key_id,
                    public_key=public_key.public_bytes(
                        serialization.Encoding.PEM,
                        serialization.PublicFormat.SubjectPublicKeyInfo,
                    ).decode("ascii"),
                )

        for key in (private_key, public_key):
            if key.key_size < MIN_KEY_SIZE:
                raise KeyConfigurationError(
                    f"RSA keys must be at least {MIN_KEY_SIZE} bits"
                )

        self._pair = SigningKeyPair(private_key, public_key, key_id)
        self.self_test()
        logger.info(
            "signing_key_ready",
            key_id=key_id,
            key_size=private_key.key_size,
            ephemeral=self.is_ephemeral,
        )

    @classmethod
    def from_settings(cls, settings) -> "KeyStore":
        return cls(
            settings.jwt_private_key,
            settings.jwt_public_key,
            key_id=settings.jwt_key_id,
            allow_ephemeral=not settings.require_persistent_keys,
            log_generated_public_key=settings.log_ephemeral_key_pem,
        )

    @property
    def key_id(self) -> str:
        return self._pair.key_id

    @property
    def public_key(self) -> rsa.RSAPublicKey:
        return self._pair.public_key

    def current_key_pair(self) -> SigningKeyPair:
        return self._pair

    def public_key_for(self, key_id: Optional[str]) -> Optional[rsa.RSAPublicKey]:
        """Resolve a token's ``kid`` to a verification key; None if unknown."""
        if key_id == self._pair.key_id:
            return self._pair.public_key
        return None

    def self_test(self) -> None:
        pair = self._pair
        try:
            signature = pair.private_key.sign(
                SELF_TEST_PAYLOAD, padding.PKCS1v15(), hashes.SHA256()
            )
            pair.public_key.verify(
                signature, SELF_TEST_PAYLOAD, padding.PKCS1v15(), hashes.SHA256()
            )
        except InvalidSignature as exc:
            logger.error("signing_key_self_test_failed", key_id=pair.key_id, stage="sign_verify")
            raise KeySelfTestError("public key does not match private key") from exc

        now = int(time.time())
        try:
            token = jwt.encode(
                {"sub": "health-check", "iat": now, "exp": now + 60, "type": "access"},
                pair.private_key,
                algorithm=SIGNING_ALGORITHM,
                headers={"kid": pair.key_id},
            )
            claims = jwt.decode(token, pair.public_key, algorithms=[SIGNING_ALGORITHM])
        except jwt.PyJWTError as exc:
            logger.error("signing_key_self_test_failed", key_id=pair.key_id, stage="token_round_trip")
            raise KeySelfTestError("token round trip failed") from exc
        if claims.get("sub") != "health-check":
            raise KeySelfTestError("token round trip returned unexpected claims")
