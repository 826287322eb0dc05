"""
Credential primitives for the identity core.

- Password hashing with the algorithm configured on each membership
- Signed tokens (JWT) keyed with the membership secret
- Reversible string cipher used for reset-password links
"""

from __future__ import annotations

import base64
import hashlib
import hmac
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any, Optional

import bcrypt
import jwt
import structlog
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from identity_core.core.config import Settings, get_settings
from identity_shared.schemas.common import HashAlgorithm
from identity_shared.schemas.memberships import Membership

log = structlog.get_logger()

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------

_HASHLIB_NAMES = {
    HashAlgorithm.MD5: "md5",
    HashAlgorithm.SHA1: "sha1",
    HashAlgorithm.SHA2_256: "sha256",
    HashAlgorithm.SHA2_384: "sha384",
    HashAlgorithm.SHA2_512: "sha512",
}


def calculate_password_hash(
    membership: Membership, password: str, settings: Optional[Settings] = None
) -> str:
    """Hash a password with the membership's algorithm.

    Digest algorithms are deterministic (hex digest). BCRYPT salts every hash,
    so its hashes must be checked with ``verify_password_hash``.
    """
    if membership.hash_algorithm == HashAlgorithm.BCRYPT:
        rounds = (settings or get_settings()).bcrypt_rounds
        return bcrypt.hashpw(password.encode(), bcrypt.gensalt(rounds=rounds)).decode()
    name = _HASHLIB_NAMES[membership.hash_algorithm]
    return hashlib.new(name, password.encode("utf-8")).hexdigest()


def verify_password_hash(membership: Membership, password: str, hashed: Optional[str]) -> bool:
    if not password or not hashed:
        return False
    if membership.hash_algorithm == HashAlgorithm.BCRYPT:
        try:
            return bcrypt.checkpw(password.encode(), hashed.encode())
        except ValueError:
            return False
    return hmac.compare_digest(calculate_password_hash(membership, password), hashed)


# ---------------------------------------------------------------------------
# JWT
# ---------------------------------------------------------------------------

class TokenService:
    """Signs and decodes tokens with the membership secret key."""

    def __init__(self, settings: Optional[Settings] = None):
        self._settings = settings or get_settings()

    def generate(
        self,
        claims: dict[str, Any],
        membership: Membership,
        expires_in: timedelta,
    ) -> str:
        now = datetime.now(timezone.utc)
        payload = {**claims, "iat": now, "exp": now + expires_in}
        return jwt.encode(
            payload, membership.secret_key, algorithm=self._settings.jwt_algorithm
        )

    def try_decode(
        self, token: str, membership: Membership
    ) -> Optional[tuple[dict[str, Any], datetime]]:
        """Verify the signature and return ``(claims, valid_to)``, or None.

        Expiry is not enforced here; callers compare ``valid_to`` themselves
        so an expired token can be told apart from a forged one.
        """
        try:
            claims = jwt.decode(
                token,
                membership.secret_key,
                algorithms=[self._settings.jwt_algorithm],
                options={"verify_exp": False, "require": ["exp"]},
            )
        except jwt.PyJWTError as exc:
            log.info("token.decode_failed", membership_id=membership.id, reason=type(exc).__name__)
            return None
        valid_to = datetime.fromtimestamp(claims["exp"], tz=timezone.utc)
        return claims, valid_to


# ---------------------------------------------------------------------------
# Reversible cipher
# ---------------------------------------------------------------------------

class StringCipher:
    """Fernet cipher keyed by a passphrase through PBKDF2."""

    def __init__(self, passphrase: str, salt: str, iterations: int):
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt.encode("utf-8"),
            iterations=iterations,
        )
        key = base64.urlsafe_b64encode(kdf.derive(passphrase.encode("utf-8")))
        self._fernet = Fernet(key)

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("utf-8")

    def decrypt(self, ciphertext: str) -> str:
        try:
            return self._fernet.decrypt(ciphertext.encode("utf-8")).decode("utf-8")
        except InvalidToken as exc:
            raise ValueError("Ciphertext could not be decrypted with this key") from exc


@lru_cache(maxsize=256)
def _cached_cipher(passphrase: str, salt: str, iterations: int) -> StringCipher:
    return StringCipher(passphrase, salt, iterations)


def get_cipher(passphrase: str, settings: Optional[Settings] = None) -> StringCipher:
    settings = settings or get_settings()
    return _cached_cipher(passphrase, settings.cipher_salt, settings.cipher_iterations)
