"""
auth/crypto.py -- Password hashing, payload encryption, and checksums.

Security design decisions:
  Passwords: PBKDF2-HMAC-SHA256 from the `cryptography` package with a
       per-record 16-byte salt and a high iteration count (default 210,000,
       never below 10,000). The salt is stored beside the hash rather than
       embedded in it, so the store can re-derive a hash on password change
       without parsing a hash string. Comparison uses hmac.compare_digest.

  Payload: AES-256-GCM. A fresh 96-bit nonce is drawn for every encryption;
       the nonce is not secret and travels next to the ciphertext. Any
       tampering with ciphertext or nonce fails the GCM tag check, which
       decrypt_payload() turns into CryptoError.

  Checksum: SHA-256 over the plaintext, checked after decryption. This is
       independent of the GCM tag: a compromised key lets an attacker forge
       a valid tag, but not silently change content without also updating the
       checksum, and bit-rot in the checksum field is caught on its own.

  Master key: derived once from the configured MASTER_KEY secret and kept in
       memory only. The KDF salt is a fixed application constant because the
       key must be reproducible across restarts without reading the file.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from auth.errors import CryptoError

PASSWORD_ITERATIONS = 210_000
MIN_PASSWORD_ITERATIONS = 10_000

SALT_BYTES = 16
HASH_BYTES = 32
KEY_BYTES = 32
NONCE_BYTES = 12

_MASTER_KEY_SALT = b"credvault.master-key.v1"
_MASTER_KEY_ITERATIONS = 600_000

# Bound into every GCM tag so a payload encrypted for another purpose with the
# same key cannot be swapped in.
_ASSOCIATED_DATA = b"credvault/v1"


# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def generate_salt() -> bytes:
    """Return SALT_BYTES bytes from the OS CSPRNG."""
    return secrets.token_bytes(SALT_BYTES)


def _pbkdf2(secret: bytes, salt: bytes, iterations: int) -> bytes:
    if iterations < MIN_PASSWORD_ITERATIONS:
        raise ValueError(f"PBKDF2 iterations must be at least {MIN_PASSWORD_ITERATIONS}.")
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=HASH_BYTES,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(secret)


def derive_password_hash(password: str, salt: bytes, iterations: int = PASSWORD_ITERATIONS) -> str:
    """Derive the storable hash for password under salt, hex encoded."""
    return _pbkdf2(password.encode("utf-8"), salt, iterations).hex()


def verify_password(password: str, salt: bytes, expected_hash: str, iterations: int = PASSWORD_ITERATIONS) -> bool:
    """Return True if password re-derives to expected_hash. Constant-time comparison."""
    candidate = derive_password_hash(password, salt, iterations)
    return hmac.compare_digest(candidate, expected_hash)


# ---------------------------------------------------------------------------
# Master key and payload encryption
# ---------------------------------------------------------------------------


def derive_master_key(secret: str) -> bytes:
    """Turn the configured master secret into a 256-bit AES key."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_BYTES,
        salt=_MASTER_KEY_SALT,
        iterations=_MASTER_KEY_ITERATIONS,
    )
    return kdf.derive(secret.encode("utf-8"))


def encrypt_payload(plaintext: bytes, key: bytes) -> tuple[bytes, bytes]:
    """Encrypt plaintext with AES-256-GCM. Returns (ciphertext, nonce)."""
    nonce = secrets.token_bytes(NONCE_BYTES)
    ciphertext = AESGCM(key).encrypt(nonce, plaintext, _ASSOCIATED_DATA)
    return ciphertext, nonce


def decrypt_payload(ciphertext: bytes, nonce: bytes, key: bytes) -> bytes:
    """Decrypt and authenticate. Raises CryptoError on any failure."""
    try:
        return AESGCM(key).decrypt(nonce, ciphertext, _ASSOCIATED_DATA)
    except (InvalidTag, ValueError) as exc:
        # ValueError covers a truncated nonce or a key of the wrong length.
        raise CryptoError("Credential payload could not be decrypted.") from exc


def checksum(data: bytes) -> str:
    """SHA-256 hex digest used purely for corruption/tamper detection."""
    return hashlib.sha256(data).hexdigest()
