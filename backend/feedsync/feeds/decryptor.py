"""
decryptor.py — Incident feed envelope decryption.

The incident feed wraps every response in a small JSON envelope:

    {
        "ct": "<base64 ciphertext>",
        "iv": "<hex initialisation vector>",
        "s":  "<hex salt>"
    }

═══════════════════════════════════════════════════════════════════════════
KEY DERIVATION
═══════════════════════════════════════════════════════════════════════════

Classic password-based derivation (the scheme OpenSSL calls
EVP_BytesToKey with MD5 and one round):

    D_1 = MD5(password ‖ salt)
    D_i = MD5(D_{i-1} ‖ password ‖ salt)
    material = D_1 ‖ D_2 ‖ D_3      → key = material[:32], iv = material[32:48]

The envelope normally carries its own IV; the derived IV is only used when
it does not.

Cipher: AES-256-CBC with PKCS#7 padding.

The plaintext is a JSON *string* whose contents are the JSON document, so
it is parsed twice: once to get the string, once to get the object.

Any failure here raises DecryptionError. The payload is unrecoverable but
the next scheduled pass will fetch a fresh one.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from backend.feedsync.core.errors import DecryptionError

logger = logging.getLogger(__name__)

KEY_LENGTH = 32
IV_LENGTH = 16
BLOCK_BITS = 128


@dataclass
class FeedEnvelope:
    """Decoded binary parts of an encrypted feed response."""
    ciphertext: bytes
    salt: bytes
    iv: Optional[bytes] = None

    @classmethod
    def from_dict(cls, data: Any) -> "FeedEnvelope":
        if not isinstance(data, dict):
            raise DecryptionError("envelope is not a JSON object")
        ct = data.get("ct")
        salt = data.get("s")
        if not ct or not salt:
            raise DecryptionError(
                "envelope missing ciphertext or salt",
                keys=sorted(data.keys()),
            )
        try:
            iv_hex = data.get("iv")
            return cls(
                ciphertext=base64.b64decode(ct, validate=True),
                salt=bytes.fromhex(salt),
                iv=bytes.fromhex(iv_hex) if iv_hex else None,
            )
        except (binascii.Error, ValueError, TypeError) as e:
            raise DecryptionError(f"envelope field encoding invalid: {e}") from e

    def to_dict(self) -> Dict[str, str]:
        d = {
            "ct": base64.b64encode(self.ciphertext).decode("ascii"),
            "s": self.salt.hex(),
        }
        if self.iv is not None:
            d["iv"] = self.iv.hex()
        return d


def derive_key_and_iv(password: str, salt: bytes) -> Tuple[bytes, bytes]:
    """Iterated MD5 over ``prev ‖ password ‖ salt`` until 48 bytes exist."""
    secret = password.encode("utf-8")
    material = b""
    block = b""
    while len(material) < KEY_LENGTH + IV_LENGTH:
        block = hashlib.md5(block + secret + salt).digest()
        material += block
    return material[:KEY_LENGTH], material[KEY_LENGTH:KEY_LENGTH + IV_LENGTH]


def decrypt_envelope(envelope: Any, secret: str) -> Any:
    """
    Decrypt a feed envelope and return the decoded JSON document.

    Parameters
    ----------
    envelope : dict | FeedEnvelope
        Raw response body (``{"ct", "iv", "s"}``) or an already-parsed one.
    secret : str
        Tenant feed secret.

    Raises
    ------
    DecryptionError
        Malformed envelope, wrong secret, bad padding, or a plaintext that
        is not a double-encoded JSON document.
    """
    env = envelope if isinstance(envelope, FeedEnvelope) else FeedEnvelope.from_dict(envelope)
    key, derived_iv = derive_key_and_iv(secret, env.salt)
    iv = env.iv or derived_iv
    if len(iv) != IV_LENGTH:
        raise DecryptionError(f"IV must be {IV_LENGTH} bytes, got {len(iv)}")
    if not env.ciphertext or len(env.ciphertext) % (BLOCK_BITS // 8):
        raise DecryptionError("ciphertext length is not a multiple of the block size")

    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(env.ciphertext) + decryptor.finalize()
    unpadder = padding.PKCS7(BLOCK_BITS).unpadder()
    try:
        plaintext = unpadder.update(padded) + unpadder.finalize()
    except ValueError as e:
        raise DecryptionError("bad padding (wrong secret?)") from e

    logger.debug("Decrypted feed envelope: %d plaintext bytes", len(plaintext))
    try:
        inner = json.loads(plaintext.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise DecryptionError(f"plaintext is not JSON: {e}") from e
    if not isinstance(inner, str):
        raise DecryptionError(
            "plaintext is not a JSON-encoded string",
            decoded_type=type(inner).__name__,
        )
    try:
        return json.loads(inner)
    except ValueError as e:
        raise DecryptionError(f"inner document is not JSON: {e}") from e


def encrypt_envelope(
    document: Any,
    secret: str,
    *,
    salt: Optional[bytes] = None,
    iv: Optional[bytes] = None,
) -> Dict[str, str]:
    """
    Produce an envelope in the feed's format.

    The inverse of decrypt_envelope; used to build fixtures and replay
    captured snapshots. Salt and IV are random unless given.
    """
    salt = salt if salt is not None else os.urandom(8)
    key, derived_iv = derive_key_and_iv(secret, salt)
    iv = iv if iv is not None else derived_iv

    plaintext = json.dumps(json.dumps(document)).encode("utf-8")
    padder = padding.PKCS7(BLOCK_BITS).padder()
    padded = padder.update(plaintext) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()
    return FeedEnvelope(ciphertext=ciphertext, salt=salt, iv=iv).to_dict()
