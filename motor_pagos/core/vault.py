import base64
import binascii
import hashlib
import os
import secrets

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from motor_pagos.core.config import settings
from motor_pagos.core.exceptions import VaultIntegrityException

KEY_LENGTH = 32   # AES-256
IV_LENGTH = 12    # 96 bits, recommended by NIST for GCM
TAG_LENGTH = 16

TOKEN_PREFIX = "TOK_"

_vault_key: bytes | None = None


def _load_key() -> bytes:
    """
    Derives the vault key once per process.

    Secrets shorter than 32 bytes are stretched with scrypt; longer ones
    are truncated to the first 32 bytes.
    """
    global _vault_key
    if _vault_key is None:
        secret = (settings.ENCRYPTION_KEY or settings.SECRET_KEY).encode()
        if len(secret) < KEY_LENGTH:
            kdf = Scrypt(
                salt=settings.VAULT_KDF_SALT.encode(),
                length=KEY_LENGTH,
                n=2**14,
                r=8,
                p=1,
            )
            _vault_key = kdf.derive(secret)
        else:
            _vault_key = secret[:KEY_LENGTH]
    return _vault_key


def encrypt(plaintext: str) -> str:
    """
    AES-256-GCM with a fresh IV per call.
    Output: base64(iv || tag || ciphertext).
    """
    iv = os.urandom(IV_LENGTH)
    # cryptography's AESGCM returns ciphertext + tag combined
    sealed = AESGCM(_load_key()).encrypt(iv, str(plaintext).encode("utf-8"), None)
    ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
    return base64.b64encode(iv + tag + ciphertext).decode("ascii")


def decrypt(blob: str) -> str:
    """Inverse of encrypt(). Raises VaultIntegrityException on tamper or corruption."""
    try:
        data = base64.b64decode(blob, validate=True)
    except (binascii.Error, ValueError, TypeError):
        raise VaultIntegrityException("Malformed vault blob.")

    if len(data) < IV_LENGTH + TAG_LENGTH:
        raise VaultIntegrityException("Malformed vault blob.")

    iv = data[:IV_LENGTH]
    tag = data[IV_LENGTH:IV_LENGTH + TAG_LENGTH]
    ciphertext = data[IV_LENGTH + TAG_LENGTH:]

    try:
        plaintext = AESGCM(_load_key()).decrypt(iv, ciphertext + tag, None)
    except InvalidTag:
        raise VaultIntegrityException("AES-GCM authentication failed. Data corrupted or tampered.")

    return plaintext.decode("utf-8")


def generate_token() -> str:
    """Opaque payment reference: TOK_ + 32 uppercase hex chars."""
    return TOKEN_PREFIX + secrets.token_hex(16).upper()


def mask_card_number(card_number: str) -> str:
    """Only the last 4 digits are ever exposed."""
    cleaned = "".join(ch for ch in str(card_number) if ch.isdigit())
    return "**** **** **** " + cleaned[-4:]


def hash_data(data: str) -> str:
    return hashlib.sha256(str(data).encode()).hexdigest()
