"""
File Encryption Utilities - AES-256-GCM

Encrypts artifacts before they leave the host. Each encrypted file is laid out
as ``nonce (12 bytes) || ciphertext || tag (16 bytes)``; a fresh nonce is drawn
from the OS CSPRNG for every file, so encrypting the same file twice never
produces the same bytes.

Usage:
    from utils.crypto import encrypt_file, load_key

    key = load_key(settings.ENCRYPTION_KEY)
    encrypted_path = encrypt_file("/data/processed_users/etl_x.jsonl", key, "/data/tmp")
"""

import base64
import binascii
import logging
import os
from pathlib import Path

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from utils.errors import ConfigurationError, DecryptionError

logger = logging.getLogger(__name__)

KEY_SIZE = 32  # AES-256
NONCE_SIZE = 12  # 96 bits, recommended for GCM
TAG_SIZE = 16
ENCRYPTED_SUFFIX = ".enc"


def generate_key() -> bytes:
    """Generate a random AES-256 key."""
    return AESGCM.generate_key(bit_length=KEY_SIZE * 8)


def key_to_string(key: bytes) -> str:
    return base64.b64encode(key).decode("ascii")


def load_key(encoded: str | None) -> bytes:
    """
    Decode a base64 AES-256 key.

    Raises:
        ConfigurationError: If the key is missing, not base64 or not 32 bytes
    """
    if not encoded:
        raise ConfigurationError("ENCRYPTION_KEY is not configured")

    try:
        key = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ConfigurationError(f"ENCRYPTION_KEY is not valid base64: {e}") from e

    if len(key) != KEY_SIZE:
        raise ConfigurationError(
            f"ENCRYPTION_KEY must decode to {KEY_SIZE} bytes, got {len(key)}"
        )
    return key


def encrypt_bytes(data: bytes, key: bytes) -> bytes:
    nonce = os.urandom(NONCE_SIZE)
    return nonce + AESGCM(key).encrypt(nonce, data, None)


def decrypt_bytes(payload: bytes, key: bytes) -> bytes:
    """
    Reverse encrypt_bytes.

    Raises:
        DecryptionError: If the payload is truncated, tampered with, or the key is wrong
    """
    if len(payload) < NONCE_SIZE + TAG_SIZE:
        raise DecryptionError(
            f"Encrypted payload too short ({len(payload)} bytes)"
        )

    nonce, ciphertext = payload[:NONCE_SIZE], payload[NONCE_SIZE:]
    try:
        return AESGCM(key).decrypt(nonce, ciphertext, None)
    except InvalidTag as e:
        raise DecryptionError("Authentication tag mismatch (wrong key or corrupted payload)") from e


def encrypt_file(input_path: str | Path, key: bytes, output_dir: str | Path | None = None) -> Path:
    """
    Encrypt a file into ``<output_dir>/<name>.enc`` (defaults to the source directory).

    Returns:
        Path of the encrypted copy; the plaintext file is left untouched
    """
    source = Path(input_path)
    target_dir = Path(output_dir) if output_dir else source.parent
    target_dir.mkdir(parents=True, exist_ok=True)
    target = target_dir / f"{source.name}{ENCRYPTED_SUFFIX}"

    logger.debug("Encrypting file: %s", source.name)
    target.write_bytes(encrypt_bytes(source.read_bytes(), key))
    logger.debug("Encrypted file created: %s (%d bytes)", target.name, target.stat().st_size)

    return target


def decrypt_file(encrypted_path: str | Path, key: bytes, output_path: str | Path | None = None) -> Path:
    """
    Decrypt a file produced by encrypt_file.

    Nothing is written when authentication fails.

    Raises:
        DecryptionError: If authentication fails
    """
    source = Path(encrypted_path)
    if output_path is None:
        original_name = source.name.removesuffix(ENCRYPTED_SUFFIX)
        output_path = source.parent / f"decrypted_{original_name}"
    target = Path(output_path)

    plaintext = decrypt_bytes(source.read_bytes(), key)
    target.write_bytes(plaintext)
    logger.debug("Decrypted file created: %s (%d bytes)", target.name, len(plaintext))

    return target
