# mra_crypto.py
# AES-256-ECB and RSA PKCS#1 v1.5 primitives required by the MRA gateway.
# ECB without IV is dictated by the gateway; do not "upgrade" the mode.

import base64
import binascii
import json
import logging
import pathlib
import secrets
from typing import Any, Union

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import padding, serialization
from cryptography.hazmat.primitives.asymmetric import padding as asym_padding
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from errors import DecryptionError, KeyGenerationError, PayloadEncryptionError, RsaWrapError

log = logging.getLogger("mra-handshake")

AES_KEY_SIZE = 32  # AES-256
AES_BLOCK_BITS = algorithms.AES.block_size  # 128
AES_BLOCK_BYTES = AES_BLOCK_BITS // 8
PKCS1_V15_OVERHEAD = 11


def compact_json(value: Any) -> str:
    """Serialize like JSON.stringify: no whitespace, non-ASCII kept as is."""
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def _b64decode(value: str, what: str, exc_type: type) -> bytes:
    if not value:
        raise exc_type(f"Missing {what}")
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError, TypeError) as e:
        raise exc_type(f"{what} is not valid base64: {e}") from e


def _aes_key(aes_key_b64: str, exc_type: type) -> bytes:
    key = _b64decode(aes_key_b64, "AES key", exc_type)
    if len(key) != AES_KEY_SIZE:
        raise exc_type(f"AES-256 key must be {AES_KEY_SIZE} bytes, got {len(key)}")
    return key


def _ecb(key: bytes) -> Cipher:
    return Cipher(algorithms.AES(key), modes.ECB())


# -------------------- AES key --------------------

def generate_aes_key() -> str:
    """32 bytes from the OS CSPRNG, base64 encoded."""
    try:
        key = secrets.token_bytes(AES_KEY_SIZE)
    except (OSError, NotImplementedError) as e:
        raise KeyGenerationError(f"Entropy source failure: {e}") from e
    return base64.b64encode(key).decode("ascii")


# -------------------- RSA --------------------

def load_public_key(pem_path: Union[str, pathlib.Path]) -> rsa.RSAPublicKey:
    path = pathlib.Path(pem_path)
    try:
        pem = path.read_bytes()
    except OSError as e:
        raise RsaWrapError(f"MRA public key not readable at {path}: {e}") from e

    try:
        key = serialization.load_pem_public_key(pem)
    except (ValueError, UnsupportedAlgorithm) as e:
        raise RsaWrapError(f"Invalid MRA public key in {path}: {e}") from e

    if not isinstance(key, rsa.RSAPublicKey):
        raise RsaWrapError(f"Key in {path} is not an RSA public key")
    return key


def rsa_encrypt_payload(payload: Any, public_key: Union[rsa.RSAPublicKey, str, pathlib.Path]) -> str:
    """
    RSA encrypt a JSON-serialisable payload with PKCS#1 v1.5 padding.

    `public_key` is either a loaded key or the path of a PEM file.
    Returns base64 ciphertext.
    """
    if not isinstance(public_key, rsa.RSAPublicKey):
        public_key = load_public_key(public_key)

    data = compact_json(payload).encode("utf-8")
    capacity = public_key.key_size // 8 - PKCS1_V15_OVERHEAD
    if len(data) > capacity:
        raise RsaWrapError(
            f"Payload is {len(data)} bytes, RSA-{public_key.key_size} with PKCS#1 v1.5 "
            f"can encrypt at most {capacity}"
        )

    try:
        encrypted = public_key.encrypt(data, asym_padding.PKCS1v15())
    except ValueError as e:
        raise RsaWrapError(str(e)) from e
    return base64.b64encode(encrypted).decode("ascii")


# -------------------- AES-256-ECB --------------------

def decrypt_with_aes(encrypted_b64: str, aes_key_b64: str) -> str:
    """
    Decrypt base64 ciphertext with AES-256-ECB (PKCS#7) and return UTF-8 text.

    Used to recover the transmission key the token endpoint returns encrypted
    under our own AES key.
    """
    key = _aes_key(aes_key_b64, DecryptionError)
    ciphertext = _b64decode(encrypted_b64, "ciphertext", DecryptionError)
    if not ciphertext or len(ciphertext) % AES_BLOCK_BYTES:
        raise DecryptionError(
            f"Ciphertext length {len(ciphertext)} is not a multiple of {AES_BLOCK_BYTES}"
        )

    decryptor = _ecb(key).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()

    unpadder = padding.PKCS7(AES_BLOCK_BITS).unpadder()
    try:
        plain = unpadder.update(padded) + unpadder.finalize()
    except ValueError as e:
        raise DecryptionError("Invalid PKCS#7 padding (wrong key?)") from e

    try:
        return plain.decode("utf-8")
    except UnicodeDecodeError as e:
        raise DecryptionError("Decrypted key is not valid UTF-8") from e


def encrypt_with_aes(plain_text: str, aes_key_b64: str) -> str:
    """Encrypt UTF-8 text with AES-256-ECB (PKCS#7). Returns base64 ciphertext."""
    if not plain_text:
        raise PayloadEncryptionError("Missing plain text")
    key = _aes_key(aes_key_b64, PayloadEncryptionError)

    padder = padding.PKCS7(AES_BLOCK_BITS).padder()
    padded = padder.update(str(plain_text).encode("utf-8")) + padder.finalize()

    encryptor = _ecb(key).encryptor()
    encrypted = encryptor.update(padded) + encryptor.finalize()
    return base64.b64encode(encrypted).decode("ascii")
