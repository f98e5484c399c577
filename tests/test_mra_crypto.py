import base64
import json

import pytest
from cryptography.hazmat.primitives.asymmetric import padding as asym_padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from errors import DecryptionError, PayloadEncryptionError, RsaWrapError
from mra_crypto import (
    compact_json,
    decrypt_with_aes,
    encrypt_with_aes,
    generate_aes_key,
    rsa_encrypt_payload,
)


def test_generated_key_is_32_random_bytes():
    k1, k2 = generate_aes_key(), generate_aes_key()
    assert len(base64.b64decode(k1)) == 32
    assert k1 != k2


def test_aes_ecb_round_trip_and_determinism():
    key = generate_aes_key()
    text = json.dumps([{"invoiceIdentifier": "INV-1", "itemDesc": "Café"}])
    enc1 = encrypt_with_aes(text, key)
    enc2 = encrypt_with_aes(text, key)
    assert enc1 == enc2  # ECB has no IV
    assert decrypt_with_aes(enc1, key) == text


def test_ciphertext_is_padded_to_block_size():
    key = generate_aes_key()
    raw = base64.b64decode(encrypt_with_aes("x" * 16, key))
    assert len(raw) == 32


def test_rsa_wrap_can_be_opened_with_private_key(rsa_private_key, public_key_path):
    payload = {"username": "u", "password": "p", "encryptKey": generate_aes_key(), "refreshToken": "false"}
    wrapped = rsa_encrypt_payload(payload, public_key_path)
    plain = rsa_private_key.decrypt(base64.b64decode(wrapped), asym_padding.PKCS1v15())
    assert plain.decode("utf-8") == compact_json(payload)


def test_rsa_wrap_rejects_oversized_payload(public_key_path):
    with pytest.raises(RsaWrapError):
        rsa_encrypt_payload({"blob": "a" * 300}, public_key_path)


def test_rsa_wrap_missing_key_file(tmp_path):
    with pytest.raises(RsaWrapError):
        rsa_encrypt_payload({"a": 1}, tmp_path / "missing.pem")


def test_rsa_wrap_invalid_pem(tmp_path):
    bad = tmp_path / "bad.pem"
    bad.write_text("not a key")
    with pytest.raises(RsaWrapError):
        rsa_encrypt_payload({"a": 1}, bad)


def test_decrypt_rejects_bad_base64():
    with pytest.raises(DecryptionError):
        decrypt_with_aes("%%% not base64 %%%", generate_aes_key())


def test_decrypt_rejects_partial_block():
    ciphertext = base64.b64encode(b"\x01" * 10).decode()
    with pytest.raises(DecryptionError):
        decrypt_with_aes(ciphertext, generate_aes_key())


def test_decrypt_rejects_short_key():
    short_key = base64.b64encode(b"k" * 16).decode()
    with pytest.raises(DecryptionError):
        decrypt_with_aes(base64.b64encode(b"\x00" * 16).decode(), short_key)


def test_decrypt_rejects_invalid_padding():
    key = generate_aes_key()
    encryptor = Cipher(algorithms.AES(base64.b64decode(key)), modes.ECB()).encryptor()
    # a block of zeros ends in a 0x00 pad byte, which PKCS#7 never produces
    raw = encryptor.update(b"\x00" * 16) + encryptor.finalize()
    with pytest.raises(DecryptionError):
        decrypt_with_aes(base64.b64encode(raw).decode(), key)


def test_encrypt_rejects_empty_text():
    with pytest.raises(PayloadEncryptionError):
        encrypt_with_aes("", generate_aes_key())
