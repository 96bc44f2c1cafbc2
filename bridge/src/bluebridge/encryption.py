"""Passphrase encryption for realtime response payloads.

Payloads use the OpenSSL "Salted__" layout that CryptoJS clients decrypt:
AES-256-CBC with PKCS#7 padding, key and IV derived from the passphrase and
an 8-byte salt by EVP_BytesToKey (MD5, one round), base64 encoded.
"""

from __future__ import annotations

import base64
import hashlib
import os

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

SALT_HEADER = b"Salted__"
SALT_SIZE = 8
KEY_SIZE = 32
IV_SIZE = 16


def derive_key_iv(passphrase: bytes, salt: bytes) -> tuple[bytes, bytes]:
    derived = b""
    block = b""
    while len(derived) < KEY_SIZE + IV_SIZE:
        block = hashlib.md5(block + passphrase + salt).digest()
        derived += block
    return derived[:KEY_SIZE], derived[KEY_SIZE : KEY_SIZE + IV_SIZE]


def encrypt_text(plaintext: str, passphrase: str, *, salt: bytes | None = None) -> str:
    salt = salt if salt is not None else os.urandom(SALT_SIZE)
    key, iv = derive_key_iv(passphrase.encode("utf-8"), salt)
    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()
    return base64.b64encode(SALT_HEADER + salt + ciphertext).decode("ascii")


def decrypt_text(token: str, passphrase: str) -> str:
    raw = base64.b64decode(token)
    if not raw.startswith(SALT_HEADER) or len(raw) < len(SALT_HEADER) + SALT_SIZE:
        raise ValueError("payload is missing the salt header")
    salt = raw[len(SALT_HEADER) : len(SALT_HEADER) + SALT_SIZE]
    key, iv = derive_key_iv(passphrase.encode("utf-8"), salt)
    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(raw[len(SALT_HEADER) + SALT_SIZE :]) + decryptor.finalize()
    unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
    return (unpadder.update(padded) + unpadder.finalize()).decode("utf-8")
