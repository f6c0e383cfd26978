from __future__ import annotations

import base64
import os

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

NONCE_SIZE = 12
TAG_SIZE = 16


def b64e(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64d(data: str) -> bytes:
    return base64.b64decode(data.encode("ascii"))


def random_bytes(n: int = 32) -> bytes:
    return os.urandom(n)


def generate_keypair() -> X25519PrivateKey:
    return X25519PrivateKey.generate()


def public_key_bytes(key: X25519PrivateKey) -> bytes:
    return key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )


def exchange(key: X25519PrivateKey, peer_public: bytes) -> bytes:
    if len(peer_public) != 32:
        raise ValueError("peer public key must be 32 bytes")
    return key.exchange(X25519PublicKey.from_public_bytes(peer_public))


def derive_key(premaster: bytes, salt: bytes, info: bytes, length: int = 32) -> bytes:
    kdf = HKDF(
        algorithm=hashes.SHA256(),
        length=length,
        salt=salt,
        info=info,
    )
    return kdf.derive(premaster)


def aes_gcm_encrypt(key: bytes, plaintext: bytes, aad: bytes | None = None) -> bytes:
    nonce = os.urandom(NONCE_SIZE)
    aead = AESGCM(key)
    ciphertext = aead.encrypt(nonce, plaintext, aad)
    return nonce + ciphertext


def aes_gcm_decrypt(key: bytes, data: bytes, aad: bytes | None = None) -> bytes:
    if len(data) < NONCE_SIZE + TAG_SIZE:
        raise ValueError("ciphertext frame too short")
    nonce = data[:NONCE_SIZE]
    ciphertext = data[NONCE_SIZE:]
    aead = AESGCM(key)
    return aead.decrypt(nonce, ciphertext, aad)
