"""
Encryption context for confidential requests.

The cluster encrypts each result for the requester under an X25519 shared
secret and the request's nonce. This module provides the requester side
(key generation, nonce minting, decryption) and the matching encrypt used by
the in-process cluster.

Nonce rule: a nonce must never repeat for a given public key. NonceSource
mints fresh random nonces and refuses to hand out or accept one twice.
"""

import os
import threading
from dataclasses import dataclass

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from encwheel.errors import NonceReuseError


KEY_SIZE = 32
NONCE_SIZE = 16
RESULT_BLOCK_SIZE = 32
_HKDF_INFO = b"encwheel.result.v1"


def _raw_public(key: X25519PublicKey) -> bytes:
    return key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )


@dataclass(frozen=True)
class RequesterKeypair:
    """An ephemeral X25519 keypair owned by one requester."""
    private_key: X25519PrivateKey
    public_key: bytes

    @classmethod
    def generate(cls) -> "RequesterKeypair":
        private_key = X25519PrivateKey.generate()
        return cls(private_key=private_key, public_key=_raw_public(private_key.public_key()))

    def shared_secret(self, peer_public_key: bytes) -> bytes:
        return self.private_key.exchange(X25519PublicKey.from_public_bytes(peer_public_key))


@dataclass(frozen=True)
class EncryptionContext:
    """The (public key, nonce) pair under which a result is encrypted."""
    public_key: bytes
    nonce: bytes

    def __post_init__(self):
        if len(self.public_key) != KEY_SIZE:
            raise ValueError(f"public_key must be {KEY_SIZE} bytes, got {len(self.public_key)}")
        if len(self.nonce) != NONCE_SIZE:
            raise ValueError(f"nonce must be {NONCE_SIZE} bytes, got {len(self.nonce)}")

    @property
    def nonce_int(self) -> int:
        """Nonce as the u128 the cluster receives."""
        return int.from_bytes(self.nonce, "little")


class NonceSource:
    """
    Mints nonces and remembers every nonce used per public key.

    Safe to share between concurrent requests.
    """

    def __init__(self) -> None:
        self._used: dict[bytes, set[bytes]] = {}
        self._lock = threading.Lock()

    def new_context(self, public_key: bytes) -> EncryptionContext:
        """Return a context with a nonce never used before with public_key."""
        with self._lock:
            used = self._used.setdefault(bytes(public_key), set())
            while True:
                nonce = os.urandom(NONCE_SIZE)
                if nonce not in used:
                    used.add(nonce)
                    return EncryptionContext(public_key=bytes(public_key), nonce=nonce)

    def claim(self, context: EncryptionContext) -> EncryptionContext:
        """
        Register a caller-built context.

        Raises:
            NonceReuseError: If the nonce was already used with this public key
        """
        with self._lock:
            used = self._used.setdefault(context.public_key, set())
            if context.nonce in used:
                raise NonceReuseError(
                    f"Nonce {context.nonce.hex()} already used with this public key"
                )
            used.add(context.nonce)
            return context

    def issued(self, public_key: bytes) -> int:
        with self._lock:
            return len(self._used.get(bytes(public_key), ()))


class ResultCipher:
    """ChaCha20 over 32-byte result blocks, keyed from an X25519 shared secret."""

    def __init__(self, shared_secret: bytes):
        self._key = HKDF(
            algorithm=hashes.SHA256(),
            length=32,
            salt=None,
            info=_HKDF_INFO,
        ).derive(shared_secret)

    def _apply(self, nonce: bytes, data: bytes) -> bytes:
        cipher = Cipher(algorithms.ChaCha20(self._key, nonce), mode=None)
        return cipher.encryptor().update(data)

    def encrypt(self, nonce: bytes, plaintext: bytes) -> bytes:
        if len(plaintext) != RESULT_BLOCK_SIZE:
            raise ValueError(f"plaintext must be {RESULT_BLOCK_SIZE} bytes")
        return self._apply(nonce, plaintext)

    def decrypt(self, nonce: bytes, ciphertext: bytes) -> bytes:
        if len(ciphertext) != RESULT_BLOCK_SIZE:
            raise ValueError(f"ciphertext must be {RESULT_BLOCK_SIZE} bytes")
        return self._apply(nonce, ciphertext)

    def encrypt_u8(self, nonce: bytes, value: int) -> bytes:
        return self.encrypt(nonce, value.to_bytes(RESULT_BLOCK_SIZE, "little"))

    def decrypt_u8(self, nonce: bytes, ciphertext: bytes) -> int:
        value = int.from_bytes(self.decrypt(nonce, ciphertext), "little")
        if value > 0xFF:
            raise ValueError("Decrypted value does not fit in u8 (wrong key or nonce?)")
        return value
