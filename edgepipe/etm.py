"""Encrypt-then-MAC AEAD built from AES-256 in CBC mode and truncated HMAC-SHA-512."""

from __future__ import annotations

import hashlib
import hmac
from typing import Callable, Optional

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

_BLOCK_SIZE = 16
_DATA_LEN_SIZE = 8


class AuthenticationError(ValueError):
    """Raised when a ciphertext fails authentication or is malformed."""


def _pkcs7_pad(data: bytes, block_size: int) -> bytes:
    pad_len = block_size - (len(data) % block_size)
    return data + bytes([pad_len]) * pad_len


def _pkcs7_unpad(data: bytes) -> bytes:
    pad_len = data[-1]
    if pad_len > len(data):
        raise AuthenticationError("invalid padding")
    return data[: len(data) - pad_len]


class EtmAead:
    """AEAD_AES_256_CBC_HMAC_SHA_512: AES-256-CBC with HMAC-SHA-512-256.

    The first 32 bytes of the 64-byte key are the encryption key, the last
    32 bytes the MAC key. Sealed output is nonce || ciphertext || tag.
    """

    _ENC_KEY_SIZE = 32
    _MAC_KEY_SIZE = 32
    _TAG_SIZE = 32
    _digest: Callable = staticmethod(hashlib.sha512)

    def __init__(self, key: bytes) -> None:
        key = bytes(key or b"")
        expected = self._ENC_KEY_SIZE + self._MAC_KEY_SIZE
        if len(key) != expected:
            raise ValueError(f"etm: key must be {expected} bytes long")
        self._enc_key = key[: self._ENC_KEY_SIZE]
        self._mac_key = key[len(key) - self._MAC_KEY_SIZE :]

    @property
    def nonce_size(self) -> int:
        """Size of the nonce (the CBC initialisation vector) in bytes."""
        return _BLOCK_SIZE

    @property
    def overhead(self) -> int:
        """Maximum number of bytes sealing adds to a plaintext."""
        return _BLOCK_SIZE + self._TAG_SIZE + _DATA_LEN_SIZE + self.nonce_size

    def _tag(self, data: bytes, sealed: bytes) -> bytes:
        mac = hmac.new(self._mac_key, digestmod=self._digest)
        mac.update(data)
        mac.update(sealed)
        mac.update((len(data) * 8).to_bytes(_DATA_LEN_SIZE, "big"))
        return mac.digest()[: self._TAG_SIZE]

    def seal(self, nonce: bytes, plaintext: bytes, data: Optional[bytes] = None) -> bytes:
        """Encrypt and authenticate plaintext together with associated data."""
        nonce = bytes(nonce)
        if len(nonce) != self.nonce_size:
            raise ValueError(f"etm: nonce must be {self.nonce_size} bytes long")
        data = bytes(data or b"")
        encryptor = Cipher(algorithms.AES(self._enc_key), modes.CBC(nonce)).encryptor()
        body = encryptor.update(_pkcs7_pad(bytes(plaintext), _BLOCK_SIZE)) + encryptor.finalize()
        sealed = nonce + body
        return sealed + self._tag(data, sealed)

    def open(
        self, nonce: Optional[bytes], ciphertext: bytes, data: Optional[bytes] = None
    ) -> bytes:
        """Verify and decrypt a sealed message; the nonce is read from it when None."""
        ciphertext = bytes(ciphertext)
        data = bytes(data or b"")
        if len(ciphertext) < self._TAG_SIZE:
            raise AuthenticationError("message authentication failed")
        sealed = ciphertext[: -self._TAG_SIZE]
        tag = ciphertext[-self._TAG_SIZE :]
        expected = self._tag(data, sealed)
        if nonce is None:
            nonce = sealed[: self.nonce_size]
        nonce = bytes(nonce)

        if not hmac.compare_digest(tag, expected):
            raise AuthenticationError("message authentication failed")

        if len(nonce) != self.nonce_size:
            raise ValueError(f"etm: nonce must be {self.nonce_size} bytes long")
        body = sealed[len(nonce) :]
        if not body or len(body) % _BLOCK_SIZE:
            raise AuthenticationError("malformed ciphertext")
        decryptor = Cipher(algorithms.AES(self._enc_key), modes.CBC(nonce)).decryptor()
        padded = decryptor.update(body) + decryptor.finalize()
        return _pkcs7_unpad(padded)


def new_aes256_sha512(key: bytes) -> EtmAead:
    """Return an AES-256-CBC/HMAC-SHA-512 AEAD for a 64-byte key."""
    return EtmAead(key)