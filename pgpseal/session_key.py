"""
session_key.py
==============
Session Key Generator.

Every message gets a fresh symmetric key drawn from the operating system
CSPRNG (os.urandom). The key is never derived from message content, is bound
to exactly one message, and is zeroed once the message has been assembled.
"""

import os
import struct

from pgpseal import algorithms as algs
from pgpseal.errors import CryptoOperationError


class SessionKey:
    """A one-message symmetric key held in a mutable buffer."""

    def __init__(self, algorithm: int, key: bytes):
        self.algorithm = algorithm
        self._key = bytearray(key)
        self._used = False
        self._wiped = False

    @property
    def key(self) -> bytes:
        if self._wiped:
            raise CryptoOperationError("Session key has already been wiped")
        return bytes(self._key)

    def checksum(self) -> bytes:
        """Two-octet sum of the key bytes, as carried in the PKESK packet."""
        return struct.pack(">H", sum(self._key) & 0xFFFF)

    def claim(self) -> None:
        """Bind the key to a message; a second claim is refused."""
        if self._used:
            raise CryptoOperationError("Session key reuse across messages is not allowed")
        if self._wiped:
            raise CryptoOperationError("Session key has already been wiped")
        self._used = True

    def wipe(self) -> None:
        for i in range(len(self._key)):
            self._key[i] = 0
        self._wiped = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.wipe()

    def __repr__(self):
        return f"<SessionKey algorithm={self.algorithm} used={self._used} wiped={self._wiped}>"


def generate(algorithm: int = algs.SYM_AES256) -> SessionKey:
    """
    Generate a random session key for *algorithm*.

    Raises:
        UnsupportedCipher:     unknown symmetric algorithm id.
        CryptoOperationError:  the entropy source is unavailable.
    """
    size = algs.cipher_key_size(algorithm)
    try:
        material = os.urandom(size)
    except (NotImplementedError, OSError) as exc:
        raise CryptoOperationError(f"Entropy source unavailable: {exc}") from exc
    return SessionKey(algorithm, material)
