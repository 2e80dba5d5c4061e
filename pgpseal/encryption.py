"""
encryption.py
=============
Encryption Engine: encrypt-and-sign into OpenPGP packets.

HOW THE MESSAGE IS BUILT (sign first, then encrypt the signed data):
  1. One-pass signature packet announcing the signer
  2. Literal data packet carrying the plaintext, hashed as it streams by
  3. Signature packet over the plaintext
  4. Optionally, 1-3 wrapped in a compressed data packet (ZIP / ZLIB)
  5. Everything above encrypted with the session key in a Symmetrically
     Encrypted Integrity Protected Data packet (AES-CFB + SHA-1 MDC)
  6. The session key wrapped for the recipient in a Public-Key Encrypted
     Session Key packet (RSA PKCS#1 v1.5, or ECDH Curve25519 + AES key wrap)

Because the signature sits inside the encrypted envelope it stays
confidential to the recipient.

Plaintext is consumed as a sequence of chunks and output is produced as a
sequence of chunks, so memory use does not grow with the input size.
"""

import logging
import os
import struct
import time
import zlib
from collections import namedtuple
from dataclasses import dataclass
from typing import BinaryIO, Iterable, Iterator, Union

from cryptography.hazmat.primitives.asymmetric import padding, x25519
from cryptography.hazmat.primitives.keywrap import aes_key_wrap

from pgpseal import algorithms as algs
from pgpseal import packets
from pgpseal.errors import EncryptionKeyInvalid
from pgpseal.signing import DEFAULT_HASH, SIG_BINARY, SignatureBuilder

logger = logging.getLogger(__name__)

READ_CHUNK = 64 * 1024
MDC_HEADER = b"\xd3\x14"
ECDH_SENDER = b"Anonymous Sender    "

Plaintext = Union[bytes, Iterable[bytes], BinaryIO]

EncryptedPackets = namedtuple("EncryptedPackets", ["session_key_packet", "data_packet"])


@dataclass
class EncryptOptions:
    """Tunable parameters of the encrypt-and-sign operation."""
    cipher: int = algs.SYM_AES256
    hash_algorithm: int = DEFAULT_HASH
    compression: int = algs.COMPRESS_NONE
    filename: str = ""
    modified: int = 0


# ------------------------------------------------------------------ #
#  Input handling                                                      #
# ------------------------------------------------------------------ #

def iter_chunks(source: Plaintext) -> Iterator[bytes]:
    """Normalise bytes, file objects and chunk iterables into byte chunks."""
    if isinstance(source, (bytes, bytearray, memoryview)):
        data = bytes(source)
        for i in range(0, len(data), READ_CHUNK):
            yield data[i:i + READ_CHUNK]
        return
    if hasattr(source, "read"):
        while True:
            chunk = source.read(READ_CHUNK)
            if not chunk:
                return
            yield chunk
        return
    for chunk in source:
        if chunk:
            yield bytes(chunk)


# ------------------------------------------------------------------ #
#  Session key wrapping                                                #
# ------------------------------------------------------------------ #

def ecdh_kek(shared: bytes, public_key) -> bytes:
    """
    Derive the ECDH key-encryption key (RFC 6637 section 7).

    KDF input: 00 00 00 01 || shared secret || curve OID || algorithm id ||
               KDF params || "Anonymous Sender    " || recipient fingerprint
    """
    param = (
        bytes([len(algs.OID_CURVE25519)]) + algs.OID_CURVE25519
        + bytes([algs.PK_ECDH, 3, 1, public_key.kdf_hash, public_key.kdf_cipher])
        + ECDH_SENDER + public_key.fingerprint
    )
    digest = algs.new_hash(public_key.kdf_hash)
    digest.update(b"\x00\x00\x00\x01" + shared + param)
    return digest.finalize()[:algs.cipher_key_size(public_key.kdf_cipher)]


def wrap_session_key(session_key, public_key) -> bytes:
    """
    Build the PKESK packet carrying *session_key* for *public_key*.

    Raises:
        EncryptionKeyInvalid:  key cannot encrypt or rejects the payload.
    """
    if not public_key.can_encrypt():
        raise EncryptionKeyInvalid(f"{public_key.describe()} cannot be used for encryption")

    payload = bytes([session_key.algorithm]) + session_key.key + session_key.checksum()
    try:
        if public_key.algorithm in algs.RSA_ALGORITHMS:
            encrypted = public_key.key.encrypt(payload, padding.PKCS1v15())
            fields = packets.mpi_from_bytes(encrypted)
        else:
            ephemeral = x25519.X25519PrivateKey.generate()
            shared = ephemeral.exchange(public_key.key)
            pad = 8 - len(payload) % 8
            wrapped = aes_key_wrap(ecdh_kek(shared, public_key), payload + bytes([pad]) * pad)
            point = b"\x40" + ephemeral.public_key().public_bytes_raw()
            fields = packets.mpi_from_bytes(point) + bytes([len(wrapped)]) + wrapped
    except ValueError as exc:
        raise EncryptionKeyInvalid(
            f"Could not wrap session key for {public_key.describe()}: {exc}"
        ) from exc

    body = bytes([3]) + public_key.key_id + bytes([public_key.algorithm]) + fields
    return packets.packet(packets.TAG_PKESK, body)


# ------------------------------------------------------------------ #
#  Data layers                                                         #
# ------------------------------------------------------------------ #

def _literal_body(chunks, signer, options: EncryptOptions) -> Iterator[bytes]:
    name = options.filename.encode("utf-8")[:255]
    yield b"b" + bytes([len(name)]) + name + struct.pack(">I", options.modified)
    for chunk in chunks:
        signer.update(chunk)
        yield chunk


def _signed_literal(chunks, signer, options: EncryptOptions) -> Iterator[bytes]:
    yield signer.one_pass_packet()
    yield from packets.stream_packet(packets.TAG_LITERAL, _literal_body(chunks, signer, options))
    yield signer.finish()


def _compressed(inner, algorithm: int) -> Iterator[bytes]:
    if algorithm == algs.COMPRESS_ZLIB:
        compressor = zlib.compressobj()
    else:
        compressor = zlib.compressobj(wbits=-15)

    def body():
        yield bytes([algorithm])
        for chunk in inner:
            out = compressor.compress(chunk)
            if out:
                yield out
        yield compressor.flush()

    yield from packets.stream_packet(packets.TAG_COMPRESSED, body())


def _integrity_protected(inner, session_key) -> Iterator[bytes]:
    # Cipher state is set up eagerly so a wiped or bad key fails here
    encryptor = algs.cfb_cipher(session_key.algorithm, session_key.key).encryptor()
    mdc = algs.new_hash(algs.HASH_SHA1)

    # Random block followed by a repeat of its last two octets (quick check)
    prefix = os.urandom(algs.BLOCK_SIZE)
    prefix += prefix[-2:]

    def body():
        yield b"\x01"
        mdc.update(prefix)
        yield encryptor.update(prefix)
        for chunk in inner:
            mdc.update(chunk)
            yield encryptor.update(chunk)
        mdc.update(MDC_HEADER)
        yield encryptor.update(MDC_HEADER + mdc.finalize()) + encryptor.finalize()

    return packets.stream_packet(packets.TAG_SEIPD, body())


# ------------------------------------------------------------------ #
#  Entry point                                                         #
# ------------------------------------------------------------------ #

def encrypt_and_sign(plaintext: Plaintext, public_key, private_key, session_key,
                     options: EncryptOptions = None) -> EncryptedPackets:
    """
    Encrypt and sign *plaintext*.

    All key checks happen before any plaintext is read: the signing key
    must be unlocked, the hash and cipher supported, and the recipient key
    able to wrap the session key.

    Args:
        plaintext:    bytes, a binary file object, or an iterable of chunks.
        public_key:   keys.PublicKey of the recipient (encryption-capable).
        private_key:  Unlocked keys.PrivateKey of the signer.
        session_key:  Fresh session_key.SessionKey; claimed by this call.
        options:      EncryptOptions.

    Returns:
        EncryptedPackets(session_key_packet=bytes, data_packet=iterator of
        bytes). The data packet is produced lazily as the iterator is drained.

    Raises:
        SigningKeyLocked, UnsupportedHashAlgorithm, EncryptionKeyInvalid,
        UnsupportedCipher, CryptoOperationError
    """
    options = options or EncryptOptions()
    algs.cipher_key_size(session_key.algorithm)

    signer = SignatureBuilder(private_key, SIG_BINARY, options.hash_algorithm,
                              created=int(time.time()))
    session_key.claim()
    pkesk = wrap_session_key(session_key, public_key)

    logger.info(
        "Encrypting for %s, signing with %s",
        public_key.describe(), private_key.public.describe(),
    )

    inner = _signed_literal(iter_chunks(plaintext), signer, options)
    if options.compression != algs.COMPRESS_NONE:
        inner = _compressed(inner, options.compression)
    return EncryptedPackets(pkesk, _integrity_protected(inner, session_key))
