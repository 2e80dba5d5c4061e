"""
signing.py
==========
Signature Engine: OpenPGP version 4 signatures (RFC 4880 section 5.2).

How a v4 signature is computed:
  1. Hash the signed data (streamed chunk by chunk)
  2. Hash the signature header + hashed subpackets
  3. Hash the trailer  0x04 0xFF <4-byte length of step 2>
  4. Sign the digest   RSA: PKCS#1 v1.5 over the prehashed digest
                       Ed25519: EdDSA over the digest bytes

Hashed subpackets carry the creation time and issuer fingerprint so the
recipient can find the verification key; the issuer key id is repeated in
the unhashed area for older readers.

All primitives come from the ``cryptography`` library.
"""

import logging
import struct
import time
from collections import namedtuple
from typing import Iterable, Optional, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric import ed25519, padding
from cryptography.hazmat.primitives.asymmetric.utils import Prehashed

from pgpseal import algorithms as algs
from pgpseal import packets
from pgpseal.errors import (
    CryptoOperationError,
    MalformedMessage,
    SignatureVerificationError,
    UnsupportedAlgorithm,
)

logger = logging.getLogger(__name__)

SIG_BINARY         = 0x00
SIG_TEXT           = 0x01
SIG_POSITIVE_CERT  = 0x13
SIG_SUBKEY_BINDING = 0x18

DEFAULT_HASH = algs.HASH_SHA256

OnePassSignature = namedtuple(
    "OnePassSignature", ["sig_type", "hash_algorithm", "pk_algorithm", "key_id", "last"]
)


class Signature:
    """A parsed version 4 signature packet."""

    def __init__(self, sig_type, pk_algorithm, hash_algorithm, hashed_area,
                 hashed, unhashed, left16, values):
        self.sig_type = sig_type
        self.pk_algorithm = pk_algorithm
        self.hash_algorithm = hash_algorithm
        self.hashed_area = hashed_area
        self.hashed = hashed
        self.unhashed = unhashed
        self.left16 = left16
        self.values = values

    def _first(self, kind, area=None):
        for sub_type, data in (area if area is not None else self.hashed + self.unhashed):
            if sub_type == kind:
                return data
        return None

    @property
    def created(self) -> Optional[int]:
        data = self._first(packets.SUB_CREATION_TIME, self.hashed)
        return struct.unpack(">I", data)[0] if data and len(data) == 4 else None

    @property
    def issuer_fingerprint(self) -> Optional[bytes]:
        data = self._first(packets.SUB_ISSUER_FINGERPRINT)
        return data[1:] if data else None

    @property
    def issuer_key_id(self) -> Optional[bytes]:
        data = self._first(packets.SUB_ISSUER)
        if data:
            return data
        fingerprint = self.issuer_fingerprint
        return fingerprint[-8:] if fingerprint else None

    @property
    def key_flags(self) -> Optional[int]:
        data = self._first(packets.SUB_KEY_FLAGS, self.hashed)
        return data[0] if data else None

    def trailer(self) -> bytes:
        return _trailer(self.sig_type, self.pk_algorithm, self.hash_algorithm, self.hashed_area)


def _trailer(sig_type, pk_algorithm, hash_algorithm, hashed_area) -> bytes:
    header = bytes([4, sig_type, pk_algorithm, hash_algorithm])
    header += struct.pack(">H", len(hashed_area)) + hashed_area
    return header + b"\x04\xff" + struct.pack(">I", len(header))


def parse_signature(body: bytes, error=MalformedMessage) -> Signature:
    """Parse a signature packet body. Only version 4 is understood."""
    reader = packets.Reader(body, error)
    version = reader.u8()
    if version != 4:
        raise UnsupportedAlgorithm(f"Unsupported signature version {version}")
    sig_type = reader.u8()
    pk_algorithm = reader.u8()
    hash_algorithm = reader.u8()
    hashed_area = reader.read(reader.u16())
    unhashed_area = reader.read(reader.u16())
    left16 = reader.read(2)

    values = []
    while not reader.at_end():
        values.append(reader.mpi_bytes())

    return Signature(
        sig_type, pk_algorithm, hash_algorithm, hashed_area,
        packets.parse_subpackets(hashed_area, error),
        packets.parse_subpackets(unhashed_area, error),
        left16, values,
    )


def parse_one_pass(body: bytes) -> OnePassSignature:
    reader = packets.Reader(body)
    if reader.u8() != 3:
        raise MalformedMessage("Unsupported one-pass signature version")
    return OnePassSignature(reader.u8(), reader.u8(), reader.u8(), reader.read(8), reader.u8())


# ------------------------------------------------------------------ #
#  Signing                                                             #
# ------------------------------------------------------------------ #

class SignatureBuilder:
    """
    Incrementally compute a v4 signature over streamed data.

    The private key is checked when the builder is created, so a locked key
    fails before any plaintext is consumed.

    Usage:
        builder = SignatureBuilder(private_key)
        for chunk in chunks:
            builder.update(chunk)
        packet = builder.finish()
    """

    def __init__(self, private_key, sig_type: int = SIG_BINARY,
                 hash_algorithm: int = DEFAULT_HASH, created: Optional[int] = None,
                 extra_hashed: bytes = b""):
        self._secret = private_key.secret()
        if private_key.algorithm not in algs.CAN_SIGN:
            raise UnsupportedAlgorithm(
                f"{private_key.public.describe()} cannot produce signatures"
            )
        self.private_key = private_key
        self.sig_type = sig_type
        self.hash_algorithm = hash_algorithm
        self.created = int(time.time()) if created is None else created
        self.extra_hashed = extra_hashed
        self._digest = algs.new_hash(hash_algorithm)

    def update(self, data: bytes) -> None:
        self._digest.update(data)

    def one_pass_packet(self, last: bool = True) -> bytes:
        """One-pass signature packet announcing this signature."""
        body = bytes([3, self.sig_type, self.hash_algorithm, self.private_key.algorithm])
        body += self.private_key.key_id + bytes([1 if last else 0])
        return packets.packet(packets.TAG_ONE_PASS_SIG, body)

    def finish(self) -> bytes:
        """Hash the trailer, sign, and return the framed signature packet."""
        public = self.private_key.public
        hashed_area = (
            packets.subpacket(packets.SUB_CREATION_TIME, struct.pack(">I", self.created))
            + packets.subpacket(packets.SUB_ISSUER_FINGERPRINT, b"\x04" + public.fingerprint)
            + self.extra_hashed
        )
        unhashed_area = packets.subpacket(packets.SUB_ISSUER, public.key_id)

        self._digest.update(_trailer(
            self.sig_type, public.algorithm, self.hash_algorithm, hashed_area
        ))
        digest = self._digest.finalize()

        try:
            if public.algorithm == algs.PK_EDDSA:
                raw = self._secret.sign(digest)
                values = packets.mpi_from_bytes(raw[:32]) + packets.mpi_from_bytes(raw[32:])
            else:
                raw = self._secret.sign(
                    digest, padding.PKCS1v15(),
                    Prehashed(algs.hash_algorithm(self.hash_algorithm)),
                )
                values = packets.mpi_from_bytes(raw)
        except (ValueError, TypeError) as exc:
            raise CryptoOperationError(f"Signing failed: {exc}") from exc

        body = (
            bytes([4, self.sig_type, public.algorithm, self.hash_algorithm])
            + struct.pack(">H", len(hashed_area)) + hashed_area
            + struct.pack(">H", len(unhashed_area)) + unhashed_area
            + digest[:2]
            + values
        )
        logger.debug("Signed with %s", public.describe())
        return packets.packet(packets.TAG_SIGNATURE, body)


def sign(plaintext: Union[bytes, Iterable[bytes]], private_key,
         hash_algorithm: int = DEFAULT_HASH, created: Optional[int] = None) -> bytes:
    """
    Sign *plaintext* (bytes or an iterable of chunks) as a binary document.

    Args:
        plaintext:       Data to sign.
        private_key:     Unlocked keys.PrivateKey.
        hash_algorithm:  OpenPGP hash id (default SHA-256).
        created:         Signature creation time (default: now).

    Returns:
        Framed signature packet bytes.

    Raises:
        SigningKeyLocked, UnsupportedHashAlgorithm
    """
    builder = SignatureBuilder(private_key, SIG_BINARY, hash_algorithm, created)
    if isinstance(plaintext, (bytes, bytearray, memoryview)):
        plaintext = [bytes(plaintext)]
    for chunk in plaintext:
        builder.update(chunk)
    return builder.finish()


# ------------------------------------------------------------------ #
#  Verification                                                        #
# ------------------------------------------------------------------ #

def verify(signature: Signature, data: Union[bytes, Iterable[bytes]], public_key) -> None:
    """
    Verify *signature* over *data* against *public_key* (keys.PublicKey).

    Raises:
        SignatureVerificationError:  wrong key, modified data or bad signature.
    """
    issuer = signature.issuer_key_id
    if issuer is not None and issuer != public_key.key_id:
        raise SignatureVerificationError(
            f"Signature was made by key {issuer.hex().upper()}, "
            f"not {public_key.key_id.hex().upper()}"
        )
    if signature.pk_algorithm != public_key.algorithm:
        raise SignatureVerificationError("Signature algorithm does not match the key")

    digest = algs.new_hash(signature.hash_algorithm)
    if isinstance(data, (bytes, bytearray, memoryview)):
        data = [bytes(data)]
    for chunk in data:
        digest.update(chunk)
    digest.update(signature.trailer())
    value = digest.finalize()

    if value[:2] != signature.left16:
        raise SignatureVerificationError("Signature digest prefix mismatch")

    try:
        if public_key.algorithm == algs.PK_EDDSA:
            if len(signature.values) != 2:
                raise SignatureVerificationError("Malformed EdDSA signature")
            raw = b"".join(v.rjust(32, b"\x00") for v in signature.values)
            key: ed25519.Ed25519PublicKey = public_key.key
            key.verify(raw, value)
        else:
            if len(signature.values) != 1:
                raise SignatureVerificationError("Malformed RSA signature")
            size = (public_key.key.key_size + 7) // 8
            public_key.key.verify(
                signature.values[0].rjust(size, b"\x00"), value, padding.PKCS1v15(),
                Prehashed(algs.hash_algorithm(signature.hash_algorithm)),
            )
    except InvalidSignature as exc:
        raise SignatureVerificationError("Signature verification failed") from exc
