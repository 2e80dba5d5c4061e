"""
decryption.py
=============
Recipient side of the message format: recover the session key, decrypt the
integrity-protected data, check the MDC and verify the embedded signature.

Used to prove round-trip confidentiality, authenticity and tamper evidence
of messages produced by ``message.seal``, and by operators who need to open
a message with the recipient key.

Unlike the encrypting side this reader works on a fully buffered message:
the MDC must be checked before any plaintext is released.
"""

import logging
import re
import struct
import zlib
from collections import namedtuple

from cryptography.hazmat.primitives.asymmetric import padding, x25519
from cryptography.hazmat.primitives.keywrap import InvalidUnwrap, aes_key_unwrap

from pgpseal import algorithms as algs
from pgpseal import packets
from pgpseal.armor import dearmor, is_armored
from pgpseal.encryption import MDC_HEADER, ecdh_kek
from pgpseal.errors import (
    DecryptionError,
    IntegrityError,
    MalformedMessage,
    PGPError,
    SignatureVerificationError,
)
from pgpseal.signing import SIG_TEXT, parse_signature, verify

logger = logging.getLogger(__name__)

TAG_SYMMETRIC_NO_MDC = 9
WILDCARD_KEY_ID = bytes(8)

DecryptedMessage = namedtuple(
    "DecryptedMessage",
    ["plaintext", "filename", "modified", "signer_key_id", "signature_created", "verified"],
)


# ------------------------------------------------------------------ #
#  Session key recovery                                                #
# ------------------------------------------------------------------ #

def unwrap_session_key(body: bytes, private_key):
    """
    Recover (algorithm, key) from a PKESK packet body.

    Raises:
        DecryptionError:   wrong key or corrupted packet.
        MalformedMessage:  unsupported packet version.
    """
    reader = packets.Reader(body)
    if reader.u8() != 3:
        raise MalformedMessage("Unsupported PKESK packet version")
    reader.read(8)
    algorithm = reader.u8()
    if algorithm != private_key.algorithm:
        raise DecryptionError("Session key was wrapped with a different algorithm")
    secret = private_key.secret()

    try:
        if algorithm in algs.RSA_ALGORITHMS:
            size = (secret.key_size + 7) // 8
            payload = secret.decrypt(reader.mpi_bytes().rjust(size, b"\x00"), padding.PKCS1v15())
        elif algorithm == algs.PK_ECDH:
            point = reader.mpi_bytes()
            wrapped = reader.read(reader.u8())
            if len(point) != 33 or point[0] != 0x40:
                raise DecryptionError("Invalid ephemeral ECDH point")
            shared = secret.exchange(x25519.X25519PublicKey.from_public_bytes(point[1:]))
            padded = aes_key_unwrap(ecdh_kek(shared, private_key.public), wrapped)
            pad = padded[-1]
            if not 1 <= pad <= 8 or padded[-pad:] != bytes([pad]) * pad:
                raise DecryptionError("Invalid session key padding")
            payload = padded[:-pad]
        else:
            raise DecryptionError(f"Unsupported PKESK algorithm {algorithm}")
    except (ValueError, InvalidUnwrap) as exc:
        raise DecryptionError(f"Session key decryption failed: {exc}") from exc

    if len(payload) < 4:
        raise DecryptionError("Session key payload too short")
    cipher, key, checksum = payload[0], payload[1:-2], payload[-2:]
    if sum(key) & 0xFFFF != struct.unpack(">H", checksum)[0]:
        raise DecryptionError("Session key checksum mismatch")
    try:
        if algs.cipher_key_size(cipher) != len(key):
            raise DecryptionError("Session key length does not match its cipher")
    except PGPError as exc:
        raise DecryptionError(str(exc)) from exc
    return cipher, key


# ------------------------------------------------------------------ #
#  Integrity-protected data                                            #
# ------------------------------------------------------------------ #

def decrypt_integrity_protected(body: bytes, cipher: int, key: bytes) -> bytes:
    """
    Decrypt a SEIPD v1 body and check its modification detection code.

    Raises:
        IntegrityError:  the data was modified (or the key is wrong).
    """
    if not body or body[0] != 1:
        raise MalformedMessage("Unsupported integrity protected data version")

    decryptor = algs.cfb_cipher(cipher, key).decryptor()
    plain = decryptor.update(body[1:]) + decryptor.finalize()

    block = algs.BLOCK_SIZE
    if len(plain) < block + 2 + 22:
        raise IntegrityError("Encrypted data is truncated")
    if plain[block - 2:block] != plain[block:block + 2]:
        raise IntegrityError("Encrypted data prefix check failed")
    if plain[-22:-20] != MDC_HEADER:
        raise IntegrityError("Modification detection code packet is missing")

    mdc = algs.new_hash(algs.HASH_SHA1)
    mdc.update(plain[:-20])
    if mdc.finalize() != plain[-20:]:
        raise IntegrityError("Modification detection code mismatch: message was altered")
    return plain[block + 2:-22]


def _decompress(body: bytes) -> bytes:
    algorithm, data = body[0], body[1:]
    try:
        if algorithm == algs.COMPRESS_NONE:
            return data
        if algorithm == algs.COMPRESS_ZIP:
            return zlib.decompressobj(-15).decompress(data)
        if algorithm == algs.COMPRESS_ZLIB:
            return zlib.decompress(data)
    except zlib.error as exc:
        raise MalformedMessage(f"Decompression failed: {exc}") from exc
    raise MalformedMessage(f"Unsupported compression algorithm {algorithm}")


def _literal(body: bytes):
    reader = packets.Reader(body)
    data_format = reader.u8()
    name = reader.read(reader.u8())
    modified = reader.u32()
    return chr(data_format), name.decode("utf-8", "replace"), modified, reader.rest()


def _canonical_text(data: bytes) -> bytes:
    return re.sub(rb"\r?\n", b"\r\n", data)


# ------------------------------------------------------------------ #
#  Entry point                                                         #
# ------------------------------------------------------------------ #

def decrypt_and_verify(message: bytes, recipient_key, signer_key=None) -> DecryptedMessage:
    """
    Open an encrypted (and signed) message.

    Args:
        message:        Armored or binary OpenPGP message.
        recipient_key:  Unlocked keys.PrivateKey matching the PKESK packet.
        signer_key:     keys.PublicKey to verify the signature with; when
                        omitted the signature is parsed but not verified.

    Returns:
        DecryptedMessage.

    Raises:
        MalformedMessage, DecryptionError, IntegrityError,
        SignatureVerificationError
    """
    if is_armored(message):
        _, message = dearmor(message)

    session = None
    seipd = None
    for pkt in packets.read_packets(message):
        if pkt.tag == packets.TAG_PKESK and session is None:
            key_id = pkt.body[1:9]
            if key_id in (recipient_key.key_id, WILDCARD_KEY_ID):
                session = unwrap_session_key(pkt.body, recipient_key)
        elif pkt.tag == packets.TAG_SEIPD:
            seipd = pkt.body
        elif pkt.tag == TAG_SYMMETRIC_NO_MDC:
            raise IntegrityError("Message is not integrity protected")

    if seipd is None:
        raise MalformedMessage("No encrypted data packet found")
    if session is None:
        raise DecryptionError(
            f"Message is not encrypted for key {recipient_key.key_id.hex().upper()}"
        )

    inner = decrypt_integrity_protected(seipd, *session)
    contents = list(packets.read_packets(inner))
    if contents and contents[0].tag == packets.TAG_COMPRESSED:
        contents = list(packets.read_packets(_decompress(contents[0].body)))

    literal = None
    signature = None
    for pkt in contents:
        if pkt.tag == packets.TAG_LITERAL and literal is None:
            literal = _literal(pkt.body)
        elif pkt.tag == packets.TAG_SIGNATURE and signature is None:
            signature = parse_signature(pkt.body)
    if literal is None:
        raise MalformedMessage("No literal data packet found")

    _, filename, modified, data = literal
    verified = False
    if signer_key is not None:
        if signature is None:
            raise SignatureVerificationError("Message is not signed")
        signed = _canonical_text(data) if signature.sig_type == SIG_TEXT else data
        verify(signature, signed, signer_key)
        verified = True
        logger.debug("Signature by %s verified", signer_key.describe())

    return DecryptedMessage(
        plaintext=data,
        filename=filename,
        modified=modified,
        signer_key_id=signature.issuer_key_id if signature else None,
        signature_created=signature.created if signature else None,
        verified=verified,
    )
