"""
message.py
==========
Message Assembler.

Serialises the encrypted packets into the final OpenPGP message:

  [PKESK: wrapped session key][SEIPD: encrypted signed data + MDC]

The session-key packet always precedes the data packet. ASCII armor is
applied afterwards as a pure boundary transform.
"""

import logging
from typing import Iterable, Iterator

from pgpseal import session_key as session_keys
from pgpseal.armor import BLOCK_MESSAGE, armor
from pgpseal.encryption import EncryptOptions, Plaintext, encrypt_and_sign

logger = logging.getLogger(__name__)


def iter_message(session_key_packet: bytes, data_packet: Iterable[bytes]) -> Iterator[bytes]:
    """Yield the message packet by packet, in wire order."""
    yield session_key_packet
    for chunk in data_packet:
        if chunk:
            yield chunk


def assemble(session_key_packet: bytes, data_packet: Iterable[bytes]) -> bytes:
    """
    Join the session-key packet and the (possibly streamed) data packet.

    Args:
        session_key_packet:  Framed PKESK packet.
        data_packet:         Framed SEIPD packet as bytes or chunk iterable.

    Returns:
        The binary OpenPGP message.
    """
    if isinstance(data_packet, (bytes, bytearray)):
        data_packet = [bytes(data_packet)]
    out = bytearray()
    for chunk in iter_message(session_key_packet, data_packet):
        out += chunk
    return bytes(out)


def armor_message(message: bytes) -> bytes:
    """ASCII-armor a binary message ("-----BEGIN PGP MESSAGE-----")."""
    return armor(message, BLOCK_MESSAGE).encode("ascii")


def seal(plaintext: Plaintext, public_key, private_key,
         options: EncryptOptions = None, armored: bool = True) -> bytes:
    """
    Encrypt-and-sign *plaintext* into a complete message.

    A fresh session key is generated for the call and wiped afterwards,
    whether or not assembly succeeded. Nothing is returned unless the whole
    message was produced.

    Args:
        plaintext:    bytes, binary file object or iterable of chunks.
        public_key:   Recipient keys.PublicKey.
        private_key:  Unlocked signer keys.PrivateKey.
        options:      encryption.EncryptOptions.
        armored:      Return ASCII armor instead of binary packets.

    Returns:
        Message bytes.
    """
    options = options or EncryptOptions()
    session = session_keys.generate(options.cipher)
    try:
        encrypted = encrypt_and_sign(plaintext, public_key, private_key, session, options)
        message = assemble(encrypted.session_key_packet, encrypted.data_packet)
    finally:
        session.wipe()

    logger.info("Assembled %d-byte message (armored=%s)", len(message), armored)
    return armor_message(message) if armored else message
