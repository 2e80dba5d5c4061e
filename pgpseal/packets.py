"""
packets.py
==========
OpenPGP packet framing (RFC 4880 section 4 and 5.2.3.1).

Provides:
  - new-format packet headers and body-length encoding
  - streaming packets with partial body lengths, so a body of unknown size
    can be emitted without holding it in memory
  - MPI encoding / decoding
  - signature subpacket encoding / parsing
  - a packet reader that understands both old and new header formats

Every other module builds or parses packets through these helpers.
"""

import struct
from collections import namedtuple
from typing import Iterable, Iterator, List, Tuple

from pgpseal.errors import MalformedMessage


# ── Packet tags ────────────────────────────────────────────────────
TAG_PKESK          = 1
TAG_SIGNATURE      = 2
TAG_ONE_PASS_SIG   = 4
TAG_SECRET_KEY     = 5
TAG_PUBLIC_KEY     = 6
TAG_SECRET_SUBKEY  = 7
TAG_COMPRESSED     = 8
TAG_MARKER         = 10
TAG_LITERAL        = 11
TAG_TRUST          = 12
TAG_USER_ID        = 13
TAG_PUBLIC_SUBKEY  = 14
TAG_USER_ATTRIBUTE = 17
TAG_SEIPD          = 18
TAG_MDC            = 19

# ── Signature subpacket types ──────────────────────────────────────
SUB_CREATION_TIME      = 2
SUB_KEY_EXPIRATION     = 9
SUB_PREFERRED_SYMMETRIC = 11
SUB_ISSUER             = 16
SUB_PREFERRED_HASH     = 21
SUB_PREFERRED_COMPRESSION = 22
SUB_PRIMARY_USER_ID    = 25
SUB_KEY_FLAGS          = 27
SUB_FEATURES           = 30
SUB_ISSUER_FINGERPRINT = 33

# Key flags (subpacket 27)
FLAG_CERTIFY           = 0x01
FLAG_SIGN              = 0x02
FLAG_ENCRYPT_COMMS     = 0x04
FLAG_ENCRYPT_STORAGE   = 0x08

# Largest partial body chunk we emit: 2**16 bytes (first chunk must be >= 512)
PARTIAL_POWER = 16
PARTIAL_CHUNK = 1 << PARTIAL_POWER


Packet = namedtuple("Packet", ["tag", "body"])


# ------------------------------------------------------------------ #
#  Writing                                                             #
# ------------------------------------------------------------------ #

def encode_length(length: int) -> bytes:
    """Encode a new-format body length (also used for subpacket lengths)."""
    if length < 192:
        return bytes([length])
    if length < 8384:
        length -= 192
        return bytes([(length >> 8) + 192, length & 0xFF])
    return b"\xff" + struct.pack(">I", length)


def packet(tag: int, body: bytes) -> bytes:
    """Frame *body* as a complete new-format packet."""
    return bytes([0xC0 | tag]) + encode_length(len(body)) + body


def stream_packet(tag: int, chunks: Iterable[bytes]) -> Iterator[bytes]:
    """
    Frame a body produced incrementally as a new-format packet.

    Bodies larger than PARTIAL_CHUNK are split into partial-length pieces;
    the final piece always carries a definite length (possibly zero).
    """
    yield bytes([0xC0 | tag])
    buf = bytearray()
    for chunk in chunks:
        buf += chunk
        while len(buf) > PARTIAL_CHUNK:
            yield bytes([0xE0 | PARTIAL_POWER]) + bytes(buf[:PARTIAL_CHUNK])
            del buf[:PARTIAL_CHUNK]
    yield encode_length(len(buf)) + bytes(buf)


def mpi(value: int) -> bytes:
    """Encode a non-negative integer as an OpenPGP multiprecision integer."""
    bits = value.bit_length()
    return struct.pack(">H", bits) + value.to_bytes((bits + 7) // 8, "big")


def mpi_from_bytes(data: bytes) -> bytes:
    """Encode a big-endian octet string as an MPI."""
    return mpi(int.from_bytes(data, "big"))


def subpacket(kind: int, data: bytes) -> bytes:
    return encode_length(len(data) + 1) + bytes([kind]) + data


# ------------------------------------------------------------------ #
#  Reading                                                             #
# ------------------------------------------------------------------ #

class Reader:
    """Bounds-checked cursor over a packet body."""

    def __init__(self, data: bytes, error=MalformedMessage):
        self.data = data
        self.pos = 0
        self.error = error

    def remaining(self) -> int:
        return len(self.data) - self.pos

    def at_end(self) -> bool:
        return self.pos >= len(self.data)

    def read(self, n: int) -> bytes:
        if n < 0 or self.pos + n > len(self.data):
            raise self.error("Unexpected end of packet data")
        chunk = self.data[self.pos:self.pos + n]
        self.pos += n
        return chunk

    def rest(self) -> bytes:
        chunk = self.data[self.pos:]
        self.pos = len(self.data)
        return chunk

    def u8(self) -> int:
        return self.read(1)[0]

    def u16(self) -> int:
        return struct.unpack(">H", self.read(2))[0]

    def u32(self) -> int:
        return struct.unpack(">I", self.read(4))[0]

    def mpi_bytes(self) -> bytes:
        """Read an MPI; its bit count must match the leading octet exactly."""
        bits = self.u16()
        data = self.read((bits + 7) // 8)
        if data and bits != 8 * (len(data) - 1) + data[0].bit_length():
            raise self.error(f"MPI bit count {bits} does not match its value")
        return data

    def mpi(self) -> int:
        return int.from_bytes(self.mpi_bytes(), "big")

    def new_length(self) -> Tuple[int, bool]:
        """Read a new-format length. Returns (length, is_partial)."""
        first = self.u8()
        if first < 192:
            return first, False
        if first < 224:
            return ((first - 192) << 8) + self.u8() + 192, False
        if first == 255:
            return self.u32(), False
        return 1 << (first & 0x1F), True


def read_packets(data: bytes, error=MalformedMessage) -> Iterator[Packet]:
    """Iterate over the packets in *data*, joining partial body chunks."""
    reader = Reader(data, error)
    while not reader.at_end():
        header = reader.u8()
        if not header & 0x80:
            raise error(f"Invalid packet header byte 0x{header:02x}")
        if header & 0x40:
            tag = header & 0x3F
            length, partial = reader.new_length()
            body = bytearray(reader.read(length))
            while partial:
                length, partial = reader.new_length()
                body += reader.read(length)
            yield Packet(tag, bytes(body))
        else:
            tag = (header >> 2) & 0x0F
            length_type = header & 0x03
            if length_type == 0:
                length = reader.u8()
            elif length_type == 1:
                length = reader.u16()
            elif length_type == 2:
                length = reader.u32()
            else:
                length = reader.remaining()
            yield Packet(tag, reader.read(length))


def parse_subpackets(data: bytes, error=MalformedMessage) -> List[Tuple[int, bytes]]:
    """Split a subpacket area into (type, data) pairs; the critical bit is dropped."""
    reader = Reader(data, error)
    result = []
    while not reader.at_end():
        length, partial = reader.new_length()
        if partial or length == 0:
            raise error("Invalid signature subpacket length")
        body = reader.read(length)
        result.append((body[0] & 0x7F, body[1:]))
    return result
