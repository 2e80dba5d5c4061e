"""
armor.py
========
ASCII armor (RFC 4880 section 6): a reversible, text-safe encoding of
binary OpenPGP data.

  -----BEGIN PGP MESSAGE-----
  <optional "Key: Value" headers>
  <blank line>
  <base64, 64 columns>
  =<base64 CRC-24>
  -----END PGP MESSAGE-----

Armoring sits at the boundary; the cryptographic core only sees binary
packets.
"""

import base64
import binascii
from typing import Iterable, Tuple

from pgpseal.errors import MalformedMessage


CRC24_INIT = 0xB704CE
CRC24_POLY = 0x1864CFB
LINE_WIDTH = 64

BLOCK_MESSAGE     = "PGP MESSAGE"
BLOCK_PUBLIC_KEY  = "PGP PUBLIC KEY BLOCK"
BLOCK_PRIVATE_KEY = "PGP PRIVATE KEY BLOCK"
BLOCK_SIGNATURE   = "PGP SIGNATURE"


def _build_crc_table():
    table = []
    for index in range(256):
        crc = index << 16
        for _ in range(8):
            crc <<= 1
            if crc & 0x1000000:
                crc ^= CRC24_POLY
        table.append(crc & 0xFFFFFF)
    return table


_CRC_TABLE = _build_crc_table()


def crc24(data: bytes) -> int:
    """CRC-24 as defined for the armor checksum."""
    crc = CRC24_INIT
    for byte in data:
        crc = ((crc << 8) & 0xFFFFFF) ^ _CRC_TABLE[((crc >> 16) ^ byte) & 0xFF]
    return crc


def armor(data: bytes, block: str = BLOCK_MESSAGE,
          headers: Iterable[Tuple[str, str]] = ()) -> str:
    """
    Wrap binary OpenPGP data in ASCII armor.

    Args:
        data:     Binary packets.
        block:    Armor block name, e.g. "PGP MESSAGE".
        headers:  Optional (key, value) armor headers.

    Returns:
        Armored text, newline terminated.
    """
    lines = [f"-----BEGIN {block}-----"]
    for key, value in headers:
        lines.append(f"{key}: {value}")
    lines.append("")

    encoded = base64.b64encode(data).decode("ascii")
    lines.extend(encoded[i:i + LINE_WIDTH] for i in range(0, len(encoded), LINE_WIDTH))

    checksum = crc24(data).to_bytes(3, "big")
    lines.append("=" + base64.b64encode(checksum).decode("ascii"))
    lines.append(f"-----END {block}-----")
    return "\n".join(lines) + "\n"


def is_armored(data: bytes) -> bool:
    return data.lstrip()[:15] == b"-----BEGIN PGP "


def dearmor(text, error=MalformedMessage) -> Tuple[str, bytes]:
    """
    Strip ASCII armor.

    Args:
        text:   Armored text (str or ASCII bytes).
        error:  Exception class raised for malformed armor.

    Returns:
        (block name, binary payload)

    Raises:
        error:  Missing markers, bad base64, or checksum mismatch.
    """
    if isinstance(text, (bytes, bytearray)):
        try:
            text = bytes(text).decode("ascii")
        except UnicodeDecodeError as exc:
            raise error("Armored data is not ASCII") from exc

    lines = [line.strip() for line in text.splitlines()]
    try:
        start = next(i for i, line in enumerate(lines)
                     if line.startswith("-----BEGIN ") and line.endswith("-----"))
    except StopIteration:
        raise error("No armor header line found") from None

    block = lines[start][len("-----BEGIN "):-len("-----")]
    end_line = f"-----END {block}-----"
    try:
        end = lines.index(end_line, start + 1)
    except ValueError:
        raise error(f"Missing armor tail line for {block}") from None

    body = lines[start + 1:end]
    # Headers run up to the first blank line
    if "" in body:
        body = body[body.index("") + 1:]
    else:
        while body and ": " in body[0]:
            body = body[1:]

    checksum = None
    if body and body[-1].startswith("=") and len(body[-1]) == 5:
        checksum = body.pop()[1:]

    try:
        payload = base64.b64decode("".join(body), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise error(f"Invalid base64 in armored {block}: {exc}") from exc

    if checksum is not None:
        try:
            expected = int.from_bytes(base64.b64decode(checksum, validate=True), "big")
        except (binascii.Error, ValueError) as exc:
            raise error("Invalid armor checksum encoding") from exc
        if crc24(payload) != expected:
            raise error(f"Armor checksum mismatch in {block}")

    return block, payload
