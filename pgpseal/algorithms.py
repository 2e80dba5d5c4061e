"""
algorithms.py
=============
OpenPGP algorithm identifiers (RFC 4880 section 9) and the mapping from
those identifiers onto ``cryptography`` primitives.

Only algorithms backed by a vetted primitive are listed; anything else is
rejected with a typed error instead of being silently downgraded.
"""

from cryptography.hazmat.decrepit.ciphers.modes import CFB
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms

from pgpseal.errors import UnsupportedCipher, UnsupportedHashAlgorithm


# ── Public-key algorithms ──────────────────────────────────────────
PK_RSA          = 1
PK_RSA_ENCRYPT  = 2
PK_RSA_SIGN     = 3
PK_ECDH         = 18
PK_EDDSA        = 22

RSA_ALGORITHMS  = (PK_RSA, PK_RSA_ENCRYPT, PK_RSA_SIGN)
CAN_ENCRYPT     = (PK_RSA, PK_RSA_ENCRYPT, PK_ECDH)
CAN_SIGN        = (PK_RSA, PK_RSA_SIGN, PK_EDDSA)

PUBLIC_KEY_NAMES = {
    PK_RSA: "RSA",
    PK_RSA_ENCRYPT: "RSA (encrypt only)",
    PK_RSA_SIGN: "RSA (sign only)",
    16: "ElGamal",
    17: "DSA",
    PK_ECDH: "ECDH",
    19: "ECDSA",
    PK_EDDSA: "EdDSA",
}

# Curve OIDs as they appear on the wire (DER body without tag/length)
OID_ED25519    = bytes.fromhex("2b06010401da470f01")
OID_CURVE25519 = bytes.fromhex("2b060104019755010501")


# ── Symmetric algorithms ───────────────────────────────────────────
SYM_AES128 = 7
SYM_AES192 = 8
SYM_AES256 = 9

_CIPHER_KEY_SIZES = {SYM_AES128: 16, SYM_AES192: 24, SYM_AES256: 32}
_CIPHER_NAMES = {"AES128": SYM_AES128, "AES192": SYM_AES192, "AES256": SYM_AES256}
BLOCK_SIZE = 16


# ── Hash algorithms ────────────────────────────────────────────────
HASH_SHA1   = 2
HASH_SHA256 = 8
HASH_SHA384 = 9
HASH_SHA512 = 10
HASH_SHA224 = 11

_HASHES = {
    HASH_SHA1: hashes.SHA1,
    HASH_SHA256: hashes.SHA256,
    HASH_SHA384: hashes.SHA384,
    HASH_SHA512: hashes.SHA512,
    HASH_SHA224: hashes.SHA224,
}
_HASH_NAMES = {
    "SHA1": HASH_SHA1,
    "SHA256": HASH_SHA256,
    "SHA384": HASH_SHA384,
    "SHA512": HASH_SHA512,
    "SHA224": HASH_SHA224,
}


# ── Compression algorithms ─────────────────────────────────────────
COMPRESS_NONE = 0
COMPRESS_ZIP  = 1
COMPRESS_ZLIB = 2

_COMPRESSION_NAMES = {
    "UNCOMPRESSED": COMPRESS_NONE,
    "ZIP": COMPRESS_ZIP,
    "ZLIB": COMPRESS_ZLIB,
}


def cipher_key_size(algorithm: int) -> int:
    """Return the key length in bytes for a symmetric algorithm id."""
    try:
        return _CIPHER_KEY_SIZES[algorithm]
    except KeyError:
        raise UnsupportedCipher(f"Unsupported symmetric algorithm id {algorithm}") from None


def cipher_by_name(name: str) -> int:
    try:
        return _CIPHER_NAMES[name.upper()]
    except KeyError:
        raise UnsupportedCipher(f"Unsupported symmetric cipher '{name}'") from None


def cfb_cipher(algorithm: int, key: bytes, iv: bytes = None) -> Cipher:
    """
    Build a full-block CFB cipher for *algorithm*.

    OpenPGP's integrity-protected data packet uses plain CFB with an all-zero
    IV; the random prefix takes the place of the IV.
    """
    if len(key) != cipher_key_size(algorithm):
        raise UnsupportedCipher(
            f"Key length {len(key)} does not match symmetric algorithm id {algorithm}"
        )
    if iv is None:
        iv = bytes(BLOCK_SIZE)
    return Cipher(algorithms.AES(bytes(key)), CFB(iv))


def hash_algorithm(algorithm: int) -> hashes.HashAlgorithm:
    """Return a ``cryptography`` hash instance for an OpenPGP hash id."""
    try:
        return _HASHES[algorithm]()
    except KeyError:
        raise UnsupportedHashAlgorithm(f"Unsupported hash algorithm id {algorithm}") from None


def new_hash(algorithm: int) -> hashes.Hash:
    return hashes.Hash(hash_algorithm(algorithm))


def hash_by_name(name: str) -> int:
    try:
        return _HASH_NAMES[name.upper().replace("-", "")]
    except KeyError:
        raise UnsupportedHashAlgorithm(f"Unsupported hash algorithm '{name}'") from None


def compression_by_name(name: str) -> int:
    try:
        return _COMPRESSION_NAMES[name.upper()]
    except KeyError:
        raise ValueError(f"Unsupported compression algorithm '{name}'") from None


def describe_public_key_algorithm(algorithm: int) -> str:
    return PUBLIC_KEY_NAMES.get(algorithm, f"algorithm {algorithm}")
