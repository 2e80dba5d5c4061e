"""
keyexport.py
============
Serialise existing ``cryptography`` key objects as OpenPGP transferable keys.

This is how operators (and the test-suite) provision the base64 values for
``pgp-public-key`` and ``pgp-private-key-sign`` from keys they already hold.
It does not generate keys.

Layout produced:
  public :  Public-Key, User ID, positive certification,
            [Public-Subkey, subkey binding signature]
  private:  Secret-Key, User ID, positive certification,
            [Secret-Subkey, subkey binding signature]

Secret material is optionally protected with iterated+salted S2K (SHA-256)
and AES-256 CFB, checked with a SHA-1 hash (S2K usage 254).
"""

import os
import struct
import time
from typing import Optional

from cryptography.hazmat.primitives.asymmetric import ed25519, rsa, x25519

from pgpseal import algorithms as algs
from pgpseal import packets
from pgpseal.armor import BLOCK_PRIVATE_KEY, BLOCK_PUBLIC_KEY, armor
from pgpseal.keys import S2K, S2K_ITERATED, PrivateKey, PublicKey
from pgpseal.signing import SIG_POSITIVE_CERT, SIG_SUBKEY_BINDING, SignatureBuilder

# Coded S2K count 0x60 -> 65536 octets hashed
S2K_COUNT_BYTE = 0x60


def _public_body(key, created: int):
    """Return (algorithm id, public key packet body) for a private key object."""
    header = struct.pack(">BI", 4, created)
    if isinstance(key, rsa.RSAPrivateKey):
        numbers = key.public_key().public_numbers()
        return algs.PK_RSA, header + bytes([algs.PK_RSA]) + packets.mpi(numbers.n) + packets.mpi(numbers.e)
    if isinstance(key, ed25519.Ed25519PrivateKey):
        point = b"\x40" + key.public_key().public_bytes_raw()
        return algs.PK_EDDSA, (
            header + bytes([algs.PK_EDDSA, len(algs.OID_ED25519)]) + algs.OID_ED25519
            + packets.mpi_from_bytes(point)
        )
    if isinstance(key, x25519.X25519PrivateKey):
        point = b"\x40" + key.public_key().public_bytes_raw()
        return algs.PK_ECDH, (
            header + bytes([algs.PK_ECDH, len(algs.OID_CURVE25519)]) + algs.OID_CURVE25519
            + packets.mpi_from_bytes(point)
            + bytes([3, 1, algs.HASH_SHA256, algs.SYM_AES128])
        )
    raise TypeError(f"Unsupported key type {type(key).__name__}")


def _as_public(key, created: int, is_subkey: bool) -> PublicKey:
    algorithm, body = _public_body(key, created)
    kdf_hash = kdf_cipher = None
    if algorithm == algs.PK_ECDH:
        kdf_hash, kdf_cipher = algs.HASH_SHA256, algs.SYM_AES128
    return PublicKey(body, algorithm, created, key.public_key(), kdf_hash, kdf_cipher, is_subkey)


def _secret_mpis(key) -> bytes:
    if isinstance(key, rsa.RSAPrivateKey):
        numbers = key.private_numbers()
        p, q = sorted((numbers.p, numbers.q))
        return (packets.mpi(numbers.d) + packets.mpi(p) + packets.mpi(q)
                + packets.mpi(pow(p, -1, q)))
    if isinstance(key, ed25519.Ed25519PrivateKey):
        return packets.mpi_from_bytes(key.private_bytes_raw())
    return packets.mpi_from_bytes(key.private_bytes_raw()[::-1])


def _secret_body(key, public: PublicKey, passphrase: Optional[str]) -> bytes:
    cleartext = _secret_mpis(key)
    if not passphrase:
        checksum = struct.pack(">H", sum(cleartext) & 0xFFFF)
        return public.body + b"\x00" + cleartext + checksum

    salt = os.urandom(8)
    iv = os.urandom(algs.BLOCK_SIZE)
    s2k = S2K(S2K_ITERATED, algs.HASH_SHA256, salt, S2K.decode_count(S2K_COUNT_BYTE))
    sym_key = s2k.derive(passphrase.encode("utf-8"), algs.cipher_key_size(algs.SYM_AES256))

    check = algs.new_hash(algs.HASH_SHA1)
    check.update(cleartext)
    encryptor = algs.cfb_cipher(algs.SYM_AES256, sym_key, iv).encryptor()
    encrypted = encryptor.update(cleartext + check.finalize()) + encryptor.finalize()

    return (
        public.body
        + bytes([254, algs.SYM_AES256, S2K_ITERATED, algs.HASH_SHA256])
        + salt + bytes([S2K_COUNT_BYTE]) + iv + encrypted
    )


def _certification(signer: PrivateKey, user_id: bytes, flags: int, created: int) -> bytes:
    extra = (
        packets.subpacket(packets.SUB_KEY_FLAGS, bytes([flags]))
        + packets.subpacket(packets.SUB_PREFERRED_SYMMETRIC,
                            bytes([algs.SYM_AES256, algs.SYM_AES192, algs.SYM_AES128]))
        + packets.subpacket(packets.SUB_PREFERRED_HASH,
                            bytes([algs.HASH_SHA256, algs.HASH_SHA512, algs.HASH_SHA384]))
        + packets.subpacket(packets.SUB_PREFERRED_COMPRESSION,
                            bytes([algs.COMPRESS_ZLIB, algs.COMPRESS_ZIP, algs.COMPRESS_NONE]))
        + packets.subpacket(packets.SUB_FEATURES, b"\x01")
    )
    builder = SignatureBuilder(signer, SIG_POSITIVE_CERT, created=created, extra_hashed=extra)
    builder.update(signer.public.hash_material())
    builder.update(b"\xb4" + struct.pack(">I", len(user_id)) + user_id)
    return builder.finish()


def _binding(signer: PrivateKey, subkey: PublicKey, created: int) -> bytes:
    flags = packets.FLAG_ENCRYPT_COMMS | packets.FLAG_ENCRYPT_STORAGE
    extra = packets.subpacket(packets.SUB_KEY_FLAGS, bytes([flags]))
    builder = SignatureBuilder(signer, SIG_SUBKEY_BINDING, created=created, extra_hashed=extra)
    builder.update(signer.public.hash_material())
    builder.update(subkey.hash_material())
    return builder.finish()


def _serialize(primary, user_id: str, subkey, passphrase: Optional[str],
               created: Optional[int], secret: bool) -> bytes:
    if isinstance(primary, x25519.X25519PrivateKey):
        raise TypeError("X25519 keys can only be used as encryption subkeys")
    if subkey is not None and not isinstance(subkey, (rsa.RSAPrivateKey, x25519.X25519PrivateKey)):
        raise TypeError("Subkeys must be RSA or X25519 encryption keys")

    created = int(time.time()) if created is None else created
    primary_public = _as_public(primary, created, False)
    signer = PrivateKey.from_secret(primary_public, primary)

    flags = packets.FLAG_CERTIFY | packets.FLAG_SIGN
    if subkey is None and isinstance(primary, rsa.RSAPrivateKey):
        flags |= packets.FLAG_ENCRYPT_COMMS | packets.FLAG_ENCRYPT_STORAGE

    uid = user_id.encode("utf-8")
    if secret:
        out = packets.packet(packets.TAG_SECRET_KEY, _secret_body(primary, primary_public, passphrase))
    else:
        out = packets.packet(packets.TAG_PUBLIC_KEY, primary_public.body)
    out += packets.packet(packets.TAG_USER_ID, uid)
    out += _certification(signer, uid, flags, created)

    if subkey is not None:
        sub_public = _as_public(subkey, created, True)
        if secret:
            out += packets.packet(packets.TAG_SECRET_SUBKEY,
                                  _secret_body(subkey, sub_public, passphrase))
        else:
            out += packets.packet(packets.TAG_PUBLIC_SUBKEY, sub_public.body)
        out += _binding(signer, sub_public, created)
    return out


def serialize_public_key(primary, user_id: str, subkey=None, created: Optional[int] = None,
                         armored: bool = True) -> bytes:
    """
    Export the public half of *primary* (and optional encryption *subkey*).

    Args:
        primary:   RSA or Ed25519 ``cryptography`` private key (needed to
                   self-sign the user id).
        user_id:   e.g. "Alice <alice@example.com>".
        subkey:    Optional RSA or X25519 private key used for encryption.
        created:   Key creation timestamp (default: now).
        armored:   Return "PGP PUBLIC KEY BLOCK" armor instead of binary.

    Returns:
        Transferable public key bytes.
    """
    data = _serialize(primary, user_id, subkey, None, created, secret=False)
    return armor(data, BLOCK_PUBLIC_KEY).encode("ascii") if armored else data


def serialize_private_key(primary, user_id: str, subkey=None, passphrase: Optional[str] = None,
                          created: Optional[int] = None, armored: bool = True) -> bytes:
    """
    Export *primary* (and optional *subkey*) as a transferable secret key,
    protected with *passphrase* when one is given.
    """
    data = _serialize(primary, user_id, subkey, passphrase, created, secret=True)
    return armor(data, BLOCK_PRIVATE_KEY).encode("ascii") if armored else data
