"""
keys.py
=======
Key Material Loader.

Decodes OpenPGP transferable keys (RFC 4880 section 11.1 / 11.2), armored or
binary, into structured key objects:

  PublicKey   - key id, fingerprint, algorithm, creation time and a
                ``cryptography`` public key object
  PrivateKey  - a PublicKey plus the (possibly passphrase-protected) secret
                payload; must be unlocked before it can sign or decrypt

Supported public-key algorithms:
  RSA (1, 2, 3), EdDSA / Ed25519 (22), ECDH / Curve25519 (18)

Supported secret-key protection:
  S2K usage 0 / 254 / 255, S2K simple, salted and iterated+salted,
  AES-128/192/256 in CFB mode.

The loader never touches configuration: callers pass raw key bytes in.
"""

import logging
import struct
from typing import List, Optional

from cryptography.hazmat.primitives.asymmetric import ed25519, rsa, x25519

from pgpseal import algorithms as algs
from pgpseal import packets
from pgpseal.armor import dearmor, is_armored
from pgpseal.errors import (
    InvalidPassphrase,
    MalformedKey,
    PGPError,
    PassphraseRequired,
    SigningKeyLocked,
    UnsupportedAlgorithm,
)
from pgpseal.signing import parse_signature

logger = logging.getLogger(__name__)

ROLE_PUBLIC  = "public"
ROLE_PRIVATE = "private"

USAGE_ENCRYPT = "encrypt"
USAGE_SIGN    = "sign"

S2K_SIMPLE   = 0
S2K_SALTED   = 1
S2K_ITERATED = 3
S2K_GNU      = 101

# IV sizes of protection ciphers we may meet, so stub parsing stays aligned
_PROTECTION_BLOCK_SIZES = {2: 8, 3: 8, 4: 8, 7: 16, 8: 16, 9: 16, 10: 16}

_SUBKEY_BINDING   = 0x18
_CERTIFICATIONS   = (0x10, 0x11, 0x12, 0x13)
_DIRECT_KEY       = 0x1F


# ------------------------------------------------------------------ #
#  Key objects                                                         #
# ------------------------------------------------------------------ #

class PublicKey:
    """Public half of a primary key or subkey."""

    def __init__(self, body: bytes, algorithm: int, created: int, key=None,
                 kdf_hash: int = None, kdf_cipher: int = None, is_subkey: bool = False):
        self.body = body
        self.algorithm = algorithm
        self.created = created
        self.key = key
        self.kdf_hash = kdf_hash
        self.kdf_cipher = kdf_cipher
        self.is_subkey = is_subkey
        self.flags: Optional[int] = None

        digest = algs.new_hash(algs.HASH_SHA1)
        digest.update(b"\x99" + struct.pack(">H", len(body)) + body)
        self.fingerprint = digest.finalize()
        self.key_id = self.fingerprint[-8:]

    @property
    def supported(self) -> bool:
        return self.key is not None

    def can_encrypt(self) -> bool:
        if not self.supported or self.algorithm not in algs.CAN_ENCRYPT:
            return False
        return self.flags is None or bool(
            self.flags & (packets.FLAG_ENCRYPT_COMMS | packets.FLAG_ENCRYPT_STORAGE))

    def can_sign(self) -> bool:
        if not self.supported or self.algorithm not in algs.CAN_SIGN:
            return False
        return self.flags is None or bool(self.flags & packets.FLAG_SIGN)

    def hash_material(self) -> bytes:
        """Key packet framing used when a signature covers this key."""
        return b"\x99" + struct.pack(">H", len(self.body)) + self.body

    def describe(self) -> str:
        name = algs.describe_public_key_algorithm(self.algorithm)
        if self.algorithm in algs.RSA_ALGORITHMS and self.key is not None:
            name = f"{name}-{self.key.key_size}"
        return f"{name} key {self.key_id.hex().upper()}"

    def __repr__(self):
        return f"<PublicKey {self.describe()}>"


class S2K:
    """String-to-key specifier (RFC 4880 section 3.7)."""

    def __init__(self, kind: int, hash_algorithm: int = None, salt: bytes = b"",
                 count: int = 0, gnu_mode: int = None):
        self.kind = kind
        self.hash_algorithm = hash_algorithm
        self.salt = salt
        self.count = count
        self.gnu_mode = gnu_mode

    @staticmethod
    def decode_count(coded: int) -> int:
        return (16 + (coded & 15)) << ((coded >> 4) + 6)

    def derive(self, passphrase: bytes, key_size: int) -> bytes:
        """Derive *key_size* bytes from a passphrase."""
        if self.kind == S2K_SIMPLE:
            data = passphrase
        else:
            data = self.salt + passphrase

        output = b""
        preload = 0
        while len(output) < key_size:
            digest = algs.new_hash(self.hash_algorithm)
            digest.update(b"\x00" * preload)
            if self.kind == S2K_ITERATED:
                count = max(self.count, len(data))
                unit = data * max(1, 8192 // len(data))
                while count >= len(unit):
                    digest.update(unit)
                    count -= len(unit)
                digest.update(unit[:count])
            else:
                digest.update(data)
            output += digest.finalize()
            preload += 1
        return output[:key_size]


class PrivateKey:
    """Secret key packet: public half plus the protected secret payload."""

    def __init__(self, public: PublicKey, usage: int, cipher: int = None,
                 s2k: S2K = None, iv: bytes = b"", payload: bytes = b""):
        self.public = public
        self.usage = usage
        self.cipher = cipher
        self.s2k = s2k
        self.iv = iv
        self.payload = payload
        self._secret = None

    @classmethod
    def from_secret(cls, public: PublicKey, secret) -> "PrivateKey":
        """Wrap an in-memory ``cryptography`` private key as an unlocked key."""
        key = cls(public, usage=0)
        key._secret = secret
        return key

    @property
    def key_id(self) -> bytes:
        return self.public.key_id

    @property
    def fingerprint(self) -> bytes:
        return self.public.fingerprint

    @property
    def algorithm(self) -> int:
        return self.public.algorithm

    @property
    def is_protected(self) -> bool:
        return self.usage != 0

    @property
    def is_stub(self) -> bool:
        return self.s2k is not None and self.s2k.kind == S2K_GNU

    @property
    def unlocked(self) -> bool:
        return self._secret is not None

    def secret(self):
        """Return the ``cryptography`` private key, or raise if still locked."""
        if self._secret is None:
            raise SigningKeyLocked(
                f"Private key {self.key_id.hex().upper()} has not been unlocked"
            )
        return self._secret

    def unlock(self, passphrase: Optional[str] = None) -> None:
        """
        Decrypt the secret payload with *passphrase*.

        Raises:
            PassphraseRequired:    key is protected and no passphrase given.
            InvalidPassphrase:     checksum / hash over the payload mismatches.
            UnsupportedAlgorithm:  unknown protection cipher or S2K.
            MalformedKey:          secret MPIs do not form a valid key.
        """
        if self._secret is not None:
            return
        if not self.public.supported:
            raise UnsupportedAlgorithm(
                f"Unsupported public-key algorithm in {self.public.describe()}"
            )
        if self.is_stub:
            raise MalformedKey(
                f"Secret material for {self.public.describe()} is not present (stub key)"
            )

        if not self.is_protected:
            cleartext = self.payload
            _check_sum16(cleartext, MalformedKey("Secret key checksum mismatch"))
            cleartext = cleartext[:-2]
        else:
            if not passphrase:
                raise PassphraseRequired(
                    f"A passphrase is required to unlock {self.public.describe()}"
                )
            cleartext = self._decrypt_payload(passphrase.encode("utf-8"))

        self._secret = _build_private_key(self.public, cleartext)
        logger.debug("Unlocked %s", self.public.describe())

    def _decrypt_payload(self, passphrase: bytes) -> bytes:
        if self.usage not in (254, 255) or self.s2k is None:
            raise UnsupportedAlgorithm("Legacy secret key protection is not supported")
        if self.cipher not in (algs.SYM_AES128, algs.SYM_AES192, algs.SYM_AES256):
            raise UnsupportedAlgorithm(
                f"Unsupported secret key protection cipher id {self.cipher}"
            )
        if self.s2k.kind not in (S2K_SIMPLE, S2K_SALTED, S2K_ITERATED):
            raise UnsupportedAlgorithm(f"Unsupported S2K specifier {self.s2k.kind}")

        try:
            key = self.s2k.derive(passphrase, algs.cipher_key_size(self.cipher))
        except PGPError as exc:
            raise UnsupportedAlgorithm(str(exc)) from exc
        decryptor = algs.cfb_cipher(self.cipher, key, self.iv).decryptor()
        cleartext = decryptor.update(self.payload) + decryptor.finalize()

        if self.usage == 254:
            if len(cleartext) < 20:
                raise InvalidPassphrase("Invalid passphrase for private key")
            body, check = cleartext[:-20], cleartext[-20:]
            digest = algs.new_hash(algs.HASH_SHA1)
            digest.update(body)
            if digest.finalize() != check:
                raise InvalidPassphrase("Invalid passphrase for private key")
            return body

        _check_sum16(cleartext, InvalidPassphrase("Invalid passphrase for private key"))
        return cleartext[:-2]

    def __repr__(self):
        state = "unlocked" if self.unlocked else "locked"
        return f"<PrivateKey {self.public.describe()} {state}>"


class KeyBlock:
    """A transferable key: primary key, user ids and subkeys."""

    def __init__(self, primary, user_ids: List[str], subkeys: list):
        self.primary = primary
        self.user_ids = user_ids
        self.subkeys = subkeys

    @property
    def is_secret(self) -> bool:
        return isinstance(self.primary, PrivateKey)

    def _all(self):
        return [self.primary] + list(self.subkeys)

    def select(self, usage: str):
        """
        Pick the key to use for *usage*.

        Encryption prefers a subkey, signing prefers the primary key,
        which is how OpenPGP implementations conventionally split duties.
        """
        candidates = self._all()
        if usage == USAGE_ENCRYPT:
            candidates = candidates[1:] + candidates[:1]
            for key in candidates:
                if _public(key).can_encrypt():
                    return key
        else:
            for key in candidates:
                if _public(key).can_sign():
                    return key

        found = ", ".join(_public(k).describe() for k in candidates) or "none"
        raise UnsupportedAlgorithm(
            f"No {usage}-capable key with a supported algorithm (found: {found})"
        )


# ------------------------------------------------------------------ #
#  Parsing                                                             #
# ------------------------------------------------------------------ #

def _public(key) -> PublicKey:
    return key.public if isinstance(key, PrivateKey) else key


def _check_sum16(data: bytes, error: Exception) -> None:
    if len(data) < 2:
        raise error
    if sum(data[:-2]) & 0xFFFF != struct.unpack(">H", data[-2:])[0]:
        raise error


def _read_point(reader: packets.Reader) -> bytes:
    point = reader.mpi_bytes()
    if len(point) != 33 or point[0] != 0x40:
        raise MalformedKey("Invalid curve point encoding")
    return point[1:]


def _read_public(reader: packets.Reader, is_subkey: bool) -> PublicKey:
    start = reader.pos
    version = reader.u8()
    if version != 4:
        raise UnsupportedAlgorithm(f"Unsupported key packet version {version}")
    created = reader.u32()
    algorithm = reader.u8()

    key = None
    kdf_hash = kdf_cipher = None
    try:
        if algorithm in algs.RSA_ALGORITHMS:
            n = reader.mpi()
            e = reader.mpi()
            key = rsa.RSAPublicNumbers(e, n).public_key()
        elif algorithm == algs.PK_EDDSA:
            oid = reader.read(reader.u8())
            point = _read_point(reader)
            if oid == algs.OID_ED25519:
                key = ed25519.Ed25519PublicKey.from_public_bytes(point)
        elif algorithm == algs.PK_ECDH:
            oid = reader.read(reader.u8())
            point = _read_point(reader)
            kdf = reader.read(reader.u8())
            if len(kdf) != 3 or kdf[0] != 1:
                raise MalformedKey("Invalid ECDH KDF parameters")
            kdf_hash, kdf_cipher = kdf[1], kdf[2]
            if oid == algs.OID_CURVE25519:
                key = x25519.X25519PublicKey.from_public_bytes(point)
        else:
            # Unknown layout: the remainder of a public packet is opaque
            reader.rest()
    except ValueError as exc:
        raise MalformedKey(f"Invalid public key parameters: {exc}") from exc

    body = reader.data[start:reader.pos]
    return PublicKey(body, algorithm, created, key, kdf_hash, kdf_cipher, is_subkey)


def _read_s2k(reader: packets.Reader) -> S2K:
    kind = reader.u8()
    if kind == S2K_SIMPLE:
        return S2K(kind, reader.u8())
    if kind == S2K_SALTED:
        return S2K(kind, reader.u8(), reader.read(8))
    if kind == S2K_ITERATED:
        hash_algorithm = reader.u8()
        salt = reader.read(8)
        return S2K(kind, hash_algorithm, salt, S2K.decode_count(reader.u8()))
    if kind == S2K_GNU:
        hash_algorithm = reader.u8()
        if reader.read(3) != b"GNU":
            raise MalformedKey("Invalid GNU S2K extension")
        return S2K(kind, hash_algorithm, gnu_mode=reader.u8())
    raise UnsupportedAlgorithm(f"Unsupported S2K specifier {kind}")


def _read_secret(body: bytes, is_subkey: bool) -> PrivateKey:
    reader = packets.Reader(body, MalformedKey)
    public = _read_public(reader, is_subkey)
    if public.algorithm not in algs.RSA_ALGORITHMS + (algs.PK_EDDSA, algs.PK_ECDH):
        # Cannot find where the public part ends; keep the key unusable
        return PrivateKey(public, usage=0)

    usage = reader.u8()
    cipher = s2k = None
    iv = b""
    if usage in (254, 255):
        cipher = reader.u8()
        s2k = _read_s2k(reader)
        if s2k.kind != S2K_GNU:
            iv = reader.read(_PROTECTION_BLOCK_SIZES.get(cipher, 16))
    elif usage != 0:
        cipher = usage
        iv = reader.read(_PROTECTION_BLOCK_SIZES.get(cipher, 16))
    return PrivateKey(public, usage, cipher, s2k, iv, reader.rest())


def _build_private_key(public: PublicKey, cleartext: bytes):
    reader = packets.Reader(cleartext, MalformedKey)
    try:
        if public.algorithm in algs.RSA_ALGORITHMS:
            d, p, q = reader.mpi(), reader.mpi(), reader.mpi()
            reader.mpi()  # u = p^-1 mod q; cryptography wants q^-1 mod p
            numbers = rsa.RSAPrivateNumbers(
                p=p, q=q, d=d,
                dmp1=rsa.rsa_crt_dmp1(d, p),
                dmq1=rsa.rsa_crt_dmq1(d, q),
                iqmp=rsa.rsa_crt_iqmp(p, q),
                public_numbers=public.key.public_numbers(),
            )
            return numbers.private_key()
        if public.algorithm == algs.PK_EDDSA:
            seed = reader.mpi_bytes().rjust(32, b"\x00")
            secret = ed25519.Ed25519PrivateKey.from_private_bytes(seed)
        else:
            scalar = reader.mpi_bytes().rjust(32, b"\x00")
            secret = x25519.X25519PrivateKey.from_private_bytes(scalar[::-1])
    except ValueError as exc:
        raise MalformedKey(f"Invalid secret key parameters: {exc}") from exc

    if secret.public_key().public_bytes_raw() != public.key.public_bytes_raw():
        raise MalformedKey("Secret key does not match its public key")
    return secret


def parse_key_block(data: bytes) -> KeyBlock:
    """
    Parse the first transferable key in *data* (armored or binary).

    Raises:
        MalformedKey:  structure is not a key block.
    """
    if is_armored(data):
        _, data = dearmor(data, MalformedKey)

    primary = None
    user_ids = []
    subkeys = []
    current = None
    try:
        for pkt in packets.read_packets(data, MalformedKey):
            if pkt.tag in (packets.TAG_PUBLIC_KEY, packets.TAG_SECRET_KEY):
                if primary is not None:
                    break
                if pkt.tag == packets.TAG_SECRET_KEY:
                    primary = _read_secret(pkt.body, False)
                else:
                    primary = _read_public(packets.Reader(pkt.body, MalformedKey), False)
                current = primary
            elif primary is None:
                if pkt.tag == packets.TAG_MARKER:
                    continue
                raise MalformedKey("Key block does not start with a key packet")
            elif pkt.tag == packets.TAG_PUBLIC_SUBKEY:
                current = _read_public(packets.Reader(pkt.body, MalformedKey), True)
                subkeys.append(current)
            elif pkt.tag == packets.TAG_SECRET_SUBKEY:
                current = _read_secret(pkt.body, True)
                subkeys.append(current)
            elif pkt.tag == packets.TAG_USER_ID:
                user_ids.append(pkt.body.decode("utf-8", "replace"))
                current = primary
            elif pkt.tag == packets.TAG_SIGNATURE:
                _apply_key_flags(pkt.body, primary, current)
    except UnsupportedAlgorithm:
        raise
    except PGPError as exc:
        raise MalformedKey(str(exc)) from exc

    if primary is None:
        raise MalformedKey("No key packet found")
    return KeyBlock(primary, user_ids, subkeys)


def _apply_key_flags(body: bytes, primary, current) -> None:
    try:
        sig = parse_signature(body, MalformedKey)
    except PGPError:
        # Signatures we cannot read simply contribute no key flags
        return
    if sig.key_flags is None:
        return
    target = None
    if sig.sig_type == _SUBKEY_BINDING and current is not primary:
        target = _public(current)
    elif sig.sig_type in _CERTIFICATIONS + (_DIRECT_KEY,):
        target = _public(primary)
    if target is not None and target.flags is None:
        target.flags = sig.key_flags


# ------------------------------------------------------------------ #
#  Public entry point                                                  #
# ------------------------------------------------------------------ #

def load(data: bytes, role: str, passphrase: Optional[str] = None,
         usage: Optional[str] = None, unlock: bool = True):
    """
    Decode a key blob into KeyMaterial.

    Args:
        data:        Armored or binary transferable key.
        role:        ROLE_PUBLIC or ROLE_PRIVATE.
        passphrase:  Unlocks a protected private key.
        usage:       USAGE_ENCRYPT or USAGE_SIGN; defaults to encrypt for
                     public keys and sign for private keys.
        unlock:      Unlock a private key immediately (default).

    Returns:
        PublicKey for ROLE_PUBLIC, PrivateKey for ROLE_PRIVATE.

    Raises:
        MalformedKey, UnsupportedAlgorithm, PassphraseRequired,
        InvalidPassphrase
    """
    if role not in (ROLE_PUBLIC, ROLE_PRIVATE):
        raise ValueError(f"Unknown key role '{role}'")
    if usage is None:
        usage = USAGE_ENCRYPT if role == ROLE_PUBLIC else USAGE_SIGN

    block = parse_key_block(bytes(data))
    if role == ROLE_PRIVATE and not block.is_secret:
        raise MalformedKey("Expected a private key block but found a public key")

    selected = block.select(usage)
    if role == ROLE_PUBLIC:
        selected = _public(selected)
        logger.info("Loaded public %s", selected.describe())
        return selected

    if unlock:
        selected.unlock(passphrase)
    logger.info("Loaded private %s", selected.public.describe())
    return selected
