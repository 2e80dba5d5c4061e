"""
errors.py
=========
Exception hierarchy for PGPSeal.

Every failure raised by the OpenPGP core derives from ``PGPError`` so the
request orchestrator can resolve it at a single boundary:

  ConfigurationError     required key material missing        -> HTTP 400
  KeyFormatError         bad key bytes / algorithm / password -> HTTP 400
  CryptoOperationError   failure not caused by bad input      -> HTTP 500

Reader-side errors (DecryptionError and friends) are only raised by
``decryption.decrypt_and_verify``.
"""


class PGPError(Exception):
    """Base class for every error raised by this package."""

    client_error = True


# ------------------------------------------------------------------ #
#  Configuration                                                       #
# ------------------------------------------------------------------ #

class ConfigurationError(PGPError):
    """A required configuration value (key material) is missing."""


# ------------------------------------------------------------------ #
#  Key material                                                        #
# ------------------------------------------------------------------ #

class KeyFormatError(PGPError):
    """Key bytes could not be turned into usable key material."""


class KeyDecodingError(KeyFormatError):
    """The configured key value is not valid base64 / text."""


class MalformedKey(KeyFormatError):
    """The key block is structurally invalid."""


class UnsupportedAlgorithm(KeyFormatError):
    """The key uses a public-key or protection algorithm we do not implement."""


class PassphraseRequired(KeyFormatError):
    """The private key is encrypted and no passphrase was supplied."""


class InvalidPassphrase(KeyFormatError):
    """The passphrase did not decrypt the private key payload."""


# ------------------------------------------------------------------ #
#  Signing / encryption                                                #
# ------------------------------------------------------------------ #

class SigningKeyLocked(KeyFormatError):
    """A private key was used for signing before being unlocked."""


class UnsupportedHashAlgorithm(KeyFormatError):
    """The requested digest algorithm is not available."""


class EncryptionKeyInvalid(KeyFormatError):
    """The recipient key cannot be used to wrap a session key."""


class UnsupportedCipher(KeyFormatError):
    """The requested symmetric cipher is not available."""


class CryptoOperationError(PGPError):
    """Unexpected failure during signing or encryption (server fault)."""

    client_error = False


# ------------------------------------------------------------------ #
#  Reading messages                                                    #
# ------------------------------------------------------------------ #

class MalformedMessage(PGPError):
    """The OpenPGP message could not be parsed."""


class DecryptionError(PGPError):
    """The session key could not be recovered or the data not decrypted."""


class IntegrityError(DecryptionError):
    """The modification detection code did not match."""


class SignatureVerificationError(PGPError):
    """The embedded signature is missing or does not verify."""
