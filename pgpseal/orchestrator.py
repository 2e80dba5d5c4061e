"""
orchestrator.py
===============
Request Orchestrator: the single boundary where a request body and the
resolved configuration turn into an OpenPGP message or a typed error.

State machine:

  AwaitingInput -> ValidatingKeys -> Processing -> Completed
                         |                |
                         +----------------+-----> Failed

  ValidatingKeys  missing public / private key fails fast, before any
                  cryptographic work
  Processing      decode keys -> load key material -> seal message
  Failed          the originating error is kept on the flow and re-raised

Nothing is retried: key and format errors are deterministic.
"""

import base64
import binascii
import json
import logging
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, ValidationError

from pgpseal import keys
from pgpseal.config import PRIVATE_KEY_SETTING, PUBLIC_KEY_SETTING, Settings
from pgpseal.errors import ConfigurationError, CryptoOperationError, KeyDecodingError, PGPError
from pgpseal.message import seal

logger = logging.getLogger(__name__)

MISSING_PUBLIC_KEY = (
    "Please add a base64 encoded public key to an environment variable "
    f"called {PUBLIC_KEY_SETTING}"
)
MISSING_PRIVATE_KEY = (
    "Please add a base64 encoded private key to an environment variable "
    f"called {PRIVATE_KEY_SETTING}"
)


class State(str, Enum):
    AWAITING_INPUT  = "AwaitingInput"
    VALIDATING_KEYS = "ValidatingKeys"
    PROCESSING      = "Processing"
    COMPLETED       = "Completed"
    FAILED          = "Failed"


_TRANSITIONS = {
    State.AWAITING_INPUT: {State.VALIDATING_KEYS},
    State.VALIDATING_KEYS: {State.PROCESSING, State.FAILED},
    State.PROCESSING: {State.COMPLETED, State.FAILED},
    State.COMPLETED: set(),
    State.FAILED: set(),
}


class RequestOptions(BaseModel):
    """Optional JSON fields a caller may put in the request body."""
    model_config = ConfigDict(extra="ignore")

    passPhrase: Optional[str] = None


def parse_request_options(body: bytes) -> Optional[RequestOptions]:
    """
    Return RequestOptions when *body* is a JSON object matching the schema,
    otherwise None (the body is then just opaque content).
    """
    if not body.lstrip().startswith(b"{"):
        return None
    try:
        return RequestOptions.model_validate(json.loads(body))
    except (ValueError, ValidationError):
        return None


def decode_key_setting(value: str, name: str) -> bytes:
    """
    Base64-decode a configured key value.

    Raises:
        KeyDecodingError:  value is not valid base64.
    """
    try:
        return base64.b64decode("".join(value.split()), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise KeyDecodingError(f"The value of {name} is not valid base64: {exc}") from exc


class EncryptAndSignRequest:
    """One request flow. Owns every key object and buffer it creates."""

    def __init__(self, settings: Settings, body: bytes):
        self.settings = settings
        self.body = body
        self.state = State.AWAITING_INPUT
        self.error: Optional[PGPError] = None
        self.result: Optional[bytes] = None

    def _move(self, state: State) -> None:
        if state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal transition {self.state.value} -> {state.value}")
        logger.debug("Request %s -> %s", self.state.value, state.value)
        self.state = state

    def _fail(self, error: PGPError) -> PGPError:
        self.error = error
        self._move(State.FAILED)
        return error

    def _validate_keys(self) -> None:
        if not self.settings.public_key:
            raise ConfigurationError(MISSING_PUBLIC_KEY)
        if not self.settings.private_key:
            raise ConfigurationError(MISSING_PRIVATE_KEY)

    def _process(self) -> bytes:
        options = parse_request_options(self.body)
        if options is not None and options.passPhrase is not None:
            logger.info("Ignoring passPhrase in request body; the configured passphrase is used")

        public_key = keys.load(
            decode_key_setting(self.settings.public_key, PUBLIC_KEY_SETTING),
            keys.ROLE_PUBLIC,
        )
        private_key = keys.load(
            decode_key_setting(self.settings.private_key, PRIVATE_KEY_SETTING),
            keys.ROLE_PRIVATE,
            passphrase=self.settings.passphrase or None,
        )
        return seal(
            self.body, public_key, private_key,
            options=self.settings.encrypt_options(),
            armored=self.settings.armor,
        )

    def run(self) -> bytes:
        """
        Drive the flow to Completed and return the message bytes.

        Raises:
            PGPError:  the flow ended in Failed; ``self.error`` holds the same
                       exception.
        """
        if self.state != State.AWAITING_INPUT:
            raise RuntimeError("A request flow can only run once")
        self._move(State.VALIDATING_KEYS)
        try:
            self._validate_keys()
        except ConfigurationError as exc:
            raise self._fail(exc)

        self._move(State.PROCESSING)
        try:
            result = self._process()
        except PGPError as exc:
            raise self._fail(exc)
        except Exception as exc:
            raise self._fail(CryptoOperationError(f"Unexpected failure: {exc}")) from exc

        self.result = result
        self._move(State.COMPLETED)
        logger.info("Encrypted and signed %d bytes into %d bytes", len(self.body), len(result))
        return result
