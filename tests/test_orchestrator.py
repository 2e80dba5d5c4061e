"""
tests/test_orchestrator.py
==========================
Unit tests for the request orchestrator: key validation, state machine and
error mapping.

Run with:  python -m pytest tests/ -v
"""

import json, os, sys, unittest
from unittest import mock
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from pgp_keys import PASSPHRASE, protected_signer, rsa_recipient, rsa_signer

from pgpseal.config import Settings
from pgpseal.decryption import decrypt_and_verify
from pgpseal.errors import (
    ConfigurationError,
    CryptoOperationError,
    KeyDecodingError,
    MalformedKey,
    PassphraseRequired,
)
from pgpseal.orchestrator import (
    MISSING_PRIVATE_KEY,
    MISSING_PUBLIC_KEY,
    EncryptAndSignRequest,
    State,
    decode_key_setting,
    parse_request_options,
)


def _settings(signer=None, **overrides):
    signer = signer or rsa_signer()
    values = dict(
        public_key=rsa_recipient().public_b64,
        private_key=signer.private_b64,
        passphrase=signer.passphrase or "",
    )
    values.update(overrides)
    return Settings(**values)


class TestKeyValidation(unittest.TestCase):
    """Missing key configuration fails before any cryptographic work."""

    def test_missing_public_key(self):
        flow = EncryptAndSignRequest(_settings(public_key=None), b"data")
        with mock.patch("pgpseal.keys.load") as load:
            with self.assertRaises(ConfigurationError) as ctx:
                flow.run()
        self.assertEqual(str(ctx.exception), MISSING_PUBLIC_KEY)
        load.assert_not_called()

    def test_missing_private_key(self):
        flow = EncryptAndSignRequest(_settings(private_key=""), b"data")
        with mock.patch("pgpseal.keys.load") as load:
            with self.assertRaises(ConfigurationError) as ctx:
                flow.run()
        self.assertEqual(str(ctx.exception), MISSING_PRIVATE_KEY)
        load.assert_not_called()

    def test_public_key_reported_first(self):
        flow = EncryptAndSignRequest(_settings(public_key=None, private_key=None), b"data")
        with self.assertRaises(ConfigurationError) as ctx:
            flow.run()
        self.assertIn("pgp-public-key", str(ctx.exception))

    def test_messages_name_the_settings(self):
        self.assertEqual(
            MISSING_PUBLIC_KEY,
            "Please add a base64 encoded public key to an environment variable called pgp-public-key",
        )
        self.assertTrue(MISSING_PRIVATE_KEY.endswith("pgp-private-key-sign"))

    def test_invalid_base64(self):
        flow = EncryptAndSignRequest(_settings(public_key="not base64!!"), b"data")
        with self.assertRaises(KeyDecodingError):
            flow.run()

    def test_decode_ignores_whitespace(self):
        self.assertEqual(decode_key_setting("aGVs\nbG8=\n", "pgp-public-key"), b"hello")

    def test_swapped_keys(self):
        flow = EncryptAndSignRequest(
            _settings(private_key=rsa_recipient().public_b64), b"data")
        with self.assertRaises(MalformedKey):
            flow.run()


class TestStateMachine(unittest.TestCase):

    def test_success_reaches_completed(self):
        flow = EncryptAndSignRequest(_settings(), b"hello")
        self.assertEqual(flow.state, State.AWAITING_INPUT)
        result = flow.run()
        self.assertEqual(flow.state, State.COMPLETED)
        self.assertIs(flow.result, result)
        self.assertIsNone(flow.error)

    def test_failure_keeps_error(self):
        flow = EncryptAndSignRequest(_settings(public_key=None), b"hello")
        with self.assertRaises(ConfigurationError) as ctx:
            flow.run()
        self.assertEqual(flow.state, State.FAILED)
        self.assertIs(flow.error, ctx.exception)
        self.assertIsNone(flow.result)

    def test_runs_only_once(self):
        flow = EncryptAndSignRequest(_settings(), b"hello")
        flow.run()
        with self.assertRaises(RuntimeError):
            flow.run()

    def test_unexpected_failure_becomes_crypto_error(self):
        flow = EncryptAndSignRequest(_settings(), b"hello")
        with mock.patch("pgpseal.orchestrator.seal", side_effect=RuntimeError("boom")):
            with self.assertRaises(CryptoOperationError) as ctx:
                flow.run()
        self.assertFalse(ctx.exception.client_error)
        self.assertEqual(flow.state, State.FAILED)


class TestProcessing(unittest.TestCase):

    def test_output_decrypts_to_body(self):
        body = b"\x00\x01binary body\xff"
        message = EncryptAndSignRequest(_settings(), body).run()
        result = decrypt_and_verify(message, rsa_recipient().decryption_key(),
                                    rsa_signer().verification_key())
        self.assertEqual(result.plaintext, body)

    def test_binary_output_setting(self):
        message = EncryptAndSignRequest(_settings(armor=False), b"raw").run()
        self.assertFalse(message.startswith(b"-----BEGIN"))

    def test_protected_signing_key(self):
        message = EncryptAndSignRequest(_settings(signer=protected_signer()), b"x").run()
        self.assertTrue(message.startswith(b"-----BEGIN PGP MESSAGE-----"))

    def test_request_passphrase_is_not_applied(self):
        body = json.dumps({"passPhrase": PASSPHRASE}).encode()
        flow = EncryptAndSignRequest(_settings(signer=protected_signer(), passphrase=""), body)
        with self.assertRaises(PassphraseRequired):
            flow.run()

    def test_request_passphrase_logged_and_body_encrypted(self):
        body = json.dumps({"passPhrase": "something else"}).encode()
        flow = EncryptAndSignRequest(_settings(signer=protected_signer()), body)
        with self.assertLogs("pgpseal.orchestrator", level="INFO") as logs:
            message = flow.run()
        self.assertTrue(any("Ignoring passPhrase" in line for line in logs.output))
        result = decrypt_and_verify(message, rsa_recipient().decryption_key())
        self.assertEqual(result.plaintext, body)


class TestRequestOptions(unittest.TestCase):

    def test_plain_body(self):
        self.assertIsNone(parse_request_options(b"just some bytes"))

    def test_invalid_json(self):
        self.assertIsNone(parse_request_options(b"{not json"))

    def test_passphrase_field(self):
        options = parse_request_options(b'{"passPhrase": "pw", "other": 1}')
        self.assertEqual(options.passPhrase, "pw")

    def test_missing_field(self):
        self.assertIsNone(parse_request_options(b"{}").passPhrase)


if __name__ == "__main__":
    unittest.main(verbosity=2)
