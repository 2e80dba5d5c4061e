"""
tests/test_app.py
=================
HTTP-level tests for the PGPEncryptAndSign trigger using FastAPI's TestClient.

Run with:  python -m pytest tests/ -v
"""

import os, sys, unittest
from unittest import mock
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from fastapi.testclient import TestClient

from pgp_keys import protected_signer, rsa_recipient, rsa_signer

from app import MESSAGE_MEDIA_TYPE, app, get_settings
from pgpseal.config import Settings
from pgpseal.decryption import decrypt_and_verify
from pgpseal.errors import ConfigurationError
from pgpseal.orchestrator import MISSING_PRIVATE_KEY, MISSING_PUBLIC_KEY

URL = "/api/PGPEncryptAndSign"


class AppTestCase(unittest.TestCase):
    """Runs each test against the app with injected settings."""

    def setUp(self):
        self.settings = Settings(
            public_key=rsa_recipient().public_b64,
            private_key=rsa_signer().private_b64,
        )
        app.dependency_overrides[get_settings] = lambda: self.settings
        self.client = TestClient(app)

    def tearDown(self):
        app.dependency_overrides.clear()


class TestEncryptAndSignEndpoint(AppTestCase):

    def test_returns_decryptable_message(self):
        body = b"Quarterly numbers: 42"
        response = self.client.post(URL, content=body)
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.headers["content-type"].startswith(MESSAGE_MEDIA_TYPE))
        self.assertTrue(response.content.startswith(b"-----BEGIN PGP MESSAGE-----"))

        result = decrypt_and_verify(response.content, rsa_recipient().decryption_key(),
                                    rsa_signer().verification_key())
        self.assertEqual(result.plaintext, body)
        self.assertTrue(result.verified)

    def test_empty_body(self):
        response = self.client.post(URL, content=b"")
        self.assertEqual(response.status_code, 200)
        result = decrypt_and_verify(response.content, rsa_recipient().decryption_key())
        self.assertEqual(result.plaintext, b"")

    def test_binary_output(self):
        self.settings.armor = False
        response = self.client.post(URL, content=b"raw")
        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.content.startswith(b"-----BEGIN"))

    def test_missing_public_key(self):
        self.settings.public_key = None
        response = self.client.post(URL, content=b"data")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.text, MISSING_PUBLIC_KEY)

    def test_missing_private_key(self):
        self.settings.private_key = None
        response = self.client.post(URL, content=b"data")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.text, MISSING_PRIVATE_KEY)

    def test_invalid_key_value(self):
        self.settings.public_key = "@@@"
        response = self.client.post(URL, content=b"data")
        self.assertEqual(response.status_code, 400)
        self.assertIn("pgp-public-key", response.text)

    def test_wrong_passphrase(self):
        self.settings.private_key = protected_signer().private_b64
        self.settings.passphrase = "wrong"
        response = self.client.post(URL, content=b"data")
        self.assertEqual(response.status_code, 400)

    def test_body_too_large(self):
        self.settings.max_body_bytes = 16
        response = self.client.post(URL, content=b"x" * 17)
        self.assertEqual(response.status_code, 413)

    def test_body_at_limit(self):
        self.settings.max_body_bytes = 16
        response = self.client.post(URL, content=b"x" * 16)
        self.assertEqual(response.status_code, 200)

    def test_get_not_allowed(self):
        self.assertEqual(self.client.get(URL).status_code, 405)

    def test_unreadable_configuration(self):
        def broken():
            raise ConfigurationError("Setting 'cipher' is invalid")

        app.dependency_overrides[get_settings] = broken
        response = self.client.post(URL, content=b"data")
        self.assertEqual(response.status_code, 500)


class TestHealth(AppTestCase):

    def test_health(self):
        response = self.client.get("/api/health")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "ok"})


class TestStartup(unittest.TestCase):
    """Logging is configured when the server starts the app, not on import."""

    def test_startup_configures_logging_from_settings(self):
        settings = Settings(log_level="debug")
        with mock.patch("app.load_settings", return_value=settings), \
             mock.patch("app.configure_logging") as configure:
            with TestClient(app) as client:
                configure.assert_called_once_with("DEBUG")
                self.assertEqual(client.get("/api/health").status_code, 200)

    def test_startup_survives_bad_configuration(self):
        with mock.patch("app.load_settings", side_effect=ConfigurationError("bad cipher")), \
             mock.patch("app.configure_logging") as configure:
            with TestClient(app) as client:
                configure.assert_called_once_with("INFO")
                self.assertEqual(client.get("/api/health").status_code, 200)

    def test_startup_not_run_without_lifespan(self):
        with mock.patch("app.configure_logging") as configure:
            TestClient(app).get("/api/health")
        configure.assert_not_called()


if __name__ == "__main__":
    unittest.main(verbosity=2)
