"""
tests/test_config.py
====================
Unit tests for settings resolution (defaults -> config.json -> environment).

Run with:  python -m pytest tests/ -v
"""

import json, os, sys, tempfile, unittest
from unittest import mock
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from pgpseal import algorithms as algs
from pgpseal.config import Settings, load_settings
from pgpseal.errors import ConfigurationError

NO_FILE = os.path.join(tempfile.gettempdir(), "pgpseal-missing", "config.json")


def _load(env=None, config_file=NO_FILE):
    environ = {"PGPSEAL_CONFIG": config_file}
    environ.update(env or {})
    with mock.patch.dict(os.environ, environ, clear=True):
        return load_settings()


class TestEnvironment(unittest.TestCase):
    """Values read from environment variables."""

    def test_defaults(self):
        settings = _load()
        self.assertIsNone(settings.public_key)
        self.assertIsNone(settings.private_key)
        self.assertEqual(settings.passphrase, "")
        self.assertTrue(settings.armor)
        self.assertEqual(settings.cipher, algs.SYM_AES256)
        self.assertEqual(settings.hash_algorithm, algs.HASH_SHA256)
        self.assertEqual(settings.compression, algs.COMPRESS_NONE)
        self.assertEqual(settings.max_body_bytes, 64 * 1024 * 1024)
        self.assertEqual(settings.log_level, "INFO")

    def test_hyphenated_names(self):
        env = {"pgp-public-key": "PUB", "pgp-private-key-sign": "PRIV", "pgp-passphrase-sign": "pw"}
        settings = _load(env)
        self.assertEqual(settings.public_key, "PUB")
        self.assertEqual(settings.private_key, "PRIV")
        self.assertEqual(settings.passphrase, "pw")

    def test_underscore_names(self):
        settings = _load({"PGP_PUBLIC_KEY": "PUB", "PGP_PRIVATE_KEY_SIGN": "PRIV"})
        self.assertEqual(settings.public_key, "PUB")
        self.assertEqual(settings.private_key, "PRIV")

    def test_empty_value_counts_as_missing(self):
        self.assertIsNone(_load({"pgp-public-key": ""}).public_key)

    def test_algorithm_names(self):
        env = {"CIPHER": "aes128", "HASH": "sha-512", "COMPRESSION": "zip",
               "ARMOR": "false", "LOG_LEVEL": "debug"}
        settings = _load(env)
        self.assertEqual(settings.cipher, algs.SYM_AES128)
        self.assertEqual(settings.hash_algorithm, algs.HASH_SHA512)
        self.assertEqual(settings.compression, algs.COMPRESS_ZIP)
        self.assertFalse(settings.armor)
        self.assertEqual(settings.log_level, "DEBUG")
        self.assertEqual(settings.encrypt_options().cipher, algs.SYM_AES128)

    def test_invalid_values(self):
        for env in ({"CIPHER": "CAST5"}, {"HASH": "MD5"}, {"COMPRESSION": "bzip2"},
                    {"ARMOR": "maybe"}, {"MAX_BODY_BYTES": "0"}, {"MAX_BODY_BYTES": "lots"}):
            with self.subTest(env=env):
                with self.assertRaises(ConfigurationError):
                    _load(env)


class TestConfigFile(unittest.TestCase):
    """Values read from config.json and their precedence."""

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.path = os.path.join(self.tmp.name, "config.json")

    def tearDown(self):
        self.tmp.cleanup()

    def _write(self, content):
        with open(self.path, "w", encoding="utf-8") as fh:
            fh.write(content)

    def test_file_values(self):
        self._write(json.dumps({"cipher": "AES192", "pgp-public-key": "FROMFILE",
                                "armor": False, "max_body_bytes": 1024}))
        settings = _load(config_file=self.path)
        self.assertEqual(settings.cipher, algs.SYM_AES192)
        self.assertEqual(settings.public_key, "FROMFILE")
        self.assertFalse(settings.armor)
        self.assertEqual(settings.max_body_bytes, 1024)

    def test_environment_overrides_file(self):
        self._write(json.dumps({"cipher": "AES192", "hash": "SHA384",
                                "pgp-public-key": "FROMFILE"}))
        env = {"CIPHER": "AES128", "HASH": "SHA512", "PGP_PUBLIC_KEY": "FROMENV"}
        settings = _load(env, config_file=self.path)
        self.assertEqual(settings.cipher, algs.SYM_AES128)
        self.assertEqual(settings.hash_algorithm, algs.HASH_SHA512)
        self.assertEqual(settings.public_key, "FROMENV")

    def test_file_fills_values_missing_from_environment(self):
        self._write(json.dumps({"pgp-private-key-sign": "FILEKEY"}))
        settings = _load({"PGP_PUBLIC_KEY": "ENVKEY"}, config_file=self.path)
        self.assertEqual(settings.public_key, "ENVKEY")
        self.assertEqual(settings.private_key, "FILEKEY")

    def test_invalid_json(self):
        self._write("{not json")
        with self.assertRaises(ConfigurationError):
            _load(config_file=self.path)

    def test_file_must_hold_object(self):
        self._write("[1, 2, 3]")
        with self.assertRaises(ConfigurationError):
            _load(config_file=self.path)

    def test_invalid_file_value(self):
        self._write(json.dumps({"compression": "lzma"}))
        with self.assertRaises(ConfigurationError):
            _load(config_file=self.path)


class TestDirectConstruction(unittest.TestCase):
    """Settings built in code take precedence over every other source."""

    def test_field_names_accepted(self):
        with mock.patch.dict(os.environ, {"PGPSEAL_CONFIG": NO_FILE}, clear=True):
            settings = Settings(public_key="PUB", passphrase="pw", cipher=algs.SYM_AES128)
        self.assertEqual(settings.public_key, "PUB")
        self.assertEqual(settings.passphrase, "pw")
        self.assertEqual(settings.cipher, algs.SYM_AES128)


if __name__ == "__main__":
    unittest.main(verbosity=2)
