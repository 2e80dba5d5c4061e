"""
config.py
=========
Configuration for the HTTP trigger, built on pydantic-settings.

Sources, highest precedence first:
  1. values passed to Settings(...) directly
  2. environment variables
  3. config.json (paths.CONFIG_PATH, or the file named by $PGPSEAL_CONFIG)
  4. field defaults

Secrets keep the names used by the deployment's secret store
(``pgp-public-key``, ``pgp-private-key-sign``, ``pgp-passphrase-sign``).
Because hyphens are awkward in shells, each name is also accepted in its
upper-case underscore form (``PGP_PUBLIC_KEY``).

Settings are resolved once per request and handed to the orchestrator;
the OpenPGP core never reads configuration itself.
"""

import logging
import os
from typing import Optional

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, JsonConfigSettingsSource, SettingsConfigDict

from pgpseal import algorithms as algs
from pgpseal.encryption import EncryptOptions
from pgpseal.errors import ConfigurationError, PGPError
from pgpseal.paths import CONFIG_PATH, CONFIG_PATH_ENV

logger = logging.getLogger(__name__)

PUBLIC_KEY_SETTING  = "pgp-public-key"
PRIVATE_KEY_SETTING = "pgp-private-key-sign"
PASSPHRASE_SETTING  = "pgp-passphrase-sign"

DEFAULT_MAX_BODY_BYTES = 64 * 1024 * 1024


def config_file_path() -> str:
    """JSON file consulted for settings: $PGPSEAL_CONFIG or paths.CONFIG_PATH."""
    return os.environ.get(CONFIG_PATH_ENV) or CONFIG_PATH


def _secret_name_choices(name: str) -> AliasChoices:
    return AliasChoices(name, name.upper().replace("-", "_"))


class ConfigFileSource(JsonConfigSettingsSource):
    """config.json values re-keyed by field name, so any environment alias outranks them."""

    def __call__(self):
        data = dict(super().__call__())
        for name, field in self.settings_cls.model_fields.items():
            alias = field.validation_alias
            for key in (alias.choices if isinstance(alias, AliasChoices) else ()):
                if key in data:
                    data.setdefault(name, data.pop(key))
        return data


class Settings(BaseSettings):
    """Resolved configuration for one request."""

    model_config = SettingsConfigDict(
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
        json_file_encoding="utf-8",
    )

    # ============================================================
    # Key material
    # ============================================================
    public_key: Optional[str] = Field(
        None, validation_alias=_secret_name_choices(PUBLIC_KEY_SETTING),
        description="Base64 encoded recipient public key",
    )
    private_key: Optional[str] = Field(
        None, validation_alias=_secret_name_choices(PRIVATE_KEY_SETTING),
        description="Base64 encoded signing private key",
    )
    passphrase: str = Field(
        "", validation_alias=_secret_name_choices(PASSPHRASE_SETTING),
        description="Passphrase unlocking the signing key",
    )

    # ============================================================
    # Message format
    # ============================================================
    armor: bool = Field(True, description="Return ASCII armor instead of binary packets")
    cipher: int = Field(algs.SYM_AES256, description="Session key cipher (AES128/192/256)")
    hash_algorithm: int = Field(
        algs.HASH_SHA256, validation_alias=AliasChoices("hash", "hash_algorithm"),
        description="Signature digest (SHA256, SHA384, SHA512, ...)",
    )
    compression: int = Field(
        algs.COMPRESS_NONE, description="uncompressed, zip or zlib",
    )

    # ============================================================
    # Service
    # ============================================================
    max_body_bytes: int = Field(DEFAULT_MAX_BODY_BYTES, gt=0, description="Largest accepted body")
    log_level: str = Field("INFO", description="Root logger level")

    @classmethod
    def settings_customise_sources(cls, settings_cls, init_settings, env_settings,
                                   dotenv_settings, file_secret_settings):
        return (
            init_settings,
            env_settings,
            ConfigFileSource(settings_cls, json_file=config_file_path()),
        )

    @field_validator("public_key", "private_key", mode="before")
    @classmethod
    def _empty_key_is_missing(cls, value):
        return value or None

    @field_validator("passphrase", mode="before")
    @classmethod
    def _passphrase_text(cls, value):
        return value or ""

    @field_validator("cipher", mode="before")
    @classmethod
    def _cipher_by_name(cls, value):
        try:
            if isinstance(value, str):
                return algs.cipher_by_name(value)
            algs.cipher_key_size(value)
        except PGPError as exc:
            raise ValueError(str(exc)) from exc
        return value

    @field_validator("hash_algorithm", mode="before")
    @classmethod
    def _hash_by_name(cls, value):
        try:
            if isinstance(value, str):
                return algs.hash_by_name(value)
            algs.hash_algorithm(value)
        except PGPError as exc:
            raise ValueError(str(exc)) from exc
        return value

    @field_validator("compression", mode="before")
    @classmethod
    def _compression_by_name(cls, value):
        if isinstance(value, str):
            return algs.compression_by_name(value)
        return value

    @field_validator("log_level", mode="before")
    @classmethod
    def _upper_level(cls, value):
        return str(value).upper()

    def encrypt_options(self) -> EncryptOptions:
        return EncryptOptions(
            cipher=self.cipher,
            hash_algorithm=self.hash_algorithm,
            compression=self.compression,
        )


def load_settings() -> Settings:
    """
    Resolve Settings from the environment and the JSON file.

    Returns:
        Settings. Missing key material is NOT an error here; the request
        orchestrator reports it so the client gets a precise message.

    Raises:
        ConfigurationError:  unreadable file or invalid non-secret values.
    """
    try:
        settings = Settings()
    except (OSError, TypeError, ValueError) as exc:
        # pydantic.ValidationError and json.JSONDecodeError are ValueErrors
        raise ConfigurationError(f"Invalid configuration: {exc}") from exc

    logger.debug(
        "Settings loaded (config file %s, public key set: %s, private key set: %s)",
        config_file_path(), settings.public_key is not None, settings.private_key is not None,
    )
    return settings
