"""
Credential store: OAuth tokens encrypted at rest, plus token refresh.

Ciphertexts are hex strings laid out as iv (12 bytes) + auth tag (16 bytes) +
ciphertext, encrypted with AES-256-GCM.
"""

import logging
import os
from typing import Mapping, NamedTuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .config import Config
from .errors import ConfigError, CryptoError
from .mailbox import MailboxAdapter
from .models import EmailProvider, OAuthTokens

logger = logging.getLogger(__name__)

IV_LENGTH = 12
AUTH_TAG_LENGTH = 16


class RefreshedToken(NamedTuple):
    access_token: str
    encrypted_access_token: str


class SealedTokens(NamedTuple):
    encrypted_access_token: str
    encrypted_refresh_token: str


class TokenCipher:
    """AES-256-GCM encryption for tokens stored alongside scan configs."""

    def __init__(self, key_hex: str):
        if not key_hex:
            raise ConfigError("EMAIL_ENCRYPTION_KEY environment variable is not set")
        try:
            key = bytes.fromhex(key_hex)
        except ValueError as e:
            raise ConfigError("EMAIL_ENCRYPTION_KEY must be hex encoded") from e
        if len(key) != 32:
            raise ConfigError("EMAIL_ENCRYPTION_KEY must be 64 hex characters (32 bytes)")
        self._aesgcm = AESGCM(key)

    @classmethod
    def from_config(cls, config: Config) -> "TokenCipher":
        key = config.email_encryption_key
        return cls(key.get_secret_value() if key else "")

    def encrypt(self, plaintext: str) -> str:
        iv = os.urandom(IV_LENGTH)
        # AESGCM appends the tag to the ciphertext; store it up front instead
        sealed = self._aesgcm.encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-AUTH_TAG_LENGTH], sealed[-AUTH_TAG_LENGTH:]
        return (iv + tag + ciphertext).hex()

    def decrypt(self, encrypted_hex: str) -> str:
        try:
            raw = bytes.fromhex(encrypted_hex)
        except ValueError as e:
            raise CryptoError("Encrypted token is not valid hex") from e
        if len(raw) < IV_LENGTH + AUTH_TAG_LENGTH:
            raise CryptoError("Encrypted token is too short")

        iv = raw[:IV_LENGTH]
        tag = raw[IV_LENGTH : IV_LENGTH + AUTH_TAG_LENGTH]
        ciphertext = raw[IV_LENGTH + AUTH_TAG_LENGTH :]
        try:
            plaintext = self._aesgcm.decrypt(iv, ciphertext + tag, None)
        except InvalidTag as e:
            raise CryptoError("Encrypted token failed authentication") from e
        return plaintext.decode("utf-8")


class CredentialStore:
    """
    Encrypts tokens for storage and refreshes access tokens via the
    provider adapters.
    """

    def __init__(
        self,
        cipher: TokenCipher,
        adapters: Mapping[EmailProvider, MailboxAdapter],
    ):
        self.cipher = cipher
        self.adapters = adapters

    def encrypt(self, plaintext: str) -> str:
        return self.cipher.encrypt(plaintext)

    def decrypt(self, encrypted: str) -> str:
        return self.cipher.decrypt(encrypted)

    def seal(self, tokens: OAuthTokens) -> SealedTokens:
        if not tokens.refresh_token:
            raise CryptoError("Provider did not return a refresh token")
        return SealedTokens(
            encrypted_access_token=self.cipher.encrypt(tokens.access_token),
            encrypted_refresh_token=self.cipher.encrypt(tokens.refresh_token),
        )

    def refresh(
        self,
        provider: EmailProvider,
        encrypted_refresh_token: str,
    ) -> RefreshedToken:
        """
        Decrypt the refresh token, obtain a new access token from the provider,
        and return it both in clear and re-encrypted.

        The caller must persist `encrypted_access_token` right away.
        """
        adapter = self.adapters.get(EmailProvider(provider))
        if adapter is None:
            raise ConfigError(f"No mailbox adapter registered for provider {provider!r}")

        refresh_token = self.cipher.decrypt(encrypted_refresh_token)
        access_token = adapter.refresh(refresh_token)
        logger.info("Refreshed %s access token.", adapter.provider.value)
        return RefreshedToken(
            access_token=access_token,
            encrypted_access_token=self.cipher.encrypt(access_token),
        )
