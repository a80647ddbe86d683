"""
Exception types shared across the package.
"""


class MailtasksError(Exception):
    """Base class for all errors raised by mailtasks."""


class ConfigError(MailtasksError):
    """Missing or malformed configuration (secrets, OAuth clients, keys)."""


class CryptoError(MailtasksError):
    """Token encryption or decryption failed."""


class MailboxError(MailtasksError):
    """A mailbox provider API call failed."""


class LLMError(MailtasksError):
    """Generic error raised by the LLM client."""


class StorageError(MailtasksError):
    """A persistence operation failed."""


class DuplicateSourceError(StorageError):
    """A Source with the same (workspace, type, external_id) already exists."""


class NotFoundError(StorageError):
    """The requested record does not exist."""


class ValidationFailed(MailtasksError):
    """A settings or feedback update was rejected."""
