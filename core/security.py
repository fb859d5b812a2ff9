"""
Content strategies for stored chat messages.

The transcript engine treats message content as an opaque blob. Which
strategy wrote a row is recorded in ChatMessage.content_encoding, so rows
written under an older strategy stay readable after the configured mode
changes.

Strategies:
- PlaintextStrategy: stores content as-is.
- FernetStrategy: stores a Fernet token (AES-128-CBC + HMAC). This protects
  rows at rest from casual reads; it is not end-to-end encryption.

Usage:
    strategy = get_content_strategy(settings.MESSAGE_ENCRYPTION_MODE)
    stored = strategy.encode("hello")
    text = decode_content(stored, message.content_encoding)
"""

from abc import ABC, abstractmethod
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from core.config import settings


class ContentDecodeError(ValueError):
    """Raised when stored content cannot be decoded by its strategy."""
    pass


class ContentStrategy(ABC):
    """Base class for message content strategies."""

    name: str

    @abstractmethod
    def encode(self, content: str) -> str:
        """Turn client content into the stored blob."""
        ...

    @abstractmethod
    def decode(self, stored: str) -> str:
        """Turn a stored blob back into client content."""
        ...


class PlaintextStrategy(ContentStrategy):
    name = "plaintext"

    def encode(self, content: str) -> str:
        return content

    def decode(self, stored: str) -> str:
        return stored


class FernetStrategy(ContentStrategy):
    name = "fernet"

    def __init__(self, key: Optional[str] = None):
        key = key or settings.MESSAGE_ENCRYPTION_KEY
        if not key:
            raise ValueError("MESSAGE_ENCRYPTION_KEY not configured")
        # Must be a valid Fernet key (32 bytes url-safe base64)
        self._cipher = Fernet(key.encode("utf-8") if isinstance(key, str) else key)

    def encode(self, content: str) -> str:
        return self._cipher.encrypt(content.encode("utf-8")).decode("utf-8")

    def decode(self, stored: str) -> str:
        try:
            return self._cipher.decrypt(stored.encode("utf-8")).decode("utf-8")
        except InvalidToken as e:
            raise ContentDecodeError("Stored message could not be decrypted") from e


def get_content_strategy(mode: Optional[str] = None, key: Optional[str] = None) -> ContentStrategy:
    """Get the content strategy for the given mode (default: configured mode)."""
    mode = (mode or settings.MESSAGE_ENCRYPTION_MODE).lower()
    if mode == FernetStrategy.name:
        return FernetStrategy(key)
    if mode == PlaintextStrategy.name:
        return PlaintextStrategy()
    raise ValueError(f"Unknown content strategy: {mode}")


def decode_content(stored: str, encoding: str, key: Optional[str] = None) -> str:
    """Decode a stored blob with the strategy that wrote it."""
    try:
        strategy = get_content_strategy(encoding, key)
    except ValueError as e:
        raise ContentDecodeError(str(e)) from e
    return strategy.decode(stored)
