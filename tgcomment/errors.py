"""
Error taxonomy shared by the relay components.

- TransportError: the HTTP call never produced a usable response
  (DNS, TLS, timeout, connection reset). Always retryable.
- ApiError: the bot API answered with a structured failure.
  Retryable except 409 on polling and 403 on sends.
- ValidationError: a stored payload is malformed or misses a required field.
  Never retried, the row is dead-lettered.
- NotFoundError: a referenced comment, user or record vanished.
  Never retried, the row is dropped.
"""

from typing import Optional


class RelayError(Exception):
    """Base class for all relay errors."""


class TransportError(RelayError):
    """Network-level failure talking to the bot API."""

    def __init__(self, method: str, reason: str):
        self.method = method
        self.reason = reason
        super().__init__(f"{method}: transport error: {reason}")


class ApiError(RelayError):
    """The bot API returned non-2xx, malformed JSON or ok=false."""

    def __init__(self, method: str, code: Optional[int], description: str):
        self.method = method
        self.code = code
        self.description = description
        super().__init__(f"{method}: api error {code}: {description}")

    @property
    def is_conflict(self) -> bool:
        # getUpdates while a webhook is active
        return self.code == 409

    @property
    def is_forbidden(self) -> bool:
        # the recipient blocked the bot
        return self.code == 403

    @property
    def is_parse_error(self) -> bool:
        return self.code == 400 and "can't parse entities" in (self.description or "")


class ValidationError(RelayError):
    """Stored payload cannot be interpreted."""


class NotFoundError(RelayError):
    """A referenced entity no longer exists."""
