"""
Utility functions for the relay.
"""

import hmac
import logging
from datetime import datetime, timezone

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in the queue tables."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def verify_secret_token(received: str, secret: str) -> bool:
    """
    Verify the webhook secret token sent by the bot API.

    Args:
        received: Value of the X-Telegram-Bot-Api-Secret-Token header
        secret: WEBHOOK_SECRET

    Returns:
        True if the token matches, False otherwise
    """
    if not received:
        logger.info("Webhook secret token missing")
        return False

    # Use constant-time comparison to prevent timing attacks
    is_valid = hmac.compare_digest(received.encode("utf-8"), secret.encode("utf-8"))
    logger.info(f"Webhook secret token verification: {'valid' if is_valid else 'invalid'}")

    return is_valid


def shorten(text: str, limit: int = 100) -> str:
    """Trim text for log lines."""
    if text is None:
        return ""
    return text if len(text) <= limit else text[:limit] + "..."
