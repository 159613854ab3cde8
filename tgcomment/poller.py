"""
Update polling and webhook management.

Polling and the webhook are mutually exclusive on the platform side: while a
webhook is set, getUpdates answers 409. The poller then stops polling until
the webhook is removed through disable_webhook().
"""

import logging
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from tgcomment.config import Settings
from tgcomment.errors import ApiError, RelayError, TransportError
from tgcomment.logging_utils import batch_context
from tgcomment.storage import get_state, run_lock, set_state
from tgcomment.telegram_client import TelegramClient

logger = logging.getLogger(__name__)

LAST_UPDATE_ID = "last_update_id"
POLLING_DISABLED = "polling_disabled"


class UpdatePoller:
    def __init__(
        self,
        db: Session,
        client: TelegramClient,
        settings: Settings,
        dispatch: Callable[[dict[str, Any]], Any],
    ):
        self.db = db
        self.client = client
        self.settings = settings
        self.dispatch = dispatch

    @property
    def polling_enabled(self) -> bool:
        return get_state(self.db, POLLING_DISABLED, "0") != "1"

    def poll_once(self) -> int:
        """
        Fetch pending updates once and dispatch each of them.

        Returns:
            Number of updates received
        """
        with batch_context("updates"):
            with run_lock(self.db, "updates", self.settings.UPDATES_LOCK_TTL) as acquired:
                if not acquired:
                    logger.info("Update polling already in progress, skipping")
                    return 0
                if not self.polling_enabled:
                    logger.debug("Polling disabled, skipping")
                    return 0
                return self._poll()

    def _poll(self) -> int:
        offset = int(get_state(self.db, LAST_UPDATE_ID, "0")) + 1
        try:
            updates = self.client.get_updates(offset, self.settings.POLL_LIMIT, self.settings.POLL_TIMEOUT)
        except ApiError as e:
            if e.is_conflict:
                logger.warning("getUpdates conflicts with an active webhook, polling disabled")
                set_state(self.db, POLLING_DISABLED, "1")
            else:
                logger.error(f"getUpdates failed: {e}")
            return 0
        except TransportError as e:
            logger.error(f"getUpdates failed: {e}")
            return 0

        for update in updates:
            update_id = update.get("update_id")
            try:
                self.dispatch(update)
            except Exception:
                logger.exception(f"Failed to process update {update_id}")
            if isinstance(update_id, int):
                # Stored per update so a crash resumes after the last handled one
                set_state(self.db, LAST_UPDATE_ID, str(update_id))

        if updates:
            logger.info(f"Processed {len(updates)} update(s)")
        return len(updates)

    # -------------------------------------------------------------------------
    # Webhook management
    # -------------------------------------------------------------------------

    def enable_webhook(self, url: str, secret_token: Optional[str] = None) -> bool:
        """Register the webhook and stop polling."""
        ok = self.client.set_webhook(url, secret_token or self.settings.WEBHOOK_SECRET or None)
        if ok:
            set_state(self.db, POLLING_DISABLED, "1")
            logger.info(f"Webhook set to {url}, polling disabled")
        return ok

    def disable_webhook(self) -> bool:
        """Remove the webhook and resume polling."""
        ok = self.client.delete_webhook()
        if ok:
            set_state(self.db, POLLING_DISABLED, "0")
            logger.info("Webhook removed, polling enabled")
        return ok

    def webhook_status(self) -> dict[str, Any]:
        info = self.client.get_webhook_info()
        return {
            "url": info.get("url", ""),
            "active": bool(info.get("url")),
            "pending_update_count": info.get("pending_update_count", 0),
            "last_error_message": info.get("last_error_message"),
            "polling_enabled": self.polling_enabled,
        }

    def test_connection(self) -> dict[str, Any]:
        try:
            me = self.client.get_me()
        except RelayError as e:
            return {"ok": False, "error": str(e)}
        return {"ok": True, "id": me.get("id"), "username": me.get("username")}
