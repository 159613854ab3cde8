"""
Entry points for the external caller: the webhook endpoint, a scheduler
ticking the poller and both queue stages, and the content system reporting
comment approvals.

Each call opens its own database session and builds its components with the
settings held by the relay. Replace `settings` to change configuration
between runs.
"""

import logging
from collections import Counter
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session, sessionmaker

from tgcomment.collaborators import Collaborators
from tgcomment.config import Settings, get_settings
from tgcomment.handler import UpdateHandler
from tgcomment.notifier import Notifier
from tgcomment.poller import UpdatePoller
from tgcomment.processor import CommentProcessor
from tgcomment.router import NotificationRouter
from tgcomment.storage import SessionLocal
from tgcomment.telegram_client import TelegramClient

logger = logging.getLogger(__name__)


class Relay:
    def __init__(
        self,
        collaborators: Collaborators,
        settings: Optional[Settings] = None,
        client: Optional[TelegramClient] = None,
        session_factory: sessionmaker = SessionLocal,
        on_recipient_unreachable: Optional[Callable[[int, int], Any]] = None,
    ):
        self.collaborators = collaborators
        self.settings = settings or get_settings()
        self.client = client or TelegramClient.from_settings(self.settings)
        self.session_factory = session_factory
        self.on_recipient_unreachable = on_recipient_unreachable

    def _handler(self, db: Session) -> UpdateHandler:
        return UpdateHandler(db, self.client, self.collaborators, self.settings)

    def _poller(self, db: Session) -> UpdatePoller:
        return UpdatePoller(db, self.client, self.settings, self._handler(db).process_single_update)

    def process_single_update(self, update: dict[str, Any]) -> str:
        with self.session_factory() as db:
            return self._handler(db).process_single_update(update)

    def poll_updates(self) -> int:
        with self.session_factory() as db:
            return self._poller(db).poll_once()

    def process_inbound(self) -> Counter:
        with self.session_factory() as db:
            router = NotificationRouter(db, self.collaborators, self.settings)
            processor = CommentProcessor(
                db, self.client, self.collaborators, self.settings, on_approved=router.on_comment_approved
            )
            return processor.run()

    def process_outbound(self) -> Counter:
        with self.session_factory() as db:
            notifier = Notifier(
                db, self.client, self.collaborators, self.settings, self.on_recipient_unreachable
            )
            return notifier.run()

    def handle_comment_approved(self, comment_id: int) -> Optional[int]:
        """Route a comment the content system approved (e.g. one written on the site)."""
        with self.session_factory() as db:
            return NotificationRouter(db, self.collaborators, self.settings).on_comment_approved(comment_id)

    def enable_webhook(self, url: str, secret_token: Optional[str] = None) -> bool:
        with self.session_factory() as db:
            return self._poller(db).enable_webhook(url, secret_token)

    def disable_webhook(self) -> bool:
        with self.session_factory() as db:
            return self._poller(db).disable_webhook()

    def webhook_status(self) -> dict[str, Any]:
        with self.session_factory() as db:
            return self._poller(db).webhook_status()

    def test_connection(self) -> dict[str, Any]:
        with self.session_factory() as db:
            return self._poller(db).test_connection()
