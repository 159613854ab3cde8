"""
Delivers queued notifications to the platform.

A notification with attachments is split into media buckets because the bot
API does not mix every kind in one media group:
- photo_video: photos and videos, sent together
- audio: audio files only
- document: everything else

The rendered text rides as the caption of the first item of the first
non-empty bucket. Buckets that reached the recipient are remembered on the
queue row, so a retry only resends what failed.
"""

import logging
from collections import Counter
from html import escape
from typing import Callable, Optional

from sqlalchemy.orm import Session

from tgcomment.collaborators import Collaborators, Comment
from tgcomment.config import Settings
from tgcomment.errors import ApiError, RelayError
from tgcomment.logging_utils import batch_context
from tgcomment.metrics import record_outbound_outcome
from tgcomment.models import OutgoingNotification
from tgcomment.queues import OutboundQueue
from tgcomment.sanitizer import sanitize_html
from tgcomment.storage import run_lock
from tgcomment.telegram_client import MEDIA_GROUP_LIMIT, FileParts, TelegramClient

logger = logging.getLogger(__name__)

BUCKET_ORDER = ("photo_video", "audio", "document")

# Pseudo-bucket for a text message sent ahead of the media
TEXT_BUCKET = "text"

# Marks that a sent bucket already carried the text as its caption
CAPTION_BUCKET = "caption"

# Captions longer than this go out as a separate text message
CAPTION_LIMIT = 1024


def media_kind(mime_type: Optional[str]) -> str:
    mime_type = (mime_type or "").lower()
    if mime_type.startswith("image/"):
        return "photo"
    if mime_type.startswith("video/"):
        return "video"
    if mime_type.startswith("audio/"):
        return "audio"
    return "document"


def bucket_of(kind: str) -> str:
    if kind in ("photo", "video"):
        return "photo_video"
    if kind == "audio":
        return "audio"
    return "document"


def render_notification(title: str, author_name: str, content: str) -> str:
    text = f'💬 "{escape(title or "")}"\n👤 Author: {escape(author_name or "")}'
    body = sanitize_html(content)
    if body:
        text += f"\n\n{body}"
    return text


def _default_unreachable(user_id: int, chat_id: int) -> None:
    logger.warning(f"User {user_id} blocked the bot in chat {chat_id}")


class Notifier:
    def __init__(
        self,
        db: Session,
        client: TelegramClient,
        collaborators: Collaborators,
        settings: Settings,
        on_recipient_unreachable: Optional[Callable[[int, int], object]] = None,
    ):
        self.db = db
        self.client = client
        self.comments = collaborators.comments
        self.users = collaborators.users
        self.records = collaborators.records
        self.media = collaborators.media
        self.settings = settings
        self.on_recipient_unreachable = on_recipient_unreachable or _default_unreachable
        self.queue = OutboundQueue(db, settings)

    def run(self) -> Counter:
        """
        Deliver one batch of the outbound queue.

        Returns:
            Outcome counts (sent, retry, dropped, unreachable, skipped)
        """
        outcomes: Counter = Counter()
        with batch_context("notifier") as run_id:
            with run_lock(self.db, "notifier", self.settings.NOTIFIER_LOCK_TTL) as acquired:
                if not acquired:
                    logger.info("Notifier run already in progress, skipping")
                    return outcomes

                try:
                    rows = self.queue.claim_batch()
                except Exception:
                    logger.exception("Failed to claim outbound batch")
                    return outcomes

                for row in rows:
                    row_id = row.id
                    try:
                        outcome = self.process(row)
                    except Exception:
                        logger.exception(f"Unexpected error delivering notification {row_id}")
                        outcome = self._fail(row_id)
                    outcomes[outcome] += 1

                logger.info(f"Notifier run {run_id} finished: {dict(outcomes)}")
        return outcomes

    def process(self, row: OutgoingNotification) -> str:
        row_id, comment_id, user_id = row.id, row.comment_id, row.user_id
        if not self.queue.holds_lease(row_id):
            logger.warning(f"Lease lost on notification {row_id}, skipping")
            return "skipped"

        comment = self.comments.get_comment(comment_id)
        recipient = self.users.get_user(user_id)
        if comment is None or recipient is None or not recipient.platform_user_id:
            logger.error(f"Notification {row_id} is undeliverable (comment {comment_id}, user {user_id}), dropping")
            self.queue.retire(row_id)
            record_outbound_outcome("dropped")
            return "dropped"

        record = self.records.get_record(comment.record_id)
        if record is None:
            logger.warning(f"Record {comment.record_id} of notification {row_id} not found")
            return self._fail(row_id)

        author = self.users.get_user(comment.author_id)
        author_name = comment.author_name or (author.display_name if author is not None else "")
        text = render_notification(record.title, author_name, comment.content)
        chat_id = recipient.platform_user_id

        try:
            self.deliver(row, chat_id, text, comment)
        except ApiError as e:
            if e.is_forbidden:
                logger.warning(f"Recipient {user_id} unreachable, dropping notification {row_id}")
                self.queue.retire(row_id)
                self.on_recipient_unreachable(user_id, chat_id)
                record_outbound_outcome("unreachable")
                return "unreachable"
            logger.warning(f"Notification {row_id} failed: {e}")
            return self._fail(row_id)
        except Exception as e:
            logger.warning(f"Notification {row_id} failed: {e}", exc_info=True)
            return self._fail(row_id)

        self.queue.retire(row_id)
        logger.info(f"Notification {row_id} delivered: comment {comment_id} to user {user_id}")
        record_outbound_outcome("sent")
        return "sent"

    def _fail(self, row_id: int) -> str:
        retries = self.queue.record_failure(row_id)
        if retries >= self.queue.max_retries:
            logger.error(f"Giving up on notification {row_id} after {retries} attempts")
            self.queue.retire(row_id)
            record_outbound_outcome("dropped")
            return "dropped"
        self.queue.release(row_id)
        record_outbound_outcome("retry")
        return "retry"

    # -------------------------------------------------------------------------
    # Delivery
    # -------------------------------------------------------------------------

    def bucketize(self, attachment_ids: list[int]) -> dict[str, list[tuple[int, str]]]:
        """Split attachments into media buckets, keeping their order."""
        buckets: dict[str, list[tuple[int, str]]] = {name: [] for name in BUCKET_ORDER}
        for attachment_id in attachment_ids:
            kind = media_kind(self.media.attachment_mime_type(attachment_id))
            buckets[bucket_of(kind)].append((attachment_id, kind))
        return buckets

    def deliver(self, row: OutgoingNotification, chat_id: int, text: str, comment: Comment) -> None:
        """
        Send the comment to `chat_id`. Every bucket must reach the recipient
        and at least one must carry media; otherwise RelayError propagates
        and the row is retried.
        """
        delivered = self.queue.delivered_buckets(row)
        buckets = self.bucketize(comment.attachment_ids)

        if not any(buckets.values()):
            if TEXT_BUCKET not in delivered:
                message_id = self.client.send_message(chat_id, text)
                self.comments.add_outbound_links(comment.id, chat_id, [message_id])
                self.queue.mark_bucket_delivered(row, TEXT_BUCKET)
            return

        caption: Optional[str] = text
        if len(text) > CAPTION_LIMIT:
            if TEXT_BUCKET not in delivered:
                message_id = self.client.send_message(chat_id, text)
                self.comments.add_outbound_links(comment.id, chat_id, [message_id])
                self.queue.mark_bucket_delivered(row, TEXT_BUCKET)
            caption = None
        if CAPTION_BUCKET in delivered:
            caption = None

        sent = 0
        for name in BUCKET_ORDER:
            items = buckets[name]
            if not items:
                continue
            if name in delivered:
                sent += 1
                continue
            message_ids = self._send_bucket(chat_id, items, caption)
            if not message_ids:
                logger.warning(f"No {name} attachment of comment {comment.id} could be resolved")
                continue
            sent += 1
            self.comments.add_outbound_links(comment.id, chat_id, message_ids)
            self.queue.mark_bucket_delivered(row, name)
            if caption:
                self.queue.mark_bucket_delivered(row, CAPTION_BUCKET)
                caption = None

        if not sent:
            raise RelayError(f"none of the attachments of comment {comment.id} could be sent")

    def _send_bucket(self, chat_id: int, items: list[tuple[int, str]], caption: Optional[str]) -> list[int]:
        media: list[dict] = []
        files: FileParts = {}
        for index, (attachment_id, kind) in enumerate(items):
            item: dict = {"type": kind}
            if self.settings.SEND_FILES_DIRECT:
                attachment = self.media.open_attachment(attachment_id)
                if attachment is None:
                    raise RelayError(f"attachment {attachment_id} file not found")
                name = f"file{index}"
                files[name] = (attachment.filename, attachment.content, attachment.mime_type)
                item["media"] = f"attach://{name}"
            else:
                url = self.media.attachment_url(attachment_id)
                if not url:
                    logger.warning(f"Attachment {attachment_id} has no URL, skipped")
                    continue
                item["media"] = url
            media.append(item)

        if not media:
            return []
        if caption:
            media[0]["caption"] = caption
            media[0]["parse_mode"] = "HTML"

        message_ids: list[int] = []
        for start in range(0, len(media), MEDIA_GROUP_LIMIT):
            chunk = media[start:start + MEDIA_GROUP_LIMIT]
            chunk_files = {
                item["media"][len("attach://"):]: files[item["media"][len("attach://"):]]
                for item in chunk
                if item["media"].startswith("attach://")
            }
            if len(chunk) == 1:
                sent = self.client.send_media(chat_id, chunk[0], chunk_files or None)
                message_ids.append(sent["message_id"])
            else:
                sent_messages = self.client.send_media_group(chat_id, chunk, chunk_files or None)
                message_ids.extend(message["message_id"] for message in sent_messages)
        return message_ids
