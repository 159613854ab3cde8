"""
Turns queued inbound messages into comments.

Per row: claimed -> attachments downloaded -> comment upserted -> done,
or claimed -> error -> retry | give up.
"""

import json
import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

import pydantic
from sqlalchemy.orm import Session

from tgcomment.collaborators import Collaborators
from tgcomment.config import Settings
from tgcomment.errors import ApiError, NotFoundError, TransportError, ValidationError
from tgcomment.logging_utils import batch_context
from tgcomment.metrics import record_inbound_outcome
from tgcomment.models import IncomingMessage
from tgcomment.queues import InboundQueue
from tgcomment.schemas import TelegramFile, TelegramMessage
from tgcomment.storage import run_lock
from tgcomment.telegram_client import REACTION_DONE, REACTION_FAILED, TelegramClient

logger = logging.getLogger(__name__)

MIME_EXTENSIONS = {
    "audio/ogg": "ogg",
    "audio/mpeg": "mp3",
    "audio/mp4": "m4a",
    "video/mp4": "mp4",
    "video/webm": "webm",
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
    "application/pdf": "pdf",
    "application/msword": "doc",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": "docx",
}


def guess_extension(file: TelegramFile) -> str:
    """
    Extension from the declared MIME type, else from the file's shape:
    dimensions alone mean a picture, dimensions with a duration a video,
    a duration alone a sound.
    """
    if file.mime_type and file.mime_type.lower() in MIME_EXTENSIONS:
        return MIME_EXTENSIONS[file.mime_type.lower()]

    thumbnail = file.thumbnail or {}
    has_size = bool(file.width and file.height)
    if file.duration is not None:
        if has_size or file.length or (thumbnail.get("width") and thumbnail.get("height")):
            return "mp4"
        return "ogg"
    if has_size:
        return "jpg"
    return "bin"


def attachment_filename(file: TelegramFile) -> str:
    if file.file_name:
        return file.file_name
    return f"telegram_{file.file_id}.{guess_extension(file)}"


@dataclass
class _Job:
    """Snapshot of a claimed row; ORM rows expire on every commit."""
    row_id: int
    user_id: int
    chat_id: int
    message_id: int
    record_id: int
    media_group_id: Optional[str]
    payload: str

    @classmethod
    def from_row(cls, row: IncomingMessage) -> "_Job":
        return cls(
            row_id=row.id,
            user_id=row.user_id,
            chat_id=row.chat_id,
            message_id=row.tg_message_id,
            record_id=row.record_id,
            media_group_id=row.media_group_id,
            payload=row.payload,
        )


class CommentProcessor:
    def __init__(
        self,
        db: Session,
        client: TelegramClient,
        collaborators: Collaborators,
        settings: Settings,
        on_approved: Optional[Callable[[int], object]] = None,
    ):
        self.db = db
        self.client = client
        self.comments = collaborators.comments
        self.users = collaborators.users
        self.records = collaborators.records
        self.media = collaborators.media
        self.settings = settings
        self.on_approved = on_approved
        self.queue = InboundQueue(db, settings)

    def run(self) -> Counter:
        """
        Process one batch of the inbound queue.

        Returns:
            Outcome counts (done, retry, degraded, dropped, skipped)
        """
        outcomes: Counter = Counter()
        with batch_context("processor") as run_id:
            with run_lock(self.db, "processor", self.settings.PROCESSOR_LOCK_TTL) as acquired:
                if not acquired:
                    logger.info("Processor run already in progress, skipping")
                    return outcomes

                try:
                    rows = self.queue.claim_batch()
                except Exception:
                    logger.exception("Failed to claim inbound batch")
                    return outcomes

                for row in rows:
                    job = _Job.from_row(row)
                    try:
                        outcome = self.process(job)
                    except Exception:
                        logger.exception(f"Unexpected error processing inbound row {job.row_id}")
                        outcome = self._fail(job, None)
                    outcomes[outcome] += 1

                logger.info(f"Processor run {run_id} finished: {dict(outcomes)}")
        return outcomes

    def process(self, job: _Job) -> str:
        if not self.queue.holds_lease(job.row_id):
            logger.warning(f"Lease lost on inbound row {job.row_id}, skipping")
            return "skipped"

        try:
            message = self._parse(job)
            self._require_participants(job)
        except (ValidationError, NotFoundError) as e:
            logger.error(f"Dropping inbound row {job.row_id}: {e}")
            self.queue.retire(job.row_id)
            record_inbound_outcome("dropped")
            return "dropped"

        existing = self.comments.find_by_inbound_link(
            [job.record_id], job.user_id, job.chat_id, job.message_id
        )
        if existing is not None:
            # Comment already upserted by an earlier attempt that did not finish
            logger.info(f"Inbound row {job.row_id} already became comment {existing.id}")
            self._complete(job, existing.id)
            record_inbound_outcome("done")
            return "done"

        downloaded: list[int] = []
        try:
            self._download_attachments(job, message, downloaded)
            comment_id = self._upsert(job, message, downloaded)
        except (ValidationError, NotFoundError) as e:
            logger.error(f"Dropping inbound row {job.row_id}: {e}")
            self._discard_attachments(downloaded)
            self.queue.retire(job.row_id)
            record_inbound_outcome("dropped")
            return "dropped"
        except Exception as e:
            logger.warning(f"Inbound row {job.row_id} failed: {e}", exc_info=True)
            self._discard_attachments(downloaded)
            return self._fail(job, message)

        self._complete(job, comment_id)
        record_inbound_outcome("done")
        return "done"

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    def _parse(self, job: _Job) -> TelegramMessage:
        try:
            return TelegramMessage.model_validate(json.loads(job.payload))
        except (ValueError, pydantic.ValidationError) as e:
            raise ValidationError(f"unreadable payload: {e}") from e

    def _require_participants(self, job: _Job) -> None:
        if self.records.get_record(job.record_id) is None:
            raise NotFoundError(f"record {job.record_id} not found")
        if self.users.get_user(job.user_id) is None:
            raise NotFoundError(f"user {job.user_id} not found")

    def _download_attachments(self, job: _Job, message: TelegramMessage, downloaded: list[int]) -> None:
        for kind, file in message.media_files():
            try:
                url = self.client.get_file_url(file.file_id)
                content = self.client.download(url)
            except (TransportError, ApiError) as e:
                logger.warning(f"Could not download {kind} {file.file_id} of inbound row {job.row_id}: {e}")
                self.client.set_reaction(job.chat_id, job.message_id, REACTION_FAILED)
                continue

            attachment_id = self.media.create_attachment(
                job.record_id, attachment_filename(file), content, file.mime_type
            )
            downloaded.append(attachment_id)
            logger.debug(f"Stored {kind} as attachment {attachment_id}")

    def _upsert(self, job: _Job, message: TelegramMessage, attachment_ids: list[int]) -> int:
        if job.media_group_id:
            pending = self.comments.find_pending_group_comment(job.record_id, job.user_id, job.media_group_id)
            if pending is not None:
                if attachment_ids:
                    self.comments.append_attachments(pending.id, attachment_ids)
                self.comments.add_inbound_link(pending.id, job.chat_id, job.message_id)
                if message.content:
                    self.comments.update_content(pending.id, message.content)
                logger.info(f"Inbound row {job.row_id} merged into group comment {pending.id}")
                return pending.id

        created_at = None
        if message.date:
            created_at = datetime.fromtimestamp(message.date, timezone.utc).isoformat()
        comment_id = self.comments.create_comment(
            record_id=job.record_id,
            author_id=job.user_id,
            content=message.content,
            inbound_link=(job.chat_id, job.message_id),
            media_group_id=job.media_group_id,
            attachment_ids=attachment_ids,
            created_at=created_at,
        )
        logger.info(f"Inbound row {job.row_id} created comment {comment_id}")
        return comment_id

    def _complete(self, job: _Job, comment_id: int) -> None:
        """
        Withdraw the row, approve the comment unless its media group still
        has live rows, then retire the row. The last sibling to be withdrawn
        always sees zero; approve_comment only reports a change once.
        If approval raises, the row is restored and the error propagates.
        """
        self.queue.withdraw(job.row_id)
        try:
            approved = self._approve_if_last(job, comment_id)
        except Exception:
            self.queue.restore(job.row_id)
            raise

        self.queue.retire(job.row_id)
        self.client.set_reaction(job.chat_id, job.message_id, REACTION_DONE)

        if approved and self.on_approved is not None:
            try:
                self.on_approved(comment_id)
            except Exception:
                logger.exception(f"Routing of approved comment {comment_id} failed")

    def _approve_if_last(self, job: _Job, comment_id: int) -> bool:
        if job.media_group_id:
            remaining = self.queue.remaining_in_group(job.chat_id, job.media_group_id)
            if remaining > 0:
                logger.info(f"Comment {comment_id} waits for {remaining} more group message(s)")
                return False

        if not self.comments.approve_comment(comment_id):
            return False
        logger.info(f"Comment {comment_id} approved")
        return True

    def _fail(self, job: _Job, message: Optional[TelegramMessage]) -> str:
        retries = self.queue.record_failure(job.row_id)
        if retries < self.queue.max_retries:
            self.queue.release(job.row_id)
            record_inbound_outcome("retry")
            return "retry"

        if message is None:
            try:
                message = self._parse(job)
            except ValidationError:
                message = None

        if message is not None:
            try:
                existing = self.comments.find_by_inbound_link(
                    [job.record_id], job.user_id, job.chat_id, job.message_id
                )
                comment_id = existing.id if existing is not None else self._upsert(job, message, [])
                self._complete(job, comment_id)
            except Exception as e:
                logger.error(f"Giving up on inbound row {job.row_id}: {e}")
            else:
                logger.warning(f"Inbound row {job.row_id} saved without attachments after {retries} attempts")
                record_inbound_outcome("degraded")
                return "degraded"

        self.queue.retire(job.row_id)
        record_inbound_outcome("dropped")
        return "dropped"

    def _discard_attachments(self, attachment_ids: list[int]) -> None:
        for attachment_id in attachment_ids:
            try:
                self.media.delete_attachment(attachment_id)
            except Exception as e:
                logger.error(f"Could not delete orphaned attachment {attachment_id}: {e}")
