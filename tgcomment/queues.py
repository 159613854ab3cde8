"""
Durable inbound and outbound queues.

Both queues share one claim protocol:
1. select candidates (retry_count < max, not deleted), oldest attempt first
   with never-attempted rows first, then oldest created
2. take a per-row lease
3. stamp the attempt time with a conditional UPDATE that only matches a row
   still eligible, so a row retired by another run in the meantime is skipped

Rows are retired through retire(): hard delete normally, soft delete when
DEBUG_MODE is on.
"""

import json
import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tgcomment.config import Settings
from tgcomment.metrics import record_enqueue
from tgcomment.models import IncomingMessage, OutgoingNotification
from tgcomment.storage import acquire_lease, lease_is_held, release_lease
from tgcomment.utils import utcnow

logger = logging.getLogger(__name__)

# Sort key for never-attempted rows
EPOCH = datetime(1970, 1, 1)


class _LeasedQueue:
    model: Any = None
    lease_prefix = ""
    attempt_column = ""

    def __init__(self, db: Session, settings: Settings, max_retries: int):
        self.db = db
        self.settings = settings
        self.max_retries = max_retries
        # row id -> lease token for rows claimed by this instance
        self._tokens: dict[int, str] = {}

    def _lease_key(self, row_id: int) -> str:
        return f"{self.lease_prefix}:{row_id}"

    def claim_batch(self, batch_size: Optional[int] = None) -> list:
        """
        Claim up to `batch_size` eligible rows for this run.

        Returns:
            Rows whose lease this instance holds, in claim order
        """
        model = self.model
        attempted = getattr(model, self.attempt_column)
        limit = batch_size or self.settings.BATCH_SIZE

        candidates = self.db.execute(
            select(model.id)
            .where(model.retry_count < self.max_retries, model.is_deleted.is_(False))
            .order_by(func.coalesce(attempted, EPOCH).asc(), model.created_at.asc(), model.id.asc())
            .limit(limit)
        ).scalars().all()

        claimed = []
        for row_id in candidates:
            key = self._lease_key(row_id)
            token = acquire_lease(self.db, key, self.settings.ROW_LEASE_TTL)
            if token is None:
                logger.debug(f"Row {key} leased by another run, skipping")
                continue

            result = self.db.execute(
                update(model)
                .where(
                    model.id == row_id,
                    model.retry_count < self.max_retries,
                    model.is_deleted.is_(False),
                )
                .values({self.attempt_column: utcnow()})
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
            if result.rowcount != 1:
                release_lease(self.db, key, token)
                continue

            self._tokens[row_id] = token
            claimed.append(self.db.get(model, row_id, populate_existing=True))

        logger.debug(f"Claimed {len(claimed)} of {len(candidates)} {self.lease_prefix} rows")
        return claimed

    def holds_lease(self, row_id: int) -> bool:
        token = self._tokens.get(row_id)
        return token is not None and lease_is_held(self.db, self._lease_key(row_id), token)

    def release(self, row_id: int) -> None:
        token = self._tokens.pop(row_id, None)
        if token is not None:
            release_lease(self.db, self._lease_key(row_id), token)

    def record_failure(self, row_id: int) -> int:
        """
        Count a failed attempt.

        Returns:
            The retry count after the increment
        """
        self.db.execute(
            update(self.model)
            .where(self.model.id == row_id)
            .values(retry_count=self.model.retry_count + 1)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        retries = self.db.execute(
            select(self.model.retry_count).where(self.model.id == row_id)
        ).scalar()
        # Row retired meanwhile: nothing left to retry
        return self.max_retries if retries is None else retries

    def retire(self, row_id: int) -> None:
        """Remove a row from the queue: soft delete in debug mode, delete otherwise."""
        if self.settings.DEBUG_MODE:
            stmt = update(self.model).where(self.model.id == row_id).values(is_deleted=True)
        else:
            stmt = delete(self.model).where(self.model.id == row_id)
        self.db.execute(stmt.execution_options(synchronize_session=False))
        self.db.commit()
        self.release(row_id)


class InboundQueue(_LeasedQueue):
    """Raw platform messages waiting to be turned into comments."""

    model = IncomingMessage
    lease_prefix = "incoming"
    attempt_column = "last_attempt_at"

    def __init__(self, db: Session, settings: Settings):
        super().__init__(db, settings, settings.PROCESSOR_MAX_RETRIES)

    def enqueue(
        self,
        user_id: int,
        telegram_user_id: int,
        chat_id: int,
        message_id: int,
        record_id: int,
        payload: dict[str, Any],
        media_group_id: Optional[str] = None,
    ) -> Optional[int]:
        """
        Store an inbound message exactly once per (chat_id, message_id).

        Returns:
            The new row id, or None when the message is already queued
        """
        row = IncomingMessage(
            user_id=user_id,
            telegram_user_id=telegram_user_id,
            chat_id=chat_id,
            tg_message_id=message_id,
            record_id=record_id,
            payload=json.dumps(payload, ensure_ascii=False),
            media_group_id=media_group_id,
            created_at=utcnow(),
            retry_count=0,
            is_deleted=False,
        )
        try:
            self.db.add(row)
            self.db.commit()
        except IntegrityError:
            # Redelivery of a message already queued
            self.db.rollback()
            logger.info(f"Duplicate inbound message ignored: chat={chat_id} message={message_id}")
            record_enqueue("duplicate")
            return None

        logger.info(f"Inbound message queued: id={row.id} chat={chat_id} message={message_id} record={record_id}")
        record_enqueue("created")
        return row.id

    def withdraw(self, row_id: int) -> None:
        """Hide a row from claims and group counts while keeping it and its lease."""
        self._set_deleted(row_id, True)

    def restore(self, row_id: int) -> None:
        """Undo withdraw() so the row can be retried."""
        self._set_deleted(row_id, False)

    def _set_deleted(self, row_id: int, deleted: bool) -> None:
        self.db.execute(
            update(IncomingMessage)
            .where(IncomingMessage.id == row_id)
            .values(is_deleted=deleted)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()

    def remaining_in_group(self, chat_id: int, media_group_id: str) -> int:
        """Live rows of a media group; withdrawn and retired rows are not counted."""
        return self.db.execute(
            select(func.count(IncomingMessage.id)).where(
                IncomingMessage.chat_id == chat_id,
                IncomingMessage.media_group_id == media_group_id,
                IncomingMessage.is_deleted.is_(False),
            )
        ).scalar_one()

    def find_row(self, chat_id: int, message_id: int, user_id: int) -> Optional[IncomingMessage]:
        return self.db.execute(
            select(IncomingMessage).where(
                IncomingMessage.chat_id == chat_id,
                IncomingMessage.tg_message_id == message_id,
                IncomingMessage.user_id == user_id,
                IncomingMessage.is_deleted.is_(False),
            )
        ).scalars().first()


class OutboundQueue(_LeasedQueue):
    """Approved comments waiting to be relayed to the counterpart."""

    model = OutgoingNotification
    lease_prefix = "outgoing"
    attempt_column = "last_updated_at"

    def __init__(self, db: Session, settings: Settings):
        super().__init__(db, settings, settings.NOTIFIER_MAX_RETRIES)

    def enqueue(self, comment_id: int, user_id: int) -> Optional[int]:
        """
        Queue a notification once per (comment_id, user_id).

        Returns:
            The new row id, or None when it is already queued
        """
        row = OutgoingNotification(
            comment_id=comment_id,
            user_id=user_id,
            created_at=utcnow(),
            retry_count=0,
            is_deleted=False,
            delivered_buckets="",
        )
        try:
            self.db.add(row)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.info(f"Notification already queued: comment={comment_id} user={user_id}")
            return None

        logger.info(f"Notification queued: id={row.id} comment={comment_id} user={user_id}")
        return row.id

    @staticmethod
    def delivered_buckets(row: OutgoingNotification) -> set[str]:
        return {name for name in (row.delivered_buckets or "").split(",") if name}

    def mark_bucket_delivered(self, row: OutgoingNotification, bucket: str) -> None:
        delivered = self.delivered_buckets(row)
        delivered.add(bucket)
        row.delivered_buckets = ",".join(sorted(delivered))
        self.db.commit()
