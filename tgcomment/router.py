"""
Routes approved comments to the counterpart's outbound queue.
"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from tgcomment.collaborators import Collaborators, Comment
from tgcomment.config import Settings
from tgcomment.queues import OutboundQueue

logger = logging.getLogger(__name__)


class NotificationRouter:
    def __init__(self, db: Session, collaborators: Collaborators, settings: Settings):
        self.comments = collaborators.comments
        self.users = collaborators.users
        self.records = collaborators.records
        self.settings = settings
        self.queue = OutboundQueue(db, settings)

    def on_comment_approved(self, comment_id: int) -> Optional[int]:
        comment = self.comments.get_comment(comment_id)
        if comment is None:
            logger.warning(f"Approved comment {comment_id} not found, nothing to route")
            return None
        return self.handle_comment(comment)

    def handle_comment(self, comment: Comment) -> Optional[int]:
        """
        Queue a notification of `comment` for the other participant of its record.

        Comments are relayed only when they are approved, sit on a record of
        the relayed kind with both participants set, and were written by one
        of the two participants. The recipient needs a linked platform account.

        Returns:
            The outbound row id, or None when nothing was queued
        """
        if not comment.approved:
            logger.debug(f"Comment {comment.id} is not approved, not routed")
            return None

        record = self.records.get_record(comment.record_id)
        if record is None or record.kind != self.settings.RECORD_TYPE:
            logger.debug(f"Comment {comment.id} is not on a {self.settings.RECORD_TYPE}, not routed")
            return None
        if not record.doctor_id or not record.client_id:
            logger.debug(f"Record {record.id} lacks a participant, comment {comment.id} not routed")
            return None

        if comment.author_id == record.doctor_id:
            recipient_id = record.client_id
        elif comment.author_id == record.client_id:
            recipient_id = record.doctor_id
        else:
            logger.debug(f"Comment {comment.id} author {comment.author_id} is not a participant, not routed")
            return None

        if recipient_id == comment.author_id:
            return None

        recipient = self.users.get_user(recipient_id)
        if recipient is None or not recipient.platform_user_id:
            logger.info(f"User {recipient_id} has no linked platform account, comment {comment.id} not routed")
            return None

        return self.queue.enqueue(comment.id, recipient_id)
