"""
Finds the record a platform reply belongs to.
"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from tgcomment.collaborators import Collaborators, User
from tgcomment.config import Settings
from tgcomment.queues import InboundQueue

logger = logging.getLogger(__name__)


class ReplyContextResolver:
    def __init__(self, db: Session, collaborators: Collaborators, settings: Settings):
        self.comments = collaborators.comments
        self.records = collaborators.records
        self.queue = InboundQueue(db, settings)

    def resolve(
        self,
        user: User,
        chat_id: int,
        message_id: int,
        original_author_platform_id: Optional[int],
    ) -> Optional[int]:
        """
        Resolve the record of the message `user` replied to.

        A reply to one's own message is matched through the comment built
        from it, or through its inbound row while that comment does not exist
        yet. A reply to anyone else's message (the bot's notifications
        included) is matched through the outbound linkage of a comment the
        replying user did not write. Only records where the user participates
        are searched.

        Args:
            user: The replying user
            chat_id: Chat of the replied-to message
            message_id: Platform id of the replied-to message
            original_author_platform_id: Platform user id of its sender

        Returns:
            The record id, or None when nothing matches
        """
        record_ids = [record.id for record in self.records.participant_records(user.id)]
        if not record_ids:
            return None

        own = original_author_platform_id is not None and original_author_platform_id == user.platform_user_id
        if own:
            comment = self.comments.find_by_inbound_link(record_ids, user.id, chat_id, message_id)
            if comment is not None:
                return comment.record_id
            row = self.queue.find_row(chat_id, message_id, user.id)
            if row is not None and row.record_id in record_ids:
                logger.debug(f"Reply to {chat_id}/{message_id} resolved through queued message {row.id}")
                return row.record_id
            return None

        comment = self.comments.find_by_outbound_link(record_ids, user.id, chat_id, message_id)
        if comment is not None and comment.author_id != user.id:
            return comment.record_id
        return None
