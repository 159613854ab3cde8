"""
Entry point for platform updates, from the webhook or the poller.

Updates are classified into exactly one kind and dispatched:
- message: bot commands, or the message is queued for the processor
- edited_message: acknowledged, not relayed
- callback_query: inline button presses (active record selection)
"""

import logging
from html import escape
from typing import Any, Optional

import pydantic
from sqlalchemy.orm import Session

from tgcomment.collaborators import Collaborators, User
from tgcomment.config import Settings
from tgcomment.metrics import record_update
from tgcomment.queues import InboundQueue
from tgcomment.reply_context import ReplyContextResolver
from tgcomment.sanitizer import strip_tags
from tgcomment.schemas import (
    CallbackQueryUpdate,
    EditedMessageUpdate,
    MessageUpdate,
    UnsupportedUpdate,
    classify_update,
)
from tgcomment.telegram_client import REACTION_RECEIVED, TelegramClient
from tgcomment.utils import shorten

logger = logging.getLogger(__name__)

SELECT_RECORD_PREFIX = "select_record_"
RECENT_COMMENTS_LIMIT = 3


class UpdateHandler:
    def __init__(self, db: Session, client: TelegramClient, collaborators: Collaborators, settings: Settings):
        self.client = client
        self.comments = collaborators.comments
        self.users = collaborators.users
        self.records = collaborators.records
        self.settings = settings
        self.queue = InboundQueue(db, settings)
        self.resolver = ReplyContextResolver(db, collaborators, settings)
        self.commands = {
            "/start": self.show_records,
            "/list": self.show_recent_comments,
            "/logout": self.logout,
        }

    def process_single_update(self, update: dict[str, Any]) -> str:
        """
        Dispatch one raw update.

        Returns:
            The update kind ("invalid" when the payload does not parse)
        """
        try:
            kind = classify_update(update)
        except pydantic.ValidationError as e:
            logger.warning(f"Ignoring malformed update {update.get('update_id')}: {e.error_count()} error(s)")
            record_update("invalid")
            return "invalid"

        record_update(kind.kind)
        if isinstance(kind, MessageUpdate):
            self.handle_message(kind)
        elif isinstance(kind, EditedMessageUpdate):
            logger.debug(f"Edited message {kind.message.message_id} ignored")
        elif isinstance(kind, CallbackQueryUpdate):
            self.handle_callback(kind)
        elif isinstance(kind, UnsupportedUpdate):
            logger.debug(f"Unsupported update {kind.update_id} ignored")
        return kind.kind

    # -------------------------------------------------------------------------
    # Messages
    # -------------------------------------------------------------------------

    def handle_message(self, update: MessageUpdate) -> None:
        message = update.message
        sender = message.from_user
        if sender is None or sender.is_bot:
            return
        chat_id = message.chat.id

        user = self.users.find_by_platform_id(sender.id)
        if user is None:
            self.show_login(chat_id)
            return

        text = (message.text or "").strip()
        if text.startswith("/"):
            command = text.split()[0].split("@")[0].lower()
            if command in self.commands:
                logger.info(f"Command {command} from user {user.id}")
                self.commands[command](chat_id, user)
                return

        record_id = None
        reply = message.reply_to_message
        if reply is not None:
            original_author = reply.from_user.id if reply.from_user is not None else None
            record_id = self.resolver.resolve(user, chat_id, reply.message_id, original_author)
            if record_id is None:
                logger.info(f"Reply target {chat_id}/{reply.message_id} not found, using active record")

        if record_id is None:
            if user.is_admin:
                self.client.send_message(chat_id, "Administrators can only post by replying to a specific message.")
                return
            record_id = self.ensure_active_record(user)
            if record_id is None:
                self.client.send_message(
                    chat_id,
                    "❌ You have no active consultations.\n\n"
                    "At least one active consultation is needed to send messages.",
                )
                return

        row_id = self.queue.enqueue(
            user_id=user.id,
            telegram_user_id=sender.id,
            chat_id=chat_id,
            message_id=message.message_id,
            record_id=record_id,
            payload=update.raw,
            media_group_id=message.media_group_id,
        )
        if row_id is not None:
            logger.info(f"Message from user {user.id} queued for record {record_id}: {shorten(message.content)}")
            self.client.set_reaction(chat_id, message.message_id, REACTION_RECEIVED)

    def ensure_active_record(self, user: User) -> Optional[int]:
        """
        The user's active record, falling back to their first client record
        when none is set or the stored one is no longer theirs.
        """
        records = self.records.client_records(user.id)
        active_id = self.users.get_active_record_id(user.id)
        if active_id is not None and any(record.id == active_id for record in records):
            return active_id
        if not records:
            return None
        self.users.set_active_record_id(user.id, records[0].id)
        logger.info(f"Active record of user {user.id} set to {records[0].id}")
        return records[0].id

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    def show_login(self, chat_id: int) -> None:
        text = (
            "👋 Hello!\n\n"
            "🔐 Sign in to the site with your platform account to reach your consultations."
        )
        keyboard = None
        if self.settings.LOGIN_URL:
            text += "\n\nUse the button below to sign in:"
            keyboard = {
                "inline_keyboard": [[
                    {
                        "text": "🔑 Sign in",
                        "login_url": {"url": self.settings.LOGIN_URL, "request_write_access": True},
                    }
                ]]
            }
        self.client.send_message(chat_id, text, keyboard)

    def show_records(self, chat_id: int, user: User) -> None:
        records = self.records.client_records(user.id)
        active_id = self.ensure_active_record(user)
        text = f"👋 Hello, {escape(user.display_name)}!\n\n"

        if not records:
            text += "📝 You have no active consultations."
            self.client.send_message(chat_id, text)
            return

        buttons = []
        for record in records:
            icon = "✅" if record.active else "❌"
            label = f"{icon} {record.title}"
            if record.id == active_id:
                label = f"👉 {label}"
                text += f"📌 Current consultation: {icon} {escape(record.title)}\n\n"
            buttons.append([{"text": label, "callback_data": f"{SELECT_RECORD_PREFIX}{record.id}"}])
        text += "Choose the consultation your messages go to:"
        self.client.send_message(chat_id, text, {"inline_keyboard": buttons})

    def show_recent_comments(self, chat_id: int, user: User) -> None:
        record_id = self.ensure_active_record(user)
        record = self.records.get_record(record_id) if record_id is not None else None
        if record is None:
            self.client.send_message(
                chat_id, "❌ You have no active consultation.\n\nUse /start to choose one."
            )
            return

        comments = self.comments.recent_approved(record.id, RECENT_COMMENTS_LIMIT)
        title = escape(record.title)
        if not comments:
            self.client.send_message(chat_id, f'📝 No messages in "{title}" yet.\n\nSend the first one!')
            return

        text = f"📝 <b>Last {len(comments)} messages</b>\n📌 Consultation: <b>{title}</b>\n\n"
        for comment in reversed(comments):
            marker = " 📎" if comment.attachment_ids else ""
            when = f" <i>{escape(comment.created_at)}</i>" if comment.created_at else ""
            text += f"👤 <b>{escape(comment.author_name)}</b>{when}{marker}\n"
            text += f"{escape(strip_tags(comment.content))}\n\n"
        text += "💬 Send a new message in this chat to add it to the consultation."
        self.client.send_message(chat_id, text)

    def logout(self, chat_id: int, user: User) -> None:
        if not self.users.unlink_platform(user.id):
            self.client.send_message(chat_id, "❌ Sign out failed.\n\nTry again or contact an administrator.")
            return
        self.users.set_active_record_id(user.id, None)
        logger.info(f"User {user.id} unlinked their platform account")
        self.client.send_message(
            chat_id,
            f"👋 Goodbye, {escape(user.display_name)}!\n\n"
            "🔓 Your account is no longer linked. Send any message to sign in again.",
        )

    # -------------------------------------------------------------------------
    # Callbacks
    # -------------------------------------------------------------------------

    def handle_callback(self, update: CallbackQueryUpdate) -> None:
        query = update.callback_query
        self.client.answer_callback_query(query.id)
        if query.message is None:
            return
        chat_id = query.message.chat.id

        user = self.users.find_by_platform_id(query.from_user.id)
        if user is None:
            self.client.send_message(chat_id, "❌ User not found")
            return

        data = query.data or ""
        if not data.startswith(SELECT_RECORD_PREFIX):
            logger.info(f"Unknown callback data from user {user.id}: {data}")
            self.client.send_message(chat_id, "❌ Unknown command")
            return

        try:
            record_id = int(data[len(SELECT_RECORD_PREFIX):])
        except ValueError:
            self.client.send_message(chat_id, "❌ Unknown command")
            return

        record = next((r for r in self.records.client_records(user.id) if r.id == record_id), None)
        if record is None:
            self.client.send_message(chat_id, "❌ Consultation not found")
            return
        if not record.active:
            self.client.send_message(
                chat_id,
                "❌ This consultation is inactive and cannot be selected.\n\n"
                "💬 Contact its owner to reactivate it.",
            )
            return

        self.users.set_active_record_id(user.id, record.id)
        logger.info(f"User {user.id} selected record {record.id}")
        self.client.send_message(
            chat_id,
            f'✅ Selected: "{escape(record.title)}"\n\nYour messages now go to this consultation.',
        )
