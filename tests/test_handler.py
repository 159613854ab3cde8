"""
Tests for update dispatch, bot commands and message intake.
"""

import pytest
from sqlalchemy import select

from tgcomment.handler import UpdateHandler
from tgcomment.models import IncomingMessage
from tgcomment.telegram_client import REACTION_RECEIVED

from tests.conftest import (
    CLIENT_ID,
    CLIENT_PLATFORM_ID,
    DOCTOR_ID,
    DOCTOR_PLATFORM_ID,
    RECORD_ID,
    make_message,
    make_update,
)


def rows(db) -> list[IncomingMessage]:
    return db.execute(select(IncomingMessage)).scalars().all()


@pytest.fixture
def handler_factory(db, tg, store, settings):
    def build(**overrides):
        run_settings = settings.model_copy(update=overrides) if overrides else settings
        return UpdateHandler(db, tg, store.collaborators(), run_settings)
    return build


def callback_update(update_id: int, data: str, from_id: int = CLIENT_PLATFORM_ID) -> dict:
    return {
        "update_id": update_id,
        "callback_query": {
            "id": f"cb{update_id}",
            "from": {"id": from_id, "is_bot": False},
            "message": make_message(900, from_id=999, chat_id=from_id, text="menu"),
            "data": data,
        },
    }


class TestDispatch:
    """Update kinds."""

    def test_edited_message_ignored(self, db, tg, handler_factory):
        """Edits are acknowledged and not queued."""
        kind = handler_factory().process_single_update(make_update(1, make_message(5, text="x"), "edited_message"))
        assert kind == "edited_message"
        assert rows(db) == []
        assert tg.calls == []

    def test_malformed_update(self, handler_factory):
        """An update that does not parse is reported as invalid."""
        assert handler_factory().process_single_update({"update_id": 2, "message": {"text": "no ids"}}) == "invalid"

    def test_unsupported_update(self, handler_factory):
        """Other update kinds are ignored."""
        update = {"update_id": 3, "channel_post": {"message_id": 1}}
        assert handler_factory().process_single_update(update) == "unsupported"

    def test_bot_sender_ignored(self, db, tg, handler_factory):
        """Messages from bots are dropped."""
        message = make_message(5, text="beep")
        message["from"]["is_bot"] = True
        handler_factory().process_single_update(make_update(4, message))
        assert rows(db) == []
        assert tg.calls == []


class TestUnknownUser:
    """Platform users without a linked account."""

    def test_login_prompt(self, db, tg, handler_factory):
        """An unknown sender is asked to sign in and nothing is queued."""
        handler_factory().process_single_update(make_update(1, make_message(5, from_id=777, chat_id=777, text="hi")))

        (message,) = tg.calls_to("sendMessage")
        assert message["chat_id"] == 777
        assert "Sign in" in message["text"]
        assert message["keyboard"] is None
        assert rows(db) == []

    def test_login_button(self, tg, handler_factory):
        """With a login URL the prompt carries a login button."""
        handler = handler_factory(LOGIN_URL="https://cms.example/login")
        handler.process_single_update(make_update(1, make_message(5, from_id=777, chat_id=777, text="hi")))

        (message,) = tg.calls_to("sendMessage")
        button = message["keyboard"]["inline_keyboard"][0][0]
        assert button["login_url"]["url"] == "https://cms.example/login"


class TestIntake:
    """Messages queued for the processor."""

    def test_message_queued_with_reaction(self, db, tg, store, handler_factory):
        """A client's message is queued for the active record and acknowledged."""
        handler_factory().process_single_update(make_update(1, make_message(10, text="Hello")))

        (row,) = rows(db)
        assert (row.user_id, row.chat_id, row.tg_message_id, row.record_id) == (
            CLIENT_ID, CLIENT_PLATFORM_ID, 10, RECORD_ID
        )
        assert store.active_records[CLIENT_ID] == RECORD_ID
        assert tg.calls_to("setMessageReaction") == [
            {"chat_id": CLIENT_PLATFORM_ID, "message_id": 10, "emoji": REACTION_RECEIVED}
        ]

    def test_redelivered_message_queued_once(self, db, tg, handler_factory):
        """The same message delivered twice is stored and acknowledged once."""
        handler = handler_factory()
        update = make_update(1, make_message(10, text="Hello"))
        handler.process_single_update(update)
        handler.process_single_update(update)

        assert len(rows(db)) == 1
        assert len(tg.calls_to("setMessageReaction")) == 1

    def test_media_group_id_kept(self, db, handler_factory):
        """The media group id is stored with the row."""
        message = make_message(10, media_group_id="album", photo=[{"file_id": "p", "width": 1, "height": 1}])
        handler_factory().process_single_update(make_update(1, message))

        assert rows(db)[0].media_group_id == "album"

    def test_stale_active_record_replaced(self, db, store, handler_factory):
        """An active record the user no longer owns falls back to the first one."""
        store.active_records[CLIENT_ID] = 999
        handler_factory().process_single_update(make_update(1, make_message(10, text="Hello")))

        assert rows(db)[0].record_id == RECORD_ID
        assert store.active_records[CLIENT_ID] == RECORD_ID

    def test_reply_routes_to_resolved_record(self, db, store, handler_factory):
        """A doctor's reply to a relayed message lands on that record."""
        store.add_comment(
            RECORD_ID, CLIENT_ID, "Question", outbound_chat_id=DOCTOR_PLATFORM_ID, outbound_message_ids=[300]
        )
        original = make_message(300, from_id=999, chat_id=DOCTOR_PLATFORM_ID, text="relayed")
        reply = make_message(
            20, from_id=DOCTOR_PLATFORM_ID, chat_id=DOCTOR_PLATFORM_ID, text="Answer", reply_to_message=original
        )
        handler_factory().process_single_update(make_update(1, reply))

        (row,) = rows(db)
        assert (row.user_id, row.record_id) == (DOCTOR_ID, RECORD_ID)

    def test_doctor_without_reply_has_no_record(self, db, tg, handler_factory):
        """Someone with no client records must reply to a message."""
        handler_factory().process_single_update(
            make_update(1, make_message(20, from_id=DOCTOR_PLATFORM_ID, chat_id=DOCTOR_PLATFORM_ID, text="Hi"))
        )

        assert rows(db) == []
        (message,) = tg.calls_to("sendMessage")
        assert "no active consultations" in message["text"]

    def test_admin_must_reply(self, db, tg, store, handler_factory):
        """Administrators cannot post without replying."""
        store.add_user(9, "Admin", platform_user_id=9009, is_admin=True)
        handler_factory().process_single_update(make_update(1, make_message(5, from_id=9009, chat_id=9009, text="Hi")))

        assert rows(db) == []
        (message,) = tg.calls_to("sendMessage")
        assert "replying" in message["text"]


class TestCommands:
    """Bot commands."""

    def test_start_lists_records(self, db, tg, store, handler_factory):
        """/start shows one button per consultation, marking the active one."""
        store.add_record(43, "Back pain", doctor_id=DOCTOR_ID, client_id=CLIENT_ID, active=False)
        handler_factory().process_single_update(make_update(1, make_message(10, text="/start")))

        (message,) = tg.calls_to("sendMessage")
        buttons = [row[0] for row in message["keyboard"]["inline_keyboard"]]
        assert buttons == [
            {"text": "👉 ✅ Knee pain", "callback_data": "select_record_42"},
            {"text": "❌ Back pain", "callback_data": "select_record_43"},
        ]
        assert "Alice Client" in message["text"]
        assert rows(db) == []

    def test_start_with_bot_suffix(self, tg, handler_factory):
        """Commands addressed to the bot by name are recognized."""
        handler_factory().process_single_update(make_update(1, make_message(10, text="/start@relay_bot")))
        assert tg.calls_to("sendMessage")[0]["keyboard"] is not None

    def test_list_recent_comments(self, tg, store, handler_factory):
        """/list shows the last three approved comments, oldest first."""
        for index in range(4):
            store.add_comment(RECORD_ID, CLIENT_ID, f"message {index}")
        store.add_comment(RECORD_ID, DOCTOR_ID, "with file", attachment_ids=[100])
        store.add_comment(RECORD_ID, DOCTOR_ID, "pending", approved=False)

        handler_factory().process_single_update(make_update(1, make_message(10, text="/list")))

        (message,) = tg.calls_to("sendMessage")
        text = message["text"]
        assert "message 0" not in text and "message 1" not in text
        assert text.index("message 2") < text.index("message 3") < text.index("with file")
        assert "📎" in text
        assert "pending" not in text

    def test_list_empty(self, tg, handler_factory):
        """/list on a record without comments invites the first message."""
        handler_factory().process_single_update(make_update(1, make_message(10, text="/list")))
        assert "No messages" in tg.calls_to("sendMessage")[0]["text"]

    def test_logout(self, db, tg, store, handler_factory):
        """/logout removes the platform link and the active record."""
        store.active_records[CLIENT_ID] = RECORD_ID
        handler_factory().process_single_update(make_update(1, make_message(10, text="/logout")))

        assert store.users[CLIENT_ID].platform_user_id is None
        assert store.active_records[CLIENT_ID] is None
        assert "Goodbye" in tg.calls_to("sendMessage")[0]["text"]
        assert rows(db) == []

    def test_unknown_command_is_queued(self, db, handler_factory):
        """Slash text that is not a command is an ordinary message."""
        handler_factory().process_single_update(make_update(1, make_message(10, text="/etc/hosts is broken")))
        assert len(rows(db)) == 1


class TestCallbacks:
    """Inline button presses."""

    def test_select_record(self, tg, store, handler_factory):
        """Choosing an active consultation makes it the active record."""
        store.add_record(43, "Back pain", doctor_id=DOCTOR_ID, client_id=CLIENT_ID)
        kind = handler_factory().process_single_update(callback_update(1, "select_record_43"))

        assert kind == "callback_query"
        assert store.active_records[CLIENT_ID] == 43
        assert tg.calls_to("answerCallbackQuery") == [{"callback_query_id": "cb1"}]
        assert "Back pain" in tg.calls_to("sendMessage")[0]["text"]

    def test_inactive_record_rejected(self, tg, store, handler_factory):
        """Inactive consultations cannot be selected."""
        store.add_record(43, "Back pain", doctor_id=DOCTOR_ID, client_id=CLIENT_ID, active=False)
        handler_factory().process_single_update(callback_update(1, "select_record_43"))

        assert CLIENT_ID not in store.active_records
        assert "inactive" in tg.calls_to("sendMessage")[0]["text"]

    def test_foreign_record_rejected(self, tg, store, handler_factory):
        """A record of someone else cannot be selected."""
        store.add_user(5, "Carol", platform_user_id=5005)
        store.add_record(77, "Other case", doctor_id=DOCTOR_ID, client_id=5)
        handler_factory().process_single_update(callback_update(1, "select_record_77"))

        assert CLIENT_ID not in store.active_records
        assert "not found" in tg.calls_to("sendMessage")[0]["text"]

    def test_unknown_callback(self, tg, handler_factory):
        """Unknown button data gets a short error."""
        handler_factory().process_single_update(callback_update(1, "something_else"))
        assert "Unknown command" in tg.calls_to("sendMessage")[0]["text"]
