"""
Tests for reply-context resolution.
"""

from tgcomment.queues import InboundQueue
from tgcomment.reply_context import ReplyContextResolver

from tests.conftest import CLIENT_ID, CLIENT_PLATFORM_ID, DOCTOR_ID, DOCTOR_PLATFORM_ID, RECORD_ID

BOT_ID = 999


def resolver(db, store, settings) -> ReplyContextResolver:
    return ReplyContextResolver(db, store.collaborators(), settings)


class TestOwnMessages:
    """Replies to one's own earlier messages."""

    def test_matches_inbound_linkage(self, db, settings, store):
        """A reply to an own message resolves through the comment built from it."""
        store.add_comment(RECORD_ID, CLIENT_ID, "Original", inbound_links=[(555, 10)])
        client = store.users[CLIENT_ID]

        assert resolver(db, store, settings).resolve(client, 555, 10, CLIENT_PLATFORM_ID) == RECORD_ID

    def test_falls_back_to_queued_message(self, db, settings, store):
        """While the comment is not created yet, the queued row gives the record."""
        InboundQueue(db, settings).enqueue(
            user_id=CLIENT_ID,
            telegram_user_id=CLIENT_PLATFORM_ID,
            chat_id=555,
            message_id=11,
            record_id=RECORD_ID,
            payload={},
        )
        client = store.users[CLIENT_ID]

        assert resolver(db, store, settings).resolve(client, 555, 11, CLIENT_PLATFORM_ID) == RECORD_ID

    def test_unknown_message(self, db, settings, store):
        """Nothing matches an unknown message."""
        client = store.users[CLIENT_ID]
        assert resolver(db, store, settings).resolve(client, 555, 12, CLIENT_PLATFORM_ID) is None


class TestOtherMessages:
    """Replies to messages the bot relayed."""

    def test_matches_outbound_linkage(self, db, settings, store):
        """A reply to a relayed notification resolves for the other participant."""
        store.add_comment(
            RECORD_ID, CLIENT_ID, "Question", outbound_chat_id=555, outbound_message_ids=[10, 11]
        )
        doctor = store.users[DOCTOR_ID]

        assert resolver(db, store, settings).resolve(doctor, 555, 11, BOT_ID) == RECORD_ID

    def test_author_excluded(self, db, settings, store):
        """The author of the comment does not match its own outbound linkage."""
        store.add_comment(RECORD_ID, CLIENT_ID, "Question", outbound_chat_id=555, outbound_message_ids=[10])
        client = store.users[CLIENT_ID]

        assert resolver(db, store, settings).resolve(client, 555, 10, BOT_ID) is None

    def test_inbound_linkage_ignored_for_others(self, db, settings, store):
        """Someone else's message never matches through inbound linkage."""
        store.add_comment(RECORD_ID, CLIENT_ID, "Original", inbound_links=[(555, 10)])
        doctor = store.users[DOCTOR_ID]

        assert resolver(db, store, settings).resolve(doctor, 555, 10, CLIENT_PLATFORM_ID) is None


class TestScope:
    """Only the replying user's records are searched."""

    def test_foreign_record_not_matched(self, db, settings, store):
        """Linkage on a record the user is not part of is invisible."""
        store.add_user(5, "Carol", platform_user_id=5005)
        store.add_user(6, "Dr. Dan", platform_user_id=6006)
        store.add_record(77, "Other case", doctor_id=6, client_id=5)
        store.add_comment(77, 5, "Private", outbound_chat_id=555, outbound_message_ids=[10])
        doctor = store.users[DOCTOR_ID]

        assert resolver(db, store, settings).resolve(doctor, 555, 10, BOT_ID) is None

    def test_user_without_records(self, db, settings, store):
        """A user with no records resolves nothing."""
        outsider = store.add_user(8, "Eve", platform_user_id=8008)
        store.add_comment(RECORD_ID, CLIENT_ID, "Q", outbound_chat_id=555, outbound_message_ids=[10])

        assert resolver(db, store, settings).resolve(outsider, 555, 10, DOCTOR_PLATFORM_ID) is None
