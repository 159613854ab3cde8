"""
SQLAlchemy ORM models for the relay's own tables.

The relay owns only its queues and coordination state. Comments, users,
records and attachments live in the content system and are reached through
the collaborator protocols in collaborators.py.
"""

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from tgcomment.storage import Base


class IncomingMessage(Base):
    """
    Raw inbound platform message waiting to become a comment.

    Table: tgcomment_incoming
    Unique: (chat_id, tg_message_id) - the platform may redeliver
    """
    __tablename__ = "tgcomment_incoming"
    __table_args__ = (
        UniqueConstraint("chat_id", "tg_message_id", name="uq_incoming_message"),
        Index("ix_incoming_claim", "is_deleted", "retry_count", "last_attempt_at", "created_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(BigInteger, nullable=False, index=True)
    telegram_user_id = Column(BigInteger, nullable=False, index=True)
    chat_id = Column(BigInteger, nullable=False, index=True)
    tg_message_id = Column(BigInteger, nullable=False, index=True)
    record_id = Column(BigInteger, nullable=False, index=True)
    payload = Column(Text, nullable=False)  # message JSON as received
    media_group_id = Column(String(64), nullable=True, index=True)
    created_at = Column(DateTime, nullable=False, index=True)
    last_attempt_at = Column(DateTime, nullable=True, index=True)
    retry_count = Column(Integer, nullable=False, default=0, index=True)
    is_deleted = Column(Boolean, nullable=False, default=False, index=True)


class OutgoingNotification(Base):
    """
    Pending relay of an approved comment to the counterpart's chat.

    Table: tgcomment_outgoing
    Unique: (comment_id, user_id) - never queue the same notification twice
    """
    __tablename__ = "tgcomment_outgoing"
    __table_args__ = (
        UniqueConstraint("comment_id", "user_id", name="uq_outgoing_notification"),
        Index("ix_outgoing_claim", "is_deleted", "retry_count", "last_updated_at", "created_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    comment_id = Column(BigInteger, nullable=False, index=True)
    user_id = Column(BigInteger, nullable=False, index=True)
    created_at = Column(DateTime, nullable=False, index=True)
    last_updated_at = Column(DateTime, nullable=True, index=True)
    retry_count = Column(Integer, nullable=False, default=0, index=True)
    is_deleted = Column(Boolean, nullable=False, default=False, index=True)
    # Comma-separated media buckets already delivered (skipped on retry)
    delivered_buckets = Column(String(64), nullable=False, default="")


class Lease(Base):
    """
    Time-bounded claim used for run locks and per-row leases.

    Table: tgcomment_leases
    Primary Key: key (e.g. "run:processor", "incoming:42")
    """
    __tablename__ = "tgcomment_leases"

    key = Column(String(128), primary_key=True)
    token = Column(String(32), nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)


class BotState(Base):
    """
    Small key/value store for bot bookkeeping (last update id, polling flag).

    Table: tgcomment_state
    """
    __tablename__ = "tgcomment_state"

    key = Column(String(64), primary_key=True)
    value = Column(String(255), nullable=False)
