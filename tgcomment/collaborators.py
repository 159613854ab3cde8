"""
Contracts of the content system the relay writes into.

The relay never stores comments, users, records or attachments itself. The
embedding deployment supplies objects satisfying these protocols (usually a
single adapter over the CMS API).
"""

from dataclasses import dataclass, field
from typing import Optional, Protocol, Sequence


@dataclass
class Comment:
    id: int
    record_id: int
    author_id: int
    content: str = ""
    approved: bool = False
    attachment_ids: list[int] = field(default_factory=list)
    media_group_id: Optional[str] = None
    # (chat_id, message_id) pairs this comment was built from
    inbound_links: list[tuple[int, int]] = field(default_factory=list)
    # chat and message ids of the notifications relayed for this comment
    outbound_chat_id: Optional[int] = None
    outbound_message_ids: list[int] = field(default_factory=list)
    author_name: str = ""
    created_at: Optional[str] = None


@dataclass
class User:
    id: int
    display_name: str
    platform_user_id: Optional[int] = None
    is_admin: bool = False


@dataclass
class Record:
    id: int
    title: str
    kind: str
    doctor_id: Optional[int] = None
    client_id: Optional[int] = None
    active: bool = False


@dataclass
class AttachmentFile:
    filename: str
    content: bytes
    mime_type: Optional[str] = None


class CommentStore(Protocol):
    def get_comment(self, comment_id: int) -> Optional[Comment]: ...

    def create_comment(
        self,
        record_id: int,
        author_id: int,
        content: str,
        inbound_link: tuple[int, int],
        media_group_id: Optional[str] = None,
        attachment_ids: Sequence[int] = (),
        created_at: Optional[str] = None,
    ) -> int:
        """Create a pending comment and return its id."""

    def update_content(self, comment_id: int, content: str) -> None: ...

    def append_attachments(self, comment_id: int, attachment_ids: Sequence[int]) -> None: ...

    def add_inbound_link(self, comment_id: int, chat_id: int, message_id: int) -> None: ...

    def add_outbound_links(self, comment_id: int, chat_id: int, message_ids: Sequence[int]) -> None: ...

    def approve_comment(self, comment_id: int) -> bool:
        """Move a pending comment to approved. True only if the status changed."""

    def find_pending_group_comment(
        self, record_id: int, author_id: int, media_group_id: str
    ) -> Optional[Comment]: ...

    def find_by_inbound_link(
        self, record_ids: Sequence[int], author_id: int, chat_id: int, message_id: int
    ) -> Optional[Comment]: ...

    def find_by_outbound_link(
        self, record_ids: Sequence[int], exclude_author_id: int, chat_id: int, message_id: int
    ) -> Optional[Comment]: ...

    def recent_approved(self, record_id: int, limit: int) -> list[Comment]:
        """Newest approved comments first."""


class UserDirectory(Protocol):
    def get_user(self, user_id: int) -> Optional[User]: ...

    def find_by_platform_id(self, platform_user_id: int) -> Optional[User]: ...

    def unlink_platform(self, user_id: int) -> bool: ...

    def get_active_record_id(self, user_id: int) -> Optional[int]: ...

    def set_active_record_id(self, user_id: int, record_id: Optional[int]) -> None: ...


class RecordStore(Protocol):
    def get_record(self, record_id: int) -> Optional[Record]: ...

    def client_records(self, user_id: int) -> list[Record]:
        """Published records of the relayed kind where the user is the client."""

    def participant_records(self, user_id: int) -> list[Record]:
        """Published records of the relayed kind where the user is doctor or client."""


class MediaStore(Protocol):
    def create_attachment(
        self, record_id: int, filename: str, content: bytes, mime_type: Optional[str] = None
    ) -> int: ...

    def delete_attachment(self, attachment_id: int) -> None: ...

    def attachment_url(self, attachment_id: int) -> Optional[str]: ...

    def attachment_mime_type(self, attachment_id: int) -> Optional[str]: ...

    def open_attachment(self, attachment_id: int) -> Optional[AttachmentFile]: ...


@dataclass
class Collaborators:
    comments: CommentStore
    users: UserDirectory
    records: RecordStore
    media: MediaStore
