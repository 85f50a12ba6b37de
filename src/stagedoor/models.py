"""Domain models for conversations, participant episodes, and messages."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Union

ConversationKind = Literal["direct", "group"]
Role = Literal["member", "admin"]

# Lower bound used when a participant has never read the conversation
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def to_timestamp(value: datetime) -> str:
    """Serialize a datetime as fixed-width UTC ISO-8601.

    Fixed width keeps string order identical to time order, which the SQL
    cursor comparisons rely on.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class Active:
    """Membership episode that has not ended."""


@dataclass(frozen=True)
class Left:
    """Membership episode that ended at ``at``."""

    at: datetime


MembershipState = Union[Active, Left]


def state_from_left_at(left_at: str | datetime | None) -> MembershipState:
    parsed = parse_timestamp(left_at)
    if parsed is None:
        return Active()
    return Left(at=parsed)


@dataclass
class Conversation:
    """A direct or group conversation."""

    conversation_id: str
    kind: ConversationKind
    created_at: datetime
    created_by: str | None = None
    name: str | None = None
    updated_at: datetime | None = None

    def is_group(self) -> bool:
        return self.kind == "group"

    def is_direct(self) -> bool:
        return self.kind == "direct"

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Conversation":
        return cls(
            conversation_id=row["conversation_id"],
            kind=row["kind"],
            created_at=parse_timestamp(row["created_at"]),  # type: ignore[arg-type]
            created_by=row.get("created_by"),
            name=row.get("name"),
            updated_at=parse_timestamp(row.get("updated_at")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "kind": self.kind,
            "name": self.name,
            "created_by": self.created_by,
            "created_at": to_timestamp(self.created_at),
            "updated_at": to_timestamp(self.updated_at) if self.updated_at else None,
        }


@dataclass
class Participant:
    """One membership episode of a user in a conversation.

    A user who leaves and is later re-added gets a new episode; old
    episodes are kept with a ``Left`` state so historical read cursors
    survive.
    """

    episode_id: str
    conversation_id: str
    user_id: str
    role: Role
    joined_at: datetime
    state: MembershipState = field(default_factory=Active)
    last_read_at: datetime | None = None
    is_muted: bool = False

    def is_active(self) -> bool:
        return isinstance(self.state, Active)

    @property
    def left_at(self) -> datetime | None:
        if isinstance(self.state, Left):
            return self.state.at
        return None

    def read_floor(self) -> datetime:
        """Timestamp after which messages count as unread."""
        return self.last_read_at or EPOCH

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Participant":
        return cls(
            episode_id=row["episode_id"],
            conversation_id=row["conversation_id"],
            user_id=row["user_id"],
            role=row["role"],
            joined_at=parse_timestamp(row["joined_at"]),  # type: ignore[arg-type]
            state=state_from_left_at(row.get("left_at")),
            last_read_at=parse_timestamp(row.get("last_read_at")),
            is_muted=bool(row.get("is_muted") or 0),
        )

    def to_dict(self) -> dict[str, Any]:
        left_at = self.left_at
        return {
            "episode_id": self.episode_id,
            "conversation_id": self.conversation_id,
            "user_id": self.user_id,
            "role": self.role,
            "joined_at": to_timestamp(self.joined_at),
            "left_at": to_timestamp(left_at) if left_at else None,
            "last_read_at": to_timestamp(self.last_read_at) if self.last_read_at else None,
            "is_muted": self.is_muted,
        }


@dataclass
class Message:
    """Message metadata needed for unread arithmetic."""

    message_id: str
    conversation_id: str
    sender_id: str
    created_at: datetime
    body: str = ""
    is_deleted: bool = False

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Message":
        return cls(
            message_id=row["message_id"],
            conversation_id=row["conversation_id"],
            sender_id=row["sender_id"],
            created_at=parse_timestamp(row["created_at"]),  # type: ignore[arg-type]
            body=row.get("body") or "",
            is_deleted=bool(row.get("is_deleted") or 0),
        )


@dataclass
class CreatedConversation:
    """Result of create_conversation; ``created`` is False for a reused direct chat."""

    conversation: Conversation
    participants: list[Participant]
    created: bool = True
