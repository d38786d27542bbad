"""Domain models shared by the cache, sync and quota services."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Optional, TypeVar

Row = dict[str, Any]

FILTER_OPERATORS = frozenset({"==", "!=", "<", "<=", ">", ">=", "in", "array_contains"})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class Filter:
    """Single field predicate understood by both the cache and the remote store."""

    field: str
    op: str
    value: Any

    def __post_init__(self) -> None:
        if self.op not in FILTER_OPERATORS:
            raise ValueError(f"Unsupported filter operator: {self.op}")


def eq(field_name: str, value: Any) -> Filter:
    return Filter(field_name, "==", value)


class MatchStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DECLINED = "declined"


@dataclass(frozen=True, slots=True)
class PenpalMatch:
    """Potential penpal shown in the swipe feed."""

    id: str
    user_id: str
    penpal_id: str
    first_name: str
    last_name: str
    proficiency: str
    hobbies: tuple[str, ...] = ()
    goal: Optional[str] = None
    region: str = ""
    match_score: Optional[int] = None
    status: MatchStatus = MatchStatus.PENDING
    profile_image_url: str = ""
    updated_at: datetime = field(default_factory=utcnow)
    is_synced: bool = False

    @staticmethod
    def make_id(user_id: str, penpal_id: str) -> str:
        return f"{user_id}_{penpal_id}"


@dataclass(frozen=True, slots=True)
class Conversation:
    id: str
    user_id: str
    penpal_id: str
    participants: tuple[str, ...] = ()
    last_message: Optional[str] = None
    deleted_for: tuple[str, ...] = ()
    updated_at: datetime = field(default_factory=utcnow)
    is_synced: bool = False


@dataclass(frozen=True, slots=True)
class Message:
    id: str
    conversation_id: str
    sender_id: str
    text: str
    sent_at: datetime
    is_read: bool = False
    type: str = "text"
    updated_at: datetime = field(default_factory=utcnow)
    is_synced: bool = False


@dataclass(frozen=True, slots=True)
class Meeting:
    id: str
    title: str
    created_by: str
    scheduled_at: datetime
    description: str = ""
    discussion_topics: Mapping[str, tuple[str, ...]] = field(default_factory=dict)
    notes: str = ""
    meeting_link: str = ""
    passcode: str = ""
    participants: tuple[str, ...] = ()
    status: str = "pending"
    updated_at: datetime = field(default_factory=utcnow)
    is_synced: bool = False


@dataclass(frozen=True, slots=True)
class VocabSheet:
    id: str
    user_id: str
    name: str
    language: str = ""
    card_count: int = 0
    updated_at: datetime = field(default_factory=utcnow)
    is_synced: bool = False


@dataclass(frozen=True, slots=True)
class VocabCard:
    id: str
    sheet_id: str
    user_id: str
    word: str
    translation: str = ""
    examples: tuple[str, ...] = ()
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    is_synced: bool = False


@dataclass(frozen=True, slots=True)
class Profile:
    id: str
    first_name: str
    last_name: str = ""
    native_language: str = ""
    target_language: str = ""
    proficiency: str = ""
    hobbies: tuple[str, ...] = ()
    goals: Optional[str] = None
    region: str = ""
    profile_image_url: str = ""
    updated_at: datetime = field(default_factory=utcnow)
    is_synced: bool = False


@dataclass(frozen=True, slots=True)
class Notification:
    id: str
    user_id: str
    kind: str
    message: str
    created_at: datetime = field(default_factory=utcnow)
    is_read: bool = False
    updated_at: datetime = field(default_factory=utcnow)
    is_synced: bool = False


Entity = TypeVar(
    "Entity",
    PenpalMatch,
    Conversation,
    Message,
    Meeting,
    VocabSheet,
    VocabCard,
    Profile,
    Notification,
)


def mark_synced(entity: Entity, synced: bool = True) -> Entity:
    """Return a copy of ``entity`` with the sync flag set."""

    if entity.is_synced is synced:
        return entity
    return replace(entity, is_synced=synced)


@dataclass(frozen=True, slots=True)
class QuotaRecord:
    """Per-user daily allowance."""

    user_id: str
    day: str
    used: int = 0
    max_per_day: int = 0

    @property
    def remaining(self) -> int:
        return max(self.max_per_day - self.used, 0)

    def rolled_over(self, today: str) -> "QuotaRecord":
        """Return the record as seen on ``today``; a new day starts at zero usage."""

        if self.day == today:
            return self
        return replace(self, day=today, used=0)


@dataclass(frozen=True, slots=True)
class QuotaStatus:
    remaining: int
    window_ends_at: datetime


__all__ = [
    "Row",
    "Filter",
    "FILTER_OPERATORS",
    "eq",
    "utcnow",
    "MatchStatus",
    "PenpalMatch",
    "Conversation",
    "Message",
    "Meeting",
    "VocabSheet",
    "VocabCard",
    "Profile",
    "Notification",
    "Entity",
    "mark_synced",
    "QuotaRecord",
    "QuotaStatus",
]
