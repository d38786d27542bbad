"""Conversions between entities, remote documents and cache rows.

Every codec is pure: no I/O, no clocks. ``from_remote`` and ``from_row``
never raise; a document or row missing a required field decodes to ``None``
and composite fields that fail to parse degrade to empty collections, so a
single bad record cannot break a page of results.
"""

from __future__ import annotations

import abc
import json
from datetime import datetime, timezone
from typing import Any, Generic, Mapping, Optional, TypeVar

from logger import get_logger
from penpal.models import (
    Conversation,
    MatchStatus,
    Meeting,
    Message,
    Notification,
    PenpalMatch,
    Profile,
    Row,
    VocabCard,
    VocabSheet,
)
from penpal.services.local_base import CollectionSchema
from penpal.services.remote_base import RemoteDocument

E = TypeVar("E")

EPOCH = datetime.fromtimestamp(0, tz=timezone.utc)

_logger = get_logger("penpal.codecs")


class DecodeError(ValueError):
    """Raised inside codecs when a required field is missing or malformed."""


def _require_str(data: Mapping[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise DecodeError(f"{key} is missing")
    return value


def _opt_str(data: Mapping[str, Any], key: str, default: str = "") -> str:
    value = data.get(key)
    return value if isinstance(value, str) else default


def _nullable_str(data: Mapping[str, Any], key: str) -> Optional[str]:
    value = data.get(key)
    return value if isinstance(value, str) else None


def _opt_int(data: Mapping[str, Any], key: str) -> Optional[int]:
    value = data.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return int(value)


def _flag(data: Mapping[str, Any], key: str) -> bool:
    value = data.get(key)
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    return False


def to_datetime(value: Any) -> datetime:
    """Coerce remote timestamps, epoch seconds and ISO text to aware datetimes."""

    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, bool):
        raise DecodeError("boolean is not a timestamp")
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    if isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            raise DecodeError(f"invalid timestamp {value!r}") from None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise DecodeError("timestamp is missing")


def _require_time(data: Mapping[str, Any], key: str) -> datetime:
    if key not in data:
        raise DecodeError(f"{key} is missing")
    return to_datetime(data[key])


def _opt_time(data: Mapping[str, Any], key: str, default: datetime = EPOCH) -> datetime:
    if data.get(key) is None:
        return default
    return to_datetime(data[key])


def epoch(value: datetime) -> float:
    return value.timestamp()


def _str_tuple(value: Any) -> tuple[str, ...]:
    if not isinstance(value, (list, tuple)):
        return ()
    return tuple(item for item in value if isinstance(item, str))


def dump_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def load_json_list(raw: Any) -> tuple[str, ...]:
    if not isinstance(raw, str) or not raw:
        return ()
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return ()
    return _str_tuple(data)


def _topics(value: Any) -> dict[str, tuple[str, ...]]:
    if not isinstance(value, Mapping):
        return {}
    return {str(key): _str_tuple(items) for key, items in value.items()}


def load_json_topics(raw: Any) -> dict[str, tuple[str, ...]]:
    if not isinstance(raw, str) or not raw:
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return _topics(data)


class EntityCodec(abc.ABC, Generic[E]):
    """Codec for one entity type plus the collection metadata it implies."""

    remote_collection: str
    schema: CollectionSchema
    scope_field: str
    scope_column: str
    order_field: str
    order_column: str
    descending: bool = False

    @property
    def collection(self) -> str:
        return self.schema.name

    def from_remote(self, document: RemoteDocument) -> Optional[E]:
        try:
            return self._from_remote(document.id, document.data)
        except (DecodeError, KeyError, TypeError, ValueError, AttributeError) as exc:
            _logger.debug("Skipping %s document %s: %s", self.remote_collection, document.id, exc)
            return None

    def from_row(self, row: Row) -> Optional[E]:
        try:
            return self._from_row(row)
        except (DecodeError, KeyError, TypeError, ValueError, AttributeError) as exc:
            _logger.debug("Skipping %s row %s: %s", self.collection, row.get("id"), exc)
            return None

    @abc.abstractmethod
    def to_remote(self, entity: E) -> dict[str, Any]:
        """Return the remote document body."""

    @abc.abstractmethod
    def to_row(self, entity: E) -> Row:
        """Return the cache row."""

    @abc.abstractmethod
    def scope_of(self, entity: E) -> str:
        """Return the scope key the entity belongs to."""

    @abc.abstractmethod
    def sort_key(self, entity: E) -> Any:
        """Return the value entities are ordered by."""

    @abc.abstractmethod
    def _from_remote(self, doc_id: str, data: Mapping[str, Any]) -> E:
        ...

    @abc.abstractmethod
    def _from_row(self, row: Row) -> E:
        ...


class PenpalMatchCodec(EntityCodec[PenpalMatch]):
    remote_collection = "potentialMatches"
    schema = CollectionSchema(
        name="penpal_matches",
        columns={
            "user_id": "TEXT",
            "penpal_id": "TEXT",
            "first_name": "TEXT",
            "last_name": "TEXT",
            "proficiency": "TEXT",
            "hobbies": "TEXT",
            "goal": "TEXT",
            "region": "TEXT",
            "match_score": "INTEGER",
            "status": "TEXT",
            "profile_image_url": "TEXT",
            "updated_at": "REAL",
            "is_synced": "INTEGER",
        },
        indexes=("user_id",),
    )
    scope_field = "userId"
    scope_column = "user_id"
    order_field = "matchScore"
    order_column = "match_score"
    descending = True

    def to_remote(self, entity: PenpalMatch) -> dict[str, Any]:
        return {
            "userId": entity.user_id,
            "penpalId": entity.penpal_id,
            "firstName": entity.first_name,
            "lastName": entity.last_name,
            "proficiency": entity.proficiency,
            "hobbies": list(entity.hobbies),
            "goal": entity.goal,
            "region": entity.region,
            "matchScore": entity.match_score,
            "status": entity.status.value,
            "profileImageURL": entity.profile_image_url,
            "updatedAt": entity.updated_at,
        }

    def _from_remote(self, doc_id: str, data: Mapping[str, Any]) -> PenpalMatch:
        user_id = _require_str(data, "userId")
        penpal_id = _require_str(data, "penpalId")
        return PenpalMatch(
            id=doc_id or PenpalMatch.make_id(user_id, penpal_id),
            user_id=user_id,
            penpal_id=penpal_id,
            first_name=_require_str(data, "firstName"),
            last_name=_opt_str(data, "lastName"),
            proficiency=_require_str(data, "proficiency"),
            hobbies=_str_tuple(data.get("hobbies")),
            goal=_nullable_str(data, "goal"),
            region=_opt_str(data, "region"),
            match_score=_opt_int(data, "matchScore"),
            status=MatchStatus(_require_str(data, "status")),
            profile_image_url=_opt_str(data, "profileImageURL"),
            updated_at=_opt_time(data, "updatedAt"),
            is_synced=True,
        )

    def to_row(self, entity: PenpalMatch) -> Row:
        return {
            "id": entity.id,
            "user_id": entity.user_id,
            "penpal_id": entity.penpal_id,
            "first_name": entity.first_name,
            "last_name": entity.last_name,
            "proficiency": entity.proficiency,
            "hobbies": dump_json(list(entity.hobbies)),
            "goal": entity.goal,
            "region": entity.region,
            "match_score": entity.match_score,
            "status": entity.status.value,
            "profile_image_url": entity.profile_image_url,
            "updated_at": epoch(entity.updated_at),
            "is_synced": int(entity.is_synced),
        }

    def _from_row(self, row: Row) -> PenpalMatch:
        return PenpalMatch(
            id=_require_str(row, "id"),
            user_id=_require_str(row, "user_id"),
            penpal_id=_require_str(row, "penpal_id"),
            first_name=_require_str(row, "first_name"),
            last_name=_opt_str(row, "last_name"),
            proficiency=_require_str(row, "proficiency"),
            hobbies=load_json_list(row.get("hobbies")),
            goal=_nullable_str(row, "goal"),
            region=_opt_str(row, "region"),
            match_score=_opt_int(row, "match_score"),
            status=MatchStatus(_require_str(row, "status")),
            profile_image_url=_opt_str(row, "profile_image_url"),
            updated_at=_opt_time(row, "updated_at"),
            is_synced=_flag(row, "is_synced"),
        )

    def scope_of(self, entity: PenpalMatch) -> str:
        return entity.user_id

    def sort_key(self, entity: PenpalMatch) -> Any:
        return entity.match_score if entity.match_score is not None else -1


class ConversationCodec(EntityCodec[Conversation]):
    remote_collection = "conversations"
    schema = CollectionSchema(
        name="conversations",
        columns={
            "user_id": "TEXT",
            "penpal_id": "TEXT",
            "participants": "TEXT",
            "last_message": "TEXT",
            "deleted_for": "TEXT",
            "updated_at": "REAL",
            "is_synced": "INTEGER",
        },
        indexes=("user_id",),
    )
    scope_field = "userId"
    scope_column = "user_id"
    order_field = "lastUpdated"
    order_column = "updated_at"
    descending = True

    def to_remote(self, entity: Conversation) -> dict[str, Any]:
        return {
            "id": entity.id,
            "userId": entity.user_id,
            "penpalId": entity.penpal_id,
            "participants": list(entity.participants),
            "lastMessage": entity.last_message,
            "deletedFor": list(entity.deleted_for),
            "lastUpdated": entity.updated_at,
        }

    def _from_remote(self, doc_id: str, data: Mapping[str, Any]) -> Conversation:
        return Conversation(
            id=_opt_str(data, "id") or doc_id,
            user_id=_require_str(data, "userId"),
            penpal_id=_require_str(data, "penpalId"),
            participants=_str_tuple(data.get("participants")),
            last_message=_nullable_str(data, "lastMessage"),
            deleted_for=_str_tuple(data.get("deletedFor")),
            updated_at=_require_time(data, "lastUpdated"),
            is_synced=True,
        )

    def to_row(self, entity: Conversation) -> Row:
        return {
            "id": entity.id,
            "user_id": entity.user_id,
            "penpal_id": entity.penpal_id,
            "participants": dump_json(list(entity.participants)),
            "last_message": entity.last_message,
            "deleted_for": dump_json(list(entity.deleted_for)),
            "updated_at": epoch(entity.updated_at),
            "is_synced": int(entity.is_synced),
        }

    def _from_row(self, row: Row) -> Conversation:
        return Conversation(
            id=_require_str(row, "id"),
            user_id=_require_str(row, "user_id"),
            penpal_id=_require_str(row, "penpal_id"),
            participants=load_json_list(row.get("participants")),
            last_message=_nullable_str(row, "last_message"),
            deleted_for=load_json_list(row.get("deleted_for")),
            updated_at=_require_time(row, "updated_at"),
            is_synced=_flag(row, "is_synced"),
        )

    def scope_of(self, entity: Conversation) -> str:
        return entity.user_id

    def sort_key(self, entity: Conversation) -> Any:
        return entity.updated_at


class MessageCodec(EntityCodec[Message]):
    remote_collection = "messages"
    schema = CollectionSchema(
        name="messages",
        columns={
            "conversation_id": "TEXT",
            "sender_id": "TEXT",
            "text": "TEXT",
            "sent_at": "REAL",
            "is_read": "INTEGER",
            "type": "TEXT",
            "updated_at": "REAL",
            "is_synced": "INTEGER",
        },
        indexes=("conversation_id",),
    )
    scope_field = "conversationId"
    scope_column = "conversation_id"
    order_field = "sentAt"
    order_column = "sent_at"

    def to_remote(self, entity: Message) -> dict[str, Any]:
        return {
            "id": entity.id,
            "conversationId": entity.conversation_id,
            "senderId": entity.sender_id,
            "text": entity.text,
            "sentAt": entity.sent_at,
            "isRead": entity.is_read,
            "type": entity.type,
            "updatedAt": entity.updated_at,
        }

    def _from_remote(self, doc_id: str, data: Mapping[str, Any]) -> Message:
        text = data.get("text")
        if not isinstance(text, str):
            raise DecodeError("text is missing")
        sent_at = _require_time(data, "sentAt")
        return Message(
            id=_opt_str(data, "id") or doc_id,
            conversation_id=_require_str(data, "conversationId"),
            sender_id=_require_str(data, "senderId"),
            text=text,
            sent_at=sent_at,
            is_read=_flag(data, "isRead"),
            type=_opt_str(data, "type", "text"),
            updated_at=_opt_time(data, "updatedAt", sent_at),
            is_synced=True,
        )

    def to_row(self, entity: Message) -> Row:
        return {
            "id": entity.id,
            "conversation_id": entity.conversation_id,
            "sender_id": entity.sender_id,
            "text": entity.text,
            "sent_at": epoch(entity.sent_at),
            "is_read": int(entity.is_read),
            "type": entity.type,
            "updated_at": epoch(entity.updated_at),
            "is_synced": int(entity.is_synced),
        }

    def _from_row(self, row: Row) -> Message:
        sent_at = _require_time(row, "sent_at")
        return Message(
            id=_require_str(row, "id"),
            conversation_id=_require_str(row, "conversation_id"),
            sender_id=_require_str(row, "sender_id"),
            text=_opt_str(row, "text"),
            sent_at=sent_at,
            is_read=_flag(row, "is_read"),
            type=_opt_str(row, "type", "text"),
            updated_at=_opt_time(row, "updated_at", sent_at),
            is_synced=_flag(row, "is_synced"),
        )

    def scope_of(self, entity: Message) -> str:
        return entity.conversation_id

    def sort_key(self, entity: Message) -> Any:
        return entity.sent_at


class MeetingCodec(EntityCodec[Meeting]):
    remote_collection = "meetings"
    schema = CollectionSchema(
        name="meetings",
        columns={
            "title": "TEXT",
            "created_by": "TEXT",
            "scheduled_at": "REAL",
            "description": "TEXT",
            "discussion_topics": "TEXT",
            "notes": "TEXT",
            "meeting_link": "TEXT",
            "passcode": "TEXT",
            "participants": "TEXT",
            "status": "TEXT",
            "updated_at": "REAL",
            "is_synced": "INTEGER",
        },
        indexes=("created_by",),
    )
    scope_field = "createdByProfileId"
    scope_column = "created_by"
    order_field = "scheduledAt"
    order_column = "scheduled_at"

    def to_remote(self, entity: Meeting) -> dict[str, Any]:
        return {
            "id": entity.id,
            "title": entity.title,
            "description": entity.description,
            "discussionTopics": {
                key: list(items) for key, items in entity.discussion_topics.items()
            },
            "scheduledAt": entity.scheduled_at,
            "createdByProfileId": entity.created_by,
            "notes": entity.notes,
            "meetingLink": entity.meeting_link,
            "passcode": entity.passcode,
            "participants": list(entity.participants),
            "status": entity.status,
            "updatedAt": entity.updated_at,
        }

    def _from_remote(self, doc_id: str, data: Mapping[str, Any]) -> Meeting:
        return Meeting(
            id=_opt_str(data, "id") or doc_id,
            title=_require_str(data, "title"),
            created_by=_require_str(data, "createdByProfileId"),
            scheduled_at=_require_time(data, "scheduledAt"),
            description=_opt_str(data, "description"),
            discussion_topics=_topics(data.get("discussionTopics")),
            notes=_opt_str(data, "notes"),
            meeting_link=_opt_str(data, "meetingLink"),
            passcode=_opt_str(data, "passcode"),
            participants=_str_tuple(data.get("participants")),
            status=_opt_str(data, "status", "pending"),
            updated_at=_opt_time(data, "updatedAt"),
            is_synced=True,
        )

    def to_row(self, entity: Meeting) -> Row:
        return {
            "id": entity.id,
            "title": entity.title,
            "created_by": entity.created_by,
            "scheduled_at": epoch(entity.scheduled_at),
            "description": entity.description,
            "discussion_topics": dump_json(
                {key: list(items) for key, items in entity.discussion_topics.items()}
            ),
            "notes": entity.notes,
            "meeting_link": entity.meeting_link,
            "passcode": entity.passcode,
            "participants": dump_json(list(entity.participants)),
            "status": entity.status,
            "updated_at": epoch(entity.updated_at),
            "is_synced": int(entity.is_synced),
        }

    def _from_row(self, row: Row) -> Meeting:
        return Meeting(
            id=_require_str(row, "id"),
            title=_require_str(row, "title"),
            created_by=_require_str(row, "created_by"),
            scheduled_at=_require_time(row, "scheduled_at"),
            description=_opt_str(row, "description"),
            discussion_topics=load_json_topics(row.get("discussion_topics")),
            notes=_opt_str(row, "notes"),
            meeting_link=_opt_str(row, "meeting_link"),
            passcode=_opt_str(row, "passcode"),
            participants=load_json_list(row.get("participants")),
            status=_opt_str(row, "status", "pending"),
            updated_at=_opt_time(row, "updated_at"),
            is_synced=_flag(row, "is_synced"),
        )

    def scope_of(self, entity: Meeting) -> str:
        return entity.created_by

    def sort_key(self, entity: Meeting) -> Any:
        return entity.scheduled_at


class VocabSheetCodec(EntityCodec[VocabSheet]):
    remote_collection = "vocabSheets"
    schema = CollectionSchema(
        name="vocab_sheets",
        columns={
            "user_id": "TEXT",
            "name": "TEXT",
            "language": "TEXT",
            "card_count": "INTEGER",
            "updated_at": "REAL",
            "is_synced": "INTEGER",
        },
        indexes=("user_id",),
    )
    scope_field = "userId"
    scope_column = "user_id"
    order_field = "updatedAt"
    order_column = "updated_at"
    descending = True

    def to_remote(self, entity: VocabSheet) -> dict[str, Any]:
        return {
            "id": entity.id,
            "userId": entity.user_id,
            "name": entity.name,
            "language": entity.language,
            "cardCount": entity.card_count,
            "updatedAt": entity.updated_at,
        }

    def _from_remote(self, doc_id: str, data: Mapping[str, Any]) -> VocabSheet:
        return VocabSheet(
            id=_opt_str(data, "id") or doc_id,
            user_id=_require_str(data, "userId"),
            name=_require_str(data, "name"),
            language=_opt_str(data, "language"),
            card_count=_opt_int(data, "cardCount") or 0,
            updated_at=_opt_time(data, "updatedAt"),
            is_synced=True,
        )

    def to_row(self, entity: VocabSheet) -> Row:
        return {
            "id": entity.id,
            "user_id": entity.user_id,
            "name": entity.name,
            "language": entity.language,
            "card_count": entity.card_count,
            "updated_at": epoch(entity.updated_at),
            "is_synced": int(entity.is_synced),
        }

    def _from_row(self, row: Row) -> VocabSheet:
        return VocabSheet(
            id=_require_str(row, "id"),
            user_id=_require_str(row, "user_id"),
            name=_require_str(row, "name"),
            language=_opt_str(row, "language"),
            card_count=_opt_int(row, "card_count") or 0,
            updated_at=_opt_time(row, "updated_at"),
            is_synced=_flag(row, "is_synced"),
        )

    def scope_of(self, entity: VocabSheet) -> str:
        return entity.user_id

    def sort_key(self, entity: VocabSheet) -> Any:
        return entity.updated_at


class VocabCardCodec(EntityCodec[VocabCard]):
    remote_collection = "vocabCards"
    schema = CollectionSchema(
        name="vocab_cards",
        columns={
            "sheet_id": "TEXT",
            "user_id": "TEXT",
            "word": "TEXT",
            "translation": "TEXT",
            "examples": "TEXT",
            "created_at": "REAL",
            "updated_at": "REAL",
            "is_synced": "INTEGER",
        },
        indexes=("sheet_id",),
    )
    scope_field = "sheetId"
    scope_column = "sheet_id"
    order_field = "createdAt"
    order_column = "created_at"

    def to_remote(self, entity: VocabCard) -> dict[str, Any]:
        return {
            "id": entity.id,
            "sheetId": entity.sheet_id,
            "userId": entity.user_id,
            "word": entity.word,
            "translation": entity.translation,
            "examples": list(entity.examples),
            "createdAt": entity.created_at,
            "updatedAt": entity.updated_at,
        }

    def _from_remote(self, doc_id: str, data: Mapping[str, Any]) -> VocabCard:
        created_at = _opt_time(data, "createdAt")
        return VocabCard(
            id=_opt_str(data, "id") or doc_id,
            sheet_id=_require_str(data, "sheetId"),
            user_id=_require_str(data, "userId"),
            word=_require_str(data, "word"),
            translation=_opt_str(data, "translation"),
            examples=_str_tuple(data.get("examples")),
            created_at=created_at,
            updated_at=_opt_time(data, "updatedAt", created_at),
            is_synced=True,
        )

    def to_row(self, entity: VocabCard) -> Row:
        return {
            "id": entity.id,
            "sheet_id": entity.sheet_id,
            "user_id": entity.user_id,
            "word": entity.word,
            "translation": entity.translation,
            "examples": dump_json(list(entity.examples)),
            "created_at": epoch(entity.created_at),
            "updated_at": epoch(entity.updated_at),
            "is_synced": int(entity.is_synced),
        }

    def _from_row(self, row: Row) -> VocabCard:
        created_at = _opt_time(row, "created_at")
        return VocabCard(
            id=_require_str(row, "id"),
            sheet_id=_require_str(row, "sheet_id"),
            user_id=_require_str(row, "user_id"),
            word=_require_str(row, "word"),
            translation=_opt_str(row, "translation"),
            examples=load_json_list(row.get("examples")),
            created_at=created_at,
            updated_at=_opt_time(row, "updated_at", created_at),
            is_synced=_flag(row, "is_synced"),
        )

    def scope_of(self, entity: VocabCard) -> str:
        return entity.sheet_id

    def sort_key(self, entity: VocabCard) -> Any:
        return entity.created_at


class ProfileCodec(EntityCodec[Profile]):
    remote_collection = "users"
    schema = CollectionSchema(
        name="profiles",
        columns={
            "user_id": "TEXT",
            "first_name": "TEXT",
            "last_name": "TEXT",
            "native_language": "TEXT",
            "target_language": "TEXT",
            "proficiency": "TEXT",
            "hobbies": "TEXT",
            "goals": "TEXT",
            "region": "TEXT",
            "profile_image_url": "TEXT",
            "updated_at": "REAL",
            "is_synced": "INTEGER",
        },
        indexes=("user_id",),
    )
    scope_field = "userId"
    scope_column = "user_id"
    order_field = "updatedAt"
    order_column = "updated_at"
    descending = True

    def to_remote(self, entity: Profile) -> dict[str, Any]:
        return {
            "userId": entity.id,
            "firstName": entity.first_name,
            "lastName": entity.last_name,
            "nativeLanguage": entity.native_language,
            "targetLanguage": entity.target_language,
            "proficiency": entity.proficiency,
            "hobbies": list(entity.hobbies),
            "goals": entity.goals,
            "region": entity.region,
            "profileImageURL": entity.profile_image_url,
            "updatedAt": entity.updated_at,
        }

    def _from_remote(self, doc_id: str, data: Mapping[str, Any]) -> Profile:
        return Profile(
            id=_opt_str(data, "userId") or doc_id,
            first_name=_require_str(data, "firstName"),
            last_name=_opt_str(data, "lastName"),
            native_language=_opt_str(data, "nativeLanguage"),
            target_language=_opt_str(data, "targetLanguage"),
            proficiency=_opt_str(data, "proficiency"),
            hobbies=_str_tuple(data.get("hobbies")),
            goals=_nullable_str(data, "goals"),
            region=_opt_str(data, "region"),
            profile_image_url=_opt_str(data, "profileImageURL"),
            updated_at=_opt_time(data, "updatedAt"),
            is_synced=True,
        )

    def to_row(self, entity: Profile) -> Row:
        return {
            "id": entity.id,
            "user_id": entity.id,
            "first_name": entity.first_name,
            "last_name": entity.last_name,
            "native_language": entity.native_language,
            "target_language": entity.target_language,
            "proficiency": entity.proficiency,
            "hobbies": dump_json(list(entity.hobbies)),
            "goals": entity.goals,
            "region": entity.region,
            "profile_image_url": entity.profile_image_url,
            "updated_at": epoch(entity.updated_at),
            "is_synced": int(entity.is_synced),
        }

    def _from_row(self, row: Row) -> Profile:
        return Profile(
            id=_require_str(row, "id"),
            first_name=_require_str(row, "first_name"),
            last_name=_opt_str(row, "last_name"),
            native_language=_opt_str(row, "native_language"),
            target_language=_opt_str(row, "target_language"),
            proficiency=_opt_str(row, "proficiency"),
            hobbies=load_json_list(row.get("hobbies")),
            goals=_nullable_str(row, "goals"),
            region=_opt_str(row, "region"),
            profile_image_url=_opt_str(row, "profile_image_url"),
            updated_at=_opt_time(row, "updated_at"),
            is_synced=_flag(row, "is_synced"),
        )

    def scope_of(self, entity: Profile) -> str:
        return entity.id

    def sort_key(self, entity: Profile) -> Any:
        return entity.updated_at


class NotificationCodec(EntityCodec[Notification]):
    remote_collection = "notifications"
    schema = CollectionSchema(
        name="notifications",
        columns={
            "user_id": "TEXT",
            "kind": "TEXT",
            "message": "TEXT",
            "created_at": "REAL",
            "is_read": "INTEGER",
            "updated_at": "REAL",
            "is_synced": "INTEGER",
        },
        indexes=("user_id",),
    )
    scope_field = "userId"
    scope_column = "user_id"
    order_field = "createdAt"
    order_column = "created_at"
    descending = True

    def to_remote(self, entity: Notification) -> dict[str, Any]:
        return {
            "id": entity.id,
            "userId": entity.user_id,
            "type": entity.kind,
            "message": entity.message,
            "createdAt": entity.created_at,
            "isRead": entity.is_read,
            "updatedAt": entity.updated_at,
        }

    def _from_remote(self, doc_id: str, data: Mapping[str, Any]) -> Notification:
        created_at = _require_time(data, "createdAt")
        return Notification(
            id=_opt_str(data, "id") or doc_id,
            user_id=_require_str(data, "userId"),
            kind=_require_str(data, "type"),
            message=_require_str(data, "message"),
            created_at=created_at,
            is_read=_flag(data, "isRead"),
            updated_at=_opt_time(data, "updatedAt", created_at),
            is_synced=True,
        )

    def to_row(self, entity: Notification) -> Row:
        return {
            "id": entity.id,
            "user_id": entity.user_id,
            "kind": entity.kind,
            "message": entity.message,
            "created_at": epoch(entity.created_at),
            "is_read": int(entity.is_read),
            "updated_at": epoch(entity.updated_at),
            "is_synced": int(entity.is_synced),
        }

    def _from_row(self, row: Row) -> Notification:
        created_at = _require_time(row, "created_at")
        return Notification(
            id=_require_str(row, "id"),
            user_id=_require_str(row, "user_id"),
            kind=_require_str(row, "kind"),
            message=_require_str(row, "message"),
            created_at=created_at,
            is_read=_flag(row, "is_read"),
            updated_at=_opt_time(row, "updated_at", created_at),
            is_synced=_flag(row, "is_synced"),
        )

    def scope_of(self, entity: Notification) -> str:
        return entity.user_id

    def sort_key(self, entity: Notification) -> Any:
        return entity.created_at


CODECS: dict[type, EntityCodec] = {
    PenpalMatch: PenpalMatchCodec(),
    Conversation: ConversationCodec(),
    Message: MessageCodec(),
    Meeting: MeetingCodec(),
    VocabSheet: VocabSheetCodec(),
    VocabCard: VocabCardCodec(),
    Profile: ProfileCodec(),
    Notification: NotificationCodec(),
}


def codec_for(entity_type: type) -> EntityCodec:
    try:
        return CODECS[entity_type]
    except KeyError:
        raise LookupError(f"No codec registered for {entity_type.__name__}") from None


__all__ = [
    "EPOCH",
    "CODECS",
    "DecodeError",
    "EntityCodec",
    "PenpalMatchCodec",
    "ConversationCodec",
    "MessageCodec",
    "MeetingCodec",
    "VocabSheetCodec",
    "VocabCardCodec",
    "ProfileCodec",
    "NotificationCodec",
    "codec_for",
    "dump_json",
    "epoch",
    "load_json_list",
    "load_json_topics",
    "to_datetime",
]
