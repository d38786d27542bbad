"""Tests for entity codecs."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from penpal.codecs import (
    CODECS,
    EPOCH,
    ConversationCodec,
    MeetingCodec,
    MessageCodec,
    PenpalMatchCodec,
    ProfileCodec,
    codec_for,
    to_datetime,
)
from penpal.models import Meeting, MatchStatus, PenpalMatch, QuotaRecord
from penpal.services.remote_base import RemoteDocument

WHEN = datetime(2024, 5, 10, 9, 30, tzinfo=timezone.utc)


def test_match_survives_remote_and_row_conversion() -> None:
    codec = PenpalMatchCodec()
    match = PenpalMatch(
        id="u1_p1",
        user_id="u1",
        penpal_id="p1",
        first_name="Lea",
        last_name="Moreau",
        proficiency="B2",
        hobbies=("climbing", "jazz"),
        goal=None,
        region="EU",
        match_score=87,
        status=MatchStatus.APPROVED,
        updated_at=WHEN,
        is_synced=False,
    )

    remote = codec.from_remote(RemoteDocument(id=match.id, data=codec.to_remote(match)))
    assert remote is not None
    assert remote.hobbies == ("climbing", "jazz")
    assert remote.status is MatchStatus.APPROVED
    assert remote.is_synced is True

    cached = codec.from_row(codec.to_row(match))
    assert cached == match


def test_meeting_topics_are_stored_as_json() -> None:
    codec = MeetingCodec()
    meeting = Meeting(
        id="m1",
        title="Coffee chat",
        created_by="u1",
        scheduled_at=WHEN,
        discussion_topics={"food": ("tapas", "ramen")},
        participants=("u1", "u2"),
        updated_at=WHEN,
    )
    row = codec.to_row(meeting)
    assert row["discussion_topics"] == '{"food":["tapas","ramen"]}'
    assert codec.from_row(row) == meeting


def test_malformed_documents_decode_to_none() -> None:
    codec = PenpalMatchCodec()
    assert codec.from_remote(RemoteDocument(id="x", data={})) is None
    assert codec.from_remote(
        RemoteDocument(
            id="x",
            data={
                "userId": "u1",
                "penpalId": "p1",
                "firstName": "Ana",
                "proficiency": "A1",
                "status": "not-a-status",
            },
        )
    ) is None
    assert ConversationCodec().from_remote(
        RemoteDocument(id="c1", data={"userId": "u1", "penpalId": "p1"})
    ) is None
    assert MessageCodec().from_remote(
        RemoteDocument(id="m1", data={"conversationId": "c1", "senderId": "u1", "text": 5})
    ) is None
    assert MessageCodec().from_row({"id": "m1"}) is None


def test_bad_json_columns_degrade_to_empty_collections() -> None:
    codec = MeetingCodec()
    row = {
        "id": "m1",
        "title": "Chat",
        "created_by": "u1",
        "scheduled_at": WHEN.timestamp(),
        "discussion_topics": "{not json",
        "participants": "[1, 2, \"u3\"]",
        "updated_at": None,
        "is_synced": 1,
    }
    meeting = codec.from_row(row)
    assert meeting is not None
    assert meeting.discussion_topics == {}
    assert meeting.participants == ("u3",)
    assert meeting.updated_at == EPOCH
    assert meeting.is_synced is True


def test_optional_fields_fall_back_to_defaults() -> None:
    message = MessageCodec().from_remote(
        RemoteDocument(
            id="doc-1",
            data={"conversationId": "c1", "senderId": "u1", "text": "", "sentAt": WHEN},
        )
    )
    assert message is not None
    assert message.id == "doc-1"
    assert message.type == "text"
    assert message.updated_at == WHEN
    assert message.is_read is False

    profile = ProfileCodec().from_remote(RemoteDocument(id="u9", data={"firstName": "Kai"}))
    assert profile is not None
    assert profile.id == "u9"
    assert profile.goals is None
    assert ProfileCodec().to_row(profile)["user_id"] == "u9"


def test_match_sort_key_places_unscored_last() -> None:
    codec = PenpalMatchCodec()
    scored = PenpalMatch("a", "u1", "p1", "A", "", "B1", match_score=10)
    unscored = PenpalMatch("b", "u1", "p2", "B", "", "B1")
    ordered = sorted([unscored, scored], key=codec.sort_key, reverse=codec.descending)
    assert [item.id for item in ordered] == ["a", "b"]


def test_to_datetime_accepts_common_encodings() -> None:
    assert to_datetime(WHEN.timestamp()) == WHEN
    assert to_datetime("2024-05-10T09:30:00") == WHEN
    assert to_datetime(datetime(2024, 5, 10, 9, 30)) == WHEN
    with pytest.raises(ValueError):
        to_datetime(True)
    with pytest.raises(ValueError):
        to_datetime("yesterday")


def test_codec_lookup() -> None:
    assert isinstance(codec_for(PenpalMatch), PenpalMatchCodec)
    assert len({codec.collection for codec in CODECS.values()}) == len(CODECS)
    with pytest.raises(LookupError):
        codec_for(QuotaRecord)
