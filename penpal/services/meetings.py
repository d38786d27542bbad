"""Meetings created by or offered to the signed-in user."""

from __future__ import annotations

from dataclasses import replace
from typing import Optional

from logger import get_logger, info_domain
from penpal.errors import MeetingStateError, RemoteError
from penpal.models import Meeting, mark_synced, utcnow
from penpal.services.local_base import LocalStore
from penpal.services.remote_base import RemoteStore, RemoteTransaction
from penpal.services.session import UserSession
from penpal.services.sync import FetchResult, SyncCoordinator

PENDING = "pending"
ACCEPTED = "accepted"


class MeetingService:
    def __init__(
        self,
        *,
        meetings: SyncCoordinator[Meeting],
        local: LocalStore,
        remote: RemoteStore,
        session: UserSession,
    ) -> None:
        self._meetings = meetings
        self._local = local
        self._remote = remote
        self._session = session
        self._logger = get_logger("penpal.meetings")

    async def meetings(self, *, limit: Optional[int] = None) -> FetchResult[Meeting]:
        """Fetch meetings created by the signed-in user."""

        user_id = self._session.require_user_id()
        return await self._meetings.fetch(user_id, limit=limit)

    async def accept(self, meeting_id: str) -> Optional[Meeting]:
        """Accept a pending meeting and join its participants.

        The status check and both field updates commit in one transaction.
        Raises ``LookupError`` for a missing or unreadable meeting and
        ``MeetingStateError`` when it is no longer pending. Returns ``None``
        when the remote store was unreachable and nothing changed.
        """

        user_id = self._session.require_user_id()
        codec = self._meetings.codec
        collection = codec.remote_collection

        async def body(txn: RemoteTransaction) -> Meeting:
            document = await txn.get(collection, meeting_id)
            meeting = codec.from_remote(document) if document is not None else None
            if meeting is None:
                raise LookupError(f"Meeting {meeting_id} not found")
            if meeting.status != PENDING:
                raise MeetingStateError(f"Meeting {meeting_id} is {meeting.status}")
            participants = meeting.participants
            if user_id not in participants:
                participants = (*participants, user_id)
            accepted = replace(
                meeting, status=ACCEPTED, participants=participants, updated_at=utcnow()
            )
            txn.set(
                collection,
                meeting_id,
                {
                    "status": ACCEPTED,
                    "participants": list(participants),
                    "updatedAt": accepted.updated_at,
                },
                merge=True,
            )
            return accepted

        try:
            accepted = await self._remote.run_transaction(body)
        except RemoteError as exc:
            if not exc.transient:
                raise
            self._logger.warning("Meeting accept deferred: %s", exc, user_id=user_id)
            return None

        accepted = mark_synced(accepted)
        await self._local.put(codec.collection, codec.to_row(accepted))
        info_domain(
            "penpal.meetings",
            "Meeting accepted",
            stage="MEETING_ACCEPTED",
            user_id=user_id,
            meeting_id=meeting_id,
        )
        return accepted


__all__ = ["ACCEPTED", "PENDING", "MeetingService"]
