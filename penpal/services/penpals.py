"""Swipe feed of potential penpals gated by the daily quota."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from typing import Optional

from logger import get_logger
from penpal.models import MatchStatus, PenpalMatch, QuotaStatus, utcnow
from penpal.services.analytics import SWIPE, Analytics, LogAnalytics
from penpal.services.quota import BLOCKED, QuotaLedger
from penpal.services.session import UserSession
from penpal.services.sync import FetchResult, SyncCoordinator


@dataclass(slots=True)
class SwipeResult:
    match: PenpalMatch
    remaining: int
    confirmation: Optional["asyncio.Future[bool]"] = None

    @property
    def blocked(self) -> bool:
        return self.remaining == BLOCKED


class PenpalService:
    """Feed and swipe actions for the signed-in user."""

    def __init__(
        self,
        *,
        matches: SyncCoordinator[PenpalMatch],
        ledger: QuotaLedger,
        session: UserSession,
        daily_limit: int,
        analytics: Analytics | None = None,
    ) -> None:
        self._matches = matches
        self._ledger = ledger
        self._session = session
        self._daily_limit = daily_limit
        self._analytics = analytics or LogAnalytics()
        self._logger = get_logger("penpal.penpals")

    async def feed(self, *, limit: Optional[int] = None) -> FetchResult[PenpalMatch]:
        user_id = self._session.require_user_id()
        return await self._matches.fetch(user_id, limit=limit)

    async def quota(self) -> QuotaStatus:
        user_id = self._session.require_user_id()
        return await self._ledger.status(user_id, self._daily_limit)

    async def swipe(self, match_id: str, *, like: bool) -> SwipeResult:
        """Consume one swipe, then approve (like) or decline (pass) the match.

        A blocked swipe leaves the match untouched.
        """

        user_id = self._session.require_user_id()
        match = await self._matches.get(match_id)
        if match is None or match.user_id != user_id:
            raise LookupError(f"Unknown match {match_id}")

        remaining = await self._ledger.consume(user_id, self._daily_limit)
        if remaining == BLOCKED:
            self._logger.info("Swipe blocked for %s", match_id, user_id=user_id)
            return SwipeResult(match=match, remaining=BLOCKED)

        status = MatchStatus.APPROVED if like else MatchStatus.DECLINED
        mutation = await self._matches.mutate(replace(match, status=status, updated_at=utcnow()))
        self._analytics.log(
            SWIPE,
            {
                "user_id": user_id,
                "penpal_id": match.penpal_id,
                "action": "like" if like else "pass",
                "remaining": remaining,
            },
        )
        return SwipeResult(
            match=mutation.local, remaining=remaining, confirmation=mutation.confirmation
        )


__all__ = ["PenpalService", "SwipeResult"]
