"""Atomic daily swipe quota with a local fallback mirror."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Callable, Mapping, Optional

from logger import get_logger
from penpal.errors import LocalStoreError, RemoteError
from penpal.models import QuotaRecord, QuotaStatus, Row
from penpal.services.analytics import (
    QUOTA_BLOCKED,
    QUOTA_CONSUMED,
    QUOTA_LOCAL_FALLBACK,
    Analytics,
    LogAnalytics,
)
from penpal.services.local_base import CollectionSchema, LocalStore
from penpal.services.remote_base import RemoteDocument, RemoteStore, RemoteTransaction

BLOCKED = -1
QUOTA_COLLECTION = "swipeQuotas"
QUOTA_SCHEMA = CollectionSchema(
    name="swipe_quota",
    columns={"day": "TEXT", "used": "INTEGER", "max_per_day": "INTEGER"},
)

Clock = Callable[[], datetime]


def local_now() -> datetime:
    return datetime.now().astimezone()


def day_key(moment: datetime) -> str:
    return moment.strftime("%Y-%m-%d")


def window_end(moment: datetime) -> datetime:
    """Start of the calendar day after ``moment``."""

    start = moment.replace(hour=0, minute=0, second=0, microsecond=0)
    return start + timedelta(hours=24)


def _count(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return max(int(value), 0)


class QuotaLedger:
    """Per-user daily allowance.

    ``consume`` runs as one remote transaction: read, roll the day over,
    check capacity, increment, write. When the remote store is unreachable
    the same steps run against the local mirror row instead. Local-only
    consumptions are never pushed back to the remote record.

    The ``max_per_day`` argument only seeds a record created on first use;
    after that the stored cap (see :meth:`set_max`) applies.
    """

    def __init__(
        self,
        *,
        remote: RemoteStore,
        local: LocalStore,
        analytics: Analytics | None = None,
        clock: Clock = local_now,
    ) -> None:
        self._remote = remote
        self._local = local
        self._analytics = analytics or LogAnalytics()
        self._clock = clock
        self._logger = get_logger("penpal.quota")

    async def consume(self, user_id: str, max_per_day: int) -> int:
        """Use one unit; return the remaining allowance or ``BLOCKED``."""

        today = day_key(self._clock())

        async def body(txn: RemoteTransaction) -> tuple[QuotaRecord, int]:
            document = await txn.get(QUOTA_COLLECTION, user_id)
            record = self._from_document(user_id, document, max_per_day, today)
            if record.used >= record.max_per_day:
                return record, BLOCKED
            updated = replace(record, used=record.used + 1)
            txn.set(QUOTA_COLLECTION, user_id, self._to_document(updated))
            return updated, updated.remaining

        try:
            record, remaining = await self._remote.run_transaction(body)
        except RemoteError as exc:
            if not exc.transient:
                raise
            self._logger.warning(
                "Quota transaction failed, using local mirror: %s", exc, user_id=user_id
            )
            return await self._consume_locally(user_id, max_per_day, today)

        await self._mirror(record)
        self._report(user_id, remaining, record)
        return remaining

    async def status(self, user_id: str, max_per_day: int) -> QuotaStatus:
        """Return the remaining allowance without writing anything."""

        now = self._clock()
        today = day_key(now)
        try:
            document = await self._remote.get_document(QUOTA_COLLECTION, user_id)
        except RemoteError as exc:
            if not exc.transient:
                raise
            self._logger.warning("Quota status from local mirror: %s", exc, user_id=user_id)
            row = await self._local.get(QUOTA_SCHEMA.name, user_id)
            record = self._from_row(user_id, row, max_per_day, today)
        else:
            record = self._from_document(user_id, document, max_per_day, today)
        return QuotaStatus(remaining=record.remaining, window_ends_at=window_end(now))

    async def grant(self, user_id: str, amount: int, max_per_day: int) -> int:
        """Give back ``amount`` units (usage floors at zero); return the remaining allowance."""

        if amount < 0:
            raise ValueError("amount must be non-negative")
        today = day_key(self._clock())

        async def body(txn: RemoteTransaction) -> QuotaRecord:
            document = await txn.get(QUOTA_COLLECTION, user_id)
            record = self._from_document(user_id, document, max_per_day, today)
            updated = replace(record, used=max(record.used - amount, 0))
            txn.set(QUOTA_COLLECTION, user_id, self._to_document(updated))
            return updated

        record = await self._remote.run_transaction(body)
        await self._mirror(record)
        self._logger.info("Granted %d swipes", amount, user_id=user_id)
        return record.remaining

    async def set_max(self, user_id: str, new_max: int) -> QuotaRecord:
        """Override the stored daily cap."""

        if new_max < 0:
            raise ValueError("new_max must be non-negative")
        today = day_key(self._clock())

        async def body(txn: RemoteTransaction) -> QuotaRecord:
            document = await txn.get(QUOTA_COLLECTION, user_id)
            record = self._from_document(user_id, document, new_max, today)
            updated = replace(record, max_per_day=new_max, used=min(record.used, new_max))
            txn.set(QUOTA_COLLECTION, user_id, self._to_document(updated))
            return updated

        record = await self._remote.run_transaction(body)
        await self._mirror(record)
        self._logger.info("Daily cap set to %d", new_max, user_id=user_id)
        return record

    async def mirrored(self, user_id: str) -> Optional[QuotaRecord]:
        """Return the local mirror record as stored, without rollover."""

        row = await self._local.get(QUOTA_SCHEMA.name, user_id)
        if row is None:
            return None
        return self._parse(user_id, row.get("day"), row.get("used"), row.get("max_per_day"), 0)

    # internal helpers
    async def _consume_locally(self, user_id: str, max_per_day: int, today: str) -> int:
        outcome: list[tuple[QuotaRecord, int]] = []

        def update(row: Optional[Row]) -> Optional[Row]:
            record = self._from_row(user_id, row, max_per_day, today)
            if record.used >= record.max_per_day:
                outcome.append((record, BLOCKED))
                return None
            updated = replace(record, used=record.used + 1)
            outcome.append((updated, updated.remaining))
            return self._to_row(updated)

        await self._local.modify(QUOTA_SCHEMA.name, user_id, update)
        record, remaining = outcome[-1]
        self._analytics.log(
            QUOTA_LOCAL_FALLBACK,
            {"user_id": user_id, "remaining": remaining, "day": record.day},
        )
        self._report(user_id, remaining, record)
        return remaining

    async def _mirror(self, record: QuotaRecord) -> None:
        try:
            await self._local.put(QUOTA_SCHEMA.name, self._to_row(record))
        except LocalStoreError as exc:
            self._logger.warning("Quota mirror not updated: %s", exc, user_id=record.user_id)

    def _report(self, user_id: str, remaining: int, record: QuotaRecord) -> None:
        event = QUOTA_BLOCKED if remaining == BLOCKED else QUOTA_CONSUMED
        self._analytics.log(
            event,
            {
                "user_id": user_id,
                "remaining": remaining,
                "used": record.used,
                "max": record.max_per_day,
            },
        )

    def _from_document(
        self,
        user_id: str,
        document: Optional[RemoteDocument],
        max_per_day: int,
        today: str,
    ) -> QuotaRecord:
        data: Mapping[str, Any] = document.data if document is not None else {}
        return self._parse(
            user_id, data.get("day"), data.get("used"), data.get("max"), max_per_day
        ).rolled_over(today)

    def _from_row(
        self, user_id: str, row: Optional[Row], max_per_day: int, today: str
    ) -> QuotaRecord:
        row = row or {}
        return self._parse(
            user_id, row.get("day"), row.get("used"), row.get("max_per_day"), max_per_day
        ).rolled_over(today)

    @staticmethod
    def _parse(user_id: str, day: Any, used: Any, maximum: Any, default_max: int) -> QuotaRecord:
        stored_max = _count(maximum)
        return QuotaRecord(
            user_id=user_id,
            day=day if isinstance(day, str) else "",
            used=_count(used) or 0,
            max_per_day=stored_max if stored_max is not None else max(default_max, 0),
        )

    @staticmethod
    def _to_document(record: QuotaRecord) -> dict[str, Any]:
        return {
            "userId": record.user_id,
            "day": record.day,
            "used": record.used,
            "max": record.max_per_day,
        }

    @staticmethod
    def _to_row(record: QuotaRecord) -> Row:
        return {
            "id": record.user_id,
            "day": record.day,
            "used": record.used,
            "max_per_day": record.max_per_day,
        }


__all__ = [
    "BLOCKED",
    "QUOTA_COLLECTION",
    "QUOTA_SCHEMA",
    "QuotaLedger",
    "day_key",
    "local_now",
    "window_end",
]
