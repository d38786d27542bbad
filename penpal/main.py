"""Runtime wiring for the sync layer."""

from __future__ import annotations

import asyncio
import signal
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional

from logger import get_logger, info_domain, log_event, setup_logging
from penpal.codecs import CODECS, PenpalMatchCodec
from penpal.config import Config, load_config
from penpal.models import Conversation, Meeting, Message, PenpalMatch
from penpal.services.analytics import Analytics, LogAnalytics
from penpal.services.cache_janitor import CacheJanitor
from penpal.services.connectivity import ConnectivityMonitor
from penpal.services.conversations import ConversationService
from penpal.services.listener import RealtimeChangeListener
from penpal.services.local_base import LocalStore
from penpal.services.local_sqlite import SQLiteLocalStore
from penpal.services.meetings import MeetingService
from penpal.services.penpals import PenpalService
from penpal.services.quota import QUOTA_SCHEMA, Clock, QuotaLedger, local_now
from penpal.services.remote_base import RemoteStore
from penpal.services.remote_memory import InMemoryRemoteStore
from penpal.services.session import UserSession
from penpal.services.sync import SyncCoordinator


def build_remote(config: Config) -> RemoteStore:
    if config.remote_backend == "memory":
        return InMemoryRemoteStore(max_attempts=config.transaction_max_attempts)
    # imported lazily so the memory backend runs without Firebase credentials
    from penpal.services.remote_firestore import FirestoreRemoteStore

    return FirestoreRemoteStore(
        credentials_path=config.firebase_credentials_json,
        project_id=config.firebase_project_id,
        max_attempts=config.transaction_max_attempts,
    )


@dataclass(slots=True)
class Runtime:
    """Every long-lived component, opened and closed together."""

    config: Config
    local: LocalStore
    remote: RemoteStore
    session: UserSession
    ledger: QuotaLedger
    listener: RealtimeChangeListener
    connectivity: ConnectivityMonitor
    janitor: CacheJanitor
    penpals: PenpalService
    conversations: ConversationService
    meetings: MeetingService
    coordinators: dict[type, SyncCoordinator] = field(default_factory=dict)

    def sync(self, entity_type: type) -> SyncCoordinator:
        return self.coordinators[entity_type]

    async def open(self, *, background: bool = True) -> None:
        schemas = [codec.schema for codec in CODECS.values()]
        schemas.append(QUOTA_SCHEMA)
        await self.local.open(schemas)
        self.session.on_logout(self._wipe_user_data)
        self.connectivity.on_change(self._retry_when_online)
        if background:
            self.connectivity.start()
            self.janitor.start()
        info_domain(
            "penpal.runtime",
            "Sync runtime opened",
            stage="RUNTIME_OPEN",
            backend=self.config.remote_backend,
            collections=len(schemas),
        )

    async def close(self) -> None:
        await self.connectivity.stop()
        await self.janitor.stop()
        self.listener.release_all()
        await self.remote.aclose()
        await self.local.close()
        info_domain("penpal.runtime", "Sync runtime closed", stage="RUNTIME_CLOSED")

    async def _wipe_user_data(self, user_id: str) -> None:
        self.listener.release_all()
        for coordinator in self.coordinators.values():
            coordinator.forget_session_state()
        await self.local.clear_all()
        info_domain("penpal.runtime", "Local cache wiped", stage="LOGOUT_WIPE", user_id=user_id)

    async def _retry_when_online(self, online: bool) -> None:
        if not online or self.session.current_user_id() is None:
            return
        for coordinator in self.coordinators.values():
            await coordinator.retry_pending()


def build_runtime(
    config: Config,
    *,
    remote: Optional[RemoteStore] = None,
    local: Optional[LocalStore] = None,
    session: Optional[UserSession] = None,
    analytics: Optional[Analytics] = None,
    clock: Clock = local_now,
) -> Runtime:
    remote = remote or build_remote(config)
    local = local or SQLiteLocalStore(config.local_db_path)
    session = session or UserSession()
    analytics = analytics or LogAnalytics()

    coordinators: dict[type, SyncCoordinator] = {
        entity_type: SyncCoordinator(codec, local=local, remote=remote, session=session)
        for entity_type, codec in CODECS.items()
    }
    ledger = QuotaLedger(remote=remote, local=local, analytics=analytics, clock=clock)
    janitor = CacheJanitor(
        local=local,
        ttls={PenpalMatchCodec.schema.name: timedelta(days=config.match_cache_ttl_days)},
        interval_seconds=config.cache_purge_interval_sec,
    )
    return Runtime(
        config=config,
        local=local,
        remote=remote,
        session=session,
        ledger=ledger,
        listener=RealtimeChangeListener(local=local, remote=remote),
        connectivity=ConnectivityMonitor(
            remote=remote, session=session, interval_seconds=config.connectivity_probe_sec
        ),
        janitor=janitor,
        penpals=PenpalService(
            matches=coordinators[PenpalMatch],
            ledger=ledger,
            session=session,
            daily_limit=config.daily_swipe_limit,
            analytics=analytics,
        ),
        conversations=ConversationService(
            conversations=coordinators[Conversation],
            messages=coordinators[Message],
            local=local,
            remote=remote,
            session=session,
        ),
        meetings=MeetingService(
            meetings=coordinators[Meeting],
            local=local,
            remote=remote,
            session=session,
        ),
        coordinators=coordinators,
    )


async def _wait_for_signal() -> None:
    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()
    signals = (signal.SIGINT, signal.SIGTERM)
    for sig in signals:
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):  # pragma: no cover - platform specific
            continue
    try:
        await stop_event.wait()
    finally:
        for sig in signals:
            try:
                loop.remove_signal_handler(sig)
            except (ValueError, RuntimeError):  # pragma: no cover - platform specific
                continue


async def main() -> None:
    config = load_config()
    setup_logging()
    logger = get_logger("penpal.runtime")

    runtime = build_runtime(config)
    await runtime.open()
    try:
        await _wait_for_signal()
        logger.debug("Shutdown signal received")
    finally:
        await runtime.close()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except Exception as exc:  # noqa: BLE001
        setup_logging()
        log_event(
            "CRITICAL",
            "penpal.runtime",
            f"Unhandled exception: {exc}",
            stage="UNHANDLED_EXCEPTION",
            extra={"exception": repr(exc)},
        )
        raise
