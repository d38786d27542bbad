"""Background connectivity probe with user presence updates."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional

from logger import get_logger, info_domain
from penpal.errors import RemoteError
from penpal.models import utcnow
from penpal.services.remote_base import RemoteStore
from penpal.services.session import UserSession

PRESENCE_COLLECTION = "users"

Probe = Callable[[], Awaitable[bool]]
ConnectivityHook = Callable[[bool], Awaitable[None]]


class ConnectivityMonitor:
    """Periodically checks the remote store and publishes online/offline transitions."""

    def __init__(
        self,
        *,
        remote: RemoteStore,
        session: UserSession,
        interval_seconds: int = 30,
        probe: Optional[Probe] = None,
    ) -> None:
        self._remote = remote
        self._session = session
        self._interval = max(interval_seconds, 1)
        self._probe = probe or self._remote_probe
        self._hooks: list[ConnectivityHook] = []
        self._online: Optional[bool] = None
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._logger = get_logger("penpal.connectivity")

    @property
    def is_online(self) -> bool:
        return bool(self._online)

    def on_change(self, hook: ConnectivityHook) -> None:
        self._hooks.append(hook)

    def start(self) -> None:
        """Start the background probe loop."""

        if self._task is None:
            self._task = asyncio.create_task(self._runner())

    async def stop(self) -> None:
        """Stop the loop and mark the user offline."""

        if self._task is None:
            return
        self._stop_event.set()
        try:
            await self._task
        finally:
            self._task = None
            self._stop_event.clear()
        if self._online:
            await self._write_presence(False)

    async def check(self) -> bool:
        """Probe once; on a transition update presence and run hooks."""

        online = await self._probe()
        if online == self._online:
            return online
        previous = self._online
        self._online = online
        info_domain(
            "penpal.connectivity",
            "Connectivity changed",
            stage="ONLINE" if online else "OFFLINE",
            previous=previous,
        )
        await self._write_presence(online)
        for hook in self._hooks:
            try:
                await hook(online)
            except Exception:
                self._logger.exception("Connectivity hook failed")
        return online

    async def _runner(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.check()
            except Exception:  # pragma: no cover - logged and retried on the next tick
                self._logger.exception("Connectivity check failed")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                continue

    async def _remote_probe(self) -> bool:
        user_id = self._session.current_user_id() or "_probe"
        try:
            await self._remote.get_document(PRESENCE_COLLECTION, user_id)
        except RemoteError as exc:
            # permission errors still prove the backend answered
            return not exc.transient
        return True

    async def _write_presence(self, online: bool) -> None:
        user_id = self._session.current_user_id()
        if user_id is None:
            return
        try:
            await self._remote.set_document(
                PRESENCE_COLLECTION,
                user_id,
                {"isOnline": online, "lastSeen": utcnow()},
                merge=True,
            )
        except RemoteError as exc:
            self._logger.warning("Presence update failed: %s", exc, user_id=user_id)


__all__ = ["ConnectivityMonitor", "PRESENCE_COLLECTION"]
