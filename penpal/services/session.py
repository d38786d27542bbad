"""Authenticated user session with login/logout hooks."""

from __future__ import annotations

from typing import Awaitable, Callable, Optional

from logger import get_logger, info_domain
from penpal.errors import SessionRequiredError

SessionHook = Callable[[str], Awaitable[None]]


class UserSession:
    """Holds the current user id and runs hooks when it changes.

    Logout hooks run after the user id is cleared, so nothing started from a
    hook can act on behalf of the departing user.
    """

    def __init__(self, user_id: Optional[str] = None) -> None:
        self._user_id = user_id
        self._login_hooks: list[SessionHook] = []
        self._logout_hooks: list[SessionHook] = []
        self._logger = get_logger("penpal.session")

    def current_user_id(self) -> Optional[str]:
        return self._user_id

    def require_user_id(self) -> str:
        if not self._user_id:
            raise SessionRequiredError("No authenticated user")
        return self._user_id

    def on_login(self, hook: SessionHook) -> None:
        self._login_hooks.append(hook)

    def on_logout(self, hook: SessionHook) -> None:
        self._logout_hooks.append(hook)

    async def login(self, user_id: str) -> None:
        if not user_id:
            raise ValueError("user_id must be non-empty")
        if self._user_id == user_id:
            return
        if self._user_id is not None:
            await self.logout()
        self._user_id = user_id
        info_domain("penpal.session", "User signed in", stage="LOGIN", user_id=user_id)
        for hook in self._login_hooks:
            await hook(user_id)

    async def logout(self) -> None:
        """Clear the user and run every logout hook.

        All hooks run even when one fails; the first failure is re-raised
        afterwards.
        """

        user_id = self._user_id
        if user_id is None:
            return
        self._user_id = None
        failure: Optional[BaseException] = None
        for hook in self._logout_hooks:
            try:
                await hook(user_id)
            except Exception as exc:
                self._logger.exception("Logout hook failed", user_id=user_id)
                if failure is None:
                    failure = exc
        info_domain("penpal.session", "User signed out", stage="LOGOUT", user_id=user_id)
        if failure is not None:
            raise failure


__all__ = ["SessionHook", "UserSession"]
