"""Conversations and messages for the signed-in user."""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import replace
from typing import Callable, Optional

from logger import get_logger
from penpal.errors import RemoteError
from penpal.models import Conversation, Message, eq, utcnow
from penpal.services.local_base import LocalStore
from penpal.services.remote_base import RemoteStore, RemoteTransaction
from penpal.services.session import UserSession
from penpal.services.sync import FetchResult, Mutation, SyncCoordinator


def _new_id() -> str:
    return uuid.uuid4().hex


def _visible_to(conversations: list[Conversation], user_id: str) -> list[Conversation]:
    return [item for item in conversations if user_id not in item.deleted_for]


class ConversationService:
    def __init__(
        self,
        *,
        conversations: SyncCoordinator[Conversation],
        messages: SyncCoordinator[Message],
        local: LocalStore,
        remote: RemoteStore,
        session: UserSession,
        id_factory: Callable[[], str] = _new_id,
    ) -> None:
        self._conversations = conversations
        self._messages = messages
        self._local = local
        self._remote = remote
        self._session = session
        self._id_factory = id_factory
        self._logger = get_logger("penpal.conversations")

    async def conversations(self, *, limit: Optional[int] = None) -> FetchResult[Conversation]:
        """Fetch the user's conversations, leaving out those they deleted."""

        user_id = self._session.require_user_id()
        result = await self._conversations.fetch(user_id, limit=limit)

        async def visible() -> list[Conversation]:
            return _visible_to(await result.eventual, user_id)

        return FetchResult(
            immediate=_visible_to(result.immediate, user_id),
            eventual=asyncio.create_task(visible()),
        )

    async def messages(
        self, conversation_id: str, *, limit: Optional[int] = None
    ) -> FetchResult[Message]:
        return await self._messages.fetch(conversation_id, limit=limit)

    async def send_message(
        self, conversation_id: str, text: str, *, message_type: str = "text"
    ) -> Mutation[Message]:
        """Store the message optimistically and bump the conversation preview."""

        sender_id = self._session.require_user_id()
        now = utcnow()
        message = Message(
            id=self._id_factory(),
            conversation_id=conversation_id,
            sender_id=sender_id,
            text=text,
            sent_at=now,
            type=message_type,
            updated_at=now,
        )
        mutation = await self._messages.mutate(message)
        conversation = await self._conversations.get(conversation_id)
        if conversation is not None:
            await self._conversations.mutate(
                replace(conversation, last_message=text, updated_at=now)
            )
        return mutation

    async def mark_read(self, message_id: str) -> Optional[Mutation[Message]]:
        message = await self._messages.get(message_id)
        if message is None or message.is_read:
            return None
        return await self._messages.mutate(replace(message, is_read=True, updated_at=utcnow()))

    async def delete_for_user(self, conversation_id: str) -> bool:
        """Hide a conversation for the current user.

        The remote document records the user in ``deletedFor`` and is deleted
        once every participant has done so. The cached conversation and its
        messages are dropped locally. Returns ``False`` when the remote store
        was unreachable and nothing changed.
        """

        user_id = self._session.require_user_id()
        collection = self._conversations.codec.remote_collection

        async def body(txn: RemoteTransaction) -> bool:
            document = await txn.get(collection, conversation_id)
            if document is None:
                return True
            deleted_for = [
                item for item in document.data.get("deletedFor") or [] if isinstance(item, str)
            ]
            if user_id not in deleted_for:
                deleted_for.append(user_id)
            participants = {
                item for item in document.data.get("participants") or [] if isinstance(item, str)
            }
            if participants.issubset(deleted_for):
                txn.delete(collection, conversation_id)
                return True
            txn.set(collection, conversation_id, {"deletedFor": deleted_for}, merge=True)
            return False

        try:
            removed = await self._remote.run_transaction(body)
        except RemoteError as exc:
            if not exc.transient:
                raise
            self._logger.warning("Conversation delete deferred: %s", exc, user_id=user_id)
            return False

        await self._local.delete(self._conversations.codec.collection, conversation_id)
        await self._local.delete_where(
            self._messages.codec.collection,
            [eq(self._messages.codec.scope_column, conversation_id)],
        )
        self._logger.info(
            "Conversation %s %s",
            conversation_id,
            "deleted" if removed else "hidden",
            user_id=user_id,
        )
        return True


__all__ = ["ConversationService"]
