from __future__ import annotations

import enum
from typing import Any, Dict, Iterable

from loguru import logger

from .errors import StoreError
from .models import CONVERSATIONS, Conversation, messages_collection
from .store import SERVER_TIMESTAMP, BaseDocumentStore, Increment


class ComposerState(enum.Enum):
    IDLE = "idle"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"


class Composer:
    """Outbound text for one open thread.

    A send is two writes: the message itself, then the conversation's
    ``lastMessage`` summary and the other participants' unread counters. Only
    the first decides success; a failed summary write leaves the summary stale
    until the next send.
    """

    def __init__(self, store: BaseDocumentStore) -> None:
        self._store = store
        self.buffer = ""
        self.state = ComposerState.IDLE
        self.last_error: Exception | None = None
        self.summary_stale = False

    def edit(self, text: str) -> None:
        self.buffer = text
        if self.state in (ComposerState.FAILED, ComposerState.SENT):
            self.state = ComposerState.IDLE

    async def send(
        self,
        conv_id: str,
        sender_id: str,
        text: str | None = None,
        participants: Iterable[str] | None = None,
    ) -> str | None:
        """Send ``text`` (or the buffer) and return the new message id.

        Returns ``None`` without touching the store for blank text or while a
        send is already in flight, and ``None`` after a failed message write.
        """

        raw = self.buffer if text is None else text
        content = raw.strip()
        if not content:
            return None
        if self.state is ComposerState.SENDING:
            return None

        self.state = ComposerState.SENDING
        self.last_error = None
        try:
            recipients = await self._recipients(conv_id, sender_id, participants)
            msg_id = await self._store.create(
                messages_collection(conv_id),
                {"content": content, "senderId": sender_id, "timestamp": SERVER_TIMESTAMP},
            )
        except StoreError as exc:
            logger.error(f"Sending to {conv_id} failed: {exc}")
            self.buffer = raw
            self.last_error = exc
            self.state = ComposerState.FAILED
            return None

        self.buffer = ""
        summary: Dict[str, Any] = {
            "lastMessage.content": content,
            "lastMessage.senderId": sender_id,
            "lastMessage.timestamp": SERVER_TIMESTAMP,
        }
        for uid in recipients:
            summary[f"unreadCount.{uid}"] = Increment(1)
        try:
            await self._store.update(CONVERSATIONS, conv_id, summary)
            self.summary_stale = False
        except StoreError as exc:
            logger.warning(f"Message {msg_id} sent but summary of {conv_id} not updated: {exc}")
            self.summary_stale = True
        self.state = ComposerState.SENT
        return msg_id

    async def _recipients(self, conv_id: str, sender_id: str, participants: Iterable[str] | None) -> list[str]:
        if participants is None:
            doc = await self._store.get(CONVERSATIONS, conv_id)
            if doc is None:
                raise StoreError(f"conversation {conv_id} not found")
            try:
                participants = Conversation.from_doc(conv_id, doc.data).participants
            except ValueError as exc:
                raise StoreError(str(exc)) from exc
        members = list(participants)
        if sender_id not in members:
            raise StoreError(f"{sender_id} is not a participant of {conv_id}")
        return [uid for uid in members if uid != sender_id]
