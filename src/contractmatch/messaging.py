"""Realtime messaging view: conversation list plus the open thread.

Wiring, leaf to root::

    SessionGuard -> ConversationIndex -> ParticipantResolver -> rows
    select()     -> MessageStream     -> messages
    send()       -> Composer          -> message log + conversation summary

All state lives on the event loop thread. Store deliveries and resolution
tasks run one at a time, so there is no locking here.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Set, Tuple

from loguru import logger

from .auth import AuthProvider, AuthUser, RoleHint, SessionGuard
from .composer import Composer, ComposerState
from .errors import StoreError
from .index import ConversationIndex
from .models import CONVERSATIONS, Conversation, Identity, Message
from .resolver import UNKNOWN, ParticipantResolver
from .store import BaseDocumentStore
from .stream import MessageStream

Listener = Callable[[str, Any], None]


@dataclass(frozen=True)
class ConversationRow:
    conversation: Conversation
    counterpart: Identity
    unread: int

    def to_api_dict(self, viewer_uid: str) -> dict[str, Any]:
        payload = self.conversation.to_api_dict(viewer_uid)
        payload["counterpart"] = {
            "id": self.counterpart.uid,
            "name": self.counterpart.display_name,
            "initials": self.counterpart.initials,
            "role": self.counterpart.kind.value,
            "photo_url": self.counterpart.photo_url,
        }
        return payload


class MessagingView:
    def __init__(
        self,
        store: BaseDocumentStore,
        auth: AuthProvider,
        role_hint: RoleHint | None = None,
        *,
        on_redirect: Callable[[str], None] | None = None,
    ) -> None:
        self.role_hint = role_hint or RoleHint()
        self.resolver = ParticipantResolver(store)
        self.stream = MessageStream(store, on_append=self._appended)
        self.composer = Composer(store)
        self.index: ConversationIndex | None = None
        self.uid: str | None = None
        self.redirect_to: str | None = None
        self.notice: str | None = None
        self._store = store
        self._on_redirect = on_redirect
        self._listeners: List[Listener] = []
        self._tasks: Set[asyncio.Task] = set()
        self._published: Tuple[List[ConversationRow], bool] | None = None
        self.guard = SessionGuard(auth, on_redirect=self._redirect, on_identity=self._identity_changed)

    def start(self) -> None:
        self.guard.start()

    def stop(self) -> None:
        self.guard.stop()
        self._teardown()

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    @property
    def stale(self) -> bool:
        return bool(self.index and self.index.stale) or self.stream.stale

    @property
    def loading(self) -> bool:
        return self.index is None or not self.index.loaded

    @property
    def rows(self) -> List[ConversationRow]:
        if self.index is None or self.uid is None:
            return []
        rows: List[ConversationRow] = []
        for conversation in self.index.conversations:
            counterpart = self.resolver.lookup(conversation.counterpart(self.uid))
            if counterpart is None or counterpart is UNKNOWN:
                continue
            rows.append(ConversationRow(conversation, counterpart, conversation.unread_for(self.uid)))
        return rows

    @property
    def selected(self) -> str | None:
        return self.stream.conv_id

    @property
    def messages(self) -> List[Message]:
        return list(self.stream.messages)

    def select(self, conv_id: str) -> None:
        uid = self.guard.require()
        self.stream.select(conv_id)
        conversation = self.index.get(conv_id) if self.index else None
        if conversation is None or conversation.unread_for(uid) > 0:
            self._spawn(self.mark_read(conv_id))

    def deselect(self) -> None:
        self.stream.deselect()

    async def mark_read(self, conv_id: str) -> None:
        uid = self.guard.require()
        try:
            await self._store.update(CONVERSATIONS, conv_id, {f"unreadCount.{uid}": 0})
        except StoreError as exc:
            logger.warning(f"Could not reset unread count of {conv_id} for {uid}: {exc}")
            self.notice = "Could not mark conversation as read"

    async def send(self, text: str | None = None) -> str | None:
        uid = self.guard.require()
        conv_id = self.stream.conv_id
        if conv_id is None:
            return None
        conversation = self.index.get(conv_id) if self.index else None
        participants = conversation.participants if conversation else None
        msg_id = await self.composer.send(conv_id, uid, text, participants=participants)
        if self.composer.state is ComposerState.FAILED:
            self.notice = "Message not sent"
        return msg_id

    async def wait_idle(self) -> None:
        """Return once queued deliveries and resolution tasks have drained."""

        quiet_rounds = 0
        while quiet_rounds < 2:
            await asyncio.sleep(0)
            if self._tasks:
                quiet_rounds = 0
                await asyncio.gather(*list(self._tasks), return_exceptions=True)
            else:
                quiet_rounds += 1

    def _identity_changed(self, user: AuthUser | None) -> None:
        if user is None or user.uid != self.uid:
            self._teardown()
        if user is None or self.index is not None:
            return
        self.uid = user.uid
        self.redirect_to = None
        self.index = ConversationIndex(self._store, user.uid, self._index_changed, self._index_failed)
        self.index.open()

    def _redirect(self, path: str) -> None:
        self.redirect_to = path
        if self._on_redirect is not None:
            self._on_redirect(path)
        self._emit("redirect", path)

    def _teardown(self) -> None:
        self.stream.deselect()
        if self.index is not None:
            self.index.close()
            self.index = None
        for task in list(self._tasks):
            task.cancel()
        self.resolver.invalidate()
        self.uid = None
        self._published = None

    def _index_changed(self, conversations: List[Conversation]) -> None:
        uid = self.uid
        if uid is None:
            return
        refs = [conversation.counterpart_ref(uid) for conversation in conversations]
        self._spawn(self._resolve_and_publish(refs))
        selected = self.stream.conv_id
        for conversation in conversations:
            if conversation.conv_id == selected and conversation.unread_for(uid) > 0:
                self._spawn(self.mark_read(selected))
        self._publish_rows()

    def _index_failed(self, exc: StoreError) -> None:
        self.notice = "Conversation list may be out of date"

    async def _resolve_and_publish(self, refs: list) -> None:
        await self.resolver.resolve(refs)
        self._publish_rows()

    def _publish_rows(self) -> None:
        # a refresh that leaves the visible list unchanged is not re-emitted
        rows = self.rows
        published = (rows, self.stale)
        if published == self._published:
            return
        self._published = published
        self._emit("rows", rows)

    def _appended(self, conv_id: str, appended: List[Message]) -> None:
        self._emit("messages", appended)

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.opt(exception=exc).error("Messaging background task failed")

    def _emit(self, kind: str, payload: Any) -> None:
        for listener in list(self._listeners):
            listener(kind, payload)
