from __future__ import annotations

from typing import Callable, List, Sequence, Set

from loguru import logger

from .errors import StoreError
from .live import Subscription
from .models import Message, messages_collection
from .store import BaseDocumentStore, Document, Order

AppendCallback = Callable[[str, List[Message]], None]


class MessageStream:
    """Follows the message log of the selected conversation.

    Exactly one log subscription exists at a time. Selecting another
    conversation cancels the previous subscription before the new one opens,
    so callbacks of the old thread cannot reach the new one. Delivered
    snapshots are folded into an append-only list.
    """

    def __init__(self, store: BaseDocumentStore, on_append: AppendCallback | None = None) -> None:
        self._store = store
        self._on_append = on_append
        self._subscription: Subscription | None = None
        self._seen: Set[str] = set()
        self.conv_id: str | None = None
        self.messages: List[Message] = []
        self.stale = False
        self.opened = 0
        self.cancelled = 0

    def select(self, conv_id: str) -> None:
        if conv_id == self.conv_id and self._subscription is not None:
            return
        self.deselect()
        self.conv_id = conv_id
        live_query = self._store.query(messages_collection(conv_id), ordering=[Order("timestamp")])
        self._subscription = live_query.subscribe(
            lambda docs, selected=conv_id: self._snapshot(selected, docs),
            lambda exc, selected=conv_id: self._failed(selected, exc),
        )
        self.opened += 1

    def deselect(self) -> None:
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None
            self.cancelled += 1
        self.conv_id = None
        self.messages = []
        self._seen = set()
        self.stale = False

    @property
    def active(self) -> bool:
        return self._subscription is not None and self._subscription.active

    def _snapshot(self, conv_id: str, docs: Sequence[Document]) -> None:
        if conv_id != self.conv_id:
            return
        appended: List[Message] = []
        for doc in docs:
            if doc.id in self._seen:
                continue
            message = Message.from_doc(conv_id, doc.id, doc.seq, doc.data)
            self._seen.add(doc.id)
            self.messages.append(message)
            appended.append(message)
        self.stale = False
        if appended and self._on_append is not None:
            self._on_append(conv_id, appended)

    def _failed(self, conv_id: str, exc: StoreError) -> None:
        if conv_id != self.conv_id:
            return
        logger.warning(f"Message stream for {conv_id} is stale: {exc}")
        self.stale = True
