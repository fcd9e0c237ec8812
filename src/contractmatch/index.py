from __future__ import annotations

from typing import Callable, List, Sequence

from loguru import logger

from .errors import StoreError
from .live import Subscription
from .models import CONVERSATIONS, Conversation
from .store import BaseDocumentStore, Document, Filter, Order


class ConversationIndex:
    """Live list of the conversations ``uid`` takes part in, newest activity first.

    A failing subscription leaves the last good list in place and flags it
    ``stale`` until the store delivers again.
    """

    def __init__(
        self,
        store: BaseDocumentStore,
        uid: str,
        on_change: Callable[[List[Conversation]], None] | None = None,
        on_error: Callable[[StoreError], None] | None = None,
    ) -> None:
        self.uid = uid
        self.conversations: List[Conversation] = []
        self.stale = False
        self.loaded = False
        self._store = store
        self._on_change = on_change
        self._on_error = on_error
        self._subscription: Subscription | None = None

    def open(self) -> None:
        if self._subscription is not None:
            return
        live_query = self._store.query(
            CONVERSATIONS,
            [Filter("participants", "array-contains", self.uid)],
            [Order("lastMessage.timestamp", descending=True)],
        )
        self._subscription = live_query.subscribe(self._snapshot, self._failed)

    def close(self) -> None:
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None

    @property
    def is_open(self) -> bool:
        return self._subscription is not None and self._subscription.active

    def get(self, conv_id: str) -> Conversation | None:
        for conversation in self.conversations:
            if conversation.conv_id == conv_id:
                return conversation
        return None

    def _snapshot(self, docs: Sequence[Document]) -> None:
        conversations: List[Conversation] = []
        seen: set[str] = set()
        for doc in docs:
            if doc.id in seen:
                continue
            try:
                conversation = Conversation.from_doc(doc.id, doc.data)
            except ValueError as exc:
                logger.warning(f"Skipping malformed conversation {doc.id}: {exc}")
                continue
            seen.add(doc.id)
            conversations.append(conversation)
        self.conversations = conversations
        self.stale = False
        self.loaded = True
        if self._on_change is not None:
            self._on_change(list(conversations))

    def _failed(self, exc: StoreError) -> None:
        logger.warning(f"Conversation index for {self.uid} is stale: {exc}")
        self.stale = True
        if self._on_error is not None:
            self._on_error(exc)
