from __future__ import annotations

from loguru import logger

from .errors import DocumentExists, StoreError
from .models import CONVERSATIONS, Conversation, ProfileRef
from .store import SERVER_TIMESTAMP, BaseDocumentStore


def conversation_id_for(a: str, b: str) -> str:
    """Deterministic id for the two-party conversation between ``a`` and ``b``."""

    if a == b:
        raise ValueError("a conversation needs two distinct participants")
    low, high = sorted((a, b))
    return f"{low}__{high}"


async def get_or_create_conversation(store: BaseDocumentStore, a: ProfileRef, b: ProfileRef) -> Conversation:
    conv_id = conversation_id_for(a.uid, b.uid)
    existing = await store.get(CONVERSATIONS, conv_id)
    if existing is not None:
        return Conversation.from_doc(conv_id, existing.data)

    first, second = sorted((a, b), key=lambda ref: ref.uid)
    data = {
        "participants": [first.uid, second.uid],
        "participantKinds": {first.uid: first.kind.value, second.uid: second.kind.value},
        "lastMessage": {"content": "", "senderId": "", "timestamp": SERVER_TIMESTAMP},
        "unreadCount": {first.uid: 0, second.uid: 0},
    }
    try:
        await store.create(CONVERSATIONS, data, doc_id=conv_id)
        logger.info(f"Created conversation {conv_id}")
    except DocumentExists:
        logger.debug(f"Conversation {conv_id} created concurrently; reading it back")

    created = await store.get(CONVERSATIONS, conv_id)
    if created is None:
        raise StoreError(f"conversation {conv_id} vanished after create")
    return Conversation.from_doc(conv_id, created.data)
