"""Realtime messaging, profiles and feed for realtors and contractors."""

from .auth import AuthUser, InMemoryAuthProvider, RoleHint, SessionGuard
from .composer import Composer, ComposerState
from .conversations import conversation_id_for, get_or_create_conversation
from .errors import AuthRequired, BlobError, DocumentExists, DocumentNotFound, StoreError
from .index import ConversationIndex
from .live import Subscription, SubscriptionHub
from .messaging import ConversationRow, MessagingView
from .models import Conversation, Identity, Message, ParticipantKind, ProfileRef
from .resolver import UNKNOWN, ParticipantResolver
from .store import InMemoryDocumentStore
from .stream import MessageStream

__all__ = [
    "AuthRequired",
    "AuthUser",
    "BlobError",
    "Composer",
    "ComposerState",
    "Conversation",
    "ConversationIndex",
    "ConversationRow",
    "DocumentExists",
    "DocumentNotFound",
    "Identity",
    "InMemoryAuthProvider",
    "InMemoryDocumentStore",
    "Message",
    "MessageStream",
    "MessagingView",
    "ParticipantKind",
    "ParticipantResolver",
    "ProfileRef",
    "RoleHint",
    "SessionGuard",
    "StoreError",
    "Subscription",
    "SubscriptionHub",
    "UNKNOWN",
    "conversation_id_for",
    "get_or_create_conversation",
]
