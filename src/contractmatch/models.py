from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Set, Tuple

from loguru import logger


class ParticipantKind(enum.Enum):
    REALTOR = "realtor"
    CONTRACTOR = "contractor"

    @property
    def collection(self) -> str:
        return _KIND_COLLECTIONS[self]

    @classmethod
    def parse(cls, value: Any) -> "ParticipantKind":
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                pass
        raise ValueError(f"unknown participant kind: {value!r}")


_KIND_COLLECTIONS: Dict[ParticipantKind, str] = {
    ParticipantKind.REALTOR: "realtors",
    ParticipantKind.CONTRACTOR: "contractors",
}

CONVERSATIONS = "conversations"
POSTS = "posts"


def messages_collection(conv_id: str) -> str:
    return f"{CONVERSATIONS}/{conv_id}/messages"


@dataclass(frozen=True)
class ProfileRef:
    """Points at one identity document: the uid plus the kind that stores it."""

    uid: str
    kind: ParticipantKind

    @property
    def collection(self) -> str:
        return self.kind.collection


@dataclass
class Identity:
    uid: str
    first_name: str
    last_name: str
    kind: ParticipantKind
    photo_url: str = ""
    about: str = ""
    specialties: List[str] = field(default_factory=list)
    company: str = ""
    phone: str = ""
    location: str = ""
    connections: Set[str] = field(default_factory=set)
    pending_sent: Set[str] = field(default_factory=set)
    pending_received: Set[str] = field(default_factory=set)

    @property
    def ref(self) -> ProfileRef:
        return ProfileRef(self.uid, self.kind)

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def initials(self) -> str:
        return "".join(part[:1].upper() for part in (self.first_name, self.last_name) if part)

    def connection_state(self, other_uid: str) -> str | None:
        if other_uid in self.connections:
            return "connected"
        if other_uid in self.pending_sent:
            return "pending_sent"
        if other_uid in self.pending_received:
            return "pending_received"
        return None

    @classmethod
    def from_doc(cls, uid: str, data: Mapping[str, Any], kind: ParticipantKind | None = None) -> "Identity":
        connections = set(data.get("connections") or [])
        raw_sent = set(data.get("pendingSent") or [])
        raw_received = set(data.get("pendingReceived") or [])
        # confirmed wins over pending, outgoing over incoming
        pending_sent = raw_sent - connections
        pending_received = raw_received - connections - pending_sent
        if len(pending_sent) + len(pending_received) != len(raw_sent) + len(raw_received):
            logger.warning(f"Identity {uid} lists an id in more than one connection set; normalised")
        return cls(
            uid=uid,
            first_name=str(data.get("firstName") or ""),
            last_name=str(data.get("lastName") or ""),
            kind=kind if kind is not None else ParticipantKind.parse(data.get("role")),
            photo_url=str(data.get("photoURL") or ""),
            about=str(data.get("about") or ""),
            specialties=[str(s) for s in data.get("specialties") or []],
            company=str(data.get("company") or ""),
            phone=str(data.get("phone") or ""),
            location=str(data.get("location") or ""),
            connections=connections,
            pending_sent=pending_sent,
            pending_received=pending_received,
        )

    def to_doc(self) -> Dict[str, Any]:
        return {
            "id": self.uid,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "role": self.kind.value,
            "photoURL": self.photo_url,
            "about": self.about,
            "specialties": list(self.specialties),
            "company": self.company,
            "phone": self.phone,
            "location": self.location,
            "connections": sorted(self.connections),
            "pendingSent": sorted(self.pending_sent),
            "pendingReceived": sorted(self.pending_received),
        }

    def to_api_dict(self) -> Dict[str, Any]:
        payload = self.to_doc()
        payload["displayName"] = self.display_name
        return payload


@dataclass(frozen=True)
class LastMessage:
    content: str
    sender_id: str
    timestamp: int | None

    @classmethod
    def from_doc(cls, data: Mapping[str, Any] | None) -> "LastMessage":
        data = data or {}
        timestamp = data.get("timestamp")
        return cls(
            content=str(data.get("content") or ""),
            sender_id=str(data.get("senderId") or ""),
            timestamp=int(timestamp) if timestamp is not None else None,
        )

    def to_doc(self) -> Dict[str, Any]:
        return {"content": self.content, "senderId": self.sender_id, "timestamp": self.timestamp}


@dataclass
class Conversation:
    conv_id: str
    participants: Tuple[str, str]
    participant_kinds: Dict[str, ParticipantKind]
    last_message: LastMessage
    unread_count: Dict[str, int]

    def counterpart(self, uid: str) -> str:
        first, second = self.participants
        if uid == first:
            return second
        if uid == second:
            return first
        raise ValueError(f"{uid} is not a participant of {self.conv_id}")

    def counterpart_ref(self, uid: str) -> Tuple[str, ParticipantKind | None]:
        other = self.counterpart(uid)
        return other, self.participant_kinds.get(other)

    def unread_for(self, uid: str) -> int:
        return self.unread_count.get(uid, 0)

    @classmethod
    def from_doc(cls, conv_id: str, data: Mapping[str, Any]) -> "Conversation":
        participants = list(data.get("participants") or [])
        if len(participants) != 2 or participants[0] == participants[1]:
            raise ValueError(f"conversation {conv_id} must have exactly two distinct participants")
        kinds: Dict[str, ParticipantKind] = {}
        for uid, kind in (data.get("participantKinds") or {}).items():
            try:
                kinds[uid] = ParticipantKind.parse(kind)
            except ValueError:
                continue
        unread = {uid: max(0, int(count)) for uid, count in (data.get("unreadCount") or {}).items()}
        return cls(
            conv_id=conv_id,
            participants=(str(participants[0]), str(participants[1])),
            participant_kinds=kinds,
            last_message=LastMessage.from_doc(data.get("lastMessage")),
            unread_count=unread,
        )

    def to_api_dict(self, viewer_uid: str | None = None) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "conv_id": self.conv_id,
            "participants": list(self.participants),
            "last_message": self.last_message.to_doc(),
        }
        if viewer_uid is not None:
            payload["unread"] = self.unread_for(viewer_uid)
        return payload


@dataclass(frozen=True)
class Message:
    msg_id: str
    conv_id: str
    sender_id: str
    content: str
    timestamp: int
    seq: int

    @classmethod
    def from_doc(cls, conv_id: str, msg_id: str, seq: int, data: Mapping[str, Any]) -> "Message":
        return cls(
            msg_id=msg_id,
            conv_id=conv_id,
            sender_id=str(data.get("senderId") or ""),
            content=str(data.get("content") or ""),
            timestamp=int(data.get("timestamp") or 0),
            seq=seq,
        )

    def to_api_dict(self) -> Dict[str, Any]:
        return {
            "msg_id": self.msg_id,
            "conv_id": self.conv_id,
            "sender_id": self.sender_id,
            "content": self.content,
            "timestamp": self.timestamp,
        }


POST_CATEGORIES = ("general", "project-showcase", "certification")


@dataclass(frozen=True)
class Comment:
    comment_id: str
    author_id: str
    content: str
    created_at: int

    @classmethod
    def from_doc(cls, data: Mapping[str, Any]) -> "Comment":
        return cls(
            comment_id=str(data.get("id") or ""),
            author_id=str(data.get("userId") or ""),
            content=str(data.get("content") or ""),
            created_at=int(data.get("createdAt") or 0),
        )

    def to_doc(self) -> Dict[str, Any]:
        return {
            "id": self.comment_id,
            "userId": self.author_id,
            "content": self.content,
            "createdAt": self.created_at,
        }


@dataclass
class Post:
    post_id: str
    author_id: str
    content: str
    category: str
    created_at: int
    images: List[str] = field(default_factory=list)
    likes: Set[str] = field(default_factory=set)
    comments: List[Comment] = field(default_factory=list)

    @classmethod
    def from_doc(cls, post_id: str, data: Mapping[str, Any]) -> "Post":
        return cls(
            post_id=post_id,
            author_id=str(data.get("userId") or ""),
            content=str(data.get("content") or ""),
            category=str(data.get("type") or "general"),
            created_at=int(data.get("createdAt") or 0),
            images=[str(i) for i in data.get("images") or []],
            likes=set(data.get("likes") or []),
            comments=[Comment.from_doc(c) for c in data.get("comments") or [] if isinstance(c, Mapping)],
        )

    def to_api_dict(self) -> Dict[str, Any]:
        return {
            "post_id": self.post_id,
            "author_id": self.author_id,
            "content": self.content,
            "type": self.category,
            "created_at": self.created_at,
            "images": list(self.images),
            "likes": sorted(self.likes),
            "comments": [c.to_doc() for c in self.comments],
        }
