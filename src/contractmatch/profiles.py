from __future__ import annotations

from typing import Any, Dict, Mapping

from loguru import logger

from .blobs import BlobStore
from .errors import DocumentNotFound
from .models import Identity, ProfileRef
from .store import ArrayRemove, ArrayUnion, BaseDocumentStore

EDITABLE_FIELDS: Dict[str, str] = {
    "first_name": "firstName",
    "last_name": "lastName",
    "company": "company",
    "phone": "phone",
    "location": "location",
    "about": "about",
    "specialties": "specialties",
}

PHOTO_PREFIX = "profilePhotos"


class ProfileService:
    """Profile reads and edits, photo upload, and connection requests."""

    def __init__(self, store: BaseDocumentStore, blobs: BlobStore | None = None) -> None:
        self._store = store
        self._blobs = blobs

    async def get(self, ref: ProfileRef) -> Identity | None:
        doc = await self._store.get(ref.collection, ref.uid)
        if doc is None:
            return None
        return Identity.from_doc(ref.uid, doc.data, kind=ref.kind)

    async def require(self, ref: ProfileRef) -> Identity:
        identity = await self.get(ref)
        if identity is None:
            raise DocumentNotFound(f"{ref.collection}/{ref.uid} not found")
        return identity

    async def register(self, identity: Identity) -> Identity:
        await self._store.create(identity.ref.collection, identity.to_doc(), doc_id=identity.uid)
        return identity

    async def update(self, ref: ProfileRef, fields: Mapping[str, Any]) -> Identity:
        unknown = set(fields) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValueError(f"fields not editable: {sorted(unknown)}")
        partial: Dict[str, Any] = {}
        for name, value in fields.items():
            if name == "specialties":
                if not isinstance(value, list) or any(not isinstance(item, str) for item in value):
                    raise ValueError("specialties must be a list of strings")
                value = _dedupe([item.strip() for item in value if item.strip()])
            elif not isinstance(value, str):
                raise ValueError(f"{name} must be a string")
            partial[EDITABLE_FIELDS[name]] = value
        if partial:
            await self._store.update(ref.collection, ref.uid, partial)
        return await self.require(ref)

    async def add_specialty(self, ref: ProfileRef, specialty: str) -> Identity:
        specialty = specialty.strip()
        if specialty:
            await self._store.update(ref.collection, ref.uid, {"specialties": ArrayUnion(specialty)})
        return await self.require(ref)

    async def remove_specialty(self, ref: ProfileRef, specialty: str) -> Identity:
        await self._store.update(ref.collection, ref.uid, {"specialties": ArrayRemove(specialty)})
        return await self.require(ref)

    async def upload_photo(self, ref: ProfileRef, data: bytes) -> str:
        if self._blobs is None:
            raise RuntimeError("no blob store configured")
        if await self.get(ref) is None:
            raise DocumentNotFound(f"{ref.collection}/{ref.uid} not found")
        path = f"{PHOTO_PREFIX}/{ref.uid}"
        await self._blobs.upload(path, data)
        photo_url = self._blobs.get_public_url(path)
        await self._store.update(ref.collection, ref.uid, {"photoURL": photo_url})
        logger.info(f"Stored profile photo for {ref.uid} ({len(data)} bytes)")
        return photo_url

    async def request_connection(self, sender: ProfileRef, recipient: ProfileRef) -> Identity:
        if sender.uid == recipient.uid:
            raise ValueError("cannot connect to yourself")
        current = await self.require(sender)
        await self.require(recipient)
        state = current.connection_state(recipient.uid)
        if state == "pending_received":
            # both asked: treat as acceptance
            return await self.accept_connection(sender, recipient)
        if state is None:
            await self._store.update(sender.collection, sender.uid, {"pendingSent": ArrayUnion(recipient.uid)})
            await self._store.update(
                recipient.collection, recipient.uid, {"pendingReceived": ArrayUnion(sender.uid)}
            )
        return await self.require(sender)

    async def accept_connection(self, recipient: ProfileRef, sender: ProfileRef) -> Identity:
        current = await self.require(recipient)
        await self.require(sender)
        if current.connection_state(sender.uid) != "pending_received":
            raise ValueError(f"no pending request from {sender.uid}")
        await self._store.update(
            recipient.collection,
            recipient.uid,
            {"pendingReceived": ArrayRemove(sender.uid), "connections": ArrayUnion(sender.uid)},
        )
        await self._store.update(
            sender.collection,
            sender.uid,
            {"pendingSent": ArrayRemove(recipient.uid), "connections": ArrayUnion(recipient.uid)},
        )
        return await self.require(recipient)

    async def decline_connection(self, recipient: ProfileRef, sender: ProfileRef) -> Identity:
        await self.require(recipient)
        await self._store.update(recipient.collection, recipient.uid, {"pendingReceived": ArrayRemove(sender.uid)})
        if await self.get(sender) is not None:
            await self._store.update(sender.collection, sender.uid, {"pendingSent": ArrayRemove(recipient.uid)})
        return await self.require(recipient)


def _dedupe(values: list[str]) -> list[str]:
    seen: set[str] = set()
    result = []
    for value in values:
        if value not in seen:
            seen.add(value)
            result.append(value)
    return result
