from __future__ import annotations

import asyncio
from typing import Dict, Iterable, Tuple

from loguru import logger

from .errors import StoreError
from .models import Identity, ParticipantKind
from .store import BaseDocumentStore


class _Unknown:
    def __repr__(self) -> str:
        return "UNKNOWN"

    def __bool__(self) -> bool:
        return False


UNKNOWN = _Unknown()

Resolved = Identity | _Unknown


class ParticipantResolver:
    """Session cache of counterpart profiles.

    ``resolve`` fetches each distinct uid at most once; ids already cached or
    already being fetched are not requested again until ``invalidate``.
    """

    def __init__(self, store: BaseDocumentStore) -> None:
        self._store = store
        self._cache: Dict[str, Resolved] = {}
        self._inflight: Dict[str, asyncio.Future] = {}
        self._generation = 0

    def lookup(self, uid: str) -> Resolved | None:
        """Return the cached profile, ``UNKNOWN``, or ``None`` while still loading."""

        return self._cache.get(uid)

    def invalidate(self) -> None:
        self._generation += 1
        self._cache.clear()
        self._inflight.clear()

    async def resolve(self, refs: Iterable[Tuple[str, ParticipantKind | None]]) -> Dict[str, Resolved]:
        wanted: Dict[str, ParticipantKind | None] = {}
        for uid, kind in refs:
            if wanted.get(uid) is None:
                wanted[uid] = kind

        pending = []
        for uid, kind in wanted.items():
            if uid in self._cache:
                continue
            future = self._inflight.get(uid)
            if future is None:
                future = asyncio.ensure_future(self._fetch(uid, kind, self._generation))
                self._inflight[uid] = future
            pending.append(future)
        if pending:
            await asyncio.gather(*pending)

        return {uid: self._cache[uid] for uid in wanted if uid in self._cache}

    async def _fetch(self, uid: str, kind: ParticipantKind | None, generation: int) -> None:
        kinds = [kind] if kind is not None else list(ParticipantKind)
        result: Resolved = UNKNOWN
        try:
            for candidate in kinds:
                doc = await self._store.get(candidate.collection, uid)
                if doc is None:
                    continue
                try:
                    result = Identity.from_doc(uid, doc.data, kind=candidate)
                except ValueError as exc:
                    logger.warning(f"Profile {uid} in {candidate.collection} is malformed: {exc}")
                break
        except StoreError as exc:
            logger.warning(f"Could not resolve participant {uid}: {exc}")
            return
        finally:
            if generation == self._generation:
                self._inflight.pop(uid, None)
        if generation != self._generation:
            return
        if result is UNKNOWN:
            logger.info(f"Participant {uid} has no profile; treating as unknown")
        self._cache[uid] = result
