"""Document store contract plus an in-process implementation.

Collections are addressed by slash-separated names (``conversations`` or
``conversations/<id>/messages``); documents are JSON-compatible dicts. Every
write republishes the collection to the subscription hub so live queries see
the new result set.
"""

from __future__ import annotations

import copy
import secrets
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Sequence

from .errors import DocumentExists, DocumentNotFound, StoreError
from .live import ErrorCallback, SnapshotCallback, Subscription, SubscriptionHub


def _now_ms() -> int:
    return int(time.time() * 1000)


class _ServerTimestamp:
    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()


@dataclass(frozen=True)
class Increment:
    amount: int = 1


class ArrayUnion:
    def __init__(self, *values: Any) -> None:
        self.values = values


class ArrayRemove:
    def __init__(self, *values: Any) -> None:
        self.values = values


def get_path(data: Mapping[str, Any], path: str) -> Any:
    node: Any = data
    for part in path.split("."):
        if not isinstance(node, Mapping) or part not in node:
            return None
        node = node[part]
    return node


def _set_path(data: Dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    node = data
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    node[parts[-1]] = value


def _resolve(value: Any, current: Any, now_ms: int) -> Any:
    if value is SERVER_TIMESTAMP:
        return now_ms
    if isinstance(value, Increment):
        base = current if isinstance(current, (int, float)) else 0
        return base + value.amount
    if isinstance(value, ArrayUnion):
        merged = list(current) if isinstance(current, list) else []
        for item in value.values:
            if item not in merged:
                merged.append(copy.deepcopy(item))
        return merged
    if isinstance(value, ArrayRemove):
        kept = list(current) if isinstance(current, list) else []
        return [item for item in kept if item not in value.values]
    if isinstance(value, Mapping):
        return {key: _resolve(item, None, now_ms) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_resolve(item, None, now_ms) for item in value]
    return value


def apply_update(current: Mapping[str, Any], partial: Mapping[str, Any], now_ms: int) -> Dict[str, Any]:
    """Return ``current`` with ``partial`` merged in; keys may be dotted paths."""

    updated = copy.deepcopy(dict(current))
    for path, value in partial.items():
        _set_path(updated, path, _resolve(value, get_path(updated, path), now_ms))
    return updated


@dataclass(frozen=True)
class Document:
    id: str
    data: Dict[str, Any]
    seq: int
    version: int = 1

    def get(self, path: str) -> Any:
        return get_path(self.data, path)


_OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "==": lambda left, right: left == right,
    "!=": lambda left, right: left != right,
    "<": lambda left, right: left is not None and left < right,
    "<=": lambda left, right: left is not None and left <= right,
    ">": lambda left, right: left is not None and left > right,
    ">=": lambda left, right: left is not None and left >= right,
    "array-contains": lambda left, right: isinstance(left, list) and right in left,
}


@dataclass(frozen=True)
class Filter:
    field: str
    op: str
    value: Any

    def __post_init__(self) -> None:
        if self.op not in _OPERATORS:
            raise ValueError(f"unsupported filter operator: {self.op}")

    def matches(self, doc: Document) -> bool:
        return _OPERATORS[self.op](doc.get(self.field), self.value)


@dataclass(frozen=True)
class Order:
    field: str
    descending: bool = False


def _sort_key(value: Any) -> tuple:
    # missing values sort first ascending, last descending
    return (0, 0) if value is None else (1, value)


def evaluate(docs: Iterable[Document], filters: Sequence[Filter], ordering: Sequence[Order]) -> List[Document]:
    selected = [doc for doc in docs if all(f.matches(doc) for f in filters)]
    selected.sort(key=lambda doc: doc.seq, reverse=ordering[0].descending if ordering else False)
    try:
        for order in reversed(ordering):
            selected.sort(key=lambda doc, path=order.field: _sort_key(doc.get(path)), reverse=order.descending)
    except TypeError as exc:
        raise StoreError(f"unorderable values for {[o.field for o in ordering]}") from exc
    return selected


class LiveQuery:
    def __init__(
        self,
        store: "BaseDocumentStore",
        collection: str,
        filters: Sequence[Filter] = (),
        ordering: Sequence[Order] = (),
    ) -> None:
        self.store = store
        self.collection = collection
        self.filters = tuple(filters)
        self.ordering = tuple(ordering)

    def _evaluate(self) -> List[Document]:
        return evaluate(self.store._scan(self.collection), self.filters, self.ordering)

    def subscribe(self, on_snapshot: SnapshotCallback, on_error: ErrorCallback | None = None) -> Subscription:
        subscription = Subscription(self.store.hub, self.collection, self._evaluate, on_snapshot, on_error)
        return self.store.hub.register(subscription)

    async def get(self) -> List[Document]:
        return self._evaluate()


class BaseDocumentStore:
    """Shared query evaluation and live delivery for concrete stores."""

    def __init__(self, *, now_func: Callable[[], int] = _now_ms) -> None:
        self.hub = SubscriptionHub()
        self._now = now_func

    def now(self) -> int:
        return self._now()

    def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        ordering: Sequence[Order] = (),
    ) -> LiveQuery:
        return LiveQuery(self, collection, filters, ordering)

    async def get(self, collection: str, doc_id: str) -> Document | None:
        return self._load(collection, doc_id)

    async def create(self, collection: str, data: Mapping[str, Any], doc_id: str | None = None) -> str:
        doc_id = doc_id or secrets.token_hex(10)
        resolved = _resolve(dict(data), None, self._now())
        self._insert(collection, doc_id, resolved)
        self.hub.publish(collection)
        return doc_id

    async def update(self, collection: str, doc_id: str, partial: Mapping[str, Any]) -> None:
        now_ms = self._now()
        self._modify(collection, doc_id, lambda current: apply_update(current, partial, now_ms))
        self.hub.publish(collection)

    def _scan(self, collection: str) -> List[Document]:
        raise NotImplementedError

    def _load(self, collection: str, doc_id: str) -> Document | None:
        raise NotImplementedError

    def _insert(self, collection: str, doc_id: str, data: Dict[str, Any]) -> Document:
        raise NotImplementedError

    def _modify(
        self, collection: str, doc_id: str, mutate: Callable[[Dict[str, Any]], Dict[str, Any]]
    ) -> Document:
        raise NotImplementedError


class InMemoryDocumentStore(BaseDocumentStore):
    def __init__(self, *, now_func: Callable[[], int] = _now_ms) -> None:
        super().__init__(now_func=now_func)
        self._collections: Dict[str, Dict[str, Document]] = {}
        self._next_seq = 1

    def _scan(self, collection: str) -> List[Document]:
        return list(self._collections.get(collection, {}).values())

    def _load(self, collection: str, doc_id: str) -> Document | None:
        return self._collections.get(collection, {}).get(doc_id)

    def _insert(self, collection: str, doc_id: str, data: Dict[str, Any]) -> Document:
        docs = self._collections.setdefault(collection, {})
        if doc_id in docs:
            raise DocumentExists(f"{collection}/{doc_id} already exists")
        doc = Document(id=doc_id, data=data, seq=self._next_seq)
        self._next_seq += 1
        docs[doc_id] = doc
        return doc

    def _modify(
        self, collection: str, doc_id: str, mutate: Callable[[Dict[str, Any]], Dict[str, Any]]
    ) -> Document:
        docs = self._collections.get(collection, {})
        current = docs.get(doc_id)
        if current is None:
            raise DocumentNotFound(f"{collection}/{doc_id} not found")
        doc = Document(id=doc_id, data=mutate(current.data), seq=current.seq, version=current.version + 1)
        docs[doc_id] = doc
        return doc
