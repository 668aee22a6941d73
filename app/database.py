import logging
from collections import defaultdict
from collections.abc import Callable, Collection, Mapping
from dataclasses import dataclass, field
from itertools import count
from typing import Any

from pydantic import BaseModel

from app.errors import NotFoundError, StoreUnavailableError

logger = logging.getLogger(__name__)

Listener = Callable[[list[Any]], None]
ErrorListener = Callable[[StoreUnavailableError], None]
Unsubscribe = Callable[[], None]


def _matches(
    doc: BaseModel,
    where: Mapping[str, Any] | None,
    where_in: Mapping[str, Collection[Any]] | None,
) -> bool:
    for name, expected in (where or {}).items():
        if getattr(doc, name) != expected:
            return False
    for name, allowed in (where_in or {}).items():
        if getattr(doc, name) not in allowed:
            return False
    return True


@dataclass
class _Subscription:
    collection: str
    callback: Listener
    where: Mapping[str, Any] | None = None
    where_in: Mapping[str, Collection[Any]] | None = None
    order_by: str | None = None
    descending: bool = False
    on_error: ErrorListener | None = None
    active: bool = True


@dataclass
class _Op:
    kind: str  # "put" | "update" | "delete"
    collection: str
    doc_id: str
    doc: BaseModel | None = None
    changes: dict[str, Any] = field(default_factory=dict)


class WriteBatch:
    """
    Collects writes and applies them all-or-nothing on commit().
    """

    def __init__(self, store: "InMemoryDocumentStore") -> None:
        self._store = store
        self._ops: list[_Op] = []
        self._committed = False

    def put(self, collection: str, doc_id: str, doc: BaseModel) -> "WriteBatch":
        self._ops.append(_Op("put", collection, doc_id, doc=doc))
        return self

    def update(self, collection: str, doc_id: str, **changes: Any) -> "WriteBatch":
        self._ops.append(_Op("update", collection, doc_id, changes=changes))
        return self

    def delete(self, collection: str, doc_id: str) -> "WriteBatch":
        self._ops.append(_Op("delete", collection, doc_id))
        return self

    def __len__(self) -> int:
        return len(self._ops)

    def commit(self) -> None:
        if self._committed:
            raise RuntimeError("batch already committed")
        self._store._apply(self._ops)
        self._committed = True


class InMemoryDocumentStore:
    """
    Simple in-memory document database: named collections of pydantic
    documents keyed by id, with batched writes and live queries.
    """

    def __init__(self) -> None:
        self._collections: defaultdict[str, dict[str, BaseModel]] = defaultdict(dict)
        self._subscriptions: list[_Subscription] = []
        self._offline: set[str] = set()
        self._sequence = count(1)

    def _check_online(self, collection: str) -> None:
        if collection in self._offline:
            raise StoreUnavailableError(f"{collection} is unavailable")

    def set_offline(self, collection: str, offline: bool = True) -> None:
        """Make every read and write on ``collection`` fail until restored."""
        if offline:
            self._offline.add(collection)
        else:
            self._offline.discard(collection)

    def next_sequence(self) -> int:
        return next(self._sequence)

    def put(self, collection: str, doc_id: str, doc: BaseModel) -> None:
        self.batch().put(collection, doc_id, doc).commit()

    def get(self, collection: str, doc_id: str) -> Any | None:
        self._check_online(collection)
        doc = self._collections[collection].get(doc_id)
        return doc.model_copy(deep=True) if doc is not None else None

    def delete(self, collection: str, doc_id: str) -> None:
        self.batch().delete(collection, doc_id).commit()

    def all(self, collection: str) -> list[Any]:
        return self.query(collection)

    def query(
        self,
        collection: str,
        *,
        where: Mapping[str, Any] | None = None,
        where_in: Mapping[str, Collection[Any]] | None = None,
        order_by: str | None = None,
        descending: bool = False,
    ) -> list[Any]:
        self._check_online(collection)
        docs = [
            doc.model_copy(deep=True)
            for doc in self._collections[collection].values()
            if _matches(doc, where, where_in)
        ]
        if order_by is not None:
            docs.sort(key=lambda d: getattr(d, order_by), reverse=descending)
        return docs

    def batch(self) -> WriteBatch:
        return WriteBatch(self)

    def update_if(
        self,
        collection: str,
        doc_id: str,
        *,
        expected: Mapping[str, Any],
        changes: Mapping[str, Any],
        extra: WriteBatch | None = None,
    ) -> bool:
        """
        Atomically apply ``changes`` if the document still has the
        ``expected`` field values. Writes queued in ``extra`` commit with it.
        Returns True if the update happened, False if the document moved on.
        """
        self._check_online(collection)
        current = self._collections[collection].get(doc_id)
        if current is None:
            raise NotFoundError(f"{collection}/{doc_id} not found")
        # check and set with no await in between
        if not _matches(current, expected, None):
            return False
        batch = extra if extra is not None else self.batch()
        batch._ops.insert(0, _Op("update", collection, doc_id, changes=dict(changes)))
        batch.commit()
        return True

    def subscribe(
        self,
        collection: str,
        callback: Listener,
        *,
        where: Mapping[str, Any] | None = None,
        where_in: Mapping[str, Collection[Any]] | None = None,
        order_by: str | None = None,
        descending: bool = False,
        on_error: ErrorListener | None = None,
    ) -> Unsubscribe:
        """
        Deliver the full matching result set now and after every change to
        ``collection``. Each delivery replaces the previous one.

        If ``collection`` is unavailable at subscribe time, ``on_error`` is
        called and the subscription stays registered, so the next write
        after the collection comes back delivers normally. Without
        ``on_error`` the error is raised and nothing stays registered.
        """
        sub = _Subscription(
            collection,
            callback,
            where,
            where_in,
            order_by,
            descending,
            on_error=on_error,
        )
        self._subscriptions.append(sub)

        def unsubscribe() -> None:
            sub.active = False
            if sub in self._subscriptions:
                self._subscriptions.remove(sub)

        try:
            self._deliver(sub)
        except StoreUnavailableError as exc:
            if on_error is None:
                unsubscribe()
                raise
            on_error(exc)
        except Exception:
            unsubscribe()
            raise
        return unsubscribe

    def _deliver(self, sub: _Subscription) -> None:
        docs = self.query(
            sub.collection,
            where=sub.where,
            where_in=sub.where_in,
            order_by=sub.order_by,
            descending=sub.descending,
        )
        sub.callback(docs)

    def _apply(self, ops: list[_Op]) -> None:
        # validate everything first so a failing op leaves no partial writes
        staged: dict[tuple[str, str], BaseModel | None] = {}
        for op in ops:
            self._check_online(op.collection)
            key = (op.collection, op.doc_id)
            current = (
                staged[key]
                if key in staged
                else self._collections[op.collection].get(op.doc_id)
            )
            if op.kind == "put":
                staged[key] = op.doc.model_copy(deep=True)
            elif op.kind == "update":
                if current is None:
                    raise NotFoundError(f"{op.collection}/{op.doc_id} not found")
                staged[key] = current.model_copy(update=op.changes, deep=True)
            else:
                staged[key] = None

        for (collection, doc_id), doc in staged.items():
            if doc is None:
                self._collections[collection].pop(doc_id, None)
            else:
                self._collections[collection][doc_id] = doc

        # the write has landed; a failing listener must not fail it or
        # starve the listeners after it
        touched = {collection for collection, _ in staged}
        for sub in list(self._subscriptions):
            if not (sub.active and sub.collection in touched):
                continue
            try:
                self._deliver(sub)
            except Exception:
                logger.exception("Listener on %s failed", sub.collection)
