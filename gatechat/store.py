"""
store.py — in-process document store with live change notification.

What the rest of the portal relies on:
- Documents live in named collections, keyed by id, as plain dicts.
- `run_transaction()` is a read-modify-write on ONE document that holds a
  per-document lock, so compare-and-swap style updates are race-free.
- `watch_document()` / `watch_query()` hand back async iterators that first
  yield the current state and then every later change.
- `server_timestamp()` is strictly increasing, even if the clock stalls.

Writes await a zero-length sleep before committing; that yield stands in
for the round-trip of a remote store and lets concurrent callers interleave.
"""

import asyncio
import copy
import time
import uuid
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional, Tuple
from weakref import WeakValueDictionary

Doc = Dict[str, Any]
Predicate = Callable[[Doc], bool]

DELETE = object()   # returned by a transaction fn to delete the document
_CLOSED = object()  # queue sentinel that ends a subscription


class Subscription:
    """Async iterator over change events. Call close() to stop listening."""

    def __init__(self, on_close: Callable[["Subscription"], None]) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()
        self._on_close = on_close
        self.closed = False

    def push(self, event: Any) -> None:
        if not self.closed:
            self._queue.put_nowait(event)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._on_close(self)
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> Any:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    async def next(self, timeout: Optional[float] = None) -> Any:
        """Await the next event (raises asyncio.TimeoutError after `timeout`)."""
        return await asyncio.wait_for(self.__anext__(), timeout)


class DocumentStore:
    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._data: Dict[str, Dict[str, Doc]] = defaultdict(dict)
        # Held only while some caller is using it; idle locks are dropped.
        self._locks: "WeakValueDictionary[Tuple[str, str], asyncio.Lock]" = WeakValueDictionary()
        self._doc_watchers: Dict[Tuple[str, str], List[Subscription]] = defaultdict(list)
        self._query_watchers: Dict[str, List[Tuple[Predicate, Subscription]]] = defaultdict(list)
        self._last_ts = 0.0

    # ----------
    # Time & ids
    # ----------

    def now(self) -> float:
        return self._clock()

    def server_timestamp(self) -> float:
        ts = max(self._clock(), self._last_ts + 1e-6)
        self._last_ts = ts
        return ts

    @staticmethod
    def new_id() -> str:
        return uuid.uuid4().hex

    # -----
    # Reads
    # -----

    def get(self, collection: str, doc_id: str) -> Optional[Doc]:
        doc = self._data[collection].get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    def query(
        self,
        collection: str,
        where: Optional[Predicate] = None,
        order_by: Optional[str] = None,
    ) -> List[Doc]:
        docs = [d for d in self._data[collection].values() if where is None or where(d)]
        if order_by:
            docs.sort(key=lambda d: d.get(order_by) or 0)
        return [copy.deepcopy(d) for d in docs]

    # ------
    # Writes
    # ------

    async def set(
        self,
        collection: str,
        doc_id: str,
        data: Doc,
        merge: bool = False,
        timestamp_field: Optional[str] = None,
    ) -> Doc:
        async with self._lock(collection, doc_id):
            await asyncio.sleep(0)
            return self._write(collection, doc_id, data, merge, timestamp_field)

    async def add(self, collection: str, data: Doc, timestamp_field: Optional[str] = None) -> Doc:
        return await self.set(collection, self.new_id(), data, timestamp_field=timestamp_field)

    async def update(self, collection: str, doc_id: str, changes: Doc) -> Optional[Doc]:
        """Merge `changes` into an existing document; None if it doesn't exist."""
        def apply(current: Optional[Doc]):
            if current is None:
                return None, None
            current.update(changes)
            return current, current
        return await self.run_transaction(collection, doc_id, apply)

    async def delete(self, collection: str, doc_id: str) -> bool:
        return await self.run_transaction(
            collection, doc_id, lambda current: (DELETE, True) if current else (None, False)
        )

    async def run_transaction(self, collection: str, doc_id: str, fn: Callable[[Optional[Doc]], Tuple[Any, Any]]) -> Any:
        """
        Atomic read-modify-write of one document.

        `fn(snapshot)` gets a private copy (or None) and returns
        `(new_doc, result)`: a dict replaces the document, DELETE removes it,
        None leaves it untouched. `result` is handed back to the caller.
        """
        async with self._lock(collection, doc_id):
            snapshot = self.get(collection, doc_id)
            await asyncio.sleep(0)
            new_doc, result = fn(snapshot)
            if new_doc is DELETE:
                self._remove(collection, doc_id)
            elif new_doc is not None:
                self._write(collection, doc_id, new_doc)
            return result

    def _lock(self, collection: str, doc_id: str) -> asyncio.Lock:
        key = (collection, doc_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def _write(
        self,
        collection: str,
        doc_id: str,
        data: Doc,
        merge: bool = False,
        timestamp_field: Optional[str] = None,
    ) -> Doc:
        existing = self._data[collection].get(doc_id)
        doc: Doc = dict(existing) if (merge and existing) else {}
        doc.update(copy.deepcopy(data))
        doc["id"] = doc_id
        # Stamped here, in the same step as the insert, so log order == timestamp order.
        if timestamp_field:
            doc[timestamp_field] = self.server_timestamp()
        self._data[collection][doc_id] = doc
        self._notify(collection, doc_id, doc)
        return copy.deepcopy(doc)

    def _remove(self, collection: str, doc_id: str) -> None:
        if self._data[collection].pop(doc_id, None) is not None:
            self._notify(collection, doc_id, None)

    # -------------
    # Subscriptions
    # -------------

    def watch_document(self, collection: str, doc_id: str) -> Subscription:
        """Yields the current snapshot, then each new snapshot (None once deleted)."""
        key = (collection, doc_id)
        sub = Subscription(lambda s: self._unwatch_document(key, s))
        self._doc_watchers[key].append(sub)
        sub.push(self.get(collection, doc_id))
        return sub

    def _unwatch_document(self, key: Tuple[str, str], sub: Subscription) -> None:
        watchers = self._doc_watchers.get(key, [])
        if sub in watchers:
            watchers.remove(sub)
        if not watchers:
            self._doc_watchers.pop(key, None)

    def watch_query(
        self,
        collection: str,
        where: Optional[Predicate] = None,
        order_by: Optional[str] = None,
    ) -> Subscription:
        """Yields every matching document now (ordered), then each added/changed match."""
        pred: Predicate = where or (lambda _doc: True)
        entry: Tuple[Predicate, Subscription]
        sub = Subscription(lambda s: self._query_watchers[collection].remove(entry))
        entry = (pred, sub)
        self._query_watchers[collection].append(entry)
        for doc in self.query(collection, pred, order_by):
            sub.push(doc)
        return sub

    def _notify(self, collection: str, doc_id: str, doc: Optional[Doc]) -> None:
        for sub in list(self._doc_watchers.get((collection, doc_id), ())):
            sub.push(copy.deepcopy(doc))
        if doc is None:
            return
        for pred, sub in list(self._query_watchers.get(collection, ())):
            if pred(doc):
                sub.push(copy.deepcopy(doc))
