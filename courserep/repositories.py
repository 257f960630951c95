"""
Document Store Classes for the Course Representative Engine

This module implements the Repository pattern for document access. The
services only ever talk to the DocumentStore interface: create, get,
version-checked conditional updates, filtered queries and live watches.
Three implementations are provided: in-memory (tests and development),
a JSON file, and Redis.
"""

import copy
import json
import logging
import os
import threading
import time
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional

import redis

from .exceptions import (
    CourseRepException,
    NotFoundException,
    StoreUnavailableException,
    VersionConflictException,
)

logger = logging.getLogger(__name__)

Document = Dict[str, Any]
SnapshotCallback = Callable[[List[Document]], None]

_META_FIELDS = ('id', 'version')


@dataclass(frozen=True)
class Filter:
    """
    A single query predicate on a top-level document field

    Supported operators: ``==``, ``!=``, ``in`` and ``array-contains``.
    """
    field: str
    op: str
    value: Any

    OPERATORS = ('==', '!=', 'in', 'array-contains')

    def __post_init__(self):
        if self.op not in self.OPERATORS:
            raise ValueError(f"Unsupported filter operator: {self.op}")

    def matches(self, doc: Document) -> bool:
        actual = doc.get(self.field)
        if self.op == '==':
            return actual == self.value
        if self.op == '!=':
            return actual != self.value
        if self.op == 'in':
            return actual in self.value
        return isinstance(actual, list) and self.value in actual


def where(field: str, op: str, value: Any) -> Filter:
    """Shorthand constructor for a Filter"""
    return Filter(field, op, value)


def apply_query(docs: List[Document], filters: Optional[List[Filter]] = None,
                order_by: Optional[str] = None, descending: bool = False,
                limit: Optional[int] = None) -> List[Document]:
    """
    Filter, order and limit a list of documents

    Documents missing the ordering field sort as if it were empty.
    """
    matched = [doc for doc in docs if all(f.matches(doc) for f in filters or [])]
    if order_by:
        matched.sort(key=lambda doc: (doc.get(order_by) is not None, doc.get(order_by) or ''),
                     reverse=descending)
    if limit is not None:
        matched = matched[:limit]
    return matched


class Watch:
    """
    Handle for a live query registered on a document store

    Delivers full snapshots to a callback. Each delivery carries a
    sequence number; a snapshot older than one already delivered is
    dropped so subscribers never go back in time.
    """

    def __init__(self, collection: str, filters: List[Filter], callback: SnapshotCallback,
                 order_by: Optional[str] = None, descending: bool = False,
                 on_cancel: Optional[Callable[['Watch'], None]] = None):
        self.collection = collection
        self.filters = list(filters)
        self.order_by = order_by
        self.descending = descending
        self._callback = callback
        self._on_cancel = on_cancel
        self._lock = threading.RLock()
        self._last_sequence = -1
        self._cancelled = False

    @property
    def active(self) -> bool:
        return not self._cancelled

    def relevant(self, *docs: Optional[Document]) -> bool:
        """True if any of the given document states matches this watch"""
        return any(doc is not None and all(f.matches(doc) for f in self.filters) for doc in docs)

    def deliver(self, sequence: int, snapshot: List[Document]) -> bool:
        """
        Push a snapshot to the callback unless it is stale

        Args:
            sequence: Commit sequence the snapshot was taken at
            snapshot: Full current result set

        Returns:
            True if the callback was invoked
        """
        with self._lock:
            if self._cancelled or sequence <= self._last_sequence:
                return False
            self._last_sequence = sequence
            try:
                self._callback(snapshot)
            except Exception:
                logger.exception(f"Snapshot callback failed for watch on {self.collection}")
            return True

    def cancel(self) -> None:
        """Stop delivery and release store resources. Safe to call twice."""
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
        if self._on_cancel:
            self._on_cancel(self)


class DocumentStore(ABC):
    """
    Abstract base class for document stores

    Every document carries an ``id`` and an integer ``version`` that
    starts at 1 and increases with each successful write.
    """

    @abstractmethod
    def create(self, collection: str, doc: Document, doc_id: Optional[str] = None) -> str:
        """
        Insert a new document

        Args:
            collection: Collection name
            doc: Document fields; any id or version is ignored
            doc_id: Optional caller-chosen ID (generated if omitted)

        Returns:
            The document ID

        Raises:
            VersionConflictException: If a document with doc_id already exists
            StoreUnavailableException: If the store cannot be written
        """
        pass

    @abstractmethod
    def get(self, collection: str, doc_id: str) -> Optional[Document]:
        """
        Read one document

        Returns:
            A copy of the document including id and version, or None
        """
        pass

    @abstractmethod
    def conditional_update(self, collection: str, doc_id: str, expected_version: int,
                           patch: Document) -> int:
        """
        Merge top-level fields into a document if its version is unchanged

        Args:
            collection: Collection name
            doc_id: Document ID
            expected_version: Version the caller read
            patch: Top-level fields to overwrite

        Returns:
            The new version

        Raises:
            NotFoundException: If the document does not exist
            VersionConflictException: If the stored version differs
        """
        pass

    @abstractmethod
    def query(self, collection: str, filters: Optional[List[Filter]] = None,
              order_by: Optional[str] = None, descending: bool = False,
              limit: Optional[int] = None) -> List[Document]:
        """
        Return copies of all documents matching every filter
        """
        pass

    @abstractmethod
    def watch(self, collection: str, filters: List[Filter], callback: SnapshotCallback,
              order_by: Optional[str] = None, descending: bool = False) -> Watch:
        """
        Register a live query

        The callback receives the current result set immediately and
        again after every committed change to a matching document.

        Returns:
            Watch handle; cancel() stops delivery
        """
        pass

    def ping(self) -> bool:
        """Check that the store is reachable"""
        return True


class InMemoryDocumentStore(DocumentStore):
    """
    In-memory document store

    All reads and writes are serialized by one lock. Each commit is
    stamped with a sequence number that orders watch deliveries.
    """

    def __init__(self, initial_data: Optional[Dict[str, Dict[str, Document]]] = None):
        """
        Initialize in-memory store

        Args:
            initial_data: Optional mapping of collection -> id -> document
        """
        self._lock = threading.RLock()
        self._collections: Dict[str, Dict[str, Document]] = copy.deepcopy(initial_data) if initial_data else {}
        self._watches: Dict[str, List[Watch]] = {}
        self._sequence = 0

    def _docs(self, collection: str) -> Dict[str, Document]:
        return self._collections.setdefault(collection, {})

    def _persist(self) -> None:
        """Hook called after every commit while the lock is held"""
        pass

    def _commit(self, collection: str, before: Optional[Document], after: Document) -> tuple:
        """
        Store a document state and collect snapshots for affected watches

        Must be called with the lock held. The change is reverted if
        persisting fails.

        Returns:
            Tuple of (sequence, [(watch, snapshot), ...]) to dispatch
        """
        docs = self._docs(collection)
        docs[after['id']] = after
        try:
            self._persist()
        except StoreUnavailableException:
            if before is None:
                docs.pop(after['id'], None)
            else:
                docs[after['id']] = before
            raise

        self._sequence += 1
        pending = [
            (watch, self._snapshot(watch))
            for watch in list(self._watches.get(collection, []))
            if watch.relevant(before, after)
        ]
        return self._sequence, pending

    @staticmethod
    def _dispatch(sequence: int, pending: list) -> None:
        for watch, snapshot in pending:
            watch.deliver(sequence, snapshot)

    def _snapshot(self, watch: Watch) -> List[Document]:
        return apply_query(
            [copy.deepcopy(doc) for doc in self._docs(watch.collection).values()],
            watch.filters, watch.order_by, watch.descending,
        )

    def create(self, collection: str, doc: Document, doc_id: Optional[str] = None) -> str:
        doc_id = doc_id or uuid.uuid4().hex
        stored = {k: v for k, v in copy.deepcopy(doc).items() if k not in _META_FIELDS}
        stored.update(id=doc_id, version=1)
        with self._lock:
            existing = self._docs(collection).get(doc_id)
            if existing is not None:
                raise VersionConflictException(collection, doc_id, 0, existing['version'])
            sequence, pending = self._commit(collection, None, stored)
        self._dispatch(sequence, pending)
        return doc_id

    def get(self, collection: str, doc_id: str) -> Optional[Document]:
        with self._lock:
            doc = self._docs(collection).get(doc_id)
            return copy.deepcopy(doc) if doc is not None else None

    def conditional_update(self, collection: str, doc_id: str, expected_version: int,
                           patch: Document) -> int:
        with self._lock:
            current = self._docs(collection).get(doc_id)
            if current is None:
                raise NotFoundException(collection, doc_id)
            if current['version'] != expected_version:
                raise VersionConflictException(collection, doc_id, expected_version, current['version'])

            updated = copy.deepcopy(current)
            updated.update({k: copy.deepcopy(v) for k, v in patch.items() if k not in _META_FIELDS})
            updated['version'] = current['version'] + 1
            sequence, pending = self._commit(collection, current, updated)
        self._dispatch(sequence, pending)
        return updated['version']

    def query(self, collection: str, filters: Optional[List[Filter]] = None,
              order_by: Optional[str] = None, descending: bool = False,
              limit: Optional[int] = None) -> List[Document]:
        with self._lock:
            docs = [copy.deepcopy(doc) for doc in self._docs(collection).values()]
        return apply_query(docs, filters, order_by, descending, limit)

    def watch(self, collection: str, filters: List[Filter], callback: SnapshotCallback,
              order_by: Optional[str] = None, descending: bool = False) -> Watch:
        watch = Watch(collection, filters, callback, order_by, descending, on_cancel=self._remove_watch)
        with self._lock:
            self._watches.setdefault(collection, []).append(watch)
            sequence = self._sequence
            snapshot = self._snapshot(watch)
        watch.deliver(sequence, snapshot)
        return watch

    def _remove_watch(self, watch: Watch) -> None:
        with self._lock:
            watches = self._watches.get(watch.collection, [])
            if watch in watches:
                watches.remove(watch)

    def watch_count(self, collection: str) -> int:
        """Number of live watches on a collection"""
        with self._lock:
            return len(self._watches.get(collection, []))

    def clear(self) -> None:
        """Clear all documents from memory"""
        with self._lock:
            self._collections.clear()


class JSONDocumentStore(InMemoryDocumentStore):
    """
    JSON file-backed document store

    Keeps the working set in memory and rewrites the whole file after
    every commit. Suitable for a single process.
    """

    def __init__(self, file_path: str):
        """
        Initialize JSON store

        Args:
            file_path: Path to the JSON file

        Raises:
            StoreUnavailableException: If an existing file cannot be read
        """
        self.file_path = file_path
        super().__init__(self._load())

    def exists(self) -> bool:
        return os.path.exists(self.file_path)

    def _load(self) -> Dict[str, Dict[str, Document]]:
        if not self.exists():
            return {}
        try:
            with open(self.file_path, 'r', encoding='utf-8') as f:
                return json.load(f)
        except json.JSONDecodeError as e:
            raise StoreUnavailableException("read", f"Invalid JSON in {self.file_path}: {str(e)}")
        except OSError as e:
            raise StoreUnavailableException("read", f"Cannot read {self.file_path}: {str(e)}")

    def _persist(self) -> None:
        try:
            directory = os.path.dirname(self.file_path)
            if directory:
                os.makedirs(directory, exist_ok=True)

            tmp_path = f"{self.file_path}.tmp"
            with open(tmp_path, 'w', encoding='utf-8') as f:
                json.dump(self._collections, f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, self.file_path)
        except (OSError, TypeError) as e:
            raise StoreUnavailableException("write", f"Cannot write {self.file_path}: {str(e)}")


@contextmanager
def _redis_errors(operation: str) -> Iterator[None]:
    """Translate redis connectivity errors into StoreUnavailableException"""
    try:
        yield
    except (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError) as e:
        raise StoreUnavailableException(operation, str(e))


class RedisDocumentStore(DocumentStore):
    """
    Redis-backed document store

    Each document is a hash holding its version and JSON body. Conditional
    updates use WATCH/MULTI/EXEC; every commit publishes on a per-collection
    channel that watches listen to.
    """

    def __init__(self, client: redis.Redis, prefix: str = "courserep"):
        """
        Initialize Redis store

        Args:
            client: Redis client created with decode_responses=True
            prefix: Namespace for all keys and channels
        """
        self.client = client
        self.prefix = prefix

    def _key(self, collection: str, doc_id: str) -> str:
        return f"{self.prefix}:{collection}:{doc_id}"

    def _index_key(self, collection: str) -> str:
        return f"{self.prefix}:{collection}:_ids"

    def _channel(self, collection: str) -> str:
        return f"{self.prefix}:changes:{collection}"

    @staticmethod
    def _decode(doc_id: str, raw: Dict[str, str]) -> Document:
        doc = json.loads(raw['data'])
        doc['id'] = doc_id
        doc['version'] = int(raw['version'])
        return doc

    def _publish(self, collection: str, doc_id: str) -> None:
        self.client.publish(self._channel(collection), doc_id)

    def create(self, collection: str, doc: Document, doc_id: Optional[str] = None) -> str:
        chosen_id = doc_id is not None
        doc_id = doc_id or uuid.uuid4().hex
        key = self._key(collection, doc_id)
        body = {k: v for k, v in doc.items() if k not in _META_FIELDS}
        with _redis_errors("create"):
            with self.client.pipeline() as pipe:
                try:
                    # Caller-chosen IDs must not overwrite an existing document
                    if chosen_id:
                        pipe.watch(key)
                        if pipe.exists(key):
                            raise VersionConflictException(collection, doc_id, 0)
                        pipe.multi()
                    pipe.hset(key, mapping={'version': 1, 'data': json.dumps(body)})
                    pipe.sadd(self._index_key(collection), doc_id)
                    pipe.execute()
                except redis.exceptions.WatchError:
                    raise VersionConflictException(collection, doc_id, 0)
            self._publish(collection, doc_id)
        return doc_id

    def get(self, collection: str, doc_id: str) -> Optional[Document]:
        with _redis_errors("read"):
            raw = self.client.hgetall(self._key(collection, doc_id))
        return self._decode(doc_id, raw) if raw else None

    def conditional_update(self, collection: str, doc_id: str, expected_version: int,
                           patch: Document) -> int:
        key = self._key(collection, doc_id)
        with _redis_errors("write"):
            with self.client.pipeline() as pipe:
                try:
                    pipe.watch(key)
                    raw = pipe.hgetall(key)
                    if not raw:
                        raise NotFoundException(collection, doc_id)
                    current_version = int(raw['version'])
                    if current_version != expected_version:
                        raise VersionConflictException(collection, doc_id, expected_version, current_version)

                    body = json.loads(raw['data'])
                    body.update({k: v for k, v in patch.items() if k not in _META_FIELDS})
                    new_version = current_version + 1

                    pipe.multi()
                    pipe.hset(key, mapping={'version': new_version, 'data': json.dumps(body)})
                    pipe.execute()
                except redis.exceptions.WatchError:
                    raise VersionConflictException(collection, doc_id, expected_version)
            self._publish(collection, doc_id)
        return new_version

    def query(self, collection: str, filters: Optional[List[Filter]] = None,
              order_by: Optional[str] = None, descending: bool = False,
              limit: Optional[int] = None) -> List[Document]:
        with _redis_errors("query"):
            doc_ids = sorted(self.client.smembers(self._index_key(collection)))
            pipe = self.client.pipeline()
            for doc_id in doc_ids:
                pipe.hgetall(self._key(collection, doc_id))
            raws = pipe.execute()
        docs = [self._decode(doc_id, raw) for doc_id, raw in zip(doc_ids, raws) if raw]
        return apply_query(docs, filters, order_by, descending, limit)

    def watch(self, collection: str, filters: List[Filter], callback: SnapshotCallback,
              order_by: Optional[str] = None, descending: bool = False) -> Watch:
        sleep_time = 0.05
        watch = Watch(collection, filters, callback, order_by, descending)
        # ids: documents in the last delivered snapshot; stale: a refresh was missed
        state = {'sequence': 0, 'ids': set(), 'stale': False}

        def _reload() -> None:
            state['sequence'] += 1
            sequence = state['sequence']
            snapshot = self.query(collection, filters, order_by, descending)
            state['ids'] = {doc['id'] for doc in snapshot}
            state['stale'] = False
            watch.deliver(sequence, snapshot)

        def _on_change(message) -> None:
            if not watch.active:
                return
            try:
                doc_id = message['data']
                if not state['stale'] and doc_id not in state['ids']:
                    if not watch.relevant(self.get(collection, doc_id)):
                        return
                _reload()
            except (CourseRepException, redis.exceptions.RedisError):
                state['stale'] = True
                logger.exception(f"Refreshing watch on {collection} failed; retrying on the next change")

        def _on_listener_error(error, pubsub, thread) -> None:
            state['stale'] = True
            logger.warning(f"Change listener for {collection} failed: {error}")
            time.sleep(sleep_time)

        with _redis_errors("watch"):
            pubsub = self.client.pubsub(ignore_subscribe_messages=True)
            # Subscribe before the initial read so no commit falls in between
            pubsub.subscribe(**{self._channel(collection): _on_change})
            try:
                _reload()
            except (CourseRepException, redis.exceptions.RedisError):
                pubsub.close()
                raise
            worker = pubsub.run_in_thread(sleep_time=sleep_time, daemon=True,
                                          exception_handler=_on_listener_error)

        def _stop(_watch: Watch) -> None:
            worker.stop()
            if threading.current_thread() is not worker:
                worker.join(timeout=1.0)
            pubsub.close()

        watch._on_cancel = _stop
        return watch

    def ping(self) -> bool:
        with _redis_errors("ping"):
            return bool(self.client.ping())


class RepositoryFactory:
    """
    Factory class for creating document store instances

    Provides a centralized way to create the configured store type.
    """

    @staticmethod
    def create_memory_store(initial_data: Optional[Dict] = None) -> InMemoryDocumentStore:
        return InMemoryDocumentStore(initial_data)

    @staticmethod
    def create_json_store(file_path: str) -> JSONDocumentStore:
        return JSONDocumentStore(file_path)

    @staticmethod
    def create_redis_store(host: str = "localhost", port: int = 6379, db: int = 0,
                           prefix: str = "courserep") -> RedisDocumentStore:
        """
        Create a Redis store with a decoding client

        Returns:
            RedisDocumentStore instance
        """
        client = redis.Redis(host=host, port=port, db=db, decode_responses=True)
        return RedisDocumentStore(client, prefix)

    @staticmethod
    def create_store(store_type: str, **kwargs) -> DocumentStore:
        """
        Create a store based on type

        Args:
            store_type: 'memory', 'json' or 'redis'
            **kwargs: Additional arguments for store creation

        Returns:
            DocumentStore instance

        Raises:
            ValueError: If store type is not supported
        """
        store_type = store_type.lower()
        if store_type == 'memory':
            return RepositoryFactory.create_memory_store(kwargs.get('initial_data'))

        elif store_type == 'json':
            if 'file_path' not in kwargs:
                raise ValueError("file_path is required for JSON store")
            return RepositoryFactory.create_json_store(kwargs['file_path'])

        elif store_type == 'redis':
            return RepositoryFactory.create_redis_store(
                host=kwargs.get('host', 'localhost'),
                port=int(kwargs.get('port', 6379)),
                db=int(kwargs.get('db', 0)),
                prefix=kwargs.get('prefix', 'courserep'),
            )

        else:
            raise ValueError(f"Unsupported store type: {store_type}")
