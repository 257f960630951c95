import threading
import time

import pytest

from courserep.exceptions import NotFoundException, StoreUnavailableException, VersionConflictException
from courserep.repositories import (
    Filter,
    InMemoryDocumentStore,
    JSONDocumentStore,
    RedisDocumentStore,
    RepositoryFactory,
    where,
)


def test_create_assigns_id_and_first_version(store):
    doc_id = store.create("things", {'name': "a", 'id': "ignored", 'version': 42})
    doc = store.get("things", doc_id)
    assert doc == {'id': doc_id, 'version': 1, 'name': "a"}


def test_create_with_chosen_id_is_exclusive(store):
    assert store.create("pointers", {'n': 1}, doc_id="CS101") == "CS101"
    with pytest.raises(VersionConflictException):
        store.create("pointers", {'n': 2}, doc_id="CS101")
    assert store.get("pointers", "CS101")['n'] == 1


def test_get_returns_copies(store):
    doc_id = store.create("things", {'tags': ["x"]})
    store.get("things", doc_id)['tags'].append("y")
    assert store.get("things", doc_id)['tags'] == ["x"]


def test_conditional_update_checks_version(store):
    doc_id = store.create("things", {'count': 0})
    assert store.conditional_update("things", doc_id, 1, {'count': 1}) == 2

    with pytest.raises(VersionConflictException) as info:
        store.conditional_update("things", doc_id, 1, {'count': 5})
    assert info.value.actual_version == 2
    assert store.get("things", doc_id)['count'] == 1


def test_conditional_update_unknown_document(store):
    with pytest.raises(NotFoundException):
        store.conditional_update("things", "missing", 1, {})


def test_query_filters_orders_and_limits(store):
    store.create("things", {'course': "A", 'rank': "2", 'tags': ["x"]})
    store.create("things", {'course': "A", 'rank': "3", 'tags': ["y"]})
    store.create("things", {'course': "B", 'rank': "1", 'tags': ["x"]})

    ranks = [d['rank'] for d in store.query("things", [where('course', '==', "A")], order_by='rank', descending=True)]
    assert ranks == ["3", "2"]

    tagged = store.query("things", [where('tags', 'array-contains', "x")], order_by='rank', limit=1)
    assert [d['rank'] for d in tagged] == ["1"]

    assert len(store.query("things", [where('course', 'in', ["A", "B"])])) == 3
    assert len(store.query("things", [where('course', '!=', "A")])) == 1


def test_unknown_filter_operator():
    with pytest.raises(ValueError):
        Filter('a', '>', 1)


def test_watch_delivers_initial_and_relevant_changes(store):
    snapshots = []
    watch = store.watch("things", [where('course', '==', "A")], snapshots.append, order_by='n')

    a_id = store.create("things", {'course': "A", 'n': "1"})
    store.create("things", {'course': "B", 'n': "2"})
    store.conditional_update("things", a_id, 1, {'course': "B"})

    assert [len(s) for s in snapshots] == [0, 1, 0]

    watch.cancel()
    watch.cancel()
    store.create("things", {'course': "A", 'n': "3"})
    assert len(snapshots) == 3
    assert store.watch_count("things") == 0


def test_watch_never_goes_back_in_time(store):
    snapshots = []
    watch = store.watch("things", [], snapshots.append)
    assert watch.deliver(10, ["new"])
    assert not watch.deliver(5, ["old"])
    assert snapshots == [[], ["new"]]


def test_watch_snapshots_are_monotonic_under_concurrency(store):
    sizes = []
    store.watch("things", [], lambda docs: sizes.append(len(docs)))

    def writer():
        for _ in range(20):
            store.create("things", {})

    threads = [threading.Thread(target=writer) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sizes == sorted(sizes)
    assert sizes[-1] == 80


def test_json_store_persists_between_instances(tmp_path):
    path = str(tmp_path / "data" / "store.json")
    first = JSONDocumentStore(path)
    doc_id = first.create("things", {'name': "kept"})
    first.conditional_update("things", doc_id, 1, {'name': "changed"})

    second = JSONDocumentStore(path)
    assert second.get("things", doc_id) == {'id': doc_id, 'version': 2, 'name': "changed"}


def test_json_store_rejects_corrupt_file(tmp_path):
    path = tmp_path / "store.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(StoreUnavailableException):
        JSONDocumentStore(str(path))


def test_json_store_rolls_back_on_write_failure(tmp_path):
    store = JSONDocumentStore(str(tmp_path / "store.json"))
    doc_id = store.create("things", {'n': 1})

    def failing_persist():
        raise StoreUnavailableException("write", "disk full")

    store._persist = failing_persist
    with pytest.raises(StoreUnavailableException):
        store.conditional_update("things", doc_id, 1, {'n': 2})
    assert store.get("things", doc_id)['n'] == 1


def test_factory_creates_stores(tmp_path):
    assert isinstance(RepositoryFactory.create_store("memory"), InMemoryDocumentStore)
    assert isinstance(RepositoryFactory.create_store("json", file_path=str(tmp_path / "s.json")), JSONDocumentStore)
    with pytest.raises(ValueError):
        RepositoryFactory.create_store("json")
    with pytest.raises(ValueError):
        RepositoryFactory.create_store("sqlite")


class TestRedisDocumentStore:

    @pytest.fixture
    def redis_store(self):
        fakeredis = pytest.importorskip("fakeredis")
        return RedisDocumentStore(fakeredis.FakeRedis(decode_responses=True), prefix="test")

    def test_create_get_update(self, redis_store):
        doc_id = redis_store.create("things", {'name': "a", 'tags': ["x"]})
        assert redis_store.get("things", doc_id) == {'id': doc_id, 'version': 1, 'name': "a", 'tags': ["x"]}

        assert redis_store.conditional_update("things", doc_id, 1, {'name': "b"}) == 2
        assert redis_store.get("things", doc_id)['name'] == "b"

    def test_version_conflict(self, redis_store):
        doc_id = redis_store.create("things", {'n': 0})
        redis_store.conditional_update("things", doc_id, 1, {'n': 1})
        with pytest.raises(VersionConflictException):
            redis_store.conditional_update("things", doc_id, 1, {'n': 2})

    def test_missing_document(self, redis_store):
        assert redis_store.get("things", "nope") is None
        with pytest.raises(NotFoundException):
            redis_store.conditional_update("things", "nope", 1, {})

    def test_query(self, redis_store):
        redis_store.create("things", {'course': "A", 'at': "2"})
        redis_store.create("things", {'course': "A", 'at': "1"})
        redis_store.create("things", {'course': "B", 'at': "3"})
        docs = redis_store.query("things", [where('course', '==', "A")], order_by='at')
        assert [d['at'] for d in docs] == ["1", "2"]
        assert redis_store.ping()

    def test_create_with_chosen_id_is_exclusive(self, redis_store):
        assert redis_store.create("pointers", {'n': 1}, doc_id="CS101") == "CS101"
        with pytest.raises(VersionConflictException):
            redis_store.create("pointers", {'n': 2}, doc_id="CS101")
        assert redis_store.get("pointers", "CS101") == {'id': "CS101", 'version': 1, 'n': 1}
        assert [d['id'] for d in redis_store.query("pointers")] == ["CS101"]


def wait_for(predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


class TestRedisWatch:

    @pytest.fixture
    def redis_store(self):
        fakeredis = pytest.importorskip("fakeredis")
        return RedisDocumentStore(fakeredis.FakeRedis(decode_responses=True), prefix="test")

    @pytest.fixture
    def snapshots(self):
        return []

    @pytest.fixture
    def watch(self, redis_store, snapshots):
        watch = redis_store.watch("things", [where('course', '==', "A")], snapshots.append, order_by='n')
        yield watch
        watch.cancel()

    def test_initial_snapshot_then_push_after_commit(self, redis_store, watch, snapshots):
        assert snapshots == [[]]

        doc_id = redis_store.create("things", {'course': "A", 'n': 1})
        assert wait_for(lambda: len(snapshots) == 2)
        assert [d['id'] for d in snapshots[-1]] == [doc_id]

        redis_store.conditional_update("things", doc_id, 1, {'course': "B"})
        assert wait_for(lambda: len(snapshots) == 3)
        assert snapshots[-1] == []

    def test_unrelated_commits_are_not_pushed(self, redis_store, watch, snapshots):
        redis_store.create("things", {'course': "B", 'n': 1})
        redis_store.create("things", {'course': "A", 'n': 2})
        assert wait_for(lambda: len(snapshots) >= 2)
        time.sleep(0.2)
        assert len(snapshots) == 2
        assert [d['n'] for d in snapshots[-1]] == [2]

    def test_no_push_after_cancel(self, redis_store, watch, snapshots):
        watch.cancel()
        watch.cancel()
        redis_store.create("things", {'course': "A", 'n': 1})
        time.sleep(0.2)
        assert snapshots == [[]]
        assert not watch.active

    def test_keeps_listening_after_transient_failure(self, redis_store, watch, snapshots, monkeypatch):
        real_query = redis_store.query
        failures = []

        def flaky_query(*args, **kwargs):
            if not failures:
                failures.append(True)
                raise StoreUnavailableException("query", "connection reset")
            return real_query(*args, **kwargs)

        monkeypatch.setattr(redis_store, "query", flaky_query)
        redis_store.create("things", {'course': "A", 'n': 1})
        assert wait_for(lambda: failures)
        redis_store.create("things", {'course': "A", 'n': 2})

        assert wait_for(lambda: len(snapshots[-1]) == 2)
        assert [d['n'] for d in snapshots[-1]] == [1, 2]
        assert watch.active
