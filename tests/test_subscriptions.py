import time

import pytest

from courserep.config import RetryPolicy
from courserep.exceptions import ValidationException
from courserep.models import RequestStatus
from courserep.notifications import RecordingNotificationDispatcher
from courserep.repositories import RedisDocumentStore
from courserep.services import REQUESTS_COLLECTION, RepresentativeRegistry, RequestWorkflowEngine
from courserep.subscriptions import SubscriberRole, SubscriptionManager, SubscriptionState

from .conftest import COURSE, COURSE_NAME, assignment_fields


def test_scenario_lecturer_feed(subscriptions, store, workflow, lecturer1, make_request):
    pushes = []
    subscription = subscriptions.subscribe_requests("lecturer", lecturer1.user_id, pushes.append)
    assert subscription.state == SubscriptionState.SUBSCRIBED
    assert pushes == [[]]

    request_id = make_request(targets=("lec-1", "lec-2"))
    assert [r.id for r in pushes[-1]] == [request_id]
    assert pushes[-1][0].status == RequestStatus.PENDING

    workflow.respond_to_request(lecturer1, request_id, "approved")
    assert len(pushes) == 3
    assert pushes[-1][0].status == RequestStatus.APPROVED

    subscription.unsubscribe()
    assert subscription.state == SubscriptionState.CANCELLED
    make_request(targets=("lec-1",))
    assert len(pushes) == 3
    assert store.watch_count(REQUESTS_COLLECTION) == 0


def test_representative_feed_is_full_snapshot(subscriptions, rep, make_request):
    pushes = []
    subscriptions.subscribe_requests(SubscriberRole.REPRESENTATIVE, rep.user_id, pushes.append)

    first = make_request(targets=("lec-1",))
    second = make_request(targets=("lec-2",))
    assert [r.id for r in pushes[-1]] == [second, first]


def test_unrelated_changes_are_not_pushed(subscriptions, lecturer3, make_request):
    pushes = []
    subscriptions.subscribe_requests("lecturer", lecturer3.user_id, pushes.append)
    make_request(targets=("lec-1", "lec-2"))
    assert pushes == [[]]


def test_double_unsubscribe_is_noop(subscriptions, rep):
    subscription = subscriptions.subscribe_requests("representative", rep.user_id, lambda snapshot: None)
    subscription.unsubscribe()
    subscription.unsubscribe()
    assert subscriptions.active_count == 0


def test_unsubscribe_all(subscriptions, store, rep, lecturer1):
    subscriptions.subscribe_requests("representative", rep.user_id, lambda snapshot: None)
    subscriptions.subscribe_requests("lecturer", lecturer1.user_id, lambda snapshot: None)
    assert subscriptions.active_count == 2

    assert subscriptions.unsubscribe_all() == 2
    assert subscriptions.active_count == 0
    assert store.watch_count(REQUESTS_COLLECTION) == 0


def test_failing_subscriber_does_not_break_writes(subscriptions, store, rep, make_request):
    def broken(snapshot):
        if snapshot:
            raise RuntimeError("ui crashed")

    subscriptions.subscribe_requests("representative", rep.user_id, broken)
    request_id = make_request()
    assert store.get(REQUESTS_COLLECTION, request_id) is not None


def test_invalid_subscription_arguments(subscriptions):
    with pytest.raises(ValidationException):
        subscriptions.subscribe_requests("dean", "u1", lambda snapshot: None)
    with pytest.raises(ValidationException):
        subscriptions.subscribe_requests("lecturer", "", lambda snapshot: None)


def test_announcement_feed(subscriptions, broadcaster, rep, assigned):
    pushes = []
    subscriptions.subscribe_announcements(COURSE, pushes.append)

    announcement_id = broadcaster.send_announcement(rep, COURSE, COURSE_NAME, {'title': "Hi", 'message': "Hello"})
    assert [a.id for a in pushes[-1]] == [announcement_id]

    broadcaster.record_view(rep, announcement_id)
    assert pushes[-1][0].view_count == 1

    broadcaster.expire_announcement(rep, announcement_id)
    assert pushes[-1] == []


def test_lecturer_feed_over_redis(lecturer1, rep):
    fakeredis = pytest.importorskip("fakeredis")
    store = RedisDocumentStore(fakeredis.FakeRedis(decode_responses=True), prefix="test")
    policy = RetryPolicy(max_attempts=10, base_delay=0)
    registry = RepresentativeRegistry(store, retry_policy=policy)
    workflow = RequestWorkflowEngine(store, registry, RecordingNotificationDispatcher(), policy)
    manager = SubscriptionManager(store)
    registry.assign_representative(lecturer1, COURSE, COURSE_NAME, rep.user_id, rep.name)

    pushes = []
    subscription = manager.subscribe_requests("lecturer", lecturer1.user_id, pushes.append)
    assert pushes == [[]]

    request_id = workflow.create_request(rep, COURSE, COURSE_NAME, "assignment", ["lec-1"], assignment_fields())
    workflow.respond_to_request(lecturer1, request_id, "approved")

    deadline = time.monotonic() + 3.0
    while time.monotonic() < deadline and not (pushes[-1] and pushes[-1][0].status == RequestStatus.APPROVED):
        time.sleep(0.02)
    assert [r.id for r in pushes[-1]] == [request_id]
    assert pushes[-1][0].status == RequestStatus.APPROVED

    subscription.unsubscribe()
    assert manager.active_count == 0
