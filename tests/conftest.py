import pytest

from courserep.config import RetryPolicy
from courserep.models import ActorContext, Role
from courserep.notifications import RecordingNotificationDispatcher
from courserep.repositories import InMemoryDocumentStore
from courserep.services import (
    AnnouncementBroadcaster,
    RepresentativeRegistry,
    RequestWorkflowEngine,
)
from courserep.subscriptions import SubscriptionManager

COURSE = "CS101"
COURSE_NAME = "Intro to Computing"


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def retry_policy():
    return RetryPolicy(max_attempts=10, base_delay=0)


@pytest.fixture
def dispatcher():
    return RecordingNotificationDispatcher()


@pytest.fixture
def registry(store, retry_policy):
    return RepresentativeRegistry(store, retry_policy=retry_policy)


@pytest.fixture
def workflow(store, registry, dispatcher, retry_policy):
    return RequestWorkflowEngine(store, registry, dispatcher, retry_policy)


@pytest.fixture
def broadcaster(store, registry, retry_policy):
    return AnnouncementBroadcaster(store, registry, retry_policy)


@pytest.fixture
def subscriptions(store):
    manager = SubscriptionManager(store)
    yield manager
    manager.unsubscribe_all()


@pytest.fixture
def admin():
    return ActorContext("admin-1", "Admin", Role.ADMIN)


@pytest.fixture
def rep():
    return ActorContext("stu-1", "Rita Rep", Role.STUDENT)


@pytest.fixture
def other_student():
    return ActorContext("stu-2", "Sam Student", Role.STUDENT)


@pytest.fixture
def lecturer1():
    return ActorContext("lec-1", "Dr One", Role.LECTURER)


@pytest.fixture
def lecturer2():
    return ActorContext("lec-2", "Dr Two", Role.LECTURER)


@pytest.fixture
def lecturer3():
    return ActorContext("lec-3", "Dr Three", Role.LECTURER)


@pytest.fixture
def assigned(registry, lecturer1, rep):
    """The default course with rep as its active representative"""
    return registry.assign_representative(lecturer1, COURSE, COURSE_NAME, rep.user_id, rep.name)


def assignment_fields(**overrides):
    fields = {
        'title': "Essay on sorting",
        'description': "Two pages comparing merge sort and quicksort",
        'reasonForRequest': "Midterm practice",
        'dueDate': "2030-05-01T12:00:00+00:00",
    }
    fields.update(overrides)
    return fields


@pytest.fixture
def make_request(workflow, rep, assigned):
    def _make(targets=("lec-1", "lec-2"), request_type="assignment", **overrides):
        return workflow.create_request(rep, COURSE, COURSE_NAME, request_type, list(targets),
                                       assignment_fields(**overrides))
    return _make
