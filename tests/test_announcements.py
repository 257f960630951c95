import threading
from datetime import timedelta

import pytest

from courserep.config import RetryPolicy
from courserep.exceptions import ForbiddenException, NotFoundException, ValidationException
from courserep.models import ActorContext, AnnouncementType, Role, TargetAudience, to_iso, utc_now
from courserep.services import ANNOUNCEMENTS_COLLECTION, AnnouncementBroadcaster

from .conftest import COURSE, COURSE_NAME


def _send(broadcaster, rep, **fields):
    payload = {'title': "Room change", 'message': "Lecture moves to hall B"}
    payload.update(fields)
    return broadcaster.send_announcement(rep, COURSE, COURSE_NAME, payload)


def _students(n):
    return [ActorContext(f"s-{i}", f"Student {i}", Role.STUDENT) for i in range(n)]


def test_send_announcement_defaults(broadcaster, store, rep, assigned):
    announcement_id = _send(broadcaster, rep, targetAudience="students")
    doc = store.get(ANNOUNCEMENTS_COLLECTION, announcement_id)

    assert doc['isActive'] is True
    assert doc['type'] == AnnouncementType.GENERAL.value
    assert doc['targetAudience'] == TargetAudience.STUDENTS.value
    assert doc['views'] == {} and doc['viewCount'] == 0
    assert doc['acknowledgedBy'] == {} and doc['acknowledgmentCount'] == 0
    assert doc['sentByUserId'] == rep.user_id


def test_only_representative_can_send(broadcaster, store, other_student, lecturer1, assigned):
    for actor in (other_student, lecturer1):
        with pytest.raises(ForbiddenException):
            _send(broadcaster, actor)
    assert store.query(ANNOUNCEMENTS_COLLECTION) == []


def test_send_permission_flag(broadcaster, registry, lecturer1, rep):
    registry.assign_representative(lecturer1, COURSE, COURSE_NAME, rep.user_id, rep.name,
                                   permissions={'sendAnnouncements': False})
    with pytest.raises(ForbiddenException):
        _send(broadcaster, rep)


@pytest.mark.parametrize("fields, field_name", [
    ({'title': ""}, "title"),
    ({'message': None}, "message"),
    ({'type': "gossip"}, "type"),
    ({'targetAudience': "parents"}, "targetAudience"),
    ({'expiresAt': "2000-01-01T00:00:00+00:00"}, "expiresAt"),
])
def test_send_validation(broadcaster, rep, assigned, fields, field_name):
    with pytest.raises(ValidationException) as info:
        _send(broadcaster, rep, **fields)
    assert info.value.field_name == field_name


def test_scenario_three_views_then_repeat(broadcaster, store, rep, assigned):
    announcement_id = _send(broadcaster, rep, targetAudience="students")
    students = _students(3)

    counts = [broadcaster.record_view(s, announcement_id) for s in students]
    assert counts == [1, 2, 3]

    version = store.get(ANNOUNCEMENTS_COLLECTION, announcement_id)['version']
    assert broadcaster.record_view(students[0], announcement_id) == 3
    doc = store.get(ANNOUNCEMENTS_COLLECTION, announcement_id)
    assert doc['viewCount'] == 3
    assert doc['version'] == version


def test_acknowledgment_is_idempotent(broadcaster, store, rep, other_student, assigned):
    announcement_id = _send(broadcaster, rep)
    assert broadcaster.record_acknowledgment(other_student, announcement_id) == 1
    assert broadcaster.record_acknowledgment(other_student, announcement_id) == 1

    doc = store.get(ANNOUNCEMENTS_COLLECTION, announcement_id)
    assert list(doc['acknowledgedBy']) == [other_student.user_id]
    assert doc['acknowledgmentCount'] == 1
    assert doc['viewCount'] == 0


def test_concurrent_views_are_all_counted(store, registry, rep, assigned):
    broadcaster = AnnouncementBroadcaster(store, registry, RetryPolicy(max_attempts=500, base_delay=0.001))
    announcement_id = _send(broadcaster, rep)
    students = _students(15)
    barrier = threading.Barrier(len(students))

    def view(student):
        barrier.wait()
        broadcaster.record_view(student, announcement_id)
        broadcaster.record_view(student, announcement_id)

    threads = [threading.Thread(target=view, args=(s,)) for s in students]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    announcement = broadcaster.list_announcements(COURSE)[0]
    assert announcement.view_count == 15
    assert sorted(announcement.views) == sorted(s.user_id for s in students)


def test_engagement_for_others_requires_admin(broadcaster, rep, other_student, admin, assigned):
    announcement_id = _send(broadcaster, rep)
    with pytest.raises(ForbiddenException):
        broadcaster.record_view(rep, announcement_id, user_id=other_student.user_id)
    assert broadcaster.record_view(admin, announcement_id, user_id=other_student.user_id) == 1


def test_engagement_on_missing_announcement(broadcaster, other_student):
    with pytest.raises(NotFoundException):
        broadcaster.record_view(other_student, "missing")
    with pytest.raises(NotFoundException):
        broadcaster.record_acknowledgment(other_student, "missing")


def test_listing_orders_filters_and_limits(broadcaster, rep, assigned):
    soon = to_iso(utc_now() + timedelta(minutes=5))
    first = _send(broadcaster, rep, title="first")
    expiring = _send(broadcaster, rep, title="expiring", expiresAt=soon)
    withdrawn = _send(broadcaster, rep, title="withdrawn")
    last = _send(broadcaster, rep, title="last")
    broadcaster.expire_announcement(rep, withdrawn)

    assert [a.id for a in broadcaster.list_announcements(COURSE)] == [last, expiring, first]
    assert [a.id for a in broadcaster.list_announcements(COURSE, limit=2)] == [last, expiring]

    later = utc_now() + timedelta(hours=1)
    assert [a.id for a in broadcaster.list_announcements(COURSE, limit=2, now=later)] == [last, first]
    assert broadcaster.list_announcements("OTHER") == []

    with pytest.raises(ValidationException):
        broadcaster.list_announcements(COURSE, limit=0)


def test_expire_announcement_rules(broadcaster, rep, other_student, admin, assigned):
    announcement_id = _send(broadcaster, rep)
    with pytest.raises(ForbiddenException):
        broadcaster.expire_announcement(other_student, announcement_id)
    assert broadcaster.expire_announcement(admin, announcement_id) is True
    assert broadcaster.expire_announcement(rep, announcement_id) is False
