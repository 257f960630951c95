"""
Business Logic Services for the Course Representative Engine

This module contains the services that coordinate course representatives
and lecturers: authorization checks, the representative registry, the
request workflow and the announcement broadcaster. Services hold no
durable state; every mutation reads the current document, derives the
next state and writes it back with a version check.
"""

import logging
import time
from typing import Any, Callable, Dict, List, Optional, Tuple, Type, Union

from .config import RetryPolicy
from .exceptions import (
    ForbiddenException,
    NotFoundException,
    StoreUnavailableException,
    UnauthorizedException,
    ValidationException,
    VersionConflictException,
)
from .models import (
    ActorContext,
    Announcement,
    AnnouncementType,
    AssignmentRequest,
    CourseRequest,
    Decision,
    DeliveryFormat,
    LecturerResponse,
    Permission,
    Priority,
    QuizRequest,
    RepresentativeAssignment,
    RepresentativePermissions,
    RequestStatus,
    RequestType,
    Role,
    TargetAudience,
    parse_timestamp,
    to_iso,
    utc_now,
)
from .notifications import LoggingNotificationDispatcher, NotificationDispatcher, summarize_request
from .repositories import Document, DocumentStore, where

logger = logging.getLogger(__name__)

ASSIGNMENTS_COLLECTION = "representativeAssignments"
COURSE_REPRESENTATIVES_COLLECTION = "courseRepresentatives"
REQUESTS_COLLECTION = "courseRepRequests"
ANNOUNCEMENTS_COLLECTION = "courseAnnouncements"

Mutation = Callable[[Document], Tuple[Optional[Document], Any]]


def update_with_retry(store: DocumentStore, collection: str, doc_id: str, mutate: Mutation,
                      retry_policy: RetryPolicy, operation: str, resource: str = "Document") -> Any:
    """
    Apply a read-merge-write to one document under optimistic concurrency

    The mutation receives the freshly read document and returns a tuple
    of (patch, result). A None patch means nothing needs writing. On a
    version conflict the whole cycle is repeated with backoff.

    Args:
        store: Document store
        collection: Collection name
        doc_id: Document ID
        mutate: Function deriving the patch from the current document
        retry_policy: Attempt bound and backoff
        operation: Description used in errors and logs
        resource: Entity name used in NotFoundException

    Returns:
        The mutation's result from the attempt that committed

    Raises:
        NotFoundException: If the document does not exist
        StoreUnavailableException: If every attempt hit a conflict
    """
    for attempt in range(1, retry_policy.max_attempts + 1):
        doc = store.get(collection, doc_id)
        if doc is None:
            raise NotFoundException(resource, doc_id)

        patch, result = mutate(doc)
        if patch is None:
            return result

        try:
            store.conditional_update(collection, doc_id, doc['version'], patch)
            return result
        except VersionConflictException:
            logger.debug(f"Version conflict on {collection}/{doc_id} during {operation} (attempt {attempt})")
            if attempt < retry_policy.max_attempts:
                time.sleep(retry_policy.delay(attempt))

    logger.warning(f"Giving up on {operation} for {collection}/{doc_id} after {retry_policy.max_attempts} attempts")
    raise StoreUnavailableException(
        operation,
        f"{collection}/{doc_id} kept changing; gave up after {retry_policy.max_attempts} attempts"
    )


def _parse_enum(enum_type: Type, value: Any, field_name: str):
    if isinstance(value, enum_type):
        return value
    try:
        return enum_type(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_type)
        raise ValidationException(field_name, f"'{value}' is not one of: {allowed}")


def _require_text(fields: Dict, field_name: str) -> str:
    value = fields.get(field_name)
    if not isinstance(value, str) or not value.strip():
        raise ValidationException(field_name, "is required")
    return value.strip()


def _optional_text(fields: Dict, field_name: str, default: str = "") -> str:
    value = fields.get(field_name, default)
    if value is None:
        return default
    if not isinstance(value, str):
        raise ValidationException(field_name, "must be a string")
    return value


def _positive_number(fields: Dict, field_name: str, default, integer: bool = False):
    value = fields.get(field_name)
    if value is None:
        return default
    valid_types = (int,) if integer else (int, float)
    if isinstance(value, bool) or not isinstance(value, valid_types) or value <= 0:
        kind = "a positive integer" if integer else "a positive number"
        raise ValidationException(field_name, f"must be {kind}")
    return value


def _string_list(fields: Dict, field_name: str, default: Optional[List[str]] = None) -> List[str]:
    value = fields.get(field_name)
    if value is None:
        return list(default or [])
    if not isinstance(value, (list, tuple)) or not all(isinstance(item, str) for item in value):
        raise ValidationException(field_name, "must be a list of strings")
    return list(value)


def _unique_strings(values: List[str]) -> List[str]:
    """De-duplicate while keeping first-seen order"""
    seen = []
    for value in values:
        if value not in seen:
            seen.append(value)
    return seen


def _timestamp(fields: Dict, field_name: str):
    try:
        return parse_timestamp(fields.get(field_name))
    except (TypeError, ValueError):
        raise ValidationException(field_name, "must be an ISO-8601 timestamp")


class AuthorizationService:
    """
    Handles authorization decisions

    Authentication itself happens upstream; this service only interprets
    the ActorContext it is handed.
    """

    ASSIGNING_ROLES = (Role.LECTURER, Role.ADMIN)

    def require_authenticated(self, actor: Optional[ActorContext]) -> ActorContext:
        """
        Reject calls without an identified actor

        Raises:
            UnauthorizedException: If no user ID is present
        """
        if actor is None or not actor.is_authenticated:
            raise UnauthorizedException()
        return actor

    def can_assign_representatives(self, actor: ActorContext, course_code: str) -> bool:
        """
        Check if the actor may appoint representatives for a course

        Args:
            actor: The acting user
            course_code: Course being assigned

        Returns:
            True for lecturers and administrators
        """
        return actor.role in self.ASSIGNING_ROLES

    def require_assigning_authority(self, actor: ActorContext, course_code: str) -> None:
        self.require_authenticated(actor)
        if not self.can_assign_representatives(actor, course_code):
            raise UnauthorizedException(
                f"User '{actor.user_id}' has no authority to assign representatives for {course_code}"
            )

    def require_self_or_admin(self, actor: ActorContext, user_id: str, action: str) -> None:
        if user_id != actor.user_id and not actor.is_admin:
            raise ForbiddenException(actor.user_id, action, "only the user themselves or an admin may do this")


class RepresentativeRegistry:
    """
    Records which student represents each course

    Handles appointment, replacement and lookup of representatives and
    checks their permission flags for the other services.

    Each course has a pointer document in COURSE_REPRESENTATIVES_COLLECTION,
    keyed by course code, naming its current assignment. Handovers swap the
    pointer with a version-checked write, so they are ordered by the store
    even across processes. An assignment is only marked active while the
    pointer names it and no successor has superseded it.
    """

    def __init__(self, store: DocumentStore, authorization: Optional[AuthorizationService] = None,
                 retry_policy: Optional[RetryPolicy] = None):
        """
        Initialize representative registry

        Args:
            store: Document store holding assignments
            authorization: Authorization service (default instance if omitted)
            retry_policy: Retry bound for handover writes
        """
        self.store = store
        self.authorization = authorization or AuthorizationService()
        self.retry_policy = retry_policy or RetryPolicy()

    def _ensure_pointer(self, course_code: str) -> None:
        """Create the course pointer, adopting an assignment that predates it"""
        if self.store.get(COURSE_REPRESENTATIVES_COLLECTION, course_code) is not None:
            return
        existing = self.store.query(
            ASSIGNMENTS_COLLECTION,
            [where('courseCode', '==', course_code), where('isActive', '==', True)],
            order_by='assignedAt', descending=True, limit=1,
        )
        try:
            self.store.create(COURSE_REPRESENTATIVES_COLLECTION, {
                'courseCode': course_code,
                'assignmentId': existing[0]['id'] if existing else None,
                'updatedAt': to_iso(utc_now()),
            }, doc_id=course_code)
        except VersionConflictException:
            pass  # created concurrently

    def _swap_pointer(self, course_code: str, assignment_id: Optional[str]) -> Optional[str]:
        """
        Point the course at a new assignment (or none)

        Returns:
            ID of the assignment it pointed at before
        """
        def swap(doc: Document):
            previous = doc.get('assignmentId')
            if previous == assignment_id:
                return None, None
            return {'assignmentId': assignment_id, 'updatedAt': to_iso(utc_now())}, previous

        return update_with_retry(self.store, COURSE_REPRESENTATIVES_COLLECTION, course_code, swap,
                                 self.retry_policy, "swap course representative", "Course")

    def _supersede(self, assignment_id: str) -> bool:
        """
        Deactivate an assignment replaced at the pointer

        Always writes, so an activation racing against it fails its version
        check and re-reads the pointer.

        Returns:
            True if the assignment was active
        """
        def deactivate(doc: Document):
            return {
                'isActive': False,
                'deactivatedAt': doc.get('deactivatedAt') or to_iso(utc_now()),
            }, bool(doc.get('isActive'))

        try:
            return update_with_retry(self.store, ASSIGNMENTS_COLLECTION, assignment_id, deactivate,
                                     self.retry_policy, "deactivate representative", "Assignment")
        except NotFoundException:
            logger.warning(f"Superseded assignment {assignment_id} no longer exists")
            return False

    def _activate(self, course_code: str, assignment_id: str) -> bool:
        """Mark an assignment active if the pointer still names it"""
        def activate(doc: Document):
            if doc.get('deactivatedAt'):
                return None, False
            pointer = self.store.get(COURSE_REPRESENTATIVES_COLLECTION, course_code)
            if pointer is None or pointer.get('assignmentId') != assignment_id:
                return None, False
            if doc.get('isActive'):
                return None, True
            return {'isActive': True}, True

        return update_with_retry(self.store, ASSIGNMENTS_COLLECTION, assignment_id, activate,
                                 self.retry_policy, "activate representative", "Assignment")

    def assign_representative(self, actor: ActorContext, course_code: str, course_name: str,
                              rep_user_id: str, rep_name: str,
                              permissions: Union[RepresentativePermissions, Dict, None] = None,
                              contact_methods: Optional[List[str]] = None) -> str:
        """
        Make a student the active representative of a course

        Any currently active assignment for the course is deactivated
        first, so at most one assignment is active afterwards.

        Args:
            actor: Lecturer or admin making the appointment
            course_code: Course identifier
            course_name: Course display name
            rep_user_id: Student being appointed
            rep_name: Student display name
            permissions: Optional permission set or camelCase flag mapping
            contact_methods: Optional contact methods

        Returns:
            ID of the new assignment

        Raises:
            UnauthorizedException: If the actor may not assign representatives
            ValidationException: If course or student is missing
        """
        self.authorization.require_assigning_authority(actor, course_code)
        course_code = _require_text({'courseCode': course_code}, 'courseCode')
        rep_user_id = _require_text({'representativeUserId': rep_user_id}, 'representativeUserId')
        if not isinstance(permissions, RepresentativePermissions):
            permissions = RepresentativePermissions.from_dict(permissions)

        assignment = RepresentativeAssignment.create_new(
            course_code, course_name or "", rep_user_id, rep_name or "", actor.user_id,
            permissions=permissions, contact_methods=contact_methods,
        )
        # Inactive until the handover below makes it current
        assignment.is_active = False
        assignment_id = self.store.create(ASSIGNMENTS_COLLECTION, assignment.to_dict())

        self._ensure_pointer(course_code)
        previous_id = self._swap_pointer(course_code, assignment_id)
        if previous_id:
            self._supersede(previous_id)
        if not self._activate(course_code, assignment_id):
            logger.info(f"Assignment {assignment_id} for {course_code} was replaced before it became active")

        logger.info(
            f"{actor.user_id} assigned {rep_user_id} as representative for {course_code} "
            f"({assignment_id}, replaced {previous_id})"
        )
        return assignment_id

    def deactivate_representative(self, actor: ActorContext, course_code: str) -> bool:
        """
        Remove the active representative of a course without a successor

        Returns:
            True if an active assignment was deactivated
        """
        self.authorization.require_assigning_authority(actor, course_code)
        self._ensure_pointer(course_code)
        previous_id = self._swap_pointer(course_code, None)
        deactivated = self._supersede(previous_id) if previous_id else False
        if deactivated:
            logger.info(f"{actor.user_id} deactivated the representative for {course_code}")
        return deactivated

    def get_active_representative(self, course_code: str) -> Optional[RepresentativeAssignment]:
        """
        Get the active assignment for a course

        Returns:
            RepresentativeAssignment or None if the course has no representative
        """
        docs = self.store.query(
            ASSIGNMENTS_COLLECTION,
            [where('courseCode', '==', course_code), where('isActive', '==', True)],
            order_by='assignedAt', descending=True, limit=1,
        )
        return RepresentativeAssignment.from_dict(docs[0]) if docs else None

    def list_representative_courses(self, user_id: str) -> List[RepresentativeAssignment]:
        """
        Get the courses a student currently represents

        Returns:
            Active assignments for the user, newest first
        """
        docs = self.store.query(
            ASSIGNMENTS_COLLECTION,
            [where('representativeUserId', '==', user_id), where('isActive', '==', True)],
            order_by='assignedAt', descending=True,
        )
        return [RepresentativeAssignment.from_dict(doc) for doc in docs]

    def require_permission(self, actor: ActorContext, course_code: str, permission: Permission,
                           action: str) -> RepresentativeAssignment:
        """
        Ensure the actor is the course's active representative with a capability

        Args:
            actor: The acting user
            course_code: Course being acted on
            permission: Capability flag required
            action: Description of the attempted operation

        Returns:
            The actor's active assignment

        Raises:
            ForbiddenException: If the actor is not the active representative
                or lacks the permission
        """
        assignment = self.get_active_representative(course_code)
        if assignment is None:
            raise ForbiddenException(actor.user_id, action, f"course {course_code} has no active representative")
        if assignment.representative_user_id != actor.user_id:
            raise ForbiddenException(actor.user_id, action, f"not the active representative for {course_code}")
        if not assignment.permissions.allows(permission):
            raise ForbiddenException(actor.user_id, action, f"missing permission {permission.value}")
        return assignment


class RequestWorkflowEngine:
    """
    Handles assignment and quiz requests and lecturer responses

    Requests are created by a course's representative and answered by
    the lecturers they target. The aggregate status is recomputed from
    all responses after every answer.
    """

    _TYPE_PERMISSIONS = {
        RequestType.ASSIGNMENT: Permission.CREATE_ASSIGNMENT_REQUESTS,
        RequestType.QUIZ: Permission.CREATE_QUIZ_REQUESTS,
    }

    def __init__(self, store: DocumentStore, registry: RepresentativeRegistry,
                 dispatcher: Optional[NotificationDispatcher] = None,
                 retry_policy: Optional[RetryPolicy] = None,
                 authorization: Optional[AuthorizationService] = None):
        """
        Initialize request workflow engine

        Args:
            store: Document store holding requests
            registry: Representative registry used for permission checks
            dispatcher: Notification transport (logging if omitted)
            retry_policy: Retry bound for responses
            authorization: Authorization service
        """
        self.store = store
        self.registry = registry
        self.dispatcher = dispatcher or LoggingNotificationDispatcher()
        self.retry_policy = retry_policy or RetryPolicy()
        self.authorization = authorization or registry.authorization

    def create_request(self, actor: ActorContext, course_code: str, course_name: str,
                       request_type: Union[RequestType, str], target_lecturer_ids: List[str],
                       fields: Optional[Dict] = None) -> str:
        """
        File a new assignment or quiz request

        Args:
            actor: The course representative
            course_code: Course the request belongs to
            course_name: Course display name
            request_type: 'assignment' or 'quiz'
            target_lecturer_ids: Lecturers who must respond
            fields: Title, description and type-specific details
                (camelCase keys as stored)

        Returns:
            ID of the new request

        Raises:
            UnauthorizedException: If the actor is anonymous
            ForbiddenException: If the actor is not the representative with
                the matching permission
            ValidationException: If the request data is invalid
        """
        self.authorization.require_authenticated(actor)
        request_type = _parse_enum(RequestType, request_type, 'type')
        request = self._build_request(actor, course_code, course_name, request_type,
                                      target_lecturer_ids, fields or {})
        self.registry.require_permission(
            actor, course_code, self._TYPE_PERMISSIONS[request_type], f"create {request_type.value} requests"
        )

        request.created_at = request.updated_at = utc_now()
        request_id = self.store.create(REQUESTS_COLLECTION, request.to_dict())
        logger.info(
            f"{actor.user_id} created {request_type.value} request {request_id} for {course_code} "
            f"targeting {request.target_lecturer_ids}"
        )

        try:
            self.dispatcher.notify(request_id, request.target_lecturer_ids, summarize_request(request))
        except Exception:
            logger.exception(f"Notification dispatch failed for request {request_id}")
        return request_id

    def _build_request(self, actor: ActorContext, course_code: str, course_name: str,
                       request_type: RequestType, target_lecturer_ids, fields: Dict) -> CourseRequest:
        """Validate input fields and build an unsaved request"""
        if isinstance(target_lecturer_ids, str):
            target_lecturer_ids = [target_lecturer_ids]
        if not isinstance(target_lecturer_ids, (list, tuple, set)):
            raise ValidationException('targetLecturerIds', "must be a list of lecturer IDs")
        targets = _unique_strings([
            lid.strip() for lid in target_lecturer_ids if isinstance(lid, str) and lid.strip()
        ])
        if not targets:
            raise ValidationException('targetLecturerIds', "at least one lecturer is required")

        common = dict(
            id=None,
            course_code=course_code,
            course_name=course_name or "",
            requested_by_user_id=actor.user_id,
            requested_by_name=actor.name,
            target_lecturer_ids=targets,
            title=_require_text(fields, 'title'),
            description=_require_text(fields, 'description'),
            priority=_parse_enum(Priority, fields.get('priority') or Priority.NORMAL.value, 'priority'),
            reason_for_request=_optional_text(fields, 'reasonForRequest', _optional_text(fields, 'reason')),
            instructions=_optional_text(fields, 'instructions'),
            max_marks=_positive_number(fields, 'maxMarks', 100),
        )

        if request_type == RequestType.ASSIGNMENT:
            return AssignmentRequest(
                **common,
                due_date=_timestamp(fields, 'dueDate'),
                submission_format=_parse_enum(
                    DeliveryFormat, fields.get('submissionFormat') or DeliveryFormat.ONLINE.value, 'submissionFormat'
                ),
                weightage=_positive_number(fields, 'weightage', 10),
                resources=_string_list(fields, 'resources'),
            )

        return QuizRequest(
            **common,
            scheduled_date=_timestamp(fields, 'scheduledDate'),
            duration_minutes=_positive_number(fields, 'durationMinutes', 60, integer=True),
            format=_parse_enum(DeliveryFormat, fields.get('format') or DeliveryFormat.ONLINE.value, 'format'),
            question_count=_positive_number(fields, 'questionCount', 10, integer=True),
            question_types=_unique_strings(_string_list(fields, 'questionTypes', ["multiple_choice"])),
            topics=_string_list(fields, 'topics'),
        )

    def respond_to_request(self, actor: ActorContext, request_id: str, decision: Union[Decision, str],
                           comments: str = "", lecturer_id: Optional[str] = None) -> RequestStatus:
        """
        Record a lecturer's approval or rejection

        A lecturer's later response replaces their earlier one. The status
        is re-derived from all responses, so it can move back and forth
        and is accepted even after the request left pending.

        Args:
            actor: The responding lecturer
            request_id: Request being answered
            decision: 'approved' or 'rejected'
            comments: Optional comments
            lecturer_id: Must match the actor if given

        Returns:
            The request's status after this response

        Raises:
            ForbiddenException: If the actor is not a targeted lecturer
            NotFoundException: If the request does not exist
            StoreUnavailableException: If concurrent writers kept winning
        """
        self.authorization.require_authenticated(actor)
        lecturer_id = lecturer_id or actor.user_id
        action = f"respond to request {request_id}"
        if lecturer_id != actor.user_id:
            raise ForbiddenException(actor.user_id, action, "cannot respond on behalf of another lecturer")
        if not actor.is_lecturer:
            raise ForbiddenException(actor.user_id, action, "only lecturers can respond to requests")
        decision = _parse_enum(Decision, decision, 'decision')
        if comments is not None and not isinstance(comments, str):
            raise ValidationException('comments', "must be a string")

        def merge_response(doc: Document):
            request = CourseRequest.from_dict(doc)
            if not request.targets(lecturer_id):
                raise ForbiddenException(actor.user_id, action, "lecturer is not a target of this request")
            response = LecturerResponse(
                decision=decision,
                comments=comments or "",
                responded_at=utc_now(),
                lecturer_name=actor.name,
            )
            status = request.apply_response(lecturer_id, response)
            return request.response_patch(), status

        status = update_with_retry(self.store, REQUESTS_COLLECTION, request_id, merge_response,
                                   self.retry_policy, "respond to request", "Request")
        logger.info(f"{lecturer_id} {decision.value} request {request_id}; status is now {status.value}")
        return status

    def get_request(self, actor: ActorContext, request_id: str) -> CourseRequest:
        """
        Get a single request visible to the actor

        Raises:
            NotFoundException: If the request does not exist
            ForbiddenException: If the actor is neither requester nor target
        """
        self.authorization.require_authenticated(actor)
        doc = self.store.get(REQUESTS_COLLECTION, request_id)
        if doc is None:
            raise NotFoundException("Request", request_id)
        request = CourseRequest.from_dict(doc)
        if not (request.is_visible_to(actor.user_id) or actor.is_admin):
            raise ForbiddenException(actor.user_id, f"view request {request_id}", "not a participant")
        return request

    def _list(self, field_filter, status) -> List[CourseRequest]:
        filters = [field_filter]
        if status is not None:
            status = _parse_enum(RequestStatus, status, 'status')
            filters.append(where('status', '==', status.value))
        docs = self.store.query(REQUESTS_COLLECTION, filters, order_by='createdAt', descending=True)
        return [CourseRequest.from_dict(doc) for doc in docs]

    def list_requests_by_requester(self, actor: ActorContext, user_id: Optional[str] = None,
                                   status: Union[RequestStatus, str, None] = None) -> List[CourseRequest]:
        """
        Get requests filed by a representative, newest first

        Args:
            actor: The acting user
            user_id: Requester (defaults to the actor)
            status: Optional status filter

        Returns:
            List of requests
        """
        self.authorization.require_authenticated(actor)
        user_id = user_id or actor.user_id
        self.authorization.require_self_or_admin(actor, user_id, "list requests of another user")
        return self._list(where('requestedByUserId', '==', user_id), status)

    def list_requests_by_lecturer(self, actor: ActorContext, lecturer_id: Optional[str] = None,
                                  status: Union[RequestStatus, str, None] = None) -> List[CourseRequest]:
        """
        Get requests targeting a lecturer, newest first

        Args:
            actor: The acting lecturer or an admin
            lecturer_id: Lecturer (defaults to the actor)
            status: Optional status filter

        Returns:
            List of requests
        """
        self.authorization.require_authenticated(actor)
        lecturer_id = lecturer_id or actor.user_id
        if not (actor.is_lecturer or actor.is_admin):
            raise ForbiddenException(actor.user_id, "view a lecturer inbox", "only lecturers have an inbox")
        self.authorization.require_self_or_admin(actor, lecturer_id, "view another lecturer's inbox")
        return self._list(where('targetLecturerIds', 'array-contains', lecturer_id), status)


class AnnouncementBroadcaster:
    """
    Handles course announcements and their engagement tracking

    Views and acknowledgments are idempotent per user, and their counts
    are always recomputed from the underlying maps.
    """

    def __init__(self, store: DocumentStore, registry: RepresentativeRegistry,
                 retry_policy: Optional[RetryPolicy] = None,
                 authorization: Optional[AuthorizationService] = None,
                 default_limit: int = 20):
        self.store = store
        self.registry = registry
        self.retry_policy = retry_policy or RetryPolicy()
        self.authorization = authorization or registry.authorization
        self.default_limit = default_limit

    def send_announcement(self, actor: ActorContext, course_code: str, course_name: str,
                          fields: Dict) -> str:
        """
        Broadcast an announcement to a course

        Args:
            actor: The course representative
            course_code: Course identifier
            course_name: Course display name
            fields: title, message and optional type, priority,
                targetAudience, expiresAt

        Returns:
            ID of the new announcement

        Raises:
            ForbiddenException: If the actor is not the representative
                with sendAnnouncements
            ValidationException: If the announcement data is invalid
        """
        self.authorization.require_authenticated(actor)
        self.registry.require_permission(actor, course_code, Permission.SEND_ANNOUNCEMENTS, "send announcements")

        fields = fields or {}
        now = utc_now()
        expires_at = _timestamp(fields, 'expiresAt')
        if expires_at is not None and expires_at <= now:
            raise ValidationException('expiresAt', "must be in the future")

        announcement = Announcement(
            id=None,
            course_code=course_code,
            course_name=course_name or "",
            sent_by_user_id=actor.user_id,
            sent_by_name=actor.name,
            title=_require_text(fields, 'title'),
            message=_require_text(fields, 'message'),
            type=_parse_enum(AnnouncementType, fields.get('type') or AnnouncementType.GENERAL.value, 'type'),
            priority=_parse_enum(Priority, fields.get('priority') or Priority.NORMAL.value, 'priority'),
            target_audience=_parse_enum(
                TargetAudience, fields.get('targetAudience') or TargetAudience.ALL.value, 'targetAudience'
            ),
            created_at=now,
            updated_at=now,
            expires_at=expires_at,
        )
        announcement_id = self.store.create(ANNOUNCEMENTS_COLLECTION, announcement.to_dict())
        logger.info(f"{actor.user_id} sent announcement {announcement_id} to {course_code}")
        return announcement_id

    def _engagement_user(self, actor: ActorContext, user_id: Optional[str], action: str) -> str:
        self.authorization.require_authenticated(actor)
        user_id = user_id or actor.user_id
        self.authorization.require_self_or_admin(actor, user_id, action)
        return user_id

    def record_view(self, actor: ActorContext, announcement_id: str, user_id: Optional[str] = None) -> int:
        """
        Mark an announcement as viewed by a user

        Repeated views by the same user do not change anything.

        Returns:
            The announcement's view count
        """
        user_id = self._engagement_user(actor, user_id, "record a view for another user")

        def add_view(doc: Document):
            announcement = Announcement.from_dict(doc)
            if not announcement.record_view(user_id, utc_now()):
                return None, announcement.view_count
            patch = announcement.to_dict()
            return {'views': patch['views'], 'viewCount': patch['viewCount']}, announcement.view_count

        return update_with_retry(self.store, ANNOUNCEMENTS_COLLECTION, announcement_id, add_view,
                                 self.retry_policy, "record view", "Announcement")

    def record_acknowledgment(self, actor: ActorContext, announcement_id: str,
                              user_id: Optional[str] = None) -> int:
        """
        Mark an announcement as acknowledged by a user

        Repeated acknowledgments by the same user do not change anything.

        Returns:
            The announcement's acknowledgment count
        """
        user_id = self._engagement_user(actor, user_id, "acknowledge for another user")

        def add_acknowledgment(doc: Document):
            announcement = Announcement.from_dict(doc)
            if not announcement.record_acknowledgment(user_id, utc_now()):
                return None, announcement.acknowledgment_count
            patch = announcement.to_dict()
            return (
                {'acknowledgedBy': patch['acknowledgedBy'], 'acknowledgmentCount': patch['acknowledgmentCount']},
                announcement.acknowledgment_count,
            )

        return update_with_retry(self.store, ANNOUNCEMENTS_COLLECTION, announcement_id, add_acknowledgment,
                                 self.retry_policy, "record acknowledgment", "Announcement")

    def expire_announcement(self, actor: ActorContext, announcement_id: str) -> bool:
        """
        Withdraw an announcement (soft expiry)

        Returns:
            True if the announcement was active before the call

        Raises:
            ForbiddenException: If the actor is neither sender nor admin
            NotFoundException: If the announcement does not exist
        """
        self.authorization.require_authenticated(actor)

        def deactivate(doc: Document):
            if doc.get('sentByUserId') != actor.user_id and not actor.is_admin:
                raise ForbiddenException(actor.user_id, f"expire announcement {announcement_id}", "not the sender")
            if not doc.get('isActive'):
                return None, False
            return {'isActive': False, 'updatedAt': to_iso(utc_now())}, True

        expired = update_with_retry(self.store, ANNOUNCEMENTS_COLLECTION, announcement_id, deactivate,
                                    self.retry_policy, "expire announcement", "Announcement")
        if expired:
            logger.info(f"{actor.user_id} expired announcement {announcement_id}")
        return expired

    def list_announcements(self, course_code: str, limit: Optional[int] = None,
                           now=None) -> List[Announcement]:
        """
        Get live announcements for a course, newest first

        Args:
            course_code: Course identifier
            limit: Maximum number returned (default_limit if omitted)
            now: Reference time for expiry (current time if omitted)

        Returns:
            Active, unexpired announcements
        """
        limit = self.default_limit if limit is None else limit
        if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
            raise ValidationException('limit', "must be a positive integer")
        now = now or utc_now()

        docs = self.store.query(
            ANNOUNCEMENTS_COLLECTION,
            [where('courseCode', '==', course_code), where('isActive', '==', True)],
            order_by='createdAt', descending=True,
        )
        live = [a for a in (Announcement.from_dict(doc) for doc in docs) if a.is_live(now)]
        return live[:limit]
