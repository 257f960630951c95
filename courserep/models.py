"""
Data Models for the Course Representative Engine

This module contains the entities exchanged between the registry, the
request workflow, the announcement broadcaster and the document stores.
Models are dataclasses with snake_case attributes; their documents use the
camelCase field names persisted in the store.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Tuple


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime"""
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """
    Serialize a datetime for storage

    Microseconds are always written so that stored timestamps sort
    lexicographically in chronological order.

    Args:
        value: Datetime to serialize, or None

    Returns:
        UTC ISO-8601 string or None
    """
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse a stored or client-supplied timestamp

    Args:
        value: ISO-8601 string, datetime or None

    Returns:
        Timezone-aware datetime or None

    Raises:
        ValueError: If the value is not a recognizable timestamp
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    else:
        raise ValueError(f"Unsupported timestamp value: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class Role(Enum):
    """Role supplied by the identity context"""
    STUDENT = "student"
    REPRESENTATIVE = "representative"
    LECTURER = "lecturer"
    ADMIN = "admin"


class RequestType(Enum):
    ASSIGNMENT = "assignment"
    QUIZ = "quiz"


class RequestStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Priority(Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class Decision(Enum):
    """A lecturer's answer to a request"""
    APPROVED = "approved"
    REJECTED = "rejected"


class DeliveryFormat(Enum):
    """How an assignment is submitted or a quiz is sat"""
    ONLINE = "online"
    PHYSICAL = "physical"
    BOTH = "both"


class AnnouncementType(Enum):
    GENERAL = "general"
    URGENT = "urgent"
    REMINDER = "reminder"
    UPDATE = "update"


class TargetAudience(Enum):
    ALL = "all"
    STUDENTS = "students"
    LECTURERS = "lecturers"


class Permission(Enum):
    """Capability flags held by a course representative"""
    CREATE_ASSIGNMENT_REQUESTS = "createAssignmentRequests"
    CREATE_QUIZ_REQUESTS = "createQuizRequests"
    SEND_ANNOUNCEMENTS = "sendAnnouncements"
    CONTACT_LECTURERS = "contactLecturers"
    MANAGE_SCHEDULE = "manageSchedule"
    VIEW_ANALYTICS = "viewAnalytics"


DEFAULT_CONTACT_METHODS = ["chat", "privateMessage", "groupChat"]


@dataclass(frozen=True)
class ActorContext:
    """
    The acting user, supplied by the identity context

    Passed explicitly to every operation so one process can serve
    many users concurrently.
    """
    user_id: str
    name: str
    role: Role

    @property
    def is_authenticated(self) -> bool:
        return bool(self.user_id and self.user_id.strip())

    @property
    def is_lecturer(self) -> bool:
        return self.role == Role.LECTURER

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


@dataclass
class RepresentativePermissions:
    """Permission set attached to a representative assignment"""
    create_assignment_requests: bool = True
    create_quiz_requests: bool = True
    send_announcements: bool = True
    contact_lecturers: bool = True
    manage_schedule: bool = False
    view_analytics: bool = False

    _ATTRIBUTES: ClassVar[Dict[Permission, str]] = {
        Permission.CREATE_ASSIGNMENT_REQUESTS: "create_assignment_requests",
        Permission.CREATE_QUIZ_REQUESTS: "create_quiz_requests",
        Permission.SEND_ANNOUNCEMENTS: "send_announcements",
        Permission.CONTACT_LECTURERS: "contact_lecturers",
        Permission.MANAGE_SCHEDULE: "manage_schedule",
        Permission.VIEW_ANALYTICS: "view_analytics",
    }

    def allows(self, permission: Permission) -> bool:
        """
        Check whether a capability flag is granted

        Args:
            permission: The capability to check

        Returns:
            True if the flag is set
        """
        return bool(getattr(self, self._ATTRIBUTES[permission]))

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> 'RepresentativePermissions':
        """
        Create permissions from a camelCase flag mapping

        Unknown flags are ignored; missing flags keep their defaults.
        """
        permissions = cls()
        for permission, attribute in cls._ATTRIBUTES.items():
            if data and permission.value in data:
                setattr(permissions, attribute, bool(data[permission.value]))
        return permissions

    def to_dict(self) -> Dict[str, bool]:
        return {
            permission.value: getattr(self, attribute)
            for permission, attribute in self._ATTRIBUTES.items()
        }


@dataclass
class RepresentativeAssignment:
    """
    Records which student represents a course

    At most one assignment per course is active; older ones are
    deactivated, never deleted.
    """
    id: Optional[str]
    course_code: str
    course_name: str
    representative_user_id: str
    representative_name: str
    assigned_by_user_id: str
    assigned_at: datetime
    is_active: bool = True
    permissions: RepresentativePermissions = field(default_factory=RepresentativePermissions)
    contact_methods: List[str] = field(default_factory=lambda: list(DEFAULT_CONTACT_METHODS))
    deactivated_at: Optional[datetime] = None
    version: int = 0

    @classmethod
    def create_new(cls, course_code: str, course_name: str, rep_user_id: str, rep_name: str,
                   assigned_by: str, permissions: Optional[RepresentativePermissions] = None,
                   contact_methods: Optional[List[str]] = None) -> 'RepresentativeAssignment':
        """
        Create a new active assignment stamped with the current time

        Returns:
            Unsaved RepresentativeAssignment instance
        """
        return cls(
            id=None,
            course_code=course_code,
            course_name=course_name,
            representative_user_id=rep_user_id,
            representative_name=rep_name,
            assigned_by_user_id=assigned_by,
            assigned_at=utc_now(),
            permissions=permissions or RepresentativePermissions(),
            contact_methods=list(contact_methods) if contact_methods is not None else list(DEFAULT_CONTACT_METHODS),
        )

    @classmethod
    def from_dict(cls, data: Dict) -> 'RepresentativeAssignment':
        return cls(
            id=data.get('id'),
            course_code=data['courseCode'],
            course_name=data.get('courseName', ''),
            representative_user_id=data['representativeUserId'],
            representative_name=data.get('representativeName', ''),
            assigned_by_user_id=data.get('assignedByUserId', ''),
            assigned_at=parse_timestamp(data.get('assignedAt')),
            is_active=bool(data.get('isActive', False)),
            permissions=RepresentativePermissions.from_dict(data.get('permissions')),
            contact_methods=list(data.get('contactMethods', [])),
            deactivated_at=parse_timestamp(data.get('deactivatedAt')),
            version=int(data.get('version', 0)),
        )

    def to_dict(self) -> Dict:
        """
        Convert assignment to its stored document form

        Returns:
            Dictionary without the store-managed id and version
        """
        return {
            'courseCode': self.course_code,
            'courseName': self.course_name,
            'representativeUserId': self.representative_user_id,
            'representativeName': self.representative_name,
            'assignedByUserId': self.assigned_by_user_id,
            'assignedAt': to_iso(self.assigned_at),
            'isActive': self.is_active,
            'permissions': self.permissions.to_dict(),
            'contactMethods': list(self.contact_methods),
            'deactivatedAt': to_iso(self.deactivated_at),
        }


@dataclass
class LecturerResponse:
    """A single lecturer's decision, embedded in a request"""
    decision: Decision
    comments: str
    responded_at: datetime
    lecturer_name: str

    @classmethod
    def from_dict(cls, data: Dict) -> 'LecturerResponse':
        return cls(
            decision=Decision(data['decision']),
            comments=data.get('comments', ''),
            responded_at=parse_timestamp(data.get('respondedAt')),
            lecturer_name=data.get('lecturerName', ''),
        )

    def to_dict(self) -> Dict:
        return {
            'decision': self.decision.value,
            'comments': self.comments,
            'respondedAt': to_iso(self.responded_at),
            'lecturerName': self.lecturer_name,
        }


def tally_responses(responses: Dict[str, LecturerResponse]) -> Tuple[RequestStatus, int, int]:
    """
    Derive a request's aggregate status from its responses

    Any rejection wins over any number of approvals, and the result is
    recomputed from the full map each time, so status is not monotonic:
    a lecturer changing their answer can move a request back and forth.

    Args:
        responses: Mapping of lecturer ID to that lecturer's response

    Returns:
        Tuple of (status, approval count, rejection count)
    """
    approvals = sum(1 for r in responses.values() if r.decision == Decision.APPROVED)
    rejections = sum(1 for r in responses.values() if r.decision == Decision.REJECTED)

    if rejections > 0:
        status = RequestStatus.REJECTED
    elif approvals > 0:
        status = RequestStatus.APPROVED
    else:
        status = RequestStatus.PENDING
    return status, approvals, rejections


@dataclass
class CourseRequest:
    """
    Base model for a representative's request to lecturers

    Concrete requests are AssignmentRequest and QuizRequest; the stored
    document's ``type`` field selects between them.
    """
    id: Optional[str]
    course_code: str
    course_name: str
    requested_by_user_id: str
    requested_by_name: str
    target_lecturer_ids: List[str]
    title: str
    description: str
    status: RequestStatus = RequestStatus.PENDING
    priority: Priority = Priority.NORMAL
    reason_for_request: str = ""
    instructions: str = ""
    max_marks: int = 100
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_response_at: Optional[datetime] = None
    responses: Dict[str, LecturerResponse] = field(default_factory=dict)
    approval_count: int = 0
    rejection_count: int = 0
    version: int = 0

    request_type: ClassVar[RequestType]

    @property
    def is_urgent(self) -> bool:
        return self.priority == Priority.URGENT

    def targets(self, lecturer_id: str) -> bool:
        """True if the lecturer is a required responder"""
        return lecturer_id in self.target_lecturer_ids

    def is_visible_to(self, user_id: str) -> bool:
        return user_id == self.requested_by_user_id or self.targets(user_id)

    def apply_response(self, lecturer_id: str, response: LecturerResponse) -> RequestStatus:
        """
        Record a lecturer's response and recompute the aggregate state

        A later response from the same lecturer replaces the earlier one.

        Args:
            lecturer_id: ID of the responding lecturer
            response: The lecturer's response

        Returns:
            The newly derived status
        """
        self.responses[lecturer_id] = response
        self.status, self.approval_count, self.rejection_count = tally_responses(self.responses)
        self.updated_at = response.responded_at
        self.last_response_at = response.responded_at
        return self.status

    def response_patch(self) -> Dict:
        """Fields written back to the store after a response"""
        return {
            'responses': {lid: r.to_dict() for lid, r in self.responses.items()},
            'approvalCount': self.approval_count,
            'rejectionCount': self.rejection_count,
            'status': self.status.value,
            'updatedAt': to_iso(self.updated_at),
            'lastResponseAt': to_iso(self.last_response_at),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'CourseRequest':
        """
        Create the matching request subclass from a stored document

        Args:
            data: Stored document including id and version

        Returns:
            AssignmentRequest or QuizRequest instance

        Raises:
            ValueError: If the document's type is unknown
        """
        request_type = RequestType(data['type'])
        target = AssignmentRequest if request_type == RequestType.ASSIGNMENT else QuizRequest
        common = dict(
            id=data.get('id'),
            course_code=data['courseCode'],
            course_name=data.get('courseName', ''),
            requested_by_user_id=data['requestedByUserId'],
            requested_by_name=data.get('requestedByName', ''),
            target_lecturer_ids=list(data.get('targetLecturerIds', [])),
            title=data.get('title', ''),
            description=data.get('description', ''),
            status=RequestStatus(data.get('status', RequestStatus.PENDING.value)),
            priority=Priority(data.get('priority', Priority.NORMAL.value)),
            reason_for_request=data.get('reasonForRequest', ''),
            instructions=data.get('instructions', ''),
            max_marks=data.get('maxMarks', 100),
            created_at=parse_timestamp(data.get('createdAt')),
            updated_at=parse_timestamp(data.get('updatedAt')),
            last_response_at=parse_timestamp(data.get('lastResponseAt')),
            responses={
                lid: LecturerResponse.from_dict(r)
                for lid, r in (data.get('responses') or {}).items()
            },
            approval_count=int(data.get('approvalCount', 0)),
            rejection_count=int(data.get('rejectionCount', 0)),
            version=int(data.get('version', 0)),
        )
        return target(**common, **target._detail_kwargs(data))

    @classmethod
    def _detail_kwargs(cls, data: Dict) -> Dict:
        return {}

    def _detail_dict(self) -> Dict:
        return {}

    def to_dict(self) -> Dict:
        """
        Convert request to its stored document form

        Returns:
            Dictionary without the store-managed id and version
        """
        data = {
            'type': self.request_type.value,
            'courseCode': self.course_code,
            'courseName': self.course_name,
            'requestedByUserId': self.requested_by_user_id,
            'requestedByName': self.requested_by_name,
            'targetLecturerIds': list(self.target_lecturer_ids),
            'status': self.status.value,
            'priority': self.priority.value,
            'isUrgent': self.is_urgent,
            'title': self.title,
            'description': self.description,
            'reasonForRequest': self.reason_for_request,
            'instructions': self.instructions,
            'maxMarks': self.max_marks,
            'createdAt': to_iso(self.created_at),
            'updatedAt': to_iso(self.updated_at),
            'lastResponseAt': to_iso(self.last_response_at),
            'responses': {lid: r.to_dict() for lid, r in self.responses.items()},
            'approvalCount': self.approval_count,
            'rejectionCount': self.rejection_count,
        }
        data.update(self._detail_dict())
        return data


@dataclass
class AssignmentRequest(CourseRequest):
    """Request for lecturers to set a new assignment"""
    due_date: Optional[datetime] = None
    submission_format: DeliveryFormat = DeliveryFormat.ONLINE
    weightage: float = 10
    resources: List[str] = field(default_factory=list)

    request_type: ClassVar[RequestType] = RequestType.ASSIGNMENT

    @classmethod
    def _detail_kwargs(cls, data: Dict) -> Dict:
        return dict(
            due_date=parse_timestamp(data.get('dueDate')),
            submission_format=DeliveryFormat(data.get('submissionFormat', DeliveryFormat.ONLINE.value)),
            weightage=data.get('weightage', 10),
            resources=list(data.get('resources', [])),
        )

    def _detail_dict(self) -> Dict:
        return {
            'dueDate': to_iso(self.due_date),
            'submissionFormat': self.submission_format.value,
            'weightage': self.weightage,
            'resources': list(self.resources),
        }


@dataclass
class QuizRequest(CourseRequest):
    """Request for lecturers to schedule a quiz"""
    scheduled_date: Optional[datetime] = None
    duration_minutes: int = 60
    format: DeliveryFormat = DeliveryFormat.ONLINE
    question_count: int = 10
    question_types: List[str] = field(default_factory=lambda: ["multiple_choice"])
    topics: List[str] = field(default_factory=list)

    request_type: ClassVar[RequestType] = RequestType.QUIZ

    @classmethod
    def _detail_kwargs(cls, data: Dict) -> Dict:
        return dict(
            scheduled_date=parse_timestamp(data.get('scheduledDate')),
            duration_minutes=data.get('durationMinutes', 60),
            format=DeliveryFormat(data.get('format', DeliveryFormat.ONLINE.value)),
            question_count=data.get('questionCount', 10),
            question_types=list(data.get('questionTypes', ["multiple_choice"])),
            topics=list(data.get('topics', [])),
        )

    def _detail_dict(self) -> Dict:
        return {
            'scheduledDate': to_iso(self.scheduled_date),
            'durationMinutes': self.duration_minutes,
            'format': self.format.value,
            'questionCount': self.question_count,
            'questionTypes': list(self.question_types),
            'topics': list(self.topics),
        }


@dataclass
class Announcement:
    """
    A course-scoped broadcast from the representative

    View and acknowledgment counts are always derived from their maps.
    """
    id: Optional[str]
    course_code: str
    course_name: str
    sent_by_user_id: str
    sent_by_name: str
    title: str
    message: str
    type: AnnouncementType = AnnouncementType.GENERAL
    priority: Priority = Priority.NORMAL
    target_audience: TargetAudience = TargetAudience.ALL
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    is_active: bool = True
    views: Dict[str, datetime] = field(default_factory=dict)
    view_count: int = 0
    acknowledged_by: Dict[str, datetime] = field(default_factory=dict)
    acknowledgment_count: int = 0
    version: int = 0

    @property
    def is_urgent(self) -> bool:
        return self.priority == Priority.URGENT

    def is_live(self, now: datetime) -> bool:
        """Active and not past its expiry"""
        return self.is_active and (self.expires_at is None or self.expires_at > now)

    def record_view(self, user_id: str, at: datetime) -> bool:
        """
        Add a viewer if not already present

        Returns:
            True if the views map changed
        """
        added = user_id not in self.views
        if added:
            self.views[user_id] = at
        self.view_count = len(self.views)
        return added

    def record_acknowledgment(self, user_id: str, at: datetime) -> bool:
        """
        Add an acknowledging user if not already present

        Returns:
            True if the acknowledgment map changed
        """
        added = user_id not in self.acknowledged_by
        if added:
            self.acknowledged_by[user_id] = at
        self.acknowledgment_count = len(self.acknowledged_by)
        return added

    @classmethod
    def from_dict(cls, data: Dict) -> 'Announcement':
        views = {uid: parse_timestamp(ts) for uid, ts in (data.get('views') or {}).items()}
        acks = {uid: parse_timestamp(ts) for uid, ts in (data.get('acknowledgedBy') or {}).items()}
        return cls(
            id=data.get('id'),
            course_code=data['courseCode'],
            course_name=data.get('courseName', ''),
            sent_by_user_id=data['sentByUserId'],
            sent_by_name=data.get('sentByName', ''),
            title=data.get('title', ''),
            message=data.get('message', ''),
            type=AnnouncementType(data.get('type', AnnouncementType.GENERAL.value)),
            priority=Priority(data.get('priority', Priority.NORMAL.value)),
            target_audience=TargetAudience(data.get('targetAudience', TargetAudience.ALL.value)),
            created_at=parse_timestamp(data.get('createdAt')),
            updated_at=parse_timestamp(data.get('updatedAt')),
            expires_at=parse_timestamp(data.get('expiresAt')),
            is_active=bool(data.get('isActive', False)),
            views=views,
            view_count=len(views),
            acknowledged_by=acks,
            acknowledgment_count=len(acks),
            version=int(data.get('version', 0)),
        )

    def to_dict(self) -> Dict:
        return {
            'courseCode': self.course_code,
            'courseName': self.course_name,
            'sentByUserId': self.sent_by_user_id,
            'sentByName': self.sent_by_name,
            'title': self.title,
            'message': self.message,
            'type': self.type.value,
            'priority': self.priority.value,
            'isUrgent': self.is_urgent,
            'targetAudience': self.target_audience.value,
            'createdAt': to_iso(self.created_at),
            'updatedAt': to_iso(self.updated_at),
            'expiresAt': to_iso(self.expires_at),
            'isActive': self.is_active,
            'views': {uid: to_iso(ts) for uid, ts in self.views.items()},
            'viewCount': self.view_count,
            'acknowledgedBy': {uid: to_iso(ts) for uid, ts in self.acknowledged_by.items()},
            'acknowledgmentCount': self.acknowledgment_count,
        }
