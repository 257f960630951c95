"""
Notification Dispatchers

Lecturers are alerted when a representative files a request. Delivery is
best-effort: each recipient is attempted independently and a failure is
logged, never raised back into the request workflow.
"""

import json
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Dict, List

import redis

from .models import CourseRequest, to_iso, utc_now

logger = logging.getLogger(__name__)


@dataclass
class NotificationEvent:
    """A single alert addressed to one lecturer"""
    recipient_id: str
    type: str
    title: str
    message: str
    data: Dict[str, str] = field(default_factory=dict)
    created_at: str = field(default_factory=lambda: to_iso(utc_now()))
    is_read: bool = False

    def to_dict(self) -> Dict:
        return asdict(self)


def summarize_request(request: CourseRequest) -> Dict[str, str]:
    """Fields of a request that a notification needs"""
    return {
        'type': request.request_type.value,
        'title': request.title,
        'courseCode': request.course_code,
        'courseName': request.course_name,
        'priority': request.priority.value,
        'requestedByName': request.requested_by_name,
    }


class NotificationDispatcher(ABC):
    """
    Base class for notification transports

    Subclasses implement deliver() for one event; notify() fans out and
    isolates failures per recipient.
    """

    def notify(self, request_id: str, target_lecturer_ids: List[str], request_summary: Dict[str, str]) -> int:
        """
        Emit one event per target lecturer

        Args:
            request_id: ID of the new request
            target_lecturer_ids: Lecturers to alert
            request_summary: Output of summarize_request()

        Returns:
            Number of recipients delivered successfully
        """
        request_type = request_summary.get('type', 'course')
        delivered = 0
        for lecturer_id in target_lecturer_ids:
            event = NotificationEvent(
                recipient_id=lecturer_id,
                type='course_rep_request',
                title=f"New {request_type} request",
                message=f"Course representative has requested: {request_summary.get('title', '')}",
                data={
                    'requestId': request_id,
                    'courseCode': request_summary.get('courseCode', ''),
                    'requestType': request_type,
                },
            )
            try:
                self.deliver(event)
                delivered += 1
            except Exception as e:
                logger.warning(f"Notification for request {request_id} to {lecturer_id} failed: {e}")
        return delivered

    @abstractmethod
    def deliver(self, event: NotificationEvent) -> None:
        """
        Deliver one event

        Raises:
            Exception: Any transport error; notify() logs and continues
        """
        pass


class LoggingNotificationDispatcher(NotificationDispatcher):
    """Writes notifications to the log instead of a real transport"""

    def deliver(self, event: NotificationEvent) -> None:
        logger.info(f"Notify {event.recipient_id}: {event.title} - {event.message}")


class RecordingNotificationDispatcher(NotificationDispatcher):
    """Keeps delivered events in memory"""

    def __init__(self):
        self._lock = threading.Lock()
        self.events: List[NotificationEvent] = []

    def deliver(self, event: NotificationEvent) -> None:
        with self._lock:
            self.events.append(event)

    def events_for(self, recipient_id: str) -> List[NotificationEvent]:
        with self._lock:
            return [e for e in self.events if e.recipient_id == recipient_id]


class RedisNotificationDispatcher(NotificationDispatcher):
    """
    Queues notifications in a per-lecturer Redis list

    A push service or worker drains ``<prefix>:notifications:<lecturerId>``.
    """

    def __init__(self, client: redis.Redis, prefix: str = "courserep"):
        self.client = client
        self.prefix = prefix

    def queue_key(self, recipient_id: str) -> str:
        return f"{self.prefix}:notifications:{recipient_id}"

    def deliver(self, event: NotificationEvent) -> None:
        self.client.rpush(self.queue_key(event.recipient_id), json.dumps(event.to_dict()))

    def pending(self, recipient_id: str) -> List[Dict]:
        """Read queued events for a lecturer without removing them"""
        return [json.loads(raw) for raw in self.client.lrange(self.queue_key(recipient_id), 0, -1)]
