"""
Change-Feed Subscriptions

Live, role-scoped views over requests and announcements. Every push is a
full snapshot of the current result set that replaces the subscriber's
local view; pushes are never older than one already delivered.
"""

import logging
import threading
from enum import Enum
from typing import Callable, Generic, List, Optional, TypeVar, Union

from .exceptions import ValidationException
from .models import Announcement, CourseRequest, utc_now
from .repositories import Document, DocumentStore, Filter, Watch, where
from .services import ANNOUNCEMENTS_COLLECTION, REQUESTS_COLLECTION

logger = logging.getLogger(__name__)

T = TypeVar('T')


class SubscriberRole(Enum):
    """Which side of the request feed a subscriber sees"""
    REPRESENTATIVE = "representative"
    LECTURER = "lecturer"


class SubscriptionState(Enum):
    IDLE = "idle"
    SUBSCRIBED = "subscribed"
    CANCELLED = "cancelled"


class Subscription(Generic[T]):
    """
    A live query owned by one subscriber

    Converts raw store snapshots into model objects before calling the
    subscriber. unsubscribe() may be called any number of times.
    """

    def __init__(self, name: str, convert: Callable[[List[Document]], List[T]],
                 on_update: Callable[[List[T]], None],
                 on_close: Optional[Callable[['Subscription'], None]] = None):
        self.name = name
        self.state = SubscriptionState.IDLE
        self._convert = convert
        self._on_update = on_update
        self._on_close = on_close
        self._watch: Optional[Watch] = None
        self._lock = threading.Lock()

    @property
    def active(self) -> bool:
        return self.state == SubscriptionState.SUBSCRIBED

    def start(self, store: DocumentStore, collection: str, filters: List[Filter]) -> 'Subscription':
        """Register the underlying store watch and deliver the first snapshot"""
        with self._lock:
            if self.state != SubscriptionState.IDLE:
                raise RuntimeError(f"Subscription {self.name} already started")
            self.state = SubscriptionState.SUBSCRIBED
        watch = store.watch(collection, filters, self._push, order_by='createdAt', descending=True)
        with self._lock:
            cancelled_meanwhile = self.state == SubscriptionState.CANCELLED
            if not cancelled_meanwhile:
                self._watch = watch
        if cancelled_meanwhile:
            watch.cancel()
        logger.debug(f"Subscription {self.name} started")
        return self

    def _push(self, docs: List[Document]) -> None:
        if not self.active:
            return
        self._on_update(self._convert(docs))

    def unsubscribe(self) -> None:
        """Stop delivery and release the store watch"""
        with self._lock:
            if self.state == SubscriptionState.CANCELLED:
                return
            self.state = SubscriptionState.CANCELLED
            watch, self._watch = self._watch, None
        if watch is not None:
            watch.cancel()
        if self._on_close:
            self._on_close(self)
        logger.debug(f"Subscription {self.name} cancelled")


def _to_requests(docs: List[Document]) -> List[CourseRequest]:
    return [CourseRequest.from_dict(doc) for doc in docs]


def _to_live_announcements(docs: List[Document]) -> List[Announcement]:
    now = utc_now()
    return [a for a in (Announcement.from_dict(doc) for doc in docs) if a.is_live(now)]


class SubscriptionManager:
    """
    Creates and tracks live subscriptions

    Keeps every open subscription so they can all be released at once.
    """

    def __init__(self, store: DocumentStore):
        self.store = store
        self._subscriptions: List[Subscription] = []
        self._lock = threading.Lock()

    def _register(self, subscription: Subscription, collection: str, filters: List[Filter]) -> Subscription:
        with self._lock:
            self._subscriptions.append(subscription)
        try:
            return subscription.start(self.store, collection, filters)
        except Exception:
            self._forget(subscription)
            raise

    def _forget(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def subscribe_requests(self, role: Union[SubscriberRole, str], user_id: str,
                           on_update: Callable[[List[CourseRequest]], None]) -> Subscription[CourseRequest]:
        """
        Watch the requests a user sends or receives

        Args:
            role: representative sees requests they filed; lecturer sees
                requests that target them
            user_id: The subscribing user
            on_update: Called with the full, newest-first request list
                now and after each relevant change

        Returns:
            Subscription handle

        Raises:
            ValidationException: If role or user ID is invalid
        """
        try:
            role = SubscriberRole(role.value if isinstance(role, Enum) else role)
        except ValueError:
            raise ValidationException('role', f"'{role}' is not one of: representative, lecturer")
        if not user_id:
            raise ValidationException('userId', "is required")

        if role == SubscriberRole.REPRESENTATIVE:
            filters = [where('requestedByUserId', '==', user_id)]
        else:
            filters = [where('targetLecturerIds', 'array-contains', user_id)]

        subscription = Subscription(f"requests:{role.value}:{user_id}", _to_requests, on_update, self._forget)
        return self._register(subscription, REQUESTS_COLLECTION, filters)

    def subscribe_announcements(self, course_code: str,
                                on_update: Callable[[List[Announcement]], None]) -> Subscription[Announcement]:
        """
        Watch the live announcements of a course

        Returns:
            Subscription handle
        """
        if not course_code:
            raise ValidationException('courseCode', "is required")
        subscription = Subscription(f"announcements:{course_code}", _to_live_announcements, on_update, self._forget)
        return self._register(subscription, ANNOUNCEMENTS_COLLECTION, [
            where('courseCode', '==', course_code),
            where('isActive', '==', True),
        ])

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def unsubscribe_all(self) -> int:
        """
        Cancel every open subscription

        Returns:
            Number of subscriptions cancelled
        """
        with self._lock:
            subscriptions = list(self._subscriptions)
        for subscription in subscriptions:
            subscription.unsubscribe()
        return len(subscriptions)
