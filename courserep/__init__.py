"""
Course Representative Coordination Engine

Coordinates a course's student representative and its lecturers: the
representative files assignment and quiz requests and broadcasts
announcements, lecturers approve or reject requests, and both sides keep
live views through snapshot subscriptions.

Main Components:
- models: Data models for assignments, requests, responses and announcements
- repositories: Document stores (in-memory, JSON file, Redis)
- services: Authorization, representative registry, request workflow, announcements
- subscriptions: Live snapshot subscriptions
- notifications: Lecturer notification dispatchers
- exceptions: Exception taxonomy
- app: Flask JSON API

Usage:
    from courserep import create_app

    app = create_app()
    app.run()
"""

__version__ = "1.0.0"
__author__ = "Course Rep Team"

# Import main components for easy access
from .app import CourseRepApp, create_app, create_development_app, create_production_app
from .config import RetryPolicy, load_config
from .models import (
    ActorContext,
    Announcement,
    AssignmentRequest,
    CourseRequest,
    Decision,
    LecturerResponse,
    Permission,
    QuizRequest,
    RepresentativeAssignment,
    RepresentativePermissions,
    RequestStatus,
    RequestType,
    Role,
    tally_responses,
)
from .notifications import (
    LoggingNotificationDispatcher,
    NotificationDispatcher,
    RecordingNotificationDispatcher,
    RedisNotificationDispatcher,
)
from .repositories import (
    DocumentStore,
    InMemoryDocumentStore,
    JSONDocumentStore,
    RedisDocumentStore,
    RepositoryFactory,
)
from .services import (
    AnnouncementBroadcaster,
    AuthorizationService,
    RepresentativeRegistry,
    RequestWorkflowEngine,
)
from .subscriptions import SubscriberRole, Subscription, SubscriptionManager
from .exceptions import (
    CourseRepException,
    UnauthorizedException,
    ForbiddenException,
    NotFoundException,
    VersionConflictException,
    StoreUnavailableException,
    ValidationException,
)

__all__ = [
    # App factory functions
    'CourseRepApp',
    'create_app',
    'create_development_app',
    'create_production_app',

    # Configuration
    'RetryPolicy',
    'load_config',

    # Data models
    'ActorContext',
    'Announcement',
    'AssignmentRequest',
    'CourseRequest',
    'Decision',
    'LecturerResponse',
    'Permission',
    'QuizRequest',
    'RepresentativeAssignment',
    'RepresentativePermissions',
    'RequestStatus',
    'RequestType',
    'Role',
    'tally_responses',

    # Stores
    'DocumentStore',
    'InMemoryDocumentStore',
    'JSONDocumentStore',
    'RedisDocumentStore',
    'RepositoryFactory',

    # Services
    'AnnouncementBroadcaster',
    'AuthorizationService',
    'RepresentativeRegistry',
    'RequestWorkflowEngine',

    # Subscriptions and notifications
    'SubscriberRole',
    'Subscription',
    'SubscriptionManager',
    'NotificationDispatcher',
    'LoggingNotificationDispatcher',
    'RecordingNotificationDispatcher',
    'RedisNotificationDispatcher',

    # Exceptions
    'CourseRepException',
    'UnauthorizedException',
    'ForbiddenException',
    'NotFoundException',
    'VersionConflictException',
    'StoreUnavailableException',
    'ValidationException',
]
