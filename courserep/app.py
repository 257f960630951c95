"""
Main Application Module for the Course Representative Engine

This module contains the Flask application class that wires the document
store, the services and the subscription manager together and exposes
them as a JSON API. Identity is supplied by an upstream gateway through
the X-User-Id, X-User-Name and X-User-Role headers.
"""

import json
import logging
import threading
from typing import Dict, Optional, Tuple

import redis
from flask import Flask, Response, jsonify, request, stream_with_context

from .config import RetryPolicy, configure_logging, load_config
from .exceptions import (
    CourseRepException,
    ForbiddenException,
    NotFoundException,
    StoreUnavailableException,
    UnauthorizedException,
    ValidationException,
    VersionConflictException,
)
from .models import ActorContext, Role
from .notifications import LoggingNotificationDispatcher, NotificationDispatcher, RedisNotificationDispatcher
from .repositories import DocumentStore, RedisDocumentStore, RepositoryFactory
from .services import AnnouncementBroadcaster, AuthorizationService, RepresentativeRegistry, RequestWorkflowEngine
from .subscriptions import SubscriberRole, SubscriptionManager

logger = logging.getLogger(__name__)

ERROR_STATUS_CODES = (
    (UnauthorizedException, 401),
    (ForbiddenException, 403),
    (NotFoundException, 404),
    (ValidationException, 400),
    (VersionConflictException, 409),
    (StoreUnavailableException, 503),
)


def _document(model) -> Dict:
    """Model as a JSON-ready document including its id and version"""
    return {'id': model.id, 'version': model.version, **model.to_dict()}


class LatestSnapshot:
    """
    Single-slot mailbox between a subscription and a stream

    Every push is a full snapshot, so a slow reader only needs the newest
    one; older unread snapshots are replaced.
    """

    def __init__(self):
        self._condition = threading.Condition()
        self._snapshot = None
        self._ready = False

    def put(self, snapshot) -> None:
        with self._condition:
            self._snapshot = snapshot
            self._ready = True
            self._condition.notify()

    def take(self, timeout: Optional[float] = None) -> Tuple[bool, Optional[list]]:
        """
        Wait for an unread snapshot

        Returns:
            (True, snapshot) or (False, None) if the timeout passed
        """
        with self._condition:
            if not self._condition.wait_for(lambda: self._ready, timeout):
                return False, None
            snapshot, self._snapshot = self._snapshot, None
            self._ready = False
            return True, snapshot


class CourseRepApp:
    """
    Flask application for the course representative engine

    Owns the service graph and maps HTTP routes onto service operations.
    """

    def __init__(self, config: Optional[dict] = None, store: Optional[DocumentStore] = None,
                 dispatcher: Optional[NotificationDispatcher] = None):
        """
        Initialize the application

        Args:
            config: Optional configuration overrides
            store: Optional document store (built from config if omitted)
            dispatcher: Optional notification transport (built from config if omitted)
        """
        self.config = load_config(config)
        configure_logging(self.config['LOG_LEVEL'])

        # Initialize Flask app
        self.app = Flask(__name__)
        self._configure_app()

        # Initialize store and services
        self._redis_client: Optional[redis.Redis] = None
        self.store = store or self._create_store()
        self.dispatcher = dispatcher or self._create_dispatcher()

        retry_policy = RetryPolicy.from_config(self.config)
        self.authorization = AuthorizationService()
        self.registry = RepresentativeRegistry(self.store, self.authorization, retry_policy)
        self.workflow = RequestWorkflowEngine(
            self.store, self.registry, self.dispatcher, retry_policy, self.authorization
        )
        self.broadcaster = AnnouncementBroadcaster(
            self.store, self.registry, retry_policy, self.authorization,
            default_limit=int(self.config['ANNOUNCEMENT_DEFAULT_LIMIT']),
        )
        self.subscriptions = SubscriptionManager(self.store)

        self._register_routes()
        self._register_error_handlers()

    def _configure_app(self) -> None:
        """Apply Flask settings from the configuration"""
        self.app.secret_key = self.config['SECRET_KEY']
        self.app.config['DEBUG'] = self.config['DEBUG']
        self.app.json.sort_keys = False

    def _redis(self) -> redis.Redis:
        if self._redis_client is None:
            self._redis_client = redis.Redis(
                host=self.config['REDIS_HOST'],
                port=int(self.config['REDIS_PORT']),
                db=int(self.config['REDIS_DB']),
                decode_responses=True,
            )
        return self._redis_client

    def _create_store(self) -> DocumentStore:
        store_type = self.config['STORE_TYPE'].lower()
        if store_type == 'redis':
            return RedisDocumentStore(self._redis(), self.config['REDIS_PREFIX'])
        return RepositoryFactory.create_store(store_type, file_path=self.config['STORE_PATH'])

    def _create_dispatcher(self) -> NotificationDispatcher:
        transport = self.config['NOTIFICATION_TRANSPORT'].lower()
        if transport == 'redis':
            return RedisNotificationDispatcher(self._redis(), self.config['REDIS_PREFIX'])
        if transport != 'log':
            raise ValueError(f"Unsupported notification transport: {transport}")
        return LoggingNotificationDispatcher()

    def _register_routes(self) -> None:
        """Register all Flask routes"""
        add = self.app.add_url_rule
        add("/health", "health", self.health)

        # Representative registry
        add("/courses/<course_code>/representative", "assign_representative",
            self.assign_representative, methods=["POST"])
        add("/courses/<course_code>/representative", "get_representative",
            self.get_representative, methods=["GET"])
        add("/courses/<course_code>/representative", "deactivate_representative",
            self.deactivate_representative, methods=["DELETE"])
        add("/users/<user_id>/representative-courses", "representative_courses", self.representative_courses)

        # Request workflow
        add("/courses/<course_code>/requests", "create_request", self.create_request, methods=["POST"])
        add("/requests/sent", "sent_requests", self.sent_requests)
        add("/requests/inbox", "inbox_requests", self.inbox_requests)
        add("/requests/stream", "stream_requests", self.stream_requests)
        add("/requests/<request_id>", "get_request", self.get_request)
        add("/requests/<request_id>/responses", "respond_to_request",
            self.respond_to_request, methods=["POST"])

        # Announcements
        add("/courses/<course_code>/announcements", "send_announcement",
            self.send_announcement, methods=["POST"])
        add("/courses/<course_code>/announcements", "list_announcements", self.list_announcements)
        add("/courses/<course_code>/announcements/stream", "stream_announcements", self.stream_announcements)
        add("/announcements/<announcement_id>/views", "record_view", self.record_view, methods=["POST"])
        add("/announcements/<announcement_id>/acknowledgments", "record_acknowledgment",
            self.record_acknowledgment, methods=["POST"])
        add("/announcements/<announcement_id>", "expire_announcement",
            self.expire_announcement, methods=["DELETE"])

    def _register_error_handlers(self) -> None:
        """Register error handlers for custom exceptions"""

        @self.app.errorhandler(CourseRepException)
        def handle_course_rep_exception(e):
            status = next((code for cls, code in ERROR_STATUS_CODES if isinstance(e, cls)), 500)
            if status >= 500:
                logger.error(f"Request failed: {e}")
            return jsonify({'error': e.error_code, 'message': e.message}), status

    # ----------------------
    # Request helpers
    # ----------------------

    def _actor(self) -> ActorContext:
        """
        Build the actor from identity headers

        Raises:
            UnauthorizedException: If the user ID is missing or the role unknown
        """
        user_id = request.headers.get("X-User-Id", "").strip()
        if not user_id:
            raise UnauthorizedException("Missing X-User-Id header")
        role_name = request.headers.get("X-User-Role", Role.STUDENT.value).strip().lower()
        try:
            role = Role(role_name)
        except ValueError:
            raise UnauthorizedException(f"Unknown role '{role_name}'")
        return ActorContext(user_id=user_id, name=request.headers.get("X-User-Name", user_id), role=role)

    @staticmethod
    def _body() -> Dict:
        body = request.get_json(silent=True)
        if body is None:
            return {}
        if not isinstance(body, dict):
            raise ValidationException('body', "must be a JSON object")
        return body

    @staticmethod
    def _int_arg(name: str) -> Optional[int]:
        raw = request.args.get(name)
        if raw is None:
            return None
        try:
            return int(raw)
        except ValueError:
            raise ValidationException(name, "must be an integer")

    def _event_stream(self, subscribe) -> Response:
        """
        Stream snapshots from a subscription as server-sent events

        Args:
            subscribe: Function taking an on_update callback and
                returning a Subscription
        """
        latest = LatestSnapshot()
        subscription = subscribe(latest.put)
        heartbeat = float(self.config.get('STREAM_HEARTBEAT_SECONDS', 15))

        def generate():
            try:
                while True:
                    ready, snapshot = latest.take(timeout=heartbeat)
                    if not ready:
                        yield ": keep-alive\n\n"
                        continue
                    payload = json.dumps([_document(item) for item in snapshot])
                    yield f"event: snapshot\ndata: {payload}\n\n"
            finally:
                subscription.unsubscribe()

        response = Response(stream_with_context(generate()), mimetype="text/event-stream",
                            headers={'Cache-Control': 'no-cache'})
        # The generator's finally never runs if the client leaves before the first chunk
        response.call_on_close(subscription.unsubscribe)
        return response

    # ----------------------
    # Routes
    # ----------------------

    def health(self):
        if not self.store.ping():
            raise StoreUnavailableException("ping", "store did not respond")
        return jsonify({'status': 'ok'})

    def assign_representative(self, course_code: str):
        actor = self._actor()
        body = self._body()
        assignment_id = self.registry.assign_representative(
            actor, course_code, body.get('courseName', ''),
            body.get('representativeUserId'), body.get('representativeName', ''),
            permissions=body.get('permissions'), contact_methods=body.get('contactMethods'),
        )
        return jsonify({'assignmentId': assignment_id}), 201

    def get_representative(self, course_code: str):
        self._actor()
        assignment = self.registry.get_active_representative(course_code)
        return jsonify({'representative': _document(assignment) if assignment else None})

    def deactivate_representative(self, course_code: str):
        deactivated = self.registry.deactivate_representative(self._actor(), course_code)
        return jsonify({'deactivated': deactivated})

    def representative_courses(self, user_id: str):
        self._actor()
        courses = self.registry.list_representative_courses(user_id)
        return jsonify({'courses': [_document(c) for c in courses]})

    def create_request(self, course_code: str):
        actor = self._actor()
        body = self._body()
        request_id = self.workflow.create_request(
            actor, course_code, body.get('courseName', ''), body.get('type'),
            body.get('targetLecturerIds') or [], body,
        )
        return jsonify({'requestId': request_id}), 201

    def get_request(self, request_id: str):
        course_request = self.workflow.get_request(self._actor(), request_id)
        return jsonify({'request': _document(course_request)})

    def respond_to_request(self, request_id: str):
        actor = self._actor()
        body = self._body()
        status = self.workflow.respond_to_request(
            actor, request_id, body.get('decision'), body.get('comments', ''), body.get('lecturerId'),
        )
        return jsonify({'status': status.value})

    def sent_requests(self):
        requests = self.workflow.list_requests_by_requester(
            self._actor(), request.args.get('userId'), request.args.get('status'),
        )
        return jsonify({'requests': [_document(r) for r in requests]})

    def inbox_requests(self):
        requests = self.workflow.list_requests_by_lecturer(
            self._actor(), request.args.get('lecturerId'), request.args.get('status'),
        )
        return jsonify({'requests': [_document(r) for r in requests]})

    def stream_requests(self):
        actor = self._actor()
        default_role = SubscriberRole.LECTURER.value if actor.is_lecturer else SubscriberRole.REPRESENTATIVE.value
        role = request.args.get('role', default_role)
        return self._event_stream(
            lambda on_update: self.subscriptions.subscribe_requests(role, actor.user_id, on_update)
        )

    def send_announcement(self, course_code: str):
        actor = self._actor()
        body = self._body()
        announcement_id = self.broadcaster.send_announcement(actor, course_code, body.get('courseName', ''), body)
        return jsonify({'announcementId': announcement_id}), 201

    def list_announcements(self, course_code: str):
        self._actor()
        announcements = self.broadcaster.list_announcements(course_code, self._int_arg('limit'))
        return jsonify({'announcements': [_document(a) for a in announcements]})

    def stream_announcements(self, course_code: str):
        self._actor()
        return self._event_stream(
            lambda on_update: self.subscriptions.subscribe_announcements(course_code, on_update)
        )

    def record_view(self, announcement_id: str):
        actor = self._actor()
        view_count = self.broadcaster.record_view(actor, announcement_id, self._body().get('userId'))
        return jsonify({'viewCount': view_count})

    def record_acknowledgment(self, announcement_id: str):
        actor = self._actor()
        count = self.broadcaster.record_acknowledgment(actor, announcement_id, self._body().get('userId'))
        return jsonify({'acknowledgmentCount': count})

    def expire_announcement(self, announcement_id: str):
        expired = self.broadcaster.expire_announcement(self._actor(), announcement_id)
        return jsonify({'expired': expired})

    def close(self) -> None:
        """Release every live subscription"""
        self.subscriptions.unsubscribe_all()

    def run(self, host: str = '127.0.0.1', port: int = 5000, debug: bool = None) -> None:
        """
        Run the Flask development server

        Args:
            host: Host address to bind to
            port: Port number to listen on
            debug: Debug mode (overrides config if provided)
        """
        if debug is not None:
            self.app.config['DEBUG'] = debug

        self.app.run(host=host, port=port, debug=self.app.config['DEBUG'], threaded=True)


def create_app(config: Optional[dict] = None, **kwargs) -> CourseRepApp:
    """
    Factory function to create and configure the application

    Args:
        config: Optional configuration dictionary
        **kwargs: store and dispatcher overrides

    Returns:
        Configured CourseRepApp instance
    """
    return CourseRepApp(config, **kwargs)


def create_development_app() -> CourseRepApp:
    """
    Create application configured for development

    Returns:
        CourseRepApp with an in-memory store and debug logging
    """
    dev_config = {
        'DEBUG': True,
        'LOG_LEVEL': 'DEBUG',
        'STORE_TYPE': 'memory',
    }
    return create_app(dev_config)


def create_production_app() -> CourseRepApp:
    """
    Create application configured for production

    Store, Redis and secret settings come from COURSEREP_* environment
    variables.

    Returns:
        CourseRepApp with debug disabled
    """
    return create_app({'DEBUG': False})


if __name__ == "__main__":
    create_development_app().run(debug=True)
