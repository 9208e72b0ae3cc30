import logging
import os

import redis
from docker.errors import DockerException
from flask import Flask, jsonify
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from .config import config
from .docker_client import ContainerClient
from .errors import NotFoundError, ProvisioningError
from .job_queue import JobQueue
from .lifecycle import LifecycleWorker
from .models import db
from .notifications import NotificationBridge
from .readiness import ReadinessDetector
from .server_registry import ServerRegistry
from .sockets import init_sockets
from .status_store import ServerStore
from shared.state_machine import TransitionError

logger = logging.getLogger(__name__)


def create_app(config_name: str = None, redis_client: redis.Redis = None, docker_client=None) -> Flask:
    """Application factory for the server manager."""
    if config_name is None:
        config_name = os.getenv('FLASK_ENV', 'development')

    app = Flask(__name__)
    app.config.from_object(config[config_name])

    # Initialize extensions
    db.init_app(app)

    if redis_client is None:
        redis_client = redis.from_url(
            app.config['REDIS_URL'],
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5
        )

    # Initialize services; shared by the request path and the queue workers
    containers = ContainerClient(
        base_url=app.config['DOCKER_URL'],
        console_command=app.config['CONSOLE_COMMAND'],
        client=docker_client
    )
    store = ServerStore(app)
    bridge = NotificationBridge()
    detector = ReadinessDetector(
        containers,
        sentinel=app.config['READINESS_SENTINEL'],
        idle_timeout=app.config['READINESS_IDLE_TIMEOUT'],
        tail_lines=app.config['READINESS_TAIL_LINES']
    )
    job_queue = JobQueue(
        app.config['SERVER_QUEUE_NAME'],
        redis_client,
        concurrency=app.config['QUEUE_CONCURRENCY'],
        max_attempts=app.config['QUEUE_MAX_ATTEMPTS'],
        backoff_ms=app.config['QUEUE_BACKOFF_MS'],
        poll_interval=app.config['QUEUE_POLL_INTERVAL']
    )
    register_queue_logging(job_queue)

    # Create tables
    with app.app_context():
        db.create_all()

    # Store services on app for access in routes
    app.containers = containers
    app.store = store
    app.bridge = bridge
    app.job_queue = job_queue
    app.lifecycle = LifecycleWorker(store, containers, detector, bridge)
    app.registry = ServerRegistry(app, store, containers, job_queue)

    # Register routes
    from .routes import servers
    app.register_blueprint(servers.bp)
    register_health_route(app)
    register_error_handlers(app)
    init_sockets(app)

    return app


def register_queue_logging(job_queue: JobQueue):
    job_queue.on('completed', lambda job, result: logger.info(
        f"Job {job.id} completed: {result}"))
    job_queue.on('failed', lambda job, error: logger.error(
        f"Job {job.id} failed: {error}"))
    job_queue.on('drained', lambda: logger.warning(
        f"Queue {job_queue.name} drained"))


def register_health_route(app: Flask):
    @app.route('/api/v1/health', methods=['GET'])
    def health():
        """Report database and queue backend connectivity."""
        status = {'status': 'ok', 'database': 'ok', 'queue': 'ok'}

        try:
            db.session.execute(text('SELECT 1'))
        except SQLAlchemyError as e:
            status['database'] = f'error: {e}'
            status['status'] = 'degraded'

        try:
            app.job_queue.redis.ping()
            status['jobs'] = app.job_queue.counts()
        except redis.RedisError as e:
            status['queue'] = f'error: {e}'
            status['status'] = 'degraded'

        return jsonify(status), 200 if status['status'] == 'ok' else 503


def register_error_handlers(app: Flask):
    @app.errorhandler(NotFoundError)
    def not_found(e):
        return jsonify({'error': str(e)}), 404

    @app.errorhandler(TransitionError)
    def invalid_transition(e):
        return jsonify({'error': str(e)}), 409

    @app.errorhandler(ValueError)
    def bad_request(e):
        return jsonify({'error': str(e)}), 400

    @app.errorhandler(ProvisioningError)
    def provisioning_failed(e):
        return jsonify({'error': str(e)}), 502

    @app.errorhandler(DockerException)
    def runtime_failed(e):
        logger.error(f"Container runtime error: {e}")
        return jsonify({'error': f'Container runtime error: {e}'}), 502
