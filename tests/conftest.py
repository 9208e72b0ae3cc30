"""
Pytest configuration and fixtures for server manager tests.
"""
import os
import sys
import threading
from unittest.mock import MagicMock

import fakeredis
import pytest

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

# Set testing environment before importing app
os.environ['FLASK_ENV'] = 'testing'

from server_manager.app import create_app
from server_manager.models import db, Server
from server_manager.notifications import NotificationBridge
from shared.state_machine import ServerStatus


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(
        'testing',
        redis_client=fakeredis.FakeRedis(decode_responses=True),
        docker_client=MagicMock()
    )

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create database session for testing."""
    with app.app_context():
        # Clear all tables before each test
        db.session.remove()

        for table in reversed(db.metadata.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        db.session.rollback()


@pytest.fixture
def redis_client(app):
    """Empty fake Redis shared with the app's job queue."""
    app.job_queue.redis.flushall()
    return app.job_queue.redis


@pytest.fixture
def docker_client(app, mocker):
    """Fresh Docker SDK mock installed on the app's container client."""
    mock = mocker.MagicMock()
    mock.images.list.return_value = ['itzg/minecraft-server:latest']
    mock.containers.create.return_value = mocker.MagicMock(id='c0ffee' * 10)
    app.containers._client = mock
    return mock


@pytest.fixture
def containers(mocker):
    """ContainerClient stand-in for unit tests of its callers."""
    mock = mocker.MagicMock()
    mock.tail_logs.return_value = ''
    mock.inspect.return_value = {'running': False, 'status': 'exited'}
    return mock


@pytest.fixture
def bridge():
    return NotificationBridge()


@pytest.fixture
def sample_server(app, db_session):
    """Create a stopped server with a container."""
    with app.app_context():
        server = Server(
            server_id='srv_test000001',
            name='Test Server',
            status=ServerStatus.STOPPED.value,
            container_id='a1b2c3d4e5f6' * 5,
            port=25565,
        )
        db.session.add(server)
        db.session.commit()

        db.session.refresh(server)
        return server


@pytest.fixture
def make_server(app, db_session):
    """Factory for servers in a given status."""
    def factory(server_id: str, status: ServerStatus, port: int, container_id: str = None):
        server = Server(
            server_id=server_id,
            name=f'Server {server_id}',
            status=status.value,
            container_id=container_id or f'{server_id}-container',
            port=port,
        )
        db.session.add(server)
        db.session.commit()
        db.session.refresh(server)
        return server
    return factory


class FakeLogStream:
    """
    Stand-in for a followed Docker log stream.

    Yields the scripted chunks, sleeping `delay` seconds before each, then
    blocks like a live stream until closed (or ends, if `end` is set).
    """

    def __init__(self, chunks=(), delay: float = 0.0, error: Exception = None, end: bool = False):
        self.chunks = list(chunks)
        self.delay = delay
        self.error = error
        self.end = end
        self.closed = threading.Event()

    def __iter__(self):
        for chunk in self.chunks:
            if self.closed.wait(self.delay):
                return
            yield chunk
        if self.error is not None:
            raise self.error
        if not self.end:
            self.closed.wait()

    def close(self):
        self.closed.set()


@pytest.fixture
def log_stream():
    return FakeLogStream
