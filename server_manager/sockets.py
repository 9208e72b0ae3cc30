"""
WebSocket endpoint through which clients wait for their server to be ready.

Clients send {"action": "checkServerIsReady", "serverId": ..., "jobId": ...}
and receive {"action": "checkServerIsReady", "serverId": ...} once the job
finishes.
"""
import json
import logging
import threading

import redis
from flask import Flask, current_app, request
from flask_sock import Sock

from .errors import DuplicateRegistrationError
from .job_queue import JobQueue
from .notifications import NotificationBridge
from shared.events import MessageError, Registration, server_failed_event, server_ready_event

logger = logging.getLogger(__name__)

sock = Sock()


class SocketConnection:
    """Bridge-facing wrapper around one WebSocket."""

    def __init__(self, ws, remote_addr: str = None):
        self.ws = ws
        self.remote_addr = remote_addr
        self._send_lock = threading.Lock()

    def send_json(self, payload: dict):
        with self._send_lock:
            self.ws.send(json.dumps(payload))


def handle_message(raw: str, connection, bridge: NotificationBridge, queue: JobQueue):
    try:
        registration = Registration.from_json(raw)
    except MessageError as e:
        logger.warning(f"Rejected message from {getattr(connection, 'remote_addr', None)}: {e}")
        connection.send_json({'error': str(e)})
        return

    job_id = registration.job_id
    reply = {
        'action': registration.action.value,
        'serverId': registration.server_id,
        'jobId': job_id,
    }

    try:
        known = queue.status(job_id) is not None
    except redis.RedisError as e:
        logger.error(f"Could not look up job {job_id}: {e}")
        connection.send_json(dict(reply, error='job status unavailable'))
        return
    if not known:
        connection.send_json(dict(reply, error='job not found'))
        return

    try:
        bridge.register(job_id, connection)
    except DuplicateRegistrationError:
        logger.warning(f"Duplicate registration for job {job_id}")
        connection.send_json(dict(reply, error='already pending'))
        return

    logger.info(f"Client waiting on server {registration.server_id} (job {job_id})")

    # The job may have finished before the client registered
    try:
        status = queue.status(job_id)
    except redis.RedisError as e:
        # Stays registered; the worker still delivers on completion
        logger.error(f"Could not re-check job {job_id}: {e}")
        return
    if status.status == 'completed':
        bridge.deliver(job_id, server_ready_event(registration.server_id))
    elif status.status == 'failed':
        bridge.deliver(job_id, server_failed_event(registration.server_id, status.error))


def serve_connection(connection: SocketConnection, bridge: NotificationBridge, queue: JobQueue):
    """Handle messages until the socket closes, then forget its registrations."""
    logger.info(f"Client connected from {connection.remote_addr}")

    try:
        while True:
            raw = connection.ws.receive()
            if raw is None:
                continue
            handle_message(raw, connection, bridge, queue)
    finally:
        dropped = bridge.discard_connection(connection)
        logger.info(f"Client {connection.remote_addr} disconnected ({dropped} pending)")


@sock.route('/ws')
def server_events(ws):
    serve_connection(
        SocketConnection(ws, request.remote_addr),
        current_app.bridge,
        current_app.job_queue
    )


def init_sockets(app: Flask):
    sock.init_app(app)
