import logging
import threading
from typing import Any, Dict, Protocol

from .errors import DuplicateRegistrationError

logger = logging.getLogger(__name__)


class Connection(Protocol):
    """Client connection able to receive a JSON event."""

    def send_json(self, payload: dict) -> None:
        ...


class NotificationBridge:
    """
    Maps in-flight job ids to the client connection waiting on them.

    Each registration is one-shot: it is removed on first delivery or when its
    connection closes. Events for jobs nobody waits on are dropped.
    """

    def __init__(self):
        self._pending: Dict[str, Connection] = {}
        self._lock = threading.Lock()

    def register(self, job_id: str, connection: Connection):
        """
        Associate a job with the connection waiting on it.

        Raises:
            DuplicateRegistrationError: a connection already waits on this job
        """
        job_id = str(job_id)
        with self._lock:
            if job_id in self._pending:
                raise DuplicateRegistrationError(job_id)
            self._pending[job_id] = connection
        logger.info(f"Registered client for job {job_id}")

    def deliver(self, job_id: str, event: Any) -> bool:
        """
        Send an event to the client waiting on a job, at most once.

        Returns:
            True if a registered client was found and the send succeeded
        """
        job_id = str(job_id)
        with self._lock:
            connection = self._pending.pop(job_id, None)

        if connection is None:
            logger.debug(f"No client waiting on job {job_id}, event dropped")
            return False

        payload = event.to_dict() if hasattr(event, 'to_dict') else event
        try:
            connection.send_json(payload)
        except Exception as e:
            logger.error(f"Failed to notify client for job {job_id}: {e}")
            return False

        logger.info(f"Notified client for job {job_id}")
        return True

    def discard_connection(self, connection: Connection) -> int:
        """Forget every registration held by a closed connection."""
        with self._lock:
            job_ids = [j for j, c in self._pending.items() if c is connection]
            for job_id in job_ids:
                del self._pending[job_id]
        if job_ids:
            logger.info(f"Dropped registrations for jobs {', '.join(job_ids)}")
        return len(job_ids)

    def is_pending(self, job_id: str) -> bool:
        with self._lock:
            return str(job_id) in self._pending

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)
