"""
Lifecycle worker: handler for start-server jobs.

One attempt moves a server STARTING -> RUNNING, or STARTING -> FAILED when the
container cannot be started or never announces readiness. Failed attempts are
handed back to the queue as retryable results.
"""
import logging

from docker.errors import DockerException

from .docker_client import ContainerClient, short_id
from .errors import NotFoundError, ProvisioningError, RetryableError
from .job_queue import Job, JobResult
from .notifications import NotificationBridge
from .readiness import ReadinessDetector
from .status_store import ServerStore
from shared.events import server_ready_event, server_failed_event
from shared.state_machine import TransitionError

logger = logging.getLogger(__name__)


class LifecycleWorker:
    def __init__(
        self,
        store: ServerStore,
        containers: ContainerClient,
        detector: ReadinessDetector,
        bridge: NotificationBridge
    ):
        self.store = store
        self.containers = containers
        self.detector = detector
        self.bridge = bridge

    def __call__(self, job: Job) -> JobResult:
        return self.handle(job)

    def handle(self, job: Job) -> JobResult:
        server_id = job.payload['server_id']

        try:
            server = self.store.get(server_id)
        except NotFoundError as e:
            logger.error(f"[job {job.id}] Server {server_id} no longer exists")
            return JobResult.fail(e)

        # Retries use the current container, which a reconfiguration may have replaced
        container_ref = server.container_id
        if container_ref != job.payload.get('container_id'):
            logger.warning(
                f"[job {job.id}] Container of server {server_id} changed since enqueue "
                f"({short_id(job.payload.get('container_id'))} -> {short_id(container_ref)})"
            )
        if not container_ref:
            error = ProvisioningError(f"Server {server_id} has no container")
            logger.error(f"[job {job.id}] {error}")
            return self._give_up(job, server_id, error)

        try:
            self.store.transition(server_id, 'begin_start')
        except TransitionError as e:
            logger.error(f"[job {job.id}] Cannot start server {server_id}: {e}")
            return self._give_up(job, server_id, e)

        logger.info(
            f"[job {job.id}] Starting server {server_id} in container {short_id(container_ref)}"
        )
        try:
            self.containers.start(container_ref)
            self.detector.wait_until_ready(container_ref, since=job.payload.get('enqueued_at'))
        except DockerException as e:
            return self._attempt_failed(
                job, server_id, container_ref,
                ProvisioningError(f"Failed to start container {short_id(container_ref)}: {e}")
            )
        except RetryableError as e:
            return self._attempt_failed(job, server_id, container_ref, e)
        except Exception as e:
            # Transport errors the SDK does not wrap, e.g. a dropped daemon connection
            logger.exception(f"[job {job.id}] Unexpected error starting server {server_id}")
            return self._attempt_failed(
                job, server_id, container_ref,
                ProvisioningError(f"Failed to start container {short_id(container_ref)}: {e}")
            )

        try:
            self.store.transition(server_id, 'mark_ready')
        except TransitionError as e:
            # Stopped or deleted on the request path while starting
            logger.warning(f"[job {job.id}] Server {server_id} changed while starting: {e}")
            return self._give_up(job, server_id, e)

        logger.info(f"[job {job.id}] Server {server_id} is running")
        self.bridge.deliver(job.id, server_ready_event(server_id))
        return JobResult.success(f"Server {server_id} started")

    def _attempt_failed(self, job: Job, server_id: str, container_ref: str, error: RetryableError) -> JobResult:
        runtime = self._runtime_state(container_ref)
        logger.error(
            f"[job {job.id}] Attempt {job.attempt}/{job.max_attempts} for server {server_id} "
            f"failed: {error} (persisting FAILED; container running={runtime.get('running')}, "
            f"status={runtime.get('status')})"
        )

        try:
            self.store.transition(server_id, 'mark_failed')
        except TransitionError as e:
            logger.warning(f"[job {job.id}] Server {server_id} changed while starting: {e}")
            return self._give_up(job, server_id, error)

        if job.is_final_attempt:
            self.bridge.deliver(job.id, server_failed_event(server_id, str(error)))
        return JobResult.retry(error)

    def _give_up(self, job: Job, server_id: str, error: Exception) -> JobResult:
        self.bridge.deliver(job.id, server_failed_event(server_id, str(error)))
        return JobResult.fail(error)

    def _runtime_state(self, container_ref: str) -> dict:
        try:
            return self.containers.inspect(container_ref)
        except Exception as e:
            return {'running': None, 'status': f'unknown ({e})'}
