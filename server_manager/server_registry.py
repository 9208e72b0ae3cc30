import logging
import os
import time
import uuid
from typing import List, Optional, Tuple

from docker.errors import DockerException, NotFound
from flask import Flask

from .docker_client import ContainerClient, short_id
from .errors import NotFoundError
from .job_queue import JobQueue, JobStatus
from .models import db, Server
from .status_store import ServerStore
from shared.state_machine import ServerStateMachine, ServerStatus, TransitionError

logger = logging.getLogger(__name__)

PROPERTY_FIELDS = ('version', 'motd', 'difficulty', 'max_players', 'level_name')


class ServerRegistry:
    """
    Manages server instances on the request path:
    - Create/reconfigure/delete server records and their containers
    - Queue start jobs and report their status
    - Stop servers and run console commands
    - Reconcile persisted status with the runtime at startup
    """

    def __init__(self, app: Flask, store: ServerStore, containers: ContainerClient, queue: JobQueue):
        self.app = app
        self.store = store
        self.containers = containers
        self.queue = queue

    @property
    def config(self):
        return self.app.config

    # ==================== Ports & containers ====================

    def _get_available_port(self) -> int:
        """First port from the base port not held by a live server."""
        base_port = self.config['SERVER_BASE_PORT']
        max_instances = self.config['MAX_SERVER_INSTANCES']

        used_ports = {
            s.port for s in Server.query.filter(
                Server.status != ServerStatus.DELETED.value
            ).all()
        }
        for port in range(base_port, base_port + max_instances):
            if port not in used_ports:
                return port

        raise RuntimeError("No available ports for a new server")

    def _container_env(self, properties: dict) -> dict:
        return {
            'EULA': 'TRUE',
            'ONLINE_MODE': 'FALSE',
            'VIEW_DISTANCE': '10',
            'VERSION': properties['version'],
            'MOTD': properties['motd'],
            'MAX_PLAYERS': str(properties['max_players']),
            'DIFFICULTY': properties['difficulty'],
            'LEVEL': properties['level_name'],
        }

    def _create_container(self, server_id: str, port: int, properties: dict) -> str:
        container_port = self.config['SERVER_CONTAINER_PORT']
        data_dir = os.path.join(self.config['SERVER_DATA_DIR'], server_id)
        return self.containers.create(
            image=self.config['SERVER_IMAGE'],
            env=self._container_env(properties),
            port_bindings={f'{container_port}/tcp': port},
            volume_bindings={data_dir: {'bind': '/data', 'mode': 'rw'}},
        )

    # ==================== CRUD ====================

    def create_server(
        self,
        name: str,
        version: str = 'LATEST',
        motd: str = 'A simple server',
        difficulty: str = 'easy',
        max_players: int = 20,
        level_name: str = 'world'
    ) -> Tuple[Server, str]:
        """Create the container and record, then queue the first start."""
        server_id = f"srv_{uuid.uuid4().hex[:12]}"
        port = self._get_available_port()
        properties = {
            'version': version,
            'motd': motd,
            'difficulty': difficulty,
            'max_players': max_players,
            'level_name': level_name,
        }

        container_id = self._create_container(server_id, port, properties)

        server = Server(
            server_id=server_id,
            name=name,
            status=ServerStatus.TO_SETUP.value,
            container_id=container_id,
            port=port,
            **properties
        )
        db.session.add(server)
        db.session.commit()
        logger.info(f"Created server {server_id} on port {port} ({short_id(container_id)})")

        job_id = self.enqueue_start(server_id)
        return server, job_id

    def get_server(self, server_id: str) -> Server:
        server = Server.query.filter_by(server_id=server_id).first()
        if server is None:
            raise NotFoundError('server', server_id)
        return server

    def list_servers(self, status: str = None, include_deleted: bool = False) -> List[Server]:
        query = Server.query

        if status:
            query = query.filter_by(status=status)
        elif not include_deleted:
            query = query.filter(Server.status != ServerStatus.DELETED.value)

        return query.order_by(Server.created_at.desc()).all()

    def reconfigure_server(self, server_id: str, **changes) -> Server:
        """Recreate the backing container with new game properties."""
        server = self.get_server(server_id)
        self._require(server, 'reconfigure')

        unknown = set(changes) - set(PROPERTY_FIELDS) - {'name'}
        if unknown:
            raise ValueError(f"Unknown server properties: {', '.join(sorted(unknown))}")

        properties = server.properties
        properties.update({k: v for k, v in changes.items() if k in PROPERTY_FIELDS})

        new_container = self._create_container(server.server_id, server.port, properties)
        old_container = server.container_id
        if old_container:
            self._remove_container(old_container)

        for field, value in properties.items():
            setattr(server, field, value)
        if changes.get('name'):
            server.name = changes['name']
        server.container_id = new_container
        db.session.commit()

        logger.info(
            f"Reconfigured server {server_id}: container "
            f"{short_id(old_container)} -> {short_id(new_container)}"
        )
        return server

    def delete_server(self, server_id: str) -> Server:
        server = self.get_server(server_id)
        self._require(server, 'delete')

        if server.container_id:
            self._remove_container(server.container_id)

        self.store.transition(server_id, 'delete')
        logger.info(f"Deleted server {server_id}")
        return self.get_server(server_id)

    def _remove_container(self, container_id: str):
        try:
            self.containers.delete(container_id, force=True)
        except NotFound:
            logger.warning(f"Container {short_id(container_id)} already gone")

    # ==================== Lifecycle ====================

    @staticmethod
    def _require(server: Server, action: str):
        sm = ServerStateMachine.from_state_string(server.status)
        if not sm.can_perform(action):
            raise TransitionError(
                server.status, action,
                f"Cannot {action} server in {server.status} state"
            )

    def enqueue_start(self, server_id: str) -> str:
        server = self.store.get(server_id)
        return self.queue.enqueue({
            'server_id': server.server_id,
            'container_id': server.container_id,
            'enqueued_at': time.time(),
        })

    def start_server(self, server_id: str) -> str:
        """Queue a start job and return its id."""
        self._require(self.get_server(server_id), 'start')
        return self.enqueue_start(server_id)

    def stop_server(self, server_id: str) -> Server:
        server = self.get_server(server_id)
        self._require(server, 'stop')

        self.containers.stop(server.container_id)
        self.store.transition(server_id, 'stop')
        logger.info(f"Stopped server {server_id}")
        return self.get_server(server_id)

    def restart_server(self, server_id: str) -> str:
        """Stop the container and queue a fresh start job."""
        server = self.get_server(server_id)
        self._require(server, 'restart')

        self.containers.stop(server.container_id)
        if server.status != ServerStatus.STOPPED.value:
            self.store.transition(server_id, 'stop')
        return self.enqueue_start(server_id)

    def get_job_status(self, job_id: str) -> JobStatus:
        status = self.queue.status(job_id)
        if status is None:
            raise NotFoundError('job', job_id)
        return status

    # ==================== Runtime ====================

    def get_runtime_status(self, server_id: str) -> dict:
        server = self.get_server(server_id)
        return self.containers.inspect(server.container_id)

    def get_logs(self, server_id: str, lines: int = 100) -> List[str]:
        server = self.get_server(server_id)
        output = self.containers.tail_logs(server.container_id, lines=lines)
        return output.splitlines()

    def run_commands(self, server_id: str, commands: List[str]) -> List[str]:
        server = self.get_server(server_id)
        self._require(server, 'exec')
        return self.containers.exec_commands(server.container_id, commands)

    def add_operator(self, server_id: str, username: str) -> str:
        return self.run_commands(server_id, [f'op {username}'])[0]

    def remove_operator(self, server_id: str, username: str) -> str:
        return self.run_commands(server_id, [f'deop {username}'])[0]

    def save_world(self, server_id: str) -> str:
        return self.run_commands(server_id, ['save-all'])[0]

    # ==================== Reconciliation ====================

    def reconcile(self) -> List[str]:
        """
        Correct servers recorded as alive whose container is not running.

        Returns:
            Server ids whose status was changed to STOPPED
        """
        corrected = []
        for record in self.store.list_active():
            if record.status == ServerStatus.STOPPED:
                continue

            running = self._is_running(record.container_id)
            if running is None or running:
                continue

            self.store.transition(record.server_id, 'reconcile')
            corrected.append(record.server_id)
            logger.warning(
                f"Server {record.server_id} was {record.status.value} but its container "
                f"is not running, marked STOPPED"
            )

        logger.info(f"Reconciliation corrected {len(corrected)} server(s)")
        return corrected

    def _is_running(self, container_id: Optional[str]) -> Optional[bool]:
        """None when the runtime could not be asked."""
        if not container_id:
            return False
        try:
            return self.containers.inspect(container_id)['running']
        except NotFound:
            return False
        except DockerException as e:
            logger.error(f"Could not inspect container {short_id(container_id)}: {e}")
            return None
