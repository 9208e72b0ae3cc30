"""
Container control client for game server instances.

Thin wrapper over the Docker Engine API. Every operation logs and surfaces the
runtime's error unchanged; retry decisions belong to the callers.
"""
import logging
import shlex
from datetime import datetime
from typing import Dict, List, Optional, Union

import docker
from docker.errors import DockerException

from .errors import ProvisioningError

logger = logging.getLogger(__name__)

Since = Optional[Union[int, float, datetime]]


def short_id(container_ref: Optional[str]) -> str:
    return (container_ref or '')[:12]


class ContainerClient:
    """Issues imperative operations against the container runtime."""

    def __init__(self, base_url: str = None, console_command: str = 'rcon-cli', client=None):
        self.base_url = base_url
        self.console_command = console_command
        self._client = client

    @property
    def client(self) -> docker.DockerClient:
        """Lazy-load Docker client."""
        if self._client is None:
            if self.base_url:
                self._client = docker.DockerClient(base_url=self.base_url)
            else:
                self._client = docker.from_env()
        return self._client

    def _container(self, container_ref: str):
        return self.client.containers.get(container_ref)

    @staticmethod
    def _since(since: Since) -> Optional[Union[int, datetime]]:
        # Engine granularity is whole seconds
        if since is None or isinstance(since, datetime):
            return since
        return int(since)

    # ==================== Images ====================

    def list_images(self, name: str = None) -> list:
        return self.client.images.list(name=name)

    def ensure_image(self, image: str):
        """Pull the image unless a local copy already exists."""
        if self.list_images(name=image):
            return
        logger.info(f"Pulling image {image}")
        self.client.images.pull(image)
        logger.info(f"Pulled image {image}")

    # ==================== Lifecycle ====================

    def create(
        self,
        image: str,
        env: Dict[str, str],
        port_bindings: Dict[str, int],
        volume_bindings: Dict[str, dict] = None,
        name: str = None
    ) -> str:
        """
        Create a container, pulling its image first if needed.

        Args:
            image: Image reference, e.g. 'itzg/minecraft-server'
            env: Environment variables passed to the container
            port_bindings: Container port ('25565/tcp') to host port
            volume_bindings: Host path to {'bind': path, 'mode': 'rw'}
            name: Optional container name

        Returns:
            The runtime-assigned container reference

        Raises:
            ProvisioningError: if the pull or the create call fails
        """
        try:
            self.ensure_image(image)
            container = self.client.containers.create(
                image,
                name=name,
                environment=env,
                ports=port_bindings,
                volumes=volume_bindings or {},
                tty=True,
            )
        except DockerException as e:
            logger.error(f"Failed to create container from {image}: {e}")
            raise ProvisioningError(f"Failed to create container from {image}: {e}") from e

        logger.info(f"Created container {short_id(container.id)} from {image}")
        return container.id

    def start(self, container_ref: str):
        try:
            self._container(container_ref).start()
        except DockerException as e:
            logger.error(f"Failed to start container {short_id(container_ref)}: {e}")
            raise
        logger.info(f"Started container {short_id(container_ref)}")

    def stop(self, container_ref: str, timeout: int = 30):
        try:
            self._container(container_ref).stop(timeout=timeout)
        except DockerException as e:
            logger.error(f"Failed to stop container {short_id(container_ref)}: {e}")
            raise
        logger.info(f"Stopped container {short_id(container_ref)}")

    def restart(self, container_ref: str, timeout: int = 30):
        try:
            self._container(container_ref).restart(timeout=timeout)
        except DockerException as e:
            logger.error(f"Failed to restart container {short_id(container_ref)}: {e}")
            raise
        logger.info(f"Restarted container {short_id(container_ref)}")

    def delete(self, container_ref: str, force: bool = False):
        try:
            self._container(container_ref).remove(force=force)
        except DockerException as e:
            logger.error(f"Failed to delete container {short_id(container_ref)}: {e}")
            raise
        logger.info(f"Deleted container {short_id(container_ref)}")

    def inspect(self, container_ref: str) -> dict:
        """Point-in-time state of a container."""
        try:
            container = self._container(container_ref)
        except DockerException as e:
            logger.error(f"Failed to inspect container {short_id(container_ref)}: {e}")
            raise

        state = container.attrs.get('State', {})
        return {
            'container_id': container.id,
            'running': bool(state.get('Running', False)),
            'status': state.get('Status', container.status),
            'started_at': state.get('StartedAt'),
            'finished_at': state.get('FinishedAt'),
            'exit_code': state.get('ExitCode'),
            'error': state.get('Error') or None,
        }

    # ==================== Logs ====================

    def tail_logs(self, container_ref: str, lines: int = 100, since: Since = None) -> str:
        """Return the last `lines` lines of already captured output."""
        try:
            output = self._container(container_ref).logs(
                stdout=True,
                stderr=True,
                tail=lines,
                since=self._since(since),
            )
        except DockerException as e:
            logger.error(f"Failed to read logs of container {short_id(container_ref)}: {e}")
            raise
        return output.decode('utf-8', errors='replace')

    def stream_logs(self, container_ref: str, since: Since = None):
        """
        Follow the container output from `since` onwards.

        The returned stream yields raw byte chunks and never ends on its own
        while the container runs; the caller must close() it.
        """
        try:
            return self._container(container_ref).logs(
                stdout=True,
                stderr=True,
                stream=True,
                follow=True,
                since=self._since(since),
            )
        except DockerException as e:
            logger.error(f"Failed to stream logs of container {short_id(container_ref)}: {e}")
            raise

    # ==================== Console ====================

    def exec_command(self, container_ref: str, command: str) -> str:
        """Run one administrative console command and return its output."""
        argv = shlex.split(self.console_command) + shlex.split(command)
        try:
            result = self._container(container_ref).exec_run(argv)
        except DockerException as e:
            logger.error(f"Failed to run '{command}' in container {short_id(container_ref)}: {e}")
            raise

        output = (result.output or b'').decode('utf-8', errors='replace').strip()
        if result.exit_code != 0:
            logger.warning(
                f"Command '{command}' exited with {result.exit_code} "
                f"in container {short_id(container_ref)}: {output}"
            )
        return output

    def exec_commands(self, container_ref: str, commands: List[str]) -> List[str]:
        """Run commands one after another, capturing each output separately."""
        return [self.exec_command(container_ref, command) for command in commands]
