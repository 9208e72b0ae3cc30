"""
Readiness detection for freshly started containers.

A container is ready once its output contains the sentinel string. Failure is
signalled by silence: the idle deadline moves forward on every chunk of output,
so a slow but progressing startup is never cut short.
"""
import logging
import queue
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from .docker_client import ContainerClient, Since, short_id
from .errors import ReadinessTimeoutError, StreamError

logger = logging.getLogger(__name__)

_CHUNK = 'chunk'
_ERROR = 'error'
_END = 'end'


class ReadinessState(str, Enum):
    WAITING = "WAITING"
    READY = "READY"
    TIMED_OUT = "TIMED_OUT"


@dataclass
class ReadinessWatch:
    container_ref: str
    deadline: float
    state: ReadinessState = ReadinessState.WAITING


def _decode(chunk) -> str:
    if isinstance(chunk, bytes):
        return chunk.decode('utf-8', errors='replace')
    return str(chunk)


class ReadinessDetector:
    """Waits for a container's output to announce that it accepts connections."""

    def __init__(
        self,
        containers: ContainerClient,
        sentinel: str,
        idle_timeout: float = 90.0,
        tail_lines: int = 100,
        clock: Callable[[], float] = time.monotonic
    ):
        if not sentinel:
            raise ValueError("sentinel must be a non-empty string")
        self.containers = containers
        self.sentinel = sentinel
        self.idle_timeout = idle_timeout
        self.tail_lines = tail_lines
        self.clock = clock

    def already_ready(self, container_ref: str, since: Since = None) -> bool:
        """Check the recent captured output without opening a stream."""
        output = self.containers.tail_logs(container_ref, lines=self.tail_lines, since=since)
        return self.sentinel in output

    def wait_until_ready(self, container_ref: str, since: Since = None) -> ReadinessState:
        """
        Block until the sentinel shows up in the container output.

        Args:
            container_ref: Container to watch
            since: Only output produced after this timestamp counts

        Returns:
            ReadinessState.READY

        Raises:
            ReadinessTimeoutError: no output for `idle_timeout` seconds
            StreamError: the log stream failed or ended first
        """
        if self.already_ready(container_ref, since=since):
            logger.info(f"Container {short_id(container_ref)} already ready")
            return ReadinessState.READY

        stream = self.containers.stream_logs(container_ref, since=since)
        chunks = queue.Queue()
        reader = threading.Thread(
            target=self._pump,
            args=(stream, chunks),
            name=f"logs-{short_id(container_ref)}",
            daemon=True
        )
        reader.start()

        watch = ReadinessWatch(container_ref, deadline=self.clock() + self.idle_timeout)
        try:
            self._watch(watch, chunks)
        finally:
            stream.close()

        logger.info(f"Container {short_id(container_ref)} is ready")
        return watch.state

    def _watch(self, watch: ReadinessWatch, chunks: queue.Queue):
        carry = ''
        keep = len(self.sentinel) - 1

        while watch.state == ReadinessState.WAITING:
            remaining = watch.deadline - self.clock()
            if remaining <= 0:
                watch.state = ReadinessState.TIMED_OUT
                logger.warning(
                    f"No output from container {short_id(watch.container_ref)} "
                    f"for {self.idle_timeout:g}s"
                )
                raise ReadinessTimeoutError(watch.container_ref, self.idle_timeout)

            try:
                kind, item = chunks.get(timeout=remaining)
            except queue.Empty:
                continue

            if kind == _ERROR:
                raise StreamError(
                    f"Log stream of container {short_id(watch.container_ref)} failed: {item}"
                ) from item
            if kind == _END:
                raise StreamError(
                    f"Log stream of container {short_id(watch.container_ref)} "
                    f"closed before the server was ready"
                )

            watch.deadline = self.clock() + self.idle_timeout
            text = carry + _decode(item)
            if self.sentinel in text:
                watch.state = ReadinessState.READY
            else:
                carry = text[-keep:] if keep else ''

    @staticmethod
    def _pump(stream, chunks: queue.Queue):
        """Move chunks from a blocking log stream onto the watch queue."""
        try:
            for chunk in stream:
                chunks.put((_CHUNK, chunk))
        except Exception as e:
            # Closing the stream from the watcher side also ends up here
            chunks.put((_ERROR, e))
            return
        chunks.put((_END, None))
