from contextlib import contextmanager
from dataclasses import dataclass
from typing import List, Optional

from flask import Flask, has_app_context

from .errors import NotFoundError
from .models import db, Server
from shared.state_machine import ServerStateMachine, ServerStatus


@dataclass
class ServerRecord:
    """Detached snapshot of the fields the lifecycle reads."""
    server_id: str
    container_id: Optional[str]
    status: ServerStatus
    port: int

    @classmethod
    def from_model(cls, server: Server) -> "ServerRecord":
        return cls(
            server_id=server.server_id,
            container_id=server.container_id,
            status=ServerStatus(server.status),
            port=server.port,
        )


class ServerStore:
    """
    Persisted server status with plain read-then-write semantics.

    Usable from request handlers and from queue worker threads; the latter get
    an application context pushed for the duration of each call.
    """

    def __init__(self, app: Flask = None):
        self.app = app

    @contextmanager
    def _app_context(self):
        if has_app_context() or self.app is None:
            yield
        else:
            with self.app.app_context():
                yield

    @staticmethod
    def _load(server_id: str) -> Server:
        server = Server.query.filter_by(server_id=server_id).first()
        if server is None:
            raise NotFoundError('server', server_id)
        return server

    def get(self, server_id: str) -> ServerRecord:
        with self._app_context():
            return ServerRecord.from_model(self._load(server_id))

    def transition(self, server_id: str, action: str) -> ServerStatus:
        """Apply a state machine action to the persisted status."""
        with self._app_context():
            server = self._load(server_id)
            sm = ServerStateMachine.from_state_string(server.status)
            new_state = sm.transition(action)
            server.status = new_state.value
            db.session.commit()
            return new_state

    def set_container(self, server_id: str, container_id: str):
        with self._app_context():
            server = self._load(server_id)
            server.container_id = container_id
            db.session.commit()

    def list_active(self) -> List[ServerRecord]:
        """Every server that has not been deleted."""
        with self._app_context():
            servers = Server.query.filter(
                Server.status != ServerStatus.DELETED.value
            ).order_by(Server.id).all()
            return [ServerRecord.from_model(s) for s in servers]
