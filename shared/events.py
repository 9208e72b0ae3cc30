from enum import Enum
from dataclasses import dataclass
from typing import Optional
import json


class EventAction(str, Enum):
    CHECK_SERVER_IS_READY = "checkServerIsReady"


class MessageError(ValueError):
    """Raised for socket messages that cannot be understood."""


@dataclass
class ReadyEvent:
    """One-shot event pushed to the client waiting on a start job."""
    server_id: str
    ready: bool = True
    error: Optional[str] = None
    action: EventAction = EventAction.CHECK_SERVER_IS_READY

    def to_dict(self) -> dict:
        data = {
            "action": self.action.value,
            "serverId": self.server_id,
        }
        if not self.ready:
            data["ready"] = False
            data["error"] = self.error
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


@dataclass
class Registration:
    """Client message asking to be told when a job's server is ready."""
    action: EventAction
    server_id: str
    job_id: str

    @classmethod
    def from_dict(cls, data: dict) -> "Registration":
        if not isinstance(data, dict):
            raise MessageError("Message must be a JSON object")
        try:
            action = EventAction(data.get("action"))
        except ValueError:
            raise MessageError(f"Unknown action: {data.get('action')}")

        server_id = data.get("serverId")
        job_id = data.get("jobId")
        if server_id is None or job_id is None:
            raise MessageError("serverId and jobId are required")

        return cls(action=action, server_id=str(server_id), job_id=str(job_id))

    @classmethod
    def from_json(cls, json_str: str) -> "Registration":
        try:
            data = json.loads(json_str)
        except (TypeError, ValueError):
            raise MessageError("Malformed JSON message")
        return cls.from_dict(data)


def server_ready_event(server_id: str) -> ReadyEvent:
    return ReadyEvent(server_id=server_id)


def server_failed_event(server_id: str, error: str) -> ReadyEvent:
    return ReadyEvent(server_id=server_id, ready=False, error=error)
