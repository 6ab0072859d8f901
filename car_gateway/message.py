"""
Message schema for client <-> gateway communication.

Inbound (JSON text frames):
    {"type": "connect"}
    {"type": "disconnectCar"}
    {"type": "command", "action": "STOP" | "FORWARD" | "LEFT" | "RIGHT"}

Outbound:
    {"type": "status", "isConnected": bool, "error"?: str, "message"?: str}
    {"type": "error", "message": str}
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .errors import MalformedClientMessage

INTENT_CONNECT = "connect"
INTENT_DISCONNECT = "disconnectCar"
INTENT_COMMAND = "command"

_INTENT_KINDS = (INTENT_CONNECT, INTENT_DISCONNECT, INTENT_COMMAND)


@dataclass(frozen=True)
class ClientIntent:
    """
    Parsed inbound request from a client.

    Attributes:
        kind: One of connect, disconnectCar, command
        action: Requested action for command intents, None otherwise
    """
    kind: str
    action: Optional[str] = None

    @classmethod
    def from_json(cls, data: str) -> 'ClientIntent':
        """Parse from a JSON text frame."""
        try:
            d = json.loads(data)
        except (json.JSONDecodeError, TypeError) as e:
            raise MalformedClientMessage(f"Invalid JSON: {e}") from e

        if not isinstance(d, dict):
            raise MalformedClientMessage("Message must be a JSON object")

        kind = d.get("type")
        if kind not in _INTENT_KINDS:
            raise MalformedClientMessage(f"Unknown message type: {kind!r}")

        if kind != INTENT_COMMAND:
            return cls(kind=kind)

        action = d.get("action")
        if not isinstance(action, str):
            raise MalformedClientMessage("Command message requires a string 'action'")
        return cls(kind=kind, action=action)


@dataclass(frozen=True)
class StatusEvent:
    """
    Car connectivity as seen by clients.

    Attributes:
        is_connected: Whether the car link is up
        error: Reason for the last disconnect, if any
        message: Informational text (e.g. "Connecting...")
    """
    is_connected: bool
    error: Optional[str] = None
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"type": "status", "isConnected": self.is_connected}
        if self.error is not None:
            payload["error"] = self.error
        if self.message is not None:
            payload["message"] = self.message
        return payload

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


def error_message(text: str) -> Dict[str, Any]:
    """Build an outbound error frame."""
    return {"type": "error", "message": text}
