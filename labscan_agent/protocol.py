"""Wire protocol between agent and admin.

Every message in either direction is a JSON envelope::

    {"type": ..., "ts": <epoch ms>, "agent_id": ..., "payload": {...}}

  Agent → Admin: register, heartbeat, task_result
  Admin → Agent: registered, task, task_cancel
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from .errors import ProtocolError
from .identity import AgentIdentity

REGISTER = "register"
REGISTERED = "registered"
HEARTBEAT = "heartbeat"
TASK = "task"
TASK_CANCEL = "task_cancel"
TASK_RESULT = "task_result"


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class WireEnvelope:
    type: str
    agent_id: str = ""
    payload: Any = None
    ts: int = field(default_factory=now_ms)

    def encode(self) -> str:
        return json.dumps({
            "type": self.type,
            "ts": self.ts,
            "agent_id": self.agent_id,
            "payload": self.payload,
        })

    @classmethod
    def decode(cls, raw: str | bytes) -> WireEnvelope:
        try:
            data = json.loads(raw)
        except ValueError as e:
            raise ProtocolError(f"invalid JSON: {e}") from e
        if not isinstance(data, dict):
            raise ProtocolError("envelope is not an object")
        msg_type = data.get("type")
        if not isinstance(msg_type, str) or not msg_type:
            raise ProtocolError("envelope has no type")
        ts = data.get("ts")
        return cls(
            type=msg_type,
            agent_id=str(data.get("agent_id") or ""),
            payload=data.get("payload"),
            ts=ts if isinstance(ts, int) and not isinstance(ts, bool) else 0,
        )


@dataclass
class TaskDescriptor:
    task_id: str
    kind: str
    params: dict = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Any) -> TaskDescriptor:
        if not isinstance(payload, dict):
            raise ProtocolError("task payload is not an object")
        params = payload.get("params")
        return cls(
            task_id=str(payload.get("task_id") or ""),
            kind=str(payload.get("kind") or ""),
            params=params if isinstance(params, dict) else {},
        )


@dataclass
class TaskResult:
    task_id: str
    ok: bool
    result: Any = None
    error: Optional[str] = None

    def to_payload(self) -> dict:
        payload = {"task_id": self.task_id, "ok": self.ok, "result": self.result}
        if self.error is not None:
            payload["error"] = self.error
        return payload


def register_payload(
    identity: AgentIdentity, secret: str, capabilities: list[str]
) -> dict:
    return {
        "agent_id": identity.agent_id,
        "secret": secret,
        "hostname": identity.hostname,
        "ips": list(identity.ips),
        "os": identity.os,
        "arch": identity.arch,
        "version": identity.version,
        "capabilities": list(capabilities),
    }


def parse_registered(payload: Any) -> tuple[bool, str]:
    """Return ``(ok, error)`` from a ``registered`` payload."""
    if not isinstance(payload, dict):
        raise ProtocolError("registered payload is not an object")
    return payload.get("ok") is True, str(payload.get("error") or "")


def heartbeat_payload(status: str, metrics: Optional[dict] = None) -> dict:
    payload: dict[str, Any] = {"status": status, "last_seen": now_ms()}
    if metrics is not None:
        payload["metrics"] = metrics
    return payload
