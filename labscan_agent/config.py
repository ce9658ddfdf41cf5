"""Configuration and persisted state for the LabScan agent."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

PROVISION_UDP_PORT = 8870
CONTROL_PORT = 8148
CONTROL_PATH = "/ws/agent"
STATE_PATH = "agent_config.json"
FAKE_AGENT_COUNT = 4


@dataclass
class AgentConfig:
    """Agent runtime configuration — loaded from an optional config.json."""

    state_path: str = STATE_PATH
    resume_credential: bool = True

    # Provisioning
    provision_port: int = PROVISION_UDP_PORT
    provision_bind: str = "0.0.0.0"
    provision_retry_s: float = 2.0

    # Session
    control_port: int = CONTROL_PORT
    control_path: str = CONTROL_PATH
    connect_timeout_s: float = 10.0
    handshake_timeout_s: float = 10.0
    backoff_s: list[float] = field(default_factory=lambda: [3.0, 5.0, 8.0])

    # Heartbeat
    heartbeat_min_s: float = 5.0
    heartbeat_max_s: float = 10.0
    heartbeat_metrics: bool = True

    # Health probes
    probe_interval_s: float = 30.0
    internet_targets: list[str] = field(
        default_factory=lambda: ["1.1.1.1:443", "8.8.8.8:53"]
    )
    internet_timeout_s: float = 2.0
    dns_hostname: str = "example.com"
    dns_timeout_s: float = 2.0
    gateway_targets: list[str] = field(
        default_factory=lambda: ["192.168.1.1:53", "10.0.0.1:53", "172.16.0.1:53"]
    )
    gateway_timeout_s: float = 1.5

    # Simulation
    fake_agent_count: int = FAKE_AGENT_COUNT

    @classmethod
    def load(cls, path: str | Path) -> AgentConfig:
        path = Path(path)
        if path.exists():
            with open(path) as f:
                data = json.load(f)
            known = {k for k in cls.__dataclass_fields__}
            filtered = {k: v for k, v in data.items() if k in known}
            return cls(**filtered)
        logger.warning("Config not found at %s, using defaults", path)
        return cls()

    def save(self, path: str | Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(asdict(self), f, indent=2)

    def control_url(self, admin_ip: str) -> str:
        """WebSocket URL of the admin control channel."""
        return f"ws://{admin_ip}:{self.control_port}{self.control_path}"


@dataclass
class AgentState:
    """The small record persisted after each successful provisioning."""

    agent_id: str = ""
    admin_ip: str = ""
    secret: str = ""
    provisioned_at: int = 0

    @classmethod
    def load(cls, path: str | Path) -> Optional[AgentState]:
        """Read persisted state; ``None`` if missing or unreadable."""
        path = Path(path)
        if not path.exists():
            return None
        try:
            with open(path) as f:
                data = json.load(f)
        except (OSError, ValueError):
            logger.warning("Ignoring unreadable state file %s", path)
            return None
        if not isinstance(data, dict):
            return None
        known = {k for k in cls.__dataclass_fields__}
        return cls(**{k: v for k, v in data.items() if k in known})

    def save(self, path: str | Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(asdict(self), f, indent=2)

    @property
    def has_credential(self) -> bool:
        return bool(self.admin_ip.strip() and self.secret.strip())
