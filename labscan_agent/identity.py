"""Agent identity — who this agent claims to be when it registers.

The real host identity is resolved from the persisted state file; fake
profiles used in simulation mode are generated fresh for every provisioning
event and never persisted.
"""

from __future__ import annotations

import logging
import platform
import socket
import uuid
from dataclasses import dataclass, field, replace
from pathlib import Path

from . import __version__
from .config import AgentState

logger = logging.getLogger(__name__)

_ARCH_ALIASES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "i386": "386",
    "i686": "386",
    "armv7l": "arm",
    "armv6l": "arm",
}


@dataclass(frozen=True)
class AgentIdentity:
    agent_id: str
    hostname: str
    ips: list[str] = field(default_factory=list)
    os: str = ""
    arch: str = ""
    version: str = __version__
    simulated: bool = False

    def refresh_ips(self) -> AgentIdentity:
        """Return a copy with the current local IPv4 set; the id never changes."""
        return replace(self, ips=local_ipv4s())


@dataclass(frozen=True)
class FakeAgentProfile(AgentIdentity):
    """Ephemeral identity for one simulated device."""

    simulated: bool = True

    @classmethod
    def create(cls, index: int) -> FakeAgentProfile:
        return cls(
            agent_id=str(uuid.uuid4()),
            hostname=f"LABSCAN-FAKE-{index:03d}",
            ips=[f"192.168.1.{100 + index}"],
            os=host_os(),
            arch=host_arch(),
        )

    def refresh_ips(self) -> FakeAgentProfile:
        return self


def resolve_identity(state_path: str | Path) -> AgentIdentity:
    """Build the host identity, reusing the persisted agent id if present."""
    state = AgentState.load(state_path)
    if state and state.agent_id.strip():
        agent_id = state.agent_id
    else:
        agent_id = str(uuid.uuid4())
        logger.info("No persisted agent id, generated %s", agent_id)
    return AgentIdentity(
        agent_id=agent_id,
        hostname=socket.gethostname(),
        ips=local_ipv4s(),
        os=host_os(),
        arch=host_arch(),
    )


def fake_profiles(count: int) -> list[FakeAgentProfile]:
    return [FakeAgentProfile.create(i) for i in range(1, count + 1)]


def host_os() -> str:
    return platform.system().lower() or "unknown"


def host_arch() -> str:
    machine = platform.machine()
    return _ARCH_ALIASES.get(machine.lower(), machine.lower() or "unknown")


def local_ipv4s() -> list[str]:
    """Best-effort list of this host's non-loopback IPv4 addresses."""
    ips: list[str] = []

    primary = _get_local_ip()
    if primary and not primary.startswith("127."):
        ips.append(primary)

    try:
        infos = socket.getaddrinfo(socket.gethostname(), None, socket.AF_INET)
    except OSError:
        infos = []
    for info in infos:
        ip = info[4][0]
        if ip.startswith("127.") or ip in ips:
            continue
        ips.append(ip)

    return ips or ["127.0.0.1"]


def _get_local_ip() -> str:
    """Get this machine's LAN IP address."""
    try:
        s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        s.settimeout(2)
        s.connect(("8.8.8.8", 80))
        ip = s.getsockname()[0]
        s.close()
        return ip
    except Exception:
        return ""
