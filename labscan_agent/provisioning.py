"""UDP provisioning listener.

While unprovisioned the agent sleeps on a well-known UDP port waiting for an
admin to broadcast::

    {"type": "LABSCAN_PROVISION", "v": 1, "admin_ip": ..., "secret": ..., "nonce": ...}

The first valid datagram from a private address is persisted, acknowledged
with the echoed nonce, and turned into a :class:`SessionCredential`.
Everything else is dropped silently and listening continues.
"""

from __future__ import annotations

import asyncio
import ipaddress
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .config import AgentState
from .errors import ProvisioningError
from .protocol import now_ms

logger = logging.getLogger(__name__)

PROVISION_TYPE = "LABSCAN_PROVISION"
PROVISION_ACK_TYPE = "LABSCAN_PROVISION_ACK"
PROVISION_VERSION = 1

_PRIVATE_NETWORKS = [
    ipaddress.ip_network(n)
    for n in ("10.0.0.0/8", "172.16.0.0/12", "192.168.0.0/16", "127.0.0.0/8")
]


@dataclass(frozen=True)
class SessionCredential:
    admin_ip: str
    secret: str
    provisioned_at: int


@dataclass(frozen=True)
class ProvisionMessage:
    admin_ip: str
    secret: str
    nonce: str


def is_private_ip(ip: str) -> bool:
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return False
    if addr.version != 4:
        return False
    return any(addr in net for net in _PRIVATE_NETWORKS)


def parse_provision(data: bytes, sender_ip: str) -> ProvisionMessage:
    """Validate a provisioning datagram or raise :class:`ProvisioningError`."""
    if not is_private_ip(sender_ip):
        raise ProvisioningError(f"sender {sender_ip} is not a private address")
    try:
        msg = json.loads(data)
    except ValueError as e:
        raise ProvisioningError(f"invalid JSON: {e}") from e
    if not isinstance(msg, dict):
        raise ProvisioningError("datagram is not an object")
    if msg.get("type") != PROVISION_TYPE:
        raise ProvisioningError(f"unexpected type {msg.get('type')!r}")
    version = msg.get("v")
    if isinstance(version, bool) or not isinstance(version, int) or version != PROVISION_VERSION:
        raise ProvisioningError(f"unsupported version {version!r}")

    fields = {}
    for key in ("admin_ip", "secret", "nonce"):
        value = msg.get(key)
        if not isinstance(value, str) or not value.strip():
            raise ProvisioningError(f"missing {key}")
        fields[key] = value.strip()
    return ProvisionMessage(**fields)


class _ProvisionProtocol(asyncio.DatagramProtocol):
    def __init__(self, listener: ProvisioningListener) -> None:
        self._listener = listener
        self.transport: Optional[asyncio.DatagramTransport] = None

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self.transport = transport  # type: ignore[assignment]

    def datagram_received(self, data: bytes, addr: tuple) -> None:
        self._listener._on_datagram(data, addr, self.transport)

    def error_received(self, exc: Exception) -> None:
        logger.debug("Provisioning socket error: %s", exc)


class ProvisioningListener:
    """One-shot listener: :meth:`listen` returns the first accepted credential."""

    def __init__(
        self,
        agent_id: str,
        hostname: str,
        state_path: str | Path,
        port: int = 8870,
        host: str = "0.0.0.0",
    ) -> None:
        self.agent_id = agent_id
        self.hostname = hostname
        self.state_path = Path(state_path)
        self.port = port
        self.host = host
        self.local_address: Optional[tuple] = None
        self.ready = asyncio.Event()
        self._result: Optional[asyncio.Future] = None

    async def listen(self) -> SessionCredential:
        """Bind, wait for a valid datagram, acknowledge it and return.

        Raises ``OSError`` if the socket cannot be bound.
        """
        loop = asyncio.get_running_loop()
        self._result = loop.create_future()
        transport, _ = await loop.create_datagram_endpoint(
            lambda: _ProvisionProtocol(self),
            local_addr=(self.host, self.port),
        )
        try:
            self.local_address = transport.get_extra_info("sockname")
            self.ready.set()
            logger.info(
                "Sleep mode: waiting for admin provisioning on UDP %d...",
                self.local_address[1],
            )
            return await self._result
        finally:
            transport.close()
            self.ready.clear()

    def _on_datagram(
        self, data: bytes, addr: tuple, transport: Optional[asyncio.DatagramTransport]
    ) -> None:
        if self._result is None or self._result.done():
            return
        try:
            msg = parse_provision(data, addr[0])
        except ProvisioningError as e:
            logger.debug("Dropped provisioning datagram from %s: %s", addr[0], e)
            return

        credential = SessionCredential(
            admin_ip=msg.admin_ip, secret=msg.secret, provisioned_at=now_ms()
        )
        self._persist(credential)
        self._acknowledge(msg, addr, transport)
        logger.info("Provisioned by %s", msg.admin_ip)
        self._result.set_result(credential)

    def _persist(self, credential: SessionCredential) -> None:
        state = AgentState(
            agent_id=self.agent_id,
            admin_ip=credential.admin_ip,
            secret=credential.secret,
            provisioned_at=credential.provisioned_at,
        )
        try:
            state.save(self.state_path)
        except OSError as e:
            logger.warning("Failed to persist provisioning state: %s", e)

    def _acknowledge(
        self,
        msg: ProvisionMessage,
        addr: tuple,
        transport: Optional[asyncio.DatagramTransport],
    ) -> None:
        if transport is None:
            return
        ack = {
            "type": PROVISION_ACK_TYPE,
            "v": PROVISION_VERSION,
            "agent_id": self.agent_id,
            "hostname": self.hostname,
            "nonce": msg.nonce,
            "ts": now_ms(),
        }
        try:
            transport.sendto(json.dumps(ack).encode(), addr)
        except OSError as e:
            logger.debug("Failed to send provisioning ack: %s", e)
