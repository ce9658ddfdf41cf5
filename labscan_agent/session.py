"""Session manager — the agent's connection lifecycle state machine.

States: PROVISIONING → CONNECTING → HANDSHAKING → ACTIVE

  CONNECTING / HANDSHAKING failure  → BACKOFF → CONNECTING (or DORMANT)
  ACTIVE disconnect                 → CONNECTING
  registered{ok: false}             → DORMANT

One credential drives one :class:`AgentSession`. Reaching ACTIVE resets the
backoff counter; each failure before ACTIVE consumes the next delay; running
out of delays, or an explicit ``registered{ok: false}``, ends in DORMANT and
the caller goes back to provisioning.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from typing import Any, Callable, Optional, Sequence

from .config import AgentConfig
from .errors import (
    HandshakeRejected,
    HandshakeTimeout,
    InvalidTransition,
    ProtocolError,
    TransportError,
)
from .heartbeat import HeartbeatEmitter
from .identity import AgentIdentity
from .probe import HealthProber
from .protocol import (
    REGISTER,
    REGISTERED,
    TASK,
    TASK_CANCEL,
    TaskDescriptor,
    WireEnvelope,
    parse_registered,
    register_payload,
)
from .provisioning import SessionCredential
from .tasks import TaskExecutor
from .transport import Connector, Transport, websocket_connector

logger = logging.getLogger(__name__)


class SessionState(enum.Enum):
    PROVISIONING = "provisioning"
    CONNECTING = "connecting"
    HANDSHAKING = "handshaking"
    ACTIVE = "active"
    BACKOFF = "backoff"
    DORMANT = "dormant"


class Event(enum.Enum):
    PROVISIONED = "provisioned"
    CONNECTED = "connected"
    CONNECT_FAILED = "connect_failed"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    HANDSHAKE_FAILED = "handshake_failed"
    DISCONNECTED = "disconnected"
    RETRY = "retry"
    EXHAUSTED = "exhausted"


class ExitReason(enum.Enum):
    OK = "ok"
    EARLY_FAILURE = "early_failure"
    EXPLICIT_REJECT = "explicit_reject"


TRANSITIONS: dict[tuple[SessionState, Event], SessionState] = {
    (SessionState.PROVISIONING, Event.PROVISIONED): SessionState.CONNECTING,
    (SessionState.CONNECTING, Event.CONNECTED): SessionState.HANDSHAKING,
    (SessionState.CONNECTING, Event.CONNECT_FAILED): SessionState.BACKOFF,
    (SessionState.HANDSHAKING, Event.ACCEPTED): SessionState.ACTIVE,
    (SessionState.HANDSHAKING, Event.REJECTED): SessionState.DORMANT,
    (SessionState.HANDSHAKING, Event.HANDSHAKE_FAILED): SessionState.BACKOFF,
    (SessionState.ACTIVE, Event.DISCONNECTED): SessionState.CONNECTING,
    (SessionState.BACKOFF, Event.RETRY): SessionState.CONNECTING,
    (SessionState.BACKOFF, Event.EXHAUSTED): SessionState.DORMANT,
}


class SessionStateMachine:
    """Current state plus the transition table; no I/O."""

    def __init__(self, state: SessionState = SessionState.PROVISIONING) -> None:
        self.state = state
        self._listeners: list[Callable[[SessionState, Event, SessionState], None]] = []

    def on_transition(
        self, callback: Callable[[SessionState, Event, SessionState], None]
    ) -> None:
        self._listeners.append(callback)

    def fire(self, event: Event) -> SessionState:
        key = (self.state, event)
        if key not in TRANSITIONS:
            raise InvalidTransition(f"{event.value} is not valid in {self.state.value}")
        old, self.state = self.state, TRANSITIONS[key]
        for cb in self._listeners:
            cb(old, event, self.state)
        return self.state


class ReconnectPolicy:
    """Ordered backoff list with a failure counter."""

    def __init__(self, delays: Sequence[float] = (3.0, 5.0, 8.0)) -> None:
        self.delays = list(delays)
        self.failures = 0

    def reset(self) -> None:
        self.failures = 0

    def next_delay(self) -> Optional[float]:
        """Consume the next delay, or ``None`` once the list is exhausted."""
        if self.failures >= len(self.delays):
            return None
        delay = self.delays[self.failures]
        self.failures += 1
        return delay

    @property
    def exhausted(self) -> bool:
        return self.failures >= len(self.delays)


class AgentSession:
    """Drives one credential from CONNECTING until DORMANT."""

    def __init__(
        self,
        identity: AgentIdentity,
        credential: SessionCredential,
        config: Optional[AgentConfig] = None,
        connector: Optional[Connector] = None,
    ) -> None:
        self.identity = identity
        self.credential = credential
        self.config = config or AgentConfig()
        self._connector = connector or websocket_connector(self.config.connect_timeout_s)

        self.machine = SessionStateMachine()
        self.machine.on_transition(self._log_transition)
        self.policy = ReconnectPolicy(self.config.backoff_s)
        self.prober = HealthProber(
            internet_targets=self.config.internet_targets,
            internet_timeout=self.config.internet_timeout_s,
            dns_hostname=self.config.dns_hostname,
            dns_timeout=self.config.dns_timeout_s,
            gateway_targets=self.config.gateway_targets,
            gateway_timeout=self.config.gateway_timeout_s,
            interval=self.config.probe_interval_s,
        )
        self.executor = TaskExecutor(self.send, simulated=identity.simulated)
        self.heartbeat = HeartbeatEmitter(
            self.send,
            prober=self.prober if self.config.heartbeat_metrics else None,
            min_s=self.config.heartbeat_min_s,
            max_s=self.config.heartbeat_max_s,
            task_count=lambda: self.executor.inflight,
        )

        self._transport: Optional[Transport] = None
        self._send_lock = asyncio.Lock()

    @property
    def state(self) -> SessionState:
        return self.machine.state

    @property
    def name(self) -> str:
        return self.identity.hostname

    # ── Lifecycle ─────────────────────────────────────────────────

    async def run(self) -> ExitReason:
        """Connect, register and keep reconnecting until DORMANT.

        Returns ``EXPLICIT_REJECT`` if the admin refused the credential, or
        ``EARLY_FAILURE`` once the backoff list is exhausted.
        """
        self.machine.fire(Event.PROVISIONED)
        while True:
            reason = await self.run_once()

            if reason is ExitReason.OK:
                self.policy.reset()
                continue
            if reason is ExitReason.EXPLICIT_REJECT:
                logger.warning("[%s] credential rejected, entering sleep mode", self.name)
                return reason

            delay = self.policy.next_delay()
            if delay is None:
                self.machine.fire(Event.EXHAUSTED)
                logger.warning("[%s] admin offline detected, entering sleep mode", self.name)
                return reason
            logger.info(
                "[%s] retrying in %.1fs (attempt %d/%d)",
                self.name, delay, self.policy.failures, len(self.policy.delays),
            )
            await asyncio.sleep(delay)
            self.machine.fire(Event.RETRY)

    async def run_once(self) -> ExitReason:
        """One attempt: connect, handshake and, if accepted, stay active."""
        url = self.config.control_url(self.credential.admin_ip)
        try:
            transport = await self._connector(url)
        except TransportError as e:
            logger.info("[%s] WS dial failed: %s", self.name, e)
            self.machine.fire(Event.CONNECT_FAILED)
            return ExitReason.EARLY_FAILURE

        self._transport = transport
        self.machine.fire(Event.CONNECTED)
        try:
            try:
                await self._handshake()
            except HandshakeRejected as e:
                logger.warning("[%s] WS register rejected: %s", self.name, e)
                self.machine.fire(Event.REJECTED)
                return ExitReason.EXPLICIT_REJECT
            except TransportError as e:
                logger.info("[%s] WS handshake failed: %s", self.name, e)
                self.machine.fire(Event.HANDSHAKE_FAILED)
                return ExitReason.EARLY_FAILURE

            logger.info("[%s] WS register accepted agent_id=%s", self.name, self.identity.agent_id)
            self.machine.fire(Event.ACCEPTED)
            await self._run_active()
            self.machine.fire(Event.DISCONNECTED)
            return ExitReason.OK
        finally:
            self._transport = None
            await transport.close()

    # ── Outbound ──────────────────────────────────────────────────

    async def send(self, msg_type: str, payload: Any) -> None:
        """Send one envelope; all writers share a single lock."""
        transport = self._transport
        if transport is None:
            raise TransportError("connection unavailable")
        raw = WireEnvelope(msg_type, self.identity.agent_id, payload).encode()
        async with self._send_lock:
            await transport.send(raw)

    # ── Handshake ─────────────────────────────────────────────────

    async def _handshake(self) -> None:
        loop = asyncio.get_running_loop()
        self.identity = await loop.run_in_executor(None, self.identity.refresh_ips)
        await self.send(
            REGISTER,
            register_payload(self.identity, self.credential.secret, self.executor.kinds),
        )
        try:
            await asyncio.wait_for(
                self._await_registered(), timeout=self.config.handshake_timeout_s
            )
        except asyncio.TimeoutError as e:
            raise HandshakeTimeout(
                f"no registered reply within {self.config.handshake_timeout_s}s"
            ) from e

    async def _await_registered(self) -> None:
        while True:
            envelope = await self._receive()
            if envelope is None:
                continue
            if envelope.type != REGISTERED:
                self._route(envelope)
                continue
            try:
                ok, error = parse_registered(envelope.payload)
            except ProtocolError:
                logger.debug("[%s] malformed registered payload", self.name)
                continue
            if not ok:
                raise HandshakeRejected(error or "registration rejected")
            return

    # ── Active ────────────────────────────────────────────────────

    async def _run_active(self) -> None:
        """Run router, heartbeat and prober until one of them stops."""
        loop = asyncio.get_running_loop()
        children = [
            loop.create_task(self._router(), name=f"{self.name}-router"),
            loop.create_task(self.heartbeat.run(), name=f"{self.name}-heartbeat"),
            loop.create_task(self.prober.run(), name=f"{self.name}-prober"),
        ]
        try:
            done, _ = await asyncio.wait(children, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for child in children:
                child.cancel()
            await asyncio.gather(*children, return_exceptions=True)

        for child in done:
            if child.cancelled():
                continue
            exc = child.exception()
            if isinstance(exc, TransportError):
                logger.info("[%s] WS closed: %s", self.name, exc)
            elif exc is not None:
                logger.error(
                    "[%s] %s crashed", self.name, child.get_name(), exc_info=exc
                )

    async def _router(self) -> None:
        while True:
            envelope = await self._receive()
            if envelope is not None:
                self._route(envelope)

    async def _receive(self) -> Optional[WireEnvelope]:
        transport = self._transport
        if transport is None:
            raise TransportError("connection unavailable")
        raw = await transport.recv()
        try:
            return WireEnvelope.decode(raw)
        except ProtocolError as e:
            logger.debug("[%s] dropped inbound message: %s", self.name, e)
            return None

    def _route(self, envelope: WireEnvelope) -> None:
        if envelope.type == TASK:
            try:
                task = TaskDescriptor.from_payload(envelope.payload)
            except ProtocolError as e:
                logger.debug("[%s] dropped task: %s", self.name, e)
                return
            logger.info("[%s] task %s kind=%s", self.name, task.task_id, task.kind)
            self.executor.dispatch(task)
        elif envelope.type == REGISTERED:
            logger.debug("[%s] duplicate registered ignored", self.name)
        elif envelope.type == TASK_CANCEL:
            # Placeholder: tasks are short-lived and not cancellable yet.
            logger.debug("[%s] task_cancel ignored", self.name)
        else:
            logger.debug("[%s] unhandled message type: %s", self.name, envelope.type)

    def _log_transition(self, old: SessionState, event: Event, new: SessionState) -> None:
        logger.debug("[%s] %s --%s--> %s", self.name, old.value, event.value, new.value)
