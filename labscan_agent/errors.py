"""Exception taxonomy for the agent.

Only :class:`TransportError` (and its :class:`HandshakeTimeout` subclass) and
:class:`HandshakeRejected` escalate into the session state machine; the rest
are contained where they are raised.
"""

from __future__ import annotations


class AgentError(Exception):
    """Base class for all agent errors."""


class ProvisioningError(AgentError):
    """A provisioning datagram was malformed or rejected."""


class TransportError(AgentError):
    """Connect, read or write failure on the control channel."""


class HandshakeTimeout(TransportError):
    """No ``registered`` reply arrived within the handshake timeout."""


class HandshakeRejected(AgentError):
    """The admin answered ``registered`` with ``ok: false``."""


class TaskError(AgentError):
    """A task failed; reported back as a failed result."""


class ProbeError(AgentError):
    """A health probe sample failed."""


class ProtocolError(AgentError):
    """An inbound envelope could not be decoded."""


class InvalidTransition(AgentError):
    """The session state machine was driven through an undefined edge."""
