"""Abstract contracts between the minion's components and its transport."""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from typing import Any, Mapping, Optional

from minexus.messages import Command, CommandResult, CommandStreamMessage, HostInfo, RegisterResponse


class CommandStream(ABC):
    """Client side of the bidirectional command stream."""

    @abstractmethod
    def recv(self) -> CommandStreamMessage:
        """Block until the next message arrives; raise EOFError when the stream ends."""

    @abstractmethod
    def send(self, message: CommandStreamMessage) -> None:
        """Send a message; raise on failure."""

    @abstractmethod
    def close_send(self) -> None:
        """Close the sending half of the stream."""


class MinionService(ABC):
    """Remote service the minion talks to."""

    @abstractmethod
    def register(self, host_info: HostInfo) -> RegisterResponse:
        """Register the host with the nexus server."""

    @abstractmethod
    def stream_commands(self, metadata: Mapping[str, str]) -> CommandStream:
        """Open a command stream, passing ``metadata`` with the call."""


class CommandRegistry(ABC):
    """Lookup and execution of the commands a minion knows."""

    @abstractmethod
    def execute(self, context: Any, command: Command) -> CommandResult:
        """Run ``command``; raise LookupError when it is not known."""


class ConnectionManager(ABC):
    """Stream management and connection state."""

    @abstractmethod
    def connect(self, cancel: threading.Event) -> None:
        """Establish a connection to the nexus server."""

    @abstractmethod
    def disconnect(self) -> None:
        """Close the connection to the nexus server."""

    @abstractmethod
    def is_connected(self) -> bool:
        """Return True while a stream is established."""

    @abstractmethod
    def stream(self) -> CommandStream:
        """Return the active command stream."""

    @abstractmethod
    def handle_reconnection(self, cancel: threading.Event) -> None:
        """Reconnect after a lost stream, with backoff."""


class CommandExecutor(ABC):
    """Execution of commands received from the nexus."""

    @abstractmethod
    def execute(self, command: Command, cancel: Optional[threading.Event] = None) -> CommandResult:
        """Run ``command`` and return its result."""

    @abstractmethod
    def can_handle(self, command: Optional[Command]) -> bool:
        """Return True if this executor accepts ``command``."""


class RegistrationManager(ABC):
    """Registration and heartbeats with the nexus."""

    @abstractmethod
    def register(self, cancel: threading.Event, host_info: Optional[HostInfo] = None) -> RegisterResponse:
        """Register with the nexus server."""

    @abstractmethod
    def periodic_register(self, cancel: threading.Event, interval: float) -> None:
        """Re-register every ``interval`` seconds until ``cancel`` is set."""