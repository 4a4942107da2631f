"""Messages exchanged between a minion and the nexus server."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Optional


class CommandType(enum.Enum):
    """Kind of command sent by the nexus."""

    SYSTEM = "SYSTEM"
    INTERNAL = "INTERNAL"

    def __str__(self) -> str:
        return self.value


@dataclass
class Command:
    """A command to run on a minion."""

    id: str = ""
    type: CommandType = CommandType.SYSTEM
    payload: str = ""
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass
class CommandResult:
    """The outcome of running a command."""

    command_id: str = ""
    minion_id: str = ""
    timestamp: int = 0
    exit_code: int = 0
    stdout: str = ""
    stderr: str = ""


@dataclass
class CommandStatusUpdate:
    """A progress report for a command (RECEIVED, EXECUTING, COMPLETED, FAILED)."""

    command_id: str = ""
    minion_id: str = ""
    status: str = ""
    timestamp: int = 0


@dataclass
class HostInfo:
    """Host description a minion sends when registering."""

    id: str = ""
    hostname: str = ""
    ip: str = ""
    os: str = ""
    tags: dict[str, str] = field(default_factory=dict)


@dataclass
class RegisterResponse:
    """The nexus server's answer to a registration."""

    success: bool = False
    assigned_id: str = ""
    error_message: str = ""


@dataclass(frozen=True)
class CommandStreamMessage:
    """One message on the bidirectional command stream.

    At most one of ``command``, ``result`` and ``status`` is set.
    """

    command: Optional[Command] = None
    result: Optional[CommandResult] = None
    status: Optional[CommandStatusUpdate] = None

    def __post_init__(self) -> None:
        populated = [p for p in (self.command, self.result, self.status) if p is not None]
        if len(populated) > 1:
            raise ValueError("a stream message carries at most one payload")

    @classmethod
    def of_command(cls, command: Command) -> "CommandStreamMessage":
        """Wrap a command."""
        return cls(command=command)

    @classmethod
    def of_result(cls, result: CommandResult) -> "CommandStreamMessage":
        """Wrap a command result."""
        return cls(result=result)

    @classmethod
    def of_status(cls, status: CommandStatusUpdate) -> "CommandStreamMessage":
        """Wrap a status update."""
        return cls(status=status)