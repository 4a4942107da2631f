import threading
import time
from typing import Callable, Optional

import pytest

from minexus.interfaces import CommandRegistry, CommandStream, MinionService
from minexus.messages import (
    Command,
    CommandResult,
    CommandStreamMessage,
    CommandType,
    HostInfo,
    RegisterResponse,
)
from minexus.minion import InvalidCommandError, Minion
from minexus.processor import CommandNotFoundError


class FakeRegistry(CommandRegistry):
    def execute(self, context, command):
        if command.payload.startswith("echo "):
            return CommandResult(
                command_id=command.id,
                minion_id=context.minion_id,
                timestamp=int(time.time()),
                exit_code=0,
                stdout=command.payload[len("echo "):] + "\n",
            )
        raise LookupError(command.payload)


class FakeStream(CommandStream):
    def __init__(self, commands=(), closed=False, on_send=None):
        self._commands = list(commands)
        self.closed = closed
        self.sent = []
        self._on_send = on_send

    def recv(self):
        if self.closed or not self._commands:
            raise EOFError("end of stream")
        return CommandStreamMessage.of_command(self._commands.pop(0))

    def send(self, message):
        if self.closed:
            raise ConnectionError("stream closed")
        self.sent.append(message)
        if self._on_send is not None:
            self._on_send(message)

    def close_send(self):
        self.closed = True


class FakeService(MinionService):
    def __init__(
        self,
        register: Optional[Callable[[HostInfo], RegisterResponse]] = None,
        stream_commands: Optional[Callable[[dict], CommandStream]] = None,
    ):
        self._register = register
        self._stream_commands = stream_commands
        self.events = []
        self.register_calls = 0
        self.stream_metadata = []

    def register(self, host_info):
        self.register_calls += 1
        self.events.append("register")
        if self._register is not None:
            return self._register(host_info)
        return RegisterResponse(success=True, assigned_id=host_info.id)

    def stream_commands(self, metadata):
        self.events.append("stream")
        self.stream_metadata.append(dict(metadata))
        if self._stream_commands is not None:
            return self._stream_commands(metadata)
        return FakeStream(closed=True)


def _wait_for(predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def _make_minion(service, heartbeat=3600.0, stream_timeout=0.2):
    return Minion("test-minion", service, heartbeat, 0.01, 0.1, stream_timeout, FakeRegistry())


def test_new_minion_keeps_id():
    minion = Minion("test-id", FakeService(), 30.0, 5.0, 60.0, 30.0, FakeRegistry())
    assert minion.minion_id == "test-id"


def test_registration_updates_id_and_stream_metadata():
    service = FakeService(register=lambda info: RegisterResponse(success=True, assigned_id="assigned-id"))
    minion = _make_minion(service)
    minion.start()
    try:
        assert _wait_for(lambda: any(m.get("minion-id") == "assigned-id" for m in service.stream_metadata))
    finally:
        minion.stop()
    assert minion.minion_id == "assigned-id"
    assert all("minion-id" in m for m in service.stream_metadata)


def test_registration_failure_keeps_id_and_stops_promptly():
    def failing(info):
        raise ConnectionError("registration failed")

    service = FakeService(register=failing)
    minion = _make_minion(service)
    minion.start()
    time.sleep(0.2)
    started = time.monotonic()
    minion.stop()
    assert time.monotonic() - started < 1.0
    assert minion.minion_id == "test-minion"
    assert service.register_calls == 1
    assert "stream" not in service.events


def test_execute_command_success():
    minion = _make_minion(FakeService())
    command = Command(id="cmd-1", type=CommandType.SYSTEM, payload="echo hello")
    result = minion.execute_command(command)
    assert result.command_id == "cmd-1"
    assert result.minion_id == "test-minion"
    assert result.stdout == "hello\n"
    assert result.exit_code == 0


def test_execute_unknown_command_raises_with_result():
    minion = _make_minion(FakeService())
    command = Command(id="cmd-x", type=CommandType.INTERNAL, payload="nonexistent")
    with pytest.raises(CommandNotFoundError) as info:
        minion.execute_command(command)
    assert info.value.result.exit_code == 1
    assert info.value.result.minion_id == "test-minion"
    assert info.value.result.stderr == "Command not found: nonexistent"


def test_command_receiving_sends_results_in_order():
    commands = [
        Command(id="cmd-1", type=CommandType.SYSTEM, payload="echo test1"),
        Command(id="cmd-2", type=CommandType.SYSTEM, payload="echo test2"),
    ]
    results = []
    statuses = []
    lock = threading.Lock()
    first = {"served": False}

    def on_send(message):
        with lock:
            if message.result is not None:
                results.append(message.result)
            if message.status is not None:
                statuses.append((message.status.command_id, message.status.status))

    def stream_commands(metadata):
        if not first["served"]:
            first["served"] = True
            return FakeStream(commands, on_send=on_send)
        return FakeStream(closed=True)

    service = FakeService(stream_commands=stream_commands)
    minion = _make_minion(service)
    minion.start()
    try:
        assert _wait_for(lambda: len(results) == 2)
    finally:
        minion.stop()

    assert minion.minion_id == "test-minion"
    assert [r.command_id for r in results] == ["cmd-1", "cmd-2"]
    assert [r.minion_id for r in results] == ["test-minion", "test-minion"]
    assert [r.exit_code for r in results] == [0, 0]
    assert [r.stdout for r in results] == ["test1\n", "test2\n"]
    assert statuses == [
        ("cmd-1", "RECEIVED"),
        ("cmd-1", "EXECUTING"),
        ("cmd-1", "COMPLETED"),
        ("cmd-2", "RECEIVED"),
        ("cmd-2", "EXECUTING"),
        ("cmd-2", "COMPLETED"),
    ]


def test_unknown_command_on_stream_reports_failure():
    stream = FakeStream([Command(id="bad", type=CommandType.SYSTEM, payload="nonexistentcommand")])
    served = {"done": False}

    def stream_commands(metadata):
        if not served["done"]:
            served["done"] = True
            return stream
        return FakeStream(closed=True)

    minion = _make_minion(FakeService(stream_commands=stream_commands))
    minion.start()
    try:
        assert _wait_for(lambda: any(m.status and m.status.status == "FAILED" for m in stream.sent))
    finally:
        minion.stop()
    result = next(m.result for m in stream.sent if m.result is not None)
    assert result.command_id == "bad"
    assert result.exit_code == 1
    assert [m.status.status for m in stream.sent if m.status] == ["RECEIVED", "EXECUTING", "FAILED"]


def test_registers_again_before_connecting():
    service = FakeService()
    minion = _make_minion(service)
    minion.start()
    try:
        assert _wait_for(lambda: len(service.events) >= 3)
    finally:
        minion.stop()
    assert service.events[:3] == ["register", "register", "stream"]


def test_periodic_heartbeats_register_repeatedly():
    service = FakeService()
    minion = _make_minion(service, heartbeat=0.05)
    minion.start()
    try:
        assert _wait_for(lambda: service.register_calls >= 5)
    finally:
        minion.stop()
    assert service.register_calls >= 5


def test_external_cancel_stops_threads():
    service = FakeService()
    minion = _make_minion(service)
    cancel = threading.Event()
    minion.start(cancel)
    assert _wait_for(lambda: "stream" in service.events)
    cancel.set()
    started = time.monotonic()
    minion.stop()
    assert time.monotonic() - started < 2.0
    calls = service.register_calls
    time.sleep(0.1)
    assert service.register_calls == calls


def test_start_twice_raises():
    minion = _make_minion(FakeService())
    minion.start()
    try:
        with pytest.raises(RuntimeError):
            minion.start()
    finally:
        minion.stop()


def test_invalid_command_error_message():
    assert str(InvalidCommandError()) == "invalid command format"