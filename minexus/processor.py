"""Execution of commands received on the nexus command stream."""

from __future__ import annotations

import logging
import queue
import threading
import time
from concurrent.futures import CancelledError
from dataclasses import dataclass, field
from typing import Any, Optional

from minexus.interfaces import CommandExecutor, CommandRegistry, CommandStream, MinionService
from minexus.messages import Command, CommandResult, CommandStatusUpdate, CommandStreamMessage

STATUS_RECEIVED = "RECEIVED"
STATUS_EXECUTING = "EXECUTING"
STATUS_COMPLETED = "COMPLETED"
STATUS_FAILED = "FAILED"

SEQ_NUM_KEY = "seq_num"

_POLL_INTERVAL = 0.05


class CommandNotFoundError(LookupError):
    """Raised when the registry cannot run a command.

    ``result`` holds the failure result to report to the nexus.
    """

    def __init__(self, message: str, result: CommandResult):
        super().__init__(message)
        self.result = result


@dataclass
class ExecutionContext:
    """Everything a registered command needs while it runs."""

    cancel: threading.Event
    logger: logging.Logger
    level: Any
    minion_id: str
    command_id: str


@dataclass
class _Receiver:
    """A background receive on one stream, kept across timeouts."""

    stream: CommandStream
    results: "queue.Queue[tuple[Optional[CommandStreamMessage], Optional[BaseException]]]" = field(
        default_factory=queue.Queue
    )
    busy: bool = False

    def start(self) -> None:
        if self.busy:
            return
        self.busy = True
        threading.Thread(target=self._run, daemon=True).start()

    def _run(self) -> None:
        try:
            message = self.stream.recv()
        except BaseException as exc:  # handed to the waiting side
            self.results.put((None, exc))
        else:
            self.results.put((message, None))


_TIMED_OUT = object()


class CommandProcessor(CommandExecutor):
    """Runs commands through a registry and reports progress on the stream.

    Results and status updates that cannot be sent are kept and sent again
    when the next stream is processed.
    """

    def __init__(
        self,
        minion_id: str,
        registry: CommandRegistry,
        level: Any,
        service: Optional[MinionService],
        stream_timeout: float,
        logger: Optional[logging.Logger] = None,
    ):
        self._id = minion_id
        self._registry = registry
        self._level = level
        self._service = service
        self._stream_timeout = stream_timeout
        self._logger = logger or logging.getLogger(__name__)
        self._id_lock = threading.Lock()
        self._seq_lock = threading.Lock()
        self._seq_nums: dict[str, str] = {}
        self._pending_lock = threading.Lock()
        self._pending_results: list[CommandResult] = []
        self._pending_statuses: list[CommandStatusUpdate] = []
        self._receiver: Optional[_Receiver] = None
        self._logger.debug("command processor created for %s (stream timeout %ss)", minion_id, stream_timeout)

    @property
    def _minion_id(self) -> str:
        with self._id_lock:
            return self._id

    def update_minion_id(self, new_id: str) -> None:
        """Use ``new_id`` in later results and status updates."""
        with self._id_lock:
            self._logger.info("updating minion id from %s to %s", self._id, new_id)
            self._id = new_id

    @property
    def pending_results(self) -> list[CommandResult]:
        """Results waiting to be sent again."""
        with self._pending_lock:
            return list(self._pending_results)

    @property
    def pending_statuses(self) -> list[CommandStatusUpdate]:
        """Status updates waiting to be sent again."""
        with self._pending_lock:
            return list(self._pending_statuses)

    def execute(self, command: Command, cancel: Optional[threading.Event] = None) -> CommandResult:
        """Run ``command`` through the registry.

        Raises CommandNotFoundError, carrying a failure result, when the
        registry cannot run it.
        """
        minion_id = self._minion_id
        context = ExecutionContext(
            cancel=cancel or threading.Event(),
            logger=self._logger,
            level=self._level,
            minion_id=minion_id,
            command_id=command.id,
        )
        seq_num = command.metadata.get(SEQ_NUM_KEY, "unknown")
        self._logger.debug("executing command %s (%r, seq %s)", command.id, command.payload, seq_num)
        try:
            return self._registry.execute(context, command)
        except Exception as exc:
            self._logger.debug("command %s not found in registry: %s", command.id, exc)
            error = exc

        if command.metadata.get(SEQ_NUM_KEY):
            with self._seq_lock:
                self._seq_nums[command.id] = command.metadata[SEQ_NUM_KEY]

        result = CommandResult(
            command_id=command.id,
            minion_id=minion_id,
            timestamp=int(time.time()),
            exit_code=1,
            stderr=f"Command not found: {command.payload}",
        )
        raise CommandNotFoundError(f"command not found: {command.payload}", result) from error

    def can_handle(self, command: Optional[Command]) -> bool:
        """Accept any command that has an identifier."""
        return command is not None and command.id != ""

    def process_commands(self, stream: CommandStream, cancel: Optional[threading.Event] = None) -> None:
        """Receive and run commands until the stream stops.

        Returns when no message arrives within the stream timeout. Raises
        CancelledError when ``cancel`` is set and re-raises the stream's
        error (EOFError at end of stream) otherwise.
        """
        cancel = cancel or threading.Event()
        try:
            self.flush_pending(stream)
        except RuntimeError as exc:
            self._logger.warning("failed to flush some pending items on reconnect: %s", exc)

        while True:
            loop_start = time.monotonic()
            try:
                message = self._receive(stream, cancel)
            except CancelledError:
                self._logger.debug("cancelled, stopping command loop")
                raise
            except Exception as exc:
                self._on_stream_error(exc, cancel)
                raise
            if message is _TIMED_OUT:
                self._logger.debug("no message within %ss, leaving command loop", self._stream_timeout)
                return
            if message.command is None:
                self._logger.warning("received non-command message, skipping: %r", message)
                continue
            self._run_workflow(message.command, stream, cancel, loop_start)

    def flush_pending(self, stream: CommandStream) -> None:
        """Send every buffered result and status update on ``stream``.

        The buffers are emptied only if everything was sent; otherwise
        RuntimeError lists the failures and the buffers are kept.
        """
        with self._pending_lock:
            failures: list[str] = []
            for index, result in enumerate(self._pending_results):
                try:
                    stream.send(CommandStreamMessage.of_result(result))
                except Exception as exc:
                    failures.append(f"result {index}: {exc}")
                    continue
                self._logger.info("flushed pending result for %s", result.command_id)
            for index, status in enumerate(self._pending_statuses):
                try:
                    self._send_status(stream, status.command_id, status.status)
                except Exception as exc:
                    failures.append(f"status {index}: {exc}")
                    continue
                self._logger.debug("flushed pending %s status for %s", status.status, status.command_id)

            if failures:
                self._logger.warning("some pending items failed to flush: %s", failures)
                raise RuntimeError(f"failed to flush {len(failures)} items: {'; '.join(failures)}")
            self._pending_results = []
            self._pending_statuses = []

    def _receive(self, stream: CommandStream, cancel: threading.Event) -> Any:
        receiver = self._receiver
        if receiver is None or receiver.stream is not stream:
            receiver = self._receiver = _Receiver(stream)
        receiver.start()

        deadline = time.monotonic() + self._stream_timeout
        while True:
            if cancel.is_set():
                raise CancelledError("command processing cancelled")
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return _TIMED_OUT
            try:
                message, error = receiver.results.get(timeout=min(remaining, _POLL_INTERVAL))
            except queue.Empty:
                continue
            receiver.busy = False
            if error is not None:
                raise error
            return message

    def _on_stream_error(self, error: Exception, cancel: threading.Event) -> None:
        with self._pending_lock:
            self._logger.info(
                "pending buffers: %d results, %d statuses",
                len(self._pending_results),
                len(self._pending_statuses),
            )
        self._logger.error("stream error for %s (%s): %s", self._minion_id, type(error).__name__, error)
        if cancel.is_set():
            raise CancelledError("command processing cancelled") from error

    def _run_workflow(
        self, command: Command, stream: CommandStream, cancel: threading.Event, loop_start: float
    ) -> None:
        seq_num = command.metadata.get(SEQ_NUM_KEY)
        if seq_num is not None:
            with self._seq_lock:
                self._seq_nums[command.id] = seq_num

        self._send_status_buffered(stream, command.id, STATUS_RECEIVED)
        self._send_status_buffered(stream, command.id, STATUS_EXECUTING)

        try:
            result = self.execute(command, cancel)
        except CommandNotFoundError as exc:
            self._logger.error("error executing command %s: %s", command.id, exc)
            result = exc.result
            result.exit_code = 1
            result.stderr = str(exc)

        self._send_result_buffered(stream, result)
        final = STATUS_COMPLETED if result.exit_code == 0 else STATUS_FAILED
        self._send_status_buffered(stream, command.id, final)
        self._logger.debug(
            "command %s processed in %.3fs", command.id, time.monotonic() - loop_start
        )

    def _send_status(self, stream: CommandStream, command_id: str, status: str) -> None:
        update = CommandStatusUpdate(
            command_id=command_id,
            minion_id=self._minion_id,
            status=status,
            timestamp=int(time.time()),
        )
        stream.send(CommandStreamMessage.of_status(update))

    def _send_status_buffered(self, stream: CommandStream, command_id: str, status: str) -> None:
        try:
            self._send_status(stream, command_id, status)
        except Exception as exc:
            update = CommandStatusUpdate(
                command_id=command_id,
                minion_id=self._minion_id,
                status=status,
                timestamp=int(time.time()),
            )
            with self._pending_lock:
                self._pending_statuses.append(update)
            self._logger.warning("%s status for %s buffered for retry: %s", status, command_id, exc)

    def _send_result_buffered(self, stream: CommandStream, result: CommandResult) -> None:
        try:
            stream.send(CommandStreamMessage.of_result(result))
        except Exception as exc:
            with self._pending_lock:
                self._pending_results.append(result)
            self._logger.error("result for %s buffered for retry: %s", result.command_id, exc)
            return
        self._logger.info("result for %s sent (exit code %d)", result.command_id, result.exit_code)