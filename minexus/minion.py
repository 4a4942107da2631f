"""The minion: a worker node that registers with the nexus and runs its commands."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import CancelledError
from typing import Optional

from minexus.connection import NotConnectedError, StreamConnectionManager
from minexus.interfaces import CommandRegistry, MinionService
from minexus.messages import Command, CommandResult, RegisterResponse
from minexus.processor import CommandProcessor
from minexus.reconnect import ReconnectionManager
from minexus.registration import ServiceRegistrationManager

REGISTRATION_ATTEMPTS = 5
"""Number of initial registration attempts before giving up."""

_REGISTRATION_RETRY_STEP = 1.0
_RETRY_PAUSE = 1.0
_CANCEL_POLL_INTERVAL = 0.05


class InvalidCommandError(ValueError):
    """Raised when a command is not properly formatted."""

    def __init__(self, message: str = "invalid command format"):
        super().__init__(message)


class Minion:
    """A worker node that executes commands sent by the nexus.

    Two background threads run once started: one registers, connects and
    processes commands; the other sends periodic registration heartbeats.
    """

    def __init__(
        self,
        minion_id: str,
        service: MinionService,
        heartbeat_interval: float,
        initial_reconnect_delay: float,
        max_reconnect_delay: float,
        stream_timeout: float,
        registry: CommandRegistry,
        logger: Optional[logging.Logger] = None,
    ):
        self._logger = logger or logging.getLogger(__name__)
        self._id_lock = threading.Lock()
        self._id = minion_id
        self._service = service
        self._heartbeat_interval = heartbeat_interval
        self._registry = registry
        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []
        self._started = False

        self._reconnect_manager = ReconnectionManager(
            initial_reconnect_delay, max_reconnect_delay, self._logger
        )
        self._connection = StreamConnectionManager(
            minion_id, service, self._reconnect_manager, self._logger
        )
        self._processor = CommandProcessor(
            minion_id, registry, self._logger, service, stream_timeout, self._logger
        )
        self._registration = ServiceRegistrationManager(
            minion_id, service, self._connection, self._logger
        )

    @property
    def minion_id(self) -> str:
        """The identifier in use, possibly assigned by the server."""
        with self._id_lock:
            return self._id

    def start(self, cancel: Optional[threading.Event] = None) -> None:
        """Start the background threads; setting ``cancel`` stops them like ``stop``."""
        if self._started:
            raise RuntimeError("minion already started")
        self._started = True

        self._threads = [
            threading.Thread(target=self._run, name="minion-run", daemon=True),
            threading.Thread(target=self._periodic_registration, name="minion-heartbeat", daemon=True),
        ]
        if cancel is not None:
            self._threads.append(
                threading.Thread(
                    target=self._watch_cancel, args=(cancel,), name="minion-cancel", daemon=True
                )
            )
        for thread in self._threads:
            thread.start()

    def stop(self) -> None:
        """Signal the background threads to stop and wait for them."""
        self._stop_event.set()
        for thread in self._threads:
            thread.join()

    def execute_command(self, command: Command, cancel: Optional[threading.Event] = None) -> CommandResult:
        """Run a single command through the command processor."""
        return self._processor.execute(command, cancel)

    def _watch_cancel(self, cancel: threading.Event) -> None:
        while not self._stop_event.is_set():
            if cancel.wait(_CANCEL_POLL_INTERVAL):
                self._stop_event.set()
                return

    def _run(self) -> None:
        try:
            response = self._initial_registration()
        except CancelledError:
            self._logger.debug("cancelled during initial registration")
            return
        except Exception:
            self._logger.error("failed to register minion after all retries", exc_info=True)
            return
        self._handle_id_update(response)
        self._command_loop()

    def _initial_registration(self) -> RegisterResponse:
        for attempt in range(1, REGISTRATION_ATTEMPTS + 1):
            error: Optional[Exception] = None
            response: Optional[RegisterResponse] = None
            try:
                response = self._registration.register(self._stop_event)
            except Exception as exc:
                error = exc
            else:
                if response.success:
                    return response

            if attempt < REGISTRATION_ATTEMPTS:
                delay = attempt * _REGISTRATION_RETRY_STEP
                self._logger.warning(
                    "initial registration failed (attempt %d), retrying in %.1fs: %s",
                    attempt,
                    delay,
                    error or (response.error_message if response else ""),
                )
                if self._stop_event.wait(delay):
                    raise CancelledError("registration cancelled")
            elif error is not None:
                raise error
        message = response.error_message if response is not None else ""
        raise RuntimeError(f"registration unsuccessful: {message}")

    def _handle_id_update(self, response: RegisterResponse) -> None:
        assigned = response.assigned_id
        with self._id_lock:
            if not assigned or assigned == self._id:
                return
            self._id = assigned
        self._connection.update_minion_id(assigned)
        self._processor.update_minion_id(assigned)
        self._registration.update_minion_id(assigned)
        self._logger.info("using server-assigned id %s", assigned)

    def _command_loop(self) -> None:
        while not self._stop_event.is_set():
            if not self._ensure_connection():
                continue
            self._process_commands_from_stream()
        self._logger.debug("stop signal received, leaving command loop")

    def _ensure_connection(self) -> bool:
        if self._connection.is_connected():
            return True
        if not self._reregister():
            return False
        return self._establish_connection()

    def _reregister(self) -> bool:
        minion_id = self.minion_id
        self._logger.info("not connected, registering %s before connecting", minion_id)
        try:
            response = self._registration.register(self._stop_event)
        except Exception:
            self._logger.error("re-registration failed for %s", minion_id, exc_info=True)
            return self._wait_before_retry()
        if not response.success:
            self._logger.warning(
                "re-registration unsuccessful for %s: %s", minion_id, response.error_message
            )
            return self._wait_before_retry()
        return True

    def _establish_connection(self) -> bool:
        try:
            self._connection.connect(self._stop_event)
        except Exception as exc:
            self._logger.warning(
                "connect failed for %s (%s), reconnecting", self.minion_id, type(exc).__name__
            )
            try:
                self._connection.handle_reconnection(self._stop_event)
            except Exception:
                self._logger.error("reconnection failed for %s", self.minion_id, exc_info=True)
                return not self._stop_event.is_set()
        return True

    def _process_commands_from_stream(self) -> bool:
        try:
            stream = self._connection.stream()
        except NotConnectedError:
            self._logger.error("failed to get stream", exc_info=True)
            self._connection.disconnect()
            return False

        try:
            self._processor.process_commands(stream, self._stop_event)
        except Exception as exc:
            return self._handle_processing_error(exc)
        return True

    def _handle_processing_error(self, error: Exception) -> bool:
        if self._stop_event.is_set():
            self._logger.debug("command processing ended by cancellation: %s", error)
            return True
        self._logger.error(
            "command processing for %s ended with %s, will reconnect: %s",
            self.minion_id,
            type(error).__name__,
            error,
        )
        self._connection.disconnect()
        return self._wait_before_retry()

    def _wait_before_retry(self) -> bool:
        # Pause to avoid a tight loop; the caller always starts over.
        self._stop_event.wait(_RETRY_PAUSE)
        return False

    def _periodic_registration(self) -> None:
        try:
            self._registration.periodic_register(self._stop_event, self._heartbeat_interval)
        except Exception:
            self._logger.error("periodic registration ended with error", exc_info=True)