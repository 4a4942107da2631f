"""Management of the command stream between a minion and the nexus."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import CancelledError
from typing import Optional

from minexus.interfaces import CommandStream, ConnectionManager, MinionService
from minexus.reconnect import ReconnectionManager

MINION_ID_METADATA_KEY = "minion-id"


class ConnectionInProgressError(RuntimeError):
    """Raised when a connection attempt is already running."""


class NotConnectedError(RuntimeError):
    """Raised when the stream is requested while disconnected."""


class StreamConnectionManager(ConnectionManager):
    """Opens, tracks and closes the command stream to the nexus."""

    def __init__(
        self,
        minion_id: str,
        service: MinionService,
        reconnect_manager: ReconnectionManager,
        logger: Optional[logging.Logger] = None,
    ):
        self._lock = threading.Lock()
        self._id = minion_id
        self._service = service
        self._reconnect_manager = reconnect_manager
        self._logger = logger or logging.getLogger(__name__)
        self._stream: Optional[CommandStream] = None
        self._connected = False
        self._connecting = False

    def _begin_attempt(self, operation: str) -> str:
        with self._lock:
            if self._connecting:
                self._logger.warning(
                    "%s called for %s while already connecting (connected=%s)",
                    operation,
                    self._id,
                    self._connected,
                )
                raise ConnectionInProgressError("connection attempt already in progress")
            self._connecting = True
            return self._id

    def _end_attempt(self) -> None:
        with self._lock:
            self._connecting = False

    def _open_stream(self, minion_id: str) -> None:
        try:
            stream = self._service.stream_commands({MINION_ID_METADATA_KEY: minion_id})
        except Exception:
            self._logger.error("error getting command stream for %s", minion_id, exc_info=True)
            with self._lock:
                self._stream = None
                self._connected = False
            raise
        with self._lock:
            self._stream = stream
            self._connected = True
        self._logger.info("obtained command stream for %s", minion_id)
        self._reconnect_manager.reset_delay()

    def connect(self, cancel: Optional[threading.Event] = None) -> None:
        """Open the command stream.

        Raises ConnectionInProgressError if another attempt is running, and
        whatever the service raises when the stream cannot be opened.
        """
        minion_id = self._begin_attempt("connect")
        try:
            self._open_stream(minion_id)
        finally:
            self._end_attempt()

    def disconnect(self) -> None:
        """Close the sending half of the stream and forget it."""
        with self._lock:
            stream, self._stream = self._stream, None
            self._connected = False
            if stream is None:
                self._logger.debug("disconnect called but no active stream")
                return
            self._logger.info("closing command stream for %s", self._id)
            stream.close_send()

    def is_connected(self) -> bool:
        """Return True while a stream is established."""
        with self._lock:
            return self._connected and self._stream is not None

    def stream(self) -> CommandStream:
        """Return the active stream; raise NotConnectedError if there is none."""
        with self._lock:
            if not self._connected or self._stream is None:
                raise NotConnectedError("not connected to nexus server")
            return self._stream

    def handle_reconnection(self, cancel: Optional[threading.Event] = None) -> None:
        """Wait for the next backoff delay, then reopen the stream.

        Raises concurrent.futures.CancelledError if ``cancel`` is set before
        or during the wait.
        """
        cancel = cancel or threading.Event()
        minion_id = self._begin_attempt("handle_reconnection")
        try:
            self._logger.info("stream connection lost for %s, reconnecting", minion_id)
            if cancel.is_set():
                raise CancelledError("reconnection cancelled")
            delay = self._reconnect_manager.next_delay()
            self._logger.info("reconnecting %s after %.3fs", minion_id, delay)
            if cancel.wait(delay):
                raise CancelledError("reconnection cancelled")
            self._open_stream(minion_id)
        finally:
            self._end_attempt()

    def update_minion_id(self, new_id: str) -> None:
        """Use ``new_id`` in the metadata of later connections."""
        with self._lock:
            self._id = new_id