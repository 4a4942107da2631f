"""Registration and periodic heartbeats with the nexus server."""

from __future__ import annotations

import ipaddress
import logging
import platform
import socket
import subprocess
import threading
from typing import Optional

from minexus.interfaces import ConnectionManager, MinionService, RegistrationManager
from minexus.messages import HostInfo, RegisterResponse

UNKNOWN = "unknown"
"""Value reported when a host property cannot be determined."""

_PROBE_ADDRESS = ("8.8.8.8", 80)


def get_hostname() -> str:
    """Return the output of the ``hostname`` command, or ``"unknown"``."""
    try:
        completed = subprocess.run(
            ["hostname"], capture_output=True, text=True, check=True, timeout=5
        )
    except (OSError, subprocess.SubprocessError):
        return UNKNOWN
    return completed.stdout.strip()


def _is_usable_ipv4(address: str) -> bool:
    try:
        parsed = ipaddress.ip_address(address)
    except ValueError:
        return False
    return parsed.version == 4 and not parsed.is_loopback and not parsed.is_unspecified


class ServiceRegistrationManager(RegistrationManager):
    """Registers a minion with the nexus and keeps the registration fresh."""

    def __init__(
        self,
        minion_id: str,
        service: MinionService,
        connection_manager: ConnectionManager,
        logger: Optional[logging.Logger] = None,
    ):
        self._lock = threading.Lock()
        self._id = minion_id
        self._service = service
        self._connection_manager = connection_manager
        self._logger = logger or logging.getLogger(__name__)

    @property
    def minion_id(self) -> str:
        """The identifier currently used for registration."""
        with self._lock:
            return self._id

    def update_minion_id(self, new_id: str) -> None:
        """Use ``new_id`` for subsequent registrations."""
        with self._lock:
            self._id = new_id

    def register(
        self, cancel: Optional[threading.Event] = None, host_info: Optional[HostInfo] = None
    ) -> RegisterResponse:
        """Register with the nexus, building host information when none is given.

        Errors from the service propagate. An unsuccessful response is
        returned as is; a successful one may change the minion identifier.
        """
        if host_info is None:
            host_info = self.create_host_info()
        try:
            response = self._service.register(host_info)
        except Exception:
            self._logger.error("failed to register minion", exc_info=True)
            raise

        if not response.success:
            self._logger.error("registration unsuccessful: %s", response.error_message)
            return response

        self._logger.debug("registration successful")
        with self._lock:
            if response.assigned_id and response.assigned_id != self._id:
                self._id = response.assigned_id
                self._logger.info("using server-assigned id %s", self._id)
        return response

    def periodic_register(self, cancel: threading.Event, interval: float) -> None:
        """Re-register every ``interval`` seconds until ``cancel`` is set.

        Failures are logged and the next heartbeat is attempted as usual.
        """
        self._logger.debug("starting periodic registration every %ss for %s", interval, self.minion_id)
        while not cancel.wait(interval):
            try:
                host_info = self.create_host_info()
                response = self._service.register(host_info)
            except Exception:
                self._logger.error("periodic registration failed", exc_info=True)
                continue
            if not response.success:
                self._logger.error("periodic registration unsuccessful: %s", response.error_message)
                continue
            self._logger.debug("periodic registration successful for %s", self.minion_id)
        self._logger.debug("periodic registration stopped")

    def create_host_info(self) -> HostInfo:
        """Describe this host for the nexus."""
        return HostInfo(
            id=self.minion_id,
            hostname=get_hostname(),
            ip=self.ip_address(),
            os=platform.system().lower(),
            tags={},
        )

    def ip_address(self) -> str:
        """Return the IPv4 address used to reach the nexus, or ``"unknown"``.

        While connected, the outbound address is probed first; otherwise the
        addresses bound to the host name are searched for a usable one.
        """
        if self._connection_manager.is_connected():
            try:
                with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as probe:
                    probe.connect(_PROBE_ADDRESS)
                    local = probe.getsockname()[0]
            except OSError:
                local = None
            if local and _is_usable_ipv4(local):
                self._logger.debug("using ip %s from active connection", local)
                return local

        try:
            infos = socket.getaddrinfo(socket.gethostname(), None, socket.AF_INET)
        except OSError:
            self._logger.error("failed to get interface addresses", exc_info=True)
            return UNKNOWN

        for *_, sockaddr in infos:
            address = sockaddr[0]
            if _is_usable_ipv4(address):
                self._logger.debug("using ip %s from network interface", address)
                return address

        self._logger.warning("no suitable network interface found")
        return UNKNOWN