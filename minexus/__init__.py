"""Worker-side components: registration, command streaming with reconnection, and command processing."""

__version__ = "0.1.0"

__all__ = ["messages", "interfaces", "reconnect", "registration", "connection", "processor", "minion"]