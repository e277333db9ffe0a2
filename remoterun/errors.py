"""Error kinds raised across the sync-and-execute protocol."""

from __future__ import annotations


class RemoteRunError(Exception):
    """Base class for failures scoped to a single connection."""


class NetworkError(RemoteRunError):
    """Connect, read, write or flush failure, including peer disconnect."""


class ConnectError(NetworkError):
    """The initiator could not open a connection to the responder."""


class ProtocolError(RemoteRunError):
    """A frame could not be parsed into the expected message shape."""


class FilesystemError(RemoteRunError):
    """A file or directory could not be opened, read, written or created."""


class ProcessError(RemoteRunError):
    """The child process failed to spawn."""


__all__ = [
    "RemoteRunError",
    "NetworkError",
    "ConnectError",
    "ProtocolError",
    "FilesystemError",
    "ProcessError",
]
