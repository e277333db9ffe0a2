"""Responder and initiator roles of the sync-and-execute handshake."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import os
from pathlib import Path, PurePosixPath, PureWindowsPath
import socket
import tempfile
from typing import BinaryIO, Callable, List, Optional, Sequence

from ..errors import (
    ConnectError,
    FilesystemError,
    NetworkError,
    ProcessError,
    ProtocolError,
    RemoteRunError,
)
from ..execution import ExecutionResult, Multiplexer, decode_line
from .catalog import Catalog, CatalogBuilder, HiddenPredicate, is_hidden
from .framing import MAX_MESSAGE_BYTES, receive_block, receive_message, send_block, send_message
from .protocol import FileHeader, RunCommand, ordered_delta

logger = logging.getLogger("remoterun.sync.orchestrator")

DEFAULT_TIMEOUT = 30.0
REMOTE_ERROR_PREFIX = "[remoterun] "
LAUNCH_FAILURE_LINE = REMOTE_ERROR_PREFIX + "failed to launch {target}"
SYNC_FAILURE_LINE = REMOTE_ERROR_PREFIX + "sync failed during {phase}: {error}"

LineCallback = Callable[[str], None]


def resolve_inside(root: Path, relative_path: str) -> Path:
    """Map a wire path onto ``root``, refusing anything that escapes it.

    Separators are always ``/``. Characters that are only special on Windows
    (backslashes, drive colons) are ordinary filename characters elsewhere,
    so they are only refused when this host would interpret them.
    """
    pure = PurePosixPath(relative_path)
    escapes = pure.is_absolute() or ".." in pure.parts or not pure.parts
    if os.name == "nt":
        native = PureWindowsPath(relative_path)
        escapes = escapes or bool(native.anchor) or ".." in native.parts
    if escapes:
        raise ProtocolError(f"Refusing path outside the execution root: {relative_path!r}")
    return root.joinpath(*pure.parts)


def connect(host: str, port: int, timeout: Optional[float] = DEFAULT_TIMEOUT) -> socket.socket:
    """Open a connection to a responder."""
    try:
        return socket.create_connection((host, port), timeout=timeout)
    except OSError as exc:
        raise ConnectError(f"Cannot connect to {host}:{port}: {exc}") from exc


def _close_quietly(stream: BinaryIO) -> None:
    try:
        stream.close()
    except OSError as exc:
        logger.debug("Ignoring error while closing stream: %s", exc)


class Responder:
    """Server side: publish the catalog, receive files, run the target."""

    def __init__(
        self,
        execution_root: Path,
        launcher: Sequence[str],
        timeout: Optional[float] = DEFAULT_TIMEOUT,
        max_message_bytes: int = MAX_MESSAGE_BYTES,
        is_hidden: HiddenPredicate = is_hidden,
    ) -> None:
        self.execution_root = Path(execution_root)
        self.launcher = list(launcher)
        self.timeout = timeout
        self.max_message_bytes = max_message_bytes
        self.is_hidden = is_hidden

    def handle(self, conn: socket.socket) -> ExecutionResult:
        """Run one full responder cycle over an accepted connection."""
        conn.settimeout(self.timeout)
        reader = conn.makefile("rb")
        writer = conn.makefile("wb")
        phase = "catalog exchange"
        target_path = ""
        catalog_sent = False
        try:
            catalog = self.build_catalog()
            send_message(writer, catalog.to_wire())
            catalog_sent = True
            logger.info("Sent catalog with %d files", len(catalog))

            phase = "command receipt"
            command = RunCommand.from_dict(receive_message(reader, self.max_message_bytes))
            target_path = command.target_path
            target = resolve_inside(self.execution_root, target_path)
            logger.info("Run %s after %d file(s)", target_path, command.file_count)

            phase = "file receipt"
            for _ in range(command.file_count):
                self.receive_file(reader)

            phase = "execution spawn"
            multiplexer = Multiplexer(self.launcher + [str(target)], self.execution_root)
            return multiplexer.run(writer)
        except RemoteRunError as exc:
            logger.error("Connection failed during %s: %s", phase, exc, extra={"phase": phase})
            if isinstance(exc, ProcessError):
                self._report_failure(writer, LAUNCH_FAILURE_LINE.format(target=target_path))
            elif catalog_sent and not isinstance(exc, NetworkError):
                self._report_failure(writer, SYNC_FAILURE_LINE.format(phase=phase, error=exc))
            raise
        finally:
            _close_quietly(writer)
            _close_quietly(reader)

    def build_catalog(self) -> Catalog:
        try:
            self.execution_root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise FilesystemError(f"Cannot create execution root '{self.execution_root}': {exc}") from exc
        return CatalogBuilder(self.execution_root, is_hidden=self.is_hidden).build()

    def receive_file(self, reader: BinaryIO) -> Path:
        """Read one FileHeader + raw block and write it under the execution root."""
        header = FileHeader.from_dict(receive_message(reader, self.max_message_bytes))
        destination = resolve_inside(self.execution_root, header.relative_path)
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=".remoterun-", dir=destination.parent)
        except OSError as exc:
            raise FilesystemError(f"Cannot prepare '{destination}': {exc}") from exc

        try:
            with os.fdopen(fd, "wb") as sink:
                receive_block(reader, sink, header.length)
            os.replace(tmp_name, destination)
        except OSError as exc:
            os.unlink(tmp_name)
            raise FilesystemError(f"Cannot write '{destination}': {exc}") from exc
        except BaseException:
            os.unlink(tmp_name)
            raise

        logger.debug("Received %s (%d bytes)", header.relative_path, header.length)
        return destination

    def _report_failure(self, writer: BinaryIO, line: str) -> None:
        # Sent in place of program output; the initiator reads it as an error.
        try:
            writer.write(line.encode("utf-8") + b"\n")
            writer.flush()
        except OSError as exc:
            logger.debug("Could not report failure to peer: %s", exc)


@dataclass
class SyncReport:
    """What one initiator run transferred and received."""

    target_path: str
    transferred: List[str] = field(default_factory=list)
    unchanged: int = 0
    lines_received: int = 0
    output_interrupted: bool = False
    remote_error: Optional[str] = None

    def summary(self) -> str:
        parts = [f"{len(self.transferred)} transferred", f"{self.unchanged} unchanged"]
        parts.append(f"{self.lines_received} output lines")
        if self.output_interrupted:
            parts.append("output interrupted")
        if self.remote_error:
            parts.append("remote error")
        return ", ".join(parts)


def _print_line(line: str) -> None:
    print(line, flush=True)


class Initiator:
    """Client side: diff against the responder, push changes, stream output."""

    def __init__(
        self,
        working_dir: Path,
        timeout: Optional[float] = DEFAULT_TIMEOUT,
        on_line: Optional[LineCallback] = None,
        max_message_bytes: int = MAX_MESSAGE_BYTES,
        is_hidden: HiddenPredicate = is_hidden,
    ) -> None:
        self.working_dir = Path(working_dir)
        self.timeout = timeout
        self.on_line = on_line or _print_line
        self.max_message_bytes = max_message_bytes
        self.is_hidden = is_hidden

    def normalize_target(self, target_path: str) -> str:
        """Return ``target_path`` as a '/'-separated path relative to the working dir."""
        root = self.working_dir.resolve()
        candidate = Path(target_path)
        if not candidate.is_absolute():
            candidate = root / candidate
        candidate = candidate.resolve()
        try:
            relative = candidate.relative_to(root)
        except ValueError:
            raise FilesystemError(
                f"Target '{target_path}' is outside the working directory '{root}'"
            ) from None
        if not candidate.is_file():
            raise FilesystemError(f"Cannot open path {target_path}")
        if any(self.is_hidden(part) for part in relative.parts):
            logger.warning("Target %s is hidden and will not be synced", relative.as_posix())
        return relative.as_posix()

    def build_catalog(self) -> Catalog:
        return CatalogBuilder(self.working_dir, is_hidden=self.is_hidden).build()

    def run(
        self,
        conn: socket.socket,
        target_path: str,
        local: Optional[Catalog] = None,
    ) -> SyncReport:
        """Drive one full initiator cycle over an open connection.

        The responder's timeout is already running once it has sent its
        catalog, so callers syncing large trees should pass ``local``, built
        with :meth:`build_catalog` before connecting.
        """
        target = self.normalize_target(target_path)
        conn.settimeout(self.timeout)
        reader = conn.makefile("rb")
        writer = conn.makefile("wb")
        try:
            remote = Catalog.from_wire(receive_message(reader, self.max_message_bytes))
            if local is None:
                local = self.build_catalog()
            delta = ordered_delta(local, remote)
            report = SyncReport(target_path=target, unchanged=len(local) - len(delta))
            logger.info("Remote has %d files; sending %d of %d", len(remote), len(delta), len(local))

            send_message(writer, RunCommand(target_path=target, file_count=len(delta)).to_dict())
            for relative_path in delta:
                self.send_file(writer, relative_path)
                report.transferred.append(relative_path)

            # A running child may stay silent for a long time.
            conn.settimeout(None)
            self.receive_output(reader, report)
            return report
        finally:
            _close_quietly(writer)
            _close_quietly(reader)

    def send_file(self, writer: BinaryIO, relative_path: str) -> None:
        source_path = self.working_dir / relative_path
        try:
            source = open(source_path, "rb")
        except OSError as exc:
            raise FilesystemError(f"Cannot open '{source_path}': {exc}") from exc
        with source:
            length = os.fstat(source.fileno()).st_size
            send_message(writer, FileHeader(length=length, relative_path=relative_path).to_dict())
            send_block(writer, source, length)
        logger.debug("Sent %s (%d bytes)", relative_path, length)

    def receive_output(self, reader: BinaryIO, report: SyncReport) -> None:
        """Pass each output line to ``on_line``.

        The responder writes a single ``[remoterun] ...`` line instead of
        program output when it could not sync or launch; that line is kept
        in ``report.remote_error``.
        """
        try:
            for raw in reader:
                line = decode_line(raw)
                if report.lines_received == 0 and line.startswith(REMOTE_ERROR_PREFIX):
                    report.remote_error = line[len(REMOTE_ERROR_PREFIX):]
                    logger.error("Responder reported: %s", report.remote_error)
                self.on_line(line)
                report.lines_received += 1
        except OSError as exc:
            report.output_interrupted = True
            logger.warning("Output stream ended with error: %s", exc)


__all__ = [
    "DEFAULT_TIMEOUT",
    "Initiator",
    "LAUNCH_FAILURE_LINE",
    "REMOTE_ERROR_PREFIX",
    "Responder",
    "SyncReport",
    "connect",
    "resolve_inside",
]
