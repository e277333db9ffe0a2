"""Run a child process and relay its stdout/stderr lines over one stream."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import os
from pathlib import Path
import queue
import subprocess
import threading
from typing import BinaryIO, Dict, List, Optional, Sequence, Tuple

from .errors import ProcessError

logger = logging.getLogger("remoterun.execution")

STDOUT = "stdout"
STDERR = "stderr"

# Marker pushed by a reader once its pipe reaches end-of-stream.
_EOF = None

SinkItem = Tuple[str, Optional[str]]


@dataclass
class ExecutionResult:
    """Outcome of one relayed execution."""

    command: List[str]
    lines_relayed: int = 0
    line_counts: Dict[str, int] = field(default_factory=lambda: {STDOUT: 0, STDERR: 0})
    returncode: Optional[int] = None
    disconnected: bool = False


def decode_line(raw: bytes) -> str:
    """Decode one pipe line, dropping its terminator and replacing bad bytes."""
    if raw.endswith(b"\n"):
        raw = raw[:-1]
    if raw.endswith(b"\r"):
        raw = raw[:-1]
    return raw.decode("utf-8", errors="replace")


def _read_pipe(name: str, pipe: BinaryIO, sink: "queue.Queue[SinkItem]") -> None:
    try:
        for raw in iter(pipe.readline, b""):
            sink.put((name, decode_line(raw)))
    except (OSError, ValueError) as exc:
        logger.warning("Reading child %s stopped early: %s", name, exc)
    finally:
        try:
            pipe.close()
        except OSError:
            pass
        sink.put((name, _EOF))


class Multiplexer:
    """Spawns a command and fans its two output pipes into one line stream.

    Two reader threads own the pipes and only ever push onto a shared queue;
    the thread calling :meth:`run` is the only one that writes to ``output``.
    """

    def __init__(
        self,
        command: Sequence[str],
        cwd: Path,
        env: Optional[Dict[str, str]] = None,
    ) -> None:
        self.command = [str(part) for part in command]
        self.cwd = Path(cwd)
        self.env = env

    def spawn(self) -> subprocess.Popen:
        env = None
        if self.env is not None:
            env = os.environ.copy()
            env.update(self.env)
        try:
            return subprocess.Popen(
                self.command,
                cwd=self.cwd,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as exc:
            raise ProcessError(f"Cannot start '{self.command[0]}': {exc}") from exc

    def run(self, output: BinaryIO) -> ExecutionResult:
        """Spawn the command and relay every output line to ``output``."""
        child = self.spawn()
        logger.info("Started pid %d: %s", child.pid, " ".join(self.command))

        sink: "queue.Queue[SinkItem]" = queue.Queue()
        readers = [
            threading.Thread(
                target=_read_pipe,
                args=(name, pipe, sink),
                name=f"remoterun-{name}-{child.pid}",
                daemon=True,
            )
            for name, pipe in ((STDOUT, child.stdout), (STDERR, child.stderr))
        ]
        for reader in readers:
            reader.start()

        result = ExecutionResult(command=list(self.command))
        open_streams = len(readers)
        while open_streams:
            name, line = sink.get()
            if line is _EOF:
                open_streams -= 1
                continue
            try:
                output.write(line.encode("utf-8") + b"\n")
                output.flush()
            except OSError as exc:
                # Peer is gone; the child and its readers finish on their own.
                logger.warning("Output connection lost after %d lines: %s", result.lines_relayed, exc)
                result.disconnected = True
                return result
            result.lines_relayed += 1
            result.line_counts[name] += 1

        result.returncode = child.wait()
        logger.info(
            "pid %d exited with %s after %d lines",
            child.pid,
            result.returncode,
            result.lines_relayed,
        )
        return result


__all__ = [
    "ExecutionResult",
    "Multiplexer",
    "STDERR",
    "STDOUT",
    "decode_line",
]
