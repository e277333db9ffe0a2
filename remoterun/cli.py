# remoterun/cli.py
"""
Command-line entry point.

Server mode binds a ResponderServer to ADDRESS:PORT (ADDRESS defaults to the
configured server.host) and serves forever.
Client mode syncs the working directory to ADDRESS:PORT, runs FILE there and
prints the remote output as it arrives.
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
import sys
from typing import Optional, Sequence

from rich.console import Console

from .configuration import (
    ConfigurationBundle,
    ExecutionSettings,
    NetworkSettings,
    ServerSettings,
    load_runtime_configuration,
)
from .errors import ConnectError, RemoteRunError
from .launcher import resolve_launcher
from .logging_utils import setup_logging
from .server import ResponderServer
from .sync.orchestrator import Initiator, Responder, connect

logger = logging.getLogger("remoterun")

EXIT_OK = 0
EXIT_CONNECT_FAILED = 1
EXIT_SYNC_FAILED = 2
EXIT_USAGE = 64


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="remoterun",
        description="Sync the current directory to a remote host and run a file there.",
    )
    parser.add_argument(
        "-p",
        "--port",
        type=int,
        default=None,
        help="Port to connect to or to listen on (default from config, 55455).",
    )
    parser.add_argument(
        "--server",
        action="store_true",
        help="Run as the server that receives files and executes them.",
    )
    parser.add_argument(
        "--root",
        type=Path,
        default=None,
        help="Server execution root (default: $REMOTERUN_HOME/workspace).",
    )
    parser.add_argument(
        "--workdir",
        type=Path,
        default=None,
        help="Client directory to sync (default: current directory).",
    )
    parser.add_argument("--log-level", default=None, help="Override the configured log level.")
    parser.add_argument(
        "address",
        metavar="ADDRESS",
        nargs="?",
        help="Address to connect to, or to bind in server mode (default from config).",
    )
    parser.add_argument("file_path", metavar="FILE", nargs="?", help="File to run remotely.")
    return parser


def emit_configuration_report(console: Console, config: ConfigurationBundle) -> None:
    """Print loading problems so operators can correct them quickly."""

    for diag in config.diagnostics:
        if diag.level == "info":
            continue
        prefix = diag.source or config.home_dir
        style = "red" if diag.level == "error" else "yellow"
        console.print(
            f"[config] ({diag.level.upper()}) {diag.message} [{prefix}]",
            style=style,
            markup=False,
        )


def run_server(
    console: Console,
    address: str,
    port: int,
    config: ConfigurationBundle,
    root: Optional[Path] = None,
) -> int:
    network = NetworkSettings.from_bundle(config)
    server_settings = ServerSettings.from_bundle(config)
    execution = ExecutionSettings.from_bundle(config)

    responder = Responder(
        execution_root=root or server_settings.execution_root,
        launcher=resolve_launcher(execution.interpreter, execution.flags),
        timeout=network.timeout,
        max_message_bytes=network.max_message_bytes,
    )
    server = ResponderServer(
        responder,
        host=address,
        port=port,
        concurrent=server_settings.concurrent,
    )

    console.print(f"Opening server at {address}:{port}", markup=False)
    logger.info("Execution root: %s", responder.execution_root)
    try:
        server.serve_forever()
    except OSError as exc:
        console.print(f"Cannot listen on {address}:{port}: {exc}", style="red", markup=False)
        return EXIT_CONNECT_FAILED
    except KeyboardInterrupt:
        console.print("\n[Stopping server]", markup=False)
        server.shutdown()
    return EXIT_OK


def run_client(
    console: Console,
    address: str,
    port: int,
    file_path: str,
    config: ConfigurationBundle,
    workdir: Optional[Path] = None,
) -> int:
    network = NetworkSettings.from_bundle(config)
    initiator = Initiator(
        working_dir=workdir or Path.cwd(),
        timeout=network.timeout,
        max_message_bytes=network.max_message_bytes,
    )

    try:
        initiator.normalize_target(file_path)
    except RemoteRunError as exc:
        console.print(f"Error: {exc}", style="red", markup=False)
        return EXIT_USAGE

    try:
        local = initiator.build_catalog()
    except RemoteRunError as exc:
        console.print(f"Sync failed: {exc}", style="red", markup=False)
        return EXIT_SYNC_FAILED

    console.print(f"Connecting to {address}:{port}... ", end="", markup=False)
    try:
        conn = connect(address, port, timeout=network.timeout)
    except ConnectError as exc:
        console.print("Connection failed", style="red")
        logger.debug("%s", exc)
        return EXIT_CONNECT_FAILED
    console.print("Connected", style="green")

    with conn:
        try:
            report = initiator.run(conn, file_path, local=local)
        except RemoteRunError as exc:
            console.print(f"Sync failed: {exc}", style="red", markup=False)
            return EXIT_SYNC_FAILED

    logger.debug("Sync finished: %s", report.summary())
    if report.remote_error:
        console.print(f"Remote error: {report.remote_error}", style="red", markup=False)
        return EXIT_SYNC_FAILED
    if report.output_interrupted:
        console.print("Output stream interrupted", style="yellow")
    return EXIT_OK


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Entry point for `python -m remoterun` and the `remoterun` script."""

    parser = build_parser()
    args = parser.parse_args(argv)
    console = Console(highlight=False)

    config = load_runtime_configuration()
    emit_configuration_report(console, config)

    configured_level = (config.merged.get("logging", {}) or {}).get("level")
    structured = bool((config.merged.get("logging", {}) or {}).get("structured", False))
    level_name = (args.log_level or configured_level or "WARNING").upper()
    config.log_path = setup_logging(config.home_dir, level_name, structured=structured)
    logger.debug("Logging initialized at %s", config.log_path)

    port = args.port if args.port is not None else NetworkSettings.from_bundle(config).port

    if args.server:
        address = args.address or ServerSettings.from_bundle(config).host
        return run_server(console, address, port, config, root=args.root)

    if not args.address or not args.file_path:
        parser.error("ADDRESS and FILE are required in client mode")
    return run_client(console, args.address, port, args.file_path, config, workdir=args.workdir)


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
