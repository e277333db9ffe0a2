"""End-to-end tests of the responder/initiator handshake over a socket pair."""

from __future__ import annotations

import logging
import os
from pathlib import Path
import socket
import sys
import threading
from typing import Any, Dict, List, Sequence, Tuple

import pytest

from remoterun.errors import ConnectError, FilesystemError, ProcessError, ProtocolError, RemoteRunError
from remoterun.sync.catalog import Catalog, build_catalog
from remoterun.sync.framing import receive_message, send_message
from remoterun.sync.orchestrator import (
    Initiator,
    Responder,
    SyncReport,
    connect,
    resolve_inside,
)

LAUNCHER = [sys.executable, "-u"]


def _write(root: Path, rel: str, content: str) -> Path:
    path = root / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


def _serve_in_thread(responder: Responder, sock: socket.socket) -> Tuple[threading.Thread, Dict[str, Any]]:
    outcome: Dict[str, Any] = {}

    def _serve() -> None:
        with sock:
            try:
                outcome["result"] = responder.handle(sock)
            except RemoteRunError as exc:
                outcome["error"] = exc

    thread = threading.Thread(target=_serve, daemon=True)
    thread.start()
    return thread, outcome


def _sync(
    exec_root: Path,
    workdir: Path,
    target: str,
    launcher: Sequence[str] = LAUNCHER,
) -> Tuple[SyncReport, List[str], Dict[str, Any]]:
    server_sock, client_sock = socket.socketpair()
    thread, outcome = _serve_in_thread(Responder(exec_root, launcher, timeout=10), server_sock)

    lines: List[str] = []
    with client_sock:
        report = Initiator(workdir, timeout=10, on_line=lines.append).run(client_sock, target)
    thread.join(timeout=15)
    assert not thread.is_alive()
    return report, lines, outcome


@pytest.fixture
def sides(tmp_path: Path) -> Tuple[Path, Path]:
    exec_root = tmp_path / "server" / "workspace"
    workdir = tmp_path / "client"
    workdir.mkdir()
    return exec_root, workdir


def test_single_script_is_transferred_and_run(sides):
    exec_root, workdir = sides
    _write(workdir, "script.py", "print('hello from remote')\n")

    report, lines, outcome = _sync(exec_root, workdir, "script.py")

    assert report.transferred == ["script.py"]
    assert lines == ["hello from remote"]
    assert (exec_root / "script.py").read_text(encoding="utf-8") == "print('hello from remote')\n"
    assert outcome["result"].returncode == 0
    assert report.lines_received == 1


def test_identical_files_are_not_retransferred(sides):
    exec_root, workdir = sides
    library = "VALUE = 42\n"
    _write(exec_root, "lib.py", library)
    _write(workdir, "lib.py", library)
    _write(workdir, "run.py", "import lib\nprint(lib.VALUE)\n")

    report, lines, _ = _sync(exec_root, workdir, "run.py")

    assert report.transferred == ["run.py"]
    assert report.unchanged == 1
    assert lines == ["42"]


def test_remote_only_files_are_left_alone(sides):
    exec_root, workdir = sides
    _write(exec_root, "keep_me.txt", "server data")
    _write(workdir, "script.py", "print('ok')\n")

    report, lines, _ = _sync(exec_root, workdir, "script.py")

    assert "keep_me.txt" not in report.transferred
    assert (exec_root / "keep_me.txt").read_text(encoding="utf-8") == "server data"
    assert lines == ["ok"]


def test_changed_file_overwrites_remote_copy(sides):
    exec_root, workdir = sides
    _write(exec_root, "script.py", "print('old')\n")
    _write(workdir, "script.py", "print('new')\n")

    report, lines, _ = _sync(exec_root, workdir, "script.py")

    assert report.transferred == ["script.py"]
    assert lines == ["new"]
    assert build_catalog(exec_root).by_path() == build_catalog(workdir).by_path()


def test_second_sync_transfers_nothing(sides):
    exec_root, workdir = sides
    _write(workdir, "script.py", "print('again')\n")
    _write(workdir, "pkg/helper.py", "X = 1\n")

    first, _, _ = _sync(exec_root, workdir, "script.py")
    second, lines, _ = _sync(exec_root, workdir, "script.py")

    assert sorted(first.transferred) == ["pkg/helper.py", "script.py"]
    assert second.transferred == []
    assert lines == ["again"]


def test_nested_target_and_binary_files(sides):
    exec_root, workdir = sides
    blob = bytes(range(256)) * 10
    (workdir / "data").mkdir()
    (workdir / "data" / "blob.bin").write_bytes(blob)
    _write(
        workdir,
        "tools/check.py",
        "from pathlib import Path\nprint(len(Path('data/blob.bin').read_bytes()))\n",
    )

    report, lines, _ = _sync(exec_root, workdir, str(workdir / "tools" / "check.py"))

    assert report.target_path == "tools/check.py"
    assert (exec_root / "data" / "blob.bin").read_bytes() == blob
    assert lines == [str(len(blob))]


def test_stdout_and_stderr_both_reach_initiator(sides):
    exec_root, workdir = sides
    _write(
        workdir,
        "both.py",
        "import sys\nprint('to out')\nprint('to err', file=sys.stderr)\n",
    )

    _, lines, _ = _sync(exec_root, workdir, "both.py")

    assert sorted(lines) == ["to err", "to out"]


def test_hidden_files_are_not_transferred(sides):
    exec_root, workdir = sides
    _write(workdir, "script.py", "print(1)\n")
    _write(workdir, ".secret", "token")

    report, _, _ = _sync(exec_root, workdir, "script.py")

    assert report.transferred == ["script.py"]
    assert not (exec_root / ".secret").exists()


@pytest.mark.skipif(os.name == "nt", reason="names are not creatable on Windows")
@pytest.mark.parametrize("odd_name", ["c:notes.txt", "back\\slash.txt"])
def test_names_with_windows_syntax_sync_on_posix(sides, odd_name: str):
    exec_root, workdir = sides
    _write(workdir, "script.py", "print('ran')\n")
    _write(workdir, odd_name, "notes")

    report, lines, outcome = _sync(exec_root, workdir, "script.py")

    assert lines == ["ran"]
    assert sorted(report.transferred) == sorted([odd_name, "script.py"])
    assert report.remote_error is None
    assert (exec_root / odd_name).read_text(encoding="utf-8") == "notes"
    assert outcome["result"].returncode == 0


def test_responder_write_failure_reaches_initiator(sides):
    exec_root, workdir = sides
    # Last in catalog order, so every file is sent before the responder fails.
    (exec_root / "zz.txt").mkdir(parents=True)
    _write(workdir, "script.py", "print('never')\n")
    _write(workdir, "zz.txt", "payload")

    report, lines, outcome = _sync(exec_root, workdir, "script.py")

    assert isinstance(outcome["error"], FilesystemError)
    assert report.remote_error is not None
    assert report.remote_error.startswith("sync failed during file receipt")
    assert lines[0].startswith("[remoterun] sync failed during file receipt")
    assert "never" not in lines
    assert [p.name for p in exec_root.iterdir() if p.name.startswith(".remoterun-")] == []


def test_run_uses_catalog_built_before_connecting(sides):
    exec_root, workdir = sides
    _write(workdir, "script.py", "print('prepared')\n")
    initiator = Initiator(workdir, timeout=10, on_line=[].append)
    local = initiator.build_catalog()
    _write(workdir, "late.py", "X = 1\n")

    server_sock, client_sock = socket.socketpair()
    thread, _ = _serve_in_thread(Responder(exec_root, LAUNCHER, timeout=10), server_sock)
    with client_sock:
        report = initiator.run(client_sock, "script.py", local=local)
    thread.join(timeout=15)

    assert report.transferred == ["script.py"]
    assert not (exec_root / "late.py").exists()


def test_launch_failure_is_reported_as_output_line(sides):
    exec_root, workdir = sides
    _write(workdir, "script.py", "print(1)\n")

    report, lines, outcome = _sync(exec_root, workdir, "script.py", launcher=[str(workdir / "no-such-python")])

    assert lines == ["[remoterun] failed to launch script.py"]
    assert report.remote_error == "failed to launch script.py"
    assert isinstance(outcome["error"], ProcessError)


def test_path_escape_is_rejected(tmp_path: Path, caplog: pytest.LogCaptureFixture):
    exec_root = tmp_path / "workspace"
    server_sock, client_sock = socket.socketpair()
    thread, outcome = _serve_in_thread(Responder(exec_root, LAUNCHER, timeout=10), server_sock)

    with caplog.at_level(logging.ERROR, logger="remoterun"):
        with client_sock:
            reader = client_sock.makefile("rb")
            writer = client_sock.makefile("wb")
            Catalog.from_wire(receive_message(reader))
            send_message(writer, {"target_path": "x.py", "file_count": 1})
            send_message(writer, {"length": 4, "relative_path": "../evil.py"})
            failure = reader.readline()
            writer.close()
            reader.close()
        thread.join(timeout=15)

    assert isinstance(outcome["error"], ProtocolError)
    assert not (tmp_path / "evil.py").exists()
    assert "file receipt" in caplog.text
    assert failure.startswith(b"[remoterun] sync failed during file receipt")


def test_peer_disconnect_mid_transfer_leaves_no_partial_file(tmp_path: Path):
    exec_root = tmp_path / "workspace"
    server_sock, client_sock = socket.socketpair()
    thread, outcome = _serve_in_thread(Responder(exec_root, LAUNCHER, timeout=10), server_sock)

    with client_sock:
        reader = client_sock.makefile("rb")
        writer = client_sock.makefile("wb")
        receive_message(reader)
        send_message(writer, {"target_path": "big.py", "file_count": 1})
        send_message(writer, {"length": 100, "relative_path": "big.py"})
        writer.write((100).to_bytes(8, "little") + b"only a little")
        writer.flush()
        writer.close()
        reader.close()
    thread.join(timeout=15)

    assert isinstance(outcome["error"], RemoteRunError)
    assert not (exec_root / "big.py").exists()
    assert list(exec_root.iterdir()) == []


def test_responder_rejects_garbage_command(tmp_path: Path):
    exec_root = tmp_path / "workspace"
    server_sock, client_sock = socket.socketpair()
    thread, outcome = _serve_in_thread(Responder(exec_root, LAUNCHER, timeout=10), server_sock)

    with client_sock:
        reader = client_sock.makefile("rb")
        writer = client_sock.makefile("wb")
        receive_message(reader)
        send_message(writer, {"unexpected": True})
        writer.close()
        reader.close()
    thread.join(timeout=15)

    assert isinstance(outcome["error"], ProtocolError)


def test_initiator_rejects_target_outside_workdir(tmp_path: Path):
    workdir = tmp_path / "client"
    workdir.mkdir()
    outside = _write(tmp_path, "outside.py", "print(1)\n")

    initiator = Initiator(workdir)

    with pytest.raises(FilesystemError):
        initiator.normalize_target(str(outside))
    with pytest.raises(FilesystemError):
        initiator.normalize_target("missing.py")


@pytest.mark.parametrize("bad", ["/etc/passwd", "../up.py", "a/../../b.py", "", "."])
def test_resolve_inside_rejects_escapes(tmp_path: Path, bad: str):
    with pytest.raises(ProtocolError):
        resolve_inside(tmp_path, bad)


@pytest.mark.skipif(os.name == "nt", reason="drive colons and backslashes are path syntax on Windows")
@pytest.mark.parametrize("name", ["c:notes.txt", "C:/x.py", "back\\slash.txt", "a\\..\\b"])
def test_resolve_inside_keeps_posix_legal_names(tmp_path: Path, name: str):
    assert resolve_inside(tmp_path, name) == tmp_path.joinpath(*name.split("/"))


def test_resolve_inside_maps_nested_paths(tmp_path: Path):
    assert resolve_inside(tmp_path, "a/b/c.py") == tmp_path / "a" / "b" / "c.py"
    assert resolve_inside(tmp_path, "./a.py") == tmp_path / "a.py"


def test_connect_failure_raises_connect_error():
    probe = socket.socket()
    probe.bind(("127.0.0.1", 0))
    port = probe.getsockname()[1]
    probe.close()

    with pytest.raises(ConnectError):
        connect("127.0.0.1", port, timeout=2)
