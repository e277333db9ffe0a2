"""Sync protocol messages and catalog diffing."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Set

from ..errors import ProtocolError
from .catalog import Catalog


@dataclass(frozen=True)
class FileHeader:
    """Announces the raw block that carries one file body."""

    length: int
    relative_path: str

    def to_dict(self) -> Dict[str, Any]:
        return {"length": self.length, "relative_path": self.relative_path}

    @classmethod
    def from_dict(cls, data: Any) -> "FileHeader":
        if not isinstance(data, dict):
            raise ProtocolError("FileHeader must be an object")
        length = data.get("length")
        relative_path = data.get("relative_path")
        if not _is_count(length):
            raise ProtocolError(f"FileHeader length must be a non-negative integer, got {length!r}")
        if not isinstance(relative_path, str) or not relative_path:
            raise ProtocolError("FileHeader relative_path must be a non-empty string")
        return cls(length=length, relative_path=relative_path)


@dataclass(frozen=True)
class RunCommand:
    """Tells the responder how many files follow and what to execute."""

    target_path: str
    file_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {"target_path": self.target_path, "file_count": self.file_count}

    @classmethod
    def from_dict(cls, data: Any) -> "RunCommand":
        if not isinstance(data, dict):
            raise ProtocolError("RunCommand must be an object")
        target_path = data.get("target_path")
        file_count = data.get("file_count")
        if not isinstance(target_path, str) or not target_path:
            raise ProtocolError("RunCommand target_path must be a non-empty string")
        if not _is_count(file_count):
            raise ProtocolError(f"RunCommand file_count must be a non-negative integer, got {file_count!r}")
        return cls(target_path=target_path, file_count=file_count)


def new_or_changed(local: Catalog, remote: Catalog) -> Set[str]:
    """Paths in ``local`` that ``remote`` lacks or holds with different content.

    Remote-only paths are never reported: nothing is ever deleted.
    """
    remote_index = remote.by_path()
    return {
        entry.path
        for entry in local
        if remote_index.get(entry.path) != entry.digest
    }


def ordered_delta(local: Catalog, remote: Catalog) -> List[str]:
    """Same paths as :func:`new_or_changed`, in local catalog order."""
    delta = new_or_changed(local, remote)
    return [path for path in local.paths if path in delta]


def _is_count(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


__all__ = ["FileHeader", "RunCommand", "new_or_changed", "ordered_delta"]
