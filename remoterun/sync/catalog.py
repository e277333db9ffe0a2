"""Directory catalogs: content digests for every syncable file under a root."""

from __future__ import annotations

import hashlib
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, BinaryIO, Callable, Dict, Iterator, List, Sequence, Tuple

from ..errors import FilesystemError, ProtocolError

logger = logging.getLogger("remoterun.sync.catalog")

CHUNK_SIZE = 64 * 1024
HIDDEN_PREFIX = "."

HiddenPredicate = Callable[[str], bool]


def is_hidden(name: str) -> bool:
    """Return True for names the walk should prune (dotfiles and dot-directories)."""
    return name.startswith(HIDDEN_PREFIX)


def hash_stream(source: BinaryIO) -> str:
    """Compute the SHA-256 digest of a binary stream, reading in chunks."""
    hasher = hashlib.sha256()
    for chunk in iter(lambda: source.read(CHUNK_SIZE), b""):
        hasher.update(chunk)
    return hasher.hexdigest()


def hash_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def compute_file_hash(file_path: Path) -> str:
    """Compute SHA-256 hash of a file."""
    try:
        with open(file_path, "rb") as f:
            return hash_stream(f)
    except OSError as exc:
        raise FilesystemError(f"Cannot read '{file_path}': {exc}") from exc


@dataclass(frozen=True)
class CatalogEntry:
    """A single file in a catalog."""

    path: str  # Relative to the catalog root, '/' separated
    digest: str  # SHA-256 hex digest of content

    def to_dict(self) -> Dict[str, Any]:
        return {"path": self.path, "digest": self.digest}

    @classmethod
    def from_dict(cls, data: Any) -> "CatalogEntry":
        if not isinstance(data, dict):
            raise ProtocolError(f"Catalog entry must be an object, got {type(data).__name__}")
        path = data.get("path")
        digest = data.get("digest")
        if not isinstance(path, str) or not isinstance(digest, str):
            raise ProtocolError("Catalog entry requires string 'path' and 'digest'")
        return cls(path=path, digest=digest)


@dataclass(frozen=True)
class Catalog:
    """Ordered, immutable list of catalog entries for one directory tree."""

    entries: Tuple[CatalogEntry, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        seen = set()
        for entry in self.entries:
            if entry.path in seen:
                raise ProtocolError(f"Duplicate catalog path '{entry.path}'")
            seen.add(entry.path)

    def __iter__(self) -> Iterator[CatalogEntry]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    @property
    def paths(self) -> List[str]:
        return [entry.path for entry in self.entries]

    def by_path(self) -> Dict[str, str]:
        """Index of path -> digest."""
        return {entry.path: entry.digest for entry in self.entries}

    def to_wire(self) -> List[Dict[str, Any]]:
        return [entry.to_dict() for entry in self.entries]

    @classmethod
    def from_wire(cls, data: Any) -> "Catalog":
        if not isinstance(data, list):
            raise ProtocolError(f"Catalog must be a list, got {type(data).__name__}")
        return cls(entries=tuple(CatalogEntry.from_dict(item) for item in data))


class CatalogBuilder:
    """Builds catalogs by walking a directory tree depth-first."""

    def __init__(self, root: Path, is_hidden: HiddenPredicate = is_hidden):
        self.root = Path(root)
        self.is_hidden = is_hidden

    def build(self) -> Catalog:
        """Walk the root and hash every syncable file."""
        if not self.root.is_dir():
            raise FilesystemError(f"Catalog root '{self.root}' is not a directory")

        entries: List[CatalogEntry] = []
        for rel_parts, file_path in self._iter_files(self.root, ()):
            try:
                digest = compute_file_hash(file_path)
            except FilesystemError as exc:
                if isinstance(exc.__cause__, FileNotFoundError):
                    logger.warning("File vanished during walk, skipping: %s", file_path)
                    continue
                raise
            entries.append(CatalogEntry(path="/".join(rel_parts), digest=digest))

        logger.debug("Built catalog of %s with %d files", self.root, len(entries))
        return Catalog(entries=tuple(entries))

    def _iter_files(
        self,
        directory: Path,
        rel_parts: Sequence[str],
    ) -> Iterator[Tuple[Tuple[str, ...], Path]]:
        try:
            with os.scandir(directory) as it:
                dir_entries = sorted(it, key=lambda e: e.name)
        except FileNotFoundError as exc:
            if not rel_parts:
                raise FilesystemError(f"Cannot list '{directory}': {exc}") from exc
            logger.warning("Directory vanished during walk, skipping: %s", directory)
            return
        except OSError as exc:
            raise FilesystemError(f"Cannot list '{directory}': {exc}") from exc

        for entry in dir_entries:
            if self.is_hidden(entry.name):
                continue
            child_parts = tuple(rel_parts) + (entry.name,)
            try:
                if entry.is_symlink():
                    logger.debug("Skipping symlink: %s", entry.path)
                    continue
                if entry.is_dir(follow_symlinks=False):
                    yield from self._iter_files(Path(entry.path), child_parts)
                elif entry.is_file(follow_symlinks=False):
                    yield child_parts, Path(entry.path)
                else:
                    logger.debug("Skipping special file: %s", entry.path)
            except FileNotFoundError:
                logger.warning("Entry vanished during walk, skipping: %s", entry.path)
            except OSError as exc:
                raise FilesystemError(f"Cannot inspect '{entry.path}': {exc}") from exc


def build_catalog(root: Path, is_hidden: HiddenPredicate = is_hidden) -> Catalog:
    return CatalogBuilder(root, is_hidden=is_hidden).build()


__all__ = [
    "CHUNK_SIZE",
    "Catalog",
    "CatalogBuilder",
    "CatalogEntry",
    "build_catalog",
    "compute_file_hash",
    "hash_bytes",
    "hash_stream",
    "is_hidden",
]
