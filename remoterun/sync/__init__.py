"""Directory sync-and-execute protocol for remoterun."""

from __future__ import annotations

from .catalog import Catalog, CatalogBuilder, CatalogEntry, build_catalog, compute_file_hash, is_hidden
from .framing import receive_block, receive_message, send_block, send_message
from .orchestrator import Initiator, Responder, SyncReport, connect
from .protocol import FileHeader, RunCommand, new_or_changed, ordered_delta

__all__ = [
    # Catalog
    "Catalog",
    "CatalogBuilder",
    "CatalogEntry",
    "build_catalog",
    "compute_file_hash",
    "is_hidden",
    # Framing
    "receive_block",
    "receive_message",
    "send_block",
    "send_message",
    # Protocol
    "FileHeader",
    "RunCommand",
    "new_or_changed",
    "ordered_delta",
    # Orchestrator
    "Initiator",
    "Responder",
    "SyncReport",
    "connect",
]
