"""Sync a directory to a remote host and stream back a command's output."""

__version__ = "0.2.0"
