"""Exceptions raised by the knowledge store."""

from __future__ import annotations


class LocalKBError(Exception):
    """Base class for knowledge-store errors."""


class UnsupportedFileTypeError(LocalKBError):
    """No extractor is registered for a file's extension."""

    def __init__(self, path: str, extension: str) -> None:
        super().__init__(f"No extractor for extension {extension or '<none>'}: {path}")
        self.path = path
        self.extension = extension


class DocumentNotIndexedError(LocalKBError):
    """A document lookup referenced a path with no indexed chunks."""

    def __init__(self, path: str) -> None:
        super().__init__(f"Path not indexed: {path}")
        self.path = path


class PersistenceError(LocalKBError):
    """A persisted snapshot exists but could not be read or decoded."""


class MirrorError(LocalKBError):
    """The remote mirror rejected a request."""
