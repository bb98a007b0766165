"""docseal exception hierarchy.

Input errors end a pipeline run. Remote errors are split into network and
logical failures so callers can tell "try again later" from "rejected".
"""

from __future__ import annotations


class DocSealError(Exception):
    """Base exception for all docseal errors."""


class UnsupportedFormat(DocSealError, ValueError):
    """Raised when an input file has an extension the transcoder does not handle."""

    def __init__(self, extension: str) -> None:
        self.extension = extension
        super().__init__(
            f"Unsupported file type: .{extension}. "
            "Only .docx, .doc, .pdf and image files are accepted."
        )


class TranscodeError(DocSealError):
    """Raised when a supported container cannot be read at all."""


class RemoteError(DocSealError):
    """Base class for failures reported by the remote store."""


class RemoteNetworkError(RemoteError, ConnectionError):
    """Transport failure, timeout or server-side (5xx) error."""


class RemoteLogicalError(RemoteError):
    """The remote store answered but refused the request."""

    def __init__(self, message: str = "", *, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class RemoteConflictError(RemoteLogicalError):
    """The object being written already exists."""
