"""Exception hierarchy for safex.

Every failure raised while extracting an archive derives from
``ExtractionError`` so callers (and the CLI) can handle the whole surface
with a single ``except`` clause. None of these are retried: the first one
raised stops processing of the current archive.
"""

from __future__ import annotations

from typing import Optional

# Process exit status shared by every safex command
EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_CANCELLED = 130


class ExtractionError(Exception):
    """Base class for all extraction failures.

    ``exit_code`` is the status a CLI reports when this error ends a command.
    """

    exit_code = EXIT_FAILURE


class PathEscapeError(ExtractionError):
    """An entry name, symlink value or hard-link target resolves outside the root.

    Also raised when resolution passes through a pre-existing symlink that
    points outside the root, or when the symlink hop limit is exceeded.
    """

    pass


class SizeLimitExceededError(ExtractionError):
    """Measured bytes written would exceed the configured budget."""

    pass


class IncompleteEntryError(ExtractionError):
    """The bytes written for an entry do not match its declared size."""

    pass


class UnsupportedFormatError(ExtractionError):
    """The archive format is unknown or has no extraction driver."""

    pass


class TargetNotFoundError(ExtractionError):
    """A deferred hard link still has no target after the whole stream was read."""

    pass


class ExtractionCancelledError(ExtractionError):
    """The caller's cancel token was observed."""

    exit_code = EXIT_CANCELLED

    def __init__(self, message: str = "Extraction cancelled", bytes_written: int = 0):
        super().__init__(message)
        self.bytes_written = bytes_written


class ShortWriteError(ExtractionError):
    """A sink accepted fewer bytes than it was given."""

    pass


class MalformedEntryError(ExtractionError):
    """An entry or archive structure is invalid (negative size, oversized link payload, ...)."""

    pass


class EntryIOError(ExtractionError):
    """A filesystem operation failed while materializing an entry."""

    def __init__(self, entry_name: str, action: str, cause: Optional[OSError] = None):
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Failed to {action} for {entry_name}{detail}")
        self.entry_name = entry_name
        self.action = action


def exit_code_for(exc: BaseException) -> int:
    """Map an exception that ended a command to a process exit status."""
    if isinstance(exc, KeyboardInterrupt):
        return EXIT_CANCELLED
    if isinstance(exc, ExtractionError):
        return exc.exit_code
    return EXIT_USAGE
