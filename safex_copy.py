"""Cancellable, bounded stream copy.

The copier never trusts the source to stop on its own: it reads at most
``max_bytes`` and polls the cancel token before the first chunk and every
``CANCEL_CHECK_INTERVAL`` chunks after that.
"""

from __future__ import annotations

import threading
from typing import BinaryIO, Optional

from safex_errors import ExtractionCancelledError, ShortWriteError

BUFFER_SIZE = 32 * 1024

# 10 chunks of 32 KiB between cancellation checks
CANCEL_CHECK_INTERVAL = 10


class CancelToken:
    """Cooperative cancellation signal shared between a caller and an extraction."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, bytes_written: int = 0) -> None:
        if self._event.is_set():
            raise ExtractionCancelledError(bytes_written=bytes_written)


def copy_bounded(
    sink: BinaryIO,
    source: BinaryIO,
    max_bytes: int,
    cancel: Optional[CancelToken] = None,
    buffer_size: int = BUFFER_SIZE,
) -> int:
    """
    Copy up to ``max_bytes`` from ``source`` to ``sink``.

    Reaching the end of ``source`` early is not an error here; callers compare
    the returned count against what they expected.

    Args:
        sink: Writable binary stream
        source: Readable binary stream
        max_bytes: Hard ceiling on bytes copied
        cancel: Optional token polled at a fixed cadence
        buffer_size: Size of the intermediate buffer

    Returns:
        Number of bytes written to ``sink``

    Raises:
        ExtractionCancelledError: If ``cancel`` was set (``bytes_written`` holds
            the partial count)
        ShortWriteError: If ``sink`` accepted fewer bytes than offered
    """
    written = 0
    iterations = 0

    while written < max_bytes:
        if cancel is not None and iterations % CANCEL_CHECK_INTERVAL == 0:
            cancel.raise_if_cancelled(bytes_written=written)
        iterations += 1

        chunk = source.read(min(buffer_size, max_bytes - written))
        if not chunk:
            break

        accepted = sink.write(chunk) or 0
        written += accepted
        if accepted != len(chunk):
            raise ShortWriteError(f"Short write: {accepted} of {len(chunk)} bytes accepted")

    return written
