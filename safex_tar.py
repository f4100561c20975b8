"""Tar extraction driver.

A tar archive is a forward-only stream, so entries are processed strictly in
order. A hard link may legitimately name a file that only appears later in the
stream; such links are queued and created in a second pass once the whole
stream has been read.
"""

from __future__ import annotations

import gzip
import logging
import lzma
import tarfile
import zlib
from typing import BinaryIO, List, Optional

import zstandard

from safex_entries import (
    ArchiveEntry,
    EntryKind,
    ExtractionContext,
    PendingHardLink,
    link_pending,
    make_directory,
    make_hardlink,
    make_symlink,
    write_file,
)
from safex_errors import MalformedEntryError

logger = logging.getLogger("safex.tar")

# Errors raised by tarfile and the decompressors beneath it on truncated or corrupt data
TAR_STREAM_ERRORS = (
    tarfile.ReadError,
    EOFError,
    zlib.error,
    lzma.LZMAError,
    gzip.BadGzipFile,
    zstandard.ZstdError,
)


def _entry_from_member(member: tarfile.TarInfo) -> Optional[ArchiveEntry]:
    if member.isdir():
        kind = EntryKind.DIRECTORY
    elif member.isreg():
        kind = EntryKind.REGULAR_FILE
    elif member.issym():
        kind = EntryKind.SYMLINK
    elif member.islnk():
        kind = EntryKind.HARD_LINK
    else:
        return None
    return ArchiveEntry(
        name=member.name,
        kind=kind,
        size=member.size,
        mode=member.mode,
        link_target=member.linkname,
    )


def _next_member(tf: tarfile.TarFile) -> Optional[tarfile.TarInfo]:
    try:
        return tf.next()
    except (OSError, *TAR_STREAM_ERRORS) as exc:
        raise MalformedEntryError(f"Tar read error: {exc}") from exc


def extract_tar_stream(fileobj: BinaryIO, ctx: ExtractionContext) -> None:
    """
    Extract an uncompressed tar stream into ``ctx.root``.

    ``fileobj`` only needs ``read``; compressed archives are passed in already
    wrapped in their decompressor.

    Raises:
        ExtractionError: Any subclass; the first one stops extraction
    """
    pending: List[PendingHardLink] = []

    try:
        tf = tarfile.open(fileobj=fileobj, mode="r|")
    except (OSError, *TAR_STREAM_ERRORS) as exc:
        raise MalformedEntryError(f"Failed to open tar stream: {exc}") from exc

    with tf:
        while True:
            ctx.check_cancelled()
            member = _next_member(tf)
            if member is None:
                break

            entry = _entry_from_member(member)
            if entry is None:
                logger.debug("Skipping unsupported tar member %s (type %r)", member.name, member.type)
                continue

            if entry.kind is EntryKind.DIRECTORY:
                make_directory(ctx, entry)
            elif entry.kind is EntryKind.REGULAR_FILE:
                source = tf.extractfile(member)
                if source is None:
                    raise MalformedEntryError(f"No data for tar member {member.name}")
                with source:
                    write_file(ctx, entry, source, TAR_STREAM_ERRORS)
            elif entry.kind is EntryKind.SYMLINK:
                make_symlink(ctx, entry)
            else:
                deferred = make_hardlink(ctx, entry)
                if deferred is not None:
                    pending.append(deferred)

    if pending:
        logger.debug("Resolving %d deferred hard link(s)", len(pending))
    for link in pending:
        link_pending(ctx, link)
    pending.clear()
