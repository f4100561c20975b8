"""Zip extraction driver.

Zip exposes its whole entry list up front and has no hard-link entry type, so
a single pass in archive order is enough. Two things in a zip entry are
attacker-controlled and are never trusted:

- the declared uncompressed size: members are decoded through a copy of
  their ``ZipInfo`` whose size is ignored, and the bytes actually produced
  are what the budget and size checks see;
- symlink payloads: read with a hard upper bound.
"""

from __future__ import annotations

import copy
import logging
import lzma
import os
import stat
import sys
import zipfile
import zlib
from typing import IO

from safex_entries import (
    ArchiveEntry,
    EntryKind,
    ExtractionContext,
    make_directory,
    make_symlink,
    write_file,
)
from safex_errors import EntryIOError, MalformedEntryError

logger = logging.getLogger("safex.zip")

MAX_SYMLINK_TARGET = 4 * 1024

ZIP_STREAM_ERRORS = (
    zipfile.BadZipFile,
    EOFError,
    zlib.error,
    lzma.LZMAError,
)


def _unix_mode(info: zipfile.ZipInfo) -> int:
    return info.external_attr >> 16


def _entry_from_info(info: zipfile.ZipInfo) -> ArchiveEntry:
    mode = _unix_mode(info)
    if info.is_dir() or stat.S_ISDIR(mode):
        kind = EntryKind.DIRECTORY
    elif stat.S_ISLNK(mode):
        kind = EntryKind.SYMLINK
    else:
        kind = EntryKind.REGULAR_FILE
    return ArchiveEntry(
        name=info.filename,
        kind=kind,
        size=info.file_size,
        mode=stat.S_IMODE(mode),
    )


def _open_measured(zf: zipfile.ZipFile, info: zipfile.ZipInfo) -> IO[bytes]:
    """Open a member so that decoding runs to the real end of its compressed data."""
    view = copy.copy(info)
    view.file_size = sys.maxsize
    try:
        return zf.open(view)
    except (RuntimeError, NotImplementedError, zipfile.BadZipFile) as exc:
        raise MalformedEntryError(f"Cannot open zip entry {info.filename}: {exc}") from exc


def _read_symlink_target(zf: zipfile.ZipFile, info: zipfile.ZipInfo) -> str:
    try:
        with _open_measured(zf, info) as source:
            payload = source.read(MAX_SYMLINK_TARGET + 1)
    except ZIP_STREAM_ERRORS as exc:
        raise MalformedEntryError(f"Failed to read symlink target for {info.filename}: {exc}") from exc
    if len(payload) > MAX_SYMLINK_TARGET:
        raise MalformedEntryError(
            f"Symlink target too long for {info.filename} (limit {MAX_SYMLINK_TARGET} bytes)"
        )
    return os.fsdecode(payload)


def extract_zip(archive_path: str, ctx: ExtractionContext) -> None:
    """
    Extract a zip archive into ``ctx.root``.

    Raises:
        ExtractionError: Any subclass; the first one stops extraction
    """
    try:
        zf = zipfile.ZipFile(archive_path)
    except zipfile.BadZipFile as exc:
        raise MalformedEntryError(f"Failed to open zip: {exc}") from exc
    except OSError as exc:
        raise EntryIOError(str(archive_path), "open zip", exc) from exc

    with zf:
        for info in zf.infolist():
            ctx.check_cancelled()
            entry = _entry_from_info(info)

            if entry.kind is EntryKind.DIRECTORY:
                make_directory(ctx, entry)
            elif entry.kind is EntryKind.SYMLINK:
                if not ctx.strip(entry.name):
                    continue
                entry.link_target = _read_symlink_target(zf, info)
                make_symlink(ctx, entry)
            else:
                if not ctx.strip(entry.name):
                    continue
                with _open_measured(zf, info) as source:
                    write_file(ctx, entry, source, ZIP_STREAM_ERRORS)
