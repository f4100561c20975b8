"""Entry model and shared materializers for safex.

Format drivers translate their native members into ``ArchiveEntry`` values
and hand them to the functions here. All path-safety, budget and permission
rules live in this module so that tar and zip extraction cannot drift apart.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import BinaryIO, List, Optional, Tuple, Type

from safex_cleanup import CleanupTracker
from safex_copy import CancelToken, copy_bounded
from safex_errors import (
    EntryIOError,
    IncompleteEntryError,
    MalformedEntryError,
    PathEscapeError,
    SizeLimitExceededError,
    TargetNotFoundError,
)
from safex_paths import is_within, resolve_within, strip_components
from safex_units import format_bytes

logger = logging.getLogger("safex.entries")

DIRECTORY_MODE = 0o755
FILE_MODE = 0o644
EXECUTABLE_MODE = 0o755

# =============================================================================
# Data Types
# =============================================================================


class EntryKind(Enum):
    DIRECTORY = "directory"
    REGULAR_FILE = "file"
    SYMLINK = "symlink"
    HARD_LINK = "hardlink"


@dataclass
class ArchiveEntry:
    """A single archive member, as seen by the materializers."""

    name: str  # Archive-relative, / separators
    kind: EntryKind
    size: int = 0  # Declared size; a hint, never trusted for the budget
    mode: int = FILE_MODE  # POSIX permission bits from the archive
    link_target: str = ""  # Symlink value or hard-link target


@dataclass(frozen=True)
class ExtractOptions:
    strip_components: int = 0
    max_bytes: int = 0  # 0 = unlimited

    def __post_init__(self) -> None:
        if self.strip_components < 0:
            raise ValueError(f"strip_components must be non-negative, got {self.strip_components}")
        if self.max_bytes < 0:
            raise ValueError(f"max_bytes must be non-negative, got {self.max_bytes}")


@dataclass
class PendingHardLink:
    """A hard link whose target had not been extracted yet when it was read."""

    name: str
    dest_path: str
    target_path: str


@dataclass
class ExtractionContext:
    """Mutable state owned by exactly one extraction call."""

    root: str
    options: ExtractOptions = field(default_factory=ExtractOptions)
    cancel: Optional[CancelToken] = None
    tracker: Optional[CleanupTracker] = None
    bytes_written: int = 0
    entries: int = 0
    created: List[str] = field(default_factory=list)

    def check_cancelled(self) -> None:
        if self.cancel is not None:
            self.cancel.raise_if_cancelled()

    def strip(self, path: str) -> str:
        """Archive path to root-relative path: leading ``/`` dropped, then components stripped."""
        return strip_components(path.lstrip("/"), self.options.strip_components)

    def register(self, path: str) -> None:
        if self.tracker is not None:
            self.tracker.register(path)

    def confirm(self, path: str) -> None:
        """Record ``path`` as a finished node that cleanup must keep."""
        if self.tracker is not None:
            self.tracker.unregister(path)
        self.created.append(path)
        self.entries += 1

    def discard(self, path: str) -> None:
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("Could not remove rejected file %s: %s", path, exc)
            return
        if self.tracker is not None:
            self.tracker.unregister(path)


# =============================================================================
# Path helpers
# =============================================================================


def _resolve(ctx: ExtractionContext, entry: ArchiveEntry, candidate: str) -> str:
    try:
        return resolve_within(ctx.root, candidate)
    except OSError as exc:
        raise EntryIOError(entry.name, "resolve path", exc) from exc


def _link_location(ctx: ExtractionContext, entry: ArchiveEntry, name: str) -> str:
    """Resolve the parent of ``name`` and append its last segment.

    The last segment is not followed, so an existing symlink there is
    replaced rather than written through.
    """
    lexical = os.path.normpath(os.path.join(ctx.root, name))
    if not is_within(lexical, ctx.root):
        raise PathEscapeError(f"Path escapes destination: {entry.name}")
    if lexical == os.path.normpath(ctx.root):
        raise PathEscapeError(f"Link would replace the destination root: {entry.name}")
    parent = _resolve(ctx, entry, os.path.dirname(lexical))
    return os.path.join(parent, os.path.basename(lexical))


def _make_parent(entry: ArchiveEntry, path: str) -> None:
    try:
        os.makedirs(os.path.dirname(path), mode=DIRECTORY_MODE, exist_ok=True)
    except OSError as exc:
        raise EntryIOError(entry.name, "create parent directory", exc) from exc


def _clear_location(entry: ArchiveEntry, path: str) -> None:
    if not os.path.lexists(path):
        return
    try:
        if os.path.isdir(path) and not os.path.islink(path):
            os.rmdir(path)
        else:
            os.unlink(path)
    except OSError as exc:
        raise EntryIOError(entry.name, "remove existing path", exc) from exc


def _budget_error(budget: int) -> SizeLimitExceededError:
    return SizeLimitExceededError(
        f"Extraction exceeded maximum size limit of {format_bytes(budget)}"
    )


# =============================================================================
# Materializers
# =============================================================================


def make_directory(ctx: ExtractionContext, entry: ArchiveEntry) -> None:
    name = ctx.strip(entry.name)
    if not name:
        return
    path = _resolve(ctx, entry, name)
    try:
        os.makedirs(path, mode=DIRECTORY_MODE, exist_ok=True)
    except OSError as exc:
        raise EntryIOError(entry.name, "create directory", exc) from exc
    logger.debug("Directory %s", path)


def write_file(
    ctx: ExtractionContext,
    entry: ArchiveEntry,
    source: BinaryIO,
    stream_errors: Tuple[Type[BaseException], ...] = (),
) -> None:
    """
    Materialize a regular file from ``source``.

    The declared size only drives an early rejection. The copy ceiling is the
    remaining budget (or one byte past the declared size when there is no
    budget), so a source that produces more than it declared is measured and
    rejected instead of trusted.

    Args:
        ctx: Extraction context
        entry: Regular-file entry
        source: Member payload stream
        stream_errors: Exceptions the driver's stream raises on truncated or
            corrupt data; they are reported as IncompleteEntryError

    Raises:
        MalformedEntryError: Negative declared size
        SizeLimitExceededError: Budget exceeded (partial file removed)
        IncompleteEntryError: Measured size differs from declared size, or
            the payload was truncated/corrupt (partial file removed)
        ExtractionCancelledError: Cancelled mid-copy (partial file left registered)
        EntryIOError: Filesystem failure
    """
    name = ctx.strip(entry.name)
    if not name:
        return
    dest = _resolve(ctx, entry, name)

    if entry.size < 0:
        raise MalformedEntryError(f"Invalid file size for {entry.name}: {entry.size}")

    budget = ctx.options.max_bytes
    if budget and ctx.bytes_written + entry.size > budget:
        raise _budget_error(budget)

    _make_parent(entry, dest)
    try:
        sink = open(dest, "wb")
    except OSError as exc:
        raise EntryIOError(entry.name, "create file", exc) from exc
    ctx.register(dest)

    limit = budget - ctx.bytes_written if budget else entry.size + 1
    overflow = False
    try:
        with sink:
            written = copy_bounded(sink, source, limit, ctx.cancel)
            if budget and written == limit:
                overflow = bool(source.read(1))
    except stream_errors as exc:
        ctx.discard(dest)
        raise IncompleteEntryError(f"Corrupt or truncated data for {entry.name}: {exc}") from exc
    except OSError as exc:
        raise EntryIOError(entry.name, "write file", exc) from exc

    ctx.bytes_written += written
    if budget and (overflow or ctx.bytes_written > budget):
        ctx.discard(dest)
        raise _budget_error(budget)

    if written != entry.size:
        ctx.discard(dest)
        if written > entry.size:
            raise IncompleteEntryError(
                f"Incomplete file {entry.name}: data exceeds declared size of {entry.size} bytes"
            )
        raise IncompleteEntryError(
            f"Incomplete file {entry.name}: wrote {written} of {entry.size} bytes"
        )

    file_mode = EXECUTABLE_MODE if entry.mode & 0o111 else FILE_MODE
    try:
        os.chmod(dest, file_mode)
    except OSError as exc:
        raise EntryIOError(entry.name, "set permissions", exc) from exc

    ctx.confirm(dest)
    logger.debug("File %s (%d bytes, mode %o)", dest, written, file_mode)


def _has_inner_parent_ref(value: str) -> bool:
    """True if a ``..`` follows a normal segment, as in ``d/../x``.

    Such a segment could later be replaced by a symlink (an empty directory
    can be), which would move where the ``..`` lands. Leading ``..`` segments
    only climb the link's own ancestors, which are never empty.
    """
    seen_name = False
    for part in value.split("/"):
        if part in ("", "."):
            continue
        if part == "..":
            if seen_name:
                return True
        else:
            seen_name = True
    return False


def make_symlink(ctx: ExtractionContext, entry: ArchiveEntry) -> None:
    """Create a symlink; its value is validated but never stripped or rewritten."""
    name = ctx.strip(entry.name)
    if not name:
        return
    value = entry.link_target
    if not value:
        return
    if _has_inner_parent_ref(value):
        raise PathEscapeError(f"Symlink value climbs back over a segment: {entry.name} -> {value}")

    location = _link_location(ctx, entry, name)
    # The value is checked from the real parent, so create it first
    _make_parent(entry, location)
    try:
        resolve_within(ctx.root, os.path.join(os.path.dirname(location), value))
    except PathEscapeError as exc:
        raise PathEscapeError(f"Symlink escape detected: {entry.name} -> {value}") from exc
    except OSError as exc:
        raise EntryIOError(entry.name, "resolve symlink target", exc) from exc

    _clear_location(entry, location)
    try:
        os.symlink(value, location)
    except OSError as exc:
        raise EntryIOError(entry.name, "create symlink", exc) from exc
    ctx.register(location)
    ctx.confirm(location)
    logger.debug("Symlink %s -> %s", location, value)


def _link(ctx: ExtractionContext, entry_name: str, target: str, location: str) -> None:
    entry = ArchiveEntry(name=entry_name, kind=EntryKind.HARD_LINK)
    if location == target:
        return
    _make_parent(entry, location)
    _clear_location(entry, location)
    try:
        # A symlink target is linked as a node, as link(2) does
        os.link(target, location, follow_symlinks=False)
    except OSError as exc:
        raise EntryIOError(entry_name, "create hard link", exc) from exc
    ctx.register(location)
    ctx.confirm(location)
    logger.debug("Hard link %s -> %s", location, target)


def make_hardlink(ctx: ExtractionContext, entry: ArchiveEntry) -> Optional[PendingHardLink]:
    """
    Create a hard link now, or return a PendingHardLink if its target is not on disk yet.

    Both the entry name and the link target are archive-root-relative and both
    are stripped. Only the parent of the target is resolved, so a target that
    is itself a symlink is linked as the symlink node.
    """
    name = ctx.strip(entry.name)
    target = ctx.strip(entry.link_target)
    if not name or not target:
        return None

    location = _link_location(ctx, entry, name)
    try:
        target_path = _link_location(ctx, entry, target)
    except PathEscapeError as exc:
        raise PathEscapeError(f"Hard link escape detected: {entry.name} -> {target}") from exc

    if os.path.lexists(target_path):
        _link(ctx, entry.name, target_path, location)
        return None

    logger.debug("Deferring hard link %s -> %s", location, target_path)
    return PendingHardLink(name=entry.name, dest_path=location, target_path=target_path)


def link_pending(ctx: ExtractionContext, pending: PendingHardLink) -> None:
    """Second pass for a deferred hard link: re-check both ends, then link."""
    ctx.check_cancelled()
    entry = ArchiveEntry(name=pending.name, kind=EntryKind.HARD_LINK)
    try:
        location = _link_location(ctx, entry, os.path.relpath(pending.dest_path, ctx.root))
        target = _link_location(ctx, entry, os.path.relpath(pending.target_path, ctx.root))
    except PathEscapeError as exc:
        raise PathEscapeError(
            f"Hard link escape detected (deferred): {pending.dest_path} -> {pending.target_path}"
        ) from exc

    if not os.path.lexists(target):
        raise TargetNotFoundError(f"Hard link target not found: {pending.name} -> {target}")
    _link(ctx, pending.name, target, location)
