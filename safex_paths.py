"""Path safety helpers for safex.

Two services shared by every format driver:

- ``resolve_within`` walks a candidate path one raw segment at a time from
  the destination root, the way the kernel would: any symlink already on disk
  is substituted before a later ``..`` is applied, and the cursor may never
  step above the root.
- ``strip_components`` drops leading segments from archive-relative paths
  (entry names and hard-link targets, never symlink values).
"""

from __future__ import annotations

import os
import stat
from collections import deque
from typing import List, Optional

from safex_errors import PathEscapeError

# =============================================================================
# Constants
# =============================================================================

# Upper bound on symlink substitutions during a single resolution
MAX_SYMLINK_HOPS = 255


# =============================================================================
# Containment
# =============================================================================


def is_within(path: str, root: str) -> bool:
    """Return True if ``path`` is ``root`` or lexically below it.

    Both arguments are normalized first; neither needs to exist.
    """
    clean_path = os.path.normpath(path)
    clean_root = os.path.normpath(root)
    if clean_path == clean_root:
        return True
    prefix = clean_root if clean_root.endswith(os.sep) else clean_root + os.sep
    return clean_path.startswith(prefix)


def _segments_under(root: str, path: str) -> Optional[List[str]]:
    """Split an absolute ``path`` into raw segments below ``root``.

    Returns None when ``path`` does not start with ``root``. ``..`` and ``.``
    segments are kept; the walk decides what they mean.
    """
    if path == root:
        return []
    prefix = root if root.endswith(os.sep) else root + os.sep
    if not path.startswith(prefix):
        return None
    return path[len(prefix) :].split(os.sep)


def resolve_within(root: str, candidate: str) -> str:
    """
    Resolve ``candidate`` against ``root`` without ever leaving the root.

    ``candidate`` may be relative to ``root`` or absolute. Its raw segments
    are applied to a cursor starting at ``root``, with nothing normalized
    lexically before the links in front of it are known:

    - ``.`` and empty segments are ignored;
    - ``..`` moves the cursor to the parent of the *resolved* cursor, and
      fails if that would leave ``root``;
    - a missing or non-directory node is appended as-is (new entries may be
      created there), and a ``..`` after it is rejected because a later
      entry could still turn that node into a symlink;
    - a symlink has its value spliced in front of the remaining segments
      (absolute values restart from ``root`` and must start with it,
      relative ones continue from the link's parent).

    Args:
        root: Absolute, canonical destination root
        candidate: Path to resolve

    Returns:
        Absolute path that is guaranteed to lie inside ``root``

    Raises:
        PathEscapeError: If the path, or any symlink met on the way, leads
            outside ``root``, or more than MAX_SYMLINK_HOPS symlinks are met
        OSError: If a segment cannot be inspected
    """
    root = os.path.normpath(root)
    if os.path.isabs(candidate):
        parts = _segments_under(root, candidate)
        if parts is None:
            raise PathEscapeError(f"Path escapes destination: {candidate}")
    else:
        parts = candidate.split(os.sep)

    pending = deque(parts)
    cursor = root
    hops = 0
    # Set once the cursor is below a node that is missing or not a directory
    unresolved = False

    while pending:
        part = pending.popleft()
        if part in ("", os.curdir):
            continue

        if part == os.pardir:
            if unresolved:
                raise PathEscapeError(
                    f"Path escapes destination: {candidate} ('..' after a missing segment)"
                )
            if cursor == root:
                if hops:
                    raise PathEscapeError(f"Symlink escape detected while resolving {candidate}")
                raise PathEscapeError(f"Path escapes destination: {candidate}")
            cursor = os.path.dirname(cursor)
            continue

        node = os.path.join(cursor, part)
        try:
            info = os.lstat(node)
        except (FileNotFoundError, NotADirectoryError):
            cursor = node
            unresolved = True
            continue

        if not stat.S_ISLNK(info.st_mode):
            cursor = node
            unresolved = not stat.S_ISDIR(info.st_mode)
            continue

        hops += 1
        if hops > MAX_SYMLINK_HOPS:
            raise PathEscapeError(f"Too many symlinks while resolving {candidate}")

        link_value = os.readlink(node)
        if os.path.isabs(link_value):
            link_parts = _segments_under(root, link_value)
            if link_parts is None:
                raise PathEscapeError(f"Symlink escape detected: {node} -> {link_value}")
            cursor = root
        else:
            link_parts = link_value.split(os.sep)
        pending.extendleft(reversed(link_parts))

    return cursor


# =============================================================================
# Strip Components
# =============================================================================


def strip_components(path: str, count: int) -> str:
    """
    Remove ``count`` leading segments from an archive-relative path.

    Archive paths always use ``/`` separators. Returns an empty string when
    nothing is left; the caller must then skip the entry entirely.

    Args:
        path: Archive-relative path (entry name or hard-link target)
        count: Number of leading segments to drop

    Returns:
        The remaining suffix, or "" if count >= number of segments
    """
    if count <= 0:
        return path
    parts = path.split("/")
    if count >= len(parts):
        return ""
    return "/".join(parts[count:])
