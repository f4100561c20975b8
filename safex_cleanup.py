"""Tracking of filesystem nodes that must be removed if extraction does not finish."""

from __future__ import annotations

import logging
import os
import threading
from typing import Dict, List

logger = logging.getLogger("safex.cleanup")


class CleanupTracker:
    """
    Set of paths created but not yet confirmed final.

    Extraction registers every file, symlink and hard link right after
    creating it and unregisters it once it has passed validation. Whatever is
    still registered when extraction fails or is interrupted is removed by
    ``cleanup()``. Safe to call from signal handlers and timer threads.
    """

    def __init__(self) -> None:
        self._paths: Dict[str, None] = {}
        self._lock = threading.Lock()

    def register(self, path: str) -> None:
        if not path or path == "-":
            return
        with self._lock:
            self._paths[path] = None

    def unregister(self, path: str) -> None:
        if not path or path == "-":
            return
        with self._lock:
            self._paths.pop(path, None)

    def paths(self) -> List[str]:
        with self._lock:
            return list(self._paths)

    def cleanup(self) -> None:
        """Remove every registered path. Best effort: failures are logged, not raised."""
        with self._lock:
            paths = list(self._paths)
            self._paths.clear()

        for path in reversed(paths):
            try:
                os.remove(path)
            except FileNotFoundError:
                continue
            except OSError as exc:
                logger.warning("Cleanup failed for %s: %s", path, exc)
            else:
                logger.debug("Removed %s", path)
