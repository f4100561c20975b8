#!/usr/bin/env python3
"""Archive format detection by magic bytes.

Only the first 262 bytes of a file are inspected: leading signatures for zip
and the compressors, plus the POSIX ``ustar`` marker at offset 257 for plain
tar. Compressed formats are assumed to wrap a tar stream.

Usage:
    python safex_detect.py archive.tar.gz
    python safex_detect.py archive.bin --json
"""

from __future__ import annotations

import argparse
import json
import sys
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple, Union

# =============================================================================
# Constants
# =============================================================================

HEADER_SIZE = 262

TAR_MAGIC_OFFSET = 257
TAR_MAGIC = b"ustar"


class ArchiveFormat(Enum):
    ZIP = "zip"
    TAR = "tar"
    GZIP = "gzip"
    BZIP2 = "bzip2"
    XZ = "xz"
    ZSTD = "zstd"
    UNKNOWN = "unknown"

    def __str__(self) -> str:
        return self.value


_SIGNATURES: Tuple[Tuple[bytes, ArchiveFormat], ...] = (
    (b"PK\x03\x04", ArchiveFormat.ZIP),
    (b"PK\x05\x06", ArchiveFormat.ZIP),  # Empty archive
    (b"PK\x07\x08", ArchiveFormat.ZIP),  # Spanned archive
    (b"\x1f\x8b", ArchiveFormat.GZIP),
    (b"BZh", ArchiveFormat.BZIP2),
    (b"\xfd7zXZ\x00", ArchiveFormat.XZ),
    (b"\x28\xb5\x2f\xfd", ArchiveFormat.ZSTD),
)


# =============================================================================
# Detection
# =============================================================================


def detect_header(header: bytes) -> ArchiveFormat:
    """Classify the leading bytes of a file."""
    for magic, archive_format in _SIGNATURES:
        if header.startswith(magic):
            return archive_format

    if header[TAR_MAGIC_OFFSET : TAR_MAGIC_OFFSET + len(TAR_MAGIC)] == TAR_MAGIC:
        return ArchiveFormat.TAR

    return ArchiveFormat.UNKNOWN


def detect_format(path: Union[str, Path]) -> ArchiveFormat:
    """
    Detect the archive format of a file.

    Args:
        path: File to inspect

    Returns:
        ArchiveFormat, UNKNOWN if nothing matched

    Raises:
        OSError: If the file cannot be read
    """
    with open(path, "rb") as f:
        header = f.read(HEADER_SIZE)
    return detect_header(header)


def parse_format(name: str) -> Optional[ArchiveFormat]:
    """Map a user-supplied format name to ArchiveFormat; ``"auto"`` maps to None."""
    if name == "auto":
        return None
    try:
        archive_format = ArchiveFormat(name.lower())
    except ValueError:
        raise ValueError(f"Unknown archive format: {name}") from None
    if archive_format is ArchiveFormat.UNKNOWN:
        raise ValueError("Archive format 'unknown' cannot be requested explicitly")
    return archive_format


# =============================================================================
# CLI Interface
# =============================================================================


def main(argv: Optional[List[str]] = None, prog: Optional[str] = None) -> int:
    """CLI entry point."""
    parser = argparse.ArgumentParser(prog=prog, description="Detect archive format by magic bytes")
    parser.add_argument("path", type=Path, help="File to inspect")
    parser.add_argument("--json", action="store_true", help="Output as JSON")
    args = parser.parse_args(argv)

    try:
        archive_format = detect_format(args.path)
    except OSError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.json:
        print(json.dumps({"path": str(args.path), "format": archive_format.value}, indent=2))
    else:
        print(archive_format.value)

    return 0 if archive_format is not ArchiveFormat.UNKNOWN else 1


if __name__ == "__main__":
    sys.exit(main())
