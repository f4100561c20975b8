#!/usr/bin/env python3
"""
Archive integrity verification for safex.

An expected digest is written as ``<algorithm>:<hex>``, for example
``sha256:9f86d0...``. A bare hex string is still accepted as SHA-256 but a
deprecation warning is logged.

Usage:
    python safex_digest.py archive.tar.gz                 # sha256:<hex>
    python safex_digest.py archive.zip --algorithm sha512
    python safex_digest.py archive.zip --json
"""

from __future__ import annotations

import argparse
import hashlib
import hmac
import json
import logging
import string
import sys
from pathlib import Path
from typing import List, NamedTuple, Optional, Tuple, Union

from safex_errors import ExtractionError

logger = logging.getLogger("safex.digest")

# =============================================================================
# Constants
# =============================================================================


class HashAlgorithm(NamedTuple):
    name: str  # Display name
    hex_length: int


SUPPORTED_ALGORITHMS = {
    "sha256": HashAlgorithm("SHA-256", 64),
    "sha512": HashAlgorithm("SHA-512", 128),
}

DEFAULT_ALGORITHM = "sha256"


class DigestMismatchError(ExtractionError):
    """Raised when an archive does not match its expected digest."""

    pass


# =============================================================================
# Parsing
# =============================================================================


def parse_expected_hash(value: str) -> Tuple[str, str]:
    """
    Split ``<algorithm>:<hex>`` into its parts.

    Args:
        value: Expected digest string

    Returns:
        Tuple of (algorithm, lowercase hex digest)

    Raises:
        ValueError: Unknown algorithm, wrong length or non-hex digest
    """
    if ":" in value:
        algorithm, digest = value.split(":", 1)
        algorithm = algorithm.strip().lower()
    else:
        algorithm, digest = DEFAULT_ALGORITHM, value
        logger.warning(
            "Hash without algorithm prefix is deprecated; assuming %s (use %s:<hex>)",
            DEFAULT_ALGORITHM,
            DEFAULT_ALGORITHM,
        )

    algo = SUPPORTED_ALGORITHMS.get(algorithm)
    if algo is None:
        supported = ", ".join(sorted(SUPPORTED_ALGORITHMS))
        raise ValueError(f"Unsupported hash algorithm {algorithm!r} (supported: {supported})")

    digest = digest.strip().lower()
    if len(digest) != algo.hex_length:
        raise ValueError(
            f"Invalid {algo.name} digest length: expected {algo.hex_length} hex characters, "
            f"got {len(digest)}"
        )
    if any(c not in string.hexdigits for c in digest):
        raise ValueError(f"Invalid {algo.name} digest: not hexadecimal")

    return algorithm, digest


# =============================================================================
# Hashing
# =============================================================================


def hash_file(
    filepath: Union[str, Path], algorithm: str = DEFAULT_ALGORITHM, chunk_size: int = 65536
) -> Tuple[str, int]:
    """
    Compute the digest of a file.

    Args:
        filepath: Path to file
        algorithm: One of SUPPORTED_ALGORITHMS
        chunk_size: Read buffer size

    Returns:
        Tuple of (hex digest, file size in bytes)
    """
    if algorithm not in SUPPORTED_ALGORITHMS:
        raise ValueError(f"Unsupported hash algorithm: {algorithm}")

    hasher = hashlib.new(algorithm)
    size = 0

    with open(filepath, "rb") as f:
        while chunk := f.read(chunk_size):
            hasher.update(chunk)
            size += len(chunk)

    return hasher.hexdigest(), size


def verify_archive_digest(filepath: Union[str, Path], expected: str) -> str:
    """
    Verify an archive against an expected ``<algorithm>:<hex>`` digest.

    Returns:
        The verified digest in ``<algorithm>:<hex>`` form

    Raises:
        ValueError: If ``expected`` is malformed
        DigestMismatchError: If the computed digest differs
    """
    algorithm, expected_hex = parse_expected_hash(expected)
    actual_hex, _ = hash_file(filepath, algorithm)

    if not hmac.compare_digest(actual_hex, expected_hex):
        raise DigestMismatchError(
            f"{SUPPORTED_ALGORITHMS[algorithm].name} mismatch for {filepath}: "
            f"expected {expected_hex}, got {actual_hex}"
        )

    logger.info("Verified %s digest of %s", SUPPORTED_ALGORITHMS[algorithm].name, filepath)
    return f"{algorithm}:{actual_hex}"


# =============================================================================
# CLI Interface
# =============================================================================


def main(argv: Optional[List[str]] = None, prog: Optional[str] = None) -> int:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        prog=prog,
        description="Compute or verify an archive digest",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s archive.tar.gz                       # Print sha256:<hex>
  %(prog)s archive.zip --algorithm sha512       # Use SHA-512
  %(prog)s archive.zip --verify sha256:<hex>    # Exit 1 on mismatch
        """,
    )
    parser.add_argument("path", type=Path, help="Archive file")
    parser.add_argument(
        "--algorithm",
        default=DEFAULT_ALGORITHM,
        choices=sorted(SUPPORTED_ALGORITHMS),
        help="Hash algorithm (default: sha256)",
    )
    parser.add_argument("--verify", metavar="ALG:HEX", help="Expected digest to verify against")
    parser.add_argument("--json", action="store_true", help="Output as JSON")
    args = parser.parse_args(argv)

    try:
        if args.verify:
            digest = verify_archive_digest(args.path, args.verify)
            size = args.path.stat().st_size
        else:
            digest_hex, size = hash_file(args.path, args.algorithm)
            digest = f"{args.algorithm}:{digest_hex}"

        if args.json:
            print(json.dumps({"digest": digest, "size": size}, indent=2))
        else:
            print(digest)
        return 0

    except (DigestMismatchError, ValueError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
