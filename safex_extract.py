#!/usr/bin/env python3
"""
Safe archive extraction for safex.

Detects the archive format (or takes it from the caller), opens the matching
decompression stream and hands it to the tar or zip driver. Every write is
confined to the destination directory; see ``safex_entries`` for the rules.

Usage:
    python safex_extract.py release.tar.gz -C /opt/tool --strip-components 1
    python safex_extract.py bundle.zip -C out --create-directory --max-bytes 512MiB
    python safex_extract.py release.tar.zst --hash sha256:<hex> --max-time 5m --json
"""

from __future__ import annotations

import argparse
import bz2
import gzip
import json
import logging
import lzma
import os
import signal
import sys
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, BinaryIO, Dict, List, Optional, Union

import zstandard

from safex_cleanup import CleanupTracker
from safex_config import ConfigError, load_config
from safex_copy import CancelToken
from safex_detect import ArchiveFormat, detect_format, parse_format
from safex_digest import verify_archive_digest
from safex_entries import ExtractionContext, ExtractOptions
from safex_errors import (
    EXIT_FAILURE,
    EXIT_OK,
    EXIT_USAGE,
    EntryIOError,
    ExtractionCancelledError,
    ExtractionError,
    UnsupportedFormatError,
)
from safex_logging import configure_logging
from safex_tar import extract_tar_stream
from safex_units import format_bytes, parse_byte_size, parse_duration
from safex_zip import extract_zip

logger = logging.getLogger("safex.extract")

# Zstandard frames may request windows up to 2 GiB
ZSTD_MAX_WINDOW_SIZE = 2**31

# =============================================================================
# Data Types
# =============================================================================


@dataclass
class ExtractResult:
    """Outcome of a successful extraction."""

    archive_format: ArchiveFormat
    destination: str
    bytes_written: int = 0
    entries: int = 0
    created: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "format": self.archive_format.value,
            "destination": self.destination,
            "bytes_written": self.bytes_written,
            "entries": self.entries,
            "created": list(self.created),
        }


# =============================================================================
# Dispatch
# =============================================================================


def _open_tar_stream(archive_format: ArchiveFormat, raw: BinaryIO) -> BinaryIO:
    """Wrap ``raw`` in the decompressor for a compressed tar stream."""
    if archive_format is ArchiveFormat.GZIP:
        return gzip.GzipFile(fileobj=raw, mode="rb")
    elif archive_format is ArchiveFormat.BZIP2:
        return bz2.BZ2File(raw, mode="rb")
    elif archive_format is ArchiveFormat.XZ:
        return lzma.LZMAFile(raw, mode="rb")
    elif archive_format is ArchiveFormat.ZSTD:
        dctx = zstandard.ZstdDecompressor(max_window_size=ZSTD_MAX_WINDOW_SIZE)
        return dctx.stream_reader(raw, read_across_frames=True)
    raise UnsupportedFormatError(f"Not a compressed tar format: {archive_format}")


def _extract_tar(archive_path: str, archive_format: ArchiveFormat, ctx: ExtractionContext) -> None:
    try:
        raw = open(archive_path, "rb")
    except OSError as exc:
        raise EntryIOError(archive_path, "open archive", exc) from exc

    with raw:
        if archive_format is ArchiveFormat.TAR:
            extract_tar_stream(raw, ctx)
            return
        with _open_tar_stream(archive_format, raw) as stream:
            extract_tar_stream(stream, ctx)


def _check_destination(destination: Union[str, Path]) -> str:
    if not os.path.exists(destination):
        raise FileNotFoundError(f"Destination does not exist: {destination}")
    if not os.path.isdir(destination):
        raise NotADirectoryError(f"Destination is not a directory: {destination}")
    return os.path.realpath(destination)


def extract_archive(
    archive_path: Union[str, Path],
    destination: Union[str, Path],
    archive_format: Optional[ArchiveFormat] = None,
    options: Optional[ExtractOptions] = None,
    *,
    cancel: Optional[CancelToken] = None,
    tracker: Optional[CleanupTracker] = None,
) -> ExtractResult:
    """
    Extract an archive into an existing directory.

    Args:
        archive_path: Archive file
        destination: Existing directory; canonicalized before use
        archive_format: Format tag, or None to detect from magic bytes
        options: Strip count and byte budget (defaults: 0, unlimited)
        cancel: Token polled between entries and during copies
        tracker: Receives every created node until it is confirmed final

    Returns:
        ExtractResult with the measured byte count and created paths

    Raises:
        FileNotFoundError / NotADirectoryError: Bad destination
        UnsupportedFormatError: Unknown format
        ExtractionCancelledError: ``cancel`` was set; unconfirmed nodes are
            left for ``tracker`` to remove
        ExtractionError: Any other extraction failure
    """
    if cancel is not None:
        cancel.raise_if_cancelled()

    archive_path = os.fspath(archive_path)
    root = _check_destination(destination)
    options = options or ExtractOptions()

    if archive_format is None:
        try:
            archive_format = detect_format(archive_path)
        except OSError as exc:
            raise EntryIOError(archive_path, "read archive header", exc) from exc

    if archive_format is ArchiveFormat.UNKNOWN:
        raise UnsupportedFormatError(f"Unsupported archive format: {archive_path}")

    ctx = ExtractionContext(root=root, options=options, cancel=cancel, tracker=tracker)
    logger.info("Extracting %s (%s) into %s", archive_path, archive_format, root)

    if archive_format is ArchiveFormat.ZIP:
        extract_zip(archive_path, ctx)
    elif archive_format is ArchiveFormat.TAR:
        _extract_tar(archive_path, archive_format, ctx)
    elif archive_format is ArchiveFormat.GZIP:
        _extract_tar(archive_path, archive_format, ctx)
    elif archive_format is ArchiveFormat.BZIP2:
        _extract_tar(archive_path, archive_format, ctx)
    elif archive_format is ArchiveFormat.XZ:
        _extract_tar(archive_path, archive_format, ctx)
    elif archive_format is ArchiveFormat.ZSTD:
        _extract_tar(archive_path, archive_format, ctx)
    else:
        raise UnsupportedFormatError(f"No extractor for format: {archive_format}")

    logger.info(
        "Extracted %d entries (%s) from %s",
        ctx.entries,
        format_bytes(ctx.bytes_written),
        archive_path,
    )
    return ExtractResult(
        archive_format=archive_format,
        destination=root,
        bytes_written=ctx.bytes_written,
        entries=ctx.entries,
        created=list(ctx.created),
    )


# =============================================================================
# Cancellation sources
# =============================================================================


def _install_signal_handlers(cancel: CancelToken) -> Dict[int, Any]:
    """Cancel on SIGINT/SIGTERM. Returns the previous handlers for restoring."""
    if threading.current_thread() is not threading.main_thread():
        return {}

    def _handler(signum: int, frame: Any) -> None:
        logger.warning("Received %s, cancelling extraction", signal.Signals(signum).name)
        cancel.cancel()

    previous = {}
    for signum in (signal.SIGINT, signal.SIGTERM):
        previous[signum] = signal.signal(signum, _handler)
    return previous


def _restore_signal_handlers(previous: Dict[int, Any]) -> None:
    for signum, handler in previous.items():
        signal.signal(signum, handler)


def _start_deadline(cancel: CancelToken, seconds: float) -> Optional[threading.Timer]:
    if seconds <= 0:
        return None

    def _expire() -> None:
        logger.warning("Maximum extraction time of %gs exceeded, cancelling", seconds)
        cancel.cancel()

    timer = threading.Timer(seconds, _expire)
    timer.daemon = True
    timer.start()
    return timer


# =============================================================================
# CLI Interface
# =============================================================================


def _build_parser(prog: Optional[str] = None) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=prog,
        description="Safely extract tar and zip archives",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s release.tar.gz -C /opt/tool --strip-components 1
  %(prog)s bundle.zip -C out --create-directory --max-bytes 512MiB
  %(prog)s release.tar.zst --hash sha256:<hex> --max-time 5m --json

Exit codes: 0 success, 1 extraction failed, 2 usage error, 130 cancelled
        """,
    )
    parser.add_argument("archive", type=Path, help="Archive file to extract")
    parser.add_argument(
        "-C",
        "--directory",
        type=Path,
        default=Path("."),
        help="Destination directory (default: current directory)",
    )
    parser.add_argument(
        "--create-directory",
        action="store_true",
        default=None,
        help="Create the destination directory if it does not exist",
    )
    parser.add_argument(
        "--format",
        default="auto",
        choices=["auto"] + [f.value for f in ArchiveFormat if f is not ArchiveFormat.UNKNOWN],
        help="Archive format (default: detect from magic bytes)",
    )
    parser.add_argument(
        "--strip-components",
        type=int,
        metavar="N",
        help="Remove N leading path components from entry names",
    )
    parser.add_argument("--max-bytes", metavar="SIZE", help="Byte budget, e.g. 512MiB (0 = unlimited)")
    parser.add_argument("--max-time", metavar="DURATION", help="Time limit, e.g. 90s or 1h30m")
    parser.add_argument("--hash", metavar="ALG:HEX", help="Verify the archive digest before extracting")
    parser.add_argument(
        "--remove-archive",
        action="store_true",
        default=None,
        help="Delete the archive after a successful extraction",
    )
    parser.add_argument("--config", type=Path, help="YAML config file (default: $SAFEX_CONFIG)")
    parser.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error", "critical"],
        help="Log level (default: info)",
    )
    parser.add_argument("--log-format", choices=["text", "json"], help="Log format (default: text)")
    parser.add_argument("--quiet", "-q", action="store_true", help="Only log errors")
    parser.add_argument("--json", action="store_true", help="Output result as JSON")
    return parser


def main(argv: Optional[List[str]] = None, prog: Optional[str] = None) -> int:
    """CLI entry point."""
    args = _build_parser(prog).parse_args(argv)

    try:
        config = load_config(args.config)
        if args.strip_components is not None:
            config.strip_components = args.strip_components
        if args.max_bytes is not None:
            config.max_bytes = parse_byte_size(args.max_bytes)
        if args.max_time is not None:
            config.max_time = parse_duration(args.max_time)
        if args.create_directory is not None:
            config.create_directory = args.create_directory
        if args.remove_archive is not None:
            config.remove_archive = args.remove_archive
        if args.log_level:
            config.log_level = args.log_level
        if args.log_format:
            config.log_format = args.log_format
        if args.quiet:
            config.log_level = "error"

        configure_logging(config.log_level, config.log_format, force=True)
        options = ExtractOptions(
            strip_components=config.strip_components, max_bytes=config.max_bytes
        )
        archive_format = parse_format(args.format)
    except (ConfigError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_USAGE

    digest = None
    try:
        if args.hash:
            digest = verify_archive_digest(args.archive, args.hash)
        if config.create_directory:
            args.directory.mkdir(parents=True, exist_ok=True)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_USAGE
    except (ExtractionError, OSError) as e:
        logger.error("%s", e)
        return EXIT_FAILURE

    cancel = CancelToken()
    tracker = CleanupTracker()
    previous_handlers = _install_signal_handlers(cancel)
    timer = _start_deadline(cancel, config.max_time)

    try:
        result = extract_archive(
            args.archive,
            args.directory,
            archive_format,
            options,
            cancel=cancel,
            tracker=tracker,
        )
    except ExtractionCancelledError as e:
        tracker.cleanup()
        logger.error("%s", e)
        return e.exit_code
    except ExtractionError as e:
        tracker.cleanup()
        logger.error("Extraction failed: %s", e)
        return e.exit_code
    except OSError as e:
        tracker.cleanup()
        logger.error("Extraction failed: %s", e)
        return EXIT_FAILURE
    except Exception:
        tracker.cleanup()
        logger.exception("Unexpected error while extracting %s", args.archive)
        return EXIT_USAGE
    finally:
        if timer is not None:
            timer.cancel()
        _restore_signal_handlers(previous_handlers)

    if config.remove_archive:
        try:
            os.remove(args.archive)
        except OSError as e:
            logger.warning("Could not remove archive %s: %s", args.archive, e)
        else:
            logger.info("Removed archive %s", args.archive)

    if args.json:
        output = {"archive": str(args.archive), **result.to_dict()}
        if digest:
            output["digest"] = digest
        print(json.dumps(output, indent=2))
    elif not args.quiet:
        print(
            f"Extracted {result.entries} entries ({format_bytes(result.bytes_written)}) "
            f"to {result.destination}"
        )

    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
