#!/usr/bin/env python3
"""Run adversarial archives through safex and print a JSON summary."""

from __future__ import annotations

import io
import json
import os
import struct
import sys
import tarfile
import tempfile
import zipfile
from pathlib import Path
from typing import Callable, Dict, List


def _add_file(tf: tarfile.TarFile, name: str, data: bytes, mode: int = 0o644) -> None:
    info = tarfile.TarInfo(name)
    info.size = len(data)
    info.mode = mode
    tf.addfile(info, io.BytesIO(data))


def _add_link(tf: tarfile.TarFile, name: str, target: str, kind: bytes) -> None:
    info = tarfile.TarInfo(name)
    info.type = kind
    info.linkname = target
    tf.addfile(info)


def _write_zip_bomb(path: Path, actual: int = 10_000_000, declared: int = 10) -> None:
    """Deflate ``actual`` zero bytes, then rewrite both size fields to ``declared``."""
    with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        zf.writestr("bomb.bin", b"\0" * actual)
    data = bytearray(path.read_bytes())
    local = data.find(b"PK\x03\x04")
    central = data.rfind(b"PK\x01\x02")
    data[local + 22 : local + 26] = struct.pack("<I", declared)
    data[central + 24 : central + 28] = struct.pack("<I", declared)
    path.write_bytes(bytes(data))


def main() -> int:
    root = Path(__file__).resolve().parents[1]
    sys.path.insert(0, str(root))

    import safex_errors
    import safex_extract
    from safex_entries import ExtractOptions
    from safex_paths import resolve_within

    def expect(error: type, fn: Callable[[], object]) -> bool:
        try:
            fn()
        except error:
            return True
        except safex_errors.ExtractionError:
            return False
        return False

    def check_traversal(tmp: Path) -> bool:
        archive = tmp / "a.tar"
        with tarfile.open(archive, "w") as tf:
            _add_file(tf, "../evil.txt", b"nope")
        out = tmp / "out"
        out.mkdir()
        rejected = expect(
            safex_errors.PathEscapeError, lambda: safex_extract.extract_archive(archive, out)
        )
        return rejected and not (tmp / "evil.txt").exists()

    def check_symlink_ancestor(tmp: Path) -> bool:
        outside = tmp / "outside"
        outside.mkdir()
        out = tmp / "out"
        (out / "a" / "b").mkdir(parents=True)
        os.symlink(str(outside), out / "a" / "b" / "escape")
        archive = tmp / "a.tar"
        with tarfile.open(archive, "w") as tf:
            _add_file(tf, "a/b/escape/pwned.txt", b"nope")
        rejected = expect(
            safex_errors.PathEscapeError, lambda: safex_extract.extract_archive(archive, out)
        )
        return rejected and not any(outside.iterdir())

    def check_symlink_value(tmp: Path) -> bool:
        archive = tmp / "a.tar"
        with tarfile.open(archive, "w") as tf:
            _add_link(tf, "dir/link", "../../etc", tarfile.SYMTYPE)
        out = tmp / "out"
        out.mkdir()
        rejected = expect(
            safex_errors.PathEscapeError, lambda: safex_extract.extract_archive(archive, out)
        )
        return rejected and not os.path.lexists(out / "dir" / "link")

    def check_symlink_dotdot(tmp: Path) -> bool:
        archive = tmp / "a.tar"
        with tarfile.open(archive, "w") as tf:
            _add_link(tf, "s", ".", tarfile.SYMTYPE)
            _add_link(tf, "a", "s/../escaped", tarfile.SYMTYPE)
        out = tmp / "out"
        out.mkdir()
        rejected = expect(
            safex_errors.PathEscapeError, lambda: safex_extract.extract_archive(archive, out)
        )
        return rejected and not os.path.lexists(out / "a")

    def check_symlink_cycle(tmp: Path) -> bool:
        out = tmp / "out"
        out.mkdir()
        os.symlink("b", out / "a")
        os.symlink("a", out / "b")
        return expect(safex_errors.PathEscapeError, lambda: resolve_within(str(out), "a/file"))

    def check_strip_symlink(tmp: Path) -> bool:
        archive = tmp / "pkg.tar"
        with tarfile.open(archive, "w") as tf:
            info = tarfile.TarInfo("pkg")
            info.type = tarfile.DIRTYPE
            info.mode = 0o755
            tf.addfile(info)
            _add_file(tf, "pkg/bin/tool", b"#!/bin/sh\n", mode=0o755)
            _add_link(tf, "pkg/bin/alias", "../lib/tool", tarfile.SYMTYPE)
            _add_file(tf, "pkg/lib/tool", b"lib\n")
        out = tmp / "out"
        out.mkdir()
        safex_extract.extract_archive(archive, out, options=ExtractOptions(strip_components=1))
        alias = out / "bin" / "alias"
        return (
            os.readlink(alias) == "../lib/tool"
            and alias.resolve() == (out / "lib" / "tool").resolve()
            and os.access(out / "bin" / "tool", os.X_OK)
        )

    def check_deferred_hardlink(tmp: Path) -> bool:
        archive = tmp / "a.tar"
        with tarfile.open(archive, "w") as tf:
            _add_link(tf, "link", "data.txt", tarfile.LNKTYPE)
            _add_file(tf, "data.txt", b"payload")
        out = tmp / "out"
        out.mkdir()
        safex_extract.extract_archive(archive, out)
        return os.path.samefile(out / "link", out / "data.txt")

    def check_missing_hardlink(tmp: Path) -> bool:
        archive = tmp / "a.tar"
        with tarfile.open(archive, "w") as tf:
            _add_link(tf, "link", "never.txt", tarfile.LNKTYPE)
        out = tmp / "out"
        out.mkdir()
        return expect(
            safex_errors.TargetNotFoundError, lambda: safex_extract.extract_archive(archive, out)
        )

    def check_zip_bomb(tmp: Path) -> bool:
        archive = tmp / "bomb.zip"
        _write_zip_bomb(archive)
        out = tmp / "out"
        out.mkdir()
        rejected = expect(
            safex_errors.SizeLimitExceededError,
            lambda: safex_extract.extract_archive(
                archive, out, options=ExtractOptions(max_bytes=1000)
            ),
        )
        return rejected and not (out / "bomb.bin").exists()

    cases: Dict[str, Callable[[Path], bool]] = {
        "name-traversal": check_traversal,
        "symlink-ancestor-escape": check_symlink_ancestor,
        "symlink-value-escape": check_symlink_value,
        "symlink-dotdot-through-symlink": check_symlink_dotdot,
        "symlink-cycle": check_symlink_cycle,
        "strip-preserves-symlink-value": check_strip_symlink,
        "deferred-hardlink": check_deferred_hardlink,
        "missing-hardlink-target": check_missing_hardlink,
        "zip-bomb-measured-budget": check_zip_bomb,
    }

    checks: List[dict] = []
    for check_id, fn in cases.items():
        with tempfile.TemporaryDirectory() as tmpdir:
            try:
                ok = fn(Path(tmpdir))
                details = "Invariant held" if ok else "Invariant violated"
            except Exception as exc:
                ok = False
                details = f"{type(exc).__name__}: {exc}"
        checks.append({"id": check_id, "passed": ok, "details": details})

    passed = all(check["passed"] for check in checks)
    print(json.dumps({"passed": passed, "checks": checks}, indent=2))
    return 0 if passed else 1


if __name__ == "__main__":
    raise SystemExit(main())
