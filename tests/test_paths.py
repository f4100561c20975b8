from __future__ import annotations

import os
from pathlib import Path

import pytest

from safex_errors import PathEscapeError
from safex_paths import MAX_SYMLINK_HOPS, is_within, resolve_within, strip_components


def _symlink_chain(root: Path, length: int) -> None:
    """Create l0 -> l1 -> ... -> l{length-1} -> end."""
    (root / "end").write_text("end", encoding="utf-8")
    for i in range(length):
        target = f"l{i + 1}" if i + 1 < length else "end"
        os.symlink(target, root / f"l{i}")


@pytest.mark.parametrize(
    "path,root,expected",
    [
        ("/dest", "/dest", True),
        ("/dest/a/b", "/dest", True),
        ("/dest/a/../b", "/dest", True),
        ("/dest/../etc", "/dest", False),
        ("/destination", "/dest", False),
        ("/etc/passwd", "/", True),
    ],
)
def test_is_within(path: str, root: str, expected: bool) -> None:
    assert is_within(path, root) is expected


def test_resolve_missing_path_is_returned(tmp_path: Path) -> None:
    root = str(tmp_path)
    assert resolve_within(root, "a/b/c.txt") == os.path.join(root, "a", "b", "c.txt")


def test_resolve_rejects_dotdot(tmp_path: Path) -> None:
    with pytest.raises(PathEscapeError, match="escapes destination"):
        resolve_within(str(tmp_path), "a/../../evil")


def test_resolve_rejects_absolute_outside(tmp_path: Path) -> None:
    with pytest.raises(PathEscapeError):
        resolve_within(str(tmp_path / "root"), "/etc/passwd")


def test_resolve_follows_symlink_inside_root(tmp_path: Path) -> None:
    (tmp_path / "real").mkdir()
    os.symlink("real", tmp_path / "alias")
    assert resolve_within(str(tmp_path), "alias/file") == str(tmp_path / "real" / "file")


def test_resolve_follows_absolute_symlink_inside_root(tmp_path: Path) -> None:
    (tmp_path / "real").mkdir()
    os.symlink(str(tmp_path / "real"), tmp_path / "alias")
    assert resolve_within(str(tmp_path), "alias/x") == str(tmp_path / "real" / "x")


@pytest.mark.parametrize("depth", [0, 1, 3, 8])
def test_resolve_rejects_escaping_ancestor_at_any_depth(tmp_path: Path, depth: int) -> None:
    root = tmp_path / "root"
    outside = tmp_path / "outside"
    outside.mkdir()
    nested = root.joinpath(*[f"d{i}" for i in range(depth)])
    nested.mkdir(parents=True)
    os.symlink(str(outside), nested / "escape")

    rel = "/".join([f"d{i}" for i in range(depth)] + ["escape", "deeper", "file"])
    with pytest.raises(PathEscapeError):
        resolve_within(str(root), rel)


def test_resolve_rejects_relative_symlink_escape(tmp_path: Path) -> None:
    root = tmp_path / "root"
    (root / "sub").mkdir(parents=True)
    os.symlink("../..", root / "sub" / "up")
    with pytest.raises(PathEscapeError, match="Symlink escape"):
        resolve_within(str(root), "sub/up/file")


def test_resolve_applies_dotdot_after_symlink(tmp_path: Path) -> None:
    root = tmp_path / "root"
    root.mkdir()
    os.symlink(".", root / "s")
    with pytest.raises(PathEscapeError):
        resolve_within(str(root), "s/../escaped")


def test_resolve_dotdot_uses_real_parent(tmp_path: Path) -> None:
    root = tmp_path / "root"
    (root / "a" / "b").mkdir(parents=True)
    os.symlink("a/b", root / "deep")
    assert resolve_within(str(root), "deep/../x") == str(root / "a" / "x")


def test_resolve_absolute_candidate_walks_raw_segments(tmp_path: Path) -> None:
    root = tmp_path / "root"
    root.mkdir()
    os.symlink(".", root / "s")
    with pytest.raises(PathEscapeError):
        resolve_within(str(root), os.path.join(str(root), "s", "..", "x"))


def test_resolve_rejects_dotdot_after_missing_segment(tmp_path: Path) -> None:
    with pytest.raises(PathEscapeError, match="missing segment"):
        resolve_within(str(tmp_path), "missing/../x")


def test_resolve_dotdot_inside_existing_directory(tmp_path: Path) -> None:
    (tmp_path / "a").mkdir()
    assert resolve_within(str(tmp_path), "a/../b") == str(tmp_path / "b")


def test_resolve_symlink_value_dotdot_escape(tmp_path: Path) -> None:
    root = tmp_path / "root"
    root.mkdir()
    os.symlink(".", root / "s")
    os.symlink("s/..", root / "up")
    with pytest.raises(PathEscapeError, match="Symlink escape"):
        resolve_within(str(root), "up/file")


def test_resolve_rejects_symlink_cycle(tmp_path: Path) -> None:
    os.symlink("b", tmp_path / "a")
    os.symlink("a", tmp_path / "b")
    with pytest.raises(PathEscapeError, match="Too many symlinks"):
        resolve_within(str(tmp_path), "a/file")


def test_resolve_chain_at_hop_limit(tmp_path: Path) -> None:
    _symlink_chain(tmp_path, MAX_SYMLINK_HOPS)
    assert resolve_within(str(tmp_path), "l0") == str(tmp_path / "end")


def test_resolve_chain_past_hop_limit(tmp_path: Path) -> None:
    _symlink_chain(tmp_path, MAX_SYMLINK_HOPS + 1)
    with pytest.raises(PathEscapeError, match="Too many symlinks"):
        resolve_within(str(tmp_path), "l0")


def test_resolve_through_file_returns_joined(tmp_path: Path) -> None:
    (tmp_path / "file").write_text("x", encoding="utf-8")
    assert resolve_within(str(tmp_path), "file/child") == str(tmp_path / "file" / "child")


@pytest.mark.parametrize(
    "path,count,expected",
    [
        ("pkg/bin/tool", 0, "pkg/bin/tool"),
        ("pkg/bin/tool", 1, "bin/tool"),
        ("pkg/bin/tool", 2, "tool"),
        ("pkg/bin/tool", 3, ""),
        ("pkg/bin/tool", 7, ""),
        ("pkg/", 1, ""),
        ("pkg", 1, ""),
    ],
)
def test_strip_components(path: str, count: int, expected: str) -> None:
    assert strip_components(path, count) == expected
