from __future__ import annotations

import io
import logging
import tarfile
from pathlib import Path
from typing import Callable, Iterable, Optional, Tuple, Union

import pytest

# (name, kind, payload-or-link-target, mode)
TarSpec = Tuple[str, str, Union[bytes, str, None], Optional[int]]


def build_tar(path: Path, members: Iterable[TarSpec], mode: str = "w") -> Path:
    """Write a tar archive from (name, kind, data, mode) tuples.

    ``kind`` is one of "dir", "file", "symlink", "hardlink", "fifo".
    """
    with tarfile.open(path, mode) as tf:
        for name, kind, data, perm in members:
            info = tarfile.TarInfo(name)
            if kind == "dir":
                info.type = tarfile.DIRTYPE
                info.mode = perm or 0o755
                tf.addfile(info)
            elif kind == "file":
                payload = data if isinstance(data, bytes) else b""
                info.size = len(payload)
                info.mode = perm or 0o644
                tf.addfile(info, io.BytesIO(payload))
            elif kind == "symlink":
                info.type = tarfile.SYMTYPE
                info.linkname = str(data)
                tf.addfile(info)
            elif kind == "hardlink":
                info.type = tarfile.LNKTYPE
                info.linkname = str(data)
                tf.addfile(info)
            elif kind == "fifo":
                info.type = tarfile.FIFOTYPE
                tf.addfile(info)
            else:
                raise ValueError(f"Unknown member kind: {kind}")
    return path


@pytest.fixture(scope="session")
def repo_root() -> Path:
    return Path(__file__).resolve().parents[1]


@pytest.fixture
def dest(tmp_path: Path) -> Path:
    out = tmp_path / "out"
    out.mkdir()
    return out


@pytest.fixture
def make_tar(tmp_path: Path) -> Callable[..., Path]:
    def _make(members: Iterable[TarSpec], name: str = "archive.tar", mode: str = "w") -> Path:
        return build_tar(tmp_path / name, members, mode)

    return _make


@pytest.fixture(autouse=True)
def _reset_safex_logger():
    """CLI tests install handlers bound to a captured stderr; drop them afterwards."""
    yield
    logger = logging.getLogger("safex")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)
