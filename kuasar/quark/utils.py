"""File and mount helpers used by the quark sandboxer."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Sequence, Union

from kuasar import mount as _mount
from kuasar.common import Mount
from kuasar.mount import MNT_DETACH, MNT_NOFOLLOW, MountError

log = logging.getLogger(__name__)

DEFAULT_MOUNTS = "/proc/mounts"

PathLike = Union[str, os.PathLike]


def write_file_atomic(path: PathLike, data: bytes) -> None:
    """Write ``data`` to a hidden sibling of ``path`` and rename it into place."""
    path = Path(path)
    if path.name in ("", ".", ".."):
        raise ValueError("pid path illegal")
    tmp_path = path.parent / f".{path.name}"
    try:
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o666)
    except OSError as e:
        raise OSError(e.errno, f"failed to open path {tmp_path}, {e.strerror}") from e
    with os.fdopen(fd, "wb") as f:
        try:
            f.write(data)
            f.flush()
        except OSError as e:
            raise OSError(
                e.errno, f"failed to write string to path {tmp_path}, {e.strerror}"
            ) from e
        try:
            os.fsync(f.fileno())
        except OSError as e:
            raise OSError(
                e.errno, f"failed to sync data to path {tmp_path}, {e.strerror}"
            ) from e
    try:
        os.replace(tmp_path, path)
    except OSError as e:
        raise OSError(e.errno, f"failed to rename file:{tmp_path}, {e.strerror}") from e


def mount_rootfs(m: Mount, target: PathLike) -> None:
    """Mount a rootfs entry on ``target``; empty type or source mean none."""
    target = os.fspath(target)
    try:
        _mount.mount(m.type or None, m.source or None, m.options, target)
    except MountError as e:
        raise MountError(f"failed to mount {m!r} to {target}") from e


def bind_mount(source: PathLike, target: str, options: Sequence[str]) -> None:
    """Bind-mount ``source`` on ``target``, creating ``target`` to match the source kind."""
    if not os.path.exists(target):
        if not os.path.isdir(source):
            log.debug("create a file %s because source %s is a file", target, source)
            with open(target, "wb"):
                pass
        else:
            log.debug("create a directory %s because source %s is a dir", target, source)
            os.makedirs(target, exist_ok=True)
    _mount.bind_mount(source, target, options)


def cleanup_mounts(base_dir: str, mounts_path: str = DEFAULT_MOUNTS) -> None:
    """Detach every mount point listed in ``mounts_path`` that lies under ``base_dir``."""
    try:
        with open(mounts_path, encoding="utf-8") as f:
            content = f.read()
    except OSError as e:
        raise MountError(f"failed to read {mounts_path},{e}") from e
    for line in content.splitlines():
        fields = line.split()
        if len(fields) < 2:
            continue
        path = fields[1]
        if path.startswith(base_dir):
            try:
                _mount.unmount(path, MNT_DETACH | MNT_NOFOLLOW)
            except (MountError, ValueError) as e:
                log.error("failed to remove %s, err: %s", path, e)