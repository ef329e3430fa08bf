"""Mount option parsing and mount/unmount helpers."""

from __future__ import annotations

import enum
import logging
import os
import re
import subprocess
from typing import Iterable, NamedTuple, Optional, Sequence, Union

log = logging.getLogger(__name__)

MNT_FORCE = 0x1
MNT_DETACH = 0x2
MNT_EXPIRE = 0x4
MNT_NOFOLLOW = 0x8
MNT_OPTION_MAX_LEN = 4096
DEFAULT_MOUNTSTATS = "/proc/self/mountstats"


class MountError(OSError):
    """Raised when a mount or unmount operation fails."""


class MountFlag(enum.IntFlag):
    """Kernel mount flags."""

    MS_RDONLY = 1
    MS_NOSUID = 2
    MS_NODEV = 4
    MS_NOEXEC = 8
    MS_SYNCHRONOUS = 16
    MS_REMOUNT = 32
    MS_MANDLOCK = 64
    MS_DIRSYNC = 128
    MS_NOATIME = 1024
    MS_NODIRATIME = 2048
    MS_BIND = 4096
    MS_MOVE = 8192
    MS_REC = 16384
    MS_SILENT = 32768
    MS_POSIXACL = 1 << 16
    MS_UNBINDABLE = 1 << 17
    MS_PRIVATE = 1 << 18
    MS_SLAVE = 1 << 19
    MS_SHARED = 1 << 20
    MS_RELATIME = 1 << 21
    MS_KERNMOUNT = 1 << 22
    MS_I_VERSION = 1 << 23
    MS_STRICTATIME = 1 << 24
    MS_LAZYTIME = 1 << 25


F = MountFlag
NO_FLAGS = MountFlag(0)

PROPAGATION_TYPES = F.MS_SHARED | F.MS_PRIVATE | F.MS_SLAVE | F.MS_UNBINDABLE
MS_PROPAGATION = PROPAGATION_TYPES | F.MS_REC | F.MS_SILENT
MS_BIND_RO = F.MS_BIND | F.MS_RDONLY


class _Flag(NamedTuple):
    clear: bool
    flags: MountFlag


_MOUNT_FLAGS: dict[str, _Flag] = {
    "async": _Flag(True, F.MS_SYNCHRONOUS),
    "atime": _Flag(True, F.MS_NOATIME),
    "bind": _Flag(False, F.MS_BIND),
    "defaults": _Flag(False, NO_FLAGS),
    "dev": _Flag(True, F.MS_NODEV),
    "diratime": _Flag(True, F.MS_NODIRATIME),
    "dirsync": _Flag(False, F.MS_DIRSYNC),
    "exec": _Flag(True, F.MS_NOEXEC),
    "mand": _Flag(False, F.MS_MANDLOCK),
    "noatime": _Flag(False, F.MS_NOATIME),
    "nodev": _Flag(False, F.MS_NODEV),
    "nodiratime": _Flag(False, F.MS_NODIRATIME),
    "noexec": _Flag(False, F.MS_NOEXEC),
    "nomand": _Flag(True, F.MS_MANDLOCK),
    "norelatime": _Flag(True, F.MS_RELATIME),
    "nostrictatime": _Flag(True, F.MS_STRICTATIME),
    "nosuid": _Flag(False, F.MS_NOSUID),
    "rbind": _Flag(False, F.MS_BIND | F.MS_REC),
    "relatime": _Flag(False, F.MS_RELATIME),
    "remount": _Flag(False, F.MS_REMOUNT),
    "ro": _Flag(False, F.MS_RDONLY),
    "rw": _Flag(True, F.MS_RDONLY),
    "strictatime": _Flag(False, F.MS_STRICTATIME),
    "suid": _Flag(True, F.MS_NOSUID),
    "sync": _Flag(False, F.MS_SYNCHRONOUS),
}

_OPTION_NAMES = (
    (F.MS_RDONLY, "ro"),
    (F.MS_NOSUID, "nosuid"),
    (F.MS_NODEV, "nodev"),
    (F.MS_NOEXEC, "noexec"),
    (F.MS_SYNCHRONOUS, "sync"),
    (F.MS_MANDLOCK, "mand"),
    (F.MS_DIRSYNC, "dirsync"),
    (F.MS_NOATIME, "noatime"),
    (F.MS_NODIRATIME, "nodiratime"),
    (F.MS_RELATIME, "relatime"),
    (F.MS_STRICTATIME, "strictatime"),
    (F.MS_SILENT, "silent"),
    (F.MS_LAZYTIME, "lazytime"),
)

_PROPAGATION_NAMES = (
    (F.MS_SHARED, "shared"),
    (F.MS_PRIVATE, "private"),
    (F.MS_SLAVE, "slave"),
    (F.MS_UNBINDABLE, "unbindable"),
)


def _without(flags: MountFlag, mask: MountFlag) -> MountFlag:
    return MountFlag(int(flags) & ~int(mask))


def parse_options(options: Iterable[str]) -> tuple[MountFlag, list[str]]:
    """Split mount options into kernel flags and filesystem data options."""
    flags = NO_FLAGS
    data: list[str] = []
    for option in options:
        known = _MOUNT_FLAGS.get(option)
        if known is None:
            data.append(option)
        elif known.clear:
            flags = _without(flags, known.flags)
        else:
            flags = flags | known.flags
    return flags, data


def _mount_command(
    source: Optional[str],
    target: str,
    fs_type: Optional[str],
    flags: MountFlag,
    data: Optional[str],
) -> list[str]:
    propagation = flags & PROPAGATION_TYPES
    if propagation:
        prefix = "r" if flags & F.MS_REC else ""
        cmd = ["mount"]
        cmd.extend(
            f"--make-{prefix}{name}"
            for flag, name in _PROPAGATION_NAMES
            if propagation & flag
        )
        cmd.append(target)
        return cmd

    opts: list[str] = []
    if flags & F.MS_REMOUNT:
        opts.append("remount")
    if flags & F.MS_BIND:
        opts.append("rbind" if flags & F.MS_REC else "bind")
    opts.extend(name for flag, name in _OPTION_NAMES if flags & flag)
    if data:
        opts.append(data)

    cmd = ["mount"]
    if fs_type and not flags & (F.MS_BIND | F.MS_REMOUNT):
        cmd += ["-t", fs_type]
    if opts:
        cmd += ["-o", ",".join(opts)]
    if not flags & F.MS_REMOUNT:
        if source is not None:
            cmd.append(source)
        elif fs_type:
            cmd.append("none")
    cmd.append(target)
    return cmd


def _run(cmd: Sequence[str]) -> None:
    try:
        result = subprocess.run(list(cmd), capture_output=True, text=True, check=False)
    except OSError as e:
        raise MountError(f"cannot run {cmd[0]}: {e}") from e
    if result.returncode != 0:
        detail = (result.stderr or "").strip()
        raise MountError(detail or f"{cmd[0]} exited with status {result.returncode}")


def _do_mount(
    source: Optional[str],
    target: str,
    fs_type: Optional[str],
    flags: MountFlag,
    data: Optional[str],
) -> None:
    _run(_mount_command(source, target, fs_type, flags, data))


def mount(
    fs_type: Optional[str],
    source: Optional[str],
    options: Sequence[str],
    target: str,
) -> None:
    """Mount ``source`` on ``target`` applying the given options."""
    flags, data = parse_options(options)
    opt = ",".join(data)
    if len(opt) > MNT_OPTION_MAX_LEN:
        raise MountError("mount option is too long")
    data_opt = opt if data else None

    # mount with non-propagation first, or remount with changed data
    oflags = _without(flags, PROPAGATION_TYPES)
    if not flags & F.MS_REMOUNT or data_opt is not None:
        try:
            _do_mount(source, target, fs_type, oflags, data_opt)
        except MountError as e:
            raise MountError(f"failed to mount {source!r} to {target}, err: {e}") from e

    if flags & PROPAGATION_TYPES:
        try:
            _do_mount(None, target, None, flags & MS_PROPAGATION, None)
        except MountError as e:
            raise MountError(
                f"failed change mount propagation of {target}, err: {e}"
            ) from e

    if oflags & MS_BIND_RO == MS_BIND_RO:
        try:
            _do_mount(None, target, None, oflags | F.MS_REMOUNT, None)
        except MountError as e:
            raise MountError(f"failed change read only of {target}, err: {e}") from e


def bind_mount(
    source: Union[str, os.PathLike],
    target: str,
    options: Sequence[str],
) -> None:
    """Bind-mount ``source`` on ``target``, remounting read-only if asked."""
    flags, data = parse_options(options)
    opts = ",".join(data) if data else None
    src = os.fspath(source)
    try:
        _do_mount(src, target, "bind", flags | F.MS_BIND, opts)
    except MountError as e:
        raise MountError(f"failed to mount {target}, {e}") from e
    # Only recent util-linux supports "bind,ro" in one go, so remount read-only.
    if flags & F.MS_RDONLY:
        try:
            _do_mount(src, target, "bind", flags | F.MS_BIND | F.MS_REMOUNT, opts)
        except MountError as e:
            raise MountError(f"failed to mount {target} as read only, {e}") from e


def unmount(target: str, flags: int) -> None:
    """Unmount ``target``; a target that does not exist is not an error."""
    supported = MNT_FORCE | MNT_DETACH | MNT_NOFOLLOW
    if flags & ~supported:
        raise ValueError(f"unsupported unmount flags {flags:#x}")
    if not os.path.lexists(target):
        log.debug("the umount path %s not exist", target)
        return
    if flags & MNT_NOFOLLOW and os.path.islink(target):
        raise MountError(f"failed to umount {target}, target is a symbolic link")
    cmd = ["umount"]
    if flags & MNT_FORCE:
        cmd.append("-f")
    if flags & MNT_DETACH:
        cmd.append("-l")
    cmd.append(target)
    try:
        _run(cmd)
    except MountError as e:
        if not os.path.lexists(target):
            log.debug("the umount path %s not exist", target)
            return
        raise MountError(f"failed to umount {target}, {e}") from e


def get_mount_type(mount_point: str, mountstats_path: str = DEFAULT_MOUNTSTATS) -> str:
    """Return the filesystem type mounted on ``mount_point``."""
    try:
        with open(mountstats_path, encoding="utf-8") as f:
            content = f.read()
    except OSError as e:
        raise MountError(f"failed to open {mountstats_path}, err:{e}") from e
    pattern = re.compile(
        f"device .+ mounted on {re.escape(mount_point)} with fstype (.+)"
    )
    for line in content.splitlines():
        match = pattern.search(line)
        if match:
            return match.group(1)
    raise MountError(f"get type for mount point {mount_point} failed")