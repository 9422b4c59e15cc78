"""Scoped host resources for chroot operations.

This module handles:
- Mounting /proc inside the chroot for the duration of an operation
- Copying the host resolver configuration so apt can resolve names
- Finding filesystems still mounted inside a chroot
"""

from __future__ import annotations

import logging
import os
import re
import shutil
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from sky1_imagegen.chroot.runner import ChrootCommandError, CommandRunner

logger = logging.getLogger(__name__)

HOST_RESOLV_CONF = Path("/etc/resolv.conf")
PROC_MOUNTS = Path("/proc/self/mounts")

# Filesystems live-build mounts inside a chroot while a stage runs
CHROOT_MOUNT_DIRS = ("proc", "sys", "dev", "dev/pts", "run")

_MOUNT_ESCAPE = re.compile(r"\\([0-7]{3})")


def proc_is_mounted(chroot_dir: Path) -> bool:
    """Check whether a proc filesystem is visible inside the chroot."""
    return (chroot_dir / "proc" / "1").is_dir()


def mounts_below(path: Path) -> list[Path]:
    """List the mount points at or below path.

    Checks the usual chroot mount directories directly and every entry of
    the kernel mount table, so bind mounts outside those directories are
    found as well.
    """
    root = os.path.realpath(path)
    found: list[Path] = []
    for name in CHROOT_MOUNT_DIRS:
        candidate = os.path.join(root, name)
        if os.path.ismount(candidate):
            found.append(Path(candidate))

    try:
        table = PROC_MOUNTS.read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        logger.warning(
            "Could not read %s, skipping mount table check: %s", PROC_MOUNTS, e
        )
        return found

    prefix = root.rstrip("/") + "/"
    for line in table.splitlines():
        fields = line.split()
        if len(fields) < 2:
            continue
        # Spaces and backslashes in mount points are octal-escaped
        mount_point = _MOUNT_ESCAPE.sub(lambda m: chr(int(m.group(1), 8)), fields[1])
        if mount_point == root or mount_point.startswith(prefix):
            if Path(mount_point) not in found:
                found.append(Path(mount_point))
    return found


@contextmanager
def proc_mounted(chroot_dir: Path, host: CommandRunner) -> Iterator[bool]:
    """Ensure /proc is mounted inside the chroot while the block runs.

    /proc is mounted only if it is not already present, and then always
    unmounted on exit. An unmount failure is logged, not raised.

    Args:
        chroot_dir: Chroot directory.
        host: Runner for host commands.

    Yields:
        True if this context mounted /proc.

    Raises:
        ChrootCommandError: If the mount fails.
    """
    proc_dir = chroot_dir / "proc"
    mounted_here = False
    if not proc_is_mounted(chroot_dir):
        proc_dir.mkdir(parents=True, exist_ok=True)
        host.run(["mount", "-t", "proc", "proc", str(proc_dir)])
        mounted_here = True
        logger.debug("Mounted proc at %s", proc_dir)
    try:
        yield mounted_here
    finally:
        if mounted_here:
            try:
                host.run(["umount", str(proc_dir)])
                logger.debug("Unmounted proc at %s", proc_dir)
            except ChrootCommandError as e:
                logger.warning("Failed to unmount %s: %s", proc_dir, e)


def copy_resolv_conf(chroot_dir: Path, source: Path = HOST_RESOLV_CONF) -> bool:
    """Copy the host resolver configuration into the chroot.

    Returns:
        True if copied, False if the copy failed.
    """
    dest = chroot_dir / "etc" / "resolv.conf"
    try:
        if dest.is_symlink():
            dest.unlink()
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, dest)
        return True
    except OSError as e:
        logger.warning("Could not copy %s into chroot: %s", source, e)
        return False


__all__ = [
    "CHROOT_MOUNT_DIRS",
    "HOST_RESOLV_CONF",
    "PROC_MOUNTS",
    "copy_resolv_conf",
    "mounts_below",
    "proc_is_mounted",
    "proc_mounted",
]
