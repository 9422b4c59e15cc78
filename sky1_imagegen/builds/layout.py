"""On-disk layout of per-desktop chroots.

live-build always works on <build_dir>/chroot. Each desktop keeps its own
chroot under desktop-choice/<desktop>/chroot, and <build_dir>/chroot is a
symlink to the one in use. This module handles:
- Pointing the symlink at the requested desktop's chroot
- Recovering a real chroot/ directory left by an interrupted build
- Moving a freshly bootstrapped chroot into its per-desktop location
- Discarding a chroot
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import TYPE_CHECKING

from sky1_imagegen.chroot.mounts import mounts_below, proc_is_mounted

if TYPE_CHECKING:
    from sky1_imagegen.context import BuildContext

logger = logging.getLogger(__name__)


class LayoutError(Exception):
    """Raised when the chroot layout cannot be changed safely."""

    def __init__(self, message: str, code: str = "layout_error") -> None:
        super().__init__(message)
        self.code = code


def _remove_tree(path: Path) -> None:
    mounted = mounts_below(path)
    if not mounted and proc_is_mounted(path):
        mounted = [path / "proc"]
    if mounted:
        raise LayoutError(
            f"Refusing to remove {path}: filesystems still mounted inside it "
            f"({', '.join(str(m) for m in mounted)})",
            code="chroot_mounted",
        )
    shutil.rmtree(path)


def link_chroot(ctx: BuildContext) -> None:
    """Point <build_dir>/chroot at the desktop's chroot if it exists."""
    link = ctx.chroot_link
    if ctx.chroot_dir.is_dir() and not link.exists() and not link.is_symlink():
        link.symlink_to(ctx.chroot_dir.relative_to(ctx.build_dir))


def setup_chroot_link(ctx: BuildContext) -> None:
    """Prepare <build_dir>/chroot for the requested desktop.

    Removes any existing symlink. A real chroot/ directory left behind by an
    interrupted build is removed when the desktop already has a chroot, and
    otherwise moved into place as the desktop's chroot.
    """
    link = ctx.chroot_link
    if link.is_symlink():
        link.unlink()

    if link.is_dir():
        if ctx.chroot_dir.is_dir():
            logger.warning(
                "Removing stale 'chroot' directory (real chroot at %s)",
                ctx.chroot_dir,
            )
            _remove_tree(link)
        else:
            logger.info("Recovering orphaned 'chroot' directory to %s", ctx.chroot_dir)
            ctx.chroot_dir.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(link), str(ctx.chroot_dir))

    link_chroot(ctx)


def finalize_chroot(ctx: BuildContext) -> None:
    """Move a chroot/ directory created by live-build to the desktop's path."""
    link = ctx.chroot_link
    if link.is_dir() and not link.is_symlink():
        logger.info("Moving chroot to %s", ctx.chroot_dir)
        ctx.chroot_dir.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(link), str(ctx.chroot_dir))
    link_chroot(ctx)


def discard_chroot(ctx: BuildContext) -> bool:
    """Remove the desktop's chroot and the chroot/ link or directory.

    Returns:
        True if a chroot directory was removed.

    Raises:
        LayoutError: If a filesystem is still mounted in a directory to
            remove.
    """
    removed = False
    link = ctx.chroot_link
    if link.is_symlink():
        link.unlink()
    elif link.is_dir():
        logger.info("Removing stale chroot directory %s", link)
        _remove_tree(link)
        removed = True

    if ctx.chroot_dir.is_dir():
        logger.info("Removing chroot %s", ctx.chroot_dir)
        _remove_tree(ctx.chroot_dir)
        removed = True
    return removed


__all__ = [
    "LayoutError",
    "discard_chroot",
    "finalize_chroot",
    "link_chroot",
    "setup_chroot_link",
]
