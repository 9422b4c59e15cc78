"""Desktop, loadout and track selection for the live-build config tree.

This module handles:
- Checking that the requested desktop and loadout directories exist
- Writing the generated, track-specific apt sources and kernel package list
- Copying the desktop's package list, hook and include overlays into config/
- Copying the loadout's package list into config/
- Fingerprinting the package lists a build would use, without writing config/

Copies are used instead of symlinks so they survive `lb clean`.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING

from sky1_imagegen.chroot.pkglist import PACKAGE_LIST_GLOB, compute_active_pkglist_hash
from sky1_imagegen.chroot.track import render_apt_sources, render_kernel_package_list

if TYPE_CHECKING:
    from sky1_imagegen.context import BuildContext

logger = logging.getLogger(__name__)

GENERATED_SOURCES = "sky1.list.chroot"
GENERATED_PACKAGE_LIST = "sky1.list.chroot"
DESKTOP_PACKAGE_LIST = "desktop.list.chroot"
LOADOUT_PACKAGE_LIST = "loadout.list.chroot"
DESKTOP_HOOK_TARGET = "0450-desktop-config.hook.chroot"

# Overlay directories copied from the desktop into config/
INCLUDE_DIRS = ("includes.chroot", "includes.chroot.image")


class SelectionError(Exception):
    """Raised when a desktop or loadout selection cannot be applied."""

    def __init__(self, message: str, code: str = "selection_error") -> None:
        super().__init__(message)
        self.code = code


def validate_selection(ctx: BuildContext) -> None:
    """Check that the desktop and loadout directories exist.

    Raises:
        SelectionError: If either directory is missing.
    """
    if not ctx.desktop_dir.is_dir():
        raise SelectionError(
            f"Desktop directory not found: {ctx.desktop_dir}",
            code="desktop_not_found",
        )
    if not ctx.loadout_dir.is_dir():
        raise SelectionError(
            f"Loadout directory not found: {ctx.loadout_dir}",
            code="loadout_not_found",
        )


def write_track_config(ctx: BuildContext) -> tuple[Path, Path]:
    """Write the apt sources and kernel package list for ctx.track.

    Returns:
        Tuple of (sources path, package list path).
    """
    ctx.archives_dir.mkdir(parents=True, exist_ok=True)
    ctx.package_lists_dir.mkdir(parents=True, exist_ok=True)

    sources = ctx.archives_dir / GENERATED_SOURCES
    logger.info("Generating sky1 apt sources for track: %s", ctx.track.value)
    sources.write_text(render_apt_sources(ctx.track, ctx.apt_url, ctx.apt_suite))

    package_list = ctx.package_lists_dir / GENERATED_PACKAGE_LIST
    logger.info("Generating sky1 package list for track: %s", ctx.track.value)
    package_list.write_text(render_kernel_package_list(ctx.track))
    return sources, package_list


def _copy_file(source: Path, dest: Path) -> bool:
    if not source.is_file():
        return False
    dest.parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(source, dest)
    return True


def apply_desktop_choice(ctx: BuildContext) -> list[Path]:
    """Copy the desktop's package list, config hook and overlays into config/.

    Returns:
        Destinations that were written.
    """
    logger.info("Applying desktop choice: %s", ctx.desktop.value)
    written: list[Path] = []

    package_list = ctx.package_lists_dir / DESKTOP_PACKAGE_LIST
    if _copy_file(
        ctx.desktop_dir / "package-lists" / DESKTOP_PACKAGE_LIST, package_list
    ):
        written.append(package_list)

    hook = ctx.config_dir / "hooks" / "live" / DESKTOP_HOOK_TARGET
    hook_source = (
        ctx.desktop_dir
        / "hooks"
        / "live"
        / f"0450-{ctx.desktop.value}-config.hook.chroot"
    )
    if _copy_file(hook_source, hook):
        shutil.copymode(hook_source, hook)
        written.append(hook)

    for name in INCLUDE_DIRS:
        source = ctx.desktop_dir / name
        if source.is_dir():
            dest = ctx.config_dir / name
            shutil.copytree(source, dest, symlinks=True, dirs_exist_ok=True)
            written.append(dest)

    return written


def apply_loadout(ctx: BuildContext) -> Path | None:
    """Copy the loadout's package list into config/package-lists/.

    Returns:
        Destination path, or None if the loadout has no package list.
    """
    logger.info("Applying package loadout: %s", ctx.loadout.value)
    dest = ctx.package_lists_dir / LOADOUT_PACKAGE_LIST
    if _copy_file(ctx.loadout_dir / "package-lists" / LOADOUT_PACKAGE_LIST, dest):
        return dest
    return None


def preview_pkglist_hash(ctx: BuildContext) -> str:
    """Fingerprint the package lists a build of ctx would hash.

    The current lists are staged in a temporary directory together with the
    generated kernel list and the desktop and loadout lists, the same set a
    build writes into config/package-lists before hashing. Nothing under
    config/ is modified.

    Raises:
        PackageListError: If a list cannot be read.
    """
    with tempfile.TemporaryDirectory(prefix="sky1-pkglists-") as tmp:
        staged = Path(tmp)
        if ctx.package_lists_dir.is_dir():
            for path in ctx.package_lists_dir.glob(PACKAGE_LIST_GLOB):
                if path.is_file():
                    shutil.copyfile(path, staged / path.name)

        (staged / GENERATED_PACKAGE_LIST).write_text(
            render_kernel_package_list(ctx.track)
        )
        _copy_file(
            ctx.desktop_dir / "package-lists" / DESKTOP_PACKAGE_LIST,
            staged / DESKTOP_PACKAGE_LIST,
        )
        _copy_file(
            ctx.loadout_dir / "package-lists" / LOADOUT_PACKAGE_LIST,
            staged / LOADOUT_PACKAGE_LIST,
        )
        return compute_active_pkglist_hash(staged, ctx.desktop)


__all__ = [
    "SelectionError",
    "apply_desktop_choice",
    "apply_loadout",
    "preview_pkglist_hash",
    "validate_selection",
    "write_track_config",
]
