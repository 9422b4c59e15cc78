"""Kernel track management for build chroots.

This module handles:
- Mapping a kernel track to its metapackages
- Generating Sky1 apt sources and kernel package lists for a track
- Switching a reused chroot to the requested track
- Recording the active track and kernel in the build state

Tracks: main (LTS, default), latest, rc, next. The main track uses the
base metapackage names; the others append "-<track>".
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from sky1_imagegen.chroot.apt import AptClient
from sky1_imagegen.chroot.mounts import copy_resolv_conf
from sky1_imagegen.chroot.runner import ChrootRunner
from sky1_imagegen.chroot.state import (
    Stage,
    StateField,
    record_stage_complete,
    write_state_field,
)
from sky1_imagegen.chroot.tools import regenerate_initramfs
from sky1_imagegen.types import Track

if TYPE_CHECKING:
    from sky1_imagegen.context import BuildContext

logger = logging.getLogger(__name__)

KERNEL_IMAGE_BASE = "linux-image-sky1"
KERNEL_HEADERS_BASE = "linux-headers-sky1"
KERNEL_SOURCE_BASE = "linux-sky1"

SOURCES_LIST_PATH = "etc/apt/sources.list.d/sky1.list"
TRUSTED_KEY_PATH = "etc/apt/trusted.gpg.d/sky1.asc"
KEY_SOURCE_NAME = "sky1.key.chroot"

# Hooks shipped by raspi-firmware that fail on non-Raspberry Pi kernels
FOREIGN_KERNEL_HOOKS = (
    "etc/initramfs/post-update.d/z50-raspi-firmware",
    "etc/kernel/postinst.d/z50-raspi-firmware",
    "etc/kernel/postrm.d/z50-raspi-firmware",
)


def track_suffix(track: Track) -> str:
    """Return the metapackage suffix for a track ("" for main)."""
    track = Track(track)
    return "" if track == Track.MAIN else f"-{track.value}"


def kernel_meta_package(track: Track) -> str:
    """Return the kernel image metapackage for a track."""
    return f"{KERNEL_IMAGE_BASE}{track_suffix(track)}"


def install_meta_packages(track: Track) -> list[str]:
    """Return the metapackages installed for a track."""
    suffix = track_suffix(track)
    return [f"{KERNEL_IMAGE_BASE}{suffix}", f"{KERNEL_HEADERS_BASE}{suffix}"]


def track_meta_packages(track: Track) -> list[str]:
    """Return every metapackage belonging to a track."""
    suffix = track_suffix(track)
    return [
        f"{KERNEL_IMAGE_BASE}{suffix}",
        f"{KERNEL_HEADERS_BASE}{suffix}",
        f"{KERNEL_SOURCE_BASE}{suffix}",
    ]


def foreign_meta_packages(track: Track) -> list[str]:
    """Return the metapackages of every track other than the given one."""
    keep = set(install_meta_packages(track))
    return [
        pkg
        for other in Track
        for pkg in track_meta_packages(other)
        if other != Track(track) and pkg not in keep
    ]


def render_apt_sources(track: Track, apt_url: str, suite: str = "sid") -> str:
    """Render the Sky1 apt sources line for a track.

    The main component is always included since it carries firmware and
    multimedia packages for every track.
    """
    track = Track(track)
    components = ["main"]
    if track != Track.MAIN:
        components.append(track.value)
    components.append("non-free-firmware")
    return f"deb {apt_url} {suite} {' '.join(components)}\n"


def render_kernel_package_list(track: Track) -> str:
    """Render the live-build package list with the kernel for a track."""
    track = Track(track)
    image, headers = install_meta_packages(track)
    return (
        "# Sky1 Linux packages (from Sky1 apt repo)\n"
        f"# Track: {track.value}\n"
        "\n"
        "# Kernel (meta packages - always pulls latest for this track)\n"
        f"{image}\n"
        f"{headers}\n"
        "\n"
        "# Firmware\n"
        "sky1-firmware\n"
    )


@dataclass
class TrackSwitchResult:
    """Result of ensure_track.

    Attributes:
        track: Requested track.
        switched: False when the fast path found the track already active.
        removed: Metapackages of other tracks that were removed.
        installed: Metapackages that were installed.
    """

    track: Track
    switched: bool
    removed: list[str] = field(default_factory=list)
    installed: list[str] = field(default_factory=list)


def _remove_foreign_hooks(chroot_dir: Path) -> None:
    for hook in FOREIGN_KERNEL_HOOKS:
        (chroot_dir / hook).unlink(missing_ok=True)


def _install_repository_config(ctx: BuildContext) -> None:
    chroot_dir = ctx.chroot_dir
    sources = chroot_dir / SOURCES_LIST_PATH
    sources.parent.mkdir(parents=True, exist_ok=True)
    sources.write_text(render_apt_sources(ctx.track, ctx.apt_url, ctx.apt_suite))

    key_source = ctx.archives_dir / KEY_SOURCE_NAME
    if key_source.is_file():
        key_dest = chroot_dir / TRUSTED_KEY_PATH
        key_dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(key_source, key_dest)


def _default_apt(ctx: BuildContext) -> AptClient:
    return AptClient(
        ChrootRunner(
            ctx.chroot_dir, timeout=ctx.command_timeout, log_path=ctx.log_path
        )
    )


def ensure_track(ctx: BuildContext, apt: AptClient | None = None) -> TrackSwitchResult:
    """Make sure the chroot runs the kernel of the requested track.

    Does nothing when the track's image metapackage is already installed.
    Otherwise points apt at the track, removes metapackages of other tracks,
    installs the requested ones and regenerates the initramfs.

    Args:
        ctx: Build context.
        apt: Package manager client (default: one for ctx.chroot_dir).

    Returns:
        TrackSwitchResult.

    Raises:
        ChrootCommandError: If updating, removing or installing fails.
    """
    if apt is None:
        apt = _default_apt(ctx)
    track = Track(ctx.track)
    wanted = install_meta_packages(track)

    if apt.is_installed(wanted[0]):
        logger.info("Chroot already has %s installed", wanted[0])
        return TrackSwitchResult(track=track, switched=False)

    logger.info("Switching chroot to track: %s", track.value)
    copy_resolv_conf(ctx.chroot_dir)
    _install_repository_config(ctx)
    _remove_foreign_hooks(ctx.chroot_dir)

    apt.update()

    removed = [pkg for pkg in foreign_meta_packages(track) if apt.is_installed(pkg)]
    if removed:
        logger.info("Removing old track packages: %s", " ".join(removed))
        apt.remove(removed)

    apt.install(wanted)
    apt.autoremove()
    regenerate_initramfs(apt.runner)
    logger.info("Track switch complete")

    return TrackSwitchResult(
        track=track, switched=True, removed=removed, installed=wanted
    )


def record_track_state(ctx: BuildContext, apt: AptClient | None = None) -> str | None:
    """Record the active track and kernel in the chroot's build state.

    Args:
        ctx: Build context.
        apt: Package manager client (default: one for ctx.chroot_dir).

    Returns:
        Installed kernel metapackage version, or None if unknown.
    """
    if apt is None:
        apt = _default_apt(ctx)
    meta_pkg = kernel_meta_package(ctx.track)
    kernel_version = apt.installed_version(meta_pkg)

    write_state_field(ctx.chroot_dir, StateField.TRACK, Track(ctx.track).value)
    write_state_field(ctx.chroot_dir, StateField.KERNEL_META, meta_pkg)
    if kernel_version:
        write_state_field(ctx.chroot_dir, StateField.KERNEL_VERSION, kernel_version)
    record_stage_complete(ctx.chroot_dir, Stage.TRACK_SWITCH)
    return kernel_version


__all__ = [
    "FOREIGN_KERNEL_HOOKS",
    "TrackSwitchResult",
    "ensure_track",
    "foreign_meta_packages",
    "install_meta_packages",
    "kernel_meta_package",
    "record_track_state",
    "render_apt_sources",
    "render_kernel_package_list",
    "track_meta_packages",
    "track_suffix",
]
