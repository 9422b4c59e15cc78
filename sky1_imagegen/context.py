"""Explicit per-invocation build context.

A BuildContext carries everything one build run needs to know: which
desktop, loadout, format and kernel track were requested, the flags that
modify the run, and where the live-build tree lives. Components receive it
as an argument instead of reading ambient state.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING

from sky1_imagegen.config import DEFAULT_APT_URL
from sky1_imagegen.types import DEFAULT_TRACK, Desktop, Loadout, OutputFormat, Track

if TYPE_CHECKING:
    from sky1_imagegen.config import Settings


def _today() -> str:
    return datetime.now().strftime("%Y%m%d")


@dataclass
class BuildContext:
    """Inputs of a single build invocation.

    Attributes:
        build_dir: Root of the live-build tree.
        desktop: Desktop choice; selects the chroot.
        loadout: Package loadout.
        output_format: ISO or disk image.
        track: Requested kernel track.
        clean: Discard the chroot before validating it.
        force_upgrade: Upgrade even when serious bugs are reported.
        skip_compress: Skip compression of disk images.
        apt_url: Base URL of the Sky1 apt repository.
        apt_suite: Suite name used in generated sources.
        stage_timeout: Timeout for live-build stages in seconds.
        command_timeout: Timeout for chroot commands in seconds.
        date: Date stamp used in output names (YYYYMMDD).
    """

    build_dir: Path
    desktop: Desktop
    loadout: Loadout = Loadout.DESKTOP
    output_format: OutputFormat = OutputFormat.ISO
    track: Track = DEFAULT_TRACK
    clean: bool = False
    force_upgrade: bool = False
    skip_compress: bool = False
    apt_url: str = DEFAULT_APT_URL
    apt_suite: str = "sid"
    stage_timeout: int | None = None
    command_timeout: int | None = None
    date: str = field(default_factory=_today)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        desktop: Desktop,
        loadout: Loadout = Loadout.DESKTOP,
        output_format: OutputFormat = OutputFormat.ISO,
        track: Track = DEFAULT_TRACK,
        *,
        clean: bool = False,
        force_upgrade: bool | None = None,
        skip_compress: bool | None = None,
    ) -> BuildContext:
        """Create a context from settings plus per-run choices.

        Flags left as None fall back to the settings values.
        """
        return cls(
            build_dir=settings.build_dir,
            desktop=desktop,
            loadout=loadout,
            output_format=output_format,
            track=track,
            clean=clean,
            force_upgrade=(
                settings.force_upgrade if force_upgrade is None else force_upgrade
            ),
            skip_compress=(
                settings.skip_compress if skip_compress is None else skip_compress
            ),
            apt_url=settings.apt_url,
            apt_suite=settings.apt_suite,
            stage_timeout=settings.stage_timeout,
            command_timeout=settings.command_timeout,
        )

    @property
    def config_dir(self) -> Path:
        return self.build_dir / "config"

    @property
    def package_lists_dir(self) -> Path:
        return self.config_dir / "package-lists"

    @property
    def archives_dir(self) -> Path:
        return self.config_dir / "archives"

    @property
    def desktop_dir(self) -> Path:
        return self.build_dir / "desktop-choice" / self.desktop.value

    @property
    def loadout_dir(self) -> Path:
        return self.build_dir / "package-loadouts" / self.loadout.value

    @property
    def chroot_dir(self) -> Path:
        """Per-desktop chroot; the kernel track does not select a chroot."""
        return self.desktop_dir / "chroot"

    @property
    def chroot_link(self) -> Path:
        """Path live-build works on; a symlink to chroot_dir."""
        return self.build_dir / "chroot"

    @property
    def log_path(self) -> Path:
        return self.build_dir / "build.log"

    @property
    def output_name(self) -> str:
        """Base name of the produced image, without extension."""
        parts = ["sky1-linux", self.desktop.value, self.loadout.value]
        if self.track != Track.MAIN:
            parts.append(self.track.value)
        parts.append(self.date)
        return "-".join(parts)


__all__ = ["BuildContext"]
