"""Shared type definitions for sky1_imagegen.

This module contains enums and dataclasses shared across subpackages to
avoid circular imports.
"""

from dataclasses import dataclass, field
from enum import Enum


class ChrootAction(str, Enum):
    """Action decided for a build chroot at the start of a run."""

    BUILD_FRESH = "build_fresh"
    USE_EXISTING = "use_existing"
    FORCE_CLEAN = "force_clean"


class Track(str, Enum):
    """Kernel release channel."""

    MAIN = "main"
    LATEST = "latest"
    RC = "rc"
    NEXT = "next"


class Desktop(str, Enum):
    """Desktop choice a chroot is built for."""

    GNOME = "gnome"
    KDE = "kde"
    XFCE = "xfce"
    NONE = "none"


class Loadout(str, Enum):
    """Package loadout layered on top of the desktop choice."""

    MINIMAL = "minimal"
    DESKTOP = "desktop"
    SERVER = "server"
    DEVELOPER = "developer"


class OutputFormat(str, Enum):
    """Kind of bootable media produced."""

    ISO = "iso"
    IMAGE = "image"


DEFAULT_TRACK = Track.MAIN


@dataclass
class StepResult:
    """Outcome of a single step of a multi-step operation."""

    name: str
    success: bool
    message: str
    code: str | None = None
    details: dict[str, object] = field(default_factory=dict)


__all__ = [
    "DEFAULT_TRACK",
    "ChrootAction",
    "Desktop",
    "Loadout",
    "OutputFormat",
    "StepResult",
    "Track",
]
