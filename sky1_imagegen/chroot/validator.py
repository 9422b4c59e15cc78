"""Chroot reuse validation.

Decides, at the start of every build, whether the per-desktop chroot can be
reused (use_existing), must be created (build_fresh), or must be discarded
and rebuilt (force_clean). Every sign of incompleteness leads to
force_clean: a chroot is only reused when its state record shows both the
bootstrap and chroot stages complete, for the requested desktop, under a
supported record format.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from sky1_imagegen.chroot.state import (
    SUPPORTED_STATE_VERSION,
    StateField,
    StateFileError,
    describe_stage,
    format_timestamp,
    load_state,
    state_path,
    write_state_field,
)
from sky1_imagegen.types import ChrootAction, Desktop

logger = logging.getLogger(__name__)

# Structural markers of a complete base install
APT_GET_PATH = "usr/bin/apt-get"
APT_CONFIG_DIR = "etc/apt"


@dataclass
class ChrootDecision:
    """Result of chroot validation.

    Attributes:
        action: What to do with the chroot.
        reason: Human-readable explanation.
        warnings: Advisory messages that do not change the action.
        adopted: Whether a state record was synthesized for the chroot.
    """

    action: ChrootAction
    reason: str
    warnings: list[str] = field(default_factory=list)
    adopted: bool = False

    def to_dict(self) -> dict[str, object]:
        return {
            "action": self.action.value,
            "reason": self.reason,
            "warnings": list(self.warnings),
            "adopted": self.adopted,
        }


def looks_complete(chroot_dir: Path) -> bool:
    """Check whether a chroot without a record looks like a full base install."""
    apt_get = chroot_dir / APT_GET_PATH
    return (
        apt_get.is_file()
        and os.access(apt_get, os.X_OK)
        and (chroot_dir / APT_CONFIG_DIR).is_dir()
    )


def adopt_chroot(chroot_dir: Path, desktop: Desktop, current_hash: str) -> None:
    """Write a state record for a pre-existing chroot that has none."""
    now = format_timestamp()
    write_state_field(chroot_dir, StateField.OWNER_DESKTOP, desktop.value)
    write_state_field(chroot_dir, StateField.STAGE_BOOTSTRAP, now)
    write_state_field(chroot_dir, StateField.STAGE_CHROOT, now)
    write_state_field(chroot_dir, StateField.PKGLIST_HASH, current_hash)
    write_state_field(chroot_dir, StateField.ADOPTED, "1")


def decide(
    chroot_dir: Path,
    desktop: Desktop,
    current_hash: str,
    *,
    adopt: bool = True,
) -> ChrootDecision:
    """Decide what to do with a chroot.

    Checks run in order and the first match wins.

    Args:
        chroot_dir: Per-desktop chroot directory.
        desktop: Desktop requested for this build.
        current_hash: Fingerprint of the currently active package lists.
        adopt: Write a state record when adopting a record-less chroot.
            With False the decision is reported without touching the disk.

    Returns:
        ChrootDecision.
    """
    if not chroot_dir.is_dir():
        return ChrootDecision(ChrootAction.BUILD_FRESH, "no environment")

    if not state_path(chroot_dir).exists():
        if looks_complete(chroot_dir):
            if adopt:
                logger.info("Adopting pre-existing chroot at %s", chroot_dir)
                adopt_chroot(chroot_dir, desktop, current_hash)
            return ChrootDecision(
                ChrootAction.USE_EXISTING,
                "adopted pre-existing environment",
                adopted=True,
            )
        return ChrootDecision(
            ChrootAction.FORCE_CLEAN,
            "no state record and environment looks incomplete",
        )

    try:
        state = load_state(chroot_dir)
    except (StateFileError, OSError) as e:
        logger.warning("Unreadable build state in %s: %s", chroot_dir, e)
        return ChrootDecision(ChrootAction.FORCE_CLEAN, "state record unreadable")

    if state is None:
        # Removed between the existence check and the read
        return ChrootDecision(
            ChrootAction.FORCE_CLEAN,
            "no state record and environment looks incomplete",
        )

    if not state.is_supported:
        return ChrootDecision(
            ChrootAction.FORCE_CLEAN,
            f"state version newer than supported "
            f"({state.schema_version} > {SUPPORTED_STATE_VERSION})",
        )

    if state.owner_desktop is not None and state.owner_desktop != desktop.value:
        return ChrootDecision(
            ChrootAction.FORCE_CLEAN,
            f"built for a different variant ('{state.owner_desktop}', "
            f"not '{desktop.value}')",
        )

    if state.stage_bootstrap_at is None:
        return ChrootDecision(ChrootAction.FORCE_CLEAN, "bootstrap never completed")

    if state.stage_chroot_at is None:
        return ChrootDecision(
            ChrootAction.FORCE_CLEAN,
            f"chroot stage interrupted after bootstrap "
            f"(bootstrap done at {describe_stage(state.stage_bootstrap_at)})",
        )

    warnings: list[str] = []
    if state.pkglist_hash is not None and state.pkglist_hash != current_hash:
        message = (
            "Package lists changed since chroot was built "
            f"(saved {state.pkglist_hash[:12]}, current {current_hash[:12]}); "
            "pass --clean to rebuild with updated lists"
        )
        logger.warning(message)
        warnings.append(message)

    return ChrootDecision(ChrootAction.USE_EXISTING, "complete", warnings=warnings)


__all__ = [
    "APT_CONFIG_DIR",
    "APT_GET_PATH",
    "ChrootDecision",
    "adopt_chroot",
    "decide",
    "looks_complete",
]
