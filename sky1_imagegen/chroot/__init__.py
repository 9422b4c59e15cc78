"""Chroot management module.

This module handles:
- The per-chroot build state record
- Validating a chroot before reuse
- Package list filtering and hashing
- Running apt and related tools inside a chroot
- Freshness checks and kernel track switching
"""

from sky1_imagegen.chroot.state import BuildState, StateFileError
from sky1_imagegen.chroot.validator import ChrootDecision

__all__ = ["BuildState", "ChrootDecision", "StateFileError"]
