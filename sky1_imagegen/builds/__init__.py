"""Build orchestration module.

This module handles:
- Applying desktop, loadout and kernel track selections to config/
- Managing the per-desktop chroot symlink layout
- Running live-build stages and the disk image script
- Sequencing validation, remediation, freshness and track reconciliation
"""

# Lazy imports for submodules to avoid circular imports
# Access via sky1_imagegen.builds.controller, etc.
