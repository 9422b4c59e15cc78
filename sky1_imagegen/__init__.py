"""Sky1 Image Generator - live-build orchestration for Sky1 Linux images.

This package wraps Debian live-build to produce ISO and disk images for
Sky1 boards, reusing a per-desktop build chroot across invocations and
keeping its kernel track and packages up to date.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
