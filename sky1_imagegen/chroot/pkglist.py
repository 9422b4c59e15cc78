"""Package-list selection and fingerprinting.

This module handles:
- Reading the "# @for:" tag that scopes a package list to some desktops
- Selecting the package lists active for a desktop
- Temporarily hiding inactive lists from live-build (.skip rename)
- Computing a deterministic hash over the active lists

The hash is recorded in the build state when a chroot is built and compared
on later runs to detect package-list changes.
"""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from sky1_imagegen.types import Desktop

logger = logging.getLogger(__name__)

PACKAGE_LIST_GLOB = "*.list.chroot"
SKIP_SUFFIX = ".skip"
FOR_TAG_PREFIX = "# @for:"

# Tag value matching every desktop except headless builds
ANY_DESKTOP_TAG = "desktop"


class PackageListError(Exception):
    """Raised when a package list cannot be read."""

    def __init__(self, message: str, code: str = "pkglist_error") -> None:
        super().__init__(message)
        self.code = code


def read_for_tag(list_path: Path) -> str | None:
    """Return the @for tag on the first line of a package list, if any."""
    try:
        with list_path.open(encoding="utf-8") as f:
            first_line = f.readline()
    except (OSError, UnicodeDecodeError) as e:
        logger.warning("Could not read package list %s: %s", list_path, e)
        return None

    if not first_line.startswith(FOR_TAG_PREFIX):
        return None
    tag = first_line[len(FOR_TAG_PREFIX) :].strip()
    return tag or None


def tag_matches(tag: str | None, desktop: Desktop) -> bool:
    """Check whether a list with the given tag applies to a desktop.

    Untagged lists always apply; "desktop" applies to every desktop except
    "none"; any other tag applies only to the desktop of that name.
    """
    if tag is None:
        return True
    if tag == desktop.value:
        return True
    return tag == ANY_DESKTOP_TAG and desktop != Desktop.NONE


def active_package_lists(package_lists_dir: Path, desktop: Desktop) -> list[Path]:
    """List the package lists that apply to a desktop, sorted by name."""
    if not package_lists_dir.is_dir():
        return []
    return [
        path
        for path in sorted(package_lists_dir.glob(PACKAGE_LIST_GLOB))
        if path.is_file() and tag_matches(read_for_tag(path), desktop)
    ]


def compute_pkglist_hash(list_paths: list[Path]) -> str:
    """Compute a fingerprint over the contents of package lists.

    All lines of all files are pooled and sorted before hashing, so the
    result does not depend on file order or line order.

    Args:
        list_paths: Package list files.

    Returns:
        SHA-256 hex digest.

    Raises:
        PackageListError: If a list cannot be read as UTF-8 text.
    """
    lines: list[str] = []
    for path in list_paths:
        try:
            lines.extend(path.read_text(encoding="utf-8").splitlines())
        except (OSError, UnicodeDecodeError) as e:
            raise PackageListError(
                f"Cannot read package list {path}: {e}", code="pkglist_unreadable"
            ) from e
    canonical = "".join(f"{line}\n" for line in sorted(lines))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def compute_active_pkglist_hash(package_lists_dir: Path, desktop: Desktop) -> str:
    """Fingerprint the package lists active for a desktop."""
    return compute_pkglist_hash(active_package_lists(package_lists_dir, desktop))


def restore_skipped_lists(package_lists_dir: Path) -> int:
    """Rename every .skip package list back to its active name.

    Returns:
        Number of lists restored.
    """
    restored = 0
    for skipped in sorted(package_lists_dir.glob(PACKAGE_LIST_GLOB + SKIP_SUFFIX)):
        skipped.rename(skipped.with_name(skipped.name[: -len(SKIP_SUFFIX)]))
        restored += 1
    return restored


@contextmanager
def filtered_package_lists(
    package_lists_dir: Path,
    desktop: Desktop,
) -> Iterator[list[Path]]:
    """Hide package lists that do not apply to a desktop.

    Inactive lists are renamed with a .skip suffix so live-build does not
    see them, and restored on exit, including on error.

    Args:
        package_lists_dir: config/package-lists directory.
        desktop: Desktop being built.

    Yields:
        The paths of the hidden lists (as renamed).
    """
    # Leftovers from an interrupted run would otherwise stay hidden forever
    restore_skipped_lists(package_lists_dir)

    hidden: list[Path] = []
    try:
        for path in sorted(package_lists_dir.glob(PACKAGE_LIST_GLOB)):
            tag = read_for_tag(path)
            if tag_matches(tag, desktop):
                continue
            logger.info("Skipping %s (@for: %s)", path.name, tag)
            skipped = path.with_name(path.name + SKIP_SUFFIX)
            path.rename(skipped)
            hidden.append(skipped)
        yield hidden
    finally:
        restore_skipped_lists(package_lists_dir)


__all__ = [
    "ANY_DESKTOP_TAG",
    "PACKAGE_LIST_GLOB",
    "PackageListError",
    "active_package_lists",
    "compute_active_pkglist_hash",
    "compute_pkglist_hash",
    "filtered_package_lists",
    "read_for_tag",
    "restore_skipped_lists",
    "tag_matches",
]
