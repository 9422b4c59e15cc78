"""Package manager interface for a build chroot.

This module handles:
- apt/dpkg operations inside the chroot (update, install, remove, upgrade)
- Version and status queries
- Parsing of dpkg-query, apt-cache policy and apt list output

Parsers are plain functions so they can be tested against fixture output.
"""

from __future__ import annotations

import logging

from sky1_imagegen.chroot.runner import CommandRunner

logger = logging.getLogger(__name__)

INSTALLED_STATUS = "install ok installed"

# dpkg-query output format: status, tab, version
DPKG_QUERY_FORMAT = "${Status}\\t${Version}"


def parse_dpkg_query(output: str) -> tuple[str, str | None]:
    """Parse dpkg-query output produced with DPKG_QUERY_FORMAT.

    Args:
        output: Raw dpkg-query stdout.

    Returns:
        Tuple of (status, version); version is None when empty.
    """
    line = output.strip().splitlines()[0] if output.strip() else ""
    status, _, version = line.partition("\t")
    return status.strip(), (version.strip() or None)


def parse_policy_candidate(output: str) -> str | None:
    """Extract the candidate version from apt-cache policy output.

    Returns:
        Candidate version, or None if absent or "(none)".
    """
    for line in output.splitlines():
        line = line.strip()
        if line.startswith("Candidate:"):
            candidate = line.split(":", 1)[1].strip()
            if candidate and candidate != "(none)":
                return candidate
            return None
    return None


def parse_upgradable(output: str) -> list[str]:
    """Extract package names from `apt list --upgradable` output.

    Lines look like "pkg/sid 1.2-1 arm64 [upgradable from: 1.1-1]"; the
    "Listing..." banner and warnings are ignored.
    """
    packages: list[str] = []
    for line in output.splitlines():
        if "upgradable" not in line or "/" not in line:
            continue
        name = line.split("/", 1)[0].strip()
        if name and name not in packages:
            packages.append(name)
    return packages


class AptClient:
    """apt/dpkg operations executed through a chroot runner."""

    def __init__(self, runner: CommandRunner) -> None:
        self.runner = runner

    def update(self) -> None:
        """Refresh repository metadata."""
        self.runner.run(["apt-get", "update", "-qq"])

    def query(self, package: str) -> tuple[str, str | None]:
        """Return (status, version) of a package, ("", None) if unknown."""
        result = self.runner.run(
            ["dpkg-query", "-W", f"-f={DPKG_QUERY_FORMAT}", package],
            check=False,
        )
        if not result.success:
            return "", None
        return parse_dpkg_query(result.stdout)

    def is_installed(self, package: str) -> bool:
        status, _ = self.query(package)
        return status == INSTALLED_STATUS

    def installed_version(self, package: str) -> str | None:
        """Return the installed version of a package, or None."""
        status, version = self.query(package)
        if status != INSTALLED_STATUS:
            return None
        return version

    def candidate_version(self, package: str) -> str | None:
        """Return the version apt would install, or None."""
        result = self.runner.run(["apt-cache", "policy", package], check=False)
        if not result.success:
            return None
        return parse_policy_candidate(result.stdout)

    def list_upgradable(self) -> list[str]:
        """Return the names of packages with an available upgrade.

        Raises:
            ChrootCommandError: If apt cannot list upgrades.
        """
        result = self.runner.run(["apt", "list", "--upgradable"])
        return parse_upgradable(result.stdout)

    def install(self, packages: list[str]) -> None:
        if not packages:
            return
        logger.info("Installing: %s", " ".join(packages))
        self.runner.run(["apt-get", "install", "-y", *packages], capture=False)

    def remove(self, packages: list[str]) -> None:
        if not packages:
            return
        logger.info("Removing: %s", " ".join(packages))
        self.runner.run(["apt-get", "remove", "-y", *packages], capture=False)

    def dist_upgrade(self, force_listbugs: bool = True) -> None:
        """Upgrade all packages.

        Args:
            force_listbugs: Keep the apt-listbugs hook from aborting the
                upgrade; the bug check has already been made by the caller.
        """
        args = ["apt-get"]
        if force_listbugs:
            args += ["-o", "APT::ListBugs::Force=yes"]
        args += ["dist-upgrade", "-y"]
        self.runner.run(args, capture=False)

    def autoremove(self) -> None:
        self.runner.run(["apt-get", "autoremove", "-y", "-qq"], capture=False)


__all__ = [
    "DPKG_QUERY_FORMAT",
    "INSTALLED_STATUS",
    "AptClient",
    "parse_dpkg_query",
    "parse_policy_candidate",
    "parse_upgradable",
]
