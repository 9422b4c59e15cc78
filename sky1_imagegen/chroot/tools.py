"""Auxiliary chroot tools: bug reports and initramfs regeneration."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from sky1_imagegen.chroot.runner import CommandRunner

logger = logging.getLogger(__name__)

LISTBUGS_PATH = "usr/bin/apt-listbugs"
SERIOUS_SEVERITIES = ("critical", "grave", "serious")
NO_BUGS_MARKER = "no bugs found"


@dataclass
class BugReport:
    """Bug report for a set of packages.

    Attributes:
        packages: Packages that were checked.
        has_bugs: Whether any bug at the requested severities was reported.
        text: Report text as printed by apt-listbugs.
    """

    packages: list[str]
    has_bugs: bool
    text: str = ""


def parse_listbugs_output(output: str) -> bool:
    """Return True if apt-listbugs output reports at least one bug."""
    text = output.strip()
    return bool(text) and NO_BUGS_MARKER not in text.lower()


class ListBugs:
    """Query the Debian BTS through apt-listbugs inside the chroot."""

    def __init__(self, runner: CommandRunner, chroot_dir: Path) -> None:
        self.runner = runner
        self.chroot_dir = chroot_dir

    def available(self) -> bool:
        tool = self.chroot_dir / LISTBUGS_PATH
        return tool.is_file() and os.access(tool, os.X_OK)

    def check(
        self,
        packages: list[str],
        severities: tuple[str, ...] = SERIOUS_SEVERITIES,
    ) -> BugReport:
        """List bugs of the given severities for packages.

        A failing apt-listbugs invocation is reported as "no bugs", the same
        as an empty report.
        """
        if not packages:
            return BugReport(packages=[], has_bugs=False)
        result = self.runner.run(
            ["apt-listbugs", "-s", ",".join(severities), "list", *packages],
            check=False,
        )
        if not result.success and not result.stdout.strip():
            logger.warning(
                "apt-listbugs exited with %d; treating as no bugs", result.exit_code
            )
            return BugReport(packages=list(packages), has_bugs=False)
        return BugReport(
            packages=list(packages),
            has_bugs=parse_listbugs_output(result.stdout),
            text=result.stdout.strip(),
        )


def regenerate_initramfs(runner: CommandRunner) -> None:
    """Rebuild the initramfs of every installed kernel."""
    runner.run(["update-initramfs", "-u", "-k", "all"], capture=False)


__all__ = [
    "LISTBUGS_PATH",
    "SERIOUS_SEVERITIES",
    "BugReport",
    "ListBugs",
    "parse_listbugs_output",
    "regenerate_initramfs",
]
