"""Freshness check for a reused build chroot.

This module handles:
- Refreshing apt metadata inside the chroot
- Upgrading the kernel metapackage of the active track
- Gating package upgrades behind a Debian BTS check for serious bugs
- Running the upgrade and pruning orphaned packages

Only run on chroots the validator decided to reuse. Every step reports a
StepResult; only a failed metadata refresh stops the check early, and no
step failure here aborts the build. Without /proc the bug gate cannot run,
so the package upgrade is skipped while the refresh and kernel steps still
run.
"""

from __future__ import annotations

import logging
import time
from contextlib import ExitStack
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from sky1_imagegen.chroot.apt import AptClient
from sky1_imagegen.chroot.mounts import copy_resolv_conf, proc_mounted
from sky1_imagegen.chroot.runner import (
    ChrootCommandError,
    ChrootRunner,
    CommandRunner,
)
from sky1_imagegen.chroot.tools import BugReport, ListBugs, regenerate_initramfs
from sky1_imagegen.chroot.track import kernel_meta_package
from sky1_imagegen.types import StepResult

if TYPE_CHECKING:
    from sky1_imagegen.context import BuildContext

logger = logging.getLogger(__name__)

APT_LISTS_PATH = "var/lib/apt/lists"


@dataclass
class FreshnessReport:
    """Outcome of a freshness check.

    Attributes:
        steps: Result of each step that ran, in order.
        kernel_upgrade: (old, new) kernel metapackage versions if upgraded.
        upgradable: Packages that had an upgrade available.
        upgraded: Whether the package upgrade ran.
        skipped_for_bugs: Whether the upgrade was withheld by the bug gate.
        bug_report: Bug report text when serious bugs were found.
    """

    steps: list[StepResult] = field(default_factory=list)
    kernel_upgrade: tuple[str, str] | None = None
    upgradable: list[str] = field(default_factory=list)
    upgraded: bool = False
    skipped_for_bugs: bool = False
    bug_report: str | None = None

    @property
    def success(self) -> bool:
        return all(step.success for step in self.steps)

    def step(self, name: str) -> StepResult | None:
        for result in self.steps:
            if result.name == name:
                return result
        return None


def apt_lists_age_hours(chroot_dir: Path, now: float | None = None) -> int | None:
    """Return the age of the chroot's apt lists in whole hours."""
    lists_dir = chroot_dir / APT_LISTS_PATH
    try:
        mtime = lists_dir.stat().st_mtime
    except OSError:
        return None
    if now is None:
        now = time.time()
    return int(max(now - mtime, 0) // 3600)


def _refresh_metadata(ctx: BuildContext, apt: AptClient) -> StepResult:
    age = apt_lists_age_hours(ctx.chroot_dir)
    if age is not None and age >= 1:
        logger.info("Apt lists are %dh old, refreshing", age)
    try:
        apt.update()
    except ChrootCommandError as e:
        logger.warning("apt-get update failed, using existing metadata: %s", e)
        return StepResult("refresh", False, str(e), code=e.code)
    return StepResult("refresh", True, "apt metadata refreshed")


def _upgrade_kernel(
    ctx: BuildContext,
    apt: AptClient,
    report: FreshnessReport,
) -> StepResult:
    meta_pkg = kernel_meta_package(ctx.track)
    try:
        installed = apt.installed_version(meta_pkg)
        candidate = apt.candidate_version(meta_pkg)
    except ChrootCommandError as e:
        logger.warning("Could not query %s versions: %s", meta_pkg, e)
        return StepResult("kernel", False, str(e), code=e.code)

    if installed is None:
        return StepResult("kernel", True, f"{meta_pkg} not installed")
    if candidate is None or candidate == installed:
        logger.info("Kernel: %s %s (up to date)", meta_pkg, installed)
        return StepResult("kernel", True, f"{meta_pkg} {installed} up to date")

    logger.info("Kernel upgrade available: %s %s -> %s", meta_pkg, installed, candidate)
    try:
        apt.install([meta_pkg])
        regenerate_initramfs(apt.runner)
    except ChrootCommandError as e:
        logger.error("Kernel upgrade failed: %s", e)
        return StepResult("kernel", False, str(e), code=e.code)

    report.kernel_upgrade = (installed, candidate)
    logger.info("Kernel upgraded: %s %s -> %s", meta_pkg, installed, candidate)
    return StepResult(
        "kernel",
        True,
        f"{meta_pkg} upgraded {installed} -> {candidate}",
        details={"from": installed, "to": candidate},
    )


def _check_bugs(packages: list[str], bugs: ListBugs) -> BugReport | None:
    if not bugs.available():
        logger.debug("apt-listbugs not installed in chroot; skipping bug check")
        return None
    logger.info(
        "Checking Debian BTS for bugs in %d upgradable package(s)", len(packages)
    )
    return bugs.check(packages)


def _upgrade_packages(
    ctx: BuildContext,
    apt: AptClient,
    bugs: ListBugs,
    report: FreshnessReport,
) -> StepResult:
    try:
        packages = apt.list_upgradable()
        report.upgradable = packages
        if not packages:
            return StepResult("upgrade", True, "no upgradable packages")
        bug_report = _check_bugs(packages, bugs)
    except ChrootCommandError as e:
        logger.warning("Could not determine upgradable packages: %s", e)
        return StepResult("upgrade", False, str(e), code=e.code)

    if bug_report is not None and bug_report.has_bugs:
        report.bug_report = bug_report.text
        logger.warning(
            "Serious bugs found in upgradable packages:\n%s", bug_report.text
        )
        if not ctx.force_upgrade:
            report.skipped_for_bugs = True
            logger.warning(
                "Skipping upgrade; review the bugs above or pass --force-upgrade. "
                "Building from the existing (non-upgraded) chroot."
            )
            return StepResult(
                "upgrade",
                True,
                "upgrade skipped: serious bugs reported",
                code="skipped_serious_bugs",
                details={"packages": packages},
            )
        logger.warning("Force upgrade set; upgrading despite known bugs")
    elif bug_report is not None:
        logger.info("No critical/grave/serious bugs found")

    logger.info("%d package(s) upgradable, running dist-upgrade", len(packages))
    try:
        apt.dist_upgrade()
        apt.autoremove()
    except ChrootCommandError as e:
        logger.error("Package upgrade failed: %s", e)
        return StepResult("upgrade", False, str(e), code=e.code)

    report.upgraded = True
    return StepResult(
        "upgrade",
        True,
        f"upgraded {len(packages)} package(s)",
        details={"packages": packages},
    )


def check_freshness(
    ctx: BuildContext,
    apt: AptClient | None = None,
    bugs: ListBugs | None = None,
    host: CommandRunner | None = None,
) -> FreshnessReport:
    """Bring a reused chroot up to date.

    Args:
        ctx: Build context.
        apt: Package manager client (default: one for ctx.chroot_dir).
        bugs: Bug oracle (default: apt-listbugs in the chroot).
        host: Runner for host commands (mount/umount).

    Returns:
        FreshnessReport describing each step.
    """
    report = FreshnessReport()
    chroot_dir = ctx.chroot_dir
    if not chroot_dir.is_dir():
        return report

    if apt is None:
        apt = AptClient(
            ChrootRunner(chroot_dir, timeout=ctx.command_timeout, log_path=ctx.log_path)
        )
    if bugs is None:
        bugs = ListBugs(apt.runner, chroot_dir)
    if host is None:
        host = CommandRunner(timeout=ctx.command_timeout)

    copy_resolv_conf(chroot_dir)

    with ExitStack() as stack:
        # apt-listbugs needs /proc inside the chroot
        proc_ready = True
        try:
            stack.enter_context(proc_mounted(chroot_dir, host))
        except ChrootCommandError as e:
            logger.warning("Could not mount proc in chroot: %s", e)
            report.steps.append(StepResult("mount", False, str(e), code=e.code))
            proc_ready = False

        refresh = _refresh_metadata(ctx, apt)
        report.steps.append(refresh)
        if not refresh.success:
            return report

        report.steps.append(_upgrade_kernel(ctx, apt, report))
        if proc_ready:
            report.steps.append(_upgrade_packages(ctx, apt, bugs, report))
        else:
            logger.warning("Skipping bug check and package upgrade without /proc")

    return report


__all__ = [
    "FreshnessReport",
    "apt_lists_age_hours",
    "check_freshness",
]
