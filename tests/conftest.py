"""Shared fixtures and fakes for chroot and build tests.

The fakes record every call so tests can assert on what would have been
run inside the chroot without executing apt, mount or live-build.
"""

import stat
from pathlib import Path

import pytest

from sky1_imagegen.chroot.apt import INSTALLED_STATUS, AptClient
from sky1_imagegen.chroot.runner import (
    ChrootCommandError,
    CommandResult,
    CommandRunner,
)
from sky1_imagegen.chroot.tools import BugReport, ListBugs
from sky1_imagegen.context import BuildContext
from sky1_imagegen.types import Desktop


class FakeRunner(CommandRunner):
    """Runner that replays canned results keyed by command prefix."""

    def __init__(self, responses: dict[tuple[str, ...], CommandResult] | None = None):
        super().__init__()
        self.responses = responses or {}
        self.calls: list[list[str]] = []
        self.uncaptured: list[list[str]] = []

    def run(self, args, *, check=True, capture=True, timeout=None):
        self.calls.append(list(args))
        if not capture:
            self.uncaptured.append(list(args))

        result = CommandResult(args=list(args), exit_code=0)
        for prefix, canned in self.responses.items():
            if tuple(args[: len(prefix)]) == prefix:
                result = CommandResult(
                    args=list(args),
                    exit_code=canned.exit_code,
                    stdout=canned.stdout,
                    stderr=canned.stderr,
                )
                break

        if check and not result.success:
            raise ChrootCommandError(
                f"{' '.join(args)} failed with exit code {result.exit_code}",
                exit_code=result.exit_code,
                code="command_failed",
            )
        return result


class FakeApt(AptClient):
    """In-memory package manager."""

    def __init__(
        self,
        installed: dict[str, str] | None = None,
        candidates: dict[str, str] | None = None,
        upgradable: list[str] | None = None,
        fail_update: bool = False,
        fail_upgradable: bool = False,
    ):
        super().__init__(FakeRunner())
        self.installed = dict(installed or {})
        self.candidates = dict(candidates or {})
        self.upgradable = list(upgradable or [])
        self.fail_update = fail_update
        self.fail_upgradable = fail_upgradable
        self.calls: list[tuple] = []

    def update(self):
        self.calls.append(("update",))
        if self.fail_update:
            raise ChrootCommandError(
                "apt-get update -qq failed with exit code 100",
                exit_code=100,
                code="command_failed",
            )

    def query(self, package):
        if package in self.installed:
            return INSTALLED_STATUS, self.installed[package]
        return "", None

    def candidate_version(self, package):
        return self.candidates.get(package, self.installed.get(package))

    def list_upgradable(self):
        if self.fail_upgradable:
            raise ChrootCommandError(
                "apt list --upgradable failed with exit code 100",
                exit_code=100,
                code="command_failed",
            )
        return list(self.upgradable)

    def install(self, packages):
        self.calls.append(("install", list(packages)))
        for package in packages:
            self.installed[package] = self.candidates.get(package, "1.0")

    def remove(self, packages):
        self.calls.append(("remove", list(packages)))
        for package in packages:
            self.installed.pop(package, None)

    def dist_upgrade(self, force_listbugs=True):
        self.calls.append(("dist_upgrade",))
        self.upgradable = []

    def autoremove(self):
        self.calls.append(("autoremove",))

    def called(self, name: str) -> bool:
        return any(call[0] == name for call in self.calls)


class FakeBugs(ListBugs):
    """Bug oracle with a fixed answer."""

    def __init__(self, has_bugs: bool = False, is_available: bool = True):
        super().__init__(FakeRunner(), Path("/nonexistent"))
        self.has_bugs = has_bugs
        self.is_available = is_available
        self.checked: list[list[str]] = []

    def available(self):
        return self.is_available

    def check(self, packages, severities=("critical", "grave", "serious")):
        self.checked.append(list(packages))
        text = "#123456 - libfoo: data loss" if self.has_bugs else "No bugs found"
        return BugReport(packages=list(packages), has_bugs=self.has_bugs, text=text)


def make_complete_chroot(chroot_dir: Path) -> Path:
    """Create the structural markers of a finished base install."""
    apt_get = chroot_dir / "usr" / "bin" / "apt-get"
    apt_get.parent.mkdir(parents=True, exist_ok=True)
    apt_get.write_text("#!/bin/sh\n")
    apt_get.chmod(apt_get.stat().st_mode | stat.S_IXUSR)
    (chroot_dir / "etc" / "apt").mkdir(parents=True, exist_ok=True)
    return chroot_dir


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def build_tree(tmp_path: Path) -> Path:
    """Create a minimal live-build tree with desktops and loadouts."""
    package_lists = tmp_path / "config" / "package-lists"
    package_lists.mkdir(parents=True)
    (package_lists / "base.list.chroot").write_text("sudo\nnetwork-manager\n")
    (package_lists / "kde-extras.list.chroot").write_text("# @for: kde\nkate\n")
    (package_lists / "gui.list.chroot").write_text("# @for: desktop\nfirefox-esr\n")
    (tmp_path / "config" / "archives").mkdir(parents=True)

    for desktop, package in (("gnome", "gnome-core"), ("kde", "kde-plasma-desktop")):
        lists = tmp_path / "desktop-choice" / desktop / "package-lists"
        lists.mkdir(parents=True)
        (lists / "desktop.list.chroot").write_text(f"{package}\n")

    none_lists = tmp_path / "desktop-choice" / "none" / "package-lists"
    none_lists.mkdir(parents=True)

    loadout = tmp_path / "package-loadouts" / "desktop" / "package-lists"
    loadout.mkdir(parents=True)
    (loadout / "loadout.list.chroot").write_text("vim\ngit\n")
    return tmp_path


@pytest.fixture
def gnome_ctx(tmp_path: Path) -> BuildContext:
    """Context for a GNOME build rooted at tmp_path, with an existing chroot."""
    ctx = BuildContext(build_dir=tmp_path, desktop=Desktop.GNOME, date="20260101")
    ctx.chroot_dir.mkdir(parents=True)
    return ctx
