"""Tests for builds/layout.py and builds/selection.py modules."""

import os
from pathlib import Path

import pytest

from sky1_imagegen.builds.layout import (
    LayoutError,
    discard_chroot,
    finalize_chroot,
    link_chroot,
    setup_chroot_link,
)
from sky1_imagegen.builds.selection import (
    DESKTOP_HOOK_TARGET,
    SelectionError,
    apply_desktop_choice,
    apply_loadout,
    preview_pkglist_hash,
    validate_selection,
    write_track_config,
)
from sky1_imagegen.chroot.mounts import mounts_below
from sky1_imagegen.chroot.pkglist import compute_active_pkglist_hash
from sky1_imagegen.context import BuildContext
from sky1_imagegen.types import Desktop, Loadout, Track


@pytest.fixture
def ctx(build_tree: Path) -> BuildContext:
    return BuildContext(build_dir=build_tree, desktop=Desktop.GNOME, date="20260101")


class TestChrootLink:
    """Tests for the chroot symlink layout."""

    def test_link_points_at_desktop_chroot(self, ctx: BuildContext):
        ctx.chroot_dir.mkdir()

        link_chroot(ctx)

        assert ctx.chroot_link.is_symlink()
        assert os.readlink(ctx.chroot_link) == "desktop-choice/gnome/chroot"
        assert ctx.chroot_link.resolve() == ctx.chroot_dir.resolve()

    def test_no_link_without_chroot(self, ctx: BuildContext):
        link_chroot(ctx)
        assert not ctx.chroot_link.exists()
        assert not ctx.chroot_link.is_symlink()

    def test_setup_replaces_link_of_other_desktop(self, ctx: BuildContext):
        kde_chroot = ctx.build_dir / "desktop-choice" / "kde" / "chroot"
        kde_chroot.mkdir()
        ctx.chroot_link.symlink_to(kde_chroot)
        ctx.chroot_dir.mkdir()

        setup_chroot_link(ctx)

        assert ctx.chroot_link.resolve() == ctx.chroot_dir.resolve()
        assert kde_chroot.is_dir()

    def test_setup_recovers_orphaned_directory(self, ctx: BuildContext):
        ctx.chroot_link.mkdir()
        (ctx.chroot_link / "marker").write_text("x")

        setup_chroot_link(ctx)

        assert (ctx.chroot_dir / "marker").read_text() == "x"
        assert ctx.chroot_link.is_symlink()

    def test_setup_removes_stale_directory(self, ctx: BuildContext):
        ctx.chroot_dir.mkdir()
        (ctx.chroot_dir / "keep").write_text("x")
        ctx.chroot_link.mkdir()
        (ctx.chroot_link / "stale").write_text("x")

        setup_chroot_link(ctx)

        assert (ctx.chroot_dir / "keep").exists()
        assert not (ctx.chroot_dir / "stale").exists()
        assert ctx.chroot_link.is_symlink()

    def test_finalize_moves_new_chroot(self, ctx: BuildContext):
        ctx.chroot_link.mkdir()
        (ctx.chroot_link / "etc").mkdir()

        finalize_chroot(ctx)

        assert (ctx.chroot_dir / "etc").is_dir()
        assert ctx.chroot_link.is_symlink()

    def test_discard_removes_chroot_and_link(self, ctx: BuildContext):
        ctx.chroot_dir.mkdir()
        link_chroot(ctx)

        assert discard_chroot(ctx) is True

        assert not ctx.chroot_dir.exists()
        assert not ctx.chroot_link.is_symlink()

    def test_discard_nothing(self, ctx: BuildContext):
        assert discard_chroot(ctx) is False

    def test_discard_refuses_mounted_proc(self, ctx: BuildContext):
        (ctx.chroot_dir / "proc" / "1").mkdir(parents=True)

        with pytest.raises(LayoutError) as exc_info:
            discard_chroot(ctx)

        assert exc_info.value.code == "chroot_mounted"
        assert ctx.chroot_dir.is_dir()

    def test_discard_refuses_bind_mounted_dev(
        self, ctx: BuildContext, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ):
        """A chroot left with /dev bind-mounted by an interrupted stage stays."""
        (ctx.chroot_dir / "dev").mkdir(parents=True)
        dev = os.path.realpath(ctx.chroot_dir / "dev")
        mounts = tmp_path / "mounts"
        mounts.write_text(
            "proc /proc proc rw,nosuid 0 0\n"
            f"udev {dev} devtmpfs rw,nosuid 0 0\n"
        )
        monkeypatch.setattr("sky1_imagegen.chroot.mounts.PROC_MOUNTS", mounts)

        with pytest.raises(LayoutError) as exc_info:
            discard_chroot(ctx)

        assert exc_info.value.code == "chroot_mounted"
        assert dev in str(exc_info.value)
        assert (ctx.chroot_dir / "dev").is_dir()


class TestSelection:
    """Tests for desktop, loadout and track selection."""

    def test_validate_selection(self, ctx: BuildContext):
        validate_selection(ctx)

    def test_missing_desktop(self, ctx: BuildContext):
        ctx.desktop = Desktop.XFCE

        with pytest.raises(SelectionError) as exc_info:
            validate_selection(ctx)

        assert exc_info.value.code == "desktop_not_found"

    def test_missing_loadout(self, ctx: BuildContext):
        ctx.loadout = Loadout.SERVER

        with pytest.raises(SelectionError) as exc_info:
            validate_selection(ctx)

        assert exc_info.value.code == "loadout_not_found"

    def test_write_track_config(self, ctx: BuildContext):
        ctx.track = Track.LATEST
        ctx.apt_url = "https://example.test/apt"

        sources, package_list = write_track_config(ctx)

        assert sources.read_text() == (
            "deb https://example.test/apt sid main latest non-free-firmware\n"
        )
        assert "linux-image-sky1-latest" in package_list.read_text().splitlines()

    def test_apply_desktop_choice(self, ctx: BuildContext):
        desktop_dir = ctx.desktop_dir
        hook = desktop_dir / "hooks" / "live" / "0450-gnome-config.hook.chroot"
        hook.parent.mkdir(parents=True)
        hook.write_text("#!/bin/sh\n")
        hook.chmod(0o755)
        include = desktop_dir / "includes.chroot" / "etc" / "motd"
        include.parent.mkdir(parents=True)
        include.write_text("welcome\n")

        written = apply_desktop_choice(ctx)

        assert len(written) == 3
        assert (ctx.package_lists_dir / "desktop.list.chroot").read_text() == (
            "gnome-core\n"
        )
        copied_hook = ctx.config_dir / "hooks" / "live" / DESKTOP_HOOK_TARGET
        assert os.access(copied_hook, os.X_OK)
        assert (ctx.config_dir / "includes.chroot" / "etc" / "motd").exists()

    def test_apply_desktop_without_hook(self, ctx: BuildContext):
        ctx.desktop = Desktop.NONE

        assert apply_desktop_choice(ctx) == []

    def test_apply_loadout(self, ctx: BuildContext):
        dest = apply_loadout(ctx)

        assert dest == ctx.package_lists_dir / "loadout.list.chroot"
        assert dest.read_text() == "vim\ngit\n"

    def test_preview_hash_matches_applied_lists(self, ctx: BuildContext):
        ctx.track = Track.RC
        (ctx.package_lists_dir / "desktop.list.chroot").write_text("kde-standard\n")
        lists_before = sorted(p.name for p in ctx.package_lists_dir.iterdir())

        preview = preview_pkglist_hash(ctx)

        assert sorted(p.name for p in ctx.package_lists_dir.iterdir()) == lists_before
        write_track_config(ctx)
        apply_desktop_choice(ctx)
        apply_loadout(ctx)
        assert preview == compute_active_pkglist_hash(
            ctx.package_lists_dir, ctx.desktop
        )

    def test_preview_hash_depends_on_track(self, ctx: BuildContext):
        main = preview_pkglist_hash(ctx)
        ctx.track = Track.NEXT
        assert preview_pkglist_hash(ctx) != main


class TestMountsBelow:
    """Tests for finding filesystems mounted inside a directory."""

    @pytest.fixture
    def mount_table(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
        path = tmp_path / "mounts"
        path.write_text("")
        monkeypatch.setattr("sky1_imagegen.chroot.mounts.PROC_MOUNTS", path)
        return path

    def test_nothing_mounted(self, tmp_path: Path, mount_table: Path):
        chroot = tmp_path / "chroot"
        chroot.mkdir()

        assert mounts_below(chroot) == []

    def test_finds_nested_and_escaped_mount_points(
        self, tmp_path: Path, mount_table: Path
    ):
        chroot = tmp_path / "chroot"
        chroot.mkdir()
        root = os.path.realpath(chroot)
        escaped = f"{root}/srv/my\\040data"
        mount_table.write_text(
            f"devpts {root}/dev/pts devpts rw 0 0\n"
            f"/dev/sda1 {escaped} ext4 rw 0 0\n"
            f"tmpfs {root}-other tmpfs rw 0 0\n"
        )

        assert mounts_below(chroot) == [
            Path(f"{root}/dev/pts"),
            Path(f"{root}/srv/my data"),
        ]

    def test_unreadable_mount_table(self, tmp_path: Path, mount_table: Path):
        mount_table.unlink()

        assert mounts_below(tmp_path) == []
