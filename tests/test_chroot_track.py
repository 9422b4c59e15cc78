"""Tests for chroot/track.py module."""

from unittest.mock import patch

import pytest

from sky1_imagegen.chroot.state import load_state
from sky1_imagegen.chroot.track import (
    FOREIGN_KERNEL_HOOKS,
    SOURCES_LIST_PATH,
    TRUSTED_KEY_PATH,
    ensure_track,
    foreign_meta_packages,
    install_meta_packages,
    kernel_meta_package,
    record_track_state,
    render_apt_sources,
    render_kernel_package_list,
    track_meta_packages,
)
from sky1_imagegen.context import BuildContext
from sky1_imagegen.types import Track

from .conftest import FakeApt


@pytest.fixture(autouse=True)
def no_host_resolv_conf():
    """Keep tests from reading the host resolver configuration."""
    with patch("sky1_imagegen.chroot.track.copy_resolv_conf") as mock_copy:
        mock_copy.return_value = True
        yield mock_copy


class TestTrackPackages:
    """Tests for track to metapackage mapping."""

    def test_main_track_has_no_suffix(self):
        assert kernel_meta_package(Track.MAIN) == "linux-image-sky1"
        assert install_meta_packages(Track.MAIN) == [
            "linux-image-sky1",
            "linux-headers-sky1",
        ]

    def test_other_tracks_use_suffix(self):
        assert kernel_meta_package(Track.RC) == "linux-image-sky1-rc"
        assert track_meta_packages(Track.NEXT) == [
            "linux-image-sky1-next",
            "linux-headers-sky1-next",
            "linux-sky1-next",
        ]

    def test_foreign_packages_exclude_requested_track(self):
        foreign = foreign_meta_packages(Track.LATEST)

        assert "linux-image-sky1" in foreign
        assert "linux-sky1" in foreign
        assert "linux-headers-sky1-rc" in foreign
        assert "linux-image-sky1-next" in foreign
        assert not any(pkg.endswith("-latest") for pkg in foreign)

    def test_foreign_packages_for_main(self):
        foreign = foreign_meta_packages(Track.MAIN)

        assert "linux-image-sky1" not in foreign
        assert "linux-headers-sky1" not in foreign
        assert len(foreign) == 9

    def test_render_apt_sources_main(self):
        assert render_apt_sources(Track.MAIN, "https://example.test/apt") == (
            "deb https://example.test/apt sid main non-free-firmware\n"
        )

    def test_render_apt_sources_rc(self):
        assert render_apt_sources(Track.RC, "https://example.test/apt", "trixie") == (
            "deb https://example.test/apt trixie main rc non-free-firmware\n"
        )

    def test_render_kernel_package_list(self):
        content = render_kernel_package_list(Track.NEXT)

        lines = [
            line
            for line in content.splitlines()
            if line and not line.startswith("#")
        ]
        assert lines == [
            "linux-image-sky1-next",
            "linux-headers-sky1-next",
            "sky1-firmware",
        ]
        assert "# Track: next" in content


class TestEnsureTrack:
    """Tests for ensure_track function."""

    def test_fast_path_changes_nothing(self, gnome_ctx: BuildContext):
        apt = FakeApt(installed={"linux-image-sky1": "6.12.8-1"})

        result = ensure_track(gnome_ctx, apt)

        assert result.switched is False
        assert apt.calls == []
        assert apt.runner.calls == []
        assert not (gnome_ctx.chroot_dir / SOURCES_LIST_PATH).exists()

    def test_switches_main_to_rc(self, gnome_ctx: BuildContext):
        gnome_ctx.track = Track.RC
        gnome_ctx.archives_dir.mkdir(parents=True)
        (gnome_ctx.archives_dir / "sky1.key.chroot").write_text("KEY\n")
        for hook in FOREIGN_KERNEL_HOOKS:
            path = gnome_ctx.chroot_dir / hook
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text("#!/bin/sh\nexit 1\n")
        apt = FakeApt(
            installed={
                "linux-image-sky1": "6.12.8-1",
                "linux-headers-sky1": "6.12.8-1",
            },
            candidates={"linux-image-sky1-rc": "6.19~rc3-1"},
        )

        result = ensure_track(gnome_ctx, apt)

        assert result.switched is True
        assert result.removed == ["linux-image-sky1", "linux-headers-sky1"]
        assert result.installed == ["linux-image-sky1-rc", "linux-headers-sky1-rc"]
        assert [call[0] for call in apt.calls] == [
            "update",
            "remove",
            "install",
            "autoremove",
        ]
        assert apt.runner.uncaptured == [["update-initramfs", "-u", "-k", "all"]]

        sources = (gnome_ctx.chroot_dir / SOURCES_LIST_PATH).read_text()
        assert "main rc non-free-firmware" in sources
        assert (gnome_ctx.chroot_dir / TRUSTED_KEY_PATH).read_text() == "KEY\n"
        for hook in FOREIGN_KERNEL_HOOKS:
            assert not (gnome_ctx.chroot_dir / hook).exists()

    def test_switch_without_old_packages(self, gnome_ctx: BuildContext):
        gnome_ctx.track = Track.LATEST
        apt = FakeApt()

        result = ensure_track(gnome_ctx, apt)

        assert result.removed == []
        assert not apt.called("remove")
        assert apt.installed["linux-image-sky1-latest"] == "1.0"

    def test_second_call_takes_fast_path(self, gnome_ctx: BuildContext):
        gnome_ctx.track = Track.NEXT
        apt = FakeApt(installed={"linux-image-sky1": "6.12.8-1"})
        ensure_track(gnome_ctx, apt)
        apt.calls.clear()

        result = ensure_track(gnome_ctx, apt)

        assert result.switched is False
        assert apt.calls == []


class TestRecordTrackState:
    """Tests for record_track_state function."""

    def test_records_track_and_kernel(self, gnome_ctx: BuildContext):
        gnome_ctx.track = Track.RC
        apt = FakeApt(installed={"linux-image-sky1-rc": "6.19~rc3-1"})

        version = record_track_state(gnome_ctx, apt)

        assert version == "6.19~rc3-1"
        state = load_state(gnome_ctx.chroot_dir)
        assert state.track == "rc"
        assert state.kernel_meta_package == "linux-image-sky1-rc"
        assert state.kernel_version == "6.19~rc3-1"
        assert state.stage_track_switch_at is not None

    def test_unknown_kernel_version_is_not_recorded(self, gnome_ctx: BuildContext):
        version = record_track_state(gnome_ctx, FakeApt())

        assert version is None
        state = load_state(gnome_ctx.chroot_dir)
        assert state.track == "main"
        assert state.kernel_version is None
