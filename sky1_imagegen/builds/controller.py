"""Build controller.

This module provides the high-level build API:
- run_build(): validate the chroot, remediate, build, record state
- Fresh chroot creation through `lb bootstrap` and `lb chroot`
- ISO and disk image output stages

Sequence of a run:
1. Write track config, apply desktop and loadout selections
2. Validate the chroot and log the decision
3. force_clean: discard the chroot; use_existing: freshness check
4. Build a fresh chroot if none exists, recording each stage
5. Ensure the kernel track and record it
6. Produce the ISO or disk image
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from sky1_imagegen.builds.layout import (
    LayoutError,
    discard_chroot,
    finalize_chroot,
    link_chroot,
    setup_chroot_link,
)
from sky1_imagegen.builds.runner import (
    BuildStageError,
    compose_image_command,
    compose_lb_command,
    image_env,
    purge_live_build,
    rename_iso_output,
    run_stage,
)
from sky1_imagegen.builds.selection import (
    SelectionError,
    apply_desktop_choice,
    apply_loadout,
    validate_selection,
    write_track_config,
)
from sky1_imagegen.chroot.apt import AptClient
from sky1_imagegen.chroot.freshness import FreshnessReport, check_freshness
from sky1_imagegen.chroot.pkglist import (
    PackageListError,
    compute_active_pkglist_hash,
    filtered_package_lists,
)
from sky1_imagegen.chroot.runner import (
    ChrootCommandError,
    ChrootRunner,
    CommandRunner,
)
from sky1_imagegen.chroot.state import (
    Stage,
    StateField,
    StateFileError,
    record_stage_complete,
    write_state_field,
)
from sky1_imagegen.chroot.tools import ListBugs
from sky1_imagegen.chroot.track import (
    TrackSwitchResult,
    ensure_track,
    record_track_state,
)
from sky1_imagegen.chroot.validator import ChrootDecision, decide
from sky1_imagegen.context import BuildContext
from sky1_imagegen.types import ChrootAction, OutputFormat

logger = logging.getLogger(__name__)


class BuildError(Exception):
    """Raised when a build run cannot complete."""

    def __init__(self, message: str, code: str = "build_error") -> None:
        super().__init__(message)
        self.code = code


@dataclass
class BuildOutcome:
    """Result of a build run.

    Attributes:
        decision: Validator decision taken at the start of the run.
        built_fresh: Whether a new chroot was bootstrapped.
        freshness: Freshness report when the chroot was reused.
        track_switch: Result of the kernel track reconciliation.
        kernel_version: Installed kernel metapackage version.
        output_path: Produced ISO, or None for disk images / missing ISO.
    """

    decision: ChrootDecision
    built_fresh: bool = False
    freshness: FreshnessReport | None = None
    track_switch: TrackSwitchResult | None = None
    kernel_version: str | None = None
    output_path: Path | None = None

    def to_dict(self) -> dict[str, object]:
        data: dict[str, object] = {
            "decision": self.decision.to_dict(),
            "built_fresh": self.built_fresh,
            "kernel_version": self.kernel_version,
            "output_path": str(self.output_path) if self.output_path else None,
        }
        if self.freshness is not None:
            data["freshness"] = {
                "steps": [
                    {"name": s.name, "success": s.success, "message": s.message}
                    for s in self.freshness.steps
                ],
                "kernel_upgrade": (
                    list(self.freshness.kernel_upgrade)
                    if self.freshness.kernel_upgrade
                    else None
                ),
                "upgraded": self.freshness.upgraded,
                "skipped_for_bugs": self.freshness.skipped_for_bugs,
            }
        if self.track_switch is not None:
            data["track_switch"] = {
                "track": self.track_switch.track.value,
                "switched": self.track_switch.switched,
                "removed": self.track_switch.removed,
                "installed": self.track_switch.installed,
            }
        return data


def _check_stage(
    ctx: BuildContext,
    cmd: list[str],
    truncate_log: bool = False,
    env_override: dict[str, str] | None = None,
) -> None:
    result = run_stage(
        cmd,
        ctx.build_dir,
        ctx.log_path,
        timeout=ctx.stage_timeout,
        env_override=env_override,
        truncate_log=truncate_log,
    )
    if not result.success:
        raise BuildError(
            result.error_message or f"{result.command} failed",
            code="stage_failed",
        )


def remediate_chroot(ctx: BuildContext, reason: str) -> None:
    """Discard the chroot and purge live-build state before a rebuild."""
    logger.warning(
        "Incomplete or corrupt chroot detected (%s); forcing clean rebuild", reason
    )
    discard_chroot(ctx)
    purge_live_build(ctx.build_dir, ctx.log_path)


def bootstrap_chroot(ctx: BuildContext, pkglist_hash: str) -> None:
    """Create a new chroot with `lb bootstrap` and `lb chroot`.

    Stage completion is recorded right after each stage so an interrupted
    run is detected by the validator next time.
    """
    logger.info("No chroot found for %s. Building chroot...", ctx.desktop.value)
    work_dir = ctx.chroot_link

    _check_stage(ctx, compose_lb_command("bootstrap"), truncate_log=True)
    record_stage_complete(work_dir, Stage.BOOTSTRAP)
    write_state_field(work_dir, StateField.OWNER_DESKTOP, ctx.desktop.value)

    _check_stage(ctx, compose_lb_command("chroot"))
    record_stage_complete(work_dir, Stage.CHROOT)
    write_state_field(work_dir, StateField.PKGLIST_HASH, pkglist_hash)

    finalize_chroot(ctx)


def build_output(ctx: BuildContext) -> Path | None:
    """Produce the ISO or disk image from the prepared chroot."""
    if ctx.output_format == OutputFormat.ISO:
        logger.info("Building ISO from chroot...")
        _check_stage(ctx, compose_lb_command("binary"))
        output = rename_iso_output(ctx.build_dir, ctx.output_name)
        if output is not None:
            logger.info("Build complete: %s", output)
        return output

    logger.info("Building disk image...")
    _check_stage(ctx, compose_image_command(ctx), env_override=image_env(ctx))
    return None


def _run(
    ctx: BuildContext,
    apt: AptClient | None,
    bugs: ListBugs | None,
    host: CommandRunner | None,
) -> BuildOutcome:
    logger.info(
        "Building Sky1 Linux: desktop=%s loadout=%s format=%s track=%s output=%s",
        ctx.desktop.value,
        ctx.loadout.value,
        ctx.output_format.value,
        ctx.track.value,
        ctx.output_name,
    )

    validate_selection(ctx)
    write_track_config(ctx)

    if ctx.clean:
        logger.info(
            "Cleaning previous build for %s (track: %s)",
            ctx.desktop.value,
            ctx.track.value,
        )
        discard_chroot(ctx)
        purge_live_build(ctx.build_dir, ctx.log_path)

    apply_desktop_choice(ctx)
    apply_loadout(ctx)
    setup_chroot_link(ctx)

    pkglist_hash = compute_active_pkglist_hash(ctx.package_lists_dir, ctx.desktop)
    decision = decide(ctx.chroot_dir, ctx.desktop, pkglist_hash)
    logger.info("Chroot: %s (%s)", decision.action.value, decision.reason)
    outcome = BuildOutcome(decision=decision)

    if decision.action == ChrootAction.FORCE_CLEAN:
        remediate_chroot(ctx, decision.reason)
    elif decision.action == ChrootAction.USE_EXISTING:
        outcome.freshness = check_freshness(ctx, apt=apt, bugs=bugs, host=host)

    with filtered_package_lists(ctx.package_lists_dir, ctx.desktop):
        if not ctx.chroot_dir.is_dir() and not ctx.chroot_link.exists():
            bootstrap_chroot(ctx, pkglist_hash)
            outcome.built_fresh = True
        link_chroot(ctx)

        if apt is None:
            apt = AptClient(
                ChrootRunner(
                    ctx.chroot_dir, timeout=ctx.command_timeout, log_path=ctx.log_path
                )
            )
        outcome.track_switch = ensure_track(ctx, apt)
        outcome.kernel_version = record_track_state(ctx, apt)

        outcome.output_path = build_output(ctx)

    logger.info("Build finished")
    return outcome


def run_build(
    ctx: BuildContext,
    apt: AptClient | None = None,
    bugs: ListBugs | None = None,
    host: CommandRunner | None = None,
) -> BuildOutcome:
    """Run a complete build for a context.

    Args:
        ctx: Build context.
        apt: Package manager client for the chroot (default: real apt).
        bugs: Bug oracle (default: apt-listbugs in the chroot).
        host: Runner for host commands (default: real commands).

    Returns:
        BuildOutcome describing what was done.

    Raises:
        BuildError: On the first unrecoverable failure.
    """
    try:
        return _run(ctx, apt, bugs, host)
    except BuildError:
        raise
    except (
        BuildStageError,
        ChrootCommandError,
        LayoutError,
        PackageListError,
        SelectionError,
        StateFileError,
    ) as e:
        logger.error("Build failed: %s", e)
        raise BuildError(str(e), code=e.code) from e
    except OSError as e:
        logger.error("Build failed: %s", e)
        raise BuildError(str(e), code="io_error") from e


__all__ = [
    "BuildError",
    "BuildOutcome",
    "bootstrap_chroot",
    "build_output",
    "remediate_chroot",
    "run_build",
]
