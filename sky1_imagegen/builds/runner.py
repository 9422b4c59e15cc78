"""Live-build stage runner.

This module handles:
- Composing live-build (`lb`) and disk image script commands
- Executing stages with stdout/stderr appended to build.log
- Enforcing stage timeouts
- Locating and renaming the produced ISO
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from sky1_imagegen.context import BuildContext

logger = logging.getLogger(__name__)

IMAGE_SCRIPT = "scripts/build-image.sh"
ISO_GLOB = "sky1-linux-*.iso"


class BuildStageError(Exception):
    """Raised when a build stage cannot be executed."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        code: str = "stage_error",
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.code = code


@dataclass
class StageResult:
    """Result of a build stage execution.

    Attributes:
        success: Whether the stage succeeded.
        exit_code: Process exit code.
        log_path: Path to the build log file.
        started_at: Stage start time.
        finished_at: Stage finish time.
        command: The command that was executed.
        error_message: Error message if the stage failed.
    """

    success: bool
    exit_code: int
    log_path: Path
    started_at: datetime
    finished_at: datetime
    command: str
    error_message: str | None = None


def compose_lb_command(stage: str, *args: str) -> list[str]:
    """Compose a live-build command, e.g. ["lb", "bootstrap"]."""
    return ["lb", stage, *args]


def compose_image_command(ctx: BuildContext) -> list[str]:
    """Compose the disk image script command for a build context."""
    return [
        f"./{IMAGE_SCRIPT}",
        ctx.desktop.value,
        ctx.loadout.value,
        ctx.track.value,
    ]


def image_env(ctx: BuildContext) -> dict[str, str]:
    """Environment overrides for the disk image script."""
    return {"SKIP_COMPRESS": "1" if ctx.skip_compress else ""}


def run_stage(
    cmd: list[str],
    build_dir: Path,
    log_path: Path,
    timeout: int | None = None,
    env_override: dict[str, str] | None = None,
    truncate_log: bool = False,
) -> StageResult:
    """Execute a build stage command.

    Args:
        cmd: Command to run.
        build_dir: Working directory (live-build tree root).
        log_path: Build log; output is appended (or the log is restarted).
        timeout: Stage timeout in seconds (None = no timeout).
        env_override: Optional environment variable overrides.
        truncate_log: Start a new log instead of appending.

    Returns:
        StageResult with execution details.

    Raises:
        BuildStageError: If the stage times out or fails to start.
    """
    cmd_str = shlex.join(cmd)
    logger.info("Executing stage: %s", cmd_str)

    started_at = datetime.now(timezone.utc)
    error_message: str | None = None
    mode = "w" if truncate_log else "a"

    try:
        with log_path.open(mode) as log_file:
            log_file.write(f"# Command: {cmd_str}\n")
            log_file.write(f"# Started: {started_at.isoformat()}\n")
            log_file.write(f"# CWD: {build_dir}\n")
            log_file.write("# " + "=" * 70 + "\n\n")
            log_file.flush()

            env: dict[str, str] | None = None
            if env_override:
                env = dict(os.environ)
                env.update(env_override)

            result = subprocess.run(
                cmd,
                cwd=build_dir,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                timeout=timeout,
                env=env,
                check=False,
            )

            exit_code = result.returncode
            success = exit_code == 0

            if not success:
                error_message = f"{cmd_str} failed with exit code {exit_code}"
                logger.error("%s. See log: %s", error_message, log_path)

    except subprocess.TimeoutExpired as e:
        error_message = f"{cmd_str} timed out after {timeout} seconds"
        logger.error("%s. See log: %s", error_message, log_path)

        with log_path.open("a") as log_file:
            log_file.write(f"\n# TIMEOUT after {timeout} seconds\n")

        raise BuildStageError(
            error_message,
            exit_code=-1,
            code="stage_timeout",
        ) from e

    except OSError as e:
        error_message = f"Failed to execute {cmd_str}: {e}"
        logger.error(error_message)
        raise BuildStageError(
            error_message,
            exit_code=None,
            code="execution_error",
        ) from e

    finished_at = datetime.now(timezone.utc)

    with log_path.open("a") as log_file:
        log_file.write(f"\n# Finished: {finished_at.isoformat()}\n")
        log_file.write(f"# Exit code: {exit_code}\n")
        duration = (finished_at - started_at).total_seconds()
        log_file.write(f"# Duration: {duration:.1f}s\n\n")

    return StageResult(
        success=success,
        exit_code=exit_code,
        log_path=log_path,
        started_at=started_at,
        finished_at=finished_at,
        command=cmd_str,
        error_message=error_message,
    )


def purge_live_build(build_dir: Path, log_path: Path) -> bool:
    """Run `lb clean --purge`, ignoring failures.

    Returns:
        True if the purge succeeded.
    """
    try:
        result = run_stage(compose_lb_command("clean", "--purge"), build_dir, log_path)
    except BuildStageError as e:
        logger.warning("lb clean --purge failed: %s", e)
        return False
    return result.success


def find_iso_output(build_dir: Path, output_name: str) -> Path | None:
    """Find the ISO produced by `lb binary`, ignoring already-named outputs."""
    candidates = sorted(
        path
        for path in build_dir.glob(ISO_GLOB)
        if path.is_file() and not path.name.startswith(output_name)
    )
    return candidates[0] if candidates else None


def rename_iso_output(build_dir: Path, output_name: str) -> Path | None:
    """Rename the freshly produced ISO to <output_name>.iso.

    Returns:
        Path of the renamed ISO, or None if no ISO was found.
    """
    iso = find_iso_output(build_dir, output_name)
    if iso is None:
        logger.warning("Expected ISO file not found in %s", build_dir)
        return None
    target = build_dir / f"{output_name}.iso"
    iso.replace(target)
    return target


__all__ = [
    "IMAGE_SCRIPT",
    "BuildStageError",
    "StageResult",
    "compose_image_command",
    "compose_lb_command",
    "find_iso_output",
    "image_env",
    "purge_live_build",
    "rename_iso_output",
    "run_stage",
]
