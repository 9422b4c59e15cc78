"""Command runners for chroot and host operations.

This module handles:
- Running commands inside a chroot via chroot(8)
- Running commands on the host (mount, umount)
- Capturing output for parsers, or appending it to the build log
- Enforcing command timeouts

All package-manager and mount operations go through a runner so tests can
substitute a fake that replays fixture output.
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

# Keep apt and debconf from prompting inside the chroot
CHROOT_ENV = {
    "DEBIAN_FRONTEND": "noninteractive",
    "LC_ALL": "C",
}


class ChrootCommandError(Exception):
    """Raised when a chroot or host command fails."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        code: str = "command_error",
        output: str = "",
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.code = code
        self.output = output


@dataclass
class CommandResult:
    """Result of a command execution.

    Attributes:
        args: Command as executed (without the chroot prefix).
        exit_code: Process exit code.
        stdout: Captured standard output ("" when streamed to the log).
        stderr: Captured standard error.
    """

    args: list[str]
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def success(self) -> bool:
        return self.exit_code == 0


class CommandRunner:
    """Run commands on the host.

    Args:
        timeout: Default timeout in seconds (None = no timeout).
        log_path: When set, uncaptured output is appended to this file.
        env_override: Extra environment variables for every command.
    """

    def __init__(
        self,
        timeout: int | None = None,
        log_path: Path | None = None,
        env_override: dict[str, str] | None = None,
    ) -> None:
        self.timeout = timeout
        self.log_path = log_path
        self.env_override = env_override or {}

    def wrap(self, args: list[str]) -> list[str]:
        """Return the argv actually executed for args."""
        return list(args)

    def run(
        self,
        args: list[str],
        *,
        check: bool = True,
        capture: bool = True,
        timeout: int | None = None,
    ) -> CommandResult:
        """Run a command.

        Args:
            args: Command and arguments.
            check: Raise on a non-zero exit code.
            capture: Capture output (otherwise append it to the log file).
            timeout: Override of the default timeout.

        Returns:
            CommandResult.

        Raises:
            ChrootCommandError: On timeout, failure to start, or (with check)
                a non-zero exit code.
        """
        argv = self.wrap(args)
        cmd_str = shlex.join(args)
        effective_timeout = timeout if timeout is not None else self.timeout
        env: dict[str, str] | None = None
        if self.env_override:
            env = dict(os.environ)
            env.update(self.env_override)

        logger.debug("Running: %s", shlex.join(argv))

        try:
            if capture or self.log_path is None:
                proc = subprocess.run(
                    argv,
                    capture_output=True,
                    text=True,
                    encoding="utf-8",
                    errors="replace",
                    timeout=effective_timeout,
                    env=env,
                    check=False,
                )
                result = CommandResult(
                    args=list(args),
                    exit_code=proc.returncode,
                    stdout=proc.stdout or "",
                    stderr=proc.stderr or "",
                )
            else:
                with self.log_path.open("a") as log_file:
                    log_file.write(f"# Command: {cmd_str}\n")
                    log_file.flush()
                    proc = subprocess.run(
                        argv,
                        stdout=log_file,
                        stderr=subprocess.STDOUT,
                        timeout=effective_timeout,
                        env=env,
                        check=False,
                    )
                result = CommandResult(args=list(args), exit_code=proc.returncode)

        except subprocess.TimeoutExpired as e:
            raise ChrootCommandError(
                f"{cmd_str} timed out after {effective_timeout} seconds",
                exit_code=-1,
                code="timeout",
            ) from e
        except OSError as e:
            raise ChrootCommandError(
                f"Failed to execute {cmd_str}: {e}",
                code="execution_error",
            ) from e

        if check and not result.success:
            detail = result.stderr.strip().splitlines()[-1:] if result.stderr else []
            message = f"{cmd_str} failed with exit code {result.exit_code}"
            if detail:
                message = f"{message}: {detail[0]}"
            raise ChrootCommandError(
                message,
                exit_code=result.exit_code,
                code="command_failed",
                output=result.stdout + result.stderr,
            )
        return result


class ChrootRunner(CommandRunner):
    """Run commands inside a chroot via chroot(8).

    Args:
        chroot_dir: Root of the chroot.
        timeout: Default timeout in seconds (None = no timeout).
        log_path: When set, uncaptured output is appended to this file.
    """

    def __init__(
        self,
        chroot_dir: Path,
        timeout: int | None = None,
        log_path: Path | None = None,
    ) -> None:
        super().__init__(timeout=timeout, log_path=log_path, env_override=CHROOT_ENV)
        self.chroot_dir = chroot_dir

    def wrap(self, args: list[str]) -> list[str]:
        return ["chroot", str(self.chroot_dir), *args]


__all__ = [
    "CHROOT_ENV",
    "ChrootCommandError",
    "ChrootRunner",
    "CommandResult",
    "CommandRunner",
]
