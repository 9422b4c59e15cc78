"""Thin CLI wrapper for sky1_imagegen.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
import logging
import os
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler

from sky1_imagegen import __version__
from sky1_imagegen.config import get_settings, print_settings_json
from sky1_imagegen.types import DEFAULT_TRACK, Desktop, Loadout, OutputFormat, Track

app = typer.Typer(
    name="sky1-imagegen",
    help="Sky1 Image Generator - build Sky1 Linux ISOs and disk images",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"sky1-imagegen version {__version__}")
        raise typer.Exit()


def print_json_text(text: str) -> None:
    """Print JSON text without rich wrapping or markup."""
    console.print(text, soft_wrap=True, markup=False, highlight=False)


def configure_logging(level: str) -> None:
    """Route log records through rich on stderr at the given level."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
) -> None:
    """Sky1 Image Generator - build Sky1 Linux ISOs and disk images."""
    settings = get_settings()
    configure_logging("DEBUG" if verbose else settings.log_level)


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        print_json_text(print_settings_json(settings))
    else:
        console.print("[bold]Effective Configuration:[/bold]")
        console.print()
        console.print("[bold]Paths:[/bold]")
        console.print(f"  Build directory:     {settings.build_dir}")
        console.print()
        console.print("[bold]Repository:[/bold]")
        console.print(f"  Apt URL:             {settings.apt_url}")
        console.print(f"  Apt suite:           {settings.apt_suite}")
        console.print()
        console.print("[bold]Operational:[/bold]")
        console.print(f"  Log level:           {settings.log_level}")
        console.print(f"  Force upgrade:       {settings.force_upgrade}")
        console.print(f"  Skip compress:       {settings.skip_compress}")
        console.print()
        console.print("[bold]Timeouts (seconds):[/bold]")
        console.print(f"  Stage timeout:       {settings.stage_timeout}")
        console.print(f"  Command timeout:     {settings.command_timeout}")


@app.command()
def build(
    desktop: Annotated[Desktop, typer.Argument(help="Desktop choice")],
    loadout: Annotated[Loadout, typer.Argument(help="Package loadout")],
    output_format: Annotated[
        OutputFormat, typer.Argument(metavar="FORMAT", help="Output format")
    ],
    track: Annotated[
        Track, typer.Argument(help="Kernel track")
    ] = DEFAULT_TRACK,
    clean: Annotated[
        bool,
        typer.Option("--clean", help="Discard the chroot and rebuild from scratch"),
    ] = False,
    force_upgrade: Annotated[
        bool | None,
        typer.Option(
            "--force-upgrade/--no-force-upgrade",
            help="Upgrade the chroot even if serious bugs are reported",
        ),
    ] = None,
    skip_compress: Annotated[
        bool | None,
        typer.Option(
            "--skip-compress/--compress", help="Skip compression of disk images"
        ),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Build an ISO or disk image.

    The per-desktop chroot is reused when its build state shows it complete;
    otherwise it is rebuilt. Reused chroots are refreshed and switched to
    the requested kernel track before packaging.
    """
    from sky1_imagegen.builds.controller import BuildError, run_build
    from sky1_imagegen.context import BuildContext

    if os.geteuid() != 0:
        console.print("[red]Error: builds require root. Run with sudo.[/red]")
        raise typer.Exit(code=1)

    ctx = BuildContext.from_settings(
        get_settings(),
        desktop,
        loadout,
        output_format,
        track,
        clean=clean,
        force_upgrade=force_upgrade,
        skip_compress=skip_compress,
    )

    try:
        outcome = run_build(ctx)
    except BuildError as e:
        if json_output:
            print_json_text(
                json.dumps({"success": False, "code": e.code, "error": str(e)}, indent=2)
            )
        else:
            console.print(f"[red]Build failed ({e.code}): {e}[/red]")
            console.print(f"See log: {ctx.log_path}")
        raise typer.Exit(code=1) from None

    if json_output:
        output = {"success": True, **outcome.to_dict()}
        print_json_text(json.dumps(output, indent=2))
        return

    console.print()
    console.print("[bold]=== Build Complete ===[/bold]")
    console.print(
        f"  Chroot:  {outcome.decision.action.value} ({outcome.decision.reason})"
    )
    if outcome.freshness is not None and outcome.freshness.skipped_for_bugs:
        console.print("  [yellow]Upgrade skipped: serious bugs reported[/yellow]")
    if outcome.kernel_version:
        console.print(f"  Kernel:  {outcome.kernel_version}")
    if outcome.output_path is not None:
        console.print(f"  Output:  {outcome.output_path}")


state_app = typer.Typer(help="Inspect per-desktop chroot build state")
app.add_typer(state_app, name="state")


@state_app.command("show")
def state_show(
    desktop: Annotated[Desktop, typer.Argument(help="Desktop choice")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show the recorded build state of a desktop's chroot."""
    from sky1_imagegen.chroot.state import StateFileError, load_state
    from sky1_imagegen.context import BuildContext

    ctx = BuildContext(build_dir=get_settings().build_dir, desktop=desktop)

    try:
        state = load_state(ctx.chroot_dir)
    except StateFileError as e:
        console.print(f"[red]Unreadable build state: {e}[/red]")
        raise typer.Exit(code=1) from None

    if state is None:
        if json_output:
            print_json_text("null")
        else:
            console.print(f"[yellow]No build state for {desktop.value}[/yellow]")
        return

    if json_output:
        print_json_text(state.model_dump_json(indent=2))
        return

    console.print(f"[bold]Build state for {desktop.value}:[/bold]")
    console.print(f"  Chroot:          {ctx.chroot_dir}")
    for name, value in state.model_dump().items():
        display = value if value is not None else "[dim](absent)[/dim]"
        console.print(f"  {name + ':':<24} {display}")


@state_app.command("check")
def state_check(
    desktop: Annotated[Desktop, typer.Argument(help="Desktop choice")],
    loadout: Annotated[
        Loadout, typer.Option("--loadout", help="Package loadout of the build")
    ] = Loadout.DESKTOP,
    track: Annotated[
        Track, typer.Option("--track", help="Kernel track of the build")
    ] = DEFAULT_TRACK,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Report what a build would do with a desktop's chroot.

    The package lists are fingerprinted as a build with the given loadout
    and track would fingerprint them. Nothing is modified; a record-less
    chroot is reported as adoptable without writing a record.
    """
    from sky1_imagegen.builds.selection import preview_pkglist_hash
    from sky1_imagegen.chroot.pkglist import PackageListError
    from sky1_imagegen.chroot.validator import decide
    from sky1_imagegen.context import BuildContext

    ctx = BuildContext(
        build_dir=get_settings().build_dir,
        desktop=desktop,
        loadout=loadout,
        track=track,
    )
    try:
        pkglist_hash = preview_pkglist_hash(ctx)
    except PackageListError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(code=1) from None
    decision = decide(ctx.chroot_dir, desktop, pkglist_hash, adopt=False)

    if json_output:
        print_json_text(json.dumps(decision.to_dict(), indent=2))
        return

    console.print(f"Chroot: {decision.action.value} ({decision.reason})")
    for warning in decision.warnings:
        console.print(f"  [yellow]Warning: {warning}[/yellow]")


if __name__ == "__main__":
    app()
