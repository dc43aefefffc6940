"""Typer-based operator CLI for inspecting and steering persisted rate state.

Typical Usage:
    recipe-poster cooldown show
    recipe-poster cooldown show --key openai_images
    recipe-poster cooldown set openai_images --seconds 600 --reason maintenance
    recipe-poster cooldown clear openai_images
    recipe-poster throttle show
"""

from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

import typer
from rich.console import Console
from rich.table import Table

from RecipePoster.RateControl.clock import SystemClock
from RecipePoster.RateControl.cooldown import CooldownGate
from RecipePoster.RateControl.coordinator import build_cooldown_store
from RecipePoster.RateControl.interval import IntervalTracker
from RecipePoster.RateControl.locks import FileLockProvider
from RecipePoster.RateControl.settings import CooldownBackend, RateControlSettings
from RecipePoster.logging_utils import setup_logging

console = Console()
app = typer.Typer(help="RecipePoster rate-control tools", no_args_is_help=True)
cooldown_app = typer.Typer(help="Inspect and operate cooldown windows", no_args_is_help=True)
throttle_app = typer.Typer(help="Inspect minimum-interval throttle state", no_args_is_help=True)
app.add_typer(cooldown_app, name="cooldown")
app.add_typer(throttle_app, name="throttle")


# ============================================================================
# Setup
# ============================================================================


@app.callback()
def main(
    ctx: typer.Context,
    state_dir: Optional[Path] = typer.Option(
        None, "--state-dir", help="Directory holding persisted rate state"
    ),
    backend: Optional[CooldownBackend] = typer.Option(
        None, "--backend", help="Cooldown store backend"
    ),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Verbose logging"),
) -> None:
    """Load settings from the environment, applying command-line overrides."""
    overrides: dict = {}
    if state_dir is not None:
        overrides["state_dir"] = state_dir
    if backend is not None:
        overrides["cooldown_backend"] = backend
    settings = RateControlSettings(**overrides)
    setup_logging("DEBUG" if verbose else settings.log_level, settings.log_dir)
    ctx.obj = settings


@contextmanager
def _open_gate(settings: RateControlSettings) -> Iterator[CooldownGate]:
    """Yield a gate over the configured store, closing the store afterwards."""
    clock = SystemClock()
    store = build_cooldown_store(
        settings,
        clock=clock,
        lock_provider=FileLockProvider(timeout=settings.lock_timeout_s),
    )
    try:
        yield CooldownGate(store, clock=clock)
    finally:
        close = getattr(store, "close", None)
        if close is not None:
            close()


# ============================================================================
# Cooldown commands
# ============================================================================


@cooldown_app.command("show")
def cooldown_show(
    ctx: typer.Context,
    key: Optional[str] = typer.Option(None, "--key", help="Filter to a single throttle key"),
) -> None:
    """Display cooldown windows and the seconds left on each."""
    with _open_gate(ctx.obj) as gate:
        now = gate.clock.time()
        entries = gate.store.get_all_until()

    rows = []
    for name, (until_wall, reason) in sorted(entries.items()):
        if key is not None and name != key:
            continue
        rows.append((name, max(0.0, until_wall - now), reason))

    if not rows:
        console.print("No cooldowns to show.")
        return

    table = Table(title="Cooldowns")
    table.add_column("Key", style="cyan")
    table.add_column("Remaining (s)", justify="right")
    table.add_column("Reason")
    for name, remaining, reason in rows:
        table.add_row(name, f"{remaining:.1f}", reason or "-")
    console.print(table)


@cooldown_app.command("set")
def cooldown_set(
    ctx: typer.Context,
    key: str = typer.Argument(..., help="Throttle key to pause"),
    seconds: float = typer.Option(..., "--seconds", min=0, help="Cooldown duration in seconds"),
    reason: str = typer.Option("cli-set", "--reason", help="Reason tag"),
) -> None:
    """Force a cooldown on KEY, e.g. for a provider maintenance window."""
    try:
        with _open_gate(ctx.obj) as gate:
            gate.set_cooldown(key, seconds, reason=reason)
    except ValueError as e:
        console.print(f"[red]✗ Error: {e}[/red]")
        raise typer.Exit(code=1)
    console.print(f"[green]✓ Cooled down {key} for {seconds:g}s (reason={reason})[/green]")


@cooldown_app.command("clear")
def cooldown_clear(
    ctx: typer.Context,
    key: str = typer.Argument(..., help="Throttle key to release"),
) -> None:
    """Remove any cooldown on KEY."""
    try:
        with _open_gate(ctx.obj) as gate:
            gate.store.clear(key)
    except ValueError as e:
        console.print(f"[red]✗ Error: {e}[/red]")
        raise typer.Exit(code=1)
    console.print(f"[green]✓ Cleared {key}[/green]")


# ============================================================================
# Throttle commands
# ============================================================================


@throttle_app.command("show")
def throttle_show(ctx: typer.Context) -> None:
    """Display the last fire of every throttle key and when it may fire again."""
    settings: RateControlSettings = ctx.obj
    clock = SystemClock()
    tracker = IntervalTracker(
        settings.interval_state_path,
        lock_provider=FileLockProvider(timeout=settings.lock_timeout_s),
        clock=clock,
    )
    state = tracker.snapshot()
    if not state:
        console.print("No throttle state recorded.")
        return

    now = clock.monotonic()
    table = Table(title="Throttle state")
    table.add_column("Key", style="cyan")
    table.add_column("Interval (ms)", justify="right")
    table.add_column("Since last (s)", justify="right")
    table.add_column("Ready in (s)", justify="right")
    for key, last in sorted(state.items()):
        interval_ms = settings.interval_for(key)
        if last > now:
            # Stamp from an earlier boot; the next throttle call ignores it.
            table.add_row(key, str(interval_ms), "stale", "0.0")
            continue
        since = now - last
        ready = max(0.0, interval_ms / 1000.0 - since)
        table.add_row(key, str(interval_ms), f"{since:.1f}", f"{ready:.1f}")
    console.print(table)


if __name__ == "__main__":
    app()
