"""costgate CLI - cost/risk gate for git hooks and interactive shells.

Usage:
    costgate scan                      # working tree vs HEAD
    costgate scan --staged --hook pre-commit --async
    costgate scan --range --hook pre-push --sync
    costgate scan all
    costgate cache stats

Exit codes: 0 pass / nothing to scan / timed out, 1 warn, 2 block,
3 auth, usage or system error. Hooks should abort only on 2.
"""

from __future__ import annotations

import json
import logging
import sys

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from . import __version__
from .cache import CacheStore
from .config import Config, load_config
from .errors import ApiError, CostgateError
from .gating import (
    EXIT_ERROR,
    EXIT_PASS,
    Decision,
    GateMode,
    GatingResult,
    exit_code,
)
from .pipeline import AUTO_RANGE, OutcomeKind, ScanOptions, ScanOutcome, run_scan

console = Console()
err_console = Console(stderr=True)

SEVERITY_ORDER = {"high": 3, "medium": 2, "low": 1}
SEVERITY_STYLE = {"high": "bold red", "medium": "yellow", "low": "blue"}
DECISION_STYLE = {Decision.PASS: "green", Decision.WARN: "yellow", Decision.BLOCK: "bold red"}


class ScanAbort(click.ClickException):
    """A scan could not run. Exit code 3, which hooks treat as "proceed"."""

    exit_code = EXIT_ERROR


def _configure_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


@click.group()
@click.version_option(version=__version__)
@click.option("--debug", is_flag=True, help="Log pipeline diagnostics to stderr")
@click.pass_context
def cli(ctx: click.Context, debug: bool):
    """costgate - catch cost and scaling risks before they leave your machine.

    Scans your changes against the analysis service, caches verdicts
    locally, and never stalls a git hook waiting on the network.
    """
    _configure_logging(debug)
    if ctx.obj is None:
        ctx.obj = load_config()


@cli.command()
@click.argument("scope", required=False)
@click.option("--all", "all_files", is_flag=True, help="Scan all files in the repository, not just changes")
@click.option("--staged", is_flag=True, help="Scan staged changes only")
@click.option("--commit", metavar="SHA", help="Scan a single commit")
@click.option(
    "--range", "range_spec", is_flag=False, flag_value=AUTO_RANGE, default=None,
    metavar="BASE..HEAD", help="Scan a ref range (bare --range: origin/<default>..HEAD)",
)
@click.option("--file", "file_path", metavar="PATH", help="Scan a single file (relative to the repo root)")
@click.option(
    "--hook", "gate_mode", type=click.Choice([m.value for m in GateMode]),
    default=GateMode.MANUAL.value, help="Invocation context used for gating",
)
@click.option("--format", "-f", "fmt", type=click.Choice(["plain", "json"]), default="plain", help="Output format")
@click.option("--quiet", "-q", is_flag=True, help="Only print warnings, blocks and errors")
@click.option("--no-cache", is_flag=True, help="Neither read nor write the local verdict cache")
@click.option("--cache-ttl", type=click.IntRange(min=1), help="Cache TTL in seconds")
@click.option("--async", "async_", is_flag=True, help="Return quickly and refresh in the background (default on a TTY)")
@click.option("--no-async", is_flag=True, help="Never defer to a background refresh")
@click.option("--sync", is_flag=True, help="Wait for the verdict (up to --timeout)")
@click.option("--timeout", type=click.FloatRange(min=0, min_open=True), help="Seconds to wait for the service")
@click.option("--refresh-cache-only", is_flag=True, hidden=True)
@click.pass_context
def scan(
    ctx: click.Context,
    scope: str | None,
    all_files: bool,
    staged: bool,
    commit: str | None,
    range_spec: str | None,
    file_path: str | None,
    gate_mode: str,
    fmt: str,
    quiet: bool,
    no_cache: bool,
    cache_ttl: int | None,
    async_: bool,
    no_async: bool,
    sync: bool,
    timeout: float | None,
    refresh_cache_only: bool,
):
    """Analyze local changes for cost impact.

    SCOPE may be "all" to scan the whole repository.

    Examples:

        costgate scan

        costgate scan --staged --hook pre-commit

        costgate scan --range origin/main..HEAD --sync
    """
    if scope == "all":
        all_files = True
    elif scope:
        raise ScanAbort(f'Unknown scan scope: "{scope}". Use "costgate scan all" or omit it.')

    config: Config = ctx.obj
    options = ScanOptions(
        staged=staged,
        commit=commit,
        range_spec=range_spec,
        file=file_path,
        all_files=all_files,
        gate_mode=GateMode(gate_mode),
        sync=sync,
        async_mode=False if no_async else (True if async_ else None),
        timeout=timeout,
        use_cache=not no_cache,
        cache_ttl=cache_ttl,
        refresh_cache_only=refresh_cache_only,
        interactive=sys.stdout.isatty(),
    )
    quiet = quiet or refresh_cache_only

    try:
        outcome = run_scan(config, options)
    except ApiError as e:
        if e.is_auth_failure:
            raise ScanAbort(
                "Authentication error. The token was rejected; update the credentials "
                "in ~/.costgate/config.json or COSTGATE_TOKEN."
            )
        if e.is_rate_limited:
            raise ScanAbort("Usage limit exceeded. Please upgrade your plan or wait.")
        raise ScanAbort(f"API error: {e}")
    except CostgateError as e:
        raise ScanAbort(str(e))

    if fmt == "json" and not refresh_cache_only:
        click.echo(json.dumps(_outcome_to_dict(outcome), indent=2))
    else:
        _print_outcome(outcome, options, quiet)

    ctx.exit(_exit_code_for(outcome))


def _exit_code_for(outcome: ScanOutcome) -> int:
    """The one place a scan outcome becomes a process exit code."""
    if outcome.kind in (OutcomeKind.CACHED, OutcomeKind.ANALYZED) and outcome.gating is not None:
        return exit_code(outcome.gating)
    return EXIT_PASS


def _outcome_to_dict(outcome: ScanOutcome) -> dict:
    data = {
        "outcome": outcome.kind.value,
        "mode": outcome.mode,
        "decision": outcome.response.decision if outcome.response else None,
        "gating": outcome.gating.decision.value if outcome.gating else None,
        "findings": [f.to_dict() for f in outcome.gating.findings] if outcome.gating else [],
        "exitCode": _exit_code_for(outcome),
    }
    if outcome.reason:
        data["reason"] = outcome.reason
    if outcome.kind is OutcomeKind.TIMED_OUT:
        data["backgroundRefresh"] = outcome.background_refresh
    return data


def _print_outcome(outcome: ScanOutcome, options: ScanOptions, quiet: bool) -> None:
    kind = outcome.kind
    if kind is OutcomeKind.REFRESHED:
        return

    if kind is OutcomeKind.NO_CHANGES:
        if not quiet:
            console.print(f"  [green]✓[/] {outcome.reason}")
        return

    if kind is OutcomeKind.TIMED_OUT:
        if quiet:
            return
        if outcome.background_refresh:
            console.print("[yellow]costgate: analyzing... (will cache)[/]")
        else:
            console.print(
                "[yellow]costgate: analysis pending (timed out locally). "
                "CI checks will enforce policy.[/]"
            )
        return

    gating = outcome.gating
    if kind is OutcomeKind.CACHED and not quiet:
        style = DECISION_STYLE[gating.decision]
        console.print(f"[{style}]costgate: {gating.decision.value} (cached)[/] [dim]{outcome.elapsed * 1000:.0f}ms[/]")
    elif kind is OutcomeKind.ANALYZED and not quiet and outcome.context is not None:
        console.print(
            f"  Repository: {outcome.context.slug}  "
            f"Mode: {outcome.mode}  Files: {outcome.file_count}",
            style="dim",
        )

    if gating.decision is Decision.PASS:
        if not quiet and not gating.findings:
            console.print("  [bold green]✓ No cost findings detected.[/]")
        elif gating.findings:
            _print_findings(gating, GateMode(options.gate_mode))
        return

    _print_findings(gating, GateMode(options.gate_mode))


def _print_findings(result: GatingResult, mode: GateMode, limit: int = 5) -> None:
    """Print a verdict panel with the most severe findings first."""
    style = DECISION_STYLE[result.decision]
    context = "" if mode is GateMode.MANUAL else f" ({mode.value})"
    findings = sorted(result.findings, key=lambda f: -SEVERITY_ORDER.get(f.severity, 0))

    table = Table(show_header=False, box=None, padding=(0, 1))
    table.add_column("Severity")
    table.add_column("Finding")
    for f in findings[:limit]:
        location = f"{f.file}:{f.line}" if f.file else "-"
        detail = f"[bold]{f.title or f.rule_id}[/]  [cyan]{location}[/]"
        if f.message:
            detail += f"\n[dim]Why: {f.message}[/]"
        if f.recommendation:
            detail += f"\n[dim]Fix: {f.recommendation}[/]"
        table.add_row(f"[{SEVERITY_STYLE.get(f.severity, 'white')}]{f.severity.upper()}[/]", detail)

    if result.decision is Decision.BLOCK:
        footer = "Fix the findings or bypass with: --no-verify"
    else:
        footer = "Details: costgate scan --sync"
    if len(findings) > limit:
        footer = f"+{len(findings) - limit} more. {footer}"

    console.print(Panel.fit(
        table,
        title=f"[{style}]costgate{context}: {result.decision.value}[/]",
        subtitle=footer,
        border_style=style,
    ))


@cli.group()
def cache():
    """Inspect or prune the local verdict cache."""


@cache.command("stats")
@click.pass_obj
def cache_stats(config: Config):
    """Show cache size and location."""
    stats = CacheStore(config.cache_dir).stats()
    table = Table(title="Verdict Cache", show_header=False, border_style="dim")
    table.add_column("Key", style="bold")
    table.add_column("Value")
    table.add_row("Directory", config.cache_dir)
    table.add_row("Entries", f"{stats['entries']:,}")
    table.add_row("Size", f"{stats['size_bytes'] / 1024:.1f} KiB")
    console.print(table)


@cache.command("clear")
@click.pass_obj
def cache_clear(config: Config):
    """Delete every cached verdict."""
    removed = CacheStore(config.cache_dir).clear()
    console.print(f"Removed {removed} cache entr{'y' if removed == 1 else 'ies'}.")


@cache.command("sweep")
@click.pass_obj
def cache_sweep(config: Config):
    """Delete expired and unreadable entries."""
    removed = CacheStore(config.cache_dir).sweep_expired()
    console.print(f"Swept {removed} expired entr{'y' if removed == 1 else 'ies'}.")


@cli.command()
def version():
    """Show version information."""
    console.print(f"costgate v{__version__}")
    console.print("Local cost/risk gate for git hooks")


def main() -> None:
    """Console entry point.

    Click reports usage errors with exit code 2, which hooks read as a
    block; map every click failure to EXIT_ERROR instead.
    """
    try:
        code = cli.main(standalone_mode=False)
    except click.ClickException as e:
        e.show()
        sys.exit(EXIT_ERROR if isinstance(e, click.UsageError) else e.exit_code)
    except click.Abort:
        err_console.print("Aborted!")
        sys.exit(EXIT_ERROR)
    sys.exit(code if isinstance(code, int) else EXIT_PASS)


if __name__ == "__main__":
    main()
