"""
linkscrub CLI - Command Line Interface

Entry point for cleaning URLs, running the self-test, managing providers,
the whitelist and remote rule sources.
"""

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Optional, List

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from linkscrub.core.audit import JsonlStatisticsSink, summarize
from linkscrub.core.config import load_config
from linkscrub.core.constants import ConflictDecision, ImportClassification, RuleSource
from linkscrub.core.exceptions import LinkScrubError
from linkscrub.core.models import AppConfig, RequestContext
from linkscrub.editor import ProviderEditor
from linkscrub.engine import Engine, self_test
from linkscrub.rules import RemoteRuleFetcher, RuleStore, load_rule_file, validate_provider

# Version
__version__ = "0.1.0"

# Create CLI app
app = typer.Typer(
    name="linkscrub",
    help="linkscrub - Rule-driven URL tracking parameter remover",
    add_completion=False,
    no_args_is_help=True,
)

# Create sub-apps for command groups
providers_app = typer.Typer(help="Browse, edit and import rule providers")
whitelist_app = typer.Typer(help="Manage whitelisted sites")
rules_app = typer.Typer(help="Fetch and validate rule sources")

# Register sub-apps
app.add_typer(providers_app, name="providers")
app.add_typer(whitelist_app, name="whitelist")
app.add_typer(rules_app, name="rules")

# Rich console for output
console = Console()
err_console = Console(stderr=True)

_config: AppConfig = AppConfig()


def _fail(message: str) -> None:
    console.print(f"[red]Error:[/red] {message}")
    raise typer.Exit(code=1)


def _load_store() -> RuleStore:
    return RuleStore(_config.data_dir).load()


def _build_engine(store: RuleStore, sink: Optional[JsonlStatisticsSink] = None) -> Engine:
    return Engine(
        store.build_snapshot(),
        store.whitelist_entries(),
        _config.settings,
        stats_sink=sink,
    )


# ============================================================================
# Main Commands
# ============================================================================

@app.callback()
def main(
    config: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Configuration file (YAML)",
        exists=True,
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
) -> None:
    """Load configuration and set up logging."""
    global _config

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, rich_tracebacks=True, show_path=False)],
    )

    try:
        _config = load_config(config)
    except LinkScrubError as e:
        _fail(str(e))


@app.command()
def clean(
    urls: Optional[List[str]] = typer.Argument(None, help="URLs to clean (read from stdin if omitted)"),
    as_json: bool = typer.Option(False, "--json", help="Print one JSON result per URL"),
    details: bool = typer.Option(False, "--details", "-d", help="Show a result table"),
    method: Optional[str] = typer.Option(None, "--method", help="Request method for provider filters"),
    resource_type: Optional[str] = typer.Option(None, "--type", help="Request resource type"),
    context: Optional[List[str]] = typer.Option(None, "--context", help="Page URL the link was found on"),
) -> None:
    """Remove tracking parameters from URLs."""
    if not urls:
        urls = [line.strip() for line in sys.stdin if line.strip()]
    if not urls:
        _fail("No URLs given")

    sink = None
    try:
        store = _load_store()
        if _config.statistics_log is not None:
            sink = JsonlStatisticsSink(_config.statistics_log)
        engine = _build_engine(store, sink)
    except LinkScrubError as e:
        _fail(str(e))

    request_context = None
    if method or resource_type or context:
        request_context = RequestContext(
            method=method,
            resource_type=resource_type,
            context_urls=tuple(context or ()),
        )

    try:
        results = engine.clean_many(urls, request_context)
    finally:
        if sink is not None:
            sink.close()

    if as_json:
        for result in results:
            data = result.to_dict()
            data["outcome"] = result.outcome.value
            if result.diagnostics:
                data["diagnostics"] = [d.to_dict() for d in result.diagnostics]
            console.print_json(json.dumps(data))
        return

    if details:
        table = Table(title="Cleaned URLs")
        table.add_column("Original", style="dim", overflow="fold")
        table.add_column("Result", style="cyan", overflow="fold")
        table.add_column("Removed", justify="right")
        table.add_column("Outcome", style="yellow")
        for result in results:
            table.add_row(
                result.original_url,
                result.final_url,
                str(result.applied_count),
                "whitelisted" if result.whitelisted else result.outcome.value,
            )
        console.print(table)
        return

    for result in results:
        if result.blocked:
            console.print(f"[red]blocked[/red] {result.original_url}")
        else:
            console.print(result.final_url, highlight=False, soft_wrap=True)
        for diagnostic in result.diagnostics:
            err_console.print(f"[yellow]![/yellow] {diagnostic.kind.value}: {diagnostic.message}")


@app.command()
def check() -> None:
    """Run the self-test against the active rules."""
    try:
        engine = _build_engine(_load_store())
    except LinkScrubError as e:
        _fail(str(e))

    result = self_test(engine)
    if result.passed:
        console.print(f"[green]✓[/green] Self-test passed: {result.dirty_url} -> {result.actual_url}")
        return

    console.print(Panel(
        f"Input:    {result.dirty_url}\n"
        f"Expected: {result.expected_url}\n"
        f"Got:      {result.actual_url}",
        title="[red]Self-test failed[/red]",
        border_style="red",
    ))
    raise typer.Exit(code=1)


@app.command()
def stats() -> None:
    """Show totals from the statistics log."""
    if _config.statistics_log is None:
        console.print("[yellow]No statistics log configured.[/yellow]")
        return
    try:
        summary = summarize(_config.statistics_log)
    except LinkScrubError as e:
        _fail(str(e))

    table = Table(title="Statistics")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("URLs cleaned or blocked", str(summary.requests))
    table.add_row("Parameters removed", str(summary.removed))
    table.add_row("URLs blocked", str(summary.blocked))
    console.print(table)


@app.command()
def version() -> None:
    """Show version information."""
    console.print(f"linkscrub version [cyan]{__version__}[/cyan]")


# ============================================================================
# Provider Commands
# ============================================================================

@providers_app.command("list")
def providers_list(
    source: Optional[RuleSource] = typer.Option(
        None,
        "--source",
        "-s",
        help="Only list one source",
        case_sensitive=False,
    ),
) -> None:
    """List providers of the active rule set."""
    try:
        store = _load_store()
    except LinkScrubError as e:
        _fail(str(e))

    snapshot = store.build_snapshot()
    table = Table(title=f"Providers (snapshot v{snapshot.version})")
    table.add_column("ID", style="cyan")
    table.add_column("Source", style="blue")
    table.add_column("Rules", justify="right")
    table.add_column("Redirects", justify="right")
    table.add_column("Flags", style="yellow")

    for provider in snapshot:
        provider_source = snapshot.source_of(provider.id)
        if source is not None and provider_source != source:
            continue
        flags = []
        if not provider.enabled:
            flags.append("disabled")
        if provider.complete_provider:
            flags.append("complete")
        if provider.force_redirection:
            flags.append("force-redirect")
        table.add_row(
            provider.id,
            provider_source.value,
            str(len(provider.rules) + len(provider.raw_rules)),
            str(len(provider.redirections)),
            ", ".join(flags) or "-",
        )

    console.print(table)


@providers_app.command("show")
def providers_show(
    provider_id: str = typer.Argument(..., help="Provider id"),
) -> None:
    """Show a provider as it is active."""
    try:
        snapshot = _load_store().build_snapshot()
    except LinkScrubError as e:
        _fail(str(e))

    provider = snapshot.get(provider_id)
    if provider is None:
        _fail(f"Provider '{provider_id}' not found")

    console.print(Panel(
        json.dumps(provider.to_dict(), indent=2),
        title=f"{provider.id} [dim]({snapshot.source_of(provider.id).value})[/dim]",
    ))
    errors = validate_provider(provider)
    for field_name, messages in errors.items():
        for message in messages:
            console.print(f"[yellow]![/yellow] {field_name}: {message}")


@providers_app.command("match")
def providers_match(
    url: str = typer.Argument(..., help="URL to test"),
) -> None:
    """Show which providers apply to a URL."""
    try:
        engine = _build_engine(_load_store())
    except LinkScrubError as e:
        _fail(str(e))

    if engine.is_whitelisted(url):
        console.print("[yellow]URL is whitelisted[/yellow]")
    matched = engine.match_providers(url)
    if not matched:
        console.print("[dim]No provider applies[/dim]")
        return
    for provider in matched:
        console.print(f"[cyan]{provider.id}[/cyan]")


@providers_app.command("create")
def providers_create(
    provider_id: str = typer.Argument(..., help="New provider id"),
    url_pattern: str = typer.Option(..., "--url-pattern", "-p", help="Regex matched against the URL"),
    rules: Optional[List[str]] = typer.Option(None, "--rule", "-r", help="Parameter name regex"),
    raw_rules: Optional[List[str]] = typer.Option(None, "--raw-rule", help="Regex deleted from the URL"),
    redirections: Optional[List[str]] = typer.Option(None, "--redirection", help="Regex capturing the target"),
    exceptions: Optional[List[str]] = typer.Option(None, "--exception", help="Regex exempting a URL"),
    complete: bool = typer.Option(False, "--complete", help="Block matching URLs"),
) -> None:
    """Create a custom provider."""
    record = {
        "urlPattern": url_pattern,
        "rules": rules or [],
        "rawRules": raw_rules or [],
        "redirections": redirections or [],
        "exceptions": exceptions or [],
        "completeProvider": complete,
    }
    _edit_and_save(lambda editor: editor.create_provider(provider_id, record))


@providers_app.command("edit")
def providers_edit(
    provider_id: str = typer.Argument(..., help="Provider id"),
    url_pattern: Optional[str] = typer.Option(None, "--url-pattern", "-p", help="Replace the URL pattern"),
    add_rules: Optional[List[str]] = typer.Option(None, "--add-rule", help="Add a parameter rule"),
    remove_rules: Optional[List[str]] = typer.Option(None, "--remove-rule", help="Remove a parameter rule"),
    enable: Optional[bool] = typer.Option(None, "--enable/--disable", help="Enable or disable"),
) -> None:
    """Edit a provider; bundled and remote providers get a custom override."""

    def apply(editor: ProviderEditor) -> None:
        snapshot = editor.store.build_snapshot()
        current = editor.find_draft(provider_id) or snapshot.get(provider_id)
        if current is None:
            _fail(f"Provider '{provider_id}' not found")
        patch: dict = {}
        if url_pattern is not None:
            patch["urlPattern"] = url_pattern
        if add_rules or remove_rules:
            updated = [r for r in current.rules if r not in (remove_rules or [])]
            updated.extend(r for r in (add_rules or []) if r not in updated)
            patch["rules"] = updated
        if enable is not None:
            patch["enabled"] = enable
        editor.edit_provider(provider_id, patch)

    _edit_and_save(apply)


@providers_app.command("delete")
def providers_delete(
    provider_id: str = typer.Argument(..., help="Custom provider id"),
) -> None:
    """Delete a custom provider."""
    _edit_and_save(lambda editor: editor.delete_provider(provider_id))


@providers_app.command("duplicate")
def providers_duplicate(
    provider_id: str = typer.Argument(..., help="Provider to copy"),
    new_id: Optional[str] = typer.Argument(None, help="Id of the copy"),
) -> None:
    """Copy a provider into the custom rules."""
    _edit_and_save(lambda editor: editor.duplicate_provider(provider_id, new_id))


@providers_app.command("rename")
def providers_rename(
    old_id: str = typer.Argument(..., help="Current id"),
    new_id: str = typer.Argument(..., help="New id"),
) -> None:
    """Rename a custom provider."""
    _edit_and_save(lambda editor: editor.rename_provider(old_id, new_id))


def _edit_and_save(action) -> None:
    try:
        editor = ProviderEditor(_load_store())
        action(editor)
        report = editor.save()
    except LinkScrubError as e:
        _fail(str(e))

    for provider_id, errors in report.blocked.items():
        for field_name, messages in errors.items():
            for message in messages:
                console.print(f"[red]✗[/red] {provider_id}.{field_name}: {message}")
    if not report.ok:
        _fail("Some providers were not saved")
    console.print(f"[green]✓[/green] Saved (snapshot v{report.snapshot.version})")


@providers_app.command("import")
def providers_import(
    ids: Optional[List[str]] = typer.Argument(None, help="Provider ids to import (default: all new)"),
    source: RuleSource = typer.Option(
        RuleSource.REMOTE,
        "--source",
        "-s",
        help="Source to import from",
        case_sensitive=False,
    ),
    file: Optional[Path] = typer.Option(None, "--file", "-f", help="Import from a rule file", exists=True),
    on_conflict: Optional[ConflictDecision] = typer.Option(
        None,
        "--on-conflict",
        help="Resolve every conflict the same way",
        case_sensitive=False,
    ),
    dry_run: bool = typer.Option(False, "--dry-run", help="Only show the preview"),
) -> None:
    """Import providers into the custom rules."""
    try:
        editor = ProviderEditor(_load_store())
        extra = {}
        if file is not None:
            extra[file.name] = load_rule_file(file).providers
        session = editor.open_import(extra_sources=extra)
        session.set_source(file.name if file is not None else source)
        preview = session.preview_import(ids or None)
    except LinkScrubError as e:
        _fail(str(e))

    styles = {
        ImportClassification.NEW: "green",
        ImportClassification.CONFLICT: "red",
        ImportClassification.EXCLUDED: "dim",
        ImportClassification.IDENTICAL: "blue",
    }
    table = Table(title=f"Import preview ({session.current_rule_source})")
    table.add_column("ID", style="cyan")
    table.add_column("Status")
    for provider_id, classification in preview.items():
        style = styles[classification]
        table.add_row(provider_id, f"[{style}]{classification.value}[/{style}]")
    console.print(table)

    if dry_run:
        return

    try:
        for provider_id, classification in preview.items():
            if classification != ImportClassification.CONFLICT:
                continue
            if on_conflict is None:
                console.print(f"[yellow]![/yellow] {provider_id}: conflict left unresolved")
                continue
            session.resolve_conflict(provider_id, on_conflict)
        if ids:
            for provider_id in ids:
                if preview.get(provider_id) == ImportClassification.IDENTICAL:
                    session.select(provider_id)
        report = session.commit_import()
    except LinkScrubError as e:
        _fail(str(e))

    console.print(
        f"[green]✓[/green] Imported {len(report.imported)}, overwrote {len(report.overwritten)}, "
        f"renamed {len(report.renamed)}, skipped {len(report.skipped)}, "
        f"unresolved {len(report.unresolved)}"
    )


@providers_app.command("exclude")
def providers_exclude(
    source: str = typer.Argument(..., help="Rule source (bundled, remote or a file name)"),
    provider_id: str = typer.Argument(..., help="Provider id"),
) -> None:
    """Stop importing a provider from a source."""
    try:
        ProviderEditor(_load_store()).exclude(source, provider_id)
    except LinkScrubError as e:
        _fail(str(e))
    console.print(f"[green]✓[/green] Excluded {provider_id} from {source}")


@providers_app.command("restore")
def providers_restore(
    source: str = typer.Argument(..., help="Rule source"),
    provider_id: str = typer.Argument(..., help="Provider id"),
) -> None:
    """Undo an exclusion."""
    try:
        restored = ProviderEditor(_load_store()).restore_exclusion(source, provider_id)
    except LinkScrubError as e:
        _fail(str(e))
    if restored:
        console.print(f"[green]✓[/green] Restored {provider_id} for {source}")
    else:
        console.print(f"[yellow]{provider_id} was not excluded from {source}[/yellow]")


@providers_app.command("exclusions")
def providers_exclusions(
    clear: Optional[str] = typer.Option(None, "--clear", help="Clear the exclusions of a source"),
) -> None:
    """List import exclusions."""
    try:
        editor = ProviderEditor(_load_store())
        if clear is not None:
            removed = editor.clear_exclusions(clear)
            console.print(f"[green]✓[/green] Cleared {removed} exclusion(s) for {clear}")
            return
        exclusions = editor.store.exclusions_by_source()
    except LinkScrubError as e:
        _fail(str(e))

    table = Table(title="Import exclusions")
    table.add_column("Source", style="blue")
    table.add_column("Provider IDs", style="cyan")
    for source_name, provider_ids in exclusions.items():
        table.add_row(source_name, ", ".join(sorted(provider_ids)) or "-")
    console.print(table)


# ============================================================================
# Whitelist Commands
# ============================================================================

@whitelist_app.command("add")
def whitelist_add(
    patterns: List[str] = typer.Argument(..., help="Host patterns (example.com, *.example.com, example.*)"),
) -> None:
    """Whitelist sites."""
    try:
        store = _load_store()
        for pattern in patterns:
            if store.add_whitelist(pattern):
                console.print(f"[green]✓[/green] Added {pattern.strip().lower()}")
            else:
                console.print(f"[yellow]{pattern} is already whitelisted[/yellow]")
    except LinkScrubError as e:
        _fail(str(e))


@whitelist_app.command("remove")
def whitelist_remove(
    patterns: List[str] = typer.Argument(..., help="Patterns to remove"),
) -> None:
    """Remove whitelist entries."""
    try:
        store = _load_store()
        for pattern in patterns:
            if store.remove_whitelist(pattern):
                console.print(f"[green]✓[/green] Removed {pattern}")
            else:
                console.print(f"[yellow]{pattern} is not whitelisted[/yellow]")
    except LinkScrubError as e:
        _fail(str(e))


@whitelist_app.command("list")
def whitelist_list() -> None:
    """List whitelisted sites."""
    try:
        store = _load_store()
    except LinkScrubError as e:
        _fail(str(e))

    patterns = store.whitelist_patterns()
    if not patterns:
        console.print("[dim]Whitelist is empty[/dim]")
        return

    counts = store.whitelist_stats()
    table = Table(
        title=f"Whitelist ({counts['total']} total, {counts['exact']} exact, {counts['wildcard']} wildcard)"
    )
    table.add_column("Pattern", style="cyan")
    for pattern in patterns:
        table.add_row(pattern)
    console.print(table)


@whitelist_app.command("clear")
def whitelist_clear(
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
) -> None:
    """Remove every whitelist entry."""
    if not yes and not typer.confirm("Clear the whole whitelist?"):
        raise typer.Exit(code=0)
    try:
        removed = _load_store().clear_whitelist()
    except LinkScrubError as e:
        _fail(str(e))
    console.print(f"[green]✓[/green] Removed {removed} entr{'y' if removed == 1 else 'ies'}")


# ============================================================================
# Rule Source Commands
# ============================================================================

@rules_app.command("fetch")
def rules_fetch() -> None:
    """Download and verify the configured remote rule sources."""
    if not _config.remote_sources:
        console.print("[yellow]No remote sources configured.[/yellow]")
        return

    fetcher = RemoteRuleFetcher(_config.remote_sources, timeout=_config.fetch_timeout)
    with console.status("[cyan]Fetching rule sources...[/cyan]"):
        report = asyncio.run(fetcher.fetch_all())

    for fetched in report.fetched:
        console.print(
            f"[green]✓[/green] {fetched.source.name}: {len(fetched.document.providers)} providers "
            f"[dim](sha256 {fetched.sha256[:12]}…)[/dim]"
        )
    for diagnostic in report.diagnostics:
        console.print(f"[red]✗[/red] {diagnostic.provider_id}: {diagnostic.message}")

    if not report.fetched:
        raise typer.Exit(code=1)

    try:
        store = _load_store()
        store.set_remote(
            report.merged_providers(),
            {"sources": [f.source.name for f in report.fetched]},
        )
    except LinkScrubError as e:
        _fail(str(e))
    console.print(f"[green]✓[/green] Cached {len(report.merged_providers())} remote providers")


@rules_app.command("validate")
def rules_validate(
    file: Path = typer.Argument(..., help="Rule file (JSON or YAML)", exists=True),
) -> None:
    """Check that every pattern of a rule file compiles."""
    try:
        document = load_rule_file(file)
    except LinkScrubError as e:
        _fail(str(e))

    invalid = 0
    for provider in document.providers:
        for field_name, messages in validate_provider(provider).items():
            for message in messages:
                invalid += 1
                console.print(f"[red]✗[/red] {provider.id}.{field_name}: {message}")
    for provider_id in document.skipped:
        console.print(f"[yellow]![/yellow] {provider_id}: skipped (missing urlPattern or not a mapping)")

    if invalid or document.skipped:
        raise typer.Exit(code=1)
    console.print(f"[green]✓[/green] {len(document.providers)} providers, all patterns valid")


if __name__ == "__main__":
    app()
