"""CLI entry point for notelink."""

import copy
import logging
import signal
from pathlib import Path
from typing import Any, Callable

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn
from rich.table import Table

from .config import DEFAULT_CONFIG, load_config
from .errors import ConfigurationError, NotelinkError, TaskCancelledError, log_exception

console = Console()
logger = logging.getLogger(__name__)


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )


@click.group()
@click.option("--config", "-c", "config_path", default=None, help="Path to config file")
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging")
@click.pass_context
def cli(ctx, config_path, verbose):
    """notelink - link related notes in a markdown vault."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["verbose"] = verbose


def _get_config(ctx) -> dict:
    if "config" not in ctx.obj:
        try:
            config = load_config(ctx.obj.get("config_path"))
        except (OSError, ValueError) as e:
            console.print(f"[red]Could not load config: {e}[/]")
            ctx.exit(2)
        _setup_logging("DEBUG" if ctx.obj.get("verbose") else config.get("log_level", "WARNING"))
        ctx.obj["config"] = config
    return ctx.obj["config"]


def _get_workflow(ctx):
    from .pipeline.workflow import Workflow

    config = _get_config(ctx)
    if not Path(config["vault_path"]).exists():
        console.print(f"[red]Vault not found: {config['vault_path']}. Run 'notelink init' first.[/]")
        ctx.exit(1)
    return Workflow.from_config(config)


def _run_task(ctx, description: str, call: Callable[[Any], Any]) -> Any:
    """Run a workflow task with a progress bar; Ctrl+C requests cancellation."""
    config = _get_config(ctx)
    workflow = _get_workflow(ctx)

    def on_interrupt(signum, frame):
        if workflow.tasks.request_cancellation():
            console.print("[yellow]Cancelling after the current item... (Ctrl+C again to abort)[/]")
        signal.signal(signal.SIGINT, signal.default_int_handler)

    previous = signal.signal(signal.SIGINT, on_interrupt)
    try:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            console=console,
            transient=True,
        ) as progress:
            bar = progress.add_task(description, total=100)
            workflow.tasks.set_progress_callback(
                lambda info: progress.update(bar, completed=info.progress, description=info.current_step)
            )
            return call(workflow)
    except TaskCancelledError:
        console.print("[yellow]Cancelled. Work completed before the cancellation was saved.[/]")
        ctx.exit(130)
    except ConfigurationError as e:
        console.print(f"[red]{e}[/]")
        console.print(f"[dim]{e.guidance}[/]")
        ctx.exit(2)
    except NotelinkError as e:
        console.print(f"[red]{e}[/]")
        ctx.exit(1)
    except Exception as e:
        log_path = log_exception(e, config["cache_path"], context=description)
        console.print(f"[red]✗ {description} failed: {e}[/]")
        console.print(f"[dim]Details written to {log_path}[/]")
        ctx.exit(1)
    finally:
        signal.signal(signal.SIGINT, previous)
        workflow.tasks.set_progress_callback(None)
        try:
            workflow.close()
        except NotelinkError as e:
            console.print(f"[red]{e}[/]")


def _print_summary(summary) -> None:
    table = Table(title="Run Summary", show_header=False)
    table.add_column("Step", style="cyan")
    table.add_column("Count", justify="right")
    rows = [
        ("Documents scanned", summary.scanned),
        ("Ids assigned", summary.ids_assigned),
        ("Boundaries added", summary.boundaries_added),
        ("Embedded", summary.embedded),
        ("Pairs scored", summary.pairs_scored),
        ("Documents reconciled", summary.documents_reconciled),
        ("Links added", summary.links_added),
        ("Links removed", summary.links_removed),
        ("Tagged", summary.tagged),
        ("Skipped", summary.skipped),
    ]
    for label, value in rows:
        table.add_row(label, str(value))
    console.print(table)
    if summary.failures:
        console.print(
            f"[yellow]{summary.failures} failed batch(es) recorded "
            f"(embedding {summary.embedding_failures}, scoring {summary.scoring_failures}, "
            f"tagging {summary.tagging_failures}). They are retried on the next run.[/]"
        )


@cli.command()
@click.option("--path", default=None, help="Vault path")
@click.pass_context
def init(ctx, path):
    """Create a starter configuration and the cache directory."""
    import yaml

    vault_path = Path(path).expanduser().resolve() if path else Path.cwd()
    config_dir = Path("~/.notelink").expanduser()
    config_file = config_dir / "config.yaml"

    console.print(f"[bold green]Initializing notelink for {vault_path}[/]")
    cfg = copy.deepcopy(DEFAULT_CONFIG)
    cfg["vault_path"] = str(vault_path)
    Path(cfg["cache_path"]).expanduser().mkdir(parents=True, exist_ok=True)

    if config_file.exists():
        console.print(f"  [dim]Config already exists: {config_file}[/]")
    else:
        config_dir.mkdir(parents=True, exist_ok=True)
        header = (
            "# Claude API key for scoring and tagging (or set ANTHROPIC_API_KEY env var)\n"
            "# claude_api_key: sk-ant-your-key-here\n\n"
            "# linking.similarity_threshold: minimum cosine similarity before a pair is scored\n"
            "# linking.min_ai_score: minimum Claude score (0-10) before a link is written\n\n"
        )
        config_file.write_text(header + yaml.dump(cfg, default_flow_style=False, sort_keys=False))
        console.print(f"  Created config: {config_file}")

    console.print("[bold green]✓ notelink initialized![/]")
    console.print("  Run: notelink run")


@cli.command()
@click.option("--force", is_flag=True, help="Re-embed and rescore every document")
@click.option("--scope", default=None, help="Vault-relative folder to process")
@click.pass_context
def run(ctx, force, scope):
    """Embed changed notes, score related pairs, update links and tags."""
    summary = _run_task(ctx, "Processing documents", lambda wf: wf.run(force=force, scope=scope))
    console.print("[green]✓ Processing complete[/]")
    _print_summary(summary)


@cli.command()
@click.option("--force", is_flag=True, help="Regenerate tags for every document")
@click.option("--scope", default=None, help="Vault-relative folder to process")
@click.pass_context
def tags(ctx, force, scope):
    """Generate tags for indexed notes."""
    summary = _run_task(ctx, "Generating tags", lambda wf: wf.tag(force=force, scope=scope))
    console.print(f"[green]✓ Tagged {summary.tagged} document(s)[/]")
    if summary.tagging_failures:
        console.print(f"[yellow]{summary.tagging_failures} tagging batch(es) failed; retried next time.[/]")


@cli.command()
@click.option("--scope", default=None, help="Vault-relative folder to process")
@click.pass_context
def recalibrate(ctx, scope):
    """Rewrite every link section from stored scores (after changing thresholds)."""
    result = _run_task(ctx, "Recalibrating links", lambda wf: wf.recalibrate(scope=scope))
    console.print(f"[green]✓ Links updated: +{result.added} -{result.removed}[/]")


@cli.command("sync-hashes")
@click.option("--scope", default=None, help="Vault-relative folder to process")
@click.pass_context
def sync_hashes(ctx, scope):
    """Accept current note content as processed without re-embedding."""
    stats = _run_task(ctx, "Syncing hashes", lambda wf: wf.sync_hashes(scope=scope))
    console.print("[green]✓ Hashes synced[/]")
    console.print(f"  Updated: {stats['updated']}")
    console.print(f"  Unchanged: {stats['unchanged']}")
    if stats["unindexed"]:
        console.print(f"  [dim]Not yet indexed: {stats['unindexed']}[/]")


@cli.command()
@click.pass_context
def clean(ctx):
    """Remove index entries for notes that no longer exist."""
    stats = _run_task(ctx, "Cleaning orphans", lambda wf: wf.clean())
    console.print("[green]✓ Cleanup complete[/]")
    console.print(f"  Orphans removed: {stats['orphans_removed']}")
    console.print(f"  Links removed: {stats['links_removed']}")


@cli.command()
@click.option("--scope", default=None, help="Vault-relative folder to check")
@click.pass_context
def health(ctx, scope):
    """Report orphans, missing ids or boundaries and unresolved failures."""
    workflow = _get_workflow(ctx)
    try:
        report = workflow.health(scope=scope)
    except NotelinkError as e:
        console.print(f"[red]{e}[/]")
        ctx.exit(1)

    table = Table(title="Health Check")
    table.add_column("Check", style="cyan")
    table.add_column("Count", justify="right")
    table.add_column("Examples", max_width=60)
    for label, items in [
        ("Orphaned records", report.orphans),
        ("Missing note_id", report.missing_ids),
        ("Not indexed", report.unindexed),
        ("Missing boundary", report.missing_boundary),
        ("Missing embedding", report.missing_embeddings),
        ("Unreadable", report.unreadable),
    ]:
        style = "green" if not items else "yellow"
        table.add_row(label, f"[{style}]{len(items)}[/]", ", ".join(items[:3]))
    for kind, count in report.unresolved_failures.items():
        style = "green" if not count else "yellow"
        table.add_row(f"Unresolved {kind} failures", f"[{style}]{count}[/]", "")
    console.print(table)
    console.print(f"  Documents in scope: {report.documents_in_scope} ({report.indexed} indexed)")
    if report.healthy:
        console.print("[green]✓ All checks passed[/]")


@cli.command()
@click.pass_context
def stats(ctx):
    """Show index and vault statistics."""
    from .maintenance.heartbeat import index_stats, vault_stats

    workflow = _get_workflow(ctx)
    try:
        workflow.store.load(create_if_missing=False)
    except NotelinkError as e:
        console.print(f"[yellow]{e}[/]")
        ctx.exit(1)
    s = index_stats(workflow.store, workflow.failures)
    v = vault_stats(workflow.documents)

    console.print("\n[bold]Index Statistics[/]")
    console.print(f"  Documents: {s['total_documents']}")
    console.print(f"  Embeddings: {s['total_embeddings']}")
    console.print(f"  Scored pairs: {s['total_scores']}")
    console.print(f"  Managed links: {s['ledger_links']}")
    console.print(f"  Tagged documents: {s['tagged_documents']}")
    console.print(f"  Orphaned documents: {s['orphaned_documents']}")
    console.print(f"  Last updated: {s['last_updated']}")
    failures = s.get("unresolved_failures", {})
    if any(failures.values()):
        console.print("\n  [bold]Unresolved failures:[/]")
        for kind, count in failures.items():
            console.print(f"    {kind}: {count}")
    if v.get("folders"):
        console.print(f"\n  [bold]Vault folders ({v['total_documents']} notes):[/]")
        for folder, count in sorted(v["folders"].items()):
            console.print(f"    {folder}: {count}")


@cli.command()
@click.argument("path")
@click.option("--n", "-n", default=10, help="Number of results")
@click.pass_context
def related(ctx, path, n):
    """Show the notes most related to PATH (vault-relative)."""
    workflow = _get_workflow(ctx)
    try:
        results = workflow.related(path, limit=n)
    except NotelinkError as e:
        console.print(f"[red]{e}[/]")
        ctx.exit(1)

    if not results:
        console.print("[yellow]No scored neighbours yet. Have you run 'notelink run'?[/]")
        return

    table = Table(title=f"Related to {path}")
    table.add_column("#", style="dim", width=3)
    table.add_column("Note", style="cyan")
    table.add_column("AI", justify="right", style="green")
    table.add_column("Similarity", justify="right")
    for i, (record, pair) in enumerate(results, 1):
        table.add_row(str(i), record.location, f"{pair.ai_score:.1f}", f"{pair.similarity_score:.3f}")
    console.print(table)


@cli.group()
def failures():
    """Inspect and manage recorded failures."""


def _failure_log(ctx):
    from .failures import FAILURE_FILE, FailureLog

    config = _get_config(ctx)
    try:
        return FailureLog(Path(config["cache_path"]) / FAILURE_FILE)
    except NotelinkError as e:
        console.print(f"[red]{e}[/]")
        ctx.exit(1)


@failures.command("list")
@click.option("--all", "show_all", is_flag=True, help="Include resolved failures")
@click.pass_context
def failures_list(ctx, show_all):
    """List failed batches."""
    log = _failure_log(ctx)
    records = log.entries(include_resolved=show_all)
    if not records:
        console.print("[green]No failures recorded.[/]")
        return

    table = Table(title="Failures")
    table.add_column("ID", style="dim")
    table.add_column("Kind", style="cyan")
    table.add_column("Items", justify="right")
    table.add_column("Error", max_width=50)
    table.add_column("When")
    table.add_column("Resolved")
    for r in records:
        pending = len(r.pending_items)
        items = f"{pending}/{len(r.batch.items)}"
        table.add_row(r.id, r.kind.value, items, r.error.message, r.timestamp[:19], "✓" if r.resolved else "")
    console.print(table)


@failures.command("clear")
@click.confirmation_option(prompt="Delete all failure records, including unresolved ones?")
@click.pass_context
def failures_clear(ctx):
    """Delete every failure record."""
    count = _failure_log(ctx).clear()
    console.print(f"[green]✓ Cleared {count} failure record(s)[/]")


@failures.command("prune")
@click.option("--days", default=None, type=float, help="Age in days (default: failures.retention_days)")
@click.pass_context
def failures_prune(ctx, days):
    """Delete old resolved failure records."""
    config = _get_config(ctx)
    if days is None:
        days = float(config.get("failures", {}).get("retention_days", 30))
    count = _failure_log(ctx).prune(days)
    console.print(f"[green]✓ Pruned {count} resolved failure record(s)[/]")


@cli.command()
@click.option("--debounce", default=2.0, help="Seconds to wait after the last change before applying")
@click.pass_context
def watch(ctx, debounce):
    """Watch the vault and follow note renames and deletions."""
    from .vault.watcher import VaultWatcher

    workflow = _get_workflow(ctx)
    try:
        workflow.store.load()
    except NotelinkError as e:
        console.print(f"[red]{e}[/]")
        ctx.exit(1)
    VaultWatcher(workflow, debounce=debounce, console=console).run()


if __name__ == "__main__":
    cli()
