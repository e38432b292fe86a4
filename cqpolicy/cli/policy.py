"""
Policy CLI commands for cqpolicy.

Provides command-line interface for policy operations including:
- Downloading policy bundles from the hub
- Describing policy trees
- Running policies against the provider database
"""

import sys
from pathlib import Path
from typing import Dict, Tuple

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.tree import Tree

from cqpolicy.config import settings
from cqpolicy.database.engine import create_db_engine
from cqpolicy.policy.manager import PolicyManager
from cqpolicy.policy.models import ExecuteRequest, ExecutionResult, Policy, QueryResult

from .utils import handle_async_command

console = Console()


def _cache_dir(ctx: click.Context) -> Path:
    obj = ctx.find_root().obj or {}
    return Path(obj.get('CACHE_DIR') or settings.CACHE_DIR)


def _parse_providers(values: Tuple[str, ...]) -> Dict[str, str]:
    versions: Dict[str, str] = {}
    for value in values:
        name, sep, version = value.partition('=')
        if not sep or not name.strip() or not version.strip():
            raise click.BadParameter(f"expected NAME=VERSION, got {value!r}", param_hint='--provider')
        versions[name.strip()] = version.strip()
    return versions


def _policy_tree(policy: Policy) -> Tree:
    def label(node: Policy) -> str:
        text = f"[bold]{node.name}[/bold] [dim]({node.source})[/dim]"
        if node.provider_requirements:
            reqs = ", ".join(f"{p} {c}" for p, c in node.provider_requirements.items())
            text += f" [yellow]requires {reqs}[/yellow]"
        return text

    def add(branch: Tree, node: Policy) -> None:
        for query in node.queries:
            branch.add(f"[cyan]{query.name}[/cyan]" + (f" - {query.description}" if query.description else ""))
        for child in node.policies:
            add(branch.add(label(child)), child)

    tree = Tree(label(policy))
    add(tree, policy)
    return tree


def _results_table(result: ExecutionResult) -> Table:
    table = Table(title="Policy Results")
    table.add_column("Query", style="cyan")
    table.add_column("Status")
    table.add_column("Rows", justify="right")
    table.add_column("Details")
    for key, query_result in result.results.items():
        status = "[green]PASS[/green]" if query_result.passed else "[red]FAIL[/red]"
        details = query_result.error or query_result.description or ""
        table.add_row(key, status, str(len(query_result.rows)), escape(details))
    return table


@click.group(name='policy')
def policy_cli():
    """Policy hub commands."""
    pass


@policy_cli.command()
@click.argument('hub_path')
@click.argument('subpath', required=False, default="")
@click.option('--ref', default="", help='Ref to use when HUB_PATH has no @ref.')
@click.pass_context
@handle_async_command
async def download(ctx, hub_path, subpath, ref):
    """Downloads a policy bundle from the hub into the cache."""
    manager = PolicyManager(cache_dir=_cache_dir(ctx))
    reference = manager.parse_policy_hub_path([hub_path, subpath], ref)
    console.print(f"[bold blue]Downloading policy {reference}[/bold blue]")
    bundle = await manager.download_policy(reference)
    console.print(f"[green]✅ Policy downloaded to {bundle.path}[/green]")
    console.print(f"[cyan]Digest[/cyan]: {bundle.digest}")


@policy_cli.command()
@click.argument('hub_path')
@click.argument('subpath', required=False, default="")
@click.option('--ref', default="", help='Ref to use when HUB_PATH has no @ref.')
@click.option('--no-download', is_flag=True, help='Use the cached bundle without fetching.')
@click.pass_context
@handle_async_command
async def describe(ctx, hub_path, subpath, ref, no_download):
    """Shows the policy tree of a bundle."""
    manager = PolicyManager(cache_dir=_cache_dir(ctx))
    reference = manager.parse_policy_hub_path([hub_path, subpath], ref)
    if not no_download:
        await manager.download_policy(reference)
    policy = manager.load_policy(reference)
    console.print(_policy_tree(policy))
    console.print(f"[cyan]Total queries[/cyan]: {policy.query_count()}")


@policy_cli.command()
@click.argument('hub_path')
@click.argument('subpath', required=False, default="")
@click.option('--ref', default="", help='Ref to use when HUB_PATH has no @ref.')
@click.option('--provider', '-p', 'providers', multiple=True, help='Provider version as NAME=VERSION.')
@click.option('--stop-on-failure', is_flag=True, help='Abort on the first failure.')
@click.option('--db-url', default=None, help='Provider database URL (default: CQPOLICY_DB_URL).')
@click.option('--no-download', is_flag=True, help='Use the cached bundle without fetching.')
@click.option('--output', type=click.Choice(['table', 'json']), default='table', help='Output format.')
@click.pass_context
@handle_async_command
async def run(ctx, hub_path, subpath, ref, providers, stop_on_failure, db_url, no_download, output):
    """Runs a policy against the provider database."""
    provider_versions = _parse_providers(providers)
    engine = create_db_engine(db_url)
    try:
        manager = PolicyManager(cache_dir=_cache_dir(ctx), engine=engine)
        reference = manager.parse_policy_hub_path([hub_path, subpath], ref)
        if not no_download:
            await manager.download_policy(reference)
        policy = manager.load_policy(reference)

        def report(key: str, query_result: QueryResult) -> None:
            if output == 'table':
                mark = "[green]✓[/green]" if query_result.passed else "[red]✗[/red]"
                console.print(f"{mark} {key}")

        result = await manager.run_policy(ExecuteRequest(
            policy=policy,
            provider_versions=provider_versions,
            stop_on_failure=stop_on_failure,
            update_callback=report,
        ))
    finally:
        engine.dispose()

    if output == 'json':
        click.echo(result.model_dump_json(indent=2))
    else:
        console.print(_results_table(result))
        for error in result.errors:
            console.print(f"[yellow]Skipped: {escape(error)}[/yellow]")
        if result.passed:
            console.print("[green]✅ Policy passed[/green]")
        else:
            console.print("[red]Policy failed[/red]")

    if not result.passed:
        sys.exit(1)
