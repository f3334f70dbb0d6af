"""Main CLI entry point for the GitLab to Azure DevOps Migration Tool."""

import sys
from typing import Optional
from pathlib import Path

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ..config.config import Config
from ..utils.logging import setup_logging
from ..migration.batch import load_batch_file
from ..migration.engine import MigrationEngine
from ..migration.state import MigrationStore
from ..models.migration import (
    BatchRunReport,
    MigrationOutcome,
    MigrationRequest,
    PreconditionReport,
)

console = Console()

DEFAULT_CONFIG_PATHS = ['config.yaml', 'config.yml', '.gitlab-ado-migrate.yaml']


@click.group()
@click.version_option(version='0.1.0', prog_name='gitlab-ado-migrate')
@click.option(
    '--config',
    '-c',
    type=click.Path(exists=True),
    help='Path to configuration file',
)
@click.option(
    '--verbose',
    '-v',
    is_flag=True,
    help='Enable verbose logging',
)
@click.pass_context
def cli(ctx: click.Context, config: Optional[str], verbose: bool) -> None:
    """GitLab to Azure DevOps Migration Tool - Mirror repositories and provision projects."""
    ctx.ensure_object(dict)

    if config:
        ctx.obj['config_path'] = config
    ctx.obj['verbose'] = verbose

    setup_logging('DEBUG' if verbose else 'INFO')


@cli.command()
@click.option(
    '--output',
    '-o',
    default='config.yaml',
    help='Output configuration file path',
)
def init(output: str) -> None:
    """Initialize a new configuration file."""
    console.print(
        Panel.fit(
            '[bold green]GitLab to Azure DevOps Migration Tool[/bold green]\n'
            'Initializing configuration...',
            border_style='green',
        )
    )

    try:
        Config.create_template(output)
        console.print(f'[green]✓[/green] Configuration template created at: {output}')
        console.print(
            f'[yellow]Please edit {output} with your GitLab and Azure DevOps details[/yellow]'
        )
    except OSError as e:
        console.print(f'[red]✗[/red] Failed to create configuration: {e}')
        sys.exit(1)


def _request_options(func):
    func = click.option(
        '--sync', is_flag=True, help='Update an already migrated repository'
    )(func)
    func = click.option(
        '--repository', '-r', help='Target repository name (defaults to the source name)'
    )(func)
    func = click.option(
        '--project', '-p', required=True, help='Target Azure DevOps project'
    )(func)
    return click.argument('source_path')(func)


@cli.command()
@_request_options
@click.pass_context
def validate(
    ctx: click.Context,
    source_path: str,
    project: str,
    repository: Optional[str],
    sync: bool,
) -> None:
    """Check connectivity and preconditions without changing anything."""
    console.print(
        Panel.fit(
            '[bold cyan]GitLab to Azure DevOps Migration Tool[/bold cyan]\n'
            'Validating migration...',
            border_style='cyan',
        )
    )

    try:
        config = _load_config(ctx)
        _setup_logging_with_config(ctx, config)

        with MigrationEngine(config) as engine:
            engine.test_connectivity()
            console.print('[green]✓[/green] Connectivity validation passed')
            report = engine.validate(
                MigrationRequest(
                    source_path=source_path,
                    target_project=project,
                    repository_name=repository,
                    sync=sync,
                )
            )
    except Exception as e:
        console.print(f'[red]✗[/red] Validation failed: {e}')
        if ctx.obj.get('verbose'):
            console.print_exception()
        sys.exit(1)

    _display_report(report)
    if not report.ready:
        sys.exit(2)


@cli.command()
@_request_options
@click.pass_context
def migrate(
    ctx: click.Context,
    source_path: str,
    project: str,
    repository: Optional[str],
    sync: bool,
) -> None:
    """Migrate (or, with --sync, re-sync) one repository."""
    console.print(
        Panel.fit(
            '[bold blue]GitLab to Azure DevOps Migration Tool[/bold blue]\n'
            f'{"Syncing" if sync else "Migrating"} {source_path} -> {project}',
            border_style='blue',
        )
    )

    try:
        config = _load_config(ctx)
        _setup_logging_with_config(ctx, config)

        with MigrationEngine(config) as engine:
            with console.status('[blue]Migration in progress...'):
                outcome = engine.migrate(
                    MigrationRequest(
                        source_path=source_path,
                        target_project=project,
                        repository_name=repository,
                        sync=sync,
                    )
                )
    except Exception as e:
        console.print(f'[red]✗[/red] Migration failed: {e}')
        if ctx.obj.get('verbose'):
            console.print_exception()
        sys.exit(1)

    _display_outcome(outcome)
    if not outcome.succeeded:
        sys.exit(2)


@cli.command()
@click.argument('batch_file', type=click.Path(exists=True))
@click.option('--project', '-p', help='Default target project for items without one')
@click.option('--sync', is_flag=True, help='Update already migrated repositories')
@click.pass_context
def batch(ctx: click.Context, batch_file: str, project: Optional[str], sync: bool) -> None:
    """Migrate every source path listed in BATCH_FILE."""
    console.print(
        Panel.fit(
            '[bold blue]GitLab to Azure DevOps Migration Tool[/bold blue]\n'
            f'Batch migration from {batch_file}',
            border_style='blue',
        )
    )

    try:
        config = _load_config(ctx)
        _setup_logging_with_config(ctx, config)
        items = load_batch_file(batch_file)

        with MigrationEngine(config) as engine:
            with console.status(f'[blue]Migrating {len(items)} item(s)...'):
                report = engine.run_batch(items, target_project=project, sync_mode=sync)
    except Exception as e:
        console.print(f'[red]✗[/red] Batch failed: {e}')
        if ctx.obj.get('verbose'):
            console.print_exception()
        sys.exit(1)

    _display_batch_report(report)
    if report.failed:
        sys.exit(2)


@cli.command()
@click.argument('project')
@click.pass_context
def scaffold(ctx: click.Context, project: str) -> None:
    """Provision PROJECT with the wiki, groups and templates from the configuration."""
    console.print(
        Panel.fit(
            '[bold green]GitLab to Azure DevOps Migration Tool[/bold green]\n'
            f'Scaffolding project {project}',
            border_style='green',
        )
    )

    try:
        config = _load_config(ctx)
        _setup_logging_with_config(ctx, config)

        with MigrationEngine(config) as engine:
            result = engine.scaffold(project)
    except Exception as e:
        console.print(f'[red]✗[/red] Scaffolding failed: {e}')
        if ctx.obj.get('verbose'):
            console.print_exception()
        sys.exit(1)

    table = Table(title=f'Scaffold: {project}')
    table.add_column('Kind', style='cyan')
    table.add_column('Name', style='blue')
    table.add_column('Status', style='green')
    for resource in result.resources:
        table.add_row(
            resource.kind.value,
            resource.name,
            'created' if resource.created else 'present',
        )
    console.print(table)


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show recorded migrations and failures."""
    console.print(
        Panel.fit(
            '[bold magenta]GitLab to Azure DevOps Migration Tool[/bold magenta]\n'
            'Migration Status',
            border_style='magenta',
        )
    )

    try:
        config = _load_config(ctx)
        _setup_logging_with_config(ctx, config)
        store = MigrationStore(config.migration.state_dir)
        records = store.list_records()
        errors = store.list_errors()
    except Exception as e:
        console.print(f'[red]✗[/red] Failed to load status: {e}')
        if ctx.obj.get('verbose'):
            console.print_exception()
        sys.exit(1)

    table = Table(title='Migrations')
    table.add_column('Source', style='cyan')
    table.add_column('Target', style='blue')
    table.add_column('Kind', style='green')
    table.add_column('Count', style='green')
    table.add_column('Completed', style='yellow')
    for record in records:
        table.add_row(
            record.source_path,
            f'{record.target_project}/{record.target_repository_name}',
            record.kind.value,
            str(record.migration_count),
            record.completed_at.strftime('%Y-%m-%d %H:%M:%S'),
        )
    console.print(table)

    if errors:
        console.print(f'\n[red]Failed attempts ({len(errors)}):[/red]')
        for error in errors:
            step = error.last_completed_step.value if error.last_completed_step else 'none'
            console.print(
                f'  • {error.source_path} -> {error.target_project}/{error.repository_name}: '
                f'{error.message} (last completed step: {step})'
            )


def _load_config(ctx: click.Context) -> Config:
    """Load configuration from file or environment."""
    config_path = ctx.obj.get('config_path')

    if config_path:
        return Config.from_file(config_path)

    for path in DEFAULT_CONFIG_PATHS:
        if Path(path).exists():
            return Config.from_file(path)

    try:
        return Config.from_env()
    except ValueError as e:
        raise FileNotFoundError(
            'No configuration found. Use --config to specify a file or run '
            '"gitlab-ado-migrate init" to create one.'
        ) from e


def _setup_logging_with_config(ctx: click.Context, config: Config) -> None:
    """Setup logging with configuration from config file."""
    log_level = 'DEBUG' if ctx.obj.get('verbose', False) else config.logging.level
    setup_logging(
        level=log_level, log_file=config.logging.file, log_format=config.logging.format
    )


def _display_report(report: PreconditionReport) -> None:
    table = Table(title='Precondition Report')
    table.add_column('Check', style='cyan')
    table.add_column('Value', style='green')

    source = report.source
    table.add_row('Source', report.source_path)
    table.add_row('Target', f'{report.target_project}/{report.repository_name}')
    if source is not None:
        table.add_row('Size (bytes)', str(source.size))
        table.add_row('LFS', '✓' if source.lfs_enabled else '✗')
        table.add_row('Default branch', source.default_branch or '-')
        table.add_row('Visibility', source.visibility or '-')
    table.add_row('Target project exists', '✓' if report.target_project_exists else '✗')
    table.add_row('Target repository exists', '✓' if report.target_repository_exists else '✗')
    table.add_row('Sync mode', '✓' if report.sync_mode else '✗')
    table.add_row('Ready', '[green]✓[/green]' if report.ready else '[red]✗[/red]')
    console.print(table)

    if report.blocking_issues:
        console.print(f'\n[red]Blocking issues ({len(report.blocking_issues)}):[/red]')
        for issue in report.blocking_issues:
            console.print(f'  • {issue}')


def _display_outcome(outcome: MigrationOutcome) -> None:
    if outcome.record is None:
        _display_report(outcome.report)
        console.print(f'[yellow]Migration {outcome.state.value}[/yellow]')
        return

    record = outcome.record
    console.print(
        f'[green]✓[/green] {record.kind.value} migration of {record.source_path} '
        f'completed in {record.duration_seconds:.2f}s '
        f'(migration #{record.migration_count})'
    )


def _display_batch_report(report: BatchRunReport) -> None:
    table = Table(title='Batch Summary')
    table.add_column('#', style='cyan')
    table.add_column('Source', style='blue')
    table.add_column('Target project', style='blue')
    table.add_column('State', style='green')
    table.add_column('Message', style='yellow')

    for result in report.results:
        state = (
            f'[green]{result.state.value}[/green]'
            if result.success
            else f'[red]{result.state.value}[/red]'
        )
        table.add_row(
            str(result.index),
            result.source_path,
            result.target_project,
            state,
            result.message or '',
        )
    console.print(table)
    console.print(
        f'\n[blue]{report.succeeded} of {report.total} succeeded, {report.failed} failed[/blue]'
    )


def main() -> None:
    """Main entry point."""
    cli()


if __name__ == '__main__':
    main()
