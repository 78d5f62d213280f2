"""Command line entry point for cost rollups and backlog projections."""

import logging
from typing import Optional

import click

from services.azure_devops_service import AzureDevOpsService, AzureDevOpsAuthenticationError, AzureDevOpsApiError
from services.config_service import ConfigurationError, load_ado_connection, load_backlog_config, load_settings
from services.cost_rollup_service import CostRollupService
from services.logging_service import setup_logging
from services.projection_service import ProjectionService
from services.report_service import build_plan_workbook, format_plan_lines, format_projection_lines
from services.rollup_service import RollupError

logger = logging.getLogger(__name__)


def _azure_devops(settings) -> AzureDevOpsService:
    connection = load_ado_connection(settings)
    return AzureDevOpsService(connection.pat, connection.organization, connection.project,
                              api_version=settings.api_version)


@click.group()
@click.option("--settings", "settings_path", type=click.Path(dir_okay=False),
              help="Tool settings file (defaults to config/default.json).")
@click.option("--debug", is_flag=True, help="Write debug output to the log file.")
@click.pass_context
def cli(ctx: click.Context, settings_path: Optional[str], debug: bool) -> None:
    """Roll up Azure DevOps cost fields and project backlogs against capacity."""
    setup_logging(log_level=logging.DEBUG if debug else logging.INFO)
    try:
        ctx.obj = load_settings(settings_path)
    except ConfigurationError as e:
        raise click.ClickException(str(e))


@cli.command("rollup")
@click.option("-c", "--config", "config_path", type=click.Path(exists=True, dir_okay=False),
              help="Backlog config file with the area paths to process.")
@click.option("-i", "--iterationpath", help="Only roll up Features in this iteration, like MSTeams\\2021\\Q1.")
@click.option("-q", "--queryid", help="Roll up the work items returned by this saved tree query.")
@click.option("-f", "--forcecap", type=click.IntRange(min=1),
              help="Update no more than N work items in this run.")
@click.option("-v", "--verbose", is_flag=True, help="Also show items computed but skipped for update.")
@click.option("-n", "--safe", is_flag=True, help="Compute the rollups without writing them (default).")
@click.option("-a", "--apply", is_flag=True, help="Compute the rollups and write them to Azure DevOps.")
@click.option("--plan-file", type=click.Path(dir_okay=False),
              help="Also save the update plan as an Excel workbook.")
@click.pass_obj
def rollup_cmd(settings, config_path: Optional[str], iterationpath: Optional[str], queryid: Optional[str],
               forcecap: Optional[int], verbose: bool, safe: bool, apply: bool, plan_file: Optional[str]) -> None:
    """Recompute cost fields from the leaves up and write the differences back.

    Saved parent costs are ignored and overwritten. Items whose cost fields are
    all blank through the hierarchy are left alone.
    """
    if not queryid and not config_path:
        raise click.UsageError("Either --config or --queryid is required.")
    if safe and apply:
        raise click.UsageError("--safe and --apply cannot be combined.")

    if forcecap:
        click.echo(f"Capping updates to max of {forcecap}.")
    if apply:
        click.echo("Apply mode enabled, updates will be computed and persisted to Azure DevOps.")
    else:
        click.echo("Safe mode enabled, updates will be computed, but not persisted. Use --apply to write.")

    try:
        backlog = load_backlog_config(config_path) if config_path else None
        service = CostRollupService(_azure_devops(settings), settings)
        outcome = service.run(
            area_paths=backlog.area_paths if backlog else None,
            iteration_path=iterationpath,
            query_extension=backlog.query_extension_for_rollup if backlog else None,
            query_id=queryid,
            apply=apply,
            force_cap=forcecap
        )
    except (ConfigurationError, ValueError, RollupError, AzureDevOpsAuthenticationError, AzureDevOpsApiError) as e:
        logger.error(f"Rollup failed: {str(e)}")
        raise click.ClickException(str(e))

    for line in format_plan_lines(outcome.plan, verbose):
        click.echo(line)

    if plan_file:
        build_plan_workbook(outcome.plan, plan_file, verbose)
        click.echo(f"Update plan saved to {plan_file}")

    if outcome.write_error is not None:
        raise click.ClickException(f"Writing updates failed: {outcome.write_error}")

    click.echo(f"Count of work items updated: {outcome.updated_count}")


@cli.command("projection")
@click.option("-c", "--config", "config_path", required=True, type=click.Path(exists=True, dir_okay=False),
              help="Backlog config file with area paths and capacity.")
@click.option("-i", "--iterationpath", required=True, help="Iteration to project, like MSTeams\\2021\\Q1.")
@click.pass_obj
def projection_cmd(settings, config_path: str, iterationpath: str) -> None:
    """Show cumulative remaining work in stack rank order with the capacity cut line."""
    try:
        backlog = load_backlog_config(config_path)
        if not backlog.area_paths:
            raise ConfigurationError(f"areaPaths not setup correctly in '{config_path}'")
        service = ProjectionService(_azure_devops(settings), settings)
        result = service.run(backlog.area_paths, iterationpath, backlog.capacity,
                             backlog.query_extension_for_projection)
    except (ConfigurationError, ValueError, AzureDevOpsAuthenticationError, AzureDevOpsApiError) as e:
        logger.error(f"Projection failed: {str(e)}")
        raise click.ClickException(str(e))

    for line in format_projection_lines(result):
        click.echo(line)


if __name__ == "__main__":
    cli()
