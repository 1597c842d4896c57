"""Command-line interface for FilamentGroup."""

import logging
import sys
from pathlib import Path
from typing import List, Optional

import click
import rich.traceback
from rich.console import Console
from rich.table import Table

from . import __version__
from .core.context import FilamentGroupContext, GroupMode
from .core.grouper import group_filaments
from .core.limits import collect_sorted_used_filaments
from .core.nozzle import MultiNozzleGroupResult
from .io.context_loader import load_context, save_result
from .utils.config import ConfigManager
from .utils.logging import setup_logging

# Rich console setup
console = Console()
rich.traceback.install(console=console)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.option("--quiet", "-q", is_flag=True, help="Suppress output")
@click.option(
    "--config", type=click.Path(exists=True), help="Path to configuration file"
)
@click.pass_context
def cli(ctx, verbose: bool, quiet: bool, config):
    """FilamentGroup: filament to extruder and nozzle grouping."""
    ctx.ensure_object(dict)

    config_manager = ConfigManager.from_env(config)

    log_level = getattr(logging, str(config_manager.get("logging.level", "INFO")).upper(), logging.INFO)
    if quiet:
        log_level = logging.ERROR
    elif verbose:
        log_level = logging.DEBUG
    setup_logging(
        level=log_level,
        log_file=config_manager.get("logging.file"),
        enable_colors=config_manager.get("logging.colors", True),
    )

    ctx.obj["config_manager"] = config_manager
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet


def _result_table(
    group_ctx: FilamentGroupContext, labels: List[int], cost: Optional[float], one_based: bool
) -> Table:
    offset = 1 if one_based else 0
    used = set(collect_sorted_used_filaments(group_ctx.model_info.layer_filaments))
    nozzle_labels = group_ctx.is_multi_nozzle

    table = Table(title="Filament Grouping")
    table.add_column("Filament", justify="right")
    table.add_column("Color")
    table.add_column("Type")
    table.add_column("Extruder", justify="right")
    if nozzle_labels:
        table.add_column("Nozzle", justify="right")
        result = MultiNozzleGroupResult(labels, group_ctx.nozzle_info.nozzle_list)

    for filament, info in enumerate(group_ctx.model_info.filament_info):
        hex_color = info.color.to_hex_str()
        row = [
            str(filament + offset) + ("" if filament in used else " (unused)"),
            f"[{hex_color}]■[/] {hex_color}",
            info.type,
        ]
        if nozzle_labels:
            row += [str(result.get_extruder_id(filament) + offset), str(labels[filament] + offset)]
        else:
            row.append(str(labels[filament] + offset))
        table.add_row(*row)

    if cost is not None:
        table.caption = f"Flush cost: {cost:.1f}"
    return table


@cli.command()
@click.argument("context_file", type=click.Path(exists=True))
@click.option("--output", "-o", type=click.Path(), help="Write the result as JSON")
@click.option(
    "--mode",
    type=click.Choice([m.value for m in GroupMode]),
    help="Override the grouping mode of the context",
)
@click.option("--timeout-ms", type=int, help="Clustering time budget in milliseconds")
@click.option(
    "--profile",
    type=click.Choice(["fast", "balanced", "thorough"]),
    help="Apply a predefined search profile",
)
@click.pass_context
def solve(ctx, context_file, output, mode, timeout_ms, profile):
    """Group the filaments of CONTEXT_FILE onto extruders or nozzles."""
    logger = logging.getLogger(__name__)
    try:
        config_manager: ConfigManager = ctx.obj["config_manager"]
        if profile:
            config_manager.apply_profile(profile)
        if timeout_ms is not None:
            config_manager.set("grouping.pam_timeout_ms", timeout_ms)
            config_manager.set("grouping.multi_nozzle_timeout_ms", timeout_ms)

        is_valid, errors = config_manager.validate_config()
        if not is_valid:
            raise click.ClickException("Invalid configuration: " + "; ".join(errors))

        group_ctx = load_context(context_file)
        if mode:
            group_ctx.group_info.mode = GroupMode(mode)

        logger.info(
            f"Grouping {len(collect_sorted_used_filaments(group_ctx.model_info.layer_filaments))} used filaments "
            f"in {group_ctx.group_info.mode.value} mode"
        )
        labels, cost = group_filaments(group_ctx, config_manager.get_grouping_config())

        one_based = bool(config_manager.get("output.one_based", False))
        if not ctx.obj["quiet"]:
            console.print(_result_table(group_ctx, labels, cost, one_based))
        if output:
            save_result(output, labels, cost, one_based=one_based)
            click.echo(f"Result written to {output}")

    except click.ClickException:
        raise
    except Exception as e:
        logger.error(f"Error during grouping: {e}", exc_info=True)
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.option(
    "--output",
    "-o",
    type=click.Path(),
    default="./filamentgroup_config.yaml",
    help="Output configuration file path",
)
@click.option(
    "--profile",
    type=click.Choice(["fast", "balanced", "thorough"]),
    help="Start from a predefined search profile",
)
def init_config(output, profile):
    """Initialize a default configuration file."""
    logger = logging.getLogger(__name__)
    try:
        config_manager = ConfigManager()
        if profile:
            config_manager.apply_profile(profile)
        config_manager.save_config(Path(output))
        click.echo(f"Configuration created at: {output}")
        logger.info(f"Initialized config file at {output} (profile={profile})")

    except Exception as e:
        logger.error(f"Error initializing config: {e}", exc_info=True)
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@cli.command()
def version():
    """Display FilamentGroup version."""
    click.echo(f"FilamentGroup Version: {__version__}")


def main():
    """Main entry point for the CLI."""
    cli(obj={})


if __name__ == "__main__":
    main()
