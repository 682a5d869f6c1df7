"""
Main CLI entry point for the RCRI validation study.

Provides subcommands:
  - rcri execute: Create cohorts, run analyses, package results
  - rcri package-results: Redact and zip an existing results folder
  - rcri validate-config: Check a config file and its settings
"""

import click

from rcri_study import __version__
from rcri_study.config.defaults import RECALIBRATION_ALIASES


@click.group()
@click.version_option(version=__version__, prog_name="rcri")
@click.option(
    "--verbose",
    "-v",
    count=True,
    help="Increase verbosity (-v for debug output)",
)
@click.pass_context
def cli(ctx, verbose):
    """
    RCRI external validation study.

    Validates the Revised Cardiac Risk Index against an OMOP CDM database
    stored in DuckDB.
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose


@cli.command("execute")
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True),
    help="Path to YAML configuration file",
)
@click.option(
    "--create-cohorts",
    is_flag=True,
    default=None,
    help="Create the study and covariate cohorts",
)
@click.option(
    "--run-analyses",
    is_flag=True,
    default=None,
    help="Run every configured analysis",
)
@click.option(
    "--recalibrate",
    type=click.Choice(sorted(RECALIBRATION_ALIASES)),
    default=None,
    help="Recalibration mode",
)
@click.option(
    "--package-results",
    is_flag=True,
    default=None,
    help="Redact and zip the results for sharing",
)
@click.option(
    "--view-results",
    is_flag=True,
    default=None,
    help="Open the results viewer",
)
@click.option(
    "--output-folder",
    type=click.Path(),
    default=None,
    help="Output folder (default: results/)",
)
@click.option(
    "--override",
    multiple=True,
    help="Override config values (format: key=value or nested.key=value)",
)
@click.pass_context
def execute_cmd(ctx, config, recalibrate, output_folder, override, **flags):
    """Run the validation study."""
    from rcri_study.cli.execute import run_execute

    cli_args = {f"execution.{k}": v for k, v in flags.items()}
    cli_args["output_folder"] = output_folder
    cli_args["recalibration.mode"] = RECALIBRATION_ALIASES[recalibrate] if recalibrate else None

    run_execute(
        config_file=config,
        cli_args=cli_args,
        overrides=list(override),
        verbose=ctx.obj.get("verbose", 0),
    )


@cli.command("package-results")
@click.option(
    "--results-dir",
    type=click.Path(exists=True, file_okay=False),
    required=True,
    help="Results folder of one database (<output_folder>/<cdm_database_name>)",
)
@click.option(
    "--min-cell-count",
    type=click.IntRange(min=0),
    default=10,
    show_default=True,
    help="Counts below this are blanked",
)
@click.pass_context
def package_results_cmd(ctx, results_dir, min_cell_count):
    """Redact small counts and zip the result bundles."""
    from rcri_study.cli.execute import run_package_results

    run_package_results(results_dir, min_cell_count, verbose=ctx.obj.get("verbose", 0))


@cli.command("validate-config")
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True),
    required=True,
    help="Path to YAML configuration file",
)
@click.pass_context
def validate_config_cmd(ctx, config):
    """Validate a configuration file and the study settings it uses."""
    from rcri_study.cli.execute import run_validate_config

    run_validate_config(config, verbose=ctx.obj.get("verbose", 0))


if __name__ == "__main__":
    cli()
