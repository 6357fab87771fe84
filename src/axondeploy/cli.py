import logging
import os

import click
from rich.logging import RichHandler

from .core import AxonDeployer, DeployError
from .services.config_loader import DEFAULT_CONFIG_FILENAME, ConfigLoader

logging.basicConfig(
    level="INFO",
    format="%(message)s",
    datefmt="[%X]",
    handlers=[RichHandler(rich_tracebacks=True, show_level=False, show_path=False)],
)


@click.command()
@click.argument("environment", required=False)
@click.option("--all", "all_environments", is_flag=True, help="Deploy every configured environment in turn.")
@click.option(
    "--config",
    required=False,
    type=click.Path(),
    help=f"Path to the YAML configuration file. Defaults to {DEFAULT_CONFIG_FILENAME} if present.",
)
@click.option("--verbose", is_flag=True, help="Enable verbose logging (every remote command).")
@click.option("--log-file", type=click.Path(), help="Path to log file")
@click.option(
    "--report-file",
    type=click.Path(),
    help="Write a JSON run report (per-environment states and outcome) to this path.",
)
@click.option("--image-tag", required=False, help="Image tag to deploy instead of the configured one.")
@click.option(
    "--no-auto-rollback",
    is_flag=True,
    help="Keep an unhealthy new container running for inspection instead of removing it.",
)
def main(environment, all_environments, config, verbose, log_file, report_file, image_tag, no_auto_rollback):
    """Zero-downtime deployment of ENVIRONMENT (or --all) to the configured hosts."""
    logger = logging.getLogger("axondeploy")

    if environment and all_environments:
        raise click.UsageError("Pass either an ENVIRONMENT or --all, not both.")
    if not environment and not all_environments:
        raise click.UsageError("Missing ENVIRONMENT (or use --all).")

    resolved_config = config
    if resolved_config is None:
        default_config_path = os.path.join(os.getcwd(), DEFAULT_CONFIG_FILENAME)
        if os.path.exists(default_config_path):
            resolved_config = default_config_path

    try:
        deploy_config = ConfigLoader().load(resolved_config)
    except DeployError as exc:
        raise click.ClickException(str(exc)) from exc

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.setLevel(logging.DEBUG)
    else:
        logger.setLevel(logging.INFO)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
        file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
        logger.addHandler(file_handler)

    environments = list(deploy_config.environments) if all_environments else [environment]

    try:
        deployer = AxonDeployer(
            config=deploy_config,
            environments=environments,
            report_file=report_file,
            image_tag=image_tag,
            auto_rollback=False if no_auto_rollback else None,
        )
    except DeployError as exc:
        raise click.ClickException(str(exc)) from exc

    raise SystemExit(deployer.run())


if __name__ == "__main__":
    main()
