"""CLI interface for the provisioning tool."""
import os
from typing import Optional

import typer

from . import utils
from . import config
from . import menu
from . import state
from . import steps
from . import wordpress
from .errors import ConfigError, Unsupported
from .runner import StepOutcome, run_step


def _load(config_path: Optional[str]) -> config.Settings:
    try:
        return config.load_settings(config_path)
    except ConfigError as e:
        typer.echo(f"❗ {e}")
        raise typer.Exit(2)


def setup(
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Path to a YAML settings file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose output"),
):
    """Interactive Debian server provisioning tool."""
    utils.setup_logging(verbose)

    if not utils.is_root():
        typer.echo("❗ Root privileges required. Run with sudo.")
        raise typer.Exit(1)

    settings = _load(config_path)
    gate = state.InitializationGate(state.MarkerStore(settings.paths.marker_file))
    state.bootstrap(gate, steps.bootstrap_steps(settings))

    menu.run_menu(settings, gate)


app = typer.Typer(
    name="debiankit",
    help="An interactive Debian server provisioning tool.",
    add_completion=False,
    invoke_without_command=True,
    callback=setup,
)


def _prompt_install_path() -> str:
    while True:
        path = typer.prompt("Target directory", default="", show_default=False).strip()
        if not path:
            utils.log_error("Directory name cannot be empty")
            continue
        if not os.path.isdir(path):
            return path
        utils.log_warning("Directory already exists")
        if typer.confirm("Continue?", default=False):
            return path


def _prompt_prefix() -> str:
    while True:
        raw = typer.prompt("Table prefix", default="wp_")
        try:
            prefix = wordpress.normalize_prefix(raw)
        except ValueError as e:
            utils.log_error(str(e))
            continue
        if prefix != raw:
            utils.log_warning(f"Appended an underscore to the prefix: {prefix}")
        return prefix


def prompt_wordpress_options() -> wordpress.WordPressOptions:
    """Collect installation options from the operator."""
    install_path = _prompt_install_path()
    owner = typer.prompt("Owner", default="www-data")
    group = typer.prompt("Group", default="www-data")
    wordpress.validate_owner(owner, group)

    db_name = typer.prompt("Database name")
    db_user = typer.prompt("Database user")
    db_password = typer.prompt("Database password", hide_input=True)
    db_host = typer.prompt("Database host", default="localhost")
    table_prefix = _prompt_prefix()

    return wordpress.WordPressOptions(
        install_path=install_path,
        db_name=db_name,
        db_user=db_user,
        db_password=db_password,
        db_host=db_host,
        table_prefix=table_prefix,
        owner=owner,
        group=group,
    )


def confirm_wordpress_options(options: wordpress.WordPressOptions) -> bool:
    typer.echo("\nConfiguration:")
    typer.echo(f"  Install directory: {options.install_path}")
    typer.echo(f"  Owner:             {options.owner}")
    typer.echo(f"  Group:             {options.group}")
    typer.echo(f"  Database host:     {options.db_host}")
    typer.echo(f"  Database name:     {options.db_name}")
    typer.echo(f"  Database user:     {options.db_user}")
    typer.echo(f"  Table prefix:      {options.table_prefix}")
    return typer.confirm("\nProceed with these settings?", default=False)


def install_wordpress_command(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose output"),
):
    """Download, verify and configure a WordPress release."""
    utils.setup_logging(verbose)
    utils.log_info("WordPress installer starting")

    try:
        wordpress.check_requirements()
        options = prompt_wordpress_options()
    except Unsupported as e:
        utils.log_error(str(e))
        raise typer.Exit(1)

    result = run_step(wordpress.wordpress_step(options, confirm=lambda: confirm_wordpress_options(options)))
    if not result.ok:
        raise typer.Exit(1)
    if result.outcome is not StepOutcome.SUCCEEDED:
        return

    typer.echo(f"\nInstall directory: {options.install_path}")
    typer.echo("Make sure the database exists and the credentials are correct.")
    typer.echo("Next steps:")
    typer.echo(f"1. Point your web server at {options.install_path}")
    typer.echo("2. Visit the site to finish the WordPress setup")


wordpress_app = typer.Typer(
    name="install-wordpress",
    help="Install WordPress into a directory.",
    add_completion=False,
    invoke_without_command=True,
    callback=install_wordpress_command,
)


if __name__ == "__main__":
    app()
