"""Interactive menu."""
import time
from typing import Callable, Dict, Optional, Tuple

import click
import typer

from debiankit import debian, steps
from debiankit.config import Settings
from debiankit.errors import MutationFailed
from debiankit.runner import BatchReport, StepResult, run_batch, run_step
from debiankit.state import InitializationGate
from debiankit.utils import log_error, log_info, log_success, log_warning


MENU_TITLE = "DebianKit"
MENU_ENTRIES: Tuple[Tuple[str, str], ...] = (
    ("i", "Initialize User"),
    ("1", "Install BBR"),
    ("2", "Install Docker"),
    ("3", "Install Telegraf"),
    ("4", "Install Monitoring Agent"),
    ("9", "Install All"),
    ("r", "Reset First-Run Setup"),
    ("0", "Exit"),
)


def render_menu() -> str:
    rule = "=" * 31
    lines = [rule, f"{MENU_TITLE:^31}", rule]
    lines += [f"{key}. {label}" for key, label in MENU_ENTRIES]
    lines.append(rule)
    return "\n".join(lines)


def summarize(report: BatchReport) -> None:
    """Report which steps of a batch failed."""
    if report.ok:
        log_success("Installation completed!")
    else:
        log_warning(f"Installation finished with failures: {', '.join(report.failed)}")


def init_user() -> Optional[StepResult]:
    username = typer.prompt("Enter username", default="", show_default=False).strip()
    if not username:
        log_error("Username cannot be empty")
        return None
    return run_step(steps.init_user_step(username))


def offer_docker_group() -> None:
    """Let the operator add another existing user to the docker group."""
    user = typer.prompt("Add user to docker group? Enter username (or press Enter to skip)",
                        default="", show_default=False).strip()
    if not user:
        return
    if not debian.user_exists(user):
        log_error(f"User '{user}' does not exist")
        return
    try:
        debian.add_user_to_group(user, "docker")
    except MutationFailed as e:
        log_error(str(e))
        return
    log_success(f"User '{user}' added to docker group")


def install_docker(settings: Settings) -> StepResult:
    result = run_step(steps.docker_step(settings))
    if result.ok:
        offer_docker_group()
    return result


def install_all(settings: Settings, sleep: Callable[[float], None] = time.sleep) -> BatchReport:
    log_info("Installing all components...")
    report = run_batch(steps.install_all_steps(settings), sleep=sleep)
    summarize(report)
    if typer.confirm("Reboot system now?", default=False):
        typer.echo("Rebooting in 3 seconds...")
        sleep(3)
        try:
            debian.reboot()
        except MutationFailed as e:
            log_error(str(e))
    return report


def reset_setup(gate: InitializationGate) -> None:
    gate.reset_bootstrap()
    log_success("First-run setup will run again on next start")


def build_actions(settings: Settings, gate: InitializationGate) -> Dict[str, Callable[[], object]]:
    return {
        "i": init_user,
        "1": lambda: run_step(steps.bbr_step(settings)),
        "2": lambda: install_docker(settings),
        "3": lambda: run_step(steps.telegraf_step(settings)),
        "4": lambda: run_step(steps.monitoring_agent_step(settings)),
        "9": lambda: install_all(settings),
        "r": lambda: reset_setup(gate),
    }


def run_menu(settings: Settings, gate: InitializationGate) -> None:
    """Show the menu until the operator exits."""
    actions = build_actions(settings, gate)
    keys = "/".join(key for key, _ in MENU_ENTRIES)

    while True:
        click.clear()
        typer.echo(render_menu())
        typer.echo("")
        choice = typer.prompt(f"Select option [{keys}]", default="", show_default=False).strip().lower()

        if choice == "0":
            log_info("Exiting")
            return

        action = actions.get(choice)
        if action is None:
            log_error("Invalid option")
        else:
            action()

        typer.echo("")
        typer.prompt("Press Enter to continue", default="", show_default=False)
