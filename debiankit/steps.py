"""Concrete provisioning steps."""
import shutil
from pathlib import Path
from typing import List

from debiankit import accounts, debian
from debiankit.config import Settings
from debiankit.debian import AptRepository
from debiankit.errors import Unsupported
from debiankit.runner import ProvisioningStep, RetryPolicy
from debiankit.utils import command_exists, get_sudo_user, is_root, log_action, log_info


BBR_MIN_KERNEL = (4, 9)
BBR_SETTINGS = {
    "net.core.default_qdisc": "fq",
    "net.ipv4.tcp_congestion_control": "bbr",
}


def require_root() -> None:
    """Guard for steps that change system state."""
    if not is_root():
        raise Unsupported("Root privileges required")


def render_sources_list(settings: Settings) -> str:
    """Render the Debian sources list for the configured suite."""
    apt = settings.apt
    components = " ".join(apt.components)
    suite = apt.suite
    return (
        f"# Debian {suite.capitalize()} Sources\n"
        f"deb {apt.mirror} {suite} {components}\n"
        f"deb {apt.security_mirror} {suite}-security {components}\n"
        f"deb {apt.mirror} {suite}-updates {components}\n"
        f"deb {apt.mirror} {suite}-backports {components}\n"
    )


def debian_sources_step(settings: Settings) -> ProvisioningStep:
    """Point apt at the Debian mirrors, keeping a backup of the original list."""
    sources = Path(settings.paths.sources_list)
    backup = Path(settings.paths.sources_backup)
    desired = render_sources_list(settings)

    def configured() -> bool:
        return sources.exists() and sources.read_text() == desired

    def mutate() -> None:
        if sources.exists() and not backup.exists():
            shutil.copy2(sources, backup)
            log_info(f"Original sources list backed up to {backup}")
        log_action(f"Writing {sources}...")
        sources.write_text(desired)
        debian.apt_update()

    return ProvisioningStep(
        name="Debian sources",
        precondition=configured,
        mutation=mutate,
        retry=settings.retry.policy(),
        guard=require_root,
    )


def common_packages_step(settings: Settings) -> ProvisioningStep:
    """Install the baseline packages that are missing."""
    packages = list(settings.apt.common_packages)

    def installed() -> bool:
        return not debian.missing_packages(packages)

    def mutate() -> None:
        missing = debian.missing_packages(packages)
        log_info(f"Installing missing packages: {' '.join(missing)}")
        debian.apt_update()
        debian.apt_install(missing)

    return ProvisioningStep(
        name="Common packages",
        precondition=installed,
        mutation=mutate,
        retry=settings.retry.policy(),
        guard=require_root,
    )


def bbr_step(settings: Settings) -> ProvisioningStep:
    """Enable BBR congestion control with the fq qdisc."""
    sysctl_conf = Path(settings.paths.sysctl_conf)

    def guard() -> None:
        require_root()
        version = debian.kernel_version()
        if version < BBR_MIN_KERNEL:
            raise Unsupported(f"Kernel {version[0]}.{version[1]} does not support BBR (requires 4.9+)")

    def enabled() -> bool:
        return debian.read_sysctl("net.ipv4.tcp_congestion_control") == "bbr"

    def mutate() -> None:
        debian.load_kernel_module("tcp_bbr")
        current = sysctl_conf.read_text() if sysctl_conf.exists() else ""
        lines = [f"{key}={value}" for key, value in BBR_SETTINGS.items()
                 if f"{key}={value}" not in current]
        if lines:
            log_action(f"Adding BBR configuration to {sysctl_conf}...")
            with open(sysctl_conf, 'a') as f:
                f.write("\n# BBR Configuration\n" + "\n".join(lines) + "\n")
        debian.reload_sysctl(sysctl_conf)

    return ProvisioningStep(
        name="BBR",
        precondition=enabled,
        mutation=mutate,
        retry=settings.retry.policy(),
        guard=guard,
    )


def docker_repository(settings: Settings) -> AptRepository:
    docker = settings.docker
    return AptRepository(
        name="Docker",
        key_url=docker.key_url,
        key_path=str(Path(settings.paths.keyrings_dir) / "docker.asc"),
        list_path=docker.list_file,
        source=f"{docker.repo_url} {debian.os_codename()} stable",
        fingerprint=docker.key_fingerprint or None,
    )


def docker_step(settings: Settings) -> ProvisioningStep:
    """Install Docker Engine from the upstream repository."""
    docker = settings.docker

    def guard() -> None:
        require_root()
        arch = debian.dpkg_architecture()
        if arch not in docker.architectures:
            raise Unsupported(f"Docker is not available for architecture {arch}")

    def running() -> bool:
        return command_exists("docker") and debian.is_service_active("docker")

    def mutate() -> None:
        debian.add_apt_repository(docker_repository(settings), debian.dpkg_architecture())
        debian.apt_update()
        debian.apt_install(docker.packages)
        debian.enable_service("docker")
        sudo_user = get_sudo_user()
        if sudo_user and sudo_user != "root":
            debian.add_user_to_group(sudo_user, "docker")
            log_info(f"User {sudo_user} added to docker group")

    return ProvisioningStep(
        name="Docker",
        precondition=running,
        mutation=mutate,
        retry=settings.retry.policy(),
        guard=guard,
    )


def telegraf_repository(settings: Settings) -> AptRepository:
    telegraf = settings.telegraf
    return AptRepository(
        name="InfluxData",
        key_url=telegraf.key_url,
        key_path=telegraf.key_file,
        list_path=telegraf.list_file,
        source=telegraf.repo_line,
        fingerprint=telegraf.key_fingerprint,
        dearmor=True,
    )


def telegraf_step(settings: Settings) -> ProvisioningStep:
    """Install Telegraf from the InfluxData repository."""

    def running() -> bool:
        return command_exists("telegraf") and debian.is_service_active("telegraf")

    def mutate() -> None:
        debian.add_apt_repository(telegraf_repository(settings))
        debian.apt_update()
        debian.apt_install(["telegraf"])
        debian.enable_service("telegraf")

    return ProvisioningStep(
        name="Telegraf",
        precondition=running,
        mutation=mutate,
        retry=settings.retry.policy(),
        guard=require_root,
    )


def init_user_step(username: str) -> ProvisioningStep:
    """Create an operator login with sudo rights and an interactively set password."""

    def ready() -> bool:
        return (debian.user_exists(username)
                and debian.user_in_group(username, "sudo")
                and debian.has_password(username))

    def mutate() -> None:
        created = not debian.user_exists(username)
        if created:
            debian.create_user(username)
        else:
            log_info(f"User {username} already exists")
        debian.add_user_to_group(username, "sudo")
        if created or not debian.has_password(username):
            debian.set_password_interactive(username)

    # passwd is interactive; never re-prompt automatically
    return ProvisioningStep(
        name=f"Initialize user {username}",
        precondition=ready,
        mutation=mutate,
        retry=RetryPolicy(max_attempts=1, backoff=0),
        guard=require_root,
    )


def monitoring_agent_step(settings: Settings) -> ProvisioningStep:
    """Run the monitoring agent under its service account in a tmux session."""
    agent = settings.agent
    binary = Path(agent.binary_path)
    signature = accounts.session_signature(str(binary), agent.args)

    def guard() -> None:
        require_root()
        arch = debian.dpkg_architecture()
        if arch not in agent.architectures:
            raise Unsupported(f"Monitoring agent is not available for architecture {arch}")
        if not command_exists("tmux"):
            raise Unsupported("tmux is required to supervise the monitoring agent")
        if not binary.exists() and not agent.binary_url:
            raise Unsupported(f"{binary} is missing and no agent.binary_url is configured")

    def healthy() -> bool:
        account = accounts.get_service_account(agent.account)
        if account is None:
            return False
        return accounts.session_state(account, agent.session, signature) is accounts.SessionState.HEALTHY

    def mutate() -> None:
        if not binary.exists():
            binary.parent.mkdir(parents=True, exist_ok=True)
            debian.download(agent.binary_url, binary, mode=0o755)
        account = accounts.ensure_service_account(agent.account, agent.preferred_uid)
        accounts.launch_supervised(account, str(binary), agent.args, agent.session)

    return ProvisioningStep(
        name="Monitoring agent",
        precondition=healthy,
        mutation=mutate,
        retry=settings.retry.policy(),
        guard=guard,
    )


def bootstrap_steps(settings: Settings) -> List[ProvisioningStep]:
    """First-run setup applied before the menu is offered."""
    return [debian_sources_step(settings), common_packages_step(settings)]


def install_all_steps(settings: Settings) -> List[ProvisioningStep]:
    """Steps run by the "install all" menu entry."""
    return [bbr_step(settings), docker_step(settings), telegraf_step(settings)]
