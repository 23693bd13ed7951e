"""Settings for the provisioning tool."""
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import List, Optional, Union, get_args, get_origin

import yaml

from debiankit.errors import ConfigError
from debiankit.runner import RetryPolicy


DEFAULT_CONFIG_PATH = Path("/etc/debiankit/config.yaml")


@dataclass(frozen=True)
class PathsConfig:
    """Files the tool reads and writes."""
    marker_file: str = "/var/lib/debiankit/initialized"
    sources_list: str = "/etc/apt/sources.list"
    sources_backup: str = "/etc/apt/sources.list.backup"
    sysctl_conf: str = "/etc/sysctl.conf"
    keyrings_dir: str = "/etc/apt/keyrings"


@dataclass(frozen=True)
class AptConfig:
    """Debian mirrors and baseline packages."""
    suite: str = "bookworm"
    mirror: str = "http://deb.debian.org/debian/"
    security_mirror: str = "http://security.debian.org/debian-security"
    components: List[str] = field(
        default_factory=lambda: ["main", "contrib", "non-free", "non-free-firmware"])
    common_packages: List[str] = field(
        default_factory=lambda: ["ca-certificates", "curl", "vim", "sudo"])


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = 3
    backoff: float = 5.0

    def __post_init__(self):
        self.policy()

    def policy(self) -> RetryPolicy:
        return RetryPolicy(max_attempts=self.max_attempts, backoff=self.backoff)


@dataclass(frozen=True)
class DockerConfig:
    key_url: str = "https://download.docker.com/linux/debian/gpg"
    key_fingerprint: str = "9DC858229FC7DD38854AE2D88D81803C0EBFCD88"
    repo_url: str = "https://download.docker.com/linux/debian"
    list_file: str = "/etc/apt/sources.list.d/docker.list"
    packages: List[str] = field(default_factory=lambda: [
        "docker-ce", "docker-ce-cli", "containerd.io",
        "docker-buildx-plugin", "docker-compose-plugin",
    ])
    architectures: List[str] = field(default_factory=lambda: ["amd64", "arm64", "armhf", "ppc64el", "s390x"])


@dataclass(frozen=True)
class TelegrafConfig:
    key_url: str = "https://repos.influxdata.com/influxdata-archive.key"
    key_fingerprint: str = "24C975CBA61A024EE1B631787C3D57159FC2F927"
    key_file: str = "/etc/apt/trusted.gpg.d/influxdata-archive.gpg"
    repo_line: str = "https://repos.influxdata.com/debian stable main"
    list_file: str = "/etc/apt/sources.list.d/influxdata.list"


@dataclass(frozen=True)
class AgentConfig:
    """Monitoring agent run under a dedicated account inside tmux."""
    account: str = "monitor"
    preferred_uid: int = 1500
    binary_url: str = ""
    binary_path: str = "/opt/monitor-agent/agent"
    args: List[str] = field(default_factory=list)
    session: str = "monitor-agent"
    architectures: List[str] = field(default_factory=lambda: ["amd64", "arm64"])


@dataclass(frozen=True)
class Settings:
    paths: PathsConfig = field(default_factory=PathsConfig)
    apt: AptConfig = field(default_factory=AptConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    docker: DockerConfig = field(default_factory=DockerConfig)
    telegraf: TelegrafConfig = field(default_factory=TelegrafConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)


def _type_name(expected) -> str:
    if get_origin(expected) is list:
        return f"a list of {get_args(expected)[0].__name__}"
    return f"of type {expected.__name__}"


def _matches(expected, value) -> bool:
    # bool is an int subclass, but "max_attempts: yes" is still a mistake
    if isinstance(value, bool):
        return expected is bool
    if expected is float:
        return isinstance(value, (int, float))
    if get_origin(expected) is list:
        item_type = get_args(expected)[0]
        return isinstance(value, list) and all(isinstance(item, item_type) for item in value)
    return isinstance(value, expected)


def _build_section(section_type, name: str, data):
    if not isinstance(data, dict):
        raise ConfigError(f"Section '{name}' must be a mapping")
    known = {f.name: f.type for f in fields(section_type)}
    unknown = sorted(str(key) for key in set(data) - set(known))
    if unknown:
        raise ConfigError(f"Unknown keys in section '{name}': {', '.join(unknown)}")
    for key, value in data.items():
        if not _matches(known[key], value):
            raise ConfigError(f"'{name}.{key}' must be {_type_name(known[key])}, got {value!r}")
    try:
        return section_type(**data)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid section '{name}': {e}") from e


def load_settings(path: Optional[Union[str, Path]] = None) -> Settings:
    """Load settings from a YAML file; without a file the defaults apply."""
    config_path = Path(path) if path else DEFAULT_CONFIG_PATH
    if not config_path.exists():
        if path:
            raise ConfigError(f"Config file not found: {config_path}")
        return Settings()

    try:
        with open(config_path, 'r') as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"{config_path} must contain a mapping")

    sections = {f.name: f.default_factory for f in fields(Settings)}
    unknown = sorted(set(data) - set(sections))
    if unknown:
        raise ConfigError(f"Unknown sections: {', '.join(unknown)}")

    kwargs = {}
    for name, factory in sections.items():
        if name in data:
            kwargs[name] = _build_section(factory, name, data[name])
    return Settings(**kwargs)
