"""Debian system surfaces: packages, services, kernel, keys and repositories."""
import grp
import os
import platform
import pwd
import re
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union

import sh

from debiankit.errors import MutationFailed, PreconditionUnknown, Unsupported
from debiankit.utils import log_action, log_debug


PROC_SYS = Path("/proc/sys")


def _apt_env() -> dict:
    return {**os.environ, "DEBIAN_FRONTEND": "noninteractive"}


def _stderr(e: sh.ErrorReturnCode) -> str:
    return e.stderr.decode(errors="replace").strip() if e.stderr else ""


# Packages

def is_package_installed(package: str) -> bool:
    """Check whether dpkg reports a package as installed."""
    try:
        status = str(sh.dpkg_query("-W", "-f=${Status}", package)).strip()
    except sh.ErrorReturnCode:
        return False
    return status == "install ok installed"


def missing_packages(packages: Sequence[str]) -> List[str]:
    """Return the packages that are not installed, in the given order."""
    return [package for package in packages if not is_package_installed(package)]


def apt_update() -> None:
    """Refresh the package index."""
    log_action("Updating package index...")
    try:
        sh.apt_get("update", _env=_apt_env())
    except sh.ErrorReturnCode as e:
        raise MutationFailed(f"apt-get update failed: {_stderr(e)}") from e


def apt_install(packages: Sequence[str]) -> None:
    """Install the named packages."""
    log_action(f"Installing packages: {' '.join(packages)}")
    try:
        sh.apt_get("install", "-y", *packages, _env=_apt_env())
    except sh.ErrorReturnCode as e:
        raise MutationFailed(f"apt-get install failed: {_stderr(e)}") from e


# Services

def enable_service(name: str) -> None:
    """Enable and start a systemd unit."""
    log_action(f"Enabling and starting {name}...")
    try:
        sh.systemctl("enable", "--now", name)
    except sh.ErrorReturnCode as e:
        raise MutationFailed(f"Failed to start {name}: {_stderr(e)}") from e


def is_service_active(name: str) -> bool:
    """Check whether a systemd unit is active."""
    try:
        sh.systemctl("is-active", "--quiet", name)
    except sh.ErrorReturnCode:
        return False
    return True


def reboot() -> None:
    try:
        sh.reboot()
    except sh.ErrorReturnCode as e:
        raise MutationFailed(f"Reboot failed: {_stderr(e)}") from e


# Kernel and platform

def kernel_version() -> Tuple[int, int]:
    """Get the running kernel's (major, minor) version."""
    release = platform.release()
    match = re.match(r'(\d+)\.(\d+)', release)
    if not match:
        raise Unsupported(f"Cannot determine kernel version from '{release}'")
    return int(match.group(1)), int(match.group(2))


def read_sysctl(key: str) -> str:
    """Read a live kernel parameter such as net.ipv4.tcp_congestion_control."""
    path = PROC_SYS / key.replace(".", "/")
    try:
        return path.read_text().strip()
    except OSError as e:
        raise PreconditionUnknown(f"Cannot read {key}: {e}") from e


def load_kernel_module(module: str) -> None:
    """Load a kernel module."""
    log_action(f"Loading kernel module {module}...")
    try:
        sh.modprobe(module)
    except sh.ErrorReturnCode as e:
        raise MutationFailed(f"Failed to load {module} module: {_stderr(e)}") from e


def reload_sysctl(conf: Union[str, Path]) -> None:
    """Apply kernel parameters from a sysctl file."""
    try:
        sh.sysctl("-p", str(conf))
    except sh.ErrorReturnCode as e:
        raise MutationFailed(f"sysctl -p {conf} failed: {_stderr(e)}") from e


def dpkg_architecture() -> str:
    """Get the Debian architecture name (amd64, arm64, ...)."""
    try:
        return str(sh.dpkg("--print-architecture")).strip()
    except sh.ErrorReturnCode as e:
        raise Unsupported(f"Cannot determine architecture: {_stderr(e)}") from e


def os_codename() -> str:
    """Get the release codename from os-release."""
    try:
        release = platform.freedesktop_os_release()
    except OSError as e:
        raise Unsupported(f"Cannot read os-release: {e}") from e
    codename = release.get("VERSION_CODENAME")
    if not codename:
        raise Unsupported("os-release does not define VERSION_CODENAME")
    return codename


# Network

def download(url: str, dest: Union[str, Path], mode: Optional[int] = None) -> Path:
    """Download a URL to a path; any non-success status fails.

    The body lands in a sibling ``.part`` file that is renamed over ``dest``
    only once complete, so an interrupted transfer never leaves ``dest``
    behind.
    """
    dest = Path(dest)
    partial = dest.with_name(f".{dest.name}.part")
    log_debug(f"Downloading {url} -> {dest}")
    try:
        sh.curl("-fsSL", "-o", str(partial), url)
        if mode is not None:
            os.chmod(partial, mode)
        os.replace(partial, dest)
    except sh.ErrorReturnCode as e:
        raise MutationFailed(f"Download of {url} failed: {_stderr(e)}") from e
    finally:
        partial.unlink(missing_ok=True)
    return dest


def fetch_text(url: str) -> str:
    """Fetch a URL and return the body."""
    try:
        return str(sh.curl("-fsSL", url))
    except sh.ErrorReturnCode as e:
        raise MutationFailed(f"Request to {url} failed: {_stderr(e)}") from e


# Keys and repositories

def key_fingerprints(key_file: Union[str, Path]) -> List[str]:
    """List the fingerprints of all keys in a key file."""
    try:
        output = str(sh.gpg("--show-keys", "--with-fingerprint", "--with-colons", str(key_file)))
    except sh.ErrorReturnCode as e:
        raise Unsupported(f"Cannot read key file {key_file}: {_stderr(e)}") from e
    # fpr records carry the fingerprint in field 10
    return [line.split(":")[9] for line in output.splitlines() if line.startswith("fpr:")]


def verify_key_fingerprint(key_file: Union[str, Path], expected: str) -> None:
    """Reject a key file that does not contain the expected fingerprint."""
    wanted = expected.replace(" ", "").upper()
    if wanted not in (fpr.upper() for fpr in key_fingerprints(key_file)):
        raise Unsupported(f"Key fingerprint mismatch: expected {wanted}")


def dearmor_key(src: Union[str, Path], dest: Union[str, Path]) -> None:
    """Convert an ASCII-armored key into a binary keyring."""
    try:
        sh.gpg("--dearmor", "--yes", "-o", str(dest), str(src))
    except sh.ErrorReturnCode as e:
        raise MutationFailed(f"gpg --dearmor failed: {_stderr(e)}") from e


@dataclass(frozen=True)
class AptRepository:
    """A third-party apt source signed by a pinned key."""
    name: str
    key_url: str
    key_path: str
    list_path: str
    source: str
    fingerprint: Optional[str] = None
    dearmor: bool = False

    def list_line(self, architecture: Optional[str] = None) -> str:
        options = f"signed-by={self.key_path}"
        if architecture:
            options = f"arch={architecture} {options}"
        return f"deb [{options}] {self.source}\n"


def add_apt_repository(repo: AptRepository, architecture: Optional[str] = None) -> None:
    """Fetch, verify and install a repository key, then write its source list.

    The key is downloaded into a private temporary directory which is removed
    whether or not verification succeeds.
    """
    log_action(f"Adding {repo.name} repository...")
    with tempfile.TemporaryDirectory(prefix="debiankit-") as tmp:
        downloaded = download(repo.key_url, Path(tmp) / "key.asc")
        if repo.fingerprint:
            verify_key_fingerprint(downloaded, repo.fingerprint)

        key_path = Path(repo.key_path)
        key_path.parent.mkdir(mode=0o755, parents=True, exist_ok=True)
        if repo.dearmor:
            dearmor_key(downloaded, key_path)
        else:
            key_path.write_bytes(downloaded.read_bytes())
        key_path.chmod(0o644)

    list_path = Path(repo.list_path)
    list_path.parent.mkdir(parents=True, exist_ok=True)
    list_path.write_text(repo.list_line(architecture))


# Users

def user_exists(name: str) -> bool:
    """Check whether a local account exists."""
    try:
        pwd.getpwnam(name)
    except KeyError:
        return False
    return True


def add_user_to_group(user: str, group: str) -> None:
    """Append a supplementary group to a user."""
    try:
        sh.usermod("-aG", group, user)
    except sh.ErrorReturnCode as e:
        raise MutationFailed(f"Failed to add {user} to {group}: {_stderr(e)}") from e


def user_in_group(user: str, group: str) -> bool:
    """Check whether a user is a supplementary member of a group."""
    try:
        return user in grp.getgrnam(group).gr_mem
    except KeyError:
        return False


def group_exists(name: str) -> bool:
    """Check whether a local group exists."""
    try:
        grp.getgrnam(name)
    except KeyError:
        return False
    return True


def create_user(name: str, uid: Optional[int] = None) -> None:
    """Create a login account with a home directory and bash shell."""
    args = ["--create-home", "--shell", "/bin/bash"]
    if uid is not None:
        args += ["--uid", str(uid)]
    log_action(f"Creating user {name}...")
    try:
        sh.useradd(*args, name)
    except sh.ErrorReturnCode as e:
        raise MutationFailed(f"Failed to create user {name}: {_stderr(e)}") from e


def set_password(name: str, password: str) -> None:
    """Set a password through chpasswd's stdin so it never appears in argv."""
    try:
        sh.chpasswd(_in=f"{name}:{password}\n")
    except sh.ErrorReturnCode as e:
        raise MutationFailed(f"Failed to set password for {name}") from e


def has_password(name: str) -> bool:
    """Check that the account has a usable password (`passwd -S` status P)."""
    try:
        fields = str(sh.passwd("-S", name)).split()
    except sh.ErrorReturnCode:
        return False
    return len(fields) > 1 and fields[1] == "P"


def set_password_interactive(name: str) -> None:
    """Let the operator type a password for the user."""
    try:
        sh.passwd(name, _fg=True)
    except sh.ErrorReturnCode as e:
        raise MutationFailed(f"Failed to set password for {name}") from e
