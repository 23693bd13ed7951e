"""WordPress installation."""
import hashlib
import json
import os
import re
import shutil
import tarfile
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional, Union

import sh

from debiankit import debian
from debiankit.errors import MutationFailed, Unsupported, UserAborted, VerificationFailed
from debiankit.runner import ProvisioningStep, RetryPolicy
from debiankit.utils import command_exists, log_action, log_info


VERSION_API = "https://api.wordpress.org/core/version-check/1.7/"
SALT_API = "https://api.wordpress.org/secret-key/1.1/salt/"
RELEASE_URL = "https://wordpress.org/wordpress-{version}.tar.gz"

PREFIX_PATTERN = re.compile(r'^[A-Za-z0-9_]+$')


@dataclass(frozen=True)
class WordPressOptions:
    install_path: str
    db_name: str
    db_user: str
    db_password: str = field(repr=False)
    db_host: str = "localhost"
    table_prefix: str = "wp_"
    owner: str = "www-data"
    group: str = "www-data"


def normalize_prefix(prefix: str) -> str:
    """Validate a table prefix and make sure it ends with an underscore."""
    if not PREFIX_PATTERN.match(prefix):
        raise ValueError("Prefix may only contain letters, digits and underscores")
    if not prefix.endswith("_"):
        prefix = f"{prefix}_"
    return prefix


def check_requirements() -> None:
    """Make sure the tools the installer shells out to are present."""
    for command in ("curl", "chown"):
        if not command_exists(command):
            raise Unsupported(f"{command} is required but not installed")


def validate_owner(owner: str, group: str) -> None:
    if not debian.user_exists(owner):
        raise Unsupported(f"User {owner} does not exist")
    if not debian.group_exists(group):
        raise Unsupported(f"Group {group} does not exist")


def latest_version() -> str:
    """Ask the WordPress API for the current release."""
    body = debian.fetch_text(VERSION_API)
    try:
        return json.loads(body)["offers"][0]["current"]
    except (ValueError, KeyError, IndexError) as e:
        raise MutationFailed("Unexpected response from the WordPress version API") from e


def sha1_of(path: Union[str, Path]) -> str:
    digest = hashlib.sha1()
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


def download_release(version: str, dest_dir: Union[str, Path]) -> Path:
    """Download a release tarball and check it against the published SHA-1."""
    url = RELEASE_URL.format(version=version)
    tarball = Path(dest_dir) / "wordpress.tar.gz"

    log_action(f"Downloading WordPress {version}...")
    debian.download(url, tarball)
    expected = debian.fetch_text(f"{url}.sha1").split()[0].lower()

    log_action("Verifying download integrity...")
    if sha1_of(tarball) != expected:
        tarball.unlink(missing_ok=True)
        raise VerificationFailed("WordPress archive checksum mismatch; it may be tampered with or incomplete")
    return tarball


def fetch_salts() -> str:
    salts = debian.fetch_text(SALT_API).strip()
    if not salts:
        raise VerificationFailed("Failed to fetch security keys")
    return salts


def _php_quote(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "\\'")


def render_wp_config(sample: str, options: WordPressOptions, salts: str) -> str:
    """Fill wp-config-sample.php with database settings, table prefix and salts."""
    config = (sample
              .replace("database_name_here", _php_quote(options.db_name))
              .replace("username_here", _php_quote(options.db_user))
              .replace("password_here", _php_quote(options.db_password))
              .replace("'localhost'", f"'{_php_quote(options.db_host)}'"))
    config = config.replace("$table_prefix = 'wp_';", f"$table_prefix = '{options.table_prefix}';")

    lines = config.splitlines(keepends=True)
    start = next((i for i, line in enumerate(lines) if "define( 'AUTH_KEY'" in line), None)
    end = next((i for i, line in enumerate(lines) if "define( 'NONCE_SALT'" in line), None)
    if start is None or end is None or end < start:
        raise VerificationFailed("Security key block not found in wp-config-sample.php")
    return "".join(lines[:start]) + salts.rstrip("\n") + "\n" + "".join(lines[end + 1:])


def apply_permissions(path: Union[str, Path], owner: str, group: str) -> None:
    """chown the tree and normalize modes to 0755 for directories and 0644 for files."""
    log_action("Setting file ownership and permissions...")
    try:
        sh.chown("-R", f"{owner}:{group}", str(path))
    except sh.ErrorReturnCode as e:
        raise MutationFailed(f"Failed to change ownership of {path}") from e
    for root, dirs, files in os.walk(path):
        os.chmod(root, 0o755)
        for name in files:
            os.chmod(os.path.join(root, name), 0o644)


def install_wordpress(options: WordPressOptions) -> str:
    """Download, verify, unpack and configure WordPress. Returns the version installed."""
    target = Path(options.install_path)
    version = latest_version()
    log_info(f"Latest WordPress release is {version}")

    with tempfile.TemporaryDirectory(prefix="debiankit-wp-") as tmp:
        tarball = download_release(version, tmp)
        log_action("Extracting files...")
        with tarfile.open(tarball) as archive:
            archive.extractall(tmp, filter="data")
        shutil.copytree(Path(tmp) / "wordpress", target, dirs_exist_ok=True)

    log_action("Configuring wp-config.php...")
    sample = (target / "wp-config-sample.php").read_text()
    (target / "wp-config.php").write_text(render_wp_config(sample, options, fetch_salts()))

    apply_permissions(target, options.owner, options.group)
    return version


def wordpress_step(options: WordPressOptions,
                   installer: Callable[[WordPressOptions], str] = install_wordpress,
                   confirm: Optional[Callable[[], bool]] = None) -> ProvisioningStep:
    """Install WordPress unless the target already has a wp-config.php."""
    config = Path(options.install_path) / "wp-config.php"

    def guard() -> None:
        check_requirements()
        validate_owner(options.owner, options.group)

    def configured() -> bool:
        return config.exists() and f"'{_php_quote(options.db_name)}'" in config.read_text()

    confirmed = []

    def mutate() -> None:
        # asked once, and only when there is something to install
        if confirm is not None and not confirmed:
            if not confirm():
                raise UserAborted("Installation cancelled by operator")
            confirmed.append(True)
        version = installer(options)
        log_info(f"WordPress {version} unpacked to {options.install_path}")

    return ProvisioningStep(
        name="WordPress",
        precondition=config.exists,
        mutation=mutate,
        postcondition=configured,
        retry=RetryPolicy(max_attempts=2, backoff=3.0),
        guard=guard,
    )
