"""Utility functions for the provisioning tool."""
import os
import shutil


_verbose = False


def command_exists(command: str) -> bool:
    """Check if a command exists in the system PATH."""
    return shutil.which(command) is not None


def is_root() -> bool:
    """Check if the script is running as root."""
    return os.geteuid() == 0


def get_sudo_user() -> str:
    """Get the user who invoked sudo, or an empty string."""
    return os.environ.get('SUDO_USER', '')


def log_info(message: str) -> None:
    """Log an informational message."""
    print(f"[INFO] {message}")


def log_success(message: str) -> None:
    """Log a successful outcome."""
    print(f"[SUCCESS] {message}")


def log_warning(message: str) -> None:
    """Log a warning."""
    print(f"[WARNING] {message}")


def log_error(message: str) -> None:
    """Log an error."""
    print(f"[ERROR] {message}")


def log_action(message: str) -> None:
    """Log an action being performed."""
    print(f"  -> {message}")


def log_debug(message: str) -> None:
    """Log a debug message when verbose output is enabled."""
    if _verbose:
        print(f"[DEBUG] {message}")


def setup_logging(verbose: bool = False) -> None:
    """Setup logging configuration."""
    global _verbose
    _verbose = verbose
