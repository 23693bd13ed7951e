"""Service accounts and tmux-supervised agent processes."""
import hashlib
import pwd
import secrets
import shlex
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Sequence

import sh

from debiankit import debian
from debiankit.errors import MutationFailed
from debiankit.utils import log_action, log_info


SIGNATURE_VAR = "DEBIANKIT_SIGNATURE"


@dataclass(frozen=True)
class AccountHandle:
    name: str
    uid: int
    home: str
    created: bool = False


@dataclass(frozen=True)
class SessionHandle:
    account: AccountHandle
    session: str
    signature: str


class SessionState(Enum):
    NONE = "none"
    STALE = "stale"
    HEALTHY = "healthy"


def generate_password() -> str:
    """Generate a high-entropy credential."""
    return secrets.token_urlsafe(32)


def _handle(entry: pwd.struct_passwd, created: bool = False) -> AccountHandle:
    return AccountHandle(name=entry.pw_name, uid=entry.pw_uid, home=entry.pw_dir, created=created)


def _uid_taken(uid: int) -> bool:
    try:
        pwd.getpwuid(uid)
    except KeyError:
        return False
    return True


def get_service_account(name: str) -> Optional[AccountHandle]:
    """Look up an existing account."""
    try:
        return _handle(pwd.getpwnam(name))
    except KeyError:
        return None


def ensure_service_account(name: str, preferred_id: int,
                           password_factory: Callable[[], str] = generate_password) -> AccountHandle:
    """Return the account, creating it with the preferred uid when that is free."""
    existing = get_service_account(name)
    if existing is not None:
        return existing

    uid = preferred_id
    if _uid_taken(preferred_id):
        log_info(f"UID {preferred_id} is taken; letting the system assign one for {name}.")
        uid = None

    debian.create_user(name, uid=uid)
    debian.set_password(name, password_factory())

    try:
        return _handle(pwd.getpwnam(name), created=True)
    except KeyError as e:
        raise MutationFailed(f"Account {name} missing after creation") from e


def session_signature(command: str, args: Sequence[str]) -> str:
    """Fingerprint of the launch parameters of a supervised process."""
    return hashlib.sha256(shlex.join([command, *args]).encode()).hexdigest()[:16]


def _tmux(account: AccountHandle, *args: str):
    return sh.runuser("-u", account.name, "--", "tmux", *args)


def _running_signature(account: AccountHandle, session: str) -> Optional[str]:
    try:
        _tmux(account, "has-session", "-t", session)
    except sh.ErrorReturnCode:
        return None
    try:
        output = str(_tmux(account, "show-environment", "-t", session, SIGNATURE_VAR)).strip()
    except sh.ErrorReturnCode:
        return ""
    _, _, value = output.partition("=")
    return value


def session_state(account: AccountHandle, session: str, signature: str) -> SessionState:
    """Classify a supervised session as absent, stale or healthy."""
    running = _running_signature(account, session)
    if running is None:
        return SessionState.NONE
    if running != signature:
        return SessionState.STALE
    return SessionState.HEALTHY


def stop_session(account: AccountHandle, session: str) -> None:
    log_action(f"Stopping stale session {session}...")
    try:
        _tmux(account, "kill-session", "-t", session)
    except sh.ErrorReturnCode as e:
        raise MutationFailed(f"Failed to stop session {session}") from e


def launch_supervised(account: AccountHandle, command: str, args: Sequence[str],
                      session: str) -> SessionHandle:
    """Run a command as the account inside a detached tmux session.

    A healthy session is left alone; a session started with different
    parameters is replaced.
    """
    signature = session_signature(command, args)
    state = session_state(account, session, signature)
    if state is SessionState.HEALTHY:
        log_info(f"Session {session} is already running.")
        return SessionHandle(account, session, signature)
    if state is SessionState.STALE:
        stop_session(account, session)

    log_action(f"Starting {command} in tmux session {session} as {account.name}...")
    try:
        _tmux(account, "new-session", "-d", "-s", session,
              "-e", f"{SIGNATURE_VAR}={signature}",
              shlex.join([command, *args]))
    except sh.ErrorReturnCode as e:
        raise MutationFailed(f"Failed to start session {session}") from e
    return SessionHandle(account, session, signature)
