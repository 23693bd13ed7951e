"""First-run marker and initialization gate."""
import time
from pathlib import Path
from typing import Callable, Sequence, Union

from debiankit.runner import ProvisioningStep, StepOutcome, run_batch
from debiankit.utils import log_info, log_warning


VERIFIED = (StepOutcome.SUCCEEDED, StepOutcome.ALREADY_SATISFIED)


class MarkerStore:
    """A single persisted boolean record backed by the presence of a file."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def get(self) -> bool:
        return self.path.exists()

    def set(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.touch()

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)


class InitializationGate:
    """Decides whether first-run setup still has to run on this host."""

    def __init__(self, store: MarkerStore):
        self.store = store

    def should_bootstrap(self) -> bool:
        return not self.store.get()

    def mark_bootstrapped(self) -> None:
        self.store.set()

    def reset_bootstrap(self) -> None:
        self.store.clear()


def bootstrap(gate: InitializationGate, steps: Sequence[ProvisioningStep],
              sleep: Callable[[float], None] = time.sleep) -> bool:
    """Run first-run setup if needed; mark the host only after verified success."""
    if not gate.should_bootstrap():
        log_info("First-run setup already completed.")
        return True

    log_info("Running first-run setup...")
    report = run_batch(steps, sleep=sleep)
    if all(r.outcome in VERIFIED for r in report.results):
        gate.mark_bootstrapped()
        return True

    pending = [r.name for r in report.results if r.outcome not in VERIFIED]
    log_warning(f"First-run setup incomplete: {', '.join(pending)}. It will run again next time.")
    return False
