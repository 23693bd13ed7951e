"""Provisioning step runner.

Every provisioning task is a ``ProvisioningStep``: a precondition that tells
whether the desired state already holds, a mutation that moves the system
towards it, and a postcondition checked against live state afterwards. The
runner never mutates a system whose precondition already holds, retries
transient failures under the step's retry policy and always hands back a
``StepResult`` instead of raising.
"""
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Sequence

from debiankit.errors import (
    MutationFailed,
    PreconditionUnknown,
    Unsupported,
    UserAborted,
    VerificationFailed,
)
from debiankit.utils import log_debug, log_error, log_info, log_success, log_warning


class StepOutcome(Enum):
    ALREADY_SATISFIED = "already satisfied"
    SUCCEEDED = "succeeded"
    FAILED_AFTER_RETRIES = "failed after retries"
    FATAL_ERROR = "fatal error"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class RetryPolicy:
    """How many times a mutation is attempted and how long to wait in between."""
    max_attempts: int = 3
    backoff: float = 5.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.backoff < 0:
            raise ValueError("backoff must not be negative")


@dataclass(frozen=True)
class ProvisioningStep:
    """A named, idempotent unit of system configuration."""
    name: str
    precondition: Callable[[], bool]
    mutation: Callable[[], None]
    postcondition: Optional[Callable[[], bool]] = None
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    guard: Optional[Callable[[], None]] = None

    def verify(self) -> bool:
        """Evaluate the postcondition, falling back to the precondition."""
        check = self.postcondition or self.precondition
        return check()


@dataclass(frozen=True)
class StepResult:
    name: str
    outcome: StepOutcome
    detail: str = ""
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.outcome in (
            StepOutcome.ALREADY_SATISFIED,
            StepOutcome.SUCCEEDED,
            StepOutcome.SKIPPED,
        )


@dataclass
class BatchReport:
    results: List[StepResult] = field(default_factory=list)

    @property
    def failed(self) -> List[str]:
        return [result.name for result in self.results if not result.ok]

    @property
    def ok(self) -> bool:
        return not self.failed


def _probe(check: Callable[[], bool]) -> bool:
    # A probe that cannot tell is read as "not yet satisfied".
    try:
        return bool(check())
    except PreconditionUnknown as e:
        log_debug(f"Probe inconclusive: {e}")
        return False


def _report(result: StepResult) -> StepResult:
    message = f"{result.name}: {result.detail}" if result.detail else result.name
    if result.outcome is StepOutcome.SKIPPED:
        log_info(message)
    elif result.ok:
        log_success(message)
    else:
        log_error(message)
    return result


def run_step(step: ProvisioningStep, sleep: Callable[[float], None] = time.sleep) -> StepResult:
    """Run a step to convergence and return its result."""
    log_info(f"{step.name}...")

    try:
        if step.guard is not None:
            step.guard()
        if _probe(step.precondition):
            return _report(StepResult(step.name, StepOutcome.ALREADY_SATISFIED, "already configured"))
    except Unsupported as e:
        return _report(StepResult(step.name, StepOutcome.FATAL_ERROR, str(e)))
    except UserAborted as e:
        return _report(StepResult(step.name, StepOutcome.SKIPPED, str(e) or "cancelled by operator"))
    except Exception as e:
        return _report(StepResult(step.name, StepOutcome.FATAL_ERROR, f"unexpected error: {e}"))

    attempts = 0
    detail = ""
    while attempts < step.retry.max_attempts:
        if attempts:
            log_warning(f"Retrying {step.name} in {step.retry.backoff:g}s "
                        f"(attempt {attempts + 1}/{step.retry.max_attempts})")
            sleep(step.retry.backoff)
        attempts += 1

        try:
            step.mutation()
            if _probe(step.verify):
                return _report(StepResult(step.name, StepOutcome.SUCCEEDED, "done", attempts))
            detail = "desired state not observed after mutation"
        except (MutationFailed, VerificationFailed) as e:
            detail = str(e)
        except Unsupported as e:
            return _report(StepResult(step.name, StepOutcome.FATAL_ERROR, str(e), attempts))
        except UserAborted as e:
            return _report(StepResult(step.name, StepOutcome.SKIPPED, str(e) or "cancelled by operator", attempts))
        except Exception as e:
            return _report(StepResult(step.name, StepOutcome.FATAL_ERROR, f"unexpected error: {e}", attempts))

        log_warning(f"{step.name}: attempt {attempts} failed: {detail}")

    return _report(StepResult(step.name, StepOutcome.FAILED_AFTER_RETRIES, detail, attempts))


def run_batch(steps: Sequence[ProvisioningStep], sleep: Callable[[float], None] = time.sleep) -> BatchReport:
    """Run steps in order; a failing step never stops the ones after it."""
    report = BatchReport()
    for step in steps:
        report.results.append(run_step(step, sleep=sleep))
    return report
