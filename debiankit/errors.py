"""Error taxonomy for provisioning steps."""


class ProvisionError(Exception):
    """Base class for provisioning errors."""


class PreconditionUnknown(ProvisionError):
    """A state probe failed; the desired state is treated as not yet reached."""


class MutationFailed(ProvisionError):
    """A command that changes system state failed. Retryable."""


class VerificationFailed(ProvisionError):
    """A mutation ran but the desired end state was not observed. Retryable."""


class Unsupported(ProvisionError):
    """Platform, architecture, privilege or trust problem. Never retried."""


class UserAborted(ProvisionError):
    """The operator declined a confirmation prompt."""


class ConfigError(ProvisionError):
    """The settings file is malformed."""
