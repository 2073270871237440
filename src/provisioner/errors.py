"""Error taxonomy for the provisioning core.

Every mutating operation raises one of these synchronously. The ``code``
attribute is a short token used in logs, listener callbacks and API
responses (e.g. ``"NOT_IN_PROGRESS: no upgrade in progress"``).
"""


class ProvisionerError(Exception):
    """Base class for all provisioning core errors."""

    code = "PROVISIONER_ERROR"

    def __str__(self) -> str:
        detail = super().__str__()
        return f"{self.code}: {detail}" if detail else self.code


class InvalidArgument(ProvisionerError):
    code = "INVALID_ARGUMENT"


class InvalidState(ProvisionerError):
    """Operation not valid in the current state machine state."""

    code = "INVALID_STATE"


class NotInProgress(InvalidState):
    code = "NOT_IN_PROGRESS"


class AlreadyInProgress(InvalidState):
    code = "ALREADY_IN_PROGRESS"


class NotFound(ProvisionerError):
    code = "NOT_FOUND"


class InvalidTarget(ProvisionerError):
    """Partition cannot receive an upgrade (running slot or not an app)."""

    code = "INVALID_TARGET"


class InsufficientSpace(ProvisionerError):
    code = "INSUFFICIENT_SPACE"


class IoFault(ProvisionerError):
    """Flash, boot selector or key-value storage driver failure."""

    code = "IO_FAULT"


class ScanTimeout(ProvisionerError):
    code = "TIMEOUT"


class VerifyFailed(ProvisionerError):
    code = "VERIFY_FAILED"


class FirmwareTooSmall(VerifyFailed):
    code = "TOO_SMALL"


class BadMagic(VerifyFailed):
    code = "BAD_MAGIC"


class UpgradeAborted(ProvisionerError):
    code = "ABORTED"


class ConfigCorrupt(ProvisionerError):
    """A persisted config blob exists but cannot be decoded."""

    code = "CONFIG_CORRUPT"
