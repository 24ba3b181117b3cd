"""Error taxonomy for the provisioning pipeline.

Every error names the stage it came from and the device, mapping or volume
it concerns.  ``state`` carries optional diagnostics for the JSON result
line and is never expected to hold secrets.
"""

from __future__ import annotations


class ProvisionError(RuntimeError):
    stage = "provision"

    def __init__(self, message: str, *, target: str | None = None, state: dict | None = None) -> None:
        super().__init__(message)
        self.target = target
        self.state = state or {}


class PreflightError(ProvisionError):
    stage = "preflight"


class ValidationError(ProvisionError):
    stage = "validate"


class DeviceNotFoundError(ValidationError):
    """Target path is missing or not a block device."""


class AlreadyMountedError(ValidationError):
    """Target disk, or one of its partitions, is in use."""


class NotConfirmedError(ValidationError):
    """Operator did not give an explicit affirmative confirmation."""


class PartitioningError(ProvisionError):
    stage = "partition"


class EncryptionSetupError(ProvisionError):
    stage = "encrypt"


class WrongPassphraseError(EncryptionSetupError):
    """The LUKS header rejected the passphrase on open."""


class VolumeError(ProvisionError):
    stage = "volumes"


class InsufficientSpaceError(VolumeError):
    """Requested capacity does not fit in the volume group."""


class FormatError(ProvisionError):
    stage = "format"


class MountError(ProvisionError):
    stage = "mount"


class SystemSetupError(ProvisionError):
    stage = "system"


class ConfigError(ProvisionError):
    stage = "config"
