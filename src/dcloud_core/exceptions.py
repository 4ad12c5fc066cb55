"""dcloud-core exceptions."""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from dcloud_core.models import MigrationJob


class DcloudError(Exception):
    """Base exception for dcloud-core."""

    pass


class ConfigError(DcloudError):
    """Configuration error."""

    pass


class ValidationError(DcloudError):
    """Input rejected before any mutation took place."""

    pass


class InvalidInputError(ValidationError):
    """Malformed tenant name, token or argument."""

    pass


class ConflictError(ValidationError):
    """A tenant resource already exists for the proposed name."""

    def __init__(self, name: str, conflicts: list[str]) -> None:
        self.name = name
        self.conflicts = conflicts
        super().__init__(f"Tenant '{name}' conflicts with existing resources: {', '.join(conflicts)}")


class TenantNotFoundError(ValidationError):
    """Tenant does not exist."""

    pass


class LockError(DcloudError):
    """Another operation holds the tenant lease."""

    pass


class CommandError(DcloudError):
    """External command exited with a non-zero status."""

    def __init__(self, args: list[str], exit_code: int, stderr: str = "") -> None:
        self.args_list = args
        self.exit_code = exit_code
        self.stderr = stderr
        detail = stderr.strip().splitlines()[-1] if stderr.strip() else "no output"
        super().__init__(f"Command '{args[0] if args else '?'}' failed with exit code {exit_code}: {detail}")


class ProvisioningError(DcloudError):
    """Creating a tenant resource failed."""

    pass


class TransferError(DcloudError):
    """Exporting or importing tenant data failed."""

    pass


class RegistryError(DcloudError):
    """Routing registry could not be validated or written."""

    pass


class BackupError(DcloudError):
    """Backup creation or restore failed."""

    pass


class NotificationError(DcloudError):
    """Control-plane webhook delivery failed."""

    pass


class MigrationError(DcloudError):
    """A migration job failed."""

    def __init__(self, message: str, job: "MigrationJob | None" = None) -> None:
        self.job = job
        super().__init__(message)
