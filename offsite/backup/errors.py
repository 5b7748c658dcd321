### stdlib imports
import typing


class BackupError(Exception):
    """Base class for every failure the tool knows how to report."""

    exit_code: int = 1

    def __init__(self, message: str, exit_code: typing.Optional[int] = None):
        super().__init__(message)
        self.message = message
        if exit_code is not None:
            self.exit_code = exit_code


class ConfigError(BackupError):
    exit_code = 1


class PrerequisiteError(BackupError):
    exit_code = 10


class ConnectivityError(BackupError):
    exit_code = 6


class TargetValidationError(BackupError):
    exit_code = 2


class ResourceError(BackupError):
    exit_code = 7


class LockContentionError(BackupError):
    exit_code = 5


class TransferError(BackupError):
    exit_code = 1


# Recycle bin cleanup problems are logged by the caller and never change the
# outcome of a run
class PruneError(BackupError):
    exit_code = 0


class NotFoundError(BackupError):
    exit_code = 1


class CrashError(BackupError):
    exit_code = 1


class Terminated(Exception):
    """Raised from the SIGTERM handler so cleanup and crash reporting run."""


class InvalidTransition(ValueError):
    pass
