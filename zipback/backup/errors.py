"""
Error taxonomy for backup runs.

ConfigError lives here as well so the loader and the runner share one root,
but it is raised only while loading profile files.
"""

from typing import Dict, List, Optional


class BackupError(Exception):
    """Base class for every error raised by zipback."""
    pass


class ConfigError(BackupError):
    """Raised when a profile file is malformed or invalid."""

    def __init__(self, message: str, path: Optional[str] = None):
        self.path = path
        if path:
            message = f"{path}: {message}"
        super().__init__(message)


class ProfileLoadError(ConfigError):
    """
    Raised by a directory scan when at least one profile file is invalid.

    The valid profiles are still available on the exception.
    """

    def __init__(self, profiles: List, errors: Dict[str, str]):
        self.profiles = profiles
        self.errors = errors
        super().__init__(
            "errors loading profile from files: " + ", ".join(sorted(errors))
        )


class PreconditionError(BackupError):
    """Raised when the environment does not allow a run (missing source, bad destination)."""
    pass


class ExecutionError(BackupError):
    """Raised when something fails while a backup is running."""
    pass


class BatchError(BackupError):
    """Raised after a batch completed with at least one failed profile."""

    def __init__(self, failures: Dict[str, str], results: Optional[List] = None):
        self.failures = failures
        self.results = results or []
        super().__init__(
            "at least one profile failed: " + ", ".join(sorted(failures))
        )
