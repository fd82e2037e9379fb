"""
Backup module for zipback.

This module handles the core backup functionality including:
- Archive writing and naming
- Source traversal (local and over ssh)
- Database dumps
- Retention and remote mirroring
- Execution orchestration
"""

from .archive import ZipArchive, generate_archive_filename
from .errors import (
    BackupError, ConfigError, ProfileLoadError, PreconditionError,
    ExecutionError, BatchError
)
from .executor import BackupExecutor, BackupRunner, ProfileResult, ProfileState
from .sources import LocalSource, SSHSource, create_source
from .retention import expurge_dir
from .sync import sync_missing

__all__ = [
    'ZipArchive',
    'generate_archive_filename',
    'BackupError',
    'ConfigError',
    'ProfileLoadError',
    'PreconditionError',
    'ExecutionError',
    'BatchError',
    'BackupExecutor',
    'BackupRunner',
    'ProfileResult',
    'ProfileState',
    'LocalSource',
    'SSHSource',
    'create_source',
    'expurge_dir',
    'sync_missing'
]
