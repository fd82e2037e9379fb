"""
Retention policy enforcement for backups.

Keeps the N newest archives of one profile in a destination directory and
deletes the rest. Archives are recognised by name only, see
archive.archive_name_pattern; the age is the timestamp embedded in the name,
never the file's mtime.
"""

import os
import glob
import logging
from typing import List

from .archive import ARCHIVE_EXTENSION, filter_archive_names, extract_timestamp
from .errors import ExecutionError


logger = logging.getLogger(__name__)


class RetentionError(ExecutionError):
    """Raised when old archives cannot be listed or deleted."""
    pass


def find_to_delete(filenames: List[str], profile_name: str, keep: int) -> List[str]:
    """
    Select the archives of a profile that exceed the keep count.

    Args:
        filenames: Bare filenames found in the destination
        profile_name: Profile whose archives are considered, matched exactly
        keep: Number of newest archives to retain

    Returns:
        Filenames to delete, oldest first

    Raises:
        ValueError: If profile_name is empty or keep is negative
    """
    if not profile_name:
        raise ValueError("Profile name cannot be empty")
    if keep < 0:
        raise ValueError(f"Keep count cannot be negative: {keep}")

    found = filter_archive_names(filenames, profile_name)
    # sorted() is stable, equal timestamps keep their listing order
    found = sorted(found, key=extract_timestamp)

    if len(found) <= keep:
        return []
    return found[:len(found) - keep]


def expurge_dir(directory: str, keep: int, profile_name: str) -> List[str]:
    """
    Delete old archives of a profile from a directory.

    Args:
        directory: Destination directory holding the archives
        keep: Number of newest archives to retain
        profile_name: Profile whose archives are pruned

    Returns:
        Filenames that were deleted

    Raises:
        RetentionError: If the directory is unusable or a deletion fails; the
            first failed deletion stops the run
    """
    if not os.path.isdir(directory):
        raise RetentionError(f"Retention path is not a directory: {directory}")

    filenames = [
        os.path.basename(path)
        for path in glob.glob(os.path.join(glob.escape(directory), '*' + ARCHIVE_EXTENSION))
    ]

    try:
        to_delete = find_to_delete(filenames, profile_name, keep)
    except ValueError as e:
        raise RetentionError(f"Error selecting archives to delete: {e}") from e

    deleted = []
    for filename in to_delete:
        path = os.path.join(directory, filename)
        try:
            os.remove(path)
        except OSError as e:
            raise RetentionError(f"Unable to delete old archive {path}: {e}") from e
        deleted.append(filename)
        logger.info(f"Deleted old archive: {path}")

    return deleted
