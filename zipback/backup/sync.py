"""
Mirror remote archives into a local directory.

Only archives of one profile are considered (same naming convention as
retention). Files already present locally are never downloaded again, even
when an earlier transfer was interrupted.
"""

import os
import shutil
import logging
from typing import List

from .archive import COPY_CHUNK_SIZE, filter_archive_names
from .errors import ExecutionError
from .remotefs import RemoteFS


logger = logging.getLogger(__name__)


class SyncError(ExecutionError):
    """Raised when a remote archive cannot be listed or downloaded."""
    pass


def find_missing(remote: List[str], local: List[str], profile_name: str) -> List[str]:
    """
    Remote archives of a profile that have no same-named local file.

    Args:
        remote: Bare filenames in the remote directory
        local: Bare filenames in the local directory
        profile_name: Profile whose archives are mirrored

    Returns:
        Filenames to download, in remote listing order
    """
    if not profile_name:
        raise ValueError("Profile name cannot be empty")

    local_names = set(local)
    return [f for f in filter_archive_names(remote, profile_name) if f not in local_names]


def list_local_files(directory: str) -> List[str]:
    try:
        with os.scandir(directory) as it:
            return sorted(entry.name for entry in it if not entry.is_dir())
    except OSError as e:
        raise SyncError(f"Error reading dir {directory}: {e}") from e


def download(remote_fs: RemoteFS, remote_path: str, local_path: str) -> None:
    """Copy one remote file byte for byte; no resume and no checksum."""
    with remote_fs.open(remote_path) as src:
        try:
            with open(local_path, 'wb') as dst:
                shutil.copyfileobj(src, dst, COPY_CHUNK_SIZE)
        except OSError as e:
            raise SyncError(f"Unable to download {remote_path} to {local_path}: {e}") from e


def sync_missing(remote_fs: RemoteFS, remote_dir: str, local_dir: str, profile_name: str) -> List[str]:
    """
    Download the remote archives of a profile that are missing locally.

    Args:
        remote_fs: Remote filesystem of the connected host
        remote_dir: Remote directory holding the archives
        local_dir: Local destination directory
        profile_name: Name embedded in the archive filenames

    Returns:
        Local paths of the downloaded files

    Raises:
        PreconditionError: If the remote directory does not exist
        SyncError: If a listing or download fails
    """
    local_names = list_local_files(local_dir)

    remote_dir = remote_fs.abspath(remote_dir)
    remote_names = [entry.name for entry in remote_fs.list_dir(remote_dir) if not entry.is_dir]

    try:
        missing = find_missing(remote_names, local_names, profile_name)
    except ValueError as e:
        raise SyncError(str(e)) from e

    logger.debug(
        f"{len(missing)} of {len(remote_names)} remote files missing locally in {local_dir}"
    )

    downloaded = []
    for filename in missing:
        local_path = os.path.join(local_dir, filename)
        logger.debug(f"Downloading remote file {filename}")
        download(remote_fs, f"{remote_dir.rstrip('/')}/{filename}", local_path)
        downloaded.append(local_path)

    return downloaded
