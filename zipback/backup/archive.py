"""
Archive writer for backup runs.

One zip file per profile run, written sequentially:
- regular entries are streamed from any reader, never buffered whole
- symlinks are stored as entries whose body is the link target
- directories are implicit, they come from the entry paths

Also holds the archive naming convention shared by retention and sync:
    {profile}_{YYYY}_{MM}_{DD}-{HH}:{MM}:{SS}_backup.zip
"""

import os
import re
import stat
import shutil
import zipfile
from datetime import datetime
from typing import List, Optional

from .errors import ExecutionError


ARCHIVE_EXTENSION = '.zip'
ARCHIVE_SUFFIX = '_backup' + ARCHIVE_EXTENSION
TIMESTAMP_FORMAT = '%Y_%m_%d-%H:%M:%S'

COPY_CHUNK_SIZE = 1024 * 1024


class ArchiveError(ExecutionError):
    """Raised when the archive cannot be created or written."""
    pass


class ZipArchive:
    """
    Write-once zip container.

    Entry paths must be unique; the archive must be closed exactly once and
    rejects every write after that.
    """

    def __init__(self, path: str, zip_file: zipfile.ZipFile):
        self.path = path
        self._zip = zip_file
        self._names = set()
        self._open_writer = None

    @classmethod
    def open(cls, path: str) -> 'ZipArchive':
        """
        Create a new archive file.

        Args:
            path: Destination path, must end in .zip

        Returns:
            ZipArchive ready for writing

        Raises:
            ArchiveError: If the extension is wrong or the file cannot be created
                exclusively (for instance because it already exists)
        """
        if not path.endswith(ARCHIVE_EXTENSION):
            raise ArchiveError(f"Archive path does not end in {ARCHIVE_EXTENSION}: {path}")

        try:
            zip_file = zipfile.ZipFile(path, 'x', zipfile.ZIP_DEFLATED)
        except FileExistsError as e:
            raise ArchiveError(f"Archive already exists: {path}") from e
        except OSError as e:
            raise ArchiveError(f"Failed to open archive for writing {path}: {e}") from e

        return cls(path, zip_file)

    @property
    def closed(self) -> bool:
        return self._zip is None

    @property
    def names(self) -> List[str]:
        return sorted(self._names)

    def _reserve(self, arcname: str) -> str:
        if self._zip is None:
            raise ArchiveError(f"Archive is closed: {self.path}")
        if self._open_writer is not None and not self._open_writer.closed:
            raise ArchiveError(f"Another entry is still being written in {self.path}")

        arcname = arcname.replace(os.sep, '/').lstrip('/')
        if not arcname:
            raise ArchiveError("Entry path cannot be empty")
        if arcname in self._names:
            raise ArchiveError(f"Duplicate entry in archive: {arcname}")
        self._names.add(arcname)
        return arcname

    def write_entry(self, arcname: str, reader) -> None:
        """
        Stream everything readable from reader into a new entry.

        Args:
            arcname: Path of the entry inside the archive
            reader: Object with a read(size) method (file, pipe, socket file)
        """
        with self.file_writer(arcname) as writer:
            try:
                shutil.copyfileobj(reader, writer, COPY_CHUNK_SIZE)
            except OSError as e:
                raise ArchiveError(f"Failed to write {arcname} into archive: {e}") from e

    def add_file(self, arcname: str, source_path: str) -> None:
        """Copy a local file into the archive, keeping its mode and mtime."""
        arcname = self._reserve(arcname)
        try:
            self._zip.write(source_path, arcname)
        except OSError as e:
            raise ArchiveError(f"Failed to add {source_path} to archive: {e}") from e

    def add_symlink(self, arcname: str, target: str) -> None:
        """
        Add a symlink entry; the body is the literal link target.

        Args:
            arcname: Path of the entry inside the archive
            target: Link target as returned by os.readlink
        """
        arcname = self._reserve(arcname)

        info = zipfile.ZipInfo(arcname, date_time=datetime.now().timetuple()[:6])
        info.create_system = 3  # unix, so external_attr carries the file type
        info.external_attr = (stat.S_IFLNK | 0o777) << 16
        info.compress_type = zipfile.ZIP_DEFLATED

        try:
            self._zip.writestr(info, target)
        except OSError as e:
            raise ArchiveError(f"Failed to add symlink {arcname} to archive: {e}") from e

    def file_writer(self, arcname: str):
        """
        Return a writable handle for a new entry.

        Only one entry can be open at a time; close the handle (or use it as a
        context manager) before writing anything else.
        """
        arcname = self._reserve(arcname)

        info = zipfile.ZipInfo(arcname, date_time=datetime.now().timetuple()[:6])
        info.create_system = 3
        info.external_attr = (stat.S_IFREG | 0o644) << 16
        info.compress_type = zipfile.ZIP_DEFLATED

        try:
            # size is unknown up front, so always reserve zip64 headers
            self._open_writer = self._zip.open(info, 'w', force_zip64=True)
        except (OSError, ValueError) as e:
            raise ArchiveError(f"Failed to create entry {arcname}: {e}") from e
        return self._open_writer

    def close(self) -> None:
        """Write the central directory and release the file handle."""
        if self._zip is None:
            raise ArchiveError(f"Archive is already closed: {self.path}")

        zip_file, self._zip = self._zip, None
        try:
            if self._open_writer is not None and not self._open_writer.closed:
                self._open_writer.close()
            zip_file.close()
        except (OSError, ValueError) as e:
            raise ArchiveError(f"Failed to finalize archive {self.path}: {e}") from e

    def abort(self) -> None:
        """Release the file handle after a failure, ignoring finalization errors."""
        zip_file, self._zip = self._zip, None
        if zip_file is None:
            return
        try:
            if self._open_writer is not None and not self._open_writer.closed:
                self._open_writer.close()
            zip_file.close()
        except (OSError, ValueError):
            # the file is about to be deleted, a broken central directory is irrelevant
            pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is not None:
            self.abort()
        elif not self.closed:
            self.close()
        return False


def generate_archive_filename(profile_name: str, now: Optional[datetime] = None) -> str:
    """
    Generate the archive filename for a profile run.

    Two runs of the same profile within one second produce the same name.

    Args:
        profile_name: Name of the backup profile
        now: Timestamp to encode, defaults to the current local time

    Returns:
        Filename (without path)
    """
    now = now or datetime.now()
    return f"{profile_name}_{now.strftime(TIMESTAMP_FORMAT)}{ARCHIVE_SUFFIX}"


def archive_name_pattern(profile_name: str) -> 're.Pattern':
    """Regex matching archive filenames of exactly this profile name."""
    return re.compile(
        '^' + re.escape(profile_name)
        + r'_[0-9]{4}_[0-9]{2}_[0-9]{2}-[0-9]{2}:[0-9]{2}:[0-9]{2}'
        + re.escape(ARCHIVE_SUFFIX) + '$'
    )


def filter_archive_names(filenames: List[str], profile_name: str) -> List[str]:
    """Keep only the filenames that are archives of profile_name, in input order."""
    pattern = archive_name_pattern(profile_name)
    return [f for f in filenames if pattern.match(f)]


def extract_timestamp(filename: str) -> datetime:
    """
    Read the timestamp embedded in an archive filename.

    The timestamp is taken positionally from the end of the name, so profile
    names containing underscores are fine. Names that match the pattern but
    hold an impossible date sort first.
    """
    parts = filename.split('_')
    try:
        return datetime.strptime('_'.join(parts[-4:-1]), TIMESTAMP_FORMAT)
    except ValueError:
        return datetime.min


def list_archive(path: str) -> List[str]:
    """List the entry names of an existing archive."""
    try:
        with zipfile.ZipFile(path, 'r') as zip_file:
            return zip_file.namelist()
    except (OSError, zipfile.BadZipFile) as e:
        raise ArchiveError(f"Failed to read archive {path}: {e}") from e
