"""
Source handlers for backup operations.

Supports:
- LocalSource: Walk the local filesystem
- SSHSource: Walk a remote filesystem over shell commands

Both stream every non-excluded, non-directory item of a backup target into
the archive at <basename of the target>/<path relative to the target>.
"""

import os
import posixpath
import logging
from dataclasses import dataclass
from typing import Iterator, List, Optional, Sequence

from wcmatch import fnmatch

from zipback.models import BackupTarget, ProfileType
from .archive import ZipArchive
from .errors import ExecutionError, PreconditionError
from .remotefs import RemoteFS, RemoteFileEntry


logger = logging.getLogger(__name__)


class SourceError(ExecutionError):
    """Raised when source acquisition fails."""
    pass


@dataclass(frozen=True)
class SourceItem:
    source: str
    arcname: str
    is_symlink: bool = False


# {a,b} alternatives, case sensitive, no special meaning for dots or separators
EXCLUDE_FLAGS = fnmatch.BRACE | fnmatch.CASE | fnmatch.DOTMATCH


def _class_end(pattern: str, start: int) -> int:
    """Index of the `]` closing the class opened at start, or -1."""
    i = start + 1
    if i < len(pattern) and pattern[i] in '!^':
        i += 1
    # a leading ] is a literal member
    if i < len(pattern) and pattern[i] == ']':
        i += 1
    while i < len(pattern):
        if pattern[i] == '\\':
            i += 2
            continue
        if pattern[i] == ']':
            return i
        i += 1
    return -1


def check_exclude(pattern: str) -> None:
    """
    Validate an exclude glob.

    Raises:
        ValueError: On an empty pattern, an unclosed `[` or `{`, an unmatched
            `}` or a trailing escape
    """
    if not pattern:
        raise ValueError("empty pattern")

    depth = 0
    i = 0
    while i < len(pattern):
        char = pattern[i]
        if char == '\\':
            if i + 1 >= len(pattern):
                raise ValueError("trailing escape character")
            i += 2
            continue
        if char == '[':
            end = _class_end(pattern, i)
            if end < 0:
                raise ValueError(f"unclosed '[' at position {i}")
            i = end + 1
            continue
        if char == '{':
            depth += 1
        elif char == '}':
            if depth == 0:
                raise ValueError(f"unmatched '}}' at position {i}")
            depth -= 1
        i += 1

    if depth:
        raise ValueError("unclosed '{'")

    # compiles the pattern, fails on anything wcmatch rejects on its own
    fnmatch.translate(pattern, flags=EXCLUDE_FLAGS)


def should_exclude(path: str, patterns: Sequence[str]) -> bool:
    """
    Check a source path against exclude globs.

    The whole path has to match and `*` also matches path separators, so
    `*.log` excludes log files at any depth. `{a,b}` matches either
    alternative.
    """
    if not patterns:
        return False
    return fnmatch.fnmatch(path, list(patterns), flags=EXCLUDE_FLAGS)


def root_basename(path: str) -> str:
    return os.path.basename(os.path.normpath(path)) or path


class LocalSource:
    """
    Handler for local filesystem sources.

    A symlinked root is resolved once before walking; symlinks found during
    the walk are stored as symlink entries and never followed.
    """

    def __init__(self, target: BackupTarget):
        """
        Initialize local source handler.

        Args:
            target: Backup target with the root path and exclude globs
        """
        self.target = target
        self.exclude_patterns = list(target.exclude)

    def _should_exclude(self, *paths: str) -> bool:
        return any(should_exclude(path, self.exclude_patterns) for path in paths)

    def _resolve_root(self) -> str:
        root = os.path.abspath(os.path.expanduser(self.target.path))

        try:
            os.lstat(root)
        except FileNotFoundError:
            raise PreconditionError(f"Path does not exist: {self.target.path}")
        except OSError as e:
            raise SourceError(f"Failed to access {self.target.path}: {e}") from e

        if os.path.islink(root):
            resolved = os.path.realpath(root)
            if not os.path.exists(resolved):
                raise PreconditionError(f"Symlink target does not exist: {self.target.path} -> {resolved}")
            logger.debug(f"Resolved symlinked root {root} -> {resolved}")
            return resolved

        return root

    def iter_items(self) -> Iterator[SourceItem]:
        """
        Yield the items of the target in walk order.

        Exclude globs are matched against the real path of each item and
        against the path as written from the declared root, so relative
        globs work with relative roots.

        Raises:
            PreconditionError: If the root path does not exist
            SourceError: If a directory cannot be read
        """
        root = self._resolve_root()
        declared = os.path.normpath(os.path.expanduser(self.target.path))
        # the declared root names the folder, even when it was a symlink
        base = root_basename(declared)

        if not os.path.isdir(root):
            if not self._should_exclude(root, declared):
                yield SourceItem(root, base)
            return

        yield from self._walk(root, declared, base)

    def _walk(self, directory: str, declared: str, arc_prefix: str) -> Iterator[SourceItem]:
        try:
            with os.scandir(directory) as it:
                entries = sorted(it, key=lambda e: e.name)
        except PermissionError as e:
            raise SourceError(f"Permission denied accessing {directory}: {e}") from e
        except OSError as e:
            raise SourceError(f"Error walking directory {directory}: {e}") from e

        for entry in entries:
            arcname = posixpath.join(arc_prefix, entry.name)
            declared_path = os.path.join(declared, entry.name)

            if entry.is_symlink():
                if not self._should_exclude(entry.path, declared_path):
                    yield SourceItem(entry.path, arcname, is_symlink=True)
            elif entry.is_dir(follow_symlinks=False):
                yield from self._walk(entry.path, declared_path, arcname)
            elif entry.is_file(follow_symlinks=False):
                if not self._should_exclude(entry.path, declared_path):
                    yield SourceItem(entry.path, arcname)
            else:
                logger.debug(f"Skipping special file: {entry.path}")

    def add_to(self, archive: ZipArchive) -> int:
        """
        Stream the target into the archive.

        Returns:
            Number of entries written
        """
        count = 0
        for item in self.iter_items():
            if item.is_symlink:
                try:
                    link_target = os.readlink(item.source)
                except OSError as e:
                    raise SourceError(f"Failed to read link {item.source}: {e}") from e
                archive.add_symlink(item.arcname, link_target)
            else:
                archive.add_file(item.arcname, item.source)
            count += 1
        return count


class SSHSource:
    """
    Handler for remote filesystem sources.

    Walks the remote tree through RemoteFS; only names and the directory flag
    are known remotely, so every non-directory is copied as file content.
    Links to files are read through, links to directories and dangling links
    are left out by the listing.
    """

    def __init__(self, remote_fs: RemoteFS, target: BackupTarget):
        """
        Initialize SSH source handler.

        Args:
            remote_fs: Remote filesystem of the connected host
            target: Backup target with the remote root path and exclude globs
        """
        self.remote_fs = remote_fs
        self.target = target
        self.exclude_patterns = list(target.exclude)

    def _should_exclude(self, *paths: str) -> bool:
        return any(should_exclude(path, self.exclude_patterns) for path in paths)

    def iter_items(self) -> List[SourceItem]:
        """Collect the items of the target without reading any file content."""
        items = []
        self._walk(lambda item: items.append(item))
        return items

    def _walk(self, on_item) -> None:
        root = self.remote_fs.abspath(self.target.path)
        declared = posixpath.normpath(self.target.path)
        base = posixpath.basename(root) or root

        def visit(path: str, entry: RemoteFileEntry):
            if entry.is_dir:
                return
            if path == root:
                arcname = base
                declared_path = declared
            else:
                relpath = posixpath.relpath(path, root)
                arcname = posixpath.join(base, relpath)
                declared_path = posixpath.join(declared, relpath)
            if self._should_exclude(path, declared_path):
                return
            on_item(SourceItem(path, arcname))

        self.remote_fs.walk(root, visit)

    def add_to(self, archive: ZipArchive) -> int:
        """
        Stream the target into the archive, one remote file at a time.

        Returns:
            Number of entries written
        """
        written = []

        def copy(item: SourceItem):
            with self.remote_fs.open(item.source) as stream:
                archive.write_entry(item.arcname, stream)
            written.append(item.arcname)

        self._walk(copy)
        return len(written)


def create_source(profile_type: ProfileType, target: BackupTarget, remote_fs: Optional[RemoteFS] = None):
    """
    Factory function to create appropriate source handler.

    Args:
        profile_type: ProfileType.LOCAL or ProfileType.REMOTE
        target: Backup target to walk
        remote_fs: Remote filesystem, required for remote profiles

    Returns:
        LocalSource or SSHSource instance

    Raises:
        ValueError: If profile_type has no filesystem source
    """
    if profile_type == ProfileType.LOCAL:
        return LocalSource(target)
    elif profile_type == ProfileType.REMOTE:
        if remote_fs is None:
            raise ValueError("Remote sources need a remote filesystem")
        return SSHSource(remote_fs, target)
    else:
        raise ValueError(f"Invalid source type: {profile_type}")
