"""
Remote filesystem access built only on shell commands.

No SFTP or other listing API is assumed on the server: every operation is a
small POSIX shell script run through a command executor (anything with
run() and start(), see remote.py). Only names and the directory flag are
known about remote entries.
"""

import posixpath
import shlex
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

from .errors import PreconditionError
from .remote import RemoteError


logger = logging.getLogger(__name__)


NOT_EXISTS_MARKER = '__STAT_NO_EXISTS__'
NOT_DIR_MARKER = '__STAT_NO_DIR__'

# stat %F values that are streamed as file content; links to files are read through
FILE_TYPES = ('regular file', 'regular empty file', 'symbolic link')
DIR_TYPE = 'directory'

# written by the list script in place of stat for links that cannot be read
# as a file; never followed, the same as the local walker
DIR_LINK_TYPE = 'directory symbolic link'
DANGLING_LINK_TYPE = 'dangling symbolic link'
SKIPPED_TYPES = (
    'fifo', 'socket', 'character special file', 'block special file', 'weird file',
    DIR_LINK_TYPE, DANGLING_LINK_TYPE,
)


class PathKind(str, Enum):
    NOT_EXISTS = 'not-exists'
    NOT_DIRECTORY = 'exists-not-directory'
    DIRECTORY = 'directory'
    FILE = 'file'


class SkipDir(Exception):
    """Raised from a walk callback to skip the directory just visited."""
    pass


@dataclass(frozen=True)
class RemoteFileEntry:
    name: str
    is_dir: bool


def parse_stat_line(line: str) -> Optional[RemoteFileEntry]:
    """
    Parse one line of `stat -c '%F_%n'` output.

    Returns:
        RemoteFileEntry named after the basename, or None for types that
        cannot be copied (fifos, sockets, devices, links to directories and
        dangling links)

    Raises:
        RemoteError: If the line does not start with a known stat type
    """
    line = line.strip('\n')
    kind, sep, path = line.partition('_')
    # "regular file_" and friends contain spaces but never an underscore
    if not sep or not path:
        raise RemoteError(f"Unrecognized stat output: {line[:80]!r}")

    name = posixpath.basename(path.rstrip('/')) or path
    if kind == DIR_TYPE:
        return RemoteFileEntry(name=name, is_dir=True)
    if kind in FILE_TYPES:
        return RemoteFileEntry(name=name, is_dir=False)
    if kind in SKIPPED_TYPES:
        logger.debug(f"Skipping remote {kind}: {path}")
        return None

    raise RemoteError(f"Unrecognized stat output: {line[:80]!r}")


def parse_listing(output: str, path: str) -> List[RemoteFileEntry]:
    """
    Parse the output of the list script into entries sorted by name.

    Raises:
        PreconditionError: If the script reported a missing path
        RemoteError: If the path is not a directory or a line is malformed
    """
    if NOT_EXISTS_MARKER in output:
        raise PreconditionError(f"Remote path does not exist: {path}")
    if NOT_DIR_MARKER in output:
        raise RemoteError(f"Remote path is not a directory: {path}")

    entries = []
    for line in output.splitlines():
        if not line:
            continue
        entry = parse_stat_line(line)
        if entry is not None:
            entries.append(entry)
    return sorted(entries, key=lambda e: e.name)


def probe_command(path: str) -> str:
    quoted = shlex.quote(path)
    return (
        f'if [ ! -e {quoted} ] && [ ! -L {quoted} ]; then echo {PathKind.NOT_EXISTS.value}; '
        f'elif [ -d {quoted} ]; then echo {PathKind.DIRECTORY.value}; '
        f'elif [ -f {quoted} ]; then echo {PathKind.FILE.value}; '
        f'else echo {PathKind.NOT_DIRECTORY.value}; fi'
    )


def list_command(path: str) -> str:
    return f"""
dir={shlex.quote(path)}
if [ ! -e "$dir" ]; then
  echo "{NOT_EXISTS_MARKER}"
elif [ ! -d "$dir" ]; then
  echo "{NOT_DIR_MARKER}"
else
  find -H "$dir" -mindepth 1 -maxdepth 1 ! -type l -exec stat -c '%F_%n' {{}} + &&
  find -H "$dir" -mindepth 1 -maxdepth 1 -type l -exec sh -c '
    for p; do
      if [ ! -e "$p" ]; then kind="{DANGLING_LINK_TYPE}"
      elif [ -d "$p" ]; then kind="{DIR_LINK_TYPE}"
      else kind="symbolic link"; fi
      printf "%s_%s\\n" "$kind" "$p"
    done' sh {{}} +
fi
"""


class RemoteFile:
    """Readable stream of a remote file; closing it checks the exit status of cat."""

    def __init__(self, process, path: str):
        self.path = path
        self._process = process
        self.closed = False

    def read(self, size: int = -1) -> bytes:
        return self._process.stdout.read(size)

    def close(self):
        if self.closed:
            return
        self.closed = True
        # drain so the command can exit before asking for the status
        while self._process.stdout.read(65536):
            pass
        status = self._process.wait()
        self._process.close()
        if status != 0:
            raise RemoteError(f"Reading remote file {self.path} failed with exit status {status}")

    def abort(self):
        """Close without reading the rest of the file or waiting for its status."""
        if self.closed:
            return
        self.closed = True
        logger.debug(f"Aborting read of remote file {self.path}")
        self._process.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is None:
            self.close()
        else:
            self.abort()
        return False


class RemoteFS:
    """
    Filesystem view of a remote host through a command executor.

    Args:
        shell: Object providing run(command) -> CommandResult and
            start(command) -> process with stdout, wait() and close()
    """

    def __init__(self, shell):
        self.shell = shell

    def _run(self, command: str) -> str:
        result = self.shell.run(command)
        if not result.ok:
            raise RemoteError(
                f"Remote command failed with exit status {result.exit_status}: {result.text.strip()[:200]}"
            )
        return result.text

    def getcwd(self) -> str:
        return self._run('pwd').strip()

    def abspath(self, path: str) -> str:
        """Resolve a path against the remote working directory."""
        if posixpath.isabs(path):
            return posixpath.normpath(path)
        return posixpath.normpath(posixpath.join(self.getcwd(), path))

    def probe(self, path: str) -> PathKind:
        """Classify a path; symlinks are classified by their target."""
        output = self._run(probe_command(path)).strip()
        try:
            return PathKind(output)
        except ValueError:
            raise RemoteError(f"Unexpected probe output for {path}: {output[:80]!r}")

    def stat(self, path: str) -> RemoteFileEntry:
        """
        Stat a single path.

        Raises:
            PreconditionError: If the path does not exist
        """
        kind = self.probe(path)
        if kind == PathKind.NOT_EXISTS:
            raise PreconditionError(f"Remote path does not exist: {path}")
        name = posixpath.basename(path.rstrip('/')) or path
        return RemoteFileEntry(name=name, is_dir=kind == PathKind.DIRECTORY)

    def list_dir(self, path: str) -> List[RemoteFileEntry]:
        """List the immediate children of a directory in one round trip."""
        result = self.shell.run(list_command(path))
        if not result.ok:
            raise RemoteError(
                f"Listing {path} failed with exit status {result.exit_status}: {result.text.strip()[:200]}"
            )
        return parse_listing(result.text, path)

    def walk(self, root: str, visit: Callable[[str, RemoteFileEntry], None]) -> None:
        """
        Walk root depth first, calling visit(path, entry) for root and every descendant.

        Children are visited in name order. When visit raises SkipDir for a
        directory its children are not listed; raised for a file, the rest of
        that file's directory is skipped.
        """
        entry = self.stat(root)
        try:
            self._walk(root, entry, visit)
        except SkipDir:
            pass

    def _walk(self, path: str, entry: RemoteFileEntry, visit) -> None:
        try:
            visit(path, entry)
        except SkipDir:
            if entry.is_dir:
                return
            raise

        if not entry.is_dir:
            return

        for child in self.list_dir(path):
            try:
                self._walk(posixpath.join(path, child.name), child, visit)
            except SkipDir:
                break

    def open(self, path: str) -> RemoteFile:
        """Open a remote file for streaming its bytes."""
        process = self.shell.start(f"cat -- {shlex.quote(path)}")
        return RemoteFile(process, path)
