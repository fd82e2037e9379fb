"""
Database dump strategies.

Every strategy produces one byte stream (the dump binary's stdout) and
writes it into a single archive entry:
- LocalDump: mysqldump / mariadb-dump / pg_dump on this machine
- DockerDump: the same binaries inside a local container, through the docker SDK
- RemoteDump: the binaries on the remote host, through the ssh connection
- RemoteDockerDump: `docker exec` on the remote host

Entries are named _mysqldump/<db>.dump.sql or _pgdump/<db>.dump.sql.
"""

import os
import shlex
import shutil
import logging
import subprocess
import tempfile
import configparser
from typing import Dict, List, Optional, Sequence, Tuple

from docker import DockerClient
from docker.errors import DockerException, NotFound

from zipback.models import DatabaseTarget
from .archive import ZipArchive
from .errors import ExecutionError
from .remote import with_env


logger = logging.getLogger(__name__)


MYSQL_DUMP_DIR = '_mysqldump'
PG_DUMP_DIR = '_pgdump'
DUMP_SUFFIX = '.dump.sql'

# dump binaries in lookup order
BINARIES = {
    'mysql': ('mysqldump',),
    'mariadb': ('mariadb-dump', 'mysqldump'),
    'postgres': ('pg_dump',),
}

STDERR_TAIL_BYTES = 2048


class DumpError(ExecutionError):
    """Raised when a database dump cannot be started or exits with an error."""
    pass


def sanitize(value: str) -> str:
    """Trim a value and replace whitespace that would split a shell word."""
    value = value.strip()
    for char in (' ', '\n', '\r'):
        value = value.replace(char, '_')
    return value


def dump_entry_name(db: DatabaseTarget) -> str:
    folder = PG_DUMP_DIR if db.engine.flavor == 'postgres' else MYSQL_DUMP_DIR
    return f"{folder}/{db.name}{DUMP_SUFFIX}"


def mysqldump_args(user: str, password: str, db_name: str) -> List[str]:
    args = []
    if user:
        args += ['-u', sanitize(user)]
    if password:
        args.append('-p' + sanitize(password))
    args += ['--add-drop-database', '--databases', sanitize(db_name)]
    return args


def pgdump_args(user: str, db_name: str) -> List[str]:
    args = []
    if user:
        args += ['-U', sanitize(user)]
    args += ['--clean', '--if-exists', '--create', sanitize(db_name)]
    return args


def dump_args(db: DatabaseTarget, user: Optional[str] = None, password: Optional[str] = None) -> List[str]:
    """Arguments for the dump binary; user/password override the profile values."""
    user = db.user if user is None else user
    password = db.password if password is None else password
    if db.engine.flavor == 'postgres':
        return pgdump_args(user, db.name)
    return mysqldump_args(user, password, db.name)


def dump_env(db: DatabaseTarget) -> Dict[str, str]:
    """Environment for the dump binary; postgres takes the password from PGPASSWORD."""
    if db.engine.flavor == 'postgres' and db.password:
        return {'PGPASSWORD': db.password}
    return {}


def read_mysql_cnf(locations: Sequence[str]) -> Tuple[str, str]:
    """
    Read user and password from the [client] section of mysql option files.

    Later files override earlier ones; missing files are skipped.

    Returns:
        (user, password), empty strings when not found

    Raises:
        DumpError: If an existing file cannot be parsed
    """
    user = ''
    password = ''
    for location in locations:
        location = os.path.expanduser(location)
        if not os.path.isfile(location):
            continue

        parser = configparser.ConfigParser(interpolation=None, strict=False)
        try:
            parser.read(location)
        except (configparser.Error, OSError) as e:
            raise DumpError(f"Failed to read mysql options from {location}: {e}") from e

        if parser.has_section('client'):
            user = parser.get('client', 'user', fallback=user)
            password = parser.get('client', 'password', fallback=password)
            logger.debug(f"Loaded mysql client credentials from {location}")

    return user, password


def _decode_tail(data: bytes) -> str:
    return data[-STDERR_TAIL_BYTES:].decode('utf-8', errors='replace').strip()


def _stderr_tail(stream) -> str:
    stream.seek(0, os.SEEK_END)
    size = stream.tell()
    stream.seek(max(0, size - STDERR_TAIL_BYTES))
    return _decode_tail(stream.read())


def _read_tail(stream) -> str:
    """Read a pipe to the end, keeping only its last STDERR_TAIL_BYTES."""
    tail = b''
    while True:
        chunk = stream.read(65536)
        if not chunk:
            break
        tail = (tail + chunk)[-STDERR_TAIL_BYTES:]
    return _decode_tail(tail)


class LocalDump:
    """Run the dump binary as a local subprocess and stream its stdout."""

    def __init__(self, db: DatabaseTarget, cnf_locations: Sequence[str] = ()):
        self.db = db
        self.cnf_locations = list(cnf_locations)

    def _binary(self) -> str:
        candidates = BINARIES[self.db.engine.flavor]
        for name in candidates:
            path = shutil.which(name)
            if path:
                return os.path.abspath(path)
        raise DumpError(f"None of {', '.join(candidates)} found in PATH")

    def command(self) -> Tuple[List[str], Dict[str, str]]:
        """
        Build the command line and extra environment.

        For mysql flavors, credentials missing from the profile are read from
        the mysql option files.
        """
        user, password = self.db.user, self.db.password
        if self.db.engine.flavor != 'postgres' and (not user or not password) and self.cnf_locations:
            cnf_user, cnf_password = read_mysql_cnf(self.cnf_locations)
            user = user or cnf_user
            password = password or cnf_password

        argv = [self._binary()] + dump_args(self.db, user, password)
        return argv, dump_env(self.db)

    def dump_into(self, archive: ZipArchive) -> str:
        """
        Run the dump and write its output into the archive.

        Returns:
            Name of the archive entry

        Raises:
            DumpError: If the binary is missing, cannot start or exits non-zero
        """
        entry = dump_entry_name(self.db)
        argv, extra_env = self.command()
        env = dict(os.environ, **extra_env) if extra_env else None

        with tempfile.TemporaryFile() as stderr:
            try:
                process = subprocess.Popen(argv, stdout=subprocess.PIPE, stderr=stderr, env=env)
            except OSError as e:
                raise DumpError(f"Failed to start {argv[0]}: {e}") from e

            try:
                archive.write_entry(entry, process.stdout)
            except BaseException:
                process.kill()
                process.wait()
                raise
            finally:
                process.stdout.close()

            returncode = process.wait()
            if returncode != 0:
                raise DumpError(
                    f"{os.path.basename(argv[0])} exited with status {returncode} "
                    f"dumping {self.db.name}: {_stderr_tail(stderr)}"
                )

        return entry


class DockerDump:
    """Run the dump binary inside a local container through the docker API."""

    def __init__(self, db: DatabaseTarget, client: Optional[DockerClient] = None):
        self.db = db
        self._client = client

    @property
    def client(self) -> DockerClient:
        if self._client is None:
            try:
                self._client = DockerClient.from_env()
            except DockerException as e:
                raise DumpError(f"Unable to create docker client: {e}") from e
        return self._client

    def _exec(self, container_id: str, cmd: List[str], environment: Optional[Dict[str, str]] = None):
        exec_id = self.client.api.exec_create(
            container_id, cmd, stdout=True, stderr=False, environment=environment or None
        )
        return exec_id, self.client.api.exec_start(exec_id, stream=True)

    def _binary(self, container_id: str) -> str:
        candidates = BINARIES[self.db.engine.flavor]
        for name in candidates:
            exec_id, output = self._exec(container_id, ['which', name])
            path = b''.join(output).decode('utf-8', errors='replace').strip()
            if self.client.api.exec_inspect(exec_id)['ExitCode'] == 0 and path:
                return path
        # let the container resolve it, the exit code reports a missing binary
        return candidates[-1]

    def dump_into(self, archive: ZipArchive) -> str:
        entry = dump_entry_name(self.db)
        container_name = self.db.container_name

        try:
            container = self.client.containers.get(container_name)
        except NotFound as e:
            raise DumpError(f"Container not found: {container_name}") from e
        except DockerException as e:
            raise DumpError(f"Unable to inspect container {container_name}: {e}") from e

        try:
            cmd = [self._binary(container.id)] + dump_args(self.db)
            exec_id, output = self._exec(container.id, cmd, dump_env(self.db))
            with archive.file_writer(entry) as writer:
                for chunk in output:
                    writer.write(chunk)
            exit_code = self.client.api.exec_inspect(exec_id)['ExitCode']
        except DockerException as e:
            raise DumpError(f"Docker exec failed in {container_name}: {e}") from e

        if exit_code != 0:
            raise DumpError(f"{cmd[0]} failed in container {container_name} with exit code {exit_code}")
        return entry


class RemoteDump:
    """Run the dump binary on the remote host, streaming stdout over the ssh channel."""

    def __init__(self, db: DatabaseTarget, shell):
        self.db = db
        self.shell = shell

    def _which(self, name: str, prefix: str = '') -> Optional[str]:
        # inside a container there is no shell builtin to ask, only `which`
        lookup = f"{prefix}which" if prefix else "command -v"
        result = self.shell.run(f"{lookup} {shlex.quote(name)}")
        path = result.text.strip()
        if result.ok and path:
            return path.splitlines()[0]
        return None

    def _binary(self) -> str:
        candidates = BINARIES[self.db.engine.flavor]
        for name in candidates:
            path = self._which(name)
            if path:
                return path
        raise DumpError(f"None of {', '.join(candidates)} found on the remote host")

    def command(self) -> str:
        argv = [self._binary()] + dump_args(self.db)
        return with_env(' '.join(shlex.quote(a) for a in argv), dump_env(self.db))

    def _stream(self, command: str, archive: ZipArchive) -> str:
        entry = dump_entry_name(self.db)
        process = self.shell.start(command)
        try:
            archive.write_entry(entry, process.stdout)
            errors = _read_tail(process.stderr)
            status = process.wait()
        finally:
            process.close()

        if status != 0:
            raise DumpError(f"Remote dump of {self.db.name} failed with exit status {status}: {errors}")
        return entry

    def dump_into(self, archive: ZipArchive) -> str:
        return self._stream(self.command(), archive)


class RemoteDockerDump(RemoteDump):
    """Run the dump binary in a container on the remote host with `docker exec`."""

    def _binary(self) -> str:
        if not self._which('docker'):
            raise DumpError("docker not found on the remote host")

        container = shlex.quote(self.db.container_name)
        candidates = BINARIES[self.db.engine.flavor]
        for name in candidates:
            path = self._which(name, prefix=f"docker exec {container} ")
            if path:
                return path
        return candidates[-1]

    def command(self) -> str:
        parts = ['docker', 'exec']
        for key, value in dump_env(self.db).items():
            parts += ['-e', f"{key}={value}"]
        parts += [self.db.container_name, self._binary()] + dump_args(self.db)
        return ' '.join(shlex.quote(p) for p in parts)


def create_dumper(db: DatabaseTarget, shell=None, cnf_locations: Sequence[str] = (), docker_client=None):
    """
    Factory function to create the dump strategy for a database.

    Args:
        db: Database target
        shell: Remote command executor; None means dump on this machine
        cnf_locations: mysql option files for local credential fallback
        docker_client: docker client for local container dumps

    Returns:
        LocalDump, DockerDump, RemoteDump or RemoteDockerDump instance
    """
    if db.engine.in_docker and not db.container_name:
        raise DumpError(f"Database {db.name} of type {db.engine.value} needs a container name")

    if shell is None:
        if db.engine.in_docker:
            return DockerDump(db, client=docker_client)
        return LocalDump(db, cnf_locations=cnf_locations)

    if db.engine.in_docker:
        return RemoteDockerDump(db, shell)
    return RemoteDump(db, shell)


def dump_database(db: DatabaseTarget, archive: ZipArchive, shell=None,
                  cnf_locations: Sequence[str] = (), docker_client=None) -> str:
    """
    Dump one database into the archive.

    Returns:
        Name of the archive entry written
    """
    dumper = create_dumper(db, shell=shell, cnf_locations=cnf_locations, docker_client=docker_client)
    logger.debug(f"Dumping {db.name} with {type(dumper).__name__}")
    return dumper.dump_into(archive)
