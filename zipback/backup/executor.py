"""
Backup executor - orchestrates the complete backup workflow.

Workflow per profile:
1. Prepare the destination directory
2. Collect content
   - local/remote: one new archive with every dir and database dump
   - sftpsync: download the remote archives missing in the destination
3. Apply owner and mode to the produced files
4. Expurge old archives (keep > 0)
5. Notify (success or failure), errors here are only logged

Profiles run one after the other; a failed profile never stops the batch.
"""

import os
import pwd
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional

from zipback.models import Profile, ProfileType, SshSpec
from .archive import ZipArchive, ArchiveError, generate_archive_filename
from .databases import dump_database
from .errors import BackupError, BatchError, ExecutionError, PreconditionError
from .notify import notify_result
from .remote import SSHConnection
from .remotefs import RemoteFS
from .retention import expurge_dir
from .sources import create_source
from .sync import sync_missing


logger = logging.getLogger(__name__)


class ProfileState(str, Enum):
    PENDING = 'pending'
    PREPARING_DESTINATION = 'preparing-destination'
    COLLECTING = 'collecting'
    ADJUSTING_OWNERSHIP = 'adjusting-ownership'
    EXPURGING = 'expurging'
    NOTIFIED = 'notified'


@dataclass
class ProfileResult:
    profile_name: str
    success: bool
    error: Optional[str] = None
    failed_state: Optional[ProfileState] = None
    archive_path: Optional[str] = None
    downloaded: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    logs: List[str] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


def _default_config():
    from zipback.config import config
    return config['default']


class BackupExecutor:
    """
    Runs one profile through its states.
    """

    def __init__(self, profile: Profile, cfg=None,
                 connect: Optional[Callable[[SshSpec], object]] = None,
                 docker_client=None):
        """
        Initialize backup executor.

        Args:
            profile: Profile to execute
            cfg: Config class, defaults to the production config
            connect: Factory returning a command executor for an SshSpec; the
                result is used as a context manager around the remote work
            docker_client: docker client for local container dumps
        """
        self.profile = profile
        self.cfg = cfg or _default_config()
        self.connect = connect or self._ssh_connection
        self.docker_client = docker_client

        self.state = ProfileState.PENDING
        self.archive_path = None
        self.downloaded = []
        self.deleted = []
        self.logs = []

    def _ssh_connection(self, spec: SshSpec) -> SSHConnection:
        return SSHConnection(
            spec,
            known_hosts=self.cfg.SSH_KNOWN_HOSTS,
            ignore_host_key=self.cfg.SSH_IGNORE_HOST_KEY,
            timeout=self.cfg.SSH_TIMEOUT
        )

    @property
    def destination(self) -> str:
        return os.path.expanduser(self.profile.destination.path)

    def execute(self) -> ProfileResult:
        """
        Execute the profile.

        Errors never escape; they are logged and reported in the result.

        Returns:
            ProfileResult with the outcome and the collected log lines
        """
        started_at = datetime.now()
        self._log(f"Starting backup profile: {self.profile.name} (type: {self.profile.type.value})")

        error = None
        failed_state = None
        try:
            self._execute_workflow()
            self._log("Backup completed successfully")

        except BackupError as e:
            error = e
            failed_state = self.state
            self._log(f"Backup failed while {self.state.value}: {e}", level=logging.ERROR)

        except Exception as e:
            error = e
            failed_state = self.state
            logger.exception(f"Unexpected error in profile {self.profile.name}")
            self._log(f"Backup failed while {self.state.value}: {e}", level=logging.ERROR)

        finally:
            self._notify(error)

        return ProfileResult(
            profile_name=self.profile.name,
            success=error is None,
            error=str(error) if error is not None else None,
            failed_state=failed_state,
            archive_path=self.archive_path if error is None else None,
            downloaded=list(self.downloaded),
            deleted=list(self.deleted),
            logs=list(self.logs),
            started_at=started_at,
            completed_at=datetime.now()
        )

    def _execute_workflow(self):
        """Execute the main backup workflow steps."""
        # Step 1: Destination
        self._set_state(ProfileState.PREPARING_DESTINATION)
        self._prepare_destination()

        # Step 2: Content
        self._set_state(ProfileState.COLLECTING)
        if self.profile.type == ProfileType.SFTPSYNC:
            outputs = self._sync()
        else:
            outputs = [self._collect()]

        # Step 3: Ownership and mode
        self._set_state(ProfileState.ADJUSTING_OWNERSHIP)
        for path in outputs:
            self._adjust_ownership(path)

        # Step 4: Retention
        if self.profile.destination.keep > 0:
            self._set_state(ProfileState.EXPURGING)
            self._expurge()
        else:
            self._log("Retention not configured, skipping")

    def _prepare_destination(self):
        """
        Make sure the destination directory exists.

        Raises:
            PreconditionError: If the path exists but is not a directory, or
                cannot be created
        """
        dest = self.destination
        if os.path.exists(dest):
            if not os.path.isdir(dest):
                raise PreconditionError(f"Destination is not a directory: {dest}")
            return

        try:
            os.makedirs(dest)
        except OSError as e:
            raise PreconditionError(f"Unable to create destination {dest}: {e}") from e
        self._log(f"Created destination directory: {dest}")

    def _collect(self) -> str:
        """
        Write a new archive with all dirs and databases of the profile.

        On any failure the partial archive is deleted before the error is
        raised again.

        Returns:
            Path of the finished archive
        """
        path = os.path.join(self.destination, generate_archive_filename(self.profile.name))
        archive = ZipArchive.open(path)
        self.archive_path = path
        self._log(f"Writing archive: {os.path.basename(path)}")

        try:
            if self.profile.type == ProfileType.REMOTE:
                with self.connect(self.profile.ssh) as shell:
                    self._log(f"Connected to {self.profile.ssh.host}")
                    self._fill_archive(archive, shell)
            else:
                self._fill_archive(archive, None)
            archive.close()

        except Exception as e:
            archive.abort()
            self.archive_path = None
            try:
                os.remove(path)
            except OSError as delete_error:
                raise ArchiveError(
                    f"Unable to delete incomplete archive {path} due to: {delete_error} "
                    f"while handling error: {e}"
                ) from e
            self._log(f"Deleted incomplete archive: {os.path.basename(path)}")
            raise

        size = os.path.getsize(path)
        self._log(f"Archive created: {os.path.basename(path)} ({size / 1024 / 1024:.2f} MB)")
        return path

    def _fill_archive(self, archive: ZipArchive, shell):
        remote_fs = RemoteFS(shell) if shell is not None else None

        for target in self.profile.dirs:
            source = create_source(self.profile.type, target, remote_fs)
            count = source.add_to(archive)
            self._log(f"Added {count} files from {target.path}")

        for db in self.profile.dbs:
            entry = dump_database(
                db, archive,
                shell=shell,
                cnf_locations=self.cfg.MYSQL_CNF_LOCATIONS,
                docker_client=self.docker_client
            )
            self._log(f"Dumped database {db.name} into {entry}")

    def _sync(self) -> List[str]:
        """Download the remote archives missing in the destination, per dir."""
        with self.connect(self.profile.ssh) as shell:
            self._log(f"Connected to {self.profile.ssh.host}")
            remote_fs = RemoteFS(shell)
            for target in self.profile.dirs:
                downloaded = sync_missing(remote_fs, target.path, self.destination, target.name)
                self.downloaded.extend(downloaded)
                self._log(f"Downloaded {len(downloaded)} archives of {target.name} from {target.path}")
        return list(self.downloaded)

    def _adjust_ownership(self, path: str):
        """
        Apply destination owner and mode to a produced file.

        Raises:
            ExecutionError: If the user is unknown or chown/chmod fails
        """
        owner = self.profile.destination.owner
        mode = self.profile.destination.mode

        if owner:
            try:
                user = pwd.getpwnam(owner)
            except KeyError:
                raise ExecutionError(f"Unable to find user: {owner}")
            try:
                os.chown(path, user.pw_uid, user.pw_gid)
            except OSError as e:
                raise ExecutionError(f"Unable to change owner of {path}: {e}") from e

        if mode is not None:
            try:
                os.chmod(path, mode)
            except OSError as e:
                raise ExecutionError(f"Unable to change mode of {path}: {e}") from e

    def _expurge(self):
        keep = self.profile.destination.keep
        if self.profile.type == ProfileType.SFTPSYNC:
            names = [target.name for target in self.profile.dirs]
        else:
            names = [self.profile.name]

        for name in names:
            deleted = expurge_dir(self.destination, keep, name)
            self.deleted.extend(deleted)
            self._log(f"Retention for {name}: kept {keep}, deleted {len(deleted)}")

    def _notify(self, error: Optional[BaseException]):
        self._set_state(ProfileState.NOTIFIED)
        notify_result(
            self.profile.notify,
            self.profile.name,
            self.logs,
            error=error,
            timeout=self.cfg.SMTP_TIMEOUT
        )

    def _set_state(self, state: ProfileState):
        logger.debug(f"Profile {self.profile.name}: {self.state.value} -> {state.value}")
        self.state = state

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
            level: Level for the application log
        """
        timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
        self.logs.append(f"[{timestamp}] {message}")
        logger.log(level, f"[{self.profile.name}] {message}")


class BackupRunner:
    """
    Runs a batch of profiles sequentially.
    """

    def __init__(self, cfg=None, connect=None, docker_client=None):
        self.cfg = cfg or _default_config()
        self.connect = connect
        self.docker_client = docker_client

    def run_profile(self, profile: Profile) -> ProfileResult:
        executor = BackupExecutor(
            profile,
            cfg=self.cfg,
            connect=self.connect,
            docker_client=self.docker_client
        )
        return executor.execute()

    def run(self, profiles: List[Profile]) -> List[ProfileResult]:
        """
        Run every profile, one at a time.

        Returns:
            One result per profile, in order

        Raises:
            BatchError: After the batch, if at least one profile failed
        """
        results = []
        for profile in profiles:
            result = self.run_profile(profile)
            results.append(result)
            if result.success:
                logger.info(f"Profile {profile.name} succeeded")
            else:
                logger.error(f"Profile {profile.name} failed: {result.error}")

        failures = {r.profile_name: r.error for r in results if not r.success}
        logger.info(
            f"Batch complete. Profiles: {len(results)}, "
            f"Succeeded: {len(results) - len(failures)}, "
            f"Failed: {len(failures)}"
        )
        if failures:
            raise BatchError(failures, results)
        return results
