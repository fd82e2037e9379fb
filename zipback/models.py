from enum import Enum
from dataclasses import dataclass, field
from typing import Optional, Tuple


class ProfileType(str, Enum):
    LOCAL = 'local'
    REMOTE = 'remote'
    SFTPSYNC = 'sftpsync'


class SshAuth(str, Enum):
    PASSWORD = 'password'
    SSHKEY = 'sshkey'
    SSHAGENT = 'sshagent'


class DbEngine(str, Enum):
    MYSQL = 'mysql'
    MARIADB = 'mariadb'
    POSTGRES = 'postgres'
    DOCKER_MYSQL = 'dockermysql'
    DOCKER_MARIADB = 'dockermariadb'
    DOCKER_POSTGRES = 'dockerpostgres'

    @property
    def in_docker(self) -> bool:
        return self.value.startswith('docker')

    @property
    def flavor(self) -> str:
        """Engine without the deployment prefix: mysql, mariadb or postgres."""
        return self.value[len('docker'):] if self.in_docker else self.value


@dataclass(frozen=True)
class BackupTarget:
    """A filesystem path to include, with exclusion globs matched on the source path."""
    path: str
    name: Optional[str] = None
    exclude: Tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class DatabaseTarget:
    name: str
    engine: DbEngine
    user: str = ''
    password: str = ''
    container_name: str = ''

    def __repr__(self):
        return f'<DatabaseTarget {self.name} engine={self.engine.value}>'


@dataclass(frozen=True)
class Destination:
    """Output directory; keep == 0 disables retention, mode is already parsed from octal."""
    path: str
    keep: int = 0
    owner: str = ''
    mode: Optional[int] = None


@dataclass(frozen=True)
class SshSpec:
    auth: SshAuth
    host: str
    user: str
    port: int = 22
    password: str = ''
    private_key: str = ''
    passphrase: str = ''

    def __repr__(self):
        return f'<SshSpec {self.user}@{self.host}:{self.port} auth={self.auth.value}>'


@dataclass(frozen=True)
class NotifySpec:
    host: str = ''
    port: int = 0
    user: str = ''
    password: str = ''
    sender: str = ''
    to: Tuple[str, ...] = field(default_factory=tuple)
    on_success: bool = False

    @property
    def is_complete(self) -> bool:
        return bool(self.host and self.port and self.sender and self.to)

    def __repr__(self):
        return f'<NotifySpec {self.host}:{self.port} to={list(self.to)}>'


@dataclass(frozen=True)
class Profile:
    """A named backup job, loaded once from a profile file and never modified."""
    name: str
    type: ProfileType
    destination: Destination
    dirs: Tuple[BackupTarget, ...] = field(default_factory=tuple)
    dbs: Tuple[DatabaseTarget, ...] = field(default_factory=tuple)
    ssh: Optional[SshSpec] = None
    notify: Optional[NotifySpec] = None
    source_file: str = ''

    @property
    def is_remote(self) -> bool:
        return self.type in (ProfileType.REMOTE, ProfileType.SFTPSYNC)

    def __repr__(self):
        return f'<Profile {self.name} type={self.type.value}>'
