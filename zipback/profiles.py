"""
Profile loading.

Profiles are YAML files (schema version 1). A directory scan picks up every
*.backup.yaml below the directory; invalid files are reported together while
the valid profiles are still returned.
"""

import os
import logging
from typing import Any, Dict, List, Optional

import yaml

from zipback.models import (
    BackupTarget, DatabaseTarget, DbEngine, Destination, NotifySpec,
    Profile, ProfileType, SshAuth, SshSpec
)
from zipback.backup.errors import ConfigError, ProfileLoadError
from zipback.backup.sources import check_exclude


logger = logging.getLogger(__name__)


PROFILE_EXTENSION = '.yaml'
PROFILE_SCAN_SUFFIX = '.backup.yaml'
SUPPORTED_VERSIONS = (1,)
DEFAULT_SSH_PORT = 22


def _section(data: Dict[str, Any], key: str, path: str) -> Dict[str, Any]:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"'{key}' must be a mapping", path)
    return value


def _list(data: Dict[str, Any], key: str, path: str) -> List[Any]:
    value = data.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise ConfigError(f"'{key}' must be a list", path)
    return value


def _str(data: Dict[str, Any], key: str, path: str) -> str:
    value = data.get(key)
    if value is None:
        return ''
    if isinstance(value, (dict, list)):
        raise ConfigError(f"'{key}' must be a string", path)
    return str(value).strip()


def _int(data: Dict[str, Any], key: str, path: str, default: int) -> int:
    value = data.get(key)
    if value is None or value == '':
        return default
    if isinstance(value, bool):
        raise ConfigError(f"'{key}' must be an integer", path)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"'{key}' must be an integer, got {value!r}", path)


def _enum(enum_cls, value: str, field_name: str, path: str):
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ' | '.join(member.value for member in enum_cls)
        raise ConfigError(f"{field_name} '{value}' is not allowed, valid: {allowed}", path)


def _parse_mode(value: str, path: str) -> Optional[int]:
    if not value:
        return None
    try:
        mode = int(value, 8)
    except ValueError:
        raise ConfigError(f"destination mode '{value}' is not an octal number", path)
    if not 0 <= mode <= 0o7777:
        raise ConfigError(f"destination mode '{value}' is out of range", path)
    return mode


def _parse_ssh(data: Dict[str, Any], path: str) -> Optional[SshSpec]:
    section = _section(data, 'ssh', path)
    if not section:
        return None

    auth = _enum(SshAuth, _str(section, 'type', path), 'ssh type', path)
    host = _str(section, 'host', path)
    if not host:
        raise ConfigError("ssh host cannot be empty", path)

    port = _int(section, 'port', path, DEFAULT_SSH_PORT)
    if not 0 < port < 65536:
        raise ConfigError(f"ssh port {port} is out of range", path)

    spec = SshSpec(
        auth=auth,
        host=host,
        port=port,
        user=_str(section, 'user', path),
        password=_str(section, 'password', path),
        private_key=_str(section, 'privateKey', path),
        passphrase=_str(section, 'passphrase', path),
    )
    if auth == SshAuth.PASSWORD and not spec.password:
        raise ConfigError("ssh type password needs a password", path)
    return spec


def _parse_dirs(data: Dict[str, Any], profile_type: ProfileType, path: str) -> List[BackupTarget]:
    dirs = []
    for i, item in enumerate(_list(data, 'dirs', path)):
        if not isinstance(item, dict):
            raise ConfigError(f"dirs[{i}] must be a mapping", path)

        dir_path = _str(item, 'path', path)
        if not dir_path:
            raise ConfigError(f"dirs[{i}] path cannot be empty", path)

        name = _str(item, 'name', path) or None
        if profile_type == ProfileType.SFTPSYNC and not name:
            raise ConfigError(f"dirs[{i}] needs a name for sftpsync profiles", path)

        exclude = _list(item, 'exclude', path)
        if not all(isinstance(pattern, str) for pattern in exclude):
            raise ConfigError(f"dirs[{i}] exclude must be a list of glob strings", path)
        for pattern in exclude:
            try:
                check_exclude(pattern)
            except ValueError as e:
                raise ConfigError(f"dirs[{i}] unable to compile exclude pattern '{pattern}': {e}", path) from e

        dirs.append(BackupTarget(path=dir_path, name=name, exclude=tuple(exclude)))
    return dirs


def _parse_dbs(data: Dict[str, Any], path: str) -> List[DatabaseTarget]:
    dbs = []
    for i, item in enumerate(_list(data, 'dbs', path)):
        if not isinstance(item, dict):
            raise ConfigError(f"dbs[{i}] must be a mapping", path)

        name = _str(item, 'name', path)
        if not name:
            raise ConfigError(f"dbs[{i}] name cannot be empty", path)

        engine = _enum(DbEngine, _str(item, 'type', path), f"dbs[{i}] type", path)
        container_name = _str(item, 'containerName', path)
        if engine.in_docker and not container_name:
            raise ConfigError(f"dbs[{i}] of type {engine.value} needs a containerName", path)

        dbs.append(DatabaseTarget(
            name=name,
            engine=engine,
            user=_str(item, 'user', path),
            password=_str(item, 'password', path),
            container_name=container_name,
        ))
    return dbs


def _parse_destination(data: Dict[str, Any], path: str) -> Destination:
    section = _section(data, 'destination', path)
    dest_path = _str(section, 'path', path)
    if not dest_path:
        raise ConfigError("destination path cannot be empty", path)

    keep = _int(section, 'keep', path, 0)
    if keep < 0:
        raise ConfigError(f"destination keep cannot be negative: {keep}", path)

    return Destination(
        path=dest_path,
        keep=keep,
        owner=_str(section, 'owner', path),
        mode=_parse_mode(_str(section, 'mode', path), path),
    )


def _parse_notify(data: Dict[str, Any], path: str) -> Optional[NotifySpec]:
    section = _section(data, 'notify', path)
    if not section:
        return None

    to = section.get('to') or []
    if isinstance(to, str):
        to = [to]
    if not isinstance(to, list):
        raise ConfigError("notify to must be a list of addresses", path)

    return NotifySpec(
        host=_str(section, 'host', path),
        port=_int(section, 'port', path, 0),
        user=_str(section, 'user', path),
        password=_str(section, 'password', path),
        sender=_str(section, 'from', path),
        to=tuple(str(addr).strip() for addr in to if str(addr).strip()),
        on_success=bool(section.get('onSuccess', False)),
    )


def parse_profile(data: Any, path: str = '') -> Profile:
    """
    Build a Profile from already parsed YAML data.

    Raises:
        ConfigError: If a field is missing or invalid
    """
    if not isinstance(data, dict):
        raise ConfigError("profile must be a YAML mapping", path)

    version = data.get('version')
    if version not in SUPPORTED_VERSIONS:
        raise ConfigError(f"unsupported profile version: {version!r}", path)

    name = _str(data, 'name', path)
    if not name:
        raise ConfigError("profile name cannot be empty", path)

    type_value = _str(data, 'type', path)
    if not type_value:
        raise ConfigError("profile has no type", path)
    profile_type = _enum(ProfileType, type_value, 'profile type', path)

    ssh = _parse_ssh(data, path)
    if profile_type in (ProfileType.REMOTE, ProfileType.SFTPSYNC) and ssh is None:
        raise ConfigError(f"profile type {profile_type.value} needs an ssh section", path)

    dbs = _parse_dbs(data, path)
    if profile_type == ProfileType.SFTPSYNC and dbs:
        raise ConfigError("sftpsync profiles cannot dump databases", path)

    dirs = _parse_dirs(data, profile_type, path)
    if not dirs and not dbs:
        raise ConfigError("nothing to backup: no dirs and no dbs", path)

    return Profile(
        name=name,
        type=profile_type,
        destination=_parse_destination(data, path),
        dirs=tuple(dirs),
        dbs=tuple(dbs),
        ssh=ssh,
        notify=_parse_notify(data, path),
        source_file=path,
    )


def load_profile(path: str) -> Profile:
    """
    Load a single profile file.

    Args:
        path: Path of a .yaml file

    Returns:
        Profile instance

    Raises:
        ConfigError: If the file cannot be read, parsed or validated
    """
    if not path.endswith(PROFILE_EXTENSION):
        raise ConfigError(f"profile path is not a {PROFILE_EXTENSION} file", path)

    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"unable to read profile: {e}", path) from e
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML: {e}", path) from e

    return parse_profile(data, path)


def find_profile_files(directory: str) -> List[str]:
    """All *.backup.yaml files below directory, sorted."""
    found = []
    for root, dirs, files in os.walk(directory):
        dirs.sort()
        for filename in files:
            if filename.endswith(PROFILE_SCAN_SUFFIX):
                found.append(os.path.join(root, filename))
    return sorted(found)


def load_profiles(directory: str) -> List[Profile]:
    """
    Load every profile file found below a directory.

    Returns:
        Profiles in file order

    Raises:
        ConfigError: If directory is not a directory
        ProfileLoadError: If at least one file is invalid; carries the valid
            profiles and the error per file
    """
    if not os.path.isdir(directory):
        raise ConfigError("the path is not a directory", directory)

    profiles = []
    errors = {}
    seen = {}

    for path in find_profile_files(directory):
        try:
            profile = load_profile(path)
        except ConfigError as e:
            errors[path] = str(e)
            logger.warning(f"Skipping invalid profile: {e}")
            continue

        if profile.name in seen:
            errors[path] = f"{path}: duplicate profile name '{profile.name}', already defined in {seen[profile.name]}"
            logger.warning(errors[path])
            continue

        seen[profile.name] = path
        profiles.append(profile)

    if errors:
        raise ProfileLoadError(profiles, errors)
    return profiles


def boilerplate() -> str:
    """Annotated example profile."""
    return """---
# schema version of this file, only 1 is defined
version: 1

# profile name, used in the archive filenames: <name>_<date>_backup.zip
name: myService

# local | remote | sftpsync
#   local:    back up files and databases of this machine
#   remote:   back up files and databases of a server over ssh
#   sftpsync: copy archives made on a server into the destination
type: remote

# connection details, required for remote and sftpsync profiles
ssh:
  # password | sshkey | sshagent
  type: password
  host: backup.example.com
  port: 22
  user: backup
  # used when type is password
  password: secret
  # used when type is sshkey, defaults to ~/.ssh/id_rsa
  privateKey: /home/backup/.ssh/id_ed25519
  passphrase: ""

# directories to back up
dirs:
  - path: /var/www
    # required for sftpsync: profile name of the archives to copy
    name: www
    # globs matched against the full source path, * also matches /, {a,b} picks either
    exclude:
      - "*.log"
      - "*/cache/*"

# databases to dump into the archive
dbs:
  # mysql | mariadb | postgres | dockermysql | dockermariadb | dockerpostgres
  - name: shop
    type: mysql
    # optional, local mysql dumps fall back to /etc/mysql/debian.cnf and ~/.my.cnf
    user: backup
    password: secret
  - name: analytics
    type: dockerpostgres
    containerName: postgres
    user: postgres

# where the archive is written, only the local filesystem is supported
destination:
  path: /backups
  # number of archives of this profile to keep, 0 keeps all
  keep: 7
  # owner and octal mode applied to the generated file
  owner: backup
  mode: "0600"

# email sent after each run
notify:
  host: smtp.example.com
  port: 587
  user: mailer@example.com
  password: secret
  from: mailer@example.com
  to:
    - ops@example.com
  # failures are always reported, successes only when true
  onSuccess: false
"""
