"""
Unit tests for profile loading (zipback/profiles.py).
"""

import textwrap

import pytest
import yaml

from zipback.models import DbEngine, ProfileType, SshAuth
from zipback.backup.errors import ConfigError, ProfileLoadError
from zipback.profiles import (
    boilerplate, find_profile_files, load_profile, load_profiles, parse_profile
)


def _write(path, content):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(textwrap.dedent(content))
    return str(path)


LOCAL_PROFILE = """\
    version: 1
    name: bla
    type: local
    dirs:
      - path: /srv/data
        exclude:
          - "*.log"
    destination:
      path: /backups
      keep: 3
      owner: backup
      mode: "0640"
"""


def _minimal(**fields):
    data = {
        'version': 1,
        'name': 'bla',
        'type': 'local',
        'dirs': [{'path': '/srv/data'}],
        'destination': {'path': '/backups'},
    }
    data.update(fields)
    return data


class TestLoadProfile:
    """Test loading single files."""

    def test_local_profile(self, tmp_path):
        path = _write(tmp_path / 'bla.backup.yaml', LOCAL_PROFILE)

        profile = load_profile(path)

        assert profile.name == 'bla'
        assert profile.type == ProfileType.LOCAL
        assert profile.dirs[0].path == '/srv/data'
        assert profile.dirs[0].exclude == ('*.log',)
        assert profile.destination.keep == 3
        assert profile.destination.owner == 'backup'
        assert profile.destination.mode == 0o640
        assert profile.source_file == path
        assert profile.ssh is None
        assert profile.notify is None

    def test_wrong_extension(self, tmp_path):
        path = _write(tmp_path / 'bla.yml', LOCAL_PROFILE)

        with pytest.raises(ConfigError, match="not a .yaml file"):
            load_profile(path)

    def test_invalid_yaml(self, tmp_path):
        path = _write(tmp_path / 'bla.yaml', "version: 1\nname: [unclosed\n")

        with pytest.raises(ConfigError, match="invalid YAML"):
            load_profile(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="unable to read profile"):
            load_profile(str(tmp_path / 'missing.yaml'))

    def test_error_names_the_file(self, tmp_path):
        path = _write(tmp_path / 'bla.yaml', "version: 2\nname: bla\n")

        with pytest.raises(ConfigError) as exc_info:
            load_profile(path)

        assert exc_info.value.path == path
        assert str(exc_info.value).startswith(path)


class TestParseProfile:
    """Test validation rules."""

    @pytest.mark.parametrize('version', [None, 0, 2, '1'])
    def test_unsupported_version(self, version):
        with pytest.raises(ConfigError, match="unsupported profile version"):
            parse_profile(_minimal(version=version))

    def test_not_a_mapping(self):
        with pytest.raises(ConfigError, match="must be a YAML mapping"):
            parse_profile(['version', 1])

    def test_empty_name(self):
        with pytest.raises(ConfigError, match="name cannot be empty"):
            parse_profile(_minimal(name='  '))

    def test_missing_type(self):
        data = _minimal()
        del data['type']

        with pytest.raises(ConfigError, match="profile has no type"):
            parse_profile(data)

    def test_nothing_to_backup(self):
        with pytest.raises(ConfigError, match="nothing to backup"):
            parse_profile(_minimal(dirs=[]))

    def test_dbs_only_profile(self):
        profile = parse_profile(_minimal(dirs=None, dbs=[{'name': 'shop', 'type': 'mysql'}]))

        assert profile.dirs == ()
        assert profile.dbs[0].name == 'shop'

    def test_malformed_exclude_pattern(self):
        with pytest.raises(ConfigError, match=r"unable to compile exclude pattern '\[abc'"):
            parse_profile(_minimal(dirs=[{'path': '/srv/data', 'exclude': ['*.log', '[abc']}]))

    def test_brace_exclude_pattern(self):
        profile = parse_profile(_minimal(dirs=[{'path': '/srv/data', 'exclude': ['*.{log,txt}']}]))

        assert profile.dirs[0].exclude == ('*.{log,txt}',)

    def test_unknown_type(self):
        with pytest.raises(ConfigError, match="profile type 'ftp' is not allowed"):
            parse_profile(_minimal(type='ftp'))

    def test_destination_required(self):
        data = _minimal()
        del data['destination']

        with pytest.raises(ConfigError, match="destination path cannot be empty"):
            parse_profile(data)

    def test_negative_keep(self):
        with pytest.raises(ConfigError, match="keep cannot be negative"):
            parse_profile(_minimal(destination={'path': '/backups', 'keep': -1}))

    @pytest.mark.parametrize('mode', ['rw-r--r--', '0800', '17777'])
    def test_invalid_mode(self, mode):
        with pytest.raises(ConfigError, match="destination mode"):
            parse_profile(_minimal(destination={'path': '/backups', 'mode': mode}))

    def test_remote_needs_ssh(self):
        with pytest.raises(ConfigError, match="needs an ssh section"):
            parse_profile(_minimal(type='remote'))

    def test_ssh_defaults(self):
        profile = parse_profile(_minimal(
            type='remote',
            ssh={'type': 'sshagent', 'host': 'example.com', 'user': 'backup'}
        ))

        assert profile.ssh.auth == SshAuth.SSHAGENT
        assert profile.ssh.port == 22
        assert profile.is_remote

    def test_ssh_password_required(self):
        with pytest.raises(ConfigError, match="needs a password"):
            parse_profile(_minimal(type='remote', ssh={'type': 'password', 'host': 'example.com'}))

    def test_ssh_port_range(self):
        with pytest.raises(ConfigError, match="out of range"):
            parse_profile(_minimal(type='remote', ssh={'type': 'sshagent', 'host': 'h', 'port': 70000}))

    def test_sftpsync_dirs_need_names(self):
        with pytest.raises(ConfigError, match="needs a name for sftpsync"):
            parse_profile(_minimal(
                type='sftpsync',
                ssh={'type': 'sshagent', 'host': 'h'},
                dirs=[{'path': '/backups/www'}]
            ))

    def test_sftpsync_rejects_dbs(self):
        with pytest.raises(ConfigError, match="cannot dump databases"):
            parse_profile(_minimal(
                type='sftpsync',
                ssh={'type': 'sshagent', 'host': 'h'},
                dirs=[{'path': '/backups/www', 'name': 'www'}],
                dbs=[{'name': 'shop', 'type': 'mysql'}]
            ))

    def test_databases(self):
        profile = parse_profile(_minimal(dbs=[
            {'name': 'shop', 'type': 'mariadb', 'user': 'root', 'password': 'pw'},
            {'name': 'stats', 'type': 'dockerpostgres', 'containerName': 'pg'},
        ]))

        assert profile.dbs[0].engine == DbEngine.MARIADB
        assert profile.dbs[0].user == 'root'
        assert profile.dbs[1].engine == DbEngine.DOCKER_POSTGRES
        assert profile.dbs[1].container_name == 'pg'

    def test_docker_db_needs_container(self):
        with pytest.raises(ConfigError, match="needs a containerName"):
            parse_profile(_minimal(dbs=[{'name': 'shop', 'type': 'dockermysql'}]))

    def test_unknown_db_type(self):
        with pytest.raises(ConfigError, match="type 'oracle' is not allowed"):
            parse_profile(_minimal(dbs=[{'name': 'shop', 'type': 'oracle'}]))

    def test_notify(self):
        profile = parse_profile(_minimal(notify={
            'host': 'smtp.example.com',
            'port': 587,
            'from': 'mailer@example.com',
            'to': 'ops@example.com',
            'onSuccess': True,
        }))

        assert profile.notify.sender == 'mailer@example.com'
        assert profile.notify.to == ('ops@example.com',)
        assert profile.notify.on_success is True
        assert profile.notify.is_complete


class TestLoadProfiles:
    """Test directory scans."""

    def test_scan_finds_nested_profiles(self, tmp_path):
        _write(tmp_path / 'b.backup.yaml', LOCAL_PROFILE.replace('name: bla', 'name: second'))
        _write(tmp_path / 'nested' / 'a.backup.yaml', LOCAL_PROFILE)
        _write(tmp_path / 'notes.yaml', 'not: a profile')

        profiles = load_profiles(str(tmp_path))

        assert [p.name for p in profiles] == ['second', 'bla']
        assert len(find_profile_files(str(tmp_path))) == 2

    def test_invalid_files_are_collected(self, tmp_path):
        _write(tmp_path / 'good.backup.yaml', LOCAL_PROFILE)
        bad = _write(tmp_path / 'bad.backup.yaml', 'version: 7\nname: bad\n')

        with pytest.raises(ProfileLoadError) as exc_info:
            load_profiles(str(tmp_path))

        assert [p.name for p in exc_info.value.profiles] == ['bla']
        assert list(exc_info.value.errors) == [bad]
        assert 'errors loading profile from files' in str(exc_info.value)

    def test_duplicate_names(self, tmp_path):
        _write(tmp_path / 'a.backup.yaml', LOCAL_PROFILE)
        duplicate = _write(tmp_path / 'b.backup.yaml', LOCAL_PROFILE)

        with pytest.raises(ProfileLoadError) as exc_info:
            load_profiles(str(tmp_path))

        assert len(exc_info.value.profiles) == 1
        assert "duplicate profile name 'bla'" in exc_info.value.errors[duplicate]

    def test_not_a_directory(self, tmp_path):
        path = _write(tmp_path / 'bla.backup.yaml', LOCAL_PROFILE)

        with pytest.raises(ConfigError, match="not a directory"):
            load_profiles(path)


class TestBoilerplate:
    def test_boilerplate_is_a_valid_profile(self):
        profile = parse_profile(yaml.safe_load(boilerplate()))

        assert profile.name == 'myService'
        assert profile.type == ProfileType.REMOTE
        assert profile.destination.mode == 0o600
        assert profile.notify.on_success is False
