"""
Shared pytest fixtures for zipback tests.

This module provides fixtures for:
- Testing configuration
- A sample directory tree to back up
- Profile builders
- LocalShell, a command executor running the remote scripts on this machine
"""

import subprocess

import pytest

from zipback.config import TestingConfig
from zipback.models import (
    BackupTarget, Destination, NotifySpec, Profile, ProfileType, SshAuth, SshSpec
)
from zipback.backup.remote import CommandResult


class LocalProcess:
    """Started command with stdout and stderr piped back, same surface as remote.RemoteProcess."""

    def __init__(self, command, cwd=None):
        self._popen = subprocess.Popen(
            ['sh', '-c', command],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=cwd
        )
        self.stdout = self._popen.stdout
        self.stderr = self._popen.stderr

    def wait(self):
        return self._popen.wait()

    def close(self):
        self.stdout.close()
        self.stderr.close()
        # closed early, like a dropped ssh channel
        if self._popen.poll() is None:
            self._popen.kill()
            self._popen.wait()


class LocalShell:
    """
    Command executor that runs everything through `sh -c` locally.

    Stands in for SSHConnection so the shell scripts of RemoteFS and the
    remote dump commands run for real against the local filesystem.
    """

    def __init__(self, cwd=None):
        self.cwd = cwd
        self.commands = []
        self.entered = False
        self.closed = False

    def run(self, command):
        self.commands.append(command)
        completed = subprocess.run(
            ['sh', '-c', command],
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            cwd=self.cwd
        )
        return CommandResult(completed.returncode, completed.stdout)

    def start(self, command):
        self.commands.append(command)
        return LocalProcess(command, cwd=self.cwd)

    def close(self):
        self.closed = True

    def __enter__(self):
        self.entered = True
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


@pytest.fixture
def test_config():
    """Configuration used by every executor test."""
    return TestingConfig


@pytest.fixture
def local_shell():
    return LocalShell()


@pytest.fixture
def make_shell():
    """LocalShell factory, for tests that need a specific working directory."""
    return LocalShell


@pytest.fixture
def sample_tree(tmp_path):
    """
    Create the sample tree used by traversal tests.

    Creates:
    - src/dir1/file.json
    - src/dir1/subdir1/subfile.log
    - src/dir1/subdir1/subfile1.txt
    - src/dir2/file.yaml
    """
    root = tmp_path / 'src'
    dir1 = root / 'dir1'
    subdir1 = dir1 / 'subdir1'
    dir2 = root / 'dir2'
    subdir1.mkdir(parents=True)
    dir2.mkdir()

    (dir1 / 'file.json').write_text('{"a": 1}')
    (subdir1 / 'subfile.log').write_text('log line\n')
    (subdir1 / 'subfile1.txt').write_text('some text\n')
    (dir2 / 'file.yaml').write_text('key: value\n')

    return root


@pytest.fixture
def make_profile(tmp_path):
    """
    Build a Profile with sensible defaults.

    The destination defaults to tmp_path/'backups'; keyword arguments replace
    any Profile field.
    """
    def _make(**overrides):
        fields = {
            'name': 'bla',
            'type': ProfileType.LOCAL,
            'destination': Destination(path=str(tmp_path / 'backups')),
            'dirs': (),
            'dbs': (),
            'ssh': None,
            'notify': None,
        }
        if 'ssh' not in overrides and overrides.get('type') in (ProfileType.REMOTE, ProfileType.SFTPSYNC):
            fields['ssh'] = SshSpec(auth=SshAuth.PASSWORD, host='backup.example.com', user='backup', password='pw')
        fields.update(overrides)
        fields['dirs'] = tuple(
            d if isinstance(d, BackupTarget) else BackupTarget(path=str(d)) for d in fields['dirs']
        )
        return Profile(**fields)

    return _make


@pytest.fixture
def notify_spec():
    return NotifySpec(
        host='smtp.example.com',
        port=587,
        user='mailer@example.com',
        password='secret',
        sender='mailer@example.com',
        to=('ops@example.com',),
        on_success=True
    )
