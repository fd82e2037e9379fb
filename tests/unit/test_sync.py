"""
Unit tests for mirroring remote archives (zipback/backup/sync.py).
"""

import pytest

from zipback.backup.errors import PreconditionError
from zipback.backup.remotefs import RemoteFS
from zipback.backup.sync import find_missing, sync_missing, SyncError


def _name(profile, day):
    return f"{profile}_2006_02_{day:02d}-15:04:05_backup.zip"


class TestFindMissing:
    """Test the remote minus local difference."""

    def test_remote_minus_local(self):
        remote = [_name('www', 1), _name('www', 2), _name('www', 3)]
        local = [_name('www', 2), 'unrelated.txt']

        assert find_missing(remote, local, 'www') == [_name('www', 1), _name('www', 3)]

    def test_only_profile_archives(self):
        remote = [_name('www', 1), _name('db', 1), _name('www_old', 1), 'www.zip']

        assert find_missing(remote, [], 'www') == [_name('www', 1)]

    def test_nothing_missing(self):
        remote = [_name('www', 1)]

        assert find_missing(remote, remote, 'www') == []

    def test_empty_profile_name(self):
        with pytest.raises(ValueError):
            find_missing([], [], '')


class TestSyncMissing:
    """Test downloads through the shell based remote filesystem."""

    @pytest.fixture
    def dirs(self, tmp_path):
        remote = tmp_path / 'remote'
        local = tmp_path / 'local'
        remote.mkdir()
        local.mkdir()
        return remote, local

    def test_downloads_missing(self, local_shell, dirs):
        remote, local = dirs
        for day in (1, 2, 3):
            (remote / _name('www', day)).write_bytes(f'archive {day}'.encode())
        (remote / _name('db', 1)).write_bytes(b'other profile')
        (remote / 'subdir').mkdir()
        (local / _name('www', 2)).write_bytes(b'partial')

        downloaded = sync_missing(RemoteFS(local_shell), str(remote), str(local), 'www')

        assert downloaded == [str(local / _name('www', 1)), str(local / _name('www', 3))]
        assert (local / _name('www', 1)).read_bytes() == b'archive 1'
        assert (local / _name('www', 3)).read_bytes() == b'archive 3'
        # existing files are never downloaded again, even if incomplete
        assert (local / _name('www', 2)).read_bytes() == b'partial'
        assert not (local / _name('db', 1)).exists()

    def test_rerun_downloads_nothing(self, local_shell, dirs):
        remote, local = dirs
        (remote / _name('www', 1)).write_bytes(b'archive')
        fs = RemoteFS(local_shell)

        assert len(sync_missing(fs, str(remote), str(local), 'www')) == 1
        assert sync_missing(fs, str(remote), str(local), 'www') == []

    def test_missing_remote_dir(self, local_shell, dirs):
        remote, local = dirs

        with pytest.raises(PreconditionError):
            sync_missing(RemoteFS(local_shell), str(remote / 'missing'), str(local), 'www')

    def test_missing_local_dir(self, local_shell, dirs):
        remote, local = dirs

        with pytest.raises(SyncError, match="Error reading dir"):
            sync_missing(RemoteFS(local_shell), str(remote), str(local / 'missing'), 'www')
