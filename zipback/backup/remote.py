"""
SSH command execution for remote profiles.

The rest of the backup engine only needs two things from a remote host:
- run(command): run to completion, capture combined stdout/stderr
- start(command): run with stdout piped back, wait() for the exit status

SSHConnection provides them over paramiko; tests substitute any object with
the same two methods.
"""

import os
import shlex
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

import paramiko
from paramiko import SSHClient, AutoAddPolicy, RejectPolicy

from zipback.models import SshAuth, SshSpec
from .errors import ExecutionError


logger = logging.getLogger(__name__)


class RemoteError(ExecutionError):
    """Raised when connecting to, or running a command on, the remote host fails."""
    pass


@dataclass
class CommandResult:
    exit_status: int
    output: bytes

    @property
    def text(self) -> str:
        return self.output.decode('utf-8', errors='replace')

    @property
    def ok(self) -> bool:
        return self.exit_status == 0


def with_env(command: str, env: Optional[Dict[str, str]] = None) -> str:
    """
    Prefix a shell command with environment assignments.

    sshd usually refuses setenv requests, so variables travel in the command line.
    """
    if not env:
        return command
    assignments = ' '.join(f"{key}={shlex.quote(value)}" for key, value in env.items())
    return f"{assignments} {command}"


class RemoteProcess:
    """A command started on the remote host with stdout and stderr piped back separately."""

    def __init__(self, channel: paramiko.Channel, command: str):
        self.command = command
        self._channel = channel
        self.stdout = channel.makefile('rb')
        self.stderr = channel.makefile_stderr('rb')

    def wait(self) -> int:
        """Block until the command exits and return its exit status."""
        return self._channel.recv_exit_status()

    def close(self):
        try:
            self.stdout.close()
            self.stderr.close()
        finally:
            self._channel.close()


class SSHConnection:
    """
    One SSH connection per profile run, one channel per command.

    Host key verification is controlled by the ignore_host_key argument; when
    it is False the server key must be present in known_hosts.
    """

    def __init__(
        self,
        spec: SshSpec,
        known_hosts: Optional[str] = None,
        ignore_host_key: bool = False,
        timeout: int = 30
    ):
        """
        Initialize SSH connection settings.

        Args:
            spec: Host, port, user and authentication settings from the profile
            known_hosts: known_hosts file used to verify the server key
            ignore_host_key: Accept any server key (test servers only)
            timeout: Connect timeout in seconds
        """
        self.spec = spec
        self.known_hosts = known_hosts
        self.ignore_host_key = ignore_host_key
        self.timeout = timeout

        self.ssh_client = None

    def __str__(self):
        return f"{self.spec.user}@{self.spec.host}:{self.spec.port}"

    def _auth_kwargs(self) -> dict:
        spec = self.spec

        if spec.auth == SshAuth.PASSWORD:
            if not spec.password:
                raise RemoteError("Password authentication selected but no password provided")
            return {
                'password': spec.password,
                'allow_agent': False,
                'look_for_keys': False,
            }

        if spec.auth == SshAuth.SSHKEY:
            key_path = Path(spec.private_key or '~/.ssh/id_rsa').expanduser()
            if not key_path.exists():
                raise RemoteError(f"Private key not found: {key_path}")
            kwargs = {
                'key_filename': str(key_path),
                'allow_agent': False,
                'look_for_keys': False,
            }
            if spec.passphrase:
                kwargs['passphrase'] = spec.passphrase
            return kwargs

        if spec.auth == SshAuth.SSHAGENT:
            if not os.environ.get('SSH_AUTH_SOCK'):
                raise RemoteError("SSH_AUTH_SOCK is not set or ssh agent not running")
            return {
                'allow_agent': True,
                'look_for_keys': False,
            }

        raise RemoteError(f"Unsupported authentication type: {spec.auth}")

    def connect(self):
        """
        Establish the SSH connection.

        Raises:
            RemoteError: If the connection or authentication fails
        """
        if self.ssh_client is not None:
            raise RemoteError(f"Connection to {self} is already open")

        client = SSHClient()
        try:
            if self.ignore_host_key:
                client.set_missing_host_key_policy(AutoAddPolicy())
            else:
                client.load_system_host_keys()
                if self.known_hosts and os.path.exists(self.known_hosts):
                    client.load_host_keys(self.known_hosts)
                client.set_missing_host_key_policy(RejectPolicy())

            client.connect(
                hostname=self.spec.host,
                port=self.spec.port,
                username=self.spec.user,
                timeout=self.timeout,
                **self._auth_kwargs()
            )
        except RemoteError:
            client.close()
            raise
        except paramiko.AuthenticationException as e:
            client.close()
            raise RemoteError(f"SSH authentication failed for {self}: {e}") from e
        except paramiko.SSHException as e:
            client.close()
            raise RemoteError(f"SSH connection failed for {self}: {e}") from e
        except OSError as e:
            client.close()
            raise RemoteError(f"Failed to connect to {self}: {e}") from e

        self.ssh_client = client
        logger.info(f"Connected via ssh to {self}")

    def _open_channel(self) -> paramiko.Channel:
        if self.ssh_client is None:
            raise RemoteError("Unable to open session: connection not open")
        transport = self.ssh_client.get_transport()
        if transport is None or not transport.is_active():
            raise RemoteError(f"Connection to {self} is no longer active")
        try:
            return transport.open_session()
        except paramiko.SSHException as e:
            raise RemoteError(f"Failed to open session on {self}: {e}") from e

    def run(self, command: str) -> CommandResult:
        """
        Run a command to completion and capture its combined output.

        A non-zero exit status is returned, not raised; callers decide.
        """
        channel = self._open_channel()
        try:
            channel.set_combine_stderr(True)
            channel.exec_command(command)
            with channel.makefile('rb') as stdout:
                output = stdout.read()
            exit_status = channel.recv_exit_status()
        except paramiko.SSHException as e:
            raise RemoteError(f"Failed to run command on {self}: {e}") from e
        finally:
            channel.close()

        logger.debug(f"ssh {self}: {command.strip()[:80]!r} exited {exit_status}")
        return CommandResult(exit_status, output)

    def start(self, command: str) -> RemoteProcess:
        """
        Start a command and return it with stdout piped back.

        stderr is kept separate so it never ends up in the captured stream; it
        stays readable on the process for error reports.
        """
        channel = self._open_channel()
        try:
            channel.exec_command(command)
        except paramiko.SSHException as e:
            channel.close()
            raise RemoteError(f"Failed to start command on {self}: {e}") from e
        return RemoteProcess(channel, command)

    def close(self):
        """Close the SSH connection."""
        if self.ssh_client is not None:
            self.ssh_client.close()
            self.ssh_client = None
            logger.debug(f"Disconnected from {self}")

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False
