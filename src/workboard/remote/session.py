# remote/session.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional, Tuple

import paramiko

from ..errors import AuthError

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT = 15.0
KEEPALIVE_INTERVAL = 30


@dataclass(frozen=True)
class SSHIdentity:
    """
    Credential key of a cached session.

    The passphrase unlocks `key_path` but is not part of the identity: two
    identities naming the same key are the same session.
    """
    host: str
    username: str
    port: int = 22
    key_path: Optional[str] = None
    passphrase: Optional[str] = field(default=None, compare=False, repr=False)

    def __str__(self) -> str:
        return f"{self.username}@{self.host}:{self.port}"


@dataclass(frozen=True)
class CommandResult:
    stdout: str
    stderr: str
    exit_status: int

    @property
    def ok(self) -> bool:
        return self.exit_status == 0


class SSHSession:
    """One authenticated paramiko connection; commands run on fresh exec channels."""

    def __init__(self, identity: SSHIdentity, client: paramiko.SSHClient):
        self.identity = identity
        self.client = client

    def is_active(self) -> bool:
        transport = self.client.get_transport()
        return bool(transport and transport.is_active())

    def run(self, command: str, *, timeout: Optional[float] = None) -> CommandResult:
        """
        Run one command and wait for it to exit.

        Transport level failures (socket.timeout, paramiko.SSHException,
        EOFError, OSError) propagate to the caller.
        """
        logger.debug("[%s] $ %s", self.identity, command.splitlines()[0] if command else "")
        stdin, stdout, stderr = self.client.exec_command(command, timeout=timeout)
        stdin.close()
        out = stdout.read().decode("utf-8", errors="replace")
        err = stderr.read().decode("utf-8", errors="replace")
        status = stdout.channel.recv_exit_status()
        return CommandResult(stdout=out, stderr=err, exit_status=status)

    def sftp(self) -> paramiko.SFTPClient:
        return self.client.open_sftp()

    def close(self) -> None:
        self.client.close()


def _connect_kwargs(identity: SSHIdentity) -> dict:
    kwargs = {
        "hostname": identity.host,
        "port": identity.port,
        "username": identity.username,
        "timeout": CONNECT_TIMEOUT,
        "allow_agent": True,
        "look_for_keys": identity.key_path is None,
    }
    if identity.key_path:
        kwargs["key_filename"] = identity.key_path
        if identity.passphrase:
            kwargs["passphrase"] = identity.passphrase
    return kwargs


def open_ssh_session(identity: SSHIdentity) -> SSHSession:
    """
    Open and authenticate a session.

    Raises:
        AuthError: bad credentials, unknown key, unreachable host
    """
    client = paramiko.SSHClient()
    client.load_system_host_keys()
    client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
    try:
        client.connect(**_connect_kwargs(identity))
    except (paramiko.SSHException, OSError, EOFError) as e:
        client.close()
        raise AuthError(
            f"Could not open SSH session to {identity}",
            {"host": identity.host, "port": identity.port, "username": identity.username, "cause": str(e)},
        ) from e

    transport = client.get_transport()
    if transport is not None:
        transport.set_keepalive(KEEPALIVE_INTERVAL)
    logger.info("Opened SSH session %s", identity)
    return SSHSession(identity, client)


def split_identity(target: str, default_port: int = 22) -> Tuple[str, str, int]:
    """Parse `user@host[:port]`."""
    if "@" not in target:
        raise ValueError(f"Expected user@host[:port], got '{target}'")
    user, _, hostport = target.partition("@")
    host, _, port = hostport.partition(":")
    if not user or not host:
        raise ValueError(f"Expected user@host[:port], got '{target}'")
    return user, host, int(port) if port else default_port
