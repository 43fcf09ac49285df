from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from ..remote.session import SSHIdentity
from ..scripts import Container


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite+aiosqlite:///workboard.db"
    redis_url: Optional[str] = None
    ssh_host: Optional[str] = None
    ssh_port: int = 22
    ssh_user: Optional[str] = None
    ssh_key_path: Optional[str] = None
    ssh_key_passphrase: Optional[str] = None
    ssh_session_ttl: float = 600.0
    ssh_command_timeout: float = 60.0
    poll_interval: float = 30.0
    poll_max_failures: int = 3
    job_lock_seconds: int = 120
    container_path: str = "/containers/deepsirius.sif"
    container_bind: str = "/ibira"

    def identity(self) -> SSHIdentity:
        if not self.ssh_host or not self.ssh_user:
            raise ValueError("WORKBOARD_SSH_HOST and WORKBOARD_SSH_USER must be set")
        return SSHIdentity(
            host=self.ssh_host,
            port=self.ssh_port,
            username=self.ssh_user,
            key_path=self.ssh_key_path,
            passphrase=self.ssh_key_passphrase,
        )

    def container(self) -> Container:
        return Container(image=self.container_path, bind=self.container_bind)


def load_settings(env: Mapping[str, str] = os.environ) -> Settings:
    defaults = Settings()
    return Settings(
        database_url=env.get("WORKBOARD_DATABASE_URL", defaults.database_url),
        redis_url=env.get("WORKBOARD_REDIS_URL") or None,
        ssh_host=env.get("WORKBOARD_SSH_HOST") or None,
        ssh_port=int(env.get("WORKBOARD_SSH_PORT", defaults.ssh_port)),
        ssh_user=env.get("WORKBOARD_SSH_USER") or None,
        ssh_key_path=env.get("WORKBOARD_SSH_KEY_PATH") or None,
        ssh_key_passphrase=env.get("WORKBOARD_SSH_KEY_PASSPHRASE") or None,
        ssh_session_ttl=float(env.get("WORKBOARD_SSH_SESSION_TTL", defaults.ssh_session_ttl)),
        ssh_command_timeout=float(env.get("WORKBOARD_SSH_COMMAND_TIMEOUT", defaults.ssh_command_timeout)),
        poll_interval=float(env.get("WORKBOARD_POLL_INTERVAL", defaults.poll_interval)),
        poll_max_failures=int(env.get("WORKBOARD_POLL_MAX_FAILURES", defaults.poll_max_failures)),
        job_lock_seconds=int(env.get("WORKBOARD_JOB_LOCK_SECONDS", defaults.job_lock_seconds)),
        container_path=env.get("WORKBOARD_CONTAINER_PATH", defaults.container_path),
        container_bind=env.get("WORKBOARD_CONTAINER_BIND", defaults.container_bind),
    )
