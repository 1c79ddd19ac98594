"""SSH capability used as the node readiness signal."""

from __future__ import annotations

import io
import logging
import threading
from typing import Callable, Optional

import paramiko

from vbox_compute.models import LoginCredentials
from vbox_compute.utils import log

# paramiko logs every failed banner read at ERROR while a guest is booting
logging.getLogger("paramiko").setLevel(logging.CRITICAL)


def _load_private_key(material: str) -> paramiko.PKey:
    last_error: Optional[Exception] = None
    for key_cls in (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey):
        try:
            return key_cls.from_private_key(io.StringIO(material))
        except (paramiko.SSHException, ValueError) as exc:
            last_error = exc
    raise paramiko.SSHException(f"Unsupported private key: {last_error}")


class SshClient:
    """Connects to a node's SSH endpoint with its login credentials."""

    def __init__(
        self,
        host: str,
        port: int,
        credentials: LoginCredentials,
        timeout: float = 10.0,
    ) -> None:
        self.host = host
        self.port = port
        self.credentials = credentials
        self.timeout = timeout
        self._client: Optional[paramiko.SSHClient] = None
        self._lock = threading.Lock()

    def connect(self, timeout: Optional[float] = None) -> None:
        """Open the session; ``timeout`` can only shorten the client's own limits."""
        timeout = self.timeout if timeout is None else min(self.timeout, timeout)
        with self._lock:
            if self._client is not None:
                return
            client = paramiko.SSHClient()
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
            pkey = None
            if self.credentials.private_key:
                pkey = _load_private_key(self.credentials.private_key)
            try:
                client.connect(
                    hostname=self.host,
                    port=self.port,
                    username=self.credentials.username,
                    password=self.credentials.password,
                    pkey=pkey,
                    timeout=timeout,
                    banner_timeout=timeout,
                    auth_timeout=timeout,
                    allow_agent=False,
                    look_for_keys=False,
                )
            except BaseException:
                client.close()
                raise
            self._client = client

    def disconnect(self) -> None:
        with self._lock:
            if self._client is not None:
                try:
                    self._client.close()
                finally:
                    self._client = None

    def exec(self, command: str, timeout: float = 60.0) -> tuple:
        if self._client is None:
            raise RuntimeError("Not connected. Call connect() first.")
        _stdin, stdout, stderr = self._client.exec_command(command, timeout=timeout)
        exit_code = stdout.channel.recv_exit_status()
        return (
            exit_code,
            stdout.read().decode("utf-8", errors="replace"),
            stderr.read().decode("utf-8", errors="replace"),
        )

    def __repr__(self) -> str:
        return f"SshClient({self.credentials.username}@{self.host}:{self.port})"


SshClientFactory = Callable[[str, int, LoginCredentials], SshClient]


def ssh_responds(client: SshClient, timeout: Optional[float] = None) -> bool:
    """True when a TCP connection and SSH handshake/authentication succeed.

    ``timeout`` bounds this single attempt, so a guest that accepts TCP but
    never sends a banner cannot hold the caller past its own deadline.
    """
    try:
        client.connect(timeout=timeout)
    except (paramiko.SSHException, OSError, EOFError) as exc:
        log("DEBUG", f"No SSH response from {client!r} yet: {exc}")
        return False
    finally:
        client.disconnect()
    return True
