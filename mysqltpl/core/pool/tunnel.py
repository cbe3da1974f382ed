"""
SSH tunnel in front of the database (asyncssh local port forwarding).

The pool connects to the tunnel's local endpoint instead of the remote
address. Transport failures after the tunnel is up arrive through the SSH
client's ``connection_lost`` callback; they are logged and kept on
``SshTunnel.error`` but do not close the pool by themselves.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any

import asyncssh

from mysqltpl.core.config import SshTunnelSettings
from mysqltpl.core.errors import DBConnectionError, TunnelTransportError

_log = logging.getLogger(__name__)


async def read_private_key(path: str) -> str:
    return await asyncio.to_thread(Path(path).expanduser().read_text, encoding="utf-8")


class _TunnelClient(asyncssh.SSHClient):
    def __init__(self, tunnel: "SshTunnel") -> None:
        self._tunnel = tunnel

    def connection_lost(self, exc: Exception | None) -> None:
        if exc is not None:
            self._tunnel.report_transport_error(exc)


class SshTunnel:
    def __init__(self, settings: SshTunnelSettings) -> None:
        self._settings = settings
        self._connection: Any = None
        self._listener: Any = None
        self.error: TunnelTransportError | None = None

    @property
    def local_address(self) -> tuple[str, int]:
        if self._listener is None:
            raise DBConnectionError("SSH tunnel is not open")
        return self._settings.server_options.host, self._listener.get_port()

    def report_transport_error(self, exc: Exception) -> None:
        self.error = TunnelTransportError(f"SSH transport error: {exc}")
        _log.error("error in ssh tunnel: %s", exc)

    async def open(self) -> None:
        ssh = self._settings.ssh_options
        server = self._settings.server_options
        forward = self._settings.forward_options

        options: dict[str, Any] = dict(self._settings.tunnel_options)
        try:
            private_key = ssh.private_key
            if not private_key and ssh.private_key_file:
                private_key = await read_private_key(ssh.private_key_file)
            if private_key:
                options["client_keys"] = [
                    asyncssh.import_private_key(private_key, ssh.passphrase)
                ]
            self._connection = await asyncssh.connect(
                ssh.host,
                ssh.port,
                username=ssh.username,
                client_factory=lambda: _TunnelClient(self),
                **options,
            )
            self._listener = await self._connection.forward_local_port(
                server.host, server.port, forward.dst_addr, forward.dst_port
            )
        except (OSError, ValueError, asyncssh.Error) as e:
            await self.close()
            raise DBConnectionError(
                f"SSH tunnel to {ssh.host}:{ssh.port} failed: {e}"
            ) from e

        _log.debug(
            "SSH tunnel established: %s:%s -> %s:%s",
            server.host,
            self._listener.get_port(),
            forward.dst_addr,
            forward.dst_port,
        )

    async def close(self) -> None:
        listener, self._listener = self._listener, None
        connection, self._connection = self._connection, None
        if listener is not None:
            listener.close()
            await listener.wait_closed()
        if connection is not None:
            connection.close()
            await connection.wait_closed()


async def open_tunnel(settings: SshTunnelSettings) -> SshTunnel:
    tunnel = SshTunnel(settings)
    await tunnel.open()
    return tunnel
