"""Unit tests for core.pool.tunnel (asyncssh patched out)."""

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from mysqltpl.core.config import ForwardOptions, SshOptions, SshTunnelSettings
from mysqltpl.core.errors import DBConnectionError, TunnelTransportError
from mysqltpl.core.pool.tunnel import SshTunnel, _TunnelClient, open_tunnel


def _run(coro) -> object:
    return asyncio.run(coro)


def _settings(**ssh) -> SshTunnelSettings:
    return SshTunnelSettings(
        ssh_options=SshOptions(host="bastion", username="deploy", **ssh),
        forward_options=ForwardOptions(dst_addr="db.internal", dst_port=3306),
        tunnel_options={"connect_timeout": 5},
    )


def _ssh_connection(order: list[str] | None = None) -> MagicMock:
    log = order if order is not None else []
    listener = MagicMock()
    listener.get_port.return_value = 40000
    listener.close.side_effect = lambda: log.append("listener")
    listener.wait_closed = AsyncMock()
    conn = MagicMock()
    conn.forward_local_port = AsyncMock(return_value=listener)
    conn.close.side_effect = lambda: log.append("connection")
    conn.wait_closed = AsyncMock()
    return conn


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("DB_SSH_TUNNEL_PRIVATE_KEY", "DB_SSH_TUNNEL_PRIVATE_KEY_FILE"):
        monkeypatch.delenv(name, raising=False)


@patch("mysqltpl.core.pool.tunnel.asyncssh.connect", new_callable=AsyncMock)
def test_open_forwards_local_port(mock_connect: AsyncMock):
    conn = _ssh_connection()
    mock_connect.return_value = conn

    tunnel = _run(open_tunnel(_settings()))

    assert tunnel.local_address == ("127.0.0.1", 40000)
    args, kwargs = mock_connect.await_args
    assert args == ("bastion", 22)
    assert kwargs["username"] == "deploy"
    assert "known_hosts" not in kwargs
    assert kwargs["connect_timeout"] == 5
    assert "client_keys" not in kwargs
    conn.forward_local_port.assert_awaited_once_with("127.0.0.1", 0, "db.internal", 3306)


@patch("mysqltpl.core.pool.tunnel.asyncssh.import_private_key")
@patch("mysqltpl.core.pool.tunnel.asyncssh.connect", new_callable=AsyncMock)
def test_private_key(mock_connect: AsyncMock, mock_import: MagicMock):
    mock_connect.return_value = _ssh_connection()
    mock_import.return_value = "KEY"

    _run(open_tunnel(_settings(private_key="-----BEGIN KEY-----", passphrase="pw")))

    mock_import.assert_called_once_with("-----BEGIN KEY-----", "pw")
    assert mock_connect.await_args.kwargs["client_keys"] == ["KEY"]


@patch("mysqltpl.core.pool.tunnel.asyncssh.import_private_key")
@patch("mysqltpl.core.pool.tunnel.asyncssh.connect", new_callable=AsyncMock)
def test_private_key_file(mock_connect: AsyncMock, mock_import: MagicMock, tmp_path: Path):
    key_file = tmp_path / "id_ed25519"
    key_file.write_text("FILE KEY", encoding="utf-8")
    mock_connect.return_value = _ssh_connection()

    _run(open_tunnel(_settings(private_key_file=str(key_file))))

    mock_import.assert_called_once_with("FILE KEY", None)


@patch("mysqltpl.core.pool.tunnel.asyncssh.connect", new_callable=AsyncMock)
def test_connect_failure(mock_connect: AsyncMock):
    mock_connect.side_effect = OSError("Connection refused")
    with pytest.raises(DBConnectionError, match="bastion:22"):
        _run(open_tunnel(_settings()))


@patch("mysqltpl.core.pool.tunnel.asyncssh.connect", new_callable=AsyncMock)
def test_forward_failure_closes_connection(mock_connect: AsyncMock):
    conn = _ssh_connection()
    conn.forward_local_port.side_effect = OSError("Address in use")
    mock_connect.return_value = conn
    with pytest.raises(DBConnectionError, match="Address in use"):
        _run(open_tunnel(_settings()))
    conn.close.assert_called_once()


@patch("mysqltpl.core.pool.tunnel.asyncssh.connect", new_callable=AsyncMock)
def test_close_order(mock_connect: AsyncMock):
    order: list[str] = []
    mock_connect.return_value = _ssh_connection(order)

    async def scenario():
        tunnel = await open_tunnel(_settings())
        await tunnel.close()
        await tunnel.close()

    _run(scenario())
    assert order == ["listener", "connection"]


def test_local_address_requires_open_tunnel():
    with pytest.raises(DBConnectionError):
        SshTunnel(_settings()).local_address


def test_transport_error_reported():
    tunnel = SshTunnel(_settings())
    _TunnelClient(tunnel).connection_lost(OSError("Connection reset"))
    assert isinstance(tunnel.error, TunnelTransportError)
    assert "Connection reset" in str(tunnel.error)


def test_clean_close_not_reported():
    tunnel = SshTunnel(_settings())
    _TunnelClient(tunnel).connection_lost(None)
    assert tunnel.error is None


@patch("mysqltpl.core.pool.tunnel.asyncssh.connect", new_callable=AsyncMock)
def test_known_hosts_override(mock_connect: AsyncMock):
    mock_connect.return_value = _ssh_connection()
    settings = SshTunnelSettings(
        ssh_options=SshOptions(host="bastion"),
        forward_options=ForwardOptions(),
        tunnel_options={"known_hosts": None},
    )
    _run(open_tunnel(settings))
    assert mock_connect.await_args.kwargs["known_hosts"] is None
