"""
Configuration resolution.

All environment reads happen here, once, when a ``Database`` is built:
explicit options win, then environment variables, then defaults. The result
is a frozen ``DatabaseSettings``; nothing else in the package looks at
``os.environ``.

Options may be given in camelCase (``connectionLimit``, ``sshTunnel``) or
snake_case (``connection_limit``, ``ssh_tunnel``).
"""

from collections.abc import Mapping
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from mysqltpl.engines.sql.casing import to_wire_casing


class QueryConfig(BaseModel):
    """Per-call behaviour flags; call-level values override provider defaults."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    native_query: bool = False
    keep_original_casing: bool = False

    def merged(self, overrides: "QueryConfig | Mapping[str, Any] | None") -> "QueryConfig":
        """Return a copy where keys explicitly set in *overrides* win."""
        if overrides is None:
            return self
        if isinstance(overrides, QueryConfig):
            update = overrides.model_dump(exclude_unset=True)
        else:
            validated = QueryConfig.model_validate(_normalize_keys(overrides))
            update = validated.model_dump(exclude_unset=True)
        return self.model_copy(update=update)


class SshOptions(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="DB_SSH_TUNNEL_", frozen=True, extra="ignore")

    host: str | None = None
    port: int = 22
    username: str | None = None
    private_key: str | None = None
    private_key_file: str | None = None
    passphrase: str | None = None


class ForwardOptions(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="DB_SSH_TUNNEL_", frozen=True, extra="ignore")

    dst_addr: str = "127.0.0.1"
    dst_port: int = 3306


class ServerOptions(BaseModel):
    """Local listening side of the tunnel; port 0 picks a free port."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    host: str = "127.0.0.1"
    port: int = 0


class SshTunnelSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    ssh_options: SshOptions
    forward_options: ForwardOptions
    server_options: ServerOptions = Field(default_factory=ServerOptions)
    # passed through to asyncssh.connect (connect_timeout, ...); host keys are
    # checked against ~/.ssh/known_hosts unless known_hosts is given here
    tunnel_options: dict[str, Any] = Field(default_factory=dict)

    @property
    def enabled(self) -> bool:
        return bool(self.ssh_options.host)


def _default_ssh_tunnel() -> SshTunnelSettings:
    return SshTunnelSettings(ssh_options=SshOptions(), forward_options=ForwardOptions())


class DatabaseSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="MYSQL_",
        frozen=True,
        extra="ignore",
        populate_by_name=True,
    )

    host: str | None = None
    port: int = 3306
    database: str | None = None
    user: str | None = None
    password: str | None = None
    connection_limit: int = Field(default=10, ge=1)
    multiple_statements: bool = True
    timezone: str = "+00:00"
    max_execution_time: int = Field(default=30000, ge=0, description="milliseconds")
    group_concat_max_len: int = 16384
    connect_timeout: float = 10
    lazy_connect: bool = True
    log_level: str | None = None
    test_mode: bool = False
    environment: str = Field(
        default="local",
        validation_alias=AliasChoices("environment", "ENVIRONMENT"),
    )
    query_config: QueryConfig = Field(default_factory=QueryConfig)
    ssh_tunnel: SshTunnelSettings = Field(default_factory=_default_ssh_tunnel)

    @property
    def hardened(self) -> bool:
        """Production deployments hide driver error text from callers."""
        return self.environment == "production"

    @property
    def resolved_log_level(self) -> str:
        if self.log_level:
            return self.log_level
        return "debug" if self.environment == "development" else "error"


def _normalize_keys(options: Mapping[str, Any]) -> dict[str, Any]:
    """camelCase -> snake_case keys; ``None`` values fall back to env/defaults."""
    return {to_wire_casing(k): v for k, v in options.items() if v is not None}


def resolve_settings(
    config: Mapping[str, Any] | None = None, **options: Any
) -> DatabaseSettings:
    """Build the immutable settings from *config* / keyword *options* and the environment."""
    opts = _normalize_keys({**(config or {}), **options})

    tunnel = _normalize_keys(opts.pop("ssh_tunnel", None) or {})
    ssh = _normalize_keys(tunnel.get("ssh_options") or {})
    if "private_key_file" in tunnel:
        ssh.setdefault("private_key_file", tunnel["private_key_file"])
    forward = _normalize_keys(
        tunnel.get("forward_options") or tunnel.get("forward_options_local") or {}
    )
    server = _normalize_keys(tunnel.get("server_options") or {})
    ssh_tunnel = SshTunnelSettings(
        ssh_options=SshOptions(**ssh),
        forward_options=ForwardOptions(**forward),
        server_options=ServerOptions(**server),
        tunnel_options=dict(tunnel.get("tunnel_options") or {}),
    )

    query_config = opts.pop("query_config", None)
    if query_config is not None:
        opts["query_config"] = QueryConfig().merged(query_config)

    return DatabaseSettings(**opts, ssh_tunnel=ssh_tunnel)
