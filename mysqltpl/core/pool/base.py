"""
Interfaces shared by the live pool and the in-memory test double.

A ``Backend`` is picked once when a ``Database`` is built; the query
executor only talks to these two protocols.
"""

import enum
from typing import Any, Protocol


class ConnectionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"


class Connection(Protocol):
    """One checked-out connection; every statement of a transaction goes through it."""

    @property
    def raw(self) -> Any: ...

    async def query(self, sql: str) -> tuple[Any, Any]: ...

    async def begin(self) -> None: ...

    async def commit(self) -> None: ...

    async def rollback(self) -> None: ...

    async def release(self) -> None: ...


class Backend(Protocol):
    @property
    def state(self) -> ConnectionState: ...

    async def connect(self) -> Any: ...

    async def disconnect(self) -> None: ...

    async def query(self, sql: str) -> tuple[Any, Any]: ...

    async def get_connection(self) -> Connection: ...

    async def begin_transaction(self) -> Connection: ...
