"""Interfaces of the collaborators the gate drives.

The gate never talks to a browser, GPS chip or AR engine directly; the
embedding runtime supplies objects matching these protocols. The
document store has a concrete SQLAlchemy implementation in
``webar_gate.store``.
"""

from typing import Any, Callable, NamedTuple, Optional, Protocol

from webar_gate.schemas.geo import Position
from webar_gate.schemas.media import CompositeMode


class ServerTimestamp:
    """Field sentinel: the store fills in its current time."""

    def __repr__(self):
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = ServerTimestamp()


class ArrayUnion:
    """Field sentinel: merge values into a list field without duplicates."""

    def __init__(self, *values):
        self.values = list(values)

    def __repr__(self):
        return f"ArrayUnion({self.values!r})"


class Filter(NamedTuple):
    field: str
    op: str  # '==', '!=', 'in', 'array-contains'
    value: Any


class DocumentStore(Protocol):
    async def get(self, collection: str, doc_id: str) -> Optional[dict]: ...

    async def set(
        self, collection: str, doc_id: str, fields: dict, merge: bool = False
    ) -> None: ...

    async def add(self, collection: str, fields: dict) -> str: ...

    async def query(
        self, collection: str, filters=(), limit: Optional[int] = None
    ) -> list[dict]: ...


class LocationProvider(Protocol):
    async def get_position_once(
        self, high_accuracy: bool = True, timeout_s: float = 10.0, max_age_s: float = 0.0
    ) -> Position: ...

    def watch_position(
        self,
        callback: Callable[[Optional[Position], Optional[Exception]], None],
        high_accuracy: bool = True,
        timeout_s: float = 20.0,
        max_age_s: float = 5.0,
    ) -> Any: ...

    def clear_watch(self, handle: Any) -> None: ...


class CameraEngine(Protocol):
    async def init(self) -> None: ...

    async def start_camera(self) -> None: ...

    def attach(self, sink, mode: CompositeMode) -> None: ...


class SecretStore(Protocol):
    def get(self, key: str) -> Optional[bytes]: ...

    def set(self, key: str, value: bytes) -> None: ...
