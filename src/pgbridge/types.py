"""
Server version decoding and the connection-scoped type mapper.

The type mapper is a thin layer over the connection's psycopg
`AdaptersMap`. Catalog types mapped through it (plain types, enums,
composites) are remembered so that `reload()` can fetch them again, for
example after they were created, dropped or altered while the connection was
open. A type that does not exist yet when it is mapped stays pending until a
reload finds it.
"""
import logging
import threading
import weakref
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, NamedTuple

import psycopg
from pgbridge.accessor import ensure_no_copy, ensure_open
from pgbridge.exceptions import ConnectionStateError
from psycopg.adapt import AdaptersMap
from psycopg.types import TypeInfo
from psycopg.types.composite import CompositeInfo, register_composite
from psycopg.types.enum import EnumInfo, register_enum

__all__ = ['ServerVersion', 'TypeMapper', 'TypeMapping']

logger = logging.getLogger(__name__)


class ServerVersion(NamedTuple):
    """PostgreSQL server version.

    >>> ServerVersion.from_int(160002)
    ServerVersion(major=16, minor=2, patch=0)
    >>> str(ServerVersion.from_int(90624))
    '9.6.24'
    >>> ServerVersion.from_int(150004) >= (15,)
    True
    """
    major: int
    minor: int
    patch: int = 0

    @classmethod
    def from_int(cls, number: int) -> 'ServerVersion':
        """Decode libpq's integer version (e.g. 160002, 90624)."""
        if number >= 100000:
            return cls(number // 10000, number % 10000)
        return cls(number // 10000, number // 100 % 100, number % 100)

    def __str__(self) -> str:
        if self.major >= 10:
            return f'{self.major}.{self.minor}'
        return f'{self.major}.{self.minor}.{self.patch}'


@dataclass
class TypeMapping:
    """A catalog type mapped on one connection.
    """
    name: str
    kind: str
    python_type: Any = None
    info: TypeInfo | None = None

    @property
    def resolved(self) -> bool:
        return self.info is not None


def _register_type(info: TypeInfo, conn: psycopg.Connection, python_type: Any) -> None:
    info.register(conn)


def _register_enum(info: EnumInfo, conn: psycopg.Connection, python_type: type[Enum] | None) -> None:
    register_enum(info, conn, python_type)


def _register_composite(info: CompositeInfo, conn: psycopg.Connection,
                        python_type: Callable[..., Any] | None) -> None:
    register_composite(info, conn, python_type)


_KINDS: dict[str, tuple[type[TypeInfo], Callable[..., None]]] = {
    'type': (TypeInfo, _register_type),
    'enum': (EnumInfo, _register_enum),
    'composite': (CompositeInfo, _register_composite),
}


class TypeMapper:
    """Backend-to-Python type conversions for one connection.

    Mutations only affect the connection the mapper belongs to and are lost
    when that connection is closed.
    """

    def __init__(self, connection: 'weakref.ref[psycopg.Connection]') -> None:
        self._connection = connection
        self._lock = threading.Lock()
        self._mappings: dict[str, TypeMapping] = {}

    @property
    def connection(self) -> psycopg.Connection:
        conn = self._connection()
        if conn is None:
            raise ConnectionStateError('The connection no longer exists')
        return ensure_open(conn)

    @property
    def adapters(self) -> AdaptersMap:
        """The connection's psycopg adapters map, for custom loaders and dumpers."""
        return self.connection.adapters

    @property
    def mappings(self) -> list[TypeMapping]:
        with self._lock:
            return list(self._mappings.values())

    def is_resolved(self, name: str) -> bool:
        with self._lock:
            mapping = self._mappings.get(name)
        return mapping is not None and mapping.resolved

    def map_type(self, name: str) -> TypeInfo | None:
        """Register a catalog type (and its array) by name."""
        return self._map(TypeMapping(name, 'type'))

    def map_enum(self, name: str, enum: type[Enum] | None = None) -> EnumInfo | None:
        """Load values of the PostgreSQL enum `name` as members of `enum`.

        Without `enum` psycopg builds a Python Enum from the catalog labels.
        """
        return self._map(TypeMapping(name, 'enum', enum))

    def map_composite(self, name: str, factory: Callable[..., Any] | None = None) -> CompositeInfo | None:
        """Load values of the composite type `name` with `factory`.

        Without `factory` psycopg builds a namedtuple from the attributes.
        """
        return self._map(TypeMapping(name, 'composite', factory))

    def _map(self, mapping: TypeMapping) -> TypeInfo | None:
        self._resolve(ensure_no_copy(self.connection), mapping)
        with self._lock:
            self._mappings[mapping.name] = mapping
        return mapping.info

    def _resolve(self, conn: psycopg.Connection, mapping: TypeMapping) -> None:
        info_cls, register = _KINDS[mapping.kind]
        mapping.info = info_cls.fetch(conn, mapping.name)
        if mapping.info is None:
            logger.debug(f'Type {mapping.name} not found in catalog; mapping left pending')
            return
        register(mapping.info, conn, mapping.python_type)
        logger.debug(f'Mapped {mapping.kind} {mapping.name} (oid {mapping.info.oid})')

    def reload(self) -> list[str]:
        """Fetch every mapped type from the catalog again and re-register it.

        Returns the names that are resolved after the reload.
        """
        conn = ensure_no_copy(self.connection)
        for mapping in self.mappings:
            self._resolve(conn, mapping)
        resolved = [m.name for m in self.mappings if m.resolved]
        logger.debug(f'Reloaded {len(resolved)} mapped types on connection {id(conn)}')
        return resolved
