"""
Capability flags resolved once at import time.

Some operations depend on the platform or on the libpq that psycopg was built
against. Rather than hiding methods, the client always exposes the same
surface and consults these flags, raising `UnsupportedFeatureError` when a
capability is missing.
"""
import asyncio
import logging
import sys
from dataclasses import dataclass
from functools import lru_cache

import psycopg
from psycopg import pq

from pgbridge.exceptions import UnsupportedFeatureError

__all__ = ['Features', 'get_features', 'require']

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Features:
    """Capabilities of the running environment.

    - async_io: the default event loop can watch sockets (`add_reader`)
    - gssapi_status: libpq can report whether GSSAPI authentication was used
    - pipeline: libpq supports pipeline mode
    """
    libpq_version: int
    pq_impl: str
    psycopg_version: str
    async_io: bool
    gssapi_status: bool
    pipeline: bool


def _loop_watches_sockets() -> bool:
    """Proactor loops on Windows have no add_reader/add_writer."""
    if sys.platform != 'win32':
        return True
    policy = asyncio.get_event_loop_policy()
    return isinstance(policy, getattr(asyncio, 'WindowsSelectorEventLoopPolicy', ()))


@lru_cache(maxsize=1)
def get_features() -> Features:
    """Probe the environment and return the capability flags.
    """
    libpq_version = pq.version()
    features = Features(
        libpq_version=libpq_version,
        pq_impl=pq.__impl__,
        psycopg_version=psycopg.__version__,
        async_io=_loop_watches_sockets(),
        gssapi_status=libpq_version >= 160000 and hasattr(pq.PGconn, 'used_gssapi'),
        pipeline=psycopg.Pipeline.is_supported(),
    )
    logger.debug(f'Resolved features: {features}')
    return features


def require(name: str, features: Features | None = None) -> None:
    """Raise UnsupportedFeatureError unless the named capability is available.
    """
    features = features or get_features()
    if not getattr(features, name):
        raise UnsupportedFeatureError(
            f'{name} is not available (libpq {features.libpq_version}, '
            f'{features.pq_impl} implementation, platform {sys.platform})')
