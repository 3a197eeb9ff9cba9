"""
Connection pool management for the CDC snapshot validator.

A run talks to two independent PostgreSQL databases: the authoritative source
and the target that receives the replayed state. ``PoolManager`` owns one
bounded ``psycopg_pool.AsyncConnectionPool`` per database, each with its own
TLS trust policy, and hands connections out through scoped borrows that always
return them to the pool (success, error or cancellation).

The manager is an explicit object created per run and passed to the
components that need it; nothing here is process-global.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Optional
from urllib.parse import urlsplit, urlunsplit

from psycopg import AsyncConnection
from psycopg.conninfo import make_conninfo
from psycopg_pool import AsyncConnectionPool, PoolTimeout

from cdc_validator.config import JobConfiguration, Settings, get_settings
from cdc_validator.errors import ConnectionFailedError, ResourceExhaustedError
from cdc_validator.utils.logging import get_logger

log = get_logger(__name__)

PoolFactory = Callable[..., AsyncConnectionPool]


@dataclass(frozen=True)
class PoolSettings:
    """Connection parameters for one side of the comparison."""

    name: str
    url: str
    max_size: int = 10
    accept_invalid_certs: bool = False
    acquire_timeout: float = 30.0


def redact_url(url: str) -> str:
    """Drop the password from a connection URL so it can be logged."""
    parts = urlsplit(url)
    if parts.password is None:
        return url
    netloc = parts.netloc.replace(f":{parts.password}@", ":***@", 1)
    return urlunsplit(parts._replace(netloc=netloc))


def build_conninfo(url: str, accept_invalid_certs: bool = False) -> str:
    """
    Compose the libpq connection string for a pool.

    With ``accept_invalid_certs`` the connection is still encrypted but the
    server certificate and host name are not verified (``sslmode=require``),
    which is what self-signed managed databases need.
    """
    if accept_invalid_certs:
        return make_conninfo(url, sslmode="require")
    return make_conninfo(url)


class DatabasePool:
    """
    One bounded pool with scoped acquisition.

    Acquisition waits up to ``acquire_timeout`` seconds when every connection
    is borrowed, then fails with ResourceExhaustedError.
    """

    def __init__(self, settings: PoolSettings, pool_factory: Optional[PoolFactory] = None) -> None:
        self.settings = settings
        self._pool_factory = pool_factory or AsyncConnectionPool
        self._pool: Optional[AsyncConnectionPool] = None

    @property
    def name(self) -> str:
        return self.settings.name

    @property
    def max_size(self) -> int:
        return self.settings.max_size

    async def open(self) -> None:
        if self._pool is not None:
            return
        pool = self._pool_factory(
            conninfo=build_conninfo(self.settings.url, self.settings.accept_invalid_certs),
            min_size=1,
            max_size=self.settings.max_size,
            timeout=self.settings.acquire_timeout,
            name=f"{self.settings.name}-pool",
            open=False,
        )
        try:
            await pool.open(wait=True, timeout=self.settings.acquire_timeout)
        except PoolTimeout as exc:
            await pool.close()
            raise ConnectionFailedError(
                f"Could not connect to the {self.settings.name} database",
                {"url": redact_url(self.settings.url), "cause": str(exc)},
            ) from exc
        self._pool = pool
        log.info(
            f"[POOL OPEN] {self.settings.name}",
            extra={
                "pool": self.settings.name,
                "url": redact_url(self.settings.url),
                "max_size": self.settings.max_size,
                "accept_invalid_certs": self.settings.accept_invalid_certs,
            },
        )

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[AsyncConnection]:
        """
        Borrow a connection for one batch or window.

        The pool commits on normal exit, rolls back on error or cancellation,
        and always takes the connection back.
        """
        if self._pool is None:
            raise RuntimeError(f"Pool '{self.settings.name}' is not open")
        try:
            async with self._pool.connection(timeout=self.settings.acquire_timeout) as conn:
                yield conn
        except PoolTimeout as exc:
            raise ResourceExhaustedError(
                f"Timed out waiting for a {self.settings.name} connection",
                {
                    "pool": self.settings.name,
                    "max_size": self.settings.max_size,
                    "timeout_seconds": self.settings.acquire_timeout,
                },
            ) from exc

    async def close(self) -> None:
        if self._pool is None:
            return
        pool, self._pool = self._pool, None
        await pool.close()
        log.info(f"[POOL CLOSED] {self.settings.name}", extra={"pool": self.settings.name})


class PoolManager:
    """
    Owner of the source and target pools for one run.

    Example
    -------
        async with PoolManager.from_job(job) as pools:
            async with pools.source.connection() as conn:
                await conn.execute("SELECT 1")
    """

    def __init__(
        self,
        source: PoolSettings,
        target: PoolSettings,
        pool_factory: Optional[PoolFactory] = None,
    ) -> None:
        self.source = DatabasePool(source, pool_factory)
        self.target = DatabasePool(target, pool_factory)

    @classmethod
    def from_job(
        cls,
        job: JobConfiguration,
        settings: Optional[Settings] = None,
        pool_factory: Optional[PoolFactory] = None,
    ) -> "PoolManager":
        settings = settings or get_settings()
        timeout = settings.pool_acquire_timeout_seconds
        return cls(
            PoolSettings(
                name="source",
                url=job.source_db_url,
                max_size=job.max_connections,
                accept_invalid_certs=job.accept_invalid_certs_source,
                acquire_timeout=timeout,
            ),
            PoolSettings(
                name="target",
                url=job.target_db_url,
                max_size=job.max_connections,
                accept_invalid_certs=job.accept_invalid_certs_target,
                acquire_timeout=timeout,
            ),
            pool_factory=pool_factory,
        )

    async def open(self) -> None:
        try:
            await self.source.open()
            await self.target.open()
        except BaseException:
            await self.close_all()
            raise

    async def close_all(self) -> None:
        """Close both pools; safe to call more than once."""
        try:
            await self.source.close()
        finally:
            await self.target.close()

    async def __aenter__(self) -> "PoolManager":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close_all()


__all__ = [
    "DatabasePool",
    "PoolManager",
    "PoolSettings",
    "build_conninfo",
    "redact_url",
]
