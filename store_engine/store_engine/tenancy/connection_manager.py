"""Per-store connection cache with single-flight connects and idle eviction.

Resolving a store_id yields a :class:`ConnectionHandle` wrapping a pooled
async engine on the store's own database.  The manager guarantees:

* At most one handle per store_id.  Concurrent first-time resolves share
  one in-flight connect task and all observe the same handle or error.
* A failed connect leaves no cache entry, so the next call starts over.
* Waiters are shielded: cancelling one caller never cancels the shared
  connect.
* Distinct stores never wait on each other.  The handle and gate maps sit
  behind a short ``threading.Lock`` that is never held across an await;
  all slow work runs under the per-store gate, which is dropped as soon
  as no task holds or waits for it.

The background sweep closes handles that have been idle longer than the
configured threshold and are not checked out.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager
from functools import partial
from typing import Any

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from store_engine.config import Settings
from store_engine.errors import CredentialError, ProvisioningError, UnknownTenant
from store_engine.locks import KeyedLock
from store_engine.retry import RetryConfig, async_retry_with_backoff
from store_engine.security.vault import CredentialVault, Err
from store_engine.state.database import forget_engine, get_engine, get_session_factory
from store_engine.tenancy.registry import TenantRegistry

logger = logging.getLogger(__name__)

PoolFactory = Callable[[str, str], Awaitable[AsyncEngine]]

# Exceptions from the pool factory that are worth another attempt.
_RETRYABLE = (OSError, TimeoutError, DBAPIError)


async def open_tenant_pool(store_id: str, database_url: str, settings: Settings) -> AsyncEngine:
    """Create a pooled engine for *database_url* and verify it with ``SELECT 1``.

    The engine is disposed again if the probe fails, so a failed attempt
    never leaks connections.
    """
    engine = get_engine(
        database_url,
        pool_size=settings.tenant_pool_size,
        max_overflow=settings.tenant_max_overflow,
        connect_timeout=settings.tenant_connect_timeout,
    )
    try:
        async with asyncio.timeout(settings.tenant_connect_timeout):
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
    except BaseException:
        await engine.dispose()
        raise
    logger.info("Opened tenant pool for store=%s", store_id)
    return engine


class ConnectionHandle:
    """Live pooled connection to one store's database.

    Owned by the :class:`ConnectionManager`; callers borrow sessions via
    :meth:`session` and never touch the pool directly.
    """

    def __init__(
        self,
        store_id: str,
        pool: AsyncEngine,
        *,
        database_type: str = "postgresql",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store_id = store_id
        self.database_type = database_type
        self._pool = pool
        self._clock = clock
        self.created_at = clock()
        self.last_used_at = self.created_at
        self.ref_count = 0

    def touch(self) -> None:
        self.last_used_at = self._clock()

    @property
    def idle_seconds(self) -> float:
        return self._clock() - self.last_used_at

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Borrow a session on the tenant database.

        Commits on clean exit, rolls back if an exception escapes.  The
        handle counts as in use, and is therefore never evicted, while
        the session is open.
        """
        self.ref_count += 1
        self.touch()
        session = get_session_factory(self._pool)()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()
            self.ref_count -= 1
            self.touch()

    async def ping(self) -> float:
        """Run ``SELECT 1`` on the tenant database and return the latency in ms."""
        started = time.perf_counter()
        async with self.session() as session:
            await session.execute(text("SELECT 1"))
        return round((time.perf_counter() - started) * 1000, 2)

    async def dispose(self) -> None:
        forget_engine(self._pool)
        await self._pool.dispose()


class ConnectionManager:
    """Resolve store ids to cached connection handles.

    Parameters
    ----------
    registry:
        Source of tenant status and encrypted credentials.
    vault:
        Decrypts stored credentials into connection URLs.
    settings:
        Pool sizing, retry budget and eviction timing.
    pool_factory:
        ``async (store_id, url) -> AsyncEngine``.  Defaults to
        :func:`open_tenant_pool`.
    clock:
        Monotonic clock used for idle accounting.
    """

    def __init__(
        self,
        registry: TenantRegistry,
        vault: CredentialVault,
        settings: Settings,
        *,
        pool_factory: PoolFactory | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._registry = registry
        self._vault = vault
        self._settings = settings
        self._pool_factory: PoolFactory = pool_factory or partial(_default_factory, settings)
        self._clock = clock
        self._retry_config = RetryConfig(
            max_retries=settings.connect_max_retries,
            base_delay=settings.connect_backoff_base,
            max_delay=settings.connect_backoff_max,
        )

        self._lock = threading.Lock()
        self._handles: dict[str, ConnectionHandle] = {}
        self._gates = KeyedLock()
        self._inflight: dict[str, asyncio.Task[ConnectionHandle]] = {}

        self._running = False
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        """Whether the eviction loop is active."""
        return self._running

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def resolve(self, store_id: str) -> ConnectionHandle:
        """Return the live handle for *store_id*, connecting on first use.

        Raises
        ------
        UnknownTenant
            The store is missing, inactive, or has no credential.
        CredentialError
            The stored credential failed decryption.  No connect is attempted.
        ProvisioningError
            The database stayed unreachable for the whole retry budget.
        """
        with self._lock:
            handle = self._handles.get(store_id)
            if handle is not None:
                handle.touch()
                return handle
            task = self._inflight.get(store_id)
            if task is None:
                task = asyncio.get_running_loop().create_task(
                    self._connect(store_id),
                    name=f"connect-store-{store_id}",
                )
                self._inflight[store_id] = task
                task.add_done_callback(partial(self._connect_done, store_id))
        return await asyncio.shield(task)

    async def resolve_hostname(self, hostname: str) -> ConnectionHandle:
        store_id = await self._registry.lookup_by_hostname(hostname)
        return await self.resolve(store_id)

    def _connect_done(self, store_id: str, task: asyncio.Task[ConnectionHandle]) -> None:
        with self._lock:
            if self._inflight.get(store_id) is task:
                del self._inflight[store_id]
        # Mark the outcome as retrieved; waiters re-raise it themselves.
        if not task.cancelled():
            task.exception()

    async def _connect(self, store_id: str) -> ConnectionHandle:
        async with self._gates.hold(store_id):
            with self._lock:
                existing = self._handles.get(store_id)
            if existing is not None:
                existing.touch()
                return existing

            record = await self._registry.lookup_by_id(store_id)
            if not record.is_active:
                raise UnknownTenant(store_id, reason="store is inactive")
            if record.credential is None:
                raise UnknownTenant(store_id, reason="no database credential configured")

            secret = record.credential.secret
            outcome = self._vault.decrypt_result(secret.ciphertext, secret.iv, secret.tag, secret.algorithm_version)
            if isinstance(outcome, Err):
                logger.error("Credential for store=%s failed integrity check", store_id)
                await self._record_status(store_id, "failed")
                raise CredentialError(store_id, str(outcome.error)) from outcome.error
            try:
                database_url = outcome.value.decode("utf-8")
            except UnicodeDecodeError as exc:
                raise CredentialError(store_id, "credential is not valid UTF-8") from exc

            attempts = 0

            async def _attempt() -> AsyncEngine:
                nonlocal attempts
                attempts += 1
                return await self._pool_factory(store_id, database_url)

            try:
                pool = await async_retry_with_backoff(
                    _attempt,
                    self._retry_config,
                    _RETRYABLE,
                    label=f"connect store={store_id}",
                )
            except Exception as exc:
                logger.error(
                    "Could not connect to database for store=%s after %d attempt(s): %s",
                    store_id,
                    attempts,
                    type(exc).__name__,
                )
                await self._record_status(store_id, "failed")
                raise ProvisioningError(store_id, attempts, exc) from exc

            handle = ConnectionHandle(
                store_id,
                pool,
                database_type=record.credential.database_type,
                clock=self._clock,
            )
            with self._lock:
                self._handles[store_id] = handle
            logger.info("Cached connection for store=%s (attempts=%d)", store_id, attempts)
            await self._record_status(store_id, "connected")
            return handle

    async def _record_status(self, store_id: str, status: str) -> None:
        try:
            await self._registry.record_connection_status(store_id, status)
        except SQLAlchemyError as exc:
            logger.warning("Could not record connection status for store=%s: %s", store_id, exc)

    # ------------------------------------------------------------------
    # Eviction and invalidation
    # ------------------------------------------------------------------

    async def sweep_idle(self, max_idle_seconds: float | None = None) -> list[str]:
        """Close handles idle longer than *max_idle_seconds* and not in use.

        Stores with a connect in flight are skipped.  Returns the evicted
        store ids.
        """
        threshold = self._settings.idle_eviction_seconds if max_idle_seconds is None else max_idle_seconds
        with self._lock:
            candidates = [sid for sid, h in self._handles.items() if h.ref_count == 0 and h.idle_seconds > threshold]

        evicted: list[str] = []
        for store_id in candidates:
            if self._gates.busy(store_id):
                continue
            async with self._gates.hold(store_id):
                with self._lock:
                    handle = self._handles.get(store_id)
                    if handle is None or handle.ref_count > 0 or handle.idle_seconds <= threshold:
                        continue
                    del self._handles[store_id]
                await handle.dispose()
                evicted.append(store_id)

        if evicted:
            logger.info("Evicted %d idle connection(s): %s", len(evicted), ", ".join(evicted))
        return evicted

    async def invalidate(self, store_id: str) -> bool:
        """Drop and dispose the handle for *store_id*, e.g. after credential rotation."""
        async with self._gates.hold(store_id):
            with self._lock:
                handle = self._handles.pop(store_id, None)
            if handle is None:
                return False
            await handle.dispose()
        logger.info("Invalidated cached connection for store=%s", store_id)
        return True

    async def clear_cache(self, store_id: str | None = None) -> int:
        """Invalidate one store, or every cached store when *store_id* is None."""
        if store_id is not None:
            return int(await self.invalidate(store_id))
        with self._lock:
            store_ids = list(self._handles)
        cleared = 0
        for sid in store_ids:
            if await self.invalidate(sid):
                cleared += 1
        return cleared

    def cached_connections(self) -> list[dict[str, Any]]:
        """Snapshot of cached handles for monitoring."""
        now = self._clock()
        with self._lock:
            handles = list(self._handles.values())
        return [
            {
                "store_id": h.store_id,
                "database_type": h.database_type,
                "age_seconds": round(now - h.created_at, 3),
                "idle_seconds": round(now - h.last_used_at, 3),
                "ref_count": h.ref_count,
            }
            for h in sorted(handles, key=lambda h: h.store_id)
        ]

    def is_cached(self, store_id: str) -> bool:
        with self._lock:
            return store_id in self._handles

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the background eviction loop."""
        if self._running:
            logger.warning("ConnectionManager eviction already running; ignoring start()")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            "ConnectionManager eviction started (idle=%.0fs, interval=%.0fs)",
            self._settings.idle_eviction_seconds,
            self._settings.eviction_interval_seconds,
        )

    async def stop(self) -> None:
        """Stop the eviction loop."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("ConnectionManager eviction stopped")

    async def _run_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._settings.eviction_interval_seconds)
            try:
                await self.sweep_idle()
            except asyncio.CancelledError:
                raise
            except (OperationalError, InterfaceError) as exc:
                logger.error("ConnectionManager eviction database error: %s", exc, exc_info=True)

    async def close(self) -> None:
        """Stop the loop, wait for in-flight connects and dispose every handle."""
        await self.stop()
        with self._lock:
            inflight = list(self._inflight.values())
        if inflight:
            await asyncio.wait(inflight)
        cleared = await self.clear_cache()
        logger.info("ConnectionManager closed (%d connection(s) disposed)", cleared)


async def _default_factory(settings: Settings, store_id: str, database_url: str) -> AsyncEngine:
    return await open_tenant_pool(store_id, database_url, settings)
