"""Connection pool for execution targets, keyed by host identity."""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set

from ..config import ExecutionSettings, PoolSettings
from ..models import HostCredentials, HostIdentity
from .base import ExecutionTarget
from .factory import create_target

logger = logging.getLogger(__name__)

TargetFactory = Callable[[HostIdentity, Optional[HostCredentials]], ExecutionTarget]


@dataclass
class PooledConnection:
    """A pooled target with its bookkeeping."""
    target: ExecutionTarget
    created_at: float
    last_used_at: float
    users: int = 0

    @property
    def in_use(self) -> bool:
        return self.users > 0

    def age(self, now: float) -> float:
        return now - self.created_at


class ConnectionPool:
    """Caches connected targets so each host identity is dialled at most once.

    ``soft_max_size`` is advisory: when more identities are pooled than it
    allows, idle entries are evicted least-recently-used first. In-use entries
    are never evicted and ``acquire`` never blocks on capacity. An entry that is
    already checked out is shared with further callers (each remote command
    runs on its own channel) and stays in use until every caller released it.
    """

    def __init__(self, settings: Optional[PoolSettings] = None,
                 target_factory: Optional[TargetFactory] = None,
                 execution_settings: Optional[ExecutionSettings] = None):
        self.settings = settings or PoolSettings()
        self._execution_settings = execution_settings or ExecutionSettings()
        self._target_factory = target_factory or self._default_factory

        # Storage: identity key -> PooledConnection
        self._connections: Dict[str, PooledConnection] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._idle_timers: Dict[str, asyncio.TimerHandle] = {}
        self._pending: Set[asyncio.Task] = set()

        # Background sweep task
        self._cleanup_task: Optional[asyncio.Task] = None

        logger.info(f"Connection pool initialized: soft_max_size={self.settings.soft_max_size}, "
                    f"idle_timeout={self.settings.idle_timeout}s, max_age={self.settings.max_age}s")

    def _default_factory(self, identity: HostIdentity, credentials: Optional[HostCredentials]) -> ExecutionTarget:
        return create_target(identity, credentials, self._execution_settings)

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, identity: HostIdentity) -> bool:
        return identity.key in self._connections

    async def start(self):
        """Start the background sweep of idle and expired connections."""
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.create_task(self._periodic_cleanup())
            logger.info("Connection pool background cleanup started")

    async def stop(self):
        """Stop the background sweep and disconnect every pooled target."""
        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None
            logger.info("Connection pool background cleanup stopped")
        await self.clear()

    def _is_valid(self, entry: PooledConnection, now: float) -> bool:
        return entry.age(now) < self.settings.max_age and entry.target.is_connected()

    async def acquire(self, identity: HostIdentity, credentials: Optional[HostCredentials] = None) -> ExecutionTarget:
        """Check out a connected target for ``identity``.

        If connecting fails the target is returned unpooled; its ``execute``
        then yields failure results carrying the connection error.
        """
        key = identity.key
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            now = time.monotonic()
            entry = self._connections.get(key)

            if entry is not None:
                self._cancel_idle_timer(key)
                if entry.in_use:
                    if not entry.target.is_connected():
                        logger.warning(f"Shared connection {key} dropped, reconnecting in place")
                        await entry.target.connect()
                    entry.users += 1
                    entry.last_used_at = now
                    logger.debug(f"Sharing in-use connection {key} ({entry.users} users)")
                    return entry.target
                if self._is_valid(entry, now):
                    entry.users = 1
                    entry.last_used_at = now
                    logger.debug(f"Reusing pooled connection {key}")
                    return entry.target
                reason = "expired" if entry.age(now) >= self.settings.max_age else "disconnected"
                await self._evict(key, reason)

            target = self._target_factory(identity, credentials)
            result = await target.connect()
            if not result.success:
                logger.error(f"Could not connect to {key}: {result.error}")
                return target

            now = time.monotonic()
            self._connections[key] = PooledConnection(target=target, created_at=now, last_used_at=now, users=1)
            target.add_close_listener(self._on_target_closed)
            logger.info(f"Pooled new connection {key} (pool size: {len(self._connections)})")

        await self._enforce_soft_limit()
        return target

    async def release(self, identity: HostIdentity) -> None:
        """Return a checked-out target; schedules idle eviction once unused."""
        key = identity.key
        entry = self._connections.get(key)
        if entry is None:
            return

        entry.users = max(0, entry.users - 1)
        entry.last_used_at = time.monotonic()
        if entry.in_use:
            return

        if entry.age(entry.last_used_at) >= self.settings.max_age:
            await self._evict(key, "expired")
            return
        self._schedule_idle_eviction(key)
        logger.debug(f"Released connection {key}")

    async def remove(self, identity: HostIdentity, force: bool = False) -> bool:
        """Disconnect and drop the entry for ``identity``.

        Without ``force`` an in-use entry is left alone and False is returned.
        """
        return await self._evict(identity.key, "removed", force=force)

    async def clear(self) -> None:
        """Disconnect every pooled target, in use or not."""
        count = len(self._connections)
        for key in list(self._connections):
            await self._evict(key, "pool cleared", force=True)
        if count:
            logger.info(f"Cleared connection pool ({count} connections)")

    async def cleanup_idle_connections(self) -> int:
        """Evict entries unused for longer than ``idle_timeout``."""
        now = time.monotonic()
        idle = [
            key for key, entry in self._connections.items()
            if not entry.in_use and now - entry.last_used_at >= self.settings.idle_timeout
        ]
        for key in idle:
            await self._evict(key, "idle")
        return len(idle)

    async def cleanup_expired_connections(self) -> int:
        """Evict unused entries older than ``max_age``."""
        now = time.monotonic()
        expired = [
            key for key, entry in self._connections.items()
            if not entry.in_use and entry.age(now) >= self.settings.max_age
        ]
        for key in expired:
            await self._evict(key, "expired")
        return len(expired)

    def get_stats(self) -> Dict[str, Any]:
        total = len(self._connections)
        active = sum(1 for entry in self._connections.values() if entry.in_use)
        return {
            "total": total,
            "active": active,
            "idle": total - active,
            "soft_max_size": self.settings.soft_max_size,
            "utilization": round(total / self.settings.soft_max_size * 100, 2),
        }

    def list_connections(self) -> List[Dict[str, Any]]:
        now = time.monotonic()
        return [
            {
                "key": key,
                "in_use": entry.in_use,
                "users": entry.users,
                "age_seconds": round(entry.age(now), 3),
                "idle_seconds": round(now - entry.last_used_at, 3),
                "connected": entry.target.is_connected(),
            }
            for key, entry in self._connections.items()
        ]

    async def _evict(self, key: str, reason: str, force: bool = False) -> bool:
        entry = self._connections.get(key)
        if entry is None:
            return False
        if entry.in_use and not force:
            logger.debug(f"Not evicting in-use connection {key} ({reason})")
            return False

        self._cancel_idle_timer(key)
        entry.target.remove_close_listener(self._on_target_closed)
        try:
            await entry.target.disconnect()
        except Exception as e:
            logger.error(f"Error disconnecting {key} during eviction: {e}")
        if self._connections.get(key) is entry:
            del self._connections[key]
        logger.info(f"Evicted connection {key} ({reason})")
        return True

    def _on_target_closed(self, target: ExecutionTarget) -> None:
        entry = self._connections.get(target.key)
        if entry is not None and entry.target is target:
            self._cancel_idle_timer(target.key)
            del self._connections[target.key]
            logger.info(f"Removed closed connection {target.key} from pool")

    def _schedule_idle_eviction(self, key: str) -> None:
        self._cancel_idle_timer(key)
        loop = asyncio.get_running_loop()
        self._idle_timers[key] = loop.call_later(self.settings.idle_timeout, self._on_idle_timer, key)

    def _cancel_idle_timer(self, key: str) -> None:
        handle = self._idle_timers.pop(key, None)
        if handle is not None:
            handle.cancel()

    def _on_idle_timer(self, key: str) -> None:
        self._idle_timers.pop(key, None)
        task = asyncio.ensure_future(self._evict(key, "idle timeout"))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _enforce_soft_limit(self) -> None:
        excess = len(self._connections) - self.settings.soft_max_size
        if excess <= 0:
            return
        idle = sorted(
            (entry.last_used_at, key) for key, entry in self._connections.items() if not entry.in_use
        )
        for _, key in idle[:excess]:
            await self._evict(key, "over soft limit")
        if len(self._connections) > self.settings.soft_max_size:
            logger.warning(f"Connection pool above soft limit: {len(self._connections)} in use, "
                           f"soft_max_size={self.settings.soft_max_size}")

    async def _periodic_cleanup(self):
        logger.info(f"Starting periodic pool cleanup (interval: {self.settings.cleanup_interval}s)")
        while True:
            try:
                await asyncio.sleep(self.settings.cleanup_interval)
                await self.cleanup_expired_connections()
                await self.cleanup_idle_connections()
            except asyncio.CancelledError:
                logger.debug("Periodic pool cleanup cancelled")
                break
            except Exception as e:
                logger.error(f"Error in periodic pool cleanup: {e}")
