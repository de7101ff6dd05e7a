"""
Flag stores backing the kill switches.
"""

import asyncio
import threading
from typing import Dict, List, Optional

import redis.asyncio as redis

from shared.logging import get_logger
from ..interfaces import ConfigStore

_UNSET = object()


class InMemoryConfigStore(ConfigStore):
    """Process-local flags, seeded from settings."""

    def __init__(self, flags: Optional[Dict[str, bool]] = None):
        self._flags: Dict[str, bool] = dict(flags or {})
        self._lock = threading.Lock()

    def get_flag(self, key: str) -> Optional[bool]:
        with self._lock:
            return self._flags.get(key)

    def set_flag(self, key: str, value: Optional[bool]) -> None:
        with self._lock:
            if value is None:
                self._flags.pop(key, None)
            else:
                self._flags[key] = bool(value)


class RedisConfigStore(ConfigStore):
    """Flags shared across processes through Redis.

    Values are stored as ``"1"``/``"0"`` under ``prefix + key``. Reads never
    touch the network: ``get_flag`` serves a local snapshot that ``refresh``
    rebuilds every ``refresh_interval`` seconds once ``start`` has run.
    ``set_flag`` applies locally at once and is pushed to Redis on the next
    refresh; a push that fails is kept and retried. While Redis is
    unreachable the last snapshot stays in force, and keys Redis does not
    hold are answered by ``fallback``.
    """

    def __init__(self, redis_url: str, prefix: str = "automation:flags:", refresh_interval: float = 1.0,
                 client: Optional[redis.Redis] = None, fallback: Optional[ConfigStore] = None):
        self.redis_url = redis_url
        self.prefix = prefix
        self.refresh_interval = refresh_interval
        self.logger = get_logger("automation.config_store")
        self.redis: Optional[redis.Redis] = client
        self._fallback = fallback or InMemoryConfigStore()
        self._snapshot: Dict[str, bool] = {}
        self._pending: Dict[str, Optional[bool]] = {}
        self.refresh_task: Optional[asyncio.Task] = None
        self.running = False

    async def start(self):
        """Load the first snapshot and start the refresh loop."""
        if self.redis is None:
            self.redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=1,
                socket_timeout=1,
                retry_on_timeout=True,
                health_check_interval=30
            )

        if not await self.refresh():
            self.logger.warning("Redis flag store unavailable at startup, serving fallback flags")

        self.running = True
        self.refresh_task = asyncio.create_task(self._refresh_loop())
        self.logger.info("Redis flag store started", refresh_interval=self.refresh_interval)

    async def stop(self):
        """Stop the refresh loop and close the client."""
        self.running = False
        if self.refresh_task:
            self.refresh_task.cancel()
            try:
                await self.refresh_task
            except asyncio.CancelledError:
                pass
            self.refresh_task = None

        if self.redis is not None:
            await self.redis.close()
        self.logger.info("Redis flag store stopped")

    def get_flag(self, key: str) -> Optional[bool]:
        value = self._pending.get(key, _UNSET)
        if value is _UNSET:
            value = self._snapshot.get(key)
        if value is None:
            return self._fallback.get_flag(key)
        return value

    def set_flag(self, key: str, value: Optional[bool]) -> None:
        self._pending[key] = None if value is None else bool(value)
        self.logger.info("Flag updated", key=key, value=value)

    async def refresh(self) -> bool:
        """Push pending writes, then reload the snapshot.

        Returns false when Redis could not be reached; the previous snapshot
        and any unpushed writes are kept.
        """
        if self.redis is None:
            return False

        try:
            await self._push_pending()
            keys: List[str] = [key async for key in self.redis.scan_iter(match=self.prefix + "*")]
            values = await self.redis.mget(keys) if keys else []
        except redis.RedisError as e:
            self.logger.error("Flag refresh failed, keeping last snapshot", error=str(e))
            return False

        snapshot = {}
        for key, value in zip(keys, values):
            if value is None:
                continue
            if isinstance(key, bytes):
                key = key.decode("utf-8")
            snapshot[key[len(self.prefix):]] = _parse_flag(value)
        self._snapshot = snapshot
        return True

    async def _push_pending(self):
        for key, value in list(self._pending.items()):
            if value is None:
                await self.redis.delete(self.prefix + key)
            else:
                await self.redis.set(self.prefix + key, "1" if value else "0")
            # set_flag may have replaced the value while the write was in flight
            if self._pending.get(key, _UNSET) is value:
                del self._pending[key]

    async def _refresh_loop(self):
        while self.running:
            try:
                await asyncio.sleep(self.refresh_interval)
                await self.refresh()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error("Error in flag refresh loop", error=str(e))


def _parse_flag(value) -> bool:
    if isinstance(value, bytes):
        value = value.decode("utf-8")
    return value.strip().lower() in ("1", "true", "yes", "on")
