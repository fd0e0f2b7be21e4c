import asyncio
import logging
import time
from typing import Callable, Dict, NamedTuple

from ._exceptions import CreateFailedError, ExtendFailedError, ReleaseFailedError
from ._validators import validate_key, validate_owner_token, validate_ttl


logger = logging.getLogger(__name__)


class _Record(NamedTuple):
    owner_token: str
    expire_at: float


class MemoryAdapter:
    """Lock store living in the current process.

    Every instance owns its records, so two adapters never see each
    other's locks. Expired records are dropped by a timer scheduled
    on the running event loop.

    Args:
        clock:  Callback returning the current time in seconds.
    """
    __slots__ = [
        'clock',
        '_records',
        '_timers',
    ]

    clock: Callable[[], float]
    _records: Dict[str, _Record]
    _timers: Dict[str, asyncio.TimerHandle]

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self.clock = clock  # type: ignore
        self._records = {}
        self._timers = {}

    def __len__(self) -> int:
        return len(self._records)

    def _live(self, key: str) -> bool:
        record = self._records.get(key)
        return record is not None and record.expire_at > self.clock()

    def _owns(self, key: str, owner_token: str) -> bool:
        return self._live(key) and self._records[key].owner_token == owner_token

    async def create_lock(self, key: str, owner_token: str, ttl: int) -> None:
        validate_key(key)
        validate_owner_token(owner_token)
        validate_ttl(ttl)
        if self._live(key):
            raise CreateFailedError(f'lock {key!r} is held')
        self._set(key, owner_token, ttl)

    async def release_lock(self, key: str, owner_token: str) -> None:
        validate_key(key)
        validate_owner_token(owner_token)
        if not self._owns(key, owner_token):
            raise ReleaseFailedError(f'lock {key!r} is expired or taken')
        self._drop(key)

    async def extend_lock(self, key: str, owner_token: str, ttl: int) -> None:
        validate_key(key)
        validate_owner_token(owner_token)
        validate_ttl(ttl)
        if not self._owns(key, owner_token):
            raise ExtendFailedError(f'lock {key!r} is expired or taken')
        self._set(key, owner_token, ttl)

    async def is_valid_lock(self, key: str, owner_token: str) -> bool:
        validate_key(key)
        validate_owner_token(owner_token)
        return self._owns(key, owner_token)

    def close(self) -> None:
        """Cancel pending cleanup timers and forget all records.
        """
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._records.clear()

    def _set(self, key: str, owner_token: str, ttl: int) -> None:
        record = _Record(owner_token, self.clock() + ttl / 1000)
        self._drop(key)
        self._records[key] = record
        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(ttl / 1000, self._expire, key, record)

    def _drop(self, key: str) -> None:
        self._records.pop(key, None)
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()

    def _expire(self, key: str, record: _Record) -> None:
        # Owner and expiry must both match: the key may have been
        # re-acquired or extended since the timer was scheduled.
        if self._records.get(key) != record:
            return
        if record.expire_at > self.clock():
            return
        logger.debug('lock %r expired', key)
        del self._records[key]
        self._timers.pop(key, None)
