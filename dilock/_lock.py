import inspect
import logging
import secrets
from enum import Enum
from typing import Any, Callable, Optional

from ._adapter import LockAdapter
from ._exceptions import (
    AlreadyAcquiredError,
    AlreadyReleasedError,
    CreateFailedError,
    NotAcquiredError,
    ReleaseFailedError,
)
from ._retry import RetrySettings, retry
from ._validators import (
    validate_key,
    validate_owner_token,
    validate_retry_settings,
    validate_ttl,
)


logger = logging.getLogger(__name__)


def make_token() -> str:
    return secrets.token_hex(20)


class LockState(Enum):
    IDLE = 'idle'
    ACQUIRED = 'acquired'
    RELEASED = 'released'


class Lock:
    """Single-use handle of a lock on one key.

    The handle goes from IDLE to ACQUIRED to RELEASED and never back.
    It is not safe to call its methods concurrently, give every task
    its own handle instead.

    Args:
        adapter:        Store holding the lock records.
        key:            Name of the locked resource.
        ttl:            How long the lock lives unless extended, in milliseconds.
        retry_settings: How to retry acquisition while the lock is held by others.
        owner_token:    Proof of ownership, a random one if omitted.
    """
    __slots__ = [
        'adapter',
        'key',
        'ttl',
        'retry_settings',
        'owner_token',
        '_state',
    ]

    adapter: LockAdapter
    key: str
    ttl: int
    retry_settings: RetrySettings
    owner_token: str
    _state: LockState

    def __init__(
        self,
        adapter: LockAdapter,
        key: str,
        ttl: int,
        retry_settings: RetrySettings,
        owner_token: Optional[str] = None,
    ) -> None:
        validate_key(key)
        validate_ttl(ttl)
        validate_retry_settings(retry_settings)
        if owner_token is None:
            owner_token = make_token()
        validate_owner_token(owner_token)
        self.adapter = adapter
        self.key = key
        self.ttl = ttl
        self.retry_settings = retry_settings
        self.owner_token = owner_token
        self._state = LockState.IDLE

    def __repr__(self) -> str:
        return f'{type(self).__name__}(key={self.key!r}, ttl={self.ttl}, state={self._state.value})'

    @property
    def state(self) -> LockState:
        return self._state

    async def acquire(self, callback: Optional[Callable[['Lock'], Any]] = None) -> Any:
        """Acquire (lock) the resource, retrying while it is held by someone else.

        If `callback` is given, it is called with the lock once acquired,
        the lock is released when it finishes (or fails), and its result
        is returned. Otherwise, the lock itself is returned.

        Raises:
            AlreadyAcquiredError
            AlreadyReleasedError
            RetryExhaustedError
        """
        if self._state is LockState.ACQUIRED:
            raise AlreadyAcquiredError(f'lock {self.key!r} is already acquired')
        if self._state is LockState.RELEASED:
            raise AlreadyReleasedError(f'lock {self.key!r} is already released')

        async def create() -> None:
            await self.adapter.create_lock(self.key, self.owner_token, self.ttl)

        await retry(
            settings=self.retry_settings,
            operation=create,
            should_proceed=lambda exc: isinstance(exc, CreateFailedError),
        )
        self._state = LockState.ACQUIRED
        logger.debug('lock %r acquired', self.key)
        if callback is None:
            return self
        try:
            result = callback(self)
            if inspect.isawaitable(result):
                result = await result
        finally:
            if self._state is not LockState.RELEASED:
                try:
                    await self.release()
                except Exception:
                    logger.warning('failed to release lock %r', self.key, exc_info=True)
        return result

    async def release(self, throw_on_fail: bool = False) -> None:
        """Release (unlock) the resource.

        The handle is released even if the store refused, so there is
        no second attempt.

        Args:
            throw_on_fail: raise ReleaseFailedError instead of logging it.

        Raises:
            AlreadyReleasedError
            ReleaseFailedError
        """
        if self._state is LockState.RELEASED:
            raise AlreadyReleasedError(f"can't release lock {self.key!r} twice")
        self._state = LockState.RELEASED
        try:
            await self.adapter.release_lock(self.key, self.owner_token)
        except ReleaseFailedError:
            if throw_on_fail:
                raise
            logger.warning('failed to release lock %r', self.key, exc_info=True)
            return
        logger.debug('lock %r released', self.key)

    async def extend(self, ttl: int) -> None:
        """Make the lock expire `ttl` milliseconds from now.

        Raises:
            NotAcquiredError
            AlreadyReleasedError
            ExtendFailedError
        """
        if self._state is LockState.IDLE:
            raise NotAcquiredError(f"can't extend lock {self.key!r} before acquiring it")
        if self._state is LockState.RELEASED:
            raise AlreadyReleasedError(f"can't extend released lock {self.key!r}")
        validate_ttl(ttl)
        await self.adapter.extend_lock(self.key, self.owner_token, ttl)

    async def is_locked(self) -> bool:
        """Check in the store if the lock is held by this handle.
        """
        return await self.adapter.is_valid_lock(self.key, self.owner_token)

    def set_retry_settings(self, settings: RetrySettings) -> 'Lock':
        """Make a copy of the lock, with the same owner, retrying differently.

        Raises:
            AlreadyAcquiredError
            AlreadyReleasedError
            ValidationError
        """
        if self._state is LockState.ACQUIRED:
            raise AlreadyAcquiredError(
                f"can't change retry settings of lock {self.key!r} after acquiring it",
            )
        if self._state is LockState.RELEASED:
            raise AlreadyReleasedError(f"can't change retry settings of released lock {self.key!r}")
        return type(self)(
            adapter=self.adapter,
            key=self.key,
            ttl=self.ttl,
            retry_settings=settings,
            owner_token=self.owner_token,
        )

    async def __aenter__(self) -> 'Lock':
        await self.acquire()
        return self

    async def __aexit__(self, *args) -> None:
        if self._state is LockState.ACQUIRED:
            await self.release()
