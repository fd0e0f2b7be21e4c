from ._adapter import LockAdapter
from ._lock import Lock
from ._retry import RetrySettings
from ._validators import validate_adapter, validate_key, validate_retry_settings, validate_ttl


class Locker:
    """Factory of locks sharing one store and one retry policy.

    Args:
        adapter:        Store holding the lock records.
        retry_settings: How every lock retries acquisition.
    """
    __slots__ = [
        'adapter',
        'retry_settings',
    ]

    adapter: LockAdapter
    retry_settings: RetrySettings

    def __init__(self, adapter: LockAdapter, retry_settings: RetrySettings) -> None:
        validate_adapter(adapter)
        validate_retry_settings(retry_settings)
        self.adapter = adapter
        self.retry_settings = retry_settings

    def lock(self, key: str, ttl: int) -> Lock:
        """Make a new lock on `key`, with a fresh owner token.

        Raises:
            ValidationError
        """
        validate_key(key)
        validate_ttl(ttl)
        return Lock(
            adapter=self.adapter,
            key=key,
            ttl=ttl,
            retry_settings=self.retry_settings,
        )
