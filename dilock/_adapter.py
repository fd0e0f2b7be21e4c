from typing import Protocol, runtime_checkable


@runtime_checkable
class LockAdapter(Protocol):
    """What a backing store must provide to hold locks.

    A record is "live" while its expiry is in the future. For every key
    there is at most one live record at any moment, and every operation
    must be atomic with respect to concurrent callers in other processes.

    All methods raise `ValidationError` for an empty key, an empty owner
    token or a ttl that is not a positive integer. Errors of the store
    itself (connection loss and the like) are raised as they are.
    """

    async def create_lock(self, key: str, owner_token: str, ttl: int) -> None:
        """Install a record owned by `owner_token` expiring in `ttl` ms.

        Succeeds only if there is no live record for the key, whoever
        owned an expired one. When several callers race, one wins.

        Raises:
            CreateFailedError
        """

    async def release_lock(self, key: str, owner_token: str) -> None:
        """Remove the live record of the key if `owner_token` owns it.

        Raises:
            ReleaseFailedError
        """

    async def extend_lock(self, key: str, owner_token: str, ttl: int) -> None:
        """Move the expiry of the live record owned by `owner_token`
        to `ttl` ms from now. An expired record is not revived.

        Raises:
            ExtendFailedError
        """

    async def is_valid_lock(self, key: str, owner_token: str) -> bool:
        """Check if `owner_token` owns the live record of the key.
        """
