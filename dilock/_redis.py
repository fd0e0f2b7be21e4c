from typing import Optional

from redis.asyncio import Redis

from ._exceptions import CreateFailedError, ExtendFailedError, ReleaseFailedError
from ._validators import validate_key, validate_owner_token, validate_ttl


RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""
EXTEND_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("set", KEYS[1], ARGV[1], "PX", ARGV[2])
else
    return nil
end
"""


def _decode(value) -> Optional[str]:
    if isinstance(value, bytes):
        return value.decode('utf8')
    return value


class RedisAdapter:
    """Lock store on a single Redis node.

    Redis expires keys by itself, so a present key is a live lock.

    Args:
        client: redis.asyncio client. The caller opens and closes it.
    """
    __slots__ = [
        'client',
        '_release',
        '_extend',
    ]

    client: Redis

    def __init__(self, client: Redis) -> None:
        self.client = client
        self._release = client.register_script(RELEASE_SCRIPT)
        self._extend = client.register_script(EXTEND_SCRIPT)

    async def create_lock(self, key: str, owner_token: str, ttl: int) -> None:
        validate_key(key)
        validate_owner_token(owner_token)
        validate_ttl(ttl)
        result = await self.client.set(key, owner_token, px=ttl, nx=True)
        if not result:
            raise CreateFailedError(f'lock {key!r} is held')

    async def release_lock(self, key: str, owner_token: str) -> None:
        validate_key(key)
        validate_owner_token(owner_token)
        result = await self._release(keys=[key], args=[owner_token])
        if result != 1:
            raise ReleaseFailedError(f'lock {key!r} is expired or taken')

    async def extend_lock(self, key: str, owner_token: str, ttl: int) -> None:
        validate_key(key)
        validate_owner_token(owner_token)
        validate_ttl(ttl)
        result = await self._extend(keys=[key], args=[owner_token, ttl])
        if _decode(result) != 'OK':
            raise ExtendFailedError(f'lock {key!r} is expired or taken')

    async def is_valid_lock(self, key: str, owner_token: str) -> bool:
        validate_key(key)
        validate_owner_token(owner_token)
        return _decode(await self.client.get(key)) == owner_token
