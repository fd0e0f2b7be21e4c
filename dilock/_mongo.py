import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from pymongo import ASCENDING
from pymongo.errors import DuplicateKeyError

from ._exceptions import CreateFailedError, ExtendFailedError, ReleaseFailedError
from ._validators import validate_key, validate_owner_token, validate_ttl


logger = logging.getLogger(__name__)

DEFAULT_COLLECTION = 'dilock-locks'
DUPLICATE_KEY_CODE = 11000


def is_duplicate_key_error(exc: BaseException) -> bool:
    """Check if the error is a violation of the unique index on `key`.
    """
    if isinstance(exc, DuplicateKeyError):
        return True
    return getattr(exc, 'code', None) == DUPLICATE_KEY_CODE


class MongoAdapter:
    """Lock store in a MongoDB collection.

    The unique index on `key` makes the conditional upsert in `create_lock`
    atomic: when the filter misses a live document, the insert collides
    with it. The TTL index only keeps the collection tidy, expiry is always
    checked in the queries.

    Args:
        client:                 Async MongoDB client. The caller opens and closes it.
        db_name:                Database name, the client default if omitted.
        collection_name:        Name of the collection holding the locks.
        is_duplicate_key_error: Tells uniqueness conflicts from other errors.
        now:                    Callback used to determine the current time.
    """
    __slots__ = [
        'collection',
        'is_duplicate_key_error',
        'now',
        '_indexes_created',
        '_indexes_lock',
    ]

    collection: Any
    is_duplicate_key_error: Callable[[BaseException], bool]
    now: Callable[..., datetime]
    _indexes_created: bool
    _indexes_lock: asyncio.Lock

    def __init__(
        self,
        client: Any,
        db_name: Optional[str] = None,
        collection_name: str = DEFAULT_COLLECTION,
        is_duplicate_key_error: Callable[[BaseException], bool] = is_duplicate_key_error,
        now: Callable[[], datetime] = datetime.now,
    ) -> None:
        if db_name is None:
            database = client.get_default_database()
        else:
            database = client.get_database(db_name)
        self.collection = database.get_collection(collection_name)
        self.is_duplicate_key_error = is_duplicate_key_error  # type: ignore
        self.now = now  # type: ignore
        self._indexes_created = False
        self._indexes_lock = asyncio.Lock()

    def _utcnow(self) -> datetime:
        return self.now().astimezone(timezone.utc)

    async def _create_indexes(self) -> None:
        if self._indexes_created:
            return
        async with self._indexes_lock:
            if self._indexes_created:
                return
            await asyncio.gather(
                self.collection.create_index([('key', ASCENDING)], unique=True),
                self.collection.create_index([('expireAt', ASCENDING)], expireAfterSeconds=0),
                self.collection.create_index([('key', ASCENDING), ('expireAt', ASCENDING)]),
            )
            logger.debug('indexes created on %s', self.collection.name)
            self._indexes_created = True

    def _owned(self, key: str, owner_token: str, now: datetime) -> Dict[str, Any]:
        return {
            'key': key,
            'ownerToken': owner_token,
            'expireAt': {'$gt': now},
        }

    async def create_lock(self, key: str, owner_token: str, ttl: int) -> None:
        validate_key(key)
        validate_owner_token(owner_token)
        validate_ttl(ttl)
        await self._create_indexes()
        now = self._utcnow()
        query = {
            'key': key,
            '$or': [
                {'expireAt': {'$lte': now}},
                {'expireAt': {'$exists': False}},
            ],
        }
        update = {'$set': {
            'key': key,
            'ownerToken': owner_token,
            'expireAt': now + timedelta(milliseconds=ttl),
        }}
        try:
            await self.collection.update_one(query, update, upsert=True)
        except Exception as exc:
            if self.is_duplicate_key_error(exc):
                raise CreateFailedError(f'lock {key!r} is held') from exc
            raise

    async def release_lock(self, key: str, owner_token: str) -> None:
        validate_key(key)
        validate_owner_token(owner_token)
        await self._create_indexes()
        result = await self.collection.delete_one(
            self._owned(key, owner_token, self._utcnow()),
        )
        if result.deleted_count == 0:
            raise ReleaseFailedError(f'lock {key!r} is expired or taken')

    async def extend_lock(self, key: str, owner_token: str, ttl: int) -> None:
        validate_key(key)
        validate_owner_token(owner_token)
        validate_ttl(ttl)
        await self._create_indexes()
        now = self._utcnow()
        update = {'$set': {'expireAt': now + timedelta(milliseconds=ttl)}}
        try:
            result = await self.collection.update_one(
                self._owned(key, owner_token, now),
                update,
            )
        except Exception as exc:
            if self.is_duplicate_key_error(exc):
                raise ExtendFailedError(f'lock {key!r} is taken') from exc
            raise
        # no upsert: an expired lock must not come back to life
        if result.matched_count == 0:
            raise ExtendFailedError(f'lock {key!r} is expired or taken')

    async def is_valid_lock(self, key: str, owner_token: str) -> bool:
        validate_key(key)
        validate_owner_token(owner_token)
        await self._create_indexes()
        doc = await self.collection.find_one(self._owned(key, owner_token, self._utcnow()))
        return doc is not None
