import json
import os
import time
from random import choice
from string import ascii_letters
from types import SimpleNamespace
from typing import Any, Dict, Optional
from urllib.parse import unquote

import aiohttp
import pytest
from pymongo.errors import DuplicateKeyError

import dilock
from dilock._redis import RELEASE_SCRIPT


class FakeRedis:
    """Single-node Redis in a dict, with just enough of the client API.
    """

    def __init__(self) -> None:
        self.data: Dict[str, Any] = {}

    def _value(self, key: str) -> Optional[str]:
        item = self.data.get(key)
        if item is None:
            return None
        value, expire_at = item
        if expire_at <= time.monotonic():
            del self.data[key]
            return None
        return value

    async def set(self, key, value, px=None, nx=False):
        if nx and self._value(key) is not None:
            return None
        self.data[key] = (value, time.monotonic() + px / 1000)
        return True

    async def get(self, key):
        value = self._value(key)
        if value is None:
            return None
        return value.encode('utf8')

    def register_script(self, script: str):
        return FakeScript(self, script)


class FakeScript:
    def __init__(self, redis: FakeRedis, script: str) -> None:
        self.redis = redis
        self.script = script

    async def __call__(self, keys, args):
        key, token = keys[0], args[0]
        releasing = self.script == RELEASE_SCRIPT
        if self.redis._value(key) != token:
            return 0 if releasing else None
        if releasing:
            del self.redis.data[key]
            return 1
        self.redis.data[key] = (token, time.monotonic() + int(args[1]) / 1000)
        return b'OK'


def _match(doc: Dict[str, Any], query: Dict[str, Any]) -> bool:
    for field, cond in query.items():
        if field == '$or':
            if not any(_match(doc, q) for q in cond):
                return False
            continue
        if not isinstance(cond, dict):
            if doc.get(field) != cond:
                return False
            continue
        for op, value in cond.items():
            present = field in doc
            if op == '$exists' and present != value:
                return False
            if op == '$lt' and not (present and doc[field] < value):
                return False
            if op == '$lte' and not (present and doc[field] <= value):
                return False
            if op == '$gt' and not (present and doc[field] > value):
                return False
    return True


class FakeCollection:
    """MongoDB collection with a unique index on `key`.
    """
    name = 'dilock-locks'

    def __init__(self) -> None:
        self.docs: list = []
        self.indexes: list = []

    async def create_index(self, keys, **kwargs):
        self.indexes.append((keys, kwargs))
        return '_'.join(f'{k}_{d}' for k, d in keys)

    async def update_one(self, query, update, upsert=False):
        for doc in self.docs:
            if _match(doc, query):
                doc.update(update['$set'])
                return SimpleNamespace(matched_count=1, upserted_id=None)
        if not upsert:
            return SimpleNamespace(matched_count=0, upserted_id=None)
        doc = {k: v for k, v in query.items() if not k.startswith('$') and not isinstance(v, dict)}
        doc.update(update['$set'])
        if any(d['key'] == doc['key'] for d in self.docs):
            raise DuplicateKeyError('E11000 duplicate key error', code=11000)
        self.docs.append(doc)
        return SimpleNamespace(matched_count=0, upserted_id=len(self.docs))

    async def delete_one(self, query):
        for doc in self.docs:
            if _match(doc, query):
                self.docs.remove(doc)
                return SimpleNamespace(deleted_count=1)
        return SimpleNamespace(deleted_count=0)

    async def find_one(self, query):
        for doc in self.docs:
            if _match(doc, query):
                return dict(doc)
        return None


class FakeMongoClient:
    def __init__(self, collection: Optional[FakeCollection] = None) -> None:
        self.collection = collection or FakeCollection()
        self.databases: list = []

    def get_database(self, name):
        self.databases.append(name)
        return SimpleNamespace(get_collection=lambda name: self.collection)

    def get_default_database(self):
        return self.get_database(None)


class FakeResponse:
    def __init__(self, status: int, body: Optional[dict] = None) -> None:
        self.status = status
        self.body = body
        self.released = False

    async def json(self):
        return self.body

    def release(self) -> None:
        self.released = True

    def raise_for_status(self) -> None:
        if self.status >= 400:
            raise aiohttp.ClientResponseError(
                request_info=None,  # type: ignore[arg-type]
                history=(),
                status=self.status,
            )


class FakeGCSSession:
    """GCS JSON API with generation preconditions, served from a dict.
    """

    def __init__(self) -> None:
        self.objects: Dict[str, Dict[str, Any]] = {}
        self.generation = 0
        self.calls: list = []
        self.responses: list = []

    def _reply(self, status: int, body: Optional[dict] = None) -> FakeResponse:
        resp = FakeResponse(status, body)
        self.responses.append(resp)
        return resp

    def _current(self, name: str) -> int:
        obj = self.objects.get(name)
        return 0 if obj is None else obj['generation']

    async def post(self, url, data, params, headers):
        self.calls.append(('post', url, params))
        metadata = json.loads(data.decode('utf8').split('\r\n')[3])
        name = metadata['name']
        if int(params['ifGenerationMatch']) != self._current(name):
            return self._reply(412)
        self.generation += 1
        self.objects[name] = dict(generation=self.generation, metadata=metadata['metadata'])
        return self._reply(200, {'name': name, 'generation': str(self.generation)})

    async def get(self, url, headers):
        self.calls.append(('get', url, None))
        name = unquote(url.rsplit('/o/', 1)[1])
        obj = self.objects.get(name)
        if obj is None:
            return self._reply(404)
        return self._reply(200, {
            'name': name,
            'generation': str(obj['generation']),
            'metadata': obj['metadata'],
        })

    async def delete(self, url, params, headers):
        self.calls.append(('delete', url, params))
        name = unquote(url.rsplit('/o/', 1)[1])
        if name not in self.objects:
            return self._reply(404)
        if int(params['ifGenerationMatch']) != self._current(name):
            return self._reply(412)
        del self.objects[name]
        return self._reply(204)


def make_adapter(kind: str):
    if kind == 'memory':
        return dilock.MemoryAdapter()
    if kind == 'redis':
        return dilock.RedisAdapter(FakeRedis())  # type: ignore[arg-type]
    if kind == 'mongo':
        return dilock.MongoAdapter(FakeMongoClient())
    if kind == 'gcs':
        return dilock.GCSAdapter(
            bucket='locks',
            session=FakeGCSSession(),  # type: ignore[arg-type]
            api_url='http://gcs.test',
        )
    raise ValueError(kind)


@pytest.fixture
def random_name() -> str:
    return ''.join(choice(ascii_letters) for _ in range(20))


@pytest.fixture(params=['memory', 'redis', 'mongo', 'gcs'])
def adapter(request):
    adapter = make_adapter(request.param)
    yield adapter
    if isinstance(adapter, dilock.MemoryAdapter):
        adapter.close()


@pytest.fixture
def memory_adapter():
    adapter = dilock.MemoryAdapter()
    yield adapter
    adapter.close()


@pytest.fixture
def settings() -> dilock.RetrySettings:
    return dilock.RetrySettings(retry_times=300, retry_delay=10)


@pytest.fixture
def locker(adapter, settings) -> dilock.Locker:
    return dilock.Locker(adapter=adapter, retry_settings=settings)


@pytest.fixture(params=['redis', 'mongo', 'gcs'])
async def live_adapter(request):
    if request.param == 'redis':
        if 'REDIS_URL' not in os.environ:
            pytest.skip('REDIS_URL is not set')
        from redis.asyncio import from_url
        client = from_url(os.environ['REDIS_URL'])
        yield dilock.RedisAdapter(client)
        await client.aclose()
    elif request.param == 'mongo':
        if 'MONGO_URL' not in os.environ:
            pytest.skip('MONGO_URL is not set')
        from pymongo import AsyncMongoClient
        client = AsyncMongoClient(os.environ['MONGO_URL'])
        yield dilock.MongoAdapter(client)
        await client.close()
    else:
        if 'BUCKET' not in os.environ:
            pytest.skip('BUCKET is not set')
        async with aiohttp.ClientSession() as session:
            yield dilock.GCSAdapter(
                bucket=os.environ['BUCKET'],
                session=session,
                api_url=os.environ.get('GCS_API_URL'),
            )
