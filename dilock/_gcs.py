import json
import logging
from datetime import datetime, timedelta, timezone
from http import HTTPStatus
from typing import Callable, Dict, NamedTuple, Optional
from urllib.parse import quote

import aiohttp
from gcloud.aio.auth import Token

from ._exceptions import CreateFailedError, ExtendFailedError, ReleaseFailedError
from ._validators import validate_key, validate_owner_token, validate_ttl


DEFAULT_URL = 'https://www.googleapis.com'
SCOPES = [
    'https://www.googleapis.com/auth/devstorage.read_write',
]
BOUNDARY = 'cf58b63b6ce6f37881e9740f24be22d7'
EXPIRED = datetime.min.replace(tzinfo=timezone.utc)

logger = logging.getLogger(__name__)


class _Record(NamedTuple):
    owner_token: str
    expires: datetime
    generation: str


class GCSAdapter:
    """Lock store in a Google Cloud Storage bucket.

    Every lock is an object named after the key. Its generation number
    serves as compare-and-set: writes and deletes are conditioned on the
    generation that was read, or on `0` (no object) when creating.

    Args:
        bucket:     GCS bucket name.
        session:    HTTP session. The caller opens and closes it.
        api_url:    URL of GCS API, helpful for testing with emulator.
        token:      Auth token, made from the session if omitted.
        now:        Callback used to determine the current time.
    """
    __slots__ = [
        'bucket',
        'session',
        'api_url',
        'emulator',
        'token',
        'now',
    ]

    bucket: str
    session: aiohttp.ClientSession
    api_url: str
    emulator: bool
    token: Optional[Token]
    now: Callable[..., datetime]

    def __init__(
        self,
        bucket: str,
        session: aiohttp.ClientSession,
        api_url: Optional[str] = None,
        token: Optional[Token] = None,
        now: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.bucket = bucket
        self.session = session
        self.emulator = api_url is not None
        self.api_url = api_url or DEFAULT_URL
        self.now = now  # type: ignore
        if token is None and not self.emulator:
            token = Token(scopes=SCOPES, session=session)  # type: ignore[arg-type]
        self.token = token

    async def _headers(self) -> Dict[str, str]:
        if self.token is None:
            return {}
        token = await self.token.get()
        return {
            'Authorization': f'Bearer {token}',
        }

    def _utcnow(self) -> datetime:
        return self.now().astimezone(timezone.utc)

    async def create_lock(self, key: str, owner_token: str, ttl: int) -> None:
        validate_key(key)
        validate_owner_token(owner_token)
        validate_ttl(ttl)
        resp = await self._write(key, owner_token, ttl, generation='0')
        if resp.status != HTTPStatus.PRECONDITION_FAILED:
            resp.raise_for_status()
            return

        # The object exists. Take it over only if it is expired
        # and nobody has rewritten it since we looked.
        record = await self._read(key)
        if record is None or self._utcnow() < record.expires:
            raise CreateFailedError(f'lock {key!r} is held')
        resp = await self._write(key, owner_token, ttl, generation=record.generation)
        if resp.status == HTTPStatus.PRECONDITION_FAILED:
            raise CreateFailedError(f'lock {key!r} is held')
        resp.raise_for_status()

    async def release_lock(self, key: str, owner_token: str) -> None:
        validate_key(key)
        validate_owner_token(owner_token)
        record = await self._read(key)
        if not self._owns(record, owner_token):
            raise ReleaseFailedError(f'lock {key!r} is expired or taken')
        assert record is not None
        resp = await self._delete(key, generation=record.generation)
        if resp.status in (HTTPStatus.NOT_FOUND, HTTPStatus.PRECONDITION_FAILED):
            raise ReleaseFailedError(f'lock {key!r} is expired or taken')
        resp.raise_for_status()

    async def extend_lock(self, key: str, owner_token: str, ttl: int) -> None:
        validate_key(key)
        validate_owner_token(owner_token)
        validate_ttl(ttl)
        record = await self._read(key)
        if not self._owns(record, owner_token):
            raise ExtendFailedError(f'lock {key!r} is expired or taken')
        assert record is not None
        resp = await self._write(key, owner_token, ttl, generation=record.generation)
        if resp.status == HTTPStatus.PRECONDITION_FAILED:
            raise ExtendFailedError(f'lock {key!r} is taken')
        resp.raise_for_status()

    async def is_valid_lock(self, key: str, owner_token: str) -> bool:
        validate_key(key)
        validate_owner_token(owner_token)
        return self._owns(await self._read(key), owner_token)

    def _owns(self, record: Optional[_Record], owner_token: str) -> bool:
        if record is None:
            return False
        return record.owner_token == owner_token and self._utcnow() < record.expires

    async def _read(self, key: str) -> Optional[_Record]:
        """Get the lock object metadata, None if there is no object.

        An object without readable lock metadata is treated as an
        expired lock of an unknown owner.

        Raises:
            ClientResponseError
        """
        resp = await self._get(key)
        try:
            if resp.status == HTTPStatus.NOT_FOUND:
                return None
            resp.raise_for_status()
            content = await resp.json()
        finally:
            resp.release()
        metadata = content.get('metadata') or {}
        try:
            expires = datetime.fromisoformat(metadata['expires']).astimezone(timezone.utc)
        except (KeyError, TypeError, ValueError):
            logger.warning('object %r has no lock metadata, treating it as expired', key)
            expires = EXPIRED
        return _Record(
            owner_token=metadata.get('owner', ''),
            expires=expires,
            generation=str(content['generation']),
        )

    async def _write(
        self, key: str, owner_token: str, ttl: int, generation: str,
    ) -> aiohttp.ClientResponse:
        expires = self._utcnow() + timedelta(milliseconds=ttl)
        metadata = dict(
            name=key,
            metadata={
                'owner': owner_token,
                'expires': expires.isoformat(),
            },
        )
        body = '\r\n'.join([
            f'--{BOUNDARY}',
            'Content-Type: application/json; charset=UTF-8',
            '',
            json.dumps(metadata),
            f'--{BOUNDARY}',
            'Content-Type: plain/text',
            '',
            'lock',
            '',
            f'--{BOUNDARY}--',
            '',
        ])
        headers = await self._headers()
        headers.update({
            'Accept': 'application/json',
            'Content-Length': str(len(body)),
            'Content-Type': f'multipart/related; boundary={BOUNDARY}',
        })
        resp = await self.session.post(
            url=f'{self.api_url}/upload/storage/v1/b/{self.bucket}/o',
            data=body.encode('utf8'),
            params=dict(uploadType='multipart', ifGenerationMatch=generation),
            headers=headers,
        )
        resp.release()
        return resp

    async def _delete(self, key: str, generation: str) -> aiohttp.ClientResponse:
        resp = await self.session.delete(
            url=f'{self.api_url}/storage/v1/b/{self.bucket}/o/{quote(key, safe="")}',
            params=dict(ifGenerationMatch=generation),
            headers=await self._headers(),
        )
        resp.release()
        return resp

    async def _get(self, key: str) -> aiohttp.ClientResponse:
        return await self.session.get(
            url=f'{self.api_url}/storage/v1/b/{self.bucket}/o/{quote(key, safe="")}',
            headers=await self._headers(),
        )
