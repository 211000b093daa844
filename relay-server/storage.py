"""Object store client: Supabase Storage over its REST API.

The relay only needs two operations from the store: write a blob once
under a path and get back a public URL, and read a blob back by path.
"""

import logging
from dataclasses import dataclass
from typing import Optional
from urllib.parse import quote

import httpx

logger = logging.getLogger("relay.storage")

DEFAULT_CONTENT_TYPE = "video/webm"


class StorageError(Exception):
    """The store refused or failed an operation."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ObjectNotFound(LookupError):
    pass


@dataclass
class StoredObject:
    data: bytes
    content_type: str = DEFAULT_CONTENT_TYPE

    @property
    def size(self) -> int:
        return len(self.data)


class ObjectStore:
    """Contract for artifact storage backends."""

    async def put(self, path: str, data: bytes, content_type: str = DEFAULT_CONTENT_TYPE) -> str:
        """Store bytes under path (never overwriting). Returns the public URL."""
        raise NotImplementedError

    async def get(self, path: str) -> StoredObject:
        """Return the object at path. Raises ObjectNotFound."""
        raise NotImplementedError

    def public_url(self, path: str) -> str:
        raise NotImplementedError


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or body)
    return str(body)


class SupabaseStore(ObjectStore):
    def __init__(self, client: httpx.AsyncClient, base_url: str, service_key: str, anon_key: str, bucket: str):
        self._client = client
        self._base_url = base_url.rstrip("/")
        self._service_key = service_key
        self._anon_key = anon_key
        self.bucket = bucket

    def _object_url(self, path: str, public: bool = False) -> str:
        scope = "object/public" if public else "object"
        return f"{self._base_url}/storage/v1/{scope}/{self.bucket}/{quote(path, safe='/')}"

    def public_url(self, path: str) -> str:
        return self._object_url(path, public=True)

    async def put(self, path: str, data: bytes, content_type: str = DEFAULT_CONTENT_TYPE) -> str:
        headers = {
            "Authorization": f"Bearer {self._service_key}",
            "apikey": self._service_key,
            "Content-Type": content_type,
            "x-upsert": "false",
        }
        try:
            response = await self._client.post(self._object_url(path), content=data, headers=headers, timeout=60.0)
        except httpx.TransportError as e:
            raise StorageError(f"store unreachable: {e}") from e

        if response.status_code >= 400:
            message = _error_message(response)
            logger.error(f"Store rejected write of {path} ({response.status_code}): {message}")
            raise StorageError(message, response.status_code)

        logger.info(f"Stored {path} ({len(data)} bytes) in bucket {self.bucket}")
        return self.public_url(path)

    async def get(self, path: str) -> StoredObject:
        # Playback reads go through the public endpoint with the anonymous key
        headers = {
            "Authorization": f"Bearer {self._anon_key}",
            "apikey": self._anon_key,
        }
        try:
            response = await self._client.get(self._object_url(path, public=True), headers=headers, timeout=60.0)
        except httpx.TransportError as e:
            raise StorageError(f"store unreachable: {e}") from e

        # Supabase reports missing objects as 400 or 404 depending on version
        if response.status_code in (400, 404):
            raise ObjectNotFound(path)
        if response.status_code >= 400:
            message = _error_message(response)
            logger.error(f"Store read of {path} failed ({response.status_code}): {message}")
            raise StorageError(message, response.status_code)

        return StoredObject(
            data=response.content,
            content_type=response.headers.get("content-type", DEFAULT_CONTENT_TYPE),
        )
