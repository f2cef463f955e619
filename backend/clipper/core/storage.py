"""Object storage collaborator.

Two interchangeable backends sit behind :class:`ObjectStorage`:

* :class:`LocalStorage` keeps files under ``MEDIA_ROOT`` and addresses them
  with public URL paths (``/processed/audio/x.mp3``).  Always available.
* :class:`MinioStorage` keeps objects in a MinIO / S3 bucket and addresses
  them as ``/{bucket}/{object_name}``.

Remote ``http(s)://`` URLs are readable through :func:`download_url`
regardless of the configured backend.
"""

from __future__ import annotations

import asyncio
import io
import logging
import shutil
from abc import ABC, abstractmethod
from pathlib import Path

import httpx
from minio import Minio
from minio.error import S3Error

from clipper.core.config import Settings
from clipper.core.exceptions import StorageError

logger = logging.getLogger(__name__)


def is_remote_url(url: str) -> bool:
    return url.startswith(("http://", "https://"))


async def download_url(url: str, dest: Path, *, timeout: float = 60.0) -> Path:
    """Stream a remote ``http(s)`` resource to ``dest``."""
    try:
        async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
            async with client.stream("GET", url) as resp:
                resp.raise_for_status()
                with open(dest, "wb") as f:
                    async for chunk in resp.aiter_bytes():
                        f.write(chunk)
    except httpx.HTTPError as exc:
        raise StorageError(f"Download of {url} failed: {exc}") from exc
    return dest


class ObjectStorage(ABC):
    """Interface shared by the storage backends."""

    @abstractmethod
    async def put(
        self,
        data: bytes,
        key: str,
        content_type: str = "application/octet-stream",
    ) -> str:
        raise NotImplementedError

    @abstractmethod
    async def put_file(
        self,
        path: Path,
        key: str,
        content_type: str = "application/octet-stream",
    ) -> str:
        raise NotImplementedError

    @abstractmethod
    async def get(self, url: str) -> bytes:
        raise NotImplementedError

    async def fetch_to(self, url: str, dest: Path) -> Path:
        """Copy the object at ``url`` to the local path ``dest``."""
        if is_remote_url(url):
            return await download_url(url, dest)
        data = await self.get(url)
        await asyncio.to_thread(dest.write_bytes, data)
        return dest

    def resolve_local(self, url: str) -> Path | None:
        """Return the on-disk path for ``url`` when the backend has one."""
        return None


# ---------------------------------------------------------------------------
# Local filesystem
# ---------------------------------------------------------------------------

class LocalStorage(ObjectStorage):
    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).resolve()

    def _path_for(self, url_or_key: str) -> Path:
        relative = url_or_key.lstrip("/")
        path = (self.root / relative).resolve()
        if path != self.root and self.root not in path.parents:
            raise StorageError(f"Path escapes media root: {url_or_key}")
        return path

    def url_for(self, path: Path) -> str:
        return "/" + path.resolve().relative_to(self.root).as_posix()

    def resolve_local(self, url: str) -> Path | None:
        if is_remote_url(url):
            return None
        return self._path_for(url)

    async def put(
        self,
        data: bytes,
        key: str,
        content_type: str = "application/octet-stream",
    ) -> str:
        path = self._path_for(key)

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)

        await asyncio.to_thread(_write)
        logger.debug("Stored %d bytes at %s", len(data), path)
        return self.url_for(path)

    async def put_file(
        self,
        path: Path,
        key: str,
        content_type: str = "application/octet-stream",
    ) -> str:
        target = self._path_for(key)

        def _copy() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(path, target)

        try:
            await asyncio.to_thread(_copy)
        except OSError as exc:
            raise StorageError(f"Could not copy {path} to {target}: {exc}") from exc
        return self.url_for(target)

    async def get(self, url: str) -> bytes:
        path = self._path_for(url)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except OSError as exc:
            raise StorageError(f"Could not read {url}: {exc}") from exc


# ---------------------------------------------------------------------------
# MinIO / S3
# ---------------------------------------------------------------------------

class MinioStorage(ObjectStorage):
    def __init__(self, client: Minio, bucket: str) -> None:
        self.client = client
        self.bucket = bucket

    @staticmethod
    def _split(url: str) -> tuple[str, str]:
        parts = url.strip("/").split("/", 1)
        if len(parts) != 2:
            raise StorageError(f"Not a /bucket/object URL: {url}")
        return parts[0], parts[1]

    def _ensure_bucket(self) -> None:
        """Create the bucket if it does not already exist."""
        if not self.client.bucket_exists(self.bucket):
            self.client.make_bucket(self.bucket)

    async def put(
        self,
        data: bytes,
        key: str,
        content_type: str = "application/octet-stream",
    ) -> str:
        def _upload() -> None:
            self._ensure_bucket()
            self.client.put_object(
                bucket_name=self.bucket,
                object_name=key,
                data=io.BytesIO(data),
                length=len(data),
                content_type=content_type,
            )

        try:
            await asyncio.to_thread(_upload)
        except S3Error as exc:
            raise StorageError(f"Upload of {key} failed: {exc}") from exc
        return f"/{self.bucket}/{key}"

    async def put_file(
        self,
        path: Path,
        key: str,
        content_type: str = "application/octet-stream",
    ) -> str:
        def _upload() -> None:
            self._ensure_bucket()
            self.client.fput_object(self.bucket, key, str(path), content_type=content_type)

        try:
            await asyncio.to_thread(_upload)
        except S3Error as exc:
            raise StorageError(f"Upload of {key} failed: {exc}") from exc
        return f"/{self.bucket}/{key}"

    async def get(self, url: str) -> bytes:
        bucket, object_name = self._split(url)

        def _read() -> bytes:
            response = self.client.get_object(bucket, object_name)
            try:
                return response.read()
            finally:
                response.close()
                response.release_conn()

        try:
            return await asyncio.to_thread(_read)
        except S3Error as exc:
            raise StorageError(f"Could not read {url}: {exc}") from exc

    async def fetch_to(self, url: str, dest: Path) -> Path:
        if is_remote_url(url):
            return await download_url(url, dest)
        bucket, object_name = self._split(url)
        try:
            await asyncio.to_thread(self.client.fget_object, bucket, object_name, str(dest))
        except S3Error as exc:
            raise StorageError(f"Could not download {url}: {exc}") from exc
        return dest


def build_storage(settings: Settings) -> ObjectStorage:
    """Pick the storage backend from configuration.

    MinIO is used only when selected *and* fully configured; otherwise the
    local filesystem under ``MEDIA_ROOT`` is used.
    """
    if settings.STORAGE_BACKEND == "minio":
        if settings.MINIO_ENDPOINT and settings.MINIO_ACCESS_KEY and settings.MINIO_SECRET_KEY:
            client = Minio(
                endpoint=settings.MINIO_ENDPOINT,
                access_key=settings.MINIO_ACCESS_KEY,
                secret_key=settings.MINIO_SECRET_KEY,
                secure=settings.MINIO_USE_SSL,
            )
            logger.info("Using MinIO storage at %s", settings.MINIO_ENDPOINT)
            return MinioStorage(client, settings.MINIO_BUCKET_MEDIA)
        logger.warning("MinIO configuration incomplete, falling back to local storage")
    return LocalStorage(settings.MEDIA_ROOT)
