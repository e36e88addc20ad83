"""
Storage adapters for raw uploads and HLS output.

Two backends share one interface:
- LocalStorage: a filesystem tree shared with the API (served under /uploads)
- S3Storage: an S3-compatible bucket accessed through boto3

All blocking I/O runs in a thread via asyncio.to_thread. Directory uploads are
staged and then swapped into place so a reader never sees a half-written
output directory and re-running an upload leaves exactly one master playlist.
"""

import asyncio
import logging
import mimetypes
import shutil
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional

import boto3
from boto3.exceptions import S3UploadFailedError
from botocore.exceptions import BotoCoreError, ClientError

from config import AWS_REGION, PUBLIC_UPLOADS_PREFIX, S3_BUCKET, S3_ENDPOINT_URL, STORAGE_MODE, UPLOADS_DIR
from pipeline.errors import (
    StorageError,
    StorageNotFoundError,
    StoragePermissionError,
    StorageTransientError,
)

logger = logging.getLogger(__name__)

MASTER_PLAYLIST_NAME = "master.m3u8"

CONTENT_TYPES = {
    ".m3u8": "application/vnd.apple.mpegurl",
    ".ts": "video/mp2t",
    ".mp4": "video/mp4",
}

# S3 error codes by category
_NOT_FOUND_CODES = frozenset(["404", "NoSuchKey", "NotFound", "NoSuchBucket"])
_PERMISSION_CODES = frozenset(
    ["403", "AccessDenied", "AllAccessDisabled", "InvalidAccessKeyId", "SignatureDoesNotMatch"]
)

# delete_objects accepts at most 1000 keys per request
_DELETE_BATCH_SIZE = 1000


def content_type_for(path: Path) -> str:
    """Content type for an uploaded file, based on its extension."""
    content_type = CONTENT_TYPES.get(path.suffix.lower())
    if content_type:
        return content_type
    guessed, _ = mimetypes.guess_type(path.name)
    return guessed or "application/octet-stream"


def _join_key(*parts: str) -> str:
    return "/".join(part.strip("/") for part in parts if part and part.strip("/"))


class StorageAdapter(ABC):
    """Common interface of the storage backends."""

    @abstractmethod
    async def fetch(self, key: str, destination: Path) -> Path:
        """
        Materialize the object at ``key`` as a local file.

        Parent directories of ``destination`` are created as needed.

        Raises:
            StorageNotFoundError: If the object does not exist
        """

    @abstractmethod
    async def put(self, local_path: Path, destination_prefix: str) -> str:
        """
        Upload a file or a whole directory.

        A file is stored as ``<prefix>/<file name>``; a directory replaces the
        contents of ``<prefix>``.

        Returns:
            The canonical location: the file itself, or the directory's master
            playlist
        """

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Delete one object; deleting a missing object is not an error."""

    @abstractmethod
    async def delete_prefix(self, prefix: str) -> int:
        """Delete everything under ``prefix``; returns the number of objects removed."""

    @abstractmethod
    async def exists(self, key: str) -> bool:
        pass

    @abstractmethod
    async def list_prefix(self, prefix: str) -> List[str]:
        pass


class LocalStorage(StorageAdapter):
    """Filesystem storage rooted at the uploads directory."""

    def __init__(self, root: Path = UPLOADS_DIR, public_prefix: str = PUBLIC_UPLOADS_PREFIX) -> None:
        self.root = Path(root).resolve()
        self.public_prefix = "/" + public_prefix.strip("/")

    def __repr__(self) -> str:
        return f"LocalStorage(root={str(self.root)!r})"

    def public_url(self, relative: str) -> str:
        return f"{self.public_prefix}/{relative.strip('/')}"

    def resolve(self, key: str) -> Path:
        """
        Map a storage key to a filesystem path.

        Accepted forms:
        - a public URL path (``/uploads/raw/<id>/original.mp4``)
        - an absolute filesystem path
        - a path relative to the root (``raw/<id>/original.mp4``)
        - a bare entity id, resolved to ``raw/<id>/original*``
        """
        if key.startswith(self.public_prefix + "/"):
            return self._within_root(key[len(self.public_prefix) + 1 :], key)

        path = Path(key)
        if path.is_absolute():
            return path

        candidate = self._within_root(key, key)
        if candidate.exists():
            return candidate

        raw_dir = self.root / "raw" / key
        if "/" not in key.strip("/") and raw_dir.is_dir():
            originals = sorted(p for p in raw_dir.iterdir() if p.is_file() and p.name.startswith("original"))
            if originals:
                return originals[0]
        return candidate

    def _within_root(self, relative: str, key: str) -> Path:
        path = (self.root / relative).resolve()
        try:
            path.relative_to(self.root)
        except ValueError:
            raise StoragePermissionError(f"Key escapes the storage root: {key}", key=key)
        return path

    async def fetch(self, key: str, destination: Path) -> Path:
        source = self.resolve(key)

        def _copy() -> Path:
            if not source.is_file():
                raise StorageNotFoundError(f"Source file not found: {key}", key=key)
            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(source, destination)
            return destination

        return await self._run(_copy, key)

    async def put(self, local_path: Path, destination_prefix: str) -> str:
        local_path = Path(local_path)
        prefix = destination_prefix.strip("/")
        target = self._within_root(prefix, destination_prefix)

        def _put() -> str:
            if not local_path.exists():
                raise StorageNotFoundError(f"Nothing to upload at {local_path}", key=str(local_path))
            if local_path.is_file():
                target.mkdir(parents=True, exist_ok=True)
                staged = target / f".{local_path.name}.{uuid.uuid4().hex[:8]}.tmp"
                shutil.copyfile(local_path, staged)
                staged.replace(target / local_path.name)
                return self.public_url(_join_key(prefix, local_path.name))

            self._swap_directory(local_path, target)
            return self.public_url(_join_key(prefix, MASTER_PLAYLIST_NAME))

        location = await self._run(_put, destination_prefix)
        logger.info(f"Stored {local_path} at {location}")
        return location

    def _swap_directory(self, source: Path, target: Path) -> None:
        token = uuid.uuid4().hex[:8]
        target.parent.mkdir(parents=True, exist_ok=True)
        staging = target.parent / f".{target.name}.staging-{token}"
        shutil.copytree(source, staging)
        try:
            if target.exists():
                retired = target.parent / f".{target.name}.old-{token}"
                target.rename(retired)
                staging.rename(target)
                shutil.rmtree(retired, ignore_errors=True)
            else:
                staging.rename(target)
        except OSError:
            shutil.rmtree(staging, ignore_errors=True)
            raise

    async def delete(self, key: str) -> None:
        path = self.resolve(key)

        def _delete() -> None:
            if path.is_dir():
                shutil.rmtree(path)
            else:
                path.unlink(missing_ok=True)

        await self._run(_delete, key)

    async def delete_prefix(self, prefix: str) -> int:
        path = self._within_root(prefix.strip("/"), prefix)

        def _delete() -> int:
            if not path.exists():
                return 0
            count = sum(1 for p in path.rglob("*") if p.is_file())
            shutil.rmtree(path)
            return count

        return await self._run(_delete, prefix)

    async def exists(self, key: str) -> bool:
        path = self.resolve(key)
        return await asyncio.to_thread(path.exists)

    async def list_prefix(self, prefix: str) -> List[str]:
        path = self._within_root(prefix.strip("/"), prefix)

        def _list() -> List[str]:
            if not path.is_dir():
                return []
            return sorted(p.relative_to(self.root).as_posix() for p in path.rglob("*") if p.is_file())

        return await self._run(_list, prefix)

    async def _run(self, func, key: str):
        try:
            return await asyncio.to_thread(func)
        except StorageError:
            raise
        except FileNotFoundError as e:
            raise StorageNotFoundError(f"Not found: {key} ({e})", key=key) from e
        except PermissionError as e:
            raise StoragePermissionError(f"Permission denied: {key} ({e})", key=key) from e
        except OSError as e:
            raise StorageTransientError(f"Filesystem error for {key}: {e}", key=key) from e


def map_s3_error(error: Exception, key: Optional[str] = None) -> StorageError:
    """Translate a boto3/botocore exception into the storage error taxonomy."""
    if isinstance(error, ClientError):
        code = str(error.response.get("Error", {}).get("Code", ""))
        status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        if code in _NOT_FOUND_CODES or status == 404:
            return StorageNotFoundError(f"Object not found: {key} ({code})", key=key)
        if code in _PERMISSION_CODES or status == 403:
            return StoragePermissionError(f"Access denied for {key} ({code})", key=key)
        return StorageTransientError(f"S3 error for {key}: {error}", key=key)
    return StorageTransientError(f"S3 request failed for {key}: {error}", key=key)


class S3Storage(StorageAdapter):
    """S3-compatible object storage."""

    def __init__(
        self,
        bucket: str,
        client=None,
        region: Optional[str] = None,
        endpoint_url: Optional[str] = None,
    ) -> None:
        self.bucket = bucket
        self._client = client or boto3.client("s3", region_name=region or None, endpoint_url=endpoint_url)

    def __repr__(self) -> str:
        return f"S3Storage(bucket={self.bucket!r})"

    async def fetch(self, key: str, destination: Path) -> Path:
        def _download() -> Path:
            destination.parent.mkdir(parents=True, exist_ok=True)
            self._client.download_file(self.bucket, key, str(destination))
            return destination

        return await self._call(_download, key)

    async def put(self, local_path: Path, destination_prefix: str) -> str:
        local_path = Path(local_path)
        prefix = destination_prefix.strip("/")

        if local_path.is_file():
            key = _join_key(prefix, local_path.name)
            await self._call(lambda: self._upload(local_path, key), key)
            logger.info(f"Uploaded {local_path} to s3://{self.bucket}/{key}")
            return key

        if not local_path.is_dir():
            raise StorageNotFoundError(f"Nothing to upload at {local_path}", key=str(local_path))

        files = sorted(p for p in local_path.rglob("*") if p.is_file())
        relative_names = [p.relative_to(local_path).as_posix() for p in files]
        if MASTER_PLAYLIST_NAME not in relative_names:
            raise StorageNotFoundError(
                f"No {MASTER_PLAYLIST_NAME} in {local_path}", key=str(local_path / MASTER_PLAYLIST_NAME)
            )

        staging_prefix = f"{prefix}.staging-{uuid.uuid4().hex[:12]}"
        try:
            for path, name in zip(files, relative_names):
                key = _join_key(staging_prefix, name)
                await self._call(lambda p=path, k=key: self._upload(p, k), key)

            staged = set(await self.list_prefix(staging_prefix))
            staged_master = _join_key(staging_prefix, MASTER_PLAYLIST_NAME)
            if staged_master not in staged:
                raise StorageTransientError(f"Staged master playlist missing: {staged_master}", key=staged_master)

            # Master playlist last so it only appears once its renditions are in place
            ordered = [n for n in relative_names if n != MASTER_PLAYLIST_NAME] + [MASTER_PLAYLIST_NAME]
            for name in ordered:
                source_key = _join_key(staging_prefix, name)
                dest_key = _join_key(prefix, name)
                await self._call(lambda s=source_key, d=dest_key: self._copy(s, d), dest_key)

            master_key = _join_key(prefix, MASTER_PLAYLIST_NAME)
            if not await self.exists(master_key):
                raise StorageTransientError(f"Master playlist not visible after copy: {master_key}", key=master_key)
        finally:
            try:
                await self.delete_prefix(staging_prefix)
            except StorageError as e:
                logger.warning(f"Failed to clean up staging prefix {staging_prefix}: {e}")

        logger.info(f"Uploaded {len(files)} files to s3://{self.bucket}/{prefix}")
        return master_key

    def _upload(self, path: Path, key: str) -> None:
        self._client.upload_file(
            str(path),
            self.bucket,
            key,
            ExtraArgs={"ContentType": content_type_for(path)},
        )

    def _copy(self, source_key: str, dest_key: str) -> None:
        self._client.copy_object(
            Bucket=self.bucket,
            Key=dest_key,
            CopySource={"Bucket": self.bucket, "Key": source_key},
        )

    async def delete(self, key: str) -> None:
        await self._call(lambda: self._client.delete_object(Bucket=self.bucket, Key=key), key)

    async def delete_prefix(self, prefix: str) -> int:
        keys = await self.list_prefix(prefix)
        for start in range(0, len(keys), _DELETE_BATCH_SIZE):
            batch = keys[start : start + _DELETE_BATCH_SIZE]
            await self._call(
                lambda b=batch: self._client.delete_objects(
                    Bucket=self.bucket,
                    Delete={"Objects": [{"Key": k} for k in b], "Quiet": True},
                ),
                prefix,
            )
        return len(keys)

    async def exists(self, key: str) -> bool:
        try:
            await self._call(lambda: self._client.head_object(Bucket=self.bucket, Key=key), key)
            return True
        except StorageNotFoundError:
            return False

    async def list_prefix(self, prefix: str) -> List[str]:
        normalized = prefix.strip("/") + "/"

        def _list() -> List[str]:
            keys: List[str] = []
            paginator = self._client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=normalized):
                keys.extend(obj["Key"] for obj in page.get("Contents", []))
            return keys

        return await self._call(_list, prefix)

    async def _call(self, func, key: str):
        try:
            return await asyncio.to_thread(func)
        except (ClientError, BotoCoreError, S3UploadFailedError) as e:
            raise map_s3_error(e, key) from e


def create_storage(
    mode: str = STORAGE_MODE,
    uploads_dir: Path = UPLOADS_DIR,
    bucket: str = S3_BUCKET,
    region: str = AWS_REGION,
    endpoint_url: Optional[str] = S3_ENDPOINT_URL,
) -> StorageAdapter:
    """
    Build the storage adapter for the configured mode.

    Raises:
        ValueError: On an unknown mode or incomplete S3 configuration
    """
    mode = (mode or "local").lower()
    if mode == "local":
        return LocalStorage(uploads_dir)
    if mode == "s3":
        if not bucket or not region:
            raise ValueError("S3 storage requires VSP_S3_BUCKET and VSP_AWS_REGION")
        return S3Storage(bucket, region=region, endpoint_url=endpoint_url)
    raise ValueError(f"Unknown storage mode: {mode!r} (expected 'local' or 's3')")
