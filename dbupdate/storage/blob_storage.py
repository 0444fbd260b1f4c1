"""
Blob storage for page snapshots, collection exports, cached report queries and logs.

Blobs live in named containers. Snapshot blobs are named by content hash and
carry metadata:
    urls: JSON array of every URL whose content produced the hash
    date: ISO upload date

Backends:
- FileBlobStorage: files under a root directory, metadata in a .meta.json sidecar
- GridFSBlobStorage: one GridFS bucket per container
"""

import asyncio
import json
import os
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from gridfs import AsyncGridFSBucket
from gridfs.errors import NoFile

from dbupdate.utils.config import get_project_root, get_settings
from dbupdate.utils.logging import get_logger

logger = get_logger(__name__)

META_SUFFIX = ".meta.json"


def _write_atomic(path: Path, content: bytes) -> None:
    """Write through a temp file so readers never see a partial file."""
    tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
    tmp_path.write_bytes(content)
    os.replace(tmp_path, path)


class BlobExistsError(Exception):
    """Upload target already exists and overwrite was not requested."""

    def __init__(self, container: str, name: str):
        super().__init__(f"Blob {container}/{name} already exists")
        self.container = container
        self.name = name


class BlobNotFoundError(Exception):
    """Blob does not exist."""

    def __init__(self, container: str, name: str):
        super().__init__(f"Blob {container}/{name} not found")
        self.container = container
        self.name = name


@dataclass
class BlobProperties:
    """Blob metadata and modification time."""

    name: str
    metadata: dict[str, str] = field(default_factory=dict)
    last_modified: datetime | None = None
    size: int = 0


def _encode(data: str | bytes) -> bytes:
    return data.encode("utf-8") if isinstance(data, str) else data


class BlobClient(ABC):
    """Operations on a single blob."""

    def __init__(self, container: str, name: str):
        self.container = container
        self.name = name

    @abstractmethod
    async def exists(self) -> bool: ...

    @abstractmethod
    async def get_properties(self) -> BlobProperties:
        """Raises BlobNotFoundError if the blob does not exist."""

    @abstractmethod
    async def set_metadata(self, metadata: dict[str, str]) -> None:
        """Replace the blob's metadata."""

    @abstractmethod
    async def upload(
        self,
        data: str | bytes,
        metadata: dict[str, str] | None = None,
        overwrite: bool = False,
    ) -> None:
        """Upload content.

        Raises:
            BlobExistsError: If the blob exists and overwrite is False.
        """

    @abstractmethod
    async def append(self, text: str) -> None:
        """Append text, creating the blob if needed."""

    @abstractmethod
    async def download(self) -> bytes:
        """Raises BlobNotFoundError if the blob does not exist."""

    @abstractmethod
    async def delete(self) -> bool:
        """Delete the blob. Returns False if it did not exist."""

    async def download_text(self) -> str:
        return (await self.download()).decode("utf-8")

    async def download_json(self) -> Any:
        return json.loads(await self.download_text())


class BlobContainer(ABC):
    """A named group of blobs."""

    def __init__(self, name: str):
        self.name = name

    @abstractmethod
    def blob(self, name: str) -> BlobClient: ...

    @abstractmethod
    async def list_blobs(self, prefix: str = "") -> list[str]: ...


class BlobStorage(ABC):
    """Entry point: containers by name."""

    def __init__(self) -> None:
        self._containers: dict[str, BlobContainer] = {}

    def container(self, name: str) -> BlobContainer:
        if name not in self._containers:
            self._containers[name] = self._create_container(name)
        return self._containers[name]

    @abstractmethod
    def _create_container(self, name: str) -> BlobContainer: ...


# ============================================================
# Filesystem backend
# ============================================================


class FileBlobClient(BlobClient):
    """Blob stored as a file, with metadata in a sidecar JSON file."""

    def __init__(self, container: str, name: str, root: Path):
        super().__init__(container, name)
        self.path = root / name
        self.meta_path = root / f"{name}{META_SUFFIX}"

    def _read_meta(self) -> dict[str, Any]:
        if not self.meta_path.exists():
            return {}
        return json.loads(self.meta_path.read_text(encoding="utf-8"))

    def _write_meta(self, metadata: dict[str, str]) -> None:
        _write_atomic(
            self.meta_path,
            json.dumps(
                {
                    "metadata": metadata,
                    "last_modified": datetime.now(UTC).isoformat(),
                },
                ensure_ascii=False,
            ).encode("utf-8"),
        )

    async def exists(self) -> bool:
        return await asyncio.to_thread(self.path.exists)

    async def get_properties(self) -> BlobProperties:
        def _properties() -> BlobProperties:
            if not self.path.exists():
                raise BlobNotFoundError(self.container, self.name)
            meta = self._read_meta()
            last_modified = meta.get("last_modified")
            return BlobProperties(
                name=self.name,
                metadata=meta.get("metadata", {}),
                last_modified=(
                    datetime.fromisoformat(last_modified)
                    if last_modified
                    else datetime.fromtimestamp(self.path.stat().st_mtime, UTC)
                ),
                size=self.path.stat().st_size,
            )

        return await asyncio.to_thread(_properties)

    async def set_metadata(self, metadata: dict[str, str]) -> None:
        def _set() -> None:
            if not self.path.exists():
                raise BlobNotFoundError(self.container, self.name)
            self._write_meta(metadata)

        await asyncio.to_thread(_set)

    async def upload(
        self,
        data: str | bytes,
        metadata: dict[str, str] | None = None,
        overwrite: bool = False,
    ) -> None:
        content = _encode(data)

        def _upload() -> None:
            if not overwrite and self.path.exists():
                raise BlobExistsError(self.container, self.name)

            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_name(f".{self.path.name}.{uuid.uuid4().hex}.tmp")
            tmp_path.write_bytes(content)
            try:
                # Metadata is in place before the content becomes visible
                self._write_meta(metadata or {})
                if overwrite:
                    os.replace(tmp_path, self.path)
                else:
                    # link() fails atomically when another upload won the race
                    os.link(tmp_path, self.path)
            except FileExistsError as e:
                raise BlobExistsError(self.container, self.name) from e
            finally:
                tmp_path.unlink(missing_ok=True)

        await asyncio.to_thread(_upload)

    async def append(self, text: str) -> None:
        def _append() -> None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            created = not self.path.exists()
            with open(self.path, "ab") as f:
                f.write(_encode(text))
            if created:
                self._write_meta({})

        await asyncio.to_thread(_append)

    async def download(self) -> bytes:
        def _download() -> bytes:
            try:
                return self.path.read_bytes()
            except FileNotFoundError as e:
                raise BlobNotFoundError(self.container, self.name) from e

        return await asyncio.to_thread(_download)

    async def delete(self) -> bool:
        def _delete() -> bool:
            self.meta_path.unlink(missing_ok=True)
            try:
                self.path.unlink()
            except FileNotFoundError:
                return False
            return True

        return await asyncio.to_thread(_delete)


class FileBlobContainer(BlobContainer):
    def __init__(self, name: str, root: Path):
        super().__init__(name)
        self.root = root

    def blob(self, name: str) -> FileBlobClient:
        return FileBlobClient(self.name, name, self.root)

    async def list_blobs(self, prefix: str = "") -> list[str]:
        def _list() -> list[str]:
            if not self.root.exists():
                return []
            names = []
            for dirpath, _, filenames in os.walk(self.root):
                for filename in filenames:
                    if filename.endswith(META_SUFFIX) or filename.endswith(".tmp"):
                        continue
                    path = Path(dirpath) / filename
                    name = path.relative_to(self.root).as_posix()
                    if name.startswith(prefix):
                        names.append(name)
            return sorted(names)

        return await asyncio.to_thread(_list)


class FileBlobStorage(BlobStorage):
    """Containers are directories under `root_dir`."""

    def __init__(self, root_dir: str | Path):
        super().__init__()
        self.root_dir = Path(root_dir)

    def _create_container(self, name: str) -> FileBlobContainer:
        return FileBlobContainer(name, self.root_dir / name)


# ============================================================
# GridFS backend
# ============================================================


class GridFSBlobClient(BlobClient):
    """Blob stored as a GridFS file; metadata lives in the file document.

    GridFS has no unique filename index: the exists check and the upload are
    two steps, so writers of one blob must be serialized by the caller.
    """

    def __init__(self, container: str, name: str, bucket: AsyncGridFSBucket, files):
        super().__init__(container, name)
        self._bucket = bucket
        self._files = files

    async def _file_doc(self) -> dict[str, Any] | None:
        return await self._files.find_one(
            {"filename": self.name},
            sort=[("uploadDate", -1)],
        )

    async def exists(self) -> bool:
        return await self._file_doc() is not None

    async def get_properties(self) -> BlobProperties:
        doc = await self._file_doc()
        if doc is None:
            raise BlobNotFoundError(self.container, self.name)
        return BlobProperties(
            name=self.name,
            metadata=dict(doc.get("metadata") or {}),
            last_modified=doc.get("uploadDate"),
            size=doc.get("length", 0),
        )

    async def set_metadata(self, metadata: dict[str, str]) -> None:
        doc = await self._file_doc()
        if doc is None:
            raise BlobNotFoundError(self.container, self.name)
        await self._files.update_one(
            {"_id": doc["_id"]},
            {"$set": {"metadata": metadata}},
        )

    async def upload(
        self,
        data: str | bytes,
        metadata: dict[str, str] | None = None,
        overwrite: bool = False,
    ) -> None:
        existing = await self._file_doc()
        if existing is not None and not overwrite:
            raise BlobExistsError(self.container, self.name)

        await self._bucket.upload_from_stream(
            self.name,
            _encode(data),
            metadata=metadata or {},
        )

        if existing is not None:
            await self._bucket.delete(existing["_id"])

    async def append(self, text: str) -> None:
        doc = await self._file_doc()
        if doc is None:
            await self.upload(text)
            return

        content = await self.download() + _encode(text)
        await self._bucket.upload_from_stream(
            self.name,
            content,
            metadata=doc.get("metadata") or {},
        )
        await self._bucket.delete(doc["_id"])

    async def download(self) -> bytes:
        try:
            grid_out = await self._bucket.open_download_stream_by_name(self.name)
        except NoFile as e:
            raise BlobNotFoundError(self.container, self.name) from e
        return await grid_out.read()

    async def delete(self) -> bool:
        deleted = False
        async for grid_out in self._bucket.find({"filename": self.name}):
            await self._bucket.delete(grid_out._id)
            deleted = True
        return deleted


class GridFSBlobContainer(BlobContainer):
    def __init__(self, name: str, db):
        super().__init__(name)
        self._bucket = AsyncGridFSBucket(db, bucket_name=name)
        self._files = db[f"{name}.files"]

    def blob(self, name: str) -> GridFSBlobClient:
        return GridFSBlobClient(self.name, name, self._bucket, self._files)

    async def list_blobs(self, prefix: str = "") -> list[str]:
        names = await self._files.distinct("filename")
        return sorted(name for name in names if name.startswith(prefix))


class GridFSBlobStorage(BlobStorage):
    """Containers are GridFS buckets on the application database."""

    def __init__(self, db):
        """
        Args:
            db: pymongo AsyncDatabase.
        """
        super().__init__()
        self._db = db

    def _create_container(self, name: str) -> GridFSBlobContainer:
        return GridFSBlobContainer(name, self._db)


# Global blob storage instance
_storage: BlobStorage | None = None


async def get_blob_storage() -> BlobStorage:
    """Get the global blob storage instance for the configured backend.

    Returns:
        BlobStorage instance.
    """
    global _storage
    if _storage is None:
        settings = get_settings()
        if settings.blob.backend == "gridfs":
            from dbupdate.storage.database import get_database

            db = await get_database()
            _storage = GridFSBlobStorage(db.db)
        elif settings.blob.backend == "file":
            root = Path(settings.blob.root_dir)
            if not root.is_absolute():
                root = get_project_root() / root
            _storage = FileBlobStorage(root)
        else:
            raise ValueError(f"Unknown blob backend: {settings.blob.backend}")

        logger.info("Blob storage ready", backend=settings.blob.backend)
    return _storage


def reset_blob_storage() -> None:
    """Drop the global instance (tests, backend changes)."""
    global _storage
    _storage = None
