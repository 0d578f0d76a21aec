"""Durable storage for generated images and the downloader that feeds it.

Provider result URLs are short lived, so every successful task is copied
into storage we control before its URL is exposed to users.  Storage is a
directory served behind ``ASSET_PUBLIC_BASE_URL``.
"""

from __future__ import annotations

import asyncio
import io
import logging
from pathlib import Path
from typing import Protocol

import httpx
from PIL import Image, UnidentifiedImageError

from imagegen.config import settings
from imagegen.errors import StorageError
from imagegen.integrations.result_shapes import ResultAsset

logger = logging.getLogger(__name__)

MAX_ASSET_BYTES = 25 * 1024 * 1024

_FORMAT_TO_MIME = {
    "PNG": ("image/png", "png"),
    "JPEG": ("image/jpeg", "jpg"),
    "WEBP": ("image/webp", "webp"),
    "GIF": ("image/gif", "gif"),
}


class AssetStorage(Protocol):
    async def put(self, data: bytes, key: str, content_type: str) -> str: ...


def sniff_image(data: bytes) -> tuple[str, str]:
    """Return ``(content_type, extension)`` for image bytes.

    Raises ``StorageError`` if Pillow cannot identify the payload as an image.
    """
    if not data:
        raise StorageError("Downloaded asset is empty")
    try:
        with Image.open(io.BytesIO(data)) as img:
            img.verify()
            fmt = img.format or ""
    except (UnidentifiedImageError, OSError, SyntaxError) as exc:
        raise StorageError(f"Asset is not a valid image: {exc}") from exc
    return _FORMAT_TO_MIME.get(fmt.upper(), ("image/png", "png"))


class LocalAssetStorage:
    """Writes objects under ``root`` and returns their public URL."""

    def __init__(self, root: str | Path | None = None, public_base_url: str | None = None):
        self.root = Path(root or settings.ASSET_STORAGE_DIR)
        self.public_base_url = (public_base_url or settings.ASSET_PUBLIC_BASE_URL).rstrip("/")

    async def put(self, data: bytes, key: str, content_type: str) -> str:
        target = (self.root / key).resolve()
        if self.root.resolve() not in target.parents:
            raise StorageError(f"Refusing to write outside storage root: {key}")
        try:
            await asyncio.to_thread(self._write, target, data)
        except OSError as exc:
            raise StorageError(f"Failed to store {key}: {exc}") from exc
        logger.info("Stored asset %s (%d bytes, %s)", key, len(data), content_type)
        return f"{self.public_base_url}/{key}"

    @staticmethod
    def _write(target: Path, data: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_suffix(target.suffix + ".tmp")
        tmp.write_bytes(data)
        tmp.replace(target)


class AssetDownloader:
    """Fetches provider result assets into memory."""

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        timeout: float | None = None,
        max_bytes: int = MAX_ASSET_BYTES,
    ) -> None:
        self._http = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout or settings.ASSET_DOWNLOAD_TIMEOUT_SECONDS),
            follow_redirects=True,
        )
        self.max_bytes = max_bytes

    async def aclose(self) -> None:
        await self._http.aclose()

    async def fetch(self, asset: ResultAsset) -> bytes:
        if asset.is_inline:
            return asset.data or b""
        if not asset.url:
            raise StorageError("Result asset has neither a URL nor inline data")
        try:
            response = await self._http.get(asset.url)
        except httpx.HTTPError as exc:
            raise StorageError(f"Failed to download result: {exc}") from exc
        if response.status_code != 200:
            raise StorageError(f"Failed to fetch image: {response.status_code}")
        if len(response.content) > self.max_bytes:
            raise StorageError(f"Result exceeds {self.max_bytes} bytes")
        return response.content


async def persist_result_asset(
    asset: ResultAsset,
    task_id: str,
    downloader: AssetDownloader,
    storage: AssetStorage,
) -> str:
    """Download (or decode), validate and store an asset. Returns its durable URL."""
    data = await downloader.fetch(asset)
    content_type, ext = sniff_image(data)
    return await storage.put(data, f"generated/{task_id}.{ext}", content_type)
