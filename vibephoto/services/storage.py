from __future__ import annotations

import mimetypes
from pathlib import Path
from typing import List
from urllib.parse import urlparse

import httpx

from vibephoto.config import Settings
from vibephoto.errors import StorageError
from vibephoto.utils.logging import get_logger


logger = get_logger('storage')

EXTENSIONS_BY_TYPE = {
    'image/png': '.png',
    'image/jpeg': '.jpg',
    'image/webp': '.webp',
    'video/mp4': '.mp4',
    'application/octet-stream': '.bin',
}


def _extension_for(url: str, content_type: str) -> str:
    suffix = Path(urlparse(url).path).suffix.lower()
    if suffix and len(suffix) <= 5:
        return suffix
    media_type = content_type.split(';', 1)[0].strip().lower()
    return EXTENSIONS_BY_TYPE.get(media_type) or mimetypes.guess_extension(media_type) or '.bin'


class MediaStorage:
    """Copies provider-hosted results (which expire) into permanent storage."""

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.settings = settings
        self.root = Path(settings.media_storage_path)
        self._client = httpx.AsyncClient(timeout=60.0, follow_redirects=True, transport=transport)

    async def close(self) -> None:
        await self._client.aclose()

    async def _download(self, url: str) -> tuple[bytes, str]:
        try:
            resp = await self._client.get(url)
        except httpx.HTTPError as exc:
            raise StorageError(f'download failed for {url}: {exc}') from exc
        if resp.status_code >= 400:
            raise StorageError(f'download failed for {url}: HTTP {resp.status_code}')
        content = resp.content
        if not content:
            raise StorageError(f'empty file at {url}')
        if len(content) > self.settings.max_download_bytes:
            raise StorageError(f'file too large at {url}: {len(content)} bytes')
        return content, resp.headers.get('content-type', 'application/octet-stream')

    async def persist(self, urls: List[str], kind: str, record_id: int, account_id: int) -> List[str]:
        if not urls:
            raise StorageError('nothing to store')
        target_dir = self.root / kind / str(account_id) / str(record_id)
        stored: List[str] = []
        try:
            target_dir.mkdir(parents=True, exist_ok=True)
            for index, url in enumerate(urls):
                content, content_type = await self._download(url)
                filename = f'{index}{_extension_for(url, content_type)}'
                (target_dir / filename).write_bytes(content)
                stored.append(f'{self.settings.media_base()}/{kind}/{account_id}/{record_id}/{filename}')
        except OSError as exc:
            raise StorageError(f'write failed under {target_dir}: {exc}') from exc
        logger.info('media_stored', kind=kind, record_id=record_id, files=len(stored))
        return stored

