"""File storage collaborator used to resolve uploaded documents."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Protocol
from urllib.parse import urlparse

import httpx

from ..errors import MalformedInputError


class FileStorage(Protocol):
    async def download(self, file_url: str) -> bytes: ...


class LocalFileStorage:
    """Read ``file://`` URLs and plain paths, optionally under a root directory."""

    def __init__(self, root: str | Path | None = None) -> None:
        self.root = Path(root) if root else None

    def _resolve(self, file_url: str) -> Path:
        parsed = urlparse(file_url)
        path = Path(parsed.path if parsed.scheme == "file" else file_url)
        if self.root is not None and not path.is_absolute():
            path = self.root / path
        return path

    async def download(self, file_url: str) -> bytes:
        path = self._resolve(file_url)
        if not path.is_file():
            raise MalformedInputError(f"File not found: {file_url}")
        return await asyncio.to_thread(path.read_bytes)


class HttpFileStorage:
    """Download files over HTTP(S); other URLs go to a local fallback."""

    def __init__(
        self,
        timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
        local: LocalFileStorage | None = None,
    ) -> None:
        self._timeout_seconds = timeout_seconds
        self._transport = transport
        self._local = local or LocalFileStorage()

    async def download(self, file_url: str) -> bytes:
        if urlparse(file_url).scheme not in ("http", "https"):
            return await self._local.download(file_url)
        async with httpx.AsyncClient(
            timeout=self._timeout_seconds,
            transport=self._transport,
            follow_redirects=True,
        ) as client:
            resp = await client.get(file_url)
            resp.raise_for_status()
            return resp.content
