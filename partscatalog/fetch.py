"""対象サイトへの HTTP アクセス.

httpx.AsyncClient を1回の実行で共有する。詳細ページの取得結果は
DetailCache に URL 単位でメモ化し、実行終了 (aclose) で破棄する。
"""

from __future__ import annotations

import asyncio
import gzip
import logging
import random

import httpx

from partscatalog.config import (
    REQUEST_INTERVAL_MAX,
    REQUEST_INTERVAL_MIN,
    REQUEST_TIMEOUT,
    USER_AGENT,
)
from partscatalog.errors import UpstreamError
from partscatalog.extract import parse_detail_page
from partscatalog.models import DetailMeta

logger = logging.getLogger(__name__)

_GZIP_MAGIC = b"\x1f\x8b"


async def wait_interval(interval: tuple[float, float] = (REQUEST_INTERVAL_MIN, REQUEST_INTERVAL_MAX)) -> None:
    """リクエスト間隔をランダムで待機する."""
    low, high = interval
    await asyncio.sleep(random.uniform(low, high) if high > 0 else 0)


class DetailCache:
    """詳細ページの取得結果を URL 単位で保持する (1回の実行内のみ)."""

    def __init__(self) -> None:
        self._entries: dict[str, DetailMeta] = {}

    def get(self, url: str) -> DetailMeta | None:
        return self._entries.get(url)

    def put(self, url: str, meta: DetailMeta) -> None:
        self._entries[url] = meta

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


def _decode_body(response: httpx.Response) -> str:
    """gzip 圧縮のまま届いた本文 (sitemap.xml.gz 等) は展開する."""
    content = response.content
    if content[:2] == _GZIP_MAGIC:
        try:
            return gzip.decompress(content).decode("utf-8", errors="replace")
        except (OSError, EOFError) as e:
            logger.warning("gzip 展開失敗、そのまま扱う: url=%s, error=%s", response.url, e)
    return response.text


class CatalogClient:
    """対象サイト用の非同期 HTTP クライアント."""

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        cache: DetailCache | None = None,
        user_agent: str = USER_AGENT,
        timeout: float = REQUEST_TIMEOUT,
    ):
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._user_agent = user_agent
        self.cache = cache if cache is not None else DetailCache()

    async def __aenter__(self) -> CatalogClient:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        self.cache.clear()
        if self._owns_client:
            await self._client.aclose()

    def _headers(self, accept: str) -> dict[str, str]:
        return {"User-Agent": self._user_agent, "Accept": accept}

    async def get_page(self, url: str) -> httpx.Response:
        """リダイレクトを追わずにページを取得する.

        Raises:
            UpstreamError: 通信エラー
        """
        try:
            return await self._client.get(url, headers=self._headers("text/html"), follow_redirects=False)
        except httpx.HTTPError as e:
            raise UpstreamError(f"Upstream request failed: {url}: {e}") from e

    async def fetch_text(self, url: str, accept: str) -> str | None:
        """テキストを取得する. 失敗時は None."""
        try:
            resp = await self._client.get(url, headers=self._headers(accept), follow_redirects=True)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("取得失敗: url=%s, error=%s", url, e)
            return None
        return _decode_body(resp)

    async def fetch_detail(self, url: str) -> DetailMeta:
        """詳細ページの価格・在庫を取得する. 失敗時は価格なし・unknown."""
        cached = self.cache.get(url)
        if cached is not None:
            return cached

        try:
            resp = await self._client.get(url, headers=self._headers("text/html"), follow_redirects=True)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("詳細ページ取得失敗: url=%s, error=%s", url, e)
            return DetailMeta(fetched=False)

        meta = parse_detail_page(resp.text)
        self.cache.put(url, meta)
        return meta

    async def fetch_details(self, urls: list[str], concurrency: int) -> list[DetailMeta]:
        """詳細ページを concurrency 件ずつ並行取得する.

        チャンク内は同時に投げ、前のチャンクが全て終わってから次へ進む。
        結果は urls と同じ順序。
        """
        results: list[DetailMeta] = []
        size = max(1, concurrency)
        for start in range(0, len(urls), size):
            chunk = urls[start:start + size]
            results.extend(await asyncio.gather(*(self.fetch_detail(url) for url in chunk)))
        return results
