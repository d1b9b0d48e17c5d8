"""fetch モジュールのテスト."""

import asyncio
from pathlib import Path

import httpx
import pytest

from partscatalog.fetch import CatalogClient, DetailCache
from partscatalog.models import IN_STOCK, OUT_OF_STOCK

FIXTURES_DIR = Path(__file__).parent / "fixtures"
IN_STOCK_PAGE = (FIXTURES_DIR / "detail_in_stock.html").read_text(encoding="utf-8")
SOLDOUT_PAGE = (FIXTURES_DIR / "detail_soldout.html").read_text(encoding="utf-8")


class SlowSite:
    """応答を遅らせ、同時接続数と開始/終了の順序を記録するサイト."""

    def __init__(self, delays: dict[str, float] | None = None):
        self.delays = delays or {}
        self.in_flight = 0
        self.peak = 0
        self.events: list[tuple[str, str]] = []
        self.requested: list[str] = []

    async def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.requested.append(path)
        self.events.append(("start", path))
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            await asyncio.sleep(self.delays.get(path, 0.01))
        finally:
            self.in_flight -= 1
            self.events.append(("end", path))
        if path.startswith("/fail"):
            return httpx.Response(500)
        page = SOLDOUT_PAGE if path.endswith("-soldout") else IN_STOCK_PAGE
        return httpx.Response(200, text=page)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


def _urls(*paths: str) -> list[str]:
    return [f"https://shop.test{path}" for path in paths]


class TestFetchDetails:
    """fetch_details のテスト."""

    @pytest.mark.asyncio
    async def test_concurrency_limit(self):
        site = SlowSite()
        async with CatalogClient(site.client()) as client:
            await client.fetch_details(_urls(*(f"/p/{i}" for i in range(7))), concurrency=3)

        assert 1 < site.peak <= 3
        assert len(site.requested) == 7

    @pytest.mark.asyncio
    async def test_next_chunk_waits_for_previous(self):
        """前のチャンクが全て終わるまで次のチャンクを開始しないこと."""
        site = SlowSite(delays={"/p/0": 0.05, "/p/1": 0.01})
        async with CatalogClient(site.client()) as client:
            await client.fetch_details(_urls("/p/0", "/p/1", "/p/2", "/p/3"), concurrency=2)

        first_chunk_end = max(i for i, (kind, path) in enumerate(site.events) if kind == "end" and path in ("/p/0", "/p/1"))
        second_chunk_start = min(
            i for i, (kind, path) in enumerate(site.events) if kind == "start" and path in ("/p/2", "/p/3")
        )
        assert first_chunk_end < second_chunk_start

    @pytest.mark.asyncio
    async def test_results_keep_input_order(self):
        """遅い応答が先にあっても結果は入力順であること."""
        site = SlowSite(delays={"/p/a-soldout": 0.05, "/p/b": 0.0})
        async with CatalogClient(site.client()) as client:
            metas = await client.fetch_details(_urls("/p/a-soldout", "/p/b", "/fail/c"), concurrency=3)

        assert [m.availability.status for m in metas[:2]] == [OUT_OF_STOCK, IN_STOCK]
        assert metas[0].price == "49,90 €"
        assert metas[1].price == "1.299,00 €"
        assert metas[2].fetched is False

    @pytest.mark.asyncio
    async def test_zero_concurrency_runs_sequentially(self):
        site = SlowSite()
        async with CatalogClient(site.client()) as client:
            metas = await client.fetch_details(_urls("/p/0", "/p/1"), concurrency=0)

        assert site.peak == 1
        assert len(metas) == 2

    @pytest.mark.asyncio
    async def test_empty(self):
        site = SlowSite()
        async with CatalogClient(site.client()) as client:
            assert await client.fetch_details([], concurrency=4) == []
        assert site.requested == []


class TestDetailCache:
    """詳細ページのキャッシュのテスト."""

    @pytest.mark.asyncio
    async def test_repeated_url_fetched_once(self):
        site = SlowSite()
        async with CatalogClient(site.client()) as client:
            await client.fetch_detail("https://shop.test/p/1")
            meta = await client.fetch_detail("https://shop.test/p/1")

            assert meta.price == "1.299,00 €"
            assert len(client.cache) == 1
        assert site.requested == ["/p/1"]

    @pytest.mark.asyncio
    async def test_failure_not_cached(self):
        site = SlowSite()
        async with CatalogClient(site.client()) as client:
            first = await client.fetch_detail("https://shop.test/fail/1")
            second = await client.fetch_detail("https://shop.test/fail/1")

            assert not first.fetched
            assert not second.fetched
            assert len(client.cache) == 0
        assert site.requested == ["/fail/1", "/fail/1"]

    @pytest.mark.asyncio
    async def test_aclose_clears_cache_and_keeps_injected_client(self):
        site = SlowSite()
        http_client = site.client()
        cache = DetailCache()
        client = CatalogClient(http_client, cache=cache)
        await client.fetch_detail("https://shop.test/p/1")
        assert len(cache) == 1

        await client.aclose()

        assert len(cache) == 0
        assert http_client.is_closed is False
        await http_client.aclose()

    @pytest.mark.asyncio
    async def test_owned_client_closed(self):
        client = CatalogClient()
        await client.aclose()

        assert client._client.is_closed
