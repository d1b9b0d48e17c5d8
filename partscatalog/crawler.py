"""品番の収集 (検索ページ巡回 + サイトマップ巡回).

取得戦略:
  1. プレフィックスごとに検索語バリエーションで検索結果ページを順に辿る (主戦略)
  2. 1 で 1 件以下しか取れなかった場合のみ、サイトマップを幅優先で辿る (フォールバック)

品番の重複は実行全体で共有する seen セットで排除する。
"""

from __future__ import annotations

import logging
import time
from collections import deque
from datetime import datetime, timezone
from urllib.parse import quote, urljoin, urlparse

from partscatalog.config import (
    CRAWL_DETAIL_CONCURRENCY,
    MAX_PAGES,
    MAX_SITEMAPS,
    REQUEST_INTERVAL_MAX,
    REQUEST_INTERVAL_MIN,
    ROBOTS_PATH,
    SEARCH_TERM_VARIANTS,
    SEARCH_URL,
    SITE_ORIGIN,
    SITEMAP_ENTRY_PATHS,
)
from partscatalog.errors import UpstreamError
from partscatalog.extract import extract_part_number_from_href, extract_parts, find_next_page_url
from partscatalog.fetch import CatalogClient, wait_interval
from partscatalog.models import BaseSnapshot, PartRecord
from partscatalog.normalize import is_excluded_part_number, normalize_prefixes
from partscatalog.sitemap import extract_locs, guess_name_from_url, is_sitemap_url, parse_robots_sitemaps

logger = logging.getLogger(__name__)


def build_search_url(term: str, search_url: str = SEARCH_URL) -> str:
    return f"{search_url}?search={quote(term, safe='')}"


class DiscoveryCrawler:
    """1回のクロール実行. 巡回済み URL と既出品番はインスタンス内で保持する."""

    def __init__(
        self,
        client: CatalogClient,
        *,
        search_url: str = SEARCH_URL,
        site_origin: str = SITE_ORIGIN,
        max_pages: int = MAX_PAGES,
        max_sitemaps: int = MAX_SITEMAPS,
        request_interval: tuple[float, float] = (REQUEST_INTERVAL_MIN, REQUEST_INTERVAL_MAX),
        detail_concurrency: int = CRAWL_DETAIL_CONCURRENCY,
    ):
        self._client = client
        self._search_url = search_url
        self._site_origin = site_origin.rstrip("/")
        self._max_pages = max_pages
        self._max_sitemaps = max_sitemaps
        self._interval = request_interval
        self._detail_concurrency = detail_concurrency

        self._seen: set[str] = set()
        self._visited_pages: set[str] = set()
        self._visited_sitemaps: set[str] = set()

    @property
    def visited_pages(self) -> set[str]:
        return set(self._visited_pages)

    @property
    def visited_sitemaps(self) -> set[str]:
        return set(self._visited_sitemaps)

    async def crawl(self, prefixes: list[str], limit: int, *, enrich_details: bool = False) -> list[PartRecord]:
        """品番レコードを収集し、品番順で返す."""
        prefixes = normalize_prefixes(prefixes)
        self._seen.clear()
        self._visited_pages.clear()
        self._visited_sitemaps.clear()
        start_time = time.time()

        items: list[PartRecord] = []
        await self._crawl_search(prefixes, limit, items)

        if len(items) <= 1 and len(items) < limit:
            logger.info("検索結果が %d 件のためサイトマップにフォールバック", len(items))
            await self._crawl_sitemaps(prefixes, limit, items)

        if enrich_details and items:
            await self._enrich_details(items)

        items.sort(key=lambda r: r.part_number)
        logger.info(
            "クロール完了: %d 件, ページ %d, サイトマップ %d, 所要時間 %.1f 秒",
            len(items), len(self._visited_pages), len(self._visited_sitemaps), time.time() - start_time,
        )
        return items

    def _accept(self, record: PartRecord, prefixes: list[str]) -> bool:
        part_number = record.part_number
        if not part_number or part_number in self._seen or is_excluded_part_number(part_number):
            return False
        if prefixes and not any(part_number.startswith(p) for p in prefixes):
            return False
        self._seen.add(part_number)
        return True

    # --- 検索ページ巡回 ---

    async def _crawl_search(self, prefixes: list[str], limit: int, items: list[PartRecord]) -> None:
        for prefix in prefixes:
            for variant in SEARCH_TERM_VARIANTS:
                if len(items) >= limit:
                    return
                await self._crawl_term(prefix, variant.format(prefix=prefix), limit, items)

    async def _crawl_term(self, prefix: str, term: str, limit: int, items: list[PartRecord]) -> None:
        page_url: str | None = build_search_url(term, self._search_url)
        page_count = 0

        while page_url and len(items) < limit and page_count < self._max_pages:
            if page_url in self._visited_pages:
                logger.info("巡回済みの URL に戻ったため停止: %s", page_url)
                return
            self._visited_pages.add(page_url)
            page_count += 1

            try:
                resp = await self._client.get_page(page_url)
            except UpstreamError as e:
                logger.error("検索ページ取得失敗: term=%r, error=%s", term, e)
                return

            if 300 <= resp.status_code < 400:
                location = resp.headers.get("location")
                if not location:
                    return
                redirect_url = urljoin(page_url, location)
                if "/search" not in urlparse(redirect_url).path:
                    # 商品詳細へのリダイレクト。次の検索語へ
                    logger.info("検索以外へのリダイレクト: term=%r -> %s", term, redirect_url)
                    return
                page_url = redirect_url
                continue

            if not resp.is_success:
                logger.error("検索ページ取得失敗: term=%r, status=%d", term, resp.status_code)
                return

            html = resp.text
            added = 0
            for record in extract_parts(html, page_url, [prefix]):
                if not self._accept(record, [prefix]):
                    continue
                items.append(record)
                added += 1
                if len(items) >= limit:
                    break
            logger.info("検索 term=%r page=%d: %d 件追加 (累計 %d 件)", term, page_count, added, len(items))

            page_url = find_next_page_url(html, page_url)
            if page_url and len(items) < limit:
                await wait_interval(self._interval)

        if page_count >= self._max_pages:
            logger.warning("ページ数上限 (%d) に達しました: term=%r", self._max_pages, term)

    # --- サイトマップ巡回 ---

    async def _sitemap_queue(self) -> deque[str]:
        queue = deque(f"{self._site_origin}{path}" for path in SITEMAP_ENTRY_PATHS)
        robots_txt = await self._client.fetch_text(f"{self._site_origin}{ROBOTS_PATH}", "text/plain,*/*;q=0.8")
        if robots_txt:
            queue.extend(parse_robots_sitemaps(robots_txt))
        return queue

    async def _crawl_sitemaps(self, prefixes: list[str], limit: int, items: list[PartRecord]) -> None:
        queue = await self._sitemap_queue()

        while queue and len(self._visited_sitemaps) < self._max_sitemaps and len(items) < limit:
            sitemap_url = queue.popleft()
            if sitemap_url in self._visited_sitemaps:
                continue
            self._visited_sitemaps.add(sitemap_url)

            xml = await self._client.fetch_text(sitemap_url, "application/xml,text/xml;q=0.9,*/*;q=0.8")
            if xml is None:
                continue

            added = 0
            for loc in extract_locs(xml):
                if is_sitemap_url(loc):
                    if loc not in self._visited_sitemaps:
                        queue.append(loc)
                    continue

                part_number = extract_part_number_from_href(loc, prefixes)
                if not part_number:
                    continue
                record = PartRecord(part_number=part_number, name=guess_name_from_url(loc), url=loc)
                if not self._accept(record, prefixes):
                    continue
                items.append(record)
                added += 1
                if len(items) >= limit:
                    break
            logger.info("サイトマップ %s: %d 件追加 (累計 %d 件)", sitemap_url, added, len(items))

        if len(self._visited_sitemaps) >= self._max_sitemaps:
            logger.warning("サイトマップ数上限 (%d) に達しました", self._max_sitemaps)

    # --- 詳細ページで補完 ---

    async def _enrich_details(self, items: list[PartRecord]) -> None:
        targets = [item for item in items if item.url]
        metas = await self._client.fetch_details([item.url for item in targets], self._detail_concurrency)
        for item, meta in zip(targets, metas):
            if not meta.fetched:
                continue
            item.availability = meta.availability
            if meta.price:
                item.price = meta.price


def build_base_snapshot(prefixes: list[str], limit: int, items: list[PartRecord]) -> BaseSnapshot:
    return BaseSnapshot(
        prefixes=list(prefixes),
        limit=limit,
        generated_at=datetime.now(timezone.utc).isoformat(),
        items=sorted(items, key=lambda r: r.part_number),
    )
