"""価格・在庫の更新.

選定モード:
  - 直接指定: 品番リストを正規化・重複排除し、上限件数で切り詰めて無条件に取得する
    (表示直前の品目を更新する用途)
  - ローテーション: 永続カーソルから品目リストを循環的に走査し、価格エントリが
    無いか古い品目を batch_size 件まで選ぶ。次回は最後に走査した品目の直後から再開する

取得結果は価格スナップショットの該当エントリを無条件に置き換える (unknown でも上書き)。
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone

from partscatalog.config import (
    MAX_DIRECT_REFRESH,
    MAX_PRICE_BATCH,
    PRICE_FETCH_CONCURRENCY,
    PRICE_STALE_DAYS,
)
from partscatalog.fetch import CatalogClient
from partscatalog.models import BaseSnapshot, CursorState, PartRecord, PriceEntry, PriceSnapshot
from partscatalog.normalize import filter_snapshot_items, normalize_part_number
from partscatalog.store import SnapshotStore

logger = logging.getLogger(__name__)


@dataclass
class RefreshResult:
    updated: int
    priced_count: int
    entries: dict[str, PriceEntry] = field(default_factory=dict)
    next_cursor: int | None = None  # ローテーション時のみ

    def to_dict(self) -> dict:
        data = {
            "updated": self.updated,
            "pricedCount": self.priced_count,
            "entries": {pn: entry.to_dict() for pn, entry in self.entries.items()},
        }
        if self.next_cursor is not None:
            data["nextCursor"] = self.next_cursor
        return data


def parse_timestamp(value: str) -> datetime | None:
    """ISO 8601 を aware datetime に. 読めなければ None."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def is_stale(entry: PriceEntry | None, now: datetime, stale_after: timedelta) -> bool:
    if entry is None:
        return True
    updated_at = parse_timestamp(entry.updated_at)
    if updated_at is None:
        return True
    return now - updated_at > stale_after


def select_rotating_batch(
    items: list[PartRecord],
    prices: dict[str, PriceEntry],
    cursor: int,
    batch_size: int,
    now: datetime,
    stale_after: timedelta,
) -> tuple[list[int], int]:
    """カーソル位置から循環的に走査し、更新対象のインデックスと次のカーソルを返す.

    新しいエントリは飛ばすが走査距離には含める。次のカーソルは最後に走査した
    位置の直後 (1周しても埋まらなければ元の位置に戻る)。
    """
    total = len(items)
    if total == 0:
        return [], 0

    start = cursor % total
    selected: list[int] = []
    scanned = 0
    while scanned < total and len(selected) < batch_size:
        idx = (start + scanned) % total
        scanned += 1
        if is_stale(prices.get(items[idx].part_number), now, stale_after):
            selected.append(idx)

    return selected, (start + scanned) % total


def merge_prices(base: BaseSnapshot, prices: PriceSnapshot, generated_at: str) -> BaseSnapshot:
    """ベーススナップショットに価格・在庫を重ねたカタログを作る.

    価格があれば価格と在庫を、在庫だけなら在庫を差し替える。
    """
    merged: list[PartRecord] = []
    for item in base.items:
        entry = prices.prices.get(item.part_number)
        if entry is not None and entry.price:
            merged.append(replace(item, price=entry.price, availability=entry.availability or item.availability))
        elif entry is not None and entry.availability is not None:
            merged.append(replace(item, availability=entry.availability))
        else:
            merged.append(item)
    return BaseSnapshot(prefixes=base.prefixes, limit=base.limit, generated_at=generated_at, items=merged)


def unique_part_numbers(part_numbers: Iterable[str], limit: int) -> list[str]:
    """正規化・重複排除して先頭 limit 件に切り詰める (超過分はエラーにしない)."""
    unique = dict.fromkeys(pn for pn in (normalize_part_number(raw) for raw in part_numbers) if pn)
    return list(unique)[:limit]


class EnrichmentRefresher:
    """詳細ページを取得して価格スナップショットを更新する."""

    def __init__(
        self,
        client: CatalogClient,
        store: SnapshotStore,
        *,
        concurrency: int = PRICE_FETCH_CONCURRENCY,
        stale_after: timedelta = timedelta(days=PRICE_STALE_DAYS),
        max_direct: int = MAX_DIRECT_REFRESH,
        clock: Callable[[], datetime] | None = None,
    ):
        self._client = client
        self._store = store
        self._concurrency = concurrency
        self._stale_after = stale_after
        self._max_direct = max_direct
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _catalog(self) -> tuple[BaseSnapshot, list[PartRecord]]:
        base = self._store.read_base()
        return base, filter_snapshot_items(base.items, base.prefixes)

    async def _fetch_entries(self, targets: list[PartRecord], updated_at: str) -> dict[str, PriceEntry]:
        targets = [t for t in targets if t.url and t.part_number]
        start_time = time.time()
        metas = await self._client.fetch_details([t.url for t in targets], self._concurrency)

        entries: dict[str, PriceEntry] = {}
        for target, meta in zip(targets, metas):
            entries[target.part_number] = PriceEntry(
                updated_at=updated_at,
                price=meta.price,
                availability=meta.availability,
            )
        failed = sum(1 for meta in metas if not meta.fetched)
        logger.info(
            "詳細ページ取得: %d 件 (失敗 %d 件), 所要時間 %.1f 秒",
            len(entries), failed, time.time() - start_time,
        )
        return entries

    async def refresh_direct(self, part_numbers: Iterable[str]) -> RefreshResult:
        """指定品番を無条件に更新する."""
        requested = unique_part_numbers(part_numbers, self._max_direct)
        _, items = self._catalog()
        by_part_number = {item.part_number: item for item in items}
        targets = [by_part_number[pn] for pn in requested if pn in by_part_number]

        prices = self._store.read_prices()
        if not targets:
            logger.info("更新対象なし (指定 %d 件)", len(requested))
            return RefreshResult(updated=0, priced_count=prices.count)

        updated_at = self._clock().isoformat()
        entries = await self._fetch_entries(targets, updated_at)

        prices.prices.update(entries)
        prices.updated_at = updated_at
        self._store.write_prices(prices)
        return RefreshResult(updated=len(entries), priced_count=prices.count, entries=entries)

    async def refresh_batch(self, batch_size: int) -> RefreshResult:
        """カーソル位置から古い品目を batch_size 件更新する."""
        batch_size = max(1, min(batch_size, MAX_PRICE_BATCH))
        base, items = self._catalog()
        prices = self._store.read_prices()
        if not items:
            return RefreshResult(updated=0, priced_count=prices.count, next_cursor=0)

        state = self._store.read_cursor()
        now = self._clock()
        selected, next_cursor = select_rotating_batch(
            items, prices.prices, state.cursor, batch_size, now, self._stale_after,
        )
        logger.info(
            "ローテーション更新: total=%d batch=%d cursor=%d 対象=%d 件",
            len(items), batch_size, state.cursor, len(selected),
        )

        updated_at = now.isoformat()
        entries = await self._fetch_entries([items[idx] for idx in selected], updated_at)

        prices.prices.update(entries)
        prices.updated_at = updated_at
        self._store.write_prices(prices)
        self._store.write_cursor(CursorState(cursor=next_cursor, updated_at=updated_at))
        self._store.write_merged(merge_prices(base, prices, updated_at))

        logger.info(
            "ローテーション更新 完了: updated=%d nextCursor=%d priced=%d remaining~=%d",
            len(entries), next_cursor, prices.count, max(0, len(items) - prices.count),
        )
        return RefreshResult(
            updated=len(entries), priced_count=prices.count, entries=entries, next_cursor=next_cursor,
        )
