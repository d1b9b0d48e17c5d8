"""部品カタログ パイプライン: メインエントリーポイント.

処理フロー:
  1. sync: 検索ページ / サイトマップを巡回してベーススナップショットを作る
  2. sync-prices: ローテーションで価格・在庫を更新する
  3. enrich-visible: 指定品番の価格・在庫を即時更新する
  4. build-data: ベーススナップショットを NDJSON に変換し、チャンクとインデックスを作る

各 trigger_* は {"ok": bool, ...} を返す。失敗時は {"ok": False, "error": メッセージ}。
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import time
from datetime import datetime, timezone
from pathlib import Path

import httpx

from partscatalog.chunker import build_chunk_index
from partscatalog.config import (
    BASE_SNAPSHOT_FILE,
    CHUNK_SIZE,
    CHUNKS_ROOT,
    DATA_DIR,
    DEFAULT_LIMIT,
    DEFAULT_PREFIXES,
    DEFAULT_PRICE_BATCH,
    INDEX_ROOT,
    LOG_DIR,
    MAX_LIMIT,
    MAX_PRICE_BATCH,
    VEHICLE_KEY,
)
from partscatalog.crawler import DiscoveryCrawler, build_base_snapshot
from partscatalog.enrich import EnrichmentRefresher
from partscatalog.errors import SnapshotNotFoundError
from partscatalog.fetch import CatalogClient
from partscatalog.migrate import PARTS_FILE, migrate_snapshot
from partscatalog.models import ChunkManifest
from partscatalog.normalize import filter_snapshot_items, normalize_prefixes
from partscatalog.store import LocalSnapshotStore, SnapshotStore, default_store

logger = logging.getLogger(__name__)


def setup_logging() -> None:
    """ロギングの初期設定."""
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    log_file = LOG_DIR / f"catalog_{datetime.now().strftime('%Y%m%d')}.log"
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(log_file, encoding="utf-8"),
        ],
    )


# --- パラメータ解釈 ---


def parse_prefixes(value: str | None) -> list[str]:
    """"A309|a310" -> ["A309", "A310"]."""
    return [p.strip().upper() for p in (value or "").split("|") if p.strip()]


def parse_limit(value: str | None, default: int = DEFAULT_LIMIT, maximum: int = MAX_LIMIT) -> int:
    """"all" は上限値、不正値・0 以下は default、上限で切り詰める."""
    if (value or "").strip().lower() == "all":
        return maximum
    try:
        parsed = int(str(value).strip())
    except ValueError:
        return default
    if parsed <= 0:
        return default
    return min(parsed, maximum)


def parse_batch(value: str | None, default: int = DEFAULT_PRICE_BATCH, maximum: int = MAX_PRICE_BATCH) -> int:
    try:
        parsed = int(str(value).strip())
    except ValueError:
        return default
    if parsed <= 0:
        return default
    return min(parsed, maximum)


def _failure(error: Exception) -> dict:
    return {"ok": False, "error": str(error) or error.__class__.__name__}


# --- 操作 ---


async def trigger_crawl(
    prefixes: list[str],
    limit: int,
    *,
    store: SnapshotStore | None = None,
    http_client: httpx.AsyncClient | None = None,
    enrich_details: bool = False,
    **crawler_options,
) -> dict:
    """クロールしてベーススナップショットを丸ごと置き換える.

    crawler_options は DiscoveryCrawler にそのまま渡す (巡回上限・リクエスト間隔など)。
    """
    effective = normalize_prefixes(prefixes) or list(DEFAULT_PREFIXES)
    try:
        async with CatalogClient(http_client) as client:
            crawler = DiscoveryCrawler(client, **crawler_options)
            items = await crawler.crawl(effective, limit, enrich_details=enrich_details)
        snapshot = build_base_snapshot(effective, limit, items)
        (store or default_store()).write_base(snapshot)
    except Exception as e:  # noqa: BLE001
        logger.exception("クロール失敗")
        return _failure(e)

    return {
        "ok": True,
        "prefixes": snapshot.prefixes,
        "limit": snapshot.limit,
        "count": snapshot.count,
        "generatedAt": snapshot.generated_at,
        "items": [item.to_dict() for item in snapshot.items],
    }


def list_parts(prefixes: list[str], limit: int, *, store: SnapshotStore | None = None) -> dict:
    """ベーススナップショットをプレフィックスで絞り込んで返す."""
    effective = normalize_prefixes(prefixes) or list(DEFAULT_PREFIXES)
    try:
        snapshot = (store or default_store()).read_base()
    except Exception as e:  # noqa: BLE001
        logger.exception("スナップショット読み込み失敗")
        return _failure(e)

    items = filter_snapshot_items(snapshot.items, effective, limit)
    return {
        "ok": True,
        "prefixes": effective,
        "limit": limit,
        "count": len(items),
        "generatedAt": datetime.now(timezone.utc).isoformat(),
        "items": [item.to_dict() for item in items],
    }


async def trigger_price_batch_refresh(
    batch_size: int,
    *,
    store: SnapshotStore | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> dict:
    """ローテーションで価格・在庫を batch_size 件更新する."""
    try:
        async with CatalogClient(http_client) as client:
            refresher = EnrichmentRefresher(client, store or default_store())
            result = await refresher.refresh_batch(batch_size)
    except Exception as e:  # noqa: BLE001
        logger.exception("価格更新失敗")
        return _failure(e)
    return {"ok": True, **result.to_dict()}


async def trigger_visible_refresh(
    part_numbers: list[str],
    *,
    store: SnapshotStore | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> dict:
    """表示中の品番の価格・在庫を即時更新する."""
    try:
        async with CatalogClient(http_client) as client:
            refresher = EnrichmentRefresher(client, store or default_store())
            result = await refresher.refresh_direct(part_numbers)
    except Exception as e:  # noqa: BLE001
        logger.exception("表示品目の更新失敗")
        return _failure(e)
    return {"ok": True, **result.to_dict()}


def build_data(
    vehicle_key: str = VEHICLE_KEY,
    *,
    ndjson_path: Path | None = None,
    base_path: Path | None = None,
    chunks_output: Path | None = None,
    chunk_size: int = CHUNK_SIZE,
    prefixes: list[str] | None = None,
) -> ChunkManifest:
    """NDJSON があればそれを、無ければベーススナップショットを変換してからチャンク化する.

    Raises:
        SnapshotNotFoundError: どちらの入力も存在しない
    """
    index_dir = INDEX_ROOT / vehicle_key / "index"
    migrated_path = index_dir / PARTS_FILE
    ndjson_path = Path(ndjson_path) if ndjson_path else migrated_path
    base_path = Path(base_path) if base_path else DATA_DIR / BASE_SNAPSHOT_FILE
    chunks_output = Path(chunks_output) if chunks_output else CHUNKS_ROOT / vehicle_key / "index" / "chunks"

    logger.info("[build:data] vehicleKey=%s", vehicle_key)
    logger.info("[build:data] ndjson=%s exists=%s", ndjson_path, ndjson_path.exists())
    logger.info("[build:data] baseJson=%s exists=%s", base_path, base_path.exists())

    if not ndjson_path.exists() and not base_path.exists():
        raise SnapshotNotFoundError(str(ndjson_path), str(base_path))

    chunk_input = ndjson_path
    if not ndjson_path.exists():
        logger.info("[build:data] running migrate...")
        prices = LocalSnapshotStore(base_path.parent).read_prices()
        migrate_snapshot(base_path, index_dir, prefixes or list(DEFAULT_PREFIXES), prices)
        chunk_input = migrated_path

    logger.info("[build:data] running chunk:index...")
    manifest, _ = build_chunk_index(chunk_input, chunks_output, vehicle_key=vehicle_key, chunk_size=chunk_size)
    logger.info("[build:data] done")
    return manifest


# --- コマンドライン ---


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="parts-catalog", description="部品カタログの収集・更新・インデックス作成")
    sub = parser.add_subparsers(dest="command", required=True)

    sync = sub.add_parser("sync", help="クロールしてベーススナップショットを作る")
    sync.add_argument("--prefix", default="", help='"A309|A310" 形式')
    sync.add_argument("--limit", default="all")
    sync.add_argument("--enrich", action="store_true", help="詳細ページで価格・在庫を補完する")

    list_cmd = sub.add_parser("list", help="ベーススナップショットを絞り込んで表示")
    list_cmd.add_argument("--prefix", default="")
    list_cmd.add_argument("--limit", default=str(DEFAULT_LIMIT))

    prices = sub.add_parser("sync-prices", help="ローテーションで価格・在庫を更新")
    prices.add_argument("--batch", default=str(DEFAULT_PRICE_BATCH))

    visible = sub.add_parser("enrich-visible", help="指定品番の価格・在庫を更新")
    visible.add_argument("part_numbers", nargs="+")

    migrate = sub.add_parser("migrate", help="ベーススナップショットを NDJSON に変換")
    migrate.add_argument("--input", type=Path, default=DATA_DIR / BASE_SNAPSHOT_FILE)
    migrate.add_argument("--vehicle-key", default=VEHICLE_KEY)
    migrate.add_argument("--prefixes", default=",".join(DEFAULT_PREFIXES))

    chunk = sub.add_parser("chunk", help="NDJSON をチャンクに分割してインデックスを作る")
    chunk.add_argument("--input", type=Path, default=INDEX_ROOT / VEHICLE_KEY / "index" / PARTS_FILE)
    chunk.add_argument("--output", type=Path, default=CHUNKS_ROOT / VEHICLE_KEY / "index" / "chunks")
    chunk.add_argument("--vehicle-key", default=VEHICLE_KEY)
    chunk.add_argument("--chunk-size", type=int, default=CHUNK_SIZE)

    build = sub.add_parser("build-data", help="migrate + chunk")
    build.add_argument("--vehicle-key", default=VEHICLE_KEY)
    build.add_argument("--chunk-size", type=int, default=CHUNK_SIZE)
    return parser


def _run_command(args: argparse.Namespace) -> dict:
    if args.command == "sync":
        limit = parse_limit(args.limit, default=MAX_LIMIT)
        return asyncio.run(trigger_crawl(parse_prefixes(args.prefix), limit, enrich_details=args.enrich))
    if args.command == "list":
        return list_parts(parse_prefixes(args.prefix), parse_limit(args.limit))
    if args.command == "sync-prices":
        return asyncio.run(trigger_price_batch_refresh(parse_batch(args.batch)))
    if args.command == "enrich-visible":
        return asyncio.run(trigger_visible_refresh(args.part_numbers))

    try:
        if args.command == "migrate":
            index_dir = INDEX_ROOT / args.vehicle_key / "index"
            prefixes = [p.strip() for p in args.prefixes.split(",")]
            prices = LocalSnapshotStore(args.input.parent).read_prices()
            result = migrate_snapshot(args.input, index_dir, prefixes, prices)
            return {"ok": True, "totalParts": result.total_parts, "prefixCounts": result.prefix_counts}
        if args.command == "chunk":
            manifest, _ = build_chunk_index(
                args.input, args.output, vehicle_key=args.vehicle_key, chunk_size=args.chunk_size,
            )
        else:
            manifest = build_data(args.vehicle_key, chunk_size=args.chunk_size)
    except Exception as e:  # noqa: BLE001
        logger.exception("%s 失敗", args.command)
        return _failure(e)
    return {"ok": True, "totalParts": manifest.total_parts, "chunkCount": manifest.chunk_count}


def main(argv: list[str] | None = None) -> int:
    """メイン処理."""
    args = _build_parser().parse_args(argv)
    setup_logging()
    logger.info("=== %s 開始 ===", args.command)
    start_time = time.time()

    result = _run_command(args)

    summary = {key: value for key, value in result.items() if key not in ("items", "entries")}
    print(json.dumps(summary, ensure_ascii=False))
    status = "完了" if result["ok"] else "失敗"
    logger.info("=== %s %s === 所要時間: %.1f 秒", args.command, status, time.time() - start_time)
    return 0 if result["ok"] else 1


if __name__ == "__main__":
    sys.exit(main())
