"""設定モジュール: 環境変数・定数定義."""

import os
from pathlib import Path

from dotenv import load_dotenv

# .env はプロジェクトルートに配置
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
load_dotenv(_PROJECT_ROOT / ".env")


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "")
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "")
    try:
        return float(raw)
    except ValueError:
        return default


# --- 対象サイト ---
SITE_ORIGIN = os.environ.get("PARTS_SITE_ORIGIN", "https://originalteile.mercedes-benz.de").rstrip("/")
SEARCH_URL = f"{SITE_ORIGIN}/search"
SITEMAP_ENTRY_PATHS = ("/sitemap.xml", "/sitemap_index.xml")
ROBOTS_PATH = "/robots.txt"

# --- User-Agent ---
USER_AGENT = os.environ.get("PARTS_USER_AGENT", "mb-parts-sync/1.0")

# --- リクエスト設定 ---
REQUEST_TIMEOUT = _env_float("PARTS_REQUEST_TIMEOUT", 15.0)  # 秒
REQUEST_INTERVAL_MIN = _env_float("PARTS_REQUEST_INTERVAL_MIN", 0.5)
REQUEST_INTERVAL_MAX = _env_float("PARTS_REQUEST_INTERVAL_MAX", 1.5)

# --- クロール ---
DEFAULT_PREFIXES = ["A309", "A310"]
DEFAULT_LIMIT = 100
MAX_LIMIT = 5000
MAX_PAGES = _env_int("PARTS_MAX_PAGES", 500)
MAX_SITEMAPS = _env_int("PARTS_MAX_SITEMAPS", 500)
CRAWL_DETAIL_CONCURRENCY = 8

# 検索語のバリエーション (サーバ側のマッチングが不安定なため)
SEARCH_TERM_VARIANTS = ("{prefix}", "{prefix}*", "{prefix} ")

# --- 価格・在庫の更新 ---
PRICE_FETCH_CONCURRENCY = _env_int("PART_PRICE_CONCURRENCY", 6)
PRICE_STALE_DAYS = _env_int("PART_PRICE_STALE_DAYS", 7)
DEFAULT_PRICE_BATCH = _env_int("PART_PRICE_BATCH", 100)
MAX_PRICE_BATCH = 5000
MAX_DIRECT_REFRESH = 100

# --- スナップショット ---
DATA_DIR = Path(os.environ.get("PARTS_DATA_DIR", _PROJECT_ROOT / "public" / "data"))
BASE_SNAPSHOT_FILE = "parts-base.json"
PRICE_SNAPSHOT_FILE = "parts-price.json"
CURSOR_STATE_FILE = "parts-price-state.json"
MERGED_SNAPSHOT_FILE = "parts.json"

# --- インデックス ---
VEHICLE_KEY = os.environ.get("PARTS_VEHICLE_KEY", "default")
CHUNK_SIZE = _env_int("PARTS_CHUNK_SIZE", 25000)
INDEX_ROOT = Path(os.environ.get("PARTS_INDEX_ROOT", _PROJECT_ROOT / "data" / "vehicles"))
CHUNKS_ROOT = Path(os.environ.get("PARTS_CHUNKS_ROOT", _PROJECT_ROOT / "public" / "data" / "vehicles"))

# --- Supabase Storage (任意) ---
SUPABASE_URL: str = os.environ.get("SUPABASE_URL", "")
SUPABASE_SECRET_KEY: str = os.environ.get("SUPABASE_SECRET_KEY", "")
SUPABASE_BUCKET: str = os.environ.get("SUPABASE_BUCKET", "parts-snapshots")

# --- 抽出ヒューリスティクス ---
PRODUCT_CONTAINER_SELECTORS = (
    "article",
    "li.product",
    "li.product-tile",
    "li.result-item",
    ".product",
    ".product-tile",
    ".result-item",
    '[itemtype*="Product"]',
    "[data-product-id]",
    "[data-sku]",
)
PART_NUMBER_SELECTORS = '[data-product-id], [data-sku], .sku, .product-number, [itemprop="sku"]'
NAME_SELECTORS = 'h1, h2, h3, h4, [itemprop="name"], .product-name, .name, .title'

# アンカーのフォールバックで除外するナビゲーション系リンク
ANCHOR_DENYLIST = ("/konto", "/cart", "/warenkorb", "/service", "/impressum", "/datenschutz")
ANCHOR_CONTAINER_TAGS = ("article", "li")
ANCHOR_CONTAINER_CLASSES = ("product", "product-tile", "result-item", "item")

# 在庫表記 (小文字化・アクセント除去後のテキストに適用、先勝ち)
AVAILABILITY_RULES = (
    (
        "out_of_stock",
        "Out of stock",
        r"nicht\s+(?:verfugbar|verfuegbar|lieferbar)|out\s*of\s*stock|sold\s*out|ausverkauft",
    ),
    (
        "in_stock",
        "In stock",
        r"verfugbar|verfuegbar|lieferbar|in\s*stock|auf\s+lager",
    ),
    # 予約注文は独立したステータスを持たない
    ("unknown", "Preorder", r"vorbestell|pre-?\s*order"),
)

# 埋め込み state の代入先変数名
EMBEDDED_STATE_NAMES = ("__NEXT_DATA__", "__INITIAL_STATE__", "INITIAL_STATE", "__STATE__")
EMBEDDED_STATE_MIN_RESULTS = 3

# ページ番号として扱うクエリパラメータ
PAGINATION_KEYS = ("page", "p", "paging", "start", "offset")
NEXT_LINK_SELECTORS = (
    'link[rel~="next"]',
    'a[rel~="next"]',
    'a[aria-label*="next" i]',
    'a:-soup-contains("Weiter")',
    'a:-soup-contains("Next")',
)

# --- ログ ---
LOG_DIR = _PROJECT_ROOT / "logs"
