"""部品ページのマークアップから品番レコードを抽出するモジュール.

抽出戦略 (この順で結果を積み上げる):
  1. 商品コンテナのヒューリスティクス (コンテナから取れなければアンカーにフォールバック)
  2. JSON-LD (schema.org/Product)
  3. インライン script の埋め込み state (1 + 2 の合計が 3 件未満のときのみ)

ページを跨いだ重複排除は呼び出し側 (crawler) の責務。
"""

from __future__ import annotations

import json
import logging
import re
import unicodedata
from collections import deque
from collections.abc import Iterator
from dataclasses import dataclass
from functools import lru_cache
from typing import Any
from urllib.parse import parse_qs, urljoin, urlparse

from bs4 import BeautifulSoup, Tag

from partscatalog.config import (
    ANCHOR_CONTAINER_CLASSES,
    ANCHOR_CONTAINER_TAGS,
    ANCHOR_DENYLIST,
    AVAILABILITY_RULES,
    EMBEDDED_STATE_MIN_RESULTS,
    EMBEDDED_STATE_NAMES,
    NAME_SELECTORS,
    NEXT_LINK_SELECTORS,
    PAGINATION_KEYS,
    PART_NUMBER_SELECTORS,
    PRODUCT_CONTAINER_SELECTORS,
)
from partscatalog.models import OUT_OF_STOCK, Availability, DetailMeta, PartRecord
from partscatalog.normalize import is_allowed_part_number, normalize_part_number, normalize_prefixes

logger = logging.getLogger(__name__)

# 桁区切り付き金額 + 小数2桁、通貨記号は任意 (例: "1.234,56 €", "49,90 EUR")
_PRICE_PATTERN = re.compile(
    r"(?<![\d.,])\d{1,3}(?:[.,]\d{3})*[.,]\d{2}(?!\d)(?:\s?(?:€|EUR\b))?",
    re.IGNORECASE,
)
_GENERIC_HREF_PATTERN = re.compile(r"(?<![A-Z0-9])A\d{9,14}")
_WHITESPACE = re.compile(r"\s+")
_EMBEDDED_ASSIGNMENT = re.compile(
    r"(?:%s)\s*=\s*(?=\{)" % "|".join(re.escape(name) for name in EMBEDDED_STATE_NAMES)
)
_AVAILABILITY_RULES = tuple(
    (Availability(status=status, label=label), re.compile(pattern))
    for status, label, pattern in AVAILABILITY_RULES
)

# 埋め込み state のフィールド候補 (優先順)
IDENTIFIER_FIELDS = ("partNumber", "productNumber", "articleNumber", "sku", "productId")
NAME_FIELDS = ("name", "title", "productName")
PRICE_FIELDS = ("price", "priceValue", "formattedPrice")
AVAILABILITY_FIELDS = ("availability", "stockStatus", "deliveryStatus")
URL_FIELDS = ("url", "link", "productUrl")

_DECODER = json.JSONDecoder()


@dataclass
class JsonParse:
    """JSON 解析結果. 成功時は value、失敗時は error を持つ."""

    value: Any = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def parse_json(text: str, start: int = 0) -> JsonParse:
    """text[start:] の先頭にある JSON 値を1つ読む (後続の文字列は無視)."""
    try:
        value, _ = _DECODER.raw_decode(text, start)
    except json.JSONDecodeError as e:
        return JsonParse(error=str(e))
    return JsonParse(value=value)


# ---------------------------------------------------------------------------
# テキスト単位の抽出
# ---------------------------------------------------------------------------


def extract_price(text: str) -> str | None:
    """テキストから最初の金額表記を取り出す."""
    match = _PRICE_PATTERN.search(text or "")
    return match.group(0).strip() if match else None


def _fold(text: str) -> str:
    """小文字化してアクセント記号を落とす (verfügbar -> verfugbar)."""
    decomposed = unicodedata.normalize("NFKD", text.lower())
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def extract_availability(text: str) -> Availability:
    """在庫表記を分類する. 該当なしは unknown."""
    folded = _fold(text or "")
    for availability, pattern in _AVAILABILITY_RULES:
        if pattern.search(folded):
            return availability
    return Availability()


@lru_cache(maxsize=64)
def _text_pattern(prefix: str) -> re.Pattern:
    # "A 309 123 45 67" のような区切り入りの表記も拾う。
    # 区切り後は2〜3桁のグループのみ (後続の金額 "49,90" は取り込まない)
    head = r"[\s-]?".join(re.escape(ch) for ch in prefix)
    return re.compile(
        rf"(?<![A-Z0-9]){head}[A-Z0-9]{{0,30}}(?:[\s-]\d{{2,3}}(?![\d.,]))*",
        re.IGNORECASE,
    )


@lru_cache(maxsize=64)
def _href_pattern(prefix: str) -> re.Pattern:
    return re.compile(rf"(?<![A-Z0-9]){re.escape(prefix)}-?\d[A-Z0-9]*(?:-\d+)*")


def find_part_number(text: str, prefixes: list[str]) -> str | None:
    """本文テキストからプレフィックスで始まる品番を探す."""
    for prefix in normalize_prefixes(prefixes):
        for match in _text_pattern(prefix).finditer(text or ""):
            normalized = normalize_part_number(match.group(0))
            if normalized.startswith(prefix) and len(normalized) > len(prefix):
                return normalized
    return None


def extract_part_number_from_href(href: str, prefixes: list[str]) -> str | None:
    """リンク先 URL から品番を探す.

    プレフィックス未指定時は汎用パターン (A + 9〜14桁) を使う。
    """
    upper = (href or "").upper()
    normalized_prefixes = normalize_prefixes(prefixes)
    if not normalized_prefixes:
        match = _GENERIC_HREF_PATTERN.search(upper)
        return normalize_part_number(match.group(0)) if match else None

    for prefix in normalized_prefixes:
        for match in _href_pattern(prefix).finditer(upper):
            normalized = normalize_part_number(match.group(0))
            if normalized.startswith(prefix):
                return normalized
    return None


def _collapse(text: str | None) -> str:
    return _WHITESPACE.sub(" ", text or "").strip()


def _node_text(node: Tag | None) -> str:
    return _collapse(node.get_text(" ")) if node is not None else ""


def _accepts(part_number: str, prefixes: list[str]) -> bool:
    return bool(part_number) and (not prefixes or is_allowed_part_number(part_number, prefixes))


# ---------------------------------------------------------------------------
# 戦略 1: 商品コンテナ / アンカー
# ---------------------------------------------------------------------------


def _explicit_part_numbers(container: Tag) -> Iterator[str]:
    """data 属性・品番要素に明示された品番候補."""
    for attr in ("data-product-id", "data-sku"):
        value = container.get(attr)
        if isinstance(value, str) and value.strip():
            yield value
    inner = container.select_one(PART_NUMBER_SELECTORS)
    if inner is not None:
        for attr in ("data-product-id", "data-sku", "content"):
            value = inner.get(attr)
            if isinstance(value, str) and value.strip():
                yield value
        yield inner.get_text(" ")


def _resolve_container_part_number(container: Tag, text: str, href: str, prefixes: list[str]) -> str | None:
    for candidate in _explicit_part_numbers(container):
        normalized = normalize_part_number(candidate)
        if _accepts(normalized, prefixes):
            return normalized
    return find_part_number(text, prefixes) or extract_part_number_from_href(href, prefixes)


def _build_record(part_number: str, container: Tag, anchor: Tag, text: str, base_url: str) -> PartRecord:
    name = _node_text(container.select_one(NAME_SELECTORS)) or _node_text(anchor) or f"Part {part_number}"
    return PartRecord(
        part_number=part_number,
        name=name,
        url=urljoin(base_url, anchor["href"]),
        price=extract_price(text),
        availability=extract_availability(text),
    )


def _extract_from_containers(soup: BeautifulSoup, base_url: str, prefixes: list[str]) -> list[PartRecord]:
    records: list[PartRecord] = []
    for container in soup.select(", ".join(PRODUCT_CONTAINER_SELECTORS)):
        if container.name == "a" and container.get("href"):
            anchor = container
        else:
            anchor = container.find("a", href=True)
        if anchor is None:
            continue

        text = _node_text(container) or _node_text(anchor)
        if not text:
            continue

        part_number = _resolve_container_part_number(container, text, anchor["href"], prefixes)
        if not part_number or not _accepts(part_number, prefixes):
            continue
        records.append(_build_record(part_number, container, anchor, text, base_url))
    return records


def _is_anchor_container(tag: Tag) -> bool:
    if tag.name in ANCHOR_CONTAINER_TAGS:
        return True
    classes = tag.get("class") or []
    return any(cls in ANCHOR_CONTAINER_CLASSES for cls in classes)


def _extract_from_anchors(soup: BeautifulSoup, base_url: str, prefixes: list[str]) -> list[PartRecord]:
    """コンテナが無いページ用. ナビゲーション系リンクは除外する."""
    records: list[PartRecord] = []
    for anchor in soup.find_all("a", href=True):
        href = anchor["href"]
        lower_href = href.lower()
        if any(token in lower_href for token in ANCHOR_DENYLIST):
            continue

        container = anchor.find_parent(_is_anchor_container) or anchor
        text = _node_text(container) or _node_text(anchor)
        if not text:
            continue

        part_number = find_part_number(text, prefixes) or extract_part_number_from_href(href, prefixes)
        if not part_number or not _accepts(part_number, prefixes):
            continue
        records.append(_build_record(part_number, container, anchor, text, base_url))
    return records


# ---------------------------------------------------------------------------
# 戦略 2 / 3: JSON-LD と埋め込み state
# ---------------------------------------------------------------------------


def _iter_objects(root: Any) -> Iterator[dict]:
    """JSON 値を幅優先で辿り、オブジェクトだけを返す."""
    queue: deque[Any] = deque([root])
    while queue:
        node = queue.popleft()
        if isinstance(node, list):
            queue.extend(node)
        elif isinstance(node, dict):
            yield node
            queue.extend(v for v in node.values() if isinstance(v, (dict, list)))


def _as_text(value: Any) -> str | None:
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return None


def _first_field(node: dict, fields: tuple[str, ...]) -> str | None:
    for key in fields:
        value = _as_text(node.get(key))
        if value:
            return value
    return None


def _is_product_type(value: Any) -> bool:
    types = value if isinstance(value, list) else [value]
    return any(isinstance(t, str) and t.lower() == "product" for t in types)


def _script_text(script: Tag) -> str:
    return (script.string or script.get_text() or "").strip()


def _extract_from_json_ld(soup: BeautifulSoup, base_url: str, prefixes: list[str]) -> list[PartRecord]:
    records: list[PartRecord] = []
    for script in soup.find_all("script", type="application/ld+json"):
        text = _script_text(script)
        if not text:
            continue
        parsed = parse_json(text)
        if not parsed.ok:
            logger.debug("JSON-LD パースエラー: %s", parsed.error)
            continue

        for node in _iter_objects(parsed.value):
            if not _is_product_type(node.get("@type")):
                continue
            part_number = normalize_part_number(_first_field(node, ("sku", "productID")))
            if not _accepts(part_number, prefixes):
                continue

            offers = node.get("offers")
            offer = offers[0] if isinstance(offers, list) and offers else offers
            if not isinstance(offer, dict):
                offer = {}
            price = _as_text(offer.get("price"))
            currency = _as_text(offer.get("priceCurrency"))
            raw_availability = _as_text(offer.get("availability")) or _as_text(node.get("availability")) or ""

            records.append(PartRecord(
                part_number=part_number,
                name=_as_text(node.get("name")) or f"Part {part_number}",
                url=urljoin(base_url, _as_text(node.get("url")) or base_url),
                price=f"{price} {currency}" if price and currency else price,
                availability=extract_availability(raw_availability),
            ))
    return records


def _embedded_blobs(soup: BeautifulSoup) -> Iterator[Any]:
    """インライン script 内の JSON (単体 or `NAME = {...}` 代入) を返す."""
    for script in soup.find_all("script"):
        if script.get("src") or script.get("type") == "application/ld+json":
            continue
        content = _script_text(script)
        if not content:
            continue

        if content[0] in "{[":
            parsed = parse_json(content)
            if parsed.ok:
                yield parsed.value

        match = _EMBEDDED_ASSIGNMENT.search(content)
        if match:
            parsed = parse_json(content, match.end())
            if parsed.ok:
                yield parsed.value
            else:
                logger.debug("埋め込み state パースエラー: %s", parsed.error)


def _find_identifier(node: dict, prefixes: list[str]) -> str | None:
    for key in IDENTIFIER_FIELDS:
        normalized = normalize_part_number(_as_text(node.get(key)))
        if _accepts(normalized, prefixes):
            return normalized
    return None


def _extract_from_embedded_state(soup: BeautifulSoup, base_url: str, prefixes: list[str]) -> list[PartRecord]:
    records: list[PartRecord] = []
    for blob in _embedded_blobs(soup):
        for node in _iter_objects(blob):
            part_number = _find_identifier(node, prefixes)
            if not part_number:
                continue
            raw_price = _first_field(node, PRICE_FIELDS)
            records.append(PartRecord(
                part_number=part_number,
                name=_first_field(node, NAME_FIELDS) or f"Part {part_number}",
                url=urljoin(base_url, _first_field(node, URL_FIELDS) or base_url),
                price=(extract_price(raw_price) or raw_price) if raw_price else None,
                availability=extract_availability(_first_field(node, AVAILABILITY_FIELDS) or ""),
            ))
    return records


# ---------------------------------------------------------------------------
# 公開 API
# ---------------------------------------------------------------------------


def extract_parts(html: str, base_url: str, prefixes: list[str]) -> list[PartRecord]:
    """1ページ分の HTML から品番レコード候補を抽出する."""
    prefixes = normalize_prefixes(prefixes)
    soup = BeautifulSoup(html, "html.parser")

    records = _extract_from_containers(soup, base_url, prefixes)
    if not records:
        records = _extract_from_anchors(soup, base_url, prefixes)
    records.extend(_extract_from_json_ld(soup, base_url, prefixes))

    if len(records) < EMBEDDED_STATE_MIN_RESULTS:
        records.extend(_extract_from_embedded_state(soup, base_url, prefixes))

    logger.debug("抽出結果: %d 件 (%s)", len(records), base_url)
    return records


def _page_value(query: str) -> int | None:
    params = parse_qs(query)
    for key in PAGINATION_KEYS:
        for raw in params.get(key, []):
            try:
                return int(raw)
            except ValueError:
                continue
    return None


def find_next_page_url(html: str, current_url: str) -> str | None:
    """次ページの URL を探す.

    rel="next" 等の明示的なリンクを優先し、無ければ同一パスで
    ページ番号パラメータが現在より大きいリンクのうち最小のものを返す。
    """
    soup = BeautifulSoup(html, "html.parser")
    for selector in NEXT_LINK_SELECTORS:
        node = soup.select_one(selector)
        href = node.get("href") if node is not None else None
        if isinstance(href, str) and href.strip():
            next_url = urljoin(current_url, href.strip())
            if next_url != current_url:
                return next_url

    current = urlparse(current_url)
    current_page = _page_value(current.query)
    if current_page is None:
        current_page = 1

    candidates: list[tuple[int, str]] = []
    for anchor in soup.find_all("a", href=True):
        url = urljoin(current_url, anchor["href"])
        parsed = urlparse(url)
        if parsed.path != current.path:
            continue
        value = _page_value(parsed.query)
        if value is not None:
            candidates.append((value, url))

    for value, url in sorted(candidates, key=lambda c: c[0]):
        if value > current_page and url != current_url:
            return url
    return None


def parse_detail_page(html: str) -> DetailMeta:
    """詳細ページから価格と在庫を取り出す."""
    soup = BeautifulSoup(html, "html.parser")
    raw_price = _node_text(soup.select_one(".product-detail-price"))
    price = (extract_price(raw_price) or raw_price) if raw_price else None

    if soup.select_one(".delivery-information.delivery-soldout") is not None:
        return DetailMeta(availability=Availability(status=OUT_OF_STOCK, label="Ausverkauft"), price=price)

    info_text = _node_text(soup.select_one(".delivery-information"))
    return DetailMeta(availability=extract_availability(info_text), price=price)
