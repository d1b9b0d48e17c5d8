"""サイトマップ・robots.txt のパースヘルパー."""

from __future__ import annotations

import html
import re
from urllib.parse import urlparse

_LOC_PATTERN = re.compile(r"<loc>(.*?)</loc>", re.IGNORECASE | re.DOTALL)
_SITEMAP_URL_PATTERN = re.compile(r"\.xml(?:\.gz)?(?:$|\?)", re.IGNORECASE)
_ROBOTS_SITEMAP_PATTERN = re.compile(r"^\s*Sitemap:\s*(\S+)\s*$", re.IGNORECASE)
_SLUG_SEPARATORS = re.compile(r"[-_]+")


def extract_locs(xml: str) -> list[str]:
    """<loc> 要素の URL を出現順に返す (XML エンティティはデコード)."""
    locs = []
    for match in _LOC_PATTERN.finditer(xml):
        value = html.unescape(match.group(1).strip())
        if value:
            locs.append(value)
    return locs


def is_sitemap_url(url: str) -> bool:
    """入れ子のサイトマップ (.xml / .xml.gz) かどうか."""
    return bool(_SITEMAP_URL_PATTERN.search(url))


def parse_robots_sitemaps(robots_txt: str) -> list[str]:
    """robots.txt の Sitemap: ディレクティブを返す."""
    sitemaps = []
    for line in robots_txt.splitlines():
        match = _ROBOTS_SITEMAP_PATTERN.match(line)
        if match:
            sitemaps.append(match.group(1))
    return sitemaps


def guess_name_from_url(url: str) -> str:
    """URL パスのスラッグから表示名を作る.

    末尾から2番目のセグメントを優先する (/bremsscheibe-vorne/A3091234567 など)。
    """
    segments = [s for s in urlparse(url).path.split("/") if s]
    if not segments:
        return "Unknown"
    slug = segments[-2] if len(segments) >= 2 else segments[-1]
    words = _SLUG_SEPARATORS.sub(" ", slug).strip()
    return re.sub(r"\b\w", lambda m: m.group(0).upper(), words) or "Unknown"
