"""品番の正規化・フィルタリング."""

from __future__ import annotations

import re
from collections.abc import Iterable

from partscatalog.config import DEFAULT_PREFIXES
from partscatalog.models import PartRecord

_NON_ALNUM = re.compile(r"[^A-Z0-9]")
# カタログデータ上のダミー品番 (A + 10桁以上のゼロ)
_EXCLUDED_PATTERN = re.compile(r"^A0{10,}$")


def normalize_part_number(raw) -> str:
    """大文字化し、英数字以外を除去する.

    空の入力は空文字列を返す (空の結果を弾くのは呼び出し側)。
    """
    if raw is None:
        return ""
    return _NON_ALNUM.sub("", str(raw).upper())


def normalize_prefixes(prefixes: Iterable[str]) -> list[str]:
    """プレフィックスを正規化し、空要素と重複を除く (順序は維持)."""
    result: list[str] = []
    for prefix in prefixes:
        normalized = normalize_part_number(prefix)
        if normalized and normalized not in result:
            result.append(normalized)
    return result


def is_allowed_part_number(part_number: str, prefixes: Iterable[str]) -> bool:
    return any(part_number.startswith(prefix) for prefix in normalize_prefixes(prefixes))


def is_excluded_part_number(part_number: str) -> bool:
    return bool(_EXCLUDED_PATTERN.match(part_number))


def filter_snapshot_items(
    items: Iterable[PartRecord], prefixes: list[str], limit: int | None = None
) -> list[PartRecord]:
    """スナップショットの品目をプレフィックスで絞り込む.

    - 品番を正規化し、空・除外パターン・対象外プレフィックスは捨てる
    - 同一品番は先勝ち
    - limit 件に達したら打ち切り、品番順にソートして返す

    prefixes が空の場合は DEFAULT_PREFIXES を使う。
    """
    effective = normalize_prefixes(prefixes) or list(DEFAULT_PREFIXES)
    dedup: dict[str, PartRecord] = {}

    for item in items:
        part_number = normalize_part_number(item.part_number)
        if (
            not part_number
            or is_excluded_part_number(part_number)
            or not is_allowed_part_number(part_number, effective)
        ):
            continue
        if part_number in dedup:
            continue

        dedup[part_number] = PartRecord(
            part_number=part_number,
            name=item.name,
            url=item.url,
            price=item.price,
            availability=item.availability,
        )
        if limit is not None and len(dedup) >= limit:
            break

    return sorted(dedup.values(), key=lambda r: r.part_number)
