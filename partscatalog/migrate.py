"""ベーススナップショット -> 正規化 NDJSON への変換.

出力 (output_dir 配下):
  - parts.ndjson: 1行1レコード。hierarchy.groups と enrichment ブロックを付与
    (enrichment は価格スナップショットに該当品番があればその値、無ければ null のプレースホルダ)
  - prefix/{PREFIX}.ndjson: プレフィックスごとの軽量版 (partNumber, name, url)
  - groups.json: {group: {subgroup: 件数}}
"""

from __future__ import annotations

import json
import logging
import re
from contextlib import ExitStack
from dataclasses import dataclass, field
from pathlib import Path

from partscatalog.errors import CatalogError, SnapshotNotFoundError
from partscatalog.models import UNKNOWN_AVAILABILITY, PriceSnapshot
from partscatalog.normalize import normalize_part_number, normalize_prefixes

logger = logging.getLogger(__name__)

PARTS_FILE = "parts.ndjson"
GROUPS_FILE = "groups.json"
PREFIX_DIR = "prefix"

_GROUP_SEPARATORS = re.compile(r">|/|::|:")


@dataclass
class MigrationResult:
    parts_path: Path
    groups_path: Path
    total_parts: int = 0
    prefix_counts: dict[str, int] = field(default_factory=dict)


def normalize_group_entry(raw: str) -> tuple[str, str]:
    """グループ表記を (group, subgroup) に分ける (例: "Motor > Kühlung")."""
    parts = [p.strip() for p in _GROUP_SEPARATORS.split(raw.strip()) if p.strip()]
    if not parts:
        return "unknown", "unknown"
    if len(parts) == 1:
        return parts[0], "_default"
    return parts[0], parts[1]


def record_groups(record: dict) -> list[str]:
    hierarchy = record.get("hierarchy")
    groups = hierarchy.get("groups") if isinstance(hierarchy, dict) else None
    if not isinstance(groups, list):
        return []
    return [g.strip() for g in groups if isinstance(g, str) and g.strip()]


def migrate_record(record: dict, prices: PriceSnapshot | None = None) -> dict:
    """hierarchy.groups を整え、enrichment ブロックを付与する.

    価格スナップショットにエントリがあればその内容を、無ければ空のプレースホルダを入れる。
    """
    hierarchy = record.get("hierarchy")
    entry = None
    if prices is not None:
        entry = prices.prices.get(normalize_part_number(record.get("partNumber")))

    enrichment = {
        "price": None,
        "availability": UNKNOWN_AVAILABILITY.to_dict(),
        "lastCheckedAt": None,
    }
    if entry is not None:
        enrichment["price"] = entry.price
        if entry.availability is not None:
            enrichment["availability"] = entry.availability.to_dict()
        enrichment["lastCheckedAt"] = entry.updated_at or None

    return {
        **record,
        "hierarchy": {**(hierarchy if isinstance(hierarchy, dict) else {}), "groups": record_groups(record)},
        "enrichment": enrichment,
    }


def _load_items(input_path: Path) -> list:
    if not input_path.exists():
        raise SnapshotNotFoundError(str(input_path))
    try:
        with input_path.open(encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise CatalogError(f"Invalid snapshot JSON: {input_path}: {e}") from e

    items = data.get("items") if isinstance(data, dict) else None
    if not isinstance(items, list):
        raise CatalogError(f"Snapshot has no items array: {input_path}")
    return items


def migrate_snapshot(
    input_path: Path,
    output_dir: Path,
    prefixes: list[str],
    prices: PriceSnapshot | None = None,
) -> MigrationResult:
    """ベーススナップショットを NDJSON に変換する.

    Raises:
        SnapshotNotFoundError: 入力が存在しない
        CatalogError: 入力が JSON として読めない
    """
    input_path = Path(input_path)
    output_dir = Path(output_dir)
    prefixes = normalize_prefixes(prefixes)
    items = _load_items(input_path)

    logger.info("[migrate] input=%s", input_path)
    logger.info("[migrate] prefixes=%s", ",".join(prefixes))

    prefix_dir = output_dir / PREFIX_DIR
    prefix_dir.mkdir(parents=True, exist_ok=True)
    result = MigrationResult(
        parts_path=output_dir / PARTS_FILE,
        groups_path=output_dir / GROUPS_FILE,
        prefix_counts={prefix: 0 for prefix in prefixes},
    )
    group_index: dict[str, dict[str, int]] = {}

    with ExitStack() as stack:
        parts_file = stack.enter_context(result.parts_path.open("w", encoding="utf-8"))
        prefix_files = {
            prefix: stack.enter_context((prefix_dir / f"{prefix}.ndjson").open("w", encoding="utf-8"))
            for prefix in prefixes
        }

        for raw in items:
            if not isinstance(raw, dict):
                continue
            record = migrate_record(raw, prices)
            result.total_parts += 1
            parts_file.write(json.dumps(record, ensure_ascii=False) + "\n")

            for entry in record["hierarchy"]["groups"]:
                group, subgroup = normalize_group_entry(entry)
                subgroups = group_index.setdefault(group, {})
                subgroups[subgroup] = subgroups.get(subgroup, 0) + 1

            part_number = normalize_part_number(record.get("partNumber"))
            for prefix in prefixes:
                if not part_number.startswith(prefix):
                    continue
                result.prefix_counts[prefix] += 1
                slim = {
                    "partNumber": record.get("partNumber"),
                    "name": record.get("name") or "",
                    "url": record.get("url") or "",
                }
                prefix_files[prefix].write(json.dumps(slim, ensure_ascii=False) + "\n")

            if result.total_parts % 10000 == 0:
                logger.info("[migrate] processed=%d", result.total_parts)

    result.groups_path.write_text(json.dumps(group_index, ensure_ascii=False, indent=2) + "\n", encoding="utf-8")

    logger.info("[migrate] total parts=%d", result.total_parts)
    for prefix, count in result.prefix_counts.items():
        logger.info("[migrate] prefix %s=%d", prefix, count)
    return result
