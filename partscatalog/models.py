"""データモデル定義.

スナップショット文書の JSON キーは camelCase (クライアント側と共有)。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

IN_STOCK = "in_stock"
OUT_OF_STOCK = "out_of_stock"
UNKNOWN = "unknown"
AVAILABILITY_STATUSES = (IN_STOCK, OUT_OF_STOCK, UNKNOWN)


@dataclass(frozen=True)
class Availability:
    """在庫状況 (ステータス + 表示ラベル)."""

    status: str = UNKNOWN
    label: str = "Unknown"

    def to_dict(self) -> dict:
        return {"status": self.status, "label": self.label}

    @classmethod
    def from_dict(cls, data: Any) -> Availability:
        """不正な値は unknown として扱う."""
        if not isinstance(data, dict):
            return cls()
        status = data.get("status")
        if status not in AVAILABILITY_STATUSES:
            status = UNKNOWN
        label = data.get("label")
        return cls(status=status, label=label if isinstance(label, str) and label else "Unknown")


UNKNOWN_AVAILABILITY = Availability()


@dataclass
class PartRecord:
    """カタログの1部品を表す."""

    part_number: str  # 正規化済み品番 (一意キー)
    name: str
    url: str  # 詳細ページの URL
    price: str | None = None  # 整形済み価格文字列 (例: "1.234,56 €")
    availability: Availability = field(default_factory=Availability)

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"partNumber": self.part_number, "name": self.name}
        if self.price is not None:
            data["price"] = self.price
        data["url"] = self.url
        data["availability"] = self.availability.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict) -> PartRecord:
        price = data.get("price")
        return cls(
            part_number=str(data.get("partNumber") or ""),
            name=str(data.get("name") or ""),
            url=str(data.get("url") or ""),
            price=price if isinstance(price, str) else None,
            availability=Availability.from_dict(data.get("availability")),
        )


@dataclass
class DetailMeta:
    """詳細ページから取得した価格・在庫."""

    availability: Availability = field(default_factory=Availability)
    price: str | None = None
    fetched: bool = True  # False = 取得失敗


@dataclass
class PriceEntry:
    """価格スナップショットの1エントリ."""

    updated_at: str  # ISO 8601
    price: str | None = None
    availability: Availability | None = None

    def to_dict(self) -> dict:
        data: dict[str, Any] = {}
        if self.price is not None:
            data["price"] = self.price
        if self.availability is not None:
            data["availability"] = self.availability.to_dict()
        data["updatedAt"] = self.updated_at
        return data

    @classmethod
    def from_dict(cls, data: Any) -> PriceEntry:
        if not isinstance(data, dict):
            return cls(updated_at="")
        price = data.get("price")
        availability = data.get("availability")
        return cls(
            updated_at=str(data.get("updatedAt") or ""),
            price=price if isinstance(price, str) else None,
            availability=Availability.from_dict(availability) if availability is not None else None,
        )


@dataclass
class BaseSnapshot:
    """クロール結果のスナップショット (丸ごと置き換え)."""

    prefixes: list[str]
    limit: int
    generated_at: str  # ISO 8601
    items: list[PartRecord] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.items)

    def to_dict(self) -> dict:
        return {
            "prefixes": list(self.prefixes),
            "limit": self.limit,
            "count": self.count,
            "generatedAt": self.generated_at,
            "items": [item.to_dict() for item in self.items],
        }

    @classmethod
    def from_dict(cls, data: dict) -> BaseSnapshot:
        items = data.get("items")
        return cls(
            prefixes=[str(p) for p in data.get("prefixes") or []],
            limit=int(data.get("limit") or 0),
            generated_at=str(data.get("generatedAt") or ""),
            items=[PartRecord.from_dict(i) for i in items if isinstance(i, dict)] if isinstance(items, list) else [],
        )


@dataclass
class PriceSnapshot:
    """品番 -> 価格エントリのスナップショット."""

    updated_at: str = ""
    prices: dict[str, PriceEntry] = field(default_factory=dict)

    @property
    def count(self) -> int:
        return len(self.prices)

    def to_dict(self) -> dict:
        return {
            "updatedAt": self.updated_at,
            "count": self.count,
            "prices": {pn: entry.to_dict() for pn, entry in self.prices.items()},
        }

    @classmethod
    def from_dict(cls, data: Any) -> PriceSnapshot:
        if not isinstance(data, dict):
            return cls()
        prices = data.get("prices")
        if not isinstance(prices, dict):
            prices = {}
        return cls(
            updated_at=str(data.get("updatedAt") or ""),
            prices={str(pn): PriceEntry.from_dict(entry) for pn, entry in prices.items()},
        )


@dataclass
class CursorState:
    """ローテーション更新のカーソル."""

    cursor: int = 0
    updated_at: str = ""

    def to_dict(self) -> dict:
        return {"cursor": self.cursor, "updatedAt": self.updated_at}

    @classmethod
    def from_dict(cls, data: Any) -> CursorState:
        if not isinstance(data, dict):
            return cls()
        cursor = data.get("cursor")
        if isinstance(cursor, bool) or not isinstance(cursor, int):
            cursor = 0
        return cls(cursor=max(0, cursor), updated_at=str(data.get("updatedAt") or ""))


@dataclass
class ChunkMeta:
    """チャンクファイル1つ分のメタ情報."""

    id: int
    file: str
    count: int
    first_part_number: str
    last_part_number: str

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "file": self.file,
            "count": self.count,
            "firstPartNumber": self.first_part_number,
            "lastPartNumber": self.last_part_number,
        }


@dataclass
class ChunkManifest:
    vehicle_key: str
    generated_at: str
    source: str
    chunk_size_lines: int
    total_parts: int
    chunks: list[ChunkMeta] = field(default_factory=list)

    @property
    def chunk_count(self) -> int:
        return len(self.chunks)

    def to_dict(self) -> dict:
        return {
            "vehicleKey": self.vehicle_key,
            "generatedAt": self.generated_at,
            "source": self.source,
            "chunkSizeLines": self.chunk_size_lines,
            "chunkCount": self.chunk_count,
            "totalParts": self.total_parts,
            "chunks": [chunk.to_dict() for chunk in self.chunks],
        }


@dataclass
class ChunkIndexMap:
    """プレフィックス -> チャンク ID リストの転置インデックス."""

    vehicle_key: str
    generated_at: str
    by_part_prefix4: dict[str, list[int]] = field(default_factory=dict)
    by_name_prefix3: dict[str, list[int]] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "vehicleKey": self.vehicle_key,
            "generatedAt": self.generated_at,
            "byPartPrefix4": self.by_part_prefix4,
            "byNamePrefix3": self.by_name_prefix3,
        }
