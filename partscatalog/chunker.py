"""正規化 NDJSON を固定サイズのチャンクファイルに分割し、転置インデックスを作る.

チャンクの所属はストリーム順 (品番順ではない)。行は行末も含めて入力のまま書く。各チャンクのメタ情報
(件数・先頭/末尾の品番) を manifest.json に、品番先頭4文字 / 名前トークン
先頭3文字 -> チャンク ID の対応を chunk-map.json に書き出す。
"""

from __future__ import annotations

import json
import logging
import re
import shutil
import tempfile
from collections.abc import Iterable
from datetime import datetime, timezone
from pathlib import Path
from typing import TextIO

from partscatalog.config import CHUNK_SIZE, VEHICLE_KEY
from partscatalog.errors import RecordFormatError, SnapshotNotFoundError
from partscatalog.models import ChunkIndexMap, ChunkManifest, ChunkMeta
from partscatalog.normalize import normalize_part_number

logger = logging.getLogger(__name__)

MANIFEST_FILE = "manifest.json"
CHUNK_MAP_FILE = "chunk-map.json"
MAX_NAME_PREFIXES = 8

# 英数字 (ウムラウト等のアクセント付き文字を含む) の連続
_NAME_TOKEN = re.compile(r"[^\W_]+")


def chunk_file_name(chunk_id: int) -> str:
    return f"parts-{chunk_id:04d}.ndjson"


def part_prefix4(part_number: str) -> str | None:
    normalized = normalize_part_number(part_number)
    return normalized[:4] if len(normalized) >= 4 else None


def name_token_prefixes(name, limit: int = MAX_NAME_PREFIXES) -> list[str]:
    """名前の3文字以上のトークンから、重複しない先頭3文字を最大 limit 個返す."""
    prefixes: list[str] = []
    for token in _NAME_TOKEN.findall(str(name or "").lower()):
        if len(token) < 3:
            continue
        prefix = token[:3]
        if prefix not in prefixes:
            prefixes.append(prefix)
            if len(prefixes) >= limit:
                break
    return prefixes


def _sorted_index(index: dict[str, set[int]]) -> dict[str, list[int]]:
    return {key: sorted(index[key]) for key in sorted(index)}


class ChunkIndexBuilder:
    """レコード行のストリームからチャンクファイルとインデックスを作る.

    書き込みは output_dir と同じ階層の作業ディレクトリで行い、全行の処理が
    成功した時点で output_dir と入れ替える。失敗時は前回の出力がそのまま残る。
    output_dir はチャンク出力専用 (他のファイルは入れ替えで消える)。
    """

    def __init__(
        self,
        output_dir: Path,
        *,
        vehicle_key: str = VEHICLE_KEY,
        chunk_size: int = CHUNK_SIZE,
        source: str = "",
    ):
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.output_dir = Path(output_dir)
        self.vehicle_key = vehicle_key
        self.chunk_size = chunk_size
        self.source = source

        self._work_dir = self.output_dir
        self._chunks: list[ChunkMeta] = []
        self._by_part_prefix: dict[str, set[int]] = {}
        self._by_name_prefix: dict[str, set[int]] = {}
        self._stream: TextIO | None = None
        self._chunk_id = -1
        self._count = 0
        self._first = ""
        self._last = ""
        self.total_parts = 0

    def _open_chunk(self) -> None:
        self._chunk_id += 1
        path = self._work_dir / chunk_file_name(self._chunk_id)
        self._stream = path.open("w", encoding="utf-8", newline="")

    def _close_chunk(self) -> None:
        if self._stream is None:
            return
        self._stream.close()
        self._stream = None
        if self._count == 0:
            return
        self._chunks.append(ChunkMeta(
            id=self._chunk_id,
            file=chunk_file_name(self._chunk_id),
            count=self._count,
            first_part_number=self._first,
            last_part_number=self._last,
        ))
        self._count = 0
        self._first = ""
        self._last = ""

    def add_line(self, line: str, line_number: int) -> None:
        """1行を処理する. 行末 (LF / CRLF) を含めてそのままチャンクに書く.

        Raises:
            RecordFormatError: JSON オブジェクトとして読めない
        """
        if not line.strip():
            return
        try:
            record = json.loads(line)
        except json.JSONDecodeError as e:
            raise RecordFormatError(line_number, str(e)) from e
        if not isinstance(record, dict):
            raise RecordFormatError(line_number, "not a JSON object")

        part_number = normalize_part_number(record.get("partNumber"))
        if not part_number:
            logger.debug("品番なしのためスキップ: line=%d", line_number)
            return

        if self._stream is None:
            self._open_chunk()
        self._stream.write(line if line.endswith("\n") else line + "\n")
        self.total_parts += 1
        self._count += 1
        self._last = part_number
        if not self._first:
            self._first = part_number

        prefix4 = part_prefix4(part_number)
        if prefix4:
            self._by_part_prefix.setdefault(prefix4, set()).add(self._chunk_id)
        for token_prefix in name_token_prefixes(record.get("name")):
            self._by_name_prefix.setdefault(token_prefix, set()).add(self._chunk_id)

        if self._count >= self.chunk_size:
            self._close_chunk()

        if self.total_parts % 10000 == 0:
            logger.info("[chunk] processed=%d", self.total_parts)

    def build(self, lines: Iterable[str]) -> tuple[ChunkManifest, ChunkIndexMap]:
        """全行を処理し、manifest.json と chunk-map.json を書き出して出力を入れ替える."""
        parent = self.output_dir.parent
        parent.mkdir(parents=True, exist_ok=True)
        self._work_dir = Path(tempfile.mkdtemp(dir=parent, prefix=f".{self.output_dir.name}.", suffix=".tmp"))
        try:
            for line_number, raw in enumerate(lines, start=1):
                self.add_line(raw, line_number)
            self._close_chunk()
            manifest, index_map = self._write_indexes()
        except BaseException:
            self._close_chunk()
            shutil.rmtree(self._work_dir, ignore_errors=True)
            raise

        self._swap_in()
        logger.info("[chunk] totalParts=%d chunkCount=%d", manifest.total_parts, manifest.chunk_count)
        return manifest, index_map

    def _write_indexes(self) -> tuple[ChunkManifest, ChunkIndexMap]:
        generated_at = datetime.now(timezone.utc).isoformat()
        manifest = ChunkManifest(
            vehicle_key=self.vehicle_key,
            generated_at=generated_at,
            source=self.source,
            chunk_size_lines=self.chunk_size,
            total_parts=self.total_parts,
            chunks=list(self._chunks),
        )
        index_map = ChunkIndexMap(
            vehicle_key=self.vehicle_key,
            generated_at=generated_at,
            by_part_prefix4=_sorted_index(self._by_part_prefix),
            by_name_prefix3=_sorted_index(self._by_name_prefix),
        )
        self._write_json(MANIFEST_FILE, manifest.to_dict())
        self._write_json(CHUNK_MAP_FILE, index_map.to_dict())
        return manifest, index_map

    def _swap_in(self) -> None:
        """作業ディレクトリを output_dir に置き換える (旧出力は退避してから削除)."""
        backup = None
        if self.output_dir.exists():
            backup = self._work_dir.with_name(self._work_dir.name + ".old")
            self.output_dir.rename(backup)
        self._work_dir.rename(self.output_dir)
        self._work_dir = self.output_dir
        if backup is not None:
            shutil.rmtree(backup)
        logger.info("[chunk] wrote %s", self.output_dir)

    def _write_json(self, name: str, data: dict) -> None:
        path = self._work_dir / name
        path.write_text(json.dumps(data, ensure_ascii=False, indent=2) + "\n", encoding="utf-8")


def build_chunk_index(
    input_path: Path,
    output_dir: Path,
    *,
    vehicle_key: str = VEHICLE_KEY,
    chunk_size: int = CHUNK_SIZE,
) -> tuple[ChunkManifest, ChunkIndexMap]:
    """NDJSON ファイルからチャンクとインデックスを作る.

    Raises:
        SnapshotNotFoundError: 入力が存在しない
        RecordFormatError: JSON として読めない行がある (前回の出力は変更しない)
    """
    input_path = Path(input_path)
    if not input_path.exists():
        raise SnapshotNotFoundError(str(input_path))

    logger.info("[chunk] input=%s output=%s chunkSize=%d", input_path, output_dir, chunk_size)
    builder = ChunkIndexBuilder(output_dir, vehicle_key=vehicle_key, chunk_size=chunk_size, source=str(input_path))
    # newline="" で CRLF をそのまま保持する
    with input_path.open(encoding="utf-8", newline="") as f:
        return builder.build(f)
