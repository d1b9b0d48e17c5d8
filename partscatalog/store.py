"""スナップショット文書の読み書き.

ベーススナップショット・価格スナップショット・カーソル・マージ済みカタログを
それぞれ1つの JSON 文書として丸ごと読み込み、丸ごと書き戻す。
書き込みは単一ライター前提 (ロックは取らない)。

保存先:
  - LocalSnapshotStore: ローカルディレクトリ (一時ファイル + rename で置き換え)
  - SupabaseSnapshotStore: Supabase Storage のバケット
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path

from supabase import StorageException, create_client

from partscatalog.config import (
    BASE_SNAPSHOT_FILE,
    CURSOR_STATE_FILE,
    DATA_DIR,
    MERGED_SNAPSHOT_FILE,
    PRICE_SNAPSHOT_FILE,
    SUPABASE_BUCKET,
    SUPABASE_SECRET_KEY,
    SUPABASE_URL,
)
from partscatalog.errors import SnapshotNotFoundError
from partscatalog.models import BaseSnapshot, CursorState, PriceSnapshot

logger = logging.getLogger(__name__)


def dump_document(data: dict) -> str:
    return json.dumps(data, ensure_ascii=False, indent=2) + "\n"


class SnapshotStore:
    """保存先に依存しない読み書きロジック. 下位クラスは _read_text / _write_text を実装する."""

    def _read_text(self, name: str) -> str | None:
        """文書が存在しなければ None."""
        raise NotImplementedError

    def _write_text(self, name: str, text: str) -> None:
        raise NotImplementedError

    def describe(self, name: str) -> str:
        """エラーメッセージ用の保存場所表記."""
        return name

    def _read_json(self, name: str) -> dict | None:
        text = self._read_text(name)
        if text is None:
            return None
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            logger.warning("JSON として読めません: %s (%s)", self.describe(name), e)
            return None
        return data if isinstance(data, dict) else None

    def _write_json(self, name: str, data: dict) -> None:
        self._write_text(name, dump_document(data))
        logger.info("書き込み: %s", self.describe(name))

    # --- ベーススナップショット ---

    def read_base(self) -> BaseSnapshot:
        """Raises: SnapshotNotFoundError"""
        data = self._read_json(BASE_SNAPSHOT_FILE)
        if data is None or not isinstance(data.get("items"), list):
            raise SnapshotNotFoundError(self.describe(BASE_SNAPSHOT_FILE))
        return BaseSnapshot.from_dict(data)

    def write_base(self, snapshot: BaseSnapshot) -> None:
        self._write_json(BASE_SNAPSHOT_FILE, snapshot.to_dict())

    # --- 価格スナップショット (無ければ空) ---

    def read_prices(self) -> PriceSnapshot:
        return PriceSnapshot.from_dict(self._read_json(PRICE_SNAPSHOT_FILE))

    def write_prices(self, snapshot: PriceSnapshot) -> None:
        self._write_json(PRICE_SNAPSHOT_FILE, snapshot.to_dict())

    # --- カーソル (無ければ 0) ---

    def read_cursor(self) -> CursorState:
        return CursorState.from_dict(self._read_json(CURSOR_STATE_FILE))

    def write_cursor(self, state: CursorState) -> None:
        self._write_json(CURSOR_STATE_FILE, state.to_dict())

    # --- マージ済みカタログ ---

    def write_merged(self, snapshot: BaseSnapshot) -> None:
        self._write_json(MERGED_SNAPSHOT_FILE, snapshot.to_dict())


class LocalSnapshotStore(SnapshotStore):
    """ローカルディレクトリに保存する."""

    def __init__(self, data_dir: Path):
        self.data_dir = Path(data_dir)

    def path(self, name: str) -> Path:
        return self.data_dir / name

    def describe(self, name: str) -> str:
        return str(self.path(name))

    def _read_text(self, name: str) -> str | None:
        try:
            return self.path(name).read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def _write_text(self, name: str, text: str) -> None:
        target = self.path(name)
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(text)
            os.replace(tmp_path, target)
        except BaseException:
            Path(tmp_path).unlink(missing_ok=True)
            raise


def _is_not_found(error: StorageException) -> bool:
    """Storage のエラーがオブジェクト未存在を表すか.

    storage3 はレスポンス本文に statusCode を足した dict を引数に渡す
    (未存在は 404 または 400 + error="not_found")。
    """
    detail = error.args[0] if error.args else None
    if isinstance(detail, dict):
        if str(detail.get("statusCode")) == "404":
            return True
        return str(detail.get("error", "")).lower() in ("not_found", "not found")
    text = str(error).lower()
    return "404" in text or "not_found" in text or "not found" in text


class SupabaseSnapshotStore(SnapshotStore):
    """Supabase Storage のバケットに保存する."""

    def __init__(self, bucket: str = SUPABASE_BUCKET, client=None):
        self.bucket = bucket
        self._client = client

    def _bucket(self):
        if self._client is None:
            self._client = create_client(SUPABASE_URL, SUPABASE_SECRET_KEY)
        return self._client.storage.from_(self.bucket)

    def describe(self, name: str) -> str:
        return f"supabase://{self.bucket}/{name}"

    def _read_text(self, name: str) -> str | None:
        try:
            data = self._bucket().download(name)
        except StorageException as e:
            if not _is_not_found(e):
                raise
            logger.info("Storage に存在しません: %s", self.describe(name))
            return None
        return data.decode("utf-8")

    def _write_text(self, name: str, text: str) -> None:
        self._bucket().upload(
            name,
            text.encode("utf-8"),
            file_options={"content-type": "application/json", "upsert": "true"},
        )


def default_store() -> SnapshotStore:
    """SUPABASE_URL が設定されていれば Storage、無ければローカル."""
    if SUPABASE_URL and SUPABASE_SECRET_KEY:
        return SupabaseSnapshotStore()
    return LocalSnapshotStore(DATA_DIR)
