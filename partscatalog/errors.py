"""例外定義."""

from __future__ import annotations


class CatalogError(Exception):
    """パイプライン全体の基底例外."""


class SnapshotNotFoundError(CatalogError):
    """入力スナップショットが見つからない."""

    def __init__(self, *paths: str):
        if len(paths) == 1:
            message = f"Snapshot missing: {paths[0]}"
        else:
            message = "No data source found. Expected one of: " + ", ".join(paths)
        super().__init__(message)
        self.paths = list(paths)


class RecordFormatError(CatalogError):
    """正規化済みレコード行が JSON として読めない."""

    def __init__(self, line_number: int, reason: str):
        super().__init__(f"Malformed record at line {line_number}: {reason}")
        self.line_number = line_number


class UpstreamError(CatalogError):
    """巡回を駆動するリクエスト (検索ページ) の失敗."""
