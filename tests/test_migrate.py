"""migrate モジュールのテスト."""

import json

import pytest

from partscatalog.errors import CatalogError, SnapshotNotFoundError
from partscatalog.migrate import migrate_record, migrate_snapshot, normalize_group_entry
from partscatalog.models import Availability, PriceEntry, PriceSnapshot


@pytest.fixture
def base_path(tmp_path):
    path = tmp_path / "parts-base.json"
    path.write_text(json.dumps({
        "prefixes": ["A309", "A310"],
        "limit": 100,
        "count": 3,
        "generatedAt": "2026-02-01T00:00:00+00:00",
        "items": [
            {
                "partNumber": "A3091234567",
                "name": "Bremsscheibe vorne",
                "url": "https://shop.test/p/A3091234567",
                "hierarchy": {"groups": ["Bremse > Scheibe", " ", "Bremse"]},
            },
            {"partNumber": "A3101234567", "name": "Zündkerze", "url": "https://shop.test/p/A3101234567"},
            {"partNumber": "A2221234567", "name": "Sonstiges", "url": "https://shop.test/p/A2221234567"},
            "kaputt",
        ],
    }), encoding="utf-8")
    return path


def _read_ndjson(path):
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


class TestNormalizeGroupEntry:
    """normalize_group_entry のテスト."""

    def test_separators(self):
        assert normalize_group_entry("Motor > Kühlung") == ("Motor", "Kühlung")
        assert normalize_group_entry("Motor/Kühlung/Pumpe") == ("Motor", "Kühlung")
        assert normalize_group_entry("Motor::Öl") == ("Motor", "Öl")

    def test_single_and_empty(self):
        assert normalize_group_entry("Motor") == ("Motor", "_default")
        assert normalize_group_entry(" > ") == ("unknown", "unknown")


class TestMigrateRecord:
    """migrate_record のテスト."""

    def test_placeholder_enrichment(self):
        record = migrate_record({"partNumber": "A3091", "name": "x"})

        assert record["hierarchy"] == {"groups": []}
        assert record["enrichment"] == {
            "price": None,
            "availability": {"status": "unknown", "label": "Unknown"},
            "lastCheckedAt": None,
        }

    def test_enrichment_from_prices(self):
        prices = PriceSnapshot(prices={
            "A3091": PriceEntry(
                updated_at="2026-03-01T00:00:00+00:00",
                price="5,00 €",
                availability=Availability("in_stock", "In stock"),
            ),
        })
        record = migrate_record({"partNumber": "a309-1", "name": "x"}, prices)

        assert record["enrichment"]["price"] == "5,00 €"
        assert record["enrichment"]["availability"]["status"] == "in_stock"
        assert record["enrichment"]["lastCheckedAt"] == "2026-03-01T00:00:00+00:00"

    def test_keeps_other_fields(self):
        record = migrate_record({"partNumber": "A3091", "hierarchy": {"model": "W204", "groups": "Motor"}})

        assert record["hierarchy"] == {"model": "W204", "groups": []}


class TestMigrateSnapshot:
    """migrate_snapshot のテスト."""

    def test_outputs(self, tmp_path, base_path):
        output = tmp_path / "index"
        result = migrate_snapshot(base_path, output, ["A309", "A310"])

        assert result.total_parts == 3
        assert result.prefix_counts == {"A309": 1, "A310": 1}

        records = _read_ndjson(output / "parts.ndjson")
        assert [r["partNumber"] for r in records] == ["A3091234567", "A3101234567", "A2221234567"]
        assert records[0]["hierarchy"]["groups"] == ["Bremse > Scheibe", "Bremse"]

        assert _read_ndjson(output / "prefix" / "A310.ndjson") == [
            {"partNumber": "A3101234567", "name": "Zündkerze", "url": "https://shop.test/p/A3101234567"},
        ]

        groups = json.loads((output / "groups.json").read_text(encoding="utf-8"))
        assert groups == {"Bremse": {"Scheibe": 1, "_default": 1}}

    def test_missing_input(self, tmp_path):
        with pytest.raises(SnapshotNotFoundError):
            migrate_snapshot(tmp_path / "nope.json", tmp_path / "index", ["A309"])

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "parts-base.json"
        path.write_text("{", encoding="utf-8")

        with pytest.raises(CatalogError):
            migrate_snapshot(path, tmp_path / "index", ["A309"])
