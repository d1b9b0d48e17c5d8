"""extract モジュールのユニットテスト."""

from pathlib import Path

from partscatalog.extract import (
    extract_availability,
    extract_part_number_from_href,
    extract_parts,
    extract_price,
    find_next_page_url,
    find_part_number,
    parse_detail_page,
    parse_json,
)
from partscatalog.models import IN_STOCK, OUT_OF_STOCK, UNKNOWN

FIXTURES_DIR = Path(__file__).parent / "fixtures"
BASE_URL = "https://shop.test/search?search=A309"


def _load_fixture(name: str) -> str:
    return (FIXTURES_DIR / name).read_text(encoding="utf-8")


class TestExtractPrice:
    """extract_price のテスト."""

    def test_thousands_and_euro_sign(self):
        assert extract_price("Preis: 1.234,56 € inkl. MwSt.") == "1.234,56 €"

    def test_eur_suffix(self):
        assert extract_price("49,90 EUR") == "49,90 EUR"

    def test_without_currency(self):
        assert extract_price("ab 12.50") == "12.50"

    def test_no_price(self):
        assert extract_price("Preis auf Anfrage") is None
        assert extract_price("") is None


class TestExtractAvailability:
    """extract_availability のテスト."""

    def test_out_of_stock_wins_over_in_stock(self):
        """「nicht verfügbar」は in_stock の語を含むが out_of_stock になること."""
        result = extract_availability("Artikel ist nicht verfügbar")
        assert result.status == OUT_OF_STOCK

    def test_in_stock(self):
        assert extract_availability("Sofort lieferbar").status == IN_STOCK
        assert extract_availability("Auf Lager").status == IN_STOCK
        assert extract_availability("https://schema.org/InStock").status == IN_STOCK

    def test_preorder_is_unknown_with_label(self):
        result = extract_availability("Jetzt vorbestellen")
        assert result.status == UNKNOWN
        assert result.label == "Preorder"

    def test_default_unknown(self):
        result = extract_availability("Bremsscheibe")
        assert result.status == UNKNOWN
        assert result.label == "Unknown"


class TestFindPartNumber:
    """find_part_number / extract_part_number_from_href のテスト."""

    def test_spaced_part_number(self):
        assert find_part_number("Teilenummer: A 309 123 45 67", ["A309"]) == "A3091234567"

    def test_does_not_swallow_following_price(self):
        assert find_part_number("A 309 987 65 43 49,90 EUR", ["A309"]) == "A3099876543"

    def test_prefix_inside_word_is_ignored(self):
        assert find_part_number("XA3091234567", ["A309"]) is None

    def test_prefix_only_is_ignored(self):
        assert find_part_number("Serie A309 Zubehör", ["A309"]) is None

    def test_href_with_separators(self):
        assert extract_part_number_from_href("/teile/A310-555-12-34", ["A309", "A310"]) == "A3105551234"

    def test_href_lowercase(self):
        assert extract_part_number_from_href("/p/a3091234567?ref=x", ["A309"]) == "A3091234567"

    def test_href_generic_pattern_without_prefixes(self):
        assert extract_part_number_from_href("https://shop.test/filter/A0004203220", []) == "A0004203220"

    def test_href_not_found(self):
        assert extract_part_number_from_href("/kategorie/motor", ["A309"]) is None


class TestExtractParts:
    """extract_parts のテスト."""

    def test_containers(self):
        """商品コンテナから品番・名前・価格・在庫が取れること."""
        html = _load_fixture("search_containers.html")
        records = extract_parts(html, BASE_URL, ["A309", "A310"])

        assert [r.part_number for r in records] == ["A3091234567", "A3099876543", "A3105551234"]

        first = records[0]
        assert first.name == "Bremsscheibe vorne"
        assert first.url == "https://shop.test/bremsscheibe-vorne/A3091234567"
        assert first.price == "1.234,56 €"
        assert first.availability.status == IN_STOCK

        second = records[1]
        assert second.name == "Luftfilter"
        assert second.price == "49,90 EUR"
        assert second.availability.status == OUT_OF_STOCK

        third = records[2]
        assert third.name == "Zündkerze"
        assert third.price is None
        assert third.availability.status == UNKNOWN

    def test_prefix_filter(self):
        html = _load_fixture("search_containers.html")
        records = extract_parts(html, BASE_URL, ["A310"])

        assert [r.part_number for r in records] == ["A3105551234"]

    def test_anchor_fallback(self):
        """コンテナが無い場合はアンカーから取得し、ナビゲーションは除外すること."""
        html = _load_fixture("search_anchors.html")
        records = extract_parts(html, BASE_URL, ["A309"])

        assert len(records) == 1
        assert records[0].part_number == "A3092223344"
        assert records[0].url == "https://shop.test/bremsbelag/A3092223344"
        assert records[0].price == "59,99 €"
        assert records[0].availability.label == "Preorder"

    def test_json_ld(self):
        """JSON-LD の Product が1件だけ取れること."""
        html = _load_fixture("search_json_ld.html")
        records = extract_parts(html, BASE_URL, ["A309"])

        assert len(records) == 1
        record = records[0]
        assert record.part_number == "A309999"
        assert record.name == "Ölfilter"
        assert record.url == "https://shop.test/oelfilter/A309999"
        assert record.price == "12.50 EUR"
        assert record.availability.status == IN_STOCK

    def test_embedded_state(self):
        html = _load_fixture("search_embedded_state.html")
        records = extract_parts(html, BASE_URL, ["A309", "A310"])

        assert [r.part_number for r in records] == ["A3091112233", "A3104445566"]
        assert records[0].name == "Wasserpumpe"
        assert records[0].price == "89,00 €"
        assert records[0].url == "https://shop.test/wasserpumpe/A3091112233"
        assert records[0].availability.status == IN_STOCK
        assert records[1].price == "35,50 €"
        assert records[1].url == BASE_URL
        assert records[1].availability.status == OUT_OF_STOCK

    def test_embedded_state_prefix_filter(self):
        html = _load_fixture("search_embedded_state.html")
        records = extract_parts(html, BASE_URL, ["A309"])

        assert [r.part_number for r in records] == ["A3091112233"]

    def test_embedded_state_skipped_when_enough_results(self):
        """コンテナで3件以上取れたら埋め込み state は見ないこと."""
        state = _load_fixture("search_embedded_state.html").split("<body>")[0]
        body = _load_fixture("search_containers.html").split("<body>")[1]
        records = extract_parts(state + "<body>" + body, BASE_URL, ["A309", "A310"])

        assert "A3091112233" not in [r.part_number for r in records]

    def test_malformed_json_ld_is_ignored(self):
        html = '<script type="application/ld+json">{"@type": "Product", "sku": </script>'
        assert extract_parts(html, BASE_URL, ["A309"]) == []

    def test_empty_html(self):
        assert extract_parts("<html><body></body></html>", BASE_URL, ["A309"]) == []


class TestFindNextPageUrl:
    """find_next_page_url のテスト."""

    def test_rel_next(self):
        html = _load_fixture("search_containers.html")
        assert find_next_page_url(html, BASE_URL) == "https://shop.test/search?search=A309&page=2"

    def test_numeric_pagination(self):
        """ページ番号リンクのうち現在より大きい最小のものを返すこと."""
        html = """
        <div class="paging">
          <a href="/search?search=A309&amp;page=1">1</a>
          <a href="/search?search=A309&amp;page=3">3</a>
          <a href="/search?search=A309&amp;page=2">2</a>
          <a href="/other?page=9">9</a>
        </div>
        """
        current = "https://shop.test/search?search=A309&page=2"
        assert find_next_page_url(html, current) == "https://shop.test/search?search=A309&page=3"

    def test_last_page(self):
        html = '<a href="/search?search=A309&amp;page=1">1</a>'
        current = "https://shop.test/search?search=A309&page=1"
        assert find_next_page_url(html, current) is None


class TestParseDetailPage:
    """parse_detail_page のテスト."""

    def test_in_stock(self):
        meta = parse_detail_page(_load_fixture("detail_in_stock.html"))

        assert meta.price == "1.299,00 €"
        assert meta.availability.status == IN_STOCK
        assert meta.fetched

    def test_soldout(self):
        meta = parse_detail_page(_load_fixture("detail_soldout.html"))

        assert meta.price == "49,90 €"
        assert meta.availability.status == OUT_OF_STOCK
        assert meta.availability.label == "Ausverkauft"

    def test_no_markers(self):
        meta = parse_detail_page("<html><body><h1>Teil</h1></body></html>")

        assert meta.price is None
        assert meta.availability.status == UNKNOWN


class TestParseJson:
    """parse_json のテスト."""

    def test_trailing_text_is_ignored(self):
        result = parse_json('x = {"a": 1};', 4)
        assert result.ok
        assert result.value == {"a": 1}

    def test_error(self):
        result = parse_json("{broken")
        assert not result.ok
        assert result.error
