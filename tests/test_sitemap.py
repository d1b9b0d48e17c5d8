"""sitemap モジュールのユニットテスト."""

from partscatalog.sitemap import extract_locs, guess_name_from_url, is_sitemap_url, parse_robots_sitemaps


class TestExtractLocs:
    """extract_locs のテスト."""

    def test_urlset(self):
        xml = """<?xml version="1.0" encoding="UTF-8"?>
        <urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">
          <url><loc>https://shop.test/bremsscheibe/A3091234567</loc></url>
          <url><loc>
            https://shop.test/search?search=A309&amp;page=2
          </loc></url>
          <url><loc></loc></url>
        </urlset>"""
        assert extract_locs(xml) == [
            "https://shop.test/bremsscheibe/A3091234567",
            "https://shop.test/search?search=A309&page=2",
        ]

    def test_no_locs(self):
        assert extract_locs("<html></html>") == []


class TestIsSitemapUrl:
    """is_sitemap_url のテスト."""

    def test_nested_sitemaps(self):
        assert is_sitemap_url("https://shop.test/sitemap/products-1.xml")
        assert is_sitemap_url("https://shop.test/sitemap/products-1.xml.gz")
        assert is_sitemap_url("https://shop.test/sitemap.xml?page=2")

    def test_page_url(self):
        assert not is_sitemap_url("https://shop.test/bremsscheibe/A3091234567")
        assert not is_sitemap_url("https://shop.test/xml-adapter")


class TestParseRobotsSitemaps:
    """parse_robots_sitemaps のテスト."""

    def test_directives(self):
        robots = "User-agent: *\nDisallow: /konto\nSitemap: https://shop.test/a.xml\nsitemap:   https://shop.test/b.xml  \n"
        assert parse_robots_sitemaps(robots) == ["https://shop.test/a.xml", "https://shop.test/b.xml"]

    def test_no_directives(self):
        assert parse_robots_sitemaps("User-agent: *\nDisallow:\n") == []


class TestGuessNameFromUrl:
    """guess_name_from_url のテスト."""

    def test_second_to_last_segment(self):
        assert guess_name_from_url("https://shop.test/bremsscheibe-vorne/A3091234567") == "Bremsscheibe Vorne"

    def test_single_segment(self):
        assert guess_name_from_url("https://shop.test/oel_filter") == "Oel Filter"

    def test_root(self):
        assert guess_name_from_url("https://shop.test/") == "Unknown"
