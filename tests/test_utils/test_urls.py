"""
Tests for URL helpers.
"""

import pytest

from comicrawl.utils.urls import absolutize, domain_of, extract_slug, gallery_id, normalize_url


class TestNormalizeUrl:
    """Tests for normalize_url()."""

    @pytest.mark.unit
    def test_drops_scheme_www_query_and_slash(self) -> None:
        """Test the canonical form."""
        assert normalize_url("https://www.Example.com/truyen-tranh/abc/?page=2#top") == (
            "example.com/truyen-tranh/abc"
        )

    @pytest.mark.unit
    def test_equivalent_urls_match(self) -> None:
        """Test http/https and www variants normalize alike."""
        assert normalize_url("http://example.com/a") == normalize_url("https://www.example.com/a/")

    @pytest.mark.unit
    def test_empty(self) -> None:
        """Test empty input stays empty."""
        assert normalize_url("") == ""
        assert normalize_url(None) == ""


class TestSlugs:
    """Tests for extract_slug() and gallery_id()."""

    @pytest.mark.unit
    def test_comic_path(self) -> None:
        """Test /truyen-tranh/<slug> URLs."""
        assert extract_slug("https://site.test/truyen-tranh/one-piece") == "one-piece"
        assert extract_slug("https://site.test/truyen-tranh/one-piece/chapter-3") == "one-piece"

    @pytest.mark.unit
    def test_gallery(self) -> None:
        """Test /g/<id> URLs map to gallery-<id>."""
        assert gallery_id("https://gallery.test/g/123/chapter/9") == "123"
        assert extract_slug("https://gallery.test/g/123") == "gallery-123"

    @pytest.mark.unit
    def test_fallback_last_segment(self) -> None:
        """Test other URLs use their last meaningful segment."""
        assert extract_slug("https://site.test/manga/Some Title") == "some-title"
        assert extract_slug("https://site.test/") == ""


class TestDomains:
    """Tests for domain_of() and absolutize()."""

    @pytest.mark.unit
    def test_domain_without_www(self) -> None:
        """Test the host is lowercased and stripped of www."""
        assert domain_of("https://WWW.Example.com/a") == "example.com"

    @pytest.mark.unit
    def test_absolutize(self) -> None:
        """Test relative, protocol-relative and unusable links."""
        assert absolutize("https://site.test/a/b", "/c") == "https://site.test/c"
        assert absolutize("https://site.test/a/b", "//cdn.test/x.jpg") == "https://cdn.test/x.jpg"
        assert absolutize("https://site.test", "javascript:void(0)") is None
        assert absolutize("https://site.test", "data:image/png;base64,AAA") is None
        assert absolutize("https://site.test", None) is None
