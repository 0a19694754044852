"""
Extractor selection by domain.
"""

from comicrawl.core.config import Settings, get_settings
from comicrawl.extractors.api import ApiExtractor
from comicrawl.extractors.base import ContentExtractor
from comicrawl.extractors.html import HtmlExtractor
from comicrawl.services.fetch_client import FetchClient
from comicrawl.utils.urls import domain_of


class ExtractorRegistry:
    """
    Picks the extractor for a target URL.

    Domains listed in ``settings.api_domains`` (or subdomains of them)
    use the JSON API extractor; everything else is scraped as HTML.
    Extra extractors can be registered per domain.
    """

    def __init__(self, fetch_client: FetchClient, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()
        self.html = HtmlExtractor(fetch_client, self.settings)
        self.api = ApiExtractor(fetch_client, self.settings)
        self._overrides: dict[str, ContentExtractor] = {}

    def register(self, domain: str, extractor: ContentExtractor) -> None:
        self._overrides[domain.lower()] = extractor

    def for_domain(self, domain: str) -> ContentExtractor:
        domain = (domain or "").lower()
        if domain.startswith("www."):
            domain = domain[4:]
        if domain in self._overrides:
            return self._overrides[domain]
        for api_domain in self.settings.api_domains:
            api_domain = api_domain.lower()
            if domain == api_domain or domain.endswith("." + api_domain):
                return self.api
        return self.html

    def for_url(self, url: str) -> ContentExtractor:
        return self.for_domain(domain_of(url))
