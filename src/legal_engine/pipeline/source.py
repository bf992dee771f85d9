"""
IP Force document source: judgment text extraction and keyword search.

HTML parsing is split into pure functions so it can be exercised on saved
pages without a network.
"""

import logging
from typing import List, Optional, Protocol
from urllib.parse import quote

import httpx
from bs4 import BeautifulSoup

from . import SearchResult
from ..errors import FetchError

logger = logging.getLogger(__name__)

CONTENTS_SELECTOR = "div#hanketsu_contents"
CASE_LINK_SELECTOR = "span.name a[href*='/Hanketsu/jiken/no/']"


class DocumentSource(Protocol):
    async def fetch_and_extract(self, case_id: int) -> str: ...

    async def search(
        self,
        keyword: Optional[str] = None,
        filter: Optional[str] = None,
        limit: int = 10,
    ) -> List[SearchResult]: ...


def extract_judgment_text(html: str) -> str:
    """Judgment body text; the whole page's text when the body container is missing."""
    soup = BeautifulSoup(html, "html.parser")
    contents = soup.select_one(CONTENTS_SELECTOR)
    if contents is not None:
        return contents.get_text()
    return soup.get_text(separator=" ")


def parse_search_results(html: str, limit: int = 10) -> List[SearchResult]:
    """Case links from a search page, in page order, skipping untitled or non-numeric entries."""
    soup = BeautifulSoup(html, "html.parser")
    results: List[SearchResult] = []

    for link in soup.select(CASE_LINK_SELECTOR):
        if len(results) >= limit:
            break

        href = link.get("href", "")
        _, sep, tail = href.partition("/no/")
        case_id = tail.strip("/")
        if not sep or not case_id.isdigit():
            continue

        title = link.get_text().strip()
        if not title:
            continue

        results.append(SearchResult(id=int(case_id), title=title, date=""))

    return results


class IpForceSource:
    """
    Scraper for https://ipforce.jp/Hanketsu.

    Usage:
        source = IpForceSource()
        text = await source.fetch_and_extract(14753)
        hits = await source.search("特許", limit=5)
    """

    def __init__(
        self,
        base_url: str = "https://ipforce.jp/Hanketsu",
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    async def _get(self, url: str) -> str:
        try:
            if self._client is not None:
                response = await self._client.get(url)
            else:
                async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
                    response = await client.get(url)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise FetchError(f"GET {url} failed: {e}") from e
        return response.text

    async def fetch_and_extract(self, case_id: int) -> str:
        url = f"{self.base_url}/jiken/no/{case_id}"
        logger.info(f"Fetching {url}")
        text = extract_judgment_text(await self._get(url))
        logger.info(f"Fetched {len(text)} chars for case {case_id}")
        return text

    async def search(
        self,
        keyword: Optional[str] = None,
        filter: Optional[str] = None,
        limit: int = 10,
    ) -> List[SearchResult]:
        """
        Server-side keyword search.

        `filter` (right type, e.g. patent vs. trademark) is accepted for API
        compatibility; the site's keyword search does not take it.
        """
        if keyword:
            url = f"{self.base_url}/search/keyword/{quote(keyword, safe='')}"
        else:
            url = f"{self.base_url}/search"
        logger.info(f"Searching {url}")
        return parse_search_results(await self._get(url), limit=limit)
