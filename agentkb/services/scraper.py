# =============================================================================
# Website Scraper — Same-Origin Crawl With httpx + BeautifulSoup
# =============================================================================
#
# Breadth-first crawl from a start URL, following only links on the same
# host, up to `scrape_max_pages` pages. Each page contributes the text of its
# <article> (or <body>) with scripts, styles and navigation chrome removed.
#
# A page that fails to load is logged and skipped; the crawl fails only when
# no page yields any text. Bot-verification interstitials ("Verifying you are
# human", Cloudflare) count as failures.
# =============================================================================

from __future__ import annotations

import logging
from collections import deque
from urllib.parse import urldefrag, urljoin, urlparse

import httpx
from bs4 import BeautifulSoup

from agentkb.config import settings

logger = logging.getLogger(__name__)

_USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)
_STRIP_TAGS = ("script", "style", "noscript", "nav", "header", "footer", "svg", "form")
_CHALLENGE_MARKERS = ("Verifying you are human", "cf-browser-verification")
_SKIP_EXTENSIONS = (
    ".png", ".jpg", ".jpeg", ".gif", ".svg", ".webp", ".pdf", ".zip",
    ".mp3", ".mp4", ".css", ".js", ".ico",
)


class ScrapeError(RuntimeError):
    """Raised when a crawl produced no usable text."""


def html_to_text(html: str) -> str:
    """Visible text of an HTML page, one block per line, blank lines dropped."""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(_STRIP_TAGS):
        tag.decompose()
    root = soup.find("article") or soup.body or soup
    lines = (line.strip() for line in root.get_text("\n").splitlines())
    return "\n".join(line for line in lines if line)


def extract_links(html: str, base_url: str) -> list[str]:
    """Absolute same-host links of a page, fragments removed, in page order."""
    soup = BeautifulSoup(html, "html.parser")
    host = urlparse(base_url).netloc
    links: list[str] = []
    for anchor in soup.find_all("a", href=True):
        url, _fragment = urldefrag(urljoin(base_url, anchor["href"]))
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or parsed.netloc != host:
            continue
        if parsed.path.lower().endswith(_SKIP_EXTENSIONS):
            continue
        if url not in links:
            links.append(url)
    return links


def scrape_site(
    start_url: str,
    max_pages: int | None = None,
    client: httpx.Client | None = None,
) -> str:
    """
    Crawl a site and return the text of every page, pages separated by blank lines.

    Args:
        start_url: First page to fetch; defines the allowed host.
        max_pages: Page budget (default settings.scrape_max_pages).
        client: Optional preconfigured httpx client (tests use MockTransport).

    Raises:
        ScrapeError: If no page yielded any text.
    """
    budget = max_pages or settings.scrape_max_pages
    owns_client = client is None
    if client is None:
        client = httpx.Client(
            timeout=settings.scrape_timeout_seconds,
            follow_redirects=True,
            headers={"User-Agent": _USER_AGENT},
        )

    queue: deque[str] = deque([urldefrag(start_url)[0]])
    seen: set[str] = set(queue)
    pages: list[str] = []
    errors: list[str] = []

    try:
        while queue and len(pages) + len(errors) < budget:
            url = queue.popleft()
            try:
                response = client.get(url)
                response.raise_for_status()
            except httpx.HTTPError as exc:
                logger.warning("Failed to fetch %s: %s", url, exc)
                errors.append(f"{url}: {exc}")
                continue

            if "html" not in response.headers.get("content-type", "text/html"):
                continue
            html = response.text
            if any(marker in html for marker in _CHALLENGE_MARKERS):
                logger.warning("Bot verification page at %s, skipping", url)
                errors.append(f"{url}: bot verification detected")
                continue

            text = html_to_text(html)
            if text:
                pages.append(text)

            for link in extract_links(html, str(response.url)):
                if link not in seen:
                    seen.add(link)
                    queue.append(link)
    finally:
        if owns_client:
            client.close()

    logger.info(
        "Scraped %s: %d pages with text, %d failures", start_url, len(pages), len(errors),
    )
    if not pages:
        detail = errors[0] if errors else "no text content found"
        raise ScrapeError(f"Failed to scrape {start_url}: {detail}")
    return "\n\n".join(pages)
