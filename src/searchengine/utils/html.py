"""HTML to plain text extraction for indexing.

Turns a fetched HTML document into its title, visible text and outgoing
links. Malformed markup never raises: when the parser gives up, the text is
recovered with a tag-stripping regex and no links are reported.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import html as html_lib
import logging
import re
from urllib.parse import urldefrag, urljoin, urlparse

from bs4 import BeautifulSoup


logger = logging.getLogger(__name__)

# Elements whose content is never visible text
NON_CONTENT_TAGS = ("script", "style", "noscript", "iframe", "template", "svg", "canvas", "object", "embed")

# Elements whose href is a crawlable hyperlink
LINK_TAGS = ("a", "area")

_WHITESPACE = re.compile(r"\s+")
_TAG = re.compile(r"<[^>]*>")
_NON_CONTENT_BLOCK = re.compile(
    r"<(script|style|noscript|iframe|template|svg)\b[^>]*>.*?</\1\s*>",
    re.IGNORECASE | re.DOTALL,
)
_TITLE = re.compile(r"<title[^>]*>(.*?)</title\s*>", re.IGNORECASE | re.DOTALL)


def collapse_whitespace(text: str) -> str:
    return _WHITESPACE.sub(" ", text).strip()


@dataclass(slots=True)
class ExtractedPage:
    """Visible content of one HTML document."""

    title: str
    text: str
    links: set[str] = field(default_factory=set)


class TextExtractor:
    """Extracts title, text and absolute http(s) links from HTML."""

    def __init__(self, parser: str = "html.parser") -> None:
        self.parser = parser

    def extract(self, html: str, base_url: str) -> ExtractedPage:
        """Extract a page.

        Args:
            html: Raw HTML document.
            base_url: URL the document was fetched from; relative links are
                resolved against it, or against ``<base href>`` when present.

        Returns:
            ExtractedPage with whitespace-collapsed text.
        """
        if not html:
            return ExtractedPage(title="", text="")
        try:
            return self._extract_with_soup(html, base_url)
        except Exception as exc:
            logger.warning(f"HTML parsing failed for {base_url}, falling back to tag strip: {exc}")
            return self._extract_with_regex(html)

    def _extract_with_soup(self, html: str, base_url: str) -> ExtractedPage:
        soup = BeautifulSoup(html, self.parser)

        base_tag = soup.find("base", href=True)
        if base_tag is not None:
            href = base_tag["href"]
            if isinstance(href, list):
                href = href[0] if href else ""
            if href:
                base_url = urljoin(base_url, href)

        for tag in soup(list(NON_CONTENT_TAGS)):
            tag.decompose()

        title = ""
        if soup.title is not None:
            title = collapse_whitespace(soup.title.get_text(" "))
        if not title:
            heading = soup.find("h1")
            if heading is not None:
                title = collapse_whitespace(heading.get_text(" "))

        body = soup.body if soup.body is not None else soup
        for head in body.find_all("head"):
            head.decompose()
        text = collapse_whitespace(body.get_text(" "))

        return ExtractedPage(title=title, text=text, links=self._extract_links(soup, base_url))

    def _extract_links(self, soup: BeautifulSoup, base_url: str) -> set[str]:
        links: set[str] = set()
        # <link rel=...> points at stylesheets, icons and feeds, not pages
        for element in soup.find_all(list(LINK_TAGS), href=True):
            href = element["href"]
            if isinstance(href, list):
                href = href[0] if href else ""
            href = href.strip()
            if not href:
                continue
            absolute, _fragment = urldefrag(urljoin(base_url, href))
            if urlparse(absolute).scheme in ("http", "https"):
                links.add(absolute)
        return links

    def _extract_with_regex(self, html: str) -> ExtractedPage:
        title_match = _TITLE.search(html)
        title = collapse_whitespace(html_lib.unescape(title_match.group(1))) if title_match else ""
        stripped = _NON_CONTENT_BLOCK.sub(" ", html)
        if title_match:
            stripped = stripped.replace(title_match.group(0), " ")
        text = collapse_whitespace(html_lib.unescape(_TAG.sub(" ", stripped)))
        return ExtractedPage(title=title, text=text)
