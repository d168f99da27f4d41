"""Snippet extraction and query highlighting for search results.

A snippet is a fixed-size window of the page text. The window starts at the
beginning of the page unless the first matching word lies beyond it, in which
case it starts at the sentence holding that word. Every word whose lemma (or
lowercased form) is a query lemma is wrapped in an emphasis tag.
"""

from __future__ import annotations

from collections.abc import Collection
import html
import re

from searchengine.search.analyzers import LemmaExtractor, RegexTokenizer


ELLIPSIS = "..."

# Sentence-ending punctuation pattern
SENTENCE_END_PATTERN = re.compile(r"[.!?]\s+")
# Word boundary pattern (for fallback)
WORD_BOUNDARY_PATTERN = re.compile(r"\s+")

_WORDS = RegexTokenizer()


def find_sentence_start(text: str, position: int, max_lookback: int = 100) -> int:
    """Find the start of the sentence containing the position.

    Args:
        text: The full text to search in.
        position: The position to find sentence start for.
        max_lookback: Maximum characters to look back.

    Returns:
        Index of sentence start, a nearby word boundary, or ``position - max_lookback``.
    """
    if position <= 0:
        return 0

    start_search = max(0, position - max_lookback)
    search_text = text[start_search:position]

    matches = list(SENTENCE_END_PATTERN.finditer(search_text))
    if matches:
        return start_search + matches[-1].end()

    words = list(WORD_BOUNDARY_PATTERN.finditer(search_text))
    if words:
        quarter_pos = len(search_text) // 4
        for match in words:
            if match.start() >= quarter_pos:
                return start_search + match.end()

    return start_search


def _is_match(word: str, lemmas: Collection[str], extractor: LemmaExtractor) -> bool:
    lowered = word.lower()
    if lowered in lemmas:
        return True
    return extractor.lemmatize(word) in lemmas


def find_first_match(text: str, lemmas: Collection[str], extractor: LemmaExtractor) -> int:
    """Character offset of the first word matching a query lemma, or -1."""
    for token in _WORDS(text):
        if _is_match(token.text, lemmas, extractor):
            return token.start_char
    return -1


def highlight_lemmas(text: str, lemmas: Collection[str], extractor: LemmaExtractor, tag: str = "b") -> str:
    """Wrap every word of ``text`` matching a query lemma in ``<tag>...</tag>``.

    Text outside the tags is HTML-escaped.
    """
    if not text or not lemmas:
        return html.escape(text, quote=False)

    parts: list[str] = []
    cursor = 0
    for token in _WORDS(text):
        if not _is_match(token.text, lemmas, extractor):
            continue
        parts.append(html.escape(text[cursor : token.start_char], quote=False))
        parts.append(f"<{tag}>{html.escape(token.text, quote=False)}</{tag}>")
        cursor = token.end_char
    parts.append(html.escape(text[cursor:], quote=False))
    return "".join(parts)


def build_snippet(
    content: str,
    lemmas: Collection[str],
    extractor: LemmaExtractor,
    *,
    max_chars: int = 200,
    tag: str = "b",
) -> str:
    """Build a highlighted snippet of at most ``max_chars`` text characters.

    Args:
        content: Plain page text.
        lemmas: Query lemmas to highlight.
        extractor: Extractor used to lemmatize words of the content.
        max_chars: Window size; an ellipsis marks text cut at either end.
        tag: Emphasis tag name.

    Returns:
        The highlighted snippet, or an empty string for empty content.
    """
    if not content:
        return ""

    start = 0
    first_match = find_first_match(content, lemmas, extractor) if lemmas else -1
    if first_match >= 0 and first_match >= max_chars // 2 and len(content) > max_chars:
        start = find_sentence_start(content, first_match, max_lookback=max_chars // 2)
    end = min(len(content), start + max_chars)
    if start > 0 and end == len(content):
        # Keep the window full when the match sits near the end of the page
        start = max(0, end - max_chars)

    window = content[start:end]
    snippet = highlight_lemmas(window, lemmas, extractor, tag=tag)
    if start > 0:
        snippet = ELLIPSIS + snippet
    if end < len(content):
        snippet += ELLIPSIS
    return snippet
