"""Tokenizer/filter pipeline that turns text into lemmas.

The analyzers follow Whoosh's composable tokenizer/filter design: a tokenizer
yields ``Token`` objects and each filter transforms or drops them. The
``LemmaExtractor`` wires the pipeline used for both indexed pages and search
queries, so the two sides always agree on what a word is.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable, Iterator, MutableMapping, Sequence
from dataclasses import dataclass, field
import re
from typing import Any, Protocol
import unicodedata

from searchengine.search.morphology import MorphAnalyzer


# Letters and digits; everything else separates tokens
WORD_PATTERN = r"[^\W_]+"

# Function words carry no search value
DEFAULT_EXCLUDED_GRAMMEMES = frozenset({"PREP", "CONJ", "PRCL", "INTJ"})


@dataclass
class Token:
    """Represents a token emitted by analyzers."""

    text: str
    position: int
    start_char: int
    end_char: int
    attributes: MutableMapping[str, Any] = field(default_factory=dict)

    def copy_with(self, **updates: Any) -> Token:
        data = {
            "text": self.text,
            "position": self.position,
            "start_char": self.start_char,
            "end_char": self.end_char,
            "attributes": dict(self.attributes),
        }
        data.update(updates)
        return Token(**data)


class Tokenizer(Protocol):
    """Protocol implemented by tokenizers."""

    def __call__(self, text: str) -> Iterator[Token]:  # pragma: no cover - interface definition
        ...


class TokenFilter(Protocol):
    """Protocol implemented by token filters."""

    def __call__(self, tokens: Iterable[Token]) -> Iterator[Token]:  # pragma: no cover - interface definition
        ...


class RegexTokenizer:
    """Regex-based tokenizer that yields word tokens."""

    def __init__(self, pattern: str = WORD_PATTERN, flags: int = re.UNICODE | re.MULTILINE) -> None:
        self.pattern = re.compile(pattern, flags)

    def __call__(self, text: str) -> Iterator[Token]:
        for position, match in enumerate(self.pattern.finditer(text)):
            yield Token(
                text=match.group(0),
                position=position,
                start_char=match.start(),
                end_char=match.end(),
            )


class MinLengthFilter:
    """Drops tokens shorter than ``min_length`` characters."""

    def __init__(self, min_length: int = 3) -> None:
        self.min_length = min_length

    def __call__(self, tokens: Iterable[Token]) -> Iterator[Token]:
        for token in tokens:
            if len(token.text) >= self.min_length:
                yield token


class DigitFilter:
    """Drops tokens that contain any digit (``mp3``, ``2024``, ``x86``)."""

    def __call__(self, tokens: Iterable[Token]) -> Iterator[Token]:
        for token in tokens:
            if not any(char.isdigit() for char in token.text):
                yield token


def _script_of(char: str) -> str:
    try:
        return unicodedata.name(char).split(" ", 1)[0]
    except ValueError:
        return "UNKNOWN"


class SingleScriptFilter:
    """Drops tokens mixing writing systems, e.g. Latin and Cyrillic homoglyphs."""

    def __call__(self, tokens: Iterable[Token]) -> Iterator[Token]:
        for token in tokens:
            scripts = {_script_of(char) for char in token.text}
            if len(scripts) == 1:
                yield token


class LowercaseFilter:
    """Filter that lowercases token text."""

    def __call__(self, tokens: Iterable[Token]) -> Iterator[Token]:
        for token in tokens:
            if token.text.islower():
                yield token
            else:
                yield token.copy_with(text=token.text.lower())


class LemmaFilter:
    """Replaces each token with its lemma; tokens the analyzer cannot parse are dropped.

    The original word is kept in ``attributes["surface"]``.
    """

    def __init__(self, morph: MorphAnalyzer, excluded_grammemes: frozenset[str] = DEFAULT_EXCLUDED_GRAMMEMES) -> None:
        self.morph = morph
        self.excluded_grammemes = excluded_grammemes

    def __call__(self, tokens: Iterable[Token]) -> Iterator[Token]:
        for token in tokens:
            parse = self.morph.analyze(token.text)
            if parse is None or not parse.lemma:
                continue
            if parse.grammemes & self.excluded_grammemes:
                continue
            attributes = dict(token.attributes)
            attributes["surface"] = token.text
            yield token.copy_with(text=parse.lemma, attributes=attributes)


class AnalyzerPipeline:
    """Composable analyzer pipeline (tokenizer + filters)."""

    def __init__(self, tokenizer: Tokenizer, filters: Sequence[TokenFilter] | None = None) -> None:
        self.tokenizer = tokenizer
        self.filters = list(filters or [])

    def __call__(self, text: str) -> list[Token]:
        stream: Iterable[Token] = self.tokenizer(text)
        for token_filter in self.filters:
            stream = token_filter(stream)
        tokens = list(stream)
        for idx, token in enumerate(tokens):  # normalize positions post-filtering
            token.position = idx
        return tokens


class LemmaExtractor:
    """Maps text to lemmas with the same rules for pages and queries.

    Tokens are runs of letters/digits; a token survives when it is at least
    ``min_length`` characters long, has no digits and uses one script. It is
    then lowercased and handed to the morphological analyzer. The extractor
    holds no mutable state, so identical input always yields identical output.
    """

    def __init__(
        self,
        morph: MorphAnalyzer,
        *,
        min_length: int = 3,
        excluded_grammemes: frozenset[str] = DEFAULT_EXCLUDED_GRAMMEMES,
    ) -> None:
        self.morph = morph
        self.min_length = min_length
        self.pipeline = AnalyzerPipeline(
            RegexTokenizer(),
            [
                MinLengthFilter(min_length),
                DigitFilter(),
                SingleScriptFilter(),
                LowercaseFilter(),
                LemmaFilter(morph, excluded_grammemes),
            ],
        )

    def analyze(self, text: str) -> list[Token]:
        """Lemma tokens with their character offsets in ``text``."""
        if not text:
            return []
        return self.pipeline(text)

    def lemma_counts(self, text: str) -> dict[str, int]:
        """Occurrence count per lemma for one document."""
        return dict(Counter(token.text for token in self.analyze(text)))

    def lemmas(self, text: str) -> list[str]:
        """Distinct lemmas in first-occurrence order (used for queries)."""
        return list(dict.fromkeys(token.text for token in self.analyze(text)))

    def lemmatize(self, word: str) -> str | None:
        """Lemma of a single word, or None when the word is filtered out."""
        tokens = self.analyze(word)
        if len(tokens) != 1 or tokens[0].start_char != 0 or tokens[0].end_char != len(word):
            return None
        return tokens[0].text
