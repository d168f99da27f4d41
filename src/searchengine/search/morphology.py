"""Morphological analyzer interface and its implementations.

The search core only needs ``analyze(word) -> MorphParse | None``. The default
is ``pymorphy3`` with its Russian dictionaries; a word list file or plain
surface forms can be selected instead. The core never depends on how the
lemma is derived. A lookup miss returns None and is not an error.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
import logging
from pathlib import Path
import threading
from typing import Any, Protocol

import pymorphy3


logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class MorphParse:
    """Dictionary form of a word plus its grammatical tags (``NOUN``, ``PREP`` ...)."""

    lemma: str
    grammemes: frozenset[str] = field(default_factory=frozenset)


class MorphAnalyzer(Protocol):
    """Protocol implemented by morphological analyzers.

    Implementations must be safe to call from several threads at once.
    """

    def analyze(self, word: str) -> MorphParse | None:  # pragma: no cover - interface definition
        ...


class SurfaceFormAnalyzer:
    """Uses the lowercased word itself as its lemma.

    Selected with ``MORPH_ANALYZER=surface``: every token is its own lemma,
    so search degrades to exact word matching.
    """

    def analyze(self, word: str) -> MorphParse | None:
        if not word:
            return None
        return MorphParse(lemma=word.lower())


class DictionaryMorphAnalyzer:
    """Lookup-table analyzer backed by an in-memory word -> parse mapping.

    Args:
        entries: word -> lemma, or word -> (lemma, grammemes)
        fallback_to_surface: return the word itself on a miss instead of None
    """

    def __init__(
        self,
        entries: Mapping[str, str | tuple[str, Iterable[str]]],
        *,
        fallback_to_surface: bool = False,
    ) -> None:
        self._parses: dict[str, MorphParse] = {}
        for word, value in entries.items():
            if isinstance(value, str):
                parse = MorphParse(lemma=value.lower())
            else:
                lemma, grammemes = value
                parse = MorphParse(lemma=lemma.lower(), grammemes=frozenset(g.upper() for g in grammemes))
            self._parses[word.lower()] = parse
        self.fallback_to_surface = fallback_to_surface

    def __len__(self) -> int:
        return len(self._parses)

    def analyze(self, word: str) -> MorphParse | None:
        lowered = word.lower()
        parse = self._parses.get(lowered)
        if parse is None and self.fallback_to_surface and lowered:
            return MorphParse(lemma=lowered)
        return parse

    @classmethod
    def from_file(cls, path: Path, *, fallback_to_surface: bool = False) -> DictionaryMorphAnalyzer:
        """Load a tab-separated dictionary: ``word<TAB>lemma[<TAB>GRAMMEME,GRAMMEME]``.

        Blank lines and lines starting with ``#`` are ignored; malformed lines
        are skipped with a warning.
        """
        entries: dict[str, tuple[str, list[str]]] = {}
        with path.open(encoding="utf-8") as handle:
            for line_no, raw_line in enumerate(handle, start=1):
                line = raw_line.strip()
                if not line or line.startswith("#"):
                    continue
                parts = line.split("\t")
                if len(parts) < 2 or not parts[0] or not parts[1]:
                    logger.warning(f"Skipping malformed dictionary line {line_no} in {path}")
                    continue
                grammemes = [g.strip() for g in parts[2].split(",") if g.strip()] if len(parts) > 2 else []
                entries[parts[0]] = (parts[1], grammemes)
        logger.info(f"Loaded {len(entries)} dictionary entries from {path}")
        return cls(entries, fallback_to_surface=fallback_to_surface)


class PymorphyAnalyzer:
    """Russian morphology from OpenCorpora dictionaries via ``pymorphy3``.

    The most probable parse wins. Words outside the dictionary still get a
    predicted normal form, and Latin words come back as themselves tagged
    ``LATN``.
    """

    def __init__(self, lang: str = "ru", morph: Any | None = None) -> None:
        self._morph = morph if morph is not None else pymorphy3.MorphAnalyzer(lang=lang)
        # Parse results are cached inside the analyzer
        self._lock = threading.Lock()

    def analyze(self, word: str) -> MorphParse | None:
        if not word:
            return None
        with self._lock:
            parses = self._morph.parse(word.lower())
        if not parses:
            return None
        best = parses[0]
        return MorphParse(lemma=best.normal_form, grammemes=frozenset(str(g) for g in best.tag.grammemes))


MORPH_ANALYZERS = ("pymorphy", "dictionary", "surface")


def build_morph_analyzer(kind: str = "pymorphy", dictionary_path: Path | None = None) -> MorphAnalyzer:
    """Return the analyzer selected by configuration.

    Raises:
        ValueError: unknown ``kind``, or ``dictionary`` without a path
    """
    if kind == "pymorphy":
        logger.info("Using pymorphy3 morphology")
        return PymorphyAnalyzer()
    if kind == "dictionary":
        if dictionary_path is None:
            raise ValueError("the dictionary analyzer needs a dictionary path")
        return DictionaryMorphAnalyzer.from_file(dictionary_path, fallback_to_surface=True)
    if kind == "surface":
        return SurfaceFormAnalyzer()
    raise ValueError(f"unknown morph analyzer {kind!r}; expected one of {', '.join(MORPH_ANALYZERS)}")
