"""Text analysis, ranking and snippet helpers for the search engine."""

from searchengine.search.analyzers import AnalyzerPipeline, LemmaExtractor, Token
from searchengine.search.morphology import (
    DictionaryMorphAnalyzer,
    MorphAnalyzer,
    MorphParse,
    PymorphyAnalyzer,
    SurfaceFormAnalyzer,
    build_morph_analyzer,
)
from searchengine.search.ranking import RankedPage, paginate, rank_pages, score_pages
from searchengine.search.snippet import build_snippet, highlight_lemmas


__all__ = [
    "AnalyzerPipeline",
    "DictionaryMorphAnalyzer",
    "LemmaExtractor",
    "MorphAnalyzer",
    "MorphParse",
    "PymorphyAnalyzer",
    "RankedPage",
    "SurfaceFormAnalyzer",
    "Token",
    "build_morph_analyzer",
    "build_snippet",
    "highlight_lemmas",
    "paginate",
    "rank_pages",
    "score_pages",
]
