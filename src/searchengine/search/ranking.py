"""Relevance scoring for candidate pages.

Score of a page = sum of its posting ranks over the query lemmas (a lemma the
page lacks contributes 0). Scores are divided by the best score of the
candidate set, so the top page always has relevance 1.0. Ties are broken by
page id to keep ordering (and therefore pagination) deterministic.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Collection, Iterable
from dataclasses import dataclass

from searchengine.domain.model import Posting


@dataclass(frozen=True, slots=True)
class RankedPage:
    page_id: int
    score: float
    relevance: float


def score_pages(postings: Iterable[Posting], lemmas: Collection[str]) -> dict[int, float]:
    """Absolute score per page id; postings for other lemmas are ignored."""
    scores: dict[int, float] = defaultdict(float)
    for posting in postings:
        if posting.lemma in lemmas:
            scores[posting.page_id] += posting.rank
    return dict(scores)


def rank_pages(scores: dict[int, float]) -> list[RankedPage]:
    """Normalize by the maximum score and sort by relevance desc, page id asc."""
    if not scores:
        return []
    max_score = max(scores.values())
    ranked = [
        RankedPage(
            page_id=page_id,
            score=score,
            relevance=(score / max_score) if max_score > 0 else 0.0,
        )
        for page_id, score in scores.items()
    ]
    ranked.sort(key=lambda page: (-page.relevance, page.page_id))
    return ranked


def paginate(ranked: list[RankedPage], offset: int, limit: int) -> list[RankedPage]:
    """Skip ``offset`` pages, then take ``limit``."""
    return ranked[offset : offset + limit]
