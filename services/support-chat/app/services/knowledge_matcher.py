"""
Knowledge Matcher
Ranks active knowledge entries against a user query with a deterministic score
"""
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.knowledge import KnowledgeEntry
from app.services.knowledge_store import KnowledgeStore
from app.services.text_normalizer import normalize_text, extract_keywords

EXACT_MATCH_SCORE = 1000
CONTAINMENT_SCORE = 500
KEYWORD_SCORE = 50
SUCCESS_RATE_WEIGHT = 2
PRIORITY_WEIGHT = 10

_EPOCH = datetime(1970, 1, 1)


def score_entry(entry: KnowledgeEntry, normalized_query: str, keywords: List[str]) -> float:
    """Relevance score of one entry for an already normalized query"""
    pattern = normalize_text(entry.pattern)

    if pattern and pattern == normalized_query:
        score = EXACT_MATCH_SCORE
    elif pattern and normalized_query and (pattern in normalized_query or normalized_query in pattern):
        score = CONTAINMENT_SCORE
    else:
        entry_keywords = [kw.lower() for kw in (entry.keywords or []) if kw]
        matched = [
            kw for kw in keywords
            if any(entry_kw in kw or kw in entry_kw for entry_kw in entry_keywords)
        ]
        score = len(matched) * KEYWORD_SCORE

    score += SUCCESS_RATE_WEIGHT * entry.success_rate
    score += PRIORITY_WEIGHT * (entry.priority or 0)
    return score


def _sort_key(item: Tuple[KnowledgeEntry, float]):
    entry, score = item
    never_used = entry.last_used_at is None
    recency = 0.0 if never_used else -(entry.last_used_at - _EPOCH).total_seconds()
    # Descending score, priority and recency; id keeps the order total
    return (-score, -(entry.priority or 0), never_used, recency, str(entry.id))


class KnowledgeMatcher:
    """Ranks knowledge base entries by relevance to a query"""

    def __init__(self, db: Session, store: Optional[KnowledgeStore] = None):
        self.db = db
        self.store = store or KnowledgeStore(db)

    def match(self, query: str, limit: Optional[int] = None) -> List[Tuple[KnowledgeEntry, float]]:
        """
        Return at most `limit` (entry, score) pairs over active entries,
        best first. Entries scoring zero or less are dropped.
        """
        limit = settings.MATCH_LIMIT if limit is None else limit
        normalized_query = normalize_text(query)
        keywords = extract_keywords(query)

        scored = []
        for entry in self.store.list_active():
            score = score_entry(entry, normalized_query, keywords)
            if score > 0:
                scored.append((entry, score))

        scored.sort(key=_sort_key)
        return scored[:limit]
