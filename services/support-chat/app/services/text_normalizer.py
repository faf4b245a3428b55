"""
Question normalization shared by matching, learning and recurring-question tracking
"""
import re
from typing import List

MIN_KEYWORD_LENGTH = 4

_PUNCTUATION = re.compile(r"[?!.,]")


def normalize_text(text: str) -> str:
    """Lowercase, strip ?!., and trim"""
    return _PUNCTUATION.sub("", (text or "").lower()).strip()


def extract_keywords(text: str) -> List[str]:
    """Tokens of the normalized text longer than three characters, in order"""
    return [word for word in normalize_text(text).split() if len(word) >= MIN_KEYWORD_LENGTH]


def unique_keywords(text: str) -> List[str]:
    """Keywords without repeats, first occurrence wins"""
    seen = []
    for word in extract_keywords(text):
        if word not in seen:
            seen.append(word)
    return seen


def text_similarity(text1: str, text2: str) -> float:
    """
    Similarity of two questions after normalization.

    Containment either direction counts as 1.0, otherwise Jaccard overlap
    of the token sets.
    """
    norm1 = normalize_text(text1)
    norm2 = normalize_text(text2)
    if not norm1 or not norm2:
        return 0.0
    if norm1 in norm2 or norm2 in norm1:
        return 1.0

    words1 = set(norm1.split())
    words2 = set(norm2.split())
    union = len(words1 | words2)
    if union == 0:
        return 0.0
    return len(words1 & words2) / union
