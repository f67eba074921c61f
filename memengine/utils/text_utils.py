"""
Text normalization, tokenization and similarity helpers shared by the engine services.
"""

import math
import re
from typing import List, Sequence

PUNCTUATION = '.,!?():;"\''

_PUNCTUATION_RE = re.compile(r'[.,!?():;"\']')
_WHITESPACE_RE = re.compile(r'\s+')

STOP_WORDS = frozenset([
    'a', 'an', 'the', 'and', 'or', 'but', 'if', 'then', 'else', 'when', 'at', 'from', 'by', 'for', 'with', 'about', 'to', 'of',
    'in', 'on', 'is', 'are', 'was', 'were', 'be', 'been', 'have', 'has', 'had', 'do', 'does', 'did', 'i', 'you', 'he', 'she',
    'it', 'we', 'they', 'this', 'that', 'these', 'those', 'my', 'your', 'his', 'her'
])


def normalize_text(text: str) -> str:
    """Lowercase, replace punctuation with spaces and collapse whitespace."""
    if not text:
        return ''
    lowered = _PUNCTUATION_RE.sub(' ', text.lower())
    return _WHITESPACE_RE.sub(' ', lowered).strip()


def tokenize(text: str) -> List[str]:
    """Split text into lowercase words with surrounding punctuation trimmed."""
    if not text:
        return []
    tokens = []
    for word in text.lower().split():
        word = word.strip(PUNCTUATION)
        if word:
            tokens.append(word)
    return tokens


def content_tokens(text: str, min_length: int = 2) -> List[str]:
    """Tokens that carry meaning: not a stop word and at least min_length characters."""
    return [t for t in tokenize(text) if len(t) >= min_length and t not in STOP_WORDS]


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two vectors; 0.0 for empty, mismatched or zero vectors."""
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        norm_a += x * x
        norm_b += y * y
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return dot / (math.sqrt(norm_a) * math.sqrt(norm_b))


def jaccard_similarity(text_a: str, text_b: str) -> float:
    """Jaccard similarity of the word sets of two texts."""
    words_a = set(content_tokens(text_a))
    words_b = set(content_tokens(text_b))
    if not words_a or not words_b:
        return 0.0
    return len(words_a & words_b) / len(words_a | words_b)


def levenshtein_distance(s1: str, s2: str) -> int:
    """Case-insensitive edit distance between two strings."""
    s1 = s1.lower()
    s2 = s2.lower()
    if len(s1) < len(s2):
        s1, s2 = s2, s1
    previous = list(range(len(s2) + 1))
    for i, c1 in enumerate(s1, start=1):
        current = [i]
        for j, c2 in enumerate(s2, start=1):
            cost = 0 if c1 == c2 else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def extract_excerpt(text: str, max_length: int = 50) -> str:
    """Cut text to at most max_length characters, breaking on a word boundary when possible."""
    text = (text or '').strip()
    if len(text) <= max_length:
        return text
    cut = text[:max_length - 3]
    space = cut.rfind(' ')
    if space > len(cut) // 2:
        cut = cut[:space]
    return cut.rstrip(PUNCTUATION + ' ') + '...'


def contains_any(text: str, keywords: Sequence[str]) -> bool:
    """True when any keyword occurs as a whole word in text (case-insensitive)."""
    words = set(tokenize(text))
    return any(keyword in words for keyword in keywords)
