from __future__ import annotations

import re

TOKEN_RE = re.compile(r"[a-zA-Z0-9_]+")

STOP_WORDS = frozenset(
    {
        "the", "and", "for", "with", "that", "this", "from", "into", "onto",
        "are", "was", "were", "been", "being", "have", "has", "had", "not",
        "but", "its", "our", "your", "their", "them", "they", "you", "all",
        "any", "can", "should", "would", "could", "will", "shall", "must",
        "than", "then", "when", "where", "which", "while", "what", "who",
        "how", "use", "using", "make", "some", "such", "each", "more", "most",
        "very", "also", "just", "only", "over", "under", "about",
    }
)


def word_set(text: str) -> set[str]:
    return {t.lower() for t in TOKEN_RE.findall(text)}


def extract_task_pattern(task: str, max_words: int = 5) -> str:
    """Coarse signature of a task: its first meaningful words, lowercased."""
    words = [
        w
        for w in (t.lower() for t in TOKEN_RE.findall(task))
        if len(w) > 2 and w not in STOP_WORDS
    ]
    return " ".join(words[:max_words])


def overlap_ratio(left: set[str], right: set[str]) -> float:
    """Shared words over the larger of the two word sets."""
    if not left or not right:
        return 0.0
    return len(left & right) / max(len(left), len(right))
