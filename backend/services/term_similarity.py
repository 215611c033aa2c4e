"""
Term Extraction & Similarity - rule-based matching between free text

Turns evidence text into a small keyword set and compares keyword sets
with the Jaccard index. Everything here is a pure function: no I/O, no
state beyond an LRU cache keyed by the text itself.

Also hosts the text hygiene helpers shared by the auto-link gates and the
step classifier (sanitize_text, truncate_text, content_hash).
"""
import hashlib
import re
from collections import Counter
from functools import lru_cache
from typing import Iterable, List, Optional, Tuple

DEFAULT_TOP_TERMS = 5
MIN_TERM_LENGTH = 4  # tokens of length <= 3 are discarded

STOP_WORDS = frozenset({
    'the', 'is', 'at', 'which', 'on', 'and', 'a', 'an', 'as', 'to', 'for', 'in', 'of',
    'it', 'that', 'this', 'with', 'from', 'by', 'we', 'our', 'if', 'when', 'how',
    'what', 'can', 'will', 'should', 'could', 'would', 'has', 'have', 'are', 'was',
    'were', 'been', 'being', 'be', 'do', 'does', 'did', 'done', 'but', 'not', 'also',
})

_NON_WORD = re.compile(r'[^\w\s]')

# Email/markup noise stripped before measuring or classifying content
_HTML_TAG = re.compile(r'<[^>]*>')
_QUOTED_LINE = re.compile(r'^>.*$', re.MULTILINE)
_REPLY_HEADER = re.compile(r'On .* wrote:', re.IGNORECASE)
_SIG_DASHES = re.compile(r'--\s*$', re.MULTILINE)
_SENT_FROM = re.compile(r'Sent from .*', re.IGNORECASE)
_BEST_REGARDS = re.compile(r'Best regards.*', re.IGNORECASE)
_THANKS = re.compile(r'Thanks.*', re.IGNORECASE)
_WHITESPACE = re.compile(r'\s+')


def tokenize(text: Optional[str]) -> List[str]:
    """Lowercase, strip punctuation, split, drop short tokens and stop words"""
    if not text:
        return []
    words = _NON_WORD.sub(' ', text.lower()).split()
    return [w for w in words if len(w) >= MIN_TERM_LENGTH and w not in STOP_WORDS]


@lru_cache(maxsize=4096)
def _top_terms(text: str, k: int) -> Tuple[str, ...]:
    counts = Counter(tokenize(text))
    # Counter keeps first-seen order and sorted() is stable, so ties
    # resolve to whichever token appeared first.
    ranked = sorted(counts.items(), key=lambda item: item[1], reverse=True)
    return tuple(word for word, _ in ranked[:k])


def extract_top_terms(text: Optional[str], k: int = DEFAULT_TOP_TERMS) -> List[str]:
    """
    Return up to k most frequent meaningful tokens of text, most frequent first.

    Args:
        text: Free text (may be None/empty)
        k: Maximum number of terms

    Returns:
        Ordered list of distinct tokens (empty for empty text or k <= 0)
    """
    if not text or k <= 0:
        return []
    return list(_top_terms(text, k))


def similarity(terms_a: Iterable[str], terms_b: Iterable[str]) -> float:
    """
    Jaccard index of two term collections.

    Symmetric, 1.0 for identical non-empty sets, 0.0 when both are empty.
    Never raises for empty or None-like input.
    """
    set_a = set(terms_a or ())
    set_b = set(terms_b or ())
    union = set_a | set_b
    if not union:
        return 0.0
    return len(set_a & set_b) / len(union)


def shared_terms(terms_a: Iterable[str], terms_b: Iterable[str]) -> List[str]:
    """Terms present in both collections, in terms_a order"""
    other = set(terms_b or ())
    return [t for t in (terms_a or ()) if t in other]


def sanitize_text(text: Optional[str]) -> str:
    """
    Strip markup, quoted replies and signature boilerplate.

    Used to measure "real" content length and to feed the classifier.
    """
    if not text:
        return ''

    clean = _HTML_TAG.sub('', text)
    clean = _QUOTED_LINE.sub('', clean)
    clean = _REPLY_HEADER.sub('', clean)
    clean = _SIG_DASHES.sub('', clean)
    clean = _SENT_FROM.sub('', clean)
    clean = _BEST_REGARDS.sub('', clean)
    clean = _THANKS.sub('', clean)
    return _WHITESPACE.sub(' ', clean).strip()


def truncate_text(text: Optional[str], max_chars: int = 200) -> str:
    """
    Sanitized snippet of at most max_chars.

    Cuts on the last space when that keeps at least 80% of the window.
    """
    clean = sanitize_text(text)
    if len(clean) <= max_chars:
        return clean

    truncated = clean[:max_chars]
    last_space = truncated.rfind(' ')
    if last_space > max_chars * 0.8:
        return truncated[:last_space]
    return truncated


def content_hash(content: Optional[str]) -> Optional[str]:
    """SHA-256 hex digest of raw content, None when there is no content"""
    if not content:
        return None
    return hashlib.sha256(content.encode('utf-8')).hexdigest()
