# text.py
import re
from typing import Dict, List, Optional

_TOKEN = re.compile(r"[^\W_]+(?:['\-][^\W_]+)*", re.UNICODE)
_SEARCH = re.compile(r'"([^"]*)"|\'([^\']*)\'|(-?[^\s"\']+)')

STOP_WORDS = {
    "english": {
        "a", "an", "and", "are", "as", "at", "be", "but", "by", "for", "if", "in",
        "into", "is", "it", "no", "not", "of", "on", "or", "such", "that", "the",
        "their", "then", "there", "these", "they", "this", "to", "was", "will",
        "with",
    },
    "none": set(),
}


def stem(token: str, language: str) -> str:
    """Light suffix stripping so "watches" and "watch" meet in the index."""
    if language == "none" or len(token) <= 3:
        return token
    if token.endswith("ies") and len(token) > 4:
        return token[:-3] + "y"
    if token.endswith(("ches", "shes", "sses", "xes", "zes")):
        return token[:-2]
    if token.endswith("s") and not token.endswith(("ss", "us", "is")):
        return token[:-1]
    return token


def tokenize(text, language: str = "english") -> List[str]:
    """Lower-cased, stemmed tokens with stop words removed."""
    if not isinstance(text, str):
        return []
    stops = STOP_WORDS.get(language, STOP_WORDS["english"])
    out = []
    for raw in _TOKEN.findall(text.lower()):
        if raw in stops:
            continue
        out.append(stem(raw, language))
    return out


class TextSearch:
    """A parsed $search string: terms (any), phrases (all), negations (none)."""

    def __init__(self, terms: List[str], phrases: List[str], negated: List[str]):
        self.terms = terms
        self.phrases = phrases
        self.negated = negated

    @classmethod
    def parse(cls, search: str, language: str = "english") -> "TextSearch":
        terms: List[str] = []
        phrases: List[str] = []
        negated: List[str] = []
        for dq, sq, word in _SEARCH.findall(search or ""):
            phrase = dq or sq
            if phrase:
                phrases.append(phrase.lower())
                terms.extend(tokenize(phrase, language))
            elif word.startswith("-") and len(word) > 1:
                negated.extend(tokenize(word[1:], language))
            else:
                terms.extend(tokenize(word, language))
        return cls(_unique(terms), phrases, _unique(negated))


def _unique(items: List[str]) -> List[str]:
    seen = set()
    return [x for x in items if not (x in seen or seen.add(x))]


def score_fields(counts: Dict[str, Dict[str, int]], terms: List[str],
                 weights: Dict[str, float]) -> float:
    """Sum of weight * term frequency over the indexed fields.

    counts maps field -> token -> occurrences for one document.
    """
    total = 0.0
    for field, tokens in counts.items():
        weight = weights.get(field, 1)
        for term in terms:
            total += weight * tokens.get(term, 0)
    return total


def contains_phrase(texts: List[str], phrase: str) -> bool:
    return any(phrase in t.lower() for t in texts)


def field_counts(texts_by_field: Dict[str, List[str]], language: str) -> Dict[str, Dict[str, int]]:
    counts: Dict[str, Dict[str, int]] = {}
    for field, texts in texts_by_field.items():
        bucket: Dict[str, int] = {}
        for text in texts:
            for tok in tokenize(text, language):
                bucket[tok] = bucket.get(tok, 0) + 1
        if bucket:
            counts[field] = bucket
    return counts


def language_of(options: Optional[dict], default: str) -> str:
    lang = (options or {}).get("default_language") or default
    return lang if lang in STOP_WORDS else "english"
