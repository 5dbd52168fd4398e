# utils.py
import os
import time
import copy
import binascii
from datetime import datetime, timezone
from functools import cmp_to_key
from typing import Any, List, Optional, Tuple

from .errors import InvalidDocumentError


class _Missing:
    """Marker for a path that does not exist (distinct from an explicit null)."""
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self):
        return "MISSING"

    def __bool__(self):
        return False

    def __deepcopy__(self, memo):
        return self

MISSING = _Missing()


# =========================
# Ids and documents
# =========================
def generate_object_id() -> str:
    """Generate a 24-char hex string similar to Mongo ObjectId."""
    ts = int(time.time())
    rand = binascii.b2a_hex(os.urandom(8)).decode("ascii")
    return f"{ts:08x}{rand}"[:24]

def copy_document(doc):
    return copy.deepcopy(doc)

def is_array(x):
    return isinstance(x, list)

def is_number(x):
    return isinstance(x, (int, float)) and not isinstance(x, bool)

def as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

def check_depth(doc, max_depth: int):
    """Raise InvalidDocumentError when nesting goes deeper than max_depth levels."""
    stack = [(doc, 1)]
    while stack:
        value, depth = stack.pop()
        if depth > max_depth:
            raise InvalidDocumentError(f"Document exceeds maximum nesting depth of {max_depth}.")
        if isinstance(value, dict):
            stack.extend((v, depth + 1) for v in value.values())
        elif isinstance(value, list):
            stack.extend((v, depth + 1) for v in value)


# =========================
# Dotted paths
# =========================
def _index_segment(part: str) -> Optional[int]:
    return int(part) if part.isdigit() else None

def deep_get(doc, dotted_key: str, default=None):
    """Follow a dotted path through dicts and (by numeric segment) lists."""
    cur = doc
    for p in dotted_key.split("."):
        if isinstance(cur, dict) and p in cur:
            cur = cur[p]
        elif isinstance(cur, list) and _index_segment(p) is not None and _index_segment(p) < len(cur):
            cur = cur[_index_segment(p)]
        else:
            return default
    return cur

def deep_set(doc: dict, dotted_key: str, value):
    parts = dotted_key.split(".")
    cur = doc
    for i, p in enumerate(parts[:-1]):
        idx = _index_segment(p)
        if isinstance(cur, list) and idx is not None:
            while len(cur) <= idx:
                cur.append(None)
            if not isinstance(cur[idx], (dict, list)):
                cur[idx] = {}
            cur = cur[idx]
            continue
        if p not in cur or not isinstance(cur[p], (dict, list)):
            cur[p] = {}
        cur = cur[p]
    last = parts[-1]
    idx = _index_segment(last)
    if isinstance(cur, list) and idx is not None:
        while len(cur) <= idx:
            cur.append(None)
        cur[idx] = value
    else:
        cur[last] = value

def deep_unset(doc: dict, dotted_key: str):
    parts = dotted_key.split(".")
    cur = deep_get(doc, ".".join(parts[:-1]), None) if len(parts) > 1 else doc
    if isinstance(cur, dict):
        cur.pop(parts[-1], None)
    elif isinstance(cur, list) and _index_segment(parts[-1]) is not None:
        idx = _index_segment(parts[-1])
        if idx < len(cur):
            cur[idx] = None

def resolve_values(doc, dotted_key: str) -> List[Any]:
    """All values reachable by a dotted path, descending into arrays.

    ``hobbies.title`` on ``{"hobbies": [{"title": "a"}, {"title": "b"}]}``
    yields ``["a", "b"]``. A path that reaches nothing yields ``[]``.
    """
    out: List[Any] = []

    def walk(cur, parts):
        if not parts:
            out.append(cur)
            return
        head, rest = parts[0], parts[1:]
        if isinstance(cur, dict):
            if head in cur:
                walk(cur[head], rest)
        elif isinstance(cur, list):
            idx = _index_segment(head)
            if idx is not None and idx < len(cur):
                walk(cur[idx], rest)
            for item in cur:
                if isinstance(item, dict):
                    walk(item, parts)

    walk(doc, dotted_key.split("."))
    return out


# =========================
# Types and ordering
# =========================
def bson_type(value) -> str:
    if value is None or value is MISSING:
        return "null"
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, int):
        return "int" if -2**31 <= value < 2**31 else "long"
    if isinstance(value, float):
        return "double"
    if isinstance(value, str):
        return "string"
    if isinstance(value, datetime):
        return "date"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__

# Cross-type sort order used by Mongo: null < numbers < strings < objects < arrays < bool < date
_TYPE_RANK = {"null": 1, "int": 2, "long": 2, "double": 2, "string": 3,
              "object": 4, "array": 5, "bool": 8, "date": 9}

def type_rank(value) -> int:
    return _TYPE_RANK.get(bson_type(value), 10)

def comparable(a, b) -> bool:
    """Whether a range comparison between a and b is meaningful."""
    return type_rank(a) == type_rank(b) and type_rank(a) not in (1, 10)

def compare_values(a, b) -> int:
    ra, rb = type_rank(a), type_rank(b)
    if ra != rb:
        return -1 if ra < rb else 1
    if ra == 1:
        return 0
    if ra == 4:
        for (ka, va), (kb, vb) in zip(a.items(), b.items()):
            if ka != kb:
                return -1 if ka < kb else 1
            c = compare_values(va, vb)
            if c:
                return c
        return (len(a) > len(b)) - (len(a) < len(b))
    if ra == 5:
        for va, vb in zip(a, b):
            c = compare_values(va, vb)
            if c:
                return c
        return (len(a) > len(b)) - (len(a) < len(b))
    if ra == 9:
        a, b = as_utc(a), as_utc(b)
    if ra == 10:
        a, b = repr(a), repr(b)
    return (a > b) - (a < b)

sort_key = cmp_to_key(compare_values)

def sort_documents(docs: List[dict], spec: List[Tuple[str, int]], getter=None) -> List[dict]:
    """Stable multi-key sort. spec is [(path, 1|-1), ...]."""
    getter = getter or (lambda d, k: deep_get(d, k, None))
    for key, direction in reversed(spec):
        docs.sort(key=lambda d: sort_key(getter(d, key)), reverse=direction < 0)
    return docs

def freeze(value):
    """Hashable form of a document value, used for grouping and index keys."""
    if isinstance(value, dict):
        return ("__dict__", tuple((k, freeze(v)) for k, v in value.items()))
    if isinstance(value, list):
        return ("__list__", tuple(freeze(v) for v in value))
    if isinstance(value, datetime):
        return ("__date__", as_utc(value))
    if isinstance(value, bool):
        return ("__bool__", value)
    if is_number(value):
        return ("__num__", value)
    if value is MISSING:
        return None
    return value
