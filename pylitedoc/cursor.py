# cursor.py
from typing import Any, Dict, List, Optional, Tuple

from .errors import InvalidQueryError
from .utils import MISSING, copy_document, deep_get, sort_documents

TEXT_SCORE = {"$meta": "textScore"}


# =========================
# Projection (find-style)
# =========================
def _path_tree(paths: List[str]) -> dict:
    tree: Dict[str, Any] = {}
    for path in paths:
        node = tree
        parts = path.split(".")
        for p in parts[:-1]:
            nxt = node.get(p)
            if nxt is True:
                break
            node = node.setdefault(p, {})
        else:
            node[parts[-1]] = True
    return tree

def _include(value, tree: dict):
    if isinstance(value, dict):
        out = {}
        for k, sub in tree.items():
            if k not in value:
                continue
            if sub is True:
                out[k] = value[k]
            else:
                val = _include(value[k], sub)
                if val is not MISSING:
                    out[k] = val
        return out
    if isinstance(value, list):
        return [_include(v, tree) for v in value if isinstance(v, (dict, list))]
    return MISSING

def _exclude(value, tree: dict):
    if isinstance(value, dict):
        out = {}
        for k, v in value.items():
            sub = tree.get(k)
            if sub is True:
                continue
            out[k] = _exclude(v, sub) if sub else v
        return out
    if isinstance(value, list):
        return [_exclude(v, tree) for v in value]
    return value

def include_paths(doc: dict, paths: List[str]) -> dict:
    return _include(doc, _path_tree(paths))

def exclude_paths(doc: dict, paths: List[str]) -> dict:
    return _exclude(doc, _path_tree(paths))

def split_projection(projection: dict) -> Tuple[List[str], List[str], List[str]]:
    """(included paths, excluded paths, textScore meta fields); _id handled separately."""
    include, exclude, meta = [], [], []
    for k, v in projection.items():
        if v == TEXT_SCORE:
            meta.append(k)
        elif k == "_id":
            continue
        elif v in (1, True):
            include.append(k)
        elif v in (0, False):
            exclude.append(k)
        else:
            raise InvalidQueryError(f"Unsupported projection value for '{k}': {v!r}")
    if include and exclude:
        raise InvalidQueryError("Projection cannot mix inclusion and exclusion.")
    return include, exclude, meta

def apply_projection(doc: dict, projection: Optional[dict], score: Optional[float] = None) -> dict:
    if not projection:
        return doc
    include, exclude, meta = split_projection(projection)
    keep_id = projection.get("_id", 1) not in (0, False)
    if include:
        out = include_paths(doc, include)
        if keep_id and "_id" in doc:
            out = dict(_id=doc["_id"], **out)
    else:
        paths = exclude + ([] if keep_id else ["_id"])
        out = exclude_paths(doc, paths)
    for field in meta:
        out[field] = score if score is not None else 0.0
    return out


# =========================
# Cursor
# =========================
class Cursor:
    """Lazy, restartable result of Collection.find.

    Nothing is read until iteration; each iteration re-runs the query against
    a fresh snapshot of the collection.
    """

    def __init__(self, collection, query: Optional[dict] = None, projection: Optional[dict] = None,
                 sort: Optional[List[Tuple[str, Any]]] = None, skip: int = 0, limit: int = 0):
        self._collection = collection
        self._query = query or {}
        self._projection = projection
        self._sort = list(sort or [])
        self._skip = max(0, skip)
        self._limit = max(0, limit)
        if projection:
            split_projection(projection)

    # ----- chaining -----
    def sort(self, key_or_list, direction=None) -> "Cursor":
        if isinstance(key_or_list, str):
            self._sort = [(key_or_list, 1 if direction is None else direction)]
        elif isinstance(key_or_list, dict):
            self._sort = list(key_or_list.items())
        else:
            self._sort = list(key_or_list)
        return self

    def skip(self, n: int) -> "Cursor":
        self._skip = max(0, n)
        return self

    def limit(self, n: int) -> "Cursor":
        self._limit = max(0, n)
        return self

    # ----- execution -----
    def sort_docs(self, rows: List[Tuple[dict, Optional[float]]]) -> List[Tuple[dict, Optional[float]]]:
        if not self._sort:
            return rows
        def getter(row, key):
            direction = dict(self._sort)[key]
            if direction == TEXT_SCORE:
                return -(row[1] or 0.0)
            return deep_get(row[0], key, None)
        spec = [(k, 1 if d == TEXT_SCORE else d) for k, d in self._sort]
        return sort_documents(rows, spec, getter)

    def __iter__(self):
        rows = self._collection._select(self._query)
        rows = self.sort_docs(rows)
        if self._skip:
            rows = rows[self._skip:]
        if self._limit:
            rows = rows[:self._limit]
        for doc, score in rows:
            yield apply_projection(copy_document(doc), self._projection, score)

    def to_list(self, length: Optional[int] = None) -> List[dict]:
        out = []
        for idx, d in enumerate(self):
            if length is not None and idx >= length:
                break
            out.append(d)
        return out

    def count(self) -> int:
        return len(list(self))

    def explain(self) -> dict:
        return self._collection.explain(self._query)
