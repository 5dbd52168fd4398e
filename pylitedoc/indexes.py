# indexes.py
"""Secondary indexes and plan selection.

Every collection carries an IndexManager holding the implicit unique ``_id_``
index plus any user-created single-field, compound, text and 2dsphere
indexes. Indexes store document keys only; the collection owns the documents.
"""
import itertools
import logging
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from .config import Settings
from .errors import (
    DuplicateKeyError, DuplicateTextIndex, IndexNameTooLong, InvalidIndexError,
    InvalidQueryError, NotFound, TooManyCompoundFields, TooManyIndexes,
)
from .geo import GEO_OPERATORS, geometry_distance, parse_geometry
from .query import eval_conditions, is_operator_dict, match_query
from .text import TextSearch, contains_phrase, field_counts, language_of, score_fields
from .utils import MISSING, as_utc, comparable, compare_values, freeze, is_number, resolve_values

logger = logging.getLogger(__name__)

KIND_SINGLE = "single"
KIND_COMPOUND = "compound"
KIND_TEXT = "text"
KIND_GEO = "2dsphere"

_RANGE_OPS = {"$eq", "$gt", "$gte", "$lt", "$lte", "$in", "$regex"}
_SEEK_OPS = _RANGE_OPS | {"$options", "$elemMatch", "$all", "$size", "$type"}


# =========================
# Descriptors
# =========================
def _normalize_keys(keys) -> List[Tuple[str, Any]]:
    if isinstance(keys, str):
        return [(keys, 1)]
    if isinstance(keys, dict):
        pairs = list(keys.items())
    else:
        pairs = [tuple(p) if isinstance(p, (list, tuple)) else (p, 1) for p in keys]
    if not pairs:
        raise InvalidIndexError("Index key specification must not be empty.")
    for field, direction in pairs:
        if not isinstance(field, str) or not field:
            raise InvalidIndexError(f"Invalid index field: {field!r}")
        if direction not in (1, -1, "text", KIND_GEO):
            raise InvalidIndexError(f"Invalid index direction for '{field}': {direction!r}")
    return pairs

def default_index_name(keys: List[Tuple[str, Any]]) -> str:
    return "_".join(f"{field}_{direction}" for field, direction in keys)


class IndexDescriptor:
    def __init__(self, keys, name: Optional[str] = None, partial_filter: Optional[dict] = None,
                 expire_after_seconds: Optional[float] = None, weights: Optional[Dict[str, float]] = None,
                 default_language: Optional[str] = None, unique: bool = False):
        self.keys = _normalize_keys(keys)
        directions = {d for _, d in self.keys}
        if "text" in directions:
            if directions != {"text"}:
                raise InvalidIndexError("Text index fields must all be 'text'.")
            self.kind = KIND_TEXT
        elif KIND_GEO in directions:
            if len(self.keys) != 1:
                raise InvalidIndexError("2dsphere indexes take exactly one field.")
            self.kind = KIND_GEO
        else:
            self.kind = KIND_SINGLE if len(self.keys) == 1 else KIND_COMPOUND
        self.name = name or default_index_name(self.keys)
        self.partial_filter = partial_filter
        self.expire_after_seconds = expire_after_seconds
        self.weights = dict(weights or {})
        self.default_language = default_language
        self.unique = unique
        if expire_after_seconds is not None and self.kind != KIND_SINGLE:
            raise InvalidIndexError("expireAfterSeconds requires a single-field index.")
        if expire_after_seconds is not None and (not is_number(expire_after_seconds) or expire_after_seconds < 0):
            raise InvalidIndexError("expireAfterSeconds must be a non-negative number.")
        if partial_filter is not None and not isinstance(partial_filter, dict):
            raise InvalidIndexError("partialFilterExpression must be a document.")

    @classmethod
    def from_spec(cls, keys, options: Optional[dict] = None) -> "IndexDescriptor":
        """Build from createIndex-style arguments ({"age": 1}, {"expireAfterSeconds": 10})."""
        options = dict(options or {})
        options.pop("background", None)
        unknown = set(options) - {"name", "partialFilterExpression", "expireAfterSeconds",
                                  "weights", "default_language", "unique"}
        if unknown:
            raise InvalidIndexError(f"Unsupported index options: {', '.join(sorted(unknown))}")
        return cls(keys, name=options.get("name"),
                   partial_filter=options.get("partialFilterExpression"),
                   expire_after_seconds=options.get("expireAfterSeconds"),
                   weights=options.get("weights"),
                   default_language=options.get("default_language"),
                   unique=bool(options.get("unique", False)))

    @property
    def fields(self) -> List[str]:
        return [f for f, _ in self.keys]

    def to_dict(self) -> dict:
        out: Dict[str, Any] = {"v": 2, "key": dict(self.keys), "name": self.name}
        if self.unique: out["unique"] = True
        if self.partial_filter is not None: out["partialFilterExpression"] = self.partial_filter
        if self.expire_after_seconds is not None: out["expireAfterSeconds"] = self.expire_after_seconds
        if self.weights: out["weights"] = dict(self.weights)
        if self.default_language: out["default_language"] = self.default_language
        return out

    def same_definition(self, other: "IndexDescriptor") -> bool:
        return self.to_dict() == other.to_dict()


class Plan:
    """Result of plan selection; `stage` mirrors explain() output names."""

    def __init__(self, stage: str, index: Optional["BaseIndex"] = None, prefix: int = 0):
        self.stage = stage
        self.index = index
        self.prefix = prefix

    def to_dict(self) -> dict:
        out: Dict[str, Any] = {"stage": self.stage}
        if self.index is not None:
            out["indexName"] = self.index.descriptor.name
            out["keyPattern"] = dict(self.index.descriptor.keys)
        return out

    def __repr__(self):
        return f"Plan({self.to_dict()!r})"


# =========================
# Index structures
# =========================
class BaseIndex:
    def __init__(self, descriptor: IndexDescriptor):
        self.descriptor = descriptor

    def covers(self, doc: dict) -> bool:
        pf = self.descriptor.partial_filter
        return pf is None or match_query(doc, pf)

    def check(self, key, doc: dict):
        pass

    def add(self, key, doc: dict, initial: bool = False):
        raise NotImplementedError

    def remove(self, key, doc: dict):
        raise NotImplementedError

    def keys(self) -> Set[Any]:
        raise NotImplementedError


class KeyIndex(BaseIndex):
    """Single-field or compound index; array values are indexed per element."""

    def __init__(self, descriptor: IndexDescriptor):
        super().__init__(descriptor)
        self._entries: Dict[Any, Tuple[tuple, Set[Any]]] = {}
        self._by_key: Dict[Any, List[Any]] = {}
        # TTL: only documents inserted after the index exists are expirable
        self._expirable: Set[Any] = set()

    def _tuples(self, doc: dict) -> List[tuple]:
        per_field = []
        for field in self.descriptor.fields:
            values = []
            for v in resolve_values(doc, field):
                if isinstance(v, list):
                    values.extend(v if v else [None])
                else:
                    values.append(v)
            per_field.append(values or [None])
        return list(itertools.product(*per_field))

    def check(self, key, doc: dict):
        if not self.descriptor.unique or not self.covers(doc):
            return
        for tup in self._tuples(doc):
            hit = self._entries.get(freeze(list(tup)))
            if hit and hit[1] - {key}:
                raise DuplicateKeyError(
                    f"E11000 duplicate key error index: {self.descriptor.name} dup key: {list(tup)!r}")

    def add(self, key, doc: dict, initial: bool = False):
        if not self.covers(doc):
            return
        frozen_keys = []
        for tup in self._tuples(doc):
            fk = freeze(list(tup))
            entry = self._entries.setdefault(fk, (tup, set()))
            entry[1].add(key)
            frozen_keys.append(fk)
        self._by_key[key] = frozen_keys
        if self.descriptor.expire_after_seconds is not None and not initial:
            self._expirable.add(key)

    def remove(self, key, doc: dict):
        for fk in self._by_key.pop(key, []):
            entry = self._entries.get(fk)
            if entry:
                entry[1].discard(key)
                if not entry[1]:
                    del self._entries[fk]
        self._expirable.discard(key)

    def keys(self) -> Set[Any]:
        return set(self._by_key)

    def lookup(self, cond) -> Set[Any]:
        """Keys whose leading value may satisfy cond (a superset of the true matches)."""
        if isinstance(cond, (list, dict)) and not is_operator_dict(cond):
            return self.keys()
        if not is_operator_dict(cond):
            cond = {"$eq": cond}
        if not set(cond) <= _RANGE_OPS | {"$options"}:
            return self.keys()
        if any(isinstance(cond.get(op), (list, dict)) for op in ("$eq", "$gt", "$gte", "$lt", "$lte")):
            return self.keys()
        if any(isinstance(v, (list, dict)) for v in cond.get("$in", [])):
            return self.keys()
        # Multikey entries hold single elements, and each operator may be met
        # by a different element, so intersect per-operator matches.
        result: Optional[Set[Any]] = None
        for op, arg in cond.items():
            if op == "$options":
                continue
            single = {op: arg}
            if op == "$regex" and "$options" in cond:
                single["$options"] = cond["$options"]
            keys: Set[Any] = set()
            for tup, entry_keys in self._entries.values():
                if eval_conditions([tup[0]], single):
                    keys |= entry_keys
            result = keys if result is None else result & keys
        return result if result is not None else self.keys()

    def is_expirable(self, key) -> bool:
        return key in self._expirable

    def expired(self, docs: Dict[Any, dict], now: datetime) -> List[Any]:
        """Expirable keys whose indexed date is older than now - expireAfterSeconds."""
        seconds = self.descriptor.expire_after_seconds
        if seconds is None:
            return []
        cutoff = as_utc(now) - timedelta(seconds=seconds)
        field = self.descriptor.fields[0]
        out = []
        for key, doc in list(docs.items()):
            if key not in self._expirable:
                continue
            dates = []
            for v in resolve_values(doc, field):
                for item in (v if isinstance(v, list) else [v]):
                    if isinstance(item, datetime):
                        dates.append(as_utc(item))
            if dates and min(dates) < cutoff:
                out.append(key)
        return out


class TextIndex(BaseIndex):
    """Inverted index token -> keys, with per-document field term counts."""

    def __init__(self, descriptor: IndexDescriptor, default_language: str = "english"):
        super().__init__(descriptor)
        self.language = language_of({"default_language": descriptor.default_language}, default_language)
        self._postings: Dict[str, Set[Any]] = {}
        self._counts: Dict[Any, Dict[str, Dict[str, int]]] = {}
        self._texts: Dict[Any, List[str]] = {}

    def _texts_by_field(self, doc: dict) -> Dict[str, List[str]]:
        out = {}
        for field in self.descriptor.fields:
            texts = []
            for v in resolve_values(doc, field):
                for item in (v if isinstance(v, list) else [v]):
                    if isinstance(item, str):
                        texts.append(item)
            out[field] = texts
        return out

    def add(self, key, doc: dict, initial: bool = False):
        if not self.covers(doc):
            return
        by_field = self._texts_by_field(doc)
        counts = field_counts(by_field, self.language)
        if not counts:
            return
        self._counts[key] = counts
        self._texts[key] = [t for texts in by_field.values() for t in texts]
        for tokens in counts.values():
            for tok in tokens:
                self._postings.setdefault(tok, set()).add(key)

    def remove(self, key, doc: dict):
        counts = self._counts.pop(key, {})
        self._texts.pop(key, None)
        for tokens in counts.values():
            for tok in tokens:
                keys = self._postings.get(tok)
                if keys is not None:
                    keys.discard(key)
                    if not keys:
                        del self._postings[tok]

    def keys(self) -> Set[Any]:
        return set(self._counts)

    def search(self, search: str, language: Optional[str] = None) -> Dict[Any, float]:
        """Map of matching key -> relevance score."""
        parsed = TextSearch.parse(search, language or self.language)
        if not parsed.terms:
            return {}
        candidates: Set[Any] = set()
        for term in parsed.terms:
            candidates |= self._postings.get(term, set())
        for term in parsed.negated:
            candidates -= self._postings.get(term, set())
        scores = {}
        for key in candidates:
            if parsed.phrases and not all(contains_phrase(self._texts[key], p) for p in parsed.phrases):
                continue
            scores[key] = score_fields(self._counts[key], parsed.terms, self.descriptor.weights)
        return scores


class GeoIndex(BaseIndex):
    def __init__(self, descriptor: IndexDescriptor):
        super().__init__(descriptor)
        self.field = descriptor.fields[0]
        self._geometries: Dict[Any, tuple] = {}

    def add(self, key, doc: dict, initial: bool = False):
        if not self.covers(doc):
            return
        for v in resolve_values(doc, self.field):
            geom = parse_geometry(v)
            if geom is not None:
                self._geometries[key] = geom
                return

    def remove(self, key, doc: dict):
        self._geometries.pop(key, None)

    def keys(self) -> Set[Any]:
        return set(self._geometries)

    def near(self, origin, max_distance: Optional[float] = None,
             min_distance: Optional[float] = None) -> List[Tuple[float, Any]]:
        """(distance in metres, key) pairs in ascending distance order."""
        out = []
        for key, geom in self._geometries.items():
            d = geometry_distance(geom, origin)
            if max_distance is not None and d > max_distance:
                continue
            if min_distance is not None and d < min_distance:
                continue
            out.append((d, key))
        out.sort(key=lambda pair: pair[0])
        return out


# =========================
# Manager
# =========================
class IndexManager:
    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or Settings()
        self._indexes: "OrderedDict[str, BaseIndex]" = OrderedDict()
        id_index = KeyIndex(IndexDescriptor({"_id": 1}, name="_id_", unique=True))
        self._indexes["_id_"] = id_index

    # ----- Admin -----
    def create(self, descriptor: IndexDescriptor, docs: Iterable[Tuple[Any, dict]]) -> str:
        existing = self._indexes.get(descriptor.name)
        if existing is not None:
            if existing.descriptor.same_definition(descriptor):
                return descriptor.name
            raise InvalidIndexError(f"An index named '{descriptor.name}' already exists with different options.")
        for idx in self._indexes.values():
            if idx.descriptor.keys == descriptor.keys and idx.descriptor.kind != KIND_TEXT:
                raise InvalidIndexError(
                    f"Index with key pattern {dict(descriptor.keys)} already exists as '{idx.descriptor.name}'.")
        s = self.settings
        if len(descriptor.name) > s.max_index_name_length:
            raise IndexNameTooLong(len(descriptor.name), s.max_index_name_length)
        if len(descriptor.keys) > s.max_compound_fields:
            raise TooManyCompoundFields(len(descriptor.keys), s.max_compound_fields)
        if len(self._indexes) >= s.max_indexes:
            raise TooManyIndexes(len(self._indexes) + 1, s.max_indexes)
        if descriptor.kind == KIND_TEXT:
            current = self.text_index()
            if current is not None:
                raise DuplicateTextIndex(current.descriptor.name, descriptor.name)

        index = self._build(descriptor)
        for key, doc in docs:
            index.check(key, doc)
            index.add(key, doc, initial=True)
        self._indexes[descriptor.name] = index
        logger.info("Created index %s (%s)", descriptor.name, descriptor.kind)
        return descriptor.name

    def _build(self, descriptor: IndexDescriptor) -> BaseIndex:
        if descriptor.kind == KIND_TEXT:
            return TextIndex(descriptor, self.settings.text_default_language)
        if descriptor.kind == KIND_GEO:
            return GeoIndex(descriptor)
        return KeyIndex(descriptor)

    def drop(self, name: str):
        if name == "_id_":
            raise InvalidIndexError("Cannot drop the _id index.")
        if name not in self._indexes:
            raise NotFound(f"Index not found: {name}")
        del self._indexes[name]
        logger.info("Dropped index %s", name)

    def drop_all(self):
        for name in [n for n in self._indexes if n != "_id_"]:
            self.drop(name)

    def list(self) -> List[dict]:
        return [idx.descriptor.to_dict() for idx in self._indexes.values()]

    def text_index(self) -> Optional[TextIndex]:
        return next((i for i in self._indexes.values() if isinstance(i, TextIndex)), None)

    def geo_indexes(self) -> List[GeoIndex]:
        return [i for i in self._indexes.values() if isinstance(i, GeoIndex)]

    def ttl_indexes(self) -> List[KeyIndex]:
        return [i for i in self._indexes.values()
                if isinstance(i, KeyIndex) and i.descriptor.expire_after_seconds is not None]

    def __len__(self):
        return len(self._indexes)

    # ----- Maintenance (callers hold the collection lock) -----
    def check(self, key, doc: dict):
        for idx in self._indexes.values():
            idx.check(key, doc)

    def on_insert(self, key, doc: dict):
        for idx in self._indexes.values():
            idx.add(key, doc)

    def on_update(self, key, old: dict, new: dict):
        for idx in self._indexes.values():
            was_expirable = isinstance(idx, KeyIndex) and idx.is_expirable(key)
            idx.remove(key, old)
            idx.add(key, new, initial=not was_expirable)

    def on_delete(self, key, doc: dict):
        for idx in self._indexes.values():
            idx.remove(key, doc)

    # ----- Planning -----
    def choose_plan(self, query: dict) -> Plan:
        """Pick an index for query, or a collection scan.

        A key index qualifies when the query constrains its leading field with
        an index-usable predicate; the longest constrained prefix wins, ties go
        to the earliest created index. A filter on a non-leading field alone
        always yields a collection scan.
        """
        if "$text" in query:
            text = self.text_index()
            if text is None:
                raise InvalidQueryError("text index required for $text query")
            return Plan("TEXT", text)

        predicates = query_predicates(query)
        for field, cond in predicates.items():
            if is_operator_dict(cond) and set(cond) & GEO_OPERATORS:
                geo = next((g for g in self.geo_indexes() if g.field == field), None)
                if geo is not None:
                    return Plan("GEO", geo)
                if set(cond) & {"$near", "$nearSphere"}:
                    raise InvalidQueryError(f"unable to find index for $geoNear query on '{field}'")

        best: Optional[KeyIndex] = None
        best_prefix = 0
        for idx in self._indexes.values():
            if not isinstance(idx, KeyIndex):
                continue
            prefix = 0
            for field in idx.descriptor.fields:
                if field in predicates and _index_usable(predicates[field]):
                    prefix += 1
                else:
                    break
            if prefix == 0:
                continue
            pf = idx.descriptor.partial_filter
            if pf is not None and not filter_implies(predicates, pf):
                continue
            if prefix > best_prefix:
                best, best_prefix = idx, prefix
        if best is None:
            logger.debug("COLLSCAN for %r", query)
            return Plan("COLLSCAN")
        logger.debug("IXSCAN %s for %r", best.descriptor.name, query)
        return Plan("IXSCAN", best, best_prefix)

    def candidate_keys(self, plan: Plan, query: dict) -> Optional[Set[Any]]:
        """Keys the plan narrows the query to; None means scan everything."""
        if plan.stage == "IXSCAN":
            leading = plan.index.descriptor.fields[0]
            return plan.index.lookup(query_predicates(query)[leading])
        if plan.stage == "GEO":
            return plan.index.keys()
        return None


def query_predicates(query: dict) -> Dict[str, Any]:
    """Field conditions that hold for every match: top-level fields and $and clauses."""
    out: Dict[str, Any] = {}
    for key, cond in query.items():
        if key == "$and" and isinstance(cond, list):
            for clause in cond:
                if isinstance(clause, dict):
                    for k, v in query_predicates(clause).items():
                        out.setdefault(k, v)
        elif not key.startswith("$"):
            out.setdefault(key, cond)
    return out

def _index_usable(cond) -> bool:
    if is_operator_dict(cond):
        return bool(set(cond) & (_SEEK_OPS - {"$options", "$type"})) and not set(cond) & GEO_OPERATORS
    return True

def _satisfies(value, op: str, bound) -> bool:
    if op == "$eq":
        return compare_values(value, bound) == 0
    if not comparable(value, bound):
        return False
    c = compare_values(value, bound)
    return {"$gt": c > 0, "$gte": c >= 0, "$lt": c < 0, "$lte": c <= 0}.get(op, False)

def _bound_implied(qcond, op: str, bound) -> bool:
    if not is_operator_dict(qcond):
        return _satisfies(qcond, op, bound)
    eq = qcond.get("$eq", MISSING)
    if eq is not MISSING:
        return _satisfies(eq, op, bound)
    for qop, qbound in qcond.items():
        if not comparable(qbound, bound):
            continue
        c = compare_values(qbound, bound)
        if op == "$gte" and qop in ("$gte", "$gt") and c >= 0:
            return True
        if op == "$gt" and ((qop == "$gt" and c >= 0) or (qop == "$gte" and c > 0)):
            return True
        if op == "$lte" and qop in ("$lte", "$lt") and c <= 0:
            return True
        if op == "$lt" and ((qop == "$lt" and c <= 0) or (qop == "$lte" and c < 0)):
            return True
    return False

def _excludes_missing(qcond) -> bool:
    """Whether a field condition can never match a document lacking the field."""
    if not is_operator_dict(qcond):
        return qcond is not None
    for op, bound in qcond.items():
        if op in ("$eq", "$gt", "$gte", "$lt", "$lte") and bound is not None:
            return True
        if op == "$in" and isinstance(bound, list) and None not in bound:
            return True
        if op == "$exists" and bound:
            return True
    return False

def filter_implies(predicates: Dict[str, Any], partial_filter: dict) -> bool:
    """Whether every document matching predicates also matches partial_filter."""
    for field, pcond in query_predicates(partial_filter).items():
        if field not in predicates:
            return False
        qcond = predicates[field]
        if qcond == pcond:
            continue
        if not is_operator_dict(pcond):
            if not _bound_implied(qcond, "$eq", pcond):
                return False
            continue
        for op, bound in pcond.items():
            if op == "$exists" and bound:
                if not _excludes_missing(qcond):
                    return False
                continue
            if op not in ("$eq", "$gt", "$gte", "$lt", "$lte") or not _bound_implied(qcond, op, bound):
                return False
    return True
