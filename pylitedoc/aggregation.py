# aggregation.py
"""Aggregation pipeline evaluation.

A pipeline is parsed into Stage objects up front, so malformed or misplaced
stages fail before any document is read. Execution chains one generator per
stage: $match, $project, $addFields, $unwind, $skip, $limit and $lookup stream
documents through, while $group, $sort, $bucket, $bucketAuto and $count
consume their whole input before emitting anything.
"""
import itertools
import logging
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional

from .cursor import exclude_paths, include_paths
from .errors import InvalidPipelineStage, InvalidQueryError
from .expressions import evaluate
from .geo import require_geometry
from .query import match_query
from .utils import (
    MISSING, comparable, compare_values, copy_document, deep_get, deep_set, deep_unset,
    freeze, is_number, sort_documents, sort_key,
)

logger = logging.getLogger(__name__)


class Stage:
    """One parsed pipeline stage: a kind tag plus its parameters."""

    def __init__(self, kind: str, **params):
        self.kind = kind
        self.params = params

    def __getattr__(self, item):
        try:
            return self.params[item]
        except KeyError:
            raise AttributeError(item) from None

    def __repr__(self):
        return f"Stage({self.kind}, {self.params!r})"


class OutResult:
    """Completion signal of a pipeline ending in $out."""

    def __init__(self, collection: str, count: int):
        self.collection = collection
        self.count = count

    def __repr__(self):
        return f"OutResult(collection={self.collection!r}, count={self.count})"


# =========================
# Accumulators
# =========================
ACCUMULATORS = {"$sum", "$avg", "$min", "$max", "$first", "$last", "$push", "$addToSet", "$count"}

class _Accumulator:
    def __init__(self, op: str, arg):
        self.op = op
        self.arg = arg
        self.total = 0
        self.count = 0
        self.value: Any = MISSING
        self.items: List[Any] = []
        self.seen = set()

    def add(self, doc: dict):
        op = self.op
        if op == "$count":
            self.total += 1
            return
        val = evaluate(self.arg, doc)
        if op in ("$sum", "$avg"):
            if is_number(val):
                self.total += val
                self.count += 1
        elif op == "$min":
            if val is not None and val is not MISSING and (self.value is MISSING or compare_values(val, self.value) < 0):
                self.value = val
        elif op == "$max":
            if val is not None and val is not MISSING and (self.value is MISSING or compare_values(val, self.value) > 0):
                self.value = val
        elif op == "$first":
            if self.count == 0:
                self.value = None if val is MISSING else val
            self.count += 1
        elif op == "$last":
            self.value = None if val is MISSING else val
        elif op == "$push":
            if val is not MISSING:
                self.items.append(val)
        elif op == "$addToSet":
            if val is not MISSING:
                key = freeze(val)
                if key not in self.seen:
                    self.seen.add(key)
                    self.items.append(val)

    def result(self):
        op = self.op
        if op in ("$sum", "$count"):
            return self.total
        if op == "$avg":
            return self.total / self.count if self.count else None
        if op in ("$push", "$addToSet"):
            return self.items
        return None if self.value is MISSING else self.value

def _parse_accumulators(stage: str, spec: dict) -> Dict[str, tuple]:
    out = {}
    for field, acc in spec.items():
        if "." in field:
            raise InvalidPipelineStage(stage, f"output field name '{field}' cannot contain '.'")
        if not isinstance(acc, dict) or len(acc) != 1:
            raise InvalidPipelineStage(stage, f"the field '{field}' must be an accumulator object")
        op, arg = next(iter(acc.items()))
        if op not in ACCUMULATORS:
            raise InvalidPipelineStage(stage, f"unknown group operator '{op}'")
        out[field] = (op, arg)
    return out

def _fold(docs: Iterable[dict], accumulators: Dict[str, tuple]) -> Dict[str, Any]:
    accs = {field: _Accumulator(op, arg) for field, (op, arg) in accumulators.items()}
    for d in docs:
        for acc in accs.values():
            acc.add(d)
    return {field: acc.result() for field, acc in accs.items()}


# =========================
# Parsing
# =========================
def _parse_match(spec):
    if not isinstance(spec, dict):
        raise InvalidPipelineStage("$match", "the match filter must be an expression in an object")
    return Stage("$match", query=spec)

def _flatten_projection(spec: dict, prefix: str = "") -> List[tuple]:
    out = []
    for k, v in spec.items():
        path = f"{prefix}{k}"
        if isinstance(v, dict) and v and not any(key.startswith("$") for key in v):
            out.extend(_flatten_projection(v, f"{path}."))
        else:
            out.append((path, v))
    return out

def _parse_project(spec):
    if not isinstance(spec, dict) or not spec:
        raise InvalidPipelineStage("$project", "specification must be a non-empty object")
    fields = []
    include_id = True
    includes = excludes = computed = 0
    for path, v in _flatten_projection(spec):
        if path == "_id" and (v is True or v is False or v in (0, 1)):
            include_id = bool(v)
            continue
        if v is True or v is False or (is_number(v) and v in (0, 1)):
            action = "include" if v else "exclude"
            includes += action == "include"
            excludes += action == "exclude"
        else:
            action = "compute"
            computed += 1
        fields.append((path, action, v))
    if excludes and (includes or computed):
        raise InvalidPipelineStage("$project", "cannot mix field exclusion with inclusion or computed fields")
    return Stage("$project", fields=fields, include_id=include_id,
                 exclusion=bool(excludes) or not (includes or computed))

def _parse_add_fields(spec, kind="$addFields"):
    if not isinstance(spec, dict) or not spec:
        raise InvalidPipelineStage(kind, "specification must be a non-empty object")
    return Stage("$addFields", fields=_flatten_projection(spec))

def _parse_unwind(spec):
    if isinstance(spec, str):
        spec = {"path": spec}
    path = spec.get("path") if isinstance(spec, dict) else None
    if not isinstance(path, str) or not path.startswith("$"):
        raise InvalidPipelineStage("$unwind", "path must be a field path prefixed with '$'")
    return Stage("$unwind", path=path[1:],
                 preserve=bool(spec.get("preserveNullAndEmptyArrays", False)),
                 index_field=spec.get("includeArrayIndex"))

def _parse_group(spec):
    if not isinstance(spec, dict) or "_id" not in spec:
        raise InvalidPipelineStage("$group", "a group specification must include an _id")
    accs = _parse_accumulators("$group", {k: v for k, v in spec.items() if k != "_id"})
    return Stage("$group", key=spec["_id"], accumulators=accs)

def _parse_sort(spec):
    if not isinstance(spec, dict) or not spec:
        raise InvalidPipelineStage("$sort", "the sort key specification must be a non-empty object")
    for k, v in spec.items():
        if v not in (1, -1):
            raise InvalidPipelineStage("$sort", f"invalid sort direction for '{k}': {v!r}")
    return Stage("$sort", keys=list(spec.items()))

def _parse_count_arg(kind):
    def parse(spec):
        if not isinstance(spec, int) or isinstance(spec, bool) or spec < 0 or (kind == "$limit" and spec == 0):
            raise InvalidPipelineStage(kind, f"expected a {'positive' if kind == '$limit' else 'non-negative'} integer")
        return Stage(kind, n=spec)
    return parse

def _parse_count(spec):
    if not isinstance(spec, str) or not spec or spec.startswith("$") or "." in spec:
        raise InvalidPipelineStage("$count", "the count field must be a non-empty string without '$' or '.'")
    return Stage("$count", field=spec)

def _parse_bucket(spec):
    if not isinstance(spec, dict) or "groupBy" not in spec or "boundaries" not in spec:
        raise InvalidPipelineStage("$bucket", "requires 'groupBy' and 'boundaries'")
    bounds = spec["boundaries"]
    if not isinstance(bounds, list) or len(bounds) < 2:
        raise InvalidPipelineStage("$bucket", "'boundaries' must be an array of at least two values")
    for lo, hi in zip(bounds, bounds[1:]):
        if not comparable(lo, hi) or compare_values(lo, hi) >= 0:
            raise InvalidPipelineStage("$bucket", "'boundaries' must be sorted ascending and of one type")
    has_default = "default" in spec
    if has_default and comparable(spec["default"], bounds[0]) and \
            compare_values(bounds[0], spec["default"]) <= 0 < compare_values(bounds[-1], spec["default"]):
        raise InvalidPipelineStage("$bucket", "'default' must lie outside the boundaries range")
    output = _parse_accumulators("$bucket", spec.get("output") or {"count": {"$sum": 1}})
    return Stage("$bucket", group_by=spec["groupBy"], boundaries=bounds,
                 has_default=has_default, default=spec.get("default"), output=output)

def _parse_bucket_auto(spec):
    if not isinstance(spec, dict) or "groupBy" not in spec or "buckets" not in spec:
        raise InvalidPipelineStage("$bucketAuto", "requires 'groupBy' and 'buckets'")
    n = spec["buckets"]
    if not isinstance(n, int) or isinstance(n, bool) or n < 1:
        raise InvalidPipelineStage("$bucketAuto", "'buckets' must be a positive integer")
    output = _parse_accumulators("$bucketAuto", spec.get("output") or {"count": {"$sum": 1}})
    return Stage("$bucketAuto", group_by=spec["groupBy"], buckets=n, output=output)

def _parse_geo_near(spec):
    if not isinstance(spec, dict) or "near" not in spec:
        raise InvalidPipelineStage("$geoNear", "requires 'near'")
    if not spec.get("distanceField"):
        raise InvalidPipelineStage("$geoNear", "requires 'distanceField'")
    try:
        kind, origin = require_geometry(spec["near"], "$geoNear")
    except InvalidQueryError as e:
        raise InvalidPipelineStage("$geoNear", str(e)) from e
    if kind != "Point":
        raise InvalidPipelineStage("$geoNear", "'near' must be a Point")
    return Stage("$geoNear", origin=origin, distance_field=spec["distanceField"],
                 max_distance=spec.get("maxDistance"), min_distance=spec.get("minDistance"),
                 query=spec.get("query") or {}, key=spec.get("key"),
                 include_locs=spec.get("includeLocs"),
                 multiplier=spec.get("distanceMultiplier", 1), limit=spec.get("limit"))

def _parse_lookup(spec):
    required = ("from", "localField", "foreignField", "as")
    if not isinstance(spec, dict) or any(not isinstance(spec.get(k), str) for k in required):
        raise InvalidPipelineStage("$lookup", "requires string 'from', 'localField', 'foreignField' and 'as'")
    return Stage("$lookup", source=spec["from"], local=spec["localField"],
                 foreign=spec["foreignField"], as_field=spec["as"])

def _parse_out(spec):
    if not isinstance(spec, str) or not spec:
        raise InvalidPipelineStage("$out", "target must be a collection name")
    return Stage("$out", target=spec)

_PARSERS: Dict[str, Callable[[Any], Stage]] = {
    "$match": _parse_match,
    "$project": _parse_project,
    "$addFields": _parse_add_fields,
    "$set": lambda spec: _parse_add_fields(spec, "$set"),
    "$unwind": _parse_unwind,
    "$group": _parse_group,
    "$sort": _parse_sort,
    "$skip": _parse_count_arg("$skip"),
    "$limit": _parse_count_arg("$limit"),
    "$count": _parse_count,
    "$bucket": _parse_bucket,
    "$bucketAuto": _parse_bucket_auto,
    "$geoNear": _parse_geo_near,
    "$lookup": _parse_lookup,
    "$out": _parse_out,
}

def parse_stage(raw) -> Stage:
    if not isinstance(raw, dict) or len(raw) != 1:
        raise InvalidPipelineStage(str(raw), "each pipeline stage must be a single-key dict")
    op, spec = next(iter(raw.items()))
    parser = _PARSERS.get(op)
    if parser is None:
        raise InvalidPipelineStage(op, "unrecognized pipeline stage name")
    return parser(spec)


# =========================
# Stage execution
# =========================
def _run_match(stage, docs, ctx):
    return (d for d in docs if match_query(d, stage.query))

def _run_project(stage, docs, ctx):
    included = [path for path, action, _ in stage.fields if action == "include"]
    excluded = [path for path, action, _ in stage.fields if action == "exclude"]
    if not stage.include_id:
        excluded.append("_id")
    for d in docs:
        if stage.exclusion:
            yield exclude_paths(d, excluded)
            continue
        out = include_paths(d, included) if included else {}
        if stage.include_id and "_id" in d:
            out = dict(_id=d["_id"], **out)
        for path, action, expr in stage.fields:
            if action != "compute":
                continue
            val = evaluate(expr, d)
            if val is not MISSING:
                deep_set(out, path, val)
        yield out

def _run_add_fields(stage, docs, ctx):
    for d in docs:
        out = copy_document(d)
        for path, expr in stage.fields:
            val = evaluate(expr, d)
            if val is MISSING:
                deep_unset(out, path)
            else:
                deep_set(out, path, val)
        yield out

def _run_unwind(stage, docs, ctx):
    for d in docs:
        arr = deep_get(d, stage.path, MISSING)
        if isinstance(arr, list) and arr:
            for i, item in enumerate(arr):
                nd = copy_document(d)
                deep_set(nd, stage.path, item)
                if stage.index_field:
                    nd[stage.index_field] = i
                yield nd
        elif isinstance(arr, list) or arr is None or arr is MISSING:
            if stage.preserve:
                nd = copy_document(d)
                if isinstance(arr, list):
                    deep_unset(nd, stage.path)
                if stage.index_field:
                    nd[stage.index_field] = None
                yield nd
        else:
            nd = copy_document(d)
            if stage.index_field:
                nd[stage.index_field] = None
            yield nd

def _run_group(stage, docs, ctx):
    groups: Dict[Any, tuple] = {}
    for d in docs:
        key = evaluate(stage.key, d)
        key = None if key is MISSING else key
        fk = freeze(key)
        if fk not in groups:
            groups[fk] = (key, [])
        groups[fk][1].append(d)
    for key, members in groups.values():
        out = {"_id": key}
        out.update(_fold(members, stage.accumulators))
        yield out

def _run_sort(stage, docs, ctx):
    return iter(sort_documents(list(docs), stage.keys))

def _run_skip(stage, docs, ctx):
    return itertools.islice(docs, stage.n, None)

def _run_limit(stage, docs, ctx):
    return itertools.islice(docs, stage.n)

def _run_count(stage, docs, ctx):
    n = sum(1 for _ in docs)
    if n:
        yield {stage.field: n}

def _run_bucket(stage, docs, ctx):
    bounds = stage.boundaries
    buckets: List[List[dict]] = [[] for _ in bounds[:-1]]
    overflow: List[dict] = []
    for d in docs:
        v = evaluate(stage.group_by, d)
        v = None if v is MISSING else v
        placed = False
        if comparable(v, bounds[0]):
            for i, (lo, hi) in enumerate(zip(bounds, bounds[1:])):
                if compare_values(lo, v) <= 0 < compare_values(hi, v):
                    buckets[i].append(d)
                    placed = True
                    break
        if not placed:
            if stage.has_default:
                overflow.append(d)
            else:
                logger.debug("$bucket dropped document with out-of-range value %r", v)
    for lo, members in zip(bounds, buckets):
        if members:
            out = {"_id": lo}
            out.update(_fold(members, stage.output))
            yield out
    if overflow:
        out = {"_id": stage.default}
        out.update(_fold(overflow, stage.output))
        yield out

def _run_bucket_auto(stage, docs, ctx):
    keyed = []
    for d in docs:
        v = evaluate(stage.group_by, d)
        keyed.append((None if v is MISSING else v, d))
    if not keyed:
        return
    keyed.sort(key=lambda pair: sort_key(pair[0]))
    n = len(keyed)
    per_bucket = n / stage.buckets
    groups: List[List[tuple]] = []
    i = 0
    while i < n:
        target = max(1, int(round(per_bucket * (len(groups) + 1))) - i) if len(groups) < stage.buckets - 1 else n - i
        j = min(n, i + target)
        # values equal to the last one taken stay in the same bucket
        while j < n and compare_values(keyed[j][0], keyed[j - 1][0]) == 0:
            j += 1
        groups.append(keyed[i:j])
        i = j
    for idx, group in enumerate(groups):
        lo = group[0][0]
        hi = groups[idx + 1][0][0] if idx + 1 < len(groups) else group[-1][0]
        out = {"_id": {"min": lo, "max": hi}}
        out.update(_fold([d for _, d in group], stage.output))
        yield out

def _run_lookup(stage, docs, ctx):
    foreign: Optional[List[dict]] = None
    for d in docs:
        if foreign is None:
            foreign = ctx.foreign_documents(stage.source)
        local = evaluate(f"${stage.local}", d)
        locals_ = local if isinstance(local, list) else [None if local is MISSING else local]
        matches = []
        for f in foreign:
            fval = evaluate(f"${stage.foreign}", f)
            fvals = fval if isinstance(fval, list) else [None if fval is MISSING else fval]
            if any(compare_values(a, b) == 0 for a in locals_ for b in fvals):
                matches.append(copy_document(f))
        out = copy_document(d)
        deep_set(out, stage.as_field, matches)
        yield out

_RUNNERS: Dict[str, Callable] = {
    "$match": _run_match,
    "$project": _run_project,
    "$addFields": _run_add_fields,
    "$unwind": _run_unwind,
    "$group": _run_group,
    "$sort": _run_sort,
    "$skip": _run_skip,
    "$limit": _run_limit,
    "$count": _run_count,
    "$bucket": _run_bucket,
    "$bucketAuto": _run_bucket_auto,
    "$lookup": _run_lookup,
}


# =========================
# Pipeline
# =========================
class Pipeline:
    def __init__(self, stages: List[dict]):
        if not isinstance(stages, list):
            raise InvalidPipelineStage("pipeline", "a pipeline must be a list of stages")
        self.stages = [parse_stage(s) for s in stages]
        for i, st in enumerate(self.stages):
            if st.kind == "$geoNear" and i != 0:
                raise InvalidPipelineStage("$geoNear", "is only valid as the first stage in a pipeline")
            if st.kind == "$out" and i != len(self.stages) - 1:
                raise InvalidPipelineStage("$out", "can only be the final stage in the pipeline")
            if st.kind == "$match" and i != 0 and "$text" in st.query:
                raise InvalidPipelineStage("$match", "$text is only allowed in the first stage")

    @property
    def out_target(self) -> Optional[str]:
        if self.stages and self.stages[-1].kind == "$out":
            return self.stages[-1].target
        return None

    def execute(self, ctx) -> Iterator[dict]:
        """Run against ctx (a collection); the leading $match or $geoNear uses its indexes."""
        stages = [s for s in self.stages if s.kind != "$out"]
        if stages and stages[0].kind == "$geoNear":
            docs: Iterable[dict] = ctx.geo_near_documents(stages[0])
            stages = stages[1:]
        elif stages and stages[0].kind == "$match":
            docs = ctx.match_documents(stages[0].query)
            stages = stages[1:]
        else:
            docs = ctx.match_documents({})
        for st in stages:
            docs = _RUNNERS[st.kind](st, docs, ctx)
        return iter(docs)


class AggregationCursor:
    """Lazy, restartable aggregation result."""

    def __init__(self, collection, pipeline: Pipeline):
        self._collection = collection
        self._pipeline = pipeline

    def __iter__(self):
        return self._pipeline.execute(self._collection)

    def to_list(self, length: Optional[int] = None) -> List[dict]:
        it = iter(self)
        return list(it if length is None else itertools.islice(it, length))


def run_out(collection, pipeline: Pipeline) -> OutResult:
    target = pipeline.out_target
    docs = list(pipeline.execute(collection))
    collection.database.replace_collection_contents(target, docs)
    logger.info("$out wrote %d documents to %s", len(docs), target)
    return OutResult(target, len(docs))
