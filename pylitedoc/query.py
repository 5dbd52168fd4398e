# query.py
import re
from typing import Any, List

from .errors import InvalidQueryError
from .expressions import evaluate, is_truthy, regex_flags
from .geo import GEO_OPERATORS, eval_geo_operator
from .utils import bson_type, comparable, compare_values, is_array, is_number, resolve_values

# =========================
# Query engine
# =========================
COMPARATORS = {
    "$eq", "$ne", "$gt", "$gte", "$lt", "$lte",
    "$in", "$nin", "$exists", "$type", "$regex", "$options", "$size",
    "$all", "$elemMatch", "$mod", "$not",
    "$maxDistance", "$minDistance",
} | GEO_OPERATORS
LOGICAL = {"$and", "$or", "$nor", "$not"}

_TYPE_ALIASES = {"number": {"int", "long", "double", "decimal"}}


def match_query(doc: dict, query: dict) -> bool:
    if not isinstance(query, dict):
        raise InvalidQueryError("Query must be a dict.")
    for key, cond in query.items():
        if key in LOGICAL:
            if not _eval_logical(doc, key, cond):
                return False
        elif key == "$expr":
            if not is_truthy(evaluate(cond, doc)):
                return False
        elif key == "$text":
            raise InvalidQueryError("$text queries require a text index.")
        elif key.startswith("$"):
            raise InvalidQueryError(f"Unsupported top-level operator: {key}")
        else:
            if not _eval_field(doc, key, cond):
                return False
    return True

def _eval_logical(doc: dict, op: str, clauses):
    if op in {"$and", "$or", "$nor"}:
        if not isinstance(clauses, list) or not clauses:
            raise InvalidQueryError(f"{op} requires a non-empty list of clauses.")
        if op == "$and":
            return all(match_query(doc, clause) for clause in clauses)
        if op == "$or":
            return any(match_query(doc, clause) for clause in clauses)
        return not any(match_query(doc, clause) for clause in clauses)
    if op == "$not":
        if not isinstance(clauses, dict):
            raise InvalidQueryError("$not requires a single clause object.")
        return not match_query(doc, clauses)
    raise InvalidQueryError(f"Unsupported logical operator: {op}")

def is_operator_dict(cond) -> bool:
    return isinstance(cond, dict) and bool(cond) and all(k.startswith("$") for k in cond)

def _eval_field(doc: dict, dotted_key: str, cond):
    values = resolve_values(doc, dotted_key)
    if is_operator_dict(cond):
        return eval_conditions(values, cond)
    return _eq(values, cond)

def eval_conditions(values: List[Any], cond: dict) -> bool:
    """Evaluate an operator document against the values a path resolved to.

    Each operator is satisfied independently: on an array, {"$gt": 1, "$lt": 5}
    may be met by different elements. Use $elemMatch to require one element.
    """
    for op, arg in cond.items():
        if op not in COMPARATORS:
            raise InvalidQueryError(f"Unsupported operator: {op}")
        if not _eval_op(values, op, arg, cond):
            return False
    return True

def _expand(values: List[Any]) -> List[Any]:
    out = []
    for v in values:
        out.append(v)
        if is_array(v):
            out.extend(v)
    return out

def _equal(a, b) -> bool:
    if isinstance(b, re.Pattern):
        return isinstance(a, str) and b.search(a) is not None
    return compare_values(a, b) == 0

def _eq(values: List[Any], arg) -> bool:
    if arg is None:
        return not values or any(v is None for v in _expand(values))
    return any(_equal(v, arg) for v in _expand(values))

def _range(values: List[Any], arg, test) -> bool:
    return any(comparable(v, arg) and test(compare_values(v, arg)) for v in _expand(values))

def _eval_op(values: List[Any], op: str, arg, cond: dict) -> bool:
    if op == "$eq": return _eq(values, arg)
    if op == "$ne": return not _eq(values, arg)
    if op == "$gt": return _range(values, arg, lambda c: c > 0)
    if op == "$gte": return _range(values, arg, lambda c: c >= 0)
    if op == "$lt": return _range(values, arg, lambda c: c < 0)
    if op == "$lte": return _range(values, arg, lambda c: c <= 0)
    if op == "$in":
        if not isinstance(arg, list):
            raise InvalidQueryError("$in requires an array.")
        return any(_eq(values, a) for a in arg)
    if op == "$nin":
        if not isinstance(arg, list):
            raise InvalidQueryError("$nin requires an array.")
        return not any(_eq(values, a) for a in arg)
    if op == "$exists": return bool(values) == bool(arg)
    if op == "$type":
        wanted = set()
        for t in (arg if isinstance(arg, list) else [arg]):
            wanted |= _TYPE_ALIASES.get(t, {t})
        return any(bson_type(v) in wanted for v in _expand(values))
    if op == "$regex":
        pattern, flags = _parse_regex(arg, cond.get("$options", ""))
        return any(isinstance(v, str) and re.search(pattern, v, flags) is not None
                   for v in _expand(values))
    if op in ("$options", "$maxDistance", "$minDistance"):
        return True
    if op == "$size":
        return any(is_array(v) and len(v) == arg for v in values)
    if op == "$all":
        if not isinstance(arg, list):
            raise InvalidQueryError("$all requires an array.")
        return bool(arg) and all(_eq(values, a) for a in arg)
    if op == "$elemMatch":
        if not isinstance(arg, dict):
            raise InvalidQueryError("$elemMatch requires an object.")
        return any(is_array(v) and any(_elem_matches(e, arg) for e in v) for v in values)
    if op == "$mod":
        divisor, remainder = arg
        return any(is_number(v) and divisor and int(v) % divisor == remainder for v in _expand(values))
    if op == "$not":
        if isinstance(arg, (re.Pattern, str)):
            return not _eval_op(values, "$regex", arg, {})
        if not is_operator_dict(arg):
            raise InvalidQueryError("$not requires an operator expression.")
        return not eval_conditions(values, arg)
    if op in GEO_OPERATORS:
        if op in ("$near", "$nearSphere") and not (isinstance(arg, dict) and "$geometry" in arg):
            arg = {"$geometry": {"type": "Point", "coordinates": arg},
                   "$maxDistance": cond.get("$maxDistance"), "$minDistance": cond.get("$minDistance")}
        return any(eval_geo_operator(v, op, arg) for v in values)
    return False

def _elem_matches(elem, spec: dict) -> bool:
    """One array element must satisfy every clause of spec."""
    if is_operator_dict(spec) and not any(k in LOGICAL or k == "$expr" for k in spec):
        return eval_conditions([elem], spec)
    return isinstance(elem, dict) and match_query(elem, spec)

def _parse_regex(arg, options: str = ""):
    if isinstance(arg, re.Pattern):
        return arg.pattern, arg.flags | regex_flags(options)
    if isinstance(arg, str):
        return arg, regex_flags(options or "")
    if isinstance(arg, dict):
        pattern = arg.get("pattern", "")
        return pattern, regex_flags(arg.get("options", "") or options or "")
    raise InvalidQueryError("$regex must be a string or dict {pattern, options}.")
