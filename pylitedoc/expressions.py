# expressions.py
"""Aggregation expression evaluation.

An expression is a field path (``"$a.b"``), a variable (``"$$item.x"``), an
operator document (``{"$add": [...]}``), an expression object (a dict of
expressions), an array of expressions, or a literal. Missing field paths
evaluate to MISSING; operators treat MISSING as null and never raise for
absent or mistyped input.
"""
import math
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from .errors import InvalidQueryError
from .utils import MISSING, as_utc, compare_values, is_array, is_number, utcnow

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class ConversionError(ValueError):
    pass


# =========================
# Entry point
# =========================
def evaluate(expr, doc, variables: Optional[Dict[str, Any]] = None):
    variables = variables if variables is not None else {}
    if isinstance(expr, str):
        if expr.startswith("$$"):
            return _variable(expr[2:], doc, variables)
        if expr.startswith("$") and len(expr) > 1:
            return get_path(doc, expr[1:])
        return expr
    if isinstance(expr, list):
        return [_nullify(evaluate(e, doc, variables)) for e in expr]
    if isinstance(expr, dict):
        if len(expr) == 1:
            op, spec = next(iter(expr.items()))
            if op.startswith("$"):
                func = OPERATORS.get(op)
                if func is None:
                    raise InvalidQueryError(f"Unsupported expression operator: {op}")
                return func(spec, doc, variables)
        out = {}
        for k, v in expr.items():
            val = evaluate(v, doc, variables)
            if val is not MISSING:
                out[k] = val
        return out
    return expr


def get_path(doc, dotted: str):
    """Field-path lookup; traversing an array maps over its elements."""
    cur = doc
    parts = dotted.split(".")
    for i, p in enumerate(parts):
        if isinstance(cur, dict):
            if p not in cur:
                return MISSING
            cur = cur[p]
        elif isinstance(cur, list):
            rest = ".".join(parts[i:])
            out = []
            for item in cur:
                val = get_path(item, rest) if isinstance(item, (dict, list)) else MISSING
                if val is not MISSING:
                    out.append(val)
            return out
        else:
            return MISSING
    return cur


def _variable(name: str, doc, variables):
    head, _, rest = name.partition(".")
    if head in ("ROOT", "CURRENT"):
        base = doc
    elif head == "NOW":
        base = variables.get("NOW") or utcnow()
    elif head in variables:
        base = variables[head]
    else:
        raise InvalidQueryError(f"Use of undefined variable: {head}")
    return get_path(base, rest) if rest else base


def is_truthy(value) -> bool:
    if value is None or value is MISSING or value is False:
        return False
    if is_number(value) and value == 0:
        return False
    return True


def _nullify(value):
    return None if value is MISSING else value


def _args(spec, doc, variables):
    if isinstance(spec, list):
        return [_nullify(evaluate(e, doc, variables)) for e in spec]
    return [_nullify(evaluate(spec, doc, variables))]


def _single(spec, doc, variables):
    if isinstance(spec, list) and len(spec) == 1:
        spec = spec[0]
    return _nullify(evaluate(spec, doc, variables))


# =========================
# Arithmetic
# =========================
def _add(spec, doc, variables):
    args = _args(spec, doc, variables)
    if any(a is None for a in args):
        return None
    dates = [a for a in args if isinstance(a, datetime)]
    nums = [a for a in args if is_number(a)]
    if len(dates) + len(nums) != len(args) or len(dates) > 1:
        return None
    total = sum(nums)
    if dates:
        return dates[0] + timedelta(milliseconds=total)
    return total

def _subtract(spec, doc, variables):
    a, b = _args(spec, doc, variables)
    if a is None or b is None:
        return None
    if isinstance(a, datetime) and isinstance(b, datetime):
        return int((as_utc(a) - as_utc(b)).total_seconds() * 1000)
    if isinstance(a, datetime) and is_number(b):
        return a - timedelta(milliseconds=b)
    if is_number(a) and is_number(b):
        return a - b
    return None

def _multiply(spec, doc, variables):
    args = _args(spec, doc, variables)
    if any(not is_number(a) for a in args):
        return None
    return math.prod(args)

def _divide(spec, doc, variables):
    a, b = _args(spec, doc, variables)
    if not is_number(a) or not is_number(b) or b == 0:
        return None
    return a / b

def _mod(spec, doc, variables):
    a, b = _args(spec, doc, variables)
    if not is_number(a) or not is_number(b) or b == 0:
        return None
    return math.fmod(a, b) if isinstance(a, float) or isinstance(b, float) else int(math.fmod(a, b))

def _abs(spec, doc, variables):
    v = _single(spec, doc, variables)
    return abs(v) if is_number(v) else None


# =========================
# Comparison and boolean
# =========================
def _comparison(test: Callable[[int], bool]):
    def op(spec, doc, variables):
        a, b = _args(spec, doc, variables)
        return test(compare_values(a, b))
    return op

def _cmp(spec, doc, variables):
    a, b = _args(spec, doc, variables)
    return compare_values(a, b)

def _and(spec, doc, variables):
    return all(is_truthy(evaluate(e, doc, variables)) for e in _as_list(spec))

def _or(spec, doc, variables):
    return any(is_truthy(evaluate(e, doc, variables)) for e in _as_list(spec))

def _not(spec, doc, variables):
    return not is_truthy(evaluate(_as_list(spec)[0], doc, variables))

def _cond(spec, doc, variables):
    if isinstance(spec, dict):
        cond, then, other = spec.get("if"), spec.get("then"), spec.get("else")
    else:
        cond, then, other = spec
    branch = then if is_truthy(evaluate(cond, doc, variables)) else other
    return _nullify(evaluate(branch, doc, variables))

def _if_null(spec, doc, variables):
    *candidates, replacement = spec
    for c in candidates:
        val = evaluate(c, doc, variables)
        if val is not None and val is not MISSING:
            return val
    return _nullify(evaluate(replacement, doc, variables))

def _literal(spec, doc, variables):
    return spec

def _as_list(spec):
    return spec if isinstance(spec, list) else [spec]


# =========================
# Strings
# =========================
def _concat(spec, doc, variables):
    args = _args(spec, doc, variables)
    if any(a is None for a in args):
        return None
    if any(not isinstance(a, str) for a in args):
        return None
    return "".join(args)

def _to_upper(spec, doc, variables):
    v = _single(spec, doc, variables)
    return "" if v is None else _stringify(v).upper()

def _to_lower(spec, doc, variables):
    v = _single(spec, doc, variables)
    return "" if v is None else _stringify(v).lower()

def _substr_cp(spec, doc, variables):
    s, start, count = _args(spec, doc, variables)
    if s is None or not is_number(start) or not is_number(count):
        return ""
    s = _stringify(s)
    start, count = int(start), int(count)
    if start < 0:
        return ""
    return s[start:start + count] if count >= 0 else s[start:]

def _str_len_cp(spec, doc, variables):
    v = _single(spec, doc, variables)
    return len(v) if isinstance(v, str) else None

def _regex_match(spec, doc, variables):
    value = _nullify(evaluate(spec.get("input"), doc, variables))
    regex = _nullify(evaluate(spec.get("regex"), doc, variables))
    options = spec.get("options", "") or ""
    if not isinstance(value, str) or not isinstance(regex, str):
        return False
    return re.search(regex, value, regex_flags(options)) is not None

def _split(spec, doc, variables):
    s, sep = _args(spec, doc, variables)
    if not isinstance(s, str) or not isinstance(sep, str) or not sep:
        return None
    return s.split(sep)

def _trim(spec, doc, variables):
    value = _nullify(evaluate(spec.get("input"), doc, variables))
    if not isinstance(value, str):
        return None
    chars = spec.get("chars")
    return value.strip(chars) if chars else value.strip()

def regex_flags(options: str) -> int:
    flags = 0
    if "i" in options: flags |= re.IGNORECASE
    if "m" in options: flags |= re.MULTILINE
    if "s" in options: flags |= re.DOTALL
    if "x" in options: flags |= re.VERBOSE
    return flags

def _stringify(v) -> str:
    if isinstance(v, datetime):
        return as_utc(v).isoformat().replace("+00:00", "Z")
    if isinstance(v, bool):
        return "true" if v else "false"
    return str(v)


# =========================
# Arrays
# =========================
def _size(spec, doc, variables):
    v = _single(spec, doc, variables)
    return len(v) if is_array(v) else None

def _map(spec, doc, variables):
    items = _nullify(evaluate(spec.get("input"), doc, variables))
    if not is_array(items):
        return None
    name = spec.get("as", "this")
    out = []
    for item in items:
        scope = dict(variables)
        scope[name] = item
        out.append(_nullify(evaluate(spec.get("in"), doc, scope)))
    return out

def _filter(spec, doc, variables):
    items = _nullify(evaluate(spec.get("input"), doc, variables))
    if not is_array(items):
        return None
    name = spec.get("as", "this")
    limit = spec.get("limit")
    out = []
    for item in items:
        scope = dict(variables)
        scope[name] = item
        if is_truthy(evaluate(spec.get("cond"), doc, scope)):
            out.append(item)
            if limit and len(out) >= limit:
                break
    return out

def _all_elements_true(spec, doc, variables):
    items = _single(spec, doc, variables)
    if not is_array(items):
        return False
    return all(is_truthy(i) for i in items)

def _any_element_true(spec, doc, variables):
    items = _single(spec, doc, variables)
    if not is_array(items):
        return False
    return any(is_truthy(i) for i in items)

def _in(spec, doc, variables):
    needle, haystack = _args(spec, doc, variables)
    if not is_array(haystack):
        return False
    return any(compare_values(needle, h) == 0 for h in haystack)

def _array_elem_at(spec, doc, variables):
    items, idx = _args(spec, doc, variables)
    if not is_array(items) or not is_number(idx):
        return None
    idx = int(idx)
    if -len(items) <= idx < len(items):
        return items[idx]
    return MISSING


# =========================
# Conversion
# =========================
def to_date(v) -> datetime:
    if isinstance(v, datetime):
        return v
    if isinstance(v, str):
        text = v.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as e:
            raise ConversionError(f"cannot convert {v!r} to date") from e
        return as_utc(parsed)
    if is_number(v):
        return _EPOCH + timedelta(milliseconds=v)
    raise ConversionError(f"cannot convert {v!r} to date")

def to_double(v) -> float:
    if isinstance(v, bool):
        return 1.0 if v else 0.0
    if is_number(v):
        return float(v)
    if isinstance(v, str):
        try:
            return float(v.strip())
        except ValueError as e:
            raise ConversionError(f"cannot convert {v!r} to double") from e
    if isinstance(v, datetime):
        return (as_utc(v) - _EPOCH).total_seconds() * 1000.0
    raise ConversionError(f"cannot convert {v!r} to double")

def to_int(v) -> int:
    if isinstance(v, bool):
        return int(v)
    if isinstance(v, int):
        return v
    if isinstance(v, float):
        return int(v)
    if isinstance(v, str):
        try:
            return int(v.strip())
        except ValueError as e:
            raise ConversionError(f"cannot convert {v!r} to int") from e
    raise ConversionError(f"cannot convert {v!r} to int")

def to_string(v) -> str:
    if isinstance(v, (dict, list)):
        raise ConversionError(f"cannot convert {v!r} to string")
    return _stringify(v)

def to_bool(v) -> bool:
    return is_truthy(v)

CONVERTERS = {
    "date": to_date,
    "double": to_double,
    "decimal": to_double,
    "int": to_int,
    "long": to_int,
    "string": to_string,
    "bool": to_bool,
}

def _convert(spec, doc, variables):
    value = _nullify(evaluate(spec.get("input"), doc, variables))
    if value is None:
        return _nullify(evaluate(spec.get("onNull"), doc, variables)) if "onNull" in spec else None
    converter = CONVERTERS.get(spec.get("to"))
    if converter is None:
        raise InvalidQueryError(f"$convert: unsupported target type {spec.get('to')!r}")
    try:
        return converter(value)
    except ConversionError:
        return _nullify(evaluate(spec.get("onError"), doc, variables)) if "onError" in spec else None

def _shorthand(target: str):
    def op(spec, doc, variables):
        return _convert({"input": spec[0] if isinstance(spec, list) else spec, "to": target}, doc, variables)
    return op


# =========================
# Dates
# =========================
def _date_part(extract: Callable[[datetime], int]):
    def op(spec, doc, variables):
        if isinstance(spec, dict) and "date" in spec:
            spec = spec["date"]
        v = _single(spec, doc, variables)
        if not isinstance(v, datetime):
            return None
        return extract(as_utc(v))
    return op


OPERATORS: Dict[str, Callable] = {
    "$add": _add,
    "$subtract": _subtract,
    "$multiply": _multiply,
    "$divide": _divide,
    "$mod": _mod,
    "$abs": _abs,
    "$eq": _comparison(lambda c: c == 0),
    "$ne": _comparison(lambda c: c != 0),
    "$gt": _comparison(lambda c: c > 0),
    "$gte": _comparison(lambda c: c >= 0),
    "$lt": _comparison(lambda c: c < 0),
    "$lte": _comparison(lambda c: c <= 0),
    "$cmp": _cmp,
    "$and": _and,
    "$or": _or,
    "$not": _not,
    "$cond": _cond,
    "$ifNull": _if_null,
    "$literal": _literal,
    "$concat": _concat,
    "$toUpper": _to_upper,
    "$toLower": _to_lower,
    "$substrCP": _substr_cp,
    "$substr": _substr_cp,
    "$strLenCP": _str_len_cp,
    "$regexMatch": _regex_match,
    "$split": _split,
    "$trim": _trim,
    "$size": _size,
    "$map": _map,
    "$filter": _filter,
    "$allElementsTrue": _all_elements_true,
    "$anyElementTrue": _any_element_true,
    "$in": _in,
    "$arrayElemAt": _array_elem_at,
    "$convert": _convert,
    "$toDate": _shorthand("date"),
    "$toDouble": _shorthand("double"),
    "$toInt": _shorthand("int"),
    "$toString": _shorthand("string"),
    "$toBool": _shorthand("bool"),
    "$year": _date_part(lambda d: d.year),
    "$month": _date_part(lambda d: d.month),
    "$dayOfMonth": _date_part(lambda d: d.day),
    "$isoWeek": _date_part(lambda d: d.isocalendar()[1]),
    "$isoWeekYear": _date_part(lambda d: d.isocalendar()[0]),
}
