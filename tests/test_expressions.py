"""Expression evaluator tests — field paths, variables, operators, conversions."""

from datetime import datetime, timedelta, timezone

import pytest

from pylitedoc import InvalidQueryError
from pylitedoc.expressions import evaluate, get_path, is_truthy
from pylitedoc.utils import MISSING

DOC = {"a": 5, "b": 2, "name": "Max Power", "tags": ["x", "y", "z"],
       "items": [{"qty": 1}, {"qty": 4}], "when": datetime(2024, 5, 20, 8, tzinfo=timezone.utc)}


def test_field_paths_and_literals():
    assert evaluate("$a", DOC) == 5
    assert evaluate("plain", DOC) == "plain"
    assert evaluate("$missing", DOC) is MISSING
    assert get_path(DOC, "items.qty") == [1, 4]
    assert evaluate({"$literal": "$a"}, DOC) == "$a"


def test_variables():
    assert evaluate("$$ROOT.a", DOC) == 5
    assert evaluate("$$CURRENT", DOC) is DOC
    assert isinstance(evaluate("$$NOW", DOC), datetime)
    assert evaluate("$$x", DOC, {"x": 3}) == 3
    with pytest.raises(InvalidQueryError):
        evaluate("$$nope", DOC)


def test_unknown_operator_raises():
    with pytest.raises(InvalidQueryError):
        evaluate({"$frob": 1}, DOC)


def test_arithmetic():
    assert evaluate({"$add": ["$a", "$b", 1]}, DOC) == 8
    assert evaluate({"$subtract": ["$a", "$b"]}, DOC) == 3
    assert evaluate({"$multiply": ["$a", "$b"]}, DOC) == 10
    assert evaluate({"$divide": ["$a", "$b"]}, DOC) == 2.5
    assert evaluate({"$divide": ["$a", 0]}, DOC) is None
    assert evaluate({"$mod": ["$a", "$b"]}, DOC) == 1
    assert evaluate({"$abs": -3}, DOC) == 3
    assert evaluate({"$add": ["$a", "$missing"]}, DOC) is None


def test_date_arithmetic_in_milliseconds():
    later = evaluate({"$add": ["$when", 60 * 1000]}, DOC)
    assert later == DOC["when"] + timedelta(minutes=1)
    assert evaluate({"$subtract": [later, "$when"]}, DOC) == 60000


def test_comparison_and_boolean():
    assert evaluate({"$gt": ["$a", "$b"]}, DOC) is True
    assert evaluate({"$cmp": ["$b", "$a"]}, DOC) == -1
    assert evaluate({"$and": [True, {"$eq": ["$a", 5]}]}, DOC) is True
    assert evaluate({"$or": [False, 0, None]}, DOC) is False
    assert evaluate({"$not": [{"$lt": ["$a", 1]}]}, DOC) is True


def test_conditionals():
    assert evaluate({"$cond": [{"$gte": ["$a", 5]}, "big", "small"]}, DOC) == "big"
    assert evaluate({"$cond": {"if": False, "then": 1, "else": 2}}, DOC) == 2
    assert evaluate({"$ifNull": ["$missing", "fallback"]}, DOC) == "fallback"


def test_strings():
    assert evaluate({"$concat": ["$name", "!"]}, DOC) == "Max Power!"
    assert evaluate({"$toUpper": "$name"}, DOC) == "MAX POWER"
    assert evaluate({"$substrCP": ["$name", 0, 3]}, DOC) == "Max"
    assert evaluate({"$strLenCP": "$name"}, DOC) == 9
    assert evaluate({"$split": ["$name", " "]}, DOC) == ["Max", "Power"]
    assert evaluate({"$regexMatch": {"input": "$name", "regex": "power", "options": "i"}}, DOC) is True


def test_arrays():
    assert evaluate({"$size": "$tags"}, DOC) == 3
    assert evaluate({"$size": "$missing"}, DOC) is None
    assert evaluate({"$arrayElemAt": ["$tags", -1]}, DOC) == "z"
    assert evaluate({"$in": ["y", "$tags"]}, DOC) is True
    assert evaluate({"$map": {"input": "$items", "as": "i", "in": {"$multiply": ["$$i.qty", 2]}}}, DOC) == [2, 8]
    assert evaluate({"$filter": {"input": "$items", "as": "i", "cond": {"$gt": ["$$i.qty", 2]}}}, DOC) == [{"qty": 4}]
    assert evaluate({"$anyElementTrue": [[0, 1]]}, DOC) is True
    assert evaluate({"$allElementsTrue": [[1, 0]]}, DOC) is False


def test_convert_and_shorthands():
    assert evaluate({"$toInt": "42"}, DOC) == 42
    assert evaluate({"$toDouble": "1.5"}, DOC) == 1.5
    assert evaluate({"$toString": 7}, DOC) == "7"
    assert evaluate({"$toBool": 0}, DOC) is False
    assert evaluate({"$toInt": "forty"}, DOC) is None
    assert evaluate({"$convert": {"input": "x", "to": "int", "onError": -1}}, DOC) == -1
    assert evaluate({"$convert": {"input": "$missing", "to": "int", "onNull": 0}}, DOC) == 0
    assert evaluate({"$toDate": 0}, DOC) == datetime(1970, 1, 1, tzinfo=timezone.utc)
    with pytest.raises(InvalidQueryError):
        evaluate({"$convert": {"input": 1, "to": "uuid"}}, DOC)


def test_date_parts():
    assert evaluate({"$year": "$when"}, DOC) == 2024
    assert evaluate({"$month": "$when"}, DOC) == 5
    assert evaluate({"$dayOfMonth": {"date": "$when"}}, DOC) == 20
    assert evaluate({"$isoWeek": "$when"}, DOC) == 21
    assert evaluate({"$year": "$name"}, DOC) is None


def test_truthiness():
    assert not is_truthy(0)
    assert not is_truthy(None)
    assert not is_truthy(MISSING)
    assert is_truthy("")
    assert is_truthy([])
