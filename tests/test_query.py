"""Query matcher tests — comparisons, array semantics, $elemMatch, $expr, regex."""

import re
from datetime import datetime, timedelta, timezone

import pytest

from pylitedoc import InvalidQueryError, match_query

MAX = {"name": "Max", "hobbies": [{"title": "Sports", "frequency": 2},
                                  {"title": "Cooking", "frequency": 6}],
       "favourites": ["a", "b"], "age": 29}


# -- comparisons --------------------------------------------------------------

def test_equality_and_ranges():
    assert match_query(MAX, {"name": "Max"})
    assert match_query(MAX, {"age": {"$gte": 29, "$lt": 30}})
    assert not match_query(MAX, {"age": {"$gt": 29}})
    assert match_query(MAX, {"age": {"$in": [1, 29]}})
    assert match_query(MAX, {"age": {"$nin": [1, 2]}})
    assert match_query(MAX, {"age": {"$ne": 30}})


def test_mismatched_types_never_match_and_never_raise():
    assert not match_query(MAX, {"name": {"$gt": 5}})
    assert not match_query(MAX, {"age": {"$lt": "zzz"}})
    assert not match_query({"age": True}, {"age": 1})


def test_missing_field_semantics():
    assert match_query(MAX, {"phone": None})
    assert not match_query(MAX, {"phone": {"$exists": True}})
    assert match_query(MAX, {"phone": {"$exists": False}})
    assert not match_query(MAX, {"phone": {"$gt": 1}})


def test_logical_combinators():
    assert match_query(MAX, {"$or": [{"age": 1}, {"name": "Max"}]})
    assert not match_query(MAX, {"$and": [{"age": 29}, {"name": "Ana"}]})
    assert match_query(MAX, {"$nor": [{"age": 1}, {"name": "Ana"}]})
    assert match_query(MAX, {"$not": {"name": "Ana"}})
    assert match_query(MAX, {"age": {"$not": {"$gt": 40}}})


def test_regex_case_insensitive():
    book = {"author": "Jonas Jonasson"}
    assert match_query(book, {"author": {"$regex": "jonas", "$options": "i"}})
    assert not match_query(book, {"author": {"$regex": "jonas"}})
    assert match_query(book, {"author": {"$regex": {"pattern": "JONAS", "options": "i"}}})
    assert match_query(book, {"author": re.compile("^Jon")})


def test_type_and_size():
    assert match_query(MAX, {"favourites": {"$size": 2}})
    assert match_query(MAX, {"age": {"$type": "number"}})
    assert match_query(MAX, {"favourites": {"$type": "array"}})


# -- arrays -------------------------------------------------------------------

def test_elem_match_requires_one_element_to_satisfy_all():
    q = {"hobbies": {"$elemMatch": {"title": "Sports", "frequency": {"$gte": 3}}}}
    assert not match_query(MAX, q)


def test_independent_predicates_may_use_different_elements():
    q = {"hobbies.title": "Sports", "hobbies.frequency": {"$gte": 3}}
    assert match_query(MAX, q)


def test_elem_match_on_scalars():
    doc = {"scores": [57, 90]}
    assert not match_query(doc, {"scores": {"$elemMatch": {"$gte": 60, "$lt": 80}}})
    assert match_query(doc, {"scores": {"$gte": 60, "$lt": 80}})


def test_array_contains_and_all():
    assert match_query(MAX, {"favourites": "a"})
    assert match_query(MAX, {"favourites": ["a", "b"]})
    assert match_query(MAX, {"favourites": {"$all": ["b", "a"]}})
    assert not match_query(MAX, {"favourites": {"$all": ["a", "c"]}})


def test_numeric_path_segment():
    assert match_query(MAX, {"hobbies.1.title": "Cooking"})


# -- $expr --------------------------------------------------------------------

def test_expr_size():
    assert match_query(MAX, {"$expr": {"$gt": [{"$size": "$favourites"}, 1]}})
    assert not match_query({"favourites": ["a"]}, {"$expr": {"$gt": [{"$size": "$favourites"}, 1]}})


def test_expr_size_on_missing_field_does_not_raise():
    assert not match_query({}, {"$expr": {"$gt": [{"$size": "$favourites"}, 1]}})


def test_expr_all_elements_true_over_map():
    q = {"$expr": {"$allElementsTrue": {"$map": {
        "input": "$hobbies", "as": "hobby", "in": {"$gte": ["$$hobby.frequency", 3]}}}}}
    assert not match_query(MAX, q)
    assert match_query({"hobbies": [{"frequency": 3}, {"frequency": 6}]}, q)


def test_expr_field_arithmetic():
    product = {"price": 100, "discount": 60}
    assert match_query(product, {"$expr": {"$lte": [{"$subtract": ["$price", "$discount"]}, "$discount"]}})


def test_expr_date_window():
    now = datetime(2024, 5, 20, tzinfo=timezone.utc)
    recent = {"orderDate": now - timedelta(days=3)}
    old = {"orderDate": now - timedelta(days=30)}
    q = {"$expr": {"$gte": ["$orderDate", {"$subtract": [now, 10 * 24 * 60 * 60 * 1000]}]}}
    assert match_query(recent, q)
    assert not match_query(old, q)


def test_expr_regex_match():
    assert match_query({"author": "Jonas"}, {"$expr": {"$regexMatch": {"input": "$author", "regex": "Jonas"}}})


# -- errors -------------------------------------------------------------------

def test_unknown_operator_raises():
    with pytest.raises(InvalidQueryError):
        match_query(MAX, {"age": {"$bogus": 1}})


def test_text_without_index_raises():
    with pytest.raises(InvalidQueryError):
        match_query(MAX, {"$text": {"$search": "x"}})
