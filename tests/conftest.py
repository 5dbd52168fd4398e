"""Shared fixtures: a fresh database per test and a small users fixture."""

import pytest

from pylitedoc import Database


USERS = [
    {"_id": 1, "name": "Max", "age": 29, "state": "wicklow",
     "hobbies": [{"title": "Sports", "frequency": 4}, {"title": "Cooking", "frequency": 6}]},
    {"_id": 2, "name": "Ana", "age": 45, "state": "cork",
     "hobbies": [{"title": "Sports", "frequency": 2}, {"title": "Cooking", "frequency": 6}]},
    {"_id": 3, "name": "Chris", "age": 52, "state": "wicklow",
     "hobbies": [{"title": "Reading", "frequency": 3}]},
    {"_id": 4, "name": "Dana", "age": 61, "state": "dublin", "hobbies": []},
    {"_id": 5, "name": "Eli", "age": 40, "state": "cork"},
]


@pytest.fixture
def db():
    database = Database("test")
    yield database
    database.close()


@pytest.fixture
def users(db):
    coll = db["users"]
    coll.insert_many([dict(u) for u in USERS])
    return coll
