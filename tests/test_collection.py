"""Document store tests — inserts, key access, update operators, upserts, cursors."""

import threading

import pytest

from pylitedoc import (
    Collection, DuplicateKeyError, InvalidDocumentError, InvalidQueryError, InvalidUpdateError,
    NotFound, SchemaViolation, Settings,
)

SCHEMA = {"$jsonSchema": {"required": ["name"], "properties": {"name": {"bsonType": "string"}}}}


# -- insert / key access -------------------------------------------------------

def test_insert_generates_id_and_get_returns_copy():
    coll = Collection("c")
    key = coll.insert({"name": "Max"})
    assert isinstance(key, str) and len(key) == 24
    doc = coll.get(key)
    doc["name"] = "changed"
    assert coll.get(key)["name"] == "Max"


def test_caller_document_is_not_aliased():
    coll = Collection("c")
    original = {"_id": 1, "tags": ["a"]}
    coll.insert_one(original)
    original["tags"].append("b")
    assert coll.get(1)["tags"] == ["a"]


def test_duplicate_id_rejected():
    coll = Collection("c")
    coll.insert({"_id": 1})
    with pytest.raises(DuplicateKeyError):
        coll.insert({"_id": 1})


def test_get_update_delete_missing_key():
    coll = Collection("c")
    with pytest.raises(NotFound):
        coll.get("nope")
    with pytest.raises(NotFound):
        coll.update("nope", {"a": 1})
    with pytest.raises(NotFound):
        coll.delete("nope")


def test_update_plain_patch_sets_fields():
    coll = Collection("c")
    coll.insert({"_id": 1, "name": "Max", "age": 1})
    res = coll.update(1, {"age": 2})
    assert res.modified_count == 1
    assert coll.get(1) == {"_id": 1, "name": "Max", "age": 2}


def test_delete_removes_document():
    coll = Collection("c")
    coll.insert({"_id": 1})
    coll.delete(1)
    assert coll.count_documents() == 0


def test_non_dict_document_rejected():
    with pytest.raises(InvalidDocumentError):
        Collection("c").insert(["not", "a", "doc"])


def test_nesting_depth_limit():
    coll = Collection("c", settings=Settings(max_nesting_depth=3))
    coll.insert({"a": {"b": 1}})
    with pytest.raises(InvalidDocumentError):
        coll.insert({"a": {"b": {"c": {"d": 1}}}})


# -- schema --------------------------------------------------------------------

def test_schema_violation_leaves_store_unchanged():
    coll = Collection("c", validator=SCHEMA)
    with pytest.raises(SchemaViolation):
        coll.insert({"name": 5})
    assert coll.count_documents() == 0


def test_insert_many_is_all_or_nothing():
    coll = Collection("c", validator=SCHEMA)
    with pytest.raises(SchemaViolation):
        coll.insert_many([{"name": "a"}, {"name": 1}])
    assert coll.count_documents() == 0

    coll.insert({"_id": 9, "name": "x"})
    with pytest.raises(DuplicateKeyError):
        coll.insert_many([{"_id": 1, "name": "a"}, {"_id": 9, "name": "b"}])
    assert [d["_id"] for d in coll.find()] == [9]


def test_failed_update_keeps_previous_version():
    coll = Collection("c", validator=SCHEMA)
    coll.insert({"_id": 1, "name": "Max"})
    with pytest.raises(SchemaViolation):
        coll.update(1, {"$set": {"name": 3}})
    assert coll.get(1)["name"] == "Max"


def test_warn_action_logs_instead_of_raising(caplog):
    coll = Collection("c", validator=SCHEMA, validation_action="warn")
    coll.insert({"_id": 1, "name": 5})
    assert coll.get(1)["name"] == 5
    assert "failed validation" in caplog.text


def test_set_schema_does_not_recheck_existing():
    coll = Collection("c")
    coll.insert({"_id": 1, "name": 5})
    coll.set_schema(SCHEMA)
    assert coll.get(1)["name"] == 5
    with pytest.raises(SchemaViolation):
        coll.insert({"name": 6})


# -- find / cursor -------------------------------------------------------------

def test_find_sort_skip_limit(users):
    names = [d["name"] for d in users.find({}, sort=[("age", -1)], skip=1, limit=2)]
    assert names == ["Chris", "Ana"]


def test_cursor_chaining_and_restart(users):
    cursor = users.find({"state": "cork"}).sort("name")
    assert [d["name"] for d in cursor] == ["Ana", "Eli"]
    users.insert({"_id": 6, "name": "Abe", "state": "cork"})
    assert [d["name"] for d in cursor] == ["Abe", "Ana", "Eli"]


def test_find_projection(users):
    doc = users.find_one({"_id": 1}, {"name": 1, "_id": 0})
    assert doc == {"name": "Max"}
    doc = users.find_one({"_id": 1}, {"hobbies": 0, "state": 0})
    assert doc == {"_id": 1, "name": "Max", "age": 29}
    doc = users.find_one({"_id": 1}, {"hobbies.title": 1})
    assert doc == {"_id": 1, "hobbies": [{"title": "Sports"}, {"title": "Cooking"}]}


def test_mixed_projection_rejected(users):
    with pytest.raises(InvalidQueryError):
        users.find({}, {"name": 1, "age": 0})


def test_find_one_none_when_empty(users):
    assert users.find_one({"name": "Nobody"}) is None


def test_count_and_distinct(users):
    assert users.count_documents({"age": {"$gt": 40}}) == 3
    assert users.distinct("state") == ["wicklow", "cork", "dublin"]
    assert users.distinct("hobbies.title", {"state": "wicklow"}) == ["Sports", "Cooking", "Reading"]


def test_scan_yields_everything(users):
    assert len(list(users.scan())) == 5


def test_elem_match_end_to_end(users):
    q = {"hobbies": {"$elemMatch": {"title": "Sports", "frequency": {"$gte": 3}}}}
    assert [d["name"] for d in users.find(q)] == ["Max"]
    q = {"hobbies.title": "Sports", "hobbies.frequency": {"$gte": 3}}
    assert [d["name"] for d in users.find(q)] == ["Max", "Ana"]


# -- update operators ----------------------------------------------------------

def test_update_many_inc_and_push(users):
    res = users.update_many({"state": "cork"}, {"$inc": {"age": 1}, "$push": {"tags": "south"}})
    assert (res.matched_count, res.modified_count) == (2, 2)
    assert users.get(5)["age"] == 41
    assert users.get(5)["tags"] == ["south"]


def test_update_one_only_touches_first(users):
    res = users.update_one({"state": "wicklow"}, {"$set": {"flag": True}})
    assert res.matched_count == 1
    assert users.count_documents({"flag": True}) == 1


def test_unmodified_update_reports_zero_modified(users):
    res = users.update_one({"_id": 1}, {"$set": {"name": "Max"}})
    assert (res.matched_count, res.modified_count) == (1, 0)


def test_array_operators():
    coll = Collection("c")
    coll.insert({"_id": 1, "tags": ["a", "b", "c"], "scores": [1, 5, 9]})
    coll.update_one({"_id": 1}, {"$addToSet": {"tags": {"$each": ["a", "d"]}}})
    coll.update_one({"_id": 1}, {"$pull": {"scores": {"$gte": 5}}})
    coll.update_one({"_id": 1}, {"$pop": {"tags": -1}})
    doc = coll.get(1)
    assert doc["tags"] == ["b", "c", "d"]
    assert doc["scores"] == [1]
    coll.update_one({"_id": 1}, {"$pullAll": {"tags": ["b", "d"]}})
    assert coll.get(1)["tags"] == ["c"]


def test_min_max_rename_unset_mul():
    coll = Collection("c")
    coll.insert({"_id": 1, "lo": 5, "hi": 5, "old": "x", "n": 3})
    coll.update_one({"_id": 1}, {"$min": {"lo": 2}, "$max": {"hi": 1}, "$rename": {"old": "new"},
                                 "$mul": {"n": 2}})
    coll.update_one({"_id": 1}, {"$unset": {"hi": ""}})
    assert coll.get(1) == {"_id": 1, "lo": 2, "new": "x", "n": 6}


def test_current_date_sets_datetime():
    coll = Collection("c")
    coll.insert({"_id": 1})
    coll.update_one({"_id": 1}, {"$currentDate": {"seen": True}})
    assert coll.get(1)["seen"].tzinfo is not None


def test_positional_operator_updates_matched_element(users):
    users.update_one({"_id": 1, "hobbies.title": "Cooking"}, {"$set": {"hobbies.$.frequency": 7}})
    assert users.get(1)["hobbies"][1] == {"title": "Cooking", "frequency": 7}


def test_positional_without_match_raises(users):
    with pytest.raises(InvalidUpdateError):
        users.update_one({"_id": 1}, {"$set": {"hobbies.$.frequency": 7}})


def test_inc_on_non_numeric_raises(users):
    with pytest.raises(InvalidUpdateError):
        users.update_one({"_id": 1}, {"$inc": {"name": 1}})
    assert users.get(1)["name"] == "Max"


def test_update_requires_operators(users):
    with pytest.raises(InvalidUpdateError):
        users.update_one({"_id": 1}, {"name": "x"})
    with pytest.raises(InvalidUpdateError):
        users.update_one({"_id": 1}, {"$frob": {"name": "x"}})


def test_changing_id_rejected(users):
    with pytest.raises(InvalidUpdateError):
        users.update_one({"_id": 1}, {"$set": {"_id": 99}})


# -- upsert / replace / find-and-modify ----------------------------------------

def test_upsert_seeds_from_equality_predicates():
    coll = Collection("c")
    res = coll.update_one({"name": "Max", "age": {"$gt": 3}},
                          {"$set": {"state": "cork"}, "$setOnInsert": {"created": True}}, upsert=True)
    assert res.matched_count == 0 and res.upserted_id is not None
    doc = coll.get(res.upserted_id)
    assert doc["name"] == "Max" and doc["state"] == "cork" and doc["created"] is True
    assert "age" not in doc


def test_set_on_insert_ignored_for_existing(users):
    users.update_one({"_id": 1}, {"$set": {"x": 1}, "$setOnInsert": {"created": True}}, upsert=True)
    assert "created" not in users.get(1)


def test_replace_one_keeps_id(users):
    res = users.replace_one({"_id": 2}, {"name": "Anna"})
    assert res.modified_count == 1
    assert users.get(2) == {"_id": 2, "name": "Anna"}


def test_replace_one_rejects_operators(users):
    with pytest.raises(InvalidUpdateError):
        users.replace_one({"_id": 2}, {"$set": {"name": "Anna"}})


def test_replace_one_upsert():
    coll = Collection("c")
    res = coll.replace_one({"_id": 7}, {"_id": 7, "v": 1}, upsert=True)
    assert res.upserted_id == 7


def test_find_one_and_update_returns_after_or_before(users):
    after = users.find_one_and_update({"_id": 3}, {"$inc": {"age": 1}})
    assert after["age"] == 53
    before = users.find_one_and_update({"_id": 3}, {"$inc": {"age": 1}}, return_document="before")
    assert before["age"] == 53
    assert users.get(3)["age"] == 54


def test_find_one_and_delete(users):
    doc = users.find_one_and_delete({"name": "Dana"})
    assert doc["_id"] == 4
    assert users.find_one_and_delete({"name": "Dana"}) is None


def test_delete_one_and_many(users):
    assert users.delete_one({"state": "cork"}).deleted_count == 1
    assert users.delete_many({"age": {"$gte": 0}}).deleted_count == 4
    assert users.count_documents() == 0


def test_elem_match_two_document_scenario():
    coll = Collection("c")
    coll.insert({"name": "Max", "hobbies": [{"title": "Sports", "frequency": 4}]})
    coll.insert({"name": "Ana", "hobbies": [{"title": "Sports", "frequency": 2}]})
    q = {"hobbies": {"$elemMatch": {"title": "Sports", "frequency": {"$gte": 3}}}}
    assert [d["name"] for d in coll.find(q)] == ["Max"]


def test_concurrent_increments_are_not_lost():
    coll = Collection("c")
    coll.create_index({"n": 1})
    coll.insert({"_id": 1, "n": 0})

    def bump():
        for _ in range(200):
            coll.update_one({"_id": 1}, {"$inc": {"n": 1}})

    threads = [threading.Thread(target=bump) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert coll.get(1)["n"] == 800
    assert coll.count_documents({"n": 800}) == 1
