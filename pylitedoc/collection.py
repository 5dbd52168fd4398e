# collection.py
import logging
import threading
from collections import OrderedDict
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple, Union

from .aggregation import AggregationCursor, OutResult, Pipeline, Stage, run_out
from .config import Settings
from .cursor import Cursor
from .errors import (
    DuplicateKeyError, InvalidDocumentError, InvalidPipelineStage, InvalidQueryError,
    InvalidUpdateError, LiteDocError, NotFound, SchemaViolation,
)
from .geo import geometry_distance, near_spec, parse_geometry
from .indexes import GeoIndex, IndexDescriptor, IndexManager, Plan, query_predicates
from .query import eval_conditions, is_operator_dict, match_query
from .schema import unwrap_schema, validate
from .utils import (
    MISSING, check_depth, compare_values, copy_document, deep_get, deep_set, deep_unset,
    freeze, generate_object_id, is_number, resolve_values, utcnow,
)

logger = logging.getLogger(__name__)

VALIDATION_LEVELS = {"strict", "off"}
VALIDATION_ACTIONS = {"error", "warn"}


# =========================
# Results (pymongo-like)
# =========================
class InsertOneResult:
    def __init__(self, inserted_id):
        self.inserted_id = inserted_id

class InsertManyResult:
    def __init__(self, inserted_ids):
        self.inserted_ids = inserted_ids

class UpdateResult:
    def __init__(self, matched_count, modified_count, upserted_id=None):
        self.matched_count = matched_count
        self.modified_count = modified_count
        self.upserted_id = upserted_id

class DeleteResult:
    def __init__(self, deleted_count):
        self.deleted_count = deleted_count


# =========================
# Collection
# =========================
class Collection:
    """In-memory document store with schema validation and secondary indexes.

    Documents are keyed by their ``_id`` and never mutated in place: an update
    swaps in a new dict, so a reader holding references taken under the
    collection lock sees a consistent snapshot. Writers serialise per document
    and commit store and index changes together under the collection lock.
    """

    def __init__(self, name: str, database=None, validator: Optional[dict] = None,
                 validation_level: str = "strict", validation_action: str = "error",
                 settings: Optional[Settings] = None):
        self.name = name
        self.database = database
        self.settings = settings or (database.settings if database is not None else Settings())
        self.indexes = IndexManager(self.settings)
        self._docs: "OrderedDict[Any, dict]" = OrderedDict()
        self._lock = threading.RLock()
        self._doc_locks: Dict[Any, threading.Lock] = {}
        self._schema = None
        self.validation_level = "strict"
        self.validation_action = "error"
        self.set_schema(validator, validation_level, validation_action)

    def __repr__(self):
        return f"Collection({self.name!r})"

    # ----- Schema -----
    def set_schema(self, validator: Optional[dict], validation_level: Optional[str] = None,
                   validation_action: Optional[str] = None):
        """Replace the validator; existing documents are not re-checked."""
        if validation_level is not None and validation_level not in VALIDATION_LEVELS:
            raise LiteDocError(f"Invalid validationLevel: {validation_level}")
        if validation_action is not None and validation_action not in VALIDATION_ACTIONS:
            raise LiteDocError(f"Invalid validationAction: {validation_action}")
        schema = unwrap_schema(validator)
        with self._lock:
            self._schema = schema
            if validation_level is not None:
                self.validation_level = validation_level
            if validation_action is not None:
                self.validation_action = validation_action
        logger.info("Schema for %s replaced (level=%s, action=%s)",
                    self.name, self.validation_level, self.validation_action)

    @property
    def schema(self) -> Optional[dict]:
        return self._schema

    def _validate(self, doc: dict):
        check_depth(doc, self.settings.max_nesting_depth)
        if self._schema is None or self.validation_level == "off":
            return
        try:
            validate(doc, self._schema)
        except SchemaViolation as e:
            if self.validation_action == "warn":
                logger.warning("Document %r in %s failed validation: %s", doc.get("_id"), self.name, e)
                return
            raise

    # ----- Locking -----
    @contextmanager
    def _document_lock(self, key):
        with self._lock:
            lock = self._doc_locks.setdefault(key, threading.Lock())
        with lock:
            yield

    # ----- Insert -----
    def _prepare(self, document) -> Tuple[Any, dict]:
        if not isinstance(document, dict):
            raise InvalidDocumentError("Document must be a dict.")
        doc = copy_document(document)
        if "_id" not in doc:
            doc = dict(_id=generate_object_id(), **doc)
        self._validate(doc)
        return freeze(doc["_id"]), doc

    def _insert_locked(self, key, doc: dict):
        if key in self._docs:
            raise DuplicateKeyError(f"E11000 duplicate key error collection: {self.name} dup key: {doc['_id']!r}")
        self.indexes.check(key, doc)
        self._docs[key] = doc
        self.indexes.on_insert(key, doc)

    def _remove_locked(self, key) -> Optional[dict]:
        doc = self._docs.pop(key, None)
        if doc is not None:
            self.indexes.on_delete(key, doc)
            self._doc_locks.pop(key, None)
        return doc

    def insert_one(self, document: dict) -> InsertOneResult:
        key, doc = self._prepare(document)
        with self._lock:
            self._insert_locked(key, doc)
        return InsertOneResult(doc["_id"])

    def insert(self, document: dict):
        """Insert and return the new document's _id."""
        return self.insert_one(document).inserted_id

    def insert_many(self, documents: Iterable[dict]) -> InsertManyResult:
        prepared = [self._prepare(d) for d in documents]
        inserted = []
        with self._lock:
            try:
                for key, doc in prepared:
                    self._insert_locked(key, doc)
                    inserted.append(key)
            except LiteDocError:
                for key in reversed(inserted):
                    self._remove_locked(key)
                raise
        return InsertManyResult([doc["_id"] for _, doc in prepared])

    # ----- Key access -----
    def get(self, key) -> dict:
        with self._lock:
            doc = self._docs.get(freeze(key))
        if doc is None:
            raise NotFound(f"No document with _id {key!r} in {self.name}")
        return copy_document(doc)

    def update(self, key, patch: dict) -> UpdateResult:
        """Apply an update document (or a plain field mapping, as $set) to one key."""
        if not isinstance(patch, dict):
            raise InvalidUpdateError("Patch must be a dict.")
        if patch and not any(k.startswith("$") for k in patch):
            patch = {"$set": patch}
        fk = freeze(key)
        with self._document_lock(fk):
            current = self._docs.get(fk)
            if current is None:
                raise NotFound(f"No document with _id {key!r} in {self.name}")
            new_doc = self._apply_update(current, patch, {"_id": key})
            self._commit_update(fk, current, new_doc)
        return UpdateResult(1, int(new_doc != current))

    def delete(self, key):
        fk = freeze(key)
        with self._document_lock(fk):
            with self._lock:
                if self._remove_locked(fk) is None:
                    raise NotFound(f"No document with _id {key!r} in {self.name}")
        return DeleteResult(1)

    def _commit_update(self, key, old: dict, new: dict):
        if freeze(new.get("_id", MISSING)) != key:
            raise InvalidUpdateError("Performing an update on the path '_id' would modify the immutable field '_id'")
        self._validate(new)
        with self._lock:
            if self._docs.get(key) is not old:
                raise NotFound(f"Document {old.get('_id')!r} was removed during update")
            self.indexes.check(key, new)
            self.indexes.on_update(key, old, new)
            self._docs[key] = new

    # ----- Find -----
    def _select(self, query: Optional[dict]) -> List[Tuple[dict, Optional[float]]]:
        """Matching (document, text score) pairs from a snapshot; documents are not copied."""
        query = query or {}
        if not isinstance(query, dict):
            raise InvalidQueryError("Query must be a dict.")
        text = query.get("$text")
        rest = {k: v for k, v in query.items() if k != "$text"}
        if text is not None and (not isinstance(text, dict) or not isinstance(text.get("$search"), str)):
            raise InvalidQueryError("$text requires {$search: <string>}.")

        with self._lock:
            plan = self.indexes.choose_plan(query)
            if plan.stage == "TEXT":
                scores = plan.index.search(text["$search"], text.get("$language"))
                rows = [(d, scores[k]) for k, d in self._docs.items() if k in scores]
            else:
                keys = self.indexes.candidate_keys(plan, query)
                if keys is None:
                    rows = [(d, None) for d in self._docs.values()]
                else:
                    rows = [(d, None) for k, d in self._docs.items() if k in keys]

        rows = [r for r in rows if match_query(r[0], rest)]
        if text is not None:
            rows.sort(key=lambda r: -r[1])
        near = _near_clause(rest)
        if near is not None:
            field, origin = near
            def distance(row):
                geoms = [parse_geometry(v) for v in resolve_values(row[0], field)]
                return min((geometry_distance(g, origin) for g in geoms if g), default=float("inf"))
            rows.sort(key=distance)
        return rows

    def choose_plan(self, query: dict) -> Plan:
        with self._lock:
            return self.indexes.choose_plan(query or {})

    def explain(self, query: Optional[dict] = None) -> dict:
        plan = self.choose_plan(query or {})
        return {"namespace": self.name, "winningPlan": plan.to_dict()}

    def find(self, query: Optional[dict] = None, projection: Optional[dict] = None,
             sort: Optional[List[Tuple[str, Any]]] = None, skip: int = 0, limit: int = 0) -> Cursor:
        if query is not None and not isinstance(query, dict):
            raise InvalidQueryError("Query must be a dict.")
        return Cursor(self, query, projection=projection, sort=sort, skip=skip, limit=limit)

    def find_one(self, query: Optional[dict] = None, projection: Optional[dict] = None) -> Optional[dict]:
        found = self.find(query, projection, limit=1).to_list(1)
        return found[0] if found else None

    def scan(self) -> Cursor:
        """Every document, lazily; iterate again to re-read."""
        return Cursor(self, {})

    def count_documents(self, query: Optional[dict] = None) -> int:
        return len(self._select(query))

    def distinct(self, key: str, query: Optional[dict] = None) -> List[Any]:
        values = []
        for doc, _ in self._select(query):
            for val in resolve_values(doc, key):
                if isinstance(val, list):
                    values.extend(val)
                elif val is not None:
                    values.append(val)
        # unique preserving order
        seen = set()
        out = []
        for v in values:
            fk = freeze(v)
            if fk not in seen:
                seen.add(fk)
                out.append(copy_document(v))
        return out

    # ----- Delete -----
    def _delete_matching(self, query: dict, limit: int) -> int:
        deleted = 0
        for doc, _ in self._select(query):
            key = freeze(doc["_id"])
            with self._document_lock(key):
                with self._lock:
                    current = self._docs.get(key)
                    if current is None or (current is not doc and not match_query(current, _plain(query))):
                        continue
                    self._remove_locked(key)
            deleted += 1
            if limit and deleted >= limit:
                break
        return deleted

    def delete_one(self, query: dict) -> DeleteResult:
        return DeleteResult(self._delete_matching(query, 1))

    def delete_many(self, query: dict) -> DeleteResult:
        return DeleteResult(self._delete_matching(query, 0))

    # ----- Update / Replace -----
    def _update_matching(self, query: dict, update: dict, limit: int, replacement: Optional[dict] = None):
        matched = modified = 0
        for doc, _ in self._select(query):
            key = freeze(doc["_id"])
            with self._document_lock(key):
                current = self._docs.get(key)
                if current is None or (current is not doc and not match_query(current, _plain(query))):
                    continue
                if replacement is not None:
                    new_doc = copy_document(replacement)
                    if "_id" not in new_doc:
                        new_doc = dict(_id=current["_id"], **new_doc)
                else:
                    new_doc = self._apply_update(current, update, query)
                matched += 1
                if new_doc != current:
                    self._commit_update(key, current, new_doc)
                    modified += 1
            if limit and matched >= limit:
                break
        return matched, modified

    def _upsert(self, query: dict, update: Optional[dict], replacement: Optional[dict] = None):
        if replacement is not None:
            doc = copy_document(replacement)
        else:
            doc = {}
            for field, cond in query_predicates(query).items():
                if not is_operator_dict(cond):
                    deep_set(doc, field, copy_document(cond))
                elif "$eq" in cond:
                    deep_set(doc, field, copy_document(cond["$eq"]))
            doc = self._apply_update(doc, update, query, is_upsert=True)
        if "_id" not in doc:
            doc = dict(_id=generate_object_id(), **doc)
        return self.insert_one(doc).inserted_id

    def update_one(self, query: dict, update: dict, upsert: bool = False) -> UpdateResult:
        _check_update_doc(update)
        matched, modified = self._update_matching(query, update, 1)
        if not matched and upsert:
            return UpdateResult(0, 0, upserted_id=self._upsert(query, update))
        return UpdateResult(matched, modified)

    def update_many(self, query: dict, update: dict, upsert: bool = False) -> UpdateResult:
        _check_update_doc(update)
        matched, modified = self._update_matching(query, update, 0)
        if not matched and upsert:
            return UpdateResult(0, 0, upserted_id=self._upsert(query, update))
        return UpdateResult(matched, modified)

    def replace_one(self, query: dict, replacement: dict, upsert: bool = False) -> UpdateResult:
        if not isinstance(replacement, dict) or any(k.startswith("$") for k in replacement.keys()):
            raise InvalidUpdateError("Replacement document must be a plain dict without update operators.")
        matched, modified = self._update_matching(query, {}, 1, replacement=replacement)
        if not matched and upsert:
            return UpdateResult(0, 0, upserted_id=self._upsert(query, None, replacement))
        return UpdateResult(matched, modified)

    # ----- FindOneAndX -----
    def find_one_and_update(self, query: dict, update: dict, return_document: str = "after") -> Optional[dict]:
        _check_update_doc(update)
        for doc, _ in self._select(query):
            key = freeze(doc["_id"])
            with self._document_lock(key):
                current = self._docs.get(key)
                if current is None or (current is not doc and not match_query(current, _plain(query))):
                    continue
                new_doc = self._apply_update(current, update, query)
                if new_doc != current:
                    self._commit_update(key, current, new_doc)
                return copy_document(new_doc if return_document == "after" else current)
        return None

    def find_one_and_delete(self, query: dict) -> Optional[dict]:
        for doc, _ in self._select(query):
            key = freeze(doc["_id"])
            with self._document_lock(key):
                with self._lock:
                    current = self._docs.get(key)
                    if current is None or (current is not doc and not match_query(current, _plain(query))):
                        continue
                    self._remove_locked(key)
                return copy_document(current)
        return None

    # ----- Indexes -----
    def create_index(self, keys, options: Optional[dict] = None, **kwargs) -> str:
        """createIndex: keys like {"name": 1}, options like {"expireAfterSeconds": 10}."""
        merged = dict(options or {})
        merged.update(kwargs)
        descriptor = IndexDescriptor.from_spec(keys, merged)
        with self._lock:
            return self.indexes.create(descriptor, list(self._docs.items()))

    def drop_index(self, name: str):
        with self._lock:
            self.indexes.drop(name)

    def list_indexes(self) -> List[dict]:
        with self._lock:
            return self.indexes.list()

    # ----- Aggregation -----
    def aggregate(self, pipeline: List[dict]) -> Union[AggregationCursor, OutResult]:
        p = Pipeline(pipeline)
        if p.stages and p.stages[0].kind == "$geoNear":
            self._geo_index_for(p.stages[0])
        if p.out_target is not None:
            if self.database is None:
                raise InvalidPipelineStage("$out", "collection is not attached to a database")
            return run_out(self, p)
        return AggregationCursor(self, p)

    def match_documents(self, query: dict) -> Iterator[dict]:
        for doc, _ in self._select(query):
            yield copy_document(doc)

    def _geo_index_for(self, stage: Stage) -> GeoIndex:
        geo = self.indexes.geo_indexes()
        if stage.key is not None:
            geo = [g for g in geo if g.field == stage.key]
        if not geo:
            raise InvalidPipelineStage("$geoNear", f"no 2dsphere index found on {self.name}")
        if len(geo) > 1:
            raise InvalidPipelineStage("$geoNear", "more than one 2dsphere index; specify 'key'")
        return geo[0]

    def geo_near_documents(self, stage: Stage) -> Iterator[dict]:
        index = self._geo_index_for(stage)
        with self._lock:
            pairs = index.near(stage.origin, stage.max_distance, stage.min_distance)
            rows = [(d, self._docs[k]) for d, k in pairs if k in self._docs]
        emitted = 0
        for distance, doc in rows:
            if stage.query and not match_query(doc, stage.query):
                continue
            out = copy_document(doc)
            deep_set(out, stage.distance_field, distance * stage.multiplier)
            if stage.include_locs:
                deep_set(out, stage.include_locs, copy_document(deep_get(doc, index.field)))
            yield out
            emitted += 1
            if stage.limit and emitted >= stage.limit:
                return

    def foreign_documents(self, name: str) -> List[dict]:
        if self.database is None:
            raise InvalidPipelineStage("$lookup", "collection is not attached to a database")
        other = self.database.collections.get(name)
        return list(other.match_documents({})) if other is not None else []

    def replace_contents(self, documents: List[dict]):
        """Swap the whole contents (used by $out); indexes and schema are kept."""
        prepared = [self._prepare(d) for d in documents]
        with self._lock:
            previous = list(self._docs.items())
            for key, _ in previous:
                self._remove_locked(key)
            inserted = []
            try:
                for key, doc in prepared:
                    self._insert_locked(key, doc)
                    inserted.append(key)
            except LiteDocError:
                for key in inserted:
                    self._remove_locked(key)
                for key, doc in previous:
                    self._insert_locked(key, doc)
                raise

    # ----- TTL -----
    def expire_documents(self, now: Optional[datetime] = None) -> int:
        """Delete documents past their TTL index expiry; returns how many."""
        now = now or utcnow()
        with self._lock:
            expired = set()
            for idx in self.indexes.ttl_indexes():
                expired.update(idx.expired(self._docs, now))
        removed = 0
        for key in expired:
            with self._document_lock(key):
                with self._lock:
                    # A writer may have refreshed the date since the scan.
                    if key not in self._docs:
                        continue
                    current = {key: self._docs[key]}
                    if not any(idx.expired(current, now) for idx in self.indexes.ttl_indexes()):
                        continue
                    self._remove_locked(key)
                    removed += 1
        return removed

    # ----- Internal: apply update operators -----
    def _apply_update(self, doc: dict, update: dict, query: Optional[dict] = None,
                      is_upsert: bool = False) -> dict:
        if not isinstance(update, dict):
            raise InvalidUpdateError("Update must be a dict of operators.")
        new_doc = copy_document(doc)
        for op, changes in update.items():
            if not isinstance(changes, dict):
                raise InvalidUpdateError(f"{op} requires a document argument.")
            changes = {_positional(new_doc, k, query): v for k, v in changes.items()}
            if op == "$set":
                for k, v in changes.items():
                    deep_set(new_doc, k, copy_document(v))
            elif op == "$unset":
                for k in changes.keys():
                    deep_unset(new_doc, k)
            elif op in ("$inc", "$mul"):
                for k, v in changes.items():
                    if not is_number(v):
                        raise InvalidUpdateError(f"{op} requires a numeric argument for {k}")
                    cur = deep_get(new_doc, k, 0)
                    if not is_number(cur):
                        raise InvalidUpdateError(f"{op} requires numeric field: {k}")
                    deep_set(new_doc, k, cur + v if op == "$inc" else cur * v)
            elif op in ("$min", "$max"):
                for k, v in changes.items():
                    cur = deep_get(new_doc, k, MISSING)
                    c = None if cur is MISSING else compare_values(v, cur)
                    if c is None or (op == "$min" and c < 0) or (op == "$max" and c > 0):
                        deep_set(new_doc, k, copy_document(v))
            elif op == "$currentDate":
                for k in changes.keys():
                    deep_set(new_doc, k, utcnow())
            elif op == "$rename":
                for old, new in changes.items():
                    val = deep_get(new_doc, old, MISSING)
                    if val is not MISSING:
                        deep_unset(new_doc, old)
                        deep_set(new_doc, new, val)
            elif op == "$push":
                for k, v in changes.items():
                    arr = deep_get(new_doc, k, None)
                    if arr is None:
                        arr = []
                    if not isinstance(arr, list):
                        raise InvalidUpdateError(f"$push requires array field: {k}")
                    if isinstance(v, dict) and "$each" in v:
                        arr.extend(copy_document(v["$each"]))
                    else:
                        arr.append(copy_document(v))
                    deep_set(new_doc, k, arr)
            elif op == "$pull":
                for k, v in changes.items():
                    arr = deep_get(new_doc, k, [])
                    if not isinstance(arr, list):
                        raise InvalidUpdateError(f"$pull requires array field: {k}")
                    deep_set(new_doc, k, [x for x in arr if not _pull_matches(x, v)])
            elif op == "$pullAll":
                for k, v in changes.items():
                    arr = deep_get(new_doc, k, [])
                    if not isinstance(arr, list):
                        raise InvalidUpdateError(f"$pullAll requires array field: {k}")
                    deep_set(new_doc, k, [x for x in arr if not any(compare_values(x, y) == 0 for y in v)])
            elif op == "$addToSet":
                for k, v in changes.items():
                    arr = deep_get(new_doc, k, [])
                    if not isinstance(arr, list):
                        raise InvalidUpdateError(f"$addToSet requires array field: {k}")
                    items = v["$each"] if isinstance(v, dict) and "$each" in v else [v]
                    for item in items:
                        if not any(compare_values(item, x) == 0 for x in arr):
                            arr.append(copy_document(item))
                    deep_set(new_doc, k, arr)
            elif op == "$pop":
                for k, v in changes.items():
                    arr = deep_get(new_doc, k, [])
                    if not isinstance(arr, list):
                        raise InvalidUpdateError(f"$pop requires array field: {k}")
                    if arr:
                        if v == 1: arr.pop()         # last
                        elif v == -1: arr.pop(0)     # first
                        else: raise InvalidUpdateError("$pop value must be 1 or -1")
                    deep_set(new_doc, k, arr)
            elif op == "$setOnInsert":
                if is_upsert:
                    for k, v in changes.items():
                        deep_set(new_doc, k, copy_document(v))
            else:
                raise InvalidUpdateError(f"Unsupported update operator: {op}")
        return new_doc


def _check_update_doc(update):
    if not isinstance(update, dict) or not update:
        raise InvalidUpdateError("Update must be a non-empty dict of operators.")
    if not all(k.startswith("$") for k in update):
        raise InvalidUpdateError("Update document requires atomic operators; use replace_one to replace.")

def _plain(query: dict) -> dict:
    return {k: v for k, v in query.items() if k != "$text"}

def _pull_matches(elem, cond) -> bool:
    if is_operator_dict(cond):
        return eval_conditions([elem], cond)
    if isinstance(cond, dict) and isinstance(elem, dict):
        return match_query(elem, cond)
    return compare_values(elem, cond) == 0

def _positional(doc: dict, path: str, query: Optional[dict]) -> str:
    """Resolve "arr.$.field" to the index of the first element the query matched."""
    parts = path.split(".")
    if "$" not in parts:
        return path
    pos = parts.index("$")
    array_path = ".".join(parts[:pos])
    arr = deep_get(doc, array_path, None)
    if not isinstance(arr, list) or not query:
        raise InvalidUpdateError("The positional operator did not find the match needed from the query.")
    predicates = query_predicates(query)
    relevant = {f: c for f, c in predicates.items() if f == array_path or f.startswith(array_path + ".")}
    for i, elem in enumerate(arr):
        ok = bool(relevant)
        for field, cond in relevant.items():
            if field == array_path:
                ok = match_query({"v": [elem]}, {"v": cond})
            else:
                ok = isinstance(elem, dict) and match_query(elem, {field[len(array_path) + 1:]: cond})
            if not ok:
                break
        if ok:
            parts[pos] = str(i)
            return ".".join(parts)
    raise InvalidUpdateError("The positional operator did not find the match needed from the query.")

def _near_clause(query: dict) -> Optional[Tuple[str, tuple]]:
    for field, cond in query_predicates(query).items():
        if not is_operator_dict(cond):
            continue
        for op in ("$near", "$nearSphere"):
            if op in cond:
                arg = cond[op]
                if not (isinstance(arg, dict) and "$geometry" in arg):
                    arg = {"$geometry": {"type": "Point", "coordinates": arg}}
                origin, _, _ = near_spec(arg, op)
                return field, origin
    return None
