# database.py
import logging
import threading
from typing import Any, Dict, List, Optional

from .collection import Collection
from .config import Settings
from .errors import CollectionExists, LiteDocError, NotFound
from .ttl import TTLMonitor

logger = logging.getLogger(__name__)


# =========================
# Database and Client
# =========================
class Database:
    def __init__(self, name: str = "test", settings: Optional[Settings] = None):
        self.name = name
        self.settings = settings or Settings()
        self.collections: Dict[str, Collection] = {}
        self._lock = threading.RLock()
        self._ttl: Optional[TTLMonitor] = None

    def __getitem__(self, coll_name: str) -> Collection:
        with self._lock:
            if coll_name not in self.collections:
                self.collections[coll_name] = Collection(coll_name, database=self)
            return self.collections[coll_name]

    def __repr__(self):
        return f"Database({self.name!r})"

    def create_collection(self, name: str, validator: Optional[dict] = None,
                          validation_level: str = "strict", validation_action: str = "error") -> Collection:
        with self._lock:
            if name in self.collections:
                raise CollectionExists(f"Collection {self.name}.{name} already exists.")
            coll = Collection(name, database=self, validator=validator,
                              validation_level=validation_level, validation_action=validation_action)
            self.collections[name] = coll
        logger.info("Created collection %s.%s", self.name, name)
        return coll

    def drop_collection(self, name: str) -> bool:
        with self._lock:
            dropped = self.collections.pop(name, None) is not None
        if dropped:
            logger.info("Dropped collection %s.%s", self.name, name)
        return dropped

    def list_collection_names(self) -> List[str]:
        return list(self.collections.keys())

    def replace_collection_contents(self, name: str, documents: List[dict]):
        self[name].replace_contents(documents)

    def _existing(self, name: str) -> Collection:
        coll = self.collections.get(name)
        if coll is None:
            raise NotFound(f"ns does not exist: {self.name}.{name}")
        return coll

    # ----- Commands -----
    def run_command(self, command: Dict[str, Any]) -> Dict[str, Any]:
        """Administrative commands: create, collMod, createIndexes, dropIndexes."""
        if not isinstance(command, dict) or not command:
            raise LiteDocError("Command must be a non-empty dict.")
        name, target = next(iter(command.items()))
        if name == "create":
            self.create_collection(target, validator=command.get("validator"),
                                   validation_level=command.get("validationLevel", "strict"),
                                   validation_action=command.get("validationAction", "error"))
            return {"ok": 1}
        if name == "collMod":
            coll = self._existing(target)
            if "validator" in command or "validationLevel" in command or "validationAction" in command:
                coll.set_schema(command.get("validator", coll.schema),
                                command.get("validationLevel"), command.get("validationAction"))
            return {"ok": 1}
        if name == "createIndexes":
            coll = self[target]
            before = len(coll.list_indexes())
            names = []
            for spec in command.get("indexes", []):
                spec = dict(spec)
                keys = spec.pop("key")
                names.append(coll.create_index(keys, spec))
            return {"ok": 1, "createdCollectionAutomatically": False, "numIndexesBefore": before,
                    "numIndexesAfter": len(coll.list_indexes()), "names": names}
        if name == "dropIndexes":
            coll = self._existing(target)
            index = command.get("index", "*")
            if index == "*":
                coll.indexes.drop_all()
            else:
                coll.drop_index(index)
            return {"ok": 1}
        raise LiteDocError(f"no such command: '{name}'")

    # ----- TTL -----
    def ttl_monitor(self, interval: Optional[float] = None, clock=None) -> TTLMonitor:
        if self._ttl is None:
            self._ttl = TTLMonitor(self, interval=interval, clock=clock)
        return self._ttl

    def start_ttl_monitor(self, interval: Optional[float] = None, clock=None) -> TTLMonitor:
        monitor = self.ttl_monitor(interval, clock)
        monitor.start()
        return monitor

    def stop_ttl_monitor(self):
        if self._ttl is not None:
            self._ttl.stop()

    def close(self):
        self.stop_ttl_monitor()


class LiteDocClient:
    """
    Top-level client similar to pymongo.MongoClient.
    Usage:
        client = LiteDocClient()
        db = client["my_db"]
        coll = db["my_coll"]
    """
    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or Settings()
        self.databases: Dict[str, Database] = {}

    def __getitem__(self, db_name: str) -> Database:
        if db_name not in self.databases:
            self.databases[db_name] = Database(db_name, settings=self.settings)
        return self.databases[db_name]

    def list_database_names(self) -> List[str]:
        return list(self.databases.keys())

    def close(self):
        for db in self.databases.values():
            db.close()
