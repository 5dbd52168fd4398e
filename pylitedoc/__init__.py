"""pylitedoc: an in-memory document database core.

Collections with $jsonSchema validation, single-field/compound/partial/TTL/
text/2dsphere indexes, a MongoDB-style query matcher and an aggregation
pipeline evaluator.
"""
from .aggregation import AggregationCursor, OutResult, Pipeline
from .collection import (
    Collection, DeleteResult, InsertManyResult, InsertOneResult, UpdateResult,
)
from .config import Settings, load_settings
from .cursor import Cursor
from .database import Database, LiteDocClient
from .errors import (
    CollectionExists, DocumentNotFoundError, DuplicateKeyError, DuplicateTextIndex,
    IndexLimitExceeded, IndexNameTooLong, InvalidDocumentError, InvalidIndexError,
    InvalidPipelineStage, InvalidQueryError, InvalidUpdateError, LiteDocError, NotFound,
    SchemaViolation, TooManyCompoundFields, TooManyIndexes,
)
from .indexes import IndexDescriptor, Plan
from .log import setup_logger
from .query import match_query
from .schema import validate
from .ttl import TTLMonitor

__version__ = "0.1.0"
