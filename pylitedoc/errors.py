# errors.py
from typing import Any, Optional


# =========================
# Errors
# =========================
class LiteDocError(Exception):
    """Base class for pylitedoc errors."""
    pass

class NotFound(LiteDocError):
    """Raised when a key, collection or index lookup misses."""
    pass

DocumentNotFoundError = NotFound

class InvalidQueryError(LiteDocError):
    """Raised when query syntax is invalid."""
    pass

class InvalidUpdateError(LiteDocError):
    """Raised when update operator is invalid."""
    pass

class DuplicateKeyError(LiteDocError):
    """Raised when violating a unique key constraint (_id or a unique index)."""
    pass

class InvalidDocumentError(LiteDocError):
    """Raised when a document is structurally unacceptable (not a dict, too deep)."""
    pass

class CollectionExists(LiteDocError):
    """Raised by create_collection when the name is already taken."""
    pass


class SchemaViolation(LiteDocError):
    """Raised when a document doesn't satisfy the collection schema.

    ``field`` is the dotted path of the offending value, ``expected_type`` and
    ``actual_type`` are bson type names (or None when the failure is not about
    types, e.g. a missing required field or an enum mismatch).
    """

    def __init__(self, field: str, expected_type: Any = None, actual_type: Optional[str] = None,
                 reason: Optional[str] = None):
        self.field = field
        self.expected_type = expected_type
        self.actual_type = actual_type
        self.reason = reason
        if reason is None:
            reason = f"expected {expected_type}, got {actual_type}"
        super().__init__(f"Document failed validation at '{field}': {reason}")


class IndexLimitExceeded(LiteDocError):
    """Raised when create_index would exceed a storage engine limit."""

    limit = "index"

    def __init__(self, value: Any, maximum: int, message: Optional[str] = None):
        self.value = value
        self.maximum = maximum
        super().__init__(message or f"{self.limit} limit exceeded: {value} (max {maximum})")

class TooManyIndexes(IndexLimitExceeded):
    limit = "max_indexes"

class IndexNameTooLong(IndexLimitExceeded):
    limit = "max_index_name_length"

class TooManyCompoundFields(IndexLimitExceeded):
    limit = "max_compound_fields"

class DuplicateTextIndex(LiteDocError):
    """Raised when a second text index is requested on a collection."""

    def __init__(self, existing: str, requested: str):
        self.existing = existing
        self.requested = requested
        super().__init__(f"Collection already has text index '{existing}', cannot create '{requested}'.")

class InvalidIndexError(LiteDocError):
    """Raised for malformed key specs or a conflicting index definition."""
    pass


class InvalidPipelineStage(LiteDocError):
    """Raised when an aggregation stage is malformed or misplaced."""

    def __init__(self, stage: str, reason: str):
        self.stage = stage
        self.reason = reason
        super().__init__(f"{stage}: {reason}")
