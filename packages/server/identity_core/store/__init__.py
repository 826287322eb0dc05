from .base import (  # noqa: F401
    DocumentStore,
    DuplicateKeyError,
    FindResult,
    Sort,
    UniqueKey,
    and_,
    eq,
    object_id,
    or_,
    range_,
    text,
)
from .memory import MemoryDocumentStore  # noqa: F401
from .sql import SqlDocumentStore  # noqa: F401
