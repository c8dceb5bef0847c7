"""
ctxlog - Append-only, line-numbered memory store for AI agents.

ctxlog persists conversations, decisions, insights, state snapshots,
sessions, embeddings and consolidations as plain pipe-delimited text, one
file per record type, safe for many concurrent writer processes.
It provides:
- Cross-process locking with stale-lock reclamation
- Injection-safe escaping of every stored value
- Path confinement to a fixed project root
- Best-effort PII redaction before data reaches disk
- Indexed and memory-bounded streaming reads
- Optional per-line obfuscation with integrity tags

Example usage:
    >>> from ctxlog import Reader, RecordType, Writer
    >>> writer = Writer("/srv/agent")
    >>> writer.add_decision("d-1", {"decision": "Use SQLite", ...})
    >>> Reader("/srv/agent").get_last_n(RecordType.DECISIONS, 5)
"""

__version__ = "0.1.0"
__author__ = "ctxlog Contributors"

from ctxlog.encoder import LineEncoder
from ctxlog.errors import (
    CtxlogError,
    EncoderKeyError,
    IntegrityError,
    LockOwnershipError,
    LockTimeoutError,
    MalformedLineError,
    RecordValidationError,
    SecurityViolationError,
    StorageReadError,
    StorageWriteError,
)
from ctxlog.schema import (
    Priority,
    ReadMode,
    Record,
    RecordType,
    Section,
    StoreConfig,
    load_config,
    load_config_from_string,
)
from ctxlog.security import PathGuard, PIIDetector, sanitize, unescape
from ctxlog.store import LockManager, Reader, StreamStats, Writer

__all__ = [
    "__version__",
    "__author__",
    "CtxlogError",
    "EncoderKeyError",
    "IntegrityError",
    "LineEncoder",
    "LockManager",
    "LockOwnershipError",
    "LockTimeoutError",
    "MalformedLineError",
    "PIIDetector",
    "PathGuard",
    "Priority",
    "ReadMode",
    "Reader",
    "Record",
    "RecordType",
    "RecordValidationError",
    "Section",
    "SecurityViolationError",
    "StorageReadError",
    "StorageWriteError",
    "StoreConfig",
    "StreamStats",
    "Writer",
    "load_config",
    "load_config_from_string",
    "sanitize",
    "unescape",
]
