"""
Schema definitions for ctxlog.

This module defines the data model and configuration used throughout ctxlog:
- RecordType/Priority: The closed set of record tags and priority levels
- Record/Section: A logical record and its parsed on-disk form
- RECORD_FIELDS: Per-type field table driving validation
- StoreConfig: Store configuration, loadable from YAML

Design Decisions:
    - One generic Record parameterized by RecordType instead of one model
      per type; type-specific rules live in the RECORD_FIELDS table
    - Field values are normalized to strings when a Record is built, so the
      in-memory form is exactly what round-trips through the file
    - Models are immutable (frozen=True) and reject unknown keys
"""

import math
import os
import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from ctxlog.errors import EncoderKeyError

# Environment variable consulted when no encoder key is configured
ENCODER_KEY_ENV = "CTXLOG_ENCODER_KEY"
MIN_ENCODER_KEY_BYTES = 16

# Prefix marking metadata lines (meta.<key>=<value>)
METADATA_PREFIX = "meta."

FIELD_KEY_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_.\-]*$")


# =============================================================================
# Enums
# =============================================================================


class RecordType(str, Enum):
    """Closed set of section types. Each type lives in its own data file."""

    CONVERSATION = "CONVERSATION"
    STATE = "STATE"
    INSIGHTS = "INSIGHTS"
    DECISIONS = "DECISIONS"
    SESSION = "SESSION"
    EMBEDDING = "EMBEDDING"
    CONSOLIDATION = "CONSOLIDATION"

    @property
    def filename(self) -> str:
        """Name of the data file holding sections of this type."""
        return DATA_FILES[self]


class Priority(str, Enum):
    """Priority levels for insights and decisions."""

    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class ReadMode(str, Enum):
    """How the reader consumes a data file."""

    AUTO = "auto"
    INDEXED = "indexed"
    STREAMING = "streaming"


class FieldKind(str, Enum):
    """Semantic type of a record field."""

    TEXT = "text"
    INT = "int"
    FLOAT = "float"
    TIMESTAMP = "timestamp"
    PRIORITY = "priority"
    CHOICE = "choice"
    ID_LIST = "id_list"
    VECTOR = "vector"


DATA_FILES: dict[RecordType, str] = {
    RecordType.CONVERSATION: "conversations.ctx",
    RecordType.STATE: "state.ctx",
    RecordType.INSIGHTS: "insights.ctx",
    RecordType.DECISIONS: "decisions.ctx",
    RecordType.SESSION: "sessions.ctx",
    RecordType.EMBEDDING: "embeddings.ctx",
    RecordType.CONSOLIDATION: "consolidations.ctx",
}


# =============================================================================
# Field Table
# =============================================================================


@dataclass(frozen=True)
class FieldSpec:
    """
    Declaration of one type-specific field.

    Attributes:
        name: Field key as written to disk
        kind: Semantic type checked on write
        required: Whether the field must be present and non-empty
        choices: Allowed values for CHOICE fields
        minimum: Lower bound for FLOAT fields
        maximum: Upper bound for FLOAT fields
    """

    name: str
    kind: FieldKind = FieldKind.TEXT
    required: bool = False
    choices: tuple[str, ...] = ()
    minimum: float | None = None
    maximum: float | None = None


RECORD_FIELDS: dict[RecordType, tuple[FieldSpec, ...]] = {
    RecordType.CONVERSATION: (
        FieldSpec("timestamp_start", FieldKind.TIMESTAMP, required=True),
        FieldSpec("timestamp_end", FieldKind.TIMESTAMP, required=True),
        FieldSpec("messages", FieldKind.INT, required=True),
        FieldSpec("tokens", FieldKind.INT, required=True),
        FieldSpec("platform"),
        FieldSpec("summary"),
        FieldSpec("role"),
        FieldSpec("content"),
    ),
    RecordType.STATE: (
        FieldSpec("timestamp", FieldKind.TIMESTAMP, required=True),
        FieldSpec("status", required=True),
        FieldSpec("scope", FieldKind.CHOICE, choices=("session", "user", "app", "temp")),
        FieldSpec("key"),
        FieldSpec("value"),
    ),
    RecordType.INSIGHTS: (
        FieldSpec("text", required=True),
        FieldSpec("category", required=True),
        FieldSpec("priority", FieldKind.PRIORITY, required=True),
        FieldSpec("timestamp", FieldKind.TIMESTAMP, required=True),
        FieldSpec("confidence", FieldKind.FLOAT, minimum=0.0, maximum=1.0),
    ),
    RecordType.DECISIONS: (
        FieldSpec("decision", required=True),
        FieldSpec("rationale", required=True),
        FieldSpec("timestamp", FieldKind.TIMESTAMP, required=True),
        FieldSpec("impact", FieldKind.PRIORITY),
        FieldSpec("status"),
    ),
    RecordType.SESSION: (
        FieldSpec("creation_time", FieldKind.TIMESTAMP, required=True),
        FieldSpec(
            "status", FieldKind.CHOICE, required=True,
            choices=("active", "completed", "archived"),
        ),
        FieldSpec("app_name"),
        FieldSpec("user_id"),
    ),
    RecordType.EMBEDDING: (
        FieldSpec("model", required=True),
        FieldSpec("dimensions", FieldKind.INT, required=True),
        FieldSpec("vector", FieldKind.VECTOR, required=True),
        FieldSpec("source_id"),
        FieldSpec("timestamp", FieldKind.TIMESTAMP),
    ),
    RecordType.CONSOLIDATION: (
        FieldSpec("source_ids", FieldKind.ID_LIST, required=True),
        FieldSpec("method", required=True),
        FieldSpec("timestamp", FieldKind.TIMESTAMP, required=True),
        FieldSpec("summary"),
    ),
}


def normalize_value(value: Any) -> str:
    """
    Convert a caller-supplied field value to its stored string form.

    Examples:
        datetime(2025, 1, 2, tzinfo=UTC) -> "2025-01-02T00:00:00+00:00"
        Priority.HIGH -> "HIGH"
        ["a", "b"] -> "a,b"
        True -> "true"
    """
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (set, frozenset)):
        return ",".join(sorted(normalize_value(v) for v in value))
    if isinstance(value, (list, tuple)):
        return ",".join(normalize_value(v) for v in value)
    return str(value)


# =============================================================================
# Record Models
# =============================================================================


class Record(BaseModel):
    """
    A logical record, identified by (type, id).

    Attributes:
        type: Section type tag
        id: Record identifier (free text; escaped on write)
        fields: Type-specific fields in write order
        metadata: Free-form key/value pairs
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    type: RecordType = Field(..., description="Section type tag")
    id: str = Field(..., description="Record identifier", min_length=1)
    fields: dict[str, str] = Field(
        default_factory=dict,
        description="Type-specific fields, insertion ordered",
    )
    metadata: dict[str, str] = Field(
        default_factory=dict,
        description="Free-form key/value metadata",
    )

    @field_validator("fields", "metadata", mode="before")
    @classmethod
    def normalize_values(cls, v: Any) -> Any:
        """Normalize datetimes, enums, numbers and sequences to strings."""
        if v is None:
            return {}
        if isinstance(v, dict):
            return {str(k): normalize_value(val) for k, val in v.items()}
        return v

    @property
    def key(self) -> tuple[RecordType, str]:
        """Identity of this record."""
        return (self.type, self.id)

    def get(self, name: str, default: str | None = None) -> str | None:
        """Look up a field, falling back to metadata."""
        if name in self.fields:
            return self.fields[name]
        return self.metadata.get(name, default)


class Section(BaseModel):
    """
    A record as parsed from disk, with the line range it occupies.

    Attributes:
        record: The parsed record
        first_line: Line number of the header
        last_line: Line number of the final field line (or the header)
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    record: Record
    first_line: int = Field(..., ge=1)
    last_line: int = Field(..., ge=1)


# =============================================================================
# Record Validation
# =============================================================================


def _check_kind(spec: FieldSpec, value: str) -> str | None:
    """Return an error message if value does not match spec.kind."""
    if spec.kind == FieldKind.TEXT:
        return None

    if spec.kind == FieldKind.INT:
        if not value.isascii() or not value.isdigit():
            return f"'{spec.name}' must be a non-negative integer, got {value!r}"
        return None

    if spec.kind == FieldKind.FLOAT:
        try:
            number = float(value)
        except ValueError:
            return f"'{spec.name}' must be a number, got {value!r}"
        if not math.isfinite(number):
            return f"'{spec.name}' must be finite"
        if spec.minimum is not None and number < spec.minimum:
            return f"'{spec.name}' must be >= {spec.minimum:g}"
        if spec.maximum is not None and number > spec.maximum:
            return f"'{spec.name}' must be <= {spec.maximum:g}"
        return None

    if spec.kind == FieldKind.TIMESTAMP:
        try:
            datetime.fromisoformat(value)
        except ValueError:
            return f"'{spec.name}' must be an ISO-8601 timestamp, got {value!r}"
        return None

    if spec.kind == FieldKind.PRIORITY:
        allowed = [p.value for p in Priority]
        if value not in allowed:
            return f"'{spec.name}' must be one of {', '.join(allowed)}, got {value!r}"
        return None

    if spec.kind == FieldKind.CHOICE:
        if value not in spec.choices:
            return f"'{spec.name}' must be one of {', '.join(spec.choices)}, got {value!r}"
        return None

    if spec.kind == FieldKind.ID_LIST:
        ids = value.split(",")
        if any(not item.strip() for item in ids):
            return f"'{spec.name}' must be a comma-separated list of non-empty ids"
        return None

    if spec.kind == FieldKind.VECTOR:
        try:
            numbers = [float(item) for item in value.split(",")]
        except ValueError:
            return f"'{spec.name}' must be a comma-separated list of numbers"
        if not all(math.isfinite(n) for n in numbers):
            return f"'{spec.name}' must contain only finite numbers"
        return None

    return None


def validate_record(record: Record, max_value_length: int = 100_000) -> list[str]:
    """
    Check a record against the field table for its type.

    Args:
        record: The record to check
        max_value_length: Longest allowed value, in characters

    Returns:
        A list of error messages; empty when the record is valid
    """
    errors: list[str] = []
    specs = {spec.name: spec for spec in RECORD_FIELDS[record.type]}

    if len(record.id) > max_value_length:
        errors.append(f"id exceeds maximum length of {max_value_length}")

    for spec in specs.values():
        if spec.required and not record.fields.get(spec.name):
            errors.append(f"'{spec.name}' is required")

    for name, value in record.fields.items():
        if not FIELD_KEY_PATTERN.match(name):
            errors.append(f"field key {name!r} is not a valid identifier")
            continue
        if name.startswith(METADATA_PREFIX):
            errors.append(f"field key {name!r} uses the reserved '{METADATA_PREFIX}' prefix")
            continue
        if len(value) > max_value_length:
            errors.append(f"'{name}' exceeds maximum length of {max_value_length}")
            continue
        spec = specs.get(name)
        if spec is not None and value:
            problem = _check_kind(spec, value)
            if problem:
                errors.append(problem)

    vector_spec = specs.get("vector")
    if vector_spec is not None and vector_spec.kind == FieldKind.VECTOR:
        vector = record.fields.get("vector", "")
        dimensions = record.fields.get("dimensions", "")
        if vector and dimensions.isdigit() and _check_kind(vector_spec, vector) is None:
            count = len(vector.split(","))
            if count != int(dimensions):
                errors.append(f"'vector' has {count} values but dimensions is {dimensions}")

    for key, value in record.metadata.items():
        if not key:
            errors.append("metadata keys must be non-empty")
        elif "=" in key:
            errors.append(f"metadata key {key!r} must not contain '='")
        elif len(value) > max_value_length:
            errors.append(f"metadata '{key}' exceeds maximum length of {max_value_length}")

    return errors


# =============================================================================
# Configuration
# =============================================================================


class StoreConfig(BaseModel):
    """
    Store configuration.

    Attributes:
        data_dir: Data directory, relative to the project root
        lock_timeout_seconds: Default time to wait for a file lock
        stale_lock_seconds: Age after which an orphaned lock may be reclaimed
        lock_poll_seconds: Initial polling interval while waiting for a lock
        indexed_read_limit_bytes: Files smaller than this are read in one go
        stream_chunk_bytes: Chunk size for streaming reads
        max_line_bytes: Longest line the streaming reader will buffer
        max_value_length: Longest field value accepted on write
        redact_pii: Redact PII on every write unless a call overrides it
        compliance_log: Record redaction events in compliance.log
        fsync: fsync data files after each append
        read_mode: Force indexed or streaming reads (auto = by size)
        encoder_key: Hex key enabling the line encoder
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    data_dir: str = Field(
        default=".ctxlog",
        description="Data directory, relative to the project root",
        min_length=1,
    )
    lock_timeout_seconds: float = Field(
        default=5.0,
        description="Default time to wait for a file lock",
        gt=0,
    )
    stale_lock_seconds: float = Field(
        default=30.0,
        description="Age after which an orphaned lock may be reclaimed",
        gt=0,
    )
    lock_poll_seconds: float = Field(
        default=0.01,
        description="Initial polling interval while waiting for a lock",
        gt=0,
        le=1.0,
    )
    indexed_read_limit_bytes: int = Field(
        default=10 * 1024 * 1024,  # 10 MB
        description="Files smaller than this are read in one go",
        ge=0,
    )
    stream_chunk_bytes: int = Field(
        default=64 * 1024,  # 64 KB
        description="Chunk size for streaming reads",
        gt=0,
    )
    max_line_bytes: int = Field(
        default=1024 * 1024,  # 1 MB
        description="Longest line the streaming reader will buffer",
        gt=0,
    )
    max_value_length: int = Field(
        default=100_000,
        description="Longest field value accepted on write",
        gt=0,
    )
    redact_pii: bool = Field(
        default=False,
        description="Redact PII on every write unless a call overrides it",
    )
    compliance_log: bool = Field(
        default=False,
        description="Record redaction events in compliance.log",
    )
    fsync: bool = Field(
        default=True,
        description="fsync data files after each append",
    )
    read_mode: ReadMode = Field(
        default=ReadMode.AUTO,
        description="Force indexed or streaming reads",
    )
    encoder_key: str | None = Field(
        default=None,
        description="Hex key enabling the line encoder",
    )

    @field_validator("encoder_key")
    @classmethod
    def validate_encoder_key(cls, v: str | None) -> str | None:
        """Encoder keys are hex strings of at least 16 bytes."""
        if v is None:
            return v
        problem = encoder_key_problem(v)
        if problem:
            msg = f"encoder_key {problem}"
            raise ValueError(msg)
        return v

    def resolve_encoder_key(self) -> bytes | None:
        """
        Return the configured encoder key, falling back to the environment.

        Raises:
            EncoderKeyError: If the environment variable holds an unusable key
        """
        if self.encoder_key:
            return bytes.fromhex(self.encoder_key)
        key = os.environ.get(ENCODER_KEY_ENV, "").strip()
        if not key:
            return None
        problem = encoder_key_problem(key)
        if problem:
            raise EncoderKeyError(source=ENCODER_KEY_ENV, reason=problem)
        return bytes.fromhex(key)


def encoder_key_problem(hex_key: str) -> str | None:
    """Describe what is wrong with a hex encoder key, or None if it is usable."""
    try:
        raw = bytes.fromhex(hex_key)
    except ValueError:
        return "must be a hex string"
    if len(raw) < MIN_ENCODER_KEY_BYTES:
        hex_chars = 2 * MIN_ENCODER_KEY_BYTES
        return f"must be at least {MIN_ENCODER_KEY_BYTES} bytes ({hex_chars} hex characters)"
    return None


# =============================================================================
# YAML Loading Helpers
# =============================================================================


def load_config(path: Path | str) -> StoreConfig:
    """
    Load store configuration from a YAML file.

    Args:
        path: Path to the YAML file

    Returns:
        Validated StoreConfig object

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValidationError: If the YAML doesn't match the schema
    """
    path = Path(path)
    with path.open() as f:
        data = yaml.safe_load(f)

    return StoreConfig.model_validate(data or {})


def load_config_from_string(content: str) -> StoreConfig:
    """Load store configuration from a YAML string."""
    data = yaml.safe_load(content)
    return StoreConfig.model_validate(data or {})
