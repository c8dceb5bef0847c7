"""
Append path for ctxlog.

The Writer turns a Record into numbered lines and appends them to the
record type's data file. Every append runs the same pipeline:

    1. Validate fields against the per-type table (RecordValidationError)
    2. Redact PII from free-text values, when enabled
    3. Lazily create the data directory
    4. Acquire the data file's lock (LockTimeoutError)
    5. Read the last line number physically present on disk
    6. Format and escape header and field lines (+ encode, when enabled)
    7. Write the whole block with one write() and fsync
    8. Release the lock

Design Principles:
    - Line numbers always come from the file's tail, read under the lock;
      the cached counter is informational and never used for numbering
    - One write per record keeps the partial-write window to a single call
    - A crash mid-write leaves a strict prefix of the record's lines; the
      next writer terminates the partial line before appending
"""

import json
import logging
import os
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pydantic

from ctxlog.encoder import LineEncoder
from ctxlog.errors import RecordValidationError, StorageReadError, StorageWriteError
from ctxlog.schema import (
    RECORD_FIELDS,
    FieldKind,
    Record,
    RecordType,
    StoreConfig,
    validate_record,
)
from ctxlog.security.paths import PathGuard
from ctxlog.security.pii import PIIDetector
from ctxlog.store.lines import format_lines, read_tail
from ctxlog.store.lock import LockManager

logger = logging.getLogger(__name__)

COMPLIANCE_LOG = "compliance.log"


def build_record(
    record_type: RecordType,
    record_id: str,
    fields: dict[str, Any],
    metadata: dict[str, Any] | None = None,
) -> Record:
    """
    Build a Record, converting model errors into RecordValidationError.

    Raises:
        RecordValidationError: If the id is empty or a value cannot be normalized
    """
    try:
        return Record(
            type=record_type,
            id=record_id,
            fields=fields,
            metadata=metadata or {},
        )
    except pydantic.ValidationError as e:
        errors = [
            f"{'.'.join(str(loc) for loc in err['loc'])}: {err['msg']}"
            for err in e.errors()
        ]
        raise RecordValidationError(
            record_type=record_type.value,
            record_id=str(record_id),
            errors=errors,
        ) from e


class Writer:
    """
    Appends records to the data files under one project root.

    Usage:
        writer = Writer("/srv/agent")
        writer.add_decision("d-1", {
            "decision": "Use PostgreSQL",
            "rationale": "Need JSONB",
            "timestamp": datetime.now(UTC),
        })

    A Writer may be shared between threads; separate Writers in separate
    processes coordinate through the lock files.
    """

    def __init__(
        self,
        project_root: Path | str = ".",
        config: StoreConfig | None = None,
        encoder: LineEncoder | None = None,
        lock_manager: LockManager | None = None,
        pii_detector: PIIDetector | None = None,
    ) -> None:
        """
        Initialize the writer.

        Args:
            project_root: Directory all data must stay inside
            config: Store configuration (defaults to StoreConfig())
            encoder: Line encoder; built from the configured key if omitted
            lock_manager: Lock manager; built from the config if omitted
            pii_detector: PII detector used when redaction is enabled

        Raises:
            SecurityViolationError: If the data directory or a data file
                would resolve outside the project root
        """
        self.config = config or StoreConfig()
        self.guard = PathGuard(project_root)
        self.data_dir = self.guard.validate(self.config.data_dir)
        self.paths: dict[RecordType, Path] = {
            record_type: self.guard.validate(self.data_dir / record_type.filename)
            for record_type in RecordType
        }

        if encoder is None:
            key = self.config.resolve_encoder_key()
            encoder = LineEncoder(key) if key else None
        self.encoder = encoder

        self.locks = lock_manager or LockManager(
            timeout=self.config.lock_timeout_seconds,
            stale_after=self.config.stale_lock_seconds,
            poll_interval=self.config.lock_poll_seconds,
        )
        self.pii = pii_detector or PIIDetector()

        self._line_counts: dict[RecordType, int] = {}
        self._counts_mutex = threading.Lock()

    # =========================================================================
    # Named operations
    # =========================================================================

    def append_conversation(
        self,
        record_id: str,
        fields: dict[str, Any],
        metadata: dict[str, Any] | None = None,
        *,
        redact_pii: bool | None = None,
        timeout: float | None = None,
    ) -> int:
        """Append a CONVERSATION record; returns the new line count."""
        return self._append(RecordType.CONVERSATION, record_id, fields, metadata, redact_pii, timeout)

    def add_state(
        self,
        record_id: str,
        fields: dict[str, Any],
        metadata: dict[str, Any] | None = None,
        *,
        redact_pii: bool | None = None,
        timeout: float | None = None,
    ) -> int:
        """Append a STATE record; returns the new line count."""
        return self._append(RecordType.STATE, record_id, fields, metadata, redact_pii, timeout)

    def add_insight(
        self,
        record_id: str,
        fields: dict[str, Any],
        metadata: dict[str, Any] | None = None,
        *,
        redact_pii: bool | None = None,
        timeout: float | None = None,
    ) -> int:
        """Append an INSIGHTS record; returns the new line count."""
        return self._append(RecordType.INSIGHTS, record_id, fields, metadata, redact_pii, timeout)

    def add_decision(
        self,
        record_id: str,
        fields: dict[str, Any],
        metadata: dict[str, Any] | None = None,
        *,
        redact_pii: bool | None = None,
        timeout: float | None = None,
    ) -> int:
        """Append a DECISIONS record; returns the new line count."""
        return self._append(RecordType.DECISIONS, record_id, fields, metadata, redact_pii, timeout)

    def add_session(
        self,
        record_id: str,
        fields: dict[str, Any],
        metadata: dict[str, Any] | None = None,
        *,
        redact_pii: bool | None = None,
        timeout: float | None = None,
    ) -> int:
        """Append a SESSION record; returns the new line count."""
        return self._append(RecordType.SESSION, record_id, fields, metadata, redact_pii, timeout)

    def add_embedding(
        self,
        record_id: str,
        fields: dict[str, Any],
        metadata: dict[str, Any] | None = None,
        *,
        redact_pii: bool | None = None,
        timeout: float | None = None,
    ) -> int:
        """Append an EMBEDDING record; returns the new line count."""
        return self._append(RecordType.EMBEDDING, record_id, fields, metadata, redact_pii, timeout)

    def add_consolidation(
        self,
        record_id: str,
        fields: dict[str, Any],
        metadata: dict[str, Any] | None = None,
        *,
        redact_pii: bool | None = None,
        timeout: float | None = None,
    ) -> int:
        """Append a CONSOLIDATION record; returns the new line count."""
        return self._append(RecordType.CONSOLIDATION, record_id, fields, metadata, redact_pii, timeout)

    # =========================================================================
    # Generic append
    # =========================================================================

    def append_record(
        self,
        record: Record,
        *,
        redact_pii: bool | None = None,
        timeout: float | None = None,
    ) -> int:
        """
        Validate, redact, lock, format and append one record.

        Args:
            record: The record to append
            redact_pii: Override config.redact_pii for this call
            timeout: Override the lock timeout for this call

        Returns:
            Number of the last line written (the file's new line count)

        Raises:
            RecordValidationError: If the record fails validation
            LockTimeoutError: If the lock could not be acquired (nothing written)
            StorageWriteError: If the filesystem write fails
        """
        self._validate(record)

        should_redact = self.config.redact_pii if redact_pii is None else redact_pii
        detected: list[str] = []
        count = 0
        if should_redact:
            record, detected, count = self._redact(record)
            if count:
                self._validate(record)

        path = self.paths[record.type]
        self._ensure_data_dir()

        with self.locks.hold(path, timeout):
            try:
                with path.open("a+b") as fh:
                    tail = read_tail(fh)
                    lines = format_lines(record, tail.last_number + 1, self.encoder)
                    block = "".join(f"{line}\n" for line in lines)
                    if not tail.ends_with_newline:
                        logger.warning(
                            "Terminating partial trailing line in %s before append",
                            path.name,
                        )
                        block = "\n" + block
                    fh.write(block.encode("utf-8"))
                    fh.flush()
                    if self.config.fsync:
                        os.fsync(fh.fileno())
            except OSError as e:
                raise StorageWriteError(
                    operation="append",
                    path=str(path),
                    underlying_error=str(e),
                ) from e

            if count and self.config.compliance_log:
                self._log_compliance(record, detected, count)

        last_line = tail.last_number + len(lines)
        with self._counts_mutex:
            self._line_counts[record.type] = last_line

        logger.debug(
            "Appended %s:%s as lines %d-%d",
            record.type.value,
            record.id,
            tail.last_number + 1,
            last_line,
        )
        return last_line

    def line_count(self, record_type: RecordType) -> int:
        """Return the last line number currently on disk for a record type."""
        path = self.paths[record_type]
        try:
            with path.open("rb") as fh:
                last = read_tail(fh).last_number
        except FileNotFoundError:
            last = 0
        except OSError as e:
            raise StorageReadError(
                operation="line_count",
                path=str(path),
                underlying_error=str(e),
            ) from e

        with self._counts_mutex:
            self._line_counts[record_type] = last
        return last

    @property
    def cached_line_counts(self) -> dict[RecordType, int]:
        """Line counts observed by this writer's last appends."""
        with self._counts_mutex:
            return dict(self._line_counts)

    # =========================================================================
    # Internals
    # =========================================================================

    def _append(
        self,
        record_type: RecordType,
        record_id: str,
        fields: dict[str, Any],
        metadata: dict[str, Any] | None,
        redact_pii: bool | None,
        timeout: float | None,
    ) -> int:
        record = build_record(record_type, record_id, fields, metadata)
        return self.append_record(record, redact_pii=redact_pii, timeout=timeout)

    def _validate(self, record: Record) -> None:
        errors = validate_record(record, self.config.max_value_length)
        if errors:
            raise RecordValidationError(
                record_type=record.type.value,
                record_id=record.id,
                errors=errors,
            )

    def _redact(self, record: Record) -> tuple[Record, list[str], int]:
        """Redact free-text field values and all metadata values."""
        kinds = {spec.name: spec.kind for spec in RECORD_FIELDS[record.type]}
        types: list[str] = []
        count = 0

        def scrub(value: str) -> str:
            nonlocal count
            result = self.pii.redact(value)
            count += result.detections
            for pii_type in result.types:
                if pii_type not in types:
                    types.append(pii_type)
            return result.text

        fields = {
            key: scrub(value) if kinds.get(key, FieldKind.TEXT) == FieldKind.TEXT else value
            for key, value in record.fields.items()
        }
        metadata = {key: scrub(value) for key, value in record.metadata.items()}

        if not count:
            return record, [], 0

        logger.warning(
            "Redacted %d PII value(s) from %s record: %s",
            count,
            record.type.value,
            ", ".join(types),
        )
        return record.model_copy(update={"fields": fields, "metadata": metadata}), types, count

    def _ensure_data_dir(self) -> None:
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageWriteError(
                operation="mkdir",
                path=str(self.data_dir),
                underlying_error=str(e),
            ) from e

    def _log_compliance(self, record: Record, types: list[str], count: int) -> None:
        """Append a redaction event to compliance.log (never the values)."""
        entry = {
            "timestamp": datetime.now(UTC).isoformat(),
            "file": record.type.filename,
            "record_type": record.type.value,
            "record_id": record.id,
            "types": types,
            "count": count,
        }
        path = self.data_dir / COMPLIANCE_LOG
        try:
            with path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(entry) + "\n")
        except OSError as e:
            raise StorageWriteError(
                operation="compliance_log",
                path=str(path),
                underlying_error=str(e),
            ) from e
