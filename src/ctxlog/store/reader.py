"""
Read path for ctxlog.

The Reader turns a data file back into Sections. Two modes share one
parser, so they produce identical results from the same bytes:

    INDEXED    The file is read in one call and split into lines.
               Used for files below indexed_read_limit_bytes (10 MB).
    STREAMING  The file is read in stream_chunk_bytes (64 KB) chunks. Only
               the in-progress line is buffered across chunks, so memory is
               bounded by chunk size plus one line, whatever the file size.

Mode selection is automatic (a size probe before each read) unless the
configuration forces one.

Tolerance:
    Data files may be hand-edited or truncated by a crash. Lines without a
    numeric prefix, field lines outside a section, unknown section types,
    invalid UTF-8, lines over max_line_bytes and encoded lines that fail
    their integrity check are logged and skipped. They never abort a read.
"""

import logging
from collections import deque
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any, BinaryIO

from ctxlog.encoder import LineEncoder
from ctxlog.errors import StorageReadError
from ctxlog.schema import ReadMode, Record, RecordType, Section, StoreConfig
from ctxlog.security.paths import PathGuard
from ctxlog.store.lines import SectionParser
from ctxlog.store.lock import LockManager

logger = logging.getLogger(__name__)


@dataclass
class StreamStats:
    """
    Counters for one pass over a data file.

    Attributes:
        mode: Read mode used
        sections: Sections emitted
        lines: Lines seen (including skipped ones)
        skipped: Lines dropped as malformed or oversized
        bytes_read: Bytes consumed from the file
        last_line: Highest line number seen
        cancelled: True if the consumer stopped early
    """

    mode: ReadMode
    sections: int = 0
    lines: int = 0
    skipped: int = 0
    bytes_read: int = 0
    last_line: int = 0
    cancelled: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON output."""
        return {
            "mode": self.mode.value,
            "sections": self.sections,
            "lines": self.lines,
            "skipped": self.skipped,
            "bytes_read": self.bytes_read,
            "last_line": self.last_line,
            "cancelled": self.cancelled,
        }


class Reader:
    """
    Retrieves records from the data files under one project root.

    Usage:
        reader = Reader("/srv/agent")
        recent = reader.get_last_n(RecordType.DECISIONS, 5)
        critical = reader.get_by_filter(
            RecordType.INSIGHTS,
            lambda r: r.get("priority") == "CRITICAL",
        )
    """

    def __init__(
        self,
        project_root: Path | str = ".",
        config: StoreConfig | None = None,
        encoder: LineEncoder | None = None,
        lock_manager: LockManager | None = None,
    ) -> None:
        """
        Initialize the reader.

        Args:
            project_root: Directory all data must stay inside
            config: Store configuration (defaults to StoreConfig())
            encoder: Line encoder; built from the configured key if omitted
            lock_manager: Used only for reads with use_lock=True

        Raises:
            SecurityViolationError: If a data path resolves outside the root
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

    # =========================================================================
    # Queries
    # =========================================================================

    def get_last_n(
        self,
        record_type: RecordType,
        n: int,
        *,
        use_lock: bool = False,
    ) -> list[Record]:
        """
        Return the n most recent records of a type, oldest first.

        Args:
            record_type: Type to read
            n: Number of records (n <= 0 returns [])
            use_lock: Read under the file lock for a consistent snapshot

        Returns:
            Up to n records in file order
        """
        if n <= 0:
            return []

        if self.read_mode(record_type) == ReadMode.INDEXED:
            records = [s.record for s in self.iter_sections(record_type, use_lock=use_lock)]
            return records[-n:]

        window: deque[Record] = deque(maxlen=n)
        for section in self.iter_sections(record_type, use_lock=use_lock):
            window.append(section.record)
        return list(window)

    def get_by_filter(
        self,
        record_type: RecordType,
        predicate: Callable[[Record], bool],
        limit: int | None = None,
        *,
        use_lock: bool = False,
    ) -> list[Record]:
        """
        Return records matching a predicate, in file order.

        Args:
            record_type: Type to read
            predicate: Called with each record; truthy keeps it
            limit: Stop after this many matches

        Returns:
            Matching records
        """
        if limit is not None and limit <= 0:
            return []

        matches: list[Record] = []
        sections = self.iter_sections(record_type, use_lock=use_lock)
        try:
            for section in sections:
                if predicate(section.record):
                    matches.append(section.record)
                    if limit is not None and len(matches) >= limit:
                        break
        finally:
            sections.close()
        return matches

    def stream_sections(
        self,
        record_type: RecordType,
        on_section: Callable[[Section], bool | None],
        *,
        use_lock: bool = False,
    ) -> StreamStats:
        """
        Call on_section for every Section as soon as it is complete.

        Returning False from on_section cancels the read; the rest of the
        file is not read.

        Returns:
            Counters for the pass
        """
        stats = StreamStats(mode=self.read_mode(record_type))
        sections = self._sections(record_type, stats, use_lock)
        try:
            for section in sections:
                if on_section(section) is False:
                    stats.cancelled = True
                    break
        finally:
            sections.close()
        return stats

    def iter_sections(
        self,
        record_type: RecordType,
        *,
        use_lock: bool = False,
    ) -> Iterator[Section]:
        """
        Generator over the Sections of a type.

        Closing the generator cancels the read. With use_lock=True the
        file lock is held until the generator finishes or is closed.
        """
        stats = StreamStats(mode=self.read_mode(record_type))
        return self._sections(record_type, stats, use_lock)

    def read_mode(self, record_type: RecordType) -> ReadMode:
        """Choose the read mode for a type's data file."""
        if self.config.read_mode != ReadMode.AUTO:
            return self.config.read_mode
        size = self._file_size(self.paths[record_type])
        if size < self.config.indexed_read_limit_bytes:
            return ReadMode.INDEXED
        return ReadMode.STREAMING

    def stats(self) -> dict[str, dict[str, Any]]:
        """
        Summarize every data file.

        Returns:
            Mapping of type name to file, size, mode, section and line counts
        """
        summary: dict[str, dict[str, Any]] = {}
        for record_type, path in self.paths.items():
            size = self._file_size(path)
            entry: dict[str, Any] = {
                "file": path.name,
                "exists": path.exists(),
                "size_bytes": size,
                "locked": self.locks.inspect(path) is not None,
            }
            if entry["exists"]:
                pass_stats = self.stream_sections(record_type, lambda _section: None)
                entry.update(pass_stats.to_dict())
            else:
                entry.update(StreamStats(mode=self.read_mode(record_type)).to_dict())
            summary[record_type.value] = entry
        return summary

    # =========================================================================
    # Internals
    # =========================================================================

    def _sections(
        self,
        record_type: RecordType,
        stats: StreamStats,
        use_lock: bool,
    ) -> Iterator[Section]:
        path = self.paths[record_type]
        if not path.exists():
            return

        handle = self.locks.acquire(path) if use_lock else None
        parser = SectionParser(record_type, encoder=self.encoder, source=path.name)
        try:
            try:
                with path.open("rb") as fh:
                    if stats.mode == ReadMode.INDEXED:
                        raw_lines = self._indexed_lines(fh, stats)
                    else:
                        raw_lines = self._streamed_lines(fh, stats)
                    for raw in raw_lines:
                        section = parser.feed(raw)
                        if section is not None:
                            stats.sections += 1
                            yield section
            except OSError as e:
                raise StorageReadError(
                    operation="read",
                    path=str(path),
                    underlying_error=str(e),
                ) from e

            last = parser.finish()
            if last is not None:
                stats.sections += 1
                yield last
        finally:
            stats.lines += parser.lines_read
            stats.skipped += parser.skipped
            stats.last_line = parser.last_number
            if handle is not None:
                self.locks.release(handle)

    def _indexed_lines(self, fh: BinaryIO, stats: StreamStats) -> Iterator[bytes]:
        data = fh.read()
        stats.bytes_read = len(data)
        pieces = data.split(b"\n")
        if pieces and not pieces[-1]:
            pieces.pop()
        for piece in pieces:
            if len(piece) > self.config.max_line_bytes:
                self._drop_oversized(fh, stats)
                continue
            yield piece

    def _streamed_lines(self, fh: BinaryIO, stats: StreamStats) -> Iterator[bytes]:
        limit = self.config.max_line_bytes
        pending = bytearray()
        oversized = False

        while True:
            chunk = fh.read(self.config.stream_chunk_bytes)
            if not chunk:
                break
            stats.bytes_read += len(chunk)

            pieces = chunk.split(b"\n")
            for index, piece in enumerate(pieces):
                if not oversized:
                    if len(pending) + len(piece) > limit:
                        oversized = True
                        pending.clear()
                    else:
                        pending += piece
                if index == len(pieces) - 1:
                    # No newline yet: the line continues in the next chunk
                    break
                if oversized:
                    self._drop_oversized(fh, stats)
                    oversized = False
                else:
                    yield bytes(pending)
                pending.clear()

        if oversized:
            self._drop_oversized(fh, stats)
        elif pending:
            yield bytes(pending)

    def _drop_oversized(self, fh: BinaryIO, stats: StreamStats) -> None:
        stats.lines += 1
        stats.skipped += 1
        logger.warning(
            "Skipping line longer than %d bytes in %s",
            self.config.max_line_bytes,
            Path(getattr(fh, "name", "<data>")).name,
        )

    @staticmethod
    def _file_size(path: Path) -> int:
        try:
            return path.stat().st_size
        except FileNotFoundError:
            return 0
        except OSError as e:
            raise StorageReadError(
                operation="stat",
                path=str(path),
                underlying_error=str(e),
            ) from e
