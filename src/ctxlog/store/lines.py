"""
Line format for ctxlog data files.

Every persisted line has the form:

    <line_number>|<content>

where content is one of:

    @TYPE:id            section header (opens a new section)
    key=value           type-specific field of the open section
    meta.key=value      metadata entry of the open section

With the encoder enabled, content is replaced by an encoded token and the
line number stays in the clear.

This module is shared by the writer (formatting, tail scan) and by both
read modes (SectionParser), so indexed and streaming reads produce the
same sections from the same bytes.
"""

import logging
import os
import re
from dataclasses import dataclass
from typing import BinaryIO

from pydantic import ValidationError

from ctxlog.encoder import LineEncoder
from ctxlog.errors import IntegrityError, MalformedLineError
from ctxlog.schema import METADATA_PREFIX, Record, RecordType, Section
from ctxlog.security.sanitize import sanitize, unescape

logger = logging.getLogger(__name__)

_NUMBER_PREFIX = re.compile(rb"^(\d+)\|")
_TAIL_BLOCK_BYTES = 64 * 1024


# =============================================================================
# Formatting
# =============================================================================


def format_lines(
    record: Record,
    start_line: int,
    encoder: LineEncoder | None = None,
) -> list[str]:
    """
    Render a record as numbered lines, header first.

    Every id, key and value is escaped here, so the result can never contain
    a raw newline, a bare "|" or a forged section header.

    Args:
        record: A validated record
        start_line: Number given to the header line
        encoder: Optional encoder applied to each line's content

    Returns:
        Lines without trailing newlines
    """
    contents = [f"@{record.type.value}:{sanitize(record.id)}"]
    for key, value in record.fields.items():
        contents.append(f"{sanitize(key)}={sanitize(value)}")
    for key, value in record.metadata.items():
        contents.append(f"{METADATA_PREFIX}{sanitize(key)}={sanitize(value)}")

    if encoder is not None:
        contents = [encoder.encode(content) for content in contents]

    return [f"{start_line + offset}|{content}" for offset, content in enumerate(contents)]


def format_block(
    record: Record,
    start_line: int,
    encoder: LineEncoder | None = None,
) -> str:
    """Render a record as a newline-terminated block ready for one write."""
    return "".join(f"{line}\n" for line in format_lines(record, start_line, encoder))


# =============================================================================
# Tail Scan
# =============================================================================


@dataclass(frozen=True)
class TailInfo:
    """
    State of a data file's end, as seen by the writer under its lock.

    Attributes:
        last_number: Highest valid line number at the end of the file (0 if none)
        ends_with_newline: False when a crashed writer left a partial line
        size: File size in bytes
    """

    last_number: int
    ends_with_newline: bool
    size: int


def leading_number(raw: bytes) -> int | None:
    """Return the line number prefix of a raw line, or None."""
    match = _NUMBER_PREFIX.match(raw)
    if match is None:
        return None
    return int(match.group(1))


def read_tail(fh: BinaryIO, block_size: int = _TAIL_BLOCK_BYTES) -> TailInfo:
    """
    Find the last numbered line by scanning backward from EOF.

    Trailing fragments without a "<n>|" prefix (left by a crash mid-write)
    are skipped, so numbering continues from the last line that made it to
    disk.

    Args:
        fh: Binary file object opened for reading
        block_size: Bytes read per backward step

    Returns:
        TailInfo for the current end of file
    """
    fh.seek(0, os.SEEK_END)
    size = fh.tell()
    if size == 0:
        return TailInfo(last_number=0, ends_with_newline=True, size=0)

    fh.seek(size - 1)
    ends_with_newline = fh.read(1) == b"\n"

    position = size
    carry = b""
    while position > 0:
        step = min(block_size, position)
        position -= step
        fh.seek(position)
        parts = (fh.read(step) + carry).split(b"\n")
        if position > 0:
            carry = parts[0]
            parts = parts[1:]
        for raw in reversed(parts):
            number = leading_number(raw)
            if number is not None:
                return TailInfo(number, ends_with_newline, size)

    return TailInfo(last_number=0, ends_with_newline=ends_with_newline, size=size)


# =============================================================================
# Parsing
# =============================================================================


def split_line(raw: str) -> tuple[int, str]:
    """
    Split a line into its number and content.

    Raises:
        MalformedLineError: If the line has no numeric prefix
    """
    number_text, sep, content = raw.partition("|")
    if not sep or not number_text.isascii() or not number_text.isdigit():
        raise MalformedLineError(raw=raw, reason="missing numeric line prefix")
    return int(number_text), content


class SectionParser:
    """
    Incremental parser turning lines into Sections.

    Feed lines in file order; a Section is returned once the next header
    (or finish()) proves it complete. Malformed lines are logged and
    counted, never raised.

    Usage:
        parser = SectionParser(RecordType.DECISIONS, encoder=None, source="decisions.ctx")
        for raw in lines:
            section = parser.feed(raw)
            if section is not None:
                handle(section)
        last = parser.finish()

    Attributes:
        lines_read: Lines fed so far
        skipped: Lines dropped as malformed
    """

    def __init__(
        self,
        record_type: RecordType | None = None,
        encoder: LineEncoder | None = None,
        source: str = "",
    ) -> None:
        """
        Args:
            record_type: Only emit sections of this type (None = any type)
            encoder: Encoder for token-shaped lines
            source: Name used in log messages
        """
        self.record_type = record_type
        self.encoder = encoder
        self.source = source
        self.lines_read = 0
        self.skipped = 0
        self._last_number = 0
        self._current: dict | None = None
        # True while inside a section whose header was rejected
        self._discarding = False

    @property
    def last_number(self) -> int:
        """Highest line number seen so far."""
        return self._last_number

    def feed(self, raw: str | bytes) -> Section | None:
        """
        Consume one line (without its newline).

        Returns:
            The previous Section if this line closed it, else None
        """
        self.lines_read += 1
        try:
            return self._feed(raw)
        except (MalformedLineError, IntegrityError) as e:
            self.skipped += 1
            logger.warning("Skipping line in %s: %s", self.source or "<data>", e.message)
            return None

    def finish(self) -> Section | None:
        """Close the open section at end of input."""
        return self._close()

    def _feed(self, raw: str | bytes) -> Section | None:
        if isinstance(raw, bytes):
            try:
                raw = raw.decode("utf-8")
            except UnicodeDecodeError as e:
                number = leading_number(raw)
                raise MalformedLineError(
                    line_number=number,
                    raw=raw[:200].decode("utf-8", errors="replace"),
                    reason="invalid UTF-8",
                ) from e

        if raw.endswith("\r"):
            raw = raw[:-1]
        if not raw.strip():
            return None

        number, content = split_line(raw)
        if number < 1:
            raise MalformedLineError(
                line_number=number,
                raw=raw,
                reason="line number must be >= 1",
            )
        if number <= self._last_number:
            logger.warning(
                "Non-increasing line number %d after %d in %s",
                number,
                self._last_number,
                self.source or "<data>",
            )
        self._last_number = max(self._last_number, number)

        if LineEncoder.is_token(content):
            if self.encoder is None:
                raise MalformedLineError(
                    line_number=number,
                    raw=raw,
                    reason="encoded line but no encoder key configured",
                )
            try:
                content = self.encoder.decode(content)
            except IntegrityError as e:
                e.context["line_number"] = number
                e.message = f"line {number}: {e.message}"
                raise

        if content.startswith("@"):
            return self._open(number, content, raw)

        self._add_field(number, content, raw)
        return None

    def _open(self, number: int, content: str, raw: str) -> Section | None:
        completed = self._close()

        type_text, sep, record_id = content[1:].partition(":")
        try:
            record_type = RecordType(type_text)
        except ValueError:
            record_type = None

        if not sep or record_type is None or not record_id:
            self._discarding = True
            self.skipped += 1
            logger.warning(
                "Skipping line %d in %s: invalid section header %r",
                number,
                self.source or "<data>",
                raw[:80],
            )
            return completed

        if self.record_type is not None and record_type != self.record_type:
            self._discarding = True
            logger.warning(
                "Ignoring %s section at line %d in %s",
                record_type.value,
                number,
                self.source or "<data>",
            )
            return completed

        self._discarding = False
        self._current = {
            "type": record_type,
            "id": unescape(record_id),
            "fields": {},
            "metadata": {},
            "first_line": number,
            "last_line": number,
        }
        # Return what the header closed; the new section stays open
        return completed

    def _add_field(self, number: int, content: str, raw: str) -> None:
        if self._current is None:
            if self._discarding:
                self.skipped += 1
                return
            raise MalformedLineError(
                line_number=number,
                raw=raw,
                reason="field line outside of a section",
            )

        key, sep, value = content.partition("=")
        if not sep or not key:
            raise MalformedLineError(
                line_number=number,
                raw=raw,
                reason="field line without key=value",
            )

        if key.startswith(METADATA_PREFIX):
            self._current["metadata"][unescape(key[len(METADATA_PREFIX):])] = unescape(value)
        else:
            self._current["fields"][unescape(key)] = unescape(value)
        self._current["last_line"] = number

    def _close(self) -> Section | None:
        current, self._current = self._current, None
        if current is None:
            return None
        try:
            record = Record(
                type=current["type"],
                id=current["id"],
                fields=current["fields"],
                metadata=current["metadata"],
            )
            return Section(
                record=record,
                first_line=current["first_line"],
                last_line=current["last_line"],
            )
        except ValidationError as e:
            self.skipped += 1
            logger.warning(
                "Skipping section %s:%s at line %d in %s: %s",
                current["type"].value,
                current["id"],
                current["first_line"],
                self.source or "<data>",
                e,
            )
            return None


def parse_lines(
    lines: list[str],
    record_type: RecordType | None = None,
    encoder: LineEncoder | None = None,
    source: str = "",
) -> list[Section]:
    """Parse a complete list of lines into Sections."""
    parser = SectionParser(record_type, encoder=encoder, source=source)
    sections: list[Section] = []
    for raw in lines:
        section = parser.feed(raw)
        if section is not None:
            sections.append(section)
    last = parser.finish()
    if last is not None:
        sections.append(last)
    return sections
