"""
Unit tests for the line format.

Tests cover:
- Formatting headers, fields and metadata
- Parsing sections back into records
- Tolerance of malformed and hand-edited lines
- Tail scanning
"""

import io
import logging

import pytest

from ctxlog.encoder import LineEncoder
from ctxlog.errors import MalformedLineError
from ctxlog.schema import Record, RecordType
from ctxlog.store.lines import (
    SectionParser,
    format_block,
    format_lines,
    leading_number,
    parse_lines,
    read_tail,
    split_line,
)


@pytest.fixture
def decision(decision_fields: dict[str, str]) -> Record:
    """A DECISIONS record with metadata."""
    return Record(
        type=RecordType.DECISIONS,
        id="d-1",
        fields=decision_fields,
        metadata={"owner": "platform team"},
    )


class TestFormat:
    """Tests for format_lines() and format_block()."""

    def test_layout(self, decision: Record) -> None:
        """Header, fields then metadata, numbered from start_line."""
        lines = format_lines(decision, 5)
        assert lines == [
            "5|@DECISIONS:d-1",
            "6|decision=Use PostgreSQL",
            "7|rationale=Need JSONB support",
            "8|timestamp=2025-01-02T10:00:00+00:00",
            "9|impact=HIGH",
            "10|meta.owner=platform team",
        ]

    def test_block_is_newline_terminated(self, decision: Record) -> None:
        """Blocks end every line with a newline."""
        block = format_block(decision, 1)
        assert block.endswith("\n")
        assert block.count("\n") == 6

    def test_values_are_escaped(self) -> None:
        """Delimiters in values cannot break the line structure."""
        record = Record(
            type=RecordType.STATE,
            id="s|1",
            fields={"status": "a\n2|@STATE:forged"},
        )
        lines = format_lines(record, 1)
        assert lines == [
            "1|@STATE:s\\|1",
            "2|status=a\\n2\\|\\@STATE:forged",
        ]

    def test_encoded_lines_keep_numbers(self, decision: Record, encoder: LineEncoder) -> None:
        """Only the content is encoded."""
        lines = format_lines(decision, 3, encoder)
        for offset, line in enumerate(lines):
            number, _, content = line.partition("|")
            assert number == str(3 + offset)
            assert LineEncoder.is_token(content)


class TestParse:
    """Tests for SectionParser and parse_lines()."""

    def test_format_then_parse(self, decision: Record) -> None:
        """Parsing formatted lines gives back the same record."""
        [section] = parse_lines(format_lines(decision, 1), RecordType.DECISIONS)
        assert section.record == decision
        assert list(section.record.fields) == list(decision.fields)
        assert section.first_line == 1
        assert section.last_line == 6

    def test_escaped_values_restored(self) -> None:
        """Escapes are undone for callers."""
        record = Record(
            type=RecordType.STATE,
            id="id|with\nnewline",
            fields={"status": "x|y", "value": "@STATE:z \\n"},
            metadata={"k|ey": "v\r\nv"},
        )
        [section] = parse_lines(format_lines(record, 1))
        assert section.record == record

    def test_encoded_lines(self, decision: Record, encoder: LineEncoder) -> None:
        """Encoded sections parse with the encoder."""
        [section] = parse_lines(format_lines(decision, 1, encoder), encoder=encoder)
        assert section.record == decision

    def test_hybrid_lines(self, decision: Record, encoder: LineEncoder) -> None:
        """Plain and encoded sections mix in one file."""
        other = decision.model_copy(update={"id": "d-2"})
        lines = format_lines(decision, 1) + format_lines(other, 7, encoder)
        sections = parse_lines(lines, encoder=encoder)
        assert [s.record.id for s in sections] == ["d-1", "d-2"]

    def test_encoded_without_key_skipped(
        self,
        decision: Record,
        encoder: LineEncoder,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        """Without a key, encoded lines are skipped and logged."""
        lines = format_lines(decision, 1, encoder)
        with caplog.at_level(logging.WARNING):
            assert parse_lines(lines) == []
        assert "no encoder key" in caplog.text

    def test_tampered_line_skipped(self, decision: Record, encoder: LineEncoder) -> None:
        """A line failing its integrity check is dropped."""
        lines = format_lines(decision, 1, encoder)
        number, _, token = lines[2].partition("|")
        lines[2] = f"{number}|{token[:-2]}{'A' if token[-2] != 'A' else 'B'}{token[-1]}"
        parser = SectionParser(encoder=encoder)
        sections = [s for s in (parser.feed(line) for line in lines) if s]
        last = parser.finish()
        assert last is not None
        sections.append(last)
        assert len(sections) == 1
        assert "rationale" not in sections[0].record.fields
        assert parser.skipped == 1

    def test_malformed_lines_skipped(self) -> None:
        """Junk lines do not abort parsing."""
        lines = [
            "not a line",
            "1|orphan=field",
            "2|@DECISIONS:d-1",
            "3|decision=x",
            "garbage without number",
            "4|no equals sign",
            "5|rationale=y",
        ]
        parser = SectionParser(RecordType.DECISIONS)
        for line in lines:
            assert parser.feed(line) is None
        section = parser.finish()
        assert section is not None
        assert section.record.fields == {"decision": "x", "rationale": "y"}
        assert parser.skipped == 4
        assert parser.lines_read == 7

    def test_zero_numbered_header_skipped(self) -> None:
        """Line numbers start at 1; a header numbered 0 is dropped with its orphan fields."""
        parser = SectionParser(RecordType.DECISIONS)
        for line in ["0|@DECISIONS:bad", "1|decision=x", "2|@DECISIONS:good"]:
            assert parser.feed(line) is None
        assert parser.feed("3|decision=y") is None
        section = parser.finish()
        assert section is not None
        assert section.record.id == "good"
        assert section.first_line == 2
        assert parser.skipped == 2

    def test_zero_numbered_field_skipped(self) -> None:
        """A field line numbered 0 is dropped and the section survives."""
        [section] = parse_lines(["1|@DECISIONS:a", "0|decision=x", "2|rationale=r"])
        assert section.record.id == "a"
        assert section.record.fields == {"rationale": "r"}
        assert section.last_line == 2

    def test_unknown_type_section_skipped(self) -> None:
        """Sections with an unknown tag are dropped with their fields."""
        lines = ["1|@BOGUS:x", "2|a=b", "3|@STATE:s", "4|status=ok"]
        [section] = parse_lines(lines)
        assert section.record.id == "s"
        assert section.record.fields == {"status": "ok"}

    def test_other_type_filtered(self) -> None:
        """Only sections of the requested type are emitted."""
        lines = ["1|@STATE:s", "2|status=ok", "3|@DECISIONS:d", "4|decision=x"]
        [section] = parse_lines(lines, RecordType.DECISIONS)
        assert section.record.id == "d"

    def test_non_increasing_numbers_kept(self, caplog: pytest.LogCaptureFixture) -> None:
        """Out-of-order numbers are logged but the lines are kept."""
        lines = ["5|@STATE:s", "3|status=ok"]
        with caplog.at_level(logging.WARNING):
            [section] = parse_lines(lines)
        assert section.record.fields == {"status": "ok"}
        assert "Non-increasing" in caplog.text

    def test_invalid_utf8_skipped(self) -> None:
        """Undecodable bytes drop only their line."""
        parser = SectionParser()
        parser.feed(b"1|@STATE:s")
        parser.feed(b"2|status=\xff\xfe")
        parser.feed(b"3|value=ok")
        section = parser.finish()
        assert section is not None
        assert section.record.fields == {"value": "ok"}
        assert parser.skipped == 1

    def test_crlf_and_blank_lines(self) -> None:
        """Windows line endings and blank lines are tolerated."""
        [section] = parse_lines(["1|@STATE:s\r", "", "2|status=ok\r"])
        assert section.record.fields == {"status": "ok"}

    def test_section_boundaries(self) -> None:
        """A header closes the previous section."""
        parser = SectionParser()
        assert parser.feed("1|@STATE:a") is None
        assert parser.feed("2|status=one") is None
        closed = parser.feed("3|@STATE:b")
        assert closed is not None
        assert closed.record.id == "a"
        assert closed.last_line == 2
        assert parser.finish().record.id == "b"
        assert parser.finish() is None


class TestSplitLine:
    """Tests for split_line() and leading_number()."""

    def test_split(self) -> None:
        """Number and content are separated at the first pipe."""
        assert split_line("12|a=b\\|c") == (12, "a=b\\|c")

    @pytest.mark.parametrize("raw", ["abc", "|x", "1a|x", "-1|x", "١|x"])
    def test_split_rejects(self, raw: str) -> None:
        """Lines without an ASCII number prefix are malformed."""
        with pytest.raises(MalformedLineError):
            split_line(raw)

    def test_leading_number(self) -> None:
        """Only complete "<n>|" prefixes count."""
        assert leading_number(b"42|x") == 42
        assert leading_number(b"42") is None
        assert leading_number(b"x|42") is None


class TestReadTail:
    """Tests for read_tail()."""

    def test_empty_file(self) -> None:
        """An empty file starts at zero."""
        tail = read_tail(io.BytesIO(b""))
        assert tail.last_number == 0
        assert tail.ends_with_newline is True

    def test_last_number(self) -> None:
        """The last numbered line wins."""
        tail = read_tail(io.BytesIO(b"1|@STATE:s\n2|status=ok\n"))
        assert tail.last_number == 2
        assert tail.ends_with_newline is True

    def test_partial_fragment_skipped(self) -> None:
        """A trailing fragment without a number prefix is ignored."""
        tail = read_tail(io.BytesIO(b"1|@STATE:s\n2|status=ok\n3"))
        assert tail.last_number == 2
        assert tail.ends_with_newline is False

    def test_partial_line_with_number(self) -> None:
        """A truncated line that kept its prefix still counts."""
        tail = read_tail(io.BytesIO(b"1|@STATE:s\n2|sta"))
        assert tail.last_number == 2
        assert tail.ends_with_newline is False

    def test_scans_across_blocks(self) -> None:
        """Small blocks still find the last number."""
        data = b"".join(f"{n}|field=value-{n}\n".encode() for n in range(1, 200))
        tail = read_tail(io.BytesIO(data + b"x" * 50), block_size=16)
        assert tail.last_number == 199

    def test_no_numbered_lines(self) -> None:
        """A file of junk counts as zero."""
        assert read_tail(io.BytesIO(b"junk\nmore junk\n")).last_number == 0
