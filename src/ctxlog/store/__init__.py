"""
Storage engine for ctxlog.

This package implements the append-only, line-numbered data files:

Files:
    <project_root>/.ctxlog/<type>.ctx       one data file per record type
    <project_root>/.ctxlog/<type>.ctx.lock  lock marker while a write is in flight
    <project_root>/.ctxlog/compliance.log   redaction events (optional)

Design principles:
    - Append-only: existing lines are never rewritten
    - Cross-process: marker files, not in-memory state, order writers
    - Bounded reads: large files are streamed in fixed-size chunks
    - Tolerant: malformed lines are skipped, never fatal

Why plain text?
    - Greppable and diffable without tooling
    - Survives partial writes with at most one damaged line
    - Trivially portable between hosts
"""

from ctxlog.store.lines import SectionParser, format_block, format_lines, parse_lines
from ctxlog.store.lock import LockHandle, LockInfo, LockManager
from ctxlog.store.reader import Reader, StreamStats
from ctxlog.store.writer import Writer

__all__ = [
    "LockHandle",
    "LockInfo",
    "LockManager",
    "Reader",
    "SectionParser",
    "StreamStats",
    "Writer",
    "format_block",
    "format_lines",
    "parse_lines",
]
