"""
PII detection and redaction for ctxlog.

A fixed, extensible set of regex detectors finds sensitive values in free
text before it is persisted. Detection is best-effort: patterns are chosen
to keep false positives low, and false negatives are expected.

How it works:
    1. Every enabled pattern is run over the text
    2. Optional validators drop implausible matches (Luhn check for card
       numbers, area/group/serial rules for SSNs)
    3. Matches from all patterns are resolved to a non-overlapping set,
       left to right: earliest start wins, then the longer match, then the
       pattern registered first
    4. redact() replaces each surviving match with [REDACTED-<TYPE>]

Patterns with a named group "secret" (e.g. "api_key=<value>") only redact
the group, so the surrounding label stays readable.
"""

import logging
import re
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime

logger = logging.getLogger(__name__)


# =============================================================================
# Validators
# =============================================================================


def luhn_valid(number: str) -> bool:
    """Validate a card number with the Luhn checksum."""
    digits = [int(c) for c in number if c.isdigit()]
    if len(digits) < 13 or len(digits) > 19:
        return False

    total = 0
    for index, digit in enumerate(reversed(digits)):
        if index % 2 == 1:
            digit *= 2
            if digit > 9:
                digit -= 9
        total += digit
    return total % 10 == 0


def ssn_valid(ssn: str) -> bool:
    """Reject SSNs with an impossible area, group or serial number."""
    digits = "".join(c for c in ssn if c.isdigit())
    if len(digits) != 9:
        return False
    area, group, serial = digits[:3], digits[3:5], digits[5:]
    if area in ("000", "666") or area.startswith("9"):
        return False
    return group != "00" and serial != "0000"


def mask_secret(value: str, show: int = 4) -> str:
    """
    Mask all but the first and last few characters of a value.

    Example:
        mask_secret("sk-abcdefghijklmnop") -> "sk-a****mnop"
    """
    if len(value) <= show * 2:
        return "*" * len(value)
    hidden = min(len(value) - show * 2, 4)
    return f"{value[:show]}{'*' * hidden}{value[-show:]}"


# =============================================================================
# Patterns
# =============================================================================


@dataclass(frozen=True)
class PIIPattern:
    """
    A single detector.

    Attributes:
        type: Category name used in the replacement marker (e.g. "SSN")
        regex: Compiled pattern; a named group "secret" narrows the span
        validator: Optional check that a raw match is plausible
    """

    type: str
    regex: re.Pattern[str]
    validator: Callable[[str], bool] | None = None

    @property
    def replacement(self) -> str:
        return f"[REDACTED-{self.type}]"


DEFAULT_PATTERNS: tuple[PIIPattern, ...] = (
    PIIPattern(
        "SSN",
        re.compile(r"(?<![\w-])\d{3}-\d{2}-\d{4}(?![\w-])"),
        ssn_valid,
    ),
    PIIPattern(
        "CREDIT-CARD",
        re.compile(r"(?<![\w-])(?:\d{4}[-\s]?){3}\d{1,7}(?![\w-])"),
        luhn_valid,
    ),
    PIIPattern(
        "EMAIL",
        re.compile(r"(?<![\w.%+-])[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
    ),
    PIIPattern(
        "PHONE",
        re.compile(
            r"(?<![\w+-])(?:\+?1[-.\s]?)?(?:\(\d{3}\)\s?|\d{3}[-.\s])\d{3}[-.\s]\d{4}(?![\w-])"
        ),
    ),
    PIIPattern(
        "AWS-KEY",
        re.compile(r"\b(?:AKIA|ASIA)[0-9A-Z]{16}\b"),
    ),
    PIIPattern(
        "AWS-SECRET",
        re.compile(
            r"(?i)aws_?secret_?access_?key[\"']?\s*[:=]\s*[\"']?(?P<secret>[A-Za-z0-9/+=]{40})"
        ),
    ),
    PIIPattern(
        "GCP-KEY",
        re.compile(r"\bAIza[0-9A-Za-z_\-]{35}\b"),
    ),
    PIIPattern(
        "GITHUB-TOKEN",
        re.compile(r"\b(?:gh[pousr]_[A-Za-z0-9]{36,}|github_pat_[A-Za-z0-9_]{60,})\b"),
    ),
    PIIPattern(
        "ANTHROPIC-KEY",
        re.compile(r"\bsk-ant-[A-Za-z0-9_\-]{20,}"),
    ),
    PIIPattern(
        "OPENAI-KEY",
        re.compile(r"\bsk-(?!ant-)(?:proj-)?[A-Za-z0-9_\-]{20,}"),
    ),
    PIIPattern(
        "SLACK-TOKEN",
        re.compile(r"\bxox[abprs]-[A-Za-z0-9\-]{10,}"),
    ),
    PIIPattern(
        "API-KEY",
        re.compile(
            r"(?i)\b(?:api[_-]?key|access[_-]?token|auth[_-]?token|token|secret|password|passwd|bearer)"
            r"[\"']?\s*[:=\s]\s*[\"']?(?P<secret>[A-Za-z0-9_\-./+]{20,})"
        ),
    ),
)


# =============================================================================
# Results
# =============================================================================


@dataclass(frozen=True)
class Detection:
    """
    One PII match.

    Attributes:
        type: Pattern category (e.g. "EMAIL")
        start: Start offset in the scanned text
        end: End offset (exclusive)
        value: The matched text
    """

    type: str
    start: int
    end: int
    value: str

    @property
    def span(self) -> tuple[int, int]:
        return (self.start, self.end)


@dataclass(frozen=True)
class RedactionResult:
    """
    Outcome of redact().

    Attributes:
        text: Text with every detection replaced
        detections: Number of replaced matches
        types: Distinct categories found, in order of first appearance
        matches: The individual detections, left to right
    """

    text: str
    detections: int
    types: list[str]
    matches: list[Detection] = field(default_factory=list)


@dataclass
class PIIStats:
    """Running totals across calls to a PIIDetector."""

    total_scans: int = 0
    scans_with_pii: int = 0
    total_detections: int = 0
    type_breakdown: dict[str, int] = field(default_factory=dict)
    last_detection_at: str | None = None


# =============================================================================
# Detector
# =============================================================================


class PIIDetector:
    """
    Regex-based PII scanner.

    Usage:
        detector = PIIDetector()
        result = detector.redact("SSN: 123-45-6789, Email: a@b.com")
        result.text        # "SSN: [REDACTED-SSN], Email: [REDACTED-EMAIL]"
        result.detections  # 2

    Detection is best-effort and carries no compliance guarantee.
    """

    def __init__(
        self,
        patterns: Iterable[PIIPattern] | None = None,
        enabled_types: Iterable[str] | None = None,
    ) -> None:
        """
        Args:
            patterns: Detectors to use (defaults to DEFAULT_PATTERNS)
            enabled_types: Restrict scanning to these categories
        """
        self._patterns: list[PIIPattern] = list(
            DEFAULT_PATTERNS if patterns is None else patterns
        )
        self._enabled = {t.upper() for t in enabled_types} if enabled_types else None
        self._stats = PIIStats()
        self._stats_lock = threading.Lock()

    @property
    def types(self) -> list[str]:
        """Categories this detector scans for."""
        return [p.type for p in self._active_patterns()]

    def register(self, pattern: PIIPattern) -> None:
        """Add a detector after the existing ones."""
        self._patterns.append(pattern)
        if self._enabled is not None:
            self._enabled.add(pattern.type.upper())

    def detect(self, text: str) -> list[Detection]:
        """
        Find non-overlapping PII matches, left to right.

        Args:
            text: Text to scan

        Returns:
            Detections sorted by start offset
        """
        detections = self._find(text)
        self._record(detections)
        return detections

    def redact(self, text: str) -> RedactionResult:
        """Replace every detection with its [REDACTED-<TYPE>] marker."""
        return self._replace(text, self.detect(text))

    def has_pii(self, text: str) -> bool:
        """Check whether text contains any detectable PII."""
        return bool(self.detect(text))

    def sanitize_for_logging(self, text: str) -> str:
        """Redact text without counting it in the statistics."""
        return self._replace(text, self._find(text)).text

    def stats(self) -> PIIStats:
        """Return a copy of the running statistics."""
        with self._stats_lock:
            return PIIStats(
                total_scans=self._stats.total_scans,
                scans_with_pii=self._stats.scans_with_pii,
                total_detections=self._stats.total_detections,
                type_breakdown=dict(self._stats.type_breakdown),
                last_detection_at=self._stats.last_detection_at,
            )

    def clear_stats(self) -> None:
        """Reset the running statistics."""
        with self._stats_lock:
            self._stats = PIIStats()

    def _active_patterns(self) -> list[PIIPattern]:
        if self._enabled is None:
            return self._patterns
        return [p for p in self._patterns if p.type.upper() in self._enabled]

    def _find(self, text: str) -> list[Detection]:
        if not text:
            return []

        candidates: list[tuple[int, int, int, Detection]] = []
        for order, pattern in enumerate(self._active_patterns()):
            for match in pattern.regex.finditer(text):
                if "secret" in pattern.regex.groupindex and match.group("secret"):
                    start, end = match.span("secret")
                else:
                    start, end = match.span()
                value = text[start:end]
                if not value:
                    continue
                if pattern.validator is not None and not pattern.validator(value):
                    continue
                candidates.append(
                    (start, -(end - start), order, Detection(pattern.type, start, end, value))
                )

        candidates.sort(key=lambda c: (c[0], c[1], c[2]))

        detections: list[Detection] = []
        cursor = 0
        for start, _, _, detection in candidates:
            if start < cursor:
                continue
            detections.append(detection)
            cursor = detection.end
        return detections

    def _replace(self, text: str, detections: list[Detection]) -> RedactionResult:
        if not detections:
            return RedactionResult(text=text, detections=0, types=[], matches=[])

        parts: list[str] = []
        cursor = 0
        for detection in detections:
            parts.append(text[cursor:detection.start])
            parts.append(f"[REDACTED-{detection.type}]")
            cursor = detection.end
        parts.append(text[cursor:])

        types: list[str] = []
        for detection in detections:
            if detection.type not in types:
                types.append(detection.type)

        return RedactionResult(
            text="".join(parts),
            detections=len(detections),
            types=types,
            matches=detections,
        )

    def _record(self, detections: list[Detection]) -> None:
        with self._stats_lock:
            self._stats.total_scans += 1
            if not detections:
                return
            self._stats.scans_with_pii += 1
            self._stats.total_detections += len(detections)
            for detection in detections:
                self._stats.type_breakdown[detection.type] = (
                    self._stats.type_breakdown.get(detection.type, 0) + 1
                )
            self._stats.last_detection_at = datetime.now(UTC).isoformat()
        logger.debug(
            "PII scan found %d match(es): %s",
            len(detections),
            ", ".join(sorted({d.type for d in detections})),
        )
