"""
Security layer for ctxlog.

Every record passes through this layer before it reaches a data file.

Components:
    - PathGuard: Confines every data path to the project root
    - sanitize/unescape: Escapes delimiters so values cannot forge lines
    - PIIDetector: Best-effort detection and redaction of sensitive values

The layer is fail-closed: a path that cannot be proven to lie inside the
root is rejected, and a value is always escaped before it is formatted.
"""

from ctxlog.security.paths import PathGuard
from ctxlog.security.pii import Detection, PIIDetector, PIIPattern, RedactionResult
from ctxlog.security.sanitize import contains_injection, sanitize, unescape

__all__ = [
    "Detection",
    "PIIDetector",
    "PIIPattern",
    "PathGuard",
    "RedactionResult",
    "contains_injection",
    "sanitize",
    "unescape",
]
