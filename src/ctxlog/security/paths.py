"""
Path confinement for ctxlog.

Every data file ctxlog touches must resolve inside a fixed project root.
PathGuard captures that root once and checks candidate paths against it.

Security checks performed:
    1. Path must be a non-empty string without null bytes
    2. URL-encoded forms are decoded (twice, to catch double encoding)
       and re-checked, so "%2e%2e%2f" cannot smuggle a traversal
    3. No component may be a platform-reserved device name (CON, NUL, ...)
    4. No component may contain characters invalid in portable filenames
    5. The path is resolved (".." collapsed, symlinks followed) and must be
       the root itself or lie underneath it, compared component-wise

Security Note:
    Containment is checked with Path.relative_to on resolved paths rather
    than string prefixes, so "/srv/app2" is not mistaken for a child of
    "/srv/app". Checks 2-4 apply only to the part of a path below the
    root; the root itself may carry any name the filesystem allows.
"""

import logging
import re
from pathlib import Path, PurePath
from urllib.parse import unquote

from ctxlog.errors import SecurityViolationError

logger = logging.getLogger(__name__)

RESERVED_NAMES = frozenset(
    {"CON", "PRN", "AUX", "NUL"}
    | {f"COM{i}" for i in range(1, 10)}
    | {f"LPT{i}" for i in range(1, 10)}
)

# Characters rejected inside a path component
_INVALID_COMPONENT_CHARS = re.compile(r'[<>:"|?*\x00-\x1f]')


class PathGuard:
    """
    Validates and normalizes paths against a fixed project root.

    Usage:
        guard = PathGuard("/srv/agent")
        data_dir = guard.validate(".ctxlog")        # -> /srv/agent/.ctxlog
        guard.validate("../../../etc/passwd")        # raises SecurityViolationError

    Attributes:
        root: The resolved project root
    """

    def __init__(self, project_root: Path | str = ".") -> None:
        """
        Capture the project root.

        Args:
            project_root: Directory every validated path must stay inside
        """
        root_str = str(project_root)
        if "\x00" in root_str:
            raise SecurityViolationError(
                path=root_str,
                reason="project root contains a null byte",
                rule="null_byte",
            )
        self.root = Path(project_root).resolve()
        self._cache: dict[str, Path] = {}

    def validate(self, path: Path | str) -> Path:
        """
        Validate a path and return its resolved absolute form.

        Relative paths are interpreted against the project root.

        Args:
            path: Candidate path

        Returns:
            The resolved path, guaranteed to lie inside the root

        Raises:
            SecurityViolationError: If any check fails
        """
        key = str(path)
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        resolved = self._validate(key)
        self._cache[key] = resolved
        return resolved

    def is_allowed(self, path: Path | str) -> bool:
        """Non-raising variant of validate()."""
        try:
            self.validate(path)
        except SecurityViolationError:
            return False
        return True

    def _validate(self, path_str: str) -> Path:
        if not path_str or not path_str.strip():
            raise SecurityViolationError(
                path=path_str,
                reason="path is empty",
                rule="disallowed_pattern",
            )

        if "\x00" in path_str:
            raise SecurityViolationError(
                path=path_str,
                reason="path contains a null byte",
                rule="null_byte",
            )

        # The root's own components are trusted; only the part below it is checked
        if Path(path_str).is_absolute():
            resolved = self._check_containment(path_str, path_str)
            relative = resolved.relative_to(self.root)
            if relative.parts:
                self._check_relative(path_str, str(relative))
            return resolved

        self._check_relative(path_str, path_str)
        return self._check_containment(path_str, path_str)

    def _check_relative(self, original: str, path_str: str) -> None:
        """Check a root-relative path in its literal and decoded forms."""
        # Check the literal form and every decoded form
        candidates = [path_str]
        decoded = path_str
        for _ in range(2):
            decoded = unquote(decoded)
            if decoded not in candidates:
                candidates.append(decoded)

        for candidate in candidates:
            if "\x00" in candidate:
                raise SecurityViolationError(
                    path=original,
                    reason="path contains a null byte",
                    rule="null_byte",
                )
            self._check_components(original, candidate)
            self._check_containment(original, candidate)

    def _check_components(self, original: str, candidate: str) -> None:
        """Reject reserved device names and invalid filename characters."""
        for part in PurePath(candidate).parts:
            if part in ("/", "\\") or part == PurePath(candidate).anchor:
                continue
            stem = part.split(".", 1)[0].upper()
            if stem in RESERVED_NAMES:
                raise SecurityViolationError(
                    path=original,
                    reason=f"component {part!r} is a reserved device name",
                    rule="reserved_name",
                )
            if _INVALID_COMPONENT_CHARS.search(part):
                raise SecurityViolationError(
                    path=original,
                    reason=f"component {part!r} contains invalid characters",
                    rule="disallowed_pattern",
                )

    def _check_containment(self, original: str, candidate: str) -> Path:
        """Resolve candidate against the root and require it to stay inside."""
        try:
            path = Path(candidate)
            if not path.is_absolute():
                path = self.root / path
            resolved = path.resolve()
        except (ValueError, OSError) as e:
            raise SecurityViolationError(
                path=original,
                reason=f"invalid path: {e}",
                rule="disallowed_pattern",
            ) from e

        try:
            resolved.relative_to(self.root)
        except ValueError:
            logger.warning("Rejected path outside project root: %r", original)
            raise SecurityViolationError(
                path=original,
                reason=f"resolves to {resolved}, outside project root {self.root}",
                rule="path_escape",
            ) from None

        return resolved
