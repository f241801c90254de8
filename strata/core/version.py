"""
Version comparison and selector matching.

Versions compare segment by segment: runs of digits as integers, runs of
letters as strings, numbers before letters, and a '~' segment before
anything (so 1.0~rc1 < 1.0). Selectors are comma separated constraints:

    ">=1.0"          at least 1.0
    ">=1.0,<2.0"     range
    "~1.2"           1.2 or any later 1.x
    "*" or ""        any version
"""

import re
from dataclasses import dataclass
from functools import cmp_to_key
from typing import Any, List, Tuple

from .errors import SelectorError

# Order matters: two-char operators first
OPERATORS = ('>=', '<=', '==', '!=', '>', '<', '=', '~')

VERSION_REGEX = re.compile(r'^[0-9A-Za-z][0-9A-Za-z.+~_-]*$')
SEGMENT_REGEX = re.compile(r'(~|\d+|[a-zA-Z]+)')


def split_version(v: str) -> List[Tuple[int, Any]]:
    """Split version into comparable parts.

    Returns tuples (type, value) where type=-1 for '~', 0 for int, 1 for str.
    This ensures consistent ordering: tilde < numbers < strings.

    Args:
        v: Version string (e.g., "1.2.3", "1.0rc1")

    Returns:
        List of (type, value) tuples for comparison
    """
    parts = SEGMENT_REGEX.findall(v or '0')
    result = []
    for p in parts:
        if p == '~':
            result.append((-1, ''))
        elif p.isdigit():
            result.append((0, int(p)))
        else:
            result.append((1, p))
    return result


def compare_versions(a: str, b: str) -> int:
    """Compare two versions.

    Returns:
        -1 if a < b, 0 if equal, 1 if a > b
    """
    pa = split_version(a)
    pb = split_version(b)
    for x, y in zip(pa, pb):
        if x != y:
            return -1 if x < y else 1
    if len(pa) == len(pb):
        return 0
    # A trailing tilde makes the longer version older, anything else newer
    longer, sign = (pa, 1) if len(pa) > len(pb) else (pb, -1)
    extra = longer[min(len(pa), len(pb))]
    if extra[0] == -1:
        return -sign
    return sign


version_key = cmp_to_key(compare_versions)


def is_valid_version(version: str) -> bool:
    """Check that an exact version string is well formed."""
    return bool(VERSION_REGEX.match(version))


def is_selector(version: str) -> bool:
    """True if version is a range selector rather than an exact version."""
    if version in ('', '*'):
        return True
    v = version.strip()
    return v.startswith(('>', '<', '=', '!', '~')) or ',' in v or '*' in v


@dataclass(frozen=True)
class Constraint:
    """A single <op><version> constraint."""
    op: str
    version: str

    def admits(self, version: str) -> bool:
        cmp = compare_versions(version, self.version)
        if self.op in ('=', '=='):
            return cmp == 0
        if self.op == '!=':
            return cmp != 0
        if self.op == '>=':
            return cmp >= 0
        if self.op == '<=':
            return cmp <= 0
        if self.op == '>':
            return cmp > 0
        if self.op == '<':
            return cmp < 0
        if self.op == '~':
            # Same leading segment, at or above the given version
            if cmp < 0:
                return False
            head = split_version(self.version)[:1]
            return split_version(version)[:1] == head
        return False

    def __str__(self) -> str:
        return f"{self.op}{self.version}"


@dataclass(frozen=True)
class Selector:
    """A conjunction of constraints. An empty selector admits everything."""
    constraints: Tuple[Constraint, ...] = ()

    def admits(self, version: str) -> bool:
        if is_selector(version):
            # Two ranges: treat as overlapping, exact matching happens later
            return True
        return all(c.admits(version) for c in self.constraints)

    @property
    def is_any(self) -> bool:
        return not self.constraints

    def __str__(self) -> str:
        if not self.constraints:
            return '*'
        return ','.join(str(c) for c in self.constraints)


def _parse_constraint(raw: str, selector: str) -> Constraint:
    raw = raw.strip()
    if not raw:
        raise SelectorError(selector, "empty constraint")

    for op in OPERATORS:
        if raw.startswith(op):
            version = raw[len(op):].strip()
            break
    else:
        op, version = '=', raw

    if not version:
        raise SelectorError(selector, f"operator '{op}' without version")
    if not is_valid_version(version):
        raise SelectorError(selector, f"bad version '{version}'")
    return Constraint(op=op, version=version)


def parse_selector(selector: str) -> Selector:
    """Parse a selector string.

    Args:
        selector: e.g. ">=1.0,<2.0", "1.2", "*"

    Returns:
        Selector

    Raises:
        SelectorError: if the selector is malformed
    """
    s = (selector or '').strip()
    if s in ('', '*'):
        return Selector()
    if '*' in s:
        raise SelectorError(selector, "wildcard must stand alone")
    return Selector(tuple(_parse_constraint(part, selector) for part in s.split(',')))


def version_admits(wanted: str, candidate: str) -> bool:
    """True if the version (or selector) 'wanted' admits 'candidate'."""
    if not is_selector(wanted):
        if not is_selector(candidate):
            return compare_versions(wanted, candidate) == 0
        return parse_selector(candidate).admits(wanted)
    return parse_selector(wanted).admits(candidate)


def sort_versions(versions: List[str], reverse: bool = False) -> List[str]:
    """Sort version strings, oldest first unless reverse."""
    return sorted(versions, key=version_key, reverse=reverse)
