"""
Package model

A package is identified by (name, category, version). Its version may be a
selector (">=1.0") when the package is only a reference used for matching,
e.g. an entry of another package's requires list.
"""

import hashlib
import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .errors import SelectorError
from .version import is_selector, parse_selector, version_admits, version_key

# Annotation naming a directory protected from overwrite for this package
CONFIG_PROTECT_ANNOTATION = "config_protect"

# Regex to parse references like "category/name>=1.0" or "name"
REF_REGEX = re.compile(r'^(?:(?P<category>[^/\s]+)/)?(?P<name>[^/\s<>=!~]+?)'
                       r'(?P<version>(?:[<>=!~]=?|==).+)?$')


@dataclass
class Package:
    """A package definition, installed record or reference."""
    name: str
    category: str = ""
    version: str = ""
    requires: List['Package'] = field(default_factory=list)
    conflicts: List['Package'] = field(default_factory=list)
    provides: List['Package'] = field(default_factory=list)
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)
    description: str = ""
    license: str = ""
    uri: List[str] = field(default_factory=list)
    build_timestamp: str = ""
    # Finalizer hooks: {'shell': [...], 'install': [...], 'uninstall': [...]}
    finalizer: Dict[str, List[str]] = field(default_factory=dict)

    @property
    def fingerprint(self) -> str:
        """Stable hash over the package identity."""
        identity = json.dumps([self.category, self.name, self.version])
        return hashlib.sha256(identity.encode('utf-8')).hexdigest()

    @property
    def package_name(self) -> str:
        """Category qualified name, without version."""
        if self.category:
            return f"{self.category}/{self.name}"
        return self.name

    @property
    def is_selector(self) -> bool:
        return is_selector(self.version)

    def human_readable_string(self) -> str:
        if self.version and not self.is_selector:
            return f"{self.package_name}-{self.version}"
        if self.version and self.version != '*':
            return f"{self.package_name}{self.version}"
        return self.package_name

    def __str__(self) -> str:
        return self.human_readable_string()

    def __hash__(self) -> int:
        return hash(self.fingerprint)

    def __eq__(self, other) -> bool:
        if not isinstance(other, Package):
            return NotImplemented
        return self.fingerprint == other.fingerprint

    # Setters

    def set_version(self, version: str) -> 'Package':
        self.version = version
        return self

    def set_provides(self, provides: List['Package']) -> 'Package':
        self.provides = list(provides)
        return self

    def add_label(self, key: str, value: str) -> 'Package':
        self.labels[key] = value
        return self

    def set_annotation(self, key: str, value: str) -> 'Package':
        self.annotations[key] = value
        return self

    def set_build_timestamp(self, timestamp: str) -> 'Package':
        self.build_timestamp = timestamp
        return self

    # Matching

    def same_name(self, other: 'Package') -> bool:
        return self.name == other.name and self.category == other.category

    def matches(self, other: 'Package') -> bool:
        """True if both packages name the same thing.

        Exact versions must be equal; a selector on either side must admit
        the other side's version.
        """
        if not self.same_name(other):
            return False
        if self.fingerprint == other.fingerprint:
            return True
        return version_admits(self.version, other.version)

    def admits(self, candidate: 'Package') -> bool:
        """True if this reference is satisfied by candidate itself."""
        return self.same_name(candidate) and version_admits(self.version, candidate.version)

    def provides_for(self, ref: 'Package') -> bool:
        """True if one of this package's provides satisfies ref."""
        for provided in self.provides:
            if provided.same_name(ref) and version_admits(ref.version, provided.version or '*'):
                return True
        return False

    def satisfies(self, ref: 'Package') -> bool:
        return self.admits(ref) or self.provides_for(ref)

    def validate_selectors(self):
        """Parse every version selector this package refers to.

        Raises:
            SelectorError: on the first malformed selector
        """
        for ref in self.requires + self.conflicts + self.provides:
            if ref.is_selector:
                parse_selector(ref.version)
        if self.is_selector:
            parse_selector(self.version)

    def has_finalizer(self) -> bool:
        return bool(self.finalizer.get('install') or self.finalizer.get('uninstall'))

    def has_annotation(self, key: str) -> bool:
        return key in self.annotations

    def clone(self) -> 'Package':
        return Package.from_dict(self.to_dict())

    # Serialization

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'name': self.name,
            'category': self.category,
            'version': self.version,
        }
        if self.requires:
            data['requires'] = [r.to_dict() for r in self.requires]
        if self.conflicts:
            data['conflicts'] = [c.to_dict() for c in self.conflicts]
        if self.provides:
            data['provides'] = [p.to_dict() for p in self.provides]
        for key in ('labels', 'annotations', 'description', 'license', 'uri',
                    'build_timestamp', 'finalizer'):
            value = getattr(self, key)
            if value:
                data[key] = value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Package':
        def refs(key):
            return [cls.from_dict(r) if isinstance(r, dict) else parse_ref(r)
                    for r in data.get(key) or []]

        return cls(
            name=data['name'],
            category=data.get('category', '') or '',
            version=str(data.get('version', '') or ''),
            requires=refs('requires'),
            conflicts=refs('conflicts'),
            provides=refs('provides'),
            labels=dict(data.get('labels') or {}),
            annotations=dict(data.get('annotations') or {}),
            description=data.get('description', '') or '',
            license=data.get('license', '') or '',
            uri=list(data.get('uri') or []),
            build_timestamp=str(data.get('build_timestamp', '') or ''),
            finalizer={k: list(v) for k, v in (data.get('finalizer') or {}).items()},
        )


def parse_ref(ref: str) -> Package:
    """Parse a package reference string.

    Handles formats like:
    - "name"
    - "category/name"
    - "category/name>=1.0" or "category/name>=1.0,<2.0"
    - "category/name@1.0" (exact version)

    Raises:
        SelectorError: if the version part is malformed
    """
    ref = ref.strip()
    if '@' in ref:
        head, version = ref.rsplit('@', 1)
        pkg = parse_ref(head)
        pkg.version = version
        if pkg.is_selector:
            parse_selector(version)
        return pkg

    match = REF_REGEX.match(ref)
    if not match:
        raise SelectorError(ref, "not a package reference")
    version = match.group('version') or ''
    if version:
        parse_selector(version)
    return Package(name=match.group('name'),
                   category=match.group('category') or '',
                   version=version)


def encode_package(package: Package, db) -> str:
    """Store a package into db, returning its ID."""
    return db.create_package(package)


def decode_package(package_id: str, db) -> Package:
    """Load a package previously stored with encode_package().

    Raises:
        PackageNotFoundError: if the ID is unknown to db
    """
    return db.get_package(package_id)


def unique(packages: List[Package]) -> List[Package]:
    """Drop duplicates (by fingerprint), preserving order."""
    seen = set()
    result = []
    for p in packages:
        if p.fingerprint not in seen:
            seen.add(p.fingerprint)
            result.append(p)
    return result


def packs_to_list(packages: List[Package]) -> str:
    """Human readable, sorted, space separated list of packages."""
    return " ".join(sorted(p.human_readable_string() for p in packages))


def find_best(candidates: List[Package]) -> Optional[Package]:
    """Highest concrete version among candidates."""
    concrete = [c for c in candidates if not c.is_selector]
    if not concrete:
        return None
    return max(concrete, key=lambda p: version_key(p.version))
