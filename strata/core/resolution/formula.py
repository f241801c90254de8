"""Boolean constraint formulation of requires/conflicts/provides.

Each package is a boolean variable keyed by its fingerprint ("should end up
installed"). Relations become clauses in conjunctive normal form:

    P requires R      ->  ¬P ∨ C1 ∨ ... ∨ Cn   (Ci: packages satisfying R)
    P conflicts C     ->  ¬P ∨ ¬C
    two versions A, B ->  ¬A ∨ ¬B
    P is wanted       ->  P
    P must go away    ->  ¬P
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from ..database import InMemoryDatabase, PackageDatabase
from ..package import Package
from ..version import version_key

logger = logging.getLogger(__name__)

REQUIRES = "requires"
CONFLICTS = "conflicts"
VERSIONS = "versions"
WANTED = "wanted"
UNWANTED = "unwanted"


@dataclass(frozen=True)
class Literal:
    """A package variable, possibly negated."""
    fingerprint: str
    positive: bool = True
    label: str = field(default="", compare=False)

    def negate(self) -> 'Literal':
        return Literal(self.fingerprint, not self.positive, self.label)

    def value(self, assignment: Dict[str, bool]) -> Optional[bool]:
        v = assignment.get(self.fingerprint)
        if v is None:
            return None
        return v if self.positive else not v

    def __str__(self) -> str:
        name = self.label or self.fingerprint[:12]
        return name if self.positive else f"¬{name}"


@dataclass(frozen=True)
class Clause:
    """A disjunction of literals.

    For requires clauses the first literal is the negated subject and the
    remaining ones are the candidates, in preference order.
    """
    literals: Tuple[Literal, ...]
    kind: str = REQUIRES

    @property
    def subject(self) -> Optional[str]:
        if self.kind == REQUIRES and self.literals:
            return self.literals[0].fingerprint
        return None

    @property
    def candidates(self) -> List[str]:
        if self.kind != REQUIRES:
            return []
        return [lit.fingerprint for lit in self.literals[1:]]

    def evaluate(self, assignment: Dict[str, bool]) -> Optional[bool]:
        """True if satisfied, False if violated, None if undetermined."""
        undetermined = False
        for lit in self.literals:
            v = lit.value(assignment)
            if v is True:
                return True
            if v is None:
                undetermined = True
        return None if undetermined else False

    def satisfied(self, assignment: Dict[str, bool]) -> bool:
        """Evaluate with unassigned variables taken as false."""
        return any(lit.value(assignment) is True or
                   (lit.value(assignment) is None and not lit.positive)
                   for lit in self.literals)

    def __str__(self) -> str:
        return " ∨ ".join(str(lit) for lit in self.literals)


def var(package: Package) -> Literal:
    return Literal(package.fingerprint, True, package.human_readable_string())


def neg(package: Package) -> Literal:
    return Literal(package.fingerprint, False, package.human_readable_string())


class Universe:
    """Indexed, immutable view over a set of package definitions.

    Packages given first win on duplicate fingerprints.
    """

    def __init__(self, packages: Iterable[Package]):
        self.packages: List[Package] = []
        self._by_fp: Dict[str, Package] = {}
        self._by_name: Dict[str, List[Package]] = {}
        self._providers: Dict[str, List[Package]] = {}

        for p in packages:
            fp = p.fingerprint
            if fp in self._by_fp:
                continue
            self._by_fp[fp] = p
            self.packages.append(p)
            self._by_name.setdefault(p.package_name, []).append(p)
            for provided in p.provides:
                self._providers.setdefault(provided.package_name, []).append(p)

    @classmethod
    def from_database(cls, db: PackageDatabase) -> 'Universe':
        return cls(db.world())

    def get(self, fingerprint: str) -> Optional[Package]:
        return self._by_fp.get(fingerprint)

    def __contains__(self, fingerprint: str) -> bool:
        return fingerprint in self._by_fp

    def __len__(self) -> int:
        return len(self.packages)

    def versions(self, package: Package) -> List[Package]:
        """Concrete versions of the same package, newest first."""
        found = [p for p in self._by_name.get(package.package_name, [])
                 if not p.is_selector]
        return sorted(found, key=lambda p: version_key(p.version), reverse=True)

    def candidates(self, ref: Package) -> List[Package]:
        """Packages satisfying ref: direct matches newest first, then providers."""
        direct = [p for p in self.versions(ref) if ref.admits(p)]
        seen = {p.fingerprint for p in direct}
        providers = []
        for p in self._providers.get(ref.package_name, []):
            if p.fingerprint not in seen and p.provides_for(ref):
                seen.add(p.fingerprint)
                providers.append(p)
        return direct + providers

    def best(self, ref: Package) -> Optional[Package]:
        found = self.candidates(ref)
        return found[0] if found else None


def _as_universe(all_available) -> Universe:
    if isinstance(all_available, Universe):
        return all_available
    if isinstance(all_available, PackageDatabase):
        return Universe.from_database(all_available)
    return Universe(all_available)


def build_formula(package: Package, all_available, working_db: PackageDatabase = None) -> List[Clause]:
    """Build the clauses contributed by a package.

    Args:
        package: Package under consideration
        all_available: Universe, PackageDatabase or list of packages used to
            resolve requirements (provides included)
        working_db: Optional database receiving every package a literal names,
            so a model can be decoded back to packages

    Returns:
        List of clauses (empty if the package has no requires/conflicts)

    Raises:
        SelectorError: if one of the package's selectors is malformed
    """
    package.validate_selectors()
    if not package.requires and not package.conflicts:
        return []

    universe = _as_universe(all_available)
    clauses = []
    if working_db is not None:
        working_db.create_package(package)

    for ref in package.requires:
        found = [c for c in universe.candidates(ref) if c.fingerprint != package.fingerprint]
        if not found:
            # Resolved lazily: the reference itself stands for the requirement
            logger.debug(f"{package.human_readable_string()}: nothing satisfies "
                         f"{ref.human_readable_string()} yet")
            found = [ref]
        if working_db is not None:
            for c in found:
                working_db.create_package(c)
        clauses.append(Clause((neg(package),) + tuple(var(c) for c in found), REQUIRES))

    for ref in package.conflicts:
        for c in universe.candidates(ref):
            if c.fingerprint == package.fingerprint:
                continue
            if working_db is not None:
                working_db.create_package(c)
            clauses.append(Clause((neg(package), neg(c)), CONFLICTS))

    return clauses


def build_version_exclusions(packages: Iterable[Package]) -> List[Clause]:
    """At most one version of each package may be installed."""
    by_name: Dict[str, List[Package]] = {}
    for p in packages:
        if not p.is_selector:
            by_name.setdefault(p.package_name, []).append(p)

    clauses = []
    for versions in by_name.values():
        for i, a in enumerate(versions):
            for b in versions[i + 1:]:
                clauses.append(Clause((neg(a), neg(b)), VERSIONS))
    return clauses


@dataclass
class Problem:
    """A complete solving problem over the transitive closure of a request."""
    variables: List[str]
    packages: Dict[str, Package]
    clauses: List[Clause]
    wanted: List[str]
    installed: List[str]
    universe: Universe
    unwanted: List[str] = field(default_factory=list)

    @classmethod
    def build(cls, installed: List[Package], available: List[Package],
              wanted: List[Package], unwanted: List[Package] = ()) -> 'Problem':
        """Collect variables and clauses reachable from wanted and installed.

        unwanted packages (installed ones, typically) are forced out along
        with whatever can only stay through them.

        Raises:
            SelectorError: on malformed selectors
        """
        universe = Universe(list(available) + list(installed) + list(unwanted))
        working_db = InMemoryDatabase()

        wanted_pkgs = []
        for w in wanted:
            if w.is_selector:
                best = universe.best(w)
                w = best if best is not None else w
            wanted_pkgs.append(w)

        variables: List[str] = []
        packages: Dict[str, Package] = {}

        def register(p: Package):
            if p.fingerprint not in packages:
                packages[p.fingerprint] = p
                variables.append(p.fingerprint)

        clauses: List[Clause] = []
        queue = deque()
        for p in wanted_pkgs + list(installed) + list(unwanted):
            if p.fingerprint not in packages:
                register(p)
                queue.append(p)

        while queue:
            p = queue.popleft()
            for clause in build_formula(p, universe, working_db):
                clauses.append(clause)
                for lit in clause.literals:
                    if lit.fingerprint in packages:
                        continue
                    target = working_db.get_package(lit.fingerprint)
                    register(target)
                    if clause.kind == REQUIRES and lit.positive:
                        queue.append(target)

        clauses.extend(build_version_exclusions(packages[v] for v in variables))
        for w in wanted_pkgs:
            clauses.append(Clause((var(w),), WANTED))
        for u in unwanted:
            clauses.append(Clause((neg(u),), UNWANTED))

        logger.debug(f"Problem: {len(variables)} variables, {len(clauses)} clauses")
        return cls(
            variables=variables,
            packages=packages,
            clauses=clauses,
            wanted=[w.fingerprint for w in wanted_pkgs],
            installed=[p.fingerprint for p in installed],
            universe=universe,
            unwanted=[u.fingerprint for u in unwanted],
        )

    def requirements_of(self) -> Dict[str, List[int]]:
        """Subject fingerprint -> indexes of its requires clauses."""
        index: Dict[str, List[int]] = {}
        for i, clause in enumerate(self.clauses):
            if clause.kind == REQUIRES:
                index.setdefault(clause.subject, []).append(i)
        return index

    def occurrences(self) -> Dict[str, List[int]]:
        """Variable fingerprint -> indexes of the clauses naming it."""
        index: Dict[str, List[int]] = {v: [] for v in self.variables}
        for i, clause in enumerate(self.clauses):
            for lit in clause.literals:
                index.setdefault(lit.fingerprint, []).append(i)
        return index

    def violations(self, assignment: Dict[str, bool]) -> List[Clause]:
        """Clauses violated by a complete assignment."""
        return [c for c in self.clauses if not c.satisfied(assignment)]
