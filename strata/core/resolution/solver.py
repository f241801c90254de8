"""
Dependency solver

solve() builds a Problem and hands it to one of two strategies sharing the
same signature:
- explainer: deterministic backtracking search (exact, may be slow)
- qlearning: reinforcement learning heuristic (bounded, may be imperfect)

The module also computes removal and upgrade plans over an installed
database. Nothing here writes to a database.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from ..assertions import PackagesAssertions
from ..database import PackageDatabase
from ..errors import InvariantViolation, PartialSolutionWarning, RequiredByOthersError
from ..package import Package, packs_to_list, unique
from ..version import compare_versions
from .explainer import explain
from .formula import Problem, Universe
from .qlearning import learn

logger = logging.getLogger(__name__)


class StrategyKind(Enum):
    EXPLAINER = "explainer"
    QLEARNING = "qlearning"

    @classmethod
    def from_string(cls, value: str) -> 'StrategyKind':
        """Parse a configured solver type ('solver' is an alias of explainer)."""
        value = (value or '').strip().lower()
        if value in ('', 'solver', 'explainer'):
            return cls.EXPLAINER
        if value in ('qlearning', 'qlearn', 'ql'):
            return cls.QLEARNING
        raise ValueError(f"Unknown solver type: {value}")


@dataclass
class SolverOptions:
    """Strategy selection and tuning, passed explicitly to solve()."""
    type: StrategyKind = StrategyKind.EXPLAINER
    learn_rate: float = 0.7
    discount: float = 1.0
    max_attempts: int = 9000
    max_steps: int = 100000
    exploration: float = 0.1
    patience: int = 100
    seed: int = 0


@dataclass
class Solution:
    assertions: PackagesAssertions
    warning: Optional[PartialSolutionWarning] = None
    problem: Optional[Problem] = field(default=None, repr=False)


STRATEGIES: Dict[StrategyKind, Callable] = {
    StrategyKind.EXPLAINER: explain,
    StrategyKind.QLEARNING: learn,
}


def validate_closure(assertions: PackagesAssertions, universe: Universe = None):
    """Check every requirement of a true assertion is true as well.

    Raises:
        InvariantViolation: naming the first unsatisfied requirement
    """
    installed = assertions.true_packages()
    for p in installed:
        for ref in p.requires:
            if assertions.search(ref.fingerprint):
                continue
            if any(q.fingerprint != p.fingerprint and q.satisfies(ref) for q in installed):
                continue
            known = universe is not None and bool(universe.candidates(ref))
            raise InvariantViolation(
                f"{p.human_readable_string()} requires {ref.human_readable_string()}, "
                f"which the solution does not install"
                f"{'' if known else ' (no known package satisfies it)'}"
            )


def solve(installed: List[Package], available: List[Package], wanted: List[Package],
          options: SolverOptions = None, unwanted: List[Package] = ()) -> Solution:
    """Decide which packages should end up installed.

    Args:
        installed: Packages currently installed
        available: Packages from the repositories
        wanted: Packages (or selectors) requested
        options: Strategy and tuning
        unwanted: Packages that must not stay installed

    Returns:
        Solution with one assertion per package in the problem

    Raises:
        SelectorError: on malformed selectors
        UnsatisfiableError: if the deterministic strategy finds no solution
        InvariantViolation: if the result breaks the dependency closure
    """
    options = options or SolverOptions()
    problem = Problem.build(installed, available, wanted, unwanted)
    strategy = STRATEGIES[options.type]
    assignment, warning = strategy(problem, options)

    assertions = PackagesAssertions()
    for fp in problem.variables:
        assertions.add_package(problem.packages[fp], bool(assignment.get(fp)))
    validate_closure(assertions, problem.universe)

    if warning is not None:
        logger.warning(str(warning))
    return Solution(assertions=assertions, warning=warning, problem=problem)


def _required_only_by(db_world: List[Package], package: Package, removal: set) -> bool:
    """True if package has a requirement satisfied solely by packages in removal."""
    for ref in package.requires:
        providers = [p for p in db_world if p.satisfies(ref) and p.fingerprint != package.fingerprint]
        if providers and all(p.fingerprint in removal for p in providers):
            return True
    return False


def reverse_dependencies(db: PackageDatabase, packages: List[Package],
                         exclude: List[Package] = ()) -> List[Package]:
    """Installed packages that would break, transitively, if packages went away.

    Args:
        db: Installed database
        packages: Packages being removed
        exclude: Packages never reported (e.g. the other requested removals)

    Returns:
        Blocking packages, nearest first
    """
    world = db.world()
    removal = {p.fingerprint for p in packages} | {p.fingerprint for p in exclude}
    blockers = []
    while True:
        found = [p for p in world
                 if p.fingerprint not in removal and _required_only_by(world, p, removal)]
        if not found:
            return blockers
        for p in found:
            removal.add(p.fingerprint)
            blockers.append(p)


def _orphans(world: List[Package], removal: List[Package]) -> List[Package]:
    """Dependencies of removed packages no remaining package requires."""
    removing = {p.fingerprint for p in removal}
    orphans = []
    changed = True
    while changed:
        changed = False
        remaining = [p for p in world if p.fingerprint not in removing]
        needed_by_removed = [p for p in remaining
                             if any(p.satisfies(ref) for r in removal + orphans for ref in r.requires)]
        for candidate in needed_by_removed:
            still_needed = any(candidate.satisfies(ref)
                               for other in remaining if other.fingerprint != candidate.fingerprint
                               for ref in other.requires)
            if not still_needed:
                removing.add(candidate.fingerprint)
                orphans.append(candidate)
                changed = True
                break
    return orphans


def compute_uninstall(db: PackageDatabase, packages: List[Package], check_conflicts: bool = True,
                      full: bool = False, full_clean: bool = False) -> List[Package]:
    """Compute which installed packages a removal takes away.

    Args:
        db: Installed database
        packages: Packages requested for removal (installed records)
        check_conflicts: Fail when another installed package needs a target
        full: Cascade the removal to packages requiring the targets
        full_clean: Like full, and also remove dependencies left unused

    Returns:
        Packages to remove, requested ones first

    Raises:
        RequiredByOthersError: if a target is still required and neither
            full nor full_clean is set
    """
    targets = unique(packages)
    removal = list(targets)

    if full or full_clean:
        removal += reverse_dependencies(db, targets)
    elif check_conflicts:
        for target in targets:
            blockers = reverse_dependencies(db, [target], exclude=targets)
            if blockers:
                raise RequiredByOthersError(target, blockers)

    if full_clean:
        removal += _orphans(db.world(), removal)

    logger.debug(f"Uninstall plan: {', '.join(p.human_readable_string() for p in removal)}")
    return removal


def _newest(available_db: PackageDatabase, package: Package) -> Tuple[Optional[Package], List[Package]]:
    versions = [v for v in available_db.find_package_versions(package) if not v.is_selector]
    if not versions:
        return None, versions
    newest = versions[0]
    for v in versions[1:]:
        if compare_versions(v.version, newest.version) > 0:
            newest = v
    return newest, versions


def compute_upgrade(installed_db: PackageDatabase, available_db: PackageDatabase,
                    options: SolverOptions = None, upgrade_new_revisions: bool = False,
                    universe: bool = False, remove_unavailable: bool = False
                    ) -> Tuple[List[Package], List[Package], Optional[Solution]]:
    """Plan an upgrade of every installed package with a newer version.

    Args:
        installed_db: Installed database
        available_db: Packages of every repository
        options: Strategy and tuning
        upgrade_new_revisions: Also replace installed packages whose build
            timestamp differs from the repository one
        universe: Treat the repositories as authoritative for the whole
            installed set
        remove_unavailable: With universe, remove installed packages no
            repository carries any more, along with whatever only stays
            installed through them

    Returns:
        (packages to remove, packages to install, solution or None when
        nothing changes)
    """
    installed = installed_db.world()
    wanted = []
    unavailable = []
    revisions: List[Tuple[Package, Package]] = []
    for p in installed:
        newest, versions = _newest(available_db, p)
        if newest is None:
            unavailable.append(p)
            continue
        if compare_versions(newest.version, p.version) > 0:
            wanted.append(newest)
        elif upgrade_new_revisions:
            same = next((v for v in versions if v.fingerprint == p.fingerprint), None)
            if same is not None and same.build_timestamp != p.build_timestamp:
                revisions.append((p, same))

    unwanted = unavailable if universe and remove_unavailable else []
    if unavailable and not unwanted:
        logger.debug(f"Installed but in no repository: {packs_to_list(unavailable)}")

    to_remove: List[Package] = []
    to_install: List[Package] = []
    solution = None
    if wanted or unwanted:
        solution = solve(installed, available_db.world(), wanted, options, unwanted=unwanted)
        installed_fps = {p.fingerprint for p in installed}
        for a in solution.assertions:
            if a.value and a.fingerprint not in installed_fps:
                to_install.append(a.package)
            elif not a.value and a.fingerprint in installed_fps:
                to_remove.append(a.package)

    for old, new in revisions:
        to_remove.append(old)
        to_install.append(new)

    return to_remove, to_install, solution
