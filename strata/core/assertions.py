"""
Solver assertions and their ordering

A PackagesAssertions set is the output of the solver: one boolean decision
per package fingerprint. order() and ensure_order() turn the true assertions
into a dependency respecting sequence (dependencies first), used to run
finalizers and, reversed, to remove packages.
"""

import hashlib
import heapq
import logging
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional

from .database import InMemoryDatabase, PackageDatabase
from .errors import DependencyCycleError, InvariantViolation
from .package import Package

logger = logging.getLogger(__name__)


@dataclass
class PackageAssert:
    """Decision about one package: install (True) or not (False)."""
    package: Package
    value: bool

    @property
    def fingerprint(self) -> str:
        return self.package.fingerprint

    def to_string(self) -> str:
        state = "installed" if self.value else "not installed"
        return f"{self.package.human_readable_string()} {state}"

    def __str__(self) -> str:
        return self.to_string()


class PackagesAssertions:
    """Insertion ordered mapping fingerprint -> PackageAssert."""

    def __init__(self, assertions=()):
        self._by_fp: Dict[str, PackageAssert] = {}
        for a in assertions:
            self.add(a)

    def add(self, assertion: PackageAssert):
        """Add an assertion.

        Raises:
            InvariantViolation: if the package was already asserted with the
                opposite value
        """
        existing = self._by_fp.get(assertion.fingerprint)
        if existing is not None:
            if existing.value != assertion.value:
                raise InvariantViolation(
                    f"Conflicting assertions for {assertion.package.human_readable_string()}"
                )
            return
        self._by_fp[assertion.fingerprint] = assertion

    def add_package(self, package: Package, value: bool = True):
        self.add(PackageAssert(package, value))

    def __iter__(self) -> Iterator[PackageAssert]:
        return iter(list(self._by_fp.values()))

    def __len__(self) -> int:
        return len(self._by_fp)

    def __contains__(self, fingerprint: str) -> bool:
        return fingerprint in self._by_fp

    def get(self, fingerprint: str) -> Optional[PackageAssert]:
        return self._by_fp.get(fingerprint)

    def true_packages(self) -> List[Package]:
        return [a.package for a in self if a.value]

    def false_packages(self) -> List[Package]:
        return [a.package for a in self if not a.value]

    def true_len(self) -> int:
        return sum(1 for a in self if a.value)

    def search(self, fingerprint: str) -> Optional[PackageAssert]:
        """True assertion for a fingerprint."""
        a = self._by_fp.get(fingerprint)
        if a is not None and a.value:
            return a
        return None

    def search_by_name(self, package_name: str) -> Optional[PackageAssert]:
        """First true assertion for a category/name."""
        for a in self:
            if a.value and a.package.package_name == package_name:
                return a
        return None

    def to_db(self) -> InMemoryDatabase:
        """In-memory database of the packages asserted true."""
        return InMemoryDatabase(self.true_packages())

    def drop(self, package: Package) -> 'PackagesAssertions':
        """Copy without the assertions matching package."""
        return PackagesAssertions(a for a in self if not a.package.matches(package))

    def cut(self, package: Package) -> 'PackagesAssertions':
        """True assertions up to and including the one matching package."""
        result = PackagesAssertions()
        for a in self:
            if not a.value:
                continue
            result.add(a)
            if a.package.matches(package):
                break
        return result

    def explain(self) -> str:
        """One line per assertion, sorted by package string."""
        return "\n".join(sorted(a.to_string() for a in self))

    def assertion_hash(self, salt: str = "") -> str:
        """Hash of the true assertions, independent of their order.

        Suitable as a cache key: two plans with the same package set hash
        the same.
        """
        fps = sorted(a.fingerprint for a in self if a.value)
        h = hashlib.sha256()
        for fp in fps:
            h.update(fp.encode('utf-8'))
        if salt:
            h.update(salt.encode('utf-8'))
        return h.hexdigest()

    def order(self, db: PackageDatabase = None, fingerprint: str = None) -> List[PackageAssert]:
        return order(self, db, fingerprint)

    def ensure_order(self, db: PackageDatabase = None) -> List[PackageAssert]:
        return ensure_order(self, db)


def _build_graph(assertions: PackagesAssertions, db: Optional[PackageDatabase]
                 ) -> Dict[str, List[str]]:
    """Map each true assertion to the true assertions it requires.

    Requirements resolve against the true set, directly or through provides;
    db is consulted for references the set does not satisfy on its own.
    """
    nodes = [a for a in assertions if a.value]
    by_name: Dict[str, List[str]] = {}
    providers: Dict[str, List[str]] = {}
    for a in nodes:
        by_name.setdefault(a.package.package_name, []).append(a.fingerprint)
        for provided in a.package.provides:
            providers.setdefault(provided.package_name, []).append(a.fingerprint)

    graph: Dict[str, List[str]] = {}
    for a in nodes:
        deps = []
        for ref in a.package.requires:
            target = None
            for fp in by_name.get(ref.package_name, []) + providers.get(ref.package_name, []):
                if fp != a.fingerprint and assertions.get(fp).package.satisfies(ref):
                    target = fp
                    break
            if target is None and db is not None:
                resolved = db.find_package(ref)
                if resolved is not None and assertions.search(resolved.fingerprint):
                    target = resolved.fingerprint
            if target is not None and target != a.fingerprint and target not in deps:
                deps.append(target)
        graph[a.fingerprint] = deps
    return graph


def _reachable(graph: Dict[str, List[str]], start: str) -> set:
    seen = set()
    stack = [start]
    while stack:
        node = stack.pop()
        if node in seen or node not in graph:
            continue
        seen.add(node)
        stack.extend(graph[node])
    return seen


def _kahn(nodes: List[str], graph: Dict[str, List[str]]) -> List[str]:
    """Topological sort, dependencies first, ties by position in nodes."""
    position = {fp: i for i, fp in enumerate(nodes)}
    remaining = {fp: 0 for fp in nodes}
    dependents: Dict[str, List[str]] = {fp: [] for fp in nodes}
    for fp in nodes:
        for dep in graph.get(fp, []):
            if dep in position:
                remaining[fp] += 1
                dependents[dep].append(fp)

    ready = [(position[fp], fp) for fp in nodes if remaining[fp] == 0]
    heapq.heapify(ready)
    result = []
    while ready:
        _, fp = heapq.heappop(ready)
        result.append(fp)
        for dependent in dependents[fp]:
            remaining[dependent] -= 1
            if remaining[dependent] == 0:
                heapq.heappush(ready, (position[dependent], dependent))
    return result


def _find_cycle(nodes: List[str], graph: Dict[str, List[str]]) -> List[str]:
    """Walk requires edges among nodes until one repeats."""
    members = set(nodes)
    path = [nodes[0]]
    seen = {nodes[0]: 0}
    while True:
        nxt = next(d for d in graph[path[-1]] if d in members)
        if nxt in seen:
            return path[seen[nxt]:] + [nxt]
        seen[nxt] = len(path)
        path.append(nxt)


def order(assertions: PackagesAssertions, db: PackageDatabase = None,
          fingerprint: str = None) -> List[PackageAssert]:
    """Order true assertions so that dependencies come first.

    Args:
        assertions: Solver output
        db: Optional definitions database used to resolve requirements
        fingerprint: Restrict the result to what this package reaches

    Returns:
        Ordered list of true assertions

    Raises:
        DependencyCycleError: if the requires graph has a cycle
    """
    graph = _build_graph(assertions, db)
    nodes = list(graph.keys())
    if fingerprint is not None:
        reach = _reachable(graph, fingerprint)
        nodes = [fp for fp in nodes if fp in reach]

    sorted_fps = _kahn(nodes, graph)
    if len(sorted_fps) < len(nodes):
        done = set(sorted_fps)
        left = [fp for fp in nodes if fp not in done]
        # Nodes left over only wait on each other, so they lie on or behind a cycle
        cycle = _find_cycle(left, graph)
        names = [assertions.get(fp).package.human_readable_string() for fp in cycle]
        raise DependencyCycleError(names)

    return [assertions.get(fp) for fp in sorted_fps]


def _find_sccs(graph: Dict[str, List[str]], nodes: List[str]) -> List[List[str]]:
    """Find strongly connected components using Tarjan's algorithm."""
    index_counter = [0]
    stack = []
    lowlinks = {}
    index = {}
    on_stack = {}
    sccs = []

    def strongconnect(node):
        index[node] = index_counter[0]
        lowlinks[node] = index_counter[0]
        index_counter[0] += 1
        stack.append(node)
        on_stack[node] = True

        for successor in graph.get(node, []):
            if successor not in index:
                strongconnect(successor)
                lowlinks[node] = min(lowlinks[node], lowlinks[successor])
            elif on_stack.get(successor, False):
                lowlinks[node] = min(lowlinks[node], index[successor])

        if lowlinks[node] == index[node]:
            scc = []
            while True:
                w = stack.pop()
                on_stack[w] = False
                scc.append(w)
                if w == node:
                    break
            sccs.append(scc)

    for node in nodes:
        if node not in index:
            strongconnect(node)

    return sccs


def ensure_order(assertions: PackagesAssertions, db: PackageDatabase = None
                 ) -> List[PackageAssert]:
    """Like order(), but tolerate cycles.

    Each strongly connected component becomes one ordering unit placed
    after everything it depends on; its members keep insertion order.
    """
    graph = _build_graph(assertions, db)
    nodes = list(graph.keys())
    position = {fp: i for i, fp in enumerate(nodes)}

    component_of: Dict[str, str] = {}
    members: Dict[str, List[str]] = {}
    for scc in _find_sccs(graph, nodes):
        scc.sort(key=position.get)
        head = scc[0]
        members[head] = scc
        for fp in scc:
            component_of[fp] = head
        if len(scc) > 1:
            names = ", ".join(assertions.get(fp).package.human_readable_string() for fp in scc)
            logger.warning(f"Dependency cycle between {names}, installing them as one unit")

    condensed: Dict[str, List[str]] = {head: [] for head in members}
    for fp, deps in graph.items():
        head = component_of[fp]
        for dep in deps:
            dep_head = component_of[dep]
            if dep_head != head and dep_head not in condensed[head]:
                condensed[head].append(dep_head)

    heads = sorted(members, key=position.get)
    result = []
    for head in _kahn(heads, condensed):
        result.extend(assertions.get(fp) for fp in members[head])
    return result


def group_levels(assertions: PackagesAssertions, db: PackageDatabase = None
                 ) -> List[List[PackageAssert]]:
    """Split true assertions into levels with no requires edge inside a level.

    Each level only depends on earlier ones, so its members may be processed
    in parallel.

    Raises:
        DependencyCycleError: if the requires graph has a cycle
    """
    graph = _build_graph(assertions, db)
    depth: Dict[str, int] = {}
    for a in order(assertions, db):
        deps = graph[a.fingerprint]
        depth[a.fingerprint] = 1 + max((depth[d] for d in deps), default=-1)

    levels: List[List[PackageAssert]] = []
    for fp, level in depth.items():
        while len(levels) <= level:
            levels.append([])
        levels[level].append(assertions.get(fp))
    return levels
