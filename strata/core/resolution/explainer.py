"""
Deterministic resolution strategy

Iterative backtracking search with unit propagation over the clauses of a
Problem. Installed packages are decided first, kept before dropped, so a
requirement never settles on a candidate that pushes an installed package
out while another candidate would not. Decisions then follow requirements
of packages set to be installed; remaining free packages are dropped.
"""

import logging
from collections import deque
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from ..errors import UnsatisfiableError
from .formula import Clause, Problem

logger = logging.getLogger(__name__)

# One option: list of (fingerprint, value) to assign together
Option = List[Tuple[str, bool]]


@dataclass
class _Decision:
    trail_len: int
    options: List[Option]
    index: int = 0


class _Search:
    """Mutable search state for a single explain() call."""

    def __init__(self, problem: Problem, max_steps: int):
        self.problem = problem
        self.max_steps = max_steps
        self.clauses = problem.clauses
        self.occurrences = problem.occurrences()
        self.requirements = problem.requirements_of()
        self.installed = set(problem.installed)
        self.assignment: Dict[str, bool] = {}
        self.trail: List[str] = []
        self.decisions: List[_Decision] = []
        self.conflicts: List[Clause] = []
        self.steps = 0

    # Assignment and propagation

    def assign(self, fp: str, value: bool, queue: deque) -> Optional[int]:
        current = self.assignment.get(fp)
        if current is not None:
            return None if current == value else -1
        self.assignment[fp] = value
        self.trail.append(fp)
        queue.append(fp)
        return None

    def propagate(self, queue: deque) -> Optional[int]:
        """Run unit propagation. Returns a violated clause index, or None."""
        while queue:
            fp = queue.popleft()
            for ci in self.occurrences.get(fp, []):
                clause = self.clauses[ci]
                unassigned = None
                count = 0
                satisfied = False
                for lit in clause.literals:
                    v = lit.value(self.assignment)
                    if v is True:
                        satisfied = True
                        break
                    if v is None:
                        count += 1
                        unassigned = lit
                if satisfied:
                    continue
                if count == 0:
                    return ci
                if count == 1:
                    self.assign(unassigned.fingerprint, unassigned.positive, queue)
        return None

    def apply(self, option: Option) -> Optional[int]:
        queue = deque()
        for fp, value in option:
            if self.assign(fp, value, queue) == -1:
                return -1
        return self.propagate(queue)

    def undo(self, trail_len: int):
        while len(self.trail) > trail_len:
            del self.assignment[self.trail.pop()]

    def record_conflict(self, ci: int):
        if ci >= 0:
            clause = self.clauses[ci]
            if clause not in self.conflicts:
                self.conflicts.append(clause)

    # Decisions

    def next_decision(self) -> Optional[List[Option]]:
        for fp in self.problem.installed:
            if fp not in self.assignment:
                return [[(fp, True)], [(fp, False)]]

        for fp in list(self.trail):
            if not self.assignment.get(fp):
                continue
            for ci in self.requirements.get(fp, []):
                clause = self.clauses[ci]
                if clause.evaluate(self.assignment) is not None:
                    continue
                free = [c for c in clause.candidates if c not in self.assignment]
                # Installed candidates first, then the builder's order (newest first)
                free.sort(key=lambda c: c not in self.installed)
                return [[(c, False) for c in free[:k]] + [(free[k], True)]
                        for k in range(len(free))]

        for fp in self.problem.variables:
            if fp not in self.assignment:
                return [[(fp, False)], [(fp, True)]]
        return None

    def backtrack(self) -> bool:
        """Switch to the next untried option. False when none is left."""
        while self.decisions:
            self.steps += 1
            if self.steps > self.max_steps:
                return False
            decision = self.decisions[-1]
            self.undo(decision.trail_len)
            decision.index += 1
            if decision.index >= len(decision.options):
                self.decisions.pop()
                continue
            ci = self.apply(decision.options[decision.index])
            if ci is None:
                return True
            self.record_conflict(ci)
        return False

    def run(self) -> Dict[str, bool]:
        queue = deque()
        for ci, clause in enumerate(self.clauses):
            if len(clause.literals) == 1:
                lit = clause.literals[0]
                if self.assign(lit.fingerprint, lit.positive, queue) == -1:
                    self.record_conflict(ci)
                    raise self.failure()
        ci = self.propagate(queue)
        if ci is not None:
            self.record_conflict(ci)
            raise self.failure()

        while True:
            options = self.next_decision()
            if options is None:
                return dict(self.assignment)

            self.steps += 1
            if self.steps > self.max_steps:
                raise self.failure(bounded=True)

            decision = _Decision(trail_len=len(self.trail), options=options)
            self.decisions.append(decision)
            ci = self.apply(options[0])
            if ci is None:
                continue
            self.record_conflict(ci)
            if not self.backtrack():
                raise self.failure(bounded=self.steps > self.max_steps)

    def failure(self, bounded: bool = False) -> UnsatisfiableError:
        names = ", ".join(self.problem.packages[fp].human_readable_string()
                          for fp in self.problem.wanted)
        if bounded:
            msg = f"No solution found for {names or 'the system'} within {self.max_steps} steps"
        else:
            msg = f"No solution exists for {names or 'the system'}"
        return UnsatisfiableError(msg, self.conflicts)


def explain(problem: Problem, options) -> Tuple[Dict[str, bool], None]:
    """Find an assignment satisfying every clause of problem.

    Args:
        problem: Clauses and variables built by Problem.build()
        options: SolverOptions (max_steps is used)

    Returns:
        (assignment fingerprint -> bool, None)

    Raises:
        UnsatisfiableError: with the clauses that caused conflicts
    """
    search = _Search(problem, options.max_steps)
    assignment = search.run()
    logger.debug(f"Explainer: solved {len(problem.variables)} variables "
                 f"in {search.steps} steps")
    return assignment, None
