"""
Q-learning resolution strategy

Each trial builds a complete assignment by walking choice points:
- target: keep or drop a wanted/installed package
- requirement: which candidate satisfies a requirement of a kept package

Requirements of kept packages are always satisfied by construction, so
every trial respects the dependency closure; what learning minimizes are
the remaining violations (conflicts, two versions of one package, wanted
packages dropped) and then the installed packages dropped (churn). Trials
share a value table Q[state, action].
"""

import logging
import random
from collections import deque
from typing import Dict, Hashable, List, Optional, Tuple

from ..errors import PartialSolutionWarning
from .formula import REQUIRES, Problem

logger = logging.getLogger(__name__)

KEEP = 'keep'
DROP = 'drop'


class _Learner:

    def __init__(self, problem: Problem, options):
        self.problem = problem
        self.options = options
        self.rng = random.Random(options.seed)
        self.q: Dict[Tuple[Hashable, Hashable], float] = {}
        self.requirements = problem.requirements_of()
        self.installed = set(problem.installed)
        self.wanted = set(problem.wanted)
        self.unwanted = set(problem.unwanted)
        self.targets = list(problem.wanted) + [fp for fp in problem.installed
                                               if fp not in self.wanted and fp not in self.unwanted]
        self.targets_set = set(self.targets)
        self.scored_clauses = [c for c in problem.clauses if c.kind != REQUIRES]
        # fingerprint -> packages it cannot be installed together with
        self.excludes: Dict[str, List[str]] = {}
        for c in self.scored_clauses:
            if len(c.literals) == 2 and not any(lit.positive for lit in c.literals):
                a, b = (lit.fingerprint for lit in c.literals)
                self.excludes.setdefault(a, []).append(b)
                self.excludes.setdefault(b, []).append(a)

    def value(self, state, action) -> float:
        return self.q.get((state, action), 0.0)

    def choose(self, state, actions: List, epsilon: float):
        """Epsilon-greedy; ties go to the earliest (preferred) action."""
        if epsilon and self.rng.random() < epsilon:
            return self.rng.choice(actions)
        best = actions[0]
        best_value = self.value(state, best)
        for action in actions[1:]:
            v = self.value(state, action)
            if v > best_value:
                best, best_value = action, v
        return best

    def trial(self, epsilon: float):
        assignment = {fp: False for fp in self.problem.variables}
        dropped = set()
        episode = []
        agenda = deque()

        def keep(fp):
            if assignment.get(fp):
                return
            assignment[fp] = True
            agenda.extend(self.requirements.get(fp, []))

        def clashes(fp, presumed: bool) -> bool:
            # Kept packages, and with presumed also targets not dropped yet
            return any(assignment.get(o) or
                       (presumed and o in self.targets_set and o not in dropped)
                       for o in self.excludes.get(fp, []))

        for fp in self.targets:
            state = ('target', fp)
            if fp not in self.wanted and clashes(fp, presumed=False):
                actions = [DROP, KEEP]
            else:
                actions = [KEEP, DROP]
            action = self.choose(state, actions, epsilon)
            episode.append((state, actions, action))
            if action == KEEP:
                keep(fp)
            else:
                dropped.add(fp)
            while agenda:
                ci = agenda.popleft()
                candidates = self.problem.clauses[ci].candidates
                if any(assignment.get(c) for c in candidates):
                    continue
                if len(candidates) == 1:
                    keep(candidates[0])
                    continue
                # Unwanted and clashing candidates last, then installed
                # first, then newest first
                actions = sorted(candidates, key=lambda c: (c in self.unwanted,
                                                            clashes(c, presumed=True),
                                                            c not in self.installed))
                state = ('require', ci)
                action = self.choose(state, actions, epsilon)
                episode.append((state, actions, action))
                keep(action)

        violated = [c for c in self.scored_clauses if not c.satisfied(assignment)]
        churn = sum(1 for fp in self.installed
                    if fp not in self.unwanted and not assignment.get(fp))
        return assignment, episode, violated, churn

    def update(self, episode, reward: float):
        """Backward temporal-difference update over one trial."""
        rate = self.options.learn_rate
        discount = self.options.discount
        next_best = 0.0
        for step, (state, actions, action) in enumerate(reversed(episode)):
            r = reward if step == 0 else 0.0
            old = self.value(state, action)
            self.q[(state, action)] = old + rate * (r + discount * next_best - old)
            next_best = max(self.value(state, a) for a in actions)

    def run(self) -> Tuple[Dict[str, bool], Optional[PartialSolutionWarning]]:
        best: Optional[Tuple[Tuple[int, int], Dict[str, bool], list]] = None
        attempts = 0
        since_improved = 0
        max_attempts = max(1, self.options.max_attempts)
        # Dropping any number of installed packages costs less than one violation
        churn_cost = 1.0 / (len(self.installed) + 1)

        while attempts < max_attempts:
            # First trial follows the preferences greedily
            epsilon = 0.0 if attempts == 0 else self.options.exploration
            assignment, episode, violated, churn = self.trial(epsilon)
            attempts += 1
            score = (len(violated), churn)
            if best is None or score < best[0]:
                best = (score, assignment, violated)
                since_improved = 0
            else:
                since_improved += 1
            if best[0] == (0, 0):
                break
            # A valid assignment exists: keep looking for less churn a while
            if best[0][0] == 0 and since_improved >= self.options.patience:
                break
            self.update(episode, -(len(violated) + churn_cost * churn))

        score, assignment, violated = best
        logger.debug(f"Q-learning: best score {score} after {attempts} attempts")
        if violated:
            return assignment, PartialSolutionWarning(len(violated), attempts, violated)
        return assignment, None


def learn(problem: Problem, options) -> Tuple[Dict[str, bool], Optional[PartialSolutionWarning]]:
    """Search an assignment by reinforcement learning.

    Args:
        problem: Clauses and variables built by Problem.build()
        options: SolverOptions (learn_rate, discount, max_attempts,
            exploration, patience, seed)

    Returns:
        (assignment, warning) where warning is a PartialSolutionWarning when
        no trial satisfied every clause, else None
    """
    return _Learner(problem, options).run()
