"""
Dependency resolution: constraint formulation and solving strategies.
"""

from .formula import Clause, Literal, Problem, Universe, build_formula, build_version_exclusions
from .solver import (
    SolverOptions, Solution, StrategyKind, compute_uninstall, compute_upgrade,
    reverse_dependencies, solve, validate_closure,
)

__all__ = [
    'Clause', 'Literal', 'Problem', 'Universe', 'build_formula', 'build_version_exclusions',
    'SolverOptions', 'Solution', 'StrategyKind', 'compute_uninstall', 'compute_upgrade',
    'reverse_dependencies', 'solve', 'validate_closure',
]
