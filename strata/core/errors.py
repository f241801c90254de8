"""
Error taxonomy for strata

Every failure the planner or the installer can abort with is one of the
classes below. Abort paths chain the underlying cause with ``raise ... from``
so a single exception names both the root cause and the packages involved.
"""

from typing import List, Sequence


class StrataError(Exception):
    """Base class for all strata errors."""


class SelectorError(StrataError):
    """A version selector string could not be parsed."""

    def __init__(self, selector: str, reason: str = ""):
        self.selector = selector
        msg = f"Invalid version selector '{selector}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class UnsatisfiableError(StrataError):
    """The deterministic solver found no assignment satisfying the clauses."""

    def __init__(self, message: str, clauses: Sequence = ()):
        self.clauses = list(clauses)
        super().__init__(message)

    def explain(self) -> str:
        lines = [str(self)]
        for clause in self.clauses:
            lines.append(f"  {clause}")
        return "\n".join(lines)


class PartialSolutionWarning(UserWarning):
    """The heuristic solver returned a best-effort, imperfect assignment.

    Never raised by the installer: it is attached to the solution and logged.
    """

    def __init__(self, violations: int, attempts: int, clauses: Sequence = ()):
        self.violations = violations
        self.attempts = attempts
        self.clauses = list(clauses)
        super().__init__(
            f"Best assignment after {attempts} attempts still violates "
            f"{violations} constraint(s)"
        )


class InvariantViolation(StrataError):
    """An internal sanity check failed. Always fatal: indicates a bug."""


class DependencyCycleError(StrataError):
    """A strict ordering was requested over a cyclic dependency graph."""

    def __init__(self, cycle: List[str]):
        self.cycle = cycle
        super().__init__(f"Dependency cycle found: {' -> '.join(cycle)}")


class ConfigError(StrataError):
    """The configuration file is unreadable or holds invalid values."""


class PackageNotFoundError(StrataError):
    """A requested package is not present where it was looked up."""


class MatchNotFoundError(StrataError):
    """A planned package has no artifact in any configured repository."""

    def __init__(self, package):
        self.package = package
        super().__init__(
            f"No repository provides an artifact for {package.human_readable_string()}"
        )


class RequiredByOthersError(StrataError):
    """Removal blocked: installed packages still require the target."""

    def __init__(self, package, blockers: List):
        self.package = package
        self.blockers = list(blockers)
        names = ", ".join(b.human_readable_string() for b in self.blockers)
        super().__init__(
            f"{package.human_readable_string()} is required by: {names}"
        )


class FetchError(StrataError):
    """Download or unpack of one artifact failed."""

    def __init__(self, package, reason: str = ""):
        self.package = package
        msg = f"Failed fetching {package.human_readable_string()}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class FinalizerError(StrataError):
    """A finalizer hook failed or exited with a non-zero status."""

    def __init__(self, package, reason: str = ""):
        self.package = package
        msg = f"Finalizer failed for {package.human_readable_string()}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class FileConflictError(StrataError):
    """Two packages would install the same file."""

    def __init__(self, path: str, owner, package):
        self.path = path
        self.owner = owner
        self.package = package
        super().__init__(
            f"File conflict between '{owner.human_readable_string()}' and "
            f"'{package.human_readable_string()}' (file: {path})"
        )
