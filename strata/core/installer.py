"""
Installer orchestrator

Every operation walks the same phases:

    PLANNING -> MATCHING -> FETCHING -> FINALIZING -> COMMITTING -> DONE

and ends in ABORTED when an error escapes. Planning (solver and ordering)
runs on the calling thread; artifacts are downloaded and unpacked by a
bounded thread pool; finalizers and database commits run sequentially once
the pool drained, dependencies first. A package is recorded as installed
only after its finalizer succeeded.
"""

import logging
import os
from concurrent.futures import ThreadPoolExecutor, as_completed
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .artifact import Artifact, ArtifactDescriptor, safe_relative_path
from .assertions import PackagesAssertions, ensure_order
from .compression import READ_ERRORS
from .config_protect import ConfigProtect
from .database import InMemoryDatabase
from .errors import (
    FetchError, FileConflictError, MatchNotFoundError, PackageNotFoundError,
)
from .finalizer import Finalizer, default_sandbox
from .package import Package, packs_to_list, unique
from .repository import Repositories, Repository
from .resolution.solver import SolverOptions, compute_uninstall, compute_upgrade, solve
from .system import System

logger = logging.getLogger(__name__)


class Phase(Enum):
    PLANNING = "planning"
    MATCHING = "matching"
    FETCHING = "fetching"
    FINALIZING = "finalizing"
    COMMITTING = "committing"
    DONE = "done"
    ABORTED = "aborted"


@dataclass
class InstallerOptions:
    """Recognized installer options."""
    concurrency: int = field(default_factory=lambda: os.cpu_count() or 1)
    no_deps: bool = False
    only_deps: bool = False
    force: bool = False
    check_conflicts: bool = True
    check_file_conflicts: bool = True
    full_uninstall: bool = False
    full_clean_uninstall: bool = False
    download_only: bool = False
    run_finalizers: bool = True
    upgrade_new_revisions: bool = False
    solver_upgrade: bool = False
    remove_unavailable_on_upgrade: bool = False
    relaxed: bool = False
    solver_options: SolverOptions = field(default_factory=SolverOptions)
    finalizer_envs: Dict[str, str] = field(default_factory=dict)
    config_protect: ConfigProtect = field(default_factory=ConfigProtect)


@dataclass
class ArtifactMatch:
    """A planned package and the repository artifact providing it."""
    package: Package
    artifact: ArtifactDescriptor
    repository: Repository


@dataclass
class _Plan:
    matches: Dict[str, ArtifactMatch] = field(default_factory=dict)
    assertions: PackagesAssertions = field(default_factory=PackagesAssertions)
    definitions: InMemoryDatabase = field(default_factory=InMemoryDatabase)
    to_remove: List[Package] = field(default_factory=list)


def matches_to_list(matches: Dict[str, ArtifactMatch]) -> str:
    return " ".join(sorted(f"{m.package.human_readable_string()} ({m.repository.get_name()})"
                           for m in matches.values()))


class Installer:
    """Plans and applies package changes to a System."""

    def __init__(self, repositories, options: InstallerOptions = None, sandbox=None):
        """
        Args:
            repositories: Repositories, or a list of Repository
            options: InstallerOptions (defaults if None)
            sandbox: Object with run(cmd, args, env, rootfs) used for
                finalizers; chosen from the target root when None
        """
        if not isinstance(repositories, Repositories):
            repositories = Repositories(list(repositories))
        self.repositories = repositories
        self.options = options or InstallerOptions()
        self.sandbox = sandbox
        self.phase: Optional[Phase] = None
        self.warnings: List[Warning] = []

    @contextmanager
    def _operation(self):
        self.phase = Phase.PLANNING
        self.warnings = []
        try:
            yield
        except Exception:
            self.phase = Phase.ABORTED
            raise
        self.phase = Phase.DONE

    def _sandbox(self, system: System):
        return self.sandbox or default_sandbox(system.target)

    # Planning and matching

    def _compute_install(self, packages: List[Package], system: System,
                         no_deps: bool, only_deps: bool) -> _Plan:
        self.phase = Phase.PLANNING
        plan = _Plan()

        requested = []
        for p in packages:
            if system.database.find_package_versions(p):
                logger.info(f"{p.human_readable_string()} is already installed, skipping")
                continue
            requested.append(p)
        if not requested:
            return plan

        self.repositories.sync_database(plan.definitions)
        requested = self.repositories.resolve_selectors(requested)

        to_install = []
        if not no_deps:
            solution = solve(system.world(), plan.definitions.world(), requested,
                             self.options.solver_options)
            if solution.warning is not None:
                self.warnings.append(solution.warning)
            plan.assertions = solution.assertions
            requested_fps = {p.fingerprint for p in requested}
            for a in solution.assertions:
                installed = system.database.find_package(a.package)
                is_installed = installed is not None and installed.fingerprint == a.fingerprint
                if a.value and not is_installed:
                    if only_deps and a.fingerprint in requested_fps:
                        continue
                    to_install.append(a.package)
                elif not a.value and is_installed:
                    plan.to_remove.append(installed)
        elif not only_deps:
            for p in requested:
                plan.assertions.add_package(p, True)
                if system.database.find_package(p) is None:
                    to_install.append(p)

        self.phase = Phase.MATCHING
        for p in to_install:
            try:
                descriptor, repo = self.repositories.search_artefact(p)
            except MatchNotFoundError:
                if not self.options.force:
                    raise
                logger.warning(f"No artifact for {p.human_readable_string()}, skipping (forced)")
                continue
            package = descriptor.package
            plan.matches[package.fingerprint] = ArtifactMatch(package, descriptor, repo)

        return plan

    # Fetching

    def _run_pool(self, fn: Callable, matches: List[ArtifactMatch], done: str) -> Dict[str, object]:
        """Run fn over matches in the worker pool and wait for all of them.

        Returns:
            fingerprint -> result for the matches that succeeded

        Raises:
            FetchError: if any worker failed and force is off
        """
        results = {}
        failures: List[FetchError] = []
        workers = max(1, self.options.concurrency)
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {executor.submit(fn, m): m for m in matches}
            for future in as_completed(futures):
                match = futures[future]
                try:
                    results[match.package.fingerprint] = future.result()
                except FetchError as e:
                    logger.error(str(e))
                    failures.append(e)
                else:
                    logger.info(f"Package {match.package.human_readable_string()} {done}")

        if failures:
            if not self.options.force:
                names = ", ".join(f.package.human_readable_string() for f in failures)
                raise FetchError(failures[0].package,
                                 f"{len(failures)} artifact(s) failed: {names}") from failures[0]
            for f in failures:
                logger.warning(f"Skipping {f.package.human_readable_string()} (forced): {f}")
        return results

    def _download(self, match: ArtifactMatch) -> Artifact:
        client = match.repository.client
        if client is None:
            raise FetchError(match.package, f"repository {match.repository.get_name()} has no client")
        try:
            artifact = client.download_artifact(match.artifact)
            artifact.verify()
        except (OSError, ValueError) as e:
            raise FetchError(match.package, str(e)) from e
        return artifact

    def _check_file_conflicts(self, plan: _Plan, artifacts: Dict[str, Artifact],
                              system: System, check_system: bool):
        logger.info("Checking for file conflicts..")
        system.clean()
        owners: Dict[str, Package] = {}
        try:
            for fp, artifact in artifacts.items():
                package = plan.matches[fp].package
                try:
                    files = artifact.file_list()
                except READ_ERRORS as e:
                    raise FetchError(package, f"could not list files: {e}") from e
                for f in files:
                    if f in owners:
                        raise FileConflictError(f, owners[f], package)
                    if check_system:
                        exists, owner = system.exists_package_file(f)
                        if exists:
                            raise FileConflictError(f, owner, package)
                    owners[f] = package
        finally:
            system.clean()

    # Deploying

    def _unpack(self, match: ArtifactMatch, artifact: Artifact, system: System) -> List[str]:
        protect = self.options.config_protect.for_package(match.package)
        try:
            return artifact.unpack(system.target, protect)
        except READ_ERRORS + (ValueError,) as e:
            raise FetchError(match.package, f"unpack failed: {e}") from e

    def _finalize_order(self, plan: _Plan, installed: Dict[str, List[str]]) -> List[Package]:
        """Packages to finalize and commit, dependencies first."""
        ordered = []
        for a in ensure_order(plan.assertions, plan.definitions):
            match = plan.matches.get(a.fingerprint)
            if match is not None and a.fingerprint in installed:
                ordered.append(match.package)
        seen = {p.fingerprint for p in ordered}
        for fp in installed:
            if fp not in seen:
                ordered.append(plan.matches[fp].package)
        return ordered

    def _deploy(self, plan: _Plan, artifacts: Dict[str, Artifact], system: System,
                run_finalizers: bool):
        self.phase = Phase.FETCHING
        installed = self._run_pool(
            lambda m: self._unpack(m, artifacts[m.package.fingerprint], system),
            [plan.matches[fp] for fp in artifacts],
            "installed",
        )

        sandbox = self._sandbox(system)
        for package in self._finalize_order(plan, installed):
            self.phase = Phase.FINALIZING
            if run_finalizers and package.has_finalizer():
                Finalizer.for_package(package).run_install(
                    package, system.target, sandbox, self.options.finalizer_envs
                )
            self.phase = Phase.COMMITTING
            system.database.create_package(package)
            system.database.set_package_files(package, installed[package.fingerprint])
            logger.debug(f"Recorded {package.human_readable_string()} in the system database")
        system.clean()

    def _execute(self, plan: _Plan, system: System, check_system: bool):
        """Fetch the plan, remove what it replaces, then deploy it."""
        self.phase = Phase.FETCHING
        matches = list(plan.matches.values())
        artifacts = self._run_pool(self._download, matches, "downloaded")

        if self.options.check_file_conflicts:
            try:
                self._check_file_conflicts(plan, artifacts, system, check_system)
            except (FileConflictError, FetchError) as e:
                if not self.options.force:
                    raise
                logger.warning(f"File conflict found: {e}")

        if self.options.download_only:
            logger.info("Download only, not installing")
            return

        if plan.to_remove:
            self._remove(plan.to_remove, system)
        self._deploy(plan, artifacts, system, self.options.run_finalizers)

    # Removal

    def _remove_files(self, package: Package, system: System):
        protect = self.options.config_protect.for_package(package)
        files = system.database.get_package_files(package)
        root = Path(system.target)
        # Deepest paths first so directories empty out before being checked
        for f in sorted(files, key=lambda x: x.count('/'), reverse=True):
            if protect.protected(f):
                logger.debug(f"Preserving protected file: {f}")
                continue
            target = system.path_of(f)
            if not system.within_target(target):
                logger.warning(f"Refusing to remove {f}: outside of {system.target}")
                continue
            if not target.exists() and not target.is_symlink():
                logger.debug(f"File not found (it was before?): {target}")
                _prune_empty_dirs(target.parent, root)
                continue
            try:
                if target.is_dir() and not target.is_symlink():
                    if any(target.iterdir()):
                        logger.debug(f"Preserving not-empty folder {target}")
                        continue
                    target.rmdir()
                else:
                    target.unlink()
            except OSError as e:
                logger.warning(f"Failed removing {target}: {e}")
                continue
            _prune_empty_dirs(target.parent, root)

    def _remove(self, packages: List[Package], system: System):
        """Uninstall packages, dependents first."""
        assertions = PackagesAssertions()
        for p in packages:
            assertions.add_package(p, True)
        ordered = [a.package for a in reversed(ensure_order(assertions, system.database))]

        sandbox = self._sandbox(system)
        for p in ordered:
            self.phase = Phase.FINALIZING
            finalizer = Finalizer.for_package(p)
            if self.options.run_finalizers and finalizer.uninstall:
                finalizer.run_uninstall(p, system.target, sandbox, self.options.finalizer_envs)

            self.phase = Phase.COMMITTING
            self._remove_files(p, system)
            system.database.remove_package_files(p)
            system.database.remove_package(p)
            logger.info(f"Removed {p.human_readable_string()}")
        system.clean()

    def _find_installed(self, packages: List[Package], system: System) -> List[Package]:
        found = []
        for p in packages:
            installed = system.database.find_packages(p)
            if not installed:
                raise PackageNotFoundError(
                    f"Package {p.human_readable_string()} not found in the system"
                )
            found.extend(installed)
        return unique(found)

    # Operations

    def install(self, packages: List[Package], system: System):
        """Install packages and their dependencies.

        Unless relaxed, a system with packages installed is upgraded first.

        Raises:
            SelectorError, UnsatisfiableError, InvariantViolation: planning failed
            MatchNotFoundError, FetchError, FileConflictError: unless force
            FinalizerError: a finalizer failed; its package is not recorded
        """
        with self._operation():
            if system.world() and not self.options.relaxed:
                logger.info("Checking for available upgrades")
                self._check_and_upgrade(system)
            plan = self._compute_install(list(packages), system,
                                         self.options.no_deps, self.options.only_deps)
            if not plan.matches and not plan.to_remove:
                logger.info("No packages to install")
                return
            if plan.to_remove:
                logger.info(f"Packages that are going to be removed from the system: "
                            f"{packs_to_list(plan.to_remove)}")
            logger.info(f"Packages that are going to be installed in the system: "
                        f"{matches_to_list(plan.matches)}")
            self._execute(plan, system, check_system=True)

    def uninstall(self, system: System, *packages: Package):
        """Remove packages.

        Raises:
            PackageNotFoundError: if a package is not installed
            RequiredByOthersError: if installed packages still require a
                target (unless check_conflicts is off or a full uninstall
                cascades)
            FinalizerError: an uninstall finalizer failed
        """
        with self._operation():
            targets = self._find_installed(list(packages), system)
            if self.options.no_deps:
                removal = targets
            else:
                removal = compute_uninstall(
                    system.database, targets,
                    check_conflicts=self.options.check_conflicts,
                    full=self.options.full_uninstall,
                    full_clean=self.options.full_clean_uninstall,
                )
            if not removal:
                logger.info("Nothing to do")
                return
            logger.info(f"Packages that are going to be removed from the system: "
                        f"{packs_to_list(removal)}")
            self._remove(removal, system)

    def _swap(self, to_remove: List[Package], to_install: List[Package], system: System,
              no_deps: bool):
        to_install = self.repositories.resolve_selectors(to_install)

        # Plan against the system as it will be once the removals happened
        after = System(system.database.copy(), system.target)
        removal = compute_uninstall(after.database, to_remove, check_conflicts=False)
        for p in removal:
            after.database.remove_package(p)

        plan = self._compute_install(to_install, after, no_deps=no_deps, only_deps=False)
        for p in to_install:
            if p.fingerprint not in plan.assertions:
                plan.assertions.add_package(p, True)
        plan.to_remove = unique(removal + plan.to_remove)

        if not plan.matches and not plan.to_remove:
            logger.info("Nothing to do")
            return
        self._execute(plan, system, check_system=False)

    def swap(self, to_remove: List[Package], to_install: List[Package], system: System):
        """Replace packages: remove to_remove and install to_install.

        Artifacts are downloaded before anything is removed.
        """
        with self._operation():
            removal = self._find_installed(list(to_remove), system)
            self._swap(removal, list(to_install), system, self.options.no_deps)

    def _check_and_upgrade(self, system: System):
        self.phase = Phase.PLANNING
        available = self.repositories.sync_database(InMemoryDatabase())
        to_remove, to_install, solution = compute_upgrade(
            system.database, available, self.options.solver_options,
            upgrade_new_revisions=self.options.upgrade_new_revisions,
            universe=self.options.solver_upgrade,
            remove_unavailable=self.options.remove_unavailable_on_upgrade,
        )
        if solution is not None and solution.warning is not None:
            self.warnings.append(solution.warning)
        if not to_remove and not to_install:
            logger.info("Nothing to do")
            return
        if to_remove:
            logger.info(f"Packages that are going to be removed from the system: "
                        f"{packs_to_list(to_remove)}")
        if to_install:
            logger.info(f"Packages that are going to be installed in the system: "
                        f"{packs_to_list(to_install)}")
        self._swap(to_remove, to_install, system, no_deps=True)

    def upgrade(self, system: System):
        """Upgrade every installed package having a newer version.

        With solver_upgrade the repositories are authoritative for the whole
        installed set, and remove_unavailable_on_upgrade also removes the
        installed packages no repository carries any more.
        """
        with self._operation():
            logger.info("Computing upgrade...")
            if self.options.upgrade_new_revisions:
                logger.info("Considering new build revisions while upgrading")
            self._check_and_upgrade(system)

    def reclaim(self, system: System):
        """Record packages whose files already exist in the target."""
        with self._operation():
            self.phase = Phase.MATCHING
            to_merge = []
            for repo in self.repositories:
                for descriptor in repo.get_index():
                    name = descriptor.package.human_readable_string()
                    logger.debug(f"Checking if {name} from {repo.get_name()} is installed")
                    try:
                        files = [safe_relative_path(f) for f in descriptor.files]
                    except ValueError as e:
                        logger.warning(f"Ignoring {name} from {repo.get_name()}: {e}")
                        continue
                    for f in files:
                        if system.path_of(f).exists():
                            logger.info(f"Found package: {name}")
                            to_merge.append((descriptor.package, files))
                            break

            self.phase = Phase.COMMITTING
            for package, files in to_merge:
                if system.database.find_package_versions(package):
                    logger.warning(f"Filtering out package {package.human_readable_string()}, "
                                   f"already reclaimed")
                    continue
                system.database.create_package(package)
                system.database.set_package_files(package, files)
                logger.info(f"Reclaimed package: {package.human_readable_string()}")
            system.clean()

    def os_check(self, system: System) -> List[Package]:
        """Installed packages with files missing from the target."""
        with self._operation():
            broken = system.os_check()
            for p in broken:
                logger.warning(f"{p.human_readable_string()} is missing files")
            return broken


def _prune_empty_dirs(path: Path, root: Path):
    """Remove path and its parents while they are empty, stopping at root."""
    try:
        root = root.resolve()
    except OSError:
        return
    current = path
    while True:
        try:
            resolved = current.resolve()
        except OSError:
            return
        if resolved == root or root not in resolved.parents:
            return
        try:
            if current.is_symlink() or not current.is_dir() or any(current.iterdir()):
                return
            current.rmdir()
        except OSError as e:
            logger.warning(f"Failed removing {current}: {e}")
            return
        current = current.parent
