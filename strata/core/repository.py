"""
Repositories

A repository is an index of artifacts (package definition + artifact file)
served by an artifact client. On disk, a local repository is a directory
holding the artifacts and a repository.yaml index:

    name: main
    priority: 10
    packages:
      - package:
          name: foo
          category: utils
          version: "1.0"
          requires: ["libs/bar>=1.0"]
        path: foo-1.0.tar.zst
        files: [usr/bin/foo]
        checksum: <sha256>

Repositories are consulted by descending priority: higher numbers win.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Union

import yaml

from .artifact import ArtifactDescriptor, LocalClient
from .database import InMemoryDatabase, PackageDatabase
from .errors import MatchNotFoundError, StrataError
from .package import Package, find_best

logger = logging.getLogger(__name__)

INDEX_FILE = "repository.yaml"


class Repository:
    """An artifact index plus the client able to fetch its artifacts."""

    def __init__(self, name: str, priority: int = 0, index: List[ArtifactDescriptor] = None,
                 client=None, description: str = ""):
        self.name = name
        self.priority = int(priority)
        self.description = description
        self.client = client
        self._index: List[ArtifactDescriptor] = list(index or [])
        self._db: Optional[InMemoryDatabase] = None

    def __repr__(self) -> str:
        return f"Repository({self.name!r}, priority={self.priority})"

    def get_name(self) -> str:
        return self.name

    def get_priority(self) -> int:
        return self.priority

    def get_index(self) -> List[ArtifactDescriptor]:
        return list(self._index)

    def get_database(self) -> InMemoryDatabase:
        """Package definitions of this repository."""
        if self._db is None:
            self._db = InMemoryDatabase([d.package for d in self._index])
        return self._db

    def search_artefact(self, package: Package) -> ArtifactDescriptor:
        """Find the artifact built for package.

        Raises:
            MatchNotFoundError: if the index has no such artifact
        """
        for descriptor in self._index:
            if descriptor.package.fingerprint == package.fingerprint:
                return descriptor
        for descriptor in self._index:
            if package.matches(descriptor.package) and not descriptor.package.is_selector:
                return descriptor
        raise MatchNotFoundError(package)

    def to_dict(self) -> dict:
        data = {'name': self.name, 'priority': self.priority}
        if self.description:
            data['description'] = self.description
        data['packages'] = [d.to_dict() for d in self._index]
        return data


def load_repository(path: Union[str, Path], cache_dir: Union[str, Path] = None) -> Repository:
    """Load a local repository directory.

    Args:
        path: Directory holding repository.yaml and the artifacts
        cache_dir: Where downloaded artifacts are cached (defaults to the
            configured packages cache)

    Raises:
        StrataError: if the index is missing or malformed
    """
    repo_dir = Path(path)
    index_file = repo_dir / INDEX_FILE
    try:
        with open(index_file, 'r') as f:
            data = yaml.safe_load(f) or {}
    except OSError as e:
        raise StrataError(f"Cannot read repository index {index_file}: {e}") from e
    except yaml.YAMLError as e:
        raise StrataError(f"Malformed repository index {index_file}: {e}") from e

    if not isinstance(data, dict):
        raise StrataError(f"Malformed repository index {index_file}: not a mapping")

    name = str(data.get('name') or repo_dir.name)
    try:
        index = [ArtifactDescriptor.from_dict(entry) for entry in data.get('packages') or []]
    except (KeyError, TypeError) as e:
        raise StrataError(f"Malformed package entry in {index_file}: {e}") from e

    if cache_dir is None:
        from .config import get_cache_dir
        cache_dir = get_cache_dir() / name

    logger.debug(f"Loaded repository {name} ({len(index)} artifacts) from {repo_dir}")
    return Repository(
        name=name,
        priority=int(data.get('priority') or 0),
        index=index,
        client=LocalClient(repo_dir, cache_dir),
        description=str(data.get('description') or ''),
    )


def write_repository(path: Union[str, Path], repository: Repository):
    """Write the repository.yaml index of a local repository."""
    repo_dir = Path(path)
    repo_dir.mkdir(parents=True, exist_ok=True)
    with open(repo_dir / INDEX_FILE, 'w') as f:
        yaml.safe_dump(repository.to_dict(), f, sort_keys=False)


@dataclass
class PackageMatch:
    package: Package
    repository: Repository


class Repositories:
    """Repositories sorted by descending priority (stable on ties)."""

    def __init__(self, repositories: List[Repository] = ()):
        self._repos = sorted(repositories, key=lambda r: -r.get_priority())

    def __iter__(self):
        return iter(self._repos)

    def __len__(self) -> int:
        return len(self._repos)

    def world(self) -> List[Package]:
        """Every package of every repository, highest priority first."""
        result = []
        seen = set()
        for repo in self._repos:
            for p in repo.get_database().world():
                if p.fingerprint not in seen:
                    seen.add(p.fingerprint)
                    result.append(p)
        return result

    def sync_database(self, db: PackageDatabase) -> PackageDatabase:
        """Copy every definition into db; higher priority definitions win."""
        for p in reversed(self.world()):
            db.create_package(p)
        return db

    def package_matches(self, packages: List[Package]) -> List[PackageMatch]:
        """First repository (by priority) knowing each package."""
        matches = []
        for p in packages:
            for repo in self._repos:
                found = repo.get_database().find_package(p)
                if found is not None:
                    matches.append(PackageMatch(found, repo))
                    break
        return matches

    def search_artefact(self, package: Package):
        """Artifact for package from the highest priority repository having it.

        Returns:
            (ArtifactDescriptor, Repository)

        Raises:
            MatchNotFoundError: if no repository has it
        """
        for repo in self._repos:
            try:
                return repo.search_artefact(package), repo
            except MatchNotFoundError:
                continue
        raise MatchNotFoundError(package)

    def resolve_selectors(self, packages: List[Package]) -> List[Package]:
        """Replace selector references by the best concrete version.

        The highest priority repository holding an admitted version decides;
        unresolved references are returned unchanged.
        """
        resolved = []
        for p in packages:
            if not p.is_selector:
                resolved.append(p)
                continue
            best = None
            for repo in self._repos:
                best = find_best(repo.get_database().find_packages(p))
                if best is not None:
                    break
            if best is None:
                logger.debug(f"No repository resolves {p.human_readable_string()}")
                resolved.append(p)
            else:
                resolved.append(best)
        return resolved
