"""
Target system: installed database plus the root filesystem it describes.
"""

import logging
import os
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .database import PackageDatabase
from .finalizer import Finalizer
from .package import Package

logger = logging.getLogger(__name__)


class System:
    """A root filesystem and the database of packages installed in it."""

    def __init__(self, database: PackageDatabase, target: str = "/"):
        self.database = database
        self.target = str(target or "/")
        self._file_index: Optional[Dict[str, Package]] = None

    def __repr__(self) -> str:
        return f"System(target={self.target!r})"

    @property
    def is_live_root(self) -> bool:
        return os.path.abspath(self.target) == "/"

    def world(self) -> List[Package]:
        return self.database.world()

    def path_of(self, file: str) -> Path:
        """Absolute path of a package file inside the target."""
        return Path(self.target) / file.lstrip("/")

    def within_target(self, path: Path) -> bool:
        """True if path lies inside the target root.

        The last component is not resolved, so a symlink inside the target
        pointing elsewhere still counts as inside.
        """
        path = Path(path)
        if path.name in ('', '.', '..'):
            return False
        root = Path(self.target).resolve()
        parent = path.parent.resolve()
        return parent == root or root in parent.parents

    def _build_file_index(self) -> Dict[str, Package]:
        index = {}
        for p in self.database.world():
            for f in self.database.get_package_files(p):
                index.setdefault(f.lstrip("/"), p)
        return index

    def exists_package_file(self, file: str) -> Tuple[bool, Optional[Package]]:
        """Whether an installed package ships file, and which one.

        The lookup index is built on first use; call clean() after the
        database changed.
        """
        if self._file_index is None:
            self._file_index = self._build_file_index()
        owner = self._file_index.get(file.lstrip("/"))
        return owner is not None, owner

    def clean(self):
        """Drop the cached file index."""
        self._file_index = None

    def os_check(self) -> List[Package]:
        """Installed packages with at least one recorded file missing."""
        broken = []
        for p in self.database.world():
            for f in self.database.get_package_files(p):
                target_file = self.path_of(f)
                if not target_file.exists() and not target_file.is_symlink():
                    logger.debug(f"{p.human_readable_string()}: missing {target_file}")
                    broken.append(p)
                    break
        return broken

    def execute_finalizers(self, packages: List[Package], sandbox=None,
                           envs: Dict[str, str] = None):
        """Run install finalizers of packages in the given order, once each.

        Raises:
            FinalizerError: on the first failing hook
        """
        executed = set()
        for p in packages:
            if not p.has_finalizer() or p.fingerprint in executed:
                continue
            executed.add(p.fingerprint)
            Finalizer.for_package(p).run_install(p, self.target, sandbox, envs)
