"""
Package databases

Two backends share the PackageDatabase interface:
- InMemoryDatabase: used for solver snapshots and repository indexes
- SqliteDatabase: persistent installed-package database of a system
"""

import json
import logging
import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional

from .errors import PackageNotFoundError
from .package import Package
from .version import version_key

logger = logging.getLogger(__name__)

# Schema version - increment when schema changes
SCHEMA_VERSION = 1

SCHEMA = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_info (
    version INTEGER PRIMARY KEY
);

-- Installed packages, stored as their JSON definition
CREATE TABLE IF NOT EXISTS packages (
    fingerprint TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    category TEXT NOT NULL,
    version TEXT NOT NULL,
    definition TEXT NOT NULL,
    added_timestamp INTEGER
);
CREATE INDEX IF NOT EXISTS idx_packages_name ON packages(category, name);

-- Files shipped by each installed package
CREATE TABLE IF NOT EXISTS package_files (
    fingerprint TEXT NOT NULL,
    path TEXT NOT NULL,
    PRIMARY KEY (fingerprint, path)
);
CREATE INDEX IF NOT EXISTS idx_package_files_path ON package_files(path);
"""


class PackageDatabase(ABC):
    """Abstract package store.

    Backends implement storage primitives; lookups by reference are
    shared and built on top of world().
    """

    @abstractmethod
    def create_package(self, package: Package) -> str:
        """Store a package. Returns its ID (the fingerprint)."""

    @abstractmethod
    def get_package(self, package_id: str) -> Package:
        """Get a package by ID.

        Raises:
            PackageNotFoundError: if no package has this ID
        """

    @abstractmethod
    def remove_package(self, package: Package):
        """Remove a package record."""

    @abstractmethod
    def get_packages(self) -> List[str]:
        """List all package IDs, in insertion order."""

    @abstractmethod
    def get_package_files(self, package: Package) -> List[str]:
        """Files recorded for a package (empty list if none)."""

    @abstractmethod
    def set_package_files(self, package: Package, files: List[str]):
        """Record the files shipped by a package."""

    @abstractmethod
    def remove_package_files(self, package: Package):
        """Forget the files recorded for a package."""

    @abstractmethod
    def clean(self):
        """Drop every record."""

    def update_package(self, package: Package):
        """Replace the stored definition of a package.

        Raises:
            PackageNotFoundError: if the package is not stored
        """
        existing = self.find_package(package)
        if existing is None:
            raise PackageNotFoundError(f"Package {package.human_readable_string()} not found")
        self.remove_package(existing)
        self.create_package(package)

    def world(self) -> List[Package]:
        """Every package in the database."""
        return [self.get_package(pid) for pid in self.get_packages()]

    def find_package(self, package: Package) -> Optional[Package]:
        """Find the stored package matching a package or reference.

        An exact fingerprint hit wins; for selector references the highest
        admitted version is returned.
        """
        try:
            return self.get_package(package.fingerprint)
        except PackageNotFoundError:
            pass
        matches = self.find_packages(package)
        if not matches:
            return None
        return max(matches, key=lambda p: version_key(p.version))

    def find_packages(self, package: Package) -> List[Package]:
        """All stored packages matching a package or reference."""
        return [p for p in self.world() if package.matches(p)]

    def find_package_versions(self, package: Package) -> List[Package]:
        """All stored versions of the same name and category."""
        return [p for p in self.world() if p.same_name(package)]

    def find_providers(self, ref: Package) -> List[Package]:
        """Stored packages satisfying ref directly or via provides."""
        return [p for p in self.world() if p.satisfies(ref)]

    def copy(self) -> 'InMemoryDatabase':
        """Snapshot into a fresh in-memory database."""
        dst = InMemoryDatabase()
        for p in self.world():
            dst.create_package(p.clone())
            files = self.get_package_files(p)
            if files:
                dst.set_package_files(p, files)
        return dst


class InMemoryDatabase(PackageDatabase):
    """Thread-safe, dict backed package database."""

    def __init__(self, packages: List[Package] = None):
        self._lock = threading.Lock()
        self._packages: Dict[str, Package] = {}
        self._files: Dict[str, List[str]] = {}
        for p in packages or []:
            self.create_package(p)

    def create_package(self, package: Package) -> str:
        fp = package.fingerprint
        with self._lock:
            self._packages[fp] = package
        return fp

    def get_package(self, package_id: str) -> Package:
        with self._lock:
            pkg = self._packages.get(package_id)
        if pkg is None:
            raise PackageNotFoundError(f"No package with id {package_id}")
        return pkg

    def remove_package(self, package: Package):
        with self._lock:
            self._packages.pop(package.fingerprint, None)

    def get_packages(self) -> List[str]:
        with self._lock:
            return list(self._packages.keys())

    def world(self) -> List[Package]:
        with self._lock:
            return list(self._packages.values())

    def get_package_files(self, package: Package) -> List[str]:
        with self._lock:
            return list(self._files.get(package.fingerprint, []))

    def set_package_files(self, package: Package, files: List[str]):
        with self._lock:
            self._files[package.fingerprint] = list(files)

    def remove_package_files(self, package: Package):
        with self._lock:
            self._files.pop(package.fingerprint, None)

    def clean(self):
        with self._lock:
            self._packages.clear()
            self._files.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._packages)


class SqliteDatabase(PackageDatabase):
    """SQLite database of installed packages."""

    def __init__(self, db_path: Optional[Path] = None):
        """Initialize database connection.

        Args:
            db_path: Path to SQLite database file.
                     If None, uses the configured system database path.
        """
        if db_path is None:
            from .config import get_db_path
            db_path = get_db_path()
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._lock = threading.Lock()
        self.conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA synchronous=NORMAL")

        self._init_schema()

    def _init_schema(self):
        """Initialize database schema."""
        try:
            cursor = self.conn.execute("SELECT version FROM schema_info LIMIT 1")
            row = cursor.fetchone()
            current_version = row[0] if row else 0
        except sqlite3.OperationalError:
            current_version = 0

        if current_version == 0:
            self.conn.executescript(SCHEMA)
            self.conn.execute(
                "INSERT OR REPLACE INTO schema_info (version) VALUES (?)",
                (SCHEMA_VERSION,)
            )
            self.conn.commit()
        elif current_version > SCHEMA_VERSION:
            logger.warning(
                f"Database schema version {current_version} is newer than "
                f"supported version {SCHEMA_VERSION}. Consider upgrading strata."
            )

    def close(self):
        """Close database connection."""
        self.conn.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def create_package(self, package: Package) -> str:
        fp = package.fingerprint
        with self._lock:
            self.conn.execute("""
                INSERT OR REPLACE INTO packages
                    (fingerprint, name, category, version, definition, added_timestamp)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (fp, package.name, package.category, package.version,
                  json.dumps(package.to_dict(), sort_keys=True), int(time.time())))
            self.conn.commit()
        return fp

    def get_package(self, package_id: str) -> Package:
        with self._lock:
            row = self.conn.execute(
                "SELECT definition FROM packages WHERE fingerprint = ?", (package_id,)
            ).fetchone()
        if not row:
            raise PackageNotFoundError(f"No package with id {package_id}")
        return Package.from_dict(json.loads(row['definition']))

    def remove_package(self, package: Package):
        with self._lock:
            self.conn.execute(
                "DELETE FROM packages WHERE fingerprint = ?", (package.fingerprint,)
            )
            self.conn.commit()

    def get_packages(self) -> List[str]:
        with self._lock:
            cursor = self.conn.execute(
                "SELECT fingerprint FROM packages ORDER BY rowid"
            )
            return [row[0] for row in cursor]

    def world(self) -> List[Package]:
        with self._lock:
            cursor = self.conn.execute(
                "SELECT definition FROM packages ORDER BY rowid"
            )
            rows = cursor.fetchall()
        return [Package.from_dict(json.loads(row[0])) for row in rows]

    def find_package_versions(self, package: Package) -> List[Package]:
        with self._lock:
            cursor = self.conn.execute(
                "SELECT definition FROM packages WHERE category = ? AND name = ? ORDER BY rowid",
                (package.category, package.name)
            )
            rows = cursor.fetchall()
        return [Package.from_dict(json.loads(row[0])) for row in rows]

    def get_package_files(self, package: Package) -> List[str]:
        with self._lock:
            cursor = self.conn.execute(
                "SELECT path FROM package_files WHERE fingerprint = ? ORDER BY rowid",
                (package.fingerprint,)
            )
            return [row[0] for row in cursor]

    def set_package_files(self, package: Package, files: List[str]):
        fp = package.fingerprint
        with self._lock:
            with self.conn:
                self.conn.execute("DELETE FROM package_files WHERE fingerprint = ?", (fp,))
                self.conn.executemany(
                    "INSERT OR IGNORE INTO package_files (fingerprint, path) VALUES (?, ?)",
                    [(fp, f) for f in files]
                )

    def remove_package_files(self, package: Package):
        with self._lock:
            self.conn.execute(
                "DELETE FROM package_files WHERE fingerprint = ?", (package.fingerprint,)
            )
            self.conn.commit()

    def find_file_owner(self, path: str) -> Optional[Package]:
        """Installed package shipping path, if any."""
        with self._lock:
            row = self.conn.execute(
                "SELECT fingerprint FROM package_files WHERE path = ? LIMIT 1", (path,)
            ).fetchone()
        if not row:
            return None
        try:
            return self.get_package(row[0])
        except PackageNotFoundError:
            return None

    def clean(self):
        with self._lock:
            self.conn.execute("DELETE FROM packages")
            self.conn.execute("DELETE FROM package_files")
            self.conn.commit()

    def get_stats(self) -> Dict[str, int]:
        """Get database statistics."""
        with self._lock:
            packages = self.conn.execute("SELECT COUNT(*) FROM packages").fetchone()[0]
            files = self.conn.execute("SELECT COUNT(*) FROM package_files").fetchone()[0]
        return {'packages': packages, 'files': files}
