"""Core modules for strata"""

from .database import InMemoryDatabase, PackageDatabase, SqliteDatabase
from .installer import Installer, InstallerOptions
from .package import Package, parse_ref
from .system import System

__all__ = [
    'InMemoryDatabase', 'PackageDatabase', 'SqliteDatabase',
    'Installer', 'InstallerOptions', 'Package', 'parse_ref', 'System',
]
