"""Tests for package databases"""

import tempfile
from pathlib import Path

import pytest

from strata.core.database import InMemoryDatabase, SqliteDatabase
from strata.core.errors import PackageNotFoundError
from strata.core.package import Package


def pkg(name, version="1.0", **kwargs):
    return Package(name=name, category="cat", version=version, **kwargs)


@pytest.fixture
def db():
    """Create a temporary SQLite database for testing."""
    with tempfile.NamedTemporaryFile(suffix='.db', delete=False) as f:
        db_path = Path(f.name)

    database = SqliteDatabase(db_path)
    yield database

    database.close()
    db_path.unlink(missing_ok=True)


@pytest.fixture(params=['memory', 'sqlite'])
def any_db(request, tmp_path):
    """Both backends, for behaviour they share."""
    if request.param == 'memory':
        yield InMemoryDatabase()
    else:
        database = SqliteDatabase(tmp_path / "packages.db")
        yield database
        database.close()


class TestPackages:
    """Tests for package records."""

    def test_create_and_get(self, any_db):
        """A created package is returned by id."""
        a = pkg("a", requires=[pkg("b", ">=1.0")])
        pid = any_db.create_package(a)
        assert any_db.get_package(pid) == a
        assert any_db.get_package(pid).requires == [pkg("b", ">=1.0")]

    def test_get_missing(self, any_db):
        """Unknown ids raise PackageNotFoundError."""
        with pytest.raises(PackageNotFoundError):
            any_db.get_package("missing")

    def test_insertion_order(self, any_db):
        """world() keeps insertion order."""
        for name in ("c", "a", "b"):
            any_db.create_package(pkg(name))
        assert [p.name for p in any_db.world()] == ["c", "a", "b"]
        assert any_db.get_packages() == [pkg(n).fingerprint for n in ("c", "a", "b")]

    def test_remove(self, any_db):
        """Removed packages leave world()."""
        any_db.create_package(pkg("a"))
        any_db.remove_package(pkg("a"))
        assert any_db.world() == []
        # Removing twice is harmless
        any_db.remove_package(pkg("a"))

    def test_update_package(self, any_db):
        """Updates replace the stored metadata."""
        any_db.create_package(pkg("a"))
        any_db.update_package(pkg("a", description="new"))
        assert any_db.get_package(pkg("a").fingerprint).description == "new"

    def test_update_missing(self, any_db):
        """Updating an unknown package raises."""
        with pytest.raises(PackageNotFoundError):
            any_db.update_package(pkg("a"))

    def test_clean(self, any_db):
        """clean() drops packages and files."""
        any_db.create_package(pkg("a"))
        any_db.set_package_files(pkg("a"), ["usr/bin/a"])
        any_db.clean()
        assert any_db.world() == []
        assert any_db.get_package_files(pkg("a")) == []


class TestLookups:
    """Tests for reference lookups."""

    def test_find_exact(self, any_db):
        """Exact references find that version only."""
        any_db.create_package(pkg("a", "1.0"))
        any_db.create_package(pkg("a", "2.0"))
        assert any_db.find_package(pkg("a", "1.0")).version == "1.0"
        assert any_db.find_package(pkg("a", "3.0")) is None

    def test_find_selector_returns_highest(self, any_db):
        """A selector finds the highest admitted version."""
        for v in ("1.0", "1.10", "1.9", "2.0"):
            any_db.create_package(pkg("a", v))
        assert any_db.find_package(pkg("a", "<2.0")).version == "1.10"
        assert any_db.find_package(pkg("a", "")).version == "2.0"
        assert len(any_db.find_packages(pkg("a", ">=1.9"))) == 3

    def test_find_versions(self, any_db):
        """All versions of a name are returned."""
        any_db.create_package(pkg("a", "1.0"))
        any_db.create_package(pkg("a", "2.0"))
        any_db.create_package(pkg("b", "1.0"))
        versions = any_db.find_package_versions(pkg("a", ""))
        assert sorted(p.version for p in versions) == ["1.0", "2.0"]

    def test_find_providers(self, any_db):
        """Providers include packages providing the name."""
        any_db.create_package(pkg("impl", provides=[pkg("virtual", "")]))
        any_db.create_package(pkg("virtual", "1.0"))
        names = sorted(p.name for p in any_db.find_providers(pkg("virtual", "")))
        assert names == ["impl", "virtual"]

    def test_copy(self, any_db):
        """A copy does not see later changes."""
        any_db.create_package(pkg("a"))
        any_db.set_package_files(pkg("a"), ["etc/a.conf"])
        snapshot = any_db.copy()
        assert isinstance(snapshot, InMemoryDatabase)
        assert snapshot.world() == [pkg("a")]
        assert snapshot.get_package_files(pkg("a")) == ["etc/a.conf"]
        snapshot.remove_package(pkg("a"))
        assert any_db.world() == [pkg("a")]


class TestFiles:
    """Tests for the package file lists."""

    def test_set_and_get(self, any_db):
        """File lists come back in the order they were set."""
        any_db.set_package_files(pkg("a"), ["usr/bin/a", "etc/a.conf"])
        assert any_db.get_package_files(pkg("a")) == ["usr/bin/a", "etc/a.conf"]

    def test_replace(self, any_db):
        """Setting files again replaces the list."""
        any_db.set_package_files(pkg("a"), ["usr/bin/a"])
        any_db.set_package_files(pkg("a"), ["usr/bin/b"])
        assert any_db.get_package_files(pkg("a")) == ["usr/bin/b"]

    def test_remove(self, any_db):
        """Removing the file list leaves it empty."""
        any_db.set_package_files(pkg("a"), ["usr/bin/a"])
        any_db.remove_package_files(pkg("a"))
        assert any_db.get_package_files(pkg("a")) == []


class TestSqlite:
    """SQLite specific behaviour."""

    def test_find_file_owner(self, db):
        """Files map back to their owner."""
        db.create_package(pkg("a"))
        db.set_package_files(pkg("a"), ["usr/bin/a"])
        assert db.find_file_owner("usr/bin/a") == pkg("a")
        assert db.find_file_owner("usr/bin/b") is None

    def test_stats(self, db):
        """get_stats() counts packages and files."""
        db.create_package(pkg("a"))
        db.set_package_files(pkg("a"), ["x", "y"])
        assert db.get_stats() == {'packages': 1, 'files': 2}

    def test_reopen(self, tmp_path):
        """Data persists across connections to the same file."""
        path = tmp_path / "sub" / "packages.db"
        with SqliteDatabase(path) as first:
            first.create_package(pkg("a", annotations={'k': 'v'}))
        with SqliteDatabase(path) as second:
            assert second.world()[0].annotations == {'k': 'v'}
