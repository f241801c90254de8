"""Tests for the package model"""

import pytest

from strata.core.database import InMemoryDatabase, SqliteDatabase
from strata.core.errors import PackageNotFoundError, SelectorError
from strata.core.package import (
    Package, decode_package, encode_package, find_best, packs_to_list, parse_ref, unique,
)


def pkg(name, version="1.0", category="cat", **kwargs):
    return Package(name=name, category=category, version=version, **kwargs)


class TestIdentity:
    """Tests for fingerprints and display names."""

    def test_fingerprint_stable(self):
        """Identical packages share a sha256 fingerprint."""
        assert pkg("a").fingerprint == pkg("a").fingerprint
        assert len(pkg("a").fingerprint) == 64

    def test_fingerprint_differs(self):
        """Version and category are part of the identity."""
        assert pkg("a", "1.0").fingerprint != pkg("a", "1.1").fingerprint
        assert pkg("a", category="x").fingerprint != pkg("a", category="y").fingerprint

    def test_fingerprint_ignores_metadata(self):
        """Relations and descriptions do not change identity."""
        a = pkg("a", requires=[pkg("b")], description="first")
        assert a.fingerprint == pkg("a").fingerprint
        assert a == pkg("a")

    def test_human_readable_string(self):
        """Display names join category, name and version."""
        assert pkg("a").human_readable_string() == "cat/a-1.0"
        assert pkg("a", ">=1.0").human_readable_string() == "cat/a>=1.0"
        assert pkg("a", "").human_readable_string() == "cat/a"
        assert Package(name="a", version="2").human_readable_string() == "a-2"

    def test_is_selector(self):
        """Concrete versions are not selectors."""
        assert pkg("a", ">=1.0").is_selector
        assert pkg("a", "").is_selector
        assert not pkg("a").is_selector


class TestParseRef:
    """Tests for parse_ref()."""

    def test_plain(self):
        """category/name parses with an empty version."""
        ref = parse_ref("cat/a")
        assert (ref.category, ref.name, ref.version) == ("cat", "a", "")

    def test_no_category(self):
        """A bare name has no category."""
        ref = parse_ref("a")
        assert (ref.category, ref.name) == ("", "a")

    def test_selector(self):
        """Everything after the name is the version selector."""
        ref = parse_ref("cat/a>=1.0,<2.0")
        assert ref.name == "a"
        assert ref.version == ">=1.0,<2.0"

    def test_exact(self):
        """name@version pins an exact version."""
        ref = parse_ref("cat/a@1.2")
        assert ref.version == "1.2"
        assert not ref.is_selector

    def test_malformed(self):
        """An operator without a version is rejected."""
        with pytest.raises(SelectorError):
            parse_ref("cat/a>=")


class TestMatching:
    """Tests for matches(), admits() and provides_for()."""

    def test_matches_selector(self):
        """Matching works with the selector on either side."""
        assert pkg("a", ">=1.0").matches(pkg("a", "1.5"))
        assert pkg("a", "1.5").matches(pkg("a", ">=1.0"))
        assert not pkg("a", ">=2.0").matches(pkg("a", "1.5"))
        assert not pkg("a", ">=1.0").matches(pkg("b", "1.5"))

    def test_exact_versions(self):
        """Exact versions only match themselves."""
        assert pkg("a", "1.0").matches(pkg("a", "1.0"))
        assert not pkg("a", "1.0").matches(pkg("a", "1.1"))

    def test_provides(self):
        """Unversioned provides satisfy any selector."""
        provider = pkg("impl", provides=[pkg("virtual", "")])
        assert provider.provides_for(pkg("virtual", ">=3"))
        assert provider.satisfies(pkg("virtual", ""))
        assert not provider.provides_for(pkg("other", ""))

    def test_versioned_provides(self):
        """Versioned provides are checked against the selector."""
        provider = pkg("impl", provides=[pkg("virtual", "2.0")])
        assert provider.provides_for(pkg("virtual", ">=1.0"))
        assert not provider.provides_for(pkg("virtual", ">=3.0"))

    def test_validate_selectors(self):
        """Invalid requirement selectors are reported."""
        pkg("a", requires=[pkg("b", ">=1.0")]).validate_selectors()
        with pytest.raises(SelectorError):
            pkg("a", requires=[pkg("b", "1.*")]).validate_selectors()

    def test_has_finalizer(self):
        """Only install or uninstall hooks count as a finalizer."""
        assert not pkg("a").has_finalizer()
        assert pkg("a", finalizer={'install': ["echo hi"]}).has_finalizer()
        assert not pkg("a", finalizer={'shell': ["bash", "-c"]}).has_finalizer()


class TestSerialization:
    """Tests for to_dict()/from_dict() and database encoding."""

    def test_dict_round_trip(self):
        """Every field survives to_dict() and from_dict()."""
        a = pkg("a", requires=[pkg("b", ">=1.0")], conflicts=[pkg("c", "")],
                labels={'k': 'v'}, annotations={'config_protect': '/etc'},
                finalizer={'install': ["touch x"]})
        b = Package.from_dict(a.to_dict())
        assert b == a
        assert b.requires[0].version == ">=1.0"
        assert b.conflicts[0].name == "c"
        assert b.annotations == {'config_protect': '/etc'}
        assert b.finalizer == {'install': ["touch x"]}

    def test_from_dict_string_refs(self):
        """Relations may be written as reference strings."""
        a = Package.from_dict({'name': 'a', 'category': 'cat', 'version': '1',
                               'requires': ['cat/b>=2']})
        assert a.requires[0].package_name == "cat/b"
        assert a.requires[0].version == ">=2"

    def test_numeric_version(self):
        """YAML numbers are accepted as versions."""
        a = Package.from_dict({'name': 'a', 'version': 2})
        assert a.version == "2"

    def test_clone_is_independent(self):
        """Mutating a clone leaves the original alone."""
        a = pkg("a", labels={'k': 'v'})
        b = a.clone()
        b.add_label('k', 'w')
        assert a.labels == {'k': 'v'}

    @pytest.mark.parametrize("make_db", [
        lambda tmp_path: InMemoryDatabase(),
        lambda tmp_path: SqliteDatabase(tmp_path / "packages.db"),
    ])
    def test_encode_decode(self, tmp_path, make_db):
        """Packages stored in a database decode to equal packages."""
        db = make_db(tmp_path)
        a = pkg("a", requires=[pkg("b", ">=1.0")], uri=["https://example.org"])
        pid = encode_package(a, db)
        assert pid == a.fingerprint
        b = decode_package(pid, db)
        assert b == a
        assert b.to_dict() == a.to_dict()

    def test_decode_unknown(self):
        """Decoding an unknown id raises PackageNotFoundError."""
        with pytest.raises(PackageNotFoundError):
            decode_package("deadbeef", InMemoryDatabase())


class TestHelpers:
    """Tests for list helpers."""

    def test_unique(self):
        """Duplicates are dropped, first occurrence kept."""
        assert unique([pkg("a"), pkg("b"), pkg("a")]) == [pkg("a"), pkg("b")]

    def test_packs_to_list(self):
        """Packages are listed sorted and space separated."""
        assert packs_to_list([pkg("b"), pkg("a")]) == "cat/a-1.0 cat/b-1.0"

    def test_find_best(self):
        """The highest concrete version wins, selectors are ignored."""
        best = find_best([pkg("a", "1.9"), pkg("a", "1.10"), pkg("a", ">=2")])
        assert best.version == "1.10"
        assert find_best([]) is None
