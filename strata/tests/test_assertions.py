"""Tests for solver assertions and install ordering"""

import logging

import pytest

from strata.core.assertions import (
    PackageAssert, PackagesAssertions, ensure_order, group_levels, order,
)
from strata.core.database import InMemoryDatabase
from strata.core.errors import DependencyCycleError, InvariantViolation
from strata.core.package import Package


def pkg(name, version="1.0", **kwargs):
    return Package(name=name, category="cat", version=version, **kwargs)


def ref(name, version=""):
    return Package(name=name, category="cat", version=version)


def assertions_of(*packages, value=True):
    result = PackagesAssertions()
    for p in packages:
        result.add_package(p, value)
    return result


def names(ordered):
    return [a.package.name for a in ordered]


class TestPackagesAssertions:
    """Tests for the assertion set."""

    def test_add_conflicting(self):
        """Adding a package twice keeps one assertion."""
        a = assertions_of(pkg("a"))
        a.add_package(pkg("a"), True)
        assert len(a) == 1
        with pytest.raises(InvariantViolation):
            a.add_package(pkg("a"), False)

    def test_lookups(self):
        """Counts and searches over true and false assertions."""
        a = assertions_of(pkg("a"), pkg("b", "2.0"))
        a.add_package(pkg("c"), False)
        assert a.true_len() == 2
        assert a.search(pkg("b", "2.0").fingerprint).package.version == "2.0"
        assert a.search(pkg("c").fingerprint) is None
        assert pkg("c").fingerprint in a
        assert a.search_by_name("cat/b").package.version == "2.0"
        assert a.search_by_name("cat/c") is None
        assert a.false_packages() == [pkg("c")]

    def test_to_string(self):
        """Assertions render as installed or not installed."""
        assert PackageAssert(pkg("a"), True).to_string() == "cat/a-1.0 installed"
        assert str(PackageAssert(pkg("a"), False)) == "cat/a-1.0 not installed"

    def test_explain_sorted(self):
        """explain() lists assertions sorted by name."""
        a = assertions_of(pkg("b"), pkg("a"))
        assert a.explain() == "cat/a-1.0 installed\ncat/b-1.0 installed"

    def test_drop_and_cut(self):
        """drop() removes matches, cut() stops after one."""
        a = assertions_of(pkg("a"), pkg("b"), pkg("c"))
        assert names(a.drop(ref("b"))) == ["a", "c"]
        assert names(a.cut(pkg("b"))) == ["a", "b"]

    def test_to_db(self):
        """Only installed assertions end up in the database."""
        a = assertions_of(pkg("a"))
        a.add_package(pkg("b"), False)
        assert a.to_db().world() == [pkg("a")]

    def test_hash_order_independent(self):
        """Insertion order does not change the assertion hash."""
        first = assertions_of(pkg("a"), pkg("b"))
        second = assertions_of(pkg("b"), pkg("a"))
        assert first.assertion_hash() == second.assertion_hash()
        assert first.assertion_hash() != first.assertion_hash(salt="x")
        assert first.assertion_hash() != assertions_of(pkg("a")).assertion_hash()


class TestOrder:
    """Tests for order()."""

    def test_dependencies_first(self):
        """Requirements come before the packages needing them."""
        a = pkg("a", requires=[ref("b")])
        b = pkg("b", requires=[ref("c")])
        c = pkg("c")
        assert names(order(assertions_of(a, b, c))) == ["c", "b", "a"]

    def test_ties_keep_insertion_order(self):
        """Independent packages keep their insertion order."""
        assert names(order(assertions_of(pkg("z"), pkg("a"), pkg("m")))) == ["z", "a", "m"]

    def test_false_assertions_skipped(self):
        """Packages asserted absent are not ordered."""
        a = assertions_of(pkg("a", requires=[ref("b")]))
        a.add_package(pkg("b"), False)
        assert names(a.order()) == ["a"]

    def test_provides_edge(self):
        """A provider is ordered before its consumers."""
        a = pkg("a", requires=[ref("virtual")])
        impl = pkg("impl", provides=[ref("virtual")])
        assert names(order(assertions_of(a, impl))) == ["impl", "a"]

    def test_restricted_to_fingerprint(self):
        """Ordering can be limited to what one package pulls in."""
        a = pkg("a", requires=[ref("b")])
        b = pkg("b")
        other = pkg("other")
        ordered = order(assertions_of(other, a, b), fingerprint=a.fingerprint)
        assert names(ordered) == ["b", "a"]

    def test_db_resolves_requirement(self):
        """Selectors are resolved through the given database."""
        a = pkg("a", requires=[ref("b", ">=1.0")])
        b = pkg("b", "2.0")
        db = InMemoryDatabase([b])
        assert names(order(assertions_of(a, b), db)) == ["b", "a"]

    def test_cycle(self):
        """Dependency cycles raise with the packages involved."""
        a = pkg("a", requires=[ref("b")])
        b = pkg("b", requires=[ref("a")])
        with pytest.raises(DependencyCycleError) as exc:
            order(assertions_of(a, b))
        assert exc.value.cycle[0] == exc.value.cycle[-1]
        assert set(exc.value.cycle) == {"cat/a-1.0", "cat/b-1.0"}


class TestEnsureOrder:
    """Tests for ensure_order()."""

    def test_acyclic_same_as_order(self):
        """Without cycles ensure_order() matches order()."""
        a = pkg("a", requires=[ref("b")])
        b = pkg("b")
        c = pkg("c")
        assertions = assertions_of(a, c, b)
        assert names(ensure_order(assertions)) == names(order(assertions))

    def test_cycle_tolerated(self, caplog):
        """ensure_order() warns on cycles and still orders everything."""
        a = pkg("a", requires=[ref("b")])
        b = pkg("b", requires=[ref("a"), ref("c")])
        c = pkg("c")
        d = pkg("d", requires=[ref("a")])
        with caplog.at_level(logging.WARNING):
            ordered = assertions_of(d, a, b, c).ensure_order()
        assert names(ordered) == ["c", "a", "b", "d"]
        assert "Dependency cycle between cat/a-1.0, cat/b-1.0" in caplog.text


class TestGroupLevels:
    """Tests for group_levels()."""

    def test_levels(self):
        """Packages are grouped by dependency depth."""
        a = pkg("a")
        b = pkg("b", requires=[ref("a")])
        c = pkg("c")
        levels = group_levels(assertions_of(a, b, c))
        assert [names(level) for level in levels] == [["a", "c"], ["b"]]
