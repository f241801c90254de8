"""Tests for version comparison and selectors"""

import pytest

from strata.core.errors import SelectorError
from strata.core.version import (
    compare_versions, is_selector, parse_selector, sort_versions, version_admits,
)


class TestCompareVersions:
    """Tests for compare_versions()."""

    @pytest.mark.parametrize("a,b,expected", [
        ("1.0", "1.0", 0),
        ("1.10", "1.9", 1),
        ("1.0", "1.0.1", -1),
        ("2", "10", -1),
        ("1.0~rc1", "1.0", -1),
        ("1.0a", "1.0", 1),
        ("1.a", "1.1", 1),
        ("1.0-1", "1.0_1", 0),
    ])
    def test_ordering(self, a, b, expected):
        """Versions compare component by component, both ways round."""
        assert compare_versions(a, b) == expected
        assert compare_versions(b, a) == -expected

    def test_sort_versions(self):
        """sort_versions() orders numerically, pre-releases first."""
        assert sort_versions(["1.10", "1.2", "1.0~beta", "1.0"]) == ["1.0~beta", "1.0", "1.2", "1.10"]
        assert sort_versions(["1", "3", "2"], reverse=True) == ["3", "2", "1"]


class TestSelectors:
    """Tests for selector parsing and matching."""

    def test_is_selector(self):
        """Empty, wildcard and operator strings are selectors."""
        assert is_selector("")
        assert is_selector("*")
        assert is_selector(">=1.0")
        assert is_selector("~1.2")
        assert is_selector(">=1.0,<2.0")
        assert not is_selector("1.0")
        assert not is_selector("1.0-r1")

    def test_range(self):
        """Comma separated constraints must all hold."""
        sel = parse_selector(">=1.0,<2.0")
        assert sel.admits("1.0")
        assert sel.admits("1.9.9")
        assert not sel.admits("2.0")
        assert not sel.admits("0.9")

    def test_operators(self):
        """Equality, inequality and comparison operators."""
        assert parse_selector("=1.0").admits("1.0")
        assert parse_selector("==1.0").admits("1.0")
        assert parse_selector("!=1.0").admits("1.1")
        assert not parse_selector("!=1.0").admits("1.0")
        assert parse_selector(">1.0").admits("1.0.1")
        assert parse_selector("<=1.0").admits("1.0")

    def test_tilde(self):
        """Tilde admits anything from the version up to the next major."""
        sel = parse_selector("~1.2")
        assert sel.admits("1.2")
        assert sel.admits("1.5")
        assert not sel.admits("1.1")
        assert not sel.admits("2.0")

    def test_any(self):
        """Empty and wildcard selectors admit anything."""
        assert parse_selector("").is_any
        assert parse_selector("*").admits("42")

    @pytest.mark.parametrize("bad", [">=", ">=1.0,,<2", "1.*", ">=@1"])
    def test_malformed(self, bad):
        """Malformed selectors raise SelectorError."""
        with pytest.raises(SelectorError):
            parse_selector(bad)

    def test_version_admits(self):
        """Plain versions only admit themselves."""
        assert version_admits(">=1.0", "1.2")
        assert version_admits("1.0", "1.0")
        assert not version_admits("1.0", "1.1")
        # Selector against a concrete version works both ways
        assert version_admits("1.0", ">=0.5")
        assert not version_admits("0.1", ">=0.5")
