"""Unit tests for SearchSpecification and attribute range parsing."""

import pytest

from directory_query.exceptions import ConfigurationError
from directory_query.models.search_specification import (
    MATCH_ANYTHING_FILTER,
    AttributeRange,
    AuthMode,
    SearchScope,
    SearchSpecification,
    parse_attribute_key,
    parse_range,
)


def _spec(**overrides):
    settings = {
        "server": "dc01.example.com",
        "search_base": "DC=example,DC=com",
        "search_filter": "(objectClass=user)",
    }
    settings.update(overrides)
    return SearchSpecification(**settings)


class TestAttributeKeys:
    """Tests for splitting attribute descriptions and parsing ranges."""

    def test_bare_attribute(self):
        assert parse_attribute_key("member") == ("member", None)

    def test_ranged_attribute(self):
        assert parse_attribute_key("member;range=0-999") == ("member", "range=0-999")

    def test_parse_bounded_range(self):
        assert parse_range("range=1000-1999") == AttributeRange(1000, 1999)

    def test_parse_final_range(self):
        attribute_range = parse_range("Range=2000-*")
        assert attribute_range == AttributeRange(2000, None)
        assert attribute_range.is_final

    @pytest.mark.parametrize("suffix", [None, "", "binary", "range=abc-1", "range=5", "range=1-2-3"])
    def test_non_range_suffixes(self, suffix):
        assert parse_range(suffix) is None

    def test_next_range_keeps_width(self):
        assert AttributeRange(0, 999).next_range() == AttributeRange(1000, 1999)
        assert AttributeRange(1500, 2999).next_range() == AttributeRange(3000, 4499)

    def test_final_range_has_no_successor(self):
        with pytest.raises(ValueError):
            AttributeRange(0, None).next_range()

    def test_qualifier(self):
        assert AttributeRange(1000, 1999).qualifier("member") == "member;range=1000-1999"
        assert AttributeRange(2000, None).qualifier("member") == "member;range=2000-*"


class TestSearchScope:
    @pytest.mark.parametrize(
        "value, expected",
        [
            ("base", SearchScope.BASE),
            ("LEVEL", SearchScope.LEVEL),
            ("onelevel", SearchScope.LEVEL),
            ("subtree", SearchScope.SUBTREE),
            (SearchScope.BASE, SearchScope.BASE),
        ],
    )
    def test_from_value(self, value, expected):
        assert SearchScope.from_value(value) is expected

    def test_invalid_scope(self):
        with pytest.raises(ConfigurationError):
            SearchScope.from_value("everything")


class TestSearchSpecification:
    """Tests for validation and derived range retrieval searches."""

    def test_defaults(self):
        spec = _spec()
        assert spec.attributes == ("*",)
        assert spec.scope is SearchScope.SUBTREE
        assert spec.auth_mode is AuthMode.CURRENT_IDENTITY

    def test_string_inputs_are_normalised(self):
        spec = _spec(scope="base", auth_mode="credential", attributes=["cn", "mail"])
        assert spec.scope is SearchScope.BASE
        assert spec.auth_mode is AuthMode.CREDENTIAL
        assert spec.attributes == ("cn", "mail")

    @pytest.mark.parametrize("port", [0, 65536, -1])
    def test_port_out_of_range(self, port):
        with pytest.raises(ConfigurationError):
            _spec(port=port)

    @pytest.mark.parametrize(
        "overrides",
        [
            {"search_filter": ""},
            {"page_size": 0},
            {"size_limit": -1},
            {"timeout": 0},
            {"auth_mode": "smartcard"},
        ],
    )
    def test_invalid_settings(self, overrides):
        with pytest.raises(ConfigurationError):
            _spec(**overrides)

    def test_specification_is_immutable(self):
        spec = _spec()
        with pytest.raises(AttributeError):
            spec.search_base = "DC=other,DC=com"

    def test_range_retrieval_copy(self):
        spec = _spec(size_limit=50, page_size=10, attributes=["member", "cn"])
        dn = "CN=Big Group,OU=Groups,DC=example,DC=com"

        sub_spec = spec.for_range_retrieval(dn, AttributeRange(1000, 1999), "member")

        assert sub_spec.search_base == dn
        assert sub_spec.scope is SearchScope.BASE
        assert sub_spec.search_filter == MATCH_ANYTHING_FILTER
        assert sub_spec.attributes == ("member;range=1000-1999",)
        assert sub_spec.size_limit == 0
        # connection settings are carried over unchanged
        assert sub_spec.server == spec.server
        assert sub_spec.page_size == spec.page_size
        assert spec.search_base == "DC=example,DC=com"
