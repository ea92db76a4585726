"""Scope filter parsing tests."""
import pytest

from adrouter.core.scopes import ScopeFilterError, ScopeFilters, dump_scope


def test_parses_json_lists_and_coerces_ids():
    filters = ScopeFilters.from_storage('["city-1", 2]', None, "")

    assert filters.cities == frozenset({"city-1", "2"})
    assert filters.regions == frozenset()
    assert filters.categories == frozenset()
    assert not filters.accepts_all


def test_empty_lists_accept_all():
    assert ScopeFilters.from_storage("[]", "[]", "[]").accepts_all


def test_blank_entries_are_dropped():
    filters = ScopeFilters.from_storage('[" ", "north"]', None, None)
    assert filters.cities == frozenset({"north"})


@pytest.mark.parametrize(
    "raw",
    ["not json", '{"city": 1}', '"city-1"', '[["nested"]]', "[true]", "[1.5]"],
)
def test_malformed_values_are_rejected(raw):
    with pytest.raises(ScopeFilterError):
        ScopeFilters.from_storage(raw, None, None)


def test_dump_scope_is_sorted_and_normalized():
    assert dump_scope([" b", "a", 3]) == '["3", "a", "b"]'
    assert dump_scope(None) == "[]"


def test_to_dict_lists_sorted_values():
    filters = ScopeFilters.from_storage('["b", "a"]', '["north"]', "[]")
    assert filters.to_dict() == {"cities": ["a", "b"], "regions": ["north"], "categories": []}
