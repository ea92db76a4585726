"""Target scope filters, parsed once at the storage boundary."""
import json
from dataclasses import dataclass, field
from typing import Iterable, Optional


class ScopeFilterError(ValueError):
    """Stored scope filter is not a JSON list of identifiers."""


def _parse_list(raw, column: str) -> frozenset:
    if raw is None or raw == "":
        return frozenset()
    value = raw
    if isinstance(raw, str):
        try:
            value = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ScopeFilterError(f"{column} is not valid JSON: {raw!r}") from e
    if not isinstance(value, (list, tuple, set, frozenset)):
        raise ScopeFilterError(f"{column} must be a list, got {type(value).__name__}")

    parsed = set()
    for entry in value:
        if isinstance(entry, bool) or not isinstance(entry, (str, int)):
            raise ScopeFilterError(f"{column} contains a non-identifier entry: {entry!r}")
        entry = str(entry).strip()
        if entry:
            parsed.add(entry)
    return frozenset(parsed)


def dump_scope(values: Optional[Iterable]) -> str:
    """Serialize a scope list for storage (sorted for stable diffs)."""
    return json.dumps(sorted(_parse_list(list(values or []), "scope")), ensure_ascii=False)


@dataclass(frozen=True)
class ScopeFilters:
    """
    Allow-lists a target declares. An empty set accepts everything.

    City and category sets hold ids; the region set holds region names.
    """

    cities: frozenset = field(default_factory=frozenset)
    regions: frozenset = field(default_factory=frozenset)
    categories: frozenset = field(default_factory=frozenset)

    @classmethod
    def from_storage(cls, city_scopes, region_scopes, category_scopes) -> "ScopeFilters":
        """
        Build filters from the raw column values of a target row.

        Raises:
            ScopeFilterError: If any column is malformed
        """
        return cls(
            cities=_parse_list(city_scopes, "city_scopes"),
            regions=_parse_list(region_scopes, "region_scopes"),
            categories=_parse_list(category_scopes, "category_scopes"),
        )

    @classmethod
    def for_target(cls, target) -> "ScopeFilters":
        return cls.from_storage(target.city_scopes, target.region_scopes, target.category_scopes)

    @property
    def accepts_all(self) -> bool:
        return not (self.cities or self.regions or self.categories)

    def to_dict(self) -> dict:
        return {
            "cities": sorted(self.cities),
            "regions": sorted(self.regions),
            "categories": sorted(self.categories),
        }
