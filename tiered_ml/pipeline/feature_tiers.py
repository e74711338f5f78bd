"""
Nested feature tiers.

Each tier is a named column set representing one level of data-collection
cost. Tiers are ordered and nested: every tier contains the previous one.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Sequence, Tuple

from tiered_ml.exceptions import SchemaMismatchError
from tiered_ml.pipeline.preprocessing import DatasetSchema

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeatureTier:
    name: str
    columns: Tuple[str, ...]

    def __post_init__(self):
        object.__setattr__(self, "columns", tuple(self.columns))

    def __contains__(self, column: str) -> bool:
        return column in self.columns

    def __len__(self) -> int:
        return len(self.columns)


class FeatureTierRegistry:
    """Ordered, validated collection of nested feature tiers."""

    def __init__(self, tiers: Sequence[FeatureTier]):
        self._tiers: Tuple[FeatureTier, ...] = tuple(tiers)
        self._validate()

    @classmethod
    def from_config(cls, entries: List[Dict[str, Any]]) -> "FeatureTierRegistry":
        """Build tiers from config entries.

        Each entry has a ``name`` and either ``columns`` (the full column list)
        or ``add`` (columns appended to the previous tier).
        """
        tiers: List[FeatureTier] = []
        for entry in entries:
            if "name" not in entry:
                raise SchemaMismatchError(f"Feature tier entry without a name: {entry}")
            if "columns" in entry:
                columns = list(entry["columns"])
            elif "add" in entry:
                previous = list(tiers[-1].columns) if tiers else []
                columns = previous + [c for c in entry["add"] if c not in previous]
            else:
                raise SchemaMismatchError(f"Feature tier '{entry['name']}' needs 'columns' or 'add'")
            tiers.append(FeatureTier(entry["name"], tuple(columns)))
        return cls(tiers)

    def _validate(self) -> None:
        if not self._tiers:
            raise SchemaMismatchError("At least one feature tier is required")
        names = [t.name for t in self._tiers]
        if len(set(names)) != len(names):
            raise SchemaMismatchError(f"Duplicate feature tier names: {names}")
        for tier in self._tiers:
            if not tier.columns:
                raise SchemaMismatchError(f"Feature tier '{tier.name}' is empty")
            if len(set(tier.columns)) != len(tier.columns):
                raise SchemaMismatchError(f"Feature tier '{tier.name}' repeats a column")
        for smaller, larger in zip(self._tiers, self._tiers[1:]):
            dropped = set(smaller.columns) - set(larger.columns)
            if dropped:
                raise SchemaMismatchError(
                    f"Feature tier '{larger.name}' must contain tier '{smaller.name}'; missing {sorted(dropped)}"
                )

    def validate_against(self, schema: DatasetSchema) -> None:
        """Fail fast when a tier references a column the schema does not declare."""
        reserved = {schema.label, schema.identifier}
        for tier in self._tiers:
            bad = [c for c in tier.columns if c in reserved]
            if bad:
                raise SchemaMismatchError(f"Feature tier '{tier.name}' uses label/identifier columns {bad}")
            unknown = [c for c in tier.columns if c not in schema.columns]
            if unknown:
                raise SchemaMismatchError(f"Feature tier '{tier.name}' references unknown columns {unknown}")
        logger.info(f"Validated {len(self._tiers)} feature tiers: {self.names}")

    def __iter__(self) -> Iterator[FeatureTier]:
        return iter(self._tiers)

    def __len__(self) -> int:
        return len(self._tiers)

    def __getitem__(self, name: str) -> FeatureTier:
        for tier in self._tiers:
            if tier.name == name:
                return tier
        raise KeyError(name)

    @property
    def names(self) -> List[str]:
        return [t.name for t in self._tiers]

    @property
    def all_columns(self) -> Tuple[str, ...]:
        return self._tiers[-1].columns

    def added_columns(self, name: str) -> List[str]:
        """Columns a tier adds on top of the previous one."""
        names = self.names
        idx = names.index(name)
        previous = set(self._tiers[idx - 1].columns) if idx > 0 else set()
        return [c for c in self._tiers[idx].columns if c not in previous]
