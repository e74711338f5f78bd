"""
Comparison table of (algorithm, tier) cells and sensitivity-variant deltas.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

import numpy as np
import pandas as pd

from tiered_ml.pipeline.evaluation import METRIC_NAMES, MetricBundle

logger = logging.getLogger(__name__)

CellKey = Tuple[str, str]

OK = "ok"
SKIPPED = "skipped"


@dataclass(frozen=True)
class CellResult:
    """One row of the comparison table."""

    algorithm: str
    tier: str
    bundle: Optional[MetricBundle] = None
    status: str = OK
    reason: Optional[str] = None
    params: Dict[str, Any] = field(default_factory=dict)
    cv_score: Optional[float] = None

    @property
    def key(self) -> CellKey:
        return (self.algorithm, self.tier)

    @property
    def succeeded(self) -> bool:
        return self.status == OK

    def as_dict(self) -> Dict[str, Any]:
        row: Dict[str, Any] = {
            "algorithm": self.algorithm,
            "tier": self.tier,
            "status": self.status,
            "reason": self.reason,
            "cv_score": self.cv_score,
        }
        bundle = self.bundle.as_dict() if self.bundle is not None else {}
        for name in METRIC_NAMES + ("n", "n_excluded"):
            row[name] = bundle.get(name, np.nan)
        return row


def skipped(algorithm: str, tier: str, reason: str) -> CellResult:
    return CellResult(algorithm=algorithm, tier=tier, status=SKIPPED, reason=reason)


class ComparisonTable:
    """Ordered collection of cells; no implicit ranking."""

    def __init__(self, rows: Iterable[CellResult]):
        self._rows: List[CellResult] = list(rows)
        keys = [r.key for r in self._rows]
        if len(set(keys)) != len(keys):
            raise ValueError("Comparison table has duplicate (algorithm, tier) cells")

    def __iter__(self) -> Iterator[CellResult]:
        return iter(self._rows)

    def __len__(self) -> int:
        return len(self._rows)

    def __getitem__(self, key: CellKey) -> CellResult:
        for row in self._rows:
            if row.key == key:
                return row
        raise KeyError(key)

    @property
    def keys(self) -> List[CellKey]:
        return [r.key for r in self._rows]

    @property
    def succeeded(self) -> List[CellResult]:
        return [r for r in self._rows if r.succeeded]

    @property
    def skipped(self) -> List[CellResult]:
        return [r for r in self._rows if not r.succeeded]

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame([r.as_dict() for r in self._rows])

    def metric_matrix(self, metric: str = "auc") -> pd.DataFrame:
        """Algorithm x tier matrix of one metric, in first-seen order."""
        algorithms = list(dict.fromkeys(r.algorithm for r in self._rows))
        tiers = list(dict.fromkeys(r.tier for r in self._rows))
        matrix = pd.DataFrame(np.nan, index=algorithms, columns=tiers)
        for row in self.succeeded:
            matrix.loc[row.algorithm, row.tier] = getattr(row.bundle, metric)
        return matrix

    def diff(self, variant: "ComparisonTable") -> pd.DataFrame:
        """Per-cell deltas (variant - primary) for cells present in both tables."""
        rows = []
        for row in self._rows:
            if row.key not in variant.keys:
                continue
            other = variant[row.key]
            if row.succeeded and other.succeeded:
                rows.append(compare_variant(row, other.bundle))
            else:
                reason = row.reason if not row.succeeded else other.reason
                rows.append({"algorithm": row.algorithm, "tier": row.tier, "status": SKIPPED, "reason": reason})
        return pd.DataFrame(rows)


def aggregate(rows: Iterable[CellResult]) -> ComparisonTable:
    """Assemble cells into a table, preserving input order."""
    table = ComparisonTable(rows)
    logger.info(f"Aggregated {len(table)} cells ({len(table.succeeded)} succeeded, {len(table.skipped)} skipped)")
    return table


def compare_variant(primary_row: CellResult, variant_bundle: MetricBundle) -> Dict[str, Any]:
    """Delta row: variant minus primary for every metric of the bundle."""
    if primary_row.bundle is None:
        raise ValueError(f"Primary cell {primary_row.key} has no metrics: {primary_row.reason}")
    delta: Dict[str, Any] = {"algorithm": primary_row.algorithm, "tier": primary_row.tier, "status": "ok"}
    for name in METRIC_NAMES:
        primary_value = getattr(primary_row.bundle, name)
        variant_value = getattr(variant_bundle, name)
        delta[f"primary_{name}"] = primary_value
        delta[f"variant_{name}"] = variant_value
        delta[f"delta_{name}"] = variant_value - primary_value
    delta["primary_n"] = primary_row.bundle.n
    delta["variant_n"] = variant_bundle.n
    return delta
