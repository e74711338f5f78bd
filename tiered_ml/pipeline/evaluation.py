"""
Validation-set evaluation of fitted predictors.

Validation data is never imputed: rows missing any of the predictor's tier
columns are excluded from scoring and counted in ``n_excluded``.
"""

import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

import pandas as pd

from tiered_ml.exceptions import InsufficientDataError, SchemaMismatchError
from tiered_ml.pipeline.training import Predictor
from tiered_ml.utils.model_utils import calculate_metrics

logger = logging.getLogger(__name__)

METRIC_NAMES = ("sensitivity", "specificity", "f1", "auc")


@dataclass(frozen=True)
class MetricBundle:
    sensitivity: float
    specificity: float
    f1: float
    auc: float
    n: int
    tp: int
    fp: int
    tn: int
    fn: int
    n_excluded: int = 0

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


class Evaluator:
    """Scores predictors on the validation partition at a fixed threshold."""

    def __init__(self, label: str, positive_label: Any = "Yes", threshold: Optional[float] = None):
        self.label = label
        self.positive_label = positive_label
        self.threshold = threshold

    def evaluate(self, predictor: Predictor, validation: pd.DataFrame) -> MetricBundle:
        columns = list(predictor.tier.columns)
        missing = [c for c in columns + [self.label] if c not in validation.columns]
        if missing:
            raise SchemaMismatchError(f"Validation set lacks columns {missing}")

        restricted = validation[columns + [self.label]]
        scored = restricted.dropna()
        n_excluded = len(restricted) - len(scored)
        if scored.empty:
            raise InsufficientDataError(
                f"No complete validation rows for tier '{predictor.tier.name}' ({n_excluded} excluded)"
            )

        threshold = predictor.threshold if self.threshold is None else self.threshold
        y_true = (scored[self.label] == self.positive_label).to_numpy(dtype=int)
        y_proba = predictor.predict_probability(scored[columns])
        metrics = calculate_metrics(y_true, y_proba, threshold)

        logger.info(
            f"Evaluated {predictor.algorithm}/{predictor.tier.name} on {metrics['n']} validation rows "
            f"({n_excluded} excluded): AUC={metrics['auc']:.4f} F1={metrics['f1']:.4f}"
        )
        return MetricBundle(n_excluded=n_excluded, **metrics)


def evaluate(predictor: Predictor, validation: pd.DataFrame, label: str,
             positive_label: Any = "Yes", threshold: Optional[float] = None) -> MetricBundle:
    return Evaluator(label, positive_label, threshold).evaluate(predictor, validation)
