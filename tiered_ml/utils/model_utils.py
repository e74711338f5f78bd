"""
Model utilities for metric calculation and predictor persistence.
"""

import logging
from pathlib import Path
from typing import Any, Callable, Dict, Union

import joblib
import numpy as np
from sklearn.metrics import accuracy_score, confusion_matrix, f1_score, roc_auc_score

logger = logging.getLogger(__name__)


def confusion_counts(y_true: np.ndarray, y_pred: np.ndarray) -> Dict[str, int]:
    """TP/FP/TN/FN for 0/1 labels, with both classes always counted."""
    tn, fp, fn, tp = confusion_matrix(y_true, y_pred, labels=[0, 1]).ravel()
    return {"tp": int(tp), "fp": int(fp), "tn": int(tn), "fn": int(fn)}


def sensitivity_from_counts(counts: Dict[str, int]) -> float:
    positives = counts["tp"] + counts["fn"]
    return counts["tp"] / positives if positives > 0 else 0.0


def specificity_from_counts(counts: Dict[str, int]) -> float:
    negatives = counts["tn"] + counts["fp"]
    return counts["tn"] / negatives if negatives > 0 else 0.0


def safe_roc_auc(y_true: np.ndarray, y_proba: np.ndarray) -> float:
    """ROC-AUC, or NaN when only one class is present."""
    if len(np.unique(y_true)) < 2:
        logger.warning("ROC-AUC undefined with a single class present; reporting NaN")
        return float("nan")
    return float(roc_auc_score(y_true, y_proba))


def _thresholded(fn: Callable[[np.ndarray, np.ndarray], float]) -> Callable[..., float]:
    def score(y_true: np.ndarray, y_proba: np.ndarray, threshold: float = 0.5) -> float:
        return float(fn(y_true, (y_proba >= threshold).astype(int)))
    return score


TARGET_METRICS: Dict[str, Callable[..., float]] = {
    "roc_auc": lambda y_true, y_proba, threshold=0.5: safe_roc_auc(y_true, y_proba),
    "sensitivity": _thresholded(lambda t, p: sensitivity_from_counts(confusion_counts(t, p))),
    "specificity": _thresholded(lambda t, p: specificity_from_counts(confusion_counts(t, p))),
    "f1": _thresholded(lambda t, p: f1_score(t, p, zero_division=0)),
    "accuracy": _thresholded(accuracy_score),
}


def score_metric(name: str, y_true: np.ndarray, y_proba: np.ndarray, threshold: float = 0.5) -> float:
    """Score predicted probabilities with one of :data:`TARGET_METRICS`."""
    if name not in TARGET_METRICS:
        raise ValueError(f"Unknown target metric: {name}")
    return TARGET_METRICS[name](y_true, y_proba, threshold)


def calculate_metrics(y_true: np.ndarray, y_proba: np.ndarray, threshold: float = 0.5) -> Dict[str, Any]:
    """
    Calculate the fixed metric set for 0/1 labels and P(positive).

    Args:
        y_true: True binary labels
        y_proba: Predicted probabilities of the positive class
        threshold: Decision threshold on y_proba

    Returns:
        Dictionary with sensitivity, specificity, f1, auc, n and confusion counts
    """
    y_pred = (y_proba >= threshold).astype(int)
    counts = confusion_counts(y_true, y_pred)
    metrics: Dict[str, Any] = {
        "sensitivity": sensitivity_from_counts(counts),
        "specificity": specificity_from_counts(counts),
        "f1": float(f1_score(y_true, y_pred, zero_division=0)),
        "auc": safe_roc_auc(y_true, y_proba),
        "n": int(len(y_true)),
    }
    metrics.update(counts)
    return metrics


def save_model(model: Any, path: Union[str, Path]) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    joblib.dump(model, path)
    logger.info(f"Saved model to {path}")
    return path


def load_model(path: Union[str, Path]) -> Any:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Model file not found: {path}")
    return joblib.load(path)
