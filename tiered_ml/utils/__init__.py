"""Utility modules for the experiment harness."""

from .experiment_tracking import ExperimentTracker, setup_experiment_tracking
from .model_utils import (
    TARGET_METRICS,
    calculate_metrics,
    score_metric,
    save_model,
    load_model,
)

__all__ = [
    'ExperimentTracker',
    'setup_experiment_tracking',
    'TARGET_METRICS',
    'calculate_metrics',
    'score_metric',
    'save_model',
    'load_model',
]
